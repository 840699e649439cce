"""Length-prefixed JSON framing for worker stdin/stdout.

Frame layout: a 4-byte big-endian unsigned payload length followed by exactly
that many bytes of UTF-8 JSON. Length prefixing means payloads never need
escaping, whatever strings the plan contains.

Decoding never raises: malformed input comes back as a WorkerError value.
"""

from __future__ import annotations

import json
import struct
from typing import Any, BinaryIO, Dict, Optional, Union

from .protocol import PROTOCOL_VERSION, Plan, PlanRequest, WorkerError

HEADER = struct.Struct(">I")
DEFAULT_MAX_FRAME_BYTES = 16 * 1024 * 1024


def encode_frame(payload: Dict[str, Any], max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> bytes:
    """
    Serialize one payload into a frame.

    Raises:
        TypeError: If the payload is not JSON-serializable
        ValueError: If it contains NaN/Infinity or exceeds max_frame_bytes
    """
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), allow_nan=False).encode("utf-8")
    if len(body) > max_frame_bytes:
        raise ValueError(f"Frame payload of {len(body)} bytes exceeds limit of {max_frame_bytes}")
    return HEADER.pack(len(body)) + body


def encode_request(request: PlanRequest, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> bytes:
    return encode_frame(request.to_wire(), max_frame_bytes)


def encode_error(code: str, message: str) -> bytes:
    """Failure frame, as written by workers."""
    return encode_frame({"error": {"code": code, "message": message}})


def decode_frame(frame: bytes) -> Union[Dict[str, Any], WorkerError]:
    """Decode a complete frame into its JSON object, or describe why it is malformed."""
    if len(frame) < HEADER.size:
        return WorkerError("truncated_header", f"Frame has {len(frame)} bytes, header needs {HEADER.size}")

    (length,) = HEADER.unpack_from(frame)
    body = frame[HEADER.size:]
    if len(body) != length:
        return WorkerError("length_mismatch", f"Header announces {length} bytes, frame carries {len(body)}")

    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as e:
        return WorkerError("invalid_utf8", f"Payload is not valid UTF-8: {e}")

    try:
        data = json.loads(text)
    except (ValueError, RecursionError) as e:
        return WorkerError("invalid_json", f"Payload is not valid JSON: {e}")

    if not isinstance(data, dict):
        return WorkerError("invalid_payload", f"Payload must be a JSON object, got {type(data).__name__}")
    return data


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def plan_from_wire(data: Dict[str, Any]) -> Union[Plan, WorkerError]:
    """Validate the top-level shape of a plan payload. Nested records are not inspected."""
    plan_id = data.get("planId")
    if plan_id is not None and not isinstance(plan_id, str):
        return WorkerError("invalid_plan", "planId must be a string")
    if not isinstance(data.get("type"), str):
        return WorkerError("invalid_plan", "type must be a string")

    weeks = data.get("durationWeeks")
    if not _is_int(weeks) or weeks < 1:
        return WorkerError("invalid_plan", "durationWeeks must be a positive integer")
    if not isinstance(data.get("workouts"), list):
        return WorkerError("invalid_plan", "workouts must be an array")
    if not isinstance(data.get("nutrition"), dict):
        return WorkerError("invalid_plan", "nutrition must be an object")

    return Plan(
        plan_id=plan_id,
        type=data["type"],
        duration_weeks=weeks,
        workouts=tuple(data["workouts"]),
        nutrition=data["nutrition"],
    )


def decode_response(frame: bytes) -> Union[Plan, WorkerError]:
    """Decode a worker response frame into a Plan or a WorkerError."""
    data = decode_frame(frame)
    if isinstance(data, WorkerError):
        return data

    if "error" in data:
        error = data["error"]
        if (
            not isinstance(error, dict)
            or not isinstance(error.get("code"), str)
            or not isinstance(error.get("message", ""), str)
        ):
            return WorkerError("invalid_error_payload", "error must be an object with string code and message")
        return WorkerError(error["code"], error.get("message", ""), reported_by_worker=True)

    return plan_from_wire(data)


def decode_handshake(frame: bytes) -> Union[Dict[str, Any], WorkerError]:
    """Validate the readiness frame a worker sends once its model is loaded."""
    data = decode_frame(frame)
    if isinstance(data, WorkerError):
        return data
    if data.get("ready") is not True:
        return WorkerError("invalid_handshake", "Handshake must contain \"ready\": true")
    if data.get("protocol") != PROTOCOL_VERSION:
        return WorkerError(
            "protocol_mismatch",
            f"Worker speaks protocol {data.get('protocol')!r}, gateway speaks {PROTOCOL_VERSION}",
        )
    return data


def read_frame_sync(stream: BinaryIO, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> Optional[bytes]:
    """
    Blocking frame reader for the worker side.

    Returns:
        The complete frame, or None on a clean EOF before any header byte

    Raises:
        EOFError: If the stream ends in the middle of a frame
        ValueError: If the header announces more than max_frame_bytes
    """
    header = _read_exact(stream, HEADER.size)
    if not header:
        return None
    if len(header) < HEADER.size:
        raise EOFError("Stream closed inside a frame header")

    (length,) = HEADER.unpack(header)
    if length > max_frame_bytes:
        raise ValueError(f"Frame of {length} bytes exceeds limit of {max_frame_bytes}")

    body = _read_exact(stream, length)
    if len(body) < length:
        raise EOFError(f"Stream closed after {len(body)} of {length} payload bytes")
    return header + body


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)
