"""Scriptable worker for gateway tests.

Usage: fake_worker.py --model-path unused mode=<mode> [delay=<seconds>]

Modes:
    echo         plan carrying the request back (nutrition.pid is the worker pid)
    fixed        {"planId":"p1","type":"workout_nutrition","durationWeeks":12,...}
    noid         plan without planId
    slow         echo after `delay` seconds
    hang         read the request, never answer
    stubborn     like hang, but also ignore SIGTERM
    crash        exit without answering
    truncated    half a frame, then exit
    garbage      well-framed bytes that are not JSON
    oversized    header announcing a frame beyond any limit
    error        {"error": {"code": "model_failed", ...}}
    badhello     handshake with an unknown protocol version
    die_on_start fail while loading the model
"""

import os
import signal
import sys
import time
from pathlib import Path
from typing import Any, Dict

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from plangen.worker.base import BaseWorker, create_worker_main  # noqa: E402
from plangen.worker.codec import HEADER, decode_frame, encode_error, encode_frame  # noqa: E402

FIXED_PLAN = {
    "planId": "p1",
    "type": "workout_nutrition",
    "durationWeeks": 12,
    "workouts": [],
    "nutrition": {},
}


class FakeWorker(BaseWorker):
    model_name = "fake"

    @property
    def mode(self) -> str:
        return self.model_config.get("mode", "echo")

    def load_model(self) -> Any:
        if self.mode == "die_on_start":
            raise RuntimeError("model file is corrupt")
        return object()

    def handshake(self) -> Dict[str, Any]:
        hello = super().handshake()
        if self.mode == "badhello":
            hello["protocol"] = 99
        return hello

    def infer(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.mode == "fixed":
            return dict(FIXED_PLAN)
        plan = {
            "planId": f"plan-{payload['userId']}",
            "type": "workout_nutrition",
            "durationWeeks": 4,
            "workouts": [payload],
            "nutrition": {"pid": os.getpid()},
        }
        if self.mode == "noid":
            del plan["planId"]
        return plan

    def respond(self, frame: bytes) -> bytes:
        mode = self.mode
        if mode == "hang":
            time.sleep(3600)
        elif mode == "stubborn":
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            time.sleep(3600)
        elif mode == "crash":
            os._exit(3)
        elif mode == "truncated":
            self.send(HEADER.pack(100) + b'{"planId":')
            os._exit(0)
        elif mode == "garbage":
            return HEADER.pack(5) + b"nope!"
        elif mode == "oversized":
            return HEADER.pack(0xFFFFFFF0)
        elif mode == "error":
            return encode_error("model_failed", "boom")
        elif mode == "slow":
            time.sleep(float(self.model_config.get("delay", "1")))

        payload = decode_frame(frame)
        return encode_frame(self.infer(payload))


main = create_worker_main(FakeWorker)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
