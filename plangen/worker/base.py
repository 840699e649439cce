"""Base class for inference worker programs.

Workers are long-lived subprocesses that:
1. Load a model artifact at startup
2. Announce readiness with a handshake frame on stdout
3. Read request frames from stdin in a loop and answer each with one frame
4. Exit on stdin EOF or SIGTERM

stdout carries frames only. Anything the model code prints is redirected to
stderr so it cannot corrupt the framing.
"""

from __future__ import annotations

import argparse
import gc
import logging
import os
import signal
import sys
import time
from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Callable, Dict, Optional

from .codec import DEFAULT_MAX_FRAME_BYTES, decode_frame, encode_error, encode_frame, read_frame_sync
from .protocol import PROTOCOL_VERSION, WorkerError

logger = logging.getLogger("worker")


class BaseWorker(ABC):
    """
    Base class for all inference workers.

    Subclasses must implement:
    - model_name: Class attribute reported in the handshake
    - load_model(): Load model into memory
    - infer(): Map one request payload to one plan payload
    """

    model_name: str = "unknown"  # Override in subclass

    def __init__(
        self,
        model_path: str,
        model_config: Optional[Dict[str, Any]] = None,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ):
        self.model_path = model_path
        self.model_config = model_config or {}
        self.max_frame_bytes = max_frame_bytes

        self._model: Any = None
        self._load_time_ms: int = 0
        self._requests = 0
        self._out: Optional[BinaryIO] = None

    def _claim_stdout(self) -> BinaryIO:
        """Keep the real stdout for frames and point fd 1 / sys.stdout at stderr."""
        out = os.fdopen(os.dup(sys.stdout.fileno()), "wb", buffering=0)
        sys.stdout.flush()
        os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
        sys.stdout = sys.stderr
        return out

    def send(self, frame: bytes) -> None:
        """Write one complete frame to the gateway."""
        self._out.write(frame)
        self._out.flush()

    def respond(self, frame: bytes) -> bytes:
        """
        Turn one request frame into one response frame.

        Subclasses can override to control the raw bytes written back.
        """
        payload = decode_frame(frame)
        if isinstance(payload, WorkerError):
            return encode_error("bad_request", payload.message)

        try:
            result = self.infer(payload)
        except MemoryError:
            logger.error("Out of memory during inference, exiting to release memory")
            os._exit(1)
        except Exception as e:
            logger.error(f"Inference failed: {e}", exc_info=True)
            return encode_error("inference_failed", str(e))

        try:
            return encode_frame(result, self.max_frame_bytes)
        except (TypeError, ValueError) as e:
            logger.error(f"Inference result cannot be encoded: {e}")
            return encode_error("invalid_result", str(e))

    def serve(self, stdin: BinaryIO) -> None:
        """Answer frames until stdin reaches EOF."""
        while True:
            try:
                frame = read_frame_sync(stdin, self.max_frame_bytes)
            except (EOFError, ValueError) as e:
                # Framing on stdin is unrecoverable; the gateway will replace us
                logger.error(f"Invalid input stream: {e}")
                return
            if frame is None:
                logger.info("stdin closed, exiting")
                return

            start = time.time()
            self.send(self.respond(frame))
            self._requests += 1
            logger.debug(f"Request {self._requests} answered in {int((time.time() - start) * 1000)}ms")

    @abstractmethod
    def load_model(self) -> Any:
        """
        Load the model into memory.

        Called once at startup. The return value is stored as self._model.
        """
        pass

    @abstractmethod
    def infer(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Produce a plan for one request.

        Args:
            payload: Request payload (userId, goals, preferences, healthData)

        Returns:
            Plan payload (planId, type, durationWeeks, workouts, nutrition)
        """
        pass

    def handshake(self) -> Dict[str, Any]:
        """Readiness frame sent once the model is loaded."""
        return {
            "ready": True,
            "protocol": PROTOCOL_VERSION,
            "model": self.model_name,
            "load_time_ms": self._load_time_ms,
        }

    def cleanup(self) -> None:
        """
        Release model resources.

        Called before exit. Override for custom cleanup.
        """
        self._model = None
        gc.collect()

    def run(self) -> int:
        """
        Load the model, send the handshake and serve until EOF.

        Returns:
            Exit code (0 for success)
        """
        self._out = self._claim_stdout()

        def _term_handler(signum, frame):
            raise SystemExit(0)

        try:
            signal.signal(signal.SIGTERM, _term_handler)
        except ValueError:
            pass

        logger.info(f"Loading model from {self.model_path}...")
        start = time.time()
        try:
            self._model = self.load_model()
        except Exception as e:
            logger.error(f"Failed to load model: {e}", exc_info=True)
            return 1
        self._load_time_ms = int((time.time() - start) * 1000)
        logger.info(f"Model {self.model_name} loaded in {self._load_time_ms}ms")

        try:
            self.send(encode_frame(self.handshake()))
            self.serve(sys.stdin.buffer)
        except BrokenPipeError:
            logger.info("Gateway closed our stdout, exiting")
        finally:
            self.cleanup()
        return 0


def create_worker_main(worker_class: type[BaseWorker]) -> Callable[[list[str]], int]:
    """
    Create a main() function for a worker module.

    Usage in worker module:
        class MyWorker(BaseWorker):
            ...

        main = create_worker_main(MyWorker)

        if __name__ == "__main__":
            raise SystemExit(main(sys.argv[1:]))
    """

    def main(argv: list[str]) -> int:
        parser = argparse.ArgumentParser(description=f"{worker_class.model_name} worker")
        parser.add_argument("--model-path", required=True, help="Model artifact to load")
        parser.add_argument(
            "--max-frame-bytes", type=int, default=DEFAULT_MAX_FRAME_BYTES, help="Largest accepted frame"
        )
        parser.add_argument("--log-level", default="INFO", help="Logging level (logs go to stderr)")
        # Allow extra args to be passed through to worker
        args, extra = parser.parse_known_args(argv)

        logging.basicConfig(
            level=args.log_level.upper(),
            stream=sys.stderr,
            format=f"%(asctime)s - worker[{os.getpid()}] - %(levelname)s - %(message)s",
        )

        # Parse extra args as key=value pairs for model_config
        model_config = {}
        for arg in extra:
            if "=" in arg:
                key, value = arg.split("=", 1)
                key = key.lstrip("-").replace("-", "_")
                model_config[key] = value

        worker = worker_class(
            model_path=args.model_path,
            model_config=model_config,
            max_frame_bytes=args.max_frame_bytes,
        )
        return worker.run()

    return main
