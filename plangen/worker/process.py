"""WorkerProcess - one inference subprocess and its stdin/stdout pipes.

A handle owns exactly one OS process. Only the pool creates handles and only
a pool lease can drive an exchange on one, so at most one request is ever
outstanding per process.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import signal
import time
from typing import Any, Dict, List, Optional

import psutil

from .codec import DEFAULT_MAX_FRAME_BYTES, HEADER, decode_handshake
from .errors import FrameTooLarge, PipeBroken, SpawnError, StreamClosed, WorkerTimeout
from .protocol import WorkerError, WorkerState

logger = logging.getLogger(__name__)

# errno values meaning the OS itself is out of processes, memory or descriptors
_RESOURCE_ERRNOS = {errno.EAGAIN, errno.ENOMEM, errno.EMFILE, errno.ENFILE}


class WorkerProcess:
    """Handle for a running worker. Identity is the OS pid."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        slot: int = 0,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ):
        self._proc = proc
        self.slot = slot
        self.max_frame_bytes = max_frame_bytes
        self.state = WorkerState.STARTING
        self.requests_served = 0
        self.spawned_at = time.time()
        self.last_active = self.spawned_at
        self.model: Optional[str] = None

    @classmethod
    async def spawn(
        cls,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        slot: int = 0,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ) -> "WorkerProcess":
        """
        Start a worker process in the Starting state.

        Args:
            command: Program and arguments
            env: Extra environment variables, layered over os.environ
            cwd: Working directory (None = inherit)
            slot: Pool slot this process belongs to
            max_frame_bytes: Largest frame accepted from this worker

        Raises:
            SpawnError: If the OS cannot create the process
        """
        full_env = os.environ.copy()
        full_env.setdefault("PYTHONUNBUFFERED", "1")
        if env:
            full_env.update(env)

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None,  # Worker logs go straight to our stderr
                env=full_env,
                cwd=cwd,
                start_new_session=True,  # Own process group, so children die with it
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise SpawnError(f"Cannot start worker {command[0]!r}: {e}") from e
        except OSError as e:
            raise SpawnError(
                f"OS refused to start worker {command[0]!r}: {e}",
                resource_exhausted=e.errno in _RESOURCE_ERRNOS,
            ) from e

        logger.info(f"Spawned worker pid={proc.pid} slot={slot}")
        return cls(proc, slot=slot, max_frame_bytes=max_frame_bytes)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    def is_alive(self) -> bool:
        """Liveness probe: the process has not exited."""
        return self._proc.returncode is None

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await self._proc.wait()

    async def wait_ready(self, timeout: float) -> None:
        """
        Wait for the readiness handshake (model loaded).

        Raises:
            SpawnError: If the worker exits, times out or sends a bad handshake.
                The process is killed before raising.
        """
        try:
            frame = await self.read_response(timeout)
        except WorkerTimeout as e:
            self.kill()
            raise SpawnError(f"Worker pid={self.pid} not ready after {timeout}s") from e
        except StreamClosed as e:
            code = await self._exit_code_soon()
            raise SpawnError(f"Worker pid={self.pid} exited before becoming ready (exit code: {code})") from e
        except FrameTooLarge as e:
            self.kill()
            raise SpawnError(f"Worker pid={self.pid} sent an oversized handshake") from e
        except BaseException:
            # Cancelled while the model was loading
            self.kill()
            raise

        hello = decode_handshake(frame)
        if isinstance(hello, WorkerError):
            self.kill()
            raise SpawnError(f"Worker pid={self.pid} handshake rejected: {hello.code}: {hello.message}")

        self.model = hello.get("model")
        self.state = WorkerState.IDLE
        self.last_active = time.time()
        logger.info(f"Worker pid={self.pid} slot={self.slot} ready (model: {self.model})")

    async def _exit_code_soon(self, timeout: float = 1.0) -> Optional[int]:
        # stdout EOF usually means the process is exiting; give it a moment to be reaped
        try:
            return await asyncio.wait_for(self._proc.wait(), timeout)
        except asyncio.TimeoutError:
            self.kill()
            return None

    async def write(self, frame: bytes) -> None:
        """
        Write one request frame to the worker's stdin.

        Raises:
            PipeBroken: If stdin is closed or the process has exited
        """
        stdin = self._proc.stdin
        if not self.is_alive() or stdin is None or stdin.is_closing():
            raise PipeBroken(f"Worker pid={self.pid} is not accepting input (exit code: {self.returncode})")
        try:
            stdin.write(frame)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise PipeBroken(f"Worker pid={self.pid} closed its input: {e}") from e

    async def read_response(self, timeout: float) -> bytes:
        """
        Read one complete frame from the worker's stdout.

        Returns:
            Header and payload bytes of the frame

        Raises:
            WorkerTimeout: If no complete frame arrived within timeout
            StreamClosed: If stdout closed first
            FrameTooLarge: If the header announces more than max_frame_bytes
        """
        try:
            return await asyncio.wait_for(self._read_frame(), timeout)
        except asyncio.TimeoutError as e:
            raise WorkerTimeout(f"Worker pid={self.pid} did not respond within {timeout:.2f}s") from e

    async def _read_frame(self) -> bytes:
        stdout = self._proc.stdout
        try:
            header = await stdout.readexactly(HEADER.size)
        except asyncio.IncompleteReadError as e:
            raise StreamClosed(
                f"Worker pid={self.pid} closed stdout inside a frame header", partial_bytes=len(e.partial)
            ) from e

        (length,) = HEADER.unpack(header)
        if length > self.max_frame_bytes:
            raise FrameTooLarge(
                f"Worker pid={self.pid} announced a {length} byte frame (limit {self.max_frame_bytes})", length
            )

        try:
            body = await stdout.readexactly(length)
        except asyncio.IncompleteReadError as e:
            raise StreamClosed(
                f"Worker pid={self.pid} closed stdout after {len(e.partial)} of {length} payload bytes",
                partial_bytes=HEADER.size + len(e.partial),
            ) from e
        return header + body

    def _signal(self, sig: int) -> bool:
        """Signal the worker's process group, falling back to the process itself."""
        try:
            os.killpg(self.pid, sig)
            return True
        except (ProcessLookupError, PermissionError, OSError) as e:
            logger.debug(f"killpg({self.pid}, {sig}) failed: {e}")
        try:
            self._proc.send_signal(sig)
            return True
        except ProcessLookupError:
            return False
        except OSError as e:
            logger.warning(f"Failed to signal worker pid={self.pid} with {sig}: {e}")
            return False

    def kill(self) -> None:
        """Immediate SIGKILL. The event loop's child watcher reaps the process."""
        if self.is_alive():
            self._signal(signal.SIGKILL)
        self.state = WorkerState.DEAD

    async def terminate(self, grace: float = 5.0) -> None:
        """
        Stop the worker gracefully, then forcefully if needed, and reap it.

        Closes stdin (workers exit on EOF), sends SIGTERM, waits grace seconds,
        then SIGKILL. Never raises for signalling failures.
        """
        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

        if self.is_alive():
            self._signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(self._proc.wait(), grace)
            except asyncio.TimeoutError:
                logger.warning(f"Worker pid={self.pid} ignored SIGTERM for {grace}s, killing")
                self._signal(signal.SIGKILL)
                try:
                    await asyncio.wait_for(self._proc.wait(), 5.0)
                except asyncio.TimeoutError:
                    logger.error(f"Worker pid={self.pid} survived SIGKILL")
        else:
            # Already exited; make sure it has been reaped
            await self._proc.wait()

        self.state = WorkerState.DEAD
        logger.info(f"Worker pid={self.pid} slot={self.slot} terminated (exit code: {self.returncode})")

    async def reap(self) -> None:
        """
        SIGKILL the worker's process group and wait for it to exit.

        Used for workers that are dead or stuck mid-exchange.
        """
        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

        self.kill()
        try:
            await asyncio.wait_for(self._proc.wait(), 5.0)
        except asyncio.TimeoutError:
            logger.error(f"Worker pid={self.pid} survived SIGKILL")
        logger.info(f"Worker pid={self.pid} slot={self.slot} killed (exit code: {self.returncode})")

    def memory_rss_mb(self) -> Optional[float]:
        """Resident memory of the worker, or None if it cannot be read."""
        if not self.is_alive():
            return None
        try:
            return psutil.Process(self.pid).memory_info().rss / 1024 / 1024
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def info(self) -> Dict[str, Any]:
        rss = self.memory_rss_mb()
        return {
            "pid": self.pid,
            "state": self.state.value,
            "model": self.model,
            "requests_served": self.requests_served,
            "uptime_seconds": round(time.time() - self.spawned_at, 1),
            "idle_seconds": round(time.time() - self.last_active, 1),
            "memory_rss_mb": round(rss, 1) if rss is not None else None,
            "alive": self.is_alive(),
        }
