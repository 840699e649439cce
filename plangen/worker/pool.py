"""WorkerPool - fixed-size pool of pre-spawned inference workers.

Responsibilities:
- Spawn every slot eagerly at startup (model load is slow)
- Lease idle workers to callers, one request per worker at a time
- Retire workers after a request budget, replace dead ones in the background
- Report degraded / fatal capacity problems

All bookkeeping runs on the event loop and is mutated only in synchronous
sections, so concurrent acquire/release calls cannot interleave mid-update.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Set

from ..config import GatewayConfig
from .errors import PoolClosed, PoolExhausted, SpawnError
from .process import WorkerProcess
from .protocol import Outcome, WorkerState

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    """One managed worker lifecycle within the pool."""

    index: int
    worker: Optional[WorkerProcess] = None
    respawn_task: Optional[asyncio.Task] = None
    consecutive_failures: int = 0
    exhausted_failures: int = 0  # Consecutive failures caused by OS resource exhaustion
    last_error: Optional[str] = None
    spawn_count: int = 0

    @property
    def respawning(self) -> bool:
        return self.respawn_task is not None and not self.respawn_task.done()


class WorkerLease:
    """
    Exclusive use of one worker for one exchange.

    Exposes only send/receive so callers never hold the process handle itself.
    Set `outcome` before the lease is released.
    """

    def __init__(self, worker: WorkerProcess):
        self._worker = worker
        self.outcome: Optional[Outcome] = None
        self.exchange_started = False
        self.released = False

    @property
    def pid(self) -> int:
        return self._worker.pid

    @property
    def slot(self) -> int:
        return self._worker.slot

    async def send(self, frame: bytes) -> None:
        self.exchange_started = True
        await self._worker.write(frame)

    async def receive(self, timeout: float) -> bytes:
        return await self._worker.read_response(timeout)


@dataclass
class PoolStats:
    """Counters since pool start."""

    spawned: int = 0
    spawn_failures: int = 0
    retired: int = 0
    discarded: int = 0
    leases: int = 0
    rejected: int = 0


class WorkerPool:
    """
    Bounded set of worker processes with lease-based access.

    Usage:
        pool = WorkerPool(config)
        await pool.start()
        async with pool.lease(timeout=5) as lease:
            await lease.send(frame)
            data = await lease.receive(timeout=30)
            lease.outcome = Outcome.SUCCESS
        await pool.shutdown()
    """

    def __init__(self, config: GatewayConfig):
        self.config = config
        self._slots: List[_Slot] = [_Slot(index=i) for i in range(config.pool_size)]
        self._idle: Deque[WorkerProcess] = deque()
        self._waiters: Deque[asyncio.Future] = deque()
        self._background: Set[asyncio.Task] = set()
        self._started = False
        self._closed = False
        self.stats = PoolStats()

    @property
    def capacity(self) -> int:
        return len(self._slots)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def degraded(self) -> bool:
        """A slot has failed to spawn repeatedly and capacity cannot be maintained."""
        return any(s.consecutive_failures >= self.config.degraded_after_failures for s in self._slots)

    @property
    def fatal(self) -> bool:
        """The OS keeps refusing to create processes. Needs an operator."""
        return any(s.exhausted_failures >= self.config.degraded_after_failures for s in self._slots)

    def live_count(self) -> int:
        return sum(1 for s in self._slots if s.worker is not None and s.worker.is_alive())

    def idle_count(self) -> int:
        return len(self._idle)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Spawn every slot concurrently and wait for the first attempt of each.

        Slots that fail to start are handed to the respawn loop; start() itself
        does not raise for spawn failures.
        """
        if self._started:
            return
        self._started = True
        logger.info(f"Starting worker pool with {self.capacity} slots: {' '.join(self.config.worker_command)}")

        results = await asyncio.gather(*(self._spawn_into(slot) for slot in self._slots))
        for slot, ok in zip(self._slots, results):
            if not ok:
                self._schedule_replacement(slot, old=None)

        logger.info(f"Worker pool started: {self.live_count()}/{self.capacity} workers ready")

    async def shutdown(self) -> None:
        """Fail waiters, stop respawns and terminate every worker."""
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down worker pool...")

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosed("Worker pool is shutting down"))

        respawns = [s.respawn_task for s in self._slots if s.respawn_task is not None]
        for task in respawns:
            task.cancel()
        await asyncio.gather(*respawns, return_exceptions=True)

        workers = [s.worker for s in self._slots if s.worker is not None]
        self._idle.clear()
        for slot in self._slots:
            slot.worker = None

        await asyncio.gather(
            *(w.terminate(self.config.terminate_grace) for w in workers),
            return_exceptions=True,
        )

        # Termination of discarded workers started earlier
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        logger.info("Worker pool shut down")

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(self, timeout: float) -> WorkerLease:
        """
        Lease an idle worker, waiting at most timeout seconds.

        Raises:
            PoolExhausted: If no worker became idle in time, or the queue policy
                rejected the request
            PoolClosed: If the pool is shut down
        """
        if self._closed:
            raise PoolClosed("Worker pool is closed")

        worker = self._take_idle() if not self._waiters else None
        if worker is not None:
            return self._lease(worker)

        if self.config.queue_policy == "shed":
            self.stats.rejected += 1
            raise PoolExhausted("All workers are busy")
        if self.config.max_queue and len(self._waiters) >= self.config.max_queue:
            self.stats.rejected += 1
            raise PoolExhausted(f"Request queue is full ({self.config.max_queue} waiting)")

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            done, _ = await asyncio.wait({waiter}, timeout=max(timeout, 0))
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

        if not done:
            self._abandon(waiter)
            self.stats.rejected += 1
            raise PoolExhausted(f"No worker available within {timeout:.2f}s")
        # Raises PoolClosed if shutdown failed the waiter
        return self._lease(waiter.result())

    def release(self, lease: WorkerLease, outcome: Outcome) -> None:
        """
        Return a leased worker. Must be called exactly once per lease.

        SUCCESS / RECOVERABLE / UNUSED put the worker back to Idle (unless its
        request budget is spent); UNUSABLE discards and replaces it.
        """
        if lease.released:
            raise RuntimeError(f"Lease for worker pid={lease.pid} released twice")
        lease.released = True
        worker = lease._worker
        slot = self._slots[worker.slot]

        if outcome in (Outcome.SUCCESS, Outcome.RECOVERABLE):
            worker.requests_served += 1
        worker.last_active = time.time()

        if self._closed:
            self._discard(slot, worker, "pool closed")
            return

        if outcome is Outcome.UNUSABLE:
            self._discard(slot, worker, "unusable after exchange")
        elif not worker.is_alive():
            self._discard(slot, worker, f"exited (code {worker.returncode})")
        elif self.config.max_requests_per_worker and worker.requests_served >= self.config.max_requests_per_worker:
            self._retire(slot, worker)
        else:
            worker.state = WorkerState.IDLE
            self._offer(worker)

    @asynccontextmanager
    async def lease(self, timeout: float) -> AsyncIterator[WorkerLease]:
        """
        Scoped acquire/release. Release happens on every exit path.

        Without an explicit outcome the worker is treated as unusable if an
        exchange was started (its framing can no longer be trusted) and
        returned untouched otherwise.
        """
        lease = await self.acquire(timeout)
        try:
            yield lease
        finally:
            outcome = lease.outcome
            if outcome is None:
                outcome = Outcome.UNUSABLE if lease.exchange_started else Outcome.UNUSED
            self.release(lease, outcome)

    def _lease(self, worker: WorkerProcess) -> WorkerLease:
        worker.state = WorkerState.BUSY
        worker.last_active = time.time()
        self.stats.leases += 1
        return WorkerLease(worker)

    def _take_idle(self) -> Optional[WorkerProcess]:
        """Pop the next live idle worker, discarding any that died while idle."""
        while self._idle:
            worker = self._idle.popleft()
            if worker.is_alive():
                return worker
            self._discard(self._slots[worker.slot], worker, f"died while idle (code {worker.returncode})")
        return None

    def _offer(self, worker: WorkerProcess) -> None:
        """Hand an idle worker to the oldest waiter, or park it."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                worker.state = WorkerState.BUSY
                waiter.set_result(worker)
                return
        worker.state = WorkerState.IDLE
        self._idle.append(worker)

    def _abandon(self, waiter: asyncio.Future) -> None:
        """Withdraw a waiter; give back a worker it was handed in the meantime."""
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
        if waiter.done():
            if not waiter.cancelled() and waiter.exception() is None:
                self._offer(waiter.result())
        else:
            waiter.cancel()

    # ------------------------------------------------------------------
    # Retirement and replacement
    # ------------------------------------------------------------------

    def _discard(self, slot: _Slot, worker: WorkerProcess, reason: str) -> None:
        if worker.state is WorkerState.DEAD and slot.worker is not worker:
            return
        logger.warning(f"Discarding worker pid={worker.pid} slot={slot.index}: {reason}")
        worker.state = WorkerState.DEAD
        self.stats.discarded += 1
        self._remove(slot, worker, graceful=False)

    def _retire(self, slot: _Slot, worker: WorkerProcess) -> None:
        logger.info(
            f"Retiring worker pid={worker.pid} slot={slot.index} "
            f"after {worker.requests_served} requests"
        )
        worker.state = WorkerState.DRAINING
        self.stats.retired += 1
        self._remove(slot, worker, graceful=True)

    def _remove(self, slot: _Slot, worker: WorkerProcess, graceful: bool) -> None:
        try:
            self._idle.remove(worker)
        except ValueError:
            pass
        if slot.worker is worker:
            slot.worker = None
        if self._closed:
            self._track(asyncio.ensure_future(self._stop(worker, graceful)))
        else:
            self._schedule_replacement(slot, old=worker, graceful=graceful)

    def _stop(self, worker: WorkerProcess, graceful: bool):
        """Graceful stop for retired workers, immediate kill for discarded ones."""
        if graceful:
            return worker.terminate(self.config.terminate_grace)
        return worker.reap()

    def _schedule_replacement(
        self, slot: _Slot, old: Optional[WorkerProcess], graceful: bool = False
    ) -> None:
        """Start the background respawn for a slot unless one is already running."""
        if self._closed:
            return
        if slot.respawning:
            if old is not None:
                self._track(asyncio.ensure_future(self._stop(old, graceful)))
            return
        slot.respawn_task = asyncio.ensure_future(self._replace(slot, old, graceful))

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _backoff(self, attempt: int) -> float:
        return min(self.config.respawn_backoff * (2 ** (attempt - 1)), self.config.respawn_backoff_max)

    async def _replace(self, slot: _Slot, old: Optional[WorkerProcess], graceful: bool = False) -> None:
        """Reap the old process, then spawn until the slot is filled again."""
        if old is not None:
            # Reap first so live processes never exceed capacity. Shielded and
            # tracked so shutdown still waits for it if this respawn is cancelled.
            reap = asyncio.ensure_future(self._stop(old, graceful))
            self._track(reap)
            await asyncio.shield(reap)

        attempt = 0
        while not self._closed:
            if slot.consecutive_failures:
                attempt += 1
                delay = self._backoff(attempt)
                logger.info(f"Respawning slot {slot.index} in {delay:.1f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)
            if await self._spawn_into(slot):
                return

    async def _spawn_into(self, slot: _Slot) -> bool:
        """One spawn attempt for a slot. Returns True if a ready worker now fills it."""
        if self._closed:
            return False
        try:
            worker = await WorkerProcess.spawn(
                self.config.worker_command,
                env=self.config.worker_env,
                cwd=self.config.worker_cwd,
                slot=slot.index,
                max_frame_bytes=self.config.max_frame_bytes,
            )
            await worker.wait_ready(self.config.startup_timeout)
        except SpawnError as e:
            slot.consecutive_failures += 1
            slot.exhausted_failures = slot.exhausted_failures + 1 if e.resource_exhausted else 0
            slot.last_error = str(e)
            self.stats.spawn_failures += 1
            logger.error(f"Slot {slot.index} spawn failed ({slot.consecutive_failures} in a row): {e}")
            if slot.exhausted_failures >= self.config.degraded_after_failures:
                logger.critical(
                    f"OS cannot create worker processes ({slot.exhausted_failures} consecutive "
                    f"resource exhaustion failures on slot {slot.index}); operator intervention required"
                )
            return False

        if self._closed:
            await worker.terminate(self.config.terminate_grace)
            return False

        slot.consecutive_failures = 0
        slot.exhausted_failures = 0
        slot.last_error = None
        slot.spawn_count += 1
        slot.worker = worker
        self.stats.spawned += 1
        self._offer(worker)
        return True

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def check_health(self) -> Dict[str, int]:
        """
        Liveness sweep, independent of request traffic.

        - Idle workers whose process died are discarded and replaced
        - Empty slots without a running respawn get one
        - Idle workers above max_worker_rss_mb are retired

        Busy workers are left alone; their in-flight exchange observes failures.
        """
        found = {"dead": 0, "respawned": 0, "oversized": 0}
        if self._closed:
            return found

        for slot in self._slots:
            worker = slot.worker
            if worker is None:
                if not slot.respawning:
                    found["respawned"] += 1
                    self._schedule_replacement(slot, old=None)
                continue

            if worker.state is not WorkerState.IDLE:
                continue

            if not worker.is_alive():
                found["dead"] += 1
                self._discard(slot, worker, f"liveness probe failed (code {worker.returncode})")
                continue

            limit = self.config.max_worker_rss_mb
            if limit:
                rss = worker.memory_rss_mb()
                if rss is not None and rss > limit:
                    found["oversized"] += 1
                    logger.info(f"Worker pid={worker.pid} uses {rss:.0f}MB (limit {limit:.0f}MB)")
                    self._retire(slot, worker)
        return found

    def status(self) -> Dict[str, Any]:
        slots = []
        for slot in self._slots:
            slots.append({
                "slot": slot.index,
                "worker": slot.worker.info() if slot.worker is not None else None,
                "respawning": slot.respawning,
                "consecutive_failures": slot.consecutive_failures,
                "last_error": slot.last_error,
                "spawn_count": slot.spawn_count,
            })
        busy = sum(
            1 for s in self._slots if s.worker is not None and s.worker.state is WorkerState.BUSY
        )
        return {
            "capacity": self.capacity,
            "live": self.live_count(),
            "idle": self.idle_count(),
            "busy": busy,
            "waiting": sum(1 for w in self._waiters if not w.done()),
            "degraded": self.degraded,
            "fatal": self.fatal,
            "closed": self._closed,
            "stats": {
                "spawned": self.stats.spawned,
                "spawn_failures": self.stats.spawn_failures,
                "retired": self.stats.retired,
                "discarded": self.stats.discarded,
                "leases": self.stats.leases,
                "rejected": self.stats.rejected,
            },
            "slots": slots,
        }
