import asyncio
from contextlib import asynccontextmanager

import pytest

from plangen.db import worker_logs
from plangen.worker import orchestrator as orchestrator_module
from plangen.worker.codec import encode_frame
from plangen.worker.errors import PipeBroken
from plangen.worker.orchestrator import PlanOrchestrator
from plangen.worker.protocol import FailureKind, Outcome, Plan, PlanFailure, PlanRequest

from .conftest import make_config, wait_for_capacity

SCENARIO_REQUEST = PlanRequest(user_id="u1", goals=["muscle_gain"], preferences={}, health_data={})


def idle_pids(orch: PlanOrchestrator) -> set:
    return {s["worker"]["pid"] for s in orch.status()["slots"] if s["worker"] is not None}


@pytest.mark.asyncio
async def test_scenario_plan_returned_verbatim(make_orchestrator):
    orch = await make_orchestrator("fixed")
    result = await orch.generate_plan(SCENARIO_REQUEST)
    assert result == Plan(plan_id="p1", type="workout_nutrition", duration_weeks=12, workouts=(), nutrition={})


@pytest.mark.asyncio
async def test_echoed_plans_are_unchanged(orchestrator):
    requests = [
        PlanRequest(user_id="u1", goals=[], preferences=None, health_data=None),
        PlanRequest(user_id="u2", goals=["fat_loss", "endurance"], preferences={"daysPerWeek": 3}, health_data=None),
        PlanRequest(user_id="ü-3", goals=[], preferences=None, health_data={"weightKg": 81.5, "notes": "line\nbreak \"quoted\""}),
    ]
    for request in requests:
        result = await orchestrator.generate_plan(request)
        assert isinstance(result, Plan)
        assert result.plan_id == f"plan-{request.user_id}"
        assert result.workouts == (request.to_wire(),)


@pytest.mark.asyncio
async def test_missing_plan_id_is_generated(make_orchestrator):
    orch = await make_orchestrator("noid")
    result = await orch.generate_plan(SCENARIO_REQUEST)
    assert isinstance(result, Plan)
    assert result.plan_id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_value",
    [
        PlanRequest(user_id="", goals=[], preferences=None, health_data=None),
        PlanRequest(user_id="   ", goals=[], preferences=None, health_data=None),
        PlanRequest(user_id="u1", goals=[], preferences=None, health_data={"weightKg": float("nan")}),
        PlanRequest(user_id="u1", goals=[], preferences={"when": object()}, health_data=None),
        {"userId": "u1"},
    ],
)
async def test_invalid_request_never_touches_a_worker(orchestrator, request_value):
    result = await orchestrator.generate_plan(request_value)
    assert isinstance(result, PlanFailure)
    assert result.kind is FailureKind.INVALID_REQUEST
    assert orchestrator.pool.stats.leases == 0


@pytest.mark.asyncio
async def test_timeout_returns_within_budget_and_discards_worker(make_orchestrator):
    orch = await make_orchestrator("hang", pool_size=1)
    before = idle_pids(orch)
    loop = asyncio.get_running_loop()

    started = loop.time()
    result = await orch.generate_plan(SCENARIO_REQUEST, timeout=0.5)
    elapsed = loop.time() - started

    assert isinstance(result, PlanFailure)
    assert result.kind is FailureKind.UPSTREAM_TIMEOUT
    assert result.worker_pid in before
    assert elapsed < 0.5 + 0.25

    await wait_for_capacity(orch.pool)
    assert idle_pids(orch).isdisjoint(before)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "mode, kind, code",
    [
        ("crash", FailureKind.UPSTREAM_UNAVAILABLE, None),
        ("truncated", FailureKind.UPSTREAM_PROTOCOL_ERROR, None),
        ("garbage", FailureKind.UPSTREAM_PROTOCOL_ERROR, "invalid_json"),
        ("oversized", FailureKind.UPSTREAM_PROTOCOL_ERROR, "frame_too_large"),
    ],
)
async def test_broken_workers_are_classified_and_replaced(make_orchestrator, mode, kind, code):
    orch = await make_orchestrator(mode, pool_size=1)
    (pid,) = idle_pids(orch)

    result = await orch.generate_plan(SCENARIO_REQUEST)
    assert isinstance(result, PlanFailure)
    assert result.kind is kind
    assert result.code == code
    assert result.worker_pid == pid

    await wait_for_capacity(orch.pool)
    assert idle_pids(orch) != {pid}
    assert orch.pool.stats.discarded == 1


@pytest.mark.asyncio
async def test_worker_reported_error_keeps_worker(make_orchestrator):
    orch = await make_orchestrator("error", pool_size=1)
    (pid,) = idle_pids(orch)

    for _ in range(2):
        result = await orch.generate_plan(SCENARIO_REQUEST)
        assert isinstance(result, PlanFailure)
        assert result.kind is FailureKind.UPSTREAM_PROTOCOL_ERROR
        assert result.code == "model_failed"
        assert result.message == "boom"

    assert idle_pids(orch) == {pid}
    assert orch.pool.stats.discarded == 0


@pytest.mark.asyncio
async def test_capacity_plus_one_waits_then_succeeds(make_orchestrator):
    orch = await make_orchestrator("slow", worker_params={"delay": "0.3"}, pool_size=2, acquire_timeout=5.0)
    requests = [PlanRequest(user_id=f"u{i}", goals=[], preferences=None, health_data=None) for i in range(3)]

    results = await asyncio.wait_for(asyncio.gather(*(orch.generate_plan(r) for r in requests)), 10.0)
    assert all(isinstance(r, Plan) for r in results)
    assert [r.plan_id for r in results] == ["plan-u0", "plan-u1", "plan-u2"]


@pytest.mark.asyncio
async def test_capacity_plus_one_is_overloaded_when_wait_is_short(make_orchestrator):
    orch = await make_orchestrator("slow", worker_params={"delay": "1"}, pool_size=2, acquire_timeout=0.1)
    requests = [PlanRequest(user_id=f"u{i}", goals=[], preferences=None, health_data=None) for i in range(3)]

    results = await asyncio.wait_for(asyncio.gather(*(orch.generate_plan(r) for r in requests)), 10.0)
    kinds = sorted(type(r).__name__ if isinstance(r, Plan) else r.kind.value for r in results)
    assert kinds == ["Plan", "Plan", "overloaded"]


@pytest.mark.asyncio
async def test_shed_policy_overloads_immediately(make_orchestrator):
    orch = await make_orchestrator("slow", worker_params={"delay": "1"}, pool_size=1, queue_policy="shed")
    first = asyncio.ensure_future(orch.generate_plan(PlanRequest(user_id="a", goals=[], preferences=None, health_data=None)))
    await asyncio.sleep(0.1)

    second = await orch.generate_plan(PlanRequest(user_id="b", goals=[], preferences=None, health_data=None))
    assert second.kind is FailureKind.OVERLOADED
    assert isinstance(await first, Plan)


@pytest.mark.asyncio
async def test_cancel_during_read_releases_worker(make_orchestrator):
    orch = await make_orchestrator("slow", worker_params={"delay": "1"}, pool_size=1)
    task = asyncio.ensure_future(orch.generate_plan(SCENARIO_REQUEST))
    await asyncio.sleep(0.3)
    assert orch.status()["busy"] == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert orch.status()["busy"] == 0

    # The half-finished exchange poisoned that worker; a fresh one serves the next call
    await wait_for_capacity(orch.pool)
    assert isinstance(await orch.generate_plan(SCENARIO_REQUEST), Plan)


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_worker(make_orchestrator):
    orch = await make_orchestrator("echo", pool_size=1)
    held = await orch.pool.acquire(1.0)

    task = asyncio.ensure_future(orch.generate_plan(SCENARIO_REQUEST))
    await asyncio.sleep(0.1)
    assert orch.status()["waiting"] == 1
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    orch.pool.release(held, Outcome.UNUSED)
    assert orch.status()["waiting"] == 0
    assert orch.pool.idle_count() == 1


@pytest.mark.asyncio
async def test_service_degraded_when_workers_cannot_start(make_orchestrator):
    orch = await make_orchestrator("die_on_start", pool_size=1, degraded_after_failures=1, acquire_timeout=0.2)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 10.0
    while not orch.pool.degraded:
        assert loop.time() < deadline
        await asyncio.sleep(0.05)

    result = await orch.generate_plan(SCENARIO_REQUEST)
    assert result.kind is FailureKind.SERVICE_DEGRADED


@pytest.mark.asyncio
async def test_after_shutdown_requests_are_unavailable():
    orch = PlanOrchestrator(make_config("echo", pool_size=1))
    await orch.start()
    await orch.shutdown()
    result = await orch.generate_plan(SCENARIO_REQUEST)
    assert result.kind is FailureKind.UPSTREAM_UNAVAILABLE


@pytest.mark.asyncio
async def test_exchanges_are_recorded(make_orchestrator):
    orch = await make_orchestrator("error", pool_size=1, record_exchanges=True)
    await orch.generate_plan(SCENARIO_REQUEST, request_id="req-42")

    (row,) = worker_logs.get_recent_logs()
    assert row["request_id"] == "req-42"
    assert row["status"] == "failed"
    assert row["failure_kind"] == "upstream_protocol_error"
    assert row["output_size_bytes"] > 0
    assert worker_logs.get_log_stats()["failed"] == 1


class _StubLease:
    def __init__(self, pid, reply=None):
        self.pid = pid
        self.slot = 0
        self.outcome = None
        self.exchange_started = False
        self._reply = reply

    async def send(self, frame):
        self.exchange_started = True
        if self._reply is None:
            raise PipeBroken(f"Worker pid={self.pid} closed its input")

    async def receive(self, timeout):
        return self._reply


class _StubPool:
    """Hands out scripted leases so a broken pipe happens deterministically."""

    degraded = False

    def __init__(self, leases):
        self._leases = list(leases)
        self.released = []

    @asynccontextmanager
    async def lease(self, timeout):
        lease = self._leases.pop(0)
        try:
            yield lease
        finally:
            self.released.append(lease)


@pytest.mark.asyncio
async def test_broken_pipe_is_retried_once_on_a_fresh_worker():
    plan_frame = encode_frame({"planId": "p1", "type": "t", "durationWeeks": 1, "workouts": [], "nutrition": {}})
    pool = _StubPool([_StubLease(101), _StubLease(102, plan_frame)])
    orch = PlanOrchestrator(make_config("echo"), pool=pool)

    result = await orch.generate_plan(SCENARIO_REQUEST)
    assert isinstance(result, Plan)
    assert result.plan_id == "p1"
    assert [lease.outcome for lease in pool.released] == [Outcome.UNUSABLE, Outcome.SUCCESS]


@pytest.mark.asyncio
async def test_broken_pipe_twice_is_unavailable():
    pool = _StubPool([_StubLease(101), _StubLease(102)])
    orch = PlanOrchestrator(make_config("echo"), pool=pool)

    result = await orch.generate_plan(SCENARIO_REQUEST)
    assert result.kind is FailureKind.UPSTREAM_UNAVAILABLE
    assert len(pool.released) == 2


@pytest.mark.asyncio
async def test_module_level_orchestrator_lifecycle():
    with pytest.raises(RuntimeError):
        orchestrator_module.get_orchestrator()

    await orchestrator_module.start_orchestrator(make_config("fixed", pool_size=1))
    try:
        result = await orchestrator_module.generate_plan(SCENARIO_REQUEST, request_id="r1")
        assert result.plan_id == "p1"
        assert orchestrator_module.get_orchestrator().pool.capacity == 1
    finally:
        await orchestrator_module.shutdown_orchestrator()

    with pytest.raises(RuntimeError):
        orchestrator_module.get_orchestrator()
