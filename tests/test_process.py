import asyncio
import sys

import pytest

from plangen.worker.codec import decode_frame, decode_response, encode_request
from plangen.worker.errors import FrameTooLarge, PipeBroken, SpawnError, StreamClosed, WorkerTimeout
from plangen.worker.process import WorkerProcess
from plangen.worker.protocol import Plan, PlanRequest, WorkerState

from .conftest import fake_command


async def spawn_ready(mode: str = "echo", **params) -> WorkerProcess:
    worker = await WorkerProcess.spawn(fake_command(mode, **params))
    await worker.wait_ready(10.0)
    return worker


@pytest.mark.asyncio
async def test_handshake_then_exchange():
    worker = await spawn_ready("echo")
    try:
        assert worker.state is WorkerState.IDLE
        assert worker.model == "fake"
        assert worker.is_alive()

        for user in ("u1", "u2"):
            await worker.write(encode_request(PlanRequest(user_id=user, goals=["fat_loss"], preferences=None, health_data=None)))
            plan = decode_response(await worker.read_response(5.0))
            assert isinstance(plan, Plan)
            assert plan.plan_id == f"plan-{user}"
            assert plan.nutrition["pid"] == worker.pid
    finally:
        await worker.terminate(1.0)
    assert worker.state is WorkerState.DEAD
    assert not worker.is_alive()


@pytest.mark.asyncio
async def test_spawn_missing_program():
    with pytest.raises(SpawnError) as exc_info:
        await WorkerProcess.spawn(["/nonexistent/plan-worker"])
    assert not exc_info.value.resource_exhausted


@pytest.mark.asyncio
async def test_worker_dying_during_startup_is_a_spawn_error():
    worker = await WorkerProcess.spawn(fake_command("die_on_start"))
    with pytest.raises(SpawnError, match="exited before becoming ready"):
        await worker.wait_ready(10.0)
    assert not worker.is_alive()


@pytest.mark.asyncio
async def test_protocol_mismatch_is_a_spawn_error():
    worker = await WorkerProcess.spawn(fake_command("badhello"))
    with pytest.raises(SpawnError, match="protocol_mismatch"):
        await worker.wait_ready(10.0)
    await worker.wait()
    assert worker.state is WorkerState.DEAD


@pytest.mark.asyncio
async def test_startup_timeout_kills_the_process():
    worker = await WorkerProcess.spawn([sys.executable, "-c", "import time; time.sleep(60)"])
    with pytest.raises(SpawnError, match="not ready"):
        await worker.wait_ready(0.3)
    assert await asyncio.wait_for(worker.wait(), 5.0) != 0


@pytest.mark.asyncio
async def test_read_timeout():
    worker = await spawn_ready("hang")
    try:
        await worker.write(encode_request(PlanRequest(user_id="u1", goals=[], preferences=None, health_data=None)))
        with pytest.raises(WorkerTimeout):
            await worker.read_response(0.2)
    finally:
        await worker.terminate(1.0)


@pytest.mark.asyncio
async def test_crash_closes_stream_without_partial_bytes():
    worker = await spawn_ready("crash")
    await worker.write(encode_request(PlanRequest(user_id="u1", goals=[], preferences=None, health_data=None)))
    with pytest.raises(StreamClosed) as exc_info:
        await worker.read_response(5.0)
    assert exc_info.value.partial_bytes == 0
    assert await worker.wait() == 3


@pytest.mark.asyncio
async def test_truncated_frame_reports_partial_bytes():
    worker = await spawn_ready("truncated")
    await worker.write(encode_request(PlanRequest(user_id="u1", goals=[], preferences=None, health_data=None)))
    with pytest.raises(StreamClosed) as exc_info:
        await worker.read_response(5.0)
    assert exc_info.value.partial_bytes > 4
    await worker.terminate(1.0)


@pytest.mark.asyncio
async def test_oversized_header_is_rejected_before_reading():
    worker = await spawn_ready("oversized")
    try:
        await worker.write(encode_request(PlanRequest(user_id="u1", goals=[], preferences=None, health_data=None)))
        with pytest.raises(FrameTooLarge):
            await worker.read_response(5.0)
    finally:
        await worker.terminate(1.0)


@pytest.mark.asyncio
async def test_write_after_exit_is_pipe_broken():
    worker = await spawn_ready("echo")
    await worker.terminate(1.0)
    with pytest.raises(PipeBroken):
        await worker.write(encode_request(PlanRequest(user_id="u1", goals=[], preferences=None, health_data=None)))


@pytest.mark.asyncio
async def test_terminate_escalates_to_sigkill():
    # Ignores SIGTERM and never closes stdout
    script = (
        "import signal, sys, time, json, struct\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "body = json.dumps({'ready': True, 'protocol': 1, 'model': 'stubborn'}).encode()\n"
        "sys.stdout.buffer.write(struct.pack('>I', len(body)) + body)\n"
        "sys.stdout.buffer.flush()\n"
        "time.sleep(60)\n"
    )
    worker = await WorkerProcess.spawn([sys.executable, "-c", script])
    await worker.wait_ready(10.0)
    await worker.terminate(0.3)
    assert not worker.is_alive()
    assert worker.returncode == -9


@pytest.mark.asyncio
async def test_info_and_memory():
    worker = await spawn_ready("echo")
    try:
        info = worker.info()
        assert info["pid"] == worker.pid
        assert info["state"] == "idle"
        assert info["alive"] is True
        assert info["memory_rss_mb"] is None or info["memory_rss_mb"] > 0
    finally:
        await worker.terminate(1.0)
    assert worker.memory_rss_mb() is None


def test_garbage_frame_decodes_to_error():
    # A well-framed non-JSON reply only fails in the codec, never in the reader
    assert decode_frame(b"\x00\x00\x00\x05nope!").code == "invalid_json"
