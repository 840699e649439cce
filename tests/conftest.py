import asyncio
import sys
from pathlib import Path

import pytest
import pytest_asyncio

from plangen.config import GatewayConfig
from plangen.worker.orchestrator import PlanOrchestrator
from plangen.worker.pool import WorkerPool

FAKE_WORKER = Path(__file__).parent / "fake_worker.py"


def fake_command(mode: str = "echo", **params) -> list:
    command = [sys.executable, str(FAKE_WORKER), "--model-path", "unused", f"mode={mode}"]
    command.extend(f"{key}={value}" for key, value in params.items())
    return command


def make_config(mode: str = "echo", worker_params=None, **overrides) -> GatewayConfig:
    """Gateway config driving fake workers with short test timings."""
    settings = dict(
        worker_command=fake_command(mode, **(worker_params or {})),
        pool_size=2,
        request_timeout=5.0,
        acquire_timeout=2.0,
        respawn_backoff=0.05,
        respawn_backoff_max=0.2,
        startup_timeout=10.0,
        terminate_grace=1.0,
        health_check_interval=0.1,
    )
    settings.update(overrides)
    return GatewayConfig(**settings).validate()


async def wait_for_capacity(pool: WorkerPool, timeout: float = 10.0) -> None:
    """Wait until every slot holds an idle worker again."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while pool.idle_count() < pool.capacity:
        assert loop.time() < deadline, f"pool stuck at {pool.idle_count()}/{pool.capacity} idle"
        await asyncio.sleep(0.02)


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    """Keep the settings database and exchange log out of the project tree."""
    monkeypatch.setenv("PLANGEN_DATA_DIR", str(tmp_path / "data"))
    return tmp_path / "data"


@pytest_asyncio.fixture
async def orchestrator():
    async with PlanOrchestrator(make_config("echo")) as orch:
        yield orch


@pytest_asyncio.fixture
async def make_orchestrator():
    """Factory for orchestrators over a given fake worker mode; all are shut down afterwards."""
    created = []

    async def factory(mode: str = "echo", worker_params=None, **overrides) -> PlanOrchestrator:
        orch = PlanOrchestrator(make_config(mode, worker_params, **overrides))
        created.append(orch)
        await orch.start()
        return orch

    yield factory

    for orch in created:
        await orch.shutdown()
