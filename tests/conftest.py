"""Shared pytest fixtures for loopguard tests."""

import pytest
import pytest_asyncio

from loopguard.config.constants import ENV_VAR_DEFINITIONS
from loopguard.config.settings import GateConfig
from loopguard.services.offload_gate import OffloadGate


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep LOOPGUARD_* variables from the developer's shell out of tests."""
    for name in ENV_VAR_DEFINITIONS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def thread_config():
    """Two thread workers for cpu-bound items, two more for blocking-io."""
    return GateConfig(max_workers=2, worker_kind="thread", io_workers=2)


@pytest_asyncio.fixture
async def thread_gate(thread_config):
    gate = OffloadGate(thread_config)
    yield gate
    await gate.shutdown(drain=False)


@pytest_asyncio.fixture
async def process_gate():
    """A real process-backed gate (spawn start method for portability)."""
    gate = OffloadGate(GateConfig(max_workers=2, worker_kind="process", io_workers=1, mp_start_method="spawn"))
    yield gate
    await gate.shutdown(drain=False)
