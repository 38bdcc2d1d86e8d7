"""
Global pytest configuration and fixtures for test isolation.

Resets module-level singletons between tests and provides a scripted
in-process job API so run drivers can be exercised without a network.
"""

import asyncio
import random
import sys
from collections.abc import Callable
from typing import Any

import pytest

from creatorscope.config.settings import ResilienceConfig, ScraperConfig, Settings
from creatorscope.core.circuit_breaker import CircuitBreaker
from creatorscope.core.pipeline import PipelineRegistry
from creatorscope.core.retry import RetryOptions
from creatorscope.core.runner import JobGateway
from creatorscope.jobs.client import JobClient, JobRun
from creatorscope.streaming.channel import EventChannel


def reset_all_global_state():
    """Reset cached settings, the container and observability singletons."""
    random.seed(1337)

    from creatorscope.config.container import get_container
    from creatorscope.config.settings import get_settings

    get_settings.cache_clear()
    get_container.cache_clear()

    for module_name in ("creatorscope.observability.tracing", "creatorscope.observability.metrics"):
        module = sys.modules.get(module_name)
        if module is None:
            continue
        for var_name in ("_tracing_manager", "_metrics_collector"):
            if hasattr(module, var_name):
                setattr(module, var_name, None)


@pytest.fixture(autouse=True)
def test_isolation():
    """Per-test isolation to ensure clean state for each test."""
    reset_all_global_state()
    yield


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Output = list[dict[str, Any]] | Exception | Callable[[dict[str, Any]], Any]


class FakeJobClient(JobClient):
    """Scripted actor API.

    `outputs` maps an actor id to its dataset items, to an exception raised by
    `start_run`, or to a callable receiving the actor input and returning
    either. `statuses` maps an actor id to its final run status. Setting
    `gate` makes every `get_run` wait until the event is set.
    """

    def __init__(
        self,
        outputs: dict[str, Output] | None = None,
        statuses: dict[str, str] | None = None,
        logs: dict[str, list[str]] | None = None,
    ):
        self.outputs = outputs or {}
        self.statuses = statuses or {}
        self.logs = logs or {}
        self.gate: asyncio.Event | None = None
        self.get_run_errors: list[Exception] = []
        self.calls: list[tuple[str, str]] = []
        self.inputs: list[tuple[str, dict[str, Any]]] = []
        self._runs: dict[str, str] = {}
        self._items: dict[str, list[dict[str, Any]]] = {}

    async def start_run(self, actor_id: str, actor_input: dict[str, Any]) -> JobRun:
        self.calls.append(("start_run", actor_id))
        self.inputs.append((actor_id, actor_input))

        output = self.outputs.get(actor_id, [])
        if callable(output) and not isinstance(output, Exception):
            output = output(actor_input)
        if isinstance(output, Exception):
            raise output

        run_id = f"run-{len(self._runs) + 1}"
        self._runs[run_id] = actor_id
        self._items[run_id] = list(output)
        return JobRun(id=run_id, status="RUNNING", dataset_id=f"ds-{run_id}")

    async def get_run(self, run_id: str) -> JobRun:
        self.calls.append(("get_run", run_id))
        if self.gate is not None:
            await self.gate.wait()
        if self.get_run_errors:
            raise self.get_run_errors.pop(0)
        actor_id = self._runs[run_id]
        return JobRun(
            id=run_id, status=self.statuses.get(actor_id, "SUCCEEDED"), dataset_id=f"ds-{run_id}"
        )

    async def get_log(self, run_id: str) -> str:
        self.calls.append(("get_log", run_id))
        return "\n".join(self.logs.get(self._runs[run_id], []))

    async def list_items(self, dataset_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        self.calls.append(("list_items", dataset_id))
        return list(self._items[dataset_id.removeprefix("ds-")])


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_job_client():
    return FakeJobClient()


@pytest.fixture
def breaker():
    return CircuitBreaker("scraper-test", failure_threshold=5, recovery_timeout=60.0)


@pytest.fixture
def fast_retry():
    return RetryOptions(max_retries=2, initial_delay=0.0, backoff_factor=2.0)


@pytest.fixture
def gateway(fake_job_client, breaker, fast_retry):
    return JobGateway(
        fake_job_client,
        breaker,
        fast_retry,
        call_timeout=1.0,
        poll_interval=0.0,
        run_timeout=5.0,
    )


@pytest.fixture
def registry():
    return PipelineRegistry()


@pytest.fixture
def channel():
    return EventChannel("test-run")


@pytest.fixture
def test_settings():
    """Settings tuned for fast in-process runs."""
    return Settings(
        scraper=ScraperConfig(poll_interval=0.01, run_timeout=5.0),
        resilience=ResilienceConfig(max_retries=1, initial_delay=0.0, call_timeout=1.0),
    )


# Suppress specific warnings that are expected during testing
@pytest.fixture(autouse=True)
def suppress_warnings():
    """Suppress expected warnings during testing."""
    import warnings

    warnings.filterwarnings("ignore", category=ResourceWarning)

    yield
