"""Test fixtures and configuration for TaskMesh tests."""

from datetime import UTC, datetime, timedelta

import pytest

from taskmesh.core.agent_registry import AgentRegistry, CapabilityMatcher
from taskmesh.core.alerts import AlertEngine
from taskmesh.core.collaboration import CollaborationBus
from taskmesh.core.config import Settings, get_settings
from taskmesh.core.enums import MatchingPolicy
from taskmesh.core.events import EventBus
from taskmesh.core.metrics import MetricsCollector
from taskmesh.core.orchestrator import Orchestrator
from taskmesh.core.persistence import InMemoryStore
from taskmesh.core.reports import ReportGenerator
from taskmesh.core.scheduler import Scheduler
from taskmesh.core.task_store import TaskStore
from taskmesh.core.workflows import WorkflowManager
from taskmesh.testing import (
    FixedResourceProbe,
    RecordingActionExecutor,
    ScriptedExecutor,
)


class FixedClock:
    """Manually advanced clock returning timezone-aware datetimes."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def store(bus) -> InMemoryStore:
    return InMemoryStore(bus)


@pytest.fixture
def task_store(store, bus, clock) -> TaskStore:
    return TaskStore(store, bus, clock=clock)


@pytest.fixture
def registry(store, task_store, bus, clock) -> AgentRegistry:
    return AgentRegistry(store, task_store, bus, clock=clock)


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def action_executor() -> RecordingActionExecutor:
    return RecordingActionExecutor()


@pytest.fixture
def probe() -> FixedResourceProbe:
    return FixedResourceProbe()


@pytest.fixture
async def scheduler(task_store, registry, executor, bus):
    scheduler = Scheduler(task_store, registry, executor, bus)
    yield scheduler
    await scheduler.shutdown()


@pytest.fixture
def fallback_scheduler(task_store, registry, executor, bus) -> Scheduler:
    return Scheduler(
        task_store,
        registry,
        executor,
        bus,
        matcher=CapabilityMatcher(MatchingPolicy.ANY_IDLE_FALLBACK),
    )


@pytest.fixture
def collaboration(store, bus, clock) -> CollaborationBus:
    return CollaborationBus(store, bus, clock=clock)


@pytest.fixture
def metrics(store, registry, task_store, bus, probe, clock) -> MetricsCollector:
    return MetricsCollector(store, registry, task_store, bus, probe=probe, clock=clock)


@pytest.fixture
def alerts(store, metrics, action_executor, bus, clock) -> AlertEngine:
    return AlertEngine(store, metrics, action_executor, bus, clock=clock)


@pytest.fixture
def reports(store, task_store, alerts, metrics, clock) -> ReportGenerator:
    return ReportGenerator(store, task_store, alerts, metrics, clock=clock)


@pytest.fixture
def workflows(store, task_store, bus, clock) -> WorkflowManager:
    return WorkflowManager(store, task_store, bus, clock=clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def orchestrator(settings, executor, action_executor, probe) -> Orchestrator:
    return Orchestrator(
        store=InMemoryStore(),
        executor=executor,
        action_executor=action_executor,
        settings=settings,
        probe=probe,
    )


@pytest.fixture
def finish_task(task_store):
    """Drive a task through assigned and running to completed, or failed."""

    async def _finish(task_id: str, agent_id: str, success: bool = True):
        await task_store.assign(task_id, agent_id)
        await task_store.start(task_id)
        if success:
            return await task_store.complete(task_id, {"ok": True})
        return await task_store.fail(task_id, "boom")

    return _finish
