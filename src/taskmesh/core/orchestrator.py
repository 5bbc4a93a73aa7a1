"""Orchestrator service wiring the TaskMesh components together.

One instance is built at process start with its collaborators injected; nothing
here is a module-level singleton.
"""

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import structlog

from .agent_registry import AgentRegistry, CapabilityMatcher
from .alerts import AlertEngine
from .async_db import SQLAlchemyStore
from .collaboration import CollaborationBus
from .config import Settings, get_settings
from .enums import AgentStatus, TaskPriority, TaskStatus
from .events import RedisChangeRelay
from .executors import ActionDispatcher, ActionExecutor, TaskExecutor, UnconfiguredTaskExecutor
from .metrics import MetricsCollector, ResourceProbe
from .models import Agent, Task, utcnow
from .periodic import PeriodicLoop
from .persistence import TABLES, InMemoryStore, Store
from .reports import ReportGenerator
from .scheduler import Scheduler, TickResult
from .task_store import TaskStore
from .workflows import WorkflowManager

logger = structlog.get_logger()


class Orchestrator:
    """Owns the components and their three background loops.

    ``executor`` performs agent work and ``action_executor`` carries out alert
    remediation; both default to implementations that need no external runtime.
    """

    def __init__(
        self,
        store: Store | None = None,
        executor: TaskExecutor | None = None,
        action_executor: ActionExecutor | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        probe: ResourceProbe | None = None,
        change_relay: RedisChangeRelay | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or InMemoryStore()
        self.bus = self.store.bus
        self.clock = clock

        self.task_store = TaskStore(self.store, self.bus, clock=clock)
        self.registry = AgentRegistry(
            self.store,
            self.task_store,
            self.bus,
            clock=clock,
            max_agents=self.settings.max_agents,
        )
        self.collaboration = CollaborationBus(self.store, self.bus, clock=clock)
        self.scheduler = Scheduler(
            self.task_store,
            self.registry,
            executor or UnconfiguredTaskExecutor(),
            self.bus,
            matcher=CapabilityMatcher(self.settings.matching_policy),
            task_timeout=self.settings.task_timeout,
        )
        self.metrics = MetricsCollector(
            self.store,
            self.registry,
            self.task_store,
            self.bus,
            probe=probe,
            clock=clock,
            agent_window=self.settings.agent_metrics_window,
            system_window=self.settings.system_metrics_window,
        )
        self.action_executor = action_executor or ActionDispatcher(
            self.registry, self.collaboration
        )
        self.alerts = AlertEngine(
            self.store,
            self.metrics,
            self.action_executor,
            self.bus,
            clock=clock,
            cooldown_anchor=self.settings.alert_cooldown_anchor,
            default_cooldown=self.settings.default_alert_cooldown,
        )
        self.reports = ReportGenerator(
            self.store, self.task_store, self.alerts, self.metrics, clock=clock
        )
        self.workflows = WorkflowManager(self.store, self.task_store, self.bus, clock=clock)

        if change_relay is None and self.settings.change_relay_enabled:
            change_relay = RedisChangeRelay.from_url(self.bus, self.settings.redis_url, TABLES)
        self.change_relay = change_relay

        self.loops = {
            "scheduler": PeriodicLoop(
                "scheduler", self.settings.scheduler_interval, self.scheduler.tick
            ),
            "metrics": PeriodicLoop(
                "metrics", self.settings.metrics_interval, self.metrics.collect
            ),
            "alerts": PeriodicLoop(
                "alerts",
                self.settings.alert_interval,
                self.alerts.evaluate_all,
                run_immediately=False,
            ),
        }
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> "Orchestrator":
        """Build an orchestrator over the store named by ``settings.database_url``."""
        settings = settings or get_settings()
        store = (
            SQLAlchemyStore(settings.database_url, echo=settings.database_echo)
            if settings.database_url
            else InMemoryStore()
        )
        return cls(store=store, settings=settings, **kwargs)

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self, run_loops: bool = True) -> None:
        if self._started:
            return
        await self.store.initialize()
        if self.change_relay is not None:
            await self.change_relay.start()
        if run_loops:
            for loop in self.loops.values():
                loop.start()
        self._started = True
        logger.info(
            "Orchestrator started",
            store=type(self.store).__name__,
            loops=list(self.loops) if run_loops else [],
            matching_policy=self.settings.matching_policy.value,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        for loop in self.loops.values():
            await loop.stop()
        await self.scheduler.shutdown()
        if self.change_relay is not None:
            await self.change_relay.stop()
        await self.store.close()
        self._started = False
        logger.info("Orchestrator stopped")

    async def __aenter__(self) -> "Orchestrator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # Facade

    async def register_agent(
        self, name: str, capabilities: Iterable[str], **options: Any
    ) -> Agent:
        return await self.registry.register_agent(name, capabilities, **options)

    async def unregister_agent(self, agent_id: str) -> list[str]:
        return await self.registry.unregister_agent(agent_id)

    async def update_agent_status(self, agent_id: str, status: AgentStatus | str) -> Agent:
        return await self.registry.set_status(agent_id, status, reason="manual")

    async def submit_task(
        self,
        name: str,
        type: str,
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        **options: Any,
    ) -> Task:
        return await self.task_store.create_task(name, type, priority, **options)

    async def cancel_task(self, task_id: str, reason: str | None = None) -> Task:
        return await self.task_store.cancel(task_id, reason=reason)

    async def complete_task(self, task_id: str, output_data: dict[str, Any] | None = None) -> Task:
        return await self.scheduler.complete_task(task_id, output_data)

    async def fail_task(self, task_id: str, error_message: str, blame_agent: bool = False) -> Task:
        return await self.scheduler.fail_task(task_id, error_message, blame_agent)

    async def tick(self) -> TickResult:
        """Run one scheduling pass now."""
        return await self.scheduler.tick()

    async def stats(self) -> dict[str, Any]:
        counts = await self.task_store.counts_by_status()
        agents = await self.registry.list_agents()
        return {
            "queue_depth": counts[TaskStatus.PENDING.value],
            "running": counts[TaskStatus.RUNNING.value],
            "tasks": counts,
            "agents": {
                status.value: sum(1 for a in agents if a.status == status)
                for status in AgentStatus
            },
            "in_flight_executions": len(self.scheduler.in_flight),
            "loops": {
                name: {
                    "running": loop.is_running,
                    "ticks": loop.ticks,
                    "skipped": loop.skipped,
                    "errors": loop.errors,
                }
                for name, loop in self.loops.items()
            },
        }
