"""Per-agent and system-wide metrics sampling.

Samples are cached in memory for the alert engine and persisted to the
``metrics_history`` table.
"""

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

import psutil
import structlog

from .agent_registry import AgentRegistry
from .constants import Channels, HealthThresholds, Intervals, Limits
from .enums import AgentStatus, HealthStatus, TaskStatus
from .events import EventBus
from .models import Agent, AgentMetrics, SystemMetrics, Task, new_id, utcnow
from .persistence import Store
from .task_store import TaskStore

logger = structlog.get_logger()

HISTORY = "metrics_history"

AGENT_METRICS = frozenset(AgentMetrics.model_fields) - {"agent_id", "timestamp"}
SYSTEM_METRICS = frozenset(SystemMetrics.model_fields) - {"timestamp"}


def classify_health(
    success_rate: float, error_rate: float, memory_usage: float, cpu_usage: float
) -> HealthStatus:
    """Derive agent health from a snapshot. Rates and usage are percentages."""
    if success_rate == 0 and error_rate == 0:
        return HealthStatus.OFFLINE

    if (
        error_rate > HealthThresholds.CRITICAL_ERROR_RATE
        or memory_usage > HealthThresholds.CRITICAL_RESOURCE
        or cpu_usage > HealthThresholds.CRITICAL_RESOURCE
    ):
        return HealthStatus.CRITICAL

    if (
        error_rate > HealthThresholds.WARNING_ERROR_RATE
        or success_rate < HealthThresholds.WARNING_SUCCESS_RATE
        or memory_usage > HealthThresholds.WARNING_RESOURCE
        or cpu_usage > HealthThresholds.WARNING_RESOURCE
    ):
        return HealthStatus.WARNING

    return HealthStatus.HEALTHY


@dataclass(frozen=True)
class HostUsage:
    cpu: float
    memory: float
    disk: float


class ResourceProbe(Protocol):
    def agent_usage(self, agent: Agent) -> tuple[float, float]:
        """(cpu, memory) percentages for one agent."""

    def host_usage(self) -> HostUsage: ...


class PsutilProbe:
    """Host usage from psutil; agent usage from what agents last reported."""

    def __init__(self, disk_path: str = "/"):
        self.disk_path = disk_path

    def agent_usage(self, agent: Agent) -> tuple[float, float]:
        return agent.resource_usage.cpu, agent.resource_usage.memory

    def host_usage(self) -> HostUsage:
        return HostUsage(
            cpu=psutil.cpu_percent(interval=None),
            memory=psutil.virtual_memory().percent,
            disk=psutil.disk_usage(self.disk_path).percent,
        )


def _rates(completed: int, failed: int) -> tuple[float, float]:
    finished = completed + failed
    if finished == 0:
        return 0.0, 0.0
    return completed / finished * 100, failed / finished * 100


class MetricsCollector:
    """Samples agent and system metrics into a bounded in-memory cache."""

    def __init__(
        self,
        store: Store,
        registry: AgentRegistry,
        task_store: TaskStore,
        bus: EventBus | None = None,
        probe: ResourceProbe | None = None,
        clock: Callable[[], datetime] = utcnow,
        agent_window: float = Intervals.AGENT_METRICS_WINDOW,
        system_window: float = Intervals.SYSTEM_METRICS_WINDOW,
        history_limit: int = Limits.MAX_METRICS_HISTORY,
        persist: bool = True,
    ):
        self.store = store
        self.registry = registry
        self.task_store = task_store
        self.bus = bus or store.bus
        self.probe = probe or PsutilProbe()
        self.clock = clock
        self.agent_window = timedelta(seconds=agent_window)
        self.system_window = timedelta(seconds=system_window)
        self.history_limit = history_limit
        self.persist = persist

        self.started_at = time.monotonic()
        self._agent_cache: dict[str, deque[AgentMetrics]] = {}
        self._system_cache: deque[SystemMetrics] = deque(maxlen=history_limit)

    async def collect(self) -> SystemMetrics:
        """Sample every agent, then the system. One failing agent is skipped."""
        agents = await self.registry.list_agents()
        tasks = await self.task_store.list_tasks()
        known = set()
        for agent in agents:
            known.add(agent.id)
            try:
                await self.collect_agent_metrics(agent, tasks)
            except Exception as e:
                logger.error("Failed to collect agent metrics", agent_id=agent.id, error=str(e))

        for agent_id in set(self._agent_cache) - known:
            del self._agent_cache[agent_id]

        return await self.collect_system_metrics(agents, tasks)

    async def collect_agent_metrics(
        self, agent: Agent, tasks: list[Task] | None = None, record: bool = True
    ) -> AgentMetrics:
        """Sample one agent. With ``record=False`` the snapshot is only returned."""
        now = self.clock()
        if tasks is None:
            tasks = await self.task_store.list_tasks(agent_id=agent.id)
        since = now - self.agent_window
        recent = [
            t for t in tasks if t.assigned_agent_id == agent.id and t.created_at >= since
        ]
        completed = [t for t in recent if t.status == TaskStatus.COMPLETED]
        failed = [t for t in recent if t.status == TaskStatus.FAILED]
        durations = [t.actual_duration for t in completed if t.actual_duration is not None]
        average = sum(durations) / len(durations) if durations else 0.0
        success_rate, error_rate = _rates(len(completed), len(failed))
        cpu, memory = self.probe.agent_usage(agent)

        snapshot = AgentMetrics(
            agent_id=agent.id,
            tasks_completed=len(completed),
            tasks_failed=len(failed),
            average_execution_time=average,
            memory_usage=memory,
            cpu_usage=cpu,
            error_rate=error_rate,
            success_rate=success_rate,
            throughput=len(recent),
            response_time=average,
            uptime=(now - agent.created_at).total_seconds(),
            health_status=classify_health(success_rate, error_rate, memory, cpu),
            timestamp=now,
        )
        if not record:
            return snapshot
        cache = self._agent_cache.setdefault(agent.id, deque(maxlen=self.history_limit))
        cache.append(snapshot)
        await self._persist("agent", snapshot.model_dump(mode="json"), agent.id)
        await self.bus.publish(Channels.METRICS, snapshot)
        return snapshot

    async def collect_system_metrics(
        self,
        agents: list[Agent] | None = None,
        tasks: list[Task] | None = None,
        record: bool = True,
    ) -> SystemMetrics:
        now = self.clock()
        agents = agents if agents is not None else await self.registry.list_agents()
        tasks = tasks if tasks is not None else await self.task_store.list_tasks()
        recent = [t for t in tasks if t.created_at >= now - self.system_window]

        def count(status: TaskStatus) -> int:
            return sum(1 for t in recent if t.status == status)

        completed, failed = count(TaskStatus.COMPLETED), count(TaskStatus.FAILED)
        _, error_rate = _rates(completed, failed)
        host = self.probe.host_usage()

        snapshot = SystemMetrics(
            total_agents=len(agents),
            active_agents=sum(1 for a in agents if a.status == AgentStatus.RUNNING),
            idle_agents=sum(1 for a in agents if a.status == AgentStatus.IDLE),
            error_agents=sum(1 for a in agents if a.status == AgentStatus.ERROR),
            total_tasks=len(recent),
            pending_tasks=count(TaskStatus.PENDING),
            running_tasks=count(TaskStatus.RUNNING),
            completed_tasks=completed,
            failed_tasks=failed,
            throughput=completed / (self.system_window.total_seconds() / 3600),
            error_rate=error_rate,
            average_system_load=host.cpu,
            memory_usage_percentage=host.memory,
            disk_usage_percentage=host.disk,
            uptime=time.monotonic() - self.started_at,
            timestamp=now,
        )
        if not record:
            return snapshot
        self._system_cache.append(snapshot)
        await self._persist("system", snapshot.model_dump(mode="json"))
        await self.bus.publish(Channels.METRICS, snapshot)
        logger.debug(
            "System metrics collected",
            agents=snapshot.total_agents,
            tasks=snapshot.total_tasks,
            error_rate=snapshot.error_rate,
        )
        return snapshot

    async def _persist(self, kind: str, data: dict[str, Any], agent_id: str | None = None) -> None:
        if not self.persist:
            return
        await self.store.insert(
            HISTORY,
            {
                "id": new_id(),
                "kind": kind,
                "agent_id": agent_id,
                "timestamp": data["timestamp"],
                "data": data,
            },
        )

    def latest_agent_metrics(self, agent_id: str) -> AgentMetrics | None:
        cache = self._agent_cache.get(agent_id)
        return cache[-1] if cache else None

    def latest_system_metrics(self) -> SystemMetrics | None:
        return self._system_cache[-1] if self._system_cache else None

    def agent_history(self, agent_id: str, limit: int | None = None) -> list[AgentMetrics]:
        history = list(self._agent_cache.get(agent_id, ()))
        return history[-limit:] if limit else history

    def system_history(self, limit: int | None = None) -> list[SystemMetrics]:
        history = list(self._system_cache)
        return history[-limit:] if limit else history

    def current_value(self, metric: str, agent_id: str | None = None) -> Any:
        """Latest cached value of ``metric``, or None if nothing is cached yet."""
        snapshot = (
            self.latest_agent_metrics(agent_id)
            if agent_id is not None
            else self.latest_system_metrics()
        )
        if snapshot is None:
            logger.debug("No cached metrics", metric=metric, agent_id=agent_id)
            return None
        value = getattr(snapshot, metric, None)
        if isinstance(value, HealthStatus):
            return value.value
        return value

    async def stored_history(
        self, kind: str = "system", agent_id: str | None = None, since: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Persisted snapshots of one kind, oldest first."""
        filters: dict[str, Any] = {"kind": kind}
        if agent_id is not None:
            filters["agent_id"] = agent_id
        records = await self.store.query(HISTORY, **filters)
        snapshots = [record["data"] for record in records]
        if since is not None:
            model = AgentMetrics if kind == "agent" else SystemMetrics
            snapshots = [
                s for s in snapshots if model.model_validate(s).timestamp >= since
            ]
        return snapshots
