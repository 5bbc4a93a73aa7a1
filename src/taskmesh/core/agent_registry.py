"""Agent registry and capability based agent selection."""

import asyncio
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from .constants import Limits
from .enums import AgentStatus, MatchingPolicy, TaskStatus
from .events import EventBus
from .exceptions import (
    AgentNotFoundError,
    AgentUnavailableError,
    InvalidTransitionError,
    ValidationError,
)
from .models import Agent, ResourceUsage, Task, Workload, utcnow
from .persistence import Store
from .task_store import TaskStore

logger = structlog.get_logger()

TABLE = "agents"


@dataclass(frozen=True)
class Match:
    """Outcome of agent selection for one task."""

    agent: Agent
    tier: str

    @property
    def degraded(self) -> bool:
        return self.tier == CapabilityMatcher.FALLBACK


class CapabilityMatcher:
    """Pick the best idle agent for a task.

    Tiers are tried in order: an exact capability match, then an agent whose
    ``type`` equals the task type, then (only under
    ``MatchingPolicy.ANY_IDLE_FALLBACK``) any idle agent. Inside a tier the
    lowest workload wins, and registration order breaks ties.
    """

    CAPABILITY = "capability"
    AGENT_TYPE = "agent_type"
    FALLBACK = "fallback"

    def __init__(self, policy: MatchingPolicy = MatchingPolicy.CAPABILITY_ONLY):
        self.policy = MatchingPolicy(policy)

    def select(
        self,
        task: Task,
        agents: Iterable[Agent],
        exclude: Collection[str] = (),
    ) -> Match | None:
        candidates = [
            agent
            for agent in agents
            if agent.status == AgentStatus.IDLE and agent.id not in exclude
        ]
        if not candidates:
            return None

        tiers = [
            (self.CAPABILITY, [a for a in candidates if a.can_handle(task.type)]),
            (self.AGENT_TYPE, [a for a in candidates if a.type == task.type]),
        ]
        if self.policy == MatchingPolicy.ANY_IDLE_FALLBACK:
            tiers.append((self.FALLBACK, candidates))

        for tier, agents_in_tier in tiers:
            if agents_in_tier:
                best = min(
                    agents_in_tier, key=lambda a: (a.workload.total, a.created_at)
                )
                if tier == self.FALLBACK:
                    logger.warning(
                        "Degraded match: no capable agent, using any idle agent",
                        task_id=task.id,
                        task_type=task.type,
                        agent_id=best.id,
                        policy=self.policy.value,
                    )
                return Match(agent=best, tier=tier)
        return None


class AgentRegistry:
    """Tracks registered agents, their status, workload and performance."""

    def __init__(
        self,
        store: Store,
        task_store: TaskStore,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_agents: int = Limits.MAX_AGENTS,
    ):
        self.store = store
        self.task_store = task_store
        self.bus = bus or store.bus
        self.clock = clock
        self.max_agents = max_agents
        self._lock = asyncio.Lock()

    async def register_agent(
        self,
        name: str,
        capabilities: Iterable[str],
        type: str = "general",
        configuration: dict[str, Any] | None = None,
    ) -> Agent:
        """Register a new idle agent. At least one capability is required."""
        if not name or not name.strip():
            raise ValidationError("Agent name is required")
        capabilities = [c for c in (c.strip() for c in capabilities) if c]
        if not capabilities:
            raise ValidationError("Agent must declare at least one capability")

        async with self._lock:
            if len(await self.store.query(TABLE)) >= self.max_agents:
                raise ValidationError(f"Agent limit of {self.max_agents} reached")
            now = self.clock()
            agent = Agent(
                name=name.strip(),
                type=type,
                capabilities=capabilities,
                configuration=configuration or {},
                last_activity=now,
                created_at=now,
                updated_at=now,
            )
            await self.store.insert(TABLE, agent.to_record())

        logger.info(
            "Agent registered",
            agent_id=agent.id,
            name=agent.name,
            capabilities=agent.capabilities,
        )
        return agent

    async def unregister_agent(self, agent_id: str) -> list[str]:
        """Cancel the agent's in-flight tasks, then remove it.

        Returns the ids of the cancelled tasks.
        """
        await self.get_agent(agent_id)
        cancelled = await self._cancel_in_flight(agent_id, "Agent unregistered")
        await self.store.delete(TABLE, agent_id)
        logger.info("Agent unregistered", agent_id=agent_id, cancelled_tasks=cancelled)
        return cancelled

    async def restart_agent(self, agent_id: str) -> Agent:
        """Cancel in-flight work, cycle the agent through ``stopped`` and reset it."""
        await self.get_agent(agent_id)
        cancelled = await self._cancel_in_flight(agent_id, "Agent restarted")
        await self.set_status(agent_id, AgentStatus.STOPPED, reason="restart")
        agent = await self.get_agent(agent_id)
        agent = await self._save(
            agent,
            status=AgentStatus.IDLE,
            workload=Workload(),
            current_task_id=None,
            last_activity=self.clock(),
        )
        logger.info("Agent restarted", agent_id=agent_id, cancelled_tasks=cancelled)
        return agent

    async def _cancel_in_flight(self, agent_id: str, reason: str) -> list[str]:
        cancelled = []
        for task in await self.task_store.list_tasks(agent_id=agent_id):
            if task.status in (TaskStatus.ASSIGNED, TaskStatus.RUNNING):
                try:
                    await self.task_store.cancel(task.id, reason=reason)
                    cancelled.append(task.id)
                except InvalidTransitionError:
                    # Finished between the listing and the cancel.
                    continue
        return cancelled

    async def get_agent(self, agent_id: str) -> Agent:
        record = await self.store.get(TABLE, agent_id)
        if record is None:
            raise AgentNotFoundError(agent_id)
        return Agent.from_record(record)

    async def find_agent(self, agent_id: str) -> Agent | None:
        record = await self.store.get(TABLE, agent_id)
        return Agent.from_record(record) if record is not None else None

    async def list_agents(self, status: AgentStatus | str | None = None) -> list[Agent]:
        filters = {"status": AgentStatus(status).value} if status is not None else {}
        return [Agent.from_record(r) for r in await self.store.query(TABLE, **filters)]

    async def agents_with_capability(self, capability: str) -> list[Agent]:
        return [a for a in await self.list_agents() if a.can_handle(capability)]

    async def _save(self, agent: Agent, **changes: Any) -> Agent:
        changes.setdefault("updated_at", self.clock())
        dumped = agent.model_copy(update=changes).to_record()
        record = await self.store.update(
            TABLE, agent.id, {key: dumped[key] for key in changes}
        )
        return Agent.from_record(record)

    async def set_status(
        self, agent_id: str, status: AgentStatus | str, reason: str | None = None
    ) -> Agent:
        """Force an agent status, as done by the scheduler and remediation actions."""
        status = AgentStatus(status)
        agent = await self.get_agent(agent_id)
        if agent.status == status:
            return agent
        previous = agent.status
        agent = await self._save(agent, status=status, last_activity=self.clock())
        logger.info(
            "Agent status changed",
            agent_id=agent_id,
            from_status=previous.value,
            to_status=status.value,
            reason=reason,
        )
        return agent

    async def update_agent_memory(self, agent_id: str, memory: dict[str, Any]) -> Agent:
        agent = await self.get_agent(agent_id)
        return await self._save(agent, memory={**agent.memory, **memory})

    async def report_resource_usage(
        self, agent_id: str, cpu: float, memory: float
    ) -> Agent:
        """Record the latest cpu/memory percentages reported for an agent."""
        for label, value in (("cpu", cpu), ("memory", memory)):
            if not 0 <= value <= 100:
                raise ValidationError(f"{label} usage must be between 0 and 100")
        agent = await self.get_agent(agent_id)
        usage = ResourceUsage(cpu=cpu, memory=memory, reported_at=self.clock())
        return await self._save(agent, resource_usage=usage)

    async def heartbeat(self, agent_id: str) -> Agent:
        agent = await self.get_agent(agent_id)
        return await self._save(agent, last_activity=self.clock())

    # Scheduler bookkeeping

    async def reserve(self, agent_id: str, task_id: str) -> Agent:
        """Count a task as queued on an idle agent."""
        async with self._lock:
            agent = await self.get_agent(agent_id)
            if agent.status != AgentStatus.IDLE:
                raise AgentUnavailableError(agent_id, agent.status.value)
            workload = agent.workload.model_copy(
                update={"queued": agent.workload.queued + 1}
            )
            return await self._save(agent, workload=workload, current_task_id=task_id)

    async def mark_running(self, agent_id: str, task_id: str) -> Agent:
        """Move a queued task to active and the agent to ``running``."""
        async with self._lock:
            agent = await self.get_agent(agent_id)
            workload = agent.workload.model_copy(
                update={
                    "queued": max(0, agent.workload.queued - 1),
                    "active": agent.workload.active + 1,
                }
            )
            agent = await self._save(
                agent,
                workload=workload,
                status=AgentStatus.RUNNING,
                current_task_id=task_id,
                last_activity=self.clock(),
            )
        logger.info("Agent started task", agent_id=agent_id, task_id=task_id)
        return agent

    async def release(
        self,
        agent_id: str,
        task_id: str,
        started: bool = True,
        next_status: AgentStatus = AgentStatus.IDLE,
    ) -> Agent | None:
        """Drop a task from the agent's workload without touching performance."""
        async with self._lock:
            agent = await self.find_agent(agent_id)
            if agent is None:
                return None
            return await self._release(agent, task_id, started, next_status)

    async def record_outcome(
        self,
        agent_id: str,
        task_id: str,
        success: bool,
        duration: float | None = None,
        next_status: AgentStatus = AgentStatus.IDLE,
    ) -> Agent | None:
        """Free the agent after a finished task and fold it into performance."""
        async with self._lock:
            agent = await self.find_agent(agent_id)
            if agent is None:
                return None

            perf = agent.performance
            completed = perf.tasks_completed + (1 if success else 0)
            failed = perf.tasks_failed + (0 if success else 1)
            average = perf.average_execution_time
            if success and duration is not None:
                average = (average * perf.tasks_completed + duration) / completed
            performance = perf.model_copy(
                update={
                    "tasks_completed": completed,
                    "tasks_failed": failed,
                    "average_execution_time": average,
                    "success_rate": completed / (completed + failed) * 100,
                }
            )
            agent = await self._save(agent, performance=performance)
            return await self._release(agent, task_id, True, next_status)

    async def _release(
        self, agent: Agent, task_id: str, started: bool, next_status: AgentStatus
    ) -> Agent:
        workload = agent.workload.model_copy(
            update={
                "active": max(0, agent.workload.active - (1 if started else 0)),
                "queued": max(0, agent.workload.queued - (0 if started else 1)),
            }
        )
        changes: dict[str, Any] = {"workload": workload, "last_activity": self.clock()}
        if agent.current_task_id == task_id:
            changes["current_task_id"] = None
        # A status forced elsewhere while the task ran (paused, stopped) is kept,
        # unless the agent itself is being blamed.
        if agent.status == AgentStatus.RUNNING or next_status == AgentStatus.ERROR:
            changes["status"] = next_status
        agent = await self._save(agent, **changes)
        logger.info(
            "Agent released",
            agent_id=agent.id,
            task_id=task_id,
            status=agent.status.value,
            workload=agent.workload.total,
        )
        return agent
