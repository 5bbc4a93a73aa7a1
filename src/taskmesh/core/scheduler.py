"""Priority and dependency aware task dispatcher."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from .agent_registry import AgentRegistry, CapabilityMatcher
from .constants import Channels
from .enums import AgentStatus, TaskStatus
from .events import EventBus, TaskTransition
from .exceptions import AgentExecutionError, InvalidTransitionError
from .executors import TaskExecutor
from .models import Agent, Task
from .task_store import TaskStore

logger = structlog.get_logger()


@dataclass
class TickResult:
    """What one scheduling pass did."""

    skipped: bool = False
    eligible: int = 0
    started: list[tuple[str, str]] = field(default_factory=list)
    unmatched: list[str] = field(default_factory=list)
    errors: int = 0
    duration: float = 0.0

    @property
    def started_task_ids(self) -> list[str]:
        return [task_id for task_id, _ in self.started]


class Scheduler:
    """Pulls eligible tasks, matches them to idle agents and runs them.

    A tick dispatches pending tasks whose dependencies are all completed, in
    priority then FIFO order. Each dispatched task moves to ``assigned`` then
    ``running`` and its execution is handed to the :class:`TaskExecutor` in a
    background asyncio task. A tick never raises because of a single task.
    """

    def __init__(
        self,
        task_store: TaskStore,
        registry: AgentRegistry,
        executor: TaskExecutor,
        bus: EventBus | None = None,
        matcher: CapabilityMatcher | None = None,
        task_timeout: float | None = None,
    ):
        self.task_store = task_store
        self.registry = registry
        self.executor = executor
        self.bus = bus or task_store.bus
        self.matcher = matcher or CapabilityMatcher()
        self.task_timeout = task_timeout

        self._ticking = False
        self._executions: dict[str, asyncio.Task] = {}
        self.ticks = 0
        self.skipped_ticks = 0
        self.bus.subscribe(Channels.TASK_TRANSITIONS, self._on_transition)

    @property
    def in_flight(self) -> list[str]:
        """Ids of tasks whose execution is still running."""
        return list(self._executions)

    async def tick(self) -> TickResult:
        if self._ticking:
            self.skipped_ticks += 1
            logger.debug("Scheduler tick already in progress, skipping")
            return TickResult(skipped=True)

        self._ticking = True
        started_at = time.perf_counter()
        result = TickResult()
        try:
            eligible = await self.task_store.eligible_tasks()
            result.eligible = len(eligible)
            if not eligible:
                return result

            idle_agents = await self.registry.list_agents(status=AgentStatus.IDLE)
            reserved: set[str] = set()

            for task in eligible:
                if len(reserved) >= len(idle_agents):
                    result.unmatched.append(task.id)
                    continue
                try:
                    agent = await self._dispatch(task, idle_agents, reserved)
                except Exception as e:
                    result.errors += 1
                    logger.error(
                        "Failed to dispatch task", task_id=task.id, error=str(e)
                    )
                    continue
                if agent is None:
                    result.unmatched.append(task.id)
                else:
                    result.started.append((task.id, agent.id))
        except Exception as e:
            result.errors += 1
            logger.error("Scheduler tick failed", error=str(e))
        finally:
            self._ticking = False
            self.ticks += 1
            result.duration = time.perf_counter() - started_at

        if result.started:
            logger.info(
                "Scheduler tick dispatched tasks",
                started=len(result.started),
                waiting=len(result.unmatched),
            )
        return result

    async def _dispatch(
        self, task: Task, idle_agents: list[Agent], reserved: set[str]
    ) -> Agent | None:
        match = self.matcher.select(task, idle_agents, exclude=reserved)
        if match is None:
            logger.debug("No suitable agent for task", task_id=task.id, task_type=task.type)
            return None

        agent = match.agent
        # Taken for the rest of this tick before anything can yield.
        reserved.add(agent.id)

        await self.registry.reserve(agent.id, task.id)
        try:
            await self.task_store.assign(task.id, agent.id)
        except Exception:
            await self.registry.release(agent.id, task.id, started=False)
            raise

        try:
            task = await self.task_store.start(task.id)
        except Exception as e:
            logger.error("Failed to start assigned task", task_id=task.id, error=str(e))
            try:
                await self.task_store.cancel(task.id, reason=f"Dispatch failed: {e}")
            except InvalidTransitionError:
                pass
            raise

        agent = await self.registry.mark_running(agent.id, task.id)
        current = await self.task_store.get_task(task.id)
        if current.status != TaskStatus.RUNNING:
            # Cancelled or finished between start and mark_running.
            logger.info(
                "Task left running before execution began",
                task_id=task.id,
                agent_id=agent.id,
                status=current.status.value,
            )
            await self.registry.release(agent.id, task.id, started=True)
            return agent

        logger.info(
            "Task dispatched",
            task_id=task.id,
            agent_id=agent.id,
            match=match.tier,
            priority=task.priority.value,
        )
        self._executions[task.id] = asyncio.create_task(
            self._execute(agent, task), name=f"task-{task.id}"
        )
        return agent

    async def _execute(self, agent: Agent, task: Task) -> None:
        try:
            try:
                call = self.executor.execute(agent, task)
                if self.task_timeout is not None:
                    output = await asyncio.wait_for(call, timeout=self.task_timeout)
                else:
                    output = await call
            except TimeoutError:
                await self.fail_task(
                    task.id, f"Task timed out after {self.task_timeout} seconds"
                )
            except AgentExecutionError as e:
                await self.fail_task(task.id, str(e) or type(e).__name__, blame_agent=True)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self.fail_task(task.id, str(e) or type(e).__name__)
            else:
                if not isinstance(output, dict):
                    output = {"result": output}
                await self.complete_task(task.id, output)
        except InvalidTransitionError as e:
            # Cancelled or reported from elsewhere while executing.
            logger.info("Discarding execution outcome", task_id=task.id, reason=str(e))
        except asyncio.CancelledError:
            logger.info("Task execution aborted", task_id=task.id, agent_id=agent.id)
            raise
        except Exception as e:
            logger.error("Failed to record task outcome", task_id=task.id, error=str(e))
        finally:
            self._executions.pop(task.id, None)

    async def complete_task(self, task_id: str, output_data: dict[str, Any] | None = None) -> Task:
        """Mark a running task completed and free its agent."""
        task = await self.task_store.complete(task_id, output_data)
        self._abandon(task_id)
        if task.assigned_agent_id:
            await self.registry.record_outcome(
                task.assigned_agent_id, task_id, True, task.actual_duration
            )
        return task

    async def fail_task(self, task_id: str, error_message: str, blame_agent: bool = False) -> Task:
        """Mark a running task failed. The agent goes to ``error`` only when blamed."""
        task = await self.task_store.fail(task_id, error_message)
        self._abandon(task_id)
        logger.error(
            "Task failed",
            task_id=task_id,
            agent_id=task.assigned_agent_id,
            error=error_message,
            agent_blamed=blame_agent,
        )
        if task.assigned_agent_id:
            await self.registry.record_outcome(
                task.assigned_agent_id,
                task_id,
                False,
                next_status=AgentStatus.ERROR if blame_agent else AgentStatus.IDLE,
            )
        return task

    def _abandon(self, task_id: str) -> None:
        execution = self._executions.pop(task_id, None)
        if execution is not None and execution is not asyncio.current_task():
            execution.cancel()

    async def _on_transition(self, event: TaskTransition) -> None:
        """Free the agent of a task cancelled while assigned or running."""
        if event.current != TaskStatus.CANCELLED or event.agent_id is None:
            return
        if event.previous not in (TaskStatus.ASSIGNED, TaskStatus.RUNNING):
            return
        self._abandon(event.task_id)
        await self.registry.release(
            event.agent_id, event.task_id, started=event.previous == TaskStatus.RUNNING
        )

    async def wait_for_executions(self, timeout: float | None = None) -> None:
        """Wait until every in-flight execution has finished."""
        pending = list(self._executions.values())
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    async def shutdown(self) -> None:
        """Abort in-flight executions. Their tasks stay ``running``."""
        executions = list(self._executions.values())
        for execution in executions:
            execution.cancel()
        if executions:
            await asyncio.gather(*executions, return_exceptions=True)
        self._executions.clear()
