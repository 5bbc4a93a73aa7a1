"""Fake executors, probe and Redis client for deterministic testing."""

import asyncio
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from ..core.enums import ActionType
from ..core.exceptions import ActionExecutionError
from ..core.executors import ActionContext
from ..core.metrics import HostUsage
from ..core.models import Agent, Task


class ScriptedExecutor:
    """Task executor whose behaviour is scripted per task type.

    ``results`` maps a task type to an output dict or to a callable building one
    from the task. ``errors`` maps a task type to the exception to raise. A
    task type listed in ``gates`` blocks until its event is set.
    """

    def __init__(
        self,
        results: dict[str, dict[str, Any] | Callable[[Task], Any]] | None = None,
        errors: dict[str, BaseException] | None = None,
        gates: dict[str, asyncio.Event] | None = None,
        default: dict[str, Any] | None = None,
    ):
        self.results = results or {}
        self.errors = errors or {}
        self.gates = gates or {}
        self.default = default if default is not None else {"status": "ok"}
        self.calls: list[tuple[str, str]] = []
        self.finished: list[str] = []

    def gate(self, task_type: str) -> asyncio.Event:
        """Block executions of ``task_type`` until the returned event is set."""
        return self.gates.setdefault(task_type, asyncio.Event())

    async def execute(self, agent: Agent, task: Task) -> Any:
        self.calls.append((agent.id, task.id))
        gate = self.gates.get(task.type)
        if gate is not None:
            await gate.wait()
        if task.type in self.errors:
            raise self.errors[task.type]
        result = self.results.get(task.type, self.default)
        if callable(result):
            result = result(task)
        self.finished.append(task.id)
        return result

    async def wait_for_calls(self, count: int, timeout: float = 1.0) -> None:
        """Wait until at least ``count`` executions have started."""

        async def _poll() -> None:
            while len(self.calls) < count:
                await asyncio.sleep(0)

        await asyncio.wait_for(_poll(), timeout)

    def task_ids(self) -> list[str]:
        return [task_id for _, task_id in self.calls]


class RecordingActionExecutor:
    """Action executor that records every call and fails on chosen types."""

    def __init__(self, fail_on: set[ActionType | str] | None = None):
        self.fail_on = {ActionType(t) for t in fail_on or ()}
        self.calls: list[tuple[ActionType, dict[str, Any], ActionContext]] = []

    async def execute(
        self, action_type: ActionType, parameters: dict[str, Any], context: ActionContext
    ) -> Any:
        action_type = ActionType(action_type)
        self.calls.append((action_type, parameters, context))
        if action_type in self.fail_on:
            raise ActionExecutionError(f"Scripted failure for {action_type.value}")
        return {"executed": action_type.value}

    def types(self) -> list[ActionType]:
        return [action_type for action_type, _, _ in self.calls]


class FixedResourceProbe:
    """Resource probe returning fixed figures, optionally per agent."""

    def __init__(
        self,
        cpu: float = 10.0,
        memory: float = 20.0,
        disk: float = 30.0,
        agents: dict[str, tuple[float, float]] | None = None,
    ):
        self.host = HostUsage(cpu=cpu, memory=memory, disk=disk)
        self.agents = agents or {}

    def agent_usage(self, agent: Agent) -> tuple[float, float]:
        return self.agents.get(agent.id, (agent.resource_usage.cpu, agent.resource_usage.memory))

    def host_usage(self) -> HostUsage:
        return self.host


class FakeRedis:
    """Deterministic stand-in for the ``redis.asyncio`` client used by the change relay."""

    def __init__(self, fail_publish: bool = False):
        self.fail_publish = fail_publish
        self.published: dict[str, list[str]] = defaultdict(list)
        self.closed = False

    async def publish(self, channel: str, message: str) -> int:
        if self.fail_publish:
            raise ConnectionError("Fake Redis is unavailable")
        self.published[channel].append(message)
        return 1

    async def aclose(self) -> None:
        self.closed = True

    def messages(self, channel: str) -> list[str]:
        return list(self.published.get(channel, []))
