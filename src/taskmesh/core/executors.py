"""Execution and remediation-action collaborators.

The orchestration core never performs agent work or remediation effects itself.
It calls a :class:`TaskExecutor` to run a task on an agent and an
:class:`ActionExecutor` to carry out an alert action by name.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import structlog

from .constants import SYSTEM_SENDER
from .enums import ActionType, MessagePriority, MessageType
from .exceptions import ActionExecutionError
from .models import Agent, Alert, MonitoringRule, Task

logger = structlog.get_logger()


@runtime_checkable
class TaskExecutor(Protocol):
    """Performs a task's actual work on behalf of an agent.

    Returns the output payload, or raises. Raising
    :class:`~taskmesh.core.exceptions.AgentExecutionError` blames the agent.
    """

    async def execute(self, agent: Agent, task: Task) -> dict[str, Any]: ...


@dataclass(frozen=True)
class ActionContext:
    """What an action executor knows about the alert that triggered it."""

    alert: Alert
    rule: MonitoringRule

    @property
    def agent_id(self) -> str | None:
        return self.alert.agent_id


@runtime_checkable
class ActionExecutor(Protocol):
    async def execute(
        self, action_type: ActionType, parameters: dict[str, Any], context: ActionContext
    ) -> Any: ...


ActionHandler = Callable[[dict[str, Any], ActionContext], Awaitable[Any]]


class UnconfiguredTaskExecutor:
    """Default executor for a process that has no agent runtime attached.

    Tasks dispatched to it fail, and the agent is not blamed.
    """

    async def execute(self, agent: Agent, task: Task) -> dict[str, Any]:
        raise RuntimeError(f"No task executor configured for task type '{task.type}'")


class ActionDispatcher:
    """Routes remediation actions to handlers registered by name.

    ``restart_agent`` and ``notify_admin`` have built-in handlers that use the
    registry and the collaboration bus. ``scale_resources`` and ``run_script``
    are environment specific: without a registered handler they are only logged.
    """

    def __init__(self, registry: Any = None, collaboration: Any = None):
        self.registry = registry
        self.collaboration = collaboration
        self._handlers: dict[ActionType, ActionHandler] = {}
        if registry is not None:
            self._handlers[ActionType.RESTART_AGENT] = self._restart_agent
        if collaboration is not None:
            self._handlers[ActionType.NOTIFY_ADMIN] = self._notify_admin

    def register(self, action_type: ActionType | str, handler: ActionHandler) -> None:
        self._handlers[ActionType(action_type)] = handler

    def has_handler(self, action_type: ActionType | str) -> bool:
        return ActionType(action_type) in self._handlers

    async def execute(
        self, action_type: ActionType, parameters: dict[str, Any], context: ActionContext
    ) -> Any:
        try:
            action_type = ActionType(action_type)
        except ValueError as e:
            raise ActionExecutionError(f"Unknown action type: {action_type}") from e

        handler = self._handlers.get(action_type)
        if handler is None:
            logger.info(
                "No handler registered for action, logging only",
                action=action_type.value,
                alert_id=context.alert.id,
                parameters=parameters,
            )
            return None
        return await handler(parameters, context)

    async def _restart_agent(self, parameters: dict[str, Any], context: ActionContext) -> Any:
        agent_id = parameters.get("agent_id") or context.agent_id
        if agent_id is None:
            logger.info("Restart skipped for system-wide alert", alert_id=context.alert.id)
            return None
        return await self.registry.restart_agent(agent_id)

    async def _notify_admin(self, parameters: dict[str, Any], context: ActionContext) -> Any:
        alert = context.alert
        return await self.collaboration.send_message(
            SYSTEM_SENDER,
            parameters.get("recipient"),
            {
                "type": "alert_notification",
                "alert_id": alert.id,
                "title": alert.title,
                "severity": alert.severity.value,
                "current_value": alert.current_value,
                "threshold": alert.threshold,
            },
            type=MessageType.NOTIFICATION,
            channel=parameters.get("channel", "admin"),
            priority=MessagePriority.HIGH,
        )
