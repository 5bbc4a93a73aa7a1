"""Exception hierarchy for TaskMesh."""

from collections.abc import Iterable


class TaskMeshError(Exception):
    """Base exception for all TaskMesh errors."""


class NotFoundError(TaskMeshError):
    """A referenced entity does not exist."""

    entity = "entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity.capitalize()} {entity_id} not found")


class AgentNotFoundError(NotFoundError):
    entity = "agent"


class TaskNotFoundError(NotFoundError):
    entity = "task"


class ResourceNotFoundError(NotFoundError):
    entity = "shared resource"


class RuleNotFoundError(NotFoundError):
    entity = "monitoring rule"


class AlertNotFoundError(NotFoundError):
    entity = "alert"


class MessageNotFoundError(NotFoundError):
    entity = "message"


class SessionNotFoundError(NotFoundError):
    entity = "collaboration session"


class WorkflowNotFoundError(NotFoundError):
    entity = "workflow"


class ReportNotFoundError(NotFoundError):
    entity = "performance report"


class ValidationError(TaskMeshError):
    """Input rejected before any mutation took place."""


class InvalidTransitionError(TaskMeshError):
    """A task status change not allowed by the state machine."""

    def __init__(self, task_id: str, current: str, target: str, reason: str = ""):
        self.task_id = task_id
        self.current = current
        self.target = target
        message = f"Task {task_id} cannot move from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DependencyNotSatisfiedError(InvalidTransitionError):
    """A task was started while some of its dependencies are not completed."""

    def __init__(self, task_id: str, current: str, blocking: Iterable[str]):
        self.blocking = list(blocking)
        super().__init__(
            task_id,
            current,
            "running",
            reason="unfinished dependencies " + ", ".join(self.blocking),
        )


class AgentUnavailableError(TaskMeshError):
    """The agent cannot take work in its current status."""

    def __init__(self, agent_id: str, status: str):
        self.agent_id = agent_id
        self.status = status
        super().__init__(f"Agent {agent_id} is not available (status={status})")


class AccessDeniedError(TaskMeshError):
    """Caller lacks the permission needed for an operation."""

    def __init__(self, permission: str, detail: str = ""):
        self.permission = permission
        message = f"Access denied: No {permission} permission"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class PersistenceError(TaskMeshError):
    """The persistence collaborator failed to complete an operation."""


class AgentExecutionError(TaskMeshError):
    """Raised by an executor when a failure is the agent's own fault.

    The scheduler moves the agent to ``error`` instead of freeing it.
    """


class ActionExecutionError(TaskMeshError):
    """A remediation action could not be executed."""
