"""Pydantic entity models for TaskMesh.

Every entity is persisted as its JSON-mode dump, keyed by ``id``.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import (
    ActionType,
    AgentStatus,
    AlertStatus,
    AlertType,
    HealthStatus,
    MessagePriority,
    MessageType,
    Permission,
    ResourceType,
    RuleCondition,
    SessionStatus,
    Severity,
    TaskPriority,
    TaskStatus,
    WorkflowStatus,
)


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


class Entity(BaseModel):
    """Base for persisted records."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, record: dict[str, Any]):
        return cls.model_validate(record)


# Agents


class Workload(BaseModel):
    """Tasks attributed to an agent."""

    active: int = 0
    queued: int = 0

    @property
    def total(self) -> int:
        return self.active + self.queued


class AgentPerformance(BaseModel):
    """Running performance summary kept on the agent record."""

    tasks_completed: int = 0
    tasks_failed: int = 0
    average_execution_time: float = 0.0
    success_rate: float = 0.0

    @property
    def tasks_finished(self) -> int:
        return self.tasks_completed + self.tasks_failed


class ResourceUsage(BaseModel):
    """Last resource usage reported for an agent, in percent."""

    cpu: float = 0.0
    memory: float = 0.0
    reported_at: datetime | None = None


class Agent(Entity):
    """A registered agent."""

    name: str
    type: str = "general"
    capabilities: list[str]
    status: AgentStatus = AgentStatus.IDLE
    workload: Workload = Field(default_factory=Workload)
    current_task_id: str | None = None
    last_activity: datetime | None = None
    performance: AgentPerformance = Field(default_factory=AgentPerformance)
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage)
    memory: dict[str, Any] = Field(default_factory=dict)
    configuration: dict[str, Any] = Field(default_factory=dict)

    @field_validator("capabilities")
    @classmethod
    def _dedupe_capabilities(cls, value: list[str]) -> list[str]:
        seen: dict[str, None] = {}
        for capability in value:
            capability = capability.strip()
            if capability:
                seen.setdefault(capability, None)
        return list(seen)

    def can_handle(self, task_type: str) -> bool:
        return task_type in self.capabilities


# Tasks


class Task(Entity):
    """A unit of work routed to an agent."""

    name: str
    description: str = ""
    type: str
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent_id: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: dict[str, Any] | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_duration: float | None = None
    actual_duration: float | None = None
    requested_by: str | None = None
    workflow_id: str | None = None

    @field_validator("dependencies")
    @classmethod
    def _ordered_unique(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def sort_key(self) -> tuple[int, datetime]:
        """Highest priority first, then oldest first."""
        return (-self.priority.rank, self.created_at)


# Collaboration


class CollaborationMessage(Entity):
    """Message between agents; a missing recipient means broadcast."""

    from_agent_id: str
    to_agent_id: str | None = None
    channel: str | None = None
    type: MessageType = MessageType.NOTIFICATION
    content: Any = None
    priority: MessagePriority = MessagePriority.MEDIUM
    requires_response: bool = False
    correlation_id: str | None = None
    expires_at: datetime | None = None
    read_at: datetime | None = None
    responded_at: datetime | None = None

    @property
    def is_broadcast(self) -> bool:
        return self.to_agent_id is None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class ResourcePermissions(BaseModel):
    read: list[str] = Field(default_factory=list)
    write: list[str] = Field(default_factory=list)
    delete: list[str] = Field(default_factory=list)

    def members(self, permission: Permission) -> list[str]:
        return getattr(self, permission.value)


class SharedResource(Entity):
    """Permissioned key/value entry in the shared store."""

    key: str
    value: Any = None
    type: ResourceType = ResourceType.DATA
    owner_agent_id: str
    permissions: ResourcePermissions = Field(default_factory=ResourcePermissions)
    version: int = 1
    expires_at: datetime | None = None

    def allows(self, agent_id: str, permission: Permission) -> bool:
        """Owner is implicitly permitted for everything."""
        return agent_id == self.owner_agent_id or agent_id in self.permissions.members(
            permission
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


class CollaborationSession(Entity):
    name: str
    description: str | None = None
    participants: list[str] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    shared_context: dict[str, Any] = Field(default_factory=dict)


# Monitoring


class RuleAction(BaseModel):
    """Remediation step executed when a rule opens an alert."""

    type: ActionType
    parameters: dict[str, Any] = Field(default_factory=dict)


class MonitoringRule(Entity):
    name: str
    description: str = ""
    agent_id: str | None = None
    metric: str
    condition: RuleCondition
    threshold: float | str
    severity: Severity = Severity.MEDIUM
    enabled: bool = True
    notification_channels: list[str] = Field(default_factory=lambda: ["dashboard"])
    cooldown_minutes: int = 5
    auto_resolve: bool = True
    actions: list[RuleAction] = Field(default_factory=list)

    @property
    def is_system_wide(self) -> bool:
        return self.agent_id is None


class Alert(Entity):
    rule_id: str
    agent_id: str | None = None
    type: AlertType = AlertType.PERFORMANCE
    severity: Severity
    title: str
    description: str = ""
    metric: str
    threshold: float | str
    current_value: float | str
    status: AlertStatus = AlertStatus.ACTIVE
    acknowledged_at: datetime | None = None
    resolved_at: datetime | None = None
    actions_taken: list[str] = Field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status != AlertStatus.RESOLVED


class AgentMetrics(BaseModel):
    """Point-in-time sample for one agent. Rates and resources are percentages."""

    agent_id: str
    tasks_completed: int = 0
    tasks_failed: int = 0
    average_execution_time: float = 0.0
    memory_usage: float = 0.0
    cpu_usage: float = 0.0
    error_rate: float = 0.0
    success_rate: float = 0.0
    throughput: int = 0
    response_time: float = 0.0
    uptime: float = 0.0
    health_status: HealthStatus = HealthStatus.OFFLINE
    timestamp: datetime = Field(default_factory=utcnow)


class SystemMetrics(BaseModel):
    """Point-in-time sample of the whole system."""

    total_agents: int = 0
    active_agents: int = 0
    idle_agents: int = 0
    error_agents: int = 0
    total_tasks: int = 0
    pending_tasks: int = 0
    running_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    throughput: float = 0.0
    error_rate: float = 0.0
    average_system_load: float = 0.0
    memory_usage_percentage: float = 0.0
    disk_usage_percentage: float = 0.0
    uptime: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)


# Workflows


class WorkflowStep(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    type: str
    order: int = 0
    priority: TaskPriority = TaskPriority.MEDIUM
    configuration: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    task_id: str | None = None


class Workflow(Entity):
    name: str
    description: str = ""
    status: WorkflowStatus = WorkflowStatus.DRAFT
    steps: list[WorkflowStep] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
