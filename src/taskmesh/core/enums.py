"""Shared enumerations for TaskMesh."""

from enum import Enum


class AgentStatus(str, Enum):
    """Agent status enumeration - shared across all modules."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"
    STOPPED = "stopped"
    OFFLINE = "offline"


class TaskStatus(str, Enum):
    """Task status enumeration."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


class TaskPriority(str, Enum):
    """Task priority enumeration."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric rank, higher runs first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.LOW: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.HIGH: 3,
    TaskPriority.CRITICAL: 4,
}


class MessageType(str, Enum):
    """Collaboration message types."""

    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    BROADCAST = "broadcast"


class MessagePriority(str, Enum):
    """Collaboration message priorities."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ResourceType(str, Enum):
    """Shared resource kinds."""

    DATA = "data"
    FILE = "file"
    CONFIG = "config"
    STATE = "state"


class Permission(str, Enum):
    """Shared resource permission lists."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class SessionStatus(str, Enum):
    """Collaboration session status."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class HealthStatus(str, Enum):
    """Derived agent health classification."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    OFFLINE = "offline"


class Severity(str, Enum):
    """Alert and rule severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    """Alert lifecycle status."""

    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AlertType(str, Enum):
    """Alert category, derived from the rule's metric name."""

    PERFORMANCE = "performance"
    ERROR = "error"
    SECURITY = "security"
    RESOURCE = "resource"
    AVAILABILITY = "availability"


class RuleCondition(str, Enum):
    """Comparison operators for monitoring rules."""

    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"


class ActionType(str, Enum):
    """Remediation actions a monitoring rule can trigger."""

    RESTART_AGENT = "restart_agent"
    SCALE_RESOURCES = "scale_resources"
    NOTIFY_ADMIN = "notify_admin"
    RUN_SCRIPT = "run_script"


class MatchingPolicy(str, Enum):
    """How the scheduler picks an agent when no capability matches."""

    CAPABILITY_ONLY = "capability_only"
    ANY_IDLE_FALLBACK = "any_idle_fallback"


class CooldownAnchor(str, Enum):
    """Point in an alert's life the rule cooldown is measured from."""

    RESOLUTION = "resolution"
    CREATION = "creation"


class ReportType(str, Enum):
    """Performance report periods."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class WorkflowStatus(str, Enum):
    """Workflow lifecycle status."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class ChangeKind(str, Enum):
    """Kinds of persisted change."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
