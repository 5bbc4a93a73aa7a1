"""Configuration constants for TaskMesh.

Timing intervals, thresholds, and scoring constants live here rather than
scattered through the components that use them.
"""


class Intervals:
    """Time intervals in seconds."""

    SCHEDULER_TICK = 5
    METRICS_COLLECTION = 30
    ALERT_EVALUATION = 60

    # Trailing windows for metric sampling
    AGENT_METRICS_WINDOW = 3600
    SYSTEM_METRICS_WINDOW = 86400

    # Loop recovery after an unexpected error
    LOOP_ERROR_BACKOFF = 5


class Limits:
    """Various system limits."""

    MAX_AGENTS = 50
    MAX_METRICS_HISTORY = 1000
    MAX_ALERT_HISTORY = 500
    DEFAULT_MESSAGE_LIMIT = 100


class HealthThresholds:
    """Percent thresholds for agent health classification."""

    CRITICAL_ERROR_RATE = 50.0
    CRITICAL_RESOURCE = 90.0
    WARNING_ERROR_RATE = 20.0
    WARNING_SUCCESS_RATE = 80.0
    WARNING_RESOURCE = 70.0


class ReportScoring:
    """Constants used when scoring agents in performance reports."""

    # Execution time above this baseline (seconds) starts costing points
    BASELINE_EXECUTION_TIME = 5.0
    MAX_SLOWNESS_PENALTY = 20.0
    ERROR_PENALTY = 2.0
    MAX_ERROR_PENALTY = 30.0

    LOW_PERFORMANCE_SCORE = 70.0
    HIGH_ERROR_COUNT = 10
    HIGH_TASKS_PER_AGENT = 100

    TREND_BUCKETS = 20


class Channels:
    """Event bus topics and Redis channel prefixes."""

    TASK_TRANSITIONS = "task_transitions"
    ALERTS = "alerts"
    METRICS = "metrics"
    MESSAGES = "collaboration_messages"
    REDIS_CHANGE_PREFIX = "taskmesh:changes"


SYSTEM_SENDER = "system"
