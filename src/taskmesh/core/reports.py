"""Performance reports derived from historical task data."""

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, Field

from .alerts import AlertEngine
from .constants import ReportScoring
from .enums import ReportType, Severity, TaskStatus
from .exceptions import ReportNotFoundError, ValidationError
from .metrics import MetricsCollector
from .models import Entity, SystemMetrics, Task, utcnow
from .persistence import Store
from .task_store import TaskStore

logger = structlog.get_logger()

TABLE = "performance_reports"

PERIODS = {
    ReportType.DAILY: timedelta(days=1),
    ReportType.WEEKLY: timedelta(days=7),
    ReportType.MONTHLY: timedelta(days=30),
}


class AgentReport(BaseModel):
    agent_id: str
    tasks_completed: int = 0
    success_rate: float = 0.0
    average_execution_time: float = 0.0
    error_count: int = 0
    performance_score: float = 0.0


class Recommendation(BaseModel):
    type: str
    priority: str
    description: str
    estimated_impact: str


class ReportSummary(BaseModel):
    total_tasks: int = 0
    success_rate: float = 0.0
    average_response_time: float = 0.0
    peak_performance_time: str | None = None
    lowest_performance_time: str | None = None
    most_active_agent: str | None = None
    least_active_agent: str | None = None
    total_errors: int = 0
    critical_alerts: int = 0


class TrendPoint(BaseModel):
    timestamp: datetime
    value: float


class HourlyPoint(BaseModel):
    hour: str
    performance: float


class PerformanceReport(Entity):
    type: ReportType
    period_start: datetime
    period_end: datetime
    agents_analyzed: list[str] = Field(default_factory=list)
    summary: ReportSummary = Field(default_factory=ReportSummary)
    detailed_metrics: list[AgentReport] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)
    hourly_performance: list[HourlyPoint] = Field(default_factory=list)
    performance_trends: list[TrendPoint] = Field(default_factory=list)
    resource_usage: list[dict[str, Any]] = Field(default_factory=list)


def performance_score(success_rate: float, average_execution_time: float, error_count: int) -> float:
    """Score an agent from 0 to 100, starting at its success rate."""
    score = success_rate
    if average_execution_time > ReportScoring.BASELINE_EXECUTION_TIME:
        score -= min(
            ReportScoring.MAX_SLOWNESS_PENALTY,
            average_execution_time - ReportScoring.BASELINE_EXECUTION_TIME,
        )
    score -= min(ReportScoring.MAX_ERROR_PENALTY, error_count * ReportScoring.ERROR_PENALTY)
    return max(0.0, min(100.0, score))


def _completion_rate(tasks: list[Task]) -> float:
    if not tasks:
        return 0.0
    completed = sum(1 for t in tasks if t.status == TaskStatus.COMPLETED)
    return completed / len(tasks) * 100


def _response_time(task: Task) -> float | None:
    if task.status != TaskStatus.COMPLETED or task.completed_at is None:
        return None
    return (task.completed_at - task.created_at).total_seconds()


def _as_utc(moment: datetime | None) -> datetime | None:
    """Naive datetimes are taken to be UTC."""
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=UTC)


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0


def hourly_performance(tasks: list[Task]) -> list[HourlyPoint]:
    """Completion rate of tasks created in each hour of the day (UTC)."""
    return [
        HourlyPoint(
            hour=f"{hour:02d}:00",
            performance=_completion_rate([t for t in tasks if t.created_at.hour == hour]),
        )
        for hour in range(24)
    ]


def performance_trends(
    tasks: list[Task], start: datetime, end: datetime, buckets: int = ReportScoring.TREND_BUCKETS
) -> list[TrendPoint]:
    """Completion rate over ``buckets`` equal slices of the period."""
    step = (end - start) / buckets
    points = []
    for i in range(buckets):
        lower, upper = start + step * i, start + step * (i + 1)
        in_bucket = [t for t in tasks if lower <= t.created_at < upper]
        points.append(TrendPoint(timestamp=lower, value=_completion_rate(in_bucket)))
    return points


def recommendations(details: list[AgentReport], total_tasks: int) -> list[Recommendation]:
    found = []
    low = [d for d in details if d.performance_score < ReportScoring.LOW_PERFORMANCE_SCORE]
    if low:
        found.append(
            Recommendation(
                type="optimization",
                priority="high",
                description=(
                    f"{len(low)} agents have performance scores below "
                    f"{ReportScoring.LOW_PERFORMANCE_SCORE:.0f}%. "
                    "Consider optimization or retraining."
                ),
                estimated_impact="Could improve overall system performance by 15-25%",
            )
        )

    noisy = [d for d in details if d.error_count > ReportScoring.HIGH_ERROR_COUNT]
    if noisy:
        found.append(
            Recommendation(
                type="maintenance",
                priority="high",
                description=(
                    f"{len(noisy)} agents have high error rates. "
                    "Review logs and update configurations."
                ),
                estimated_impact="Could reduce system errors by 40-60%",
            )
        )

    if details and total_tasks / len(details) > ReportScoring.HIGH_TASKS_PER_AGENT:
        found.append(
            Recommendation(
                type="scaling",
                priority="medium",
                description="High task volume detected. Consider adding more agent instances.",
                estimated_impact="Could reduce response times by 20-30%",
            )
        )
    return found


class ReportGenerator:
    """Builds and stores performance reports. Read-only over task history."""

    def __init__(
        self,
        store: Store,
        task_store: TaskStore,
        alerts: AlertEngine | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.task_store = task_store
        self.alerts = alerts
        self.metrics = metrics
        self.clock = clock

    def _period(
        self, report_type: ReportType, start: datetime | None, end: datetime | None
    ) -> tuple[datetime, datetime]:
        start, end = _as_utc(start), _as_utc(end)
        if report_type == ReportType.CUSTOM:
            if start is None or end is None:
                raise ValidationError("Custom reports need both period start and end")
        else:
            end = end or self.clock()
            start = start or end - PERIODS[report_type]
        if start >= end:
            raise ValidationError("Report period start must be before its end")
        return start, end

    async def generate(
        self,
        report_type: ReportType | str = ReportType.DAILY,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        agent_ids: list[str] | None = None,
    ) -> PerformanceReport:
        report_type = ReportType(report_type)
        start, end = self._period(report_type, period_start, period_end)

        tasks = [t for t in await self.task_store.list_tasks() if start <= t.created_at <= end]
        if agent_ids:
            tasks = [t for t in tasks if t.assigned_agent_id in agent_ids]
            analyzed = list(dict.fromkeys(agent_ids))
        else:
            analyzed = list(
                dict.fromkeys(t.assigned_agent_id for t in tasks if t.assigned_agent_id)
            )

        details = [self._agent_report(agent_id, tasks) for agent_id in analyzed]
        hourly = hourly_performance(tasks)
        summary = ReportSummary(
            total_tasks=len(tasks),
            success_rate=_completion_rate(tasks),
            average_response_time=_mean(
                r for r in map(_response_time, tasks) if r is not None
            ),
            peak_performance_time=max(hourly, key=lambda h: h.performance).hour,
            lowest_performance_time=min(hourly, key=lambda h: h.performance).hour,
            most_active_agent=(
                max(details, key=lambda d: d.tasks_completed).agent_id if details else None
            ),
            least_active_agent=(
                min(details, key=lambda d: d.tasks_completed).agent_id if details else None
            ),
            total_errors=sum(1 for t in tasks if t.status == TaskStatus.FAILED),
            critical_alerts=await self._critical_alerts(),
        )

        now = self.clock()
        report = PerformanceReport(
            type=report_type,
            period_start=start,
            period_end=end,
            agents_analyzed=analyzed,
            summary=summary,
            detailed_metrics=details,
            recommendations=recommendations(details, len(tasks)),
            hourly_performance=hourly,
            performance_trends=performance_trends(tasks, start, end),
            resource_usage=await self._resource_usage(start, end),
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(TABLE, report.to_record())
        logger.info(
            "Performance report generated",
            report_id=report.id,
            type=report_type.value,
            tasks=len(tasks),
            agents=len(analyzed),
        )
        return report

    def _agent_report(self, agent_id: str, tasks: list[Task]) -> AgentReport:
        own = [t for t in tasks if t.assigned_agent_id == agent_id]
        completed = [t for t in own if t.status == TaskStatus.COMPLETED]
        errors = sum(1 for t in own if t.status == TaskStatus.FAILED)
        success_rate = _completion_rate(own)
        average = _mean(r for r in map(_response_time, completed) if r is not None)
        return AgentReport(
            agent_id=agent_id,
            tasks_completed=len(completed),
            success_rate=success_rate,
            average_execution_time=average,
            error_count=errors,
            performance_score=performance_score(success_rate, average, errors),
        )

    async def _critical_alerts(self) -> int:
        if self.alerts is None:
            return 0
        return sum(1 for a in await self.alerts.active_alerts() if a.severity == Severity.CRITICAL)

    async def _resource_usage(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        if self.metrics is None:
            return []
        points = []
        for data in await self.metrics.stored_history("system", since=start):
            snapshot = SystemMetrics.model_validate(data)
            if snapshot.timestamp <= end:
                points.append(
                    {
                        "timestamp": snapshot.timestamp.isoformat(),
                        "cpu": snapshot.average_system_load,
                        "memory": snapshot.memory_usage_percentage,
                    }
                )
        return points

    async def get_report(self, report_id: str) -> PerformanceReport:
        record = await self.store.get(TABLE, report_id)
        if record is None:
            raise ReportNotFoundError(report_id)
        return PerformanceReport.from_record(record)

    async def list_reports(self, report_type: ReportType | str | None = None) -> list[PerformanceReport]:
        filters = {"type": ReportType(report_type).value} if report_type else {}
        reports = [PerformanceReport.from_record(r) for r in await self.store.query(TABLE, **filters)]
        return sorted(reports, key=lambda r: r.created_at, reverse=True)
