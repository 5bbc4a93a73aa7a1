"""Monitoring rules, alert evaluation and remediation actions."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from .constants import Channels, Limits
from .enums import (
    ActionType,
    AlertStatus,
    AlertType,
    CooldownAnchor,
    RuleCondition,
    Severity,
)
from .events import AlertEvent, EventBus
from .exceptions import AlertNotFoundError, RuleNotFoundError, ValidationError
from .executors import ActionContext, ActionExecutor
from .metrics import AGENT_METRICS, SYSTEM_METRICS, MetricsCollector
from .models import Alert, MonitoringRule, RuleAction, utcnow
from .persistence import Store

logger = structlog.get_logger()

RULES = "monitoring_rules"
ALERTS = "alerts"

_NUMERIC_CONDITIONS = frozenset({RuleCondition.GREATER_THAN, RuleCondition.LESS_THAN})


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(value: Any, condition: RuleCondition, threshold: Any) -> bool:
    """Apply a rule's comparison operator. Non-numeric input never satisfies
    an ordering comparison."""
    condition = RuleCondition(condition)
    if condition == RuleCondition.CONTAINS:
        return str(threshold) in str(value)

    left, right = _as_number(value), _as_number(threshold)
    if condition in _NUMERIC_CONDITIONS:
        if left is None or right is None:
            return False
        return left > right if condition == RuleCondition.GREATER_THAN else left < right

    if left is not None and right is not None:
        equal = left == right
    else:
        equal = str(value) == str(threshold)
    return equal if condition == RuleCondition.EQUALS else not equal


def alert_type_for(metric: str) -> AlertType:
    """Categorise an alert from the name of the metric it watches."""
    if "error" in metric or "failed" in metric:
        return AlertType.ERROR
    if any(word in metric for word in ("memory", "cpu", "disk")):
        return AlertType.RESOURCE
    if "security" in metric or "vulnerability" in metric:
        return AlertType.SECURITY
    if "uptime" in metric or "availability" in metric:
        return AlertType.AVAILABILITY
    return AlertType.PERFORMANCE


@dataclass
class EvaluationResult:
    opened: list[str] = field(default_factory=list)
    resolved: list[str] = field(default_factory=list)
    cooling_down: list[str] = field(default_factory=list)
    errors: int = 0
    skipped: bool = False


class AlertEngine:
    """Evaluates enabled rules against the metrics cache.

    At most one open (active or acknowledged) alert exists per rule and target
    agent. A rule whose condition clears resolves its alert when
    ``auto_resolve`` is set; otherwise the alert stays open until resolved by
    hand. After an alert, the rule stays quiet for that target for
    ``cooldown_minutes``, measured from resolution or creation depending on
    ``cooldown_anchor``.
    """

    def __init__(
        self,
        store: Store,
        metrics: MetricsCollector,
        action_executor: ActionExecutor,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
        cooldown_anchor: CooldownAnchor = CooldownAnchor.RESOLUTION,
        default_cooldown: int = 5,
    ):
        self.store = store
        self.metrics = metrics
        self.action_executor = action_executor
        self.bus = bus or store.bus
        self.clock = clock
        self.cooldown_anchor = CooldownAnchor(cooldown_anchor)
        self.default_cooldown = default_cooldown
        self._lock = asyncio.Lock()

    # Rules

    def _validate_rule(self, rule: MonitoringRule) -> None:
        known = AGENT_METRICS if rule.agent_id is not None else SYSTEM_METRICS
        if rule.metric not in known:
            scope = "agent" if rule.agent_id is not None else "system"
            raise ValidationError(f"Unknown {scope} metric '{rule.metric}'")
        if rule.condition in _NUMERIC_CONDITIONS and _as_number(rule.threshold) is None:
            raise ValidationError(
                f"Threshold for '{rule.condition.value}' must be numeric"
            )
        if rule.cooldown_minutes < 0:
            raise ValidationError("Cooldown cannot be negative")

    async def create_rule(
        self,
        name: str,
        metric: str,
        condition: RuleCondition | str,
        threshold: float | str,
        agent_id: str | None = None,
        severity: Severity | str = Severity.MEDIUM,
        description: str = "",
        enabled: bool = True,
        cooldown_minutes: int | None = None,
        auto_resolve: bool = True,
        actions: list[RuleAction | dict[str, Any]] | None = None,
        notification_channels: list[str] | None = None,
    ) -> MonitoringRule:
        now = self.clock()
        rule = MonitoringRule(
            name=name,
            description=description,
            agent_id=agent_id,
            metric=metric,
            condition=RuleCondition(condition),
            threshold=threshold,
            severity=Severity(severity),
            enabled=enabled,
            cooldown_minutes=(
                self.default_cooldown if cooldown_minutes is None else cooldown_minutes
            ),
            auto_resolve=auto_resolve,
            actions=[RuleAction.model_validate(a) for a in actions or []],
            notification_channels=notification_channels or ["dashboard"],
            created_at=now,
            updated_at=now,
        )
        self._validate_rule(rule)
        await self.store.insert(RULES, rule.to_record())
        logger.info("Monitoring rule created", rule_id=rule.id, metric=metric)
        return rule

    async def get_rule(self, rule_id: str) -> MonitoringRule:
        record = await self.store.get(RULES, rule_id)
        if record is None:
            raise RuleNotFoundError(rule_id)
        return MonitoringRule.from_record(record)

    async def list_rules(self, enabled: bool | None = None) -> list[MonitoringRule]:
        filters = {"enabled": enabled} if enabled is not None else {}
        return [MonitoringRule.from_record(r) for r in await self.store.query(RULES, **filters)]

    async def update_rule(self, rule_id: str, **updates: Any) -> MonitoringRule:
        rule = await self.get_rule(rule_id)
        updates.pop("id", None)
        updates.pop("created_at", None)
        data = {**rule.to_record(), **updates, "updated_at": self.clock()}
        updated = MonitoringRule.model_validate(data)
        self._validate_rule(updated)
        record = await self.store.update(RULES, rule_id, updated.to_record())
        logger.info("Monitoring rule updated", rule_id=rule_id, fields=sorted(updates))
        return MonitoringRule.from_record(record)

    async def delete_rule(self, rule_id: str) -> None:
        """Delete a rule and resolve the alerts it still has open."""
        if not await self.store.delete(RULES, rule_id):
            raise RuleNotFoundError(rule_id)
        records = await self.store.query(ALERTS, rule_id=rule_id)
        orphaned = [Alert.from_record(r) for r in records]
        for alert in orphaned:
            if alert.is_open:
                await self.resolve_alert(alert.id)
        logger.info(
            "Monitoring rule deleted",
            rule_id=rule_id,
            resolved_alerts=sum(1 for a in orphaned if a.is_open),
        )

    # Alerts

    async def get_alert(self, alert_id: str) -> Alert:
        record = await self.store.get(ALERTS, alert_id)
        if record is None:
            raise AlertNotFoundError(alert_id)
        return Alert.from_record(record)

    async def list_alerts(
        self,
        status: AlertStatus | str | None = None,
        agent_id: str | None = None,
        limit: int = Limits.MAX_ALERT_HISTORY,
    ) -> list[Alert]:
        """Alerts newest first."""
        filters: dict[str, Any] = {}
        if status is not None:
            filters["status"] = AlertStatus(status).value
        if agent_id is not None:
            filters["agent_id"] = agent_id
        alerts = [Alert.from_record(r) for r in await self.store.query(ALERTS, **filters)]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return alerts[:limit]

    async def active_alerts(self) -> list[Alert]:
        """Alerts not yet resolved, acknowledged ones included."""
        return [a for a in await self.list_alerts() if a.is_open]

    async def _alerts_for(self, rule_id: str, agent_id: str | None) -> list[Alert]:
        records = await self.store.query(ALERTS, rule_id=rule_id, agent_id=agent_id)
        return [Alert.from_record(r) for r in records]

    async def acknowledge_alert(self, alert_id: str) -> Alert:
        alert = await self.get_alert(alert_id)
        if alert.status == AlertStatus.RESOLVED:
            raise ValidationError(f"Alert {alert_id} is already resolved")
        if alert.status == AlertStatus.ACKNOWLEDGED:
            return alert
        now = self.clock()
        alert = await self._save(
            alert, status=AlertStatus.ACKNOWLEDGED, acknowledged_at=now, updated_at=now
        )
        logger.info("Alert acknowledged", alert_id=alert_id)
        await self._announce(alert)
        return alert

    async def resolve_alert(self, alert_id: str) -> Alert:
        """Resolve an open alert. Resolving twice emits nothing the second time."""
        alert = await self.get_alert(alert_id)
        if alert.status == AlertStatus.RESOLVED:
            return alert
        now = self.clock()
        alert = await self._save(
            alert, status=AlertStatus.RESOLVED, resolved_at=now, updated_at=now
        )
        logger.info("Alert resolved", alert_id=alert_id, rule_id=alert.rule_id)
        await self._announce(alert)
        return alert

    async def _save(self, alert: Alert, **changes: Any) -> Alert:
        dumped = alert.model_copy(update=changes).to_record()
        record = await self.store.update(
            ALERTS, alert.id, {key: dumped[key] for key in changes}
        )
        return Alert.from_record(record)

    async def _announce(self, alert: Alert) -> None:
        await self.bus.publish(
            Channels.ALERTS,
            AlertEvent(
                alert_id=alert.id,
                rule_id=alert.rule_id,
                agent_id=alert.agent_id,
                status=alert.status,
                severity=alert.severity.value,
            ),
        )

    # Evaluation

    async def evaluate_all(self) -> EvaluationResult:
        """Evaluate every enabled rule; one failing rule never blocks the rest."""
        if self._lock.locked():
            logger.debug("Alert evaluation already in progress, skipping")
            return EvaluationResult(skipped=True)

        result = EvaluationResult()
        async with self._lock:
            for rule in await self.list_rules(enabled=True):
                try:
                    await self.evaluate_rule(rule, result)
                except Exception as e:
                    result.errors += 1
                    logger.error("Error evaluating rule", rule_id=rule.id, error=str(e))
        return result

    async def evaluate_rule(
        self, rule: MonitoringRule, result: EvaluationResult | None = None
    ) -> Alert | None:
        """Evaluate one rule. Returns the alert it opened or resolved, if any."""
        result = result if result is not None else EvaluationResult()
        value = self.metrics.current_value(rule.metric, rule.agent_id)
        if value is None:
            return None

        holds = evaluate_condition(value, rule.condition, rule.threshold)
        history = await self._alerts_for(rule.id, rule.agent_id)
        open_alert = next((a for a in history if a.is_open), None)

        if holds and open_alert is None:
            if self._cooling_down(rule, history):
                result.cooling_down.append(rule.id)
                logger.debug("Rule in cooldown", rule_id=rule.id, agent_id=rule.agent_id)
                return None
            alert = await self._open_alert(rule, value)
            result.opened.append(alert.id)
            return alert

        if not holds and open_alert is not None and rule.auto_resolve:
            alert = await self.resolve_alert(open_alert.id)
            result.resolved.append(alert.id)
            return alert
        return None

    def _cooling_down(self, rule: MonitoringRule, history: list[Alert]) -> bool:
        if rule.cooldown_minutes <= 0 or not history:
            return False
        if self.cooldown_anchor == CooldownAnchor.RESOLUTION:
            anchors = [a.resolved_at for a in history if a.resolved_at is not None]
        else:
            anchors = [a.created_at for a in history]
        if not anchors:
            return False
        return self.clock() - max(anchors) < timedelta(minutes=rule.cooldown_minutes)

    async def _open_alert(self, rule: MonitoringRule, value: Any) -> Alert:
        now = self.clock()
        alert = Alert(
            rule_id=rule.id,
            agent_id=rule.agent_id,
            type=alert_type_for(rule.metric),
            severity=rule.severity,
            title=f"{rule.name} Alert",
            description=(
                f"{rule.description or rule.name}. Current value: {value}, Threshold: {rule.threshold}"
            ),
            metric=rule.metric,
            threshold=rule.threshold,
            current_value=value,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(ALERTS, alert.to_record())
        log = logger.error if rule.severity == Severity.CRITICAL else logger.warning
        log(
            "Alert opened",
            alert_id=alert.id,
            rule_id=rule.id,
            agent_id=rule.agent_id,
            metric=rule.metric,
            value=value,
            threshold=rule.threshold,
        )
        await self._announce(alert)
        return await self._run_actions(rule, alert)

    async def _run_actions(self, rule: MonitoringRule, alert: Alert) -> Alert:
        """Run the rule's actions in order, logging and skipping failures."""
        taken = list(alert.actions_taken)
        context = ActionContext(alert=alert, rule=rule)
        for action in rule.actions:
            try:
                await self.action_executor.execute(action.type, action.parameters, context)
                taken.append(f"{ActionType(action.type).value}: {self.clock().isoformat()}")
            except Exception as e:
                logger.error(
                    "Error executing alert action",
                    alert_id=alert.id,
                    action=action.type,
                    error=str(e),
                )
        if not taken:
            return alert
        return await self._save(alert, actions_taken=taken, updated_at=self.clock())
