"""Unit tests for monitoring rules and alert evaluation."""

import pytest

from taskmesh.core.alerts import AlertEngine, alert_type_for, evaluate_condition
from taskmesh.core.constants import Channels
from taskmesh.core.enums import (
    ActionType,
    AlertStatus,
    AlertType,
    CooldownAnchor,
    RuleCondition,
    Severity,
)
from taskmesh.core.exceptions import AlertNotFoundError, RuleNotFoundError, ValidationError
from taskmesh.testing import RecordingActionExecutor


class StubMetrics:
    """Metrics cache stand-in keyed by (metric, agent_id)."""

    def __init__(self):
        self.values = {}

    def set(self, metric, value, agent_id=None):
        self.values[(metric, agent_id)] = value

    def current_value(self, metric, agent_id=None):
        value = self.values.get((metric, agent_id))
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def stub_metrics():
    return StubMetrics()


@pytest.fixture
def engine(store, stub_metrics, action_executor, bus, clock):
    return AlertEngine(store, stub_metrics, action_executor, bus, clock=clock)


class TestEvaluateCondition:
    @pytest.mark.parametrize(
        "value, condition, threshold, expected",
        [
            (0.6, RuleCondition.GREATER_THAN, 0.5, True),
            (0.5, RuleCondition.GREATER_THAN, 0.5, False),
            (10, RuleCondition.LESS_THAN, "20", True),
            ("high", RuleCondition.GREATER_THAN, 5, False),
            (5, RuleCondition.EQUALS, "5.0", True),
            ("critical", RuleCondition.EQUALS, "critical", True),
            ("healthy", RuleCondition.NOT_EQUALS, "critical", True),
            (3, RuleCondition.NOT_EQUALS, 3.0, False),
            ("disk full on /var", RuleCondition.CONTAINS, "disk full", True),
            ("warning", RuleCondition.CONTAINS, "critical", False),
        ],
    )
    def test_conditions(self, value, condition, threshold, expected):
        assert evaluate_condition(value, condition, threshold) is expected

    def test_string_condition_accepted(self):
        assert evaluate_condition(3, "greater_than", 1)

    @pytest.mark.parametrize(
        "metric, expected",
        [
            ("error_rate", AlertType.ERROR),
            ("tasks_failed", AlertType.ERROR),
            ("memory_usage", AlertType.RESOURCE),
            ("uptime", AlertType.AVAILABILITY),
            ("throughput", AlertType.PERFORMANCE),
        ],
    )
    def test_alert_type_for(self, metric, expected):
        assert alert_type_for(metric) == expected


class TestRules:
    @pytest.mark.asyncio
    async def test_create_rule_defaults(self, engine):
        rule = await engine.create_rule("High errors", "error_rate", "greater_than", 50)

        assert rule.enabled
        assert rule.auto_resolve
        assert rule.cooldown_minutes == 5
        assert rule.notification_channels == ["dashboard"]
        assert (await engine.get_rule(rule.id)).name == "High errors"

    @pytest.mark.asyncio
    async def test_unknown_metric_rejected(self, engine, store):
        with pytest.raises(ValidationError, match="system metric"):
            await engine.create_rule("Bad", "banana_rate", "greater_than", 1)
        with pytest.raises(ValidationError, match="agent metric"):
            await engine.create_rule("Bad", "pending_tasks", "greater_than", 1, agent_id="a1")

        assert store.count("monitoring_rules") == 0

    @pytest.mark.asyncio
    async def test_ordering_condition_needs_numeric_threshold(self, engine):
        with pytest.raises(ValidationError, match="numeric"):
            await engine.create_rule("Bad", "error_rate", "greater_than", "lots")

    @pytest.mark.asyncio
    async def test_update_and_delete(self, engine):
        rule = await engine.create_rule("Errors", "error_rate", "greater_than", 50)

        updated = await engine.update_rule(rule.id, threshold=25, enabled=False)

        assert updated.threshold == 25
        assert not updated.enabled
        assert await engine.list_rules(enabled=True) == []

        with pytest.raises(ValidationError):
            await engine.update_rule(rule.id, metric="banana_rate")

        await engine.delete_rule(rule.id)
        with pytest.raises(RuleNotFoundError):
            await engine.delete_rule(rule.id)

    @pytest.mark.asyncio
    async def test_delete_resolves_open_alerts(self, engine, stub_metrics, bus):
        rule = await engine.create_rule("High errors", "error_rate", "greater_than", 50)
        stub_metrics.set("error_rate", 60.0)
        result = await engine.evaluate_all()
        events = []
        bus.subscribe(Channels.ALERTS, events.append)

        await engine.delete_rule(rule.id)

        alert = await engine.get_alert(result.opened[0])
        assert alert.status == AlertStatus.RESOLVED
        assert alert.resolved_at is not None
        assert await engine.active_alerts() == []
        assert [e.status for e in events] == [AlertStatus.RESOLVED]


class TestEvaluation:
    @pytest.mark.asyncio
    async def test_opens_one_alert_while_condition_holds(self, engine, stub_metrics, bus):
        events = []
        bus.subscribe(Channels.ALERTS, events.append)
        rule = await engine.create_rule(
            "High errors", "error_rate", "greater_than", 50, severity=Severity.HIGH,
            description="Error rate too high",
        )
        stub_metrics.set("error_rate", 60.0)

        first = await engine.evaluate_all()
        second = await engine.evaluate_all()

        assert len(first.opened) == 1
        assert second.opened == []
        alert = await engine.get_alert(first.opened[0])
        assert alert.rule_id == rule.id
        assert alert.status == AlertStatus.ACTIVE
        assert alert.type == AlertType.ERROR
        assert alert.severity == Severity.HIGH
        assert alert.title == "High errors Alert"
        assert alert.description == "Error rate too high. Current value: 60.0, Threshold: 50.0"
        assert [e.status for e in events] == [AlertStatus.ACTIVE]

    @pytest.mark.asyncio
    async def test_missing_metric_skips_rule(self, engine):
        await engine.create_rule("High errors", "error_rate", "greater_than", 50)

        result = await engine.evaluate_all()

        assert result.opened == []
        assert result.errors == 0

    @pytest.mark.asyncio
    async def test_auto_resolve_emits_single_event(self, engine, stub_metrics, bus, clock):
        events = []
        bus.subscribe(Channels.ALERTS, events.append)
        await engine.create_rule("High errors", "error_rate", "greater_than", 50)
        stub_metrics.set("error_rate", 60.0)
        opened = (await engine.evaluate_all()).opened[0]

        clock.advance(minutes=1)
        stub_metrics.set("error_rate", 10.0)
        result = await engine.evaluate_all()
        await engine.evaluate_all()
        await engine.resolve_alert(opened)

        assert result.resolved == [opened]
        resolved = await engine.get_alert(opened)
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.resolved_at == clock.now
        assert [e.status for e in events] == [AlertStatus.ACTIVE, AlertStatus.RESOLVED]

    @pytest.mark.asyncio
    async def test_manual_resolution_when_auto_resolve_disabled(self, engine, stub_metrics):
        await engine.create_rule(
            "High errors", "error_rate", "greater_than", 50, auto_resolve=False
        )
        stub_metrics.set("error_rate", 60.0)
        opened = (await engine.evaluate_all()).opened[0]

        stub_metrics.set("error_rate", 10.0)
        result = await engine.evaluate_all()

        assert result.resolved == []
        assert (await engine.get_alert(opened)).is_open
        assert [a.id for a in await engine.active_alerts()] == [opened]

    @pytest.mark.asyncio
    async def test_agent_rules_are_per_agent(self, engine, stub_metrics):
        await engine.create_rule("Slow", "cpu_usage", "greater_than", 80, agent_id="a1")
        await engine.create_rule("Slow", "cpu_usage", "greater_than", 80, agent_id="a2")
        stub_metrics.set("cpu_usage", 95.0, agent_id="a1")
        stub_metrics.set("cpu_usage", 50.0, agent_id="a2")

        result = await engine.evaluate_all()

        assert len(result.opened) == 1
        alerts = await engine.list_alerts(agent_id="a1")
        assert len(alerts) == 1
        assert alerts[0].type == AlertType.RESOURCE
        assert await engine.list_alerts(agent_id="a2") == []

    @pytest.mark.asyncio
    async def test_failing_rule_does_not_block_others(self, engine, stub_metrics):
        await engine.create_rule("Broken", "error_rate", "greater_than", 50)
        await engine.create_rule("Backlog", "pending_tasks", "greater_than", 10)
        stub_metrics.set("error_rate", RuntimeError("cache exploded"))
        stub_metrics.set("pending_tasks", 25)

        result = await engine.evaluate_all()

        assert result.errors == 1
        assert len(result.opened) == 1

    @pytest.mark.asyncio
    async def test_disabled_rules_are_ignored(self, engine, stub_metrics):
        await engine.create_rule("Quiet", "error_rate", "greater_than", 50, enabled=False)
        stub_metrics.set("error_rate", 99.0)

        assert (await engine.evaluate_all()).opened == []


class TestCooldown:
    async def _open_and_resolve(self, engine, stub_metrics, clock, minutes_open=1):
        stub_metrics.set("error_rate", 60.0)
        opened = (await engine.evaluate_all()).opened
        clock.advance(minutes=minutes_open)
        stub_metrics.set("error_rate", 10.0)
        await engine.evaluate_all()
        return opened[0]

    @pytest.mark.asyncio
    async def test_cooldown_from_resolution(self, engine, stub_metrics, clock):
        rule = await engine.create_rule("Errors", "error_rate", "greater_than", 50)
        await self._open_and_resolve(engine, stub_metrics, clock, minutes_open=10)

        clock.advance(minutes=2)
        stub_metrics.set("error_rate", 70.0)
        quiet = await engine.evaluate_all()
        assert quiet.cooling_down == [rule.id]
        assert quiet.opened == []

        clock.advance(minutes=3)
        assert len((await engine.evaluate_all()).opened) == 1

    @pytest.mark.asyncio
    async def test_cooldown_from_creation(self, store, stub_metrics, action_executor, bus, clock):
        engine = AlertEngine(
            store,
            stub_metrics,
            action_executor,
            bus,
            clock=clock,
            cooldown_anchor=CooldownAnchor.CREATION,
        )
        await engine.create_rule("Errors", "error_rate", "greater_than", 50)
        await self._open_and_resolve(engine, stub_metrics, clock, minutes_open=4)

        stub_metrics.set("error_rate", 70.0)
        assert (await engine.evaluate_all()).opened == []

        clock.advance(minutes=1)
        assert len((await engine.evaluate_all()).opened) == 1

    @pytest.mark.asyncio
    async def test_zero_cooldown_reopens_immediately(self, engine, stub_metrics, clock):
        await engine.create_rule(
            "Errors", "error_rate", "greater_than", 50, cooldown_minutes=0
        )
        await self._open_and_resolve(engine, stub_metrics, clock)

        stub_metrics.set("error_rate", 70.0)

        assert len((await engine.evaluate_all()).opened) == 1


class TestAcknowledgement:
    @pytest.mark.asyncio
    async def test_acknowledged_alert_blocks_duplicates(self, engine, stub_metrics):
        await engine.create_rule("Errors", "error_rate", "greater_than", 50)
        stub_metrics.set("error_rate", 60.0)
        opened = (await engine.evaluate_all()).opened[0]

        acknowledged = await engine.acknowledge_alert(opened)
        result = await engine.evaluate_all()

        assert acknowledged.status == AlertStatus.ACKNOWLEDGED
        assert acknowledged.acknowledged_at is not None
        assert result.opened == []
        assert len(await engine.list_alerts()) == 1

    @pytest.mark.asyncio
    async def test_resolved_alert_cannot_be_acknowledged(self, engine, stub_metrics):
        await engine.create_rule("Errors", "error_rate", "greater_than", 50)
        stub_metrics.set("error_rate", 60.0)
        opened = (await engine.evaluate_all()).opened[0]
        await engine.resolve_alert(opened)

        with pytest.raises(ValidationError):
            await engine.acknowledge_alert(opened)

    @pytest.mark.asyncio
    async def test_unknown_alert(self, engine):
        with pytest.raises(AlertNotFoundError):
            await engine.acknowledge_alert("missing")


class TestActions:
    @pytest.mark.asyncio
    async def test_failed_action_does_not_stop_the_rest(self, store, stub_metrics, bus, clock):
        executor = RecordingActionExecutor(fail_on={ActionType.NOTIFY_ADMIN})
        engine = AlertEngine(store, stub_metrics, executor, bus, clock=clock)
        await engine.create_rule(
            "Agent down",
            "error_rate",
            "greater_than",
            50,
            agent_id="a1",
            actions=[
                {"type": "notify_admin", "parameters": {"message": "help"}},
                {"type": "restart_agent"},
            ],
        )
        stub_metrics.set("error_rate", 80.0, agent_id="a1")

        opened = (await engine.evaluate_all()).opened[0]

        assert executor.types() == [ActionType.NOTIFY_ADMIN, ActionType.RESTART_AGENT]
        assert executor.calls[0][1] == {"message": "help"}
        assert executor.calls[1][2].alert.id == opened
        alert = await engine.get_alert(opened)
        assert alert.actions_taken == [f"restart_agent: {clock.now.isoformat()}"]
