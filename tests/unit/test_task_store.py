"""Unit tests for task records and the lifecycle state machine."""

import pytest

from taskmesh.core.constants import Channels
from taskmesh.core.enums import TaskPriority, TaskStatus
from taskmesh.core.exceptions import (
    DependencyNotSatisfiedError,
    InvalidTransitionError,
    TaskNotFoundError,
    ValidationError,
)
from taskmesh.core.task_store import TRANSITIONS, can_transition


class TestStateMachine:
    def test_terminal_states_have_no_exits(self):
        for status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED):
            assert status.is_terminal
            assert TRANSITIONS[status] == frozenset()

    def test_nothing_returns_to_pending(self):
        for status in TaskStatus:
            assert not can_transition(status, TaskStatus.PENDING)

    def test_pending_cannot_skip_to_running(self):
        assert not can_transition(TaskStatus.PENDING, TaskStatus.RUNNING)
        assert can_transition(TaskStatus.PENDING, TaskStatus.ASSIGNED)


class TestCreateTask:
    @pytest.mark.asyncio
    async def test_new_task_is_pending(self, task_store):
        task = await task_store.create_task("Review PR", "code-review", "high")

        assert task.status == TaskStatus.PENDING
        assert task.priority == TaskPriority.HIGH
        assert task.assigned_agent_id is None
        assert (await task_store.get_task(task.id)).name == "Review PR"

    @pytest.mark.asyncio
    async def test_type_is_required(self, task_store):
        with pytest.raises(ValidationError):
            await task_store.create_task("No type", "  ")

    @pytest.mark.asyncio
    async def test_unknown_dependency_is_rejected(self, task_store, store):
        with pytest.raises(ValidationError, match="Unknown dependency"):
            await task_store.create_task("B", "build", dependencies=["missing"])

        assert store.count("tasks") == 0

    @pytest.mark.asyncio
    async def test_duplicate_dependencies_collapse(self, task_store):
        first = await task_store.create_task("A", "build")
        second = await task_store.create_task("B", "build", dependencies=[first.id, first.id])

        assert second.dependencies == [first.id]

    @pytest.mark.asyncio
    async def test_unknown_task_raises_not_found(self, task_store):
        with pytest.raises(TaskNotFoundError):
            await task_store.get_task("nope")


class TestTransitions:
    @pytest.mark.asyncio
    async def test_full_lifecycle_sets_timestamps(self, task_store, clock):
        task = await task_store.create_task("A", "build")

        assigned = await task_store.assign(task.id, "agent-1")
        assert assigned.status == TaskStatus.ASSIGNED
        assert assigned.assigned_agent_id == "agent-1"

        running = await task_store.start(task.id)
        assert running.started_at == clock.now

        clock.advance(seconds=12)
        done = await task_store.complete(task.id, {"lines": 3})
        assert done.status == TaskStatus.COMPLETED
        assert done.completed_at == clock.now
        assert done.actual_duration == pytest.approx(12.0)
        assert done.output_data == {"lines": 3}

    @pytest.mark.asyncio
    async def test_start_requires_assignment(self, task_store):
        task = await task_store.create_task("A", "build")

        with pytest.raises(InvalidTransitionError):
            await task_store.start(task.id)

    @pytest.mark.asyncio
    async def test_start_blocked_by_unfinished_dependency(self, task_store):
        first = await task_store.create_task("A", "build")
        second = await task_store.create_task("B", "build", dependencies=[first.id])
        await task_store.assign(second.id, "agent-1")

        with pytest.raises(DependencyNotSatisfiedError) as exc:
            await task_store.start(second.id)

        assert exc.value.blocking == [first.id]
        assert (await task_store.get_task(second.id)).status == TaskStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_terminal_task_cannot_move(self, task_store, finish_task):
        task = await task_store.create_task("A", "build")
        await finish_task(task.id, "agent-1")

        with pytest.raises(InvalidTransitionError, match="terminal"):
            await task_store.cancel(task.id)

    @pytest.mark.asyncio
    async def test_cancel_pending_task(self, task_store):
        task = await task_store.create_task("A", "build")

        cancelled = await task_store.cancel(task.id, reason="not needed")

        assert cancelled.status == TaskStatus.CANCELLED
        assert cancelled.error_message == "not needed"
        assert cancelled.completed_at is not None

    @pytest.mark.asyncio
    async def test_fail_records_error(self, task_store):
        task = await task_store.create_task("A", "build")
        await task_store.assign(task.id, "agent-1")
        await task_store.start(task.id)

        failed = await task_store.fail(task.id, "compiler exploded")

        assert failed.status == TaskStatus.FAILED
        assert failed.error_message == "compiler exploded"

    @pytest.mark.asyncio
    async def test_transitions_are_published(self, task_store, bus):
        seen = []
        bus.subscribe(Channels.TASK_TRANSITIONS, seen.append)

        task = await task_store.create_task("A", "build")
        await task_store.assign(task.id, "agent-1")

        assert [(e.previous, e.current) for e in seen] == [
            (None, TaskStatus.PENDING),
            (TaskStatus.PENDING, TaskStatus.ASSIGNED),
        ]
        assert seen[-1].agent_id == "agent-1"


class TestEligibility:
    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, task_store, clock):
        low = await task_store.create_task("low", "build", TaskPriority.LOW)
        clock.advance(seconds=1)
        high_old = await task_store.create_task("high-1", "build", TaskPriority.HIGH)
        clock.advance(seconds=1)
        critical = await task_store.create_task("crit", "build", TaskPriority.CRITICAL)
        clock.advance(seconds=1)
        high_new = await task_store.create_task("high-2", "build", TaskPriority.HIGH)

        eligible = await task_store.eligible_tasks()

        assert [t.id for t in eligible] == [critical.id, high_old.id, high_new.id, low.id]

    @pytest.mark.asyncio
    async def test_dependents_wait_for_completion(self, task_store, finish_task):
        first = await task_store.create_task("A", "build")
        second = await task_store.create_task("B", "build", dependencies=[first.id])

        assert [t.id for t in await task_store.eligible_tasks()] == [first.id]

        await finish_task(first.id, "agent-1")

        assert [t.id for t in await task_store.eligible_tasks()] == [second.id]

    @pytest.mark.asyncio
    async def test_failed_dependency_blocks_forever(self, task_store, finish_task):
        first = await task_store.create_task("A", "build")
        second = await task_store.create_task("B", "build", dependencies=[first.id])

        await finish_task(first.id, "agent-1", success=False)

        assert await task_store.eligible_tasks() == []
        assert (await task_store.get_task(second.id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_counts_by_status(self, task_store, finish_task):
        done = await task_store.create_task("A", "build")
        await task_store.create_task("B", "build")
        await finish_task(done.id, "agent-1")

        counts = await task_store.counts_by_status()

        assert counts["completed"] == 1
        assert counts["pending"] == 1
        assert counts["failed"] == 0
