"""Task records and the task lifecycle state machine.

    pending -> assigned -> running -> completed | failed | cancelled
    pending | assigned -> cancelled

Terminal tasks never move again, and nothing re-enters ``pending``; a failed or
cancelled task is resubmitted as a new record.
"""

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import structlog

from .constants import Channels
from .enums import TaskPriority, TaskStatus
from .events import EventBus, TaskTransition
from .exceptions import (
    DependencyNotSatisfiedError,
    InvalidTransitionError,
    TaskNotFoundError,
    ValidationError,
)
from .models import Task, utcnow
from .persistence import Store

logger = structlog.get_logger()

TABLE = "tasks"

TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.ASSIGNED, TaskStatus.CANCELLED}),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TRANSITIONS[current]


class TaskStore:
    """Owns task records and enforces legal status transitions.

    Every transition is validated and written under one lock, so a concurrent
    caller never observes a half-applied change.
    """

    def __init__(
        self,
        store: Store,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.bus = bus or store.bus
        self.clock = clock
        self._lock = asyncio.Lock()

    async def create_task(
        self,
        name: str,
        type: str,
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        dependencies: Iterable[str] = (),
        input_data: dict[str, Any] | None = None,
        description: str = "",
        estimated_duration: float | None = None,
        requested_by: str | None = None,
        workflow_id: str | None = None,
    ) -> Task:
        """Queue a new pending task."""
        if not type or not type.strip():
            raise ValidationError("Task type is required")

        dependencies = list(dict.fromkeys(dependencies))
        for dependency_id in dependencies:
            if await self.store.get(TABLE, dependency_id) is None:
                raise ValidationError(f"Unknown dependency task {dependency_id}")

        now = self.clock()
        task = Task(
            name=name,
            type=type.strip(),
            priority=TaskPriority(priority),
            dependencies=dependencies,
            input_data=input_data or {},
            description=description,
            estimated_duration=estimated_duration,
            requested_by=requested_by,
            workflow_id=workflow_id,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(TABLE, task.to_record())
        logger.info(
            "Task queued",
            task_id=task.id,
            task_type=task.type,
            priority=task.priority.value,
            dependencies=len(dependencies),
        )
        await self._announce(task, None)
        return task

    async def get_task(self, task_id: str) -> Task:
        record = await self.store.get(TABLE, task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        return Task.from_record(record)

    async def list_tasks(
        self,
        status: TaskStatus | str | None = None,
        agent_id: str | None = None,
        workflow_id: str | None = None,
    ) -> list[Task]:
        filters: dict[str, Any] = {}
        if status is not None:
            filters["status"] = TaskStatus(status).value
        if agent_id is not None:
            filters["assigned_agent_id"] = agent_id
        if workflow_id is not None:
            filters["workflow_id"] = workflow_id
        records = await self.store.query(TABLE, **filters)
        return [Task.from_record(record) for record in records]

    async def blocking_dependencies(self, task: Task) -> list[str]:
        """Dependency ids that are not yet completed, in declared order."""
        blocking = []
        for dependency_id in task.dependencies:
            record = await self.store.get(TABLE, dependency_id)
            if record is None or record["status"] != TaskStatus.COMPLETED.value:
                blocking.append(dependency_id)
        return blocking

    async def eligible_tasks(self) -> list[Task]:
        """Pending tasks whose dependencies are all completed, in dispatch order.

        Highest priority first; ties go to the oldest task.
        """
        records = await self.store.query(TABLE)
        completed = {
            record["id"]
            for record in records
            if record["status"] == TaskStatus.COMPLETED.value
        }
        eligible = [
            Task.from_record(record)
            for record in records
            if record["status"] == TaskStatus.PENDING.value
            and all(dep in completed for dep in record.get("dependencies", []))
        ]
        eligible.sort(key=Task.sort_key)
        return eligible

    async def assign(self, task_id: str, agent_id: str) -> Task:
        return await self._transition(
            task_id, TaskStatus.ASSIGNED, assigned_agent_id=agent_id
        )

    async def start(self, task_id: str) -> Task:
        return await self._transition(task_id, TaskStatus.RUNNING)

    async def complete(self, task_id: str, output_data: dict[str, Any] | None = None) -> Task:
        return await self._transition(
            task_id, TaskStatus.COMPLETED, output_data=output_data or {}
        )

    async def fail(self, task_id: str, error_message: str) -> Task:
        return await self._transition(
            task_id, TaskStatus.FAILED, error_message=error_message or "Unknown error"
        )

    async def cancel(self, task_id: str, reason: str | None = None) -> Task:
        return await self._transition(task_id, TaskStatus.CANCELLED, error_message=reason)

    async def _transition(self, task_id: str, target: TaskStatus, **fields: Any) -> Task:
        async with self._lock:
            task = await self.get_task(task_id)
            previous = task.status

            if target == TaskStatus.PENDING or not can_transition(previous, target):
                reason = "task is terminal" if previous.is_terminal else ""
                raise InvalidTransitionError(task_id, previous.value, target.value, reason)

            if target == TaskStatus.RUNNING:
                if task.assigned_agent_id is None:
                    raise InvalidTransitionError(
                        task_id, previous.value, target.value, "no assigned agent"
                    )
                blocking = await self.blocking_dependencies(task)
                if blocking:
                    raise DependencyNotSatisfiedError(task_id, previous.value, blocking)

            now = self.clock()
            changes: dict[str, Any] = {"status": target, "updated_at": now}
            if target == TaskStatus.RUNNING:
                changes["started_at"] = now
            elif target.is_terminal:
                changes["completed_at"] = now
                if target == TaskStatus.COMPLETED and task.started_at is not None:
                    changes["actual_duration"] = (now - task.started_at).total_seconds()
            changes.update({k: v for k, v in fields.items() if v is not None})

            dumped = task.model_copy(update=changes).to_record()
            record = await self.store.update(
                TABLE, task_id, {key: dumped[key] for key in changes}
            )
            task = Task.from_record(record)

        logger.info(
            "Task transitioned",
            task_id=task_id,
            from_status=previous.value,
            to_status=target.value,
            agent_id=task.assigned_agent_id,
        )
        await self._announce(task, previous)
        return task

    async def _announce(self, task: Task, previous: TaskStatus | None) -> None:
        await self.bus.publish(
            Channels.TASK_TRANSITIONS,
            TaskTransition(
                task_id=task.id,
                previous=previous,
                current=task.status,
                agent_id=task.assigned_agent_id,
            ),
        )

    async def counts_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for record in await self.store.query(TABLE):
            counts[record["status"]] += 1
        return counts
