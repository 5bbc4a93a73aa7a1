"""Workflows: ordered steps executed as dependent tasks."""

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from .constants import Channels
from .enums import TaskStatus, WorkflowStatus
from .events import EventBus, TaskTransition
from .exceptions import ValidationError, WorkflowNotFoundError
from .models import Workflow, WorkflowStep, utcnow
from .persistence import Store
from .task_store import TaskStore

logger = structlog.get_logger()

TABLE = "workflows"


def execution_order(steps: list[WorkflowStep]) -> list[WorkflowStep]:
    """Steps sorted so every step follows its dependencies, ``order`` breaking ties.

    Raises ValidationError on unknown or circular step dependencies.
    """
    by_id = {step.id: step for step in steps}
    for step in steps:
        for dependency in step.dependencies:
            if dependency not in by_id:
                raise ValidationError(
                    f"Step '{step.name}' depends on unknown step {dependency}"
                )

    ordered: list[WorkflowStep] = []
    placed: set[str] = set()
    remaining = sorted(steps, key=lambda s: s.order)
    while remaining:
        ready = [s for s in remaining if all(d in placed for d in s.dependencies)]
        if not ready:
            names = ", ".join(s.name for s in remaining)
            raise ValidationError(f"Circular step dependencies between: {names}")
        step = ready[0]
        ordered.append(step)
        placed.add(step.id)
        remaining.remove(step)
    return ordered


class WorkflowManager:
    """Creates workflows and turns their steps into scheduler tasks.

    Step dependencies become task dependencies, so the scheduler's dependency
    gate enforces step order. Workflow status follows its step tasks.
    """

    def __init__(
        self,
        store: Store,
        task_store: TaskStore,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.task_store = task_store
        self.bus = bus or store.bus
        self.clock = clock
        self.bus.subscribe(Channels.TASK_TRANSITIONS, self._on_transition)

    async def create_workflow(
        self,
        name: str,
        steps: list[WorkflowStep | dict[str, Any]],
        description: str = "",
    ) -> Workflow:
        if not steps:
            raise ValidationError("A workflow needs at least one step")
        parsed = [WorkflowStep.model_validate(step) for step in steps]
        execution_order(parsed)

        now = self.clock()
        workflow = Workflow(
            name=name, description=description, steps=parsed, created_at=now, updated_at=now
        )
        await self.store.insert(TABLE, workflow.to_record())
        logger.info("Workflow created", workflow_id=workflow.id, steps=len(parsed))
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow:
        record = await self.store.get(TABLE, workflow_id)
        if record is None:
            raise WorkflowNotFoundError(workflow_id)
        return Workflow.from_record(record)

    async def list_workflows(self, status: WorkflowStatus | str | None = None) -> list[Workflow]:
        filters = {"status": WorkflowStatus(status).value} if status else {}
        return [Workflow.from_record(r) for r in await self.store.query(TABLE, **filters)]

    async def execute_workflow(self, workflow_id: str) -> Workflow:
        """Queue one task per step and mark the workflow active."""
        workflow = await self.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.DRAFT:
            raise ValidationError(
                f"Workflow {workflow_id} is {workflow.status.value}, not draft"
            )

        task_ids: dict[str, str] = {}
        steps = []
        for step in execution_order(workflow.steps):
            task = await self.task_store.create_task(
                name=f"{workflow.name} - {step.name}",
                description=f"Workflow step: {step.name}",
                type=step.type,
                priority=step.priority,
                dependencies=[task_ids[d] for d in step.dependencies],
                input_data=step.configuration,
                workflow_id=workflow.id,
            )
            task_ids[step.id] = task.id
            steps.append(step.model_copy(update={"task_id": task.id}))

        now = self.clock()
        workflow = workflow.model_copy(
            update={
                "steps": steps,
                "status": WorkflowStatus.ACTIVE,
                "started_at": now,
                "updated_at": now,
            }
        )
        record = workflow.to_record()
        await self.store.update(
            TABLE,
            workflow_id,
            {k: record[k] for k in ("steps", "status", "started_at", "updated_at")},
        )
        logger.info("Workflow started", workflow_id=workflow_id, tasks=len(steps))
        return workflow

    async def refresh_status(self, workflow_id: str) -> Workflow:
        """Settle an active workflow from the state of its step tasks."""
        workflow = await self.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.ACTIVE:
            return workflow

        statuses = [
            (await self.task_store.get_task(step.task_id)).status
            for step in workflow.steps
            if step.task_id
        ]
        if any(s in (TaskStatus.FAILED, TaskStatus.CANCELLED) for s in statuses):
            new_status = WorkflowStatus.FAILED
        elif statuses and all(s == TaskStatus.COMPLETED for s in statuses):
            new_status = WorkflowStatus.COMPLETED
        else:
            return workflow

        now = self.clock()
        record = await self.store.update(
            TABLE,
            workflow_id,
            {
                "status": new_status.value,
                "completed_at": now.isoformat(),
                "updated_at": now.isoformat(),
            },
        )
        logger.info("Workflow finished", workflow_id=workflow_id, status=new_status.value)
        return Workflow.from_record(record)

    async def _on_transition(self, event: TaskTransition) -> None:
        if not event.current.is_terminal:
            return
        task = await self.task_store.get_task(event.task_id)
        if task.workflow_id:
            await self.refresh_status(task.workflow_id)
