"""Unit tests for workflow creation and execution."""

import pytest

from taskmesh.core.enums import TaskPriority, TaskStatus, WorkflowStatus
from taskmesh.core.exceptions import ValidationError, WorkflowNotFoundError
from taskmesh.core.models import WorkflowStep
from taskmesh.core.workflows import execution_order


def pipeline_steps():
    build = WorkflowStep(id="build", name="Build", type="build", order=1)
    test = WorkflowStep(id="test", name="Test", type="test", order=2, dependencies=["build"])
    lint = WorkflowStep(id="lint", name="Lint", type="lint", order=0)
    deploy = WorkflowStep(
        id="deploy",
        name="Deploy",
        type="deploy",
        order=3,
        priority=TaskPriority.HIGH,
        configuration={"env": "staging"},
        dependencies=["test", "lint"],
    )
    return [deploy, test, build, lint]


class TestExecutionOrder:
    def test_dependencies_come_first(self):
        ordered = execution_order(pipeline_steps())

        assert [s.id for s in ordered] == ["lint", "build", "test", "deploy"]

    def test_unknown_dependency(self):
        step = WorkflowStep(name="Orphan", type="build", dependencies=["ghost"])

        with pytest.raises(ValidationError, match="unknown step"):
            execution_order([step])

    def test_cycle_detected(self):
        a = WorkflowStep(id="a", name="A", type="x", dependencies=["b"])
        b = WorkflowStep(id="b", name="B", type="x", dependencies=["a"])

        with pytest.raises(ValidationError, match="Circular"):
            execution_order([a, b])


class TestWorkflowManager:
    @pytest.mark.asyncio
    async def test_create_workflow_is_draft(self, workflows):
        workflow = await workflows.create_workflow("Release", pipeline_steps())

        assert workflow.status == WorkflowStatus.DRAFT
        assert (await workflows.get_workflow(workflow.id)).name == "Release"
        assert [w.id for w in await workflows.list_workflows("draft")] == [workflow.id]

    @pytest.mark.asyncio
    async def test_empty_workflow_rejected(self, workflows):
        with pytest.raises(ValidationError):
            await workflows.create_workflow("Nothing", [])

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, workflows):
        with pytest.raises(WorkflowNotFoundError):
            await workflows.get_workflow("missing")

    @pytest.mark.asyncio
    async def test_execute_creates_dependent_tasks(self, workflows, task_store):
        workflow = await workflows.create_workflow("Release", pipeline_steps())

        started = await workflows.execute_workflow(workflow.id)

        assert started.status == WorkflowStatus.ACTIVE
        assert started.started_at is not None
        task_ids = {step.id: step.task_id for step in started.steps}
        deploy = await task_store.get_task(task_ids["deploy"])
        assert deploy.name == "Release - Deploy"
        assert deploy.workflow_id == workflow.id
        assert deploy.priority == TaskPriority.HIGH
        assert deploy.input_data == {"env": "staging"}
        assert set(deploy.dependencies) == {task_ids["test"], task_ids["lint"]}
        eligible = {t.id for t in await task_store.eligible_tasks()}
        assert eligible == {task_ids["lint"], task_ids["build"]}

    @pytest.mark.asyncio
    async def test_execute_twice_rejected(self, workflows):
        workflow = await workflows.create_workflow("Release", pipeline_steps())
        await workflows.execute_workflow(workflow.id)

        with pytest.raises(ValidationError, match="not draft"):
            await workflows.execute_workflow(workflow.id)

    @pytest.mark.asyncio
    async def test_completes_when_every_step_completes(self, workflows, finish_task):
        workflow = await workflows.create_workflow("Release", pipeline_steps())
        started = await workflows.execute_workflow(workflow.id)

        for step in execution_order(started.steps):
            await finish_task(step.task_id, "agent-1")

        finished = await workflows.get_workflow(workflow.id)
        assert finished.status == WorkflowStatus.COMPLETED
        assert finished.completed_at is not None

    @pytest.mark.asyncio
    async def test_failed_step_fails_workflow(self, workflows, task_store, finish_task):
        workflow = await workflows.create_workflow("Release", pipeline_steps())
        started = await workflows.execute_workflow(workflow.id)
        build = next(s for s in started.steps if s.id == "build")

        await finish_task(build.task_id, "agent-1", success=False)

        assert (await workflows.get_workflow(workflow.id)).status == WorkflowStatus.FAILED
        test = next(s for s in started.steps if s.id == "test")
        assert (await task_store.get_task(test.task_id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancelled_step_fails_workflow(self, workflows, task_store):
        workflow = await workflows.create_workflow("Release", pipeline_steps())
        started = await workflows.execute_workflow(workflow.id)

        await task_store.cancel(started.steps[0].task_id)

        assert (await workflows.get_workflow(workflow.id)).status == WorkflowStatus.FAILED
