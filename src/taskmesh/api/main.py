"""FastAPI application exposing the orchestrator over HTTP."""

import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, FastAPI, Request
from pydantic import BaseModel, Field

from .. import __version__
from ..core.enums import (
    AgentStatus,
    AlertStatus,
    ReportType,
    RuleCondition,
    Severity,
    TaskPriority,
    TaskStatus,
)
from ..core.models import RuleAction
from ..core.orchestrator import Orchestrator
from .error_handlers import setup_error_handlers

logger = structlog.get_logger()


class APIResponse(BaseModel):
    success: bool
    data: Any | None = None
    error: str | None = None
    timestamp: float = Field(default_factory=time.time)
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))


class AgentCreate(BaseModel):
    name: str
    capabilities: list[str]
    type: str = "general"
    configuration: dict[str, Any] = Field(default_factory=dict)


class AgentStatusUpdate(BaseModel):
    status: AgentStatus


class TaskCreate(BaseModel):
    name: str
    type: str
    priority: TaskPriority = TaskPriority.MEDIUM
    description: str = ""
    dependencies: list[str] = Field(default_factory=list)
    input_data: dict[str, Any] = Field(default_factory=dict)
    estimated_duration: float | None = None
    requested_by: str | None = None


class TaskCancel(BaseModel):
    reason: str | None = None


class TaskComplete(BaseModel):
    output_data: dict[str, Any] = Field(default_factory=dict)


class TaskFail(BaseModel):
    error_message: str
    blame_agent: bool = False


class RuleCreate(BaseModel):
    name: str
    metric: str
    condition: RuleCondition
    threshold: float | str
    agent_id: str | None = None
    severity: Severity = Severity.MEDIUM
    description: str = ""
    enabled: bool = True
    cooldown_minutes: int | None = None
    auto_resolve: bool = True
    actions: list[RuleAction] = Field(default_factory=list)


class ReportRequest(BaseModel):
    type: ReportType = ReportType.DAILY
    period_start: datetime | None = None
    period_end: datetime | None = None
    agent_ids: list[str] | None = None


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def ok(data: Any = None) -> APIResponse:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [
            item.model_dump(mode="json") if isinstance(item, BaseModel) else item
            for item in data
        ]
    return APIResponse(success=True, data=data)


router = APIRouter(prefix="/api/v1")


@router.get("/health", response_model=APIResponse, tags=["System"])
async def health_check(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Health of the store plus orchestrator statistics."""
    store_healthy = await orchestrator.store.health_check()
    return ok(
        {
            "status": "healthy" if store_healthy else "degraded",
            "service": "taskmesh-api",
            "version": __version__,
            "store": "connected" if store_healthy else "unavailable",
            "stats": await orchestrator.stats(),
        }
    )


# Agents


@router.get("/agents", response_model=APIResponse, tags=["Agents"])
async def list_agents(
    status: AgentStatus | None = None, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    return ok(await orchestrator.registry.list_agents(status=status))


@router.post("/agents", response_model=APIResponse, tags=["Agents"])
async def register_agent(
    agent_create: AgentCreate, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    agent = await orchestrator.register_agent(
        agent_create.name,
        agent_create.capabilities,
        type=agent_create.type,
        configuration=agent_create.configuration,
    )
    return ok(agent)


@router.get("/agents/{agent_id}", response_model=APIResponse, tags=["Agents"])
async def get_agent(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return ok(await orchestrator.registry.get_agent(agent_id))


@router.delete("/agents/{agent_id}", response_model=APIResponse, tags=["Agents"])
async def unregister_agent(
    agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    cancelled = await orchestrator.unregister_agent(agent_id)
    return ok({"agent_id": agent_id, "cancelled_tasks": cancelled})


@router.post("/agents/{agent_id}/status", response_model=APIResponse, tags=["Agents"])
async def update_agent_status(
    agent_id: str,
    update: AgentStatusUpdate,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return ok(await orchestrator.update_agent_status(agent_id, update.status))


# Tasks


@router.get("/tasks", response_model=APIResponse, tags=["Tasks"])
async def list_tasks(
    status: TaskStatus | None = None,
    agent_id: str | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    tasks = await orchestrator.task_store.list_tasks(status=status, agent_id=agent_id)
    return ok(tasks)


@router.post("/tasks", response_model=APIResponse, tags=["Tasks"])
async def submit_task(
    task_create: TaskCreate, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    task = await orchestrator.submit_task(
        task_create.name,
        task_create.type,
        task_create.priority,
        description=task_create.description,
        dependencies=task_create.dependencies,
        input_data=task_create.input_data,
        estimated_duration=task_create.estimated_duration,
        requested_by=task_create.requested_by,
    )
    return ok(task)


@router.get("/tasks/{task_id}", response_model=APIResponse, tags=["Tasks"])
async def get_task(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return ok(await orchestrator.task_store.get_task(task_id))


@router.post("/tasks/{task_id}/cancel", response_model=APIResponse, tags=["Tasks"])
async def cancel_task(
    task_id: str,
    cancel: TaskCancel | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    reason = cancel.reason if cancel else None
    return ok(await orchestrator.cancel_task(task_id, reason=reason))


@router.post("/tasks/{task_id}/complete", response_model=APIResponse, tags=["Tasks"])
async def complete_task(
    task_id: str,
    complete: TaskComplete | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    output = complete.output_data if complete else {}
    return ok(await orchestrator.complete_task(task_id, output))


@router.post("/tasks/{task_id}/fail", response_model=APIResponse, tags=["Tasks"])
async def fail_task(
    task_id: str, fail: TaskFail, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    task = await orchestrator.fail_task(task_id, fail.error_message, fail.blame_agent)
    return ok(task)


@router.post("/scheduler/tick", response_model=APIResponse, tags=["Tasks"])
async def run_scheduler_tick(orchestrator: Orchestrator = Depends(get_orchestrator)):
    result = await orchestrator.tick()
    return ok(
        {
            "skipped": result.skipped,
            "eligible": result.eligible,
            "started": [
                {"task_id": task_id, "agent_id": agent_id}
                for task_id, agent_id in result.started
            ],
            "unmatched": result.unmatched,
            "errors": result.errors,
        }
    )


# Metrics


@router.get("/metrics/system", response_model=APIResponse, tags=["Metrics"])
async def system_metrics(orchestrator: Orchestrator = Depends(get_orchestrator)):
    snapshot = orchestrator.metrics.latest_system_metrics()
    if snapshot is None:
        snapshot = await orchestrator.metrics.collect_system_metrics(record=False)
    return ok(snapshot)


@router.get("/metrics/agents/{agent_id}", response_model=APIResponse, tags=["Metrics"])
async def agent_metrics(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    agent = await orchestrator.registry.get_agent(agent_id)
    snapshot = orchestrator.metrics.latest_agent_metrics(agent.id)
    if snapshot is None:
        snapshot = await orchestrator.metrics.collect_agent_metrics(agent, record=False)
    return ok(snapshot)


# Monitoring rules and alerts


@router.get("/rules", response_model=APIResponse, tags=["Alerts"])
async def list_rules(
    enabled: bool | None = None, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    return ok(await orchestrator.alerts.list_rules(enabled=enabled))


@router.post("/rules", response_model=APIResponse, tags=["Alerts"])
async def create_rule(rule: RuleCreate, orchestrator: Orchestrator = Depends(get_orchestrator)):
    created = await orchestrator.alerts.create_rule(**rule.model_dump())
    return ok(created)


@router.delete("/rules/{rule_id}", response_model=APIResponse, tags=["Alerts"])
async def delete_rule(rule_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    await orchestrator.alerts.delete_rule(rule_id)
    return ok({"rule_id": rule_id, "deleted": True})


@router.get("/alerts", response_model=APIResponse, tags=["Alerts"])
async def list_alerts(
    status: AlertStatus | None = None,
    agent_id: str | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return ok(await orchestrator.alerts.list_alerts(status=status, agent_id=agent_id))


@router.post("/alerts/{alert_id}/acknowledge", response_model=APIResponse, tags=["Alerts"])
async def acknowledge_alert(
    alert_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    return ok(await orchestrator.alerts.acknowledge_alert(alert_id))


@router.post("/alerts/{alert_id}/resolve", response_model=APIResponse, tags=["Alerts"])
async def resolve_alert(alert_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return ok(await orchestrator.alerts.resolve_alert(alert_id))


# Reports


@router.post("/reports", response_model=APIResponse, tags=["Reports"])
async def generate_report(
    report_request: ReportRequest, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    report = await orchestrator.reports.generate(
        report_request.type,
        report_request.period_start,
        report_request.period_end,
        report_request.agent_ids,
    )
    return ok(report)


def create_app(orchestrator: Orchestrator | None = None, run_loops: bool = True) -> FastAPI:
    """Build the API around ``orchestrator``; its lifecycle follows the app's."""
    orchestrator = orchestrator or Orchestrator.from_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await orchestrator.start(run_loops=run_loops)
        logger.info("TaskMesh API started", version=__version__)
        try:
            yield
        finally:
            await orchestrator.stop()
            logger.info("TaskMesh API stopped")

    app = FastAPI(
        title="TaskMesh",
        description="Multi-agent task orchestration with monitoring and alerting.",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    setup_error_handlers(app)
    app.include_router(router)
    return app
