"""
Alert commands for the TaskMesh CLI
"""

import asyncio

import typer
from rich.console import Console

from ..utils import (
    APIClientError,
    api_request,
    create_status_table,
    error_handler,
    info_message,
    success_message,
)

app = typer.Typer(help="Alert commands")
console = Console()

ALERT_COLUMNS = ["id", "title", "severity", "status", "agent_id", "current_value", "created_at"]


@app.command("list")
def list_alerts(
    status: str = typer.Option(
        None, "--status", "-s", help="Filter by status (active, acknowledged, resolved)"
    ),
    agent_id: str = typer.Option(None, "--agent", "-a", help="Filter by agent"),
):
    """List alerts, newest first"""
    asyncio.run(_list_alerts(status, agent_id))


async def _list_alerts(status: str | None, agent_id: str | None) -> None:
    try:
        alerts = await api_request("GET", "/alerts", status=status, agent_id=agent_id)
    except APIClientError as e:
        error_handler(e)
        return

    if not alerts:
        info_message("No alerts")
        return
    console.print(create_status_table("Alerts", alerts, ALERT_COLUMNS))


@app.command()
def ack(alert_id: str = typer.Argument(..., help="Alert id")):
    """Acknowledge an alert"""
    asyncio.run(_ack(alert_id))


async def _ack(alert_id: str) -> None:
    try:
        await api_request("POST", f"/alerts/{alert_id}/acknowledge")
    except APIClientError as e:
        error_handler(e)
        return
    success_message(f"Alert {alert_id} acknowledged")
