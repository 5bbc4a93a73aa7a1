"""
Agent management commands for the TaskMesh CLI
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

app = typer.Typer(help="Agent management commands")
console = Console()

AGENT_COLUMNS = ["id", "name", "type", "status", "capabilities", "current_task_id"]


@app.command("list")
def list_agents(
    status: str = typer.Option(
        None, "--status", "-s", help="Filter by status (idle, running, error, stopped)"
    ),
):
    """List registered agents"""
    asyncio.run(_list_agents(status))


async def _list_agents(status: str | None) -> None:
    try:
        agents = await api_request("GET", "/agents", status=status)
    except APIClientError as e:
        error_handler(e)
        return

    if not agents:
        info_message("No agents registered")
        return
    console.print(create_status_table("Agents", agents, AGENT_COLUMNS))


@app.command()
def register(
    name: str = typer.Argument(..., help="Agent name"),
    capabilities: list[str] = typer.Option(
        ..., "--capability", "-c", help="Capability the agent offers (repeatable)"
    ),
    agent_type: str = typer.Option("general", "--type", "-t", help="Agent type"),
):
    """Register a new agent"""
    asyncio.run(_register(name, capabilities, agent_type))


async def _register(name: str, capabilities: list[str], agent_type: str) -> None:
    try:
        agent = await api_request(
            "POST",
            "/agents",
            json={"name": name, "capabilities": capabilities, "type": agent_type},
        )
    except APIClientError as e:
        error_handler(e)
        return

    success_message(f"Agent '{agent['name']}' registered")
    info_message(f"Agent ID: {agent['id']}")
