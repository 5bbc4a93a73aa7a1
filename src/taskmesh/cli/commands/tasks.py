"""
Task management commands for the TaskMesh CLI
"""

import asyncio
import json

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

app = typer.Typer(help="Task management commands")
console = Console()

TASK_COLUMNS = ["id", "name", "type", "priority", "status", "assigned_agent_id"]


@app.command("list")
def list_tasks(
    status: str = typer.Option(
        None,
        "--status",
        "-s",
        help="Filter by status (pending, assigned, running, completed, failed, cancelled)",
    ),
    agent_id: str = typer.Option(None, "--agent", "-a", help="Filter by assigned agent"),
    limit: int = typer.Option(None, "--limit", "-l", help="Limit number of results"),
):
    """List tasks"""
    asyncio.run(_list_tasks(status, agent_id, limit))


async def _list_tasks(status: str | None, agent_id: str | None, limit: int | None) -> None:
    try:
        tasks = await api_request("GET", "/tasks", status=status, agent_id=agent_id)
    except APIClientError as e:
        error_handler(e)
        return

    if not tasks:
        info_message("No tasks found")
        return
    tasks.sort(key=lambda t: t["created_at"], reverse=True)
    if limit:
        tasks = tasks[:limit]
    console.print(create_status_table("Tasks", tasks, TASK_COLUMNS))


@app.command()
def submit(
    name: str = typer.Argument(..., help="Task name"),
    task_type: str = typer.Option(..., "--type", "-t", help="Task type (required capability)"),
    priority: str = typer.Option(
        "medium", "--priority", "-p", help="Priority (low, medium, high, critical)"
    ),
    description: str = typer.Option("", "--description", "-d", help="Task description"),
    depends_on: list[str] = typer.Option(
        [], "--depends-on", help="Id of a task that must complete first (repeatable)"
    ),
    input_data: str = typer.Option(None, "--input", "-i", help="Input data as JSON"),
):
    """Submit a task to the queue"""
    try:
        payload = json.loads(input_data) if input_data else {}
    except json.JSONDecodeError as e:
        error_handler(Exception(f"Invalid JSON input: {e}"))
        return
    asyncio.run(
        _submit(
            {
                "name": name,
                "type": task_type,
                "priority": priority,
                "description": description,
                "dependencies": depends_on,
                "input_data": payload,
            }
        )
    )


async def _submit(task_data: dict) -> None:
    try:
        task = await api_request("POST", "/tasks", json=task_data)
    except APIClientError as e:
        error_handler(e)
        return

    success_message("Task submitted successfully!")
    info_message(f"Task ID: {task['id']}")
    console.print(
        "\n💡 [dim]Use 'taskmesh tasks list --status running' to monitor progress[/dim]"
    )


@app.command()
def cancel(
    task_id: str = typer.Argument(..., help="Task id"),
    reason: str = typer.Option(None, "--reason", "-r", help="Why the task is cancelled"),
):
    """Cancel a pending, assigned or running task"""
    asyncio.run(_cancel(task_id, reason))


async def _cancel(task_id: str, reason: str | None) -> None:
    try:
        await api_request("POST", f"/tasks/{task_id}/cancel", json={"reason": reason})
    except APIClientError as e:
        error_handler(e)
        return
    success_message(f"Task {task_id} cancelled")
