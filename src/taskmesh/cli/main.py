"""
TaskMesh CLI - Main entry point for the taskmesh command
"""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from .. import __version__
from ..core.config import get_api_config, get_settings
from ..core.logging_config import configure_logging
from .commands import agents, alerts, tasks
from .utils import (
    APIClientError,
    api_request,
    create_status_table,
    error_handler,
    format_duration,
    info_message,
    success_message,
    warning_message,
)

app = typer.Typer(
    name="taskmesh",
    help="TaskMesh - Multi-agent task orchestration CLI",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

console = Console()

app.add_typer(agents.app, name="agents", help="Agent management commands")
app.add_typer(tasks.app, name="tasks", help="Task management commands")
app.add_typer(alerts.app, name="alerts", help="Alert commands")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", help="Show version"),
):
    """
    TaskMesh CLI

    Run the orchestrator service and manage agents, tasks and alerts over its API.
    """
    if version:
        console.print(f"TaskMesh CLI v{__version__}", style="bold green")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Bind address"),
    port: int = typer.Option(None, "--port", help="Bind port"),
    no_loops: bool = typer.Option(
        False, "--no-loops", help="Serve the API without the background loops"
    ),
):
    """Run the API server and the scheduler, metrics and alert loops"""
    import uvicorn

    from ..api.main import create_app
    from ..core.config import validate_environment
    from ..core.orchestrator import Orchestrator

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    try:
        validate_environment(settings)
    except ValueError as e:
        error_handler(e)
        return

    api_config = get_api_config(settings)
    application = create_app(Orchestrator.from_settings(settings), run_loops=not no_loops)
    info_message(
        f"Starting TaskMesh API on {host or api_config['host']}:{port or api_config['port']}"
    )
    uvicorn.run(
        application,
        host=host or api_config["host"],
        port=port or api_config["port"],
        log_level=api_config["log_level"],
    )


@app.command()
def config():
    """Show the effective settings and any configuration issues"""
    settings = get_settings()

    table = Table(title="TaskMesh Configuration", show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for key, value in settings.model_dump(mode="json").items():
        table.add_row(key, "N/A" if value is None else str(value))
    console.print(table)

    issues = settings.validate_configuration()
    if issues:
        for issue in issues:
            warning_message(issue)
        raise typer.Exit(code=1)
    success_message("Configuration is valid")


@app.command()
def report(
    report_type: str = typer.Option(
        "daily", "--type", "-t", help="Report type (daily, weekly, monthly)"
    ),
    agent_ids: list[str] = typer.Option(
        [], "--agent", "-a", help="Restrict to an agent (repeatable)"
    ),
):
    """Generate a performance report"""
    asyncio.run(_report(report_type, agent_ids))


async def _report(report_type: str, agent_ids: list[str]) -> None:
    try:
        data = await api_request(
            "POST", "/reports", json={"type": report_type, "agent_ids": agent_ids or None}
        )
    except APIClientError as e:
        error_handler(e)
        return

    summary = data["summary"]
    success_message(f"{report_type.title()} report {data['id']}")
    console.print(
        create_status_table(
            "Summary",
            [
                {
                    "total_tasks": summary["total_tasks"],
                    "success_rate": f"{summary['success_rate']:.1f}%",
                    "avg_response": format_duration(summary["average_response_time"]),
                    "errors": summary["total_errors"],
                    "critical_alerts": summary["critical_alerts"],
                }
            ],
        )
    )
    if data["detailed_metrics"]:
        console.print(create_status_table("Agents", data["detailed_metrics"]))
    for recommendation in data["recommendations"]:
        warning_message(f"[{recommendation['priority']}] {recommendation['description']}")


if __name__ == "__main__":
    app()
