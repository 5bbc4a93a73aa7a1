"""
Utility functions for the TaskMesh CLI
"""

import os
import sys
from typing import Any

import httpx
from rich.console import Console
from rich.table import Table

from ..core.config import get_settings

console = Console()


class APIClientError(Exception):
    """The API could not be reached or answered with an error."""


def get_api_base_url() -> str:
    """Base URL of the API, from TASKMESH_API_URL or the configured host and port."""
    url = os.getenv("TASKMESH_API_URL")
    if url:
        return url.rstrip("/")
    settings = get_settings()
    return f"http://{settings.api_host}:{settings.api_port}"


async def api_request(
    method: str, path: str, json: dict[str, Any] | None = None, **params: Any
) -> Any:
    """Call the API and return the ``data`` of its response envelope."""
    query = {k: v for k, v in params.items() if v is not None}
    try:
        async with httpx.AsyncClient(base_url=get_api_base_url(), timeout=10.0) as client:
            response = await client.request(method, f"/api/v1{path}", json=json, params=query)
    except httpx.ConnectError as e:
        raise APIClientError(
            "Cannot connect to API server. Is it running? Try: taskmesh serve"
        ) from e

    try:
        body = response.json()
    except ValueError as e:
        raise APIClientError(f"API returned status {response.status_code}") from e
    if response.status_code >= 400 or not body.get("success"):
        raise APIClientError(body.get("error") or f"API returned status {response.status_code}")
    return body.get("data")


def error_handler(error: Exception) -> None:
    """Handle CLI errors with rich formatting"""
    console.print(f"[bold red]Error:[/bold red] {error}")
    sys.exit(1)


def success_message(message: str) -> None:
    console.print(f"[bold green]✅ {message}[/bold green]")


def warning_message(message: str) -> None:
    console.print(f"[bold yellow]⚠️  {message}[/bold yellow]")


def info_message(message: str) -> None:
    console.print(f"[bold blue]ℹ️  {message}[/bold blue]")


def create_status_table(
    title: str, data: list[dict[str, Any]], columns: list[str] | None = None
) -> Table:
    """Create a formatted table, one row per record"""
    table = Table(title=title, show_header=True, header_style="bold magenta")

    if not data:
        return table

    columns = columns or list(data[0].keys())
    for key in columns:
        table.add_column(key.replace("_", " ").title())

    for row in data:
        values = []
        for key in columns:
            value = row.get(key)
            if isinstance(value, bool):
                values.append("✅ Yes" if value else "❌ No")
            elif value is None:
                values.append("N/A")
            elif isinstance(value, list):
                values.append(", ".join(str(v) for v in value))
            else:
                values.append(str(value))
        table.add_row(*values)

    return table


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format"""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    else:
        return f"{seconds / 3600:.1f}h"
