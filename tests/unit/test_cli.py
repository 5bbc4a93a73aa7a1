"""Unit tests for the taskmesh command line."""

import pytest
from typer.testing import CliRunner

from taskmesh import __version__
from taskmesh.cli import utils
from taskmesh.cli.main import app
from taskmesh.cli.utils import APIClientError

runner = CliRunner()


class FakeAPI:
    """Stands in for ``api_request``, replying from a canned table."""

    def __init__(self, replies=None, error=None):
        self.replies = replies or {}
        self.error = error
        self.calls = []

    async def __call__(self, method, path, json=None, **params):
        self.calls.append((method, path, json, params))
        if self.error is not None:
            raise self.error
        return self.replies.get((method, path))


@pytest.fixture
def fake_api(monkeypatch):
    def install(module, **kwargs):
        api = FakeAPI(**kwargs)
        monkeypatch.setattr(f"taskmesh.cli.{module}.api_request", api)
        return api

    return install


class TestMain:
    def test_version(self):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"TaskMesh CLI v{__version__}" in result.output

    def test_config_valid(self, monkeypatch):
        monkeypatch.setenv("TASKMESH_API_PORT", "9100")

        result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_config_invalid_exits_nonzero(self, monkeypatch):
        monkeypatch.setenv("TASKMESH_MAX_AGENTS", "0")

        result = runner.invoke(app, ["config"])

        assert result.exit_code == 1
        assert "MAX_AGENTS must be at least 1" in result.output

    def test_report(self, fake_api):
        api = fake_api(
            "main",
            replies={
                ("POST", "/reports"): {
                    "id": "r1",
                    "summary": {
                        "total_tasks": 4,
                        "success_rate": 75.0,
                        "average_response_time": 90.0,
                        "total_errors": 1,
                        "critical_alerts": 0,
                    },
                    "detailed_metrics": [],
                    "recommendations": [],
                }
            },
        )

        result = runner.invoke(app, ["report", "--type", "weekly", "--agent", "a1"])

        assert result.exit_code == 0
        assert "Weekly report r1" in result.output
        assert api.calls == [("POST", "/reports", {"type": "weekly", "agent_ids": ["a1"]}, {})]


class TestAgentCommands:
    def test_list_passes_status_filter(self, fake_api):
        api = fake_api("commands.agents", replies={("GET", "/agents"): []})

        result = runner.invoke(app, ["agents", "list", "--status", "idle"])

        assert result.exit_code == 0
        assert "No agents registered" in result.output
        assert api.calls == [("GET", "/agents", None, {"status": "idle"})]

    def test_register(self, fake_api):
        api = fake_api(
            "commands.agents",
            replies={("POST", "/agents"): {"id": "agent-1", "name": "reviewer"}},
        )

        result = runner.invoke(
            app, ["agents", "register", "reviewer", "-c", "code-review", "-c", "docs"]
        )

        assert result.exit_code == 0
        assert "Agent ID: agent-1" in result.output
        assert api.calls[0][2] == {
            "name": "reviewer",
            "capabilities": ["code-review", "docs"],
            "type": "general",
        }

    def test_unreachable_api_exits_with_error(self, fake_api):
        fake_api("commands.agents", error=APIClientError("Cannot connect to API server"))

        result = runner.invoke(app, ["agents", "list"])

        assert result.exit_code == 1
        assert "Cannot connect to API server" in result.output


class TestTaskCommands:
    def test_submit(self, fake_api):
        api = fake_api("commands.tasks", replies={("POST", "/tasks"): {"id": "task-1"}})

        result = runner.invoke(
            app,
            ["tasks", "submit", "Review", "--type", "code-review", "--input", '{"pr": 7}'],
        )

        assert result.exit_code == 0
        assert "Task ID: task-1" in result.output
        payload = api.calls[0][2]
        assert payload["type"] == "code-review"
        assert payload["priority"] == "medium"
        assert payload["input_data"] == {"pr": 7}

    def test_submit_rejects_bad_json(self, fake_api):
        api = fake_api("commands.tasks")

        result = runner.invoke(
            app, ["tasks", "submit", "Review", "--type", "code-review", "--input", "{nope"]
        )

        assert result.exit_code == 1
        assert api.calls == []

    def test_cancel(self, fake_api):
        api = fake_api("commands.tasks")

        result = runner.invoke(app, ["tasks", "cancel", "task-1", "--reason", "stale"])

        assert result.exit_code == 0
        assert api.calls == [("POST", "/tasks/task-1/cancel", {"reason": "stale"}, {})]


class TestUtils:
    def test_base_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("TASKMESH_API_URL", "http://api.example:9000/")

        assert utils.get_api_base_url() == "http://api.example:9000"

    def test_base_url_from_settings(self, monkeypatch):
        monkeypatch.delenv("TASKMESH_API_URL", raising=False)
        monkeypatch.setenv("TASKMESH_API_PORT", "9100")

        assert utils.get_api_base_url() == "http://127.0.0.1:9100"

    @pytest.mark.parametrize(
        "seconds, expected", [(12.34, "12.3s"), (90, "1.5m"), (5400, "1.5h")]
    )
    def test_format_duration(self, seconds, expected):
        assert utils.format_duration(seconds) == expected
