"""
Tests for cli/main.py - Keystone CLI.

Covers:
- plan: ordering a graph from a JSON file
- demo: starting and stopping the sample graph, with injected failures
- config: effective configuration output
"""
import json

import pytest
from typer.testing import CliRunner

from cli.main import app


@pytest.fixture
def runner():
    return CliRunner()


def _write_graph(tmp_path, entries):
    path = tmp_path / "services.json"
    path.write_text(json.dumps(entries))
    return path


class TestPlanCommand:
    """Tests for `keystone plan`."""

    def test_plan_as_json(self, runner, tmp_path):
        path = _write_graph(tmp_path, [
            {"name": "api", "dependencies": ["cache", "db"]},
            {"name": "cache", "dependencies": ["db"]},
            {"name": "db"},
        ])

        result = runner.invoke(app, ["plan", str(path), "--json"])

        assert result.exit_code == 0
        plan = json.loads(result.stdout)
        assert plan["initialization_order"] == ["db", "cache", "api"]
        assert plan["shutdown_order"] == ["api", "cache", "db"]

    def test_plan_table(self, runner, tmp_path):
        path = _write_graph(tmp_path, [
            {"name": "cache", "dependencies": ["db"]},
            {"name": "db", "critical": True},
        ])

        result = runner.invoke(app, ["plan", str(path)])

        assert result.exit_code == 0
        assert "Initialization Plan" in result.stdout
        assert "Shutdown order: cache -> db" in result.stdout

    def test_cycle_rejected(self, runner, tmp_path):
        path = _write_graph(tmp_path, [
            {"name": "x", "dependencies": ["y"]},
            {"name": "y", "dependencies": ["x"]},
        ])

        result = runner.invoke(app, ["plan", str(path)])

        assert result.exit_code == 1
        assert "CIRCULAR_DEPENDENCY" in result.stdout

    def test_unknown_dependency_rejected(self, runner, tmp_path):
        path = _write_graph(tmp_path, [{"name": "api", "dependencies": ["auth"]}])

        result = runner.invoke(app, ["plan", str(path)])

        assert result.exit_code == 1
        assert "DEPENDENCY_ERROR" in result.stdout

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(app, ["plan", str(tmp_path / "missing.json")])
        assert result.exit_code == 1
        assert "File not found" in result.stdout

    def test_invalid_json(self, runner, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        result = runner.invoke(app, ["plan", str(path)])
        assert result.exit_code == 1

    def test_non_list_document(self, runner, tmp_path):
        path = _write_graph(tmp_path, {"name": "db"})

        result = runner.invoke(app, ["plan", str(path)])
        assert result.exit_code == 1
        assert "Expected a JSON list" in result.stdout


class TestDemoCommand:
    """Tests for `keystone demo`."""

    def test_successful_run(self, runner):
        result = runner.invoke(app, ["demo", "--delay", "0"])

        assert result.exit_code == 0
        assert "Started 6 services" in result.stdout
        assert "Initialization order: database -> cache" in result.stdout

    def test_retry_recovers(self, runner):
        result = runner.invoke(app, [
            "demo", "--delay", "0",
            "--fail", "cache", "--fail-times", "1", "--attempts", "2",
        ])

        assert result.exit_code == 0
        assert "Started 6 services" in result.stdout

    def test_failure_rolls_back(self, runner):
        result = runner.invoke(app, ["demo", "--delay", "0", "--fail", "cache"])

        assert result.exit_code == 1
        assert "Startup failed" in result.stdout
        assert "Rolled back 1/1: database" in result.stdout

    def test_unknown_service(self, runner):
        result = runner.invoke(app, ["demo", "--fail", "nope"])

        assert result.exit_code == 1
        assert "Unknown service" in result.stdout


class TestConfigCommand:
    """Tests for `keystone config`."""

    def test_config_as_json(self, runner):
        result = runner.invoke(app, ["config", "--json"])

        assert result.exit_code == 0
        settings = json.loads(result.stdout)
        assert set(settings) == {"env", "debug", "lifecycle", "observability"}
        assert isinstance(settings["lifecycle"]["termination_signals"], list)
        assert settings["lifecycle"]["rollback_timeout"] > 0

    def test_config_table(self, runner):
        result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        assert "rollback_timeout" in result.stdout
