"""Tests for CLI commands.

Tests ralph CLI commands using Click's CliRunner:
- init: Initialize the workspace
- create-item / create-gate: Write records
- run: Drive items (real subprocesses with trivial commands)
- status: Human and JSON output
- govern: Gate policy check and enforcement
- watchdog: Single scan
- version: Show version information
"""

from __future__ import annotations

import json
import re
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from ralph.cli import main
from ralph.core.models import ItemStatus
from ralph.core.store import FileStore

ITEM_ID_RE = re.compile(r"ri-[0-9a-f]{8}")


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def initialized(cli_runner):
    """Isolated filesystem with `ralph init` already run."""
    with cli_runner.isolated_filesystem():
        result = cli_runner.invoke(main, ["init"])
        assert result.exit_code == 0
        yield Path.cwd()


def create_item(cli_runner, *args: str) -> str:
    result = cli_runner.invoke(main, ["create-item", *args])
    assert result.exit_code == 0, result.output
    return ITEM_ID_RE.search(result.output).group(0)


class TestInitCommand:
    """Tests for 'ralph init' command."""

    def test_init_creates_layout(self, cli_runner):
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["init"])

            assert result.exit_code == 0
            assert "Workspace initialized!" in result.output
            assert Path(".ralph/items").is_dir()
            assert Path(".ralph/gates").is_dir()
            assert Path(".ralph/state.db").exists()
            config = yaml.safe_load(Path(".ralph/config.yaml").read_text())
            assert config["agent"]["cli"] == "claude"

    def test_init_already_initialized(self, initialized, cli_runner):
        result = cli_runner.invoke(main, ["init"])

        assert result.exit_code == 0
        assert "already initialized" in result.output


class TestCreateCommands:
    """Tests for 'ralph create-item' and 'ralph create-gate'."""

    def test_create_item(self, initialized, cli_runner):
        item_id = create_item(
            cli_runner,
            "Add a health endpoint",
            "--title",
            "Health",
            "-v",
            "unit=pytest -q",
            "-v",
            "lint=ruff check .",
            "--max-iterations",
            "3",
            "--lane",
            "feature",
        )

        item = FileStore(initialized).get_item(item_id)
        assert item.status == ItemStatus.PENDING
        assert [v.name for v in item.dod.verifiers] == ["unit", "lint"]
        assert item.dod.verifiers[0].command == "pytest -q"
        assert item.constraints.max_iterations == 3
        assert item.lane == "feature"

    def test_create_item_rejects_malformed_verifier(self, initialized, cli_runner):
        result = cli_runner.invoke(main, ["create-item", "x", "-v", "no-command"])

        assert result.exit_code == 2
        assert "NAME=COMMAND" in result.output

    def test_create_item_requires_init(self, cli_runner):
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["create-item", "x"])

            assert result.exit_code == 1
            assert "ralph init" in result.output

    def test_create_gate(self, initialized, cli_runner):
        result = cli_runner.invoke(main, ["create-gate", "ci", "-d", "main is broken"])

        assert result.exit_code == 0
        assert "(red)" in result.output
        gates = FileStore(initialized).list_gates()
        assert gates[0].type == "ci"
        assert gates[0].description == "main is broken"


class TestGovernCommand:
    """Tests for 'ralph govern'."""

    def test_check_with_no_gates(self, initialized, cli_runner):
        result = cli_runner.invoke(main, ["govern", "check"])

        assert result.exit_code == 0
        assert "0 total" in result.output
        assert "allowed" in result.output

    def test_check_reports_red_without_failing(self, initialized, cli_runner):
        cli_runner.invoke(main, ["create-gate", "ci"])

        result = cli_runner.invoke(main, ["govern", "check"])

        assert result.exit_code == 0
        assert "1 red" in result.output
        assert "blocked" in result.output

    def test_enforce_fails_while_red(self, initialized, cli_runner):
        cli_runner.invoke(main, ["create-gate", "ci"])

        result = cli_runner.invoke(main, ["govern", "enforce"])

        assert result.exit_code == 1
        assert "red gate" in result.output

    def test_enforce_passes_when_green(self, initialized, cli_runner):
        cli_runner.invoke(main, ["create-gate", "ci", "--status", "green"])

        result = cli_runner.invoke(main, ["govern", "enforce"])

        assert result.exit_code == 0


class TestRunCommand:
    """Tests for 'ralph run' with a trivial agent command."""

    @pytest.fixture
    def trivial_agent(self, initialized):
        config_path = initialized / ".ralph" / "config.yaml"
        config = yaml.safe_load(config_path.read_text())
        config["agent"]["command"] = ["true"]
        config_path.write_text(yaml.safe_dump(config))
        return initialized

    def test_run_completes_item(self, trivial_agent, cli_runner):
        item_id = create_item(cli_runner, "noop", "-v", "ok=true")

        result = cli_runner.invoke(main, ["run", item_id])

        assert result.exit_code == 0, result.output
        assert "completed" in result.output
        assert FileStore(trivial_agent).get_item(item_id).status == ItemStatus.COMPLETED

    def test_run_exits_nonzero_on_failure(self, trivial_agent, cli_runner):
        item_id = create_item(cli_runner, "noop", "-v", "never=false", "--max-iterations", "1")

        result = cli_runner.invoke(main, ["run", item_id])

        assert result.exit_code == 1
        assert FileStore(trivial_agent).get_item(item_id).status == ItemStatus.FAILED

    def test_run_unknown_item(self, initialized, cli_runner):
        result = cli_runner.invoke(main, ["run", "ri-00000000"])

        assert result.exit_code == 1
        assert "error" in result.output


class TestStatusCommand:
    """Tests for 'ralph status'."""

    def test_status_json(self, initialized, cli_runner):
        item_id = create_item(cli_runner, "something")
        cli_runner.invoke(main, ["create-gate", "ci"])

        result = cli_runner.invoke(main, ["status", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert set(data) == {"items", "gates", "gate_summary", "circuit_breakers", "escalations"}
        assert data["items"][0]["id"] == item_id
        assert data["gate_summary"]["red_count"] == 1
        assert data["escalations"] == []

    def test_status_table(self, initialized, cli_runner):
        create_item(cli_runner, "something", "--title", "Health")

        result = cli_runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "Health" in result.output


class TestWatchdogCommand:
    def test_run_once_with_no_items(self, initialized, cli_runner):
        result = cli_runner.invoke(main, ["watchdog", "run-once", "--stale-threshold", "5"])

        assert result.exit_code == 0
        assert "processed 0, nudged 0, restarted 0, escalated 0" in result.output

    def test_continuous_bounded(self, initialized, cli_runner):
        result = cli_runner.invoke(
            main, ["watchdog", "continuous", "--iterations", "1", "--interval", "0.01"]
        )

        assert result.exit_code == 0
        assert "Watchdog: processed 0" in result.output


class TestVersionCommand:
    def test_version(self, cli_runner):
        result = cli_runner.invoke(main, ["version"])

        assert result.exit_code == 0
        assert "ralph 0.1.0" in result.output
