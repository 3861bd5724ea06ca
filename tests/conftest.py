# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the ralph test suite.

This module provides foundational fixtures used across all test modules:
- Temporary workspaces with a .ralph/ directory
- Test databases and file-backed stores
- Work item factories
- Controllable clocks and sleep recorders
- Scripted fakes for the agent and verifier runner

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from ralph.core.models import (
    Constraints,
    DefinitionOfDone,
    OnFailure,
    Verifier,
    VerifierOutcome,
    WorkItem,
)
from ralph.core.state import Database
from ralph.core.store import FileStore
from ralph.runner.executor import ExecutionResult


# =============================================================================
# Workspace and Storage Fixtures
# =============================================================================


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Create a temporary workspace with an empty .ralph/ layout.

    Creates:
        - .ralph/items/
        - .ralph/gates/

    Returns:
        Path to the workspace root.
    """
    (tmp_path / ".ralph" / "items").mkdir(parents=True)
    (tmp_path / ".ralph" / "gates").mkdir(parents=True)
    return tmp_path


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a fresh test database.

    Returns:
        Database instance with initialized schema.
    """
    return Database(tmp_path / "test_state.db")


@pytest.fixture
def file_store(workspace: Path) -> FileStore:
    """File-backed store rooted at the temporary workspace."""
    return FileStore(workspace)


# =============================================================================
# Work Item Fixtures
# =============================================================================


@pytest.fixture
def make_item() -> Callable[..., WorkItem]:
    """Factory for work items.

    Example:
        def test_something(make_item):
            item = make_item(verifiers=[("tests", "pytest -q")], max_iterations=3)
    """
    counter = {"n": 0}

    def _make(
        verifiers: list[tuple[str, str]] | None = None,
        max_iterations: int = 5,
        time_budget_minutes: float | None = None,
        lane: str = "default",
        evidence_required: bool = False,
        on_failure: OnFailure = OnFailure.STOP,
        **kwargs: Any,
    ) -> WorkItem:
        counter["n"] += 1
        return WorkItem(
            id=kwargs.pop("id", f"ri-test{counter['n']:04d}"),
            title=kwargs.pop("title", "Test item"),
            intent=kwargs.pop("intent", "Make the verifiers pass"),
            dod=DefinitionOfDone(
                verifiers=[
                    Verifier(name=name, command=command, on_failure=on_failure)
                    for name, command in (verifiers or [])
                ],
                evidence_required=evidence_required,
            ),
            constraints=Constraints(
                max_iterations=max_iterations, time_budget_minutes=time_budget_minutes
            ),
            lane=lane,
            **kwargs,
        )

    return _make


# =============================================================================
# Time Fixtures
# =============================================================================


class FakeClock:
    """Controllable datetime clock (timezone-aware)."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeTime:
    """Controllable float clock for circuit breakers."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def sleeps() -> list[float]:
    """Recorded sleep durations; pass `sleeps.append` as the sleep function."""
    return []


# =============================================================================
# Scripted Fakes
# =============================================================================


class ScriptedAgent:
    """Stand-in for AgentClient.

    Each call consumes the next script entry: an exception instance is
    raised, a callable is invoked (and its return used), anything else is
    returned. When the script runs out, a successful result is returned.
    """

    def __init__(self, script: list[Any] | None = None, cli_name: str = "fake"):
        self.script = list(script or [])
        self.cli_name = cli_name
        self.prompts: list[str] = []

    def execute(self, prompt: str, workdir: Path | None = None) -> ExecutionResult:
        self.prompts.append(prompt)
        entry = self.script.pop(0) if self.script else None
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            entry = entry(workdir)
        if entry is None:
            return ExecutionResult(returncode=0, stdout="done", stderr="")
        return entry

    @property
    def calls(self) -> int:
        return len(self.prompts)


class ScriptedRunner:
    """Stand-in for VerifierRunner returning scripted pass/fail per verifier.

    outcomes maps verifier name to a list of booleans consumed per call;
    a verifier with no remaining entries passes.
    """

    def __init__(self, outcomes: dict[str, list[bool]] | None = None):
        self.outcomes = {name: list(seq) for name, seq in (outcomes or {}).items()}
        self.calls: list[str] = []
        self.commands: list[Any] = []

    def evaluate(self, verifier: Verifier, cwd: Path | None = None) -> VerifierOutcome:
        self.calls.append(verifier.name)
        seq = self.outcomes.get(verifier.name, [])
        passed = seq.pop(0) if seq else True
        return VerifierOutcome(
            name=verifier.name,
            passed=passed,
            returncode=0 if passed else 1,
            stdout="" if passed else f"FAILED tests/test_{verifier.name}.py::test_it - boom",
            reason=None if passed else "exit code 1, expected 0",
        )

    def run(self, command, timeout_seconds, cwd=None, env=None, input_text=None):
        self.commands.append(command)
        return ExecutionResult(returncode=0, stdout="", stderr="")


@pytest.fixture
def scripted_agent() -> Callable[..., ScriptedAgent]:
    return ScriptedAgent


@pytest.fixture
def scripted_runner() -> Callable[..., ScriptedRunner]:
    return ScriptedRunner


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "integration: marks integration tests")
