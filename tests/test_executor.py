"""Tests for the verifier runner.

Tests cover:
- Exit codes and captured output
- Wall-clock timeout enforcement and process group termination
- Expectation matching (exit code, stdout/stderr substrings)
- Spawn failures
- Output truncation
- Async execution with cooperative cancellation

These tests spawn real (short-lived) subprocesses through /bin/sh.
"""

from __future__ import annotations

import asyncio
import os
import time

import pytest

from ralph.core.models import OnFailure, Verifier, VerifierExpectation
from ralph.runner.executor import (
    CANCELLED_EXIT_CODE,
    SPAWN_FAILURE_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    ExecutionResult,
    VerifierRunner,
    _truncate_output,
    check_expectation,
    strip_ansi,
)

pytestmark = pytest.mark.skipif(os.name == "nt", reason="POSIX shell required")


@pytest.fixture
def runner(tmp_path) -> VerifierRunner:
    return VerifierRunner(workdir=tmp_path, kill_grace_seconds=0.2)


# =============================================================================
# Basic Execution
# =============================================================================


class TestRun:
    """Tests for VerifierRunner.run."""

    def test_captures_stdout_and_exit_code(self, runner):
        """A successful command reports exit 0 and its output."""
        result = runner.run("echo hello", timeout_seconds=10)

        assert result.returncode == 0
        assert result.stdout.strip() == "hello"
        assert result.timed_out is False
        assert result.succeeded

    def test_nonzero_exit_code(self, runner):
        """Exit status is read from the process, not inferred."""
        result = runner.run("echo oops >&2; exit 3", timeout_seconds=10)

        assert result.returncode == 3
        assert "oops" in result.stderr
        assert not result.succeeded

    def test_argv_list_runs_without_shell(self, runner):
        """A list command is passed as argv."""
        result = runner.run(["printf", "%s", "$HOME"], timeout_seconds=10)

        assert result.stdout == "$HOME"

    def test_runs_in_workdir(self, runner, tmp_path):
        """Commands run in the runner's working directory by default."""
        (tmp_path / "marker.txt").write_text("here")

        result = runner.run("cat marker.txt", timeout_seconds=10)

        assert result.stdout == "here"

    def test_input_text_is_written_to_stdin(self, runner):
        """input_text feeds the process's stdin."""
        result = runner.run("cat", timeout_seconds=10, input_text="prompt body")

        assert result.stdout == "prompt body"

    def test_spawn_failure_reports_127(self, runner):
        """A binary that cannot be spawned reports 127 with the OS error."""
        result = runner.run(["definitely-not-a-real-binary-xyz"], timeout_seconds=10)

        assert result.returncode == SPAWN_FAILURE_EXIT_CODE
        assert result.stderr
        assert not result.timed_out

    def test_records_duration(self, runner):
        """duration_ms reflects wall-clock time."""
        result = runner.run("sleep 0.2", timeout_seconds=10)

        assert result.duration_ms >= 150


# =============================================================================
# Timeouts
# =============================================================================


class TestTimeout:
    """Tests for timeout enforcement."""

    def test_timeout_returns_sentinel_exit_code(self, runner):
        """A command exceeding its limit is killed and reports timed_out."""
        started = time.monotonic()
        result = runner.run("sleep 10", timeout_seconds=0.5)
        elapsed = time.monotonic() - started

        assert result.timed_out is True
        assert result.returncode == TIMEOUT_EXIT_CODE
        assert elapsed < 1.5  # well under 3x the limit
        assert "timed out" in result.stderr

    def test_timeout_keeps_partial_output(self, runner):
        """Output produced before the timeout is preserved."""
        result = runner.run("echo started; sleep 10", timeout_seconds=0.5)

        assert result.timed_out
        assert "started" in result.stdout

    def test_timeout_kills_whole_process_group(self, runner, tmp_path):
        """Grandchildren are terminated along with the shell."""
        marker = tmp_path / "survivor.txt"
        result = runner.run(
            f"(sleep 1; echo alive > {marker}) & sleep 10", timeout_seconds=0.3
        )

        assert result.timed_out
        time.sleep(1.2)
        assert not marker.exists()

    @pytest.mark.slow
    def test_term_ignoring_process_is_killed(self, runner):
        """A process that ignores SIGTERM is killed after the grace period."""
        started = time.monotonic()
        result = runner.run("trap '' TERM; sleep 10", timeout_seconds=0.3)

        assert result.timed_out
        assert time.monotonic() - started < 2.0


# =============================================================================
# Expectations
# =============================================================================


class TestExpectation:
    """Tests for check_expectation and evaluate."""

    def test_matching_result_passes(self):
        result = ExecutionResult(returncode=0, stdout="ok", stderr="")
        assert check_expectation(result, VerifierExpectation()) is None

    def test_exit_code_mismatch(self):
        result = ExecutionResult(returncode=1, stdout="", stderr="")
        reason = check_expectation(result, VerifierExpectation())
        assert reason == "exit code 1, expected 0"

    def test_expected_nonzero_exit_code(self):
        """A verifier may expect failure (e.g. a test that must fail first)."""
        result = ExecutionResult(returncode=1, stdout="", stderr="")
        assert check_expectation(result, VerifierExpectation(exit_code=1)) is None

    def test_stdout_contains(self):
        result = ExecutionResult(returncode=0, stdout="3 passed", stderr="")
        assert check_expectation(result, VerifierExpectation(stdout_contains="passed")) is None
        assert "stdout missing" in check_expectation(
            result, VerifierExpectation(stdout_contains="0 failed")
        )

    def test_stderr_contains(self):
        result = ExecutionResult(returncode=0, stdout="", stderr="warning: x")
        assert check_expectation(result, VerifierExpectation(stderr_contains="warning")) is None

    def test_timeout_never_passes(self):
        """Even an expectation of exit 124 fails when the command timed out."""
        result = ExecutionResult(
            returncode=TIMEOUT_EXIT_CODE, stdout="", stderr="", timed_out=True
        )
        assert check_expectation(result, VerifierExpectation(exit_code=TIMEOUT_EXIT_CODE))

    def test_evaluate_builds_outcome(self, runner):
        verifier = Verifier(
            name="greeting",
            command="echo hello world",
            expect=VerifierExpectation(stdout_contains="world"),
            timeout_seconds=10,
            on_failure=OnFailure.CONTINUE,
        )

        outcome = runner.evaluate(verifier)

        assert outcome.name == "greeting"
        assert outcome.passed is True
        assert outcome.returncode == 0
        assert outcome.reason is None

    def test_evaluate_timeout_outcome(self, runner):
        verifier = Verifier(name="slow", command="sleep 5", timeout_seconds=0.3)

        outcome = runner.evaluate(verifier)

        assert outcome.passed is False
        assert outcome.timed_out is True
        assert outcome.returncode == TIMEOUT_EXIT_CODE


# =============================================================================
# Output Handling
# =============================================================================


class TestOutputHandling:
    """Tests for output truncation and ANSI stripping."""

    def test_truncate_output_under_limit(self):
        assert _truncate_output("short", 100) == "short"

    def test_truncate_output_over_limit(self):
        truncated = _truncate_output("x" * 500, 100)
        assert truncated.startswith("x" * 100)
        assert "OUTPUT TRUNCATED" in truncated

    def test_runner_truncates_large_output(self, tmp_path):
        runner = VerifierRunner(workdir=tmp_path, max_output_bytes=64)
        result = runner.run("yes | head -c 10000", timeout_seconds=10)
        assert "OUTPUT TRUNCATED" in result.stdout
        assert len(result.stdout) < 200

    def test_strip_ansi(self):
        assert strip_ansi("\x1b[31mred\x1b[0m") == "red"


# =============================================================================
# Async Execution
# =============================================================================


class TestRunAsync:
    """Tests for VerifierRunner.run_async."""

    def test_async_success(self, runner):
        result = asyncio.run(runner.run_async("echo async", timeout_seconds=10))

        assert result.returncode == 0
        assert result.stdout.strip() == "async"

    def test_async_timeout(self, runner):
        result = asyncio.run(runner.run_async("sleep 10", timeout_seconds=0.3))

        assert result.timed_out is True
        assert result.cancelled is False
        assert result.returncode == TIMEOUT_EXIT_CODE

    def test_async_cancel_is_distinct_from_timeout(self, runner):
        """Setting the cancel event kills the process and reports cancelled."""

        async def scenario():
            cancel = asyncio.Event()
            task = asyncio.create_task(
                runner.run_async("sleep 10", timeout_seconds=30, cancel=cancel)
            )
            await asyncio.sleep(0.2)
            cancel.set()
            return await task

        started = time.monotonic()
        result = asyncio.run(scenario())

        assert result.cancelled is True
        assert result.timed_out is False
        assert result.returncode == CANCELLED_EXIT_CODE
        assert time.monotonic() - started < 3.0
