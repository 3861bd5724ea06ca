"""Process-level command execution with enforced wall-clock timeouts.

VerifierRunner spawns each command in its own session so a timeout can take
down the whole process tree, not just the shell that started it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import signal
import subprocess
import time
from pathlib import Path

from pydantic import BaseModel

from ralph.core.models import Verifier, VerifierExpectation, VerifierOutcome

logger = logging.getLogger(__name__)

# Same sentinel GNU timeout(1) uses.
TIMEOUT_EXIT_CODE = 124
SPAWN_FAILURE_EXIT_CODE = 127
CANCELLED_EXIT_CODE = 130

ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


class ExecutionResult(BaseModel):
    """Result of a command execution."""

    returncode: int
    stdout: str
    stderr: str
    duration_ms: int = 0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled


def _truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed.

    Prevents downstream memory issues from unbounded command output.
    """
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    # Truncate by bytes, ensuring we don't cut in the middle of a UTF-8 sequence
    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes from output."""
    return ANSI_ESCAPE.sub("", text)


def _signal_group(pid: int, sig: int) -> None:
    if os.name == "nt":
        return
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(pid, sig)


def _terminate_process_group(proc: subprocess.Popen, grace_seconds: float) -> None:
    """Stop proc and its process group without leaving orphans.

    SIGTERM first, SIGKILL once the grace period runs out.
    """
    if proc.poll() is not None:
        # Leader gone; children may still hold the pipes.
        _signal_group(proc.pid, signal.SIGKILL)
        return

    _signal_group(proc.pid, signal.SIGTERM)
    if os.name == "nt":
        proc.terminate()
    try:
        proc.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        pass
    _signal_group(proc.pid, signal.SIGKILL)
    if proc.poll() is None:
        proc.kill()


def check_expectation(result: ExecutionResult, expect: VerifierExpectation) -> str | None:
    """Return None if result matches expect, else the reason it does not."""
    if result.timed_out:
        return f"timed out (exit {result.returncode})"
    if result.cancelled:
        return "cancelled"
    if result.returncode != expect.exit_code:
        return f"exit code {result.returncode}, expected {expect.exit_code}"
    if expect.stdout_contains is not None and expect.stdout_contains not in result.stdout:
        return f"stdout missing {expect.stdout_contains!r}"
    if expect.stderr_contains is not None and expect.stderr_contains not in result.stderr:
        return f"stderr missing {expect.stderr_contains!r}"
    return None


class VerifierRunner:
    """Run verifier commands as child processes with enforced timeouts.

    One OS process per call. The process handle is released on every exit
    path, and exit status/output are read from it before release.
    """

    def __init__(
        self,
        workdir: Path | None = None,
        max_output_bytes: int = 1024 * 1024,
        kill_grace_seconds: float = 0.5,
        env: dict[str, str] | None = None,
    ):
        self.workdir = Path(workdir).absolute() if workdir else None
        self.max_output_bytes = max_output_bytes
        self.kill_grace_seconds = kill_grace_seconds
        self.env = env

    def _build_result(
        self,
        returncode: int,
        stdout: str | None,
        stderr: str | None,
        started: float,
        timed_out: bool = False,
        cancelled: bool = False,
    ) -> ExecutionResult:
        return ExecutionResult(
            returncode=returncode,
            stdout=_truncate_output(strip_ansi(stdout or ""), self.max_output_bytes),
            stderr=_truncate_output(stderr or "", self.max_output_bytes),
            duration_ms=int((time.monotonic() - started) * 1000),
            timed_out=timed_out,
            cancelled=cancelled,
        )

    def run(
        self,
        command: str | list[str],
        timeout_seconds: float,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        input_text: str | None = None,
    ) -> ExecutionResult:
        """Run a command, blocking until it exits or the timeout fires.

        Args:
            command: Shell string, or argv list (run without a shell)
            timeout_seconds: Wall-clock limit
            cwd: Working directory (defaults to the runner's workdir)
            env: Environment override
            input_text: Optional data written to stdin

        Returns:
            ExecutionResult; on timeout timed_out=True and returncode=TIMEOUT_EXIT_CODE
        """
        started = time.monotonic()
        effective_cwd = cwd or self.workdir
        try:
            proc = subprocess.Popen(
                command,
                shell=isinstance(command, str),
                cwd=str(effective_cwd) if effective_cwd else None,
                env=env or self.env,
                stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            logger.warning(f"Failed to spawn {command!r}: {e}")
            return self._build_result(SPAWN_FAILURE_EXIT_CODE, "", str(e), started)

        with proc:
            try:
                stdout, stderr = proc.communicate(input=input_text, timeout=timeout_seconds)
                returncode = proc.returncode
                timed_out = False
            except subprocess.TimeoutExpired:
                logger.info(f"Command timed out after {timeout_seconds}s, killing process group")
                _terminate_process_group(proc, self.kill_grace_seconds)
                try:
                    stdout, stderr = proc.communicate(timeout=self.kill_grace_seconds)
                except subprocess.TimeoutExpired:
                    stdout, stderr = "", ""
                stderr = (stderr or "") + f"\nCommand timed out after {timeout_seconds}s"
                returncode = TIMEOUT_EXIT_CODE
                timed_out = True

        return self._build_result(returncode, stdout, stderr, started, timed_out=timed_out)

    async def run_async(
        self,
        command: str,
        timeout_seconds: float,
        cancel: asyncio.Event | None = None,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecutionResult:
        """Asyncio variant with cooperative cancellation.

        Setting `cancel` kills the process group and reports cancelled=True,
        which callers can tell apart from a timeout.
        """
        started = time.monotonic()
        effective_cwd = cwd or self.workdir
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=str(effective_cwd) if effective_cwd else None,
                env=env or self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            return self._build_result(SPAWN_FAILURE_EXIT_CODE, "", str(e), started)

        communicate = asyncio.ensure_future(proc.communicate())
        waiters: set[asyncio.Future] = {communicate}
        cancel_waiter: asyncio.Future | None = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
            )
            if communicate in done:
                out, err = communicate.result()
                return self._build_result(
                    proc.returncode if proc.returncode is not None else -1,
                    out.decode("utf-8", errors="replace"),
                    err.decode("utf-8", errors="replace"),
                    started,
                )

            was_cancelled = cancel_waiter is not None and cancel_waiter in done
            _signal_group(proc.pid, signal.SIGTERM)
            try:
                out, err = await asyncio.wait_for(
                    asyncio.shield(communicate), timeout=self.kill_grace_seconds
                )
            except asyncio.TimeoutError:
                _signal_group(proc.pid, signal.SIGKILL)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                out, err = await communicate

            stdout = out.decode("utf-8", errors="replace")
            stderr = err.decode("utf-8", errors="replace")
            if was_cancelled:
                return self._build_result(
                    CANCELLED_EXIT_CODE, stdout, stderr + "\nCommand cancelled", started,
                    cancelled=True,
                )
            return self._build_result(
                TIMEOUT_EXIT_CODE,
                stdout,
                stderr + f"\nCommand timed out after {timeout_seconds}s",
                started,
                timed_out=True,
            )
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

    def evaluate(self, verifier: Verifier, cwd: Path | None = None) -> VerifierOutcome:
        """Run a verifier and compare its outcome to the expectation."""
        result = self.run(verifier.command, verifier.timeout_seconds, cwd=cwd)
        reason = check_expectation(result, verifier.expect)
        return VerifierOutcome(
            name=verifier.name,
            passed=reason is None,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=result.duration_ms,
            timed_out=result.timed_out,
            reason=reason,
        )
