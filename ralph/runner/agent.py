"""Client for the external implementation agent.

The agent is an opaque subprocess: it receives the item intent plus prior
failure context, and we consume only its exit status and text output.
Failures are classified here, where they originate.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ralph.core.errors import CommandTimeoutError, ErrorKind, PermanentError, TransientError
from ralph.runner.executor import SPAWN_FAILURE_EXIT_CODE, ExecutionResult, VerifierRunner

logger = logging.getLogger(__name__)

# Exit codes of a shell that could not run the command at all.
NOT_EXECUTABLE_EXIT_CODE = 126

# EX_TEMPFAIL from sysexits.h
DEFAULT_TRANSIENT_EXIT_CODES = (75,)


class AgentClient:
    """Invoke an AI CLI (or any command) as the implementation step.

    NOTE: CLI stdin support varies:
    - claude: Requires prompt as argument after -p (uses_stdin=False)
    - codex: Reads from stdin with --stdin flag (uses_stdin=True)
    - gemini: Reads from stdin (uses_stdin=True)
    - kimi: Reads from stdin (uses_stdin=True)
    """

    BASE_CONFIGS: dict[str, tuple[list[str], bool]] = {
        "claude": (["claude", "-p"], False),
        "codex": (["codex", "exec", "--json", "--stdin"], True),
        "gemini": (["gemini", "-o", "json"], True),
        "kimi": (["kimi", "--yolo"], True),
    }

    def __init__(
        self,
        cli_name: str = "claude",
        command: list[str] | None = None,
        uses_stdin: bool | None = None,
        timeout_seconds: float = 1800.0,
        transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
        model_id: str | None = None,
        runner: VerifierRunner | None = None,
    ):
        self.cli_name = cli_name
        self.model_id = model_id
        self.timeout_seconds = timeout_seconds
        self.transient_exit_codes = tuple(transient_exit_codes)
        self.runner = runner or VerifierRunner()

        base_args, base_stdin = self.BASE_CONFIGS.get(cli_name, ([cli_name], True))
        self._command = list(command) if command else list(base_args)
        self._uses_stdin = base_stdin if uses_stdin is None else uses_stdin

    def build_command(self, prompt: str) -> tuple[list[str], str | None]:
        """Return (argv, stdin_text) for a prompt."""
        argv = list(self._command)
        if self.model_id:
            argv = argv[:1] + ["--model", self.model_id] + argv[1:]
        if self._uses_stdin:
            return argv, prompt
        return argv + [prompt], None

    def execute(self, prompt: str, workdir: Path | None = None) -> ExecutionResult:
        """Run the agent once.

        Raises:
            CommandTimeoutError: Agent exceeded timeout_seconds
            TransientError: Agent exited with a transient exit code
            PermanentError: Agent binary missing or not executable
        """
        argv, stdin_text = self.build_command(prompt)
        logger.info(f"Invoking agent '{self.cli_name}' ({argv[0]})")
        result = self.runner.run(
            argv, self.timeout_seconds, cwd=workdir, input_text=stdin_text
        )

        if result.timed_out:
            raise CommandTimeoutError(
                f"Agent '{self.cli_name}' timed out after {self.timeout_seconds}s"
            )
        if result.returncode == SPAWN_FAILURE_EXIT_CODE:
            raise PermanentError(
                f"Agent '{self.cli_name}' not found: {result.stderr.strip()[:500]}",
                kind=ErrorKind.MISSING_RESOURCE,
            )
        if result.returncode == NOT_EXECUTABLE_EXIT_CODE:
            raise PermanentError(
                f"Agent '{self.cli_name}' is not executable", kind=ErrorKind.PERMISSION
            )
        if result.returncode in self.transient_exit_codes:
            raise TransientError(
                f"Agent '{self.cli_name}' exited with transient code {result.returncode}: "
                f"{result.stderr.strip()[:500]}",
                kind=ErrorKind.UNAVAILABLE,
            )
        return result
