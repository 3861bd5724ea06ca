"""Subprocess execution for verifiers and the implementation agent."""

from ralph.runner.agent import AgentClient
from ralph.runner.executor import (
    TIMEOUT_EXIT_CODE,
    ExecutionResult,
    VerifierRunner,
)

__all__ = ["AgentClient", "ExecutionResult", "TIMEOUT_EXIT_CODE", "VerifierRunner"]
