"""Error taxonomy for the executor.

Every error carries an explicit ErrorKind, set where the error originates.
The retry controller decides retryability from the kind alone.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Structured cause of a failure."""

    TIMEOUT = "timeout"
    CONNECTIVITY = "connectivity"
    UNAVAILABLE = "unavailable"
    RATE_LIMITED = "rate_limited"
    MISSING_RESOURCE = "missing_resource"
    PERMISSION = "permission"
    INVALID_INPUT = "invalid_input"
    VERIFIER = "verifier"
    CIRCUIT_OPEN = "circuit_open"
    ESCALATION = "escalation"
    GATE_BLOCKED = "gate_blocked"
    UNKNOWN = "unknown"


class RalphError(Exception):
    """Base error for the executor."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str = "", kind: ErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class VerifierFailure(RalphError):
    """A verifier's outcome did not match its expectation."""

    kind = ErrorKind.VERIFIER

    def __init__(self, verifier_name: str, reason: str):
        super().__init__(f"Verifier '{verifier_name}' failed: {reason}")
        self.verifier_name = verifier_name
        self.reason = reason


class TransientError(RalphError):
    """Retryable failure (connectivity, timeout, availability)."""

    kind = ErrorKind.UNAVAILABLE


class PermanentError(RalphError):
    """Non-retryable failure (missing resource, permission, bad input)."""

    kind = ErrorKind.MISSING_RESOURCE


class CommandTimeoutError(TransientError, TimeoutError):
    """A subprocess exceeded its allotted time and was terminated."""

    kind = ErrorKind.TIMEOUT


class CircuitOpenError(RalphError):
    """Circuit breaker is open, refusing to execute."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, name: str, retry_after: float | None = None):
        message = f"Circuit breaker '{name}' is open"
        if retry_after is not None:
            message += f"; retry in {retry_after:.0f}s"
        super().__init__(message)
        self.name = name
        self.retry_after = retry_after


class EscalationError(RalphError):
    """Iteration or restart budget exceeded; needs a human."""

    kind = ErrorKind.ESCALATION


class GateBlockedError(RalphError):
    """Red gates block the requested work."""

    kind = ErrorKind.GATE_BLOCKED

    def __init__(self, red_gates: list[str]):
        super().__init__(f"Blocked by {len(red_gates)} red gate(s): {', '.join(red_gates)}")
        self.red_gates = red_gates


class InvalidTransitionError(RalphError):
    """Illegal work item status transition."""

    kind = ErrorKind.INVALID_INPUT


class ItemNotFoundError(RalphError):
    """Work item is not present in the store."""

    kind = ErrorKind.MISSING_RESOURCE


class RegistryUnavailableError(RalphError):
    """External registry CLI is missing or failed."""

    kind = ErrorKind.UNAVAILABLE


class ConfigError(RalphError):
    """Invalid configuration file."""

    kind = ErrorKind.INVALID_INPUT


class LockHeldError(RalphError):
    """Another process holds an exclusive workspace lock."""

    kind = ErrorKind.UNAVAILABLE
