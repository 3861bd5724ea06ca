"""Retry controller: classify-and-retry-with-backoff around any operation."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from ralph.core.errors import ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Which error kinds are worth retrying. Anything not listed is not retried.
RETRY_POLICY_TABLE: dict[ErrorKind, bool] = {
    ErrorKind.TIMEOUT: True,
    ErrorKind.CONNECTIVITY: True,
    ErrorKind.UNAVAILABLE: True,
    ErrorKind.RATE_LIMITED: True,
    ErrorKind.MISSING_RESOURCE: False,
    ErrorKind.PERMISSION: False,
    ErrorKind.INVALID_INPUT: False,
    ErrorKind.VERIFIER: False,
    ErrorKind.CIRCUIT_OPEN: False,
    ErrorKind.ESCALATION: False,
    ErrorKind.GATE_BLOCKED: False,
    ErrorKind.UNKNOWN: False,
}

# Fallback for exceptions raised without a kind (e.g. from the stdlib).
# Checked in order, so subclasses must come before their bases.
EXCEPTION_KIND_TABLE: tuple[tuple[type[BaseException], ErrorKind], ...] = (
    (TimeoutError, ErrorKind.TIMEOUT),
    (ConnectionError, ErrorKind.CONNECTIVITY),
    (FileNotFoundError, ErrorKind.MISSING_RESOURCE),
    (PermissionError, ErrorKind.PERMISSION),
    (ValueError, ErrorKind.INVALID_INPUT),
)


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_retries: int = 3
    initial_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0

    def get_delay(self, attempt: int) -> float:
        """Calculate delay after a given attempt (0-indexed)."""
        return min(
            self.initial_delay * (self.backoff_multiplier**attempt),
            self.max_delay,
        )

    def backoff_schedule(self, count: int) -> list[float]:
        return [self.get_delay(i) for i in range(count)]


class ErrorClassifier:
    """Classify errors as retryable or not from their structured kind."""

    def __init__(
        self,
        policy_table: Mapping[ErrorKind, bool] | None = None,
        exception_table: tuple[tuple[type[BaseException], ErrorKind], ...] | None = None,
    ):
        self.policy_table = dict(RETRY_POLICY_TABLE)
        if policy_table:
            self.policy_table.update(policy_table)
        self.exception_table = exception_table or EXCEPTION_KIND_TABLE

    def kind_of(self, error: BaseException) -> ErrorKind:
        kind = getattr(error, "kind", None)
        if isinstance(kind, ErrorKind):
            return kind
        for exc_type, mapped in self.exception_table:
            if isinstance(error, exc_type):
                return mapped
        return ErrorKind.UNKNOWN

    def is_retryable(self, error: BaseException) -> bool:
        return self.policy_table.get(self.kind_of(error), False)


@dataclass
class RetryResult(Generic[T]):
    """Aggregate outcome of a retried operation."""

    success: bool
    attempts: int
    value: T | None = None
    last_error: BaseException | None = None
    error_kind: ErrorKind | None = None
    delays: list[float] = field(default_factory=list)


class RetryController:
    """Execute operations with classification and exponential backoff."""

    def __init__(
        self,
        classifier: ErrorClassifier | None = None,
        max_delay: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.classifier = classifier or ErrorClassifier()
        self.max_delay = max_delay
        self._sleep = sleep

    def invoke_with_retry(
        self,
        operation: Callable[[], T],
        max_retries: int,
        initial_backoff_seconds: float,
        activity_name: str = "operation",
    ) -> RetryResult[T]:
        """Run operation, retrying retryable failures up to max_retries times.

        Non-retryable failures stop immediately. The backoff doubles after each
        failed attempt, capped at max_delay.
        """
        policy = RetryPolicy(
            max_retries=max_retries,
            initial_delay=initial_backoff_seconds,
            max_delay=self.max_delay,
        )
        total_attempts = max_retries + 1
        delays: list[float] = []
        last_error: BaseException | None = None
        kind: ErrorKind | None = None

        for attempt in range(total_attempts):
            try:
                value = operation()
                if attempt:
                    logger.info(f"{activity_name} succeeded on attempt {attempt + 1}")
                return RetryResult(success=True, attempts=attempt + 1, value=value, delays=delays)
            except Exception as e:
                last_error = e
                kind = self.classifier.kind_of(e)
                if not self.classifier.is_retryable(e):
                    logger.warning(
                        f"{activity_name} failed with non-retryable {kind.value} error: {e}"
                    )
                    return RetryResult(
                        success=False,
                        attempts=attempt + 1,
                        last_error=e,
                        error_kind=kind,
                        delays=delays,
                    )
                if attempt < total_attempts - 1:
                    delay = policy.get_delay(attempt)
                    delays.append(delay)
                    logger.info(
                        f"{activity_name} attempt {attempt + 1}/{total_attempts} failed "
                        f"({kind.value}): {e}; retrying in {delay:.1f}s"
                    )
                    self._sleep(delay)

        logger.warning(f"{activity_name} failed after {total_attempts} attempts: {last_error}")
        return RetryResult(
            success=False,
            attempts=total_attempts,
            last_error=last_error,
            error_kind=kind,
            delays=delays,
        )


def describe_error(error: BaseException | None) -> dict[str, Any]:
    """Serialize an error for evidence and event payloads."""
    if error is None:
        return {}
    kind = getattr(error, "kind", None)
    return {
        "error": str(error),
        "error_type": type(error).__name__,
        "error_kind": kind.value if isinstance(kind, ErrorKind) else None,
    }
