"""Per-resource circuit breakers.

The registry is an explicitly owned object injected into the components that
need it. Every read-modify-write of a breaker happens under the registry lock,
so concurrent callers sharing a name observe a single transition.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, TypeVar

from ralph.core.errors import CircuitOpenError
from ralph.core.state import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    """State of one named breaker."""

    name: str
    failure_threshold: int
    timeout_seconds: float
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at: float | None = None
    probe_in_flight: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class CircuitBreakerRegistry:
    """Process-wide table of circuit breakers keyed by resource name.

    Breakers are created lazily on first use with the threshold and timeout
    given on that call. With a Database, state is persisted after every
    transition and reloaded on construction.
    """

    def __init__(
        self,
        db: Database | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db = db
        self._clock = clock
        self._lock = threading.RLock()
        self._breakers: dict[str, CircuitBreakerState] = {}
        if self.db is not None:
            self._load_state()

    # --- Persistence ---

    def _load_state(self) -> None:
        try:
            with self.db.transaction() as conn:  # type: ignore[union-attr]
                rows = conn.execute(
                    "SELECT name, state, failure_count, opened_at, failure_threshold, "
                    "timeout_seconds FROM circuit_breaker_state"
                ).fetchall()
        except Exception as e:
            logger.warning(f"Failed to load circuit breaker state from DB: {e}")
            return

        with self._lock:
            for row in rows:
                try:
                    self._breakers[row["name"]] = CircuitBreakerState(
                        name=row["name"],
                        state=CircuitState(row["state"]),
                        failure_count=int(row["failure_count"] or 0),
                        opened_at=row["opened_at"],
                        failure_threshold=int(row["failure_threshold"]),
                        timeout_seconds=float(row["timeout_seconds"]),
                    )
                except (ValueError, TypeError) as e:
                    logger.debug(f"Skipping malformed circuit breaker row: {e}")

    def _persist(self, breaker: CircuitBreakerState | None, name: str) -> None:
        """Persist state to SQLite if available (call within lock)."""
        if self.db is None:
            return
        try:
            with self.db.transaction() as conn:
                if breaker is None:
                    conn.execute("DELETE FROM circuit_breaker_state WHERE name = ?", (name,))
                    return
                conn.execute(
                    """
                    INSERT INTO circuit_breaker_state
                        (name, state, failure_count, opened_at, failure_threshold,
                         timeout_seconds, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        state=excluded.state,
                        failure_count=excluded.failure_count,
                        opened_at=excluded.opened_at,
                        failure_threshold=excluded.failure_threshold,
                        timeout_seconds=excluded.timeout_seconds,
                        updated_at=excluded.updated_at
                    """,
                    (
                        breaker.name,
                        breaker.state.value,
                        breaker.failure_count,
                        breaker.opened_at,
                        breaker.failure_threshold,
                        breaker.timeout_seconds,
                        time.time(),
                    ),
                )
        except Exception as e:
            logger.warning(f"Failed to persist circuit breaker state for '{name}': {e}")

    # --- State machine ---

    def _get_or_create(
        self, name: str, failure_threshold: int, timeout_seconds: float
    ) -> CircuitBreakerState:
        breaker = self._breakers.get(name)
        if breaker is None:
            if failure_threshold < 1:
                raise ValueError("failure_threshold must be at least 1")
            breaker = CircuitBreakerState(
                name=name,
                failure_threshold=failure_threshold,
                timeout_seconds=timeout_seconds,
            )
            self._breakers[name] = breaker
        return breaker

    def _refresh(self, breaker: CircuitBreakerState) -> None:
        """OPEN -> HALF_OPEN once timeout_seconds have elapsed (call within lock)."""
        if breaker.state != CircuitState.OPEN or breaker.opened_at is None:
            return
        if self._clock() - breaker.opened_at >= breaker.timeout_seconds:
            breaker.state = CircuitState.HALF_OPEN
            breaker.probe_in_flight = False
            logger.info(f"Circuit '{breaker.name}' half-open, allowing one probe")
            self._persist(breaker, breaker.name)

    def get_state(self, name: str) -> CircuitState:
        """Return current state, applying the OPEN -> HALF_OPEN timeout."""
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                return CircuitState.CLOSED
            self._refresh(breaker)
            return breaker.state

    def _acquire(self, name: str, failure_threshold: int, timeout_seconds: float) -> None:
        """Admit a call or raise CircuitOpenError. Check-then-act is atomic."""
        with self._lock:
            breaker = self._get_or_create(name, failure_threshold, timeout_seconds)
            self._refresh(breaker)
            if breaker.state == CircuitState.CLOSED:
                return
            if breaker.state == CircuitState.HALF_OPEN and not breaker.probe_in_flight:
                breaker.probe_in_flight = True
                return
            retry_after = None
            if breaker.state == CircuitState.OPEN and breaker.opened_at is not None:
                retry_after = max(
                    0.0, breaker.timeout_seconds - (self._clock() - breaker.opened_at)
                )
            raise CircuitOpenError(name, retry_after=retry_after)

    def record_success(self, name: str) -> None:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                return
            if breaker.state == CircuitState.HALF_OPEN:
                breaker.state = CircuitState.CLOSED
                breaker.opened_at = None
                breaker.probe_in_flight = False
                breaker.failure_count = 0
                logger.info(f"Circuit '{name}' closed after successful probe")
            elif breaker.state == CircuitState.CLOSED:
                breaker.failure_count = 0
            self._persist(breaker, name)

    def _release_trial_slot(self, name: str) -> None:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None or not breaker.probe_in_flight:
                return
            breaker.probe_in_flight = False
            self._persist(breaker, name)

    def record_failure(self, name: str) -> None:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                return
            now = self._clock()
            breaker.failure_count += 1
            if breaker.state == CircuitState.HALF_OPEN:
                breaker.state = CircuitState.OPEN
                breaker.opened_at = now
                breaker.probe_in_flight = False
                logger.warning(f"Circuit '{name}' probe failed, reopening")
            elif (
                breaker.state == CircuitState.CLOSED
                and breaker.failure_count >= breaker.failure_threshold
            ):
                breaker.state = CircuitState.OPEN
                breaker.opened_at = now
                logger.warning(
                    f"Circuit '{name}' opened after {breaker.failure_count} consecutive failures"
                )
            self._persist(breaker, name)

    def invoke(
        self,
        name: str,
        operation: Callable[[], T],
        failure_threshold: int = 5,
        timeout_seconds: float = 60.0,
    ) -> T:
        """Run operation through the named breaker.

        Raises:
            CircuitOpenError: Breaker is open (operation not invoked)
        """
        self._acquire(name, failure_threshold, timeout_seconds)
        try:
            result = operation()
        except Exception:
            self.record_failure(name)
            raise
        except BaseException:
            # Interrupted rather than failed: free the half-open slot uncounted
            self._release_trial_slot(name)
            raise
        self.record_success(name)
        return result

    # --- Queries ---

    def get(self, name: str) -> CircuitBreakerState | None:
        """Copy of a breaker's state, or None if never used."""
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                return None
            self._refresh(breaker)
            return replace(breaker)

    def snapshot(self) -> list[CircuitBreakerState]:
        with self._lock:
            for breaker in self._breakers.values():
                self._refresh(breaker)
            return [replace(b) for b in sorted(self._breakers.values(), key=lambda b: b.name)]

    def reset(self, name: str) -> None:
        """Forget a breaker entirely."""
        with self._lock:
            self._breakers.pop(name, None)
            self._persist(None, name)
