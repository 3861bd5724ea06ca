"""Data models for the executor.

Uses Pydantic for schema-enforced persisted records (work items, gates).
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ralph.core.errors import InvalidTransitionError


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ItemStatus(str, Enum):
    """Lifecycle status of a work item."""

    PENDING = "pending"
    HOOKED = "hooked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# in_progress -> pending and hooked -> pending are rollbacks for recoverable
# conditions (dependency unavailable, watchdog restart).
ALLOWED_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.HOOKED}),
    ItemStatus.HOOKED: frozenset(
        {ItemStatus.IN_PROGRESS, ItemStatus.PENDING, ItemStatus.FAILED}
    ),
    ItemStatus.IN_PROGRESS: frozenset(
        {ItemStatus.COMPLETED, ItemStatus.FAILED, ItemStatus.PENDING}
    ),
    ItemStatus.COMPLETED: frozenset(),
    ItemStatus.FAILED: frozenset(),
}

ACTIVE_STATUSES = frozenset({ItemStatus.HOOKED, ItemStatus.IN_PROGRESS})


class OnFailure(str, Enum):
    """What to do with the remaining verifiers after one fails."""

    STOP = "stop"
    CONTINUE = "continue"


class GateStatus(str, Enum):
    """Gate status: red blocks dependent work, green permits it."""

    RED = "red"
    GREEN = "green"


# --- Definition of Done ---


class VerifierExpectation(BaseModel):
    """Expected outcome of a verifier command."""

    model_config = ConfigDict(frozen=True)

    exit_code: int = 0
    stdout_contains: str | None = None
    stderr_contains: str | None = None


class Verifier(BaseModel):
    """An external check command with an expected outcome."""

    model_config = ConfigDict(frozen=True)

    name: str
    command: str
    expect: VerifierExpectation = Field(default_factory=VerifierExpectation)
    timeout_seconds: float = 300.0
    on_failure: OnFailure = OnFailure.STOP


class DefinitionOfDone(BaseModel):
    verifiers: list[Verifier] = Field(default_factory=list)
    evidence_required: bool = False


class Constraints(BaseModel):
    max_iterations: int = Field(default=5, ge=1)
    time_budget_minutes: float | None = Field(default=None, gt=0)


class ItemMeta(BaseModel):
    """Mutable bookkeeping for a work item."""

    attempt_count: int = 0
    retry_backoff_seconds: float = 5.0
    restart_count: int = 0
    escalated: bool = False
    escalation_reason: str | None = None
    last_error: str | None = None
    started_at: datetime | None = None


# --- Evidence ---


class VerifierOutcome(BaseModel):
    """Result of running one verifier."""

    name: str
    passed: bool
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False
    reason: str | None = None


class AgentOutcome(BaseModel):
    """Result of one implementation-step invocation (after retries)."""

    success: bool
    attempts: int
    returncode: int | None = None
    error: str | None = None
    error_kind: str | None = None


class AttemptEvidence(BaseModel):
    """Per-iteration record of verifier results and captured output."""

    attempt: int
    passed: bool
    outcomes: list[VerifierOutcome] = Field(default_factory=list)
    agent: AgentOutcome | None = None
    recorded_at: datetime = Field(default_factory=utc_now)

    @property
    def failed_verifiers(self) -> list[str]:
        return [o.name for o in self.outcomes if not o.passed]


# --- Persisted records ---


class WorkItem(BaseModel):
    """A unit of work carrying a Definition of Done."""

    id: str
    title: str = ""
    intent: str
    dod: DefinitionOfDone = Field(default_factory=DefinitionOfDone)
    constraints: Constraints = Field(default_factory=Constraints)
    lane: str = "default"
    priority: int = 2
    status: ItemStatus = ItemStatus.PENDING
    meta: ItemMeta = Field(default_factory=ItemMeta)
    baseline: list[VerifierOutcome] = Field(default_factory=list)
    evidence: list[AttemptEvidence] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    last_activity_timestamp: datetime = Field(default_factory=utc_now)

    def touch(self) -> None:
        """Record activity now (read by the watchdog staleness check)."""
        self.last_activity_timestamp = utc_now()

    def can_transition(self, target: ItemStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def transition(self, target: ItemStatus) -> None:
        """Move to a new status, enforcing the lifecycle state machine."""
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Item '{self.id}' cannot move from {self.status.value} to {target.value}"
            )
        self.status = target
        self.touch()

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in (ItemStatus.COMPLETED, ItemStatus.FAILED)


class Gate(BaseModel):
    """A blocking checkpoint record."""

    id: str
    type: str
    status: GateStatus = GateStatus.RED
    source: str = "file"
    description: str = ""
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_red(self) -> bool:
        return self.status == GateStatus.RED


def item_summary(item: WorkItem) -> dict[str, Any]:
    """Compact dict used in event payloads and status output."""
    return {
        "id": item.id,
        "status": item.status.value,
        "attempt_count": item.meta.attempt_count,
        "max_iterations": item.constraints.max_iterations,
        "restart_count": item.meta.restart_count,
        "escalated": item.meta.escalated,
    }
