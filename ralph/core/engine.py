"""Executor orchestrator: drive a work item to its Definition of Done.

Per item:
    claim (pending -> hooked -> in_progress)
    pre-check verifiers (baseline, failures expected)
    loop: agent (retry + circuit breaker) -> post-check verifiers -> decide
    completed, failed with escalation, or rolled back to pending

Items run concurrently in a thread pool. Verifiers within one item always
run sequentially in declared order.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel

from ralph.core.circuit import CircuitBreakerRegistry
from ralph.core.config import RalphConfig
from ralph.core.errors import (
    CircuitOpenError,
    EscalationError,
    ErrorKind,
    GateBlockedError,
    InvalidTransitionError,
    RalphError,
)
from ralph.core.feedback import PromptBuilder
from ralph.core.gates import GateEvaluator, dod_gate_id
from ralph.core.models import (
    AgentOutcome,
    AttemptEvidence,
    Gate,
    GateStatus,
    ItemStatus,
    OnFailure,
    VerifierOutcome,
    WorkItem,
    item_summary,
    utc_now,
)
from ralph.core.retry import RetryController, RetryResult, describe_error
from ralph.core.state import Database, EventType
from ralph.core.store import ItemStore
from ralph.runner.agent import AgentClient
from ralph.runner.executor import ExecutionResult, VerifierRunner

logger = logging.getLogger(__name__)


class RunOutcome(BaseModel):
    """Result of driving one item."""

    item_id: str
    status: ItemStatus | None = None
    attempts: int = 0
    reason: str | None = None
    error_kind: str | None = None
    item: WorkItem | None = None

    @property
    def completed(self) -> bool:
        return self.status == ItemStatus.COMPLETED


class ExecutionEngine:
    """Compose verifier runner, retry controller, circuit breaker and gates."""

    def __init__(
        self,
        store: ItemStore,
        agent: AgentClient,
        db: Database | None = None,
        runner: VerifierRunner | None = None,
        retry_controller: RetryController | None = None,
        circuits: CircuitBreakerRegistry | None = None,
        gates: GateEvaluator | None = None,
        config: RalphConfig | None = None,
        workdir: Path | None = None,
        prompt_builder: PromptBuilder | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.agent = agent
        self.db = db
        self.config = config or RalphConfig()
        self.runner = runner or VerifierRunner(
            workdir=workdir, max_output_bytes=self.config.executor.max_output_bytes
        )
        self.retry_controller = retry_controller or RetryController(
            max_delay=self.config.retry.max_backoff_seconds, sleep=sleep
        )
        self.circuits = circuits or CircuitBreakerRegistry(db=db)
        self.gates = gates or GateEvaluator([store])
        self.workdir = workdir
        self.prompt_builder = prompt_builder or PromptBuilder()
        self._sleep = sleep
        self._clock = clock

    # --- Bookkeeping ---

    def _record(self, item: WorkItem, event_type: EventType, **payload) -> None:
        if self.db is not None:
            self.db.record(item.id, event_type, **item_summary(item), **payload)

    def _save(self, item: WorkItem) -> None:
        item.touch()
        self.store.put_item(item)

    def _heartbeat(self, item: WorkItem) -> None:
        """Refresh last activity so retry backoff does not look stale to the watchdog."""
        try:
            self._save(item)
        except (RalphError, OSError) as e:
            logger.warning(f"[{item.id}] could not refresh activity: {e}")

    def _set_dod_gate(self, item: WorkItem, status: GateStatus) -> None:
        gate = Gate(
            id=dod_gate_id(item.id),
            type="dod",
            status=status,
            source=self.store.name,
            description=f"Definition of Done for {item.id}",
        )
        try:
            self.store.put_gate(gate)
        except (RalphError, OSError) as e:
            logger.warning(f"Failed to write gate {gate.id}: {e}")
            return
        self._record(item, EventType.GATE_UPDATED, gate_id=gate.id, gate_status=status.value)

    def _outcome(
        self, item: WorkItem, reason: str | None = None, kind: ErrorKind | None = None
    ) -> RunOutcome:
        return RunOutcome(
            item_id=item.id,
            status=item.status,
            attempts=item.meta.attempt_count,
            reason=reason,
            error_kind=kind.value if kind else None,
            item=item,
        )

    # --- Steps ---

    def _check_gates(self, item: WorkItem) -> None:
        if item.lane not in self.config.gates.blocked_lanes:
            return
        own_gate = dod_gate_id(item.id)
        gates = [g for g in self.gates.collect() if g.id != own_gate]
        self.gates.enforce(gates)

    def _claim(self, item: WorkItem) -> None:
        if item.status == ItemStatus.IN_PROGRESS:
            raise InvalidTransitionError(f"Item '{item.id}' is already in progress")
        if item.status == ItemStatus.PENDING:
            item.transition(ItemStatus.HOOKED)
            self._save(item)
            self._record(item, EventType.ITEM_HOOKED)
        else:
            logger.info(f"Resuming hooked item {item.id}")

        item.transition(ItemStatus.IN_PROGRESS)
        if item.meta.started_at is None:
            item.meta.started_at = self._clock()
        self._save(item)
        self._record(item, EventType.ITEM_STARTED, lane=item.lane)

    def run_verifiers(self, item: WorkItem, phase: str) -> list[VerifierOutcome]:
        """Run the item's verifiers in order, honoring on_failure=stop."""
        outcomes: list[VerifierOutcome] = []
        for verifier in item.dod.verifiers:
            outcome = self.runner.evaluate(verifier, cwd=self.workdir)
            outcomes.append(outcome)
            event = EventType.VERIFIER_PASSED if outcome.passed else EventType.VERIFIER_FAILED
            self._record(
                item,
                event,
                phase=phase,
                verifier=verifier.name,
                returncode=outcome.returncode,
                timed_out=outcome.timed_out,
                reason=outcome.reason,
                duration_ms=outcome.duration_ms,
            )
            item.touch()
            if not outcome.passed:
                logger.info(
                    f"[{item.id}] {phase} verifier '{verifier.name}' failed: {outcome.reason}"
                )
                if verifier.on_failure == OnFailure.STOP:
                    break
        return outcomes

    def _invoke_agent(self, item: WorkItem) -> RetryResult[ExecutionResult]:
        prompt = self.prompt_builder.build(item)
        circuit_name = f"agent:{self.agent.cli_name}"
        circuit_cfg = self.config.circuit

        def attempt() -> ExecutionResult:
            self._heartbeat(item)
            return self.circuits.invoke(
                circuit_name,
                lambda: self.agent.execute(prompt, self.workdir),
                failure_threshold=circuit_cfg.failure_threshold,
                timeout_seconds=circuit_cfg.timeout_seconds,
            )

        return self.retry_controller.invoke_with_retry(
            attempt,
            max_retries=self.config.retry.max_retries,
            initial_backoff_seconds=self.config.retry.initial_backoff_seconds,
            activity_name=f"agent for {item.id}",
        )

    def _budget_exhausted(self, item: WorkItem) -> bool:
        budget = item.constraints.time_budget_minutes
        if budget is None or item.meta.started_at is None:
            return False
        elapsed = (self._clock() - item.meta.started_at).total_seconds() / 60.0
        return elapsed >= budget

    def backoff_seconds(self, item: WorkItem, attempt: int) -> float:
        return min(
            item.meta.retry_backoff_seconds * (2 ** (attempt - 1)),
            self.config.executor.max_backoff_seconds,
        )

    def _rollback(
        self, item: WorkItem, error: CircuitOpenError, *, charged: bool = False
    ) -> RunOutcome:
        # Uncharged only when no call of this attempt reached the agent
        if not charged:
            item.meta.attempt_count = max(0, item.meta.attempt_count - 1)
        item.meta.last_error = str(error)
        item.transition(ItemStatus.PENDING)
        self._save(item)
        self._record(item, EventType.ITEM_ROLLED_BACK, **describe_error(error))
        logger.warning(f"[{item.id}] rolled back to pending: {error}")
        return self._outcome(item, str(error), error.kind)

    def _fail(self, item: WorkItem, error: RalphError) -> RunOutcome:
        """Terminal failure; always escalated for a human."""
        item.meta.escalated = True
        item.meta.escalation_reason = str(error)
        item.meta.last_error = str(error)
        item.transition(ItemStatus.FAILED)
        self._save(item)
        self._record(item, EventType.ITEM_FAILED, **describe_error(error))
        self._record(item, EventType.ITEM_ESCALATED, reason=str(error), source="engine")
        logger.error(f"[{item.id}] failed: {error}")
        return self._outcome(item, str(error), error.kind)

    def _abort(self, item: WorkItem, error: Exception) -> RunOutcome:
        """Unexpected error mid-run: hand the item back as pending."""
        logger.exception(f"[{item.id}] aborted: {error}")
        kind = self.retry_controller.classifier.kind_of(error)
        reason = f"{type(error).__name__}: {error}"
        item.meta.last_error = reason
        if item.is_active:
            item.transition(ItemStatus.PENDING)
        try:
            self._save(item)
            self._record(item, EventType.ITEM_ROLLED_BACK, **describe_error(error))
        except Exception as e:
            # The stored record may still say in_progress; the watchdog recovers it
            logger.error(f"[{item.id}] could not persist rollback: {e}")
        return self._outcome(item, reason, kind)

    # --- Public API ---

    def run_item(self, item_or_id: WorkItem | str) -> RunOutcome:
        """Drive one item until completed, failed or rolled back.

        Any unexpected error after the claim rolls the item back to pending
        and is reported in the outcome rather than raised.

        Raises:
            ItemNotFoundError: Unknown item id
            GateBlockedError: Item lane is gated and red gates exist
            InvalidTransitionError: Item is already in progress
        """
        item = (
            self.store.get_item(item_or_id) if isinstance(item_or_id, str) else item_or_id
        )
        if item.is_terminal:
            logger.info(f"Item {item.id} is already {item.status.value}")
            return self._outcome(item, f"already {item.status.value}")

        self._check_gates(item)
        self._claim(item)
        try:
            return self._drive(item)
        except Exception as e:
            return self._abort(item, e)

    def _drive(self, item: WorkItem) -> RunOutcome:
        item.baseline = self.run_verifiers(item, phase="pre")
        self._save(item)
        self._record(
            item,
            EventType.BASELINE_RECORDED,
            passed=sum(1 for o in item.baseline if o.passed),
            total=len(item.baseline),
        )

        max_iterations = item.constraints.max_iterations
        while item.meta.attempt_count < max_iterations:
            if self._budget_exhausted(item):
                return self._fail(
                    item,
                    EscalationError(
                        f"Time budget of {item.constraints.time_budget_minutes} min exhausted "
                        f"after {item.meta.attempt_count} attempt(s)"
                    ),
                )

            item.meta.attempt_count += 1
            attempt = item.meta.attempt_count
            self._save(item)
            self._record(item, EventType.ATTEMPT_STARTED, attempt=attempt)
            logger.info(f"[{item.id}] attempt {attempt}/{max_iterations}")

            result = self._invoke_agent(item)
            agent = AgentOutcome(
                success=result.success,
                attempts=result.attempts,
                returncode=result.value.returncode if result.value is not None else None,
                error=str(result.last_error) if result.last_error else None,
                error_kind=result.error_kind.value if result.error_kind else None,
            )

            if not result.success:
                error = result.last_error
                self._record(item, EventType.AGENT_FAILED, attempt=attempt, **describe_error(error))
                if isinstance(error, CircuitOpenError):
                    return self._rollback(item, error, charged=result.attempts > 1)
                if not self.retry_controller.classifier.is_retryable(error):
                    if not isinstance(error, RalphError):
                        error = RalphError(str(error), kind=result.error_kind)
                    return self._fail(item, error)
                outcomes: list[VerifierOutcome] = []
                passed = False
            else:
                outcomes = self.run_verifiers(item, phase="post")
                passed = all(o.passed for o in outcomes)

            evidence = AttemptEvidence(
                attempt=attempt, passed=passed, outcomes=outcomes, agent=agent
            )

            if passed:
                if item.dod.evidence_required:
                    item.evidence.append(evidence)
                item.meta.last_error = None
                item.transition(ItemStatus.COMPLETED)
                self._save(item)
                self._set_dod_gate(item, GateStatus.GREEN)
                self._record(item, EventType.ITEM_COMPLETED, attempt=attempt)
                logger.info(f"[{item.id}] completed on attempt {attempt}")
                return self._outcome(item)

            item.evidence.append(evidence)
            failed = evidence.failed_verifiers
            item.meta.last_error = (
                f"verifiers failed: {', '.join(failed)}" if failed else agent.error
            )
            self._save(item)
            self._set_dod_gate(item, GateStatus.RED)

            if attempt < max_iterations:
                delay = self.backoff_seconds(item, attempt)
                logger.info(f"[{item.id}] backing off {delay:.1f}s before next attempt")
                self._sleep(delay)

        return self._fail(
            item,
            EscalationError(
                f"Definition of Done not met after {item.meta.attempt_count} attempt(s); "
                f"last error: {item.meta.last_error}"
            ),
        )

    def run_items(
        self, item_ids: Sequence[str], max_workers: int | None = None
    ) -> list[RunOutcome]:
        """Run items concurrently. Results come back in input order."""
        item_ids = list(dict.fromkeys(item_ids))
        workers = max_workers or self.config.executor.max_workers
        outcomes: dict[str, RunOutcome] = {}

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self.run_item, item_id): item_id for item_id in item_ids}
            for future in as_completed(futures):
                item_id = futures[future]
                try:
                    outcomes[item_id] = future.result()
                except GateBlockedError as e:
                    logger.warning(f"[{item_id}] refused: {e}")
                    outcomes[item_id] = RunOutcome(
                        item_id=item_id,
                        status=ItemStatus.PENDING,
                        reason=str(e),
                        error_kind=e.kind.value,
                    )
                except RalphError as e:
                    logger.error(f"[{item_id}] {e}")
                    outcomes[item_id] = RunOutcome(
                        item_id=item_id, reason=str(e), error_kind=e.kind.value
                    )
                except Exception as e:
                    logger.exception(f"[{item_id}] unexpected error: {e}")
                    outcomes[item_id] = RunOutcome(
                        item_id=item_id,
                        reason=f"{type(e).__name__}: {e}",
                        error_kind=self.retry_controller.classifier.kind_of(e).value,
                    )

        return [outcomes[item_id] for item_id in item_ids]
