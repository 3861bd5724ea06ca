"""Watchdog: detect stalled work items and nudge, restart or escalate them.

The watchdog runs on its own schedule against the same records the engine
mutates. It re-reads items every cycle and acts on that snapshot only, so a
concurrent engine write may race it (last writer wins).
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from ralph.core.errors import EscalationError, RalphError
from ralph.core.locks import WatchdogLock
from ralph.core.models import ItemStatus, WorkItem, item_summary, utc_now
from ralph.core.state import Database, EventType
from ralph.core.store import ItemStore
from ralph.runner.executor import VerifierRunner

logger = logging.getLogger(__name__)


class WatchdogActionType(str, Enum):
    NUDGE = "nudge"
    RESTART = "restart"
    ESCALATE = "escalate"


class WatchdogAction(BaseModel):
    item_id: str
    action: WatchdogActionType
    stale_minutes: float
    restart_count: int
    error: str | None = None


class WatchdogReport(BaseModel):
    """Outcome of one scan."""

    processed: int = 0
    nudged: int = 0
    restarted: int = 0
    escalated: int = 0
    actions: list[WatchdogAction] = Field(default_factory=list)
    scanned_at: datetime = Field(default_factory=utc_now)


class WatchdogActions(Protocol):
    """Side effects the watchdog delegates."""

    def nudge(self, item: WorkItem, stale_minutes: float) -> None: ...

    def restart(self, item: WorkItem, stale_minutes: float) -> None: ...

    def escalate(self, item: WorkItem, error: EscalationError) -> None: ...


class StoreWatchdogActions:
    """Default actions: persist through the store and append events.

    A restart rolls the item back to pending, then runs restart_command (if
    configured) so something re-dispatches it; without one the next
    `ralph run` picks it up. An escalation fails the item and marks it for a
    human.
    """

    def __init__(
        self,
        store: ItemStore,
        db: Database | None = None,
        runner: VerifierRunner | None = None,
        nudge_command: str | None = None,
        nudge_timeout_seconds: float = 60.0,
        workdir: Path | None = None,
        restart_command: str | None = None,
    ):
        self.store = store
        self.db = db
        self.runner = runner or VerifierRunner()
        self.nudge_command = nudge_command
        self.nudge_timeout_seconds = nudge_timeout_seconds
        self.workdir = workdir
        self.restart_command = restart_command

    def _record(self, item: WorkItem, event_type: EventType, **payload) -> None:
        if self.db is not None:
            self.db.record(item.id, event_type, **item_summary(item), **payload)

    def _run_hook(self, label: str, command: str, item: WorkItem) -> None:
        env = dict(os.environ)
        env["RALPH_ITEM_ID"] = item.id
        result = self.runner.run(command, self.nudge_timeout_seconds, cwd=self.workdir, env=env)
        if not result.succeeded:
            logger.warning(
                f"{label} command for {item.id} exited {result.returncode}: "
                f"{result.stderr.strip()[:200]}"
            )

    def nudge(self, item: WorkItem, stale_minutes: float) -> None:
        if self.nudge_command:
            self._run_hook("Nudge", self.nudge_command, item)
        self._record(item, EventType.ITEM_NUDGED, stale_minutes=round(stale_minutes, 2))

    def restart(self, item: WorkItem, stale_minutes: float) -> None:
        item.transition(ItemStatus.PENDING)
        self.store.put_item(item)
        self._record(item, EventType.ITEM_RESTARTED, stale_minutes=round(stale_minutes, 2))
        if self.restart_command:
            self._run_hook("Restart", self.restart_command, item)

    def escalate(self, item: WorkItem, error: EscalationError) -> None:
        item.meta.escalated = True
        item.meta.escalation_reason = str(error)
        item.meta.last_error = str(error)
        item.transition(ItemStatus.FAILED)
        self.store.put_item(item)
        self._record(item, EventType.ITEM_ESCALATED, reason=str(error), source="watchdog")


def _minutes_since(then: datetime, now: datetime) -> float:
    if then.tzinfo is None:
        then = then.replace(tzinfo=UTC)
    return (now - then).total_seconds() / 60.0


class Watchdog:
    """Scan active items and act on the stale ones.

    For an active item stale for S minutes against threshold T:
        S <= T        nothing
        T < S <= 2T   nudge (restart budget untouched)
        S > 2T        restart_count += 1, then restart, or escalate once
                      restart_count exceeds max_restarts
    """

    def __init__(
        self,
        actions: WatchdogActions,
        store: ItemStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.actions = actions
        self.store = store
        self._clock = clock

    def scan_and_act(
        self,
        items: Iterable[WorkItem],
        stale_threshold_minutes: float,
        max_restarts: int,
    ) -> WatchdogReport:
        if stale_threshold_minutes <= 0:
            raise ValueError("stale_threshold_minutes must be positive")

        now = self._clock()
        report = WatchdogReport(scanned_at=now)

        for item in items:
            if not item.is_active:
                continue
            report.processed += 1
            stale = _minutes_since(item.last_activity_timestamp, now)
            if stale <= stale_threshold_minutes:
                continue

            if stale <= 2 * stale_threshold_minutes:
                action = WatchdogActionType.NUDGE
            else:
                item.meta.restart_count += 1
                if item.meta.restart_count > max_restarts:
                    action = WatchdogActionType.ESCALATE
                else:
                    action = WatchdogActionType.RESTART

            record = WatchdogAction(
                item_id=item.id,
                action=action,
                stale_minutes=stale,
                restart_count=item.meta.restart_count,
            )
            try:
                self._apply(item, action, stale, max_restarts)
            except (RalphError, OSError) as e:
                logger.error(f"Watchdog {action.value} of {item.id} failed: {e}")
                record.error = str(e)
            else:
                if action == WatchdogActionType.NUDGE:
                    report.nudged += 1
                elif action == WatchdogActionType.RESTART:
                    report.restarted += 1
                else:
                    report.escalated += 1
            report.actions.append(record)

        return report

    def _apply(
        self, item: WorkItem, action: WatchdogActionType, stale: float, max_restarts: int
    ) -> None:
        if action == WatchdogActionType.NUDGE:
            logger.info(f"Nudging {item.id} (stale {stale:.1f} min)")
            self.actions.nudge(item, stale)
        elif action == WatchdogActionType.RESTART:
            logger.info(
                f"Restarting {item.id} (stale {stale:.1f} min, "
                f"restart {item.meta.restart_count}/{max_restarts})"
            )
            self.actions.restart(item, stale)
        else:
            error = EscalationError(
                f"Item {item.id} stalled {stale:.1f} min after {max_restarts} restart(s)"
            )
            logger.warning(f"Escalating {item.id}: {error}")
            self.actions.escalate(item, error)

    def run_once(self, stale_threshold_minutes: float, max_restarts: int) -> WatchdogReport:
        """Re-read all items from the store and scan them."""
        if self.store is None:
            raise ValueError("run_once requires a store")
        return self.scan_and_act(self.store.list_items(), stale_threshold_minutes, max_restarts)

    def run_continuous(
        self,
        root: Path,
        interval_seconds: float,
        stale_threshold_minutes: float,
        max_restarts: int,
        iterations: int | None = None,
        on_report: Callable[[WatchdogReport], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> int:
        """Scan every interval_seconds until iterations cycles (forever if None).

        Holds the workspace WatchdogLock for the whole run.

        Raises:
            LockHeldError: Another watchdog is already running here
        """
        cycles = 0
        with WatchdogLock(root):
            while iterations is None or cycles < iterations:
                try:
                    report = self.run_once(stale_threshold_minutes, max_restarts)
                except (RalphError, OSError) as e:
                    logger.error(f"Watchdog scan failed: {e}")
                else:
                    if on_report is not None:
                        on_report(report)
                cycles += 1
                if iterations is None or cycles < iterations:
                    sleep(interval_seconds)
        return cycles
