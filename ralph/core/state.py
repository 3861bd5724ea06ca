"""SQLite event log for work item execution.

The events table is append-only; it records every state change the engine and
watchdog make so failures stay diagnosable without reading raw logs.
Circuit breaker state is persisted alongside it so `ralph status` can show it.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from ralph.core.models import utc_now


class EventType(str, Enum):
    """Types of events in the event log."""

    # Item lifecycle
    ITEM_CREATED = "item_created"
    ITEM_HOOKED = "item_hooked"
    ITEM_STARTED = "item_started"
    ITEM_COMPLETED = "item_completed"
    ITEM_FAILED = "item_failed"
    ITEM_ROLLED_BACK = "item_rolled_back"

    # Attempts
    BASELINE_RECORDED = "baseline_recorded"
    ATTEMPT_STARTED = "attempt_started"
    AGENT_FAILED = "agent_failed"
    VERIFIER_PASSED = "verifier_passed"
    VERIFIER_FAILED = "verifier_failed"

    # Watchdog
    ITEM_NUDGED = "item_nudged"
    ITEM_RESTARTED = "item_restarted"
    ITEM_ESCALATED = "item_escalated"

    # Gates
    GATE_UPDATED = "gate_updated"


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Path and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=_SafeJSONEncoder)


class Event(BaseModel):
    """Immutable event in the event log."""

    id: int | None = None
    item_id: str
    event_type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class Database:
    """SQLite database holding the event log and circuit breaker state."""

    SCHEMA = """
    -- Event log (immutable)
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        item_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS circuit_breaker_state (
        name TEXT PRIMARY KEY,
        state TEXT NOT NULL,
        failure_count INTEGER NOT NULL DEFAULT 0,
        opened_at REAL,
        failure_threshold INTEGER NOT NULL,
        timeout_seconds REAL NOT NULL,
        updated_at REAL NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_events_item ON events(item_id);
    CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
    """

    def __init__(self, db_path: str | Path = ".ralph/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize schema and enable WAL mode for concurrent readers/writers."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Explicit transaction context for atomic operations."""
        with self._connect() as conn:
            yield conn

    # --- Events ---

    def append_event(self, event: Event) -> int:
        """Append an event to the log and return its id."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO events (item_id, event_type, payload, timestamp)
                VALUES (?, ?, ?, ?)
                """,
                (
                    event.item_id,
                    event.event_type.value,
                    _safe_json_dumps(event.payload),
                    event.timestamp.isoformat(),
                ),
            )
            return cursor.lastrowid  # type: ignore[return-value]

    def record(self, item_id: str, event_type: EventType, **payload: Any) -> int:
        """Shorthand for append_event(Event(...))."""
        return self.append_event(Event(item_id=item_id, event_type=event_type, payload=payload))

    def get_events(
        self, item_id: str, event_types: list[EventType] | None = None
    ) -> list[Event]:
        """Get events for an item, optionally filtered by type."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM events
                    WHERE item_id = ? AND event_type IN ({placeholders})
                    ORDER BY id
                    """,
                    [item_id] + [et.value for et in event_types],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE item_id = ? ORDER BY id",
                    (item_id,),
                ).fetchall()

            return [self._row_to_event(row) for row in rows]

    def recent_events(
        self, event_types: list[EventType] | None = None, limit: int = 20
    ) -> list[Event]:
        """Most recent events across all items, newest first."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM events WHERE event_type IN ({placeholders})
                    ORDER BY id DESC LIMIT ?
                    """,
                    [et.value for et in event_types] + [limit],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            item_id=row["item_id"],
            event_type=EventType(row["event_type"]),
            payload=json.loads(row["payload"]) if row["payload"] else {},
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )
