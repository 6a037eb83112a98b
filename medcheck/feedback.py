"""
Feedback Log — Append-Only Reviewer Verdicts

Human reviewers mark each reported (or missed) violation as a true
positive, false positive or false negative. Every verdict is appended
here and never edited; performance statistics and mined exceptions are
derived views recomputed from this log.

Also holds the persisted learning settings. They are re-read on every
learning operation, so a change takes effect without a restart.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from medcheck.config import LearningSettings
from medcheck.exceptions import ConfigError, PersistenceFailure
from medcheck.logging import get_logger

logger = get_logger("feedback")


class Verdict(str, Enum):
    TRUE_POSITIVE = "true_positive"
    FALSE_POSITIVE = "false_positive"
    FALSE_NEGATIVE = "false_negative"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_feedback_id() -> str:
    return f"fb_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class FeedbackEvent:
    pattern_id: str
    verdict: Verdict
    analysis_id: Optional[str] = None
    context_type: Optional[str] = None
    department: Optional[str] = None
    sample_text: Optional[str] = None
    suggested_pattern: Optional[str] = None
    id: str = field(default_factory=_new_feedback_id)
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "analysis_id": self.analysis_id,
            "pattern_id": self.pattern_id,
            "verdict": self.verdict.value,
            "context_type": self.context_type,
            "department": self.department,
            "sample_text": self.sample_text,
            "suggested_pattern": self.suggested_pattern,
            "created_at": self.created_at,
        }


_EVENT_COLUMNS = (
    "id, analysis_id, pattern_id, verdict, context_type, department, "
    "sample_text, suggested_pattern, created_at"
)


def _row_to_event(row) -> FeedbackEvent:
    return FeedbackEvent(
        id=row[0],
        analysis_id=row[1],
        pattern_id=row[2],
        verdict=Verdict(row[3]),
        context_type=row[4],
        department=row[5],
        sample_text=row[6],
        suggested_pattern=row[7],
        created_at=row[8],
    )


class FeedbackLog:
    """Append-only feedback events backed by SQLite."""

    def __init__(self, db_path: str = "medcheck.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS feedback_events (
                    id TEXT PRIMARY KEY,
                    analysis_id TEXT,
                    pattern_id TEXT NOT NULL,
                    verdict TEXT NOT NULL,
                    context_type TEXT,
                    department TEXT,
                    sample_text TEXT,
                    suggested_pattern TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_feedback_pattern
                ON feedback_events(pattern_id, created_at)
            """)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def record(self, event: FeedbackEvent) -> FeedbackEvent:
        """
        Append one event. Replaying an event with an existing ID is a no-op.

        Raises:
            PersistenceFailure: the write failed.
        """
        try:
            with self._lock:
                with self._get_conn() as conn:
                    conn.execute(
                        f"INSERT OR IGNORE INTO feedback_events ({_EVENT_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            event.id, event.analysis_id, event.pattern_id,
                            event.verdict.value, event.context_type, event.department,
                            event.sample_text, event.suggested_pattern, event.created_at,
                        ),
                    )
                    conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(
                f"Cannot record feedback: {e}", {"feedback_id": event.id},
            ) from e

        logger.debug(
            "Feedback recorded: %s", event.verdict.value,
            extra={"pattern_id": event.pattern_id, "analysis_id": event.analysis_id},
        )
        return event

    def events(
        self,
        since: Optional[str] = None,
        pattern_id: Optional[str] = None,
        verdict: Optional[Verdict] = None,
        analysis_id: Optional[str] = None,
    ) -> list[FeedbackEvent]:
        """Events in insertion-time order, optionally filtered."""
        clauses, params = [], []
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since)
        if pattern_id is not None:
            clauses.append("pattern_id = ?")
            params.append(pattern_id)
        if verdict is not None:
            clauses.append("verdict = ?")
            params.append(verdict.value)
        if analysis_id is not None:
            clauses.append("analysis_id = ?")
            params.append(analysis_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM feedback_events{where} "
                "ORDER BY created_at ASC, rowid ASC",
                params,
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def pattern_ids(self, since: Optional[str] = None) -> list[str]:
        with self._get_conn() as conn:
            if since is None:
                rows = conn.execute(
                    "SELECT DISTINCT pattern_id FROM feedback_events ORDER BY pattern_id"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT DISTINCT pattern_id FROM feedback_events "
                    "WHERE created_at >= ? ORDER BY pattern_id",
                    (since,),
                ).fetchall()
        return [r[0] for r in rows]

    def get_count(self) -> int:
        with self._get_conn() as conn:
            row = conn.execute("SELECT COUNT(*) FROM feedback_events").fetchone()
            return row[0] if row else 0


# ============================================================
# SETTINGS
# ============================================================

class SettingsStore:
    """Persisted overrides for LearningSettings. Values are stored as text."""

    def __init__(self, db_path: str = "medcheck.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS learning_settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def get(self, key: str) -> Optional[str]:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT value FROM learning_settings WHERE key = ?", (key,),
            ).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: Any) -> None:
        """
        Persist one override.

        Raises:
            ConfigError: unknown key, or a value that does not coerce.
        """
        if key not in LearningSettings.keys():
            raise ConfigError(f"Unknown learning setting: {key}", {"key": key})
        LearningSettings.from_mapping({key: str(value)})

        with self._lock:
            with self._get_conn() as conn:
                conn.execute(
                    """INSERT INTO learning_settings (key, value, updated_at)
                       VALUES (?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET
                           value = excluded.value,
                           updated_at = excluded.updated_at""",
                    (key, str(value), _now()),
                )
                conn.commit()
        logger.info("Learning setting %s = %s", key, value)

    def all(self) -> dict[str, str]:
        with self._get_conn() as conn:
            rows = conn.execute("SELECT key, value FROM learning_settings").fetchall()
        return {r[0]: r[1] for r in rows}

    def load(self) -> LearningSettings:
        """Current settings: code defaults overlaid with persisted values."""
        return LearningSettings.from_mapping(self.all())
