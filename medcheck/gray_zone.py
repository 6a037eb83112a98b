"""
Gray Zone Collector — Evasion Cases for Legal Review

The Proposer reports evasion techniques that are not clear catalog
violations (login-walled before/after photos, disclaimers used as cover,
...). They are collected here, one row per (evasion_type, target_law),
counting how often each is seen.

An administrator rules on each case. Cases ruled a violation or
borderline are fed back into the Proposer's prompt as examples.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from typing import Iterable, Optional

from medcheck.exceptions import PersistenceFailure
from medcheck.logging import get_logger
from medcheck.models import GrayZone

logger = get_logger("gray_zone")

VERDICTS = ("violation", "borderline", "legal", "pending")
PROMPT_VERDICTS = ("violation", "borderline")


def current_quarter(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{now.year}-Q{(now.month - 1) // 3 + 1}"


_COLUMNS = (
    "id, analysis_id, evasion_type, evasion_category, evasion_description, "
    "target_law, target_violation, evidence_text, confidence, admin_verdict, "
    "admin_reasoning, added_to_prompt, occurrence_count, first_seen_quarter, "
    "trend_quarter, first_seen_at, last_seen_at"
)
_KEYS = [c.strip() for c in _COLUMNS.split(",")]


class GrayZoneCollector:
    """SQLite-backed gray-zone case book."""

    def __init__(self, db_path: str = "medcheck.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS gray_zone_cases (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    analysis_id TEXT,
                    evasion_type TEXT NOT NULL,
                    evasion_category TEXT NOT NULL,
                    evasion_description TEXT NOT NULL DEFAULT '',
                    target_law TEXT NOT NULL DEFAULT '',
                    target_violation TEXT NOT NULL DEFAULT '',
                    evidence_text TEXT NOT NULL DEFAULT '',
                    confidence REAL NOT NULL DEFAULT 0.5,
                    admin_verdict TEXT NOT NULL DEFAULT 'pending',
                    admin_reasoning TEXT,
                    added_to_prompt INTEGER NOT NULL DEFAULT 0,
                    occurrence_count INTEGER NOT NULL DEFAULT 1,
                    first_seen_quarter TEXT NOT NULL,
                    trend_quarter TEXT NOT NULL,
                    first_seen_at TEXT NOT NULL,
                    last_seen_at TEXT NOT NULL,
                    UNIQUE (evasion_type, target_law)
                )
            """)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def collect(self, gray_zones: Iterable[GrayZone], analysis_id: Optional[str] = None) -> dict:
        """
        Record each gray zone: a new case, or one more occurrence of a known one.

        Raises:
            PersistenceFailure: the write failed.
        """
        new_cases = updated_cases = 0
        quarter = current_quarter()
        now = datetime.now(timezone.utc).isoformat()

        try:
            with self._lock:
                with self._get_conn() as conn:
                    for gz in gray_zones:
                        evasion_type = gz.evasion_type or "other"
                        exists = conn.execute(
                            "SELECT 1 FROM gray_zone_cases WHERE evasion_type = ? AND target_law = ?",
                            (evasion_type, gz.target_law),
                        ).fetchone()
                        conn.execute(
                            """INSERT INTO gray_zone_cases
                               (analysis_id, evasion_type, evasion_category, evasion_description,
                                target_law, target_violation, evidence_text, confidence,
                                first_seen_quarter, trend_quarter, first_seen_at, last_seen_at)
                               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                               ON CONFLICT(evasion_type, target_law) DO UPDATE SET
                                   occurrence_count = occurrence_count + 1,
                                   evidence_text = CASE WHEN excluded.evidence_text != ''
                                       THEN excluded.evidence_text ELSE evidence_text END,
                                   trend_quarter = excluded.trend_quarter,
                                   last_seen_at = excluded.last_seen_at""",
                            (
                                analysis_id, evasion_type, gz.evasion_category,
                                gz.description, gz.target_law, gz.target_violation,
                                gz.original_text, gz.confidence, quarter, quarter, now, now,
                            ),
                        )
                        if exists:
                            updated_cases += 1
                        else:
                            new_cases += 1
                    conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(
                f"Cannot collect gray zones: {e}", {"analysis_id": analysis_id},
            ) from e

        if new_cases or updated_cases:
            logger.info(
                "Gray zones collected: %d new, %d repeated", new_cases, updated_cases,
                extra={"analysis_id": analysis_id},
            )
        return {"new_cases": new_cases, "updated_cases": updated_cases}

    def set_verdict(
        self,
        case_id: int,
        verdict: str,
        reasoning: str = "",
        add_to_prompt: bool = True,
    ) -> None:
        """Record the administrator's ruling on a case."""
        if verdict not in VERDICTS:
            raise ValueError(f"Unknown verdict: {verdict}")
        with self._lock:
            with self._get_conn() as conn:
                cursor = conn.execute(
                    """UPDATE gray_zone_cases SET
                           admin_verdict = ?, admin_reasoning = ?, added_to_prompt = ?
                       WHERE id = ?""",
                    (verdict, reasoning, int(add_to_prompt and verdict in PROMPT_VERDICTS), case_id),
                )
                conn.commit()
        if cursor.rowcount == 0:
            raise KeyError(f"Gray zone case {case_id} not found")

    def list_cases(self, verdict: str = "pending", limit: int = 20) -> list[dict]:
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM gray_zone_cases WHERE admin_verdict = ? "
                "ORDER BY occurrence_count DESC, first_seen_at DESC LIMIT ?",
                (verdict, limit),
            ).fetchall()
        return [dict(zip(_KEYS, r)) for r in rows]

    def get_prompt_examples(self, limit: int = 20) -> list[dict]:
        """Cases ruled violation or borderline and cleared for the prompt."""
        try:
            with self._get_conn() as conn:
                rows = conn.execute(
                    f"SELECT {_COLUMNS} FROM gray_zone_cases "
                    "WHERE added_to_prompt = 1 AND admin_verdict IN (?, ?) "
                    "ORDER BY occurrence_count DESC, id ASC LIMIT ?",
                    (*PROMPT_VERDICTS, limit),
                ).fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot read gray zone examples: {e}") from e
        return [dict(zip(_KEYS, r)) for r in rows]
