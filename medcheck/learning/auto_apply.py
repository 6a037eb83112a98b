"""
Auto-Learning Log — Every Learning Event, Gated Before It Applies

Each mined result (exception generated, confidence adjusted, pattern
suggested, mapping learned) is written here as a pending log entry and
judged by a strict AND-gate:

  global:  confidence ≥ auto_apply_confidence (0.95)
           AND source feedback ≥ 10
  per type:
    exception_generated   confidence ≥ 0.95
    confidence_adjusted   |new - previous| ≤ 0.10
    mapping_learned       ≥ 5 corroborating cases
    pattern_suggested     never

Entries carry a content fingerprint as their ID, so a retried mining run
cannot write the same learning event twice.

Lifecycle: pending → approved | rejected. Repeating a review action is a
no-op; any other transition raises InvalidTransition.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from medcheck.config import LearningSettings
from medcheck.exceptions import InvalidTransition, PersistenceFailure
from medcheck.logging import get_logger

logger = get_logger("learning.auto_apply")

AUTO_APPLY_MIN_FEEDBACK = 10
EXCEPTION_AUTO_APPLY_CONFIDENCE = 0.95
CONFIDENCE_ADJUSTMENT_MAX_CHANGE = 0.10
MAPPING_MIN_CASES = 5
EXPIRED_REASON = "expired"


class LearningType(str, Enum):
    EXCEPTION_GENERATED = "exception_generated"
    CONFIDENCE_ADJUSTED = "confidence_adjusted"
    PATTERN_SUGGESTED = "pattern_suggested"
    MAPPING_LEARNED = "mapping_learned"


class LearningStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class AutoApplyDecision:
    eligible: bool
    reason: str


@dataclass(frozen=True)
class AutoLearningLog:
    id: str
    learning_type: LearningType
    target_type: str
    target_id: str
    input_data: dict
    output_data: dict
    confidence_score: float
    source_feedback_count: int
    auto_apply_eligible: bool
    ineligible_reason: Optional[str]
    status: LearningStatus
    review_reason: Optional[str]
    created_at: str
    reviewed_at: Optional[str] = None
    reviewed_by: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "learning_type": self.learning_type.value,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "input_data": self.input_data,
            "output_data": self.output_data,
            "confidence_score": self.confidence_score,
            "source_feedback_count": self.source_feedback_count,
            "auto_apply_eligible": self.auto_apply_eligible,
            "ineligible_reason": self.ineligible_reason,
            "status": self.status.value,
            "review_reason": self.review_reason,
            "created_at": self.created_at,
            "reviewed_at": self.reviewed_at,
            "reviewed_by": self.reviewed_by,
        }


# ============================================================
# GATE
# ============================================================

def should_auto_apply(
    learning_type: LearningType,
    confidence_score: float,
    source_feedback_count: int,
    input_data: dict,
    output_data: dict,
    settings: LearningSettings,
) -> AutoApplyDecision:
    """Strict AND-gate. Every ineligible decision names the failing clause."""
    if confidence_score < settings.auto_apply_confidence:
        return AutoApplyDecision(
            False,
            f"confidence {confidence_score * 100:.1f}% < {settings.auto_apply_confidence * 100:.0f}%",
        )
    if source_feedback_count < AUTO_APPLY_MIN_FEEDBACK:
        return AutoApplyDecision(
            False, f"feedback count {source_feedback_count} < {AUTO_APPLY_MIN_FEEDBACK}",
        )

    if learning_type == LearningType.EXCEPTION_GENERATED:
        if confidence_score >= EXCEPTION_AUTO_APPLY_CONFIDENCE:
            return AutoApplyDecision(True, "high-confidence exception rule")
        return AutoApplyDecision(False, "exception rules below 95% confidence need review")

    if learning_type == LearningType.CONFIDENCE_ADJUSTED:
        try:
            change = abs(
                float(output_data["new_confidence"]) - float(input_data["previous_confidence"])
            )
        except (KeyError, TypeError, ValueError):
            return AutoApplyDecision(False, "confidence adjustment is missing its values")
        if round(change, 6) <= CONFIDENCE_ADJUSTMENT_MAX_CHANGE:
            return AutoApplyDecision(True, "small confidence adjustment")
        return AutoApplyDecision(
            False,
            f"confidence change {change:.2f} > {CONFIDENCE_ADJUSTMENT_MAX_CHANGE:.2f} needs review",
        )

    if learning_type == LearningType.MAPPING_LEARNED:
        if source_feedback_count >= MAPPING_MIN_CASES:
            return AutoApplyDecision(True, "enough corroborating mapping cases")
        return AutoApplyDecision(
            False, f"mapping cases {source_feedback_count} < {MAPPING_MIN_CASES}",
        )

    return AutoApplyDecision(False, "suggested patterns always need review")


def fingerprint(
    learning_type: LearningType,
    target_type: str,
    target_id: str,
    input_data: dict,
    output_data: dict,
) -> str:
    payload = json.dumps(
        [learning_type.value, target_type, target_id, input_data, output_data],
        sort_keys=True, default=str, ensure_ascii=False,
    )
    return f"AL-{hashlib.sha256(payload.encode()).hexdigest()[:20]}"


# ============================================================
# STORE
# ============================================================

_COLUMNS = (
    "id, learning_type, target_type, target_id, input_data, output_data, "
    "confidence_score, source_feedback_count, auto_apply_eligible, ineligible_reason, "
    "status, review_reason, created_at, reviewed_at, reviewed_by"
)


def _row_to_log(r) -> AutoLearningLog:
    return AutoLearningLog(
        id=r[0],
        learning_type=LearningType(r[1]),
        target_type=r[2],
        target_id=r[3],
        input_data=json.loads(r[4]),
        output_data=json.loads(r[5]),
        confidence_score=r[6],
        source_feedback_count=r[7],
        auto_apply_eligible=bool(r[8]),
        ineligible_reason=r[9],
        status=LearningStatus(r[10]),
        review_reason=r[11],
        created_at=r[12],
        reviewed_at=r[13],
        reviewed_by=r[14],
    )


class AutoLearningLogStore:
    """SQLite-backed learning log with the auto-apply decision stored per entry."""

    def __init__(self, db_path: str = "medcheck.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._audit_fn = None
        self._init_db()

    def set_audit_logger(self, audit_fn):
        """Wire in the audit logger function: fn(event_type, data) -> hash."""
        self._audit_fn = audit_fn

    def _audit(self, event_type: str, data: dict) -> Optional[str]:
        if self._audit_fn:
            return self._audit_fn(event_type, data)
        return None

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS auto_learning_log (
                    id TEXT PRIMARY KEY,
                    learning_type TEXT NOT NULL,
                    target_type TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    input_data TEXT NOT NULL,
                    output_data TEXT NOT NULL,
                    confidence_score REAL NOT NULL,
                    source_feedback_count INTEGER NOT NULL,
                    auto_apply_eligible INTEGER NOT NULL,
                    ineligible_reason TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    review_reason TEXT,
                    created_at TEXT NOT NULL,
                    reviewed_at TEXT,
                    reviewed_by TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_learning_status
                ON auto_learning_log(status, created_at)
            """)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def record(
        self,
        learning_type: LearningType,
        target_type: str,
        target_id: str,
        input_data: dict[str, Any],
        output_data: dict[str, Any],
        confidence_score: float,
        source_feedback_count: int,
        settings: LearningSettings,
    ) -> tuple[AutoLearningLog, bool]:
        """
        Write one learning event, judged by the gate.

        Returns (entry, created). A second identical event returns the
        stored entry with created=False.

        Raises:
            PersistenceFailure: the write failed.
        """
        log_id = fingerprint(learning_type, target_type, target_id, input_data, output_data)
        decision = should_auto_apply(
            learning_type, confidence_score, source_feedback_count,
            input_data, output_data, settings,
        )
        now = datetime.now(timezone.utc).isoformat()

        try:
            with self._lock:
                with self._get_conn() as conn:
                    cursor = conn.execute(
                        f"""INSERT OR IGNORE INTO auto_learning_log ({_COLUMNS})
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', NULL, ?, NULL, NULL)""",
                        (
                            log_id, learning_type.value, target_type, target_id,
                            json.dumps(input_data, default=str, ensure_ascii=False),
                            json.dumps(output_data, default=str, ensure_ascii=False),
                            confidence_score, source_feedback_count,
                            int(decision.eligible),
                            None if decision.eligible else decision.reason,
                            now,
                        ),
                    )
                    conn.commit()
                    created = cursor.rowcount == 1
        except sqlite3.Error as e:
            raise PersistenceFailure(
                f"Cannot write learning log: {e}",
                {"learning_type": learning_type.value, "target_id": target_id},
            ) from e

        entry = self.get(log_id)
        if created:
            logger.info(
                "Learning logged: %s (%s)", learning_type.value, decision.reason,
                extra={"log_id": log_id, "status": entry.status.value},
            )
        return entry, created

    # --- Reads ---

    def get(self, log_id: str) -> Optional[AutoLearningLog]:
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM auto_learning_log WHERE id = ?", (log_id,),
            ).fetchone()
        return _row_to_log(row) if row else None

    def get_pending(
        self,
        learning_type: Optional[LearningType] = None,
        limit: int = 50,
    ) -> list[AutoLearningLog]:
        params: list[Any] = [LearningStatus.PENDING.value]
        type_clause = ""
        if learning_type is not None:
            type_clause = " AND learning_type = ?"
            params.append(learning_type.value)
        params.append(limit)
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM auto_learning_log "
                f"WHERE status = ?{type_clause} "
                "ORDER BY confidence_score DESC, created_at DESC LIMIT ?",
                params,
            ).fetchall()
        return [_row_to_log(r) for r in rows]

    def get_auto_apply_eligible(self) -> list[AutoLearningLog]:
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM auto_learning_log "
                "WHERE status = 'pending' AND auto_apply_eligible = 1 "
                "ORDER BY created_at ASC"
            ).fetchall()
        return [_row_to_log(r) for r in rows]

    def count_pending(self) -> int:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM auto_learning_log WHERE status = 'pending'"
            ).fetchone()
            return row[0] if row else 0

    def current_confidence(self, pattern_id: str, default: float = 1.0) -> float:
        """The latest approved confidence adjustment for a pattern, else `default`."""
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT output_data FROM auto_learning_log
                   WHERE learning_type = ? AND target_id = ? AND status = 'approved'
                   ORDER BY reviewed_at DESC LIMIT 1""",
                (LearningType.CONFIDENCE_ADJUSTED.value, pattern_id),
            ).fetchone()
        if not row:
            return default
        return float(json.loads(row[0]).get("new_confidence", default))

    # --- Review transitions ---

    def approve(self, log_id: str, reviewed_by: Optional[str] = None) -> AutoLearningLog:
        """pending -> approved. No-op when already approved."""
        return self._transition(log_id, LearningStatus.APPROVED, reviewed_by, None)

    def reject(
        self,
        log_id: str,
        reason: str,
        reviewed_by: Optional[str] = None,
    ) -> AutoLearningLog:
        """pending -> rejected. No-op when already rejected."""
        return self._transition(log_id, LearningStatus.REJECTED, reviewed_by, reason)

    def _transition(
        self,
        log_id: str,
        target: LearningStatus,
        reviewed_by: Optional[str],
        reason: Optional[str],
    ) -> AutoLearningLog:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            with self._get_conn() as conn:
                cursor = conn.execute(
                    """UPDATE auto_learning_log SET
                           status = ?, review_reason = ?, reviewed_at = ?, reviewed_by = ?
                       WHERE id = ? AND status = 'pending'""",
                    (target.value, reason, now, reviewed_by, log_id),
                )
                conn.commit()
                changed = cursor.rowcount == 1

        entry = self.get(log_id)
        if entry is None:
            raise KeyError(f"Learning log {log_id} not found")

        if not changed:
            if entry.status == target:
                return entry
            raise InvalidTransition(
                f"Cannot move learning log {log_id} from {entry.status.value} to {target.value}",
                {"log_id": log_id, "from": entry.status.value, "to": target.value},
            )

        logger.info(
            "Learning %s", target.value,
            extra={"log_id": log_id, "status": target.value},
        )
        self._audit("learning_reviewed", {
            "log_id": log_id,
            "learning_type": entry.learning_type.value,
            "target_id": entry.target_id,
            "status": target.value,
            "reason": reason,
            "reviewed_by": reviewed_by,
        })
        return entry

    def expire_stale(
        self,
        settings: Optional[LearningSettings] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Reject pending entries older than learning_expiry_days. Returns the count."""
        settings = settings or LearningSettings()
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(days=settings.learning_expiry_days)).isoformat()
        with self._lock:
            with self._get_conn() as conn:
                cursor = conn.execute(
                    """UPDATE auto_learning_log SET
                           status = 'rejected', review_reason = ?, reviewed_at = ?
                       WHERE status = 'pending' AND created_at < ?""",
                    (EXPIRED_REASON, now.isoformat(), cutoff),
                )
                conn.commit()
                expired = cursor.rowcount

        if expired:
            logger.info("Expired %d stale learning entries", expired)
        return expired
