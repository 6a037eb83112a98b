"""
Exception Candidates — Staged Suppression Rules

A candidate is a context that keeps showing up around false positives
of one pattern ("consultation individual", NEGATION_CONTEXT, ...). It is
staged here and only suppresses matches after a human approves it.

Lifecycle (forward only):
    collecting → pending_review → approved
    collecting | pending_review → rejected

collecting → pending_review fires once, when the candidate has enough
distinct source feedback and enough confidence. Repeating a review
action is a no-op; any other transition raises InvalidTransition.

Source feedback IDs have set semantics: merging a batch that adds no new
ID changes nothing, so re-running the miner never double counts.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional, Sequence

from medcheck.config import LearningSettings
from medcheck.exceptions import InvalidTransition, PersistenceFailure
from medcheck.logging import get_logger

logger = get_logger("learning.candidates")

MAX_SAMPLE_TEXTS = 10
MAX_CONFIDENCE = 0.95
BASE_CONFIDENCE = 0.5
CONFIDENCE_PER_OCCURRENCE = 0.05
REPEAT_BONUS = 0.1


class CandidateStatus(str, Enum):
    COLLECTING = "collecting"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class ExceptionType(str, Enum):
    KEYWORD = "keyword"
    CONTEXT = "context"
    REGEX = "regex"
    DEPARTMENT = "department"
    COMPOSITE = "composite"


@dataclass(frozen=True)
class ExceptionCandidate:
    id: str
    pattern_id: str
    exception_type: ExceptionType
    exception_pattern: str
    context_type: Optional[str]
    source_feedback_ids: tuple[str, ...]
    sample_texts: tuple[str, ...]
    occurrence_count: int
    confidence: float
    meets_threshold: bool
    status: CandidateStatus
    reviewed_by: Optional[str]
    review_note: Optional[str]
    created_at: str
    updated_at: str
    reviewed_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pattern_id": self.pattern_id,
            "exception_type": self.exception_type.value,
            "exception_pattern": self.exception_pattern,
            "context_type": self.context_type,
            "source_feedback_ids": list(self.source_feedback_ids),
            "sample_texts": list(self.sample_texts),
            "occurrence_count": self.occurrence_count,
            "confidence": self.confidence,
            "meets_threshold": self.meets_threshold,
            "status": self.status.value,
            "reviewed_by": self.reviewed_by,
            "review_note": self.review_note,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "reviewed_at": self.reviewed_at,
        }


@dataclass(frozen=True)
class UpsertOutcome:
    candidate: ExceptionCandidate
    created: bool
    changed: bool
    promoted: bool  # collecting -> pending_review happened in this call


def candidate_id(pattern_id: str, exception_pattern: str) -> str:
    digest = hashlib.sha256(f"{pattern_id}\x1f{exception_pattern}".encode()).hexdigest()
    return f"EC-{digest[:16]}"


def initial_confidence(count: int) -> float:
    return round(min(MAX_CONFIDENCE, BASE_CONFIDENCE + count * CONFIDENCE_PER_OCCURRENCE), 4)


def repeat_confidence(previous: float, count: int) -> float:
    raised = min(MAX_CONFIDENCE, BASE_CONFIDENCE + count * CONFIDENCE_PER_OCCURRENCE + REPEAT_BONUS)
    return round(max(previous, raised), 4)


def meets_threshold(count: int, confidence: float, settings: LearningSettings) -> bool:
    return (
        count >= settings.exception_min_occurrences
        and confidence >= settings.exception_min_confidence
    )


def merge_samples(new: Sequence[str], old: Sequence[str]) -> tuple[str, ...]:
    """Newest first, de-duplicated, capped."""
    merged: list[str] = []
    for text in list(new) + list(old):
        if text and text not in merged:
            merged.append(text)
        if len(merged) >= MAX_SAMPLE_TEXTS:
            break
    return tuple(merged)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


_COLUMNS = (
    "id, pattern_id, exception_type, exception_pattern, context_type, "
    "source_feedback_ids, sample_texts, occurrence_count, confidence, "
    "meets_threshold, status, reviewed_by, review_note, created_at, updated_at, reviewed_at"
)


def _row_to_candidate(r) -> ExceptionCandidate:
    return ExceptionCandidate(
        id=r[0],
        pattern_id=r[1],
        exception_type=ExceptionType(r[2]),
        exception_pattern=r[3],
        context_type=r[4],
        source_feedback_ids=tuple(json.loads(r[5])),
        sample_texts=tuple(json.loads(r[6])),
        occurrence_count=r[7],
        confidence=r[8],
        meets_threshold=bool(r[9]),
        status=CandidateStatus(r[10]),
        reviewed_by=r[11],
        review_note=r[12],
        created_at=r[13],
        updated_at=r[14],
        reviewed_at=r[15],
    )


class ExceptionCandidateStore:
    """SQLite-backed exception candidates with guarded review transitions."""

    def __init__(self, db_path: str = "medcheck.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._audit_fn = None  # Set by the caller to wire in the archive
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
                CREATE TABLE IF NOT EXISTS exception_candidates (
                    id TEXT PRIMARY KEY,
                    pattern_id TEXT NOT NULL,
                    exception_type TEXT NOT NULL,
                    exception_pattern TEXT NOT NULL,
                    context_type TEXT,
                    source_feedback_ids TEXT NOT NULL,
                    sample_texts TEXT NOT NULL,
                    occurrence_count INTEGER NOT NULL,
                    confidence REAL NOT NULL,
                    meets_threshold INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'collecting',
                    reviewed_by TEXT,
                    review_note TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    reviewed_at TEXT,
                    UNIQUE (pattern_id, exception_pattern)
                )
            """)
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    # --- Upsert ---

    def upsert(
        self,
        pattern_id: str,
        exception_pattern: str,
        feedback_ids: Iterable[str],
        sample_texts: Sequence[str],
        settings: LearningSettings,
        context_type: Optional[str] = None,
    ) -> UpsertOutcome:
        """
        Create or merge the candidate keyed by (pattern_id, exception_pattern).

        `sample_texts` are newest first.

        Raises:
            PersistenceFailure: the write failed.
        """
        ids = list(dict.fromkeys(feedback_ids))
        cid = candidate_id(pattern_id, exception_pattern)
        now = _now()

        try:
            with self._lock:
                with self._get_conn() as conn:
                    # Take the write lock before reading so another store on the
                    # same file cannot merge in between.
                    conn.execute("BEGIN IMMEDIATE")
                    row = conn.execute(
                        f"SELECT {_COLUMNS} FROM exception_candidates WHERE id = ?", (cid,),
                    ).fetchone()

                    if row is None:
                        outcome = self._insert(
                            conn, cid, pattern_id, exception_pattern, context_type,
                            ids, sample_texts, settings, now,
                        )
                    else:
                        outcome = self._merge(
                            conn, _row_to_candidate(row), ids, sample_texts, settings, now,
                        )
                    conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(
                f"Cannot upsert exception candidate: {e}",
                {"pattern_id": pattern_id, "exception_pattern": exception_pattern},
            ) from e

        if outcome.promoted:
            logger.info(
                "Exception candidate ready for review: '%s'", exception_pattern,
                extra={
                    "candidate_id": cid,
                    "pattern_id": pattern_id,
                    "status": outcome.candidate.status.value,
                },
            )
        return outcome

    def _insert(
        self,
        conn: sqlite3.Connection,
        cid: str,
        pattern_id: str,
        exception_pattern: str,
        context_type: Optional[str],
        ids: list[str],
        sample_texts: Sequence[str],
        settings: LearningSettings,
        now: str,
    ) -> UpsertOutcome:
        count = len(ids)
        confidence = initial_confidence(count)
        meets = meets_threshold(count, confidence, settings)
        status = CandidateStatus.PENDING_REVIEW if meets else CandidateStatus.COLLECTING
        exception_type = ExceptionType.CONTEXT if context_type else ExceptionType.KEYWORD
        samples = merge_samples(sample_texts, ())

        conn.execute(
            f"""INSERT INTO exception_candidates ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?, ?, NULL)""",
            (
                cid, pattern_id, exception_type.value, exception_pattern, context_type,
                json.dumps(ids), json.dumps(list(samples)), count, confidence,
                int(meets), status.value, now, now,
            ),
        )
        candidate = ExceptionCandidate(
            id=cid, pattern_id=pattern_id, exception_type=exception_type,
            exception_pattern=exception_pattern, context_type=context_type,
            source_feedback_ids=tuple(ids), sample_texts=samples,
            occurrence_count=count, confidence=confidence, meets_threshold=meets,
            status=status, reviewed_by=None, review_note=None,
            created_at=now, updated_at=now,
        )
        return UpsertOutcome(candidate, created=True, changed=True, promoted=meets)

    def _merge(
        self,
        conn: sqlite3.Connection,
        existing: ExceptionCandidate,
        ids: list[str],
        sample_texts: Sequence[str],
        settings: LearningSettings,
        now: str,
    ) -> UpsertOutcome:
        known = set(existing.source_feedback_ids)
        added = [i for i in ids if i not in known]
        if not added:
            return UpsertOutcome(existing, created=False, changed=False, promoted=False)

        merged_ids = existing.source_feedback_ids + tuple(added)
        count = len(merged_ids)
        confidence = repeat_confidence(existing.confidence, count)
        meets = meets_threshold(count, confidence, settings)
        promoted = meets and existing.status == CandidateStatus.COLLECTING
        status = CandidateStatus.PENDING_REVIEW if promoted else existing.status
        samples = merge_samples(sample_texts, existing.sample_texts)

        # The status guard keeps a concurrent review from being overwritten.
        conn.execute(
            """UPDATE exception_candidates SET
                   source_feedback_ids = ?, sample_texts = ?, occurrence_count = ?,
                   confidence = ?, meets_threshold = ?, updated_at = ?,
                   status = CASE WHEN ? = 1 AND status = 'collecting'
                                 THEN 'pending_review' ELSE status END
               WHERE id = ?""",
            (
                json.dumps(list(merged_ids)), json.dumps(list(samples)), count,
                confidence, int(meets), now, int(meets), existing.id,
            ),
        )
        candidate = ExceptionCandidate(
            id=existing.id, pattern_id=existing.pattern_id,
            exception_type=existing.exception_type,
            exception_pattern=existing.exception_pattern,
            context_type=existing.context_type,
            source_feedback_ids=merged_ids, sample_texts=samples,
            occurrence_count=count, confidence=confidence, meets_threshold=meets,
            status=status, reviewed_by=existing.reviewed_by,
            review_note=existing.review_note, created_at=existing.created_at,
            updated_at=now, reviewed_at=existing.reviewed_at,
        )
        return UpsertOutcome(candidate, created=False, changed=True, promoted=promoted)

    # --- Reads ---

    def get(self, cid: str) -> Optional[ExceptionCandidate]:
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM exception_candidates WHERE id = ?", (cid,),
            ).fetchone()
        return _row_to_candidate(row) if row else None

    def find(self, pattern_id: str, exception_pattern: str) -> Optional[ExceptionCandidate]:
        return self.get(candidate_id(pattern_id, exception_pattern))

    def list_candidates(
        self,
        status: Optional[CandidateStatus] = None,
        pattern_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[ExceptionCandidate]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if pattern_id is not None:
            clauses.append("pattern_id = ?")
            params.append(pattern_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM exception_candidates{where} "
                "ORDER BY confidence DESC, updated_at DESC LIMIT ?",
                params,
            ).fetchall()
        return [_row_to_candidate(r) for r in rows]

    def approved_exceptions(self) -> dict[str, list[str]]:
        """pattern_id -> approved exception patterns, for RuleMatcher."""
        out: dict[str, list[str]] = {}
        for c in self.list_candidates(status=CandidateStatus.APPROVED, limit=10_000):
            out.setdefault(c.pattern_id, []).append(c.exception_pattern)
        return out

    # --- Review transitions ---

    def approve(
        self,
        cid: str,
        reviewed_by: Optional[str] = None,
        note: Optional[str] = None,
    ) -> ExceptionCandidate:
        """pending_review -> approved. No-op when already approved."""
        return self._transition(
            cid, CandidateStatus.APPROVED,
            allowed_from=(CandidateStatus.PENDING_REVIEW,),
            reviewed_by=reviewed_by, note=note,
        )

    def reject(
        self,
        cid: str,
        reviewed_by: Optional[str] = None,
        note: Optional[str] = None,
    ) -> ExceptionCandidate:
        """collecting | pending_review -> rejected. No-op when already rejected."""
        return self._transition(
            cid, CandidateStatus.REJECTED,
            allowed_from=(CandidateStatus.COLLECTING, CandidateStatus.PENDING_REVIEW),
            reviewed_by=reviewed_by, note=note,
        )

    def _transition(
        self,
        cid: str,
        target: CandidateStatus,
        allowed_from: tuple[CandidateStatus, ...],
        reviewed_by: Optional[str],
        note: Optional[str],
    ) -> ExceptionCandidate:
        now = _now()
        placeholders = ", ".join("?" for _ in allowed_from)
        with self._lock:
            with self._get_conn() as conn:
                cursor = conn.execute(
                    f"""UPDATE exception_candidates SET
                            status = ?, reviewed_by = ?, review_note = ?,
                            reviewed_at = ?, updated_at = ?
                        WHERE id = ? AND status IN ({placeholders})""",
                    (target.value, reviewed_by, note, now, now, cid,
                     *[s.value for s in allowed_from]),
                )
                conn.commit()
                changed = cursor.rowcount == 1

        candidate = self.get(cid)
        if candidate is None:
            raise KeyError(f"Exception candidate {cid} not found")

        if not changed:
            if candidate.status == target:
                return candidate
            raise InvalidTransition(
                f"Cannot move candidate {cid} from {candidate.status.value} to {target.value}",
                {"candidate_id": cid, "from": candidate.status.value, "to": target.value},
            )

        logger.info(
            "Exception candidate %s", target.value,
            extra={"candidate_id": cid, "pattern_id": candidate.pattern_id,
                   "status": target.value},
        )
        self._audit("candidate_reviewed", {
            "candidate_id": cid,
            "pattern_id": candidate.pattern_id,
            "exception_pattern": candidate.exception_pattern,
            "status": target.value,
            "reviewed_by": reviewed_by,
        })
        return candidate
