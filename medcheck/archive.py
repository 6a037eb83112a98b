"""
Analysis Archive — SHA-256 Tamper-Evident Record

Every analysis, review decision and learning event is appended to a
hash chain. Each entry references the previous hash, so any entry
modified after the fact breaks the chain and verify_chain() reports it.

Entries about one analysis carry its id in an indexed column, so a
reviewer holding a feedback record can pull up the analysis it refers to.

This is a local chain-of-custody log, not a distributed ledger.
"""

import hashlib
import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from medcheck.exceptions import PersistenceFailure
from medcheck.models import AuditResult

GENESIS_HASH = "0" * 64

_COLUMNS = "id, prev_hash, hash, event_type, data, timestamp, catalog_version, analysis_id"


def _entry(row) -> dict:
    return {
        "id": row[0],
        "prev_hash": row[1],
        "hash": row[2],
        "event_type": row[3],
        "data": json.loads(row[4]),
        "timestamp": row[5],
        "catalog_version": row[6],
        "analysis_id": row[7],
    }


def _analysis_id_of(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        value = data.get("analysis_id") or data.get("id")
        if isinstance(value, str) and value.startswith("audit_"):
            return value
    return None


class AuditArchive:
    """Append-only, hash-chained archive backed by SQLite."""

    def __init__(self, db_path: str = "medcheck.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        try:
            with self._get_conn() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS audit_archive (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        prev_hash TEXT NOT NULL,
                        hash TEXT NOT NULL,
                        event_type TEXT NOT NULL,
                        data TEXT NOT NULL,
                        timestamp TEXT NOT NULL,
                        catalog_version TEXT NOT NULL,
                        analysis_id TEXT
                    )
                """)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_archive_event_type ON audit_archive(event_type)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_archive_analysis ON audit_archive(analysis_id)"
                )
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot initialize archive: {e}", {"db_path": self.db_path}) from e

    def _get_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _query(self, sql: str, params: tuple = ()) -> list:
        try:
            with self._get_conn() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot read archive: {e}") from e

    @staticmethod
    def _hash(prev_hash: str, event_type: str, data_str: str, timestamp: str, version: str) -> str:
        chain_input = f"{prev_hash}{event_type}{data_str}{timestamp}{version}"
        return hashlib.sha256(chain_input.encode()).hexdigest()

    def log(self, event_type: str, data: Any, catalog_version: Optional[str] = None) -> str:
        """
        Append an event to the archive.

        Event types:
          - analysis_local:      Rule-only analysis completed
          - analysis_full:       Proposer + audit analysis completed
          - candidate_reviewed:  Exception candidate approved / rejected
          - learning_reviewed:   Learning log approved / rejected
          - pattern_action_set:  Pattern suppressed or restored by a reviewer
          - chain_verified:      Chain integrity check performed

        Returns the SHA-256 hash of the new entry.
        """
        if catalog_version is None:
            from medcheck.catalog import CATALOG_VERSION
            catalog_version = CATALOG_VERSION

        data_str = json.dumps(data, default=str, ensure_ascii=False)
        try:
            with self._lock:
                with self._get_conn() as conn:
                    row = conn.execute(
                        "SELECT hash FROM audit_archive ORDER BY id DESC LIMIT 1"
                    ).fetchone()
                    prev_hash = row[0] if row else GENESIS_HASH
                    timestamp = datetime.now(timezone.utc).isoformat()
                    new_hash = self._hash(prev_hash, event_type, data_str, timestamp, catalog_version)

                    conn.execute(
                        """INSERT INTO audit_archive
                           (prev_hash, hash, event_type, data, timestamp, catalog_version, analysis_id)
                           VALUES (?, ?, ?, ?, ?, ?, ?)""",
                        (prev_hash, new_hash, event_type, data_str, timestamp,
                         catalog_version, _analysis_id_of(data)),
                    )
                    conn.commit()
                    return new_hash
        except sqlite3.Error as e:
            raise PersistenceFailure(
                f"Cannot archive {event_type}: {e}", {"event_type": event_type},
            ) from e

    def archive_result(self, result: AuditResult, mode: str = "full") -> str:
        """Archive one analysis result as analysis_<mode>."""
        return self.log(f"analysis_{mode}", result.to_dict())

    def get_recent(self, limit: int = 20, event_type: Optional[str] = None) -> list[dict]:
        """Recent entries, newest first, optionally filtered by event type."""
        if event_type:
            rows = self._query(
                f"SELECT {_COLUMNS} FROM audit_archive WHERE event_type = ? ORDER BY id DESC LIMIT ?",
                (event_type, limit),
            )
        else:
            rows = self._query(
                f"SELECT {_COLUMNS} FROM audit_archive ORDER BY id DESC LIMIT ?", (limit,),
            )
        return [_entry(r) for r in rows]

    def find_analysis(self, analysis_id: str) -> list[dict]:
        """All entries about one analysis, oldest first."""
        rows = self._query(
            f"SELECT {_COLUMNS} FROM audit_archive WHERE analysis_id = ? ORDER BY id ASC",
            (analysis_id,),
        )
        return [_entry(r) for r in rows]

    def verify_chain(self, limit: Optional[int] = None) -> dict:
        """Verify integrity of the oldest `limit` entries (all when None)."""
        rows = self._query(
            f"SELECT {_COLUMNS} FROM audit_archive ORDER BY id ASC LIMIT ?",
            (-1 if limit is None else limit,),
        )

        broken = []
        expected_prev = GENESIS_HASH
        for entry_id, prev_hash, stored_hash, event_type, data_str, timestamp, version, _ in rows:
            computed = self._hash(prev_hash, event_type, data_str, timestamp, version)
            if computed != stored_hash:
                broken.append({
                    "id": entry_id,
                    "issue": "hash_mismatch",
                    "expected": computed,
                    "stored": stored_hash,
                })
            if prev_hash != expected_prev:
                broken.append({
                    "id": entry_id,
                    "issue": "chain_break",
                    "expected_prev": expected_prev,
                    "stored_prev": prev_hash,
                })
            expected_prev = stored_hash

        return {
            "verified": not broken,
            "entries_checked": len(rows),
            "broken_links": broken,
        }

    def get_count(self) -> int:
        rows = self._query("SELECT COUNT(*) FROM audit_archive")
        return rows[0][0] if rows else 0
