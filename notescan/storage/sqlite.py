import json
import sqlite3
import threading
from datetime import date
from pathlib import Path
from typing import Iterable, List, Optional

from notescan.errors import NoteRetrievalError, PersistenceError
from notescan.types.models import Mention, Note
from notescan.utils import get_logger

from .interfaces import MentionStore, NoteSelector, NoteStore

logger = get_logger("SQLiteStore")


class SQLiteStore(NoteStore, MentionStore):
    """
    SQLite-backed note and mention store.

    One database file holds both tables. Connections are thread-local so
    the orchestrator's job threads and the CLI can share one instance.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """
        Args:
            db_path: Path to SQLite database (defaults to settings.DB_PATH)
        """
        if db_path is None:
            from notescan.config import settings
            db_path = settings.DB_PATH
        self.db_path = Path(db_path)
        self._local = threading.local()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            self._local.connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
            )
            self._local.connection.row_factory = sqlite3.Row
        return self._local.connection

    def _init_db(self) -> None:
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notes (
                note_id TEXT,
                owner_id TEXT NOT NULL,
                patient_id TEXT NOT NULL,
                date_of_service TEXT NOT NULL,
                text TEXT,
                provider_id TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS mentions (
                mention_id TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                patient_id TEXT NOT NULL,
                date_of_service TEXT NOT NULL,
                segment TEXT NOT NULL,
                segment_lc TEXT NOT NULL,
                position INTEGER NOT NULL,
                symptom_id TEXT,
                diagnosis TEXT,
                diagnostic_category TEXT,
                problem_flag TEXT,
                job_id TEXT,
                provider_id TEXT,
                extras TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Identity key; INSERT OR IGNORE relies on it
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_mention_identity
            ON mentions(owner_id, patient_id, segment_lc, date_of_service, position)
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_mention_job ON mentions(owner_id, job_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_note_owner ON notes(owner_id, patient_id)")

        conn.commit()

    def close(self) -> None:
        """Close this thread's connection."""
        if hasattr(self._local, "connection"):
            self._local.connection.close()
            delattr(self._local, "connection")

    # =========================================================================
    # Notes
    # =========================================================================

    def add_notes(self, owner_id: str, notes: Iterable[Note]) -> int:
        """Load notes for an owner. Returns rows inserted."""
        rows = [
            (n.note_id, owner_id, n.patient_id, n.date_of_service.isoformat(), n.text, n.provider_id)
            for n in notes
        ]
        conn = self._get_connection()
        try:
            conn.executemany(
                "INSERT INTO notes (note_id, owner_id, patient_id, date_of_service, text, provider_id) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                rows,
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to store notes: {e}") from e
        logger.info(f"Stored {len(rows)} notes for owner {owner_id}")
        return len(rows)

    def _note_query(self, owner_id: str, selector: Optional[NoteSelector], columns: str):
        selector = selector or NoteSelector()
        sql = f"SELECT {columns} FROM notes WHERE owner_id = ?"
        params: list = [owner_id]

        if selector.patient_ids is not None:
            if not selector.patient_ids:
                sql += " AND 0"
            else:
                sql += f" AND patient_id IN ({','.join('?' * len(selector.patient_ids))})"
                params.extend(selector.patient_ids)
        if selector.date_from is not None:
            sql += " AND date_of_service >= ?"
            params.append(selector.date_from.isoformat())
        if selector.date_to is not None:
            sql += " AND date_of_service <= ?"
            params.append(selector.date_to.isoformat())
        return sql, params, selector

    def fetch_notes(self, owner_id: str, selector: Optional[NoteSelector] = None) -> List[Note]:
        sql, params, selector = self._note_query(
            owner_id, selector, "note_id, patient_id, date_of_service, text, provider_id"
        )
        sql += " ORDER BY rowid"
        if selector.limit is not None:
            sql += " LIMIT ?"
            params.append(selector.limit)

        try:
            rows = self._get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise NoteRetrievalError(f"Failed to read notes for owner {owner_id}: {e}") from e

        return [
            Note(
                note_id=row["note_id"],
                patient_id=row["patient_id"],
                date_of_service=date.fromisoformat(row["date_of_service"]),
                text=row["text"] or "",
                provider_id=row["provider_id"],
            )
            for row in rows
        ]

    def count_notes(self, owner_id: str, selector: Optional[NoteSelector] = None) -> int:
        sql, params, selector = self._note_query(owner_id, selector, "COUNT(*)")
        try:
            total = self._get_connection().execute(sql, params).fetchone()[0]
        except sqlite3.Error as e:
            raise NoteRetrievalError(f"Failed to count notes for owner {owner_id}: {e}") from e
        if selector.limit is not None:
            return min(total, selector.limit)
        return total

    # =========================================================================
    # Mentions
    # =========================================================================

    def insert_batch(self, mentions: List[Mention]) -> int:
        if not mentions:
            return 0
        rows = [
            (
                m.mention_id,
                m.owner_id or "",
                m.patient_id,
                m.date_of_service.isoformat(),
                m.segment,
                m.segment.lower(),
                m.position,
                m.symptom_id,
                m.diagnosis,
                m.diagnostic_category,
                m.problem_flag.value,
                m.job_id,
                m.provider_id,
                json.dumps(m.extras),
            )
            for m in mentions
        ]
        conn = self._get_connection()
        before = conn.total_changes
        try:
            conn.executemany(
                """
                INSERT OR IGNORE INTO mentions
                (mention_id, owner_id, patient_id, date_of_service, segment, segment_lc, position,
                 symptom_id, diagnosis, diagnostic_category, problem_flag, job_id, provider_id, extras)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Mention batch rolled back: {e}") from e
        return conn.total_changes - before

    def delete_for_scope(self, owner_id: str, patient_ids: Optional[List[str]] = None) -> int:
        conn = self._get_connection()
        sql = "DELETE FROM mentions WHERE owner_id = ?"
        params: list = [owner_id]
        if patient_ids is not None:
            if not patient_ids:
                return 0
            sql += f" AND patient_id IN ({','.join('?' * len(patient_ids))})"
            params.extend(patient_ids)
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to clear mentions for owner {owner_id}: {e}") from e
        return cursor.rowcount

    def delete_for_notes(self, owner_id: str, notes: Iterable[Note]) -> int:
        pairs = sorted({(n.patient_id, n.date_of_service.isoformat()) for n in notes})
        if not pairs:
            return 0
        conn = self._get_connection()
        before = conn.total_changes
        try:
            conn.executemany(
                "DELETE FROM mentions WHERE owner_id = ? AND patient_id = ? AND date_of_service = ?",
                [(owner_id, patient_id, dos) for patient_id, dos in pairs],
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to clear mentions for owner {owner_id}: {e}") from e
        return conn.total_changes - before

    def count(self, owner_id: str, job_id: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) FROM mentions WHERE owner_id = ?"
        params: list = [owner_id]
        if job_id is not None:
            sql += " AND job_id = ?"
            params.append(job_id)
        try:
            return self._get_connection().execute(sql, params).fetchone()[0]
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to count mentions: {e}") from e

    def list_mentions(self, owner_id: str) -> List[Mention]:
        try:
            rows = self._get_connection().execute(
                "SELECT * FROM mentions WHERE owner_id = ? ORDER BY rowid", (owner_id,)
            ).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read mentions: {e}") from e

        return [
            Mention(
                mention_id=row["mention_id"],
                patient_id=row["patient_id"],
                date_of_service=date.fromisoformat(row["date_of_service"]),
                segment=row["segment"],
                symptom_id=row["symptom_id"] or "",
                diagnosis=row["diagnosis"] or "",
                diagnostic_category=row["diagnostic_category"] or "",
                problem_flag=row["problem_flag"],
                position=row["position"],
                job_id=row["job_id"],
                owner_id=row["owner_id"],
                provider_id=row["provider_id"],
                extras=json.loads(row["extras"]) if row["extras"] else {},
            )
            for row in rows
        ]
