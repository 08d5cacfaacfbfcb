"""
In-memory note and mention stores.

Used by tests and by callers that already hold their notes in memory.
"""
import threading
from typing import Dict, Iterable, List, Optional

from notescan.types.models import IdentityKey, Mention, Note

from .interfaces import MentionStore, NoteSelector, NoteStore


class InMemoryNoteStore(NoteStore):
    def __init__(self, notes: Optional[Dict[str, Iterable[Note]]] = None):
        """
        Args:
            notes: owner id -> notes
        """
        self._lock = threading.Lock()
        self._notes: Dict[str, List[Note]] = {}
        for owner_id, owner_notes in (notes or {}).items():
            self.add_notes(owner_id, owner_notes)

    def add_notes(self, owner_id: str, notes: Iterable[Note]) -> None:
        with self._lock:
            self._notes.setdefault(owner_id, []).extend(notes)

    def fetch_notes(self, owner_id: str, selector: Optional[NoteSelector] = None) -> List[Note]:
        selector = selector or NoteSelector()
        with self._lock:
            notes = [n for n in self._notes.get(owner_id, []) if selector.matches(n)]
        if selector.limit is not None:
            notes = notes[:selector.limit]
        return notes

    def count_notes(self, owner_id: str, selector: Optional[NoteSelector] = None) -> int:
        return len(self.fetch_notes(owner_id, selector))


class InMemoryMentionStore(MentionStore):
    """Thread-safe mention store keyed by (owner, identity key)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[str, Dict[IdentityKey, Mention]] = {}

    def insert_batch(self, mentions: List[Mention]) -> int:
        inserted = 0
        with self._lock:
            for mention in mentions:
                owner_rows = self._rows.setdefault(mention.owner_id or "", {})
                key = mention.identity_key
                if key in owner_rows:
                    continue
                owner_rows[key] = mention
                inserted += 1
        return inserted

    def delete_for_scope(self, owner_id: str, patient_ids: Optional[List[str]] = None) -> int:
        with self._lock:
            owner_rows = self._rows.get(owner_id, {})
            if patient_ids is None:
                removed = len(owner_rows)
                self._rows[owner_id] = {}
                return removed
            scope = set(patient_ids)
            doomed = [key for key, m in owner_rows.items() if m.patient_id in scope]
            for key in doomed:
                del owner_rows[key]
            return len(doomed)

    def delete_for_notes(self, owner_id: str, notes: Iterable[Note]) -> int:
        scope = {(n.patient_id, n.date_of_service) for n in notes}
        with self._lock:
            owner_rows = self._rows.get(owner_id, {})
            doomed = [key for key, m in owner_rows.items() if (m.patient_id, m.date_of_service) in scope]
            for key in doomed:
                del owner_rows[key]
            return len(doomed)

    def count(self, owner_id: str, job_id: Optional[str] = None) -> int:
        with self._lock:
            rows = self._rows.get(owner_id, {}).values()
            if job_id is None:
                return len(rows)
            return sum(1 for m in rows if m.job_id == job_id)

    def list_mentions(self, owner_id: str) -> List[Mention]:
        with self._lock:
            return list(self._rows.get(owner_id, {}).values())
