"""
Store interfaces consumed by the extraction pipeline.

The pipeline never talks to a database directly: it reads notes through a
NoteStore and writes mentions through a MentionStore.
"""
from abc import ABC, abstractmethod
from datetime import date
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field

from notescan.types.models import Mention, Note


class NoteSelector(BaseModel):
    """Which of an owner's notes a job processes. Empty means all of them."""
    patient_ids: Optional[List[str]] = Field(default=None, description="Restrict to these patients")
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    limit: Optional[int] = Field(default=None, ge=1)

    @property
    def filters_notes(self) -> bool:
        """True when only part of a patient's notes is selected (date window or limit)."""
        return self.date_from is not None or self.date_to is not None or self.limit is not None

    def matches(self, note: Note) -> bool:
        if self.patient_ids is not None and note.patient_id not in self.patient_ids:
            return False
        if self.date_from is not None and note.date_of_service < self.date_from:
            return False
        if self.date_to is not None and note.date_of_service > self.date_to:
            return False
        return True


class NoteStore(ABC):
    """Read-only source of clinical notes."""

    @abstractmethod
    def fetch_notes(self, owner_id: str, selector: Optional[NoteSelector] = None) -> List[Note]:
        """
        Return the owner's notes chosen by `selector`.

        Raises:
            NoteRetrievalError: the store could not be read
        """

    @abstractmethod
    def count_notes(self, owner_id: str, selector: Optional[NoteSelector] = None) -> int:
        """Number of notes `fetch_notes` would return."""


class MentionStore(ABC):
    """Destination for extracted mentions."""

    @abstractmethod
    def insert_batch(self, mentions: List[Mention]) -> int:
        """
        Insert one batch in a single transaction.

        Mentions whose identity key already exists for the owner are
        skipped, so re-inserting is idempotent.

        Returns:
            Number of mentions actually inserted

        Raises:
            PersistenceError: the batch was rolled back
        """

    @abstractmethod
    def delete_for_scope(self, owner_id: str, patient_ids: Optional[List[str]] = None) -> int:
        """Remove an owner's mentions, optionally only for some patients. Returns rows removed."""

    @abstractmethod
    def delete_for_notes(self, owner_id: str, notes: Iterable[Note]) -> int:
        """
        Remove an owner's mentions that came from the given notes.

        Mentions are matched on (patient id, date of service); notes sharing
        both with a note that is not listed lose their mentions too.
        """

    @abstractmethod
    def count(self, owner_id: str, job_id: Optional[str] = None) -> int:
        """Persisted mentions for the owner, optionally only those written by one job."""

    @abstractmethod
    def list_mentions(self, owner_id: str) -> List[Mention]:
        """All persisted mentions for the owner."""
