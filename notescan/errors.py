"""
Exception hierarchy for the extraction pipeline.

LibraryLoadError, NoteRetrievalError, PersistenceError and MatcherError are
fatal for a job run. JobControlError covers operator commands that are not
valid for the job's current state.
"""
from typing import Optional


class NotescanError(Exception):
    """Base class for all notescan errors."""


class LibraryLoadError(NotescanError):
    """Pattern library source is missing or structurally invalid."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class NoteRetrievalError(NotescanError):
    """The note store could not return the selected notes."""


class PersistenceError(NotescanError):
    """A mention batch could not be written."""

    def __init__(self, message: str, written: int = 0, batch_index: Optional[int] = None):
        super().__init__(message)
        self.written = written
        self.batch_index = batch_index


class MatcherError(NotescanError):
    """Too many consecutive per-note matcher failures."""


class JobControlError(NotescanError):
    """Operator command rejected for the job's current state."""


class JobNotFoundError(JobControlError):
    """No job is registered under the given id."""


FATAL_JOB_ERRORS = (LibraryLoadError, NoteRetrievalError, PersistenceError, MatcherError)
