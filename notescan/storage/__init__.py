"""
Note, mention and job-snapshot stores.
"""
from .interfaces import MentionStore, NoteSelector, NoteStore
from .jobs import JobStateStore
from .memory import InMemoryMentionStore, InMemoryNoteStore
from .sqlite import SQLiteStore

__all__ = [
    "InMemoryMentionStore",
    "InMemoryNoteStore",
    "JobStateStore",
    "MentionStore",
    "NoteSelector",
    "NoteStore",
    "SQLiteStore",
]
