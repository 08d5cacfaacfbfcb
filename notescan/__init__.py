# Core module exports
from .aggregator import Aggregator
from .batch import BatchWriter, ChunkScheduler
from .dedup import Deduplicator
from .errors import (
    JobControlError,
    JobNotFoundError,
    LibraryLoadError,
    MatcherError,
    NoteRetrievalError,
    NotescanError,
    PersistenceError,
)
from .jobs import JobOrchestrator, ProgressBroadcaster, StallMonitor
from .matcher import Matcher
from .patterns import PatternLibrary
from .storage import InMemoryMentionStore, InMemoryNoteStore, NoteSelector, SQLiteStore
from .types import (
    CategoryCount,
    CountMode,
    ExtractionJob,
    JobStage,
    JobStatus,
    Mention,
    Note,
    ProblemFlag,
    StartResult,
    SymptomPattern,
)

__version__ = "0.1.0"
