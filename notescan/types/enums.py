"""
Enums for extraction jobs, mention families and aggregation modes.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle status of an extraction job."""
    IDLE = "idle"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class JobStage(str, Enum):
    """Sub-stage of an in_progress job."""
    LOADING_PATTERNS = "loading_patterns"
    EXTRACTING = "extracting"
    PERSISTING = "persisting"


class ProblemFlag(str, Enum):
    """Clinical symptom vs. health-related social need (HRSN)."""
    SYMPTOM = "symptom"
    PROBLEM = "problem"   # HRSN indicator


class CountMode(str, Enum):
    """How the aggregator counts mentions."""
    RAW = "raw"                          # every occurrence
    UNIQUE_PATIENTS = "unique_patients"  # distinct patients per category


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.STOPPED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.IN_PROGRESS})
