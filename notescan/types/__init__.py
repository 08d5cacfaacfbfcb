"""Record and enum types for the extraction pipeline."""

from notescan.types.enums import CountMode, JobStage, JobStatus, ProblemFlag
from notescan.types.models import (
    CategoryCount,
    ExtractionJob,
    Mention,
    Note,
    StartResult,
    SymptomPattern,
)

__all__ = [
    "CountMode",
    "JobStage",
    "JobStatus",
    "ProblemFlag",
    "CategoryCount",
    "ExtractionJob",
    "Mention",
    "Note",
    "StartResult",
    "SymptomPattern",
]
