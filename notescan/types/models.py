"""
Record types for the extraction pipeline.

Defines SymptomPattern, Note, Mention, ExtractionJob and CategoryCount
Pydantic models. Notes and mentions are immutable once created.
"""

from datetime import date, datetime
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from notescan.constants import MAX_EXTRA_FIELDS
from notescan.types.enums import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobStage,
    JobStatus,
    ProblemFlag,
)

ExtraValue = Union[str, int, float, bool, None]
IdentityKey = Tuple[str, str, date, int]


def _validate_extras(value: Dict[str, ExtraValue]) -> Dict[str, ExtraValue]:
    if len(value) > MAX_EXTRA_FIELDS:
        raise ValueError(f"At most {MAX_EXTRA_FIELDS} extra fields allowed, got {len(value)}")
    return value


class SymptomPattern(BaseModel):
    """One row of the pattern library."""
    model_config = ConfigDict(frozen=True)

    pattern_id: str
    segment: str = Field(min_length=1, description="Symptom segment text")
    diagnosis: str = ""
    diagnostic_category: str = ""
    symptom_id: str = ""
    problem_flag: ProblemFlag = ProblemFlag.SYMPTOM
    keywords: Tuple[str, ...] = Field(default=(), description="Literal phrases to search for")
    extras: Dict[str, ExtraValue] = Field(default_factory=dict)

    @field_validator("extras")
    @classmethod
    def check_extras(cls, value: Dict[str, ExtraValue]) -> Dict[str, ExtraValue]:
        return _validate_extras(value)

    @property
    def search_terms(self) -> Tuple[str, ...]:
        """Keywords to match; the segment itself when no keywords are given."""
        return self.keywords or (self.segment,)

    @property
    def is_hrsn(self) -> bool:
        return self.problem_flag == ProblemFlag.PROBLEM


class Note(BaseModel):
    """A free-text clinical note owned by the external note store."""
    model_config = ConfigDict(frozen=True)

    note_id: Optional[str] = None
    patient_id: str
    date_of_service: date
    text: str = ""
    provider_id: Optional[str] = None


class Mention(BaseModel):
    """
    One pattern match at a specific character offset of one note.

    Core fields are fixed; `extras` is a bounded pass-through map for
    custom library columns.
    """
    model_config = ConfigDict(frozen=True)

    mention_id: str
    patient_id: str
    date_of_service: date
    segment: str
    symptom_id: str = ""
    diagnosis: str = ""
    diagnostic_category: str = ""
    problem_flag: ProblemFlag = ProblemFlag.SYMPTOM
    position: int = Field(ge=0, description="Character offset of the match in the note text")
    job_id: Optional[str] = None
    owner_id: Optional[str] = None
    provider_id: Optional[str] = None
    extras: Dict[str, ExtraValue] = Field(default_factory=dict)

    @field_validator("extras")
    @classmethod
    def check_extras(cls, value: Dict[str, ExtraValue]) -> Dict[str, ExtraValue]:
        return _validate_extras(value)

    @property
    def identity_key(self) -> IdentityKey:
        """(patient id, lower-cased segment, date of service, position)."""
        return (self.patient_id, self.segment.lower(), self.date_of_service, self.position)


class ExtractionJob(BaseModel):
    """Mutable state of one extraction run. Snapshots are deep copies."""
    job_id: str
    owner_id: str
    status: JobStatus = JobStatus.IDLE
    stage: Optional[JobStage] = None
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    processed_notes: int = 0
    total_notes: int = 0
    message: str = ""
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    reset_at: Optional[datetime] = Field(default=None, description="Set by an operator reset; the job awaits a fresh start")
    boost_applied: bool = False
    worker_count: int = 0
    force_refresh: bool = False
    partial: bool = Field(default=False, description="Force-completed with partial data")
    mentions_written: int = 0
    duplicates_removed: int = 0
    patient_scope: Optional[List[str]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def seconds_since_update(self, now: datetime) -> float:
        reference = self.updated_at or self.started_at
        if reference is None:
            return 0.0
        return (now - reference).total_seconds()


class CategoryCount(BaseModel):
    """One aggregated row for dashboards."""
    category: str
    family: ProblemFlag
    count: int
    percentage: float


class StartResult(BaseModel):
    """Returned by start_extraction."""
    job_id: str
    status: JobStatus
    progress: float
    existing: bool = False
