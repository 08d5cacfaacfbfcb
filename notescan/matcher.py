"""
Matcher for symptom/HRSN pattern mentions.

Case-insensitive literal phrase search over one note's text. Every
occurrence of every pattern yields its own mention candidate carrying the
character offset of the match; repeated phrases are an intensity signal
and are never collapsed here.
"""
import hashlib
import re
from typing import List, Optional, Sequence, Tuple

from notescan.types.models import Mention, Note, SymptomPattern
from notescan.utils import get_logger

logger = get_logger("Matcher")

DEFAULT_MIN_NOTE_CHARS = 3


def mention_id_for(note: Note, pattern: SymptomPattern, position: int) -> str:
    """Stable id so repeated runs over the same notes produce the same mentions."""
    content = "|".join([
        note.note_id or "",
        note.patient_id,
        note.date_of_service.isoformat(),
        pattern.pattern_id,
        pattern.segment.lower(),
        str(position),
    ])
    return hashlib.md5(content.encode()).hexdigest()


class Matcher:
    """
    Scans notes against a fixed pattern set.

    Patterns are compiled once; `match` is safe to call from many threads.
    """

    def __init__(self, patterns: Sequence[SymptomPattern], min_note_chars: Optional[int] = None):
        """
        Args:
            patterns: Pattern library for this run (read-only)
            min_note_chars: Notes shorter than this yield nothing
        """
        if min_note_chars is None:
            from notescan.config import settings
            min_note_chars = settings.MIN_NOTE_CHARS
        self.patterns = list(patterns)
        self.min_note_chars = min_note_chars

        # (pattern, [(lowered term, compiled regex), ...])
        self._compiled: List[Tuple[SymptomPattern, List[Tuple[str, re.Pattern]]]] = []
        for pattern in self.patterns:
            terms = []
            for term in pattern.search_terms:
                term = term.strip()
                if term:
                    terms.append((term.lower(), re.compile(re.escape(term), re.IGNORECASE)))
            if terms:
                # longest first, so a keyword nested in a longer one is seen as covered
                terms.sort(key=lambda t: len(t[0]), reverse=True)
                self._compiled.append((pattern, terms))

    def match(
        self,
        note: Note,
        job_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> List[Mention]:
        """
        Find every occurrence of every pattern in one note.

        Args:
            note: Note to scan
            job_id: Provenance stamped on each mention
            owner_id: Owner stamped on each mention

        Returns:
            Mention candidates ordered by pattern, then position
        """
        text = note.text or ""
        if len(text.strip()) < self.min_note_chars:
            return []

        lowered = text.lower()
        candidates: List[Mention] = []

        for pattern, terms in self._compiled:
            spans: List[Tuple[int, int]] = []
            for term_lower, regex in terms:
                if term_lower not in lowered:
                    continue
                for found in regex.finditer(text):
                    start, end = found.span()
                    if any(s <= start and end <= e for s, e in spans):
                        continue
                    spans.append((start, end))

            for position, _ in sorted(spans):
                candidates.append(Mention(
                    mention_id=mention_id_for(note, pattern, position),
                    patient_id=note.patient_id,
                    date_of_service=note.date_of_service,
                    segment=pattern.segment,
                    symptom_id=pattern.symptom_id,
                    diagnosis=pattern.diagnosis,
                    diagnostic_category=pattern.diagnostic_category,
                    problem_flag=pattern.problem_flag,
                    position=position,
                    job_id=job_id,
                    owner_id=owner_id,
                    provider_id=note.provider_id,
                    extras=dict(pattern.extras),
                ))

        if candidates:
            logger.debug(f"Note {note.note_id or note.patient_id}: {len(candidates)} candidates")
        return candidates


def match(note: Note, patterns: Sequence[SymptomPattern], **kwargs) -> List[Mention]:
    """One-shot helper: compile `patterns` and scan a single note."""
    return Matcher(patterns).match(note, **kwargs)
