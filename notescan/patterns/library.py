"""
Pattern Library - symptom/HRSN pattern set loader.

Loads the curated pattern table (delimited text or spreadsheet) into
SymptomPattern records. Header names from heterogeneous upstream exports
are normalized (BOM and zero-width characters removed, camelCase split,
case unified) before alias lookup.
"""

import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd

from notescan.constants import (
    COLUMN_ALIASES,
    KEYWORD_SEPARATORS,
    MAX_EXTRA_FIELDS,
    PROBLEM_FLAG_VALUES,
    REQUIRED_COLUMNS,
)
from notescan.errors import LibraryLoadError
from notescan.types.enums import ProblemFlag
from notescan.types.models import SymptomPattern
from notescan.utils import get_logger

logger = get_logger("PatternLibrary")

# BOM, zero-width space/joiners, word joiner, soft hyphen
_INVISIBLE_RE = re.compile("[\ufeff\u200b\u200c\u200d\u2060\u00ad]")
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SEPARATOR_RE = re.compile(r"[^a-z0-9]+")

DELIMITED_SUFFIXES = {".csv": ",", ".tsv": "\t", ".txt": None}
SPREADSHEET_SUFFIXES = {".xlsx", ".xls"}

SourceType = Union[str, Path, Sequence[Union[str, Path]], None]


def clean_text(value) -> str:
    """Strip invisible characters and surrounding whitespace from a cell."""
    if value is None:
        return ""
    if isinstance(value, float) and value != value:  # NaN
        return ""
    return _INVISIBLE_RE.sub("", str(value)).replace("\u00a0", " ").strip()


def normalize_header(name) -> str:
    """
    Normalize a column header for alias lookup.

    '\\ufeffdiagnosticCategory' -> 'diagnostic_category'
    'Symptom Segment'          -> 'symptom_segment'
    'ZCode/HRSN'               -> 'zcode_hrsn'
    """
    text = clean_text(name)
    text = _CAMEL_RE.sub("_", text)
    return _SEPARATOR_RE.sub("_", text.lower()).strip("_")


def parse_problem_flag(values: Iterable[str]) -> ProblemFlag:
    """A row is HRSN if any of its flag columns says so."""
    for value in values:
        if clean_text(value).lower() in PROBLEM_FLAG_VALUES:
            return ProblemFlag.PROBLEM
    return ProblemFlag.SYMPTOM


def split_keywords(value: str) -> tuple:
    return tuple(k.strip() for k in re.split(KEYWORD_SEPARATORS, value) if k.strip())


class PatternLibrary:
    """
    Loads the matching pattern set from a tabular source.

    When no explicit source is given, candidate locations are tried in
    order and the first existing file is used.
    """

    def __init__(self, candidate_paths: Optional[Sequence[Union[str, Path]]] = None):
        """
        Args:
            candidate_paths: Ordered fallback locations (defaults to settings)
        """
        if candidate_paths is None:
            from notescan.config import settings
            candidate_paths = settings.PATTERN_LIBRARY_PATHS
        self.candidate_paths = [Path(p) for p in candidate_paths]

    def resolve(self, source: SourceType = None) -> Path:
        """Return the first candidate path that exists."""
        if source is None:
            candidates = self.candidate_paths
        elif isinstance(source, (str, Path)):
            candidates = [Path(source)]
        else:
            candidates = [Path(p) for p in source]

        for path in candidates:
            if path.is_file():
                logger.info(f"Using pattern library: {path}")
                return path
            logger.debug(f"Pattern library candidate not found: {path}")

        searched = ", ".join(str(p) for p in candidates) or "<none>"
        raise LibraryLoadError(f"Pattern library not found (searched: {searched})")

    def load(self, source: SourceType = None) -> List[SymptomPattern]:
        """
        Load and normalize the pattern set.

        Args:
            source: File path, ordered list of candidate paths, or None for defaults

        Returns:
            Ordered list of SymptomPattern

        Raises:
            LibraryLoadError: source missing, unreadable, or lacking required columns
        """
        path = self.resolve(source)
        frame = self._read_table(path)
        patterns = self.from_frame(frame, source_name=str(path))
        logger.info(f"Loaded {len(patterns)} patterns from {path.name}")
        return patterns

    def _read_table(self, path: Path) -> pd.DataFrame:
        suffix = path.suffix.lower()
        try:
            if suffix in SPREADSHEET_SUFFIXES:
                return pd.read_excel(path, dtype=str, keep_default_na=False)
            if suffix in DELIMITED_SUFFIXES:
                sep = DELIMITED_SUFFIXES[suffix]
                return pd.read_csv(
                    path,
                    sep=sep,
                    dtype=str,
                    keep_default_na=False,
                    engine="python" if sep is None else "c",
                    encoding="utf-8",
                )
        except (OSError, ValueError, pd.errors.ParserError) as e:
            raise LibraryLoadError(f"Failed to read pattern library {path}: {e}", source=str(path)) from e
        raise LibraryLoadError(f"Unsupported pattern library format: {path.suffix}", source=str(path))

    def from_frame(self, frame: pd.DataFrame, source_name: str = "<frame>") -> List[SymptomPattern]:
        """Build patterns from an already-read table."""
        column_map = self._map_columns(frame.columns)
        present = set(column_map.values())
        missing = [c for c in REQUIRED_COLUMNS if c not in present]
        if missing:
            raise LibraryLoadError(
                f"Pattern library {source_name} is missing required columns: {', '.join(missing)}",
                source=source_name,
            )

        flag_columns = [raw for raw, canon in column_map.items() if canon == "problem_flag"]
        first_of = {}
        for raw, canon in column_map.items():
            first_of.setdefault(canon, raw)
        extra_columns = [c for c in frame.columns if c not in column_map]
        if len(extra_columns) > MAX_EXTRA_FIELDS:
            logger.warning(
                f"{len(extra_columns)} extra columns in {source_name}; "
                f"only the first {MAX_EXTRA_FIELDS} are carried through"
            )
            extra_columns = extra_columns[:MAX_EXTRA_FIELDS]

        patterns: List[SymptomPattern] = []
        seen = set()
        skipped_blank = 0
        skipped_dupes = 0

        for row_number, row in enumerate(frame.to_dict(orient="records"), start=1):
            segment = clean_text(row.get(first_of["segment"]))
            if not segment:
                skipped_blank += 1
                continue

            symptom_id = clean_text(row.get(first_of["symptom_id"]))
            diagnosis = clean_text(row.get(first_of["diagnosis"]))
            category = clean_text(row.get(first_of["diagnostic_category"]))

            row_key = (symptom_id, segment, diagnosis, category)
            if row_key in seen:
                skipped_dupes += 1
                continue
            seen.add(row_key)

            pattern_id = clean_text(row.get(first_of["pattern_id"])) if "pattern_id" in first_of else ""
            keywords = split_keywords(clean_text(row.get(first_of["keywords"]))) if "keywords" in first_of else ()
            extras = {
                normalize_header(col): clean_text(row.get(col))
                for col in extra_columns
                if clean_text(row.get(col))
            }

            patterns.append(SymptomPattern(
                pattern_id=pattern_id or f"P{row_number:05d}",
                segment=segment,
                diagnosis=diagnosis,
                diagnostic_category=category,
                symptom_id=symptom_id,
                problem_flag=parse_problem_flag(row.get(c) for c in flag_columns),
                keywords=keywords,
                extras=extras,
            ))

        if skipped_blank:
            logger.warning(f"Skipped {skipped_blank} library rows with no segment text")
        if skipped_dupes:
            logger.info(f"Dropped {skipped_dupes} duplicate library rows")
        return patterns

    @staticmethod
    def _map_columns(columns: Iterable) -> Dict[str, str]:
        """Raw column -> canonical column for every recognized header."""
        mapping = {}
        for raw in columns:
            canonical = COLUMN_ALIASES.get(normalize_header(raw))
            if canonical:
                mapping[raw] = canonical
        return mapping
