"""
Algorithm constants for notescan.

These are domain-specific values that rarely change.
Separate from config.py which contains runtime/tunable parameters.
"""

# === Job Progress Bands (percent) ===
PROGRESS_LOADING = 5
PROGRESS_EXTRACT_START = 10
PROGRESS_EXTRACT_END = 90
PROGRESS_PERSIST_END = 99
PROGRESS_COMPLETE = 100

# === Pattern Library ===
REQUIRED_COLUMNS = (
    "segment",
    "diagnosis",
    "diagnostic_category",
    "symptom_id",
    "problem_flag",
)

# Normalized header -> canonical column
COLUMN_ALIASES = {
    "symptom_segment": "segment",
    "segment": "segment",
    "symptom_text": "segment",
    "diagnosis": "diagnosis",
    "diagnostic_category": "diagnostic_category",
    "category": "diagnostic_category",
    "symptom_id": "symptom_id",
    "symptom_code": "symptom_id",
    "symp_prob": "problem_flag",
    "symptom_problem": "problem_flag",
    "problem_flag": "problem_flag",
    "z_code_hrsn": "problem_flag",
    "zcode_hrsn": "problem_flag",
    "keywords": "keywords",
    "keyword": "keywords",
    "pattern_id": "pattern_id",
    "id": "pattern_id",
}

# Library values that mark a row as a health-related social need
PROBLEM_FLAG_VALUES = {"problem", "hrsn", "zcode/hrsn", "z_code/hrsn", "zcode", "yes"}

KEYWORD_SEPARATORS = r"[;|]"

# === Mentions ===
MAX_EXTRA_FIELDS = 16
