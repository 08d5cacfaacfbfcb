"""
Tests for notescan enums.
"""


def test_job_status_values():
    from notescan.types.enums import JobStatus

    assert [s.value for s in JobStatus] == [
        "idle", "pending", "in_progress", "completed", "failed", "stopped",
    ]


def test_terminal_and_active_sets_are_disjoint():
    from notescan.types.enums import ACTIVE_STATUSES, TERMINAL_STATUSES, JobStatus

    assert not ACTIVE_STATUSES & TERMINAL_STATUSES
    assert JobStatus.IDLE not in ACTIVE_STATUSES | TERMINAL_STATUSES


def test_enums_are_strings():
    from notescan.types.enums import CountMode, ProblemFlag

    assert ProblemFlag("problem") == ProblemFlag.PROBLEM
    assert CountMode.UNIQUE_PATIENTS == "unique_patients"
