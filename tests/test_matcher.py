"""
Tests for the Matcher: occurrences, offsets and inherited fields.
"""
from datetime import date
from unittest.mock import patch

import pytest

from notescan.matcher import Matcher, match, mention_id_for
from notescan.types.enums import ProblemFlag
from notescan.types.models import Note, SymptomPattern


@pytest.fixture
def anxiety():
    return SymptomPattern(
        pattern_id="P1",
        segment="anxiety",
        diagnosis="Generalized anxiety disorder",
        diagnostic_category="Mental Health",
        symptom_id="S001",
        extras={"diagnosis_icd10_code": "F41.1"},
    )


@pytest.fixture
def insomnia():
    return SymptomPattern(
        pattern_id="P2",
        segment="insomnia",
        diagnosis="Insomnia",
        diagnostic_category="Sleep",
        symptom_id="S002",
    )


def _note(text, patient_id="pt-1"):
    return Note(note_id="n1", patient_id=patient_id, date_of_service=date(2024, 3, 1), text=text)


def test_repeated_phrase_yields_one_mention_per_occurrence(anxiety):
    note = _note("patient reports anxiety. anxiety worsened at night.")

    mentions = match(note, [anxiety])

    assert len(mentions) == 2
    assert [m.position for m in mentions] == [16, 25]
    assert len({m.identity_key for m in mentions}) == 2


def test_match_is_case_insensitive(anxiety):
    mentions = match(_note("ANXIETY noted; Anxiety persists"), [anxiety])
    assert [m.position for m in mentions] == [0, 15]
    assert all(m.segment == "anxiety" for m in mentions)


def test_mention_inherits_pattern_fields(anxiety):
    [m] = Matcher([anxiety]).match(_note("mild anxiety"), job_id="job-1", owner_id="clinic-1")

    assert m.patient_id == "pt-1"
    assert m.date_of_service == date(2024, 3, 1)
    assert m.symptom_id == "S001"
    assert m.diagnosis == "Generalized anxiety disorder"
    assert m.diagnostic_category == "Mental Health"
    assert m.problem_flag == ProblemFlag.SYMPTOM
    assert m.job_id == "job-1"
    assert m.owner_id == "clinic-1"
    assert m.extras == {"diagnosis_icd10_code": "F41.1"}


def test_patterns_match_independently(anxiety, insomnia):
    mentions = match(_note("anxiety with insomnia and more anxiety"), [anxiety, insomnia])

    assert sorted((m.segment, m.position) for m in mentions) == [
        ("anxiety", 0), ("anxiety", 31), ("insomnia", 13),
    ]


@pytest.mark.parametrize("text", ["", "  ", "ab"])
def test_short_or_empty_note_yields_nothing(anxiety, text):
    assert match(_note(text), [anxiety]) == []


def test_no_match_returns_empty(anxiety):
    assert match(_note("no complaints today"), [anxiety]) == []


def test_keywords_are_searched_instead_of_segment():
    pattern = SymptomPattern(
        pattern_id="H1",
        segment="Food insecurity",
        diagnostic_category="Food",
        problem_flag=ProblemFlag.PROBLEM,
        keywords=("no food", "skipping meals"),
    )
    mentions = match(_note("reports no food at home, skipping meals"), [pattern])

    assert [m.position for m in mentions] == [8, 25]
    assert all(m.segment == "Food insecurity" for m in mentions)
    assert all(m.problem_flag == ProblemFlag.PROBLEM for m in mentions)


def test_regex_metacharacters_are_literal():
    pattern = SymptomPattern(pattern_id="P9", segment="pain (chest)")
    assert len(match(_note("has pain (chest) today"), [pattern])) == 1
    assert match(_note("has pain chest today"), [pattern]) == []


def test_matching_is_deterministic(anxiety, insomnia):
    note = _note("anxiety, insomnia, anxiety")
    first = match(note, [anxiety, insomnia])
    second = match(note, [anxiety, insomnia])

    assert [m.model_dump() for m in first] == [m.model_dump() for m in second]
    assert first[0].mention_id == mention_id_for(note, anxiety, 0)


def test_min_note_chars_from_settings(anxiety):
    with patch("notescan.config.settings.MIN_NOTE_CHARS", 50):
        matcher = Matcher([anxiety])
    assert matcher.match(_note("anxiety")) == []


def test_nested_keywords_count_once_per_phrase():
    pattern = SymptomPattern(pattern_id="P3", segment="chest pain", keywords=("pain", "chest pain"))

    mentions = match(_note("chest pain at rest; pain in the back"), [pattern])

    # "pain" inside "chest pain" is the same phrase; the later standalone "pain" is not
    assert [m.position for m in mentions] == [0, 20]
    assert len({m.identity_key for m in mentions}) == 2
