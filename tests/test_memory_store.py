from datetime import date

from notescan.storage import InMemoryMentionStore, InMemoryNoteStore, NoteSelector
from notescan.types.models import Mention, Note


def test_note_store_selector():
    notes = [
        Note(patient_id="pt-1", date_of_service=date(2024, 1, 1), text="a"),
        Note(patient_id="pt-2", date_of_service=date(2024, 1, 2), text="b"),
        Note(patient_id="pt-1", date_of_service=date(2024, 1, 3), text="c"),
    ]
    store = InMemoryNoteStore({"clinic-1": notes})

    assert store.fetch_notes("clinic-1") == notes
    assert store.fetch_notes("unknown") == []
    assert [n.text for n in store.fetch_notes("clinic-1", NoteSelector(patient_ids=["pt-1"], limit=1))] == ["a"]
    assert store.count_notes("clinic-1", NoteSelector(date_from=date(2024, 1, 2))) == 2


def test_mention_store_identity_and_scope():
    store = InMemoryMentionStore()

    def mention(mention_id, patient_id, position, job_id="job-1"):
        return Mention(
            mention_id=mention_id,
            patient_id=patient_id,
            date_of_service=date(2024, 1, 1),
            segment="cough",
            position=position,
            owner_id="clinic-1",
            job_id=job_id,
        )

    assert store.insert_batch([mention("a", "pt-1", 0), mention("b", "pt-1", 9), mention("c", "pt-2", 0)]) == 3
    assert store.insert_batch([mention("d", "pt-1", 0, job_id="job-2")]) == 0
    assert store.count("clinic-1", job_id="job-1") == 3
    assert store.delete_for_scope("clinic-1", ["pt-1"]) == 2
    assert store.count("clinic-1") == 1


def test_mention_store_delete_for_notes():
    store = InMemoryMentionStore()
    store.insert_batch([
        Mention(mention_id=f"m{day}", patient_id="pt-1", date_of_service=date(2024, 1, day),
                segment="cough", position=0, owner_id="clinic-1")
        for day in (1, 2, 3)
    ])

    notes = [Note(patient_id="pt-1", date_of_service=date(2024, 1, d), text="x") for d in (1, 3)]
    assert store.delete_for_notes("clinic-1", notes) == 2
    assert [m.mention_id for m in store.list_mentions("clinic-1")] == ["m2"]
    assert store.delete_for_notes("clinic-9", notes) == 0
