"""
Tests for JobOrchestrator: lifecycle, progress bands, failures and operator controls.
"""
import threading
from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

from notescan.batch.scheduler import ChunkScheduler
from notescan.batch.writer import BatchWriter
from notescan.errors import JobControlError, JobNotFoundError, LibraryLoadError, PersistenceError
from notescan.jobs.broadcaster import ProgressBroadcaster
from notescan.jobs.orchestrator import JobOrchestrator
from notescan.storage import InMemoryMentionStore, InMemoryNoteStore, JobStateStore, NoteSelector
from notescan.types.enums import JobStage, JobStatus
from notescan.types.models import Note, SymptomPattern
from notescan.utils import utcnow

WAIT = 10

PATTERNS = [
    SymptomPattern(pattern_id="P1", segment="anxiety", diagnostic_category="Mental Health", symptom_id="S1"),
    SymptomPattern(pattern_id="P2", segment="cough", diagnostic_category="Respiratory", symptom_id="S2"),
]


def make_notes(count):
    return [
        Note(
            note_id=f"n{i}",
            patient_id=f"pt-{i % 10}",
            date_of_service=date(2024, 1, 1) + timedelta(days=i),
            text="patient reports anxiety. anxiety worsened at night. mild cough.",
        )
        for i in range(count)
    ]


class GatedNoteStore(InMemoryNoteStore):
    """Note store whose fetch blocks until released, to hold a job in_progress."""

    def __init__(self, notes):
        super().__init__({"clinic-1": notes})
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_notes(self, owner_id, selector=None):
        self.entered.set()
        self.release.wait(WAIT)
        return super().fetch_notes(owner_id, selector)


@pytest.fixture
def library():
    lib = MagicMock()
    lib.load.return_value = PATTERNS
    return lib


@pytest.fixture
def mention_store():
    return InMemoryMentionStore()


def build(note_store, mention_store, library, **kwargs):
    return JobOrchestrator(
        note_store=note_store,
        mention_store=mention_store,
        pattern_library=library,
        broadcaster=kwargs.pop("broadcaster", ProgressBroadcaster(queue_size=10000)),
        writer=kwargs.pop("writer", BatchWriter(mention_store, batch_size=50, pause_seconds=0)),
        scheduler_factory=lambda: ChunkScheduler(max_workers=16, progress_every=1),
        workers=4,
        boost_workers=8,
        **kwargs,
    )


def drain(subscription):
    snapshots = []
    while True:
        snapshot = subscription.get(timeout=0.1)
        if snapshot is None:
            return snapshots
        snapshots.append(snapshot)


def test_full_run_completes_with_all_mentions(library, mention_store):
    orchestrator = build(InMemoryNoteStore({"clinic-1": make_notes(10)}), mention_store, library)

    result = orchestrator.start_extraction("clinic-1")
    job = orchestrator.wait(result.job_id, timeout=WAIT)

    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    # two anxiety occurrences and one cough per note, none collapsed
    assert job.mentions_written == 30
    assert job.duplicates_removed == 0
    assert job.total_notes == 10
    assert mention_store.count("clinic-1") == 30
    assert not job.partial


def test_progress_bands_for_100_notes_and_4_workers(library, mention_store):
    orchestrator = build(InMemoryNoteStore({"clinic-1": make_notes(100)}), mention_store, library)
    subscription = orchestrator.subscribe("clinic-1")

    result = orchestrator.start_extraction("clinic-1")
    orchestrator.wait(result.job_id, timeout=WAIT)
    snapshots = drain(subscription)

    progress = [s.progress for s in snapshots]
    assert progress == sorted(progress)
    for snapshot in snapshots:
        if snapshot.stage != JobStage.PERSISTING:
            assert snapshot.progress < 90
        else:
            assert snapshot.progress >= 90
    assert [s.progress for s in snapshots if s.progress == 100] == [100]
    assert snapshots[-1].status == JobStatus.COMPLETED
    assert any(s.stage == JobStage.EXTRACTING and 10 <= s.progress < 90 for s in snapshots)


def test_second_start_returns_existing_job(library, mention_store):
    notes = GatedNoteStore(make_notes(5))
    orchestrator = build(notes, mention_store, library)

    first = orchestrator.start_extraction("clinic-1")
    assert notes.entered.wait(WAIT)
    second = orchestrator.start_extraction("clinic-1")

    assert second.existing
    assert second.job_id == first.job_id
    assert second.status == JobStatus.IN_PROGRESS
    assert second.progress == orchestrator.get_status(first.job_id).progress

    notes.release.set()
    assert orchestrator.wait(first.job_id, timeout=WAIT).status == JobStatus.COMPLETED


def test_other_owner_runs_independently(library, mention_store):
    notes = InMemoryNoteStore({"clinic-1": make_notes(3), "clinic-2": make_notes(4)})
    orchestrator = build(notes, mention_store, library)

    a = orchestrator.start_extraction("clinic-1")
    b = orchestrator.start_extraction("clinic-2")

    assert a.job_id != b.job_id
    assert orchestrator.wait(a.job_id, timeout=WAIT).mentions_written == 9
    assert orchestrator.wait(b.job_id, timeout=WAIT).mentions_written == 12


def test_library_load_error_fails_job(library, mention_store):
    library.load.side_effect = LibraryLoadError("Pattern library not found")
    orchestrator = build(InMemoryNoteStore({"clinic-1": make_notes(3)}), mention_store, library)

    job = orchestrator.wait(orchestrator.start_extraction("clinic-1").job_id, timeout=WAIT)

    assert job.status == JobStatus.FAILED
    assert "LibraryLoadError" in job.error
    assert job.stage == JobStage.LOADING_PATTERNS
    assert job.progress == 5


def test_note_retrieval_error_fails_job(library, mention_store):
    notes = MagicMock()
    notes.fetch_notes.side_effect = ConnectionError("store offline")
    orchestrator = build(notes, mention_store, library)

    job = orchestrator.wait(orchestrator.start_extraction("clinic-1").job_id, timeout=WAIT)

    assert job.status == JobStatus.FAILED
    assert "NoteRetrievalError" in job.error
    assert "store offline" in job.message


def test_persistence_error_keeps_progress_and_committed_batches(library):
    store = InMemoryMentionStore()
    real_insert = store.insert_batch
    calls = []

    def insert_batch(batch):
        calls.append(len(batch))
        if len(calls) == 2:
            raise PersistenceError("disk full")
        return real_insert(batch)

    store.insert_batch = insert_batch
    orchestrator = build(
        InMemoryNoteStore({"clinic-1": make_notes(10)}),
        store,
        library,
        writer=BatchWriter(store, batch_size=10, pause_seconds=0),
    )

    job = orchestrator.wait(orchestrator.start_extraction("clinic-1").job_id, timeout=WAIT)

    assert job.status == JobStatus.FAILED
    assert job.mentions_written == 10
    assert store.count("clinic-1") == 10
    assert 90 <= job.progress < 100


def test_post_write_verification_failure(library, mention_store):
    mention_store.count = MagicMock(return_value=0)
    orchestrator = build(InMemoryNoteStore({"clinic-1": make_notes(2)}), mention_store, library)

    job = orchestrator.wait(orchestrator.start_extraction("clinic-1").job_id, timeout=WAIT)

    assert job.status == JobStatus.FAILED
    assert "verification failed" in job.message
    assert job.progress < 100


def test_stop_freezes_progress_and_prevents_writes(library, mention_store):
    notes = GatedNoteStore(make_notes(20))
    orchestrator = build(notes, mention_store, library)
    job_id = orchestrator.start_extraction("clinic-1").job_id
    assert notes.entered.wait(WAIT)

    stopped = orchestrator.stop(job_id)
    notes.release.set()
    final = orchestrator.wait(job_id, timeout=WAIT)

    assert stopped.status == JobStatus.STOPPED
    assert final.status == JobStatus.STOPPED
    assert final.progress == stopped.progress < 100
    assert mention_store.count("clinic-1") == 0

    with pytest.raises(JobControlError):
        orchestrator.stop(job_id)


def test_boost_once_while_in_progress(library, mention_store):
    notes = GatedNoteStore(make_notes(20))
    orchestrator = build(notes, mention_store, library)
    job_id = orchestrator.start_extraction("clinic-1").job_id
    assert notes.entered.wait(WAIT)

    boosted = orchestrator.boost(job_id)
    assert boosted.boost_applied
    assert boosted.worker_count == 8

    with pytest.raises(JobControlError, match="already"):
        orchestrator.boost(job_id)

    notes.release.set()
    job = orchestrator.wait(job_id, timeout=WAIT)
    assert job.status == JobStatus.COMPLETED
    assert job.mentions_written == 60

    with pytest.raises(JobControlError):
        orchestrator.boost(job_id)


def test_start_with_boost(library, mention_store):
    orchestrator = build(InMemoryNoteStore({"clinic-1": make_notes(20)}), mention_store, library)
    job = orchestrator.wait(orchestrator.start_extraction("clinic-1", boost=True).job_id, timeout=WAIT)

    assert job.boost_applied
    assert job.worker_count == 8


def test_force_complete_marks_partial(library, mention_store):
    notes = GatedNoteStore(make_notes(5))
    orchestrator = build(notes, mention_store, library)
    job_id = orchestrator.start_extraction("clinic-1").job_id
    assert notes.entered.wait(WAIT)

    job = orchestrator.force_complete(job_id)
    notes.release.set()
    final = orchestrator.wait(job_id, timeout=WAIT)

    assert job.status == JobStatus.COMPLETED
    assert job.partial
    assert final.partial
    assert final.progress < 100
    assert final.mentions_written == 0

    with pytest.raises(JobControlError):
        orchestrator.force_complete(job_id)


def test_reset_then_fresh_start(library, mention_store):
    orchestrator = build(InMemoryNoteStore({"clinic-1": make_notes(4)}), mention_store, library)
    job_id = orchestrator.start_extraction("clinic-1").job_id
    orchestrator.wait(job_id, timeout=WAIT)

    reset = orchestrator.reset(job_id)
    assert reset.status == JobStatus.PENDING
    assert reset.progress == 0

    again = orchestrator.start_extraction("clinic-1", force_refresh=True)
    assert not again.existing
    assert again.job_id != job_id
    job = orchestrator.wait(again.job_id, timeout=WAIT)
    assert job.status == JobStatus.COMPLETED
    assert mention_store.count("clinic-1") == 12


def test_repeated_runs_are_deterministic(library):
    def run_once():
        store = InMemoryMentionStore()
        orchestrator = build(InMemoryNoteStore({"clinic-1": make_notes(30)}), store, library)
        orchestrator.wait(orchestrator.start_extraction("clinic-1").job_id, timeout=WAIT)
        return sorted((m.mention_id, m.patient_id, m.position) for m in store.list_mentions("clinic-1"))

    assert run_once() == run_once()


def test_rerun_without_force_refresh_adds_nothing(library, mention_store):
    orchestrator = build(InMemoryNoteStore({"clinic-1": make_notes(5)}), mention_store, library)
    orchestrator.wait(orchestrator.start_extraction("clinic-1").job_id, timeout=WAIT)
    job = orchestrator.wait(orchestrator.start_extraction("clinic-1").job_id, timeout=WAIT)

    assert job.status == JobStatus.COMPLETED
    assert mention_store.count("clinic-1") == 15


def test_restart_stalled_is_idempotent(library, mention_store):
    notes = GatedNoteStore(make_notes(6))
    notes.release.set()
    orchestrator = build(notes, mention_store, library, stall_threshold_seconds=60)

    first = orchestrator.start_extraction("clinic-1", selector=NoteSelector(patient_ids=["pt-1", "pt-2", "pt-3"]))
    orchestrator.wait(first.job_id, timeout=WAIT)
    clean_count = mention_store.count("clinic-1")
    assert clean_count == 9

    notes.release.clear()
    notes.entered.clear()
    stuck = orchestrator.start_extraction("clinic-1", selector=NoteSelector(patient_ids=["pt-1", "pt-2", "pt-3"]))
    assert notes.entered.wait(WAIT)

    assert orchestrator.find_stalled() == []
    stalled = orchestrator.find_stalled(now=utcnow() + timedelta(seconds=61))
    assert [j.job_id for j in stalled] == [stuck.job_id]

    notes.release.set()
    restarted = orchestrator.restart_stalled(stuck.job_id)
    job = orchestrator.wait(restarted.job_id, timeout=WAIT)

    assert restarted.job_id != stuck.job_id
    assert job.status == JobStatus.COMPLETED
    assert job.force_refresh
    assert mention_store.count("clinic-1") == clean_count
    assert orchestrator.get_status(stuck.job_id).status == JobStatus.PENDING


def test_subscriber_joining_mid_run_gets_current_state(library, mention_store):
    notes = GatedNoteStore(make_notes(3))
    orchestrator = build(notes, mention_store, library)
    job_id = orchestrator.start_extraction("clinic-1").job_id
    assert notes.entered.wait(WAIT)

    subscription = orchestrator.subscribe("clinic-1")
    first = subscription.get(timeout=1)

    assert first.job_id == job_id
    assert first.status == JobStatus.IN_PROGRESS
    notes.release.set()
    orchestrator.wait(job_id, timeout=WAIT)


def test_unknown_job(library, mention_store):
    orchestrator = build(InMemoryNoteStore(), mention_store, library)
    with pytest.raises(JobNotFoundError):
        orchestrator.get_status("nope")
    with pytest.raises(JobNotFoundError):
        orchestrator.boost("nope")
    assert orchestrator.get_owner_status("clinic-1") is None


def test_snapshots_persisted_and_recovered(tmp_path, library, mention_store):
    state_store = JobStateStore(tmp_path / "jobs")
    orchestrator = build(InMemoryNoteStore({"clinic-1": make_notes(2)}), mention_store, library,
                         state_store=state_store)
    job_id = orchestrator.start_extraction("clinic-1").job_id
    orchestrator.wait(job_id, timeout=WAIT)

    assert state_store.load(job_id).status == JobStatus.COMPLETED

    # a fresh orchestrator (new process) still answers for the old job
    later = build(InMemoryNoteStore(), mention_store, library, state_store=state_store)
    assert later.get_status(job_id).mentions_written == 6
    assert later.get_owner_status("clinic-1").job_id == job_id


def test_shutdown_stops_running_jobs(library, mention_store):
    notes = GatedNoteStore(make_notes(3))
    orchestrator = build(notes, mention_store, library)
    job_id = orchestrator.start_extraction("clinic-1").job_id
    assert notes.entered.wait(WAIT)

    notes.release.set()
    orchestrator.shutdown()

    assert orchestrator.get_status(job_id).is_terminal


@pytest.mark.parametrize("selector", [
    NoteSelector(date_to=date(2024, 1, 3)),
    NoteSelector(date_from=date(2024, 1, 8)),
    NoteSelector(limit=2),
])
def test_force_refresh_only_clears_reprocessed_notes(library, mention_store, selector):
    orchestrator = build(InMemoryNoteStore({"clinic-1": make_notes(10)}), mention_store, library)
    orchestrator.wait(orchestrator.start_extraction("clinic-1").job_id, timeout=WAIT)
    assert mention_store.count("clinic-1") == 30

    job = orchestrator.wait(
        orchestrator.start_extraction("clinic-1", selector=selector, force_refresh=True).job_id,
        timeout=WAIT,
    )

    assert job.status == JobStatus.COMPLETED
    assert job.mentions_written == 3 * job.total_notes
    assert mention_store.count("clinic-1") == 30


def test_force_refresh_by_patient_clears_that_patient(library, mention_store):
    orchestrator = build(InMemoryNoteStore({"clinic-1": make_notes(20)}), mention_store, library)
    orchestrator.wait(orchestrator.start_extraction("clinic-1").job_id, timeout=WAIT)

    job = orchestrator.wait(
        orchestrator.start_extraction(
            "clinic-1", selector=NoteSelector(patient_ids=["pt-1"]), force_refresh=True
        ).job_id,
        timeout=WAIT,
    )

    # pt-1 has two notes; their six mentions are rewritten by the new job
    assert job.mentions_written == 6
    assert mention_store.count("clinic-1") == 60
    assert mention_store.count("clinic-1", job_id=job.job_id) == 6


def test_reset_job_survives_restart_recovery(tmp_path, library, mention_store):
    state_store = JobStateStore(tmp_path / "jobs")
    orchestrator = build(InMemoryNoteStore({"clinic-1": make_notes(2)}), mention_store, library,
                         state_store=state_store)
    job_id = orchestrator.start_extraction("clinic-1").job_id
    orchestrator.wait(job_id, timeout=WAIT)
    reset = orchestrator.reset(job_id)

    assert reset.reset_at is not None
    assert "Reset" in reset.message

    later = build(InMemoryNoteStore(), mention_store, library, state_store=state_store)
    job = later.get_owner_status("clinic-1")
    assert job.status == JobStatus.PENDING
    assert job.message == reset.message
    assert job.error is None
