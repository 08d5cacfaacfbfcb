"""
Job orchestrator: the extraction job state machine.

idle -> pending -> in_progress{loading_patterns | extracting | persisting}
     -> completed | failed | stopped

Each job runs on its own background thread; callers get a job id back
immediately and follow the job through get_status or subscribe. One job
per owner may be active at a time.
"""
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from notescan.batch.scheduler import ChunkScheduler
from notescan.batch.writer import BatchWriter
from notescan.constants import (
    PROGRESS_COMPLETE,
    PROGRESS_EXTRACT_END,
    PROGRESS_EXTRACT_START,
    PROGRESS_LOADING,
    PROGRESS_PERSIST_END,
)
from notescan.dedup import Deduplicator
from notescan.errors import (
    FATAL_JOB_ERRORS,
    JobControlError,
    JobNotFoundError,
    NoteRetrievalError,
    PersistenceError,
)
from notescan.patterns.library import PatternLibrary
from notescan.storage.interfaces import MentionStore, NoteSelector, NoteStore
from notescan.types.enums import JobStage, JobStatus
from notescan.types.models import ExtractionJob, StartResult
from notescan.utils import get_logger, utcnow

from .broadcaster import ProgressBroadcaster, Subscription

logger = get_logger("JobOrchestrator")

JOIN_TIMEOUT_SECONDS = 10.0
RESET_MESSAGE = "Reset by operator; start a new extraction to rerun"


def scale_progress(fraction: float, start: float, end: float) -> float:
    fraction = min(1.0, max(0.0, fraction))
    return round(start + fraction * (end - start), 2)


@dataclass
class _JobRun:
    """Registry entry for one job. `job` is only mutated under `lock`."""
    job: ExtractionJob
    selector: NoteSelector
    scheduler: ChunkScheduler
    snapshot: ExtractionJob
    lock: threading.Lock = field(default_factory=threading.Lock)
    stop_event: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    detached: bool = False

    @property
    def is_running(self) -> bool:
        return self.thread is not None and not self.done.is_set() and not self.detached


class JobOrchestrator:
    """
    Owns extraction jobs: start, observe and control them.

    Status reads return the latest published snapshot and never wait on
    a job's writers.
    """

    def __init__(
        self,
        note_store: NoteStore,
        mention_store: MentionStore,
        library_source=None,
        pattern_library: Optional[PatternLibrary] = None,
        state_store=None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        writer: Optional[BatchWriter] = None,
        scheduler_factory: Optional[Callable[[], ChunkScheduler]] = None,
        resource_manager=None,
        workers: Optional[int] = None,
        boost_workers: Optional[int] = None,
        stall_threshold_seconds: Optional[float] = None,
        recover_interrupted: bool = True,
    ):
        """
        Args:
            note_store: Source of notes
            mention_store: Destination for mentions
            library_source: Pattern library path(s); None uses the configured candidates
            pattern_library: Loader (defaults to PatternLibrary())
            state_store: Optional JobStateStore for restart-safe snapshots
            broadcaster: Progress fan-out (one is created if omitted)
            writer: BatchWriter (defaults to one over mention_store)
            scheduler_factory: Builds a ChunkScheduler per job
            resource_manager: Optional ResourceManager for initial worker throttling
            workers: Default worker count
            boost_workers: Worker count after a boost
            stall_threshold_seconds: No-update window that marks a job stalled
            recover_interrupted: Mark jobs a previous process left active as failed
        """
        from notescan.config import settings

        self.note_store = note_store
        self.mention_store = mention_store
        self.library_source = library_source
        self.pattern_library = pattern_library or PatternLibrary()
        self.state_store = state_store
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.writer = writer or BatchWriter(mention_store)
        self.resource_manager = resource_manager
        self.scheduler_factory = scheduler_factory or (
            lambda: ChunkScheduler(resource_manager=self.resource_manager)
        )
        self.workers = workers or settings.WORKERS
        self.boost_workers = max(boost_workers or settings.BOOST_WORKERS, self.workers)
        self.stall_threshold_seconds = (
            settings.STALL_THRESHOLD_SECONDS if stall_threshold_seconds is None else stall_threshold_seconds
        )

        self._lock = threading.Lock()
        self._runs: Dict[str, _JobRun] = {}
        self._owner_jobs: Dict[str, str] = {}

        if self.state_store is not None and recover_interrupted:
            for job in self.state_store.recover_interrupted():
                self.broadcaster.publish(job.owner_id, job)

    # =========================================================================
    # Control surface
    # =========================================================================

    def start_extraction(
        self,
        owner_id: str,
        selector: Optional[NoteSelector] = None,
        force_refresh: bool = False,
        boost: bool = False,
    ) -> StartResult:
        """
        Start a background extraction for an owner.

        Returns immediately. When the owner already has a running job, that
        job's id and current progress are returned instead.
        """
        selector = selector or NoteSelector()
        with self._lock:
            current = self._current_run(owner_id)
            if current is not None and current.is_running and current.snapshot.is_active:
                snapshot = current.snapshot
                logger.info(f"Owner {owner_id} already has job {snapshot.job_id} at {snapshot.progress:.0f}%")
                return StartResult(
                    job_id=snapshot.job_id,
                    status=snapshot.status,
                    progress=snapshot.progress,
                    existing=True,
                )

            now = utcnow()
            worker_count = self.boost_workers if boost else self.workers
            job = ExtractionJob(
                job_id=uuid.uuid4().hex,
                owner_id=owner_id,
                status=JobStatus.PENDING,
                progress=0.0,
                message="Queued",
                started_at=now,
                updated_at=now,
                boost_applied=boost,
                worker_count=worker_count,
                force_refresh=force_refresh,
                patient_scope=selector.patient_ids,
            )
            run = _JobRun(
                job=job,
                selector=selector,
                scheduler=self.scheduler_factory(),
                snapshot=job.model_copy(deep=True),
            )
            if current is not None:
                current.detached = True
                current.stop_event.set()
            self._runs[job.job_id] = run
            self._owner_jobs[owner_id] = job.job_id

            run.thread = threading.Thread(
                target=self._execute,
                args=(run,),
                name=f"extract-{job.job_id[:8]}",
                daemon=True,
            )

        with run.lock:
            self._publish(run)
        logger.info(
            f"Job {job.job_id} queued for owner {owner_id} "
            f"(workers={worker_count}, boost={boost}, force_refresh={force_refresh})"
        )
        run.thread.start()
        return StartResult(job_id=job.job_id, status=job.status, progress=job.progress)

    def get_status(self, job_id: str) -> ExtractionJob:
        run = self._runs.get(job_id)
        if run is not None:
            return run.snapshot
        if self.state_store is not None:
            job = self.state_store.load(job_id)
            if job is not None:
                return job
        raise JobNotFoundError(f"Unknown job {job_id}")

    def get_owner_status(self, owner_id: str) -> Optional[ExtractionJob]:
        job_id = self._owner_jobs.get(owner_id)
        if job_id is not None:
            return self.get_status(job_id)
        if self.state_store is not None:
            return self.state_store.latest_for_owner(owner_id)
        return None

    def subscribe(self, owner_id: str) -> Subscription:
        """Snapshot stream for an owner; starts with the last known snapshot."""
        return self.broadcaster.subscribe(owner_id)

    def stop(self, job_id: str) -> ExtractionJob:
        """Cooperatively stop a pending or in_progress job. Progress is frozen."""
        run = self._get_run(job_id)
        with run.lock:
            if not run.job.is_active:
                raise JobControlError(f"Job {job_id} is {run.job.status.value}; only active jobs can be stopped")
            run.stop_event.set()
            now = utcnow()
            self._apply(run, {
                "status": JobStatus.STOPPED,
                "message": f"Stopped by operator at {run.job.progress:.0f}%",
                "ended_at": now,
            }, now)
        logger.warning(f"Job {job_id} stopped at {run.snapshot.progress:.0f}%")
        return run.snapshot

    def reset(self, job_id: str) -> ExtractionJob:
        """
        Clear a job's progress and status so a fresh start is allowed.

        A running job is stopped first and its thread detached; nothing it
        does afterwards reaches the job record.
        """
        run = self._get_run(job_id)
        run.stop_event.set()
        with run.lock:
            run.detached = True
            now = utcnow()
            self._apply(run, {
                "status": JobStatus.PENDING,
                "stage": None,
                "progress": 0.0,
                "processed_notes": 0,
                "message": RESET_MESSAGE,
                "error": None,
                "ended_at": None,
                "reset_at": now,
                "partial": False,
                "mentions_written": 0,
                "duplicates_removed": 0,
            }, now, allow_decrease=True)
        if run.thread is not None and run.thread is not threading.current_thread():
            run.thread.join(timeout=JOIN_TIMEOUT_SECONDS)
        logger.info(f"Job {job_id} reset")
        return run.snapshot

    def boost(self, job_id: str) -> ExtractionJob:
        """Raise parallelism for the rest of an in_progress run. Allowed once."""
        run = self._get_run(job_id)
        with run.lock:
            if run.job.status != JobStatus.IN_PROGRESS or not run.is_running:
                raise JobControlError(f"Job {job_id} is {run.job.status.value}; boost needs an in_progress job")
            if run.job.boost_applied:
                raise JobControlError(f"Boost already applied to job {job_id}")
            effective = run.scheduler.boost(self.boost_workers)
            self._apply(run, {
                "boost_applied": True,
                "worker_count": max(run.job.worker_count, effective),
                "message": f"Boost applied: {max(run.job.worker_count, effective)} workers",
            }, utcnow())
        logger.info(f"Job {job_id} boosted to {run.snapshot.worker_count} workers")
        return run.snapshot

    def force_complete(self, job_id: str) -> ExtractionJob:
        """
        Mark a stuck in_progress job completed with whatever is already persisted.

        The job is flagged partial; progress stays where the run got to.
        """
        run = self._get_run(job_id)
        with run.lock:
            if run.job.status != JobStatus.IN_PROGRESS:
                raise JobControlError(f"Job {job_id} is {run.job.status.value}; only in_progress jobs can be force-completed")
            run.stop_event.set()
            persisted = self.mention_store.count(run.job.owner_id, run.job.job_id)
            now = utcnow()
            self._apply(run, {
                "status": JobStatus.COMPLETED,
                "partial": True,
                "mentions_written": persisted,
                "message": f"Force-completed with partial data ({persisted} mentions persisted)",
                "ended_at": now,
            }, now)
        logger.warning(f"Job {job_id} force-completed with {persisted} persisted mentions")
        return run.snapshot

    def wait(self, job_id: str, timeout: Optional[float] = None) -> ExtractionJob:
        """Block until the job's thread finishes (or timeout); return its snapshot."""
        run = self._runs.get(job_id)
        if run is not None:
            run.done.wait(timeout)
        return self.get_status(job_id)

    def find_stalled(self, now: Optional[datetime] = None) -> List[ExtractionJob]:
        """in_progress jobs with no update for longer than the stall threshold."""
        now = now or utcnow()
        stalled = []
        for run in list(self._runs.values()):
            snapshot = run.snapshot
            if snapshot.status != JobStatus.IN_PROGRESS or run.detached:
                continue
            if snapshot.seconds_since_update(now) > self.stall_threshold_seconds:
                stalled.append(snapshot)
        return stalled

    def restart_stalled(self, job_id: str) -> StartResult:
        """
        Stop, reset and start again with force refresh.

        The new run clears the owner's mentions for the same patient scope
        before persisting, so the restart never adds rows beyond a clean run.
        """
        run = self._get_run(job_id)
        owner_id = run.job.owner_id
        boost = run.job.boost_applied
        logger.warning(f"Restarting stalled job {job_id} for owner {owner_id}")
        self.reset(job_id)
        return self.start_extraction(owner_id, selector=run.selector, force_refresh=True, boost=boost)

    def shutdown(self, timeout: float = JOIN_TIMEOUT_SECONDS) -> None:
        """Stop active jobs cooperatively and join their threads."""
        for run in list(self._runs.values()):
            if run.is_running and run.snapshot.is_active:
                try:
                    self.stop(run.job.job_id)
                except JobControlError:
                    # finished between the check and the stop
                    pass
        for run in list(self._runs.values()):
            if run.thread is not None and run.thread.is_alive():
                run.thread.join(timeout=timeout)
        self.broadcaster.close_all()

    # =========================================================================
    # Pipeline
    # =========================================================================

    def _execute(self, run: _JobRun) -> None:
        job_id = run.job.job_id
        owner_id = run.job.owner_id
        try:
            if not self._update(run, status=JobStatus.IN_PROGRESS, stage=JobStage.LOADING_PATTERNS,
                                progress=PROGRESS_LOADING, message="Loading pattern library..."):
                return
            patterns = self.pattern_library.load(self.library_source)

            notes = self._fetch_notes(run)
            if not self._update(run, stage=JobStage.EXTRACTING, progress=PROGRESS_EXTRACT_START,
                                total_notes=len(notes),
                                message=f"Loaded {len(patterns)} patterns; extracting from {len(notes)} notes"):
                return

            candidates = run.scheduler.run(
                notes,
                patterns,
                run.job.worker_count,
                on_progress=lambda fraction, message: self._on_extract_progress(run, fraction, message, len(notes)),
                stop_event=run.stop_event,
                job_id=job_id,
                owner_id=owner_id,
            )
            if run.stop_event.is_set():
                return

            if not self._update(run, stage=JobStage.PERSISTING, progress=PROGRESS_EXTRACT_END,
                                processed_notes=len(notes),
                                message=f"Deduplicating {len(candidates)} candidates..."):
                return
            unique, removed = Deduplicator().dedupe(candidates)

            if run.job.force_refresh:
                cleared = self._clear_previous(run, notes)
                logger.info(f"Force refresh: cleared {cleared} prior mentions for owner {owner_id}")

            self._update(run, duplicates_removed=removed, message=f"Persisting {len(unique)} mentions...")
            written = self.writer.persist(
                unique,
                on_progress=lambda done, total: self._on_persist_progress(run, done, total),
                stop_event=run.stop_event,
            )
            if run.stop_event.is_set():
                return

            verified = self.mention_store.count(owner_id, job_id)
            if verified != written:
                raise PersistenceError(
                    f"verification failed: wrote {written} mentions but store holds {verified} for job {job_id}",
                    written=written,
                )

            self._update(
                run,
                status=JobStatus.COMPLETED,
                progress=PROGRESS_COMPLETE,
                mentions_written=written,
                ended_at=utcnow(),
                message=f"Completed: {written} mentions from {len(notes)} notes ({removed} duplicates removed)",
            )
            logger.info(f"Job {job_id} completed: {written} mentions, {removed} duplicates removed")

        except FATAL_JOB_ERRORS as e:
            self._fail(run, e)
        except Exception as e:
            logger.exception(f"Unexpected error in job {job_id}")
            self._fail(run, e)
        finally:
            run.done.set()

    def _fetch_notes(self, run: _JobRun):
        try:
            return self.note_store.fetch_notes(run.job.owner_id, run.selector)
        except NoteRetrievalError:
            raise
        except Exception as e:
            raise NoteRetrievalError(f"Failed to fetch notes for owner {run.job.owner_id}: {e}") from e

    def _clear_previous(self, run: _JobRun, notes) -> int:
        """Delete prior mentions for exactly the notes this run reprocesses."""
        if run.selector.filters_notes:
            return self.mention_store.delete_for_notes(run.job.owner_id, notes)
        return self.mention_store.delete_for_scope(run.job.owner_id, run.selector.patient_ids)

    def _on_extract_progress(self, run: _JobRun, fraction: float, message: str, total: int) -> None:
        # stays below the persisting band until every worker has joined
        progress = min(
            scale_progress(fraction, PROGRESS_EXTRACT_START, PROGRESS_EXTRACT_END),
            PROGRESS_EXTRACT_END - 1,
        )
        self._update(
            run,
            progress=progress,
            processed_notes=int(round(fraction * total)),
            worker_count=max(run.job.worker_count, run.scheduler.worker_count),
            message=message,
        )

    def _on_persist_progress(self, run: _JobRun, done: int, total: int) -> None:
        fraction = done / total if total else 1.0
        self._update(
            run,
            progress=scale_progress(fraction, PROGRESS_EXTRACT_END, PROGRESS_PERSIST_END),
            message=f"Persisted batch {done}/{total}",
        )

    def _fail(self, run: _JobRun, error: Exception) -> None:
        logger.error(f"Job {run.job.job_id} failed at {run.job.progress:.0f}%: {error}")
        changes = {
            "status": JobStatus.FAILED,
            "error": f"{type(error).__name__}: {error}",
            "message": f"Failed: {error}",
            "ended_at": utcnow(),
        }
        if isinstance(error, PersistenceError):
            changes["mentions_written"] = error.written
        self._update(run, **changes)

    # =========================================================================
    # Registry helpers
    # =========================================================================

    def _current_run(self, owner_id: str) -> Optional[_JobRun]:
        job_id = self._owner_jobs.get(owner_id)
        return self._runs.get(job_id) if job_id else None

    def _get_run(self, job_id: str) -> _JobRun:
        run = self._runs.get(job_id)
        if run is None:
            raise JobNotFoundError(f"Unknown job {job_id}")
        return run

    def _update(self, run: _JobRun, **changes) -> bool:
        """
        Apply changes from the job's own thread.

        Ignored once the job is terminal or detached by a reset. Returns
        False when ignored so the pipeline can bail out.
        """
        with run.lock:
            if run.detached or run.job.is_terminal:
                return False
            self._apply(run, changes, utcnow())
        return True

    def _apply(self, run: _JobRun, changes: dict, now: datetime, allow_decrease: bool = False) -> None:
        """Mutate the job record, refresh and publish its snapshot. Caller holds run.lock."""
        if "progress" in changes and not allow_decrease:
            changes["progress"] = max(run.job.progress, changes["progress"])
        changes["updated_at"] = now
        run.job = run.job.model_copy(update=changes)
        run.snapshot = run.job.model_copy(deep=True)
        self._publish(run)

    def _publish(self, run: _JobRun) -> None:
        # under run.lock so snapshots leave in the order they were made
        snapshot = run.snapshot
        self.broadcaster.publish(snapshot.owner_id, snapshot)
        if self.state_store is not None:
            self.state_store.save(snapshot)
