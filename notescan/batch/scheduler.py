"""
Chunk scheduler: parallel matcher execution over a note set.

Notes are partitioned into `worker_count` balanced groups (sizes differ by
at most one) and each group is scanned by its own worker thread. A boost
splits the unclaimed tail of the busiest partitions into new partitions,
so already-matched notes are never redone.

Workers only record the latest progress value; the thread that called
`run` forwards it, so a slow progress consumer never stalls matching.
"""
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from notescan.errors import MatcherError
from notescan.matcher import Matcher
from notescan.types.models import Mention, Note, SymptomPattern
from notescan.utils import get_logger, split_evenly

from .circuit_breaker import CircuitBreaker

logger = get_logger("ChunkScheduler")

ProgressCallback = Callable[[float, str], None]

WAIT_POLL_SECONDS = 0.2


def weighted_fraction(parts: Iterable[Tuple[int, int]]) -> float:
    """
    Combine per-worker (processed, assigned) pairs into one completion fraction.

    Each worker's own fraction is weighted by the number of notes assigned
    to it, which reduces to total processed over total assigned.
    """
    total_assigned = 0
    total_processed = 0
    for processed, assigned in parts:
        if assigned <= 0:
            continue
        total_assigned += assigned
        total_processed += processed
    if total_assigned == 0:
        return 1.0
    return min(1.0, total_processed / total_assigned)


class _Partition:
    """One worker's slice of note indices with a claim cursor."""

    def __init__(self, index: int, note_indices: List[int]):
        self.index = index
        self.note_indices = note_indices
        self.cursor = 0
        self.end = len(note_indices)
        self.processed = 0
        self.lock = threading.Lock()

    @property
    def remaining(self) -> int:
        with self.lock:
            return self.end - self.cursor

    def claim(self) -> Optional[int]:
        with self.lock:
            if self.cursor >= self.end:
                return None
            note_index = self.note_indices[self.cursor]
            self.cursor += 1
            return note_index

    def mark_processed(self) -> None:
        with self.lock:
            self.processed += 1

    def split_tail(self) -> Optional[List[int]]:
        """Give away the back half of the unclaimed notes."""
        with self.lock:
            remaining = self.end - self.cursor
            if remaining < 2:
                return None
            mid = self.cursor + (remaining + 1) // 2
            tail = self.note_indices[mid:self.end]
            self.end = mid
            return tail

    def counts(self) -> Tuple[int, int]:
        """(processed, assigned); assigned shrinks when a tail is split off."""
        with self.lock:
            return self.processed, self.end


class ChunkScheduler:
    """
    Runs the Matcher over a note set with a pool of worker threads.

    One scheduler instance drives one run at a time. `boost` may be called
    from another thread while `run` is executing.
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        progress_every: Optional[int] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        resource_manager=None,
    ):
        """
        Args:
            max_workers: Thread ceiling (boost cannot exceed it)
            progress_every: Report progress every N processed notes
            circuit_breaker: Tracks consecutive per-note matcher failures
            resource_manager: Optional ResourceManager throttling the initial worker count
        """
        from notescan.config import settings
        self.max_workers = max(1, max_workers or settings.MAX_WORKERS)
        self.progress_every = max(1, progress_every or settings.PROGRESS_EVERY_NOTES)
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.resource_manager = resource_manager

        self._lock = threading.Lock()
        self._progress_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._partitions: List[_Partition] = []
        self._futures: List[Future] = []
        self._work: Optional[Callable[[_Partition], None]] = None
        self._running = False
        self._requested_workers = 0
        self._worker_count = 0
        self._abort = threading.Event()
        self._latest: Optional[Tuple[float, str]] = None
        self._progress_ready = threading.Event()

    @property
    def worker_count(self) -> int:
        with self._lock:
            return self._worker_count

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def overall_fraction(self) -> float:
        with self._lock:
            partitions = list(self._partitions)
        return weighted_fraction(p.counts() for p in partitions)

    def run(
        self,
        notes: Sequence[Note],
        patterns: Sequence[SymptomPattern],
        worker_count: int,
        on_progress: Optional[ProgressCallback] = None,
        stop_event: Optional[threading.Event] = None,
        job_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> List[Mention]:
        """
        Match every note in parallel and merge the candidates.

        Args:
            notes: Notes to scan
            patterns: Pattern library for this run
            worker_count: Initial number of parallel workers
            on_progress: Called as (fraction 0..1, message) from the calling thread; intermediate values may be skipped
            stop_event: Cooperative cancellation flag, checked between notes
            job_id: Provenance stamped on mentions
            owner_id: Owner stamped on mentions

        Returns:
            Merged candidates in note order (partial if stopped)

        Raises:
            MatcherError: the matcher failed on too many consecutive notes
        """
        notes = list(notes)
        total = len(notes)
        report = on_progress or (lambda fraction, message: None)
        stop_event = stop_event or threading.Event()

        if total == 0:
            report(1.0, "No notes to process")
            return []

        matcher = Matcher(patterns)
        self.circuit_breaker.reset()
        self._abort.clear()
        self._latest = None
        self._progress_ready.clear()

        with self._lock:
            requested = max(1, worker_count, self._requested_workers)
        workers = min(requested, self.max_workers, total)
        if self.resource_manager:
            workers = max(1, self.resource_manager.get_recommended_workers(workers))

        results: List[Optional[List[Mention]]] = [None] * total
        state = {"done": 0, "found": 0}
        groups = split_evenly(list(range(total)), workers)

        logger.info(
            f"Starting parallel extraction [workers={len(groups)}] for {total} notes "
            f"with {len(matcher.patterns)} patterns (sizes: {[len(g) for g in groups]})"
        )
        report(0.0, f"Starting analysis with {len(groups)} workers for {total} notes...")

        def work(partition: _Partition) -> None:
            while not stop_event.is_set() and not self._abort.is_set():
                note_index = partition.claim()
                if note_index is None:
                    return
                note = notes[note_index]
                try:
                    found = matcher.match(note, job_id=job_id, owner_id=owner_id)
                    self.circuit_breaker.record_success()
                except Exception as e:
                    logger.error(f"Matcher failed on note {note.note_id or note_index}: {e}", exc_info=True)
                    found = []
                    if self.circuit_breaker.record_failure(e):
                        self._abort.set()
                        raise MatcherError(
                            f"Matcher failed on {self.circuit_breaker.failure_count} consecutive notes "
                            f"(last: {self.circuit_breaker.last_error})"
                        ) from e
                results[note_index] = found
                partition.mark_processed()

                with self._progress_lock:
                    state["done"] += 1
                    state["found"] += len(found)
                    done, found_total = state["done"], state["found"]
                    if done % self.progress_every == 0 or done == total:
                        # most recent wins; the waiting thread forwards it
                        self._latest = (
                            self.overall_fraction(),
                            f"Processed {done}/{total} notes, found {found_total} mentions so far",
                        )
                        self._progress_ready.set()

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="matcher") as executor:
            with self._lock:
                self._executor = executor
                self._partitions = [_Partition(i, g) for i, g in enumerate(groups)]
                self._worker_count = len(groups)
                self._work = work
                self._futures = [self._submit(p) for p in self._partitions]
                self._running = True
            try:
                self._wait_all(report)
            except BaseException:
                self._abort.set()
                raise
            finally:
                with self._lock:
                    self._running = False
                    self._executor = None
                    self._requested_workers = 0

        # the last update may land after the final poll
        self._forward_progress(report)

        merged = [mention for chunk in results if chunk for mention in chunk]
        if stop_event.is_set():
            logger.warning(f"Extraction stopped after {state['done']}/{total} notes")
        else:
            logger.info(f"Extraction complete: {len(merged)} candidates from {total} notes")
        return merged

    def _submit(self, partition: _Partition) -> Future:
        """Submit a worker; its completion wakes the waiting thread. Caller holds _lock."""
        future = self._executor.submit(self._work, partition)
        future.add_done_callback(lambda f: self._progress_ready.set())
        return future

    def _forward_progress(self, report: ProgressCallback) -> None:
        """Hand the newest pending progress value to the callback, if any."""
        with self._progress_lock:
            latest, self._latest = self._latest, None
            self._progress_ready.clear()
        if latest is not None:
            report(*latest)

    def _wait_all(self, report: ProgressCallback) -> None:
        """
        Wait for every worker, including ones added by a boost mid-run.

        Progress is forwarded from this thread, so a slow callback never
        holds up the workers; updates made meanwhile are coalesced.
        """
        while True:
            self._progress_ready.wait(WAIT_POLL_SECONDS)
            self._forward_progress(report)
            with self._lock:
                pending = [f for f in self._futures if not f.done()]
                finished = [f for f in self._futures if f.done()]
            for future in finished:
                error = future.exception()
                if error is not None:
                    raise error
            if not pending:
                return

    def boost(self, worker_count: int) -> int:
        """
        Raise parallelism for the remaining work.

        Never lowers the worker count. Before a run starts the request is
        remembered and applied when it begins.

        Returns:
            Effective worker count
        """
        target = min(worker_count, self.max_workers)
        with self._lock:
            if not self._running:
                self._requested_workers = max(self._requested_workers, target)
                return max(self._worker_count, self._requested_workers)

            added = 0
            while len(self._partitions) < target:
                donor = max(self._partitions, key=lambda p: p.remaining)
                tail = donor.split_tail()
                if not tail:
                    break
                partition = _Partition(len(self._partitions), tail)
                self._partitions.append(partition)
                self._futures.append(self._submit(partition))
                added += 1

            self._worker_count = max(self._worker_count, target)
            logger.info(f"Boost: added {added} workers (worker count now {self._worker_count})")
            return self._worker_count
