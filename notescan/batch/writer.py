"""
Batch writer: persists deduplicated mentions in fixed-size batches.

Batches are written sequentially with a short pause between them. A failed
batch aborts the rest of the run; earlier batches stay committed.
"""
import threading
import time
from typing import Callable, List, Optional, Sequence

from notescan.errors import PersistenceError
from notescan.types.models import Mention
from notescan.utils import get_logger

logger = get_logger("BatchWriter")

BatchProgressCallback = Callable[[int, int], None]


class BatchWriter:
    """Writes mentions to a MentionStore one transaction per batch."""

    def __init__(
        self,
        store,
        batch_size: Optional[int] = None,
        pause_seconds: Optional[float] = None,
    ):
        """
        Args:
            store: MentionStore receiving the batches
            batch_size: Mentions per batch (defaults to settings)
            pause_seconds: Sleep between batches to bound store load
        """
        from notescan.config import settings
        self.store = store
        self.batch_size = batch_size or settings.BATCH_SIZE
        self.pause_seconds = settings.BATCH_PAUSE_SECONDS if pause_seconds is None else pause_seconds

    @staticmethod
    def make_batches(mentions: Sequence[Mention], batch_size: int) -> List[List[Mention]]:
        size = max(1, batch_size)
        return [list(mentions[i:i + size]) for i in range(0, len(mentions), size)]

    def persist(
        self,
        mentions: Sequence[Mention],
        batch_size: Optional[int] = None,
        on_progress: Optional[BatchProgressCallback] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> int:
        """
        Write mentions batch by batch.

        Args:
            mentions: Deduplicated mentions in write order
            batch_size: Override the configured batch size
            on_progress: Called as (batches_done, batch_total) after each commit
            stop_event: Checked before each batch; when set, no further batches are written

        Returns:
            Number of mentions the store accepted

        Raises:
            PersistenceError: a batch failed; `written` holds the count committed before it
        """
        batches = self.make_batches(list(mentions), batch_size or self.batch_size)
        total = len(batches)
        written = 0

        if total == 0:
            logger.info("No mentions to persist")
            if on_progress:
                on_progress(0, 0)
            return 0

        for index, batch in enumerate(batches):
            if stop_event is not None and stop_event.is_set():
                logger.warning(f"Persist stopped before batch {index + 1}/{total} ({written} written)")
                break

            try:
                accepted = self.store.insert_batch(batch)
            except PersistenceError as e:
                logger.error(f"Batch {index + 1}/{total} failed: {e}")
                raise PersistenceError(str(e), written=written, batch_index=index) from e
            except Exception as e:
                logger.error(f"Batch {index + 1}/{total} failed: {e}")
                raise PersistenceError(
                    f"Batch {index + 1}/{total} failed: {e}", written=written, batch_index=index
                ) from e

            written += accepted
            logger.info(f"Committed batch {index + 1}/{total} ({accepted} mentions, {written} total)")
            if on_progress:
                on_progress(index + 1, total)

            if index < total - 1 and self.pause_seconds > 0:
                time.sleep(self.pause_seconds)

        return written
