"""
Stall monitor: background thread that watches for in_progress jobs whose
progress has not moved within the stall threshold.
"""
import threading
from datetime import datetime
from typing import List, Optional

from notescan.errors import JobControlError
from notescan.types.models import ExtractionJob
from notescan.utils import get_logger, utcnow

logger = get_logger("StallMonitor")


class StallMonitor:
    """Polls a JobOrchestrator and optionally restarts stalled jobs."""

    def __init__(
        self,
        orchestrator,
        interval_seconds: Optional[float] = None,
        auto_restart: Optional[bool] = None,
    ):
        from notescan.config import settings
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds or settings.STALL_CHECK_INTERVAL_SECONDS
        self.auto_restart = settings.AUTO_RESTART_STALLED if auto_restart is None else auto_restart
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check(self, now: Optional[datetime] = None) -> List[ExtractionJob]:
        """One polling pass. Returns the stalled jobs found."""
        now = now or utcnow()
        stalled = self.orchestrator.find_stalled(now)
        for job in stalled:
            stage = job.stage.value if job.stage else "-"
            logger.warning(
                f"Job {job.job_id} for owner {job.owner_id} stalled at {job.progress:.0f}% "
                f"(stage={stage}, idle {job.seconds_since_update(now):.0f}s)"
            )
            if self.auto_restart:
                try:
                    result = self.orchestrator.restart_stalled(job.job_id)
                    logger.info(f"Restarted stalled job {job.job_id} as {result.job_id}")
                except JobControlError as e:
                    logger.error(f"Could not restart stalled job {job.job_id}: {e}")
        return stalled

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.check()
            except Exception:
                logger.exception("Stall check failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="stall-monitor", daemon=True)
        self._thread.start()
        logger.info(f"Stall monitor started (interval={self.interval_seconds}s, auto_restart={self.auto_restart})")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
