from pathlib import Path
from typing import List, Optional, Union

from .aggregator import Aggregator
from .config import settings
from .jobs import JobOrchestrator, ProgressBroadcaster, StallMonitor
from .patterns import PatternLibrary
from .resource_manager import ResourceManager
from .storage import JobStateStore, NoteSelector, SQLiteStore
from .types import CategoryCount, CountMode, ExtractionJob, ProblemFlag, StartResult
from .utils import get_logger

logger = get_logger("ExtractionService")


class ExtractionService:
    """
    High-level API wiring the pipeline onto a SQLite database.

    Encapsulates the stores, orchestrator and stall monitor for CLIs and
    other embedding callers.
    """
    def __init__(
        self,
        db_path: Optional[Path] = None,
        library_source=None,
        jobs_dir: Optional[Path] = None,
        workers: Optional[int] = None,
        start_monitor: bool = False,
        recover_interrupted: bool = True,
    ):
        self.store = SQLiteStore(db_path or settings.DB_PATH)
        self.state_store = JobStateStore(jobs_dir or self.store.db_path.parent / "jobs")
        self.broadcaster = ProgressBroadcaster()
        self.orchestrator = JobOrchestrator(
            note_store=self.store,
            mention_store=self.store,
            library_source=library_source,
            pattern_library=PatternLibrary(),
            state_store=self.state_store,
            broadcaster=self.broadcaster,
            resource_manager=ResourceManager(),
            workers=workers,
            recover_interrupted=recover_interrupted,
        )
        self.aggregator = Aggregator()
        self.monitor = StallMonitor(self.orchestrator)
        if start_monitor:
            self.monitor.start()

    def start(
        self,
        owner_id: str,
        patient_ids: Optional[List[str]] = None,
        force_refresh: bool = False,
        boost: bool = False,
    ) -> StartResult:
        selector = NoteSelector(patient_ids=patient_ids) if patient_ids else None
        return self.orchestrator.start_extraction(owner_id, selector, force_refresh=force_refresh, boost=boost)

    def status(self, owner_id: str) -> Optional[ExtractionJob]:
        return self.orchestrator.get_owner_status(owner_id)

    def aggregate(
        self,
        owner_id: str,
        mode: Union[CountMode, str] = CountMode.RAW,
        group_by: str = "diagnostic_category",
        family: Optional[Union[ProblemFlag, str]] = None,
    ) -> List[CategoryCount]:
        mentions = self.store.list_mentions(owner_id)
        return self.aggregator.aggregate(mentions, mode, group_by=group_by, family=family)

    def close(self) -> None:
        self.monitor.stop(timeout=1.0)
        self.orchestrator.shutdown()
        self.store.close()
