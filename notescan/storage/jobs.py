import fcntl
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from notescan.types.enums import ACTIVE_STATUSES, JobStatus
from notescan.types.models import ExtractionJob
from notescan.utils import get_logger, utcnow

logger = get_logger("JobStateStore")

INTERRUPTED_MESSAGE = "interrupted"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class JobStateStore:
    """
    Persists ExtractionJob snapshots as one JSON file per job.

    Writes go to a temporary file that is then renamed over the target, so
    a reader never sees a half-written snapshot.
    """
    def __init__(self, directory: Optional[Path] = None):
        if directory is None:
            from notescan.config import settings
            directory = settings.OUTPUT_DIR / "jobs"
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        return self.directory / f"{job_id}.json"

    def save(self, job: ExtractionJob) -> None:
        """Atomic save of one snapshot."""
        path = self._path(job.job_id)
        temp_path = path.with_suffix(".tmp")
        try:
            json_str = job.model_dump_json(indent=2)
            with open(temp_path, "w") as f:
                fcntl.flock(f, fcntl.LOCK_EX)
                f.write(json_str)
                f.flush()
                os.fsync(f.fileno())
                fcntl.flock(f, fcntl.LOCK_UN)
            temp_path.replace(path)
            logger.debug(f"Saved job snapshot {path}")
        except OSError as e:
            logger.error(f"Failed to save job snapshot {job.job_id}: {e}")
            if temp_path.exists():
                temp_path.unlink()

    def load(self, job_id: str) -> Optional[ExtractionJob]:
        return self._read(self._path(job_id))

    def _read(self, path: Path) -> Optional[ExtractionJob]:
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                data = json.load(f)
            return ExtractionJob(**data)
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            backup_path = path.with_suffix(f".bak.{int(datetime.now().timestamp())}")
            logger.warning(f"Corrupt job snapshot {path.name} ({e}); backing up to {backup_path.name}")
            path.rename(backup_path)
            return None

    def load_all(self) -> List[ExtractionJob]:
        jobs = []
        for path in sorted(self.directory.glob("*.json")):
            job = self._read(path)
            if job is not None:
                jobs.append(job)
        return jobs

    def latest_for_owner(self, owner_id: str) -> Optional[ExtractionJob]:
        """Most recently started snapshot for the owner."""
        owned = [j for j in self.load_all() if j.owner_id == owner_id]
        if not owned:
            return None
        return max(owned, key=lambda j: j.started_at or j.updated_at or EPOCH)

    def recover_interrupted(self) -> List[ExtractionJob]:
        """
        Mark jobs left pending/in_progress by a previous process as failed.

        Progress is kept so operators can see how far the run got.
        """
        recovered = []
        for job in self.load_all():
            if job.status not in ACTIVE_STATUSES:
                continue
            if job.reset_at is not None and job.status == JobStatus.PENDING:
                # reset jobs never run again; nothing was interrupted
                continue
            now = utcnow()
            job = job.model_copy(update={
                "status": JobStatus.FAILED,
                "message": INTERRUPTED_MESSAGE,
                "error": INTERRUPTED_MESSAGE,
                "ended_at": now,
                "updated_at": now,
            })
            self.save(job)
            recovered.append(job)
            logger.warning(f"Job {job.job_id} for owner {job.owner_id} was interrupted at {job.progress:.0f}%")
        return recovered
