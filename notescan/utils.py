"""
Shared utilities for notescan.

Contains:
- Centralized logging setup (Rich console + optional file output)
- Small helpers shared by the pipeline stages
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence, TypeVar

from rich.logging import RichHandler

T = TypeVar("T")


def setup_logging(level=None, log_file: Optional[Path] = None):
    """
    Configure organized logging with Rich and optional file output.
    """
    from .config import settings

    log_level = level or settings.LOG_LEVEL
    handlers: List[logging.Handler] = [RichHandler(rich_tracebacks=True)]

    if settings.LOG_FILE_ENABLED or log_file:
        path = log_file or (settings.LOG_DIR / f"notescan_{datetime.now().strftime('%Y%m%d')}.log")
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True
    )


setup_logging()
logger = logging.getLogger("notescan")


def get_logger(name: str):
    """Get a configured logger."""
    return logging.getLogger(name)


def utcnow() -> datetime:
    """Timezone-aware current time used for all job timestamps."""
    return datetime.now(timezone.utc)


def split_evenly(items: Sequence[T], parts: int) -> List[List[T]]:
    """
    Split items into `parts` groups whose sizes differ by at most one.

    Groups keep the input order. Fewer groups are returned when there are
    fewer items than parts (no empty groups).
    """
    parts = max(1, min(parts, len(items)))
    if not items:
        return []
    base, extra = divmod(len(items), parts)
    groups = []
    start = 0
    for i in range(parts):
        size = base + (1 if i < extra else 0)
        groups.append(list(items[start:start + size]))
        start += size
    return groups
