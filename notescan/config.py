"""
Centralized Configuration for notescan

This is the ONLY place for runtime configuration in the codebase.
Worker counts, batch sizes, stall thresholds, paths and logging settings
are defined here and can be overridden via .env file or environment variables.

Usage:
    from notescan.config import settings

    workers = settings.WORKERS
    batch_size = settings.BATCH_SIZE
"""

from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized configuration for notescan.

    All tunable values live here:
    - Single source of truth for all settings
    - Type safety via Pydantic
    - Environment variable override support
    """

    # ========== Logging Settings ==========
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    LOG_FILE_ENABLED: bool = Field(
        default=False,
        description="Enable file logging"
    )

    # ========== Paths ==========
    OUTPUT_DIR: Path = Field(
        default=Path("./output"),
        description="Directory for job snapshots and other outputs"
    )
    LOG_DIR: Path = Field(
        default=Path("./output/logs"),
        description="Directory for log files"
    )
    DB_PATH: Path = Field(
        default=Path("./output/notescan.db"),
        description="SQLite database holding notes and extracted mentions"
    )
    PATTERN_LIBRARY_PATHS: List[Path] = Field(
        default=[
            Path("./data/symptom_library.csv"),
            Path("./data/symptom_library.xlsx"),
            Path("./symptom_library.csv"),
            Path("./attached_assets/Symptom_Segments_MASTER.csv"),
        ],
        description="Candidate pattern library locations, tried in order"
    )

    # ========== Extraction Settings ==========
    WORKERS: int = Field(
        default=4,
        description="Number of parallel matcher workers"
    )
    BOOST_WORKERS: int = Field(
        default=16,
        description="Worker count after a boost command"
    )
    MAX_WORKERS: int = Field(
        default=32,
        description="Hard ceiling for matcher threads"
    )
    MIN_NOTE_CHARS: int = Field(
        default=3,
        description="Notes shorter than this yield no mentions"
    )
    PROGRESS_EVERY_NOTES: int = Field(
        default=25,
        description="Report scheduler progress every N notes"
    )
    MATCH_FAILURE_THRESHOLD: int = Field(
        default=3,
        description="Consecutive per-note matcher failures before aborting the run"
    )

    # ========== Persistence Settings ==========
    BATCH_SIZE: int = Field(
        default=1000,
        description="Mentions written per batch"
    )
    BATCH_PAUSE_SECONDS: float = Field(
        default=0.05,
        description="Pause between batches to bound store load (seconds)"
    )

    # ========== Job Monitoring ==========
    STALL_THRESHOLD_SECONDS: float = Field(
        default=120.0,
        description="Seconds without a progress update before a job is stalled"
    )
    STALL_CHECK_INTERVAL_SECONDS: float = Field(
        default=30.0,
        description="Polling interval of the stall monitor (seconds)"
    )
    AUTO_RESTART_STALLED: bool = Field(
        default=False,
        description="Restart stalled jobs automatically"
    )
    SUBSCRIBER_QUEUE_SIZE: int = Field(
        default=32,
        description="Bounded snapshot queue size per progress subscriber"
    )

    # ========== Resource Limits ==========
    RAM_THROTTLE_GB: float = Field(
        default=14.0,
        description="Used RAM above which the initial worker count is halved"
    )
    RAM_CEILING_GB: float = Field(
        default=18.0,
        description="Used RAM above which extraction starts single-threaded"
    )

    # ========== Pydantic Settings Config ==========
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True
    )


# Singleton instance - import this everywhere
settings = Settings()
