import psutil
from enum import Enum
from typing import Optional

from notescan.utils import get_logger

logger = get_logger("ResourceManager")


class ResourceStatus(Enum):
    NORMAL = "normal"
    THROTTLE = "throttle"
    CRITICAL = "critical"


class ResourceManager:
    """
    Checks host memory before an extraction run starts.

    Only the initial worker count is throttled; a running job's worker
    count is never lowered.
    """
    def __init__(self, ram_ceiling_gb: Optional[float] = None, ram_throttle_gb: Optional[float] = None):
        from notescan.config import settings
        self.ram_ceiling_gb = ram_ceiling_gb if ram_ceiling_gb is not None else settings.RAM_CEILING_GB
        self.ram_throttle_gb = ram_throttle_gb if ram_throttle_gb is not None else settings.RAM_THROTTLE_GB

    def check_status(self) -> ResourceStatus:
        """Check current RAM usage against thresholds."""
        try:
            used_gb = psutil.virtual_memory().used / (1024 ** 3)
        except (OSError, RuntimeError) as e:
            logger.error(f"Failed to check resources: {e}")
            return ResourceStatus.NORMAL

        if used_gb > self.ram_ceiling_gb:
            logger.warning(f"RAM critical: {used_gb:.1f}GB > {self.ram_ceiling_gb}GB")
            return ResourceStatus.CRITICAL
        if used_gb > self.ram_throttle_gb:
            logger.warning(f"RAM throttle: {used_gb:.1f}GB > {self.ram_throttle_gb}GB")
            return ResourceStatus.THROTTLE
        return ResourceStatus.NORMAL

    def get_recommended_workers(self, max_workers: int) -> int:
        """Worker count to start a run with, given current memory pressure."""
        status = self.check_status()

        if status == ResourceStatus.NORMAL:
            return max_workers
        elif status == ResourceStatus.THROTTLE:
            return max(1, max_workers // 2)
        return 1
