"""
Extraction job lifecycle: orchestration, progress fan-out and stall detection.
"""
from .broadcaster import ProgressBroadcaster, Subscription
from .monitor import StallMonitor
from .orchestrator import JobOrchestrator

__all__ = ["JobOrchestrator", "ProgressBroadcaster", "StallMonitor", "Subscription"]
