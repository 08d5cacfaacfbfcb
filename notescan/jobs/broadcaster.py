"""
Progress broadcaster: fans job snapshots out to subscribers.

Each subscriber owns a bounded queue. Publishing never blocks: when a
subscriber's queue is full its oldest snapshot is discarded. A new
subscriber is first given the owner's last known snapshot.
"""
import queue
import threading
from typing import Dict, Iterator, List, Optional

from notescan.types.models import ExtractionJob
from notescan.utils import get_logger

logger = get_logger("ProgressBroadcaster")

_CLOSED = object()


class Subscription:
    """Iterable stream of ExtractionJob snapshots for one owner."""

    def __init__(self, owner_id: str, maxsize: int, broadcaster: "ProgressBroadcaster"):
        self.owner_id = owner_id
        self.dropped = 0
        self._queue: "queue.Queue" = queue.Queue(maxsize=max(1, maxsize))
        self._broadcaster = broadcaster
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, item) -> None:
        """Non-blocking put; drops the oldest item when full."""
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[ExtractionJob]:
        """
        Next snapshot, or None on timeout or once the stream is closed.
        """
        if self._closed.is_set() and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._closed.set()
            return None
        return item

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._broadcaster.unsubscribe(self)
        self.offer(_CLOSED)

    def __iter__(self) -> Iterator[ExtractionJob]:
        while True:
            item = self.get()
            if item is None:
                return
            yield item

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ProgressBroadcaster:
    """Keeps the last snapshot per owner and pushes new ones to subscribers."""

    def __init__(self, queue_size: Optional[int] = None):
        if queue_size is None:
            from notescan.config import settings
            queue_size = settings.SUBSCRIBER_QUEUE_SIZE
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._last: Dict[str, ExtractionJob] = {}
        self._subscribers: Dict[str, List[Subscription]] = {}

    def last_snapshot(self, owner_id: str) -> Optional[ExtractionJob]:
        with self._lock:
            return self._last.get(owner_id)

    def subscribe(self, owner_id: str) -> Subscription:
        subscription = Subscription(owner_id, self.queue_size, self)
        with self._lock:
            last = self._last.get(owner_id)
            if last is not None:
                subscription.offer(last)
            self._subscribers.setdefault(owner_id, []).append(subscription)
        logger.debug(f"Subscriber attached for owner {owner_id} (replayed={last is not None})")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.owner_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
                logger.debug(f"Subscriber detached for owner {subscription.owner_id}")

    def publish(self, owner_id: str, snapshot: ExtractionJob) -> None:
        """Record and fan out a snapshot. Never blocks the caller."""
        with self._lock:
            self._last[owner_id] = snapshot
            subscribers = list(self._subscribers.get(owner_id, []))

        for subscription in subscribers:
            if subscription.closed:
                self.unsubscribe(subscription)
                continue
            before = subscription.dropped
            subscription.offer(snapshot)
            if subscription.dropped > before:
                logger.debug(f"Slow subscriber for owner {owner_id}: dropped oldest snapshot")

    def close_owner(self, owner_id: str) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(owner_id, []))
        for subscription in subscribers:
            subscription.close()

    def close_all(self) -> None:
        with self._lock:
            owners = list(self._subscribers)
        for owner_id in owners:
            self.close_owner(owner_id)
