"""
Publish/subscribe broadcast of conversation snapshots.

The store publishes a versioned Snapshot after every committed mutation.
Each subscriber keeps the newest undelivered snapshot in a single slot, so a
burst of writes can coalesce into fewer callbacks, and a snapshot older than
one already delivered is dropped instead of being delivered late.
"""

import logging
import threading
from typing import Callable, Optional

from chatstore.metrics import record_notification
from chatstore.schemas import Snapshot

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Snapshot], None]


class Subscription:
    """
    Handle for one registered callback.

    Can be used as a context manager; leaving the block cancels it.
    """

    def __init__(self, notifier: "ChangeNotifier", callback: SnapshotCallback):
        self._notifier = notifier
        self._callback = callback
        self._lock = threading.Lock()
        self._pending: Optional[Snapshot] = None
        self._delivered_version = -1
        self._draining = False
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def delivered_version(self) -> int:
        return self._delivered_version

    def cancel(self) -> None:
        """Stop receiving snapshots. Safe to call more than once."""
        with self._lock:
            self._active = False
            self._pending = None
        self._notifier._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()

    def offer(self, snapshot: Snapshot) -> None:
        """
        Hand a snapshot to this subscriber.

        If another thread is already running the callback for this
        subscriber, the snapshot is parked and picked up by that thread.
        """
        with self._lock:
            if not self._active or snapshot.version <= self._delivered_version:
                return
            if self._pending is not None and snapshot.version <= self._pending.version:
                return
            self._pending = snapshot
            if self._draining:
                return
            self._draining = True

        while True:
            with self._lock:
                if self._pending is None or not self._active:
                    self._draining = False
                    return
                snapshot = self._pending
                self._pending = None
                self._delivered_version = snapshot.version

            try:
                self._callback(snapshot)
                record_notification()
            except Exception:
                logger.exception(f"Snapshot subscriber failed on version {snapshot.version}")


class ChangeNotifier:
    """Callback registry fanning snapshots out to every active subscription."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def register(self, callback: SnapshotCallback) -> Subscription:
        """Register a callback without delivering anything yet."""
        subscription = Subscription(self, callback)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug(f"Subscriber registered, {len(self._subscriptions)} active")
        return subscription

    def publish(self, snapshot: Snapshot) -> None:
        """Deliver a snapshot to every active subscription."""
        with self._lock:
            targets = list(self._subscriptions)
        logger.debug(f"Publishing snapshot version {snapshot.version} to {len(targets)} subscribers")
        for subscription in targets:
            subscription.offer(snapshot)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
