"""
Simulated counterpart replies.

After a message is sent, AutoReplyScheduler.schedule() starts a timer that
posts a canned reply from the counterpart through the normal write API. The
conversation may be deleted before the timer fires; that NotFound is expected
and only logged.
"""

import logging
import random
import threading
from typing import Callable, Optional, Sequence

from chatstore.config import settings
from chatstore.errors import NotFound, StoreError
from chatstore.schemas import Message, Sender

logger = logging.getLogger(__name__)

CANNED_REPLIES = (
    "Got it! 👍",
    "Sounds good to me!",
    "Let me think about that...",
    "That's interesting! Tell me more.",
    "Sure, I'll get back to you soon.",
    "Thanks for letting me know! 😊",
    "Absolutely, count me in!",
    "I'll check and confirm later.",
)


class AutoReplyTask:
    """One pending reply. cancel() is advisory: a reply already firing still completes."""

    def __init__(self, scheduler: "AutoReplyScheduler", conversation_id: str, delay: float):
        self.conversation_id = conversation_id
        self.result: Optional[Message] = None
        self.fired = False
        self.dropped = False
        self._scheduler = scheduler
        self._timer = threading.Timer(delay, self._fire)
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()
        self._scheduler._forget(self)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the task has fired or been cancelled; False on timeout."""
        self._timer.join(timeout)
        return not self._timer.is_alive()

    def _fire(self) -> None:
        self.fired = True
        try:
            self.result = self._scheduler._deliver(self.conversation_id)
        except NotFound:
            self.dropped = True
            logger.info(f"Auto-reply dropped, conversation no longer exists: {self.conversation_id}")
        except StoreError as e:
            self.dropped = True
            logger.error(f"Auto-reply to {self.conversation_id} failed: {e}")
        finally:
            self._scheduler._forget(self)


class AutoReplyScheduler:
    """
    Schedules deferred counterpart replies against a store.

    Args:
        store: Anything with a send_message(content, conversation_id, sender) method
        delay: Seconds before a reply is posted; defaults to AUTO_REPLY_DELAY_SECONDS
        replies: Pool of reply texts
        chooser: Picks one reply from the pool
    """

    def __init__(
        self,
        store,
        delay: Optional[float] = None,
        replies: Sequence[str] = CANNED_REPLIES,
        chooser: Callable[[Sequence[str]], str] = random.choice,
    ):
        self._store = store
        self._delay = settings.AUTO_REPLY_DELAY_SECONDS if delay is None else delay
        self._replies = tuple(replies)
        self._chooser = chooser
        self._lock = threading.Lock()
        self._pending: set[AutoReplyTask] = set()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def schedule(self, conversation_id: str) -> AutoReplyTask:
        task = AutoReplyTask(self, conversation_id, self._delay)
        with self._lock:
            self._pending.add(task)
        logger.debug(f"Auto-reply scheduled for {conversation_id} in {self._delay}s")
        task.start()
        return task

    def cancel_all(self) -> None:
        """Cancel every pending reply, e.g. when the owning screen goes away."""
        with self._lock:
            tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        logger.debug(f"Cancelled {len(tasks)} pending auto-replies")

    def _deliver(self, conversation_id: str) -> Message:
        content = self._chooser(self._replies)
        return self._store.send_message(content, conversation_id, sender=Sender.COUNTERPART)

    def _forget(self, task: AutoReplyTask) -> None:
        with self._lock:
            self._pending.discard(task)
