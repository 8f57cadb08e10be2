"""Assertions and test doubles shared across test modules."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session


class FakeClock:
    """Controllable clock; time only moves when advance() is called."""

    def __init__(self, start: datetime = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def assert_last_activity_invariant(store) -> None:
    """Every conversation's last activity is its newest message's time, or its creation time."""
    for conversation in store.list_conversations():
        if conversation.messages:
            expected = max(m.timestamp for m in conversation.messages)
        else:
            expected = conversation.created_at
        assert conversation.last_activity_at == expected, conversation.contact_name


def assert_sorted(conversations) -> None:
    """Conversations are ordered by activity, then creation sequence, newest first."""
    keys = [(c.last_activity_at, c.seq) for c in conversations]
    assert keys == sorted(keys, reverse=True)


def names(conversations) -> list:
    return [c.contact_name for c in conversations]


@contextmanager
def failing_commits():
    """Make every session commit fail, as a full disk would, until the block exits."""
    def fail(session):
        raise OperationalError("COMMIT", {}, Exception("database or disk is full"))

    event.listen(Session, "before_commit", fail)
    try:
        yield
    finally:
        event.remove(Session, "before_commit", fail)
