"""
Tests for snapshot notifications.

Tests cover:
- Immediate delivery of the current snapshot on subscribe
- One notification per committed mutation
- Stale snapshots are never delivered after newer ones
- Cancellation and failing subscribers
- Concurrent writers and re-entrant subscribers
"""

import threading

import pytest

from chatstore.errors import InvalidArgument, NotFound
from chatstore.notifier import ChangeNotifier
from chatstore.schemas import Sender, Snapshot
from tests.helpers import assert_sorted, names


class TestSubscribe:
    """Test subscription start-up."""

    def test_receives_current_snapshot_immediately(self, store):
        """A new subscriber gets the current state before any further write."""
        store.create_conversation("Before")
        received = []

        subscription = store.subscribe(received.append)

        assert len(received) == 1
        assert received[0] == store.snapshot
        assert names(received[0].conversations) == ["Before"]
        subscription.cancel()

    def test_empty_store_snapshot(self, store, recorder):
        assert recorder[0].version == 0
        assert recorder[0].conversations == ()

    def test_late_subscriber_sees_latest_state(self, store, clock):
        first = store.create_conversation("First")
        clock.advance()
        store.create_conversation("Second")
        clock.advance()
        store.send_message("bump", first.id)
        received = []

        with store.subscribe(received.append):
            pass

        assert names(received[0].conversations) == ["First", "Second"]


class TestPublish:
    """Test notifications after writes."""

    def test_every_mutation_notifies(self, store, recorder):
        """Each committed write delivers exactly one newer snapshot."""
        conversation = store.create_conversation("Notify")
        message = store.send_message("Hi", conversation.id, sender=Sender.COUNTERPART)
        store.mark_read(conversation.id)
        store.soft_delete_message(message.id)
        store.hard_delete_message(message.id)
        store.delete_conversation(conversation.id)

        versions = [snapshot.version for snapshot in recorder]
        assert versions == list(range(0, 7))
        assert recorder[-1].conversations == ()

    def test_failed_operation_does_not_notify(self, store, recorder):
        conversation = store.create_conversation("Notify")
        delivered = len(recorder)

        with pytest.raises(NotFound):
            store.send_message("x", "missing")
        with pytest.raises(InvalidArgument):
            store.send_message("", conversation.id)
        with pytest.raises(NotFound):
            store.hard_delete_message("missing")

        assert len(recorder) == delivered

    def test_snapshots_reflect_committed_state(self, store, recorder, clock):
        """Each snapshot is sorted and carries the conversation that just changed."""
        a = store.create_conversation("A")
        clock.advance()
        b = store.create_conversation("B")
        clock.advance()
        store.send_message("to A", a.id)
        clock.advance()
        store.send_message("to B", b.id)

        for snapshot in recorder:
            assert_sorted(snapshot.conversations)
        assert names(recorder[-2].conversations) == ["A", "B"]
        assert names(recorder[-1].conversations) == ["B", "A"]

    def test_soft_delete_publishes_updated_preview_data(self, store, recorder):
        """A soft delete publishes even though ordering does not change."""
        conversation = store.create_conversation("Preview")
        message = store.send_message("Secret", conversation.id)
        delivered = len(recorder)

        store.soft_delete_message(message.id)

        assert len(recorder) == delivered + 1
        latest = recorder[-1].conversations[0].messages[-1]
        assert latest.is_removed is True
        assert latest.content is None


class TestSubscriptionLifecycle:
    """Test cancellation and error isolation."""

    def test_cancel_stops_delivery(self, store):
        received = []
        subscription = store.subscribe(received.append)
        subscription.cancel()

        store.create_conversation("Unseen")

        assert len(received) == 1
        assert subscription.active is False
        assert len(store.notifier) == 0

    def test_cancel_twice_is_safe(self, store):
        subscription = store.subscribe(lambda snapshot: None)
        subscription.cancel()
        subscription.cancel()
        assert len(store.notifier) == 0

    def test_context_manager_cancels(self, store):
        received = []
        with store.subscribe(received.append):
            store.create_conversation("Seen")
        store.create_conversation("Unseen")

        assert [len(s.conversations) for s in received] == [0, 1]

    def test_failing_subscriber_does_not_block_others(self, store):
        """A subscriber that raises is logged; others and the writer carry on."""
        def explode(snapshot):
            raise RuntimeError("boom")

        received = []
        store.subscribe(explode)
        store.subscribe(received.append)

        conversation = store.create_conversation("Still works")

        assert store.get_conversation(conversation.id).contact_name == "Still works"
        assert received[-1].version == store.snapshot.version


class TestOrderingGuarantees:
    """Test that subscribers never go back in time."""

    def test_stale_snapshot_dropped(self):
        """A snapshot older than one already delivered is skipped."""
        notifier = ChangeNotifier()
        received = []
        notifier.register(received.append)

        notifier.publish(Snapshot(version=2))
        notifier.publish(Snapshot(version=1))
        notifier.publish(Snapshot(version=2))
        notifier.publish(Snapshot(version=3))

        assert [s.version for s in received] == [2, 3]

    def test_burst_coalesces_while_callback_runs(self):
        """Snapshots published during a slow callback collapse to the newest one."""
        notifier = ChangeNotifier()
        received = []
        in_callback = threading.Event()
        release = threading.Event()

        def slow(snapshot):
            received.append(snapshot.version)
            if snapshot.version == 1:
                in_callback.set()
                release.wait(timeout=5)

        notifier.register(slow)
        worker = threading.Thread(target=notifier.publish, args=(Snapshot(version=1),))
        worker.start()
        assert in_callback.wait(timeout=5)

        for version in range(2, 6):
            notifier.publish(Snapshot(version=version))
        release.set()
        worker.join(timeout=5)

        assert received == [1, 5]

    def test_concurrent_writers(self, store):
        """Under concurrent writes every subscriber sees increasing versions ending at the final state."""
        conversations = [store.create_conversation(f"Thread {i}") for i in range(4)]
        received = []
        lock = threading.Lock()

        def record(snapshot):
            with lock:
                received.append(snapshot)

        store.subscribe(record)
        barrier = threading.Barrier(len(conversations))

        def writer(conversation_id):
            barrier.wait(timeout=5)
            for n in range(25):
                store.send_message(f"message {n}", conversation_id)

        threads = [threading.Thread(target=writer, args=(c.id,)) for c in conversations]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        versions = [snapshot.version for snapshot in received]
        assert versions == sorted(set(versions))
        assert received[-1].version == store.snapshot.version
        assert sum(len(c.messages) for c in received[-1].conversations) == 100
        for snapshot in received:
            assert_sorted(snapshot.conversations)
        for conversation in store.list_conversations():
            assert [m.content for m in conversation.messages] == [f"message {n}" for n in range(25)]

    def test_subscriber_can_write_back(self, store):
        """A subscriber may call the write API from its callback without deadlocking."""
        conversation = store.create_conversation("Open chat")

        def read_everything(snapshot):
            for c in snapshot.conversations:
                if c.id == conversation.id and any(
                    m.sender == Sender.COUNTERPART and m.status.name != "READ" for m in c.messages
                ):
                    store.mark_read(c.id)

        store.subscribe(read_everything)
        store.send_message("Ping", conversation.id, sender=Sender.COUNTERPART)

        assert all(m.status.name == "READ" for m in store.list_messages(conversation.id))
