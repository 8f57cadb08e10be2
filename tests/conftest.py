"""
Pytest configuration and shared fixtures.

Test settings are put into the environment before anything imports
chatstore.config, and the settings cache is cleared so they take effect.
"""

import os

import pytest

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["AUTO_REPLY_ENABLED"] = "false"
os.environ["SEED_SAMPLE_DATA"] = "false"

# Clear settings cache before any app imports to ensure test env vars are used
from chatstore.config import get_settings
get_settings.cache_clear()

from chatstore.store import ConversationStore  # noqa: E402
from tests.helpers import FakeClock  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock):
    """Fresh in-memory store driven by the fake clock."""
    s = ConversationStore("sqlite://", clock=clock)
    yield s
    s.close()


@pytest.fixture
def recorder(store):
    """Subscribe to the store and collect every delivered snapshot."""
    received = []
    subscription = store.subscribe(received.append)
    yield received
    subscription.cancel()
