# tests/conftest.py
import pytest

from canvass.data.memory_store import InMemoryEntityStore
from canvass.events.event_interface import event_bus


@pytest.fixture(autouse=True)
def clean_event_bus():
    """Drop handlers registered by a test"""
    yield
    event_bus.clear()


@pytest.fixture
def store():
    """Create an empty in-memory store"""
    return InMemoryEntityStore()


@pytest.fixture
def events():
    """Record every event published during a test"""
    received = []
    event_bus.on_any(received.append)
    return received
