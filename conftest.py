import pytest

from storyflow.flows import FlowRegistry
from storyflow.sessions import SessionStore


@pytest.fixture
def store() -> SessionStore:
    """A fresh, empty session store per test."""
    return SessionStore()


@pytest.fixture
def registry(store: SessionStore) -> FlowRegistry:
    return FlowRegistry(store)
