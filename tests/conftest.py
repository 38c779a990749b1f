import pytest

from meeting_copilot.store import InMemoryStore

from fakes import ScriptedGenerator


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def generator():
    return ScriptedGenerator()
