import pytest

from signoff import persistence
from signoff.config import SignoffConfig
from signoff.orchestrator import Orchestrator
from signoff.persistence import InMemoryStateRepository
from signoff.queues import InMemoryJobQueue


@pytest.fixture
def expense_steps():
    return [
        {"kind": "AUTO", "config": {"action": "validate_data"}},
        {"kind": "HUMAN", "config": {"channel": "web", "title": "Manager approval"}},
        {"kind": "AUTO", "config": {"action": "process_payment"}, "can_replay": False},
    ]


@pytest.fixture
def auto_steps():
    return [
        {"kind": "AUTO", "config": {"action": "spell_check"}},
        {"kind": "AUTO", "config": {"action": "publish_content"}},
    ]


@pytest.fixture
def repo():
    return InMemoryStateRepository()


@pytest.fixture
def queue():
    return InMemoryJobQueue()


@pytest.fixture
def orchestrator(repo, queue):
    return Orchestrator(repo, queue, config=SignoffConfig())


@pytest.fixture(autouse=True)
def reset_repository_instance(monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.delenv("SIGNOFF_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SIGNOFF_QUEUE", raising=False)
    monkeypatch.delenv("SIGNOFF_CONFIG", raising=False)
