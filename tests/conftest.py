import pytest

from notifyq.db import init_db
from notifyq.delivery import DeliveryResult
from notifyq.enqueuer import JobEnqueuer
from notifyq.repository import SqliteJobStore, SqliteJobQueue, SqliteSubscriptionRepository
from notifyq.worker import QueueWorker


class FakeDeliveryClient:
    """Records every send; outcomes are scripted per recipient email.

    ``script[email]`` is a list consumed one entry per attempt: True/False,
    a DeliveryResult, or an exception instance to raise. Once a script runs
    out (or for unscripted emails) the default outcome applies.
    """

    def __init__(self, default=True):
        self.default = default
        self.script = {}
        self.calls = []

    def send(self, kind, payload):
        email = payload.get("email")
        self.calls.append((kind, email))
        outcomes = self.script.get(email) or []
        outcome = outcomes.pop(0) if outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, DeliveryResult):
            return outcome
        return DeliveryResult(bool(outcome), None if outcome else "receiver said no")

    @property
    def emails(self):
        return [email for _, email in self.calls]


def created_payload(email="ann@example.com", **overrides):
    payload = {
        "email": email,
        "name": "Ann",
        "plan_name": "Pro",
        "start_date": "2025-01-01T00:00:00Z",
        "end_date": "2025-02-01T00:00:00Z",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "notifyq.db")
    init_db(path)
    return path


@pytest.fixture
def store(db_path):
    return SqliteJobStore(db_path)


@pytest.fixture
def queue(db_path):
    return SqliteJobQueue(db_path)


@pytest.fixture
def subscriptions(db_path):
    return SqliteSubscriptionRepository(db_path)


@pytest.fixture
def client():
    return FakeDeliveryClient()


@pytest.fixture
def worker(store, queue, client):
    # Inline drains, no pauses.
    return QueueWorker(
        store, queue, client,
        pause_seconds=0,
        sleep=lambda s: None,
        spawn=lambda fn: fn(),
    )


@pytest.fixture
def enqueuer(store, queue):
    # Not attached to a worker; tests drain explicitly.
    return JobEnqueuer(store, queue)
