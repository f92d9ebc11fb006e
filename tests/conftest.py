"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta, timezone

import pytest

from settings import Settings
from storage import Storage
from submission import SubmissionGate

START = datetime(2025, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable UTC clock shared by the store and the tests."""

    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock frozen one minute before the first sample job is due."""
    return FakeClock(START - timedelta(minutes=1))


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "postpup.db")


@pytest.fixture
def store(db_path, clock):
    """Temporary job store driven by the fake clock."""
    s = Storage(db_path, clock=clock)
    yield s
    s.close()


@pytest.fixture
def settings():
    return Settings(
        scheduling_enabled=True,
        lease_seconds=30,
        backoff_base=2,
        max_backoff_seconds=60,
        max_retries=2,
        poll_interval=0.01,
        publish_timeout_seconds=2.0,
    )


@pytest.fixture
def gate(store, settings):
    return SubmissionGate(store, settings)


@pytest.fixture
def submit(gate):
    """Submit the canonical sample job, overriding fields as needed."""
    def _submit(**overrides):
        request = {
            "draft_reference": "d1",
            "scheduled_at_utc": "2025-01-01T00:00:00Z",
            "time_zone": "UTC",
            "repeat_rule": None,
        }
        request.update(overrides)
        return gate.submit(**request)
    return _submit
