"""Shared fixtures: a throwaway SQLite database, a controllable clock and pipeline parts."""
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from squadstats.db.session import create_db_engine, create_session_factory, init_schema, run_in_transaction
from squadstats.db.weapons import WeaponCache
from squadstats.deadletter import InMemoryDeadLetterSink
from squadstats.event_models import EventKind, RawEvent
from squadstats.services.event_buffer import EventBuffer
from squadstats.services.handlers import PersistenceAdapter
from squadstats.services.verification import VerificationRelay

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'squadstats.db'}")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def relay(session_factory, clock, notifier):
    return VerificationRelay(session_factory, ttl_seconds=600, notifier=notifier, clock=clock)


@pytest.fixture
def weapons():
    return WeaponCache()


@pytest.fixture
def adapter(weapons, relay):
    return PersistenceAdapter(weapons, relay, wound_ttl=600)


@pytest.fixture
def sink():
    return InMemoryDeadLetterSink()


@pytest.fixture
def make_buffer(session_factory, adapter, sink, clock):
    """Build an EventBuffer whose timers never fire on their own during a test."""

    def _make(**overrides):
        options = dict(
            flush_interval=3600,
            max_buffer_size=100,
            max_event_age=3600,
            max_retries=3,
            retry_base_delay=3600,
            max_retry_delay=3600,
            death_delay=10,
            clock=clock,
        )
        options.update(overrides)
        buffer_adapter = options.pop("adapter", adapter)
        buffer_sink = options.pop("sink", sink)
        return EventBuffer(session_factory, buffer_adapter, buffer_sink, **options)

    return _make


@pytest.fixture
def make_event(clock):
    def _make(kind: EventKind, payload: dict, at: datetime | None = None, server_id: str = "alpha") -> RawEvent:
        at = at or clock()
        return RawEvent(type=kind, server_id=server_id, arrival_time=at, occurred_at=at, payload=payload)

    return _make


@pytest.fixture
def persist(session_factory, adapter):
    """Run one event through its handler in its own transaction."""

    def _persist(event: RawEvent):
        return run_in_transaction(session_factory, lambda session: adapter.handle(session, event))

    return _persist
