"""Tests for the event buffer: triggers, death delay, retries and dead-lettering."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import func, select

from squadstats.db.models import Kill, Player, Revive, Weapon
from squadstats.deadletter import DeadLetterWriteError
from squadstats.event_models import EventKind, FlushResult
from squadstats.metrics.collector import collector, EVENTS_DEAD_LETTERED_TOTAL

ALICE = {"steamID": "76561198000000001", "name": "Alice"}
BOB = {"steamID": "76561198000000002", "name": "Bob"}


def _count(session_factory, model):
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(model))


def _connected(n):
    return {"player": {"steamID": f"7656119800000{n:04d}", "name": f"player{n}"}}


def _failing_adapter(error=None):
    adapter = Mock()
    adapter.handle.side_effect = error or RuntimeError("database exploded")
    return adapter


async def _settle(buffer, kind, size=0, rounds=50):
    """Yield to the loop until the kind's queue reaches ``size``."""
    for _ in range(rounds):
        if buffer.buffer_sizes()[kind.value] == size:
            return
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_events_wait_for_a_trigger(make_buffer, make_event, session_factory):
    buffer = make_buffer()
    buffer.add_event(make_event(EventKind.PLAYER_CONNECTED, _connected(1)))

    await asyncio.sleep(0)
    assert buffer.buffer_sizes()[EventKind.PLAYER_CONNECTED.value] == 1
    assert _count(session_factory, Player) == 0
    await buffer.stop()


@pytest.mark.asyncio
async def test_size_trigger_flushes_without_double_counting(make_buffer, make_event, session_factory):
    """Test that hitting max size flushes, and events added mid-flush stay queued for the next cycle."""
    buffer = make_buffer(max_buffer_size=3)
    kind = EventKind.PLAYER_CONNECTED

    for n in range(3):
        buffer.add_event(make_event(kind, _connected(n)))

    # The triggered flush drains the queue before its first database call
    await _settle(buffer, kind, size=0)
    assert buffer.buffer_sizes()[kind.value] == 0

    buffer.add_event(make_event(kind, _connected(3)))
    await buffer.stop()

    assert buffer.buffer_sizes()[kind.value] == 1
    assert _count(session_factory, Player) == 3

    await buffer.flush_all()
    assert _count(session_factory, Player) == 4


@pytest.mark.asyncio
async def test_age_trigger(make_buffer, make_event, session_factory, clock):
    buffer = make_buffer(max_event_age=10)
    stale = make_event(EventKind.PLAYER_CONNECTED, _connected(1), at=clock() - timedelta(seconds=11))

    buffer.add_event(stale)
    await buffer.stop()

    assert _count(session_factory, Player) == 1
    assert buffer.buffer_sizes()[EventKind.PLAYER_CONNECTED.value] == 0


@pytest.mark.asyncio
async def test_flush_preserves_arrival_order(make_buffer, make_event):
    adapter = Mock()
    seen = []
    adapter.handle.side_effect = lambda session, event: seen.append(event.payload["n"]) or FlushResult(successful=1)
    buffer = make_buffer(adapter=adapter)

    for n in range(10):
        buffer.add_event(make_event(EventKind.CHAT_MESSAGE, {"n": n}))
    await buffer.flush(EventKind.CHAT_MESSAGE)

    assert seen == list(range(10))
    await buffer.stop()


@pytest.mark.asyncio
async def test_death_waits_for_delay(make_buffer, make_event, session_factory, clock):
    """Test that a death is held back until the death delay has passed."""
    buffer = make_buffer(death_delay=10)
    buffer.add_event(make_event(EventKind.PLAYER_DIED, {"victim": BOB}))

    clock.advance(9)
    result = await buffer.flush(EventKind.PLAYER_DIED)
    assert result.successful == 0
    assert _count(session_factory, Kill) == 0
    assert buffer.buffer_sizes()[EventKind.PLAYER_DIED.value] == 1

    clock.advance(2)
    result = await buffer.flush(EventKind.PLAYER_DIED)
    assert result.successful == 1
    assert _count(session_factory, Kill) == 1
    assert buffer.buffer_sizes()[EventKind.PLAYER_DIED.value] == 0
    await buffer.stop()


@pytest.mark.asyncio
async def test_wound_then_death_correlates(make_buffer, make_event, session_factory, clock):
    """Wound at T with AK47, death at T+2s: one kill for the victim, weapon AK47."""
    buffer = make_buffer(death_delay=10)
    t = clock()
    buffer.add_event(
        make_event(EventKind.PLAYER_WOUNDED, {"attacker": ALICE, "victim": BOB, "weapon": "AK47", "damage": 40}, at=t)
    )
    buffer.add_event(make_event(EventKind.PLAYER_DIED, {"victim": BOB}, at=t + timedelta(seconds=2)))

    clock.advance(5)
    await buffer.flush(EventKind.PLAYER_WOUNDED)
    await buffer.flush(EventKind.PLAYER_DIED)
    assert _count(session_factory, Kill) == 0

    clock.advance(10)
    await buffer.flush(EventKind.PLAYER_DIED)

    with session_factory() as session:
        kills = list(session.scalars(select(Kill)))
        assert len(kills) == 1
        victim_id = session.scalar(select(Player.id).where(Player.steam_id == BOB["steamID"]))
        assert kills[0].victim_id == victim_id
        assert session.get(Weapon, kills[0].weapon_id).name == "AK47"
    await buffer.stop()


@pytest.mark.asyncio
async def test_exhausted_retries_dead_letter_once(make_buffer, make_event, sink):
    """A revive whose handler always fails is dead-lettered once after max_retries + 1 attempts."""
    adapter = _failing_adapter()
    buffer = make_buffer(adapter=adapter, max_retries=3)
    event = make_event(EventKind.PLAYER_REVIVED, {"reviver": ALICE, "victim": BOB})
    buffer.add_event(event)

    for expected_retry in (1, 2, 3):
        result = await buffer.flush(EventKind.PLAYER_REVIVED)
        assert result.failed == 1
        assert sink.entries == []
        assert buffer.retry_counts()[EventKind.PLAYER_REVIVED.value] == expected_retry
        assert buffer.buffer_sizes()[EventKind.PLAYER_REVIVED.value] == 1

    await buffer.flush(EventKind.PLAYER_REVIVED)

    assert adapter.handle.call_count == 4
    assert len(sink.entries) == 1
    entry = sink.entries[0]
    assert entry.event_type is EventKind.PLAYER_REVIVED
    assert entry.retry_count == 3
    assert entry.original_payloads == [event]
    assert entry.original_payloads[0].payload == {"reviver": ALICE, "victim": BOB}
    assert "database exploded" in entry.failure_reason
    assert entry.error_type == "RuntimeError"
    assert "RuntimeError" in entry.stack
    assert buffer.buffer_sizes()[EventKind.PLAYER_REVIVED.value] == 0
    assert buffer.retry_counts()[EventKind.PLAYER_REVIVED.value] == 0

    # Nothing left to retry
    await buffer.flush(EventKind.PLAYER_REVIVED)
    assert adapter.handle.call_count == 4
    assert len(sink.entries) == 1
    await buffer.stop()


@pytest.mark.asyncio
async def test_dead_letter_entry_per_event_with_its_own_error(make_buffer, make_event, sink):
    """Events failing for different reasons are each recorded with the error they raised."""
    adapter = Mock()
    adapter.handle.side_effect = [KeyError("steamID"), TimeoutError("lock wait timeout")]
    buffer = make_buffer(adapter=adapter, max_retries=0)
    first = make_event(EventKind.PLAYER_REVIVED, {"reviver": ALICE})
    second = make_event(EventKind.PLAYER_REVIVED, {"reviver": BOB})
    buffer.add_event(first)
    buffer.add_event(second)

    result = await buffer.flush(EventKind.PLAYER_REVIVED)

    assert result.failed == 2
    assert [entry.original_payloads for entry in sink.entries] == [[first], [second]]
    assert [entry.error_type for entry in sink.entries] == ["KeyError", "TimeoutError"]
    assert "steamID" in sink.entries[0].failure_reason
    assert "lock wait timeout" in sink.entries[1].failure_reason
    assert "KeyError" in sink.entries[0].stack
    assert "TimeoutError" in sink.entries[1].stack
    await buffer.stop()


@pytest.mark.asyncio
async def test_dead_letter_counter(make_buffer, make_event):
    collector.reset()
    buffer = make_buffer(adapter=_failing_adapter(), max_retries=0)
    buffer.add_event(make_event(EventKind.CHAT_MESSAGE, {"message": "x"}))

    await buffer.flush(EventKind.CHAT_MESSAGE)

    assert collector.counter_value(EVENTS_DEAD_LETTERED_TOTAL, {"kind": "CHAT_MESSAGE"}) == 1
    await buffer.stop()


@pytest.mark.asyncio
async def test_success_resets_retry_counter(make_buffer, make_event, session_factory):
    adapter = Mock()
    adapter.handle.side_effect = [RuntimeError("transient"), FlushResult(successful=1)]
    buffer = make_buffer(adapter=adapter)
    buffer.add_event(make_event(EventKind.PLAYER_CONNECTED, _connected(1)))

    await buffer.flush(EventKind.PLAYER_CONNECTED)
    assert buffer.retry_counts()[EventKind.PLAYER_CONNECTED.value] == 1

    result = await buffer.flush(EventKind.PLAYER_CONNECTED)
    assert result.successful == 1
    assert buffer.retry_counts()[EventKind.PLAYER_CONNECTED.value] == 0
    assert buffer.buffer_sizes()[EventKind.PLAYER_CONNECTED.value] == 0
    await buffer.stop()


@pytest.mark.asyncio
async def test_failing_event_does_not_block_siblings(make_buffer, make_event, session_factory, adapter):
    """Test that one bad event fails alone while the rest of the batch commits."""
    poison = make_event(EventKind.PLAYER_REVIVED, {"reviver": ALICE, "victim": BOB})
    real_handle = adapter.handle

    def handle(session, event):
        if event.id == poison.id:
            raise ValueError("malformed")
        return real_handle(session, event)

    flaky = Mock()
    flaky.handle.side_effect = handle
    buffer = make_buffer(adapter=flaky)

    buffer.add_event(make_event(EventKind.PLAYER_REVIVED, {"reviver": BOB, "victim": ALICE}))
    buffer.add_event(poison)
    buffer.add_event(make_event(EventKind.PLAYER_REVIVED, {"reviver": ALICE, "victim": BOB}))

    result = await buffer.flush(EventKind.PLAYER_REVIVED)

    assert result.successful == 2
    assert result.failed == 1
    assert result.errors[0]["event_id"] == poison.id
    assert _count(session_factory, Revive) == 2
    assert buffer.buffer_sizes()[EventKind.PLAYER_REVIVED.value] == 1
    await buffer.stop()


@pytest.mark.asyncio
async def test_retry_timer_flushes_again(make_buffer, make_event, session_factory):
    adapter = Mock()
    adapter.handle.side_effect = [RuntimeError("transient"), FlushResult(successful=1)]
    buffer = make_buffer(adapter=adapter, retry_base_delay=0.01, max_retry_delay=0.01)
    buffer.add_event(make_event(EventKind.CHAT_MESSAGE, {"message": "hello"}))

    await buffer.flush(EventKind.CHAT_MESSAGE)
    assert buffer.stats()[EventKind.CHAT_MESSAGE.value]["retry_scheduled"] is True

    for _ in range(100):
        await asyncio.sleep(0.01)
        if adapter.handle.call_count == 2 and buffer.buffer_sizes()[EventKind.CHAT_MESSAGE.value] == 0:
            break

    assert adapter.handle.call_count == 2
    assert buffer.buffer_sizes()[EventKind.CHAT_MESSAGE.value] == 0
    await buffer.stop()


def test_retry_delay_is_exponential_and_capped(make_buffer):
    buffer = make_buffer(retry_base_delay=1, max_retry_delay=30)
    assert [buffer.retry_delay(n) for n in (1, 2, 3, 4, 5, 6, 7)] == [1, 2, 4, 8, 16, 30, 30]


@pytest.mark.asyncio
async def test_flush_all_ignores_death_delay(make_buffer, make_event, session_factory):
    buffer = make_buffer(death_delay=10)
    buffer.add_event(make_event(EventKind.PLAYER_DIED, {"victim": BOB}))
    buffer.add_event(make_event(EventKind.CHAT_MESSAGE, {"message": "bye", "steamID": ALICE["steamID"]}))

    await buffer.stop()
    result = await buffer.flush_all()

    assert result.successful == 2
    assert _count(session_factory, Kill) == 1
    assert sum(buffer.buffer_sizes().values()) == 0


@pytest.mark.asyncio
async def test_flush_all_dead_letters_failures_immediately(make_buffer, make_event, sink):
    adapter = _failing_adapter()
    buffer = make_buffer(adapter=adapter, max_retries=3)
    buffer.add_event(make_event(EventKind.PLAYER_REVIVED, {"reviver": ALICE, "victim": BOB}))

    await buffer.stop()
    await buffer.flush_all()

    assert adapter.handle.call_count == 1
    assert len(sink.entries) == 1
    assert sink.entries[0].retry_count == 0
    assert sum(buffer.buffer_sizes().values()) == 0


@pytest.mark.asyncio
async def test_dead_letter_write_failure_is_contained(make_buffer, make_event):
    sink = Mock()
    sink.write = AsyncMock(side_effect=DeadLetterWriteError("disk full"))
    buffer = make_buffer(adapter=_failing_adapter(), sink=sink, max_retries=0)
    buffer.add_event(make_event(EventKind.CHAT_MESSAGE, {"message": "x"}))

    result = await buffer.flush(EventKind.CHAT_MESSAGE)

    assert result.failed == 1
    sink.write.assert_awaited_once()
    assert buffer.buffer_sizes()[EventKind.CHAT_MESSAGE.value] == 0
    await buffer.stop()


@pytest.mark.asyncio
async def test_periodic_flush(make_buffer, make_event, session_factory):
    buffer = make_buffer(flush_interval=0.01)
    buffer.start()
    buffer.add_event(make_event(EventKind.PLAYER_CONNECTED, _connected(7)))

    for _ in range(100):
        await asyncio.sleep(0.01)
        if buffer.buffer_sizes()[EventKind.PLAYER_CONNECTED.value] == 0:
            break

    await buffer.stop()
    assert _count(session_factory, Player) == 1
