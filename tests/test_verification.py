"""Tests for the verification relay."""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from squadstats.db.identity import resolve_player
from squadstats.db.models import PlayerDiscordLink, VerificationCode
from squadstats.db.session import run_in_transaction
from squadstats.event_models import EventKind, PlayerRef
from squadstats.services.verification import (
    CODE_ALPHABET,
    MatchStatus,
    extract_code,
    generate_code,
)

STEAM = "76561198000000001"


def _links(session_factory):
    with session_factory() as session:
        return list(session.scalars(select(PlayerDiscordLink)))


def _codes(session_factory):
    with session_factory() as session:
        return list(session.scalars(select(VerificationCode.code).order_by(VerificationCode.code)))


def _chat(make_event, message, steam_id=STEAM):
    return make_event(EventKind.CHAT_MESSAGE, {"message": message, "steamID": steam_id, "name": "Alice"})


@pytest.mark.parametrize(
    "message,expected",
    [
        ("!link ABC123", "ABC123"),
        ("  !link   abc12  ", "ABC12"),
        ("!LINK XYZ789", "XYZ789"),
        ("!link ABC1234", None),
        ("!link AB", None),
        ("please !link ABC123", None),
        ("hello", None),
        (None, None),
    ],
)
def test_extract_code(message, expected):
    assert extract_code(message) == expected


def test_generate_code():
    codes = {generate_code() for _ in range(50)}
    assert all(len(code) == 6 for code in codes)
    assert all(set(code) <= set(CODE_ALPHABET) for code in codes)
    assert len(codes) > 1


@pytest.mark.asyncio
async def test_chat_code_links_once(session_factory, relay, make_event, clock, notifier):
    """A code issued a minute earlier matches from chat once and cannot be reused."""
    run_in_transaction(session_factory, lambda s: relay.store_pending(s, "discord-42", code="ABC123"))
    clock.advance(60)

    result = await relay.on_chat(_chat(make_event, "!link ABC123"))

    assert result.status is MatchStatus.MATCHED
    assert result.discord_id == "discord-42"
    assert _codes(session_factory) == []
    links = _links(session_factory)
    assert len(links) == 1
    assert links[0].player_id == result.player_id
    notifier.assert_called_once()
    assert notifier.call_args[0][0].code == "ABC123"

    again = await relay.on_chat(_chat(make_event, "!link ABC123"))

    assert again.status is MatchStatus.NOT_FOUND
    assert len(_links(session_factory)) == 1
    notifier.assert_called_once()


@pytest.mark.asyncio
async def test_expired_code(session_factory, relay, make_event, clock, notifier):
    run_in_transaction(session_factory, lambda s: relay.store_pending(s, "discord-42", code="ABC123"))
    clock.advance(601)

    result = await relay.on_chat(_chat(make_event, "!link ABC123"))

    assert result.status is MatchStatus.EXPIRED
    assert _links(session_factory) == []
    assert _codes(session_factory) == []
    notifier.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_code(relay, make_event):
    result = await relay.on_chat(_chat(make_event, "!link ZZZZZZ"))
    assert result.status is MatchStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_plain_chat_is_ignored(relay, make_event):
    assert await relay.on_chat(_chat(make_event, "gg wp")) is None


@pytest.mark.asyncio
async def test_unidentified_speaker(session_factory, relay, make_event):
    run_in_transaction(session_factory, lambda s: relay.store_pending(s, "discord-42", code="ABC123"))
    event = make_event(EventKind.CHAT_MESSAGE, {"message": "!link ABC123", "name": "anon"})

    assert await relay.on_chat(event) is None
    assert _codes(session_factory) == ["ABC123"]


def test_match_in_caller_transaction(session_factory, relay):
    run_in_transaction(session_factory, lambda s: relay.store_pending(s, "discord-7", code="QWE123"))

    def work(session):
        player, _ = resolve_player(session, PlayerRef(steam_id=STEAM, name="Alice"))
        return relay.match(session, "qwe123", player)

    result = run_in_transaction(session_factory, work)
    assert result.matched
    assert len(_links(session_factory)) == 1


def test_failed_transaction_keeps_code(session_factory, relay, notifier):
    run_in_transaction(session_factory, lambda s: relay.store_pending(s, "discord-7", code="QWE123"))

    def work(session):
        player, _ = resolve_player(session, PlayerRef(steam_id=STEAM, name="Alice"))
        relay.match(session, "QWE123", player)
        raise RuntimeError("rolled back")

    with pytest.raises(RuntimeError):
        run_in_transaction(session_factory, work)

    assert _codes(session_factory) == ["QWE123"]
    assert _links(session_factory) == []
    notifier.assert_not_called()


def test_store_pending_replaces_previous_code(session_factory, relay):
    run_in_transaction(session_factory, lambda s: relay.store_pending(s, "discord-1", code="AAAAA1"))
    run_in_transaction(session_factory, lambda s: relay.store_pending(s, "discord-1", code="BBBBB2"))
    run_in_transaction(session_factory, lambda s: relay.store_pending(s, "discord-2", code="CCCCC3"))

    assert _codes(session_factory) == ["BBBBB2", "CCCCC3"]


def test_store_pending_generates_code(session_factory, relay, clock):
    row = run_in_transaction(
        session_factory,
        lambda s: relay.store_pending(s, "discord-1", interaction_token="tok", application_id="app"),
    )
    assert len(row.code) == 6
    assert row.expires_at - row.created_at == timedelta(minutes=10)
    assert row.interaction_token == "tok"


def test_cancel(session_factory, relay):
    run_in_transaction(session_factory, lambda s: relay.store_pending(s, "discord-1", code="ABC123"))

    assert run_in_transaction(session_factory, lambda s: relay.cancel(s, "abc123")) is True
    assert run_in_transaction(session_factory, lambda s: relay.cancel(s, "ABC123")) is False
    assert _codes(session_factory) == []


def test_sweep_expired(session_factory, relay, clock):
    run_in_transaction(session_factory, lambda s: relay.store_pending(s, "discord-1", code="OLD111"))
    clock.advance(300)
    run_in_transaction(session_factory, lambda s: relay.store_pending(s, "discord-2", code="NEW222"))
    clock.advance(301)

    removed = run_in_transaction(session_factory, lambda s: relay.sweep_expired(s))

    assert removed == 1
    assert _codes(session_factory) == ["NEW222"]
    with session_factory() as session:
        assert session.scalar(select(func.count(VerificationCode.id))) == 1
