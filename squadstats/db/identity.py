"""Player identity resolution: resolve-or-create by steamID / eosID."""

from __future__ import annotations

import re
from datetime import datetime

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..event_models import PlayerRef
from .models import Player, utc_naive

log = structlog.get_logger()

MAX_NAME_LENGTH = 100
UNKNOWN_NAME = "Unknown"

_CONTROL = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_ZERO_WIDTH = re.compile(r"[\u200b-\u200f\u2060\ufeff]")
# Any surrogate left in a str is unpaired
_SURROGATE = re.compile(r"[\ud800-\udfff]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_name(name: object) -> str:
    """
    Clean a display name for storage.

    Strips control, zero-width and unpaired surrogate characters, collapses
    whitespace and truncates to 100 characters. Empty results become
    ``"Unknown"``. Applying it to its own output returns the same string.
    """
    if not isinstance(name, str):
        return UNKNOWN_NAME
    cleaned = _CONTROL.sub("", name)
    cleaned = _ZERO_WIDTH.sub("", cleaned)
    cleaned = _SURROGATE.sub("", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    cleaned = cleaned[:MAX_NAME_LENGTH].rstrip()
    return cleaned or UNKNOWN_NAME


def _matching_rows(session: Session, steam_id: str | None, eos_id: str | None) -> list[Player]:
    clauses = []
    if steam_id:
        clauses.append(Player.steam_id == steam_id)
    if eos_id:
        clauses.append(Player.eos_id == eos_id)
    if not clauses:
        return []
    return list(session.scalars(select(Player).where(or_(*clauses))).all())


def find_player(session: Session, steam_id: str | None, eos_id: str | None) -> Player | None:
    """Look a player up by whichever identifiers are present; steamID wins on conflict."""
    rows = _matching_rows(session, steam_id, eos_id)
    for row in rows:
        if steam_id and row.steam_id == steam_id:
            return row
    return rows[0] if rows else None


def resolve_player(
    session: Session,
    ref: PlayerRef | None,
    seen_at: datetime | None = None,
    active: bool | None = None,
) -> tuple[Player | None, bool]:
    """
    Resolve-or-create the identity row for ``ref``.

    Updates name and lastSeen of an existing row, and fills in whichever
    identifier was previously missing. A uniqueness violation from a
    concurrent insert is recovered by looking the row up again.

    Args:
        session: Open session; the caller owns the transaction
        ref: Player slot from the event payload
        seen_at: Sighting time (defaults to now)
        active: If given, sets the connected flag

    Returns:
        (player, created). player is None when ``ref`` has no identifiers.
    """
    if ref is None or not ref.identifiable:
        log.warning(
            "identity.skipped",
            reason="no steamID or eosID",
            name=ref.name if ref else None,
        )
        return None, False

    name = sanitize_name(ref.name)
    seen = utc_naive(seen_at)

    player = find_player(session, ref.steam_id, ref.eos_id)
    if player is None:
        player = Player(
            steam_id=ref.steam_id,
            eos_id=ref.eos_id,
            last_known_name=name,
            first_seen=seen,
            last_seen=seen,
            is_active=True if active is None else active,
        )
        try:
            with session.begin_nested():
                session.add(player)
        except IntegrityError:
            log.info("identity.insert_race", steam_id=ref.steam_id, eos_id=ref.eos_id)
            player = find_player(session, ref.steam_id, ref.eos_id)
            if player is None:
                raise
        else:
            log.debug("identity.created", player_id=player.id, steam_id=ref.steam_id)
            return player, True

    _apply_sighting(session, player, ref, name, seen, active)
    return player, False


def _apply_sighting(
    session: Session,
    player: Player,
    ref: PlayerRef,
    name: str,
    seen: datetime,
    active: bool | None,
):
    if name != UNKNOWN_NAME or not player.last_known_name:
        player.last_known_name = name
    if seen >= player.last_seen:
        player.last_seen = seen
    if active is not None:
        player.is_active = active

    # Fill a missing identifier only if no other row already owns it
    if (ref.steam_id and not player.steam_id) or (ref.eos_id and not player.eos_id):
        others = [r for r in _matching_rows(session, ref.steam_id, ref.eos_id) if r is not player]
        if others:
            log.warning(
                "identity.split_rows",
                player_id=player.id,
                other_ids=[r.id for r in others],
                steam_id=ref.steam_id,
                eos_id=ref.eos_id,
            )
            return
        if ref.steam_id and not player.steam_id:
            player.steam_id = ref.steam_id
        if ref.eos_id and not player.eos_id:
            player.eos_id = ref.eos_id
