"""Read-only aggregate queries consumed by the bot and HTTP API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .models import Kill, Player, Revive, utc_naive


class PlayerStats(BaseModel):
    steam_id: str | None
    eos_id: str | None
    player_name: str
    kills: int
    deaths: int
    kd_ratio: float
    teamkills: int
    revives_given: int
    revives_received: int
    nemesis: str | None
    last_seen: datetime


class LeaderboardRow(BaseModel):
    player_id: int
    player_name: str
    count: int


def _since(column, since: datetime | None):
    return [column >= utc_naive(since)] if since is not None else []


def kills_by_player(session: Session, player_id: int, since: datetime | None = None) -> int:
    stmt = select(func.count(Kill.id)).where(Kill.attacker_id == player_id, *_since(Kill.timestamp, since))
    return session.scalar(stmt) or 0


def deaths_by_player(session: Session, player_id: int, since: datetime | None = None) -> int:
    stmt = select(func.count(Kill.id)).where(Kill.victim_id == player_id, *_since(Kill.timestamp, since))
    return session.scalar(stmt) or 0


def top_killers(session: Session, since: datetime, limit: int = 10) -> list[LeaderboardRow]:
    """Players with the most kills since ``since``, team kills excluded."""
    kill_count = func.count(Kill.id).label("kill_count")
    stmt = (
        select(Player.id, Player.last_known_name, kill_count)
        .join(Kill, Kill.attacker_id == Player.id)
        .where(Kill.timestamp >= utc_naive(since), Kill.teamkill.is_(False))
        .group_by(Player.id, Player.last_known_name)
        .order_by(kill_count.desc(), Player.id)
        .limit(limit)
    )
    return [
        LeaderboardRow(player_id=pid, player_name=name, count=count)
        for pid, name, count in session.execute(stmt)
    ]


def top_revivers(session: Session, since: datetime, limit: int = 10) -> list[LeaderboardRow]:
    revive_count = func.count(Revive.id).label("revive_count")
    stmt = (
        select(Player.id, Player.last_known_name, revive_count)
        .join(Revive, Revive.reviver_id == Player.id)
        .where(Revive.timestamp >= utc_naive(since))
        .group_by(Player.id, Player.last_known_name)
        .order_by(revive_count.desc(), Player.id)
        .limit(limit)
    )
    return [
        LeaderboardRow(player_id=pid, player_name=name, count=count)
        for pid, name, count in session.execute(stmt)
    ]


def player_stats(session: Session, steam_id: str, since: datetime | None = None) -> PlayerStats | None:
    """
    Summarise one player's record.

    Args:
        session: Open session
        steam_id: Steam ID of the player
        since: Only count facts at or after this time

    Returns:
        PlayerStats, or None if the player is unknown
    """
    player = session.scalar(select(Player).where(Player.steam_id == steam_id))
    if player is None:
        return None

    kills = kills_by_player(session, player.id, since)
    deaths = deaths_by_player(session, player.id, since)
    teamkills = session.scalar(
        select(func.count(Kill.id)).where(
            Kill.attacker_id == player.id, Kill.teamkill.is_(True), *_since(Kill.timestamp, since)
        )
    ) or 0
    revives_given = session.scalar(
        select(func.count(Revive.id)).where(Revive.reviver_id == player.id, *_since(Revive.timestamp, since))
    ) or 0
    revives_received = session.scalar(
        select(func.count(Revive.id)).where(Revive.victim_id == player.id, *_since(Revive.timestamp, since))
    ) or 0

    killed_by = func.count(Kill.id).label("killed_by")
    nemesis_row = session.execute(
        select(Player.last_known_name, killed_by)
        .join(Kill, Kill.attacker_id == Player.id)
        .where(
            Kill.victim_id == player.id,
            Kill.attacker_id != player.id,
            *_since(Kill.timestamp, since),
        )
        .group_by(Player.id, Player.last_known_name)
        .order_by(killed_by.desc())
        .limit(1)
    ).first()

    kd_ratio = round(kills / deaths, 2) if deaths else float(kills)

    return PlayerStats(
        steam_id=player.steam_id,
        eos_id=player.eos_id,
        player_name=player.last_known_name,
        kills=kills,
        deaths=deaths,
        kd_ratio=kd_ratio,
        teamkills=teamkills,
        revives_given=revives_given,
        revives_received=revives_received,
        nemesis=nemesis_row[0] if nemesis_row else None,
        last_seen=player.last_seen,
    )
