"""Persistence handlers: one per event kind, each run inside the caller's transaction."""
from __future__ import annotations

from datetime import timedelta
from typing import Any, Callable, Dict

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.identity import resolve_player
from ..db.models import Kill, PlayerWounded, Revive, utc_naive
from ..db.weapons import WeaponCache
from ..event_models import EventKind, FlushResult, PlayerRef, RawEvent, player_slot
from .verification import VerificationRelay, extract_code

log = structlog.get_logger()

Handler = Callable[[Session, RawEvent], FlushResult]


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _damage_type(attacker: PlayerRef | None) -> str:
    if attacker is None:
        return "environment"
    if attacker.is_vehicle:
        return "vehicle"
    if attacker.identifiable:
        return "player"
    return "environment"


def _is_teamkill(payload: Dict[str, Any], attacker: PlayerRef | None, victim: PlayerRef | None) -> bool:
    if payload.get("teamkill"):
        return True
    if attacker is None or victim is None or attacker.team_id is None:
        return False
    same_player = (
        (attacker.steam_id and attacker.steam_id == victim.steam_id)
        or (attacker.eos_id and attacker.eos_id == victim.eos_id)
    )
    return attacker.team_id == victim.team_id and not same_player


class PersistenceAdapter:
    """
    Writes one event per call into an open transaction.

    Handlers never commit. A handler that raises fails only its own event;
    the buffer decides whether to retry or dead-letter it. Missing player
    slots are skipped with a warning rather than raised.
    """

    def __init__(self, weapons: WeaponCache, relay: VerificationRelay, wound_ttl: float = 600):
        self.weapons = weapons
        self.relay = relay
        self.wound_ttl = timedelta(seconds=wound_ttl)
        self._handlers: Dict[EventKind, Handler] = {
            EventKind.PLAYER_DAMAGED: self.on_damaged,
            EventKind.PLAYER_WOUNDED: self.on_wounded,
            EventKind.PLAYER_DIED: self.on_died,
            EventKind.PLAYER_REVIVED: self.on_revived,
            EventKind.CHAT_MESSAGE: self.on_chat,
            EventKind.PLAYER_CONNECTED: self.on_connected,
            EventKind.PLAYER_DISCONNECTED: self.on_disconnected,
        }

    def handle(self, session: Session, event: RawEvent) -> FlushResult:
        """Dispatch ``event`` to the handler for its kind."""
        return self._handlers[event.type](session, event)

    def _resolve(self, session: Session, event: RawEvent, role: str, result: FlushResult, active: bool | None = None):
        player, created = resolve_player(session, player_slot(event.payload, role), event.occurred_at, active)
        if created:
            result.created += 1
        return player

    def on_damaged(self, session: Session, event: RawEvent) -> FlushResult:
        result = FlushResult()
        self._resolve(session, event, "attacker", result)
        self._resolve(session, event, "victim", result)
        result.successful = 1
        return result

    def on_wounded(self, session: Session, event: RawEvent) -> FlushResult:
        payload = event.payload
        result = FlushResult()
        attacker_ref = player_slot(payload, "attacker")
        victim_ref = player_slot(payload, "victim")

        attacker = self._resolve(session, event, "attacker", result)
        victim = self._resolve(session, event, "victim", result)
        weapon_id = self.weapons.resolve(session, payload.get("weapon"))

        session.add(
            PlayerWounded(
                server_id=event.server_id,
                attacker_id=attacker.id if attacker else None,
                victim_id=victim.id if victim else None,
                weapon_id=weapon_id,
                damage=_as_float(payload.get("damage")),
                damage_type=_damage_type(attacker_ref),
                teamkill=_is_teamkill(payload, attacker_ref, victim_ref),
                attacker_squad_id=attacker_ref.squad_id if attacker_ref else None,
                victim_squad_id=victim_ref.squad_id if victim_ref else None,
                attacker_team_id=attacker_ref.team_id if attacker_ref else None,
                victim_team_id=victim_ref.team_id if victim_ref else None,
                timestamp=utc_naive(event.occurred_at),
            )
        )
        session.flush()
        result.successful = 1
        return result

    def find_wound(self, session: Session, victim_id: int, died_at) -> PlayerWounded | None:
        """Most recent wound of ``victim_id`` at or before ``died_at`` and within the TTL."""
        died_at = utc_naive(died_at)
        return session.scalar(
            select(PlayerWounded)
            .where(
                PlayerWounded.victim_id == victim_id,
                PlayerWounded.timestamp <= died_at,
                PlayerWounded.timestamp >= died_at - self.wound_ttl,
            )
            .order_by(PlayerWounded.timestamp.desc(), PlayerWounded.id.desc())
            .limit(1)
        )

    def on_died(self, session: Session, event: RawEvent) -> FlushResult:
        payload = event.payload
        result = FlushResult()

        victim = self._resolve(session, event, "victim", result)
        if victim is None:
            log.warning("handler.died_skipped", event_id=event.id, server_id=event.server_id, reason="no victim")
            result.skipped = 1
            return result
        attacker = self._resolve(session, event, "attacker", result)

        wound = self.find_wound(session, victim.id, event.occurred_at)
        if wound is None:
            log.debug("handler.died_without_wound", event_id=event.id, victim_id=victim.id)

        teamkill = bool(payload.get("teamkill")) or bool(wound and wound.teamkill)
        session.add(
            Kill(
                server_id=event.server_id,
                attacker_id=attacker.id if attacker else (wound.attacker_id if wound else None),
                victim_id=victim.id,
                weapon_id=wound.weapon_id if wound else None,
                teamkill=teamkill,
                timestamp=utc_naive(event.occurred_at),
            )
        )
        session.flush()
        result.successful = 1
        return result

    def on_revived(self, session: Session, event: RawEvent) -> FlushResult:
        result = FlushResult()
        reviver = self._resolve(session, event, "reviver", result)
        victim = self._resolve(session, event, "victim", result)
        if reviver is None or victim is None:
            log.warning(
                "handler.revive_skipped",
                event_id=event.id,
                server_id=event.server_id,
                reason="missing reviver" if reviver is None else "missing victim",
            )
            result.skipped = 1
            return result

        session.add(
            Revive(
                server_id=event.server_id,
                reviver_id=reviver.id,
                victim_id=victim.id,
                timestamp=utc_naive(event.occurred_at),
            )
        )
        session.flush()
        result.successful = 1
        return result

    def on_chat(self, session: Session, event: RawEvent) -> FlushResult:
        result = FlushResult()
        player = self._resolve(session, event, "player", result)
        if player is None:
            result.skipped = 1
            return result

        code = extract_code(event.payload.get("message"))
        if code is not None:
            # Usually already consumed by the relay's fast path
            if self.relay.is_pending(session, code):
                self.relay.match(session, code, player)
            else:
                log.debug("verification.already_handled", code=code, player_id=player.id)
        result.successful = 1
        return result

    def on_connected(self, session: Session, event: RawEvent) -> FlushResult:
        return self._presence(session, event, active=True)

    def on_disconnected(self, session: Session, event: RawEvent) -> FlushResult:
        return self._presence(session, event, active=False)

    def _presence(self, session: Session, event: RawEvent, active: bool) -> FlushResult:
        result = FlushResult()
        player = self._resolve(session, event, "player", result, active=active)
        if player is None:
            result.skipped = 1
        else:
            result.successful = 1
        return result
