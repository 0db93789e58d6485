"""Verification relay: links an in-game player to a Discord account via a chat code."""
from __future__ import annotations

import asyncio
import re
import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

import structlog
from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from ..db.identity import resolve_player
from ..db.models import Player, PlayerDiscordLink, VerificationCode, utc_naive
from ..db.session import add_after_commit, run_in_transaction
from ..event_models import EventKind, RawEvent, player_slot, utcnow

log = structlog.get_logger()

# No 0/O or 1/I/L
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6
LINK_COMMAND = re.compile(r"^\s*!link\s+([A-Za-z0-9]{5,6})\s*$", re.IGNORECASE)


class MatchStatus(str, Enum):
    MATCHED = "matched"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


class MatchResult(BaseModel):
    status: MatchStatus
    code: str
    player_id: int | None = None
    discord_id: str | None = None
    interaction_token: str | None = None
    application_id: str | None = None

    @property
    def matched(self) -> bool:
        return self.status is MatchStatus.MATCHED


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def extract_code(message: object) -> str | None:
    """Return the upper-cased code of a ``!link CODE`` chat message, if it is one."""
    if not isinstance(message, str):
        return None
    m = LINK_COMMAND.match(message)
    return m.group(1).upper() if m else None


def log_notifier(result: MatchResult) -> None:
    log.info(
        "verification.linked",
        code=result.code,
        player_id=result.player_id,
        discord_id=result.discord_id,
    )


class VerificationRelay:
    """
    Owns the lifecycle of verification codes.

    A code is issued by :meth:`store_pending` and leaves the table exactly
    once: matched from chat, cancelled, or swept after expiry. Deleting the
    row is the transition, so a second attempt on the same code finds
    nothing and returns ``NOT_FOUND``.

    The notifier runs after the match has committed, in whatever thread ran
    the transaction.
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        ttl_seconds: float = 600,
        notifier: Callable[[MatchResult], None] = log_notifier,
        clock: Callable[[], datetime] = utcnow,
        db_retries: int = 3,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds)
        self.notifier = notifier
        self.clock = clock
        self.db_retries = db_retries

    def _now(self) -> datetime:
        return utc_naive(self.clock())

    def store_pending(
        self,
        session: Session,
        discord_id: str,
        code: str | None = None,
        interaction_token: str | None = None,
        application_id: str | None = None,
    ) -> VerificationCode:
        """
        Issue a code for ``discord_id``, replacing any code it already holds.

        Args:
            session: Open session; the caller owns the transaction
            discord_id: Account that asked to be linked
            code: Explicit code (generated when omitted)
            interaction_token: Response target for the notification
            application_id: Response target for the notification
        """
        session.execute(delete(VerificationCode).where(VerificationCode.discord_id == discord_id))

        if code is None:
            code = generate_code()
            while session.scalar(select(VerificationCode.id).where(VerificationCode.code == code)):
                code = generate_code()
        code = code.upper()

        now = self._now()
        row = VerificationCode(
            code=code,
            discord_id=discord_id,
            interaction_token=interaction_token,
            application_id=application_id,
            created_at=now,
            expires_at=now + self.ttl,
        )
        session.add(row)
        session.flush()
        log.info("verification.issued", code=code, discord_id=discord_id, expires_at=row.expires_at.isoformat())
        return row

    def is_pending(self, session: Session, code: str) -> bool:
        return session.scalar(select(VerificationCode.id).where(VerificationCode.code == code.upper())) is not None

    def match(self, session: Session, code: str, player: Player) -> MatchResult:
        """
        Consume ``code`` for ``player`` inside the caller's transaction.

        Returns:
            MATCHED with the link target, EXPIRED if the code outlived its
            TTL (the code is consumed either way), or NOT_FOUND.
        """
        code = code.upper()
        row = session.scalar(select(VerificationCode).where(VerificationCode.code == code))
        if row is None:
            log.info("verification.invalid", code=code, player_id=player.id, reason="not_found")
            return MatchResult(status=MatchStatus.NOT_FOUND, code=code)

        row_id, discord_id, expires_at = row.id, row.discord_id, row.expires_at
        interaction_token, application_id = row.interaction_token, row.application_id

        # A concurrent match may already have removed the row
        consumed = session.execute(delete(VerificationCode).where(VerificationCode.id == row_id)).rowcount
        if consumed != 1:
            log.info("verification.invalid", code=code, player_id=player.id, reason="already_consumed")
            return MatchResult(status=MatchStatus.NOT_FOUND, code=code)

        if expires_at <= self._now():
            log.info("verification.invalid", code=code, player_id=player.id, reason="expired")
            return MatchResult(status=MatchStatus.EXPIRED, code=code, discord_id=discord_id)

        link = session.get(PlayerDiscordLink, (player.id, discord_id))
        if link is None:
            session.add(PlayerDiscordLink(player_id=player.id, discord_id=discord_id, linked_at=self._now()))
        else:
            link.linked_at = self._now()

        result = MatchResult(
            status=MatchStatus.MATCHED,
            code=code,
            player_id=player.id,
            discord_id=discord_id,
            interaction_token=interaction_token,
            application_id=application_id,
        )
        add_after_commit(session, lambda: self.notifier(result))
        return result

    def cancel(self, session: Session, code: str) -> bool:
        """Withdraw a pending code. Returns False if it was not pending."""
        code = code.upper()
        removed = session.execute(delete(VerificationCode).where(VerificationCode.code == code)).rowcount
        if removed:
            log.info("verification.cancelled", code=code)
        else:
            log.info("verification.invalid", code=code, reason="cancel_not_pending")
        return bool(removed)

    def sweep_expired(self, session: Session, now: datetime | None = None) -> int:
        now = utc_naive(now) if now is not None else self._now()
        removed = session.execute(delete(VerificationCode).where(VerificationCode.expires_at <= now)).rowcount
        if removed:
            log.info("verification.expired_swept", count=removed)
        return removed

    def match_chat(self, session: Session, event: RawEvent) -> MatchResult | None:
        """Resolve the speaker and consume the code in their chat message, if any."""
        code = extract_code(event.payload.get("message"))
        if code is None:
            return None
        player, _ = resolve_player(session, player_slot(event.payload, "player"), seen_at=event.occurred_at)
        if player is None:
            log.warning("verification.unidentified_speaker", code=code, server_id=event.server_id)
            return None
        return self.match(session, code, player)

    async def on_chat(self, event: RawEvent) -> MatchResult | None:
        """
        Match a chat message as soon as it arrives, without waiting for a flush.

        Errors are logged and swallowed; the buffered chat handler gets
        another chance at the same code.
        """
        if event.type is not EventKind.CHAT_MESSAGE or self.session_factory is None:
            return None
        if extract_code(event.payload.get("message")) is None:
            return None
        try:
            return await asyncio.to_thread(
                run_in_transaction,
                self.session_factory,
                lambda session: self.match_chat(session, event),
                self.db_retries,
            )
        except Exception as e:
            log.error("verification.fast_path_failed", event_id=event.id, error=str(e), exc_info=True)
            return None
