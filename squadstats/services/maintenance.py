"""Background retention: prunes stale wound rows and expired verification codes."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict

import structlog
from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from ..db.models import PlayerWounded, utc_naive
from ..db.session import run_in_transaction
from ..event_models import utcnow
from .verification import VerificationRelay

log = structlog.get_logger()


def prune_wounds(session: Session, older_than: datetime) -> int:
    """Delete wound rows written before ``older_than``, matched or not."""
    result = session.execute(
        delete(PlayerWounded).where(PlayerWounded.created_at < utc_naive(older_than))
    )
    return result.rowcount


class MaintenanceWorker:
    """Runs :meth:`run_once` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        session_factory: sessionmaker,
        relay: VerificationRelay,
        wound_ttl: float = 600,
        interval: float = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.relay = relay
        self.wound_ttl = timedelta(seconds=wound_ttl)
        self.interval = interval
        self.clock = clock
        self._task: asyncio.Task | None = None

    def _sweep(self, session: Session) -> Dict[str, int]:
        now = self.clock()
        return {
            "wounds_pruned": prune_wounds(session, now - self.wound_ttl),
            "codes_expired": self.relay.sweep_expired(session, now),
        }

    async def run_once(self) -> Dict[str, int]:
        counts = await asyncio.to_thread(run_in_transaction, self.session_factory, self._sweep)
        if any(counts.values()):
            log.info("maintenance.completed", **counts)
        return counts

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception as e:
                log.error("maintenance.failed", error=str(e), exc_info=True)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._loop())
            log.info("maintenance.started", interval=self.interval, wound_ttl=self.wound_ttl.total_seconds())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
