"""Weapon dictionary: name -> surrogate id, cached for the process lifetime."""

from __future__ import annotations

import threading

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import Weapon
from .session import add_after_commit

log = structlog.get_logger()


class WeaponCache:
    """
    Append-only weapon name cache shared by all handlers.

    Reads are lock-free. A cache miss takes a per-name lock so concurrent
    flushes do not race to insert the same weapon; a uniqueness violation
    from another process is still tolerated by re-selecting. Ids of rows
    created in the current transaction enter the cache only after commit.
    """

    def __init__(self):
        self._ids: dict[str, int] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def warm(self, session: Session) -> int:
        """Load every known weapon; returns the cache size."""
        for weapon_id, name in session.execute(select(Weapon.id, Weapon.name)):
            self._ids.setdefault(name, weapon_id)
        log.info("weapons.cache_warmed", count=len(self._ids))
        return len(self._ids)

    def get(self, name: str) -> int | None:
        return self._ids.get(name)

    def __len__(self) -> int:
        return len(self._ids)

    def resolve(self, session: Session, name: str | None) -> int | None:
        """
        Return the id for ``name``, creating the weapon row on first sighting.

        Args:
            session: Open session; the caller owns the transaction
            name: Weapon identifier from the payload (None/empty -> None)
        """
        if not name:
            return None
        cached = self._ids.get(name)
        if cached is not None:
            return cached

        with self._lock_for(name):
            cached = self._ids.get(name)
            if cached is not None:
                return cached

            weapon_id = session.scalar(select(Weapon.id).where(Weapon.name == name))
            if weapon_id is not None:
                # May still be uncommitted if created earlier in this transaction
                add_after_commit(session, lambda: self._remember(name, weapon_id))
                return weapon_id

            weapon = Weapon(name=name)
            try:
                with session.begin_nested():
                    session.add(weapon)
            except IntegrityError:
                weapon_id = session.scalar(select(Weapon.id).where(Weapon.name == name))
                if weapon_id is None:
                    raise
            else:
                weapon_id = weapon.id
                log.debug("weapons.created", name=name, weapon_id=weapon_id)

            add_after_commit(session, lambda: self._remember(name, weapon_id))
            return weapon_id

    def _remember(self, name: str, weapon_id: int):
        self._ids.setdefault(name, weapon_id)

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock
