"""Composition root: builds and runs the ingestion pipeline."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterable

import structlog
from fastapi import Request

from ..config import ServerConfig, Settings, load_servers
from ..db.session import create_db_engine, create_session_factory, init_schema, ping
from ..db.weapons import WeaponCache
from ..deadletter import DeadLetterSink, create_dead_letter_sink
from ..metrics.registry import Metrics
from .connection_manager import ConnectionManager, default_client_factory
from .event_buffer import EventBuffer
from .handlers import PersistenceAdapter
from .maintenance import MaintenanceWorker
from .verification import MatchResult, VerificationRelay, log_notifier

log = structlog.get_logger()


class Pipeline:
    """
    Wires the connection manager, buffer, persistence adapter, dead-letter
    sink, verification relay and maintenance worker together.

    Creating the dead-letter sink is the one step allowed to fail hard: a
    pipeline that cannot dead-letter must not start.
    """

    def __init__(
        self,
        settings: Settings,
        metrics: Metrics | None = None,
        sink: DeadLetterSink | None = None,
        client_factory: Callable[[], Any] = default_client_factory,
        notifier: Callable[[MatchResult], None] = log_notifier,
    ):
        self.settings = settings
        self.metrics = metrics
        self.engine = create_db_engine(settings.DATABASE_URL)
        self.session_factory = create_session_factory(self.engine)
        self.sink = sink if sink is not None else create_dead_letter_sink(settings)

        self.weapons = WeaponCache()
        self.relay = VerificationRelay(
            self.session_factory,
            ttl_seconds=settings.VERIFICATION_TTL,
            notifier=notifier,
            db_retries=settings.DB_DEADLOCK_RETRIES,
        )
        self.adapter = PersistenceAdapter(self.weapons, self.relay, wound_ttl=settings.WOUND_TTL)
        self.buffer = EventBuffer(
            self.session_factory,
            self.adapter,
            self.sink,
            flush_interval=settings.FLUSH_INTERVAL,
            max_buffer_size=settings.MAX_BUFFER_SIZE,
            max_event_age=settings.MAX_EVENT_AGE,
            max_retries=settings.MAX_RETRIES,
            retry_base_delay=settings.RETRY_BASE_DELAY,
            max_retry_delay=settings.MAX_RETRY_DELAY,
            death_delay=settings.DEATH_DELAY,
            db_retries=settings.DB_DEADLOCK_RETRIES,
            metrics=metrics,
        )
        self.connections = ConnectionManager(
            self.buffer,
            self.relay,
            reconnect_delay=settings.RECONNECT_DELAY,
            max_attempts=settings.MAX_RECONNECT_ATTEMPTS,
            connect_timeout=settings.CONNECT_TIMEOUT,
            client_factory=client_factory,
            metrics=metrics,
        )
        self.maintenance = MaintenanceWorker(
            self.session_factory,
            self.relay,
            wound_ttl=settings.WOUND_TTL,
            interval=settings.MAINTENANCE_INTERVAL,
        )

    def _prepare_database(self) -> int:
        init_schema(self.engine)
        with self.session_factory() as session:
            return self.weapons.warm(session)

    async def start(self, servers: Iterable[ServerConfig] | None = None) -> None:
        """
        Create tables, warm caches, start the loops and connect to servers.

        Args:
            servers: Server descriptors; loaded from SERVERS_FILE when omitted

        Raises:
            ConfigError: If the server list cannot be loaded
        """
        servers = list(servers) if servers is not None else load_servers(self.settings.SERVERS_FILE)
        await asyncio.to_thread(self._prepare_database)
        self.buffer.start()
        self.maintenance.start()
        await self.connections.connect_all(servers)
        log.info("pipeline.started", servers=len(servers))

    async def stop(self) -> None:
        """Drain every buffer, close connections, then drain whatever arrived meanwhile."""
        log.info("pipeline.stopping", sizes=self.buffer.buffer_sizes())
        await self.maintenance.stop()
        await self.buffer.stop()
        await self.buffer.flush_all()
        await self.connections.disconnect_all()
        if any(self.buffer.buffer_sizes().values()):
            await self.buffer.flush_all()

        close = getattr(self.sink, "close", None)
        if close is not None:
            close()
        self.engine.dispose()
        log.info("pipeline.stopped")

    async def database_ok(self) -> bool:
        try:
            return await asyncio.to_thread(ping, self.session_factory)
        except Exception as e:
            log.warning("pipeline.database_check_failed", error=str(e))
            return False


def get_pipeline(request: Request) -> Pipeline:
    """FastAPI dependency returning the running pipeline."""
    return request.app.state.pipeline
