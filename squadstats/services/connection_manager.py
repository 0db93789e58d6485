"""Socket.IO client connections to game servers."""
from __future__ import annotations

import asyncio
import inspect
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List

import socketio
import structlog

from ..config import ServerConfig
from ..event_models import EventKind, RawEvent, utcnow
from ..metrics.collector import collector, EVENTS_RECEIVED_TOTAL, SERVER_STATE_CHANGES_TOTAL
from ..metrics.registry import Metrics
from .event_buffer import EventBuffer
from .verification import VerificationRelay

log = structlog.get_logger()

EventListener = Callable[[RawEvent], Any]
StateListener = Callable[[str, "ServerState"], Any]


class ServerState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    PENDING = "pending"


def default_client_factory() -> socketio.AsyncClient:
    # Reconnection is driven by ConnectionManager, not the client
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


class ServerConnection:
    """Connection state of one configured server."""

    def __init__(self, config: ServerConfig, client):
        self.config = config
        self.client = client
        self.state = ServerState.DISCONNECTED
        self.attempts = 0
        self.last_error: str | None = None
        self.connected_since: datetime | None = None
        self.reconnect_task: asyncio.Task | None = None
        self.closing = False

    @property
    def server_id(self) -> str:
        return self.config.id

    def as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "url": self.config.url,
            "attempts": self.attempts,
            "log_stats": self.config.log_stats,
            "last_error": self.last_error,
            "connected_since": self.connected_since.isoformat() if self.connected_since else None,
        }


class ConnectionManager:
    """
    Keeps one Socket.IO connection per configured game server.

    Every inbound event is tagged with the server id and receipt time and
    handed to the event buffer (only for servers with ``log_stats``). Chat
    messages also go straight to the verification relay.

    A failed connect or a dropped session is retried after a fixed
    ``reconnect_delay``. After ``max_attempts`` consecutive failures the
    server is left ``pending`` until :meth:`connect` is called again.
    Failures are contained per server.
    """

    def __init__(
        self,
        buffer: EventBuffer,
        relay: VerificationRelay | None = None,
        reconnect_delay: float = 30.0,
        max_attempts: int = 10,
        connect_timeout: float = 20.0,
        client_factory: Callable[[], Any] = default_client_factory,
        metrics: Metrics | None = None,
    ):
        self.buffer = buffer
        self.relay = relay
        self.reconnect_delay = reconnect_delay
        self.max_attempts = max_attempts
        self.connect_timeout = connect_timeout
        self.client_factory = client_factory
        self.metrics = metrics

        self._connections: Dict[str, ServerConnection] = {}
        self._event_listeners: List[EventListener] = []
        self._state_listeners: List[StateListener] = []
        self._tasks: set[asyncio.Task] = set()

    def on_event(self, handler: EventListener) -> None:
        """Register a listener called with every tagged event (sync or async)."""
        self._event_listeners.append(handler)

    def on_state_change(self, handler: StateListener) -> None:
        self._state_listeners.append(handler)

    def get(self, server_id: str) -> ServerConnection | None:
        return self._connections.get(server_id)

    # -- connecting -----------------------------------------------------------

    async def connect(self, config: ServerConfig) -> ServerConnection:
        """
        Open (or reopen) the connection for ``config``.

        Never raises for network errors; a failed first attempt schedules
        the reconnect cycle and the handle is returned in its current state.
        """
        conn = self._connections.get(config.id)
        if conn is not None and conn.state in (ServerState.CONNECTED, ServerState.CONNECTING):
            return conn
        if conn is None:
            conn = ServerConnection(config, self.client_factory())
            self._register_handlers(conn)
            self._connections[config.id] = conn

        conn.closing = False
        conn.attempts = 0
        await self._attempt(conn)
        return conn

    async def connect_all(self, configs: Iterable[ServerConfig]) -> None:
        configs = list(configs)
        log.info("servers.connecting", count=len(configs))
        await asyncio.gather(*(self.connect(config) for config in configs))

    def _register_handlers(self, conn: ServerConnection) -> None:
        client = conn.client

        async def on_connect():
            self._mark_connected(conn)

        async def on_disconnect(*args):
            self._on_disconnect(conn, args[0] if args else None)

        async def on_connect_error(data=None):
            conn.last_error = str(data)
            log.warning("server.connect_error", server_id=conn.server_id, error=str(data))

        async def on_any(event, *args):
            self._dispatch(conn, event, args[0] if args else None)

        client.on("connect", on_connect)
        client.on("disconnect", on_disconnect)
        client.on("connect_error", on_connect_error)
        client.on("*", on_any)

    async def _attempt(self, conn: ServerConnection) -> None:
        conn.attempts += 1
        self._set_state(conn, ServerState.CONNECTING)
        log.info(
            "server.connect_attempt",
            server_id=conn.server_id,
            url=conn.config.url,
            attempt=conn.attempts,
            max_attempts=self.max_attempts,
        )
        try:
            await conn.client.connect(
                conn.config.url,
                auth={"token": conn.config.auth_token},
                wait_timeout=self.connect_timeout,
            )
        except Exception as e:
            conn.last_error = str(e)
            log.warning(
                "server.connect_failed",
                server_id=conn.server_id,
                attempt=conn.attempts,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._set_state(conn, ServerState.DISCONNECTED)
            self._schedule_reconnect(conn)
            return

        if conn.closing:
            # Shutdown began while this attempt was in flight
            log.info("server.connect_abandoned", server_id=conn.server_id)
            try:
                await conn.client.disconnect()
            except Exception as e:
                log.warning("server.disconnect_failed", server_id=conn.server_id, error=str(e))
            self._set_state(conn, ServerState.DISCONNECTED)
            return

        self._mark_connected(conn)

    def _mark_connected(self, conn: ServerConnection) -> None:
        if conn.closing or conn.state is ServerState.CONNECTED:
            return
        conn.attempts = 0
        conn.last_error = None
        conn.connected_since = utcnow()
        self._set_state(conn, ServerState.CONNECTED)
        log.info("server.connected", server_id=conn.server_id, log_stats=conn.config.log_stats)

    def _on_disconnect(self, conn: ServerConnection, reason: Any = None) -> None:
        conn.connected_since = None
        was_connected = conn.state is ServerState.CONNECTED
        if conn.state is not ServerState.PENDING:
            self._set_state(conn, ServerState.DISCONNECTED)
        if conn.closing:
            log.info("server.disconnected", server_id=conn.server_id, reason="shutdown")
            return
        log.warning("server.disconnected", server_id=conn.server_id, reason=str(reason) if reason else None)
        if was_connected:
            self._schedule_reconnect(conn)

    def _schedule_reconnect(self, conn: ServerConnection) -> None:
        if conn.closing:
            return
        if conn.attempts >= self.max_attempts:
            self._set_state(conn, ServerState.PENDING)
            log.error(
                "server.pending",
                server_id=conn.server_id,
                attempts=conn.attempts,
                last_error=conn.last_error,
            )
            return
        if conn.reconnect_task is not None and not conn.reconnect_task.done():
            return
        log.info("server.reconnect_scheduled", server_id=conn.server_id, delay_s=self.reconnect_delay)
        conn.reconnect_task = self._spawn(self._reconnect_later(conn))

    async def _reconnect_later(self, conn: ServerConnection) -> None:
        await asyncio.sleep(self.reconnect_delay)
        conn.reconnect_task = None
        if conn.closing or conn.state is ServerState.CONNECTED:
            return
        await self._attempt(conn)

    def _set_state(self, conn: ServerConnection, state: ServerState) -> None:
        if conn.state is state:
            return
        previous, conn.state = conn.state, state
        collector.increment(SERVER_STATE_CHANGES_TOTAL, labels={"server": conn.server_id, "state": state.value})
        if self.metrics is not None:
            self.metrics.set_server_connected(conn.server_id, state is ServerState.CONNECTED)
        log.debug("server.state_changed", server_id=conn.server_id, previous=previous.value, state=state.value)
        for listener in self._state_listeners:
            try:
                listener(conn.server_id, state)
            except Exception as e:
                log.error("server.state_listener_failed", server_id=conn.server_id, error=str(e), exc_info=True)

    # -- inbound events -------------------------------------------------------

    def _dispatch(self, conn: ServerConnection, name: str, data: Any) -> None:
        try:
            kind = EventKind(name)
        except ValueError:
            log.debug("server.event_ignored", server_id=conn.server_id, event=name)
            return

        try:
            event = RawEvent.from_wire(kind, conn.server_id, data)
            collector.increment(EVENTS_RECEIVED_TOTAL, labels={"server": conn.server_id, "kind": kind.value})
            if self.metrics is not None:
                self.metrics.record_event_received(conn.server_id, kind.value)

            if kind is EventKind.CHAT_MESSAGE and self.relay is not None:
                self._spawn(self.relay.on_chat(event))
            if conn.config.log_stats:
                self.buffer.add_event(event)
        except Exception as e:
            log.error("server.dispatch_failed", server_id=conn.server_id, event=name, error=str(e), exc_info=True)
            return

        for listener in self._event_listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    self._spawn(result)
            except Exception as e:
                log.error("server.listener_failed", server_id=conn.server_id, event=name, error=str(e), exc_info=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- shutdown / status ----------------------------------------------------

    async def disconnect_all(self) -> None:
        for conn in self._connections.values():
            conn.closing = True
            if conn.reconnect_task is not None:
                conn.reconnect_task.cancel()
        for conn in self._connections.values():
            try:
                await conn.client.disconnect()
            except Exception as e:
                log.warning("server.disconnect_failed", server_id=conn.server_id, error=str(e))
            self._set_state(conn, ServerState.DISCONNECTED)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        log.info("servers.disconnected", count=len(self._connections))

    def status(self) -> Dict[str, Any]:
        servers = {server_id: conn.as_dict() for server_id, conn in self._connections.items()}
        states = [conn.state for conn in self._connections.values()]
        return {
            "total": len(states),
            "connected": states.count(ServerState.CONNECTED),
            "pending": states.count(ServerState.PENDING),
            "servers": servers,
        }
