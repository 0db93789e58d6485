"""Per-kind event buffering with size/age/interval flush triggers, retry and dead-lettering."""
from __future__ import annotations

import asyncio
import functools
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Tuple

import structlog
from sqlalchemy.orm import sessionmaker

from ..db.session import run_in_transaction
from ..deadletter import DeadLetterSink, DeadLetterWriteError
from ..event_models import EventKind, FlushResult, RawEvent, utcnow
from ..metrics.collector import (
    collector,
    EVENTS_BUFFERED_TOTAL,
    EVENTS_DEAD_LETTERED_TOTAL,
    EVENTS_FAILED_TOTAL,
    EVENTS_PERSISTED_TOTAL,
    EVENTS_RETRIED_TOTAL,
    FLUSH_LATENCY_MS,
)
from ..metrics.registry import Metrics
from .handlers import PersistenceAdapter

log = structlog.get_logger()


class _KindBuffer:
    """Live queue and retry state of one event kind."""

    def __init__(self, kind: EventKind):
        self.kind = kind
        self.events: List[RawEvent] = []
        self.lock = asyncio.Lock()
        self.retry_count = 0
        self.retry_handle: asyncio.TimerHandle | None = None
        self.flush_requested = False
        self.last_flush: datetime | None = None


class EventBuffer:
    """
    Accumulates events per kind and persists them one transaction per event.

    A kind is flushed when its queue reaches ``max_buffer_size``, when its
    oldest event is older than ``max_event_age``, and every
    ``flush_interval`` seconds. Flushes of one kind are serialized by a
    lock, so events of a kind are persisted in arrival order; different
    kinds flush independently.

    Deaths stay queued until ``death_delay`` has passed since they
    occurred, giving the matching wound time to be written first.

    Retry state is per kind: a flush with failures bumps the kind's
    counter, requeues the failed events and schedules one retry flush with
    exponential backoff. Once the counter has reached ``max_retries`` the
    failed events go to the dead-letter sink and the counter resets. A
    flush without failures also resets it.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        adapter: PersistenceAdapter,
        sink: DeadLetterSink,
        flush_interval: float = 5.0,
        max_buffer_size: int = 100,
        max_event_age: float = 10.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        death_delay: float = 10.0,
        db_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
        metrics: Metrics | None = None,
    ):
        self.session_factory = session_factory
        self.adapter = adapter
        self.sink = sink
        self.flush_interval = flush_interval
        self.max_buffer_size = max_buffer_size
        self.max_event_age = timedelta(seconds=max_event_age)
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.max_retry_delay = max_retry_delay
        self.death_delay = timedelta(seconds=death_delay)
        self.db_retries = db_retries
        self.clock = clock
        self.metrics = metrics

        self._buffers: Dict[EventKind, _KindBuffer] = {kind: _KindBuffer(kind) for kind in EventKind}
        self._tasks: set[asyncio.Task] = set()
        self._periodic: asyncio.Task | None = None
        self._closing = False

    # -- intake ---------------------------------------------------------------

    def add_event(self, event: RawEvent) -> None:
        """
        Queue ``event`` and start a flush of its kind if a trigger fires.

        Must be called from the event loop thread.
        """
        buf = self._buffers[event.type]
        buf.events.append(event)
        collector.increment(EVENTS_BUFFERED_TOTAL, labels={"kind": event.type.value})

        if self._closing:
            return
        if len(buf.events) >= self.max_buffer_size:
            self._request_flush(buf, "size")
        elif self.clock() - buf.events[0].occurred_at >= self.max_event_age:
            self._request_flush(buf, "age")

    def _request_flush(self, buf: _KindBuffer, reason: str) -> None:
        # One queued flush per kind is enough; it drains everything eligible
        if buf.flush_requested:
            return
        buf.flush_requested = True
        log.debug("buffer.flush_triggered", kind=buf.kind.value, reason=reason, size=len(buf.events))
        self._spawn(self.flush(buf.kind))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- flushing -------------------------------------------------------------

    def _drain(self, buf: _KindBuffer, force: bool) -> List[RawEvent]:
        """Swap out every eligible event; ineligible deaths stay queued."""
        if force or buf.kind is not EventKind.PLAYER_DIED:
            batch, buf.events = buf.events, []
            return batch

        cutoff = self.clock() - self.death_delay
        batch = [e for e in buf.events if e.occurred_at <= cutoff]
        buf.events = [e for e in buf.events if e.occurred_at > cutoff]
        return batch

    async def _persist(self, event: RawEvent) -> FlushResult:
        work = functools.partial(self.adapter.handle, event=event)
        return await asyncio.to_thread(run_in_transaction, self.session_factory, work, self.db_retries)

    async def flush(self, kind: EventKind, force: bool = False) -> FlushResult:
        """
        Persist the eligible events of ``kind``.

        Args:
            kind: Queue to flush
            force: Ignore the death delay and dead-letter failures at once
                (shutdown drain)

        Returns:
            Summed handler counters for this flush
        """
        buf = self._buffers[kind]
        async with buf.lock:
            buf.flush_requested = False
            batch = self._drain(buf, force)
            result = FlushResult()
            if not batch:
                return result

            started = time.monotonic()
            failed: List[Tuple[RawEvent, Exception]] = []

            for event in batch:
                try:
                    outcome = await self._persist(event)
                except Exception as e:
                    log.error(
                        "buffer.event_failed",
                        kind=kind.value,
                        event_id=event.id,
                        server_id=event.server_id,
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )
                    failed.append((event, e))
                    result.failed += 1
                    result.errors.append({"event_id": event.id, "error": str(e), "error_type": type(e).__name__})
                    continue
                result.merge(outcome)

            persisted = len(batch) - len(failed)
            dead_lettered = 0
            if failed:
                dead_lettered = await self._handle_failures(buf, failed, force)
            else:
                buf.retry_count = 0

            buf.last_flush = self.clock()
            self._record(kind, persisted, len(failed), dead_lettered, started, len(buf.events))
            log.info(
                "buffer.flush_completed",
                kind=kind.value,
                processed=len(batch),
                successful=result.successful,
                created=result.created,
                skipped=result.skipped,
                failed=result.failed,
                dead_lettered=dead_lettered,
                remaining=len(buf.events),
                retry_count=buf.retry_count,
            )
            return result

    async def _handle_failures(
        self,
        buf: _KindBuffer,
        failed: List[Tuple[RawEvent, Exception]],
        force: bool,
    ) -> int:
        """
        Requeue ``failed`` for a retry, or dead-letter it.

        Each event is dead-lettered as its own entry carrying the error it
        raised. Returns the number of entries written.
        """
        if not force and buf.retry_count < self.max_retries:
            buf.retry_count += 1
            requeued = [event for event, _ in failed]
            buf.events = sorted(requeued + buf.events, key=lambda e: e.arrival_time)
            collector.increment(EVENTS_RETRIED_TOTAL, value=len(failed), labels={"kind": buf.kind.value})
            if not self._closing:
                self._schedule_retry(buf)
            return 0

        retry_count = buf.retry_count
        buf.retry_count = 0
        written = 0
        for event, error in failed:
            try:
                await self.sink.write(buf.kind, [event], error, retry_count)
            except DeadLetterWriteError as e:
                log.critical(
                    "buffer.dead_letter_failed",
                    kind=buf.kind.value,
                    event_id=event.id,
                    error=str(e),
                    original_error=str(error),
                    payload=event.model_dump(mode="json"),
                )
                continue
            written += 1

        if written:
            collector.increment(EVENTS_DEAD_LETTERED_TOTAL, value=written, labels={"kind": buf.kind.value})
        return written

    def retry_delay(self, retry_count: int) -> float:
        return min(self.max_retry_delay, self.retry_base_delay * 2 ** (retry_count - 1))

    def _schedule_retry(self, buf: _KindBuffer) -> None:
        delay = self.retry_delay(buf.retry_count)
        if buf.retry_handle is not None:
            buf.retry_handle.cancel()
        buf.retry_handle = asyncio.get_running_loop().call_later(delay, self._retry_due, buf.kind)
        log.warning(
            "buffer.retry_scheduled",
            kind=buf.kind.value,
            retry_count=buf.retry_count,
            max_retries=self.max_retries,
            delay_s=delay,
        )

    def _retry_due(self, kind: EventKind) -> None:
        buf = self._buffers[kind]
        buf.retry_handle = None
        if not self._closing:
            self._request_flush(buf, "retry")

    def _record(self, kind: EventKind, persisted: int, failed: int, dead_lettered: int, started: float, remaining: int):
        labels = {"kind": kind.value}
        if persisted:
            collector.increment(EVENTS_PERSISTED_TOTAL, value=persisted, labels=labels)
        if failed:
            collector.increment(EVENTS_FAILED_TOTAL, value=failed, labels=labels)
        collector.record_latency(FLUSH_LATENCY_MS, started, labels=labels)
        if self.metrics is not None:
            self.metrics.record_flush(kind.value, persisted, dead_lettered, time.monotonic() - started, remaining)

    async def flush_all(self) -> FlushResult:
        """
        Drain every queue, ignoring the death delay.

        Failures are dead-lettered immediately, so nothing is left queued.
        """
        result = FlushResult()
        for kind in EventKind:
            result.merge(await self.flush(kind, force=True))
        log.info("buffer.drained", successful=result.successful, failed=result.failed)
        return result

    # -- lifecycle ------------------------------------------------------------

    async def _run_periodic(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            kinds = [kind for kind, buf in self._buffers.items() if buf.events]
            log.debug("buffer.tick", sizes=self.buffer_sizes())
            outcomes = await asyncio.gather(*(self.flush(kind) for kind in kinds), return_exceptions=True)
            for kind, outcome in zip(kinds, outcomes):
                if isinstance(outcome, Exception):
                    log.error("buffer.periodic_flush_failed", kind=kind.value, error=str(outcome))

    def start(self) -> None:
        if self._periodic is None:
            self._closing = False
            self._periodic = asyncio.get_running_loop().create_task(self._run_periodic())
            log.info("buffer.started", flush_interval=self.flush_interval, max_buffer_size=self.max_buffer_size)

    async def stop(self) -> None:
        """Stop triggers and timers and wait for in-flight flushes. Queues are left for :meth:`flush_all`."""
        self._closing = True
        if self._periodic is not None:
            self._periodic.cancel()
            try:
                await self._periodic
            except asyncio.CancelledError:
                pass
            self._periodic = None
        for buf in self._buffers.values():
            if buf.retry_handle is not None:
                buf.retry_handle.cancel()
                buf.retry_handle = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        log.info("buffer.stopped", sizes=self.buffer_sizes())

    # -- introspection --------------------------------------------------------

    def buffer_sizes(self) -> Dict[str, int]:
        return {kind.value: len(buf.events) for kind, buf in self._buffers.items()}

    def retry_counts(self) -> Dict[str, int]:
        return {kind.value: buf.retry_count for kind, buf in self._buffers.items()}

    def stats(self) -> Dict[str, dict]:
        return {
            kind.value: {
                "size": len(buf.events),
                "retry_count": buf.retry_count,
                "retry_scheduled": buf.retry_handle is not None,
                "last_flush": buf.last_flush.isoformat() if buf.last_flush else None,
            }
            for kind, buf in self._buffers.items()
        }
