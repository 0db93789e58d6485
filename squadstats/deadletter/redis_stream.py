"""Redis Streams dead-letter sink."""
from typing import Iterable
import asyncio
import structlog
import orjson
from redis import Redis
from redis.exceptions import RedisError
from .base import DeadLetterSink, DeadLetterWriteError
from ..event_models import DeadLetterEntry, EventKind


log = structlog.get_logger()


class RedisStreamDeadLetterSink(DeadLetterSink):
    """Redis Streams implementation of the dead-letter sink.

    Each event kind gets its own stream (``squadstats:deadletter:<KIND>``).
    Streams are never trimmed; operators delete entries once handled.
    """

    def __init__(self, redis_url: str, prefix: str = "squadstats:deadletter"):
        """
        Initialize Redis stream sink.

        Args:
            redis_url: Redis connection URL
            prefix: Stream key prefix
        """
        self.redis_url = redis_url
        self.prefix = prefix
        self._client: Redis | None = None

    def _get_client(self) -> Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = Redis.from_url(
                self.redis_url,
                decode_responses=False,
                socket_connect_timeout=5,
                socket_timeout=5
            )
        return self._client

    def stream_key(self, kind: EventKind) -> str:
        return f"{self.prefix}:{kind.value}"

    async def append(self, entry: DeadLetterEntry) -> None:
        """
        Append the entry to its kind's stream.

        Raises:
            DeadLetterWriteError: If unable to write to Redis
        """
        data = orjson.dumps(entry.model_dump(mode="json"))
        key = self.stream_key(entry.event_type)
        try:
            client = self._get_client()
            await asyncio.to_thread(client.xadd, key, {"data": data}, id="*")
        except RedisError as e:
            log.error("redis.deadletter_write_failed", error=str(e), id=entry.id)
            raise DeadLetterWriteError(str(e)) from e

        log.warning(
            "deadletter.written",
            id=entry.id,
            kind=entry.event_type.value,
            count=len(entry.original_payloads),
            retry_count=entry.retry_count,
            stream=key,
            adapter="redis_stream",
        )

    async def list_recent(self, limit: int = 50) -> Iterable[DeadLetterEntry]:
        """
        List recent entries across all kinds, newest first.

        Args:
            limit: Maximum number of entries to return
        """
        try:
            client = self._get_client()
            entries = []
            for kind in EventKind:
                rows = await asyncio.to_thread(client.xrevrange, self.stream_key(kind), count=limit)
                for entry_id, fields in rows:
                    if b"data" not in fields:
                        continue
                    try:
                        entries.append(DeadLetterEntry.model_validate(orjson.loads(fields[b"data"])))
                    except ValueError as e:
                        log.warning(
                            "deadletter.unreadable",
                            stream=self.stream_key(kind),
                            entry_id=entry_id.decode(errors="replace"),
                            error=str(e),
                        )
        except RedisError as e:
            log.error("redis.deadletter_list_failed", error=str(e))
            return []

        entries.sort(key=lambda e: e.last_attempt_time, reverse=True)
        return entries[:limit]

    async def health_check(self) -> bool:
        """
        Check Redis connection health.

        Returns:
            True if Redis is accessible, False otherwise
        """
        try:
            client = self._get_client()
            return bool(await asyncio.to_thread(client.ping))
        except Exception as e:
            log.warning("redis.health_check_failed", error=str(e))
            return False

    def close(self):
        """Close Redis connection."""
        if self._client:
            self._client.close()
            self._client = None
