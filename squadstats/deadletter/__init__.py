"""Dead-letter storage for events that could not be persisted."""
import structlog

from .base import DeadLetterSink, DeadLetterWriteError
from .filesystem import FileDeadLetterSink
from .memory import InMemoryDeadLetterSink
from .redis_stream import RedisStreamDeadLetterSink
from ..config import Settings

log = structlog.get_logger()


def create_dead_letter_sink(settings: Settings) -> DeadLetterSink:
    """
    Create the sink selected by DEAD_LETTER_ADAPTER.

    Raises:
        DeadLetterWriteError: If the file sink directory cannot be created
    """
    if settings.DEAD_LETTER_ADAPTER == "redis":
        if not settings.REDIS_URL:
            log.warning(
                "deadletter.adapter_fallback",
                requested="redis",
                actual="file",
                reason="REDIS_URL not configured",
            )
            return FileDeadLetterSink(settings.DEAD_LETTER_PATH)

        log.info("deadletter.adapter_selected", type="redis", url=str(settings.REDIS_URL))
        return RedisStreamDeadLetterSink(str(settings.REDIS_URL))

    log.info("deadletter.adapter_selected", type="file", path=settings.DEAD_LETTER_PATH)
    return FileDeadLetterSink(settings.DEAD_LETTER_PATH)


__all__ = [
    "DeadLetterSink",
    "DeadLetterWriteError",
    "FileDeadLetterSink",
    "InMemoryDeadLetterSink",
    "RedisStreamDeadLetterSink",
    "create_dead_letter_sink",
]
