"""In-memory dead-letter sink."""
from typing import Iterable
import structlog
from .base import DeadLetterSink
from ..event_models import DeadLetterEntry

log = structlog.get_logger()


class InMemoryDeadLetterSink(DeadLetterSink):
    """Keeps entries in a list; for tests and throwaway runs."""

    def __init__(self):
        self.entries: list[DeadLetterEntry] = []

    async def append(self, entry: DeadLetterEntry) -> None:
        self.entries.append(entry)
        log.warning(
            "deadletter.written",
            id=entry.id,
            kind=entry.event_type.value,
            count=len(entry.original_payloads),
            adapter="memory",
        )

    async def list_recent(self, limit: int = 50) -> Iterable[DeadLetterEntry]:
        return list(reversed(self.entries))[:limit]

    async def health_check(self) -> bool:
        return True
