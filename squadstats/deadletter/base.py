"""Base interface for dead-letter storage backends."""
from abc import ABC, abstractmethod
from typing import Iterable
import traceback
from ..event_models import DeadLetterEntry, EventKind, RawEvent


class DeadLetterWriteError(RuntimeError):
    """Raised when a dead-letter entry could not be made durable."""


class DeadLetterSink(ABC):
    """
    Append-only store for events that exhausted their retries.

    Entries are written once and read only by operators; the running
    pipeline never replays them.
    """

    async def write(
        self,
        kind: EventKind,
        events: list[RawEvent],
        error: BaseException,
        retry_count: int,
    ) -> DeadLetterEntry:
        """
        Record ``events`` together with the error that sank them.

        Args:
            kind: Event kind of the failed events
            events: Original events, payloads untouched
            error: Exception the events raised while persisting
            retry_count: Retries spent before giving up

        Returns:
            The entry as written

        Raises:
            DeadLetterWriteError: If the backend could not store the entry
        """
        entry = DeadLetterEntry(
            event_type=kind,
            original_payloads=events,
            failure_reason=str(error) or error.__class__.__name__,
            error_type=error.__class__.__name__,
            stack="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            retry_count=retry_count,
        )
        try:
            await self.append(entry)
        except DeadLetterWriteError:
            raise
        except Exception as e:
            raise DeadLetterWriteError(str(e)) from e
        return entry

    @abstractmethod
    async def append(self, entry: DeadLetterEntry) -> None:
        """
        Durably append one entry.

        Args:
            entry: Entry to store
        """
        pass

    @abstractmethod
    async def list_recent(self, limit: int = 50) -> Iterable[DeadLetterEntry]:
        """
        Retrieve recent entries, newest first (operator view).

        Args:
            limit: Maximum number of entries to return
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the backend is writable.

        Returns:
            True if backend is healthy, False otherwise
        """
        pass
