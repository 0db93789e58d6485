"""Filesystem dead-letter sink: one pretty-printed JSON file per entry."""
from pathlib import Path
from typing import Iterable
import asyncio
import os
import structlog
import orjson
from .base import DeadLetterSink, DeadLetterWriteError
from ..event_models import DeadLetterEntry

log = structlog.get_logger()


class FileDeadLetterSink(DeadLetterSink):
    """
    Writes each entry to ``<kind>_<timestamp>_<id>.json`` under a directory.

    Files are written to a temporary name, fsynced and renamed into place,
    so a reader never sees a half-written entry.
    """

    def __init__(self, directory: str | Path):
        """
        Initialize the sink.

        Args:
            directory: Target directory, created if missing

        Raises:
            DeadLetterWriteError: If the directory cannot be created
        """
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DeadLetterWriteError(f"cannot create dead-letter directory {self.directory}: {e}") from e
        log.info("deadletter.directory_ready", path=str(self.directory))

    def _filename(self, entry: DeadLetterEntry) -> str:
        stamp = entry.last_attempt_time.strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        return f"{entry.event_type.value}_{stamp}_{entry.id[:8]}.json"

    def _write(self, entry: DeadLetterEntry) -> Path:
        target = self.directory / self._filename(entry)
        tmp = target.with_suffix(".json.tmp")
        data = orjson.dumps(entry.model_dump(mode="json"), option=orjson.OPT_INDENT_2)
        with open(tmp, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, target)
        return target

    async def append(self, entry: DeadLetterEntry) -> None:
        try:
            path = await asyncio.to_thread(self._write, entry)
        except OSError as e:
            log.error("deadletter.write_failed", id=entry.id, error=str(e))
            raise DeadLetterWriteError(str(e)) from e
        log.warning(
            "deadletter.written",
            id=entry.id,
            kind=entry.event_type.value,
            count=len(entry.original_payloads),
            retry_count=entry.retry_count,
            file=path.name,
            adapter="file",
        )

    def _read_recent(self, limit: int) -> list[DeadLetterEntry]:
        files = sorted(self.directory.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        entries = []
        for path in files[:limit]:
            try:
                entries.append(DeadLetterEntry.model_validate(orjson.loads(path.read_bytes())))
            except (OSError, ValueError) as e:
                log.warning("deadletter.unreadable", file=path.name, error=str(e))
        return entries

    async def list_recent(self, limit: int = 50) -> Iterable[DeadLetterEntry]:
        return await asyncio.to_thread(self._read_recent, limit)

    async def health_check(self) -> bool:
        return self.directory.is_dir() and os.access(self.directory, os.W_OK)
