# =============================================================================
# LMS Sync Client -- Durable Queue Store
# =============================================================================
#
# Persists the full queue snapshot as one opaque record in a key-value
# backend. Reads never raise; write failures are reported to a hook and the
# caller's in-memory mirror stays authoritative.
# =============================================================================

from __future__ import annotations

import asyncio
import errno
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable
from uuid import uuid4

from . import serialization
from ._logging import logger
from .errors import StorageError
from .idempotency import build_idempotency_key
from .types import QueueItem, QueueItemKind, QueuePriority

StorageErrorHandler = Callable[[StorageError], Any]

_QUOTA_ERRNOS = frozenset({errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)})


@runtime_checkable
class KeyValueBackend(Protocol):
    """Minimal durable key-value store holding opaque byte records."""

    async def get(self, key: str) -> bytes | None: ...

    async def put(self, key: str, value: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryBackend:
    """Process-local backend. Survives nothing; used for tests and as a
    stand-in when no durable location is available."""

    def __init__(self, records: dict[str, bytes] | None = None) -> None:
        self.records: dict[str, bytes] = dict(records or {})

    async def get(self, key: str) -> bytes | None:
        return self.records.get(key)

    async def put(self, key: str, value: bytes) -> None:
        self.records[key] = value

    async def delete(self, key: str) -> None:
        self.records.pop(key, None)


class FileBackend:
    """One file per key inside *directory*.

    Writes go to a temp file in the same directory and are moved into
    place with ``os.replace`` so readers never observe a partial record.
    File I/O runs in a worker thread to keep the event loop free.
    """

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self._directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self._directory / f"{safe}.json"

    async def get(self, key: str) -> bytes | None:
        return await asyncio.to_thread(self._read, self._path(key))

    async def put(self, key: str, value: bytes) -> None:
        await asyncio.to_thread(self._write, self._path(key), value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._unlink, self._path(key))

    @staticmethod
    def _read(path: Path) -> bytes | None:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, path: Path, value: bytes) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(value)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass


def is_quota_error(exc: BaseException | None) -> bool:
    """True when *exc* looks like the backend ran out of space."""
    if exc is None:
        return False
    cause = exc.__cause__ if isinstance(exc, StorageError) else exc
    if isinstance(cause, OSError) and cause.errno in _QUOTA_ERRNOS:
        return True
    text = f"{type(cause).__name__} {cause}".lower()
    return "quota" in text or "no space" in text


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class DurableQueueStore:
    """Reads and writes the queue snapshot through a :class:`KeyValueBackend`.

    Args:
        backend: Durable record store, or ``None`` for memory-only mode
            (every write is reported as degraded once).
        key: Record key of the current snapshot.
        legacy_key: Record key of the old snapshot-list format.
        on_error: Called with a :class:`StorageError` once per degradation
            episode. Never raised into the caller.
    """

    def __init__(
        self,
        backend: KeyValueBackend | None,
        *,
        key: str,
        legacy_key: str,
        on_error: StorageErrorHandler | None = None,
    ) -> None:
        self._backend = backend
        self._key = key
        self._legacy_key = legacy_key
        self.on_error = on_error
        self._degraded = False
        self.last_error: StorageError | None = None

    @property
    def degraded(self) -> bool:
        return self._degraded

    async def read_all(self) -> list[QueueItem]:
        if self._backend is None:
            return []
        try:
            raw = await self._backend.get(self._key)
        except Exception as e:
            logger.error("Failed to read offline queue: %s", e, exc_info=True)
            return []
        if not raw:
            return []

        try:
            data = serialization.loads(raw)
        except (serialization.DecodeError, UnicodeDecodeError) as e:
            logger.warning("Offline queue record is corrupt, starting empty: %s", e)
            return []
        if not isinstance(data, list):
            logger.warning("Offline queue record has unexpected shape, starting empty")
            return []

        items = [QueueItem.from_dict(entry) for entry in data]
        valid = [item for item in items if item is not None]
        if len(valid) != len(items):
            logger.warning("Dropped %d malformed queue records", len(items) - len(valid))
        return valid

    async def write_all(self, items: list[QueueItem]) -> bool:
        """Replace the persisted snapshot. Returns False if degraded."""
        try:
            if self._backend is None:
                raise StorageError("No durable storage backend available")
            payload = serialization.dumps([item.to_dict() for item in items])
            await self._backend.put(self._key, payload)
        except Exception as e:
            self._report(e)
            return False

        if self._degraded:
            logger.info("Offline queue persistence recovered")
            self._degraded = False
            self.last_error = None
        return True

    async def migrate_legacy(self) -> list[QueueItem]:
        """Import the old snapshot-list record once, then delete it.

        Best effort: unreadable records are skipped and logged, and the
        legacy key is removed only after conversion.
        """
        if self._backend is None:
            return []
        try:
            raw = await self._backend.get(self._legacy_key)
            if not raw:
                return []
            parsed = serialization.loads(raw)
        except Exception as e:
            logger.warning("Failed to read legacy snapshots: %s", e)
            return []

        migrated = []
        if isinstance(parsed, list):
            for snapshot in parsed:
                if not isinstance(snapshot, dict):
                    continue
                try:
                    migrated.append(self._from_legacy(snapshot))
                except Exception as e:
                    logger.warning("Skipping unreadable legacy snapshot: %s", e)
            if len(migrated) != len(parsed):
                logger.warning("Dropped %d legacy snapshots", len(parsed) - len(migrated))

        try:
            await self._backend.delete(self._legacy_key)
        except Exception as e:
            logger.warning("Failed to delete legacy snapshots: %s", e)
        if migrated:
            logger.info("Migrated %d legacy progress snapshots", len(migrated))
        return migrated

    @staticmethod
    def _from_legacy(snapshot: dict[str, Any]) -> QueueItem:
        owner_id = str(snapshot.get("userId") or "")
        scope_id = str(snapshot.get("courseId") or "")
        lesson_ids = snapshot.get("lessonIds")
        return QueueItem(
            id=f"snapshot_{uuid4().hex}",
            kind=QueueItemKind.PROGRESS_SNAPSHOT,
            owner_id=owner_id,
            scope_id=scope_id,
            payload=snapshot,
            priority=QueuePriority.MEDIUM,
            enqueued_at=_as_int(snapshot.get("enqueuedAt"), int(time.time() * 1000)),
            attempts=_as_int(snapshot.get("attempts"), 0),
            idempotency_key=build_idempotency_key(
                "progress.snapshot", {"userId": owner_id, "courseId": scope_id}
            ),
            module_id=snapshot.get("lastLessonId"),
            lesson_id=lesson_ids[0] if isinstance(lesson_ids, list) and lesson_ids else None,
            action="course_snapshot",
        )

    def _report(self, exc: BaseException) -> None:
        error = exc if isinstance(exc, StorageError) else StorageError(str(exc))
        if error is not exc:
            error.__cause__ = exc
        self.last_error = error
        if self._degraded:
            logger.debug("Offline queue still memory-only: %s", exc)
            return
        self._degraded = True
        logger.warning("Offline queue persistence degraded, continuing in memory: %s", exc)
        if self.on_error is not None:
            try:
                self.on_error(error)
            except Exception:
                logger.error("Storage error handler raised", exc_info=True)
