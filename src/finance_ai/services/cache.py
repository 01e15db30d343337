import asyncio
import json
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from time import time
from typing import Protocol

from pydantic import ValidationError

from finance_ai.core import settings
from finance_ai.domain.merchants import cache_key_digest
from finance_ai.errors import CacheError
from finance_ai.logger import get_logger
from finance_ai.models import CacheKey, CategorizeOutput

logger = get_logger(__name__)


class CategorizationCache(Protocol):
    async def get(self, key: CacheKey) -> CategorizeOutput | None:
        ...

    async def set(self, key: CacheKey, value: CategorizeOutput) -> None:
        ...


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    total_size: int


class MemoryCategorizationCache:
    """Process-local cache, used in tests and when no data dir is configured."""

    def __init__(self, ttl_seconds: float = settings.DEFAULT_CACHE_TTL_SECONDS, clock: Callable[[], float] = time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[str, tuple[float, CategorizeOutput]] = {}

    async def get(self, key: CacheKey) -> CategorizeOutput | None:
        digest = cache_key_digest(key)
        entry = self._entries.get(digest)
        if entry is None:
            return None
        stored_at, value = entry
        if self.clock() - stored_at > self.ttl_seconds:
            del self._entries[digest]
            return None
        return value

    async def set(self, key: CacheKey, value: CategorizeOutput) -> None:
        self._entries[cache_key_digest(key)] = (self.clock(), value)

    def clear(self) -> int:
        deleted = len(self._entries)
        self._entries.clear()
        return deleted


class FileCategorizationCache:
    """
    One JSON file per cache key under ``cache_dir``.

    Entries expire after ``ttl_seconds``. Writes go through a temporary file
    and an atomic rename; a read for a key with a pending write waits for it.
    """

    def __init__(
        self,
        cache_dir: str | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time,
    ):
        self.cache_dir = cache_dir or os.path.join(settings.DATA_DIR, "cache")
        self.ttl_seconds = (
            ttl_seconds
            if ttl_seconds is not None
            else settings.get_env_int("CACHE_TTL_SECONDS", settings.DEFAULT_CACHE_TTL_SECONDS, min_value=1)
        )
        self.clock = clock
        self._pending_writes: dict[str, asyncio.Task[None]] = {}

    def _path(self, digest: str) -> str:
        return os.path.join(self.cache_dir, f"{digest}.json")

    def _is_expired(self, timestamp: float) -> bool:
        return self.clock() - timestamp > self.ttl_seconds

    def _read(self, digest: str) -> CategorizeOutput | None:
        path = self._path(digest)
        try:
            with open(path, encoding="utf-8") as handle:
                entry = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("[CACHE] Unreadable entry %s: %s", digest, e)
            return None

        if not isinstance(entry, dict):
            logger.warning("[CACHE] Malformed entry %s: expected an object", digest)
            return None
        try:
            timestamp = float(entry.get("timestamp", 0))
        except (TypeError, ValueError):
            logger.warning("[CACHE] Malformed timestamp in entry %s", digest)
            return None

        if self._is_expired(timestamp):
            try:
                os.unlink(path)
            except OSError:
                logger.debug("[CACHE] Could not remove expired entry %s", digest)
            return None

        try:
            return CategorizeOutput.model_validate(entry.get("data"))
        except ValidationError:
            logger.debug("[CACHE] Invalid payload in entry %s", digest)
            return None

    def _write(self, digest: str, value: CategorizeOutput) -> None:
        settings.ensure_dir(self.cache_dir)
        entry = {
            "data": value.model_dump(mode="json", by_alias=True),
            "timestamp": self.clock(),
        }
        fd, tmp_path = tempfile.mkstemp(dir=self.cache_dir, prefix=f"{digest}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(entry, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self._path(digest))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def get(self, key: CacheKey) -> CategorizeOutput | None:
        digest = cache_key_digest(key)
        pending = self._pending_writes.get(digest)
        if pending is not None:
            # The writer reports its own failure
            await asyncio.gather(pending, return_exceptions=True)
        return await asyncio.to_thread(self._read, digest)

    async def set(self, key: CacheKey, value: CategorizeOutput) -> None:
        digest = cache_key_digest(key)
        task = asyncio.ensure_future(asyncio.to_thread(self._write, digest, value))
        self._pending_writes[digest] = task
        try:
            await task
        except OSError as e:
            raise CacheError(f"Error writing cache entry {digest}: {e}") from e
        finally:
            if self._pending_writes.get(digest) is task:
                del self._pending_writes[digest]

    def _entry_files(self) -> list[str]:
        if not os.path.isdir(self.cache_dir):
            return []
        return [
            os.path.join(self.cache_dir, name)
            for name in os.listdir(self.cache_dir)
            if name.endswith(".json")
        ]

    def clear_expired(self) -> tuple[int, int]:
        """Remove expired and corrupt entries. Returns (cleared, errors)."""
        cleared = 0
        errors = 0
        for path in self._entry_files():
            try:
                with open(path, encoding="utf-8") as handle:
                    entry = json.load(handle)
                expired = self._is_expired(float(entry.get("timestamp", 0)))
            except (OSError, ValueError, TypeError, AttributeError):
                expired = True
            if not expired:
                continue
            try:
                os.unlink(path)
                cleared += 1
            except OSError as e:
                logger.error("[CACHE] Error deleting cache file %s: %s", path, e)
                errors += 1
        return cleared, errors

    def clear(self) -> tuple[int, int]:
        """Remove every entry. Returns (deleted, errors)."""
        deleted = 0
        errors = 0
        for path in self._entry_files():
            try:
                os.unlink(path)
                deleted += 1
            except OSError as e:
                logger.error("[CACHE] Error deleting cache file %s: %s", path, e)
                errors += 1
        return deleted, errors

    def stats(self) -> CacheStats:
        total_size = 0
        total_entries = 0
        for path in self._entry_files():
            try:
                total_size += os.path.getsize(path)
                total_entries += 1
            except OSError:
                continue
        return CacheStats(total_entries=total_entries, total_size=total_size)
