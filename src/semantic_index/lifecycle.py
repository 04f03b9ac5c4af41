"""Index lifecycle management.

Opens vector indexes on demand, keeps a bounded pool of open handles, and
serialises access per index: any number of concurrent searches, or a single
writer (add + save, backup, restore, reset). The flat backend also takes a
file lock while writing so separate processes do not interleave writes.
"""

import asyncio
import contextlib
from collections import OrderedDict
from collections.abc import AsyncIterator, Sequence
from pathlib import Path

from loguru import logger

from semantic_index.errors import ConfigurationError, IndexUnavailable
from semantic_index.index import (
    DEFAULT_LOCK_TIMEOUT,
    SearchMatches,
    VectorIndex,
    create_vector_index,
    sqlite_vec_available,
)
from semantic_index.keys import IndexKey, resolve_index_path
from semantic_index.models import BackendKind, IndexStats

DEFAULT_MAX_OPEN = 20


class ReadWriteLock:
    """Asyncio lock allowing many readers or one writer."""

    def __init__(self) -> None:
        self._condition = asyncio.Condition()
        self._readers = 0
        self._writer = False

    @contextlib.asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._writer)
            self._readers += 1
        try:
            yield
        finally:
            async with self._condition:
                self._readers -= 1
                self._condition.notify_all()

    @contextlib.asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._condition:
            await self._condition.wait_for(lambda: not self._writer and self._readers == 0)
            self._writer = True
        try:
            yield
        finally:
            async with self._condition:
                self._writer = False
                self._condition.notify_all()


class IndexHandle:
    """An open vector index plus the lock guarding it."""

    def __init__(self, index: VectorIndex):
        self.index = index
        self.lock = ReadWriteLock()

    @property
    def key(self) -> IndexKey:
        return self.index.key

    @property
    def backend_kind(self) -> BackendKind:
        return self.index.backend_kind

    @property
    def location(self) -> Path:
        return self.index.location

    @property
    def vector_count(self) -> int:
        return self.index.vector_count

    @property
    def dimensions(self) -> int:
        return self.index.dimensions

    async def search(self, query: Sequence[float], k: int) -> SearchMatches:
        async with self.lock.read():
            return await self.index.search(query, k)

    async def add_vectors(self, vectors: Sequence[Sequence[float]], ids: Sequence[int]) -> None:
        """Add vectors and persist them as one serialised write."""
        async with self.lock.write():
            await self.index.add_vectors(vectors, ids)
            await self.index.save_index()

    async def backup(self, path: Path | str) -> Path:
        async with self.lock.write():
            return await self.index.backup_index(path)

    async def restore(self, path: Path | str) -> None:
        async with self.lock.write():
            await self.index.restore_index(path)

    async def reset(self) -> None:
        async with self.lock.write():
            await self.index.reset_index()

    async def stats(self) -> IndexStats:
        async with self.lock.read():
            return await self.index.get_stats()

    async def close(self) -> None:
        async with self.lock.write():
            await self.index.cleanup()


class IndexManager:
    """Pool of open index handles keyed by ``IndexKey``.

    Handles are created on first use (loading the artifact, or creating it if
    absent) and evicted least-recently-used once ``max_open`` is exceeded.

    Example:
        >>> manager = IndexManager(Path("data/vector_index"), BackendKind.FLAT)
        >>> handle = await manager.open(IndexKey("openai/text-embedding-3-small", 1536, 7))
        >>> await handle.add_vectors([[0.1] * 1536], [42])
    """

    def __init__(
        self,
        base_path: Path | str,
        backend: BackendKind | str = BackendKind.FLAT,
        max_open: int = DEFAULT_MAX_OPEN,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        if max_open < 1:
            raise ConfigurationError(f"max_open must be at least 1, got {max_open}")
        try:
            self.backend = BackendKind(backend)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown index backend {backend!r}") from exc
        if self.backend is BackendKind.SQLITE and not sqlite_vec_available():
            raise ConfigurationError(
                "The sqlite index backend needs sqlite3 extension loading, "
                "which this interpreter does not support"
            )
        self.base_path = Path(base_path)
        self.max_open = max_open
        self.lock_timeout = lock_timeout
        self._handles: OrderedDict[IndexKey, IndexHandle] = OrderedDict()
        self._open_lock = asyncio.Lock()
        self._loading: dict[IndexKey, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, key: IndexKey) -> bool:
        return key in self._handles

    def location_for(self, key: IndexKey) -> Path:
        return resolve_index_path(self.base_path, key, self.backend)

    async def open(self, key: IndexKey, location: Path | str | None = None) -> IndexHandle:
        """Get the handle for ``key``, loading or creating the index if needed.

        Loading runs outside the pool lock, so a slow artifact only delays
        callers of the same key. A pooled handle whose location differs from
        an explicit ``location`` is closed and reopened there.

        Args:
            key: Index identity
            location: Explicit artifact path (e.g. a document's stored location)

        Raises:
            IndexUnavailable: If the index cannot be opened or created
            DimensionMismatch: If the artifact on disk has other dimensions
        """
        async with self._open_lock:
            handle = await self._pooled(key, location)
            if handle is not None:
                return handle
            key_lock = self._loading.setdefault(key, asyncio.Lock())

        async with key_lock:
            async with self._open_lock:
                handle = await self._pooled(key, location)
                if handle is not None:
                    return handle

            index = create_vector_index(
                key, self.base_path, self.backend, location=location, lock_timeout=self.lock_timeout
            )
            try:
                await index.load_index()
            except OSError as exc:
                raise IndexUnavailable(f"Failed to open index {key}") from exc

            handle = IndexHandle(index)
            evicted: list[tuple[IndexKey, IndexHandle]] = []
            async with self._open_lock:
                self._handles[key] = handle
                self._loading.pop(key, None)
                logger.debug(f"Opened index {key} ({len(self._handles)}/{self.max_open} open)")
                while len(self._handles) > self.max_open:
                    evicted.append(self._handles.popitem(last=False))

        for evicted_key, evicted_handle in evicted:
            logger.debug(f"Evicting index {evicted_key} from pool")
            await evicted_handle.close()
        return handle

    async def _pooled(self, key: IndexKey, location: Path | str | None) -> IndexHandle | None:
        # Caller holds _open_lock.
        handle = self._handles.get(key)
        if handle is None:
            return None
        if location is not None and Path(location) != handle.location:
            logger.debug(f"Reopening index {key} at {location} (was {handle.location})")
            del self._handles[key]
            await handle.close()
            return None
        self._handles.move_to_end(key)
        return handle

    async def get_stats(self, key: IndexKey, location: Path | str | None = None) -> IndexStats:
        return await (await self.open(key, location)).stats()

    async def backup_index(
        self, key: IndexKey, path: Path | str, location: Path | str | None = None
    ) -> Path:
        return await (await self.open(key, location)).backup(path)

    async def restore_index(
        self, key: IndexKey, path: Path | str, location: Path | str | None = None
    ) -> None:
        await (await self.open(key, location)).restore(path)

    async def reset_index(self, key: IndexKey, location: Path | str | None = None) -> None:
        await (await self.open(key, location)).reset()

    async def close(self, key: IndexKey) -> None:
        async with self._open_lock:
            handle = self._handles.pop(key, None)
        if handle is not None:
            await handle.close()

    async def delete_index(self, key: IndexKey, location: Path | str | None = None) -> bool:
        """Close an index and remove its artifact.

        Returns:
            True if an artifact was removed
        """
        await self.close(key)
        path = Path(location) if location is not None else self.location_for(key)
        if not path.exists():
            return False
        try:
            path.unlink()
            path.with_name(f".{path.name}.lock").unlink(missing_ok=True)
        except OSError as exc:
            raise IndexUnavailable(f"Failed to delete index {path}") from exc
        logger.info(f"Deleted index {key} at {path}")
        return True

    async def close_all(self) -> None:
        async with self._open_lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            await handle.close()
