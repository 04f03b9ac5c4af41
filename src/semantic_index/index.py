"""Vector index backends.

Provides one async contract with two interchangeable implementations:
- FlatVectorIndex: in-memory numpy matrix with exact L2 search, persisted as a
  single parquet file
- SqliteVecIndex: vectors stored as float32 blobs in SQLite, searched with the
  sqlite-vec ``vec_distance_l2`` function

Both are append-only from the caller's point of view (re-adding an id
replaces its vector), reject vectors of the wrong length, clamp ``k`` to the
number of stored vectors, and return empty matches for an empty index.
Callers serialise writes per index (see ``semantic_index.lifecycle``).
"""

import asyncio
import functools
import os
import shutil
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pyarrow as pa
import pyarrow.parquet as pq
import sqlite_vec
from filelock import FileLock, Timeout
from loguru import logger

from semantic_index.errors import ConfigurationError, DimensionMismatch, IndexUnavailable
from semantic_index.keys import IndexKey, resolve_index_path
from semantic_index.manifest import IndexManifest, check_manifest, manifest_for, parse_manifest
from semantic_index.models import BackendKind, IndexStats

MANIFEST_METADATA_KEY = b"semantic_index.manifest"
DEFAULT_LOCK_TIMEOUT = 30.0

_PARQUET_SCHEMA = pa.schema([("chunk_id", pa.int64()), ("vector", pa.list_(pa.float32()))])


@dataclass(frozen=True)
class SearchMatches:
    """Nearest neighbours ordered by ascending distance (ties by id)."""

    ids: list[int] = field(default_factory=list)
    distances: list[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.ids)


class VectorIndex(ABC):
    """Abstract base class for vector index implementations."""

    backend_kind: BackendKind

    def __init__(self, key: IndexKey, location: Path | str):
        self._key = key
        self._location = Path(location)

    @property
    def key(self) -> IndexKey:
        return self._key

    @property
    def location(self) -> Path:
        return self._location

    @property
    def dimensions(self) -> int:
        return self._key.dimensions

    @property
    @abstractmethod
    def vector_count(self) -> int:
        """Number of vectors currently stored."""
        ...

    @abstractmethod
    async def create_index(self) -> None:
        """Create an empty index at the location, replacing any existing artifact.

        Raises:
            IndexUnavailable: If the artifact cannot be written
        """
        ...

    @abstractmethod
    async def load_index(self) -> None:
        """Load the index from its location, creating it if absent.

        Raises:
            IndexUnavailable: If the artifact is unreadable
            DimensionMismatch: If the artifact was created for other dimensions
        """
        ...

    @abstractmethod
    async def add_vectors(self, vectors: Sequence[Sequence[float]], ids: Sequence[int]) -> None:
        """Add vectors keyed by chunk id.

        Raises:
            ValueError: If vector and id counts differ, or ids repeat
            DimensionMismatch: If any vector has the wrong length
        """
        ...

    @abstractmethod
    async def search(self, query: Sequence[float], k: int) -> SearchMatches:
        """Return the ``k`` nearest stored vectors to ``query`` by L2 distance.

        Raises:
            DimensionMismatch: If the query has the wrong length
        """
        ...

    @abstractmethod
    async def save_index(self) -> None:
        """Persist pending changes."""
        ...

    @abstractmethod
    async def backup_index(self, path: Path | str) -> Path:
        """Write a standalone copy of the index to ``path``."""
        ...

    @abstractmethod
    async def restore_index(self, path: Path | str) -> None:
        """Replace the index contents with a backup created for the same key.

        Raises:
            IndexUnavailable: If the backup is missing or unreadable
            DimensionMismatch: If the backup was created for other dimensions
        """
        ...

    @abstractmethod
    async def reset_index(self) -> None:
        """Remove every vector, keeping the index and its dimensionality."""
        ...

    @abstractmethod
    async def cleanup(self) -> None:
        """Persist pending changes and release resources."""
        ...

    async def get_stats(self) -> IndexStats:
        """Get index statistics."""
        return IndexStats(
            vector_count=self.vector_count,
            dimensions=self.dimensions,
            backend_kind=self.backend_kind,
            location=str(self._location),
            model_name=self._key.model_name,
            document_id=self._key.document_id,
        )

    def _validate_batch(
        self, vectors: Sequence[Sequence[float]], ids: Sequence[int]
    ) -> tuple[np.ndarray, np.ndarray]:
        if len(vectors) != len(ids):
            raise ValueError(f"Got {len(vectors)} vectors but {len(ids)} ids")
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise DimensionMismatch(
                    self.dimensions, len(vector), context={"index": str(self._key)}
                )
        id_array = np.asarray(ids, dtype=np.int64)
        if len(np.unique(id_array)) != len(id_array):
            raise ValueError("Vector ids must be unique within a batch")
        matrix = np.asarray(vectors, dtype=np.float32).reshape(len(ids), self.dimensions)
        if not np.isfinite(matrix).all():
            raise ValueError("Vectors must contain only finite values")
        return matrix, id_array

    def _validate_query(self, query: Sequence[float]) -> np.ndarray:
        if len(query) != self.dimensions:
            raise DimensionMismatch(self.dimensions, len(query), context={"index": str(self._key)})
        return np.asarray(query, dtype=np.float32)


class FlatVectorIndex(VectorIndex):
    """Exact brute-force L2 index held in memory and persisted to parquet.

    The parquet file has two columns (``chunk_id``, ``vector``) and carries the
    index manifest in its schema metadata, so an empty index still records
    its dimensionality. Writes go to a temporary file that replaces the
    artifact atomically, under a per-index file lock shared across processes.
    """

    backend_kind = BackendKind.FLAT

    def __init__(
        self, key: IndexKey, location: Path | str, lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    ):
        super().__init__(key, location)
        self._lock_path = self._location.with_name(f".{self._location.name}.lock")
        self._lock_timeout = lock_timeout
        self._manifest: IndexManifest | None = None
        self._ids = np.empty(0, dtype=np.int64)
        self._vectors = np.empty((0, key.dimensions), dtype=np.float32)
        self._dirty = False

    @property
    def vector_count(self) -> int:
        return len(self._ids)

    async def create_index(self) -> None:
        self._manifest = manifest_for(self._key, self.backend_kind)
        self._ids = np.empty(0, dtype=np.int64)
        self._vectors = np.empty((0, self.dimensions), dtype=np.float32)
        await asyncio.to_thread(self._write_locked)
        logger.info(f"Created flat index {self._key} at {self._location}")

    async def load_index(self) -> None:
        if not self._location.exists():
            await self.create_index()
            return
        manifest, ids, vectors = await asyncio.to_thread(self._read_artifact, self._location)
        self._manifest, self._ids, self._vectors = manifest, ids, vectors
        self._dirty = False
        logger.debug(f"Loaded flat index {self._key} with {len(ids)} vectors")

    async def add_vectors(self, vectors: Sequence[Sequence[float]], ids: Sequence[int]) -> None:
        self._require_open()
        matrix, id_array = self._validate_batch(vectors, ids)
        if not len(id_array):
            return

        existing = np.isin(id_array, self._ids)
        if existing.any():
            position = {int(chunk_id): row for row, chunk_id in enumerate(self._ids)}
            for chunk_id, vector in zip(id_array[existing], matrix[existing], strict=True):
                self._vectors[position[int(chunk_id)]] = vector
        fresh = ~existing
        self._ids = np.concatenate([self._ids, id_array[fresh]])
        self._vectors = np.vstack([self._vectors, matrix[fresh]])
        self._dirty = True

    async def search(self, query: Sequence[float], k: int) -> SearchMatches:
        self._require_open()
        query_vector = self._validate_query(query)
        if k <= 0 or not self.vector_count:
            return SearchMatches()
        return await asyncio.to_thread(self._search, query_vector, min(k, self.vector_count))

    def _search(self, query_vector: np.ndarray, k: int) -> SearchMatches:
        distances = np.linalg.norm(self._vectors - query_vector, axis=1)
        order = np.lexsort((self._ids, distances))[:k]
        return SearchMatches(
            ids=[int(chunk_id) for chunk_id in self._ids[order]],
            distances=[float(distance) for distance in distances[order]],
        )

    async def save_index(self) -> None:
        self._require_open()
        await asyncio.to_thread(self._write_locked)

    async def backup_index(self, path: Path | str) -> Path:
        await self.save_index()
        destination = Path(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            await asyncio.to_thread(shutil.copy2, self._location, destination)
        except OSError as exc:
            raise IndexUnavailable(f"Failed to back up {self._key} to {destination}") from exc
        logger.info(f"Backed up flat index {self._key} to {destination}")
        return destination

    async def restore_index(self, path: Path | str) -> None:
        source = Path(path)
        if not source.exists():
            raise IndexUnavailable(f"Backup not found: {source}")
        manifest, ids, vectors = await asyncio.to_thread(self._read_artifact, source)
        self._manifest, self._ids, self._vectors = manifest, ids, vectors
        await asyncio.to_thread(self._write_locked)
        logger.info(f"Restored flat index {self._key} from {source} ({len(ids)} vectors)")

    async def reset_index(self) -> None:
        self._require_open()
        self._ids = np.empty(0, dtype=np.int64)
        self._vectors = np.empty((0, self.dimensions), dtype=np.float32)
        await asyncio.to_thread(self._write_locked)
        logger.info(f"Reset flat index {self._key}")

    async def cleanup(self) -> None:
        if self._manifest is not None and self._dirty:
            await self.save_index()
        self._manifest = None
        self._ids = np.empty(0, dtype=np.int64)
        self._vectors = np.empty((0, self.dimensions), dtype=np.float32)

    def _require_open(self) -> None:
        if self._manifest is None:
            raise IndexUnavailable(f"Index {self._key} is not open")

    def _write_locked(self) -> None:
        if self._manifest is None:
            raise IndexUnavailable(f"Index {self._key} is not open")
        temp_path = self._location.with_name(f".{self._location.name}.tmp")
        try:
            table = pa.table(
                {
                    "chunk_id": pa.array(self._ids, type=pa.int64()),
                    "vector": pa.array(self._vectors.tolist(), type=pa.list_(pa.float32())),
                },
                schema=_PARQUET_SCHEMA,
            )
            table = table.replace_schema_metadata(
                {MANIFEST_METADATA_KEY: self._manifest.model_dump_json().encode()}
            )
            self._location.parent.mkdir(parents=True, exist_ok=True)
            with FileLock(self._lock_path, timeout=self._lock_timeout):
                pq.write_table(table, temp_path, compression="snappy")
                os.replace(temp_path, self._location)
        except Timeout as exc:
            raise IndexUnavailable(f"Timed out waiting for write lock on {self._location}") from exc
        except (OSError, pa.ArrowException) as exc:
            raise IndexUnavailable(f"Failed to write index {self._location}") from exc
        self._dirty = False

    def _read_artifact(self, path: Path) -> tuple[IndexManifest, np.ndarray, np.ndarray]:
        try:
            table = pq.read_table(path)
        except (OSError, pa.ArrowException) as exc:
            raise IndexUnavailable(f"Failed to read index {path}", context={"error": str(exc)}) from exc

        raw_manifest = (table.schema.metadata or {}).get(MANIFEST_METADATA_KEY)
        if raw_manifest is None:
            raise IndexUnavailable(f"Index {path} has no manifest")
        manifest = parse_manifest(raw_manifest, str(path))
        check_manifest(manifest, self._key, str(path))

        frame = table.to_pandas()
        try:
            ids = frame["chunk_id"].to_numpy(dtype=np.int64)
            vectors = np.array(frame["vector"].tolist(), dtype=np.float32)
        except KeyError as exc:
            raise IndexUnavailable(f"Index {path} is missing column {exc}") from exc
        except (TypeError, ValueError) as exc:
            raise IndexUnavailable(f"Index {path} has malformed vectors") from exc
        if not len(ids):
            vectors = np.empty((0, self.dimensions), dtype=np.float32)
        elif vectors.ndim != 2 or vectors.shape[1] != self.dimensions:
            raise DimensionMismatch(
                self.dimensions, int(vectors.shape[-1]), context={"index": str(path)}
            )
        return manifest, ids, vectors



@functools.cache
def sqlite_vec_available() -> bool:
    """Whether this interpreter's sqlite3 can load the sqlite-vec extension."""
    conn = sqlite3.connect(":memory:")
    try:
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
    except (AttributeError, sqlite3.Error):
        return False
    finally:
        conn.close()
    return True


_SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS vectors (
    chunk_id INTEGER PRIMARY KEY,
    embedding BLOB NOT NULL
);
CREATE TABLE IF NOT EXISTS index_meta (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    manifest TEXT NOT NULL
);
"""


class SqliteVecIndex(VectorIndex):
    """Vectors stored as float32 blobs in SQLite, searched with sqlite-vec.

    The database holds a ``vectors`` table keyed by chunk id and a single-row
    ``index_meta`` table with the manifest. Every write runs in its own
    transaction.
    """

    backend_kind = BackendKind.SQLITE

    def __init__(self, key: IndexKey, location: Path | str):
        super().__init__(key, location)
        self._conn: sqlite3.Connection | None = None
        self._count = 0

    @property
    def vector_count(self) -> int:
        return self._count

    async def create_index(self) -> None:
        if self._location.exists():
            await self.cleanup()
            self._location.unlink()
        await asyncio.to_thread(self._open, True)
        logger.info(f"Created sqlite-vec index {self._key} at {self._location}")

    async def load_index(self) -> None:
        if not self._location.exists():
            await self.create_index()
            return
        await asyncio.to_thread(self._open, False)
        logger.debug(f"Loaded sqlite-vec index {self._key} with {self._count} vectors")

    async def add_vectors(self, vectors: Sequence[Sequence[float]], ids: Sequence[int]) -> None:
        conn = self._require_open()
        matrix, id_array = self._validate_batch(vectors, ids)
        if not len(id_array):
            return
        rows = [
            (int(chunk_id), sqlite_vec.serialize_float32(vector.tolist()))
            for chunk_id, vector in zip(id_array, matrix, strict=True)
        ]
        await asyncio.to_thread(self._insert, conn, rows)

    def _insert(self, conn: sqlite3.Connection, rows: list[tuple[int, bytes]]) -> None:
        try:
            with conn:
                conn.executemany(
                    "INSERT OR REPLACE INTO vectors (chunk_id, embedding) VALUES (?, ?)", rows
                )
            self._count = conn.execute("SELECT COUNT(*) FROM vectors").fetchone()[0]
        except sqlite3.Error as exc:
            raise IndexUnavailable(f"Failed to add vectors to {self._location}") from exc

    async def search(self, query: Sequence[float], k: int) -> SearchMatches:
        conn = self._require_open()
        query_vector = self._validate_query(query)
        if k <= 0 or not self._count:
            return SearchMatches()
        blob = sqlite_vec.serialize_float32(query_vector.tolist())
        try:
            rows = await asyncio.to_thread(
                lambda: conn.execute(
                    "SELECT chunk_id, vec_distance_l2(embedding, ?) AS distance "
                    "FROM vectors ORDER BY distance, chunk_id LIMIT ?",
                    (blob, min(k, self._count)),
                ).fetchall()
            )
        except sqlite3.Error as exc:
            raise IndexUnavailable(f"Search failed on {self._location}") from exc
        return SearchMatches(
            ids=[int(chunk_id) for chunk_id, _ in rows],
            distances=[float(distance) for _, distance in rows],
        )

    async def save_index(self) -> None:
        conn = self._require_open()
        await asyncio.to_thread(conn.commit)

    async def backup_index(self, path: Path | str) -> Path:
        conn = self._require_open()
        destination = Path(path)
        destination.parent.mkdir(parents=True, exist_ok=True)

        def _backup() -> None:
            target = sqlite3.connect(str(destination))
            try:
                conn.backup(target)
            finally:
                target.close()

        try:
            await asyncio.to_thread(_backup)
        except sqlite3.Error as exc:
            raise IndexUnavailable(f"Failed to back up {self._key} to {destination}") from exc
        logger.info(f"Backed up sqlite-vec index {self._key} to {destination}")
        return destination

    async def restore_index(self, path: Path | str) -> None:
        conn = self._require_open()
        source = Path(path)
        if not source.exists():
            raise IndexUnavailable(f"Backup not found: {source}")

        def _restore() -> None:
            backup = sqlite3.connect(str(source))
            try:
                row = backup.execute("SELECT manifest FROM index_meta WHERE id = 1").fetchone()
                if row is None:
                    raise IndexUnavailable(f"Backup {source} has no manifest")
                check_manifest(parse_manifest(row[0], str(source)), self._key, str(source))
                backup.backup(conn)
            finally:
                backup.close()
            self._count = conn.execute("SELECT COUNT(*) FROM vectors").fetchone()[0]

        try:
            await asyncio.to_thread(_restore)
        except sqlite3.Error as exc:
            raise IndexUnavailable(f"Failed to restore {self._key} from {source}") from exc
        logger.info(f"Restored sqlite-vec index {self._key} from {source} ({self._count} vectors)")

    async def reset_index(self) -> None:
        conn = self._require_open()

        def _reset() -> None:
            with conn:
                conn.execute("DELETE FROM vectors")
            self._count = 0

        await asyncio.to_thread(_reset)
        logger.info(f"Reset sqlite-vec index {self._key}")

    async def cleanup(self) -> None:
        if self._conn is not None:
            self._conn.commit()
            self._conn.close()
            self._conn = None

    def _require_open(self) -> sqlite3.Connection:
        if self._conn is None:
            raise IndexUnavailable(f"Index {self._key} is not open")
        return self._conn

    def _open(self, create: bool) -> None:
        self._location.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(str(self._location), check_same_thread=False)
        except sqlite3.Error as exc:
            raise IndexUnavailable(f"Failed to open {self._location}") from exc

        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)

            if create:
                with conn:
                    conn.executescript(_SQLITE_SCHEMA)
                    conn.execute(
                        "INSERT INTO index_meta (id, manifest) VALUES (1, ?)",
                        (manifest_for(self._key, self.backend_kind).model_dump_json(),),
                    )
            row = conn.execute("SELECT manifest FROM index_meta WHERE id = 1").fetchone()
            if row is None:
                raise IndexUnavailable(f"Index {self._location} has no manifest")
            check_manifest(parse_manifest(row[0], str(self._location)), self._key, str(self._location))
            self._count = conn.execute("SELECT COUNT(*) FROM vectors").fetchone()[0]
        except (AttributeError, sqlite3.Error) as exc:
            conn.close()
            raise IndexUnavailable(
                f"Failed to open sqlite-vec index {self._location}", context={"error": str(exc)}
            ) from exc
        except (IndexUnavailable, DimensionMismatch):
            conn.close()
            raise
        self._conn = conn


def create_vector_index(
    key: IndexKey,
    base_path: Path | str,
    backend: BackendKind | str = BackendKind.FLAT,
    location: Path | str | None = None,
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> VectorIndex:
    """Factory for the configured backend.

    Args:
        key: Index identity
        base_path: Root directory for resolved artifact paths
        backend: "flat" or "sqlite"
        location: Explicit artifact path overriding resolution
        lock_timeout: Seconds to wait for the flat index write lock

    Returns:
        Unopened index; call ``load_index`` or ``create_index``

    Raises:
        ConfigurationError: If the backend is unknown
    """
    try:
        kind = BackendKind(backend)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown index backend {backend!r}") from exc

    path = Path(location) if location is not None else resolve_index_path(base_path, key, kind)
    if kind is BackendKind.FLAT:
        return FlatVectorIndex(key, path, lock_timeout=lock_timeout)
    return SqliteVecIndex(key, path)
