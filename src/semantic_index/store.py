"""Record store for documents and chunks.

The engine only needs a narrow repository contract (``RecordStore``).
``SqliteRecordStore`` implements it on the standard library's sqlite3 with
a ``UNIQUE(document_id, content_hash)`` constraint, so inserting a duplicate
chunk is a no-op that returns the existing row.
"""

import json
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from semantic_index.errors import DocumentNotFound, SemanticIndexError
from semantic_index.models import Chunk, Document, ModelKey


class RecordStore(Protocol):
    """Repository contract consumed by the engine."""

    def add_document(self, document: Document) -> Document: ...

    def get_document(self, document_id: int) -> Document | None: ...

    def set_document_model(self, document_id: int, model: ModelKey) -> None: ...

    def save_chunk(self, chunk: Chunk) -> Chunk: ...

    def find_chunk_by_hash(self, content_hash: str, document_id: int) -> Chunk | None: ...

    def get_chunks_by_ids(self, chunk_ids: Iterable[int]) -> list[Chunk]: ...

    def get_document_chunks(self, document_id: int) -> list[Chunk]: ...

    def update_chunk_embedding_ref(self, chunk_id: int, ref: str, dimensions: int) -> None: ...

    def clear_embedding_refs(self, document_id: int) -> int: ...

    def get_documents_with_embeddings(self) -> list[Document]: ...

    def get_document_model_config(self, document_id: int) -> ModelKey | None: ...

    def delete_document_chunks(self, document_id: int) -> int: ...


_SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    content_type TEXT NOT NULL,
    file_type TEXT,
    embedding_model TEXT,
    embedding_dimensions INTEGER,
    index_location TEXT,
    metadata TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id INTEGER NOT NULL,
    chunk_index INTEGER NOT NULL,
    content TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    token_estimate INTEGER NOT NULL,
    start_offset INTEGER NOT NULL,
    end_offset INTEGER NOT NULL,
    page_number INTEGER,
    embedding_ref TEXT,
    vector_dimensions INTEGER,
    created_at TEXT NOT NULL,
    FOREIGN KEY (document_id) REFERENCES documents(id) ON DELETE CASCADE,
    UNIQUE (document_id, content_hash)
);

CREATE INDEX IF NOT EXISTS idx_chunks_document_id ON chunks(document_id);
"""

_CHUNK_COLUMNS = (
    "id, document_id, chunk_index, content, content_hash, token_estimate, start_offset, "
    "end_offset, page_number, embedding_ref, vector_dimensions, created_at"
)
_DOCUMENT_COLUMNS = (
    "id, name, content_type, file_type, embedding_model, embedding_dimensions, "
    "index_location, metadata"
)


def _row_to_document(row: sqlite3.Row) -> Document:
    data: dict[str, Any] = dict(row)
    data["metadata"] = json.loads(data["metadata"] or "{}")
    return Document.model_validate(data)


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    data: dict[str, Any] = dict(row)
    data["created_at"] = datetime.fromisoformat(data["created_at"])
    return Chunk.model_validate(data)


class SqliteRecordStore:
    """SQLite-backed record store.

    Args:
        path: Database file, or ":memory:" for an ephemeral store
    """

    def __init__(self, path: Path | str = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def add_document(self, document: Document) -> Document:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "INSERT INTO documents (name, content_type, file_type, embedding_model, "
                "embedding_dimensions, index_location, metadata) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    document.name,
                    document.content_type.value,
                    document.file_type,
                    document.embedding_model,
                    document.embedding_dimensions,
                    document.index_location,
                    json.dumps(document.metadata, sort_keys=True),
                ),
            )
        return document.model_copy(update={"id": cursor.lastrowid})

    def get_document(self, document_id: int) -> Document | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
        return _row_to_document(row) if row is not None else None

    def set_document_model(self, document_id: int, model: ModelKey) -> None:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE documents SET embedding_model = ?, embedding_dimensions = ? WHERE id = ?",
                (model.model_name, model.dimensions, document_id),
            )
        if cursor.rowcount == 0:
            raise DocumentNotFound(document_id)

    def save_chunk(self, chunk: Chunk) -> Chunk:
        """Insert a chunk; a duplicate hash for the same document returns the existing row."""
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "INSERT OR IGNORE INTO chunks (document_id, chunk_index, content, content_hash, "
                "token_estimate, start_offset, end_offset, page_number, embedding_ref, "
                "vector_dimensions, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    chunk.document_id,
                    chunk.chunk_index,
                    chunk.content,
                    chunk.content_hash,
                    chunk.token_estimate,
                    chunk.start_offset,
                    chunk.end_offset,
                    chunk.page_number,
                    chunk.embedding_ref,
                    chunk.vector_dimensions,
                    chunk.created_at.isoformat(),
                ),
            )
            inserted = cursor.rowcount == 1
            chunk_id = cursor.lastrowid
        if inserted:
            return chunk.model_copy(update={"id": chunk_id})

        logger.debug(f"Chunk {chunk.content_hash[:12]} already stored for document {chunk.document_id}")
        existing = self.find_chunk_by_hash(chunk.content_hash, chunk.document_id)
        if existing is None:
            raise SemanticIndexError(
                f"Chunk {chunk.chunk_index} of document {chunk.document_id} conflicts with a stored chunk"
            )
        return existing

    def find_chunk_by_hash(self, content_hash: str, document_id: int) -> Chunk | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE content_hash = ? AND document_id = ?",
                (content_hash, document_id),
            ).fetchone()
        return _row_to_chunk(row) if row is not None else None

    def get_chunks_by_ids(self, chunk_ids: Iterable[int]) -> list[Chunk]:
        ids = list(dict.fromkeys(int(chunk_id) for chunk_id in chunk_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id IN ({placeholders})", ids
            ).fetchall()
        return [_row_to_chunk(row) for row in rows]

    def get_document_chunks(self, document_id: int) -> list[Chunk]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE document_id = ? ORDER BY chunk_index",
                (document_id,),
            ).fetchall()
        return [_row_to_chunk(row) for row in rows]

    def update_chunk_embedding_ref(self, chunk_id: int, ref: str, dimensions: int) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE chunks SET embedding_ref = ?, vector_dimensions = ? WHERE id = ?",
                (ref, dimensions, chunk_id),
            )

    def clear_embedding_refs(self, document_id: int) -> int:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE chunks SET embedding_ref = NULL, vector_dimensions = NULL "
                "WHERE document_id = ? AND embedding_ref IS NOT NULL",
                (document_id,),
            )
        return cursor.rowcount

    def get_documents_with_embeddings(self) -> list[Document]:
        columns = ", ".join(f"d.{column.strip()}" for column in _DOCUMENT_COLUMNS.split(","))
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {columns} FROM documents d WHERE EXISTS ("
                "SELECT 1 FROM chunks c WHERE c.document_id = d.id AND c.embedding_ref IS NOT NULL"
                ") ORDER BY d.id"
            ).fetchall()
        return [_row_to_document(row) for row in rows]

    def get_document_model_config(self, document_id: int) -> ModelKey | None:
        document = self.get_document(document_id)
        return document.model_key if document is not None else None

    def delete_document_chunks(self, document_id: int) -> int:
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
        return cursor.rowcount
