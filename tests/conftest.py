"""Pytest configuration for test discovery and shared fixtures.

This file ensures that:
- `src/` is importable
- Tests never pick up a real OpenAI key from the environment
- Common collaborators (record store, deterministic embedding provider) are shared
"""

from __future__ import annotations

import hashlib
import os
import sys
from pathlib import Path

import pytest

# Ensure src directory is in path for imports
repo_root = Path(__file__).parent.parent
src_path = repo_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from semantic_index.embedding import Embedding  # noqa: E402
from semantic_index.errors import EmbeddingProviderError  # noqa: E402
from semantic_index.models import Document, ModelKey  # noqa: E402
from semantic_index.store import SqliteRecordStore  # noqa: E402


def pytest_sessionstart(session: object) -> None:
    os.environ.pop("OPENAI_API_KEY", None)


def keyword_vector(text: str, dimensions: int) -> list[float]:
    """Deterministic bag-of-words vector: each word bumps one hashed coordinate."""
    vector = [0.0] * dimensions
    for word in text.lower().split():
        digest = hashlib.sha256(word.strip(".,!?").encode()).digest()
        vector[int.from_bytes(digest[:4], "big") % dimensions] += 1.0
    return vector


class FakeEmbeddingProvider:
    """Embedding provider with per-model dimensionality and call recording.

    Args:
        dimensions: Model name -> vector length returned for that model
        failing: Model names whose calls raise EmbeddingProviderError
    """

    def __init__(self, dimensions: dict[str, int], failing: set[str] | None = None):
        self.dimensions = dimensions
        self.failing = failing or set()
        self.calls: list[tuple[str, str]] = []

    async def embed(self, text: str, model_name: str) -> Embedding:
        self.calls.append((text, model_name))
        if model_name in self.failing:
            raise EmbeddingProviderError(f"{model_name} is unavailable")
        vector = keyword_vector(text, self.dimensions[model_name])
        return Embedding(vector=vector, dimensions=len(vector))

    async def embed_batch(self, texts: list[str], model_name: str) -> list[Embedding]:
        return [await self.embed(text, model_name) for text in texts]


@pytest.fixture
def store() -> SqliteRecordStore:
    """In-memory record store."""
    record_store = SqliteRecordStore(":memory:")
    yield record_store
    record_store.close()


@pytest.fixture
def small_model() -> ModelKey:
    return ModelKey(model_name="test/small", dimensions=8)


@pytest.fixture
def large_model() -> ModelKey:
    return ModelKey(model_name="test/large", dimensions=16)


@pytest.fixture
def fake_provider(small_model: ModelKey, large_model: ModelKey) -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider(
        {small_model.model_name: small_model.dimensions, large_model.model_name: large_model.dimensions}
    )


@pytest.fixture
def text_document_factory(tmp_path: Path, store: SqliteRecordStore):
    """Create a document backed by a text file in tmp_path."""

    def _create(name: str, content: str, **fields: object) -> Document:
        path = tmp_path / "docs" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        metadata = {"path": str(path), **dict(fields.pop("metadata", {}) or {})}  # type: ignore[arg-type]
        return store.add_document(Document(name=name, metadata=metadata, **fields))  # type: ignore[arg-type]

    return _create


@pytest.fixture
def provider_factory() -> type[FakeEmbeddingProvider]:
    """The fake provider class, for tests that need custom dimensions or failures."""
    return FakeEmbeddingProvider
