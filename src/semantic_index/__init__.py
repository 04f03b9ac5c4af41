"""Semantic document index.

Turns document text into a searchable semantic index: content-aware chunking
with overlap, exact-duplicate suppression, per-document vector indexes keyed
by embedding model, and multi-index nearest-neighbour search.

Architecture:
    - chunking: Content-aware text splitting (sentence, paragraph, markdown, ...)
    - hashing: Content hashing and duplicate suppression
    - index: Flat (numpy/parquet) and sqlite-vec vector index backends
    - lifecycle: Pooled index handles with per-index read/write locking
    - search: Multi-index fan-out, merge and result hydration
    - service: End-to-end facade used by the CLI
    - models: Pydantic schemas for documents, chunks and results

Usage:
    >>> from semantic_index import SemanticIndexService, load_config
    >>> service = SemanticIndexService.from_config(load_config("default"))
    >>> response = await service.search("protein aggregation in neurons")
"""

__version__ = "0.3.0"

from semantic_index.chunking import ChunkingOptions, ChunkingStrategy, ContentType, chunk_content
from semantic_index.config import SemanticIndexConfig, load_config
from semantic_index.errors import (
    ConfigurationError,
    DimensionMismatch,
    DocumentNotFound,
    EmbeddingProviderError,
    IndexUnavailable,
    SemanticIndexError,
)
from semantic_index.keys import IndexKey
from semantic_index.models import SearchOptions, SearchResponse, SearchResult
from semantic_index.service import SemanticIndexService

__all__ = [
    "ChunkingOptions",
    "ChunkingStrategy",
    "ConfigurationError",
    "ContentType",
    "DimensionMismatch",
    "DocumentNotFound",
    "EmbeddingProviderError",
    "IndexKey",
    "IndexUnavailable",
    "SearchOptions",
    "SearchResponse",
    "SearchResult",
    "SemanticIndexConfig",
    "SemanticIndexError",
    "SemanticIndexService",
    "chunk_content",
    "load_config",
]
