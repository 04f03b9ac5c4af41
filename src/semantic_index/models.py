"""Pydantic models for records flowing through the semantic index.

Documents and chunks mirror rows in the record store; search models carry
query options and ranked results back to callers.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from semantic_index.chunking import ContentType
from semantic_index.scoring import distance_to_score


class BackendKind(str, Enum):
    """Vector index storage backends."""

    FLAT = "flat"
    SQLITE = "sqlite"


class ModelKey(BaseModel):
    """The (model name, dimensionality) pair an embedding belongs to."""

    model_config = ConfigDict(frozen=True)

    model_name: str = Field(min_length=1)
    dimensions: int = Field(gt=0)


class Document(BaseModel):
    """A source document known to the record store.

    Attributes:
        id: Record store id (assigned on insert)
        name: Display name
        content_type: Shape of the extracted content
        file_type: Free-form type tag used by search filters (e.g. "pdf")
        embedding_model: Model that embedded this document's chunks
        embedding_dimensions: Dimensionality of that model's vectors
        index_location: Explicit index artifact path, overriding resolution
        metadata: Arbitrary extra fields (source path, title, ...)
    """

    id: int | None = None
    name: str = Field(min_length=1)
    content_type: ContentType = ContentType.PLAIN
    file_type: str | None = None
    embedding_model: str | None = None
    embedding_dimensions: int | None = Field(default=None, gt=0)
    index_location: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def model_key(self) -> ModelKey | None:
        """Model key, or None while the document has not been embedded."""
        if self.embedding_model is None or self.embedding_dimensions is None:
            return None
        return ModelKey(model_name=self.embedding_model, dimensions=self.embedding_dimensions)


class Chunk(BaseModel):
    """A persisted chunk row.

    ``content_hash`` is unique per ``document_id``. ``embedding_ref`` is set
    once the chunk's vector has been added to its document index.
    """

    id: int | None = None
    document_id: int
    chunk_index: int = Field(ge=0)
    content: str = Field(min_length=1)
    content_hash: str = Field(min_length=64, max_length=64)
    token_estimate: int = Field(ge=0)
    start_offset: int = Field(ge=0)
    end_offset: int = Field(ge=0)
    page_number: int | None = Field(default=None, ge=1)
    embedding_ref: str | None = None
    vector_dimensions: int | None = Field(default=None, gt=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def validate_offsets(self) -> "Chunk":
        """Ensure the source span is well-formed."""
        if self.end_offset < self.start_offset:
            raise ValueError(
                f"end_offset ({self.end_offset}) must be >= start_offset ({self.start_offset})"
            )
        return self

    @property
    def is_embedded(self) -> bool:
        return self.embedding_ref is not None


class ExtractedContent(BaseModel):
    """Output of a content extractor."""

    content: str
    content_type: ContentType = ContentType.PLAIN
    page_count: int | None = Field(default=None, ge=0)


class IndexStats(BaseModel):
    """Statistics for one vector index."""

    vector_count: int = Field(ge=0)
    dimensions: int = Field(gt=0)
    backend_kind: BackendKind
    location: str
    model_name: str
    document_id: int | None = None


class SearchHit(BaseModel):
    """A raw nearest-neighbour hit before hydration."""

    model_config = ConfigDict(frozen=True)

    chunk_id: int
    distance: float = Field(ge=0.0)
    document_id: int | None = None

    @property
    def score(self) -> float:
        return distance_to_score(self.distance)


class SearchResult(BaseModel):
    """A hydrated search result.

    Attributes:
        chunk_id: Record store chunk id
        document_id: Owning document id
        content: Chunk text
        score: Relevance score in [0, 1]
        distance: Raw L2 distance
        chunk_index: Position of the chunk within its document
        start_offset: Source span start
        end_offset: Source span end
        page_number: Page of the chunk for page-markup content
        document_name: Display name of the document
        file_type: Document type tag
        document_metadata: Extra document fields
    """

    chunk_id: int
    document_id: int
    content: str
    score: float = Field(ge=0.0, le=1.0)
    distance: float = Field(ge=0.0)
    chunk_index: int
    start_offset: int
    end_offset: int
    page_number: int | None = None
    document_name: str
    file_type: str | None = None
    document_metadata: dict[str, Any] = Field(default_factory=dict)


class SearchOptions(BaseModel):
    """Options for a multi-index search.

    Attributes:
        limit: Global number of hits kept after merging (top-K)
        per_document_k: Hits requested from each index (defaults to ``limit``)
        threshold: Minimum score a hydrated result must reach
        document_types: Only return results from documents with these file types
        document_ids: Only search these documents
        model_name: Only search documents embedded with this model
    """

    limit: int = Field(default=10, ge=1, le=1000)
    per_document_k: int | None = Field(default=None, ge=1, le=1000)
    threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    document_types: list[str] | None = None
    document_ids: list[int] | None = None
    model_name: str | None = None

    @field_validator("document_types")
    @classmethod
    def normalise_types(cls, v: list[str] | None) -> list[str] | None:
        """Lower-case type filters; an empty list means no filter."""
        if not v:
            return None
        return [item.lower() for item in v]

    @property
    def effective_per_document_k(self) -> int:
        return self.per_document_k or self.limit


class SearchResponse(BaseModel):
    """Ranked results plus aggregate counts of what was searched or skipped."""

    results: list[SearchResult] = Field(default_factory=list)
    total_results: int = 0
    documents_searched: int = 0
    documents_skipped: int = 0
    model_groups: int = 0
    model_groups_skipped: int = 0
    cancelled: bool = False


class ChunkDocumentResult(BaseModel):
    """Outcome of chunking one document."""

    document_id: int
    chunks_created: int = Field(ge=0)
    duplicates_skipped: int = Field(default=0, ge=0)
    strategy: str


class EmbedDocumentResult(BaseModel):
    """Outcome of embedding one document's pending chunks."""

    document_id: int
    chunks_processed: int = Field(ge=0)
    model_name: str | None = None
    dimensions: int | None = None
