"""End-to-end semantic indexing workflow.

Combines content extraction, chunking, deduplication, embedding, vector
indexing and multi-index search behind one service object.
"""

import asyncio
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from semantic_index.chunking import ChunkingOptions, ContentType, chunk_content, select_strategy
from semantic_index.config import SemanticIndexConfig, SearchConfig
from semantic_index.defaults import ChunkingDefaults, HttpChunkingDefaultsSource
from semantic_index.embedding import EmbeddingProvider, create_embedding_provider
from semantic_index.errors import (
    ConfigurationError,
    DimensionMismatch,
    DocumentNotFound,
    EmbeddingProviderError,
)
from semantic_index.hashing import DuplicateFilter, content_hash
from semantic_index.keys import IndexKey
from semantic_index.lifecycle import IndexManager
from semantic_index.models import (
    Chunk,
    ChunkDocumentResult,
    Document,
    EmbedDocumentResult,
    ExtractedContent,
    IndexStats,
    ModelKey,
    SearchOptions,
    SearchResponse,
)
from semantic_index.search import SearchCoordinator
from semantic_index.store import RecordStore, SqliteRecordStore

_SUFFIX_CONTENT_TYPES = {
    ".txt": ContentType.PLAIN,
    ".text": ContentType.PLAIN,
    ".md": ContentType.MARKDOWN,
    ".markdown": ContentType.MARKDOWN,
    ".html": ContentType.HTML,
    ".htm": ContentType.HTML,
}


class ContentExtractor(Protocol):
    """Turns a document into a single content string."""

    def extract(self, document: Document) -> ExtractedContent: ...


class TextFileExtractor:
    """Reads already-converted UTF-8 text from ``document.metadata["path"]``.

    The document's own content type wins; plain documents fall back to the
    file suffix (``.md`` is markdown, ``.html`` is html).
    """

    def extract(self, document: Document) -> ExtractedContent:
        raw_path = document.metadata.get("path")
        if not raw_path:
            raise ConfigurationError(
                f"Document {document.id} has no source path", context={"document_id": document.id}
            )
        path = Path(raw_path)
        content = path.read_text(encoding="utf-8")

        content_type = document.content_type
        if content_type is ContentType.PLAIN:
            content_type = _SUFFIX_CONTENT_TYPES.get(path.suffix.lower(), ContentType.PLAIN)
        page_count = content.count("\n--- Page ") + content.startswith("--- Page ")
        return ExtractedContent(
            content=content,
            content_type=content_type,
            page_count=page_count if content_type is ContentType.PDF else None,
        )


class SemanticIndexService:
    """Chunks, embeds, indexes and searches documents.

    Handles the complete workflow:
    1. Extract content and chunk it with content-aware strategies
    2. Persist chunks, skipping exact duplicates per document
    3. Embed pending chunks into the document's vector index
    4. Search across every document index
    """

    def __init__(
        self,
        store: RecordStore,
        extractor: ContentExtractor,
        provider: EmbeddingProvider,
        index_manager: IndexManager,
        default_model: ModelKey,
        chunking_defaults: ChunkingDefaults | None = None,
        batch_size: int = 100,
        coordinator: SearchCoordinator | None = None,
        search_config: SearchConfig | None = None,
    ):
        """Initialize the service.

        Args:
            store: Record store for documents and chunks
            extractor: Content extractor
            provider: Embedding provider
            index_manager: Pool of open vector indexes
            default_model: Model used for documents without one
            chunking_defaults: Source of default chunking options
            batch_size: Chunks embedded and indexed per batch
            coordinator: Multi-index search coordinator (built if None)
            search_config: Defaults applied when a search passes no options
        """
        self.store = store
        self.extractor = extractor
        self.provider = provider
        self.index_manager = index_manager
        self.default_model = default_model
        self.chunking_defaults = chunking_defaults or ChunkingDefaults()
        self.batch_size = batch_size
        self.search_config = search_config or SearchConfig()
        self.coordinator = coordinator or SearchCoordinator(
            store,
            provider,
            index_manager,
            max_concurrency=self.search_config.max_concurrency,
            per_document_timeout=self.search_config.per_document_timeout_seconds,
        )

    @classmethod
    def from_config(
        cls,
        config: SemanticIndexConfig,
        store: RecordStore | None = None,
        extractor: ContentExtractor | None = None,
        provider: EmbeddingProvider | None = None,
    ) -> "SemanticIndexService":
        """Build a service with collaborators created from configuration."""
        remote = config.remote_defaults
        source = None
        if remote.enabled and remote.base_url:
            source = HttpChunkingDefaultsSource(
                remote.base_url, timeout_seconds=remote.timeout_seconds, fallback=config.chunking
            )

        return cls(
            store=store or SqliteRecordStore(config.store.path),
            extractor=extractor or TextFileExtractor(),
            provider=provider or create_embedding_provider(config.embedding),
            index_manager=IndexManager(
                config.index.base_path,
                config.index.backend,
                max_open=config.index.max_open_indexes,
                lock_timeout=config.index.lock_timeout_seconds,
            ),
            default_model=ModelKey(
                model_name=config.embedding.model, dimensions=config.embedding.dimensions
            ),
            chunking_defaults=ChunkingDefaults(
                config.chunking, source=source, ttl_seconds=remote.ttl_seconds
            ),
            batch_size=config.embedding.batch_size,
            search_config=config.search,
        )

    async def chunk_document(
        self,
        document_id: int,
        options: ChunkingOptions | dict[str, Any] | None = None,
    ) -> ChunkDocumentResult:
        """Chunk a document and persist new chunks.

        Args:
            document_id: Document to chunk
            options: Full options, or a dict of overrides on the current defaults

        Returns:
            Counts of created chunks and skipped duplicates

        Raises:
            DocumentNotFound: If the document does not exist
            ConfigurationError: If the options are invalid
        """
        document = self._require_document(document_id)
        defaults = await self.chunking_defaults.get()
        if options is None:
            effective = defaults
        elif isinstance(options, ChunkingOptions):
            effective = options
        else:
            effective = defaults.with_overrides(**options)

        extracted = await asyncio.to_thread(self.extractor.extract, document)
        spans = await asyncio.to_thread(
            chunk_content, extracted.content, extracted.content_type, effective
        )
        strategy = select_strategy(effective.strategy, extracted.content_type)

        duplicates = DuplicateFilter(self.store, document_id)
        next_index = len(self.store.get_document_chunks(document_id))
        created = 0
        for span in spans:
            digest = content_hash(span.content)
            if duplicates.is_duplicate(digest):
                continue
            self.store.save_chunk(
                Chunk(
                    document_id=document_id,
                    chunk_index=next_index,
                    content=span.content,
                    content_hash=digest,
                    token_estimate=span.token_estimate,
                    start_offset=span.start_offset,
                    end_offset=span.end_offset,
                    page_number=span.page_number,
                )
            )
            duplicates.mark(digest)
            next_index += 1
            created += 1

        logger.info(
            f"Chunked document {document_id} with {strategy.value}: "
            f"{created} new chunks, {duplicates.duplicates} duplicates skipped"
        )
        return ChunkDocumentResult(
            document_id=document_id,
            chunks_created=created,
            duplicates_skipped=duplicates.duplicates,
            strategy=strategy.value,
        )

    async def embed_document_chunks(self, document_id: int) -> EmbedDocumentResult:
        """Embed a document's chunks that have no embedding yet.

        Args:
            document_id: Document to embed

        Returns:
            Number of chunks embedded

        Raises:
            DocumentNotFound: If the document does not exist
            EmbeddingProviderError: If the provider fails
            DimensionMismatch: If the provider returns vectors of the wrong length
            IndexUnavailable: If the document index cannot be opened or written
        """
        document = self._require_document(document_id)
        model = document.model_key
        if model is None:
            model = self.default_model
            self.store.set_document_model(document_id, model)
            logger.debug(f"Document {document_id} assigned default model {model.model_name}")

        pending = [chunk for chunk in self.store.get_document_chunks(document_id) if not chunk.is_embedded]
        if not pending:
            return EmbedDocumentResult(
                document_id=document_id,
                chunks_processed=0,
                model_name=model.model_name,
                dimensions=model.dimensions,
            )

        handle = await self.index_manager.open(
            IndexKey.for_document(document_id, model), location=document.index_location
        )

        processed = 0
        for start in range(0, len(pending), self.batch_size):
            batch = pending[start : start + self.batch_size]
            embeddings = await self.provider.embed_batch(
                [chunk.content for chunk in batch], model.model_name
            )
            if len(embeddings) != len(batch):
                raise EmbeddingProviderError(
                    f"Provider returned {len(embeddings)} embeddings for {len(batch)} chunks"
                )
            for embedding in embeddings:
                if len(embedding.vector) != model.dimensions:
                    raise DimensionMismatch(
                        model.dimensions,
                        len(embedding.vector),
                        context={"document_id": document_id, "model": model.model_name},
                    )

            chunk_ids = [chunk.id for chunk in batch if chunk.id is not None]
            await handle.add_vectors([embedding.vector for embedding in embeddings], chunk_ids)
            for chunk_id in chunk_ids:
                self.store.update_chunk_embedding_ref(chunk_id, str(chunk_id), model.dimensions)
            processed += len(batch)
            logger.debug(f"Embedded {processed}/{len(pending)} chunks of document {document_id}")

        logger.info(f"Embedded {processed} chunks of document {document_id} with {model.model_name}")
        return EmbedDocumentResult(
            document_id=document_id,
            chunks_processed=processed,
            model_name=model.model_name,
            dimensions=model.dimensions,
        )

    async def search(
        self,
        query: str,
        options: SearchOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SearchResponse:
        """Search every embedded document for ``query``."""
        if options is None:
            options = SearchOptions(
                limit=self.search_config.default_limit,
                per_document_k=self.search_config.per_document_k,
            )
        return await self.coordinator.search(query, options, cancel_event=cancel_event)

    async def get_index_stats(self, key: IndexKey) -> IndexStats:
        return await self.index_manager.get_stats(key, self._index_location(key))

    async def backup_index(self, key: IndexKey, path: Path | str) -> Path:
        return await self.index_manager.backup_index(key, path, self._index_location(key))

    async def restore_index(self, key: IndexKey, path: Path | str) -> None:
        await self.index_manager.restore_index(key, path, self._index_location(key))

    async def reset_index(self, key: IndexKey) -> None:
        """Empty an index; for a document index, its chunks become pending again."""
        await self.index_manager.reset_index(key, self._index_location(key))
        if key.document_id is not None:
            cleared = self.store.clear_embedding_refs(key.document_id)
            logger.info(f"Reset index {key}; {cleared} chunks marked for re-embedding")

    async def delete_document(self, document_id: int) -> int:
        """Delete a document's chunks and its vector index.

        Returns:
            Number of chunks deleted
        """
        document = self._require_document(document_id)
        model = document.model_key
        if model is not None:
            await self.index_manager.delete_index(
                IndexKey.for_document(document_id, model), location=document.index_location
            )
        deleted = self.store.delete_document_chunks(document_id)
        logger.info(f"Deleted {deleted} chunks of document {document_id}")
        return deleted

    async def aclose(self) -> None:
        await self.index_manager.close_all()

    def _index_location(self, key: IndexKey) -> str | None:
        """Stored artifact path of the document behind a document-scoped key."""
        if key.document_id is None:
            return None
        document = self.store.get_document(key.document_id)
        return document.index_location if document is not None else None

    def _require_document(self, document_id: int) -> Document:
        document = self.store.get_document(document_id)
        if document is None:
            raise DocumentNotFound(document_id)
        return document
