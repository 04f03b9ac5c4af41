"""Multi-index semantic search.

A query fans out across every document index that holds embeddings:

1. Documents with embedded chunks are grouped by model key.
2. Each group gets exactly one query embedding from its model.
3. Each document index in the group is searched concurrently, bounded by a
   semaphore and a per-search timeout.
4. Hits from every index are merged by ascending distance and capped.
5. The survivors are hydrated into full results and ordered by score.

Failures are isolated: a group whose embedding fails or has the wrong
dimensionality is dropped, and a document whose index fails to open or
search (for any reason) or times out is skipped. Both are logged and counted, never raised.
"""

import asyncio
from collections import defaultdict
from collections.abc import Sequence

from loguru import logger

from semantic_index.embedding import EmbeddingProvider
from semantic_index.errors import EmbeddingProviderError, SemanticIndexError
from semantic_index.index import SearchMatches
from semantic_index.keys import IndexKey
from semantic_index.lifecycle import IndexManager
from semantic_index.models import (
    Document,
    ModelKey,
    SearchHit,
    SearchOptions,
    SearchResponse,
    SearchResult,
)
from semantic_index.scoring import distance_to_score
from semantic_index.store import RecordStore

__all__ = ["ResultHydrator", "SearchCoordinator", "distance_to_score"]

DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_PER_DOCUMENT_TIMEOUT = 5.0


class ResultHydrator:
    """Resolves raw hits into full results through the record store."""

    def __init__(self, store: RecordStore):
        self.store = store

    def hydrate(self, hits: Sequence[SearchHit], options: SearchOptions) -> list[SearchResult]:
        """Hydrate hits, dropping unresolvable ids and filtered results.

        Args:
            hits: Hits ordered by ascending distance
            options: Threshold and document type filters

        Returns:
            Results ordered by descending score (ties keep hit order)
        """
        chunks = {chunk.id: chunk for chunk in self.store.get_chunks_by_ids(h.chunk_id for h in hits)}
        documents: dict[int, Document | None] = {}
        results: list[SearchResult] = []

        for hit in hits:
            chunk = chunks.get(hit.chunk_id)
            if chunk is None:
                logger.debug(f"Dropping hit for unknown chunk {hit.chunk_id}")
                continue
            if hit.document_id is not None and hit.document_id != chunk.document_id:
                logger.debug(f"Dropping hit {hit.chunk_id}: owned by another document")
                continue
            if chunk.document_id not in documents:
                documents[chunk.document_id] = self.store.get_document(chunk.document_id)
            document = documents[chunk.document_id]
            if document is None:
                continue

            score = hit.score
            if score < options.threshold:
                continue
            if options.document_types is not None and (
                (document.file_type or "").lower() not in options.document_types
            ):
                continue

            results.append(
                SearchResult(
                    chunk_id=hit.chunk_id,
                    document_id=chunk.document_id,
                    content=chunk.content,
                    score=score,
                    distance=hit.distance,
                    chunk_index=chunk.chunk_index,
                    start_offset=chunk.start_offset,
                    end_offset=chunk.end_offset,
                    page_number=chunk.page_number,
                    document_name=document.name,
                    file_type=document.file_type,
                    document_metadata=document.metadata,
                )
            )

        results.sort(key=lambda result: result.score, reverse=True)
        return results


class SearchCoordinator:
    """Fans a query out across per-document indexes and merges the hits."""

    def __init__(
        self,
        store: RecordStore,
        provider: EmbeddingProvider,
        index_manager: IndexManager,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        per_document_timeout: float = DEFAULT_PER_DOCUMENT_TIMEOUT,
    ):
        self.store = store
        self.provider = provider
        self.index_manager = index_manager
        self.max_concurrency = max_concurrency
        self.per_document_timeout = per_document_timeout
        self.hydrator = ResultHydrator(store)

    async def search(
        self,
        query: str,
        options: SearchOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SearchResponse:
        """Search every relevant index for ``query``.

        Args:
            query: Query text
            options: Limits and filters
            cancel_event: When set, no further per-document searches start and
                the response comes back empty with ``cancelled=True``

        Returns:
            Ranked results with counts of searched and skipped documents/groups
        """
        options = options or SearchOptions()
        if not query.strip():
            return SearchResponse()

        groups = self._group_documents(options)
        response = SearchResponse(model_groups=len(groups))
        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks: list[asyncio.Task[list[SearchHit] | None]] = []

        for model_key, documents in groups.items():
            if cancel_event is not None and cancel_event.is_set():
                break
            query_vector = await self._embed_query(query, model_key)
            if query_vector is None:
                response.model_groups_skipped += 1
                response.documents_skipped += len(documents)
                continue
            for document in documents:
                tasks.append(
                    asyncio.create_task(
                        self._search_document(
                            document, model_key, query_vector, options, semaphore, cancel_event
                        )
                    )
                )

        outcomes = await asyncio.gather(*tasks)

        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Search cancelled after dispatching {len(tasks)} document searches")
            return SearchResponse(model_groups=len(groups), cancelled=True)

        hits: list[SearchHit] = []
        for outcome in outcomes:
            if outcome is None:
                response.documents_skipped += 1
            else:
                response.documents_searched += 1
                hits.extend(outcome)

        hits.sort(key=lambda hit: (hit.distance, hit.chunk_id))
        top_hits = hits[: options.limit]
        response.results = self.hydrator.hydrate(top_hits, options)
        response.total_results = len(response.results)

        logger.info(
            f"Search over {response.documents_searched} documents in {len(groups)} model groups "
            f"returned {response.total_results} results "
            f"({response.documents_skipped} documents, {response.model_groups_skipped} groups skipped)"
        )
        return response

    def _group_documents(self, options: SearchOptions) -> dict[ModelKey, list[Document]]:
        groups: dict[ModelKey, list[Document]] = defaultdict(list)
        for document in self.store.get_documents_with_embeddings():
            if document.id is None:
                continue
            if options.document_ids is not None and document.id not in options.document_ids:
                continue
            model_key = self.store.get_document_model_config(document.id)
            if model_key is None:
                logger.warning(f"Document {document.id} has embeddings but no model config; skipping")
                continue
            if options.model_name is not None and model_key.model_name != options.model_name:
                continue
            groups[model_key].append(document)
        return dict(groups)

    async def _embed_query(self, query: str, model_key: ModelKey) -> list[float] | None:
        try:
            embedding = await self.provider.embed(query, model_key.model_name)
        except EmbeddingProviderError as e:
            logger.warning(f"Dropping model group {model_key.model_name}: embedding failed: {e}")
            return None
        if embedding.dimensions != model_key.dimensions or len(embedding.vector) != model_key.dimensions:
            logger.warning(
                f"Dropping model group {model_key.model_name}: query embedding has "
                f"{len(embedding.vector)} dimensions, expected {model_key.dimensions}"
            )
            return None
        return embedding.vector

    async def _search_document(
        self,
        document: Document,
        model_key: ModelKey,
        query_vector: list[float],
        options: SearchOptions,
        semaphore: asyncio.Semaphore,
        cancel_event: asyncio.Event | None,
    ) -> list[SearchHit] | None:
        document_id = document.id
        if document_id is None:
            return None
        async with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                return None
            key = IndexKey.for_document(document_id, model_key)
            try:
                matches = await asyncio.wait_for(
                    self._open_and_search(
                        key, document.index_location, query_vector, options.effective_per_document_k
                    ),
                    timeout=self.per_document_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Search of document {document_id} timed out after {self.per_document_timeout}s"
                )
                return None
            except (SemanticIndexError, OSError) as e:
                logger.warning(f"Skipping document {document_id}: {e}")
                return None
            except Exception as e:
                logger.opt(exception=e).error(
                    f"Unexpected failure searching document {document_id}; skipping"
                )
                return None

        return [
            SearchHit(chunk_id=chunk_id, distance=distance, document_id=document_id)
            for chunk_id, distance in zip(matches.ids, matches.distances, strict=True)
        ]

    async def _open_and_search(
        self, key: IndexKey, location: str | None, query_vector: list[float], k: int
    ) -> SearchMatches:
        handle = await self.index_manager.open(key, location=location)
        return await handle.search(query_vector, k)
