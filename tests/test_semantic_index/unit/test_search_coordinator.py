"""Unit tests for multi-index search.

Tests cover:
- One query embedding per model group
- Merge, limit and hydration of hits from several indexes
- Isolation of failing groups, broken indexes and slow searches
- Filters and cancellation
"""

import asyncio
from collections.abc import Sequence
from pathlib import Path

import pytest
import pytest_asyncio

from semantic_index.hashing import content_hash
from semantic_index.index import FlatVectorIndex, SearchMatches
from semantic_index.keys import IndexKey
from semantic_index.lifecycle import IndexHandle, IndexManager
from semantic_index.models import Chunk, Document, ModelKey, SearchHit, SearchOptions
from semantic_index.search import ResultHydrator, SearchCoordinator
from semantic_index.store import SqliteRecordStore


@pytest_asyncio.fixture
async def manager(tmp_path: Path) -> IndexManager:
    index_manager = IndexManager(tmp_path / "indexes")
    yield index_manager
    await index_manager.close_all()


def save_chunks(store: SqliteRecordStore, document: Document, texts: Sequence[str]) -> list[Chunk]:
    assert document.id is not None
    chunks = []
    for index, text in enumerate(texts):
        chunks.append(
            store.save_chunk(
                Chunk(
                    document_id=document.id,
                    chunk_index=index,
                    content=text,
                    content_hash=content_hash(text),
                    token_estimate=len(text) // 4 + 1,
                    start_offset=0,
                    end_offset=len(text),
                )
            )
        )
    return chunks


async def add_embedded_document(
    store: SqliteRecordStore,
    manager: IndexManager,
    provider,
    name: str,
    texts: Sequence[str],
    model: ModelKey,
    **fields: object,
) -> Document:
    """Store a document, its chunks and their vectors as if it had been embedded."""
    document = store.add_document(
        Document(
            name=name,
            embedding_model=model.model_name,
            embedding_dimensions=model.dimensions,
            **fields,  # type: ignore[arg-type]
        )
    )
    assert document.id is not None
    chunks = save_chunks(store, document, texts)
    vectors = [(await provider.embed(text, model.model_name)).vector for text in texts]
    handle = await manager.open(
        IndexKey.for_document(document.id, model), location=document.index_location
    )
    await handle.add_vectors(vectors, [chunk.id for chunk in chunks])
    for chunk in chunks:
        assert chunk.id is not None
        store.update_chunk_embedding_ref(chunk.id, str(chunk.id), model.dimensions)
    provider.calls.clear()
    return document


def mark_embedded(store: SqliteRecordStore, name: str, model: ModelKey) -> Document:
    """Store a document whose one chunk is recorded as embedded, without touching any index."""
    document = store.add_document(
        Document(name=name, embedding_model=model.model_name, embedding_dimensions=model.dimensions)
    )
    (chunk,) = save_chunks(store, document, [f"{name} chunk"])
    assert chunk.id is not None
    store.update_chunk_embedding_ref(chunk.id, str(chunk.id), model.dimensions)
    return document


@pytest_asyncio.fixture
async def corpus(store, manager, fake_provider, small_model, large_model) -> dict[str, Document]:
    """Two documents per model."""
    return {
        "small-a": await add_embedded_document(
            store, manager, fake_provider, "small-a", ["protein aggregation", "ocean tides"],
            small_model, file_type="pdf",
        ),
        "small-b": await add_embedded_document(
            store, manager, fake_provider, "small-b", ["cell culture media"], small_model,
            file_type="md",
        ),
        "large-a": await add_embedded_document(
            store, manager, fake_provider, "large-a", ["protein aggregation in neurons"],
            large_model, file_type="pdf",
        ),
        "large-b": await add_embedded_document(
            store, manager, fake_provider, "large-b", ["mass spectrometry"], large_model,
            file_type="md",
        ),
    }


class TestSearchCoordinator:
    @pytest.mark.asyncio
    async def test_blank_query(self, store, manager, fake_provider, corpus) -> None:
        coordinator = SearchCoordinator(store, fake_provider, manager)
        response = await coordinator.search("   ")

        assert response.results == []
        assert response.model_groups == 0
        assert fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_one_embedding_per_model_group(
        self, store, manager, fake_provider, corpus
    ) -> None:
        coordinator = SearchCoordinator(store, fake_provider, manager)
        response = await coordinator.search("protein aggregation")

        assert sorted(model for _, model in fake_provider.calls) == ["test/large", "test/small"]
        assert response.model_groups == 2
        assert response.documents_searched == 4
        assert response.documents_skipped == 0
        assert not response.cancelled

    @pytest.mark.asyncio
    async def test_exact_match_ranks_first(self, store, manager, fake_provider, corpus) -> None:
        coordinator = SearchCoordinator(store, fake_provider, manager)
        response = await coordinator.search("protein aggregation")

        top = response.results[0]
        assert top.content == "protein aggregation"
        assert top.score == pytest.approx(1.0)
        assert top.document_name == "small-a"
        assert top.file_type == "pdf"
        scores = [result.score for result in response.results]
        assert scores == sorted(scores, reverse=True)
        assert response.total_results == len(response.results)

    @pytest.mark.asyncio
    async def test_limit_caps_merged_hits(self, store, manager, fake_provider, corpus) -> None:
        coordinator = SearchCoordinator(store, fake_provider, manager)
        response = await coordinator.search("protein aggregation", SearchOptions(limit=2))

        assert len(response.results) == 2
        assert response.results[0].content == "protein aggregation"

    @pytest.mark.asyncio
    async def test_failing_model_group_is_skipped(
        self, store, manager, provider_factory, small_model, large_model, corpus
    ) -> None:
        provider = provider_factory(
            {small_model.model_name: 8, large_model.model_name: 16},
            failing={large_model.model_name},
        )
        coordinator = SearchCoordinator(store, provider, manager)
        response = await coordinator.search("protein aggregation")

        assert response.model_groups == 2
        assert response.model_groups_skipped == 1
        assert response.documents_skipped == 2
        assert response.documents_searched == 2
        assert {r.document_name for r in response.results} <= {"small-a", "small-b"}

    @pytest.mark.asyncio
    async def test_query_with_wrong_dimensions_drops_group(
        self, store, manager, provider_factory, small_model, large_model, corpus
    ) -> None:
        provider = provider_factory({small_model.model_name: 8, large_model.model_name: 12})
        coordinator = SearchCoordinator(store, provider, manager)
        response = await coordinator.search("protein aggregation")

        assert response.model_groups_skipped == 1
        assert response.documents_searched == 2
        assert response.results[0].content == "protein aggregation"

    @pytest.mark.asyncio
    async def test_broken_index_is_skipped(
        self, store, manager, fake_provider, small_model, corpus, tmp_path: Path
    ) -> None:
        broken_path = tmp_path / "broken.parquet"
        broken_path.write_bytes(b"garbage")
        broken = store.add_document(
            Document(
                name="broken",
                embedding_model=small_model.model_name,
                embedding_dimensions=small_model.dimensions,
                index_location=str(broken_path),
            )
        )
        (chunk,) = save_chunks(store, broken, ["protein aggregation again"])
        assert chunk.id is not None
        store.update_chunk_embedding_ref(chunk.id, str(chunk.id), small_model.dimensions)

        coordinator = SearchCoordinator(store, fake_provider, manager)
        response = await coordinator.search("protein aggregation")

        assert response.documents_skipped == 1
        assert response.documents_searched == 4
        assert response.results

    @pytest.mark.asyncio
    async def test_unexpected_index_error_is_skipped(
        self, store, manager, fake_provider, small_model, corpus, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        odd = mark_embedded(store, "odd", small_model)
        real_open = IndexManager.open

        async def open_or_fail(self: IndexManager, key: IndexKey, location=None) -> IndexHandle:
            if key.document_id == odd.id:
                raise KeyError("vector")
            return await real_open(self, key, location)

        monkeypatch.setattr(IndexManager, "open", open_or_fail)
        coordinator = SearchCoordinator(store, fake_provider, manager)
        response = await coordinator.search("protein aggregation")

        assert response.documents_skipped == 1
        assert response.documents_searched == 4
        assert response.results[0].content == "protein aggregation"

    @pytest.mark.asyncio
    async def test_slow_index_load_times_out(
        self, store, manager, fake_provider, small_model, corpus, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        slow = mark_embedded(store, "slow", small_model)
        real_load = FlatVectorIndex.load_index

        async def slow_load(index: FlatVectorIndex) -> None:
            if index.key.document_id == slow.id:
                await asyncio.sleep(5)
            await real_load(index)

        monkeypatch.setattr(FlatVectorIndex, "load_index", slow_load)
        coordinator = SearchCoordinator(store, fake_provider, manager, per_document_timeout=0.05)
        response = await asyncio.wait_for(coordinator.search("protein aggregation"), timeout=2)

        assert response.documents_skipped == 1
        assert response.documents_searched == 4
        assert response.results

    @pytest.mark.asyncio
    async def test_slow_index_times_out(
        self, store, manager, fake_provider, corpus, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def slow_search(self: IndexHandle, query: Sequence[float], k: int) -> SearchMatches:
            await asyncio.sleep(5)
            return SearchMatches()

        monkeypatch.setattr(IndexHandle, "search", slow_search)
        coordinator = SearchCoordinator(store, fake_provider, manager, per_document_timeout=0.05)
        response = await coordinator.search("protein aggregation")

        assert response.results == []
        assert response.documents_skipped == 4
        assert response.documents_searched == 0

    @pytest.mark.asyncio
    async def test_cancelled_search(self, store, manager, fake_provider, corpus) -> None:
        cancel = asyncio.Event()
        cancel.set()
        coordinator = SearchCoordinator(store, fake_provider, manager)
        response = await coordinator.search("protein aggregation", cancel_event=cancel)

        assert response.cancelled
        assert response.results == []
        assert fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_no_embedded_documents(self, store, manager, fake_provider) -> None:
        store.add_document(Document(name="never embedded"))
        coordinator = SearchCoordinator(store, fake_provider, manager)
        response = await coordinator.search("anything")

        assert response.results == []
        assert response.model_groups == 0


class TestSearchFilters:
    @pytest.mark.asyncio
    async def test_document_ids(self, store, manager, fake_provider, corpus) -> None:
        coordinator = SearchCoordinator(store, fake_provider, manager)
        options = SearchOptions(document_ids=[corpus["large-b"].id])
        response = await coordinator.search("protein aggregation", options)

        assert response.documents_searched == 1
        assert fake_provider.calls == [("protein aggregation", "test/large")]
        assert {r.document_name for r in response.results} == {"large-b"}

    @pytest.mark.asyncio
    async def test_model_name(self, store, manager, fake_provider, corpus) -> None:
        coordinator = SearchCoordinator(store, fake_provider, manager)
        response = await coordinator.search(
            "protein aggregation", SearchOptions(model_name="test/large")
        )

        assert response.model_groups == 1
        assert {r.document_name for r in response.results} <= {"large-a", "large-b"}

    @pytest.mark.asyncio
    async def test_document_types(self, store, manager, fake_provider, corpus) -> None:
        coordinator = SearchCoordinator(store, fake_provider, manager)
        response = await coordinator.search(
            "protein aggregation", SearchOptions(document_types=["PDF"])
        )

        assert response.results
        assert all(result.file_type == "pdf" for result in response.results)

    @pytest.mark.asyncio
    async def test_threshold(self, store, manager, fake_provider, corpus) -> None:
        coordinator = SearchCoordinator(store, fake_provider, manager)
        response = await coordinator.search("protein aggregation", SearchOptions(threshold=0.99))

        assert response.results
        assert all(result.score >= 0.99 for result in response.results)


class TestResultHydrator:
    def test_unknown_chunks_are_dropped(self, store) -> None:
        assert ResultHydrator(store).hydrate([SearchHit(chunk_id=999, distance=0.0)], SearchOptions()) == []

    def test_hit_from_another_document_is_dropped(self, store) -> None:
        owner = store.add_document(Document(name="owner"))
        (chunk,) = save_chunks(store, owner, ["text"])
        hits = [SearchHit(chunk_id=chunk.id, distance=1.0, document_id=owner.id + 100)]

        assert ResultHydrator(store).hydrate(hits, SearchOptions()) == []

    def test_results_carry_chunk_and_document_fields(self, store) -> None:
        owner = store.add_document(Document(name="owner", file_type="md", metadata={"k": "v"}))
        (chunk,) = save_chunks(store, owner, ["text"])
        (result,) = ResultHydrator(store).hydrate(
            [SearchHit(chunk_id=chunk.id, distance=2.0, document_id=owner.id)], SearchOptions()
        )

        assert result.content == "text"
        assert result.score == pytest.approx(0.8)
        assert result.distance == pytest.approx(2.0)
        assert result.document_metadata == {"k": "v"}
        assert (result.start_offset, result.end_offset) == (0, 4)
