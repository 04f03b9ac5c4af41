"""Integration tests for the end-to-end chunk -> embed -> search workflow.

Uses a real record store and flat indexes on disk with a deterministic
embedding provider.
"""

from pathlib import Path

import pytest
import pytest_asyncio

from semantic_index.chunking import ChunkingOptions, ChunkingStrategy, ContentType
from semantic_index.config import IndexConfig, SemanticIndexConfig, StoreConfig
from semantic_index.defaults import ChunkingDefaults
from semantic_index.embedding import OpenAIEmbedding
from semantic_index.errors import ConfigurationError, DimensionMismatch, DocumentNotFound
from semantic_index.index import FlatVectorIndex
from semantic_index.keys import IndexKey
from semantic_index.lifecycle import IndexManager
from semantic_index.models import Document, SearchOptions
from semantic_index.service import SemanticIndexService, TextFileExtractor

# Non-periodic within 26 characters, so fixed windows never repeat.
LETTERS = "".join(chr(97 + (i * 7) % 26) for i in range(100))

NOTES = (
    "# Protein aggregation\n\n"
    "Protein aggregation in neurons is studied with live imaging.\n\n"
    "## Methods\n\n"
    "Cells were fixed and stained after two days.\n"
)


def build_service(store, provider, model, tmp_path: Path, **kwargs) -> SemanticIndexService:
    return SemanticIndexService(
        store=store,
        extractor=TextFileExtractor(),
        provider=provider,
        index_manager=IndexManager(tmp_path / "indexes"),
        default_model=model,
        **kwargs,
    )


@pytest_asyncio.fixture
async def service(store, fake_provider, small_model, tmp_path: Path) -> SemanticIndexService:
    semantic_service = build_service(store, fake_provider, small_model, tmp_path)
    yield semantic_service
    await semantic_service.aclose()


class TestChunkDocument:
    """Tests for chunking and persisting documents."""

    @pytest.mark.asyncio
    async def test_markdown_file_uses_markdown_strategy(
        self, service, text_document_factory, store
    ) -> None:
        document = text_document_factory("notes.md", NOTES)
        result = await service.chunk_document(document.id)

        assert result.strategy == ChunkingStrategy.MARKDOWN.value
        assert result.chunks_created == 1
        (chunk,) = store.get_document_chunks(document.id)
        assert chunk.content == NOTES.strip()
        assert (chunk.start_offset, chunk.end_offset) == (0, len(NOTES))
        assert not chunk.is_embedded

    @pytest.mark.asyncio
    async def test_rechunking_is_idempotent(self, service, text_document_factory, store) -> None:
        document = text_document_factory("notes.md", NOTES)
        first = await service.chunk_document(document.id)
        second = await service.chunk_document(document.id)

        assert second.chunks_created == 0
        assert second.duplicates_skipped == first.chunks_created
        assert len(store.get_document_chunks(document.id)) == first.chunks_created

    @pytest.mark.asyncio
    async def test_duplicate_spans_within_a_document(
        self, service, text_document_factory, store
    ) -> None:
        document = text_document_factory(
            "repeats.txt", "Same paragraph.\n\nSame paragraph.\n\nOther."
        )
        result = await service.chunk_document(
            document.id,
            {"strategy": "paragraph", "target_tokens": 5, "overlap_tokens": 0, "min_chunk_tokens": 0},
        )

        assert result.chunks_created == 2
        assert result.duplicates_skipped == 1
        contents = [chunk.content for chunk in store.get_document_chunks(document.id)]
        assert contents == ["Same paragraph.", "Other."]

    @pytest.mark.asyncio
    async def test_overrides_apply_on_top_of_defaults(
        self, service, text_document_factory, store
    ) -> None:
        text = "\n\n".join(f"Paragraph {i} has a handful of words." for i in range(12))
        document = text_document_factory("plain.txt", text)
        result = await service.chunk_document(
            document.id, {"strategy": "paragraph", "target_tokens": 40, "overlap_tokens": 0}
        )

        assert result.strategy == "paragraph"
        chunks = store.get_document_chunks(document.id)
        assert len(chunks) > 1
        assert all(chunk.token_estimate <= 40 for chunk in chunks)
        assert chunks[0].start_offset == 0
        assert chunks[-1].end_offset == len(text)

    @pytest.mark.asyncio
    async def test_configured_defaults_are_used(
        self, store, fake_provider, small_model, text_document_factory, tmp_path: Path
    ) -> None:
        defaults = ChunkingDefaults(
            ChunkingOptions(target_tokens=10, overlap_tokens=0, strategy="fixed", min_chunk_tokens=0)
        )
        service = build_service(store, fake_provider, small_model, tmp_path, chunking_defaults=defaults)
        document = text_document_factory("letters.txt", LETTERS)

        result = await service.chunk_document(document.id)

        assert result.strategy == "fixed"
        assert [len(c.content) for c in store.get_document_chunks(document.id)] == [40, 40, 20]
        await service.aclose()

    @pytest.mark.asyncio
    async def test_new_chunks_continue_the_index_sequence(
        self, service, text_document_factory, store
    ) -> None:
        document = text_document_factory("letters.txt", LETTERS)
        await service.chunk_document(document.id)
        await service.chunk_document(
            document.id, ChunkingOptions(target_tokens=10, overlap_tokens=0, strategy="fixed")
        )

        indexes = [chunk.chunk_index for chunk in store.get_document_chunks(document.id)]
        assert indexes == list(range(len(indexes)))
        assert len(indexes) == 4

    @pytest.mark.asyncio
    async def test_page_numbers_for_page_markup(self, service, text_document_factory, store) -> None:
        content = "--- Page 1 ---\nIntroduction text.\n--- Page 2 ---\nResults text."
        document = text_document_factory("paper.txt", content, content_type=ContentType.PDF)

        result = await service.chunk_document(document.id, {"min_chunk_tokens": 0})

        assert result.strategy == "markdown"
        assert [c.page_number for c in store.get_document_chunks(document.id)] == [1, 2]

    @pytest.mark.asyncio
    async def test_invalid_overrides(self, service, text_document_factory) -> None:
        document = text_document_factory("notes.md", NOTES)
        with pytest.raises(ConfigurationError, match="must be less than"):
            await service.chunk_document(document.id, {"overlap_tokens": 5000})
        with pytest.raises(ConfigurationError, match="Unknown chunking option"):
            await service.chunk_document(document.id, {"chunk_size": 3})

    @pytest.mark.asyncio
    async def test_document_without_source(self, service, store) -> None:
        document = store.add_document(Document(name="no-path"))
        with pytest.raises(ConfigurationError, match="has no source path"):
            await service.chunk_document(document.id)

    @pytest.mark.asyncio
    async def test_unknown_document(self, service) -> None:
        with pytest.raises(DocumentNotFound):
            await service.chunk_document(12345)
        with pytest.raises(DocumentNotFound):
            await service.embed_document_chunks(12345)
        with pytest.raises(DocumentNotFound):
            await service.delete_document(12345)


class TestEmbedDocument:
    @pytest.mark.asyncio
    async def test_embeds_pending_chunks_once(
        self, service, text_document_factory, store, small_model
    ) -> None:
        document = text_document_factory("notes.md", NOTES)
        await service.chunk_document(document.id, {"target_tokens": 20, "overlap_tokens": 0})
        chunk_count = len(store.get_document_chunks(document.id))

        first = await service.embed_document_chunks(document.id)
        second = await service.embed_document_chunks(document.id)

        assert first.chunks_processed == chunk_count
        assert first.model_name == small_model.model_name
        assert second.chunks_processed == 0
        assert all(chunk.is_embedded for chunk in store.get_document_chunks(document.id))
        assert store.get_document_model_config(document.id) == small_model

        stats = await service.get_index_stats(IndexKey.for_document(document.id, small_model))
        assert stats.vector_count == chunk_count

    @pytest.mark.asyncio
    async def test_batches(
        self, store, fake_provider, small_model, text_document_factory, tmp_path: Path
    ) -> None:
        service = build_service(store, fake_provider, small_model, tmp_path, batch_size=2)
        document = text_document_factory("letters.txt", LETTERS)
        await service.chunk_document(
            document.id, ChunkingOptions(target_tokens=5, overlap_tokens=0, strategy="fixed")
        )

        result = await service.embed_document_chunks(document.id)

        assert result.chunks_processed == 5
        assert len(fake_provider.calls) == 5
        await service.aclose()

    @pytest.mark.asyncio
    async def test_wrong_dimensions_are_rejected(
        self, store, provider_factory, small_model, text_document_factory, tmp_path: Path
    ) -> None:
        provider = provider_factory({small_model.model_name: small_model.dimensions + 4})
        service = build_service(store, provider, small_model, tmp_path)
        document = text_document_factory("notes.md", NOTES)
        await service.chunk_document(document.id)

        with pytest.raises(DimensionMismatch):
            await service.embed_document_chunks(document.id)
        assert not any(chunk.is_embedded for chunk in store.get_document_chunks(document.id))
        await service.aclose()

    @pytest.mark.asyncio
    async def test_nothing_to_embed(self, service, text_document_factory) -> None:
        document = text_document_factory("notes.md", NOTES)
        result = await service.embed_document_chunks(document.id)
        assert result.chunks_processed == 0


class TestSearchWorkflow:
    """Chunk, embed and search across documents and models."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, service, text_document_factory) -> None:
        document = text_document_factory("notes.md", NOTES, file_type="md")
        await service.chunk_document(document.id)
        await service.embed_document_chunks(document.id)

        response = await service.search("protein aggregation in neurons")

        assert response.total_results == 1
        result = response.results[0]
        assert result.document_id == document.id
        assert result.document_name == "notes.md"
        assert result.file_type == "md"
        assert 0.0 <= result.score <= 1.0

    @pytest.mark.asyncio
    async def test_two_models_two_query_embeddings(
        self, service, text_document_factory, fake_provider, large_model
    ) -> None:
        small_doc = text_document_factory("notes.md", NOTES)
        large_doc = text_document_factory(
            "other.md",
            "# Mass spectrometry\n\nPeptides were measured twice.\n",
            embedding_model=large_model.model_name,
            embedding_dimensions=large_model.dimensions,
        )
        for document in (small_doc, large_doc):
            await service.chunk_document(document.id)
            await service.embed_document_chunks(document.id)
        fake_provider.calls.clear()

        response = await service.search("protein aggregation", SearchOptions(limit=5))

        assert len(fake_provider.calls) == 2
        assert {model for _, model in fake_provider.calls} == {"test/small", "test/large"}
        assert response.model_groups == 2
        assert response.documents_searched == 2
        assert {r.document_id for r in response.results} == {small_doc.id, large_doc.id}

    @pytest.mark.asyncio
    async def test_reset_marks_chunks_pending(
        self, service, text_document_factory, store, small_model
    ) -> None:
        document = text_document_factory("notes.md", NOTES)
        await service.chunk_document(document.id)
        embedded = await service.embed_document_chunks(document.id)
        key = IndexKey.for_document(document.id, small_model)

        await service.reset_index(key)

        assert (await service.get_index_stats(key)).vector_count == 0
        assert not any(chunk.is_embedded for chunk in store.get_document_chunks(document.id))
        again = await service.embed_document_chunks(document.id)
        assert again.chunks_processed == embedded.chunks_processed

    @pytest.mark.asyncio
    async def test_backup_and_restore(
        self, service, text_document_factory, small_model, tmp_path: Path
    ) -> None:
        document = text_document_factory("notes.md", NOTES)
        await service.chunk_document(document.id)
        await service.embed_document_chunks(document.id)
        key = IndexKey.for_document(document.id, small_model)

        backup = await service.backup_index(key, tmp_path / "backup.parquet")
        await service.index_manager.reset_index(key)
        await service.restore_index(key, backup)

        assert (await service.get_index_stats(key)).vector_count == 1

    @pytest.mark.asyncio
    async def test_maintenance_follows_the_document_index_location(
        self, store, fake_provider, small_model, text_document_factory, tmp_path: Path
    ) -> None:
        custom = tmp_path / "custom" / "notes.parquet"
        document = text_document_factory("notes.md", NOTES, index_location=str(custom))
        first = build_service(store, fake_provider, small_model, tmp_path)
        await first.chunk_document(document.id)
        await first.embed_document_chunks(document.id)
        await first.aclose()
        key = IndexKey.for_document(document.id, small_model)

        restarted = build_service(store, fake_provider, small_model, tmp_path)
        stats = await restarted.get_index_stats(key)
        assert stats.vector_count == 1
        assert stats.location == str(custom)
        assert not restarted.index_manager.location_for(key).exists()

        await restarted.reset_index(key)
        await restarted.aclose()

        reopened = FlatVectorIndex(key, custom)
        await reopened.load_index()
        assert reopened.vector_count == 0
        assert not any(chunk.is_embedded for chunk in store.get_document_chunks(document.id))

    @pytest.mark.asyncio
    async def test_delete_document(
        self, service, text_document_factory, store, small_model
    ) -> None:
        document = text_document_factory("notes.md", NOTES)
        await service.chunk_document(document.id, {"target_tokens": 20, "overlap_tokens": 0})
        await service.embed_document_chunks(document.id)
        location = service.index_manager.location_for(IndexKey.for_document(document.id, small_model))
        assert location.exists()

        deleted = await service.delete_document(document.id)

        assert deleted > 1
        assert not location.exists()
        assert store.get_document_chunks(document.id) == []
        assert (await service.search("protein aggregation")).results == []


class TestFromConfig:
    @pytest.mark.asyncio
    async def test_builds_collaborators(self, tmp_path: Path, fake_provider) -> None:
        config = SemanticIndexConfig(
            index=IndexConfig(base_path=str(tmp_path / "indexes"), max_open_indexes=3),
            store=StoreConfig(path=str(tmp_path / "records.db")),
        )
        service = SemanticIndexService.from_config(config)

        assert isinstance(service.provider, OpenAIEmbedding)
        assert service.default_model.dimensions == 1536
        assert service.index_manager.max_open == 3
        assert service.chunking_defaults.source is None
        assert (tmp_path / "records.db").exists()

        with_fake = SemanticIndexService.from_config(config, provider=fake_provider)
        assert with_fake.provider is fake_provider
        await service.aclose()
        await with_fake.aclose()
        service.store.close()
        with_fake.store.close()
