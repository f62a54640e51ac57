"""Indexing pipeline tests: chunk -> embed -> upsert -> status, then retrieval.

Everything runs against the in-memory vector store and the fake
embedding provider from conftest.
"""

from __future__ import annotations

from typing import Iterator

import pytest

from conftest import DIM, FakeEmbeddingProvider, make_generator, override_settings, unit
from src.common.errors import AuthorizationError, ValidationError, VectorIndexError
from src.indexing.indexer import MaterialDocument, MaterialIndexer
from src.indexing.status import ProcessingStatus, ProcessingStatusTracker
from src.indexing.stores import InMemoryVectorStore
from src.indexing.vector_index import VectorIndex
from src.retrieval.search import RetrievalEngine

SENTENCES = [
    "Photosynthesis happens in the chloroplast.",
    "Plants release oxygen as a byproduct.",
    "Roots absorb water from the soil.",
]
QUERY = "What gas do plants release?"
QUERY_VECTOR = [0.1, 0.95, 0.1] + [0.0] * (DIM - 3)


@pytest.fixture(autouse=True)
def _one_sentence_per_chunk() -> Iterator[None]:
    with override_settings(
        chunk_target_tokens=5,
        chunk_overlap_tokens=0,
        chunk_max_tokens=60,
        chunk_min_tokens=1,
    ):
        yield


def _provider(**kwargs) -> FakeEmbeddingProvider:
    vectors = {sentence: unit(i) for i, sentence in enumerate(SENTENCES)}
    vectors[QUERY] = QUERY_VECTOR
    return FakeEmbeddingProvider(vectors, **kwargs)


async def _pipeline(provider: FakeEmbeddingProvider | None = None, *, initialize: bool = True, **gen_kwargs):
    generator = make_generator(provider or _provider(), **gen_kwargs)
    store = InMemoryVectorStore("material_chunks_test")
    index = VectorIndex(store, generator, upsert_batch_size=2)
    if initialize:
        await index.initialize()
    tracker = ProcessingStatusTracker()
    return MaterialIndexer(generator, index, tracker), index, tracker, generator, store


def _doc(text: str | None = None, material_id: str = "mat-1", tenant_id: str = "school-a") -> MaterialDocument:
    return MaterialDocument(
        material_id=material_id,
        tenant_id=tenant_id,
        text=" ".join(SENTENCES) if text is None else text,
        original_name="biology.pdf",
    )


class TestIndexMaterial:
    @pytest.mark.asyncio
    async def test_end_to_end_index_then_retrieve(self):
        indexer, index, tracker, generator, store = await _pipeline()

        report = await indexer.index_material(_doc())

        assert report.success
        assert report.total_chunks == 3
        assert report.embedded_chunks == 3
        assert report.upserted_chunks == 3
        assert report.record.status is ProcessingStatus.COMPLETED
        assert report.record.processed_chunks == 3
        assert (await tracker.get("mat-1")).status is ProcessingStatus.COMPLETED

        stored = store.get("mat-1_chunk_1")
        assert stored.metadata.tenant_id == "school-a"
        assert stored.metadata.chunk_index == 1
        assert stored.metadata.content == SENTENCES[1]

        engine = RetrievalEngine(generator, index, default_top_k=5, similarity_floor=0.5)
        result = await engine.retrieve("mat-1", "school-a", QUERY)
        assert result.chunk_ids == ["mat-1_chunk_1"]
        assert result.below_floor == 2
        assert result.top_score == pytest.approx(0.989, abs=0.01)

    @pytest.mark.asyncio
    async def test_chunk_order_survives_concurrent_batches(self):
        indexer, _, _, _, store = await _pipeline(batch_size=1, max_concurrency=3)
        await indexer.index_material(_doc())
        for i, sentence in enumerate(SENTENCES):
            record = store.get(f"mat-1_chunk_{i}")
            assert record.values == unit(i)
            assert record.metadata.content == sentence

    @pytest.mark.asyncio
    async def test_failed_embedding_batch_fails_material(self):
        text = " ".join([SENTENCES[0], "This sentence will FAIL to embed.", SENTENCES[2]])
        indexer, _, tracker, _, store = await _pipeline(batch_size=1)

        report = await indexer.index_material(_doc(text))

        assert not report.success
        assert report.failed_chunk_ids == ["mat-1_chunk_1"]
        assert report.upserted_chunks == 2
        record = await tracker.get("mat-1")
        assert record.status is ProcessingStatus.FAILED
        assert record.processed_chunks == 2
        assert record.failed_chunks == 1
        assert store.get("mat-1_chunk_1") is None

    @pytest.mark.asyncio
    async def test_uninitialized_index_fails_material_and_raises(self):
        indexer, _, tracker, _, _ = await _pipeline(initialize=False)

        with pytest.raises(VectorIndexError):
            await indexer.index_material(_doc())

        record = await tracker.get("mat-1")
        assert record.status is ProcessingStatus.FAILED
        assert record.failed_chunks == record.total_chunks
        assert "not initialized" in record.error_message

    @pytest.mark.asyncio
    async def test_empty_text_is_rejected_without_status(self):
        indexer, _, tracker, _, _ = await _pipeline()
        with pytest.raises(ValidationError, match="no chunks"):
            await indexer.index_material(_doc("   "))
        assert await tracker.find("mat-1") is None

    @pytest.mark.asyncio
    async def test_missing_tenant_rejected(self):
        indexer, *_ = await _pipeline()
        with pytest.raises(ValidationError, match="tenant_id"):
            await indexer.index_material(_doc(tenant_id=""))


class TestDeleteAndReindex:
    @pytest.mark.asyncio
    async def test_delete_material(self):
        indexer, index, tracker, _, _ = await _pipeline()
        await indexer.index_material(_doc())

        deleted = await indexer.delete_material("mat-1", "school-a")

        assert deleted == 3
        assert await tracker.find("mat-1") is None
        assert (await index.stats()).total_records == 0

    @pytest.mark.asyncio
    async def test_indexing_again_drops_previous_chunks(self):
        indexer, index, tracker, _, store = await _pipeline()
        await indexer.index_material(_doc())

        report = await indexer.index_material(_doc(SENTENCES[0]))

        assert report.total_chunks == 1
        assert report.record.status is ProcessingStatus.COMPLETED
        assert store.get("mat-1_chunk_1") is None
        assert store.get("mat-1_chunk_2") is None
        assert (await index.stats()).total_records == 1

    @pytest.mark.asyncio
    async def test_reindex_replaces_chunks(self):
        indexer, index, tracker, _, store = await _pipeline()
        await indexer.index_material(_doc())

        report = await indexer.reindex_material(_doc(SENTENCES[0]))

        assert report.total_chunks == 1
        assert report.record.status is ProcessingStatus.COMPLETED
        assert store.get("mat-1_chunk_1") is None
        assert (await index.stats()).total_records == 1

    @pytest.mark.asyncio
    async def test_other_materials_untouched(self):
        indexer, index, _, _, _ = await _pipeline()
        await indexer.index_material(_doc(material_id="mat-1"))
        await indexer.index_material(_doc(material_id="mat-2"))

        await indexer.delete_material("mat-1", "school-a")

        stats = await index.stats()
        assert stats.total_records == 3
        assert stats.material_count == 1


class TestOwnership:
    @pytest.mark.asyncio
    async def test_other_tenant_cannot_index_owned_material(self):
        indexer, index, tracker, generator, store = await _pipeline()
        await indexer.index_material(_doc(tenant_id="school-a"))

        with pytest.raises(AuthorizationError):
            await indexer.index_material(_doc(SENTENCES[0], tenant_id="school-b"))

        record = await tracker.get("mat-1")
        assert record.tenant_id == "school-a"
        assert record.status is ProcessingStatus.COMPLETED
        assert store.get("mat-1_chunk_0").metadata.tenant_id == "school-a"
        assert (await index.stats()).total_records == 3

        engine = RetrievalEngine(generator, index, default_top_k=5, similarity_floor=None)
        result = await engine.retrieve("mat-1", "school-a", QUERY)
        assert len(result.chunks) == 3

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_reindex_or_delete(self):
        indexer, index, tracker, _, _ = await _pipeline()
        await indexer.index_material(_doc(tenant_id="school-a"))

        with pytest.raises(AuthorizationError):
            await indexer.reindex_material(_doc(tenant_id="school-b"))
        with pytest.raises(AuthorizationError):
            await indexer.delete_material("mat-1", "school-b")

        assert (await tracker.get("mat-1")).tenant_id == "school-a"
        assert (await index.stats()).total_records == 3
