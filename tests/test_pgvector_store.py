"""Integration tests for the pgvector store.

Skipped unless DATABASE_URL points at a Postgres with the vector
extension available.  Each test uses its own throwaway table.
"""

from __future__ import annotations

from uuid import uuid4

import pytest
import pytest_asyncio

from conftest import DIM, make_generator, unit
from src.common.errors import VectorIndexError
from src.indexing.models import ChunkType, QueryFilter, VectorMetadata, VectorRecord
from src.indexing.stores import PgVectorStore
from src.indexing.vector_index import IndexState, VectorIndex


def _record(record_id: str, values: list[float], material_id: str = "M1", tenant_id: str = "T1") -> VectorRecord:
    return VectorRecord(
        id=record_id,
        values=values,
        metadata=VectorMetadata(
            tenant_id=tenant_id,
            material_id=material_id,
            content=f"content of {record_id}",
            chunk_type=ChunkType.HEADING,
            chunk_index=3,
            token_count=5,
            char_count=20,
            page_number=2,
        ),
    )


@pytest_asyncio.fixture
async def pg_store(database_url):
    store = PgVectorStore(f"material_chunks_it_{uuid4().hex[:12]}", database_url=database_url)
    await store.open()
    try:
        yield store
    finally:
        async with store._require_pool().connection() as conn:
            await conn.execute(f'DROP TABLE IF EXISTS "{store.name}"')
        await store.close()


@pytest.mark.asyncio
async def test_initialize_creates_collection(pg_store):
    index = VectorIndex(pg_store, make_generator())
    await index.initialize()
    described = await pg_store.describe()
    assert described.dimension == DIM
    assert described.metric == "cosine"


@pytest.mark.asyncio
async def test_dimension_mismatch_on_existing_collection(pg_store):
    await pg_store.create(DIM * 2)
    index = VectorIndex(pg_store, make_generator())
    with pytest.raises(VectorIndexError):
        await index.initialize()
    assert index.state is IndexState.FATAL


@pytest.mark.asyncio
async def test_upsert_query_delete(pg_store):
    index = VectorIndex(pg_store, make_generator())
    await index.initialize()

    result = await index.upsert(
        [
            _record("a", unit(0)),
            _record("b", unit(1)),
            _record("c", unit(0), material_id="M2"),
            _record("d", unit(0), tenant_id="T2"),
        ]
    )
    assert result.upserted_count == 4

    matches = await index.query(unit(0), QueryFilter(material_id="M1", tenant_id="T1"), 5)
    assert [m.id for m in matches] == ["a", "b"]
    assert matches[0].score == pytest.approx(1.0, abs=1e-4)
    meta = matches[0].metadata
    assert meta.chunk_type is ChunkType.HEADING
    assert meta.page_number == 2
    assert meta.section_title is None

    stats = await index.stats()
    assert stats.total_records == 4
    assert stats.material_count == 2
    assert stats.tenant_count == 2

    assert await index.delete_by_material("M1", tenant_id="T1") == 2
    assert (await index.stats()).total_records == 2


@pytest.mark.asyncio
async def test_upsert_overwrites(pg_store):
    index = VectorIndex(pg_store, make_generator())
    await index.initialize()
    await index.upsert([_record("a", unit(0))])
    await index.upsert([_record("a", unit(1))])

    matches = await index.query(unit(1), QueryFilter(material_id="M1"), 5)
    assert [m.id for m in matches] == ["a"]
    assert matches[0].score == pytest.approx(1.0, abs=1e-4)
