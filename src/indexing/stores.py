"""Vector store providers behind ``VectorIndex``.

Two implementations of the same narrow contract:

- ``PgVectorStore`` - PostgreSQL + pgvector through a psycopg async
  connection pool.  One table per collection, typed metadata columns,
  HNSW cosine index.
- ``InMemoryVectorStore`` - exact cosine search over a dict.  Single
  process only; used for local development and tests.

``build_vector_store()`` picks one from ``VECTOR_STORE_KIND``.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

from pgvector import Vector
from pgvector.psycopg import register_vector_async
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from config import Settings, settings
from src.indexing.embedder import cosine_similarity
from src.indexing.models import (
    CollectionDescription,
    QueryFilter,
    VectorMatch,
    VectorMetadata,
    VectorRecord,
)
from src.indexing.schema import describe_collection, init_collection

logger = logging.getLogger(__name__)

# only these columns may appear in a WHERE clause built from a QueryFilter
_FILTER_COLUMNS = frozenset({"tenant_id", "material_id", "chunk_type"})

_METADATA_COLUMNS = (
    "tenant_id",
    "material_id",
    "content",
    "chunk_type",
    "chunk_index",
    "page_number",
    "section_title",
    "token_count",
    "char_count",
)


class VectorStoreProvider(Protocol):
    name: str

    async def open(self) -> None: ...

    async def describe(self) -> CollectionDescription | None: ...

    async def create(self, dimension: int, metric: str = "cosine") -> None: ...

    async def upsert(self, records: list[VectorRecord]) -> None: ...

    async def query(
        self, vector: list[float], flt: QueryFilter, top_k: int
    ) -> list[VectorMatch]: ...

    async def delete(self, flt: QueryFilter) -> int: ...

    async def describe_stats(self) -> dict[str, int]: ...

    async def close(self) -> None: ...


def collection_name_for(config: Settings | None = None) -> str:
    """``<prefix>_<environment>``, lowercased and reduced to [a-z0-9_]."""
    config = config or settings
    raw = f"{config.vector_collection_prefix}_{config.deployment_environment}".lower()
    name = re.sub(r"[^a-z0-9_]+", "_", raw).strip("_")
    if not name:
        raise ValueError("Vector collection name resolved to an empty string.")
    if name[0].isdigit():
        name = f"c_{name}"
    # Postgres truncates identifiers at 63 bytes
    return name[:63]


def _where_clause(flt: QueryFilter) -> tuple[sql.Composable, list[Any]]:
    conditions = flt.as_dict()
    parts: list[sql.Composable] = []
    params: list[Any] = []
    for column, value in conditions.items():
        if column not in _FILTER_COLUMNS:
            raise ValueError(f"Unsupported filter column: {column}")
        parts.append(sql.SQL("{} = %s").format(sql.Identifier(column)))
        params.append(value)
    if not parts:
        return sql.SQL("TRUE"), params
    return sql.SQL(" AND ").join(parts), params


# ── PostgreSQL + pgvector ────────────────────────────────────────


class PgVectorStore:
    """pgvector-backed collection.  The pool is owned by the instance."""

    def __init__(
        self,
        name: str,
        *,
        database_url: str | None = None,
        min_size: int | None = None,
        max_size: int | None = None,
        ef_search: int | None = None,
    ) -> None:
        self.name = name
        self._database_url = database_url if database_url is not None else settings.database_url
        self._min_size = min_size or settings.vector_pool_min_size
        self._max_size = max_size or settings.vector_pool_max_size
        self._ef_search = ef_search or settings.vector_hnsw_ef_search
        self._pool: AsyncConnectionPool | None = None

    # ── Pool lifecycle ────────────────────────────────────────

    async def open(self) -> None:
        if self._pool is not None:
            return
        if not self._database_url:
            raise RuntimeError("DATABASE_URL is required for the pgvector store.")
        # autocommit=True so that conn.transaction() manages its own
        # explicit BEGIN/COMMIT
        self._pool = AsyncConnectionPool(
            conninfo=self._database_url,
            min_size=self._min_size,
            max_size=self._max_size,
            open=False,
            kwargs={"autocommit": True},
        )
        await self._pool.open()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    def _require_pool(self) -> AsyncConnectionPool:
        if self._pool is None:
            raise RuntimeError(f"Vector store '{self.name}' is not open.")
        return self._pool

    # ── Collection ────────────────────────────────────────────

    async def describe(self) -> CollectionDescription | None:
        async with self._require_pool().connection() as conn:
            described = await describe_collection(conn, self.name)
        if described is None:
            return None
        dimension, metric = described
        return CollectionDescription(name=self.name, dimension=dimension, metric=metric)

    async def create(self, dimension: int, metric: str = "cosine") -> None:
        if metric != "cosine":
            raise ValueError(f"pgvector store only supports cosine collections, got {metric!r}")
        async with self._require_pool().connection() as conn:
            await init_collection(conn, self.name, dimension)
        logger.info("created vector collection %s (dimension=%d)", self.name, dimension)

    # ── Data paths ────────────────────────────────────────────

    async def upsert(self, records: list[VectorRecord]) -> None:
        if not records:
            return
        columns = ["id", *_METADATA_COLUMNS, "embedding"]
        statement = sql.SQL(
            """
            INSERT INTO {table} ({columns})
            VALUES ({placeholders})
            ON CONFLICT (id) DO UPDATE SET {updates}, upserted_at = NOW()
            """
        ).format(
            table=sql.Identifier(self.name),
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            placeholders=sql.SQL(", ").join([sql.Placeholder()] * len(columns)),
            updates=sql.SQL(", ").join(
                sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c))
                for c in columns[1:]
            ),
        )
        rows = []
        for record in records:
            meta = record.metadata
            rows.append(
                (
                    record.id,
                    meta.tenant_id,
                    meta.material_id,
                    meta.content,
                    meta.chunk_type.value,
                    meta.chunk_index,
                    meta.page_number,
                    meta.section_title,
                    meta.token_count,
                    meta.char_count,
                    Vector(record.values),
                )
            )
        async with self._require_pool().connection() as conn:
            await register_vector_async(conn)
            async with conn.transaction():
                async with conn.cursor() as cur:
                    await cur.executemany(statement, rows)

    async def query(
        self, vector: list[float], flt: QueryFilter, top_k: int
    ) -> list[VectorMatch]:
        where, params = _where_clause(flt)
        statement = sql.SQL(
            """
            SELECT id, {columns}, (embedding <=> %s) AS distance
            FROM {table}
            WHERE {where}
            ORDER BY distance ASC
            LIMIT %s
            """
        ).format(
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in _METADATA_COLUMNS),
            table=sql.Identifier(self.name),
            where=where,
        )
        query_vector = Vector(vector)
        async with self._require_pool().connection() as conn:
            await register_vector_async(conn)
            # set_config(..., true) is transaction-local, so it needs an
            # explicit transaction on an autocommit connection
            async with conn.transaction():
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(
                        "SELECT set_config('hnsw.ef_search', %s, true)",
                        (str(self._ef_search),),
                    )
                    await cur.execute(statement, [query_vector, *params, int(top_k)])
                    rows = await cur.fetchall()

        return [
            VectorMatch(
                id=row["id"],
                score=1.0 - float(row["distance"]),
                metadata=VectorMetadata.from_payload(
                    {c: row[c] for c in _METADATA_COLUMNS if row[c] is not None}
                ),
            )
            for row in rows
        ]

    async def delete(self, flt: QueryFilter) -> int:
        where, params = _where_clause(flt)
        statement = sql.SQL("DELETE FROM {table} WHERE {where}").format(
            table=sql.Identifier(self.name), where=where
        )
        async with self._require_pool().connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(statement, params)
                return cur.rowcount

    async def describe_stats(self) -> dict[str, int]:
        statement = sql.SQL(
            """
            SELECT
                COUNT(*) AS total_records,
                COUNT(DISTINCT material_id) AS material_count,
                COUNT(DISTINCT tenant_id) AS tenant_count
            FROM {table}
            """
        ).format(table=sql.Identifier(self.name))
        async with self._require_pool().connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(statement)
                row = await cur.fetchone()
        row = row or {}
        return {
            "total_records": int(row.get("total_records", 0)),
            "material_count": int(row.get("material_count", 0)),
            "tenant_count": int(row.get("tenant_count", 0)),
        }


# ── In-memory ────────────────────────────────────────────────────


class InMemoryVectorStore:
    """Exact cosine search over a dict.

    Pass ``dimension`` to simulate a collection that already exists,
    e.g. one created earlier with a different embedding model.
    """

    def __init__(self, name: str = "memory", dimension: int | None = None) -> None:
        self.name = name
        self._dimension = dimension
        self._records: dict[str, VectorRecord] = {}
        self.upsert_calls = 0

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def describe(self) -> CollectionDescription | None:
        if self._dimension is None:
            return None
        return CollectionDescription(name=self.name, dimension=self._dimension, metric="cosine")

    async def create(self, dimension: int, metric: str = "cosine") -> None:
        if self._dimension is None:
            self._dimension = dimension

    async def upsert(self, records: list[VectorRecord]) -> None:
        self.upsert_calls += 1
        for record in records:
            self._records[record.id] = record

    async def query(
        self, vector: list[float], flt: QueryFilter, top_k: int
    ) -> list[VectorMatch]:
        scored = [
            VectorMatch(
                id=record.id,
                score=cosine_similarity(vector, record.values),
                metadata=record.metadata,
            )
            for record in self._records.values()
            if flt.matches(record.metadata)
        ]
        scored.sort(key=lambda match: match.score, reverse=True)
        return scored[: max(0, top_k)]

    async def delete(self, flt: QueryFilter) -> int:
        doomed = [rid for rid, record in self._records.items() if flt.matches(record.metadata)]
        for rid in doomed:
            del self._records[rid]
        return len(doomed)

    async def describe_stats(self) -> dict[str, int]:
        records = list(self._records.values())
        return {
            "total_records": len(records),
            "material_count": len({r.metadata.material_id for r in records}),
            "tenant_count": len({r.metadata.tenant_id for r in records}),
        }

    def get(self, record_id: str) -> VectorRecord | None:
        return self._records.get(record_id)


def build_vector_store(config: Settings | None = None) -> VectorStoreProvider:
    config = config or settings
    name = collection_name_for(config)
    kind = config.vector_store_kind.strip().lower()
    if kind == "pgvector":
        return PgVectorStore(
            name,
            database_url=config.database_url,
            min_size=config.vector_pool_min_size,
            max_size=config.vector_pool_max_size,
            ef_search=config.vector_hnsw_ef_search,
        )
    if kind == "memory":
        return InMemoryVectorStore(name)
    raise ValueError(
        f"Unsupported vector store kind: {config.vector_store_kind}. "
        "Expected 'pgvector' or 'memory'."
    )
