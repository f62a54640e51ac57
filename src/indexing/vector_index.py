"""VectorIndex - tenant-scoped facade over a vector store provider.

Lifecycle::

    UNINITIALIZED --initialize()--> READY
    UNINITIALIZED --initialize() on dimension mismatch--> FATAL

Every data operation requires READY.  FATAL is sticky for the life of
the instance: the collection was built for a different embedding model
and mixing vectors across models silently corrupts similarity search,
so nothing is migrated automatically.  An operator must recreate or
rename the collection.

Upserts are validated record by record before anything is sent;
invalid records land in ``rejected_ids`` and valid ones go out in
batches of ``vector_upsert_batch_size``.  A batch the store refuses is
recorded in ``failed_ids`` and does not stop the remaining batches.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from config import settings
from src.common.errors import ProviderError, ValidationError, VectorIndexError
from src.indexing.embedder import EmbeddingGenerator
from src.indexing.models import (
    IndexStats,
    QueryFilter,
    UpsertResult,
    VectorMatch,
    VectorRecord,
)
from src.indexing.stores import VectorStoreProvider

logger = logging.getLogger(__name__)


class IndexState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    FATAL = "fatal"


class VectorIndex:
    def __init__(
        self,
        store: VectorStoreProvider,
        generator: EmbeddingGenerator,
        *,
        dimensions: int | None = None,
        upsert_batch_size: int | None = None,
        max_concurrency: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self.dimensions = dimensions or generator.dimensions
        self.upsert_batch_size = max(1, upsert_batch_size or settings.vector_upsert_batch_size)
        self.max_concurrency = max(1, max_concurrency or settings.vector_upsert_max_concurrency)
        self.timeout = timeout if timeout is not None else settings.vector_store_timeout_seconds
        self.state = IndexState.UNINITIALIZED
        self._fatal_reason: str | None = None
        self._init_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.store.name

    # ── Lifecycle ─────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create the collection if absent, else verify its dimension.  Idempotent."""
        async with self._init_lock:
            if self.state is IndexState.READY:
                return
            if self.state is IndexState.FATAL:
                raise VectorIndexError(self._fatal_reason or "Vector index is unusable.")

            await self._bounded(self.store.open(), "open")
            described = await self._bounded(self.store.describe(), "describe")
            if described is None:
                await self._bounded(self.store.create(self.dimensions, "cosine"), "create")
                logger.info(
                    "vector index %s created (dimension=%d, metric=cosine)",
                    self.name,
                    self.dimensions,
                )
            elif described.dimension != self.dimensions:
                self.state = IndexState.FATAL
                self._fatal_reason = (
                    f"Vector collection '{self.name}' has dimension {described.dimension} "
                    f"but the embedding model '{self.generator.model}' produces "
                    f"{self.dimensions}-dimensional vectors. Recreate the collection or "
                    "point VECTOR_COLLECTION_PREFIX at a new one; vectors are never "
                    "migrated automatically."
                )
                logger.error("vector index %s is unusable: %s", self.name, self._fatal_reason)
                raise VectorIndexError(self._fatal_reason)
            else:
                logger.info(
                    "vector index %s ready (dimension=%d, metric=%s)",
                    self.name,
                    described.dimension,
                    described.metric,
                )
            self.state = IndexState.READY

    async def close(self) -> None:
        await self.store.close()

    def _require_ready(self) -> None:
        if self.state is IndexState.READY:
            return
        if self.state is IndexState.FATAL:
            raise VectorIndexError(self._fatal_reason or "Vector index is unusable.")
        raise VectorIndexError(
            f"Vector index '{self.name}' is not initialized; call initialize() at startup."
        )

    async def _bounded(self, awaitable, operation: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderError(
                f"Vector store {operation} timed out after {self.timeout:.0f}s."
            ) from exc
        except Exception as exc:
            raise ProviderError(f"Vector store {operation} failed: {exc}") from exc

    # ── Upsert ────────────────────────────────────────────────

    def _record_issues(self, record: VectorRecord) -> list[str]:
        issues = list(self.generator.validate(record.values).issues)
        meta = record.metadata
        if not record.id:
            issues.append("record id is empty")
        if not meta.tenant_id.strip():
            issues.append("metadata.tenant_id is empty")
        if not meta.material_id.strip():
            issues.append("metadata.material_id is empty")
        return issues

    async def upsert(self, records: list[VectorRecord]) -> UpsertResult:
        self._require_ready()
        result = UpsertResult()
        valid: list[VectorRecord] = []
        for record in records:
            issues = self._record_issues(record)
            if issues:
                logger.warning("rejecting vector record %s: %s", record.id, "; ".join(issues))
                result.rejected_ids.append(record.id)
            else:
                valid.append(record)

        if not valid:
            return result

        batches = [
            valid[i : i + self.upsert_batch_size]
            for i in range(0, len(valid), self.upsert_batch_size)
        ]
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _send(batch: list[VectorRecord]) -> ProviderError | None:
            async with semaphore:
                try:
                    await self._bounded(self.store.upsert(batch), "upsert")
                except ProviderError as exc:
                    return exc
            return None

        outcomes = await asyncio.gather(*(_send(batch) for batch in batches))
        for batch, error in zip(batches, outcomes):
            ids = [record.id for record in batch]
            if error is None:
                result.upserted_ids.extend(ids)
            else:
                logger.warning("upsert batch of %d records failed: %s", len(batch), error)
                result.failed_ids.extend(ids)

        logger.info(
            "upsert into %s: %d upserted, %d rejected, %d failed",
            self.name,
            len(result.upserted_ids),
            len(result.rejected_ids),
            len(result.failed_ids),
        )
        return result

    # ── Query / delete ────────────────────────────────────────

    async def query(
        self,
        vector: list[float],
        flt: QueryFilter,
        top_k: int,
    ) -> list[VectorMatch]:
        self._require_ready()
        if not flt.as_dict():
            raise ValidationError(
                "Vector queries require at least one filter (material_id or tenant_id)."
            )
        if len(vector) != self.dimensions:
            raise ValidationError(
                f"Query vector has dimension {len(vector)}, expected {self.dimensions}."
            )
        if top_k <= 0:
            return []
        return await self._bounded(self.store.query(list(vector), flt, top_k), "query")

    async def delete_by_material(self, material_id: str, tenant_id: str | None = None) -> int:
        self._require_ready()
        if not material_id or not material_id.strip():
            raise ValidationError("material_id is required to delete vectors.")
        deleted = await self._bounded(
            self.store.delete(QueryFilter(material_id=material_id, tenant_id=tenant_id)),
            "delete",
        )
        logger.info("deleted %d vectors for material %s", deleted, material_id)
        return deleted

    async def stats(self) -> IndexStats:
        self._require_ready()
        described = await self._bounded(self.store.describe(), "describe")
        counts = await self._bounded(self.store.describe_stats(), "stats")
        return IndexStats(
            collection=self.name,
            dimension=described.dimension if described else self.dimensions,
            metric=described.metric if described else "cosine",
            total_records=counts.get("total_records", 0),
            material_count=counts.get("material_count", 0),
            tenant_count=counts.get("tenant_count", 0),
            state=self.state.value,
        )
