from __future__ import annotations

# ────────────────────────────────────────────────────────────────
# indexer.py - Entry point for the indexing layer
#
# Public interface:
#   MaterialIndexer.index_material(doc)   - chunk, embed, store one material
#   MaterialIndexer.delete_material(...)  - drop vectors + status record
#   MaterialIndexer.reindex_material(doc) - delete then index again
#
# All are async coroutines.  Callers must await them.
#
# Pipeline phases (index_material):
#   Phase 1 - Chunk preparation:
#       Split the extracted text into ordered chunks.  chunk_index is
#       fixed here, before any embedding dispatch.  Zero chunks is a
#       ValidationError and no status record is created.
#
#   Phase 2 - Embedding (concurrent):
#       The tracker moves PENDING -> PROCESSING, then all chunk texts
#       go to EmbeddingGenerator.embed_batch().  Failed batches are
#       recorded as failed chunks; successful vectors are mapped back
#       to their chunk by input index.
#
#   Phase 3 - Vector upsert:
#       VectorRecords carry tenant_id + material_id metadata.  Records
#       the index rejects or fails to store count as failed chunks.
#       Once processed + failed == total the tracker finalizes the
#       record (COMPLETED only if nothing failed).
#
# Failure handling:
#   A VectorIndexError (dimension mismatch, uninitialized index) or
#   any unexpected exception aborts ingestion: the tracker record is
#   failed with the reason and the exception propagates.  Isolated
#   batch failures do not abort; they only surface in the counts.
#
# Ownership:
#   A material belongs to the tenant that first indexed it.  Any other
#   tenant indexing, re-indexing or deleting it gets AuthorizationError.
#   Indexing again as the owner drops the previous vectors first.
# ────────────────────────────────────────────────────────────────

import logging
import time
from dataclasses import dataclass, field

from src.common.errors import AuthorizationError, ValidationError
from src.indexing.chunker import build_chunks, validate_chunks
from src.indexing.embedder import EmbeddingGenerator
from src.indexing.models import VectorRecord
from src.indexing.status import ProcessingRecord, ProcessingStatusTracker
from src.indexing.vector_index import VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class MaterialDocument:
    """Extracted text of one uploaded material.  Pages are separated by form feeds."""

    material_id: str
    tenant_id: str
    text: str
    original_name: str | None = None


@dataclass
class IndexingReport:
    material_id: str
    record: ProcessingRecord
    total_chunks: int
    embedded_chunks: int
    upserted_chunks: int
    failed_chunk_ids: list[str] = field(default_factory=list)
    chunk_warnings: list[str] = field(default_factory=list)
    total_tokens: int = 0
    processing_ms: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed_chunk_ids and self.upserted_chunks == self.total_chunks


class MaterialIndexer:
    def __init__(
        self,
        generator: EmbeddingGenerator,
        index: VectorIndex,
        tracker: ProcessingStatusTracker,
    ) -> None:
        self.generator = generator
        self.index = index
        self.tracker = tracker

    async def index_material(self, doc: MaterialDocument) -> IndexingReport:
        started = time.perf_counter()
        if not doc.material_id or not doc.material_id.strip():
            raise ValidationError("material_id is required.")
        if not doc.tenant_id or not doc.tenant_id.strip():
            raise ValidationError("tenant_id is required.")

        # ── Phase 1: chunk ───────────────────────────────────
        chunking = build_chunks(doc.text, doc.material_id)
        chunks = chunking.chunks
        if not chunks:
            raise ValidationError(f"Material {doc.material_id} produced no chunks.")
        warnings_ = validate_chunks(chunks)
        if warnings_:
            logger.warning(
                "chunk validation issues for %s: %s", doc.material_id, "; ".join(warnings_)
            )

        previous = await self._owned(doc.material_id, doc.tenant_id)
        await self.tracker.start(
            doc.material_id, doc.tenant_id, len(chunks), self.generator.model
        )

        try:
            if previous is not None:
                # chunk ids are positional, so a shorter text would leave
                # the old tail behind
                removed = await self.index.delete_by_material(doc.material_id, doc.tenant_id)
                logger.info(
                    "replacing material %s: removed %d previous vectors", doc.material_id, removed
                )

            # ── Phase 2: embed ───────────────────────────────
            await self.tracker.mark_processing(doc.material_id)
            embedded = await self.generator.embed_batch([chunk.content for chunk in chunks])

            failed_ids = [chunks[i].id for i in embedded.failed_indices]
            if failed_ids:
                await self.tracker.record_progress(
                    doc.material_id,
                    failed=len(failed_ids),
                    error_message=f"{len(failed_ids)} chunks failed to embed.",
                )

            records = [
                VectorRecord.from_chunk(chunks[item.index], item.embedding, doc.tenant_id)
                for item in embedded.embeddings
            ]

            # ── Phase 3: upsert ──────────────────────────────
            upserted_count = 0
            if records:
                upserted = await self.index.upsert(records)
                upserted_count = upserted.upserted_count
                unsuccessful = upserted.rejected_ids + upserted.failed_ids
                failed_ids.extend(unsuccessful)
                await self.tracker.record_progress(
                    doc.material_id,
                    processed=upserted_count,
                    failed=len(unsuccessful),
                    error_message=(
                        f"{len(unsuccessful)} chunks could not be stored." if unsuccessful else None
                    ),
                )
        except Exception as exc:
            await self.tracker.fail(doc.material_id, str(exc) or type(exc).__name__)
            raise

        record = await self.tracker.get(doc.material_id)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "indexed material %s: %d chunks, %d stored, %d failed, status=%s, %.0fms",
            doc.material_id,
            len(chunks),
            upserted_count,
            len(failed_ids),
            record.status.value,
            elapsed_ms,
        )
        return IndexingReport(
            material_id=doc.material_id,
            record=record,
            total_chunks=len(chunks),
            embedded_chunks=embedded.success_count,
            upserted_chunks=upserted_count,
            failed_chunk_ids=failed_ids,
            chunk_warnings=warnings_,
            total_tokens=embedded.total_tokens,
            processing_ms=elapsed_ms,
        )

    async def _owned(self, material_id: str, tenant_id: str) -> ProcessingRecord | None:
        """The material's current record, if the tenant owns it."""
        existing = await self.tracker.find(material_id)
        if existing is not None and existing.tenant_id != tenant_id:
            raise AuthorizationError(f"Material {material_id} belongs to another tenant.")
        return existing

    async def delete_material(self, material_id: str, tenant_id: str | None = None) -> int:
        """Delete every vector of a material and its processing record."""
        if tenant_id is not None:
            await self._owned(material_id, tenant_id)
        deleted = await self.index.delete_by_material(material_id, tenant_id)
        await self.tracker.discard(material_id)
        return deleted

    async def reindex_material(self, doc: MaterialDocument) -> IndexingReport:
        await self.delete_material(doc.material_id, doc.tenant_id)
        return await self.index_material(doc)
