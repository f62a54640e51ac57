"""Per-material processing status.

One ``ProcessingRecord`` per material, driven by the ingestion pipeline:

    PENDING --first dispatch--> PROCESSING --processed + failed == total--> COMPLETED | FAILED

COMPLETED requires every chunk to have succeeded; a single failed chunk
makes the material FAILED.  Terminal records are immutable until the
material is re-processed by the tenant that owns it, which replaces
the record.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from src.common.errors import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProcessingRecord:
    material_id: str
    tenant_id: str
    total_chunks: int
    embedding_model: str
    status: ProcessingStatus = ProcessingStatus.PENDING
    processed_chunks: int = 0
    failed_chunks: int = 0
    error_message: str | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def progress(self) -> float:
        if self.total_chunks == 0:
            return 0.0
        return (self.processed_chunks + self.failed_chunks) / self.total_chunks


class ProcessingStatusTracker:
    """In-process status store.  Reads return copies; only methods mutate."""

    def __init__(self) -> None:
        self._records: dict[str, ProcessingRecord] = {}
        self._lock = asyncio.Lock()

    async def start(
        self,
        material_id: str,
        tenant_id: str,
        total_chunks: int,
        embedding_model: str,
    ) -> ProcessingRecord:
        if total_chunks < 1:
            raise ValidationError("A material must have at least one chunk to be processed.")
        async with self._lock:
            existing = self._records.get(material_id)
            if existing is not None and existing.tenant_id != tenant_id:
                raise AuthorizationError(
                    f"Material {material_id} belongs to another tenant."
                )
            if existing is not None and not existing.status.is_terminal:
                raise ValidationError(
                    f"Material {material_id} is already being processed ({existing.status.value})."
                )
            record = ProcessingRecord(
                material_id=material_id,
                tenant_id=tenant_id,
                total_chunks=total_chunks,
                embedding_model=embedding_model,
            )
            self._records[material_id] = record
            return replace(record)

    async def mark_processing(self, material_id: str) -> ProcessingRecord:
        async with self._lock:
            record = self._require(material_id)
            if record.status.is_terminal:
                raise ValidationError(
                    f"Material {material_id} is already {record.status.value}."
                )
            if record.status is ProcessingStatus.PENDING:
                record.status = ProcessingStatus.PROCESSING
                record.updated_at = _now()
            return replace(record)

    async def record_progress(
        self,
        material_id: str,
        *,
        processed: int = 0,
        failed: int = 0,
        error_message: str | None = None,
    ) -> ProcessingRecord:
        if processed < 0 or failed < 0:
            raise ValidationError("Progress counts cannot be negative.")
        async with self._lock:
            record = self._require(material_id)
            if record.status.is_terminal:
                raise ValidationError(
                    f"Material {material_id} is already {record.status.value}; "
                    "progress can no longer change."
                )
            attempted = record.processed_chunks + record.failed_chunks + processed + failed
            if attempted > record.total_chunks:
                raise ValidationError(
                    f"Progress for material {material_id} would exceed its "
                    f"{record.total_chunks} chunks."
                )
            record.processed_chunks += processed
            record.failed_chunks += failed
            if error_message:
                record.error_message = error_message
            if record.status is ProcessingStatus.PENDING:
                record.status = ProcessingStatus.PROCESSING
            self._finalize_if_done(record)
            record.updated_at = _now()
            return replace(record)

    async def fail(self, material_id: str, reason: str) -> ProcessingRecord:
        """Abort processing; every unattempted chunk counts as failed."""
        async with self._lock:
            record = self._require(material_id)
            if record.status.is_terminal:
                return replace(record)
            remaining = record.total_chunks - record.processed_chunks - record.failed_chunks
            record.failed_chunks += remaining
            record.error_message = reason
            record.status = ProcessingStatus.FAILED
            record.updated_at = _now()
            logger.warning("material %s failed: %s", material_id, reason)
            return replace(record)

    async def get(self, material_id: str) -> ProcessingRecord:
        async with self._lock:
            return replace(self._require(material_id))

    async def find(self, material_id: str) -> ProcessingRecord | None:
        async with self._lock:
            record = self._records.get(material_id)
            return replace(record) if record is not None else None

    async def discard(self, material_id: str) -> bool:
        async with self._lock:
            return self._records.pop(material_id, None) is not None

    def _require(self, material_id: str) -> ProcessingRecord:
        record = self._records.get(material_id)
        if record is None:
            raise NotFoundError(f"No processing record for material {material_id}.")
        return record

    @staticmethod
    def _finalize_if_done(record: ProcessingRecord) -> None:
        if record.processed_chunks + record.failed_chunks != record.total_chunks:
            return
        if record.failed_chunks == 0:
            record.status = ProcessingStatus.COMPLETED
        else:
            record.status = ProcessingStatus.FAILED
            if not record.error_message:
                record.error_message = (
                    f"{record.failed_chunks} of {record.total_chunks} chunks failed."
                )
        logger.info(
            "material %s %s (%d processed, %d failed)",
            record.material_id,
            record.status.value,
            record.processed_chunks,
            record.failed_chunks,
        )
