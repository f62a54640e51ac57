# models.py defines the in-memory shapes the indexing layer passes around
# no I/O and no provider logic - just shape definitions plus payload conversion

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.common.errors import ValidationError


# chunk_type values as stored in vector metadata - lowercase and exact
class ChunkType(str, Enum):
    TEXT = "text"
    HEADING = "heading"
    PARAGRAPH = "paragraph"
    LIST = "list"
    TABLE = "table"
    IMAGE_CAPTION = "image_caption"
    FOOTNOTE = "footnote"


# one fragment of a material; chunk_index is assigned by the chunker before
# any embedding dispatch so batch completion order can never reorder chunks
@dataclass(frozen=True)
class Chunk:
    id: str
    material_id: str
    chunk_index: int
    content: str
    chunk_type: ChunkType = ChunkType.PARAGRAPH
    token_count: int = 0
    char_count: int = 0
    page_number: int | None = None
    section_title: str | None = None


@dataclass
class ChunkingResult:
    chunks: list[Chunk]
    total_tokens: int
    processing_ms: float

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    @property
    def average_chunk_tokens(self) -> float:
        if not self.chunks:
            return 0.0
        return self.total_tokens / len(self.chunks)


# tenant_id and material_id are the only isolation keys, so a metadata object
# without either is rejected at construction time rather than at query time
@dataclass(frozen=True)
class VectorMetadata:
    tenant_id: str
    material_id: str
    content: str
    chunk_type: ChunkType
    chunk_index: int
    token_count: int
    char_count: int
    page_number: int | None = None
    section_title: str | None = None

    def __post_init__(self) -> None:
        if not self.tenant_id or not self.tenant_id.strip():
            raise ValidationError("Vector metadata requires a non-empty tenant_id.")
        if not self.material_id or not self.material_id.strip():
            raise ValidationError("Vector metadata requires a non-empty material_id.")

    def to_payload(self) -> dict[str, Any]:
        """Wire form; optional fields are omitted when unset."""
        payload: dict[str, Any] = {
            "tenant_id": self.tenant_id,
            "material_id": self.material_id,
            "content": self.content,
            "chunk_type": self.chunk_type.value,
            "chunk_index": self.chunk_index,
            "token_count": self.token_count,
            "char_count": self.char_count,
        }
        if self.page_number is not None:
            payload["page_number"] = self.page_number
        if self.section_title is not None:
            payload["section_title"] = self.section_title
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> VectorMetadata:
        missing = [key for key in ("tenant_id", "material_id") if not payload.get(key)]
        if missing:
            raise ValidationError(f"Vector metadata missing required fields: {', '.join(missing)}")
        try:
            chunk_type = ChunkType(payload.get("chunk_type", ChunkType.TEXT.value))
        except ValueError as exc:
            raise ValidationError(f"Unknown chunk_type: {payload.get('chunk_type')!r}") from exc
        return cls(
            tenant_id=str(payload["tenant_id"]),
            material_id=str(payload["material_id"]),
            content=str(payload.get("content", "")),
            chunk_type=chunk_type,
            chunk_index=int(payload.get("chunk_index", 0)),
            token_count=int(payload.get("token_count", 0)),
            char_count=int(payload.get("char_count", 0)),
            page_number=payload.get("page_number"),
            section_title=payload.get("section_title"),
        )


@dataclass(frozen=True)
class VectorRecord:
    id: str
    values: list[float]
    metadata: VectorMetadata

    @classmethod
    def from_chunk(cls, chunk: Chunk, values: list[float], tenant_id: str) -> VectorRecord:
        return cls(
            id=chunk.id,
            values=values,
            metadata=VectorMetadata(
                tenant_id=tenant_id,
                material_id=chunk.material_id,
                content=chunk.content,
                chunk_type=chunk.chunk_type,
                chunk_index=chunk.chunk_index,
                token_count=chunk.token_count,
                char_count=chunk.char_count,
                page_number=chunk.page_number,
                section_title=chunk.section_title,
            ),
        )

    def to_payload(self) -> dict[str, Any]:
        return {"id": self.id, "values": list(self.values), "metadata": self.metadata.to_payload()}


@dataclass(frozen=True)
class VectorMatch:
    id: str
    score: float
    metadata: VectorMetadata


# equality filters only; None fields are not applied
@dataclass(frozen=True)
class QueryFilter:
    material_id: str | None = None
    tenant_id: str | None = None
    chunk_type: ChunkType | None = None

    def as_dict(self) -> dict[str, str]:
        conditions: dict[str, str] = {}
        if self.material_id:
            conditions["material_id"] = self.material_id
        if self.tenant_id:
            conditions["tenant_id"] = self.tenant_id
        if self.chunk_type is not None:
            conditions["chunk_type"] = self.chunk_type.value
        return conditions

    def matches(self, metadata: VectorMetadata) -> bool:
        for key, value in self.as_dict().items():
            actual = getattr(metadata, key)
            if isinstance(actual, Enum):
                actual = actual.value
            if actual != value:
                return False
        return True


# ── Embedding results ────────────────────────────────────────────


@dataclass
class EmbeddingResult:
    embedding: list[float]
    token_count: int
    model: str
    processing_ms: float
    # position of the source text in the embed_batch() input
    index: int = 0


@dataclass
class BatchEmbeddingResult:
    embeddings: list[EmbeddingResult] = field(default_factory=list)
    total_tokens: int = 0
    total_processing_ms: float = 0.0
    success_count: int = 0
    failure_count: int = 0
    failed_indices: list[int] = field(default_factory=list)


# raw provider response: one vector per input (None where the payload had none)
@dataclass
class ProviderEmbeddings:
    vectors: list[list[float] | None]
    total_tokens: int = 0


@dataclass
class VectorValidation:
    is_valid: bool
    issues: list[str] = field(default_factory=list)


# ── Index results ────────────────────────────────────────────────


@dataclass
class CollectionDescription:
    name: str
    dimension: int
    metric: str


@dataclass
class UpsertResult:
    upserted_ids: list[str] = field(default_factory=list)
    # records that failed vector/metadata validation and were never sent
    rejected_ids: list[str] = field(default_factory=list)
    # records in batches the store refused or timed out on
    failed_ids: list[str] = field(default_factory=list)

    @property
    def upserted_count(self) -> int:
        return len(self.upserted_ids)

    @property
    def unsuccessful_count(self) -> int:
        return len(self.rejected_ids) + len(self.failed_ids)


@dataclass
class IndexStats:
    collection: str
    dimension: int
    metric: str
    total_records: int
    material_count: int
    tenant_count: int
    state: str = "ready"
