from __future__ import annotations

from pydantic import BaseModel

from src.indexing.models import ChunkType


class RetrievedChunk(BaseModel):
    """A chunk returned by retrieval for the chat layer."""

    # Identity
    chunk_id: str
    material_id: str
    tenant_id: str
    chunk_index: int

    # Content and location in the source material.
    content: str
    chunk_type: ChunkType
    page_number: int | None = None
    section_title: str | None = None
    token_count: int

    # Scoring.  similarity is the raw cosine score from the index; score is
    # similarity after chunk-type boosts and is what results are sorted by.
    similarity: float
    score: float


class TimingInfo(BaseModel):
    """Timing breakdown for retrieval observability."""

    embed_ms: float
    search_ms: float
    total_ms: float


class RetrievalResult(BaseModel):
    """Top-level retrieval output contract consumed by the chat layer."""

    material_id: str
    tenant_id: str
    query: str
    chunks: list[RetrievedChunk]
    # candidates dropped by the similarity floor
    below_floor: int = 0
    timing: TimingInfo

    @property
    def is_empty(self) -> bool:
        """True when retrieval found no chunks."""
        return len(self.chunks) == 0

    @property
    def top_score(self) -> float:
        """Maximum score among returned chunks (0.0 for empty results)."""
        if not self.chunks:
            return 0.0
        return max(chunk.score for chunk in self.chunks)

    @property
    def chunk_ids(self) -> list[str]:
        return [chunk.chunk_id for chunk in self.chunks]
