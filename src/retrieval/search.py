from __future__ import annotations

"""Retrieval pipeline for material chat.

High-level flow:
1. Validate the scope (material_id + tenant_id) and the query text.
2. Embed the query once.
3. Query the vector index filtered on the material and tenant, so a
   tenant can never see another tenant's chunks.
4. Drop candidates under the similarity floor, apply chunk-type boosts,
   and sort by score.
5. Return a structured RetrievalResult with a timing breakdown.
"""

import logging
from time import perf_counter
import warnings

from config import settings
from src.common.errors import ValidationError
from src.indexing.embedder import EmbeddingGenerator
from src.indexing.models import QueryFilter, VectorMatch
from src.indexing.vector_index import VectorIndex
from src.retrieval.models import RetrievedChunk, RetrievalResult, TimingInfo

logger = logging.getLogger(__name__)


# default for similarity_floor: read RETRIEVAL_SIMILARITY_FLOOR.  An explicit None disables the floor.
_FROM_SETTINGS = object()


def _clamp_similarity_floor(value: float | None) -> float | None:
    if value is None:
        return None
    clamped = max(-1.0, min(1.0, value))
    if clamped != value:
        warnings.warn(
            f"RETRIEVAL_SIMILARITY_FLOOR ({value}) is outside [-1, 1]. Clamping to {clamped}.",
            stacklevel=3,
        )
    return clamped


def _clean_boosts(boosts: dict[str, float]) -> dict[str, float]:
    cleaned: dict[str, float] = {}
    for chunk_type, factor in boosts.items():
        if factor <= 0:
            warnings.warn(
                f"Ignoring non-positive retrieval boost {factor} for chunk type '{chunk_type}'.",
                stacklevel=3,
            )
            continue
        cleaned[chunk_type.lower()] = float(factor)
    return cleaned


class RetrievalEngine:
    def __init__(
        self,
        generator: EmbeddingGenerator,
        index: VectorIndex,
        *,
        default_top_k: int | None = None,
        similarity_floor: float | None | object = _FROM_SETTINGS,
        chunk_type_boosts: dict[str, float] | None = None,
    ) -> None:
        self.generator = generator
        self.index = index
        self.default_top_k = default_top_k or settings.retrieval_top_k
        self.similarity_floor = _clamp_similarity_floor(
            settings.retrieval_similarity_floor
            if similarity_floor is _FROM_SETTINGS
            else similarity_floor
        )
        self.chunk_type_boosts = _clean_boosts(
            settings.retrieval_chunk_type_boosts if chunk_type_boosts is None else chunk_type_boosts
        )

    def _to_chunk(self, match: VectorMatch) -> RetrievedChunk:
        meta = match.metadata
        boost = self.chunk_type_boosts.get(meta.chunk_type.value, 1.0)
        return RetrievedChunk(
            chunk_id=match.id,
            material_id=meta.material_id,
            tenant_id=meta.tenant_id,
            chunk_index=meta.chunk_index,
            content=meta.content,
            chunk_type=meta.chunk_type,
            page_number=meta.page_number,
            section_title=meta.section_title,
            token_count=meta.token_count,
            similarity=match.score,
            score=match.score * boost,
        )

    async def retrieve(
        self,
        material_id: str,
        tenant_id: str,
        query: str,
        top_k: int | None = None,
    ) -> RetrievalResult:
        """Top-K chunks of one material for a query.  Empty results are not an error."""
        if not material_id or not material_id.strip():
            raise ValidationError("material_id is required for retrieval.")
        if not tenant_id or not tenant_id.strip():
            raise ValidationError("tenant_id is required for retrieval.")
        if not query or not query.strip():
            raise ValidationError("Query text must not be empty.")
        k = self.default_top_k if top_k is None else top_k
        if k <= 0:
            raise ValidationError(f"top_k must be positive, got {k}.")

        started = perf_counter()
        embedded = await self.generator.embed(query)
        embed_ms = (perf_counter() - started) * 1000.0

        search_started = perf_counter()
        matches = await self.index.query(
            embedded.embedding,
            QueryFilter(material_id=material_id, tenant_id=tenant_id),
            k,
        )
        search_ms = (perf_counter() - search_started) * 1000.0

        if self.similarity_floor is None:
            kept = list(matches)
        else:
            kept = [m for m in matches if m.score >= self.similarity_floor]
        chunks = [self._to_chunk(m) for m in kept]
        # stable sort keeps index order for equal scores
        chunks.sort(key=lambda chunk: chunk.score, reverse=True)

        total_ms = (perf_counter() - started) * 1000.0
        logger.debug(
            "retrieved %d/%d chunks for material %s (embed=%.0fms search=%.0fms)",
            len(chunks),
            len(matches),
            material_id,
            embed_ms,
            search_ms,
        )
        return RetrievalResult(
            material_id=material_id,
            tenant_id=tenant_id,
            query=query,
            chunks=chunks,
            below_floor=len(matches) - len(kept),
            timing=TimingInfo(embed_ms=embed_ms, search_ms=search_ms, total_ms=total_ms),
        )
