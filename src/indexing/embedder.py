from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Callable, Protocol, Sequence

from openai import AsyncOpenAI

from config import settings
from src.common.errors import ProviderError, ValidationError
from src.indexing.models import (
    BatchEmbeddingResult,
    EmbeddingResult,
    ProviderEmbeddings,
    VectorValidation,
)

# ────────────────────────────────────────────────────────────────
# embedder.py - Embedding + tokenization for the indexing layer
#
# Responsibilities:
#   1. EmbeddingGenerator.embed() / embed_batch() - convert texts
#      into vectors through an EmbeddingProvider
#   2. truncate() - clamp input to the provider's request budget
#   3. similarity() / top_k() / validate() - local vector math
#   4. token_count() - count tokens for a text string
#
# Concurrency model (embed_batch):
#   Texts are split into batches of EMBEDDING_BATCH_SIZE (default 100)
#   and each batch is one provider request.  At most
#   EMBEDDING_MAX_CONCURRENCY requests (default 4) are in flight at
#   once, bounded by an asyncio.Semaphore.
#
#   Why default 4:
#     OpenAI enforces per-minute rate limits (RPM) that vary by API
#     tier.  4 concurrent requests is safe for all paid tiers.  Local
#     OpenAI-compatible servers can raise EMBEDDING_MAX_CONCURRENCY.
#
#   Failure handling:
#     A failing batch is logged and counted (failure_count and
#     failed_indices) and never aborts its siblings.  Every successful
#     EmbeddingResult carries its input position, so the caller maps
#     vectors back to chunks by index, not by completion order.
#
# Truncation:
#   The request budget is max_tokens_per_request * 4 characters.  The
#   4-chars-per-token ratio is an approximation for English prose and
#   is intentionally not tokenizer-exact.
# ────────────────────────────────────────────────────────────────

logger = logging.getLogger(__name__)

_CHARS_PER_TOKEN = 4
_TRUNCATION_SUFFIX = "..."

# cached tokenizer singletons - nothing loads at import time

_TOKENIZER: Callable[[str], int] | None = None
_TOKENIZER_KEY: tuple[str, str] | None = None
_TIKTOKEN_ENCODING: Any | None = None


def _get_tiktoken_encoding() -> Any:
    global _TIKTOKEN_ENCODING
    if _TIKTOKEN_ENCODING is None or _TIKTOKEN_ENCODING.name != settings.embedding_tokenizer_name:
        import tiktoken
        _TIKTOKEN_ENCODING = tiktoken.get_encoding(settings.embedding_tokenizer_name)
    return _TIKTOKEN_ENCODING


def _approximate_count(text: str) -> int:
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


# builds text -> token count callable from whichever configured backend
def _build_tokenizer() -> Callable[[str], int]:
    if settings.embedding_tokenizer_kind == "tiktoken":
        encoding = _get_tiktoken_encoding()
        return lambda text: len(encoding.encode(text, disallowed_special=()))

    if settings.embedding_tokenizer_kind == "approximate":
        return _approximate_count

    raise ValueError(
        f"Unsupported tokenizer kind: {settings.embedding_tokenizer_kind}. "
        "Expected 'tiktoken' or 'approximate'."
    )


def token_count(text: str) -> int:
    global _TOKENIZER, _TOKENIZER_KEY
    key = (settings.embedding_tokenizer_kind, settings.embedding_tokenizer_name)
    if _TOKENIZER is None or _TOKENIZER_KEY != key:
        _TOKENIZER = _build_tokenizer()
        _TOKENIZER_KEY = key
    return _TOKENIZER(text)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 when either vector has zero magnitude."""
    if len(a) != len(b):
        raise ValidationError(
            f"Cannot compare vectors of different lengths ({len(a)} vs {len(b)})."
        )
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


# ── Provider ─────────────────────────────────────────────────────


class EmbeddingProvider(Protocol):
    async def embed_many(self, texts: list[str]) -> ProviderEmbeddings: ...

    async def close(self) -> None: ...


class OpenAIEmbeddingProvider:
    """Embeddings endpoint of any OpenAI-compatible server."""

    def __init__(
        self,
        *,
        model: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
    ) -> None:
        self.model = model or settings.embedding_model
        self._base_url = base_url or settings.embedding_base_url
        self._api_key = api_key if api_key is not None else settings.embedding_api_key
        self._client: AsyncOpenAI | None = None

    # optional API key since local models don't need one
    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            client_kwargs: dict[str, Any] = {"base_url": self._base_url}
            client_kwargs["api_key"] = self._api_key or "not-needed"
            self._client = AsyncOpenAI(**client_kwargs)
        return self._client

    async def embed_many(self, texts: list[str]) -> ProviderEmbeddings:
        client = self._get_client()
        response = await client.embeddings.create(
            model=self.model, input=texts, encoding_format="float"
        )
        # the API may return items out of order; each carries its input index
        items = sorted(response.data, key=lambda item: item.index)
        vectors = [list(item.embedding) if item.embedding else None for item in items]
        usage = getattr(response, "usage", None)
        total_tokens = getattr(usage, "total_tokens", 0) or 0
        return ProviderEmbeddings(vectors=vectors, total_tokens=total_tokens)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


# ── Generator ────────────────────────────────────────────────────


class EmbeddingGenerator:
    def __init__(
        self,
        provider: EmbeddingProvider | None = None,
        *,
        model: str | None = None,
        dimensions: int | None = None,
        batch_size: int | None = None,
        max_concurrency: int | None = None,
        max_tokens_per_request: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self.model = model or settings.embedding_model
        self.provider: EmbeddingProvider = provider or OpenAIEmbeddingProvider(model=self.model)
        self.dimensions = dimensions or settings.embedding_dimensions
        self.batch_size = max(1, batch_size or settings.embedding_batch_size)
        self.max_concurrency = max(1, max_concurrency or settings.embedding_max_concurrency)
        self.max_tokens_per_request = max(
            1, max_tokens_per_request or settings.embedding_max_tokens_per_request
        )
        self.timeout = timeout if timeout is not None else settings.embedding_timeout_seconds

    @property
    def max_chars(self) -> int:
        return self.max_tokens_per_request * _CHARS_PER_TOKEN

    def truncate(self, text: str) -> str:
        budget = self.max_chars
        if len(text) <= budget:
            return text
        keep = max(0, budget - len(_TRUNCATION_SUFFIX))
        # never longer than the budget, even when it is shorter than the suffix
        return (text[:keep] + _TRUNCATION_SUFFIX)[:budget]

    async def _call_provider(self, texts: list[str]) -> ProviderEmbeddings:
        try:
            response = await asyncio.wait_for(
                self.provider.embed_many(texts), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            raise ProviderError(
                f"Embedding request timed out after {self.timeout:.0f}s "
                f"({len(texts)} texts)."
            ) from exc
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(f"Embedding request failed: {exc}") from exc

        if len(response.vectors) != len(texts):
            raise ProviderError(
                "Embedding response size mismatch: "
                f"expected {len(texts)} vectors, got {len(response.vectors)}"
            )
        missing = [i for i, vector in enumerate(response.vectors) if not vector]
        if missing:
            raise ProviderError(
                f"Embedding response missing vectors at positions {missing}."
            )
        return response

    async def embed(self, text: str) -> EmbeddingResult:
        """Embed a single text; raises ValidationError on blank input."""
        if not text or not text.strip():
            raise ValidationError("Cannot embed empty text.")

        started = time.perf_counter()
        response = await self._call_provider([self.truncate(text)])
        elapsed_ms = (time.perf_counter() - started) * 1000
        return EmbeddingResult(
            embedding=list(response.vectors[0]),
            token_count=response.total_tokens,
            model=self.model,
            processing_ms=elapsed_ms,
            index=0,
        )

    async def embed_batch(self, texts: list[str]) -> BatchEmbeddingResult:
        """Embed many texts in concurrent fixed-size batches.

        A failing batch is counted and logged; it never aborts the other
        batches.  Results are returned in input order.
        """
        result = BatchEmbeddingResult()
        if not texts:
            return result

        started = time.perf_counter()
        semaphore = asyncio.Semaphore(self.max_concurrency)
        starts = list(range(0, len(texts), self.batch_size))

        async def _run(offset: int) -> tuple[int, int, ProviderEmbeddings | ProviderError, float]:
            batch = [self.truncate(t) for t in texts[offset : offset + self.batch_size]]
            async with semaphore:
                batch_started = time.perf_counter()
                try:
                    response: ProviderEmbeddings | ProviderError = await self._call_provider(batch)
                except ProviderError as exc:
                    response = exc
                batch_ms = (time.perf_counter() - batch_started) * 1000
            return offset, len(batch), response, batch_ms

        outcomes = await asyncio.gather(*(_run(offset) for offset in starts))

        for offset, size, response, batch_ms in outcomes:
            if isinstance(response, ProviderError):
                logger.warning(
                    "embedding batch at offset %d (%d texts) failed: %s",
                    offset,
                    size,
                    response,
                )
                result.failure_count += size
                result.failed_indices.extend(range(offset, offset + size))
                continue

            per_item_tokens = response.total_tokens // size
            per_item_ms = batch_ms / size
            for i, vector in enumerate(response.vectors):
                result.embeddings.append(
                    EmbeddingResult(
                        embedding=list(vector or []),
                        token_count=per_item_tokens,
                        model=self.model,
                        processing_ms=per_item_ms,
                        index=offset + i,
                    )
                )
            result.total_tokens += response.total_tokens
            result.success_count += size

        result.embeddings.sort(key=lambda item: item.index)
        result.total_processing_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "embed_batch: %d texts in %d batches, %d ok, %d failed, %d tokens, %.0fms",
            len(texts),
            len(starts),
            result.success_count,
            result.failure_count,
            result.total_tokens,
            result.total_processing_ms,
        )
        return result

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)

    def top_k(
        self,
        query: Sequence[float],
        candidates: Sequence[tuple[str, Sequence[float]]],
        k: int,
    ) -> list[tuple[str, float]]:
        """Rank (id, vector) candidates against query, best first."""
        if k <= 0 or not candidates:
            return []
        scored = [(cid, cosine_similarity(query, vector)) for cid, vector in candidates]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:k]

    def validate(self, vector: Sequence[float]) -> VectorValidation:
        issues: list[str] = []
        if not vector:
            issues.append("Embedding is empty")
            return VectorValidation(is_valid=False, issues=issues)
        if len(vector) != self.dimensions:
            issues.append(
                f"Embedding dimension mismatch: expected {self.dimensions}, got {len(vector)}"
            )
        if any(not isinstance(v, (int, float)) or not math.isfinite(v) for v in vector):
            issues.append("Embedding contains NaN or infinite values")
        elif all(v == 0 for v in vector):
            issues.append("Embedding is all zeros")
        return VectorValidation(is_valid=not issues, issues=issues)

    def model_info(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "dimensions": self.dimensions,
            "max_tokens_per_request": self.max_tokens_per_request,
        }

    async def close(self) -> None:
        await self.provider.close()
