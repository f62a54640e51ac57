from __future__ import annotations

import asyncio
import hashlib
import os
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import pytest
import pytest_asyncio

from config import settings
from src.chat.container import ServiceContainer
from src.chat.models import GenerationRequest, GenerationResult
from src.common.errors import ProviderError
from src.indexing.embedder import EmbeddingGenerator
from src.indexing.models import ProviderEmbeddings
from src.indexing.stores import InMemoryVectorStore
from src.indexing.vector_index import VectorIndex


# ---------------------------------------------------------------------------
# Windows event loop fix: psycopg3 AsyncConnection requires SelectorEventLoop,
# not ProactorEventLoop (the default on Windows).
# ---------------------------------------------------------------------------
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


# Small vectors keep fixtures readable; nothing depends on 1536.
DIM = 8


@contextmanager
def override_settings(**overrides: Any) -> Iterator[None]:
    original: dict[str, Any] = {}
    for key, value in overrides.items():
        original[key] = getattr(settings, key)
        setattr(settings, key, value)
    try:
        yield
    finally:
        for key, value in original.items():
            setattr(settings, key, value)


@pytest.fixture(autouse=True)
def _approximate_tokenizer() -> Iterator[None]:
    # Offline and deterministic: 1 token per 4 characters.
    with override_settings(embedding_tokenizer_kind="approximate"):
        yield


def hash_vector(text: str, dim: int = DIM) -> list[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(digest[i] / 255.0) * 2.0 - 1.0 for i in range(dim)]


def unit(i: int, dim: int = DIM) -> list[float]:
    vector = [0.0] * dim
    vector[i] = 1.0
    return vector


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------


class FakeEmbeddingProvider:
    """Deterministic embeddings.

    Texts in ``vectors`` get that vector; anything else gets ``default`` or,
    without one, a hash-derived vector.  A batch containing ``fail_marker``
    raises, like a provider that rejects the whole request.  Every text
    costs ``tokens_per_text`` tokens.
    """

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        *,
        default: list[float] | None = None,
        fail_marker: str = "FAIL",
        tokens_per_text: int = 10,
        delay: float = 0.0,
    ) -> None:
        self.vectors = dict(vectors or {})
        self.default = default
        self.fail_marker = fail_marker
        self.tokens_per_text = tokens_per_text
        self.delay = delay
        self.calls: list[list[str]] = []
        self.closed = False

    async def embed_many(self, texts: list[str]) -> ProviderEmbeddings:
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if any(self.fail_marker in text for text in texts):
            raise RuntimeError("provider rejected batch")
        return ProviderEmbeddings(
            vectors=[list(self._vector_for(text)) for text in texts],
            total_tokens=self.tokens_per_text * len(texts),
        )

    def _vector_for(self, text: str) -> list[float]:
        if text in self.vectors:
            return self.vectors[text]
        if self.default is not None:
            return self.default
        return hash_vector(text)

    async def close(self) -> None:
        self.closed = True


class FakeChatGenerator:
    def __init__(
        self,
        answer: str = "Plants make food from sunlight.",
        *,
        tokens_used: int = 42,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.answer = answer
        self.tokens_used = tokens_used
        self.error = error
        # generate() blocks on the gate once the request is recorded
        self.gate = gate
        self.requests: list[GenerationRequest] = []
        self.closed = False

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return GenerationResult(answer=self.answer, tokens_used=self.tokens_used, model="fake-chat")

    async def close(self) -> None:
        self.closed = True


def make_generator(provider: FakeEmbeddingProvider | None = None, **kwargs: Any) -> EmbeddingGenerator:
    options: dict[str, Any] = {
        "model": "fake-embed",
        "dimensions": DIM,
        "batch_size": 4,
        "max_concurrency": 2,
        "max_tokens_per_request": 8000,
        "timeout": 5.0,
    }
    options.update(kwargs)
    return EmbeddingGenerator(provider or FakeEmbeddingProvider(), **options)


def build_services(
    *,
    embedding_provider: FakeEmbeddingProvider | None = None,
    chat_generator: FakeChatGenerator | None = None,
    **overrides: Any,
) -> ServiceContainer:
    """A fully wired container on the in-memory store and fake providers."""
    update: dict[str, Any] = {
        "embedding_model": "fake-embed",
        "embedding_dimensions": DIM,
        "embedding_batch_size": 4,
        "vector_store_kind": "memory",
        "retrieval_top_k": 5,
        "retrieval_similarity_floor": None,
        "retrieval_chunk_type_boosts": {},
    }
    update.update(overrides)
    config = settings.model_copy(update=update)
    return ServiceContainer.build(
        config,
        embedding_provider=embedding_provider or FakeEmbeddingProvider(default=[1.0] * DIM),
        store=InMemoryVectorStore("material_chunks_test"),
        chat_generator=chat_generator or FakeChatGenerator(),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def generator(embedding_provider: FakeEmbeddingProvider) -> EmbeddingGenerator:
    return make_generator(embedding_provider)


@pytest.fixture
def memory_store() -> InMemoryVectorStore:
    return InMemoryVectorStore("material_chunks_test")


@pytest_asyncio.fixture
async def vector_index(memory_store: InMemoryVectorStore, generator: EmbeddingGenerator) -> VectorIndex:
    index = VectorIndex(memory_store, generator, upsert_batch_size=2, timeout=5.0)
    await index.initialize()
    return index


@pytest.fixture
def failing_generation() -> FakeChatGenerator:
    return FakeChatGenerator(error=ProviderError("Generation failed: upstream 503"))


@pytest.fixture(scope="session")
def database_url() -> str:
    pytest.importorskip(
        "psycopg",
        reason="Skipping DB integration tests: psycopg is not installed in this environment.",
    )
    url = os.getenv("DATABASE_URL") or settings.database_url
    if not url:
        pytest.skip("Skipping pgvector integration tests: DATABASE_URL is not set.")
    return url
