"""ServiceContainer - wires every component from settings.

``start()`` initializes the vector index once at process start and is the
only place that touches the store before the first request.  ``stop()``
closes the store and the OpenAI clients.  Anything outside the container
receives its collaborators explicitly.
"""

from __future__ import annotations

import logging

from config import Settings, settings
from src.chat.collaborators import (
    AuthorizationPolicy,
    ConversationStore,
    InMemoryConversationStore,
    InMemoryUsageLimiter,
    TenantAuthorizationPolicy,
    UsageLimiter,
)
from src.chat.generator import ChatGenerator, OpenAIChatGenerator
from src.chat.orchestrator import ConversationOrchestrator
from src.indexing.embedder import EmbeddingGenerator, EmbeddingProvider
from src.indexing.indexer import MaterialIndexer
from src.indexing.status import ProcessingStatusTracker
from src.indexing.stores import VectorStoreProvider, build_vector_store
from src.indexing.vector_index import VectorIndex
from src.retrieval.search import RetrievalEngine

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(
        self,
        *,
        embeddings: EmbeddingGenerator,
        index: VectorIndex,
        tracker: ProcessingStatusTracker,
        indexer: MaterialIndexer,
        retrieval: RetrievalEngine,
        chat_generator: ChatGenerator,
        orchestrator: ConversationOrchestrator,
    ) -> None:
        self.embeddings = embeddings
        self.index = index
        self.tracker = tracker
        self.indexer = indexer
        self.retrieval = retrieval
        self.chat_generator = chat_generator
        self.orchestrator = orchestrator
        self._started = False

    @classmethod
    def build(
        cls,
        config: Settings | None = None,
        *,
        embedding_provider: EmbeddingProvider | None = None,
        store: VectorStoreProvider | None = None,
        chat_generator: ChatGenerator | None = None,
        conversation_store: ConversationStore | None = None,
        authorization: AuthorizationPolicy | None = None,
        usage: UsageLimiter | None = None,
    ) -> ServiceContainer:
        config = config or settings
        embeddings = EmbeddingGenerator(
            embedding_provider,
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
            batch_size=config.embedding_batch_size,
            max_concurrency=config.embedding_max_concurrency,
            max_tokens_per_request=config.embedding_max_tokens_per_request,
            timeout=config.embedding_timeout_seconds,
        )
        index = VectorIndex(
            store or build_vector_store(config),
            embeddings,
            dimensions=config.embedding_dimensions,
            upsert_batch_size=config.vector_upsert_batch_size,
            max_concurrency=config.vector_upsert_max_concurrency,
            timeout=config.vector_store_timeout_seconds,
        )
        tracker = ProcessingStatusTracker()
        retrieval = RetrievalEngine(
            embeddings,
            index,
            default_top_k=config.retrieval_top_k,
            similarity_floor=config.retrieval_similarity_floor,
            chunk_type_boosts=config.retrieval_chunk_type_boosts,
        )
        generator = chat_generator or OpenAIChatGenerator(
            model=config.chat_llm_model,
            base_url=config.chat_llm_base_url,
            api_key=config.chat_llm_api_key,
            max_output_tokens=config.chat_max_output_tokens,
            temperature=config.chat_temperature,
            timeout=config.chat_timeout_seconds,
        )
        orchestrator = ConversationOrchestrator(
            retrieval=retrieval,
            generator=generator,
            store=conversation_store or InMemoryConversationStore(),
            authorization=authorization or TenantAuthorizationPolicy(tracker),
            usage=usage or InMemoryUsageLimiter(
                max_tokens_per_day=config.usage_max_tokens_per_day,
                max_tokens_per_week=config.usage_max_tokens_per_week,
                max_messages_per_week=config.usage_max_messages_per_week,
            ),
            context_token_budget=config.chat_context_token_budget,
            history_limit=config.chat_history_limit,
            default_system_prompt=config.chat_default_system_prompt,
        )
        return cls(
            embeddings=embeddings,
            index=index,
            tracker=tracker,
            indexer=MaterialIndexer(embeddings, index, tracker),
            retrieval=retrieval,
            chat_generator=generator,
            orchestrator=orchestrator,
        )

    async def start(self) -> None:
        """Initialize the vector index.  Raises VectorIndexError on a dimension mismatch."""
        if self._started:
            return
        await self.index.initialize()
        self._started = True
        logger.info("services started (collection=%s)", self.index.name)

    async def stop(self) -> None:
        await self.index.close()
        await self.embeddings.close()
        await self.chat_generator.close()
        self._started = False
        logger.info("services stopped")
