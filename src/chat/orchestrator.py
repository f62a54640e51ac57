"""ConversationOrchestrator - one chat turn, end to end.

Coordinates a turn:

  1. Resolve the conversation and check access to it and its material.
  2. Persist the USER message.
  3. Retrieve top-K chunks of the bound material (scoped to its tenant).
  4. Assemble the context window within the token budget.
  5. Generate the answer from (user text, context, recent history).
  6. Persist the ASSISTANT message with the chunks actually used.
  7. Record usage; a quota hit is reported on the result, not raised.

Conversation lifecycle::

    CREATED --first turn--> ACTIVE --close--> CLOSED

Owns:
  - Turn sequencing and conversation bookkeeping.

Does NOT own:
  - Access decisions (``AuthorizationPolicy``).
  - Quotas (``UsageLimiter``).
  - Persistence (``ConversationStore``).
  - Model calls (``ChatGenerator``, ``RetrievalEngine``).
"""

from __future__ import annotations

import logging
import time

from config import settings
from src.chat.collaborators import AuthorizationPolicy, ConversationStore, UsageLimiter
from src.chat.context import assemble_context
from src.chat.generator import ChatGenerator
from src.chat.models import (
    ChatTurnResult,
    Conversation,
    ConversationStatus,
    GenerationRequest,
    HistoryTurn,
    Message,
    MessageRole,
    Principal,
)
from src.common.errors import (
    AuthorizationError,
    ErrorInfo,
    QuotaExceededError,
    ValidationError,
)
from src.retrieval.models import RetrievedChunk
from src.retrieval.search import RetrievalEngine

logger = logging.getLogger(__name__)


class ConversationOrchestrator:
    def __init__(
        self,
        *,
        retrieval: RetrievalEngine,
        generator: ChatGenerator,
        store: ConversationStore,
        authorization: AuthorizationPolicy,
        usage: UsageLimiter,
        context_token_budget: int | None = None,
        history_limit: int | None = None,
        default_system_prompt: str | None = None,
        top_k: int | None = None,
    ) -> None:
        self.retrieval = retrieval
        self.generator = generator
        self.store = store
        self.authorization = authorization
        self.usage = usage
        self.context_token_budget = (
            settings.chat_context_token_budget
            if context_token_budget is None
            else context_token_budget
        )
        self.history_limit = (
            settings.chat_history_limit if history_limit is None else history_limit
        )
        self.default_system_prompt = (
            default_system_prompt or settings.chat_default_system_prompt
        )
        self.top_k = top_k

    # ── Access helpers ────────────────────────────────────────

    async def _authorized_conversation(
        self, principal: Principal, conversation_id: str
    ) -> Conversation:
        if not conversation_id:
            raise ValidationError("conversation_id is required.")
        conversation = await self.store.get_conversation(conversation_id)
        if not await self.authorization.can_access_conversation(principal, conversation):
            raise AuthorizationError(
                f"User {principal.user_id} may not access conversation {conversation_id}."
            )
        return conversation

    async def _check_material(self, principal: Principal, material_id: str) -> None:
        if not await self.authorization.can_access_material(principal, material_id):
            raise AuthorizationError(
                f"User {principal.user_id} may not access material {material_id}."
            )

    # ── Conversations ─────────────────────────────────────────

    async def create_conversation(
        self,
        principal: Principal,
        *,
        material_id: str | None = None,
        title: str | None = None,
        system_prompt: str | None = None,
    ) -> Conversation:
        if material_id:
            await self._check_material(principal, material_id)
        conversation = Conversation(
            user_id=principal.user_id,
            tenant_id=principal.tenant_id,
            material_id=material_id or None,
            title=title or ("Document Chat" if material_id else "General Chat"),
            system_prompt=system_prompt or self.default_system_prompt,
        )
        await self.store.save_conversation(conversation)
        logger.info(
            "conversation %s created for user %s (material=%s)",
            conversation.id,
            principal.user_id,
            material_id,
        )
        return conversation

    async def list_conversations(self, principal: Principal, limit: int = 50) -> list[Conversation]:
        return await self.store.list_conversations(principal.user_id, principal.tenant_id, limit)

    async def get_history(
        self,
        principal: Principal,
        conversation_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Message]:
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative.")
        await self._authorized_conversation(principal, conversation_id)
        return await self.store.list_messages(conversation_id, limit=limit, offset=offset)

    async def close_conversation(self, principal: Principal, conversation_id: str) -> Conversation:
        await self._authorized_conversation(principal, conversation_id)
        conversation = await self.store.close_conversation(conversation_id)
        logger.info("conversation %s closed", conversation_id)
        return conversation

    async def delete_conversation(self, principal: Principal, conversation_id: str) -> None:
        await self._authorized_conversation(principal, conversation_id)
        await self.store.delete_conversation(conversation_id)
        logger.info("conversation %s deleted", conversation_id)

    # ── Turns ─────────────────────────────────────────────────

    async def send_message(
        self,
        principal: Principal,
        conversation_id: str,
        user_text: str,
    ) -> ChatTurnResult:
        started = time.perf_counter()
        if not user_text or not user_text.strip():
            raise ValidationError("Message text must not be empty.")

        conversation = await self._authorized_conversation(principal, conversation_id)
        if conversation.material_id:
            await self._check_material(principal, conversation.material_id)
        if conversation.status is ConversationStatus.CLOSED:
            raise ValidationError(f"Conversation {conversation_id} is closed.")

        history = await self.store.recent_messages(conversation.id, self.history_limit)

        user_message = Message(
            conversation_id=conversation.id,
            role=MessageRole.USER,
            content=user_text,
        )
        await self.store.record_message(user_message)

        retrieved: list[RetrievedChunk] = []
        if conversation.material_id:
            result = await self.retrieval.retrieve(
                conversation.material_id,
                conversation.tenant_id,
                user_text,
                top_k=self.top_k,
            )
            retrieved = result.chunks

        window = assemble_context(retrieved, self.context_token_budget)

        generation = await self.generator.generate(
            GenerationRequest(
                user_text=user_text,
                context=window.text,
                history=[HistoryTurn(role=m.role, content=m.content) for m in history],
                system_prompt=conversation.system_prompt,
            )
        )

        assistant_message = Message(
            conversation_id=conversation.id,
            role=MessageRole.ASSISTANT,
            content=generation.answer,
            context_chunks=window.included,
            tokens_used=generation.tokens_used,
            response_time_ms=(time.perf_counter() - started) * 1000,
            model_used=generation.model,
        )
        # a close that landed mid-turn still wins; the reply is kept
        await self.store.record_message(assistant_message)

        usage = await self.usage.record_usage(principal, generation.tokens_used)
        error: ErrorInfo | None = None
        if usage.exceeded:
            error = ErrorInfo.from_exception(
                QuotaExceededError(
                    f"Usage limit reached: {', '.join(usage.exceeded_limits)}."
                )
            )
            logger.warning(
                "user %s exceeded usage limits %s",
                principal.user_id,
                usage.exceeded_limits,
            )

        logger.info(
            "turn on conversation %s: %d context chunks, %d tokens, %.0fms",
            conversation.id,
            len(window.included),
            generation.tokens_used,
            assistant_message.response_time_ms,
        )
        return ChatTurnResult(
            conversation_id=conversation.id,
            user_message=user_message,
            assistant_message=assistant_message,
            usage=usage,
            error=error,
        )
