"""Collaborators the orchestrator consults but does not own.

Each is a narrow Protocol with an in-process default implementation.
Production deployments swap in implementations backed by the platform's
own auth, quota and persistence services.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Callable, Protocol

from config import settings
from src.chat.models import Conversation, ConversationStatus, Message, Principal, UsageStatus
from src.common.errors import NotFoundError
from src.indexing.status import ProcessingStatusTracker


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Authorization ─────────────────────────────────────────────────


class AuthorizationPolicy(Protocol):
    async def can_access_material(self, principal: Principal, material_id: str) -> bool: ...

    async def can_access_conversation(
        self, principal: Principal, conversation: Conversation
    ) -> bool: ...


class TenantAuthorizationPolicy:
    """Owner-only conversations; materials visible within their tenant."""

    def __init__(self, tracker: ProcessingStatusTracker) -> None:
        self.tracker = tracker

    async def can_access_material(self, principal: Principal, material_id: str) -> bool:
        record = await self.tracker.find(material_id)
        return record is not None and record.tenant_id == principal.tenant_id

    async def can_access_conversation(
        self, principal: Principal, conversation: Conversation
    ) -> bool:
        return (
            conversation.user_id == principal.user_id
            and conversation.tenant_id == principal.tenant_id
        )


# ── Usage limits ──────────────────────────────────────────────────


class UsageLimiter(Protocol):
    async def record_usage(self, principal: Principal, tokens: int) -> UsageStatus: ...

    async def check(self, principal: Principal) -> UsageStatus: ...


class InMemoryUsageLimiter:
    """Per-user token and message counters over the current day and ISO week."""

    def __init__(
        self,
        *,
        max_tokens_per_day: int | None = None,
        max_tokens_per_week: int | None = None,
        max_messages_per_week: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.max_tokens_per_day = max_tokens_per_day or settings.usage_max_tokens_per_day
        self.max_tokens_per_week = max_tokens_per_week or settings.usage_max_tokens_per_week
        self.max_messages_per_week = (
            max_messages_per_week or settings.usage_max_messages_per_week
        )
        self._clock = clock
        self._daily_tokens: dict[tuple[str, str, date], int] = defaultdict(int)
        self._weekly_tokens: dict[tuple[str, str, tuple[int, int]], int] = defaultdict(int)
        self._weekly_messages: dict[tuple[str, str, tuple[int, int]], int] = defaultdict(int)
        self._lock = asyncio.Lock()

    def _keys(self, principal: Principal) -> tuple[tuple, tuple]:
        today = self._clock().date()
        iso = today.isocalendar()
        week = (iso[0], iso[1])
        return (
            (principal.tenant_id, principal.user_id, today),
            (principal.tenant_id, principal.user_id, week),
        )

    def _status(self, principal: Principal) -> UsageStatus:
        day_key, week_key = self._keys(principal)
        return UsageStatus(
            tokens_used_today=self._daily_tokens.get(day_key, 0),
            tokens_used_this_week=self._weekly_tokens.get(week_key, 0),
            messages_this_week=self._weekly_messages.get(week_key, 0),
            max_tokens_per_day=self.max_tokens_per_day,
            max_tokens_per_week=self.max_tokens_per_week,
            max_messages_per_week=self.max_messages_per_week,
        )

    async def record_usage(self, principal: Principal, tokens: int) -> UsageStatus:
        async with self._lock:
            day_key, week_key = self._keys(principal)
            self._daily_tokens[day_key] += max(0, tokens)
            self._weekly_tokens[week_key] += max(0, tokens)
            self._weekly_messages[week_key] += 1
            return self._status(principal)

    async def check(self, principal: Principal) -> UsageStatus:
        async with self._lock:
            return self._status(principal)


# ── Conversation persistence ──────────────────────────────────────


class ConversationStore(Protocol):
    """Conversation persistence.

    ``record_message`` and ``close_conversation`` update an existing
    conversation in one step.  Recording never reopens a CLOSED conversation.
    """

    async def save_conversation(self, conversation: Conversation) -> None: ...

    async def get_conversation(self, conversation_id: str) -> Conversation: ...

    async def list_conversations(
        self, user_id: str, tenant_id: str, limit: int
    ) -> list[Conversation]: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...

    async def close_conversation(self, conversation_id: str) -> Conversation: ...

    async def record_message(self, message: Message) -> Conversation: ...

    async def list_messages(
        self, conversation_id: str, *, limit: int | None = None, offset: int = 0
    ) -> list[Message]: ...

    async def recent_messages(self, conversation_id: str, limit: int) -> list[Message]: ...


class InMemoryConversationStore:
    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}

    async def save_conversation(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation.model_copy()
        self._messages.setdefault(conversation.id, [])

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return self._require(conversation_id).model_copy()

    async def list_conversations(
        self, user_id: str, tenant_id: str, limit: int
    ) -> list[Conversation]:
        owned = [
            c.model_copy()
            for c in self._conversations.values()
            if c.user_id == user_id and c.tenant_id == tenant_id
        ]
        owned.sort(key=lambda c: c.last_activity, reverse=True)
        return owned[:limit]

    async def delete_conversation(self, conversation_id: str) -> None:
        if self._conversations.pop(conversation_id, None) is None:
            raise NotFoundError(f"Conversation {conversation_id} not found.")
        self._messages.pop(conversation_id, None)

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found.")
        return conversation

    async def close_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._require(conversation_id)
        if conversation.status is not ConversationStatus.CLOSED:
            conversation.status = ConversationStatus.CLOSED
            conversation.last_activity = _utcnow()
        return conversation.model_copy()

    async def record_message(self, message: Message) -> Conversation:
        """Append a message and bump the conversation's counters."""
        conversation = self._require(message.conversation_id)
        self._messages[conversation.id].append(message)
        conversation.total_messages += 1
        conversation.last_activity = message.created_at
        if conversation.status is ConversationStatus.CREATED:
            conversation.status = ConversationStatus.ACTIVE
        return conversation.model_copy()

    async def list_messages(
        self, conversation_id: str, *, limit: int | None = None, offset: int = 0
    ) -> list[Message]:
        messages = self._messages.get(conversation_id, [])
        end = None if limit is None else offset + limit
        return list(messages[offset:end])

    async def recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        return list(self._messages.get(conversation_id, [])[-limit:])
