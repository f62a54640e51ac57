"""Chat-specific Pydantic models.

All data contracts shared across chat modules live here.  Models from
other layers (RetrievedChunk, ErrorInfo) are imported - never redefined.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

from src.common.errors import ErrorInfo


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class ConversationStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    CLOSED = "closed"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Principal(BaseModel):
    """The caller of a chat operation."""

    user_id: str
    tenant_id: str


# ── Conversations ─────────────────────────────────────────────────


class Conversation(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    tenant_id: str
    material_id: str | None = None
    title: str = "New Conversation"
    system_prompt: str
    status: ConversationStatus = ConversationStatus.CREATED
    total_messages: int = 0
    last_activity: datetime = Field(default_factory=_now)
    created_at: datetime = Field(default_factory=_now)


class ContextChunk(BaseModel):
    """A chunk that was actually placed in the generation context."""

    chunk_id: str
    similarity: float


class Message(BaseModel):
    """Immutable once stored."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=_new_id)
    conversation_id: str
    role: MessageRole
    content: str
    context_chunks: list[ContextChunk] = Field(default_factory=list)
    tokens_used: int = 0
    response_time_ms: float | None = None
    model_used: str | None = None
    created_at: datetime = Field(default_factory=_now)


# ── Generation ────────────────────────────────────────────────────


class HistoryTurn(BaseModel):
    role: MessageRole
    content: str


class GenerationRequest(BaseModel):
    user_text: str
    context: str
    history: list[HistoryTurn] = Field(default_factory=list)
    system_prompt: str


class GenerationResult(BaseModel):
    answer: str
    tokens_used: int
    model: str


# ── Usage ─────────────────────────────────────────────────────────


class UsageStatus(BaseModel):
    tokens_used_today: int
    tokens_used_this_week: int
    messages_this_week: int
    max_tokens_per_day: int
    max_tokens_per_week: int
    max_messages_per_week: int

    @property
    def exceeded(self) -> bool:
        return bool(self.exceeded_limits)

    @property
    def exceeded_limits(self) -> list[str]:
        limits: list[str] = []
        if self.tokens_used_today > self.max_tokens_per_day:
            limits.append("tokens_per_day")
        if self.tokens_used_this_week > self.max_tokens_per_week:
            limits.append("tokens_per_week")
        if self.messages_this_week > self.max_messages_per_week:
            limits.append("messages_per_week")
        return limits


# ── Turn result ───────────────────────────────────────────────────


class ChatTurnResult(BaseModel):
    """Outcome of one send_message call.

    The turn is always persisted when this is returned.  ``error`` is set
    (kind QUOTA_EXCEEDED) when the usage collaborator reports a limit was
    hit by this turn.
    """

    conversation_id: str
    user_message: Message
    assistant_message: Message
    usage: UsageStatus
    error: ErrorInfo | None = None

    @property
    def answer(self) -> str:
        return self.assistant_message.content
