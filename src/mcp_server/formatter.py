"""Service results to structured plain-text tool responses.

Sections use bracketed headers ([ANSWER], [CONTEXT], [USAGE], ...)
rather than Markdown headings because MCP tool output is plain text,
not rendered Markdown.  Bracketed headers are unambiguous for LLM
parsing.
"""

from __future__ import annotations

from datetime import datetime

from src.chat.models import ChatTurnResult, Conversation, Message, UsageStatus
from src.indexing.indexer import IndexingReport
from src.indexing.models import IndexStats
from src.indexing.status import ProcessingRecord


def _ts(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC")


def format_processing_record(record: ProcessingRecord) -> str:
    lines = [
        "[PROCESSING STATUS]",
        f"Material: {record.material_id}",
        f"Status: {record.status.value}",
        f"Chunks: {record.processed_chunks} processed, {record.failed_chunks} failed, "
        f"{record.total_chunks} total",
        f"Embedding model: {record.embedding_model}",
        f"Updated: {_ts(record.updated_at)}",
    ]
    if record.error_message:
        lines.append(f"Error: {record.error_message}")
    return "\n".join(lines)


def format_indexing_report(report: IndexingReport) -> str:
    lines = [format_processing_record(report.record), "", "[STATS]"]
    lines.append(f"Embedded: {report.embedded_chunks}/{report.total_chunks}")
    lines.append(f"Stored: {report.upserted_chunks}/{report.total_chunks}")
    lines.append(f"Embedding tokens: {report.total_tokens:,}")
    lines.append(f"Total time: {report.processing_ms:.0f}ms")
    if report.failed_chunk_ids:
        lines.append(f"Failed chunks: {', '.join(report.failed_chunk_ids)}")
    if report.chunk_warnings:
        lines.append("")
        lines.append("[WARNINGS]")
        lines.extend(f"- {warning}" for warning in report.chunk_warnings)
    return "\n".join(lines)


def format_conversation(conversation: Conversation) -> str:
    return "\n".join(
        [
            "[CONVERSATION]",
            f"ID: {conversation.id}",
            f"Title: {conversation.title}",
            f"Material: {conversation.material_id or '(none)'}",
            f"Status: {conversation.status.value}",
            f"Messages: {conversation.total_messages}",
            f"Last activity: {_ts(conversation.last_activity)}",
        ]
    )


def format_usage(usage: UsageStatus) -> str:
    return "\n".join(
        [
            "[USAGE]",
            f"Tokens today: {usage.tokens_used_today:,}/{usage.max_tokens_per_day:,}",
            f"Tokens this week: {usage.tokens_used_this_week:,}/{usage.max_tokens_per_week:,}",
            f"Messages this week: {usage.messages_this_week}/{usage.max_messages_per_week}",
        ]
    )


def format_turn(result: ChatTurnResult) -> str:
    message = result.assistant_message
    lines = ["[ANSWER]", message.content, "", "[CONTEXT]"]
    if message.context_chunks:
        lines.extend(
            f"- {chunk.chunk_id} (similarity {chunk.similarity:.3f})"
            for chunk in message.context_chunks
        )
    else:
        lines.append("(no document context)")
    lines.append("")
    lines.append(format_usage(result.usage))
    if result.error is not None:
        lines.append("")
        lines.append(f"[WARNING:{result.error.kind.value}]")
        lines.append(result.error.message)
        lines.append("The turn was saved, but further messages may be refused.")
    lines.append("")
    lines.append("[STATS]")
    lines.append(f"Conversation: {result.conversation_id}")
    lines.append(f"Model: {message.model_used or 'unknown'}")
    lines.append(f"Tokens used: {message.tokens_used}")
    if message.response_time_ms is not None:
        lines.append(f"Response time: {message.response_time_ms:.0f}ms")
    return "\n".join(lines)


def format_history(conversation_id: str, messages: list[Message]) -> str:
    lines = [f"[HISTORY] {conversation_id}"]
    if not messages:
        lines.append("(no messages)")
    for message in messages:
        lines.append(f"{_ts(message.created_at)} {message.role.value}: {message.content}")
    return "\n".join(lines)


def format_index_stats(stats: IndexStats) -> str:
    return "\n".join(
        [
            "[INDEX STATUS]",
            f"Collection: {stats.collection}",
            f"State: {stats.state}",
            f"Dimension: {stats.dimension}",
            f"Metric: {stats.metric}",
            f"Vectors: {stats.total_records:,}",
            f"Materials: {stats.material_count}",
            f"Tenants: {stats.tenant_count}",
        ]
    )
