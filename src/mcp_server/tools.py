"""MCP tool definitions.

Seven tools expose material chat to reasoning models:

  ``ingest_material``     - chunk, embed and index a material's extracted text.
  ``processing_status``   - the material's processing record.
  ``delete_material``     - remove a material's vectors and status.
  ``create_conversation`` - open a conversation, optionally bound to a material.
  ``send_message``        - one chat turn (retrieve -> generate -> persist).
  ``chat_history``        - page through a conversation's messages.
  ``index_stats``         - vector collection introspection.

Each tool function is registered on the ``FastMCP`` instance by
:mod:`server`.  Handlers access the shared ``ServiceContainer`` via the
lifespan state dict.

Error handling:
  Taxonomy errors are formatted via ``errors.taxonomy_failure`` so the
  error kind survives to the client; anything else goes through
  ``errors.full_failure``.  Both raise ``ToolError``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from mcp.server.fastmcp import Context

from config import settings
from src.chat.container import ServiceContainer
from src.chat.models import Principal
from src.common.errors import AuthorizationError, MaterialRagError
from src.indexing.indexer import MaterialDocument
from src.mcp_server import errors
from src.mcp_server.formatter import (
    format_conversation,
    format_history,
    format_index_stats,
    format_indexing_report,
    format_processing_record,
    format_turn,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Helpers ───────────────────────────────────────────────────


def _get_services(ctx: Context) -> ServiceContainer:
    """Retrieve the container stored during lifespan startup."""
    return ctx.request_context.lifespan_context["services"]


async def _run(tool: str, awaitable: Awaitable[T]) -> T:
    """Bound a tool call by MCP_TOOL_TIMEOUT and translate failures."""
    try:
        return await asyncio.wait_for(awaitable, timeout=settings.mcp_tool_timeout)
    except asyncio.TimeoutError:
        logger.error("%s tool timed out after %ds", tool, settings.mcp_tool_timeout)
        errors.timeout(settings.mcp_tool_timeout)
    except MaterialRagError as exc:
        logger.warning("%s tool failed (%s): %s", tool, exc.kind.value, exc)
        errors.taxonomy_failure(exc)
    except Exception as exc:
        logger.error("%s tool failed: %r", tool, exc, exc_info=True)
        errors.full_failure(exc)


async def _owned_record(services: ServiceContainer, material_id: str, tenant_id: str):
    record = await services.tracker.get(material_id)
    if record.tenant_id != tenant_id:
        raise AuthorizationError(f"Material {material_id} belongs to another tenant.")
    return record


# ── Materials ─────────────────────────────────────────────────


async def ingest_material(
    material_id: str,
    tenant_id: str,
    text: str,
    ctx: Context,
    original_name: str | None = None,
    reprocess: bool = False,
) -> str:
    """Chunk, embed and index the extracted text of one material.

    Pages may be separated with form feed characters so chunks carry
    page numbers.  Set ``reprocess`` to replace a previously indexed
    material.
    """
    services = _get_services(ctx)
    doc = MaterialDocument(
        material_id=material_id,
        tenant_id=tenant_id,
        text=text,
        original_name=original_name,
    )
    await ctx.info(f"Indexing material {material_id}…")
    if reprocess:
        report = await _run("ingest_material", services.indexer.reindex_material(doc))
    else:
        report = await _run("ingest_material", services.indexer.index_material(doc))
    return format_indexing_report(report)


async def processing_status(material_id: str, tenant_id: str, ctx: Context) -> str:
    """Report a material's processing status and chunk counts."""
    services = _get_services(ctx)
    record = await _run("processing_status", _owned_record(services, material_id, tenant_id))
    return format_processing_record(record)


async def delete_material(material_id: str, tenant_id: str, ctx: Context) -> str:
    """Delete every indexed chunk of a material and its processing record."""
    services = _get_services(ctx)

    async def _delete() -> int:
        await _owned_record(services, material_id, tenant_id)
        return await services.indexer.delete_material(material_id, tenant_id)

    deleted = await _run("delete_material", _delete())
    return f"[DELETED]\nMaterial: {material_id}\nVectors removed: {deleted}"


# ── Conversations ─────────────────────────────────────────────


async def create_conversation(
    user_id: str,
    tenant_id: str,
    ctx: Context,
    material_id: str | None = None,
    title: str | None = None,
    system_prompt: str | None = None,
) -> str:
    """Open a conversation, optionally bound to one indexed material."""
    services = _get_services(ctx)
    conversation = await _run(
        "create_conversation",
        services.orchestrator.create_conversation(
            Principal(user_id=user_id, tenant_id=tenant_id),
            material_id=material_id,
            title=title,
            system_prompt=system_prompt,
        ),
    )
    return format_conversation(conversation)


async def send_message(
    user_id: str,
    tenant_id: str,
    conversation_id: str,
    message: str,
    ctx: Context,
) -> str:
    """Ask a question in a conversation and get an answer grounded in its material."""
    services = _get_services(ctx)
    result = await _run(
        "send_message",
        services.orchestrator.send_message(
            Principal(user_id=user_id, tenant_id=tenant_id),
            conversation_id,
            message,
        ),
    )
    return format_turn(result)


async def chat_history(
    user_id: str,
    tenant_id: str,
    conversation_id: str,
    ctx: Context,
    limit: int = 50,
    offset: int = 0,
) -> str:
    """List a conversation's messages, oldest first."""
    services = _get_services(ctx)
    messages = await _run(
        "chat_history",
        services.orchestrator.get_history(
            Principal(user_id=user_id, tenant_id=tenant_id),
            conversation_id,
            limit=limit,
            offset=offset,
        ),
    )
    return format_history(conversation_id, messages)


# ── Index ─────────────────────────────────────────────────────


async def index_stats(ctx: Context) -> str:
    """Report the vector collection's dimension, metric and record counts."""
    services = _get_services(ctx)
    stats = await _run("index_stats", services.index.stats())
    return format_index_stats(stats)
