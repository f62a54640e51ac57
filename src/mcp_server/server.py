"""Material chat MCP server - entry point.

Creates the ``FastMCP`` instance, registers the lifespan context
manager (service start/stop), registers tools, and runs the server
with the configured transport.

Transport modes:
  - ``stdio`` (default): Communicates over stdin/stdout.  The client
    launches this process as a subprocess.
  - ``streamable-http``: HTTP-based transport for hosted deployments.
    Listens on ``MCP_HOST:MCP_PORT``.

Logging constraint:
  MCP's stdio transport uses stdout for protocol messages.  ALL
  application logging MUST go to stderr to avoid corrupting the
  protocol stream.  ``_configure_logging()`` enforces this.

Usage::

    python -m src.mcp_server                          # stdio (default)
    python -m src.mcp_server --transport streamable-http
    MCP_TRANSPORT=streamable-http python -m src.mcp_server
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from config import settings
from src.chat.container import ServiceContainer
from src.mcp_server.tools import (
    chat_history,
    create_conversation,
    delete_material,
    index_stats,
    ingest_material,
    processing_status,
    send_message,
)

logger = logging.getLogger(__name__)


# ── Lifespan ──────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Manage the ``ServiceContainer`` lifecycle.

    - The vector index is initialized once here, before any tool runs.
      A dimension mismatch aborts startup with a VectorIndexError.
    - The yielded dict becomes ``ctx.request_context.lifespan_context``
      in every tool handler.
    - On shutdown the finally block closes the store and API clients.
    """
    services = ServiceContainer.build()
    await services.start()
    logger.info("services started")
    try:
        yield {"services": services}
    finally:
        await services.stop()
        logger.info("services stopped")


# ── Server factory ────────────────────────────────────────────


def create_server() -> FastMCP:
    """Build and configure the ``FastMCP`` instance."""
    mcp = FastMCP(
        "MaterialRAG",
        instructions=(
            "MaterialRAG answers questions about uploaded school materials. "
            "Use 'ingest_material' to index a material's extracted text, then "
            "'processing_status' to confirm it completed. "
            "Use 'create_conversation' with the material_id and 'send_message' "
            "to ask questions; answers are grounded in the retrieved chunks "
            "listed in the [CONTEXT] section. "
            "Errors start with [ERROR:<kind>]; do not answer from memory when a "
            "tool fails."
        ),
        lifespan=lifespan,
        host=settings.mcp_host,
        port=settings.mcp_port,
        log_level=settings.mcp_log_level.upper(),
    )

    mcp.add_tool(
        ingest_material,
        name="ingest_material",
        description=(
            "Chunk, embed and index the extracted text of one material for a "
            "tenant. Separate pages with form feed characters to keep page "
            "numbers. Returns the processing status and chunk counts."
        ),
    )
    mcp.add_tool(
        processing_status,
        name="processing_status",
        description="Report whether a material is pending, processing, completed or failed.",
    )
    mcp.add_tool(
        delete_material,
        name="delete_material",
        description="Delete a material's indexed chunks and its processing record.",
    )
    mcp.add_tool(
        create_conversation,
        name="create_conversation",
        description=(
            "Open a conversation for a user. Pass material_id to ground answers "
            "in that material."
        ),
    )
    mcp.add_tool(
        send_message,
        name="send_message",
        description=(
            "Send a user message to a conversation. Returns [ANSWER], the "
            "[CONTEXT] chunks used with their similarity scores, [USAGE] and "
            "[STATS]. A [WARNING:quota_exceeded] section means the turn was "
            "saved but the user has reached a usage limit."
        ),
    )
    mcp.add_tool(
        chat_history,
        name="chat_history",
        description="List a conversation's messages oldest first, with limit/offset paging.",
    )
    mcp.add_tool(
        index_stats,
        name="index_stats",
        description="Report the vector collection's dimension, metric and record counts.",
    )

    return mcp


# ── Entry point ───────────────────────────────────────────────


def _configure_logging() -> None:
    """Route all logging to stderr.

    stdout is reserved for the MCP JSON-RPC protocol stream.  The guard
    prevents duplicate handlers when ``main()`` is called more than once.
    """
    root = logging.getLogger()
    root.setLevel(settings.mcp_log_level.upper())
    if root.handlers:
        return  # Already configured - avoid duplicate output.
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root.addHandler(handler)


def main() -> None:
    parser = argparse.ArgumentParser(description="MaterialRAG MCP Server")
    parser.add_argument(
        "--transport",
        choices=["stdio", "streamable-http"],
        default=settings.mcp_transport,
        help="MCP transport (default: %(default)s)",
    )
    args = parser.parse_args()

    _configure_logging()

    transport: str = args.transport
    mcp = create_server()

    logger.info("Starting MaterialRAG MCP server (transport=%s)", transport)
    if transport == "streamable-http":
        logger.info("Listening on %s:%d", settings.mcp_host, settings.mcp_port)
    mcp.run(transport=transport)  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
