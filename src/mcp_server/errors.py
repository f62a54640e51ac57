"""Error response templates for MCP tool calls.

Each function raises ``ToolError`` (from FastMCP) so the MCP protocol
marks the response with ``is_error=True`` and the reasoning model does
not mistake the text for document evidence.

Taxonomy errors carry their kind in the first line (``[ERROR:quota_exceeded]``
etc.) so clients can branch on it without parsing prose, and the
``retryable`` flag so the model knows whether trying again can help.
"""

from __future__ import annotations

from typing import NoReturn

from mcp.server.fastmcp.exceptions import ToolError

from src.common.errors import ErrorKind, MaterialRagError

_HINTS: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "The request was malformed. Fix the arguments before retrying.",
    ErrorKind.PROVIDER: (
        "An external service (embedding, generation or vector store) failed or "
        "timed out. Retrying later may succeed."
    ),
    ErrorKind.INDEX: (
        "The vector index is unusable until an operator recreates or renames the "
        "collection. Retrying will not help."
    ),
    ErrorKind.NOT_FOUND: "The referenced material or conversation does not exist.",
    ErrorKind.QUOTA_EXCEEDED: "The user's usage limit has been reached.",
    ErrorKind.AUTHORIZATION: "The caller is not allowed to access this resource.",
}


def taxonomy_failure(exc: MaterialRagError) -> NoReturn:
    """Format a classified failure from any layer."""
    raise ToolError(
        f"[ERROR:{exc.kind.value}]\n"
        f"Details: {exc}\n"
        f"Retryable: {'yes' if exc.retryable else 'no'}\n"
        "\n"
        f"{_HINTS.get(exc.kind, '')}\n"
        "\n"
        "Please inform the user of this error. "
        "Do not attempt to answer from memory."
    )


def full_failure(exc: BaseException) -> NoReturn:
    """Format an unclassified failure.

    Includes the exception class and message so the model can relay
    specifics to the user.
    """
    raise ToolError(
        "[ERROR]\n"
        "The material chat service encountered an unexpected error.\n"
        "\n"
        f"Error type: {type(exc).__name__}\n"
        f"Details: {exc}\n"
        "\n"
        "Please inform the user of this error. "
        "Do not attempt to answer from memory."
    )


def timeout(seconds: int | float) -> NoReturn:
    raise ToolError(
        "[ERROR:provider]\n"
        f"The tool call timed out after {int(seconds)}s.\n"
        "Retryable: yes\n"
        "\n"
        "Large materials take longer to embed. Retry, or split the material "
        "into smaller uploads."
    )
