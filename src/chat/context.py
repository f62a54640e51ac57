"""Context window assembly for generation.

Chunks are ordered by descending similarity and taken as a prefix until
the next chunk would push the rendered context past the token budget.
Everything after that point is dropped, so the lowest-similarity chunks
are always the first to go and a lower-ranked chunk never displaces a
higher-ranked one just because it happens to be shorter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from src.chat.models import ContextChunk
from src.indexing.embedder import token_count
from src.retrieval.models import RetrievedChunk

logger = logging.getLogger(__name__)

_SEPARATOR = "\n\n"


@dataclass
class ContextWindow:
    text: str = ""
    included: list[ContextChunk] = field(default_factory=list)
    total_tokens: int = 0
    dropped_chunk_ids: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.included


def render_chunk(position: int, chunk: RetrievedChunk) -> str:
    label = [f"[{position}]"]
    if chunk.page_number is not None:
        label.append(f"page {chunk.page_number}")
    if chunk.section_title:
        label.append(f"section: {chunk.section_title}")
    return f"{' '.join(label)}\n{chunk.content}"


def assemble_context(chunks: list[RetrievedChunk], token_budget: int) -> ContextWindow:
    ordered = sorted(chunks, key=lambda c: c.similarity, reverse=True)
    window = ContextWindow()
    blocks: list[str] = []

    for position, chunk in enumerate(ordered, start=1):
        block = render_chunk(position, chunk)
        cost = token_count(block) + (token_count(_SEPARATOR) if blocks else 0)
        if window.total_tokens + cost > token_budget:
            window.dropped_chunk_ids = [c.chunk_id for c in ordered[position - 1 :]]
            break
        blocks.append(block)
        window.total_tokens += cost
        window.included.append(ContextChunk(chunk_id=chunk.chunk_id, similarity=chunk.similarity))

    window.text = _SEPARATOR.join(blocks)
    if window.dropped_chunk_ids:
        logger.debug(
            "context budget %d tokens: kept %d chunks, dropped %d",
            token_budget,
            len(window.included),
            len(window.dropped_chunk_ids),
        )
    return window
