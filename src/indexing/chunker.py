# build_chunks() with private helpers

from __future__ import annotations

"""Chunk construction for indexing.

Core responsibilities:
- Normalize extracted text and split it into sentences.
- Group sentences into chunks near CHUNK_TARGET_TOKENS, never above
  CHUNK_MAX_TOKENS, carrying a few trailing sentences into the next chunk
  as overlap.
- Classify each chunk (heading, list, table, ...) and attach page number
  and section title metadata.

Page breaks are form feeds (``\\f``) as emitted by most PDF text
extractors.  Text without form feeds has no page numbers.
"""

import logging
import re
import time
from dataclasses import dataclass

from config import settings
from src.indexing.embedder import token_count
from src.indexing.models import Chunk, ChunkingResult, ChunkType

logger = logging.getLogger(__name__)

# sentence boundary: terminal punctuation followed by whitespace and a
# capital letter, or a blank line between paragraphs
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+(?=[A-Z])|\n\s*\n")

# overlap is expressed in tokens but applied in whole sentences,
# assuming roughly 20 tokens per sentence
_TOKENS_PER_SENTENCE = 20

_LIST_LINE = re.compile(r"^\s*(?:[-•*]\s|\d+\.\s)")
_NUMBERED_HEADING = re.compile(r"^\d+\.?\s")
_WIDE_GAP = re.compile(r"\s{3,}")


@dataclass(frozen=True)
class _Sentence:
    text: str
    tokens: int
    page_number: int | None


# text utilities


def clean_text(text: str) -> str:
    """Normalize line endings and whitespace; keeps single newlines."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    return text.strip()


def split_sentences(text: str) -> list[str]:
    return [part.strip() for part in _SENTENCE_SPLIT.split(text) if part and part.strip()]


def _split_oversized(sentence: str, max_tokens: int, target_tokens: int) -> list[str]:
    """Hard-split a single sentence that alone exceeds max_tokens at word boundaries."""
    if token_count(sentence) <= max_tokens:
        return [sentence]
    pieces: list[str] = []
    current: list[str] = []
    for word in sentence.split():
        candidate = " ".join(current + [word])
        if current and token_count(candidate) > target_tokens:
            pieces.append(" ".join(current))
            current = [word]
        else:
            current.append(word)
    if current:
        pieces.append(" ".join(current))
    return pieces


def _collect_sentences(text: str, max_tokens: int, target_tokens: int) -> list[_Sentence]:
    paged = "\f" in text
    sentences: list[_Sentence] = []
    for page_index, page in enumerate(text.split("\f"), start=1):
        cleaned = clean_text(page)
        if not cleaned:
            continue
        for sentence in split_sentences(cleaned):
            for piece in _split_oversized(sentence, max_tokens, target_tokens):
                sentences.append(
                    _Sentence(
                        text=piece,
                        tokens=token_count(piece),
                        page_number=page_index if paged else None,
                    )
                )
    return sentences


# chunk classification


def determine_chunk_type(content: str) -> ChunkType:
    trimmed = content.strip()
    lines = trimmed.split("\n")

    # short text in caps or with a leading section number
    if len(trimmed) < 100 and (trimmed.upper() == trimmed or _NUMBERED_HEADING.match(trimmed)):
        return ChunkType.HEADING

    if all(_LIST_LINE.match(line) for line in lines):
        return ChunkType.LIST

    if len(lines) > 2 and all("|" in line or _WIDE_GAP.search(line) for line in lines):
        return ChunkType.TABLE

    if trimmed.startswith("[") and "]" in trimmed:
        return ChunkType.FOOTNOTE

    lowered = trimmed.lower()
    if len(trimmed) < 200 and ("figure" in lowered or "image" in lowered):
        return ChunkType.IMAGE_CAPTION

    return ChunkType.PARAGRAPH


def extract_section_title(content: str) -> str | None:
    first_line = content.split("\n", 1)[0].strip()
    if 3 < len(first_line) < 100:
        return first_line
    return None


# assembly


def _make_chunk(sentences: list[_Sentence], material_id: str, chunk_index: int) -> Chunk:
    content = " ".join(s.text for s in sentences)
    page_number = next((s.page_number for s in sentences if s.page_number is not None), None)
    return Chunk(
        id=f"{material_id}_chunk_{chunk_index}",
        material_id=material_id,
        chunk_index=chunk_index,
        content=content,
        chunk_type=determine_chunk_type(content),
        token_count=token_count(content),
        char_count=len(content),
        page_number=page_number,
        section_title=extract_section_title(content),
    )


def build_chunks(
    text: str,
    material_id: str,
    *,
    target_tokens: int | None = None,
    overlap_tokens: int | None = None,
    max_tokens: int | None = None,
) -> ChunkingResult:
    """Split extracted material text into ordered, overlapping chunks."""
    started = time.perf_counter()
    target = target_tokens or settings.chunk_target_tokens
    overlap = settings.chunk_overlap_tokens if overlap_tokens is None else overlap_tokens
    maximum = max(target, max_tokens or settings.chunk_max_tokens)
    overlap_sentences = max(0, overlap // _TOKENS_PER_SENTENCE)

    sentences = _collect_sentences(text or "", maximum, target)

    chunks: list[Chunk] = []
    current: list[_Sentence] = []
    current_tokens = 0
    # sentences in `current` that did not come from the previous chunk's overlap
    fresh = 0

    def _flush() -> None:
        nonlocal current, current_tokens, fresh
        chunks.append(_make_chunk(current, material_id, len(chunks)))
        carried = current[-overlap_sentences:] if overlap_sentences else []
        # overlap must leave room for at least one new sentence
        while carried and sum(s.tokens for s in carried) >= target:
            carried = carried[1:]
        current = list(carried)
        current_tokens = sum(s.tokens for s in current)
        fresh = 0

    for sentence in sentences:
        if current_tokens + sentence.tokens > maximum:
            if fresh:
                _flush()
            if current_tokens + sentence.tokens > maximum:
                # drop the overlap rather than exceed the ceiling
                current, current_tokens = [], 0
        current.append(sentence)
        current_tokens += sentence.tokens
        fresh += 1
        if current_tokens >= target:
            _flush()

    # a tail made only of carried-over overlap sentences adds nothing new
    if current and fresh:
        chunks.append(_make_chunk(current, material_id, len(chunks)))

    total_tokens = sum(chunk.token_count for chunk in chunks)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "chunked material %s: %d chunks, %d tokens, %.0fms",
        material_id,
        len(chunks),
        total_tokens,
        elapsed_ms,
    )
    return ChunkingResult(chunks=chunks, total_tokens=total_tokens, processing_ms=elapsed_ms)


def validate_chunks(
    chunks: list[Chunk],
    *,
    min_tokens: int | None = None,
    max_tokens: int | None = None,
) -> list[str]:
    """Return quality issues; an empty list means the chunks look fine."""
    minimum = settings.chunk_min_tokens if min_tokens is None else min_tokens
    maximum = settings.chunk_max_tokens if max_tokens is None else max_tokens
    issues: list[str] = []
    if not chunks:
        issues.append("No chunks created from document")
        return issues

    small = sum(1 for c in chunks if c.token_count < minimum)
    if small:
        issues.append(f"{small} chunks are too small (less than {minimum} tokens)")
    large = sum(1 for c in chunks if c.token_count > maximum)
    if large:
        issues.append(f"{large} chunks are too large (more than {maximum} tokens)")
    empty = sum(1 for c in chunks if not c.content.strip())
    if empty:
        issues.append(f"{empty} chunks are empty")
    return issues
