from __future__ import annotations

from src.chat.context import assemble_context, render_chunk
from src.indexing.embedder import token_count
from src.indexing.models import ChunkType
from src.retrieval.models import RetrievedChunk


def _chunk(
    chunk_id: str,
    similarity: float,
    content: str = "x" * 40,
    *,
    page_number: int | None = None,
    section_title: str | None = None,
) -> RetrievedChunk:
    return RetrievedChunk(
        chunk_id=chunk_id,
        material_id="bio-101",
        tenant_id="school-a",
        chunk_index=0,
        content=content,
        chunk_type=ChunkType.PARAGRAPH,
        page_number=page_number,
        section_title=section_title,
        token_count=token_count(content),
        similarity=similarity,
        score=similarity,
    )


class TestRenderChunk:
    def test_label_with_page_and_section(self):
        rendered = render_chunk(2, _chunk("c", 0.9, "Body text.", page_number=4, section_title="Mitosis"))
        assert rendered == "[2] page 4 section: Mitosis\nBody text."

    def test_label_without_location(self):
        assert render_chunk(1, _chunk("c", 0.9, "Body text.")) == "[1]\nBody text."


class TestAssembleContext:
    def test_everything_fits(self):
        window = assemble_context([_chunk("a", 0.9), _chunk("b", 0.8)], token_budget=1000)
        assert [c.chunk_id for c in window.included] == ["a", "b"]
        assert window.dropped_chunk_ids == []
        assert window.text.count("\n\n") == 1
        assert window.total_tokens == token_count(window.text)

    def test_orders_by_similarity(self):
        window = assemble_context(
            [_chunk("low", 0.2), _chunk("high", 0.95), _chunk("mid", 0.5)], token_budget=1000
        )
        assert [c.chunk_id for c in window.included] == ["high", "mid", "low"]
        assert window.text.startswith("[1]\n")
        assert window.included[0].similarity == 0.95

    def test_budget_drops_lowest_similarity_suffix(self):
        # each block is "[n]\n" + 40 chars = 44 chars = 11 tokens; separator is 1 token
        chunks = [_chunk("a", 0.9), _chunk("b", 0.8), _chunk("c", 0.7)]
        window = assemble_context(chunks, token_budget=23)
        assert [c.chunk_id for c in window.included] == ["a", "b"]
        assert window.dropped_chunk_ids == ["c"]
        assert window.total_tokens == 23

    def test_shorter_lower_ranked_chunk_never_skips_ahead(self):
        chunks = [
            _chunk("a", 0.9, "x" * 40),
            _chunk("long", 0.8, "y" * 400),
            _chunk("short", 0.7, "z" * 4),
        ]
        window = assemble_context(chunks, token_budget=30)
        assert [c.chunk_id for c in window.included] == ["a"]
        assert window.dropped_chunk_ids == ["long", "short"]

    def test_zero_budget_yields_empty_window(self):
        window = assemble_context([_chunk("a", 0.9)], token_budget=0)
        assert window.is_empty
        assert window.text == ""
        assert window.dropped_chunk_ids == ["a"]

    def test_no_chunks(self):
        window = assemble_context([], token_budget=100)
        assert window.is_empty
        assert window.total_tokens == 0
