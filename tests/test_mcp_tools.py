"""MCP tool handlers against a live in-memory ServiceContainer.

The FastMCP Context is mocked: handlers only read the lifespan state
and send progress notes through ``ctx.info``.
"""

from __future__ import annotations

import asyncio
import re
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeChatGenerator, build_services, override_settings
from mcp.server.fastmcp.exceptions import ToolError
from src.mcp_server import tools
from src.mcp_server.server import create_server

MATERIAL_TEXT = "Photosynthesis happens in the chloroplast. Plants release oxygen as a byproduct."


def _ctx(services) -> MagicMock:
    ctx = MagicMock()
    ctx.request_context.lifespan_context = {"services": services}
    ctx.info = AsyncMock()
    return ctx


async def _started_ctx(**kwargs) -> MagicMock:
    services = build_services(**kwargs)
    await services.start()
    return _ctx(services)


def _conversation_id(text: str) -> str:
    match = re.search(r"^ID: (\S+)$", text, re.MULTILINE)
    assert match, text
    return match.group(1)


class TestMaterialTools:
    @pytest.mark.asyncio
    async def test_ingest_then_status(self):
        ctx = await _started_ctx()

        text = await tools.ingest_material("bio-101", "school-a", MATERIAL_TEXT, ctx)

        assert "Status: completed" in text
        assert "Stored: 1/1" in text
        ctx.info.assert_awaited()

        status = await tools.processing_status("bio-101", "school-a", ctx)
        assert status.startswith("[PROCESSING STATUS]")
        assert "Status: completed" in status

    @pytest.mark.asyncio
    async def test_status_for_other_tenant_is_refused(self):
        ctx = await _started_ctx()
        await tools.ingest_material("bio-101", "school-a", MATERIAL_TEXT, ctx)
        with pytest.raises(ToolError, match=r"\[ERROR:authorization\]"):
            await tools.processing_status("bio-101", "school-b", ctx)

    @pytest.mark.asyncio
    async def test_ingest_over_other_tenants_material_refused(self):
        ctx = await _started_ctx()
        await tools.ingest_material("bio-101", "school-a", MATERIAL_TEXT, ctx)

        with pytest.raises(ToolError, match=r"\[ERROR:authorization\]"):
            await tools.ingest_material("bio-101", "school-b", "Other text.", ctx)
        with pytest.raises(ToolError, match=r"\[ERROR:authorization\]"):
            await tools.ingest_material("bio-101", "school-b", "Other text.", ctx, reprocess=True)

        status = await tools.processing_status("bio-101", "school-a", ctx)
        assert "Status: completed" in status
        services = ctx.request_context.lifespan_context["services"]
        result = await services.retrieval.retrieve("bio-101", "school-a", "oxygen")
        assert not result.is_empty

    @pytest.mark.asyncio
    async def test_status_unknown_material(self):
        ctx = await _started_ctx()
        with pytest.raises(ToolError, match=r"\[ERROR:not_found\]"):
            await tools.processing_status("missing", "school-a", ctx)

    @pytest.mark.asyncio
    async def test_empty_material_is_validation_error(self):
        ctx = await _started_ctx()
        with pytest.raises(ToolError, match=r"\[ERROR:validation\]"):
            await tools.ingest_material("bio-101", "school-a", "   ", ctx)

    @pytest.mark.asyncio
    async def test_reprocess_replaces_material(self):
        ctx = await _started_ctx()
        await tools.ingest_material("bio-101", "school-a", MATERIAL_TEXT, ctx)
        text = await tools.ingest_material(
            "bio-101", "school-a", "A different text entirely.", ctx, reprocess=True
        )
        assert "Status: completed" in text
        stats = await tools.index_stats(ctx)
        assert "Vectors: 1" in stats

    @pytest.mark.asyncio
    async def test_delete_material(self):
        ctx = await _started_ctx()
        await tools.ingest_material("bio-101", "school-a", MATERIAL_TEXT, ctx)

        text = await tools.delete_material("bio-101", "school-a", ctx)

        assert text == "[DELETED]\nMaterial: bio-101\nVectors removed: 1"
        with pytest.raises(ToolError, match=r"\[ERROR:not_found\]"):
            await tools.processing_status("bio-101", "school-a", ctx)

    @pytest.mark.asyncio
    async def test_delete_other_tenants_material_refused(self):
        ctx = await _started_ctx()
        await tools.ingest_material("bio-101", "school-a", MATERIAL_TEXT, ctx)
        with pytest.raises(ToolError, match=r"\[ERROR:authorization\]"):
            await tools.delete_material("bio-101", "school-b", ctx)
        assert "Vectors: 1" in await tools.index_stats(ctx)


class TestChatTools:
    @pytest.mark.asyncio
    async def test_conversation_round_trip(self):
        ctx = await _started_ctx(chat_generator=FakeChatGenerator(answer="In the chloroplast."))
        await tools.ingest_material("bio-101", "school-a", MATERIAL_TEXT, ctx)

        created = await tools.create_conversation("alice", "school-a", ctx, material_id="bio-101")
        assert created.startswith("[CONVERSATION]")
        conversation_id = _conversation_id(created)

        turn = await tools.send_message(
            "alice", "school-a", conversation_id, "Where does photosynthesis happen?", ctx
        )
        assert "[ANSWER]\nIn the chloroplast." in turn
        assert "- bio-101_chunk_0 (similarity 1.000)" in turn
        assert "[WARNING" not in turn

        history = await tools.chat_history("alice", "school-a", conversation_id, ctx)
        lines = history.splitlines()
        assert lines[0] == f"[HISTORY] {conversation_id}"
        assert lines[1].endswith("user: Where does photosynthesis happen?")
        assert lines[2].endswith("assistant: In the chloroplast.")

    @pytest.mark.asyncio
    async def test_quota_warning_in_turn(self):
        ctx = await _started_ctx(
            chat_generator=FakeChatGenerator(tokens_used=60), usage_max_tokens_per_day=50
        )
        conversation_id = _conversation_id(await tools.create_conversation("alice", "school-a", ctx))
        turn = await tools.send_message("alice", "school-a", conversation_id, "Hello", ctx)
        assert "[WARNING:quota_exceeded]" in turn

    @pytest.mark.asyncio
    async def test_generation_failure_is_provider_error(self, failing_generation):
        ctx = await _started_ctx(chat_generator=failing_generation)
        conversation_id = _conversation_id(await tools.create_conversation("alice", "school-a", ctx))
        with pytest.raises(ToolError, match="Retryable: yes"):
            await tools.send_message("alice", "school-a", conversation_id, "Hello", ctx)

    @pytest.mark.asyncio
    async def test_other_user_history_refused(self):
        ctx = await _started_ctx()
        conversation_id = _conversation_id(await tools.create_conversation("alice", "school-a", ctx))
        with pytest.raises(ToolError, match=r"\[ERROR:authorization\]"):
            await tools.chat_history("bob", "school-a", conversation_id, ctx)


class TestRunWrapper:
    @pytest.mark.asyncio
    async def test_timeout(self):
        with override_settings(mcp_tool_timeout=0.01):
            with pytest.raises(ToolError, match=r"\[ERROR:provider\]"):
                await tools._run("slow", asyncio.sleep(1))

    @pytest.mark.asyncio
    async def test_unclassified_error(self):
        async def _boom():
            raise RuntimeError("disk on fire")

        with pytest.raises(ToolError, match="RuntimeError"):
            await tools._run("boom", _boom())

    @pytest.mark.asyncio
    async def test_passes_result_through(self):
        async def _ok():
            return 7

        assert await tools._run("ok", _ok()) == 7


class TestServer:
    @pytest.mark.asyncio
    async def test_registers_all_tools(self):
        server = create_server()
        names = {tool.name for tool in await server.list_tools()}
        assert names == {
            "ingest_material",
            "processing_status",
            "delete_material",
            "create_conversation",
            "send_message",
            "chat_history",
            "index_stats",
        }
