"""Tests for write tools."""

import pytest
import pytest_asyncio
from fastmcp import FastMCP

from vault_mcp.auth import AuthError
from vault_mcp.engine import VaultEngine
from vault_mcp.tools_write import register_tools_write


@pytest_asyncio.fixture
async def engine(config):
    eng = VaultEngine(config, watch=False)
    await eng.start()
    yield eng
    await eng.stop()


@pytest.fixture
def tools(config, engine):
    """Register write tools with FastMCP and return them by name."""
    return register_tools_write(FastMCP(), config, engine)


class TestCreateNode:
    """Tests for create_node tool."""

    @pytest.mark.asyncio
    async def test_create_child(self, tools, vault_root):
        result = await tools["create_node"](
            title="Draft outline", parent_id="report", state="TODO", tags=["work"]
        )
        assert result["parent_id"] == "report"
        assert result["level"] == 3
        assert f":ID: {result['id']}\n" in (vault_root / "inbox.org").read_text()

    @pytest.mark.asyncio
    async def test_create_in_new_document(self, tools, vault_root):
        result = await tools["create_node"](
            title="Renew passport", path="admin/2026.md", deadline="2026-06-01 Mon"
        )
        text = (vault_root / "admin" / "2026.md").read_text()
        assert text.startswith("# Renew passport\nDEADLINE: <2026-06-01 Mon>\n")
        assert result["path"] == "admin/2026.md"

    @pytest.mark.asyncio
    async def test_path_traversal_rejected(self, tools):
        with pytest.raises(ValueError, match="Invalid document path"):
            await tools["create_node"](title="Escape", path="../outside.org")

    @pytest.mark.asyncio
    async def test_invalid_fields_rejected(self, tools):
        with pytest.raises(ValueError, match="Unknown state"):
            await tools["create_node"](title="X", parent_id="milk", state="SOMEDAY")


class TestUpdateNode:
    """Tests for update_node tool."""

    @pytest.mark.asyncio
    async def test_update_state(self, tools, vault_root):
        result = await tools["update_node"]("milk", state="done")
        assert result["state"] == "DONE"
        assert "* DONE Buy milk :errand:" in (vault_root / "inbox.org").read_text()

    @pytest.mark.asyncio
    async def test_clear_fields(self, tools, vault_root):
        result = await tools["update_node"]("report", clear=["state", "scheduled"])
        assert result["state"] is None
        assert result["scheduled"] is None
        assert "** Write report :work:\n:PROPERTIES:" in (vault_root / "inbox.org").read_text()

    @pytest.mark.asyncio
    async def test_properties(self, tools):
        result = await tools["update_node"]("milk", properties={"SHOP": "corner"})
        assert result["properties"] == {"SHOP": "corner"}
        result = await tools["update_node"]("milk", properties={"SHOP": None})
        assert result["properties"] == {}

    @pytest.mark.asyncio
    async def test_no_changes(self, tools):
        with pytest.raises(ValueError, match="No changes given"):
            await tools["update_node"]("milk")

    @pytest.mark.asyncio
    async def test_bad_clear(self, tools):
        with pytest.raises(ValueError, match="Cannot clear 'title'"):
            await tools["update_node"]("milk", clear=["title"])
        with pytest.raises(ValueError, match="both set and cleared"):
            await tools["update_node"]("milk", state="DONE", clear=["state"])

    @pytest.mark.asyncio
    async def test_unknown_node(self, tools):
        with pytest.raises(ValueError, match="Unknown node id"):
            await tools["update_node"]("nope", title="x")

    @pytest.mark.asyncio
    async def test_io_failure_reported(self, tools, monkeypatch):
        def refuse(src, dst):
            raise PermissionError(13, "Read-only file system", str(dst))

        monkeypatch.setattr("vault_mcp.engine.atomic.os.replace", refuse)
        with pytest.raises(ValueError, match="Failed to update node"):
            await tools["update_node"]("milk", title="Buy bread")


class TestMoveAndDelete:
    @pytest.mark.asyncio
    async def test_move_to_top_level(self, tools, engine):
        result = await tools["move_node"]("report", position=0)
        assert result["parent_id"] is None
        assert result["level"] == 1
        assert [n.id for n in engine.list("inbox.org")][0] == "report"

    @pytest.mark.asyncio
    async def test_cyclic_move(self, tools):
        with pytest.raises(ValueError, match="under itself"):
            await tools["move_node"]("projects", new_parent_id="report")

    @pytest.mark.asyncio
    async def test_delete(self, tools, engine):
        result = await tools["delete_node"]("flights")
        assert result == {"status": "deleted", "id": "flights"}
        assert engine.get("flights") is None


class TestReadOnly:
    """Write tools in read-only mode."""

    @pytest.mark.asyncio
    async def test_every_tool_rejects(self, config_factory, vault_root, engine):
        before = (vault_root / "inbox.org").read_text()
        config = config_factory(vault_root, read_only=True)
        tools = register_tools_write(FastMCP(), config, engine)
        with pytest.raises(AuthError, match="read-only mode"):
            await tools["create_node"](title="X", parent_id="milk")
        with pytest.raises(AuthError):
            await tools["update_node"]("milk", state="DONE")
        with pytest.raises(AuthError):
            await tools["move_node"]("report")
        with pytest.raises(AuthError):
            await tools["delete_node"]("milk")
        assert (vault_root / "inbox.org").read_text() == before
