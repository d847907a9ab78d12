"""End-to-end tests for VaultEngine against a temporary vault."""

import asyncio
import logging
import os
import time

import pytest
import pytest_asyncio

from vault_mcp.engine import VaultEngine, where
from vault_mcp.engine.models import CHANGED, REMOVED, Connection
from vault_mcp.engine.outline import parse_outline
from vault_mcp.errors import InvalidOperation, IoFailure


async def wait_until(condition, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll a condition on the event loop until it holds or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        await asyncio.sleep(interval)
    return condition()


def ingest_count(engine: VaultEngine) -> int:
    return sum(engine.pipeline.stats.values())


@pytest_asyncio.fixture
async def engine(config):
    eng = VaultEngine(config, watch=False)
    await eng.start()
    yield eng
    await eng.stop()


class TestStartup:
    """Tests for loading a vault."""

    @pytest.mark.asyncio
    async def test_loads_all_documents(self, engine):
        assert [d.path for d in engine.documents()] == ["inbox.org", "notes/reading.md"]
        assert engine.get("report").title_path == ("Inbox", "Projects", "Write report")
        assert engine.get("paper").inherited_tags == ("reading",)
        assert engine.index.names() == ["done", "open", "scheduled"]
        assert [n.id for n in engine.named("scheduled")] == ["report"]

    @pytest.mark.asyncio
    async def test_queries_before_start(self, config):
        eng = VaultEngine(config, watch=False)
        with pytest.raises(RuntimeError, match="has not been started"):
            eng.get("milk")

    @pytest.mark.asyncio
    async def test_missing_root(self, tmp_path, config_factory):
        eng = VaultEngine(config_factory(tmp_path / "missing"), watch=False)
        with pytest.raises(ValueError, match="does not exist"):
            await eng.start()

    @pytest.mark.asyncio
    async def test_generated_identifiers_are_written_back(self, vault_root, config):
        (vault_root / "fresh.org").write_text("* TODO No id yet\n")
        eng = VaultEngine(config, watch=False)
        await eng.start()
        try:
            node = eng.list("fresh.org")[0]
            assert (vault_root / "fresh.org").read_text() == (
                f"* TODO No id yet\n:PROPERTIES:\n:ID: {node.id}\n:END:\n"
            )
            assert not eng.document("fresh.org").dirty
        finally:
            await eng.stop()

    @pytest.mark.asyncio
    async def test_duplicate_identifier_across_documents_is_renumbered(self, vault_root, config):
        (vault_root / "zcopy.org").write_text("* Copy\n:PROPERTIES:\n:ID: milk\n:END:\n")
        eng = VaultEngine(config, watch=False)
        await eng.start()
        try:
            assert eng.get("milk").path == "inbox.org"
            copy = eng.list("zcopy.org")[0]
            assert copy.id != "milk"
            assert f":ID: {copy.id}\n" in (vault_root / "zcopy.org").read_text()
        finally:
            await eng.stop()

    @pytest.mark.asyncio
    async def test_first_owner_follows_path_order_across_directories(self, vault_root, config):
        """notes/reading.md sorts before zz.org, so it keeps the id."""
        (vault_root / "zz.org").write_text("* Copy\n:PROPERTIES:\n:ID: paper\n:END:\n")
        eng = VaultEngine(config, watch=False)
        await eng.start()
        try:
            assert eng.get("paper").path == "notes/reading.md"
            assert eng.list("zz.org")[0].id != "paper"
        finally:
            await eng.stop()

    @pytest.mark.asyncio
    async def test_parse_failure_is_contained(self, vault_root, config):
        (vault_root / "broken.org").write_text("* A\n:PROPERTIES:\n")
        eng = VaultEngine(config, watch=False)
        await eng.start()
        try:
            broken = eng.document("broken.org")
            assert not broken.is_valid
            assert "unterminated property drawer" in broken.error
            assert eng.list("broken.org") == []
            assert eng.get("milk") is not None
        finally:
            await eng.stop()


class TestSnapshotReuse:
    """Tests for starting from the snapshot cache."""

    @pytest.mark.asyncio
    async def test_second_start_uses_snapshot(self, config, caplog):
        first = VaultEngine(config, watch=False)
        await first.start()
        await first.stop()
        assert config.vault_cache.exists()

        second = VaultEngine(config, watch=False)
        with caplog.at_level(logging.INFO):
            await second.start()
        try:
            assert "Loaded 2 documents from snapshot, re-ingested 0" in caplog.text
            assert second.get("report").state == "TODO"
            assert ingest_count(second) == 0
        finally:
            await second.stop()

    @pytest.mark.asyncio
    async def test_cached_document_is_revalidated(self, vault_root, config):
        first = VaultEngine(config, watch=False)
        await first.start()
        await first.stop()

        # Same size and mtime, different content: the vault fingerprint matches
        path = vault_root / "inbox.org"
        stat = path.stat()
        path.write_text(path.read_text().replace("Buy milk", "Buy silk"))
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns))

        second = VaultEngine(config, watch=False)
        await second.start()
        try:
            assert second.get("milk").title == "Buy silk"
        finally:
            await second.stop()

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_falls_back_to_ingestion(self, config, caplog):
        config.vault_cache.parent.mkdir(parents=True, exist_ok=True)
        config.vault_cache.write_bytes(b"\xc1garbage")
        eng = VaultEngine(config, watch=False)
        with caplog.at_level(logging.WARNING):
            await eng.start()
        try:
            assert "Snapshot cache unusable" in caplog.text
            assert eng.get("milk") is not None
        finally:
            await eng.stop()


class TestMutations:
    """Scenarios for the mutation API."""

    @pytest.mark.asyncio
    async def test_mark_done(self, engine, vault_root):
        node = await engine.update("milk", {"state": "DONE"})
        assert node.id == "milk"
        assert node.state == "DONE"
        assert node.done

        tree = parse_outline((vault_root / "inbox.org").read_text(), "org")
        assert tree.find("milk")[0].keyword == "DONE"
        assert "milk" not in [n.id for n in engine.query(where(state="open"))]
        assert "milk" not in [n.id for n in engine.named("open")]

    @pytest.mark.asyncio
    async def test_cyclic_move(self, engine, vault_root):
        before = (vault_root / "inbox.org").read_text()
        generation = engine.index.generation
        with pytest.raises(InvalidOperation):
            await engine.move("projects", "report")
        assert (vault_root / "inbox.org").read_text() == before
        assert engine.index.generation == generation

    @pytest.mark.asyncio
    async def test_read_only_disk(self, engine, vault_root, monkeypatch):
        before = engine.get("milk")

        def refuse(src, dst):
            raise PermissionError(13, "Read-only file system", str(dst))

        monkeypatch.setattr("vault_mcp.engine.atomic.os.replace", refuse)
        with pytest.raises(IoFailure):
            await engine.update("milk", {"title": "Buy oat milk"})
        assert engine.get("milk") == before
        assert "Buy milk" in (vault_root / "inbox.org").read_text()

    @pytest.mark.asyncio
    async def test_create_top_level_and_child(self, engine, vault_root):
        top = await engine.create(None, {"title": "Errands"}, path="errands.org")
        child = await engine.create(top.id, {"title": "Post office", "state": "TODO"})
        assert child.parent_id == top.id
        assert child.title_path == ("errands.org", "Errands", "Post office")
        assert "** TODO Post office" in (vault_root / "errands.org").read_text()
        assert [d.path for d in engine.documents()] == [
            "errands.org",
            "inbox.org",
            "notes/reading.md",
        ]

    @pytest.mark.asyncio
    async def test_create_without_parent_or_path(self, engine):
        with pytest.raises(InvalidOperation, match="document path is required"):
            await engine.create(None, {"title": "Orphan"})

    @pytest.mark.asyncio
    async def test_delete(self, engine):
        assert await engine.delete("projects") is None
        assert engine.get("projects") is None
        assert engine.get("report") is None

    @pytest.mark.asyncio
    async def test_same_document_mutations_apply_in_arrival_order(self, engine, vault_root):
        await asyncio.gather(
            *(engine.update("milk", {"title": f"Buy milk x{i}"}) for i in range(5))
        )
        assert engine.get("milk").title == "Buy milk x4"
        assert "* TODO Buy milk x4 :errand:" in (vault_root / "inbox.org").read_text()

    @pytest.mark.asyncio
    async def test_markdown_body_survives_reparse(self, engine, vault_root):
        first = await engine.create(None, {"title": "A"}, path="draft.md")
        second = await engine.create(None, {"title": "B"}, path="draft.md")
        path = vault_root / "draft.md"
        before = path.read_text()

        with pytest.raises(InvalidOperation, match="code fence open"):
            await engine.update(first.id, {"body": "```python\nx = 1\n"})
        assert path.read_text() == before

        await engine.update(first.id, {"body": "```python\nx = 1\n# comment\n```\n"})
        tree = parse_outline(path.read_text(), "markdown")
        assert [n.id for n, _ in tree.walk()] == [n.id for n in engine.list("draft.md")]
        assert [n.id for n in engine.list("draft.md")] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_drawer_marker_property_is_rejected(self, engine, vault_root):
        before = (vault_root / "inbox.org").read_text()
        with pytest.raises(InvalidOperation, match="reserved by the property drawer"):
            await engine.update("milk", {"properties": {"END": ""}})
        assert (vault_root / "inbox.org").read_text() == before
        tree = parse_outline(before, "org")
        assert tree.find("milk")[0].properties == {"ID": "milk"}

    @pytest.mark.asyncio
    async def test_disjoint_documents_in_parallel(self, engine):
        await asyncio.gather(
            engine.update("milk", {"tags": ["shop"]}),
            engine.update("paper", {"state": "DONE"}),
        )
        assert engine.get("milk").tags == ("shop",)
        assert engine.get("paper").done


class TestChangeHandling:
    """Filesystem changes fed through the debouncer."""

    @pytest.mark.asyncio
    async def test_own_write_is_not_reingested(self, engine):
        await engine.update("milk", {"state": "DONE"})
        before = ingest_count(engine)
        engine.notify("inbox.org", CHANGED)
        await engine.wait_idle()
        assert ingest_count(engine) == before
        assert engine.debouncer.suppressed == 1

    @pytest.mark.asyncio
    async def test_unchanged_file_keeps_generation(self, engine):
        generation = engine.index.generation
        engine.notify("inbox.org", CHANGED)
        await engine.wait_idle()
        assert engine.index.generation == generation

    @pytest.mark.asyncio
    async def test_external_append_gets_identifier(self, engine, vault_root):
        path = vault_root / "inbox.org"
        with open(path, "a") as f:
            f.write("* TODO Call the bank\n")
        engine.notify("inbox.org", CHANGED)
        await engine.wait_idle()

        added = engine.list("inbox.org")[-1]
        assert added.title == "Call the bank"
        assert added.id
        assert f":ID: {added.id}\n" in path.read_text()

    @pytest.mark.asyncio
    async def test_removed_file(self, engine, vault_root):
        (vault_root / "notes" / "reading.md").unlink()
        engine.notify("notes/reading.md", REMOVED)
        await engine.wait_idle()
        assert engine.get("paper") is None
        assert engine.document("notes/reading.md") is None

    @pytest.mark.asyncio
    async def test_rename_keeps_identifiers(self, engine, vault_root):
        (vault_root / "notes" / "reading.md").rename(vault_root / "papers.md")
        engine.notify("notes/reading.md", REMOVED)
        engine.notify("papers.md", CHANGED)
        await engine.wait_idle()
        assert engine.get("paper").path == "papers.md"

    @pytest.mark.asyncio
    async def test_rescan(self, engine, vault_root):
        (vault_root / "new.org").write_text("* New\n")
        (vault_root / "notes" / "reading.md").unlink()
        with open(vault_root / "inbox.org", "a") as f:
            f.write("* Appended\n")
        assert await engine.rescan() == (1, 1, 1)
        assert await engine.rescan() == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_rescan_recovers_from_transient_read_error(self, engine, monkeypatch):
        def refuse(path):
            raise PermissionError(13, "Permission denied", str(path))

        with monkeypatch.context() as m:
            m.setattr("vault_mcp.engine.ingest.read_with_fingerprint", refuse)
            engine.notify("inbox.org", CHANGED)
            await engine.wait_idle()
        assert engine.get("milk") is None
        assert not engine.document("inbox.org").is_valid

        assert await engine.rescan() == (0, 1, 0)
        assert engine.get("milk").title == "Buy milk"
        assert engine.document("inbox.org").is_valid


class TestWatcher:
    """The real watchdog observer feeding the engine."""

    @pytest.mark.asyncio
    async def test_external_append_while_idle(self, config, vault_root):
        eng = VaultEngine(config)
        await eng.start()
        try:
            await asyncio.sleep(0.2)
            path = vault_root / "inbox.org"
            with open(path, "a") as f:
                f.write("* TODO Water plants\n")

            assert await wait_until(
                lambda: any(n.title == "Water plants" for n in eng.list("inbox.org"))
            )
            added = next(n for n in eng.list("inbox.org") if n.title == "Water plants")
            assert await wait_until(lambda: f":ID: {added.id}\n" in path.read_text())
            await eng.wait_idle()
            assert eng.get(added.id).path == "inbox.org"
        finally:
            await eng.stop()

    @pytest.mark.asyncio
    async def test_mutation_echo_is_suppressed(self, config):
        eng = VaultEngine(config)
        await eng.start()
        try:
            await asyncio.sleep(0.2)
            before = ingest_count(eng)
            await eng.update("report", {"state": "DONE"})
            assert await wait_until(lambda: eng.debouncer.suppressed >= 1)
            await eng.wait_idle()
            assert ingest_count(eng) == before
        finally:
            await eng.stop()


READING_LIST = """\
* Reading list
:PROPERTIES:
:ID: reader
:END:
First [[link:milk][old]], then [[link:paper][old]].
Later [[link:later][?]].
"""


class TestLinks:
    """Scenarios for links between documents."""

    @pytest_asyncio.fixture
    async def linked(self, vault_root, config):
        (vault_root / "links.org").write_text(READING_LIST)
        eng = VaultEngine(config, watch=False)
        await eng.start()
        yield eng
        await eng.stop()

    @pytest.mark.asyncio
    async def test_titles_refreshed_on_load(self, linked, vault_root):
        """milk is indexed before links.org, paper only after it."""
        text = (vault_root / "links.org").read_text()
        assert "First [[link:milk][Buy milk]], then [[link:paper][Read paper]].\n" in text
        assert "Later [[link:later][?]].\n" in text
        assert not linked.document("links.org").dirty

    @pytest.mark.asyncio
    async def test_connections_and_broken_links(self, linked):
        assert [c.id for c in linked.connections("reader")[0]] == ["milk", "paper"]
        assert linked.backlinks("milk")[0] == [Connection("reader", "Reading list", ("link",))]
        assert [(n.id, link.target) for n, link in linked.broken_links()] == [
            ("reader", "later")
        ]

    @pytest.mark.asyncio
    async def test_new_target_resolves_dangling_link(self, linked, vault_root):
        (vault_root / "late.org").write_text("* Later\n:PROPERTIES:\n:ID: later\n:END:\n")
        linked.notify("late.org", CHANGED)
        await linked.wait_idle()
        assert "Later [[link:later][Later]].\n" in (vault_root / "links.org").read_text()
        assert linked.broken_links() == []

    @pytest.mark.asyncio
    async def test_renamed_target_is_picked_up_on_refresh(self, linked, vault_root):
        await linked.update("milk", {"title": "Buy oat milk"})
        assert "[[link:milk][Buy milk]]" in (vault_root / "links.org").read_text()

        assert await linked.refresh_links("links.org")
        assert "[[link:milk][Buy oat milk]]" in (vault_root / "links.org").read_text()
        assert not await linked.refresh_links("links.org")

    @pytest.mark.asyncio
    async def test_mutation_retitles_links(self, linked):
        node = await linked.update("reader", {"body": "Just [[link:flights][x]]."})
        assert "[[link:flights][Book flights]]" in node.body

    @pytest.mark.asyncio
    async def test_refresh_disabled(self, vault_root, config_factory):
        (vault_root / "links.org").write_text(READING_LIST)
        eng = VaultEngine(config_factory(vault_root, refresh_link_titles=False), watch=False)
        await eng.start()
        try:
            assert (vault_root / "links.org").read_text() == READING_LIST
            assert [c.id for c in eng.connections("reader")[0]] == ["milk", "paper"]
            assert not await eng.refresh_links("links.org")
        finally:
            await eng.stop()
