"""Tests for the watchdog bridge."""

import asyncio
from pathlib import Path

import pytest
from watchdog.events import (
    DirDeletedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from vault_mcp.engine.models import CHANGED, REMOVED
from vault_mcp.engine.watcher import VaultEventHandler, VaultWatcher


@pytest.fixture
def recorder(tmp_path):
    events = []
    rescans = []
    handler = VaultEventHandler(
        tmp_path,
        lambda path, kind: events.append((path, kind)),
        lambda: rescans.append(True),
        exclude=("archive/*",),
    )
    return handler, events, rescans


class TestVaultEventHandler:
    def test_created_and_modified_are_changes(self, tmp_path, recorder):
        handler, events, _ = recorder
        handler.dispatch(FileCreatedEvent(str(tmp_path / "a.org")))
        handler.dispatch(FileModifiedEvent(str(tmp_path / "sub" / "b.md")))
        assert events == [("a.org", CHANGED), ("sub/b.md", CHANGED)]

    def test_deleted_is_removal(self, tmp_path, recorder):
        handler, events, _ = recorder
        handler.dispatch(FileDeletedEvent(str(tmp_path / "a.org")))
        assert events == [("a.org", REMOVED)]

    def test_move_is_removal_plus_change(self, tmp_path, recorder):
        handler, events, _ = recorder
        handler.dispatch(FileMovedEvent(str(tmp_path / "old.org"), str(tmp_path / "new.org")))
        assert events == [("old.org", REMOVED), ("new.org", CHANGED)]

    def test_temp_file_renamed_into_place(self, tmp_path, recorder):
        handler, events, _ = recorder
        tmp = tmp_path / ".a.org.tmp.123"
        handler.dispatch(FileMovedEvent(str(tmp), str(tmp_path / "a.org")))
        assert events == [("a.org", CHANGED)]

    def test_untracked_hidden_and_excluded_paths_are_ignored(self, tmp_path, recorder):
        handler, events, _ = recorder
        handler.dispatch(FileModifiedEvent(str(tmp_path / "notes.txt")))
        handler.dispatch(FileModifiedEvent(str(tmp_path / ".vault" / "snapshot.bin")))
        handler.dispatch(FileModifiedEvent(str(tmp_path / "archive" / "old.org")))
        handler.dispatch(FileModifiedEvent("/elsewhere/x.org"))
        assert events == []

    def test_directory_events_request_rescan(self, tmp_path, recorder):
        handler, events, rescans = recorder
        handler.dispatch(DirMovedEvent(str(tmp_path / "a"), str(tmp_path / "b")))
        handler.dispatch(DirDeletedEvent(str(tmp_path / "c")))
        assert events == []
        assert len(rescans) == 2


class TestVaultWatcher:
    @pytest.mark.asyncio
    async def test_overflow_requests_rescan(self, tmp_path: Path):
        queue = asyncio.Queue(maxsize=1)
        overflows = []
        watcher = VaultWatcher(
            tmp_path, queue, asyncio.get_running_loop(), lambda: overflows.append(True)
        )
        watcher.push("a.org", CHANGED)
        watcher.push("b.org", CHANGED)
        await asyncio.sleep(0.01)
        assert queue.get_nowait() == ("a.org", CHANGED)
        assert overflows == [True]

    @pytest.mark.asyncio
    async def test_reports_real_file_events(self, tmp_path: Path):
        queue = asyncio.Queue()
        watcher = VaultWatcher(tmp_path, queue, asyncio.get_running_loop(), lambda: None)
        watcher.start()
        try:
            assert watcher.running
            await asyncio.sleep(0.2)
            (tmp_path / "live.org").write_text("* Live\n")
            path, kind = await asyncio.wait_for(queue.get(), timeout=5)
            assert path == "live.org"
            assert kind == CHANGED
        finally:
            await asyncio.to_thread(watcher.stop)
        assert not watcher.running
