"""Vault engine: wires store, index, debouncer, ingestion, writes and the snapshot cache.

Read path:  watchdog -> queue -> ChangeDebouncer -> IngestionPipeline -> Index
Write path: mutation -> WriteCoordinator -> disk -> Index (+ PendingWrite for the debouncer)

Settled filesystem changes are processed under the same per-document lock as
mutations, so an external edit never races an API write to the same file.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any

from vault_mcp.config import Config
from vault_mcp.engine.cache import SnapshotCache
from vault_mcp.engine.debouncer import ChangeDebouncer, PendingWrites
from vault_mcp.engine.index import NodeQuery, Predicate, where
from vault_mcp.engine.ingest import (
    ADDED,
    REMOVED,
    UNCHANGED,
    UPDATED,
    IngestionPipeline,
    IngestResult,
)
from vault_mcp.engine.models import (
    ChangeIntent,
    Connection,
    CreateChild,
    DeleteNode,
    Document,
    Link,
    MoveNode,
    Node,
    UpdateFields,
)
from vault_mcp.engine.store import Vault, load_vault
from vault_mcp.engine.walker import FileInfo, read_fingerprint, vault_fingerprint, walk_vault
from vault_mcp.engine.watcher import VaultWatcher
from vault_mcp.engine.writer import WriteCoordinator
from vault_mcp.errors import (
    CacheCorrupt,
    CacheMiss,
    DuplicateIdentifier,
    InvalidOperation,
    IoFailure,
)

logger = logging.getLogger(__name__)


class VaultEngine:
    """
    The synchronization engine for one vault.

    Queries are served from the index and never touch disk. Mutations suspend
    until their write is persisted (or has failed) and are reflected in the
    index only after the atomic replace succeeded.
    """

    def __init__(self, config: Config, watch: bool = True):
        """
        Args:
            config: Configuration instance.
            watch: Start a watchdog observer. Without it, changes only arrive
                through notify() and rescan().
        """
        self.config = config
        self.root = config.vault_root.expanduser().resolve()
        self.watch = watch
        self.pending = PendingWrites(config.pending_write_timeout)
        self.cache = SnapshotCache(config.vault_cache)
        self.debouncer = ChangeDebouncer(
            self.root, config.debounce_seconds, self.pending, self._handle_intent
        )
        self.vault: Vault | None = None
        self.pipeline: IngestionPipeline | None = None
        self.writer: WriteCoordinator | None = None
        self._queue: asyncio.Queue | None = None
        self._watcher: VaultWatcher | None = None
        self._consumer: asyncio.Task | None = None
        self._rescan_task: asyncio.Task | None = None
        self._rescan_again = False
        self.started = False

    @property
    def store(self):
        self._require_started()
        return self.vault.store

    @property
    def index(self):
        self._require_started()
        return self.vault.index

    def _require_started(self) -> None:
        if self.vault is None:
            raise RuntimeError("Vault engine has not been started")

    # Lifecycle

    async def start(self) -> None:
        """Load the vault and begin watching it.

        Raises:
            ValueError: If the vault root does not exist.
        """
        if self.started:
            return
        loop = asyncio.get_running_loop()
        vault = await asyncio.to_thread(
            load_vault, self.root, self.config.exclude, self.config.done_keywords
        )
        self._build(vault)

        # Watch before loading so edits made during the initial load are not lost
        self._queue = asyncio.Queue(maxsize=self.config.watch_queue_size)
        if self.watch:
            self._watcher = VaultWatcher(
                self.root, self._queue, loop, self.request_rescan, exclude=self.config.exclude
            )
            self._watcher.start()

        await self._load(vault.discovered)
        for document in self.store.dirty():
            await self._exclusive_write_back(document.path)
        await self.save_snapshot()

        self._consumer = loop.create_task(self.debouncer.run(self._queue), name="vault-debouncer")
        self.started = True
        logger.info(
            "Vault engine started: %d documents (%d invalid), %d nodes",
            len(self.store),
            len(self.store.invalid()),
            len(self.index),
        )

    async def stop(self) -> None:
        """Stop watching, finish in-flight work and save the snapshot."""
        if not self.started:
            return
        self.started = False

        if self._watcher is not None:
            await asyncio.to_thread(self._watcher.stop)
            self._watcher = None
        for task in (self._consumer, self._rescan_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._consumer = self._rescan_task = None
        await self.debouncer.close()
        await self.save_snapshot()
        logger.info("Vault engine stopped")

    def _build(self, vault: Vault) -> None:
        config = self.config
        self.vault = vault
        self.pipeline = IngestionPipeline(
            self.root,
            vault.store,
            vault.index,
            action_keywords=config.action_keywords,
            allowed_tags=config.allowed_tags,
            refresh_link_titles=config.refresh_link_titles,
        )
        self.writer = WriteCoordinator(
            self.root,
            vault.store,
            vault.index,
            self.pending,
            refresh=self.pipeline.ingest,
            action_keywords=config.action_keywords,
            allowed_tags=config.allowed_tags,
            exclude=config.exclude,
            retitle=self.pipeline.retitle_links if config.refresh_link_titles else None,
        )
        vault.index.define("open", where(state="open"))
        vault.index.define("done", where(state="done"))
        vault.index.define("scheduled", lambda node: node.scheduled is not None)

    async def _load(self, discovered: list[FileInfo]) -> None:
        fingerprint = vault_fingerprint(discovered)
        try:
            snapshot = await asyncio.to_thread(self.cache.load, fingerprint)
        except CacheMiss as e:
            logger.info("Snapshot cache miss (%s), ingesting %d files", e, len(discovered))
            snapshot = None
        except CacheCorrupt as e:
            logger.warning("Snapshot cache unusable (%s), ingesting %d files", e, len(discovered))
            snapshot = None

        if snapshot is None:
            for info in discovered:
                await self._exclusive_ingest(info.relative_path)
            return

        cached = {document.path: document for document in snapshot.documents}
        reused = 0
        for info in discovered:
            document = cached.get(info.relative_path)
            if document is not None and await self._restore(document, info):
                reused += 1
            else:
                await self._exclusive_ingest(info.relative_path)
        logger.info(
            "Loaded %d documents from snapshot, re-ingested %d",
            reused,
            len(discovered) - reused,
        )

    async def _restore(self, document: Document, info: FileInfo) -> bool:
        """Install a cached document if its content still matches disk."""
        try:
            current = await asyncio.to_thread(read_fingerprint, info.path)
        except OSError:
            return False
        if document.fingerprint is None or document.fingerprint.digest != current.digest:
            return False
        document.fingerprint = current
        try:
            resolved = self.pipeline.restore(document)
        except DuplicateIdentifier as e:
            logger.warning(
                "Cached %s conflicts with the index (%s), re-ingesting", info.relative_path, e
            )
            return False
        await self._refresh_resolved(resolved)
        return True

    async def save_snapshot(self) -> None:
        files = await asyncio.to_thread(lambda: list(walk_vault(self.root, self.config.exclude)))
        documents = self.store.documents()
        try:
            await asyncio.to_thread(self.cache.save, documents, vault_fingerprint(files))
        except OSError as e:
            logger.warning("Could not save snapshot to %s: %s", self.cache.cache_path, e)

    # Read path

    async def _exclusive_ingest(self, path: str) -> IngestResult:
        result = await self.writer.run_exclusive(path, lambda: self._ingest_and_stabilise(path))
        await self._refresh_resolved(result.resolved)
        return result

    async def _refresh_resolved(self, paths) -> None:
        """Re-title links in documents whose dangling links just resolved."""
        if not self.config.refresh_link_titles:
            return
        for path in sorted(paths):
            await self.refresh_links(path)

    async def refresh_links(self, path: str) -> bool:
        """Rewrite stale link titles in one document; True if it was written."""
        try:
            return await self.writer.run_exclusive(path, lambda: self.writer.refresh_links(path))
        except IoFailure as e:
            logger.warning("Could not refresh link titles in %s: %s", path, e)
            return False

    async def _exclusive_write_back(self, path: str) -> bool:
        return await self.writer.run_exclusive(path, lambda: self.writer.write_back(path))

    async def _ingest_and_stabilise(self, path: str) -> IngestResult:
        result = await self.pipeline.ingest(path)
        if result.document is not None and result.document.dirty:
            await self.writer.write_back(path)
        return result

    async def _handle_intent(self, intent: ChangeIntent) -> None:
        result = await self._exclusive_ingest(intent.path)
        if result.status != UNCHANGED:
            logger.info("External change to %s: %s", intent.path, result.status)

    def notify(self, path: str, kind: str) -> None:
        """Feed one raw filesystem event to the debouncer."""
        self.debouncer.notify(path, kind)

    async def wait_idle(self) -> None:
        """Wait until every notified change has settled and been processed."""
        await self.debouncer.wait_idle()

    def request_rescan(self) -> None:
        """Schedule a full rescan, coalescing requests made while one is running."""
        if self._rescan_task is not None and not self._rescan_task.done():
            self._rescan_again = True
            return
        self._rescan_task = asyncio.get_running_loop().create_task(
            self._rescan_until_settled(), name="vault-rescan"
        )

    async def _rescan_until_settled(self) -> None:
        while True:
            self._rescan_again = False
            try:
                await self.rescan()
            except Exception:
                logger.exception("Error during rescan")
            if not self._rescan_again:
                return

    async def rescan(self) -> tuple[int, int, int]:
        """Reconcile every tracked file with disk.

        Files whose mtime and size match the stored fingerprint are skipped.

        Returns:
            (added, updated, removed) counts.
        """
        files = await asyncio.to_thread(lambda: list(walk_vault(self.root, self.config.exclude)))
        seen = set()
        counts: Counter[str] = Counter()

        for info in files:
            seen.add(info.relative_path)
            known = self.store.get(info.relative_path)
            if known is not None and known.fingerprint is not None:
                stat = (known.fingerprint.mtime_ns, known.fingerprint.size)
                if stat == (info.mtime_ns, info.size):
                    continue
            result = await self._exclusive_ingest(info.relative_path)
            counts[result.status] += 1

        for path in self.store.paths():
            if path not in seen:
                result = await self._exclusive_ingest(path)
                counts[result.status] += 1

        added, updated, removed = counts[ADDED], counts[UPDATED], counts[REMOVED]
        if added or updated or removed:
            logger.info("Rescan: %d added, %d updated, %d removed", added, updated, removed)
        else:
            logger.debug("Rescan: no changes detected")
        return added, updated, removed

    # Query API

    def get(self, node_id: str) -> Node | None:
        return self.index.lookup_by_id(node_id)

    def list(self, path: str) -> list[Node]:
        return self.index.lookup_by_path(path)

    def query(self, predicate: Predicate) -> NodeQuery:
        return self.index.query(predicate)

    def search(
        self,
        state: str | None = None,
        tag: str | None = None,
        text: str | None = None,
        path: str | None = None,
        limit: int | None = None,
    ) -> list[Node]:
        results = []
        for node in self.index.query(where(state=state, tag=tag, text=text, path=path)):
            results.append(node)
            if limit is not None and len(results) >= limit:
                break
        return results

    def named(self, name: str) -> list[Node]:
        return self.index.members(name)

    def documents(self) -> list[Document]:
        return self.store.documents()

    def document(self, path: str) -> Document | None:
        return self.store.get(path)

    def connections(
        self, node_id: str, include_children: bool = False
    ) -> tuple[list[Connection], list[Connection]]:
        return self.index.connections(node_id, include_children)

    def backlinks(
        self, node_id: str, include_children: bool = False
    ) -> tuple[list[Connection], list[Connection]]:
        return self.index.backlinks(node_id, include_children)

    def broken_links(self, path: str | None = None) -> list[tuple[Node, Link]]:
        return self.index.broken_links(path)

    # Mutation API

    async def create(
        self,
        parent_id: str | None,
        fields: dict[str, Any],
        path: str | None = None,
        position: int | None = None,
    ) -> Node:
        """Create a node under ``parent_id``, or at the top level of ``path`` when it is None."""
        if parent_id is None:
            if path is None:
                raise InvalidOperation("A document path is required to create a top-level node")
            return await self.writer.create_top_level(path, fields, position)
        return await self.writer.mutate(parent_id, CreateChild(fields, position))

    async def update(self, node_id: str, changes: dict[str, Any]) -> Node:
        return await self.writer.mutate(node_id, UpdateFields(changes))

    async def move(
        self, node_id: str, new_parent_id: str | None, position: int | None = None
    ) -> Node:
        return await self.writer.mutate(node_id, MoveNode(new_parent_id, position))

    async def delete(self, node_id: str) -> None:
        await self.writer.mutate(node_id, DeleteNode())
