"""Write coordinator: serialized, crash-consistent mutations per document.

A mutation runs under its document's lock and goes through these steps:

1. resolve the node to its owning document through the index
2. take the document's lock (FIFO, one lock per path, created lazily)
3. apply the operation to a deep copy of the document's tree
4. render the new tree to text
5. write a temp file in the same directory, fsync it, register a PendingWrite
   for its fingerprint, then atomically replace the original
6. only then update the index and the document store

A failed write leaves no PendingWrite behind and changes nothing in memory.
Once the lock is acquired the mutation is shielded from caller cancellation,
so a file is never abandoned half-written.
"""

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, TypeVar

from vault_mcp.engine.atomic import replace, write_temp
from vault_mcp.engine.debouncer import PendingWrites
from vault_mcp.engine.index import Index
from vault_mcp.engine.ingest import new_identifier
from vault_mcp.engine.models import (
    CreateChild,
    DeleteNode,
    Document,
    DocumentDelta,
    Fingerprint,
    MoveNode,
    Node,
    Operation,
    OutlineTree,
    UpdateFields,
)
from vault_mcp.engine.operations import (
    create_node,
    delete_node,
    edit_node,
    move_node,
    validate_fields,
)
from vault_mcp.engine.outline import DEFAULT_KEYWORDS, format_for_path, render_outline
from vault_mcp.engine.store import DocumentStore
from vault_mcp.engine.walker import is_included, read_fingerprint
from vault_mcp.errors import InvalidOperation, IoFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

# How often a mutation re-resolves a node that changed owner while it waited
MAX_OWNER_RETRIES = 3


@dataclass
class _PathLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refs: int = 0


class _OwnerChanged(Exception):
    def __init__(self, owner: str | None):
        self.owner = owner


def validate_document_path(path: str, exclude: Sequence[str] = ()) -> str:
    """Normalise a caller-supplied vault-relative path for a new document.

    Raises:
        InvalidOperation: If the path escapes the vault or is not a tracked document.
    """
    posix = PurePosixPath(path.replace("\\", "/"))
    if posix.is_absolute() or ".." in posix.parts or not posix.parts:
        raise InvalidOperation(f"Invalid document path: {path}")
    normalised = posix.as_posix()
    if not is_included(normalised, exclude):
        raise InvalidOperation(
            f"Not a trackable document path (expected .org, .md or .markdown): {path}"
        )
    return normalised


class WriteCoordinator:
    """
    Serializes mutations per document and persists them before indexing.

    Mutations on different documents run in parallel; mutations on the same
    document commit in lock acquisition order.
    """

    def __init__(
        self,
        root: Path,
        store: DocumentStore,
        index: Index,
        pending: PendingWrites,
        refresh: Callable[[str], Awaitable[Any]] | None = None,
        action_keywords: Sequence[str] = DEFAULT_KEYWORDS,
        allowed_tags: Sequence[str] = (),
        exclude: Sequence[str] = (),
        id_factory: Callable[[], str] = new_identifier,
        retitle: Callable[[OutlineTree], bool] | None = None,
    ):
        """
        Args:
            root: Vault root directory.
            store: Document store updated after each successful write.
            index: Index updated after each successful write.
            pending: Registry told about each write before its replace.
            refresh: Coroutine re-ingesting a path; called under the lock when
                the file changed on disk since it was last ingested.
            retitle: Rewrites link titles in a tree about to be written.
        """
        self.root = root
        self.store = store
        self.index = index
        self.pending = pending
        self._refresh = refresh
        self.action_keywords = tuple(action_keywords)
        self.allowed_tags = tuple(allowed_tags)
        self.exclude = tuple(exclude)
        self._id_factory = id_factory
        self._retitle = retitle
        self._locks: dict[str, _PathLock] = {}

    @property
    def locked_paths(self) -> list[str]:
        return sorted(path for path, entry in self._locks.items() if entry.lock.locked())

    async def run_exclusive(self, path: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` while holding the path's lock.

        Cancelling the caller while it waits for the lock has no effect on the
        document. Once the lock is held, ``fn`` runs to completion even if the
        caller is cancelled.
        """
        entry = self._locks.get(path)
        if entry is None:
            entry = self._locks[path] = _PathLock()
        entry.refs += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            self._release_ref(path, entry)
            raise
        task = asyncio.ensure_future(self._run_and_release(path, entry, fn))
        return await asyncio.shield(task)

    async def _run_and_release(
        self, path: str, entry: _PathLock, fn: Callable[[], Awaitable[T]]
    ) -> T:
        try:
            return await fn()
        finally:
            entry.lock.release()
            self._release_ref(path, entry)

    def _release_ref(self, path: str, entry: _PathLock) -> None:
        entry.refs -= 1
        if entry.refs == 0 and self._locks.get(path) is entry:
            del self._locks[path]

    async def mutate(self, node_id: str, operation: Operation) -> Node | None:
        """Apply an operation to a node and persist it.

        Returns the affected node (the new child for CreateChild), or None for
        a delete.

        Raises:
            InvalidOperation: Unknown id, invalid fields, cyclic or
                cross-document move. Nothing is written.
            IoFailure: The write failed. Nothing changed on disk or in memory.
        """
        path = self.index.owner_of(node_id)
        for _ in range(MAX_OWNER_RETRIES):
            if path is None:
                raise InvalidOperation(f"Unknown node id: {node_id}")
            try:
                return await self.run_exclusive(
                    path, lambda p=path: self._commit_operation(p, node_id, operation)
                )
            except _OwnerChanged as e:
                logger.debug("Node %s moved from %s to %s, retrying", node_id, path, e.owner)
                path = e.owner
        raise InvalidOperation(f"Node {node_id} keeps changing documents, giving up")

    async def create_top_level(
        self, path: str, fields: dict[str, Any], position: int | None = None
    ) -> Node:
        """Append a top-level node to a document, creating the file if needed."""
        path = validate_document_path(path, self.exclude)
        return await self.run_exclusive(
            path, lambda: self._commit_top_level(path, fields, position)
        )

    async def write_back(self, path: str) -> bool:
        """Persist identifiers assigned during ingestion. Caller holds the lock.

        Skips the write if the file changed since it was read, since the newer
        content will be ingested on its own. Returns True if the file was written.
        """
        document = self.store.get(path)
        if document is None or not document.dirty or document.tree is None:
            return False

        try:
            on_disk = await asyncio.to_thread(read_fingerprint, self.root / path)
        except OSError:
            on_disk = None
        if on_disk != document.fingerprint:
            logger.debug("Skipping identifier write-back for %s: file changed", path)
            return False

        text = render_outline(document.tree)
        try:
            fingerprint = await self._persist(path, text)
        except IoFailure as e:
            logger.warning("Could not write identifiers back to %s: %s", path, e)
            return False

        document.raw_text = text
        document.fingerprint = fingerprint
        document.dirty = False
        logger.info("Wrote generated identifiers back to %s", path)
        return True

    async def refresh_links(self, path: str) -> bool:
        """Rewrite stale link titles in a document. Caller holds the lock.

        Returns True if the document was written.
        """
        if self._retitle is None:
            return False
        document = await self._current_document(path)
        if document is None or document.tree is None:
            return False
        tree = copy.deepcopy(document.tree)
        if not self._retitle(tree):
            return False
        await self._commit_tree(path, tree)
        logger.info("Refreshed link titles in %s", path)
        return True

    async def _current_document(self, path: str) -> Document | None:
        """Return the path's document, re-ingesting first if disk has drifted."""
        document = self.store.get(path)
        if self._refresh is None:
            return document

        try:
            on_disk = await asyncio.to_thread(read_fingerprint, self.root / path)
        except FileNotFoundError:
            on_disk = None
        except OSError as e:
            raise IoFailure(f"Cannot read {path}: {e}", path=path) from e

        known = document.fingerprint if document is not None else None
        if on_disk != known:
            logger.info("%s changed on disk since last ingest, refreshing first", path)
            await self._refresh(path)
            document = self.store.get(path)
        return document

    async def _commit_operation(self, path: str, node_id: str, operation: Operation) -> Node | None:
        document = await self._current_document(path)
        owner = self.index.owner_of(node_id)
        if owner != path:
            raise _OwnerChanged(owner)
        if document is None or document.tree is None:
            raise InvalidOperation(f"Document {path} is not loaded")

        tree = copy.deepcopy(document.tree)
        result_id: str | None = node_id

        if isinstance(operation, UpdateFields):
            fields = validate_fields(
                operation.changes, tree.format, self.action_keywords, self.allowed_tags
            )
            edit_node(tree, node_id, fields)
        elif isinstance(operation, MoveNode):
            if operation.new_parent_id is not None:
                target = self.index.owner_of(operation.new_parent_id)
                if target is None:
                    raise InvalidOperation(f"Unknown node id: {operation.new_parent_id}")
                if target != path:
                    raise InvalidOperation(
                        f"Cannot move node {node_id} from {path} to a parent in {target}"
                    )
            move_node(tree, node_id, operation.new_parent_id, operation.position)
        elif isinstance(operation, DeleteNode):
            delete_node(tree, node_id)
            result_id = None
        elif isinstance(operation, CreateChild):
            fields = validate_fields(
                operation.fields, tree.format, self.action_keywords, self.allowed_tags
            )
            result_id = self._id_factory()
            create_node(tree, node_id, fields, result_id, operation.position)
        else:
            raise InvalidOperation(f"Unsupported operation: {operation!r}")

        await self._commit_tree(path, tree)
        return self.index.lookup_by_id(result_id) if result_id is not None else None

    async def _commit_top_level(
        self, path: str, fields: dict[str, Any], position: int | None
    ) -> Node:
        document = await self._current_document(path)
        if document is not None and document.tree is None:
            raise InvalidOperation(f"Document {path} has a parse error: {document.error}")

        if document is None:
            tree = OutlineTree(format=format_for_path(path))
        else:
            tree = copy.deepcopy(document.tree)

        fields = validate_fields(fields, tree.format, self.action_keywords, self.allowed_tags)
        new_id = self._id_factory()
        create_node(tree, None, fields, new_id, position)
        await self._commit_tree(path, tree)
        return self.index.lookup_by_id(new_id)

    async def _commit_tree(self, path: str, tree: OutlineTree) -> None:
        """Persist a tree, then publish it. Caller holds the lock."""
        if self._retitle is not None:
            self._retitle(tree)
        delta = DocumentDelta.replace(path, tree)
        self.index.check(delta)

        text = render_outline(tree)
        fingerprint = await self._persist(path, text)

        # No suspension point between these two: readers see both or neither
        self.index.apply(delta)
        self.store.upsert(path, text, fingerprint, tree=tree)
        logger.debug("Committed %s", path)

    async def _persist(self, path: str, text: str) -> Fingerprint:
        target = self.root / path
        try:
            tmp_path, fingerprint = await asyncio.to_thread(
                write_temp, target, text.encode("utf-8")
            )
        except OSError as e:
            raise IoFailure(f"Cannot write {path}: {e}", path=path) from e

        # Registered before the replace so the watcher cannot see the new file first
        record = self.pending.register(path, fingerprint)
        try:
            await asyncio.to_thread(replace, tmp_path, target)
        except OSError as e:
            self.pending.discard(record)
            raise IoFailure(f"Cannot replace {path}: {e}", path=path) from e
        return fingerprint
