"""Ingestion pipeline: a changed file in, an updated document and index out."""

import asyncio
import logging
import uuid
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from vault_mcp.engine.index import Index
from vault_mcp.engine.models import Document, DocumentDelta, OutlineTree
from vault_mcp.engine.outline import DEFAULT_KEYWORDS, decode_text, format_for_path, parse_outline
from vault_mcp.engine.store import DocumentStore
from vault_mcp.engine.walker import read_with_fingerprint
from vault_mcp.errors import ParseFailure

logger = logging.getLogger(__name__)

ADDED = "added"
UPDATED = "updated"
UNCHANGED = "unchanged"
INVALID = "invalid"
REMOVED = "removed"
MISSING = "missing"


@dataclass
class IngestResult:
    """What one ingest() call did."""

    path: str
    status: str
    document: Document | None = None
    resolved: frozenset[str] = frozenset()  # Documents whose dangling links now resolve


def new_identifier() -> str:
    return str(uuid.uuid4())


class IngestionPipeline:
    """
    Reads, parses and indexes single documents.

    Failures are contained to the document: unreadable or unparsable files end
    up as error-state documents that keep their raw text and contribute nothing
    to the index.

    Callers must hold the document's write lock; the pipeline itself only
    suspends on file reads. Identifier checks and the index update happen with
    no suspension point in between, so they are atomic with respect to other
    ingestions and mutations.
    """

    def __init__(
        self,
        root: Path,
        store: DocumentStore,
        index: Index,
        action_keywords: Sequence[str] = DEFAULT_KEYWORDS,
        allowed_tags: Sequence[str] = (),
        id_factory: Callable[[], str] = new_identifier,
        refresh_link_titles: bool = True,
    ):
        self.root = root
        self.store = store
        self.index = index
        self.action_keywords = tuple(action_keywords)
        self.allowed_tags = tuple(allowed_tags)
        self._id_factory = id_factory
        self.refresh_link_titles = refresh_link_titles
        self.stats: Counter[str] = Counter()

    async def ingest(self, path: str) -> IngestResult:
        """Bring one path's document and index entries up to date with disk."""
        fmt = format_for_path(path)
        if fmt is None:
            raise ValueError(f"Not a tracked document: {path}")

        try:
            content, fingerprint = await asyncio.to_thread(
                read_with_fingerprint, self.root / path
            )
        except FileNotFoundError:
            return self.remove(path)
        except OSError as e:
            logger.warning("Cannot read %s: %s", path, e)
            previous = self.store.get(path)
            # No fingerprint, so the next successful read always re-parses
            document = self.store.upsert(
                path,
                raw_text=previous.raw_text if previous else "",
                fingerprint=None,
                error=f"unreadable: {e}",
            )
            self.index.apply(DocumentDelta.tombstone(path))
            return self._record(IngestResult(path, INVALID, document))

        existing = self.store.get(path)
        if existing is not None and existing.fingerprint is not None:
            if existing.fingerprint.digest == fingerprint.digest:
                existing.fingerprint = fingerprint
                return self._record(IngestResult(path, UNCHANGED, existing))

        try:
            text = decode_text(content)
            tree = parse_outline(text, fmt, self.action_keywords, self.allowed_tags)
        except ParseFailure as e:
            e.path = path
            logger.warning("Parse failure in %s: %s", path, e)
            document = self.store.upsert(
                path,
                raw_text=content.decode("utf-8", errors="replace"),
                fingerprint=fingerprint,
                error=str(e),
            )
            self.index.apply(DocumentDelta.tombstone(path))
            return self._record(IngestResult(path, INVALID, document))

        await self._release_vanished_owners(path, tree)
        dirty = self.assign_identifiers(path, tree)
        if self.retitle_links(tree):
            dirty = True
        resolved = self.index.apply(DocumentDelta.replace(path, tree))
        document = self.store.upsert(path, text, fingerprint, tree=tree, dirty=dirty)
        status = ADDED if existing is None else UPDATED
        logger.debug("Ingested %s (%s)", path, status)
        return self._record(IngestResult(path, status, document, frozenset(resolved)))

    def remove(self, path: str) -> IngestResult:
        """Drop a vanished document and all of its index entries."""
        existing = self.store.remove(path)
        self.index.apply(DocumentDelta.tombstone(path))
        if existing is not None:
            logger.info("Removed %s", path)
        return self._record(IngestResult(path, REMOVED if existing else MISSING))

    def restore(self, document: Document) -> set[str]:
        """Install a document loaded from the snapshot cache.

        Returns the documents whose dangling links it resolves.

        Raises:
            DuplicateIdentifier: If the cached tree collides with the index.
        """
        if document.tree is not None:
            resolved = self.index.apply(DocumentDelta.replace(document.path, document.tree))
        else:
            resolved = self.index.apply(DocumentDelta.tombstone(document.path))
        self.store.upsert(
            document.path,
            document.raw_text,
            document.fingerprint,
            tree=document.tree,
            error=document.error,
            dirty=document.dirty,
        )
        return resolved

    def retitle_links(self, tree: OutlineTree) -> bool:
        """Bring link titles in ``tree`` in line with their targets; True if any changed."""
        if not self.refresh_link_titles:
            return False
        return self.index.links.retitle_tree(tree, self.index.link_title)

    async def _release_vanished_owners(self, path: str, tree: OutlineTree) -> None:
        """Drop documents whose file is gone but whose identifiers reappear in ``tree``.

        A rename settles as two independent intents; this lets identifiers follow
        the file whichever intent is processed first.
        """
        owners = {self.index.owner_of(node.id) for node, _ in tree.walk() if node.id}
        owners.discard(None)
        owners.discard(path)
        for owner in sorted(owners):
            if not await asyncio.to_thread((self.root / owner).exists):
                logger.info("%s is gone, its identifiers move to %s", owner, path)
                self.remove(owner)

    def assign_identifiers(self, path: str, tree: OutlineTree) -> bool:
        """Give every node a unique identifier; return True if any node changed.

        Nodes without an identifier get a fresh one. A repeated identifier in
        the same document, or one already owned by another document, is
        renumbered on the later occurrence.
        """
        changed = False
        seen: set[str] = set()
        for node, _ in tree.walk():
            node_id = node.id
            if node_id is None:
                node.id = self._id_factory()
                changed = True
            elif node_id in seen:
                node.id = self._id_factory()
                logger.warning(
                    "Duplicate identifier %s in %s, renumbered '%s' to %s",
                    node_id,
                    path,
                    node.title,
                    node.id,
                )
                changed = True
            else:
                owner = self.index.owner_of(node_id)
                if owner is not None and owner != path:
                    node.id = self._id_factory()
                    logger.warning(
                        "Identifier %s in %s is already owned by %s, renumbered '%s' to %s",
                        node_id,
                        path,
                        owner,
                        node.title,
                        node.id,
                    )
                    changed = True
            seen.add(node.id)
        return changed

    def _record(self, result: IngestResult) -> IngestResult:
        self.stats[result.status] += 1
        return result
