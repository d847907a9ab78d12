"""Document store: the mapping from vault-relative path to document content.

Pure in-memory bookkeeping. Reading and writing files is the job of the
ingestion pipeline and the write coordinator.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from vault_mcp.engine.index import Index
from vault_mcp.engine.models import Document, Fingerprint, OutlineTree
from vault_mcp.engine.walker import FileInfo, walk_vault

logger = logging.getLogger(__name__)


class DocumentStore:
    """Documents of one vault, keyed by relative path."""

    def __init__(self) -> None:
        self._documents: dict[str, Document] = {}

    def __contains__(self, path: str) -> bool:
        return path in self._documents

    def __len__(self) -> int:
        return len(self._documents)

    def get(self, path: str) -> Document | None:
        return self._documents.get(path)

    def upsert(
        self,
        path: str,
        raw_text: str,
        fingerprint: Fingerprint | None,
        tree: OutlineTree | None = None,
        error: str | None = None,
        dirty: bool = False,
    ) -> Document:
        """Store a document, replacing any prior entry for the path."""
        document = Document(
            path=path,
            raw_text=raw_text,
            fingerprint=fingerprint,
            tree=tree,
            error=error,
            dirty=dirty,
        )
        self._documents[path] = document
        return document

    def remove(self, path: str) -> Document | None:
        return self._documents.pop(path, None)

    def paths(self) -> list[str]:
        return sorted(self._documents)

    def documents(self) -> list[Document]:
        return [self._documents[path] for path in self.paths()]

    def invalid(self) -> list[Document]:
        """Documents kept in the error state after a failed parse."""
        return [doc for doc in self.documents() if not doc.is_valid]

    def dirty(self) -> list[Document]:
        return [doc for doc in self.documents() if doc.dirty]


@dataclass
class Vault:
    """A vault root with its documents and index."""

    root: Path
    store: DocumentStore
    index: Index
    discovered: list[FileInfo] = field(default_factory=list)


def load_vault(
    root: Path,
    exclude: Sequence[str] = (),
    done_keywords: Sequence[str] = ("DONE",),
) -> Vault:
    """Walk the vault root and return a Vault listing the tracked files found.

    The store and index start empty; ingestion fills them.

    Raises:
        ValueError: If the root does not exist or is not a directory.
    """
    if not root.is_dir():
        raise ValueError(f"Vault root {root} does not exist or is not a directory")

    discovered = list(walk_vault(root, exclude))
    logger.info("Discovered %d documents under %s", len(discovered), root)
    return Vault(
        root=root,
        store=DocumentStore(),
        index=Index(done_keywords=done_keywords),
        discovered=discovered,
    )
