"""Snapshot cache: persists parsed documents so startup can skip re-parsing.

The snapshot is a msgpack document keyed by the vault fingerprint. It is an
acceleration structure only: the engine re-validates every cached document
against disk before trusting it.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import msgpack

from vault_mcp.engine.atomic import atomic_write
from vault_mcp.engine.models import Document, Fingerprint, OutlineNode, OutlineTree
from vault_mcp.errors import CacheCorrupt, CacheMiss

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


@dataclass
class Snapshot:
    vault_fingerprint: str
    documents: list[Document]


def _encode_node(node: OutlineNode) -> dict[str, Any]:
    return {
        "level": node.level,
        "title": node.title,
        "keyword": node.keyword,
        "tags": node.tags,
        "scheduled": node.scheduled,
        "deadline": node.deadline,
        "properties": [[key, value] for key, value in node.properties.items()],
        "body": node.body,
        "children": [_encode_node(child) for child in node.children],
    }


def _decode_node(data: dict[str, Any]) -> OutlineNode:
    return OutlineNode(
        level=data["level"],
        title=data["title"],
        keyword=data["keyword"],
        tags=list(data["tags"]),
        scheduled=data["scheduled"],
        deadline=data["deadline"],
        properties={key: value for key, value in data["properties"]},
        body=data["body"],
        children=[_decode_node(child) for child in data["children"]],
    )


def _encode_tree(tree: OutlineTree | None) -> dict[str, Any] | None:
    if tree is None:
        return None
    return {
        "format": tree.format,
        "preamble": tree.preamble,
        "title": tree.title,
        "tags": tree.tags,
        "nodes": [_encode_node(node) for node in tree.nodes],
    }


def _decode_tree(data: dict[str, Any] | None) -> OutlineTree | None:
    if data is None:
        return None
    return OutlineTree(
        format=data["format"],
        preamble=data["preamble"],
        title=data["title"],
        tags=list(data["tags"]),
        nodes=[_decode_node(node) for node in data["nodes"]],
    )


def _encode_document(document: Document) -> dict[str, Any]:
    fingerprint = document.fingerprint
    return {
        "path": document.path,
        "raw_text": document.raw_text,
        "fingerprint": (
            [fingerprint.digest, fingerprint.mtime_ns, fingerprint.size] if fingerprint else None
        ),
        "tree": _encode_tree(document.tree),
        "error": document.error,
        "dirty": document.dirty,
    }


def _decode_document(data: dict[str, Any]) -> Document:
    fingerprint = data["fingerprint"]
    return Document(
        path=data["path"],
        raw_text=data["raw_text"],
        fingerprint=Fingerprint(*fingerprint) if fingerprint is not None else None,
        tree=_decode_tree(data["tree"]),
        error=data["error"],
        dirty=data["dirty"],
    )


class SnapshotCache:
    """Reads and writes the snapshot file for one vault."""

    def __init__(self, cache_path: Path):
        self.cache_path = cache_path

    def save(self, documents: Iterable[Document], vault_fingerprint: str) -> int:
        """Write the snapshot atomically. Returns the number of documents saved."""
        encoded = [_encode_document(document) for document in documents]
        payload = {
            "version": SNAPSHOT_VERSION,
            "vault_fingerprint": vault_fingerprint,
            "documents": encoded,
        }
        atomic_write(self.cache_path, msgpack.packb(payload, use_bin_type=True))
        logger.info("Saved snapshot of %d documents to %s", len(encoded), self.cache_path)
        return len(encoded)

    def load(self, vault_fingerprint: str) -> Snapshot:
        """Load the snapshot taken for ``vault_fingerprint``.

        Raises:
            CacheMiss: No snapshot, another format version, or another fingerprint.
            CacheCorrupt: The file exists but cannot be decoded.
        """
        try:
            raw = self.cache_path.read_bytes()
        except FileNotFoundError as e:
            raise CacheMiss(f"No snapshot at {self.cache_path}") from e
        except OSError as e:
            raise CacheCorrupt(f"Cannot read snapshot {self.cache_path}: {e}") from e

        try:
            payload = msgpack.unpackb(raw, raw=False)
        except (ValueError, TypeError, msgpack.UnpackException) as e:
            raise CacheCorrupt(f"Cannot decode snapshot {self.cache_path}: {e}") from e
        if not isinstance(payload, dict):
            raise CacheCorrupt(f"Snapshot {self.cache_path} is not a mapping")

        if payload.get("version") != SNAPSHOT_VERSION:
            raise CacheMiss(f"Snapshot version {payload.get('version')!r} is not supported")
        if payload.get("vault_fingerprint") != vault_fingerprint:
            raise CacheMiss("Vault changed since the snapshot was taken")

        try:
            documents = [_decode_document(item) for item in payload["documents"]]
        except (KeyError, TypeError, ValueError) as e:
            raise CacheCorrupt(f"Malformed snapshot {self.cache_path}: {e!r}") from e
        return Snapshot(vault_fingerprint=vault_fingerprint, documents=documents)

    def clear(self) -> None:
        self.cache_path.unlink(missing_ok=True)
