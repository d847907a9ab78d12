"""
Engine package for vaultmcp.

This package keeps a directory of org and markdown outlines synchronized with an
in-memory node index. The files on disk are the source of truth; the index,
the document store and the snapshot cache are derived from them.
"""

from vault_mcp.engine.cache import SnapshotCache
from vault_mcp.engine.debouncer import ChangeDebouncer, PendingWrites
from vault_mcp.engine.engine import VaultEngine
from vault_mcp.engine.index import Index, NodeQuery, where
from vault_mcp.engine.ingest import IngestionPipeline, IngestResult
from vault_mcp.engine.links import LinkSyntax
from vault_mcp.engine.models import (
    ChangeIntent,
    Connection,
    Document,
    DocumentDelta,
    Fingerprint,
    Link,
    Node,
    OutlineNode,
    OutlineTree,
    PendingWrite,
)
from vault_mcp.engine.outline import parse_outline, render_outline
from vault_mcp.engine.store import DocumentStore, Vault, load_vault
from vault_mcp.engine.walker import FileInfo, walk_vault
from vault_mcp.engine.writer import WriteCoordinator

__all__ = [
    "ChangeDebouncer",
    "ChangeIntent",
    "Connection",
    "Document",
    "DocumentDelta",
    "DocumentStore",
    "FileInfo",
    "Fingerprint",
    "Index",
    "IngestResult",
    "IngestionPipeline",
    "Link",
    "LinkSyntax",
    "Node",
    "NodeQuery",
    "OutlineNode",
    "OutlineTree",
    "PendingWrite",
    "PendingWrites",
    "SnapshotCache",
    "Vault",
    "VaultEngine",
    "WriteCoordinator",
    "load_vault",
    "parse_outline",
    "render_outline",
    "walk_vault",
    "where",
]
