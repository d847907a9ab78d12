"""MCP read tools for vaultmcp.

This module defines the query tools exposed by the MCP server:
- get_node: Fetch one node by its identifier
- list_document: All nodes of one document, in document order
- search_nodes: Filter nodes by state, tag, text and path
- list_documents: Every tracked document with its parse status
- list_index: Members of a named index (open, done, scheduled)
- list_broken_links: Links whose target node does not exist

All of them answer from the in-memory index and never touch disk.
"""

from collections.abc import Callable

from fastmcp import FastMCP

from vault_mcp.engine import Document, VaultEngine


def _document_summary(engine: VaultEngine, document: Document) -> dict:
    tree = document.tree
    return {
        "path": document.path,
        "title": tree.title if tree is not None else None,
        "tags": list(tree.tags) if tree is not None else [],
        "valid": document.is_valid,
        "error": document.error,
        "node_count": len(engine.list(document.path)),
    }


def register_tools(mcp: FastMCP, engine: VaultEngine) -> dict[str, Callable]:
    """Register all read tools with the FastMCP server.

    Args:
        mcp: FastMCP server instance
        engine: Started (or about to be started) vault engine

    Returns:
        The tool functions by name.
    """

    def get_node(node_id: str, include_children: bool = False) -> dict:
        """Get a single node by its ID.

        Args:
            node_id: The node's ID property
            include_children: Also report links from and to the node's descendants

        Returns:
            The node with its title, state, tags (own and inherited), planning
            dates, body, properties, parent and children ids, and links as
            written. "connections" lists the nodes it links to, "backlinks"
            the nodes linking to it, each with the link types used. With
            include_children, "child_connections" and "child_backlinks" do the
            same for descendants; nodes already listed on the node itself are
            not repeated there.
        """
        node = engine.get(node_id)
        if node is None:
            raise ValueError(f"Node not found: {node_id}")
        connections, child_connections = engine.connections(node_id, include_children)
        backlinks, child_backlinks = engine.backlinks(node_id, include_children)
        result = node.to_dict()
        result["connections"] = [c.to_dict() for c in connections]
        result["backlinks"] = [c.to_dict() for c in backlinks]
        if include_children:
            result["child_connections"] = [c.to_dict() for c in child_connections]
            result["child_backlinks"] = [c.to_dict() for c in child_backlinks]
        return result

    def list_document(path: str) -> dict:
        """List every node of one document.

        Args:
            path: Document path relative to the vault root (e.g. "work/inbox.org")

        Returns:
            Document summary with a "nodes" list in document order. A document
            with a parse error has "valid": false, the error message, and no nodes.
        """
        document = engine.document(path)
        if document is None:
            raise ValueError(f"Document not found: {path}")
        summary = _document_summary(engine, document)
        summary["nodes"] = [node.to_dict() for node in engine.list(path)]
        return summary

    def search_nodes(
        state: str | None = None,
        tag: str | None = None,
        text: str | None = None,
        path: str | None = None,
        limit: int = 50,
    ) -> list[dict]:
        """Search nodes across the vault. All given filters must match.

        Args:
            state: A state keyword (e.g. "TODO"), or "open" / "done"
            tag: Tag carried by the node or inherited from an ancestor
            text: Case-insensitive substring of the title or body
            path: Exact document path or glob (e.g. "projects/*.org")
            limit: Maximum number of results to return (default: 50)
        """
        if limit <= 0:
            raise ValueError("limit must be positive")
        nodes = engine.search(state=state, tag=tag, text=text, path=path, limit=limit)
        return [node.to_dict() for node in nodes]

    def list_documents() -> list[dict]:
        """List all tracked documents, including ones that failed to parse."""
        return [_document_summary(engine, document) for document in engine.documents()]

    def list_index(name: str) -> list[dict]:
        """List the members of a named index.

        Args:
            name: One of "open" (actionable), "done", or "scheduled"
        """
        try:
            nodes = engine.named(name)
        except KeyError:
            raise ValueError(f"Unknown index: {name}") from None
        return [node.to_dict() for node in nodes]

    def list_broken_links(path: str | None = None) -> list[dict]:
        """List links pointing at node IDs that are not in the vault.

        Args:
            path: Only report links in this document (default: whole vault)
        """
        return [
            {"node_id": node.id, "path": node.path, **link.to_dict()}
            for node, link in engine.broken_links(path)
        ]

    tools = {
        fn.__name__: fn
        for fn in (
            get_node,
            list_document,
            search_nodes,
            list_documents,
            list_index,
            list_broken_links,
        )
    }
    for fn in tools.values():
        mcp.tool()(fn)
    return tools
