"""Write tools for vaultmcp - create, update, move and delete outline nodes."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from vault_mcp.auth import check_write_permission
from vault_mcp.config import Config
from vault_mcp.engine import VaultEngine
from vault_mcp.errors import IoFailure, VaultError

if TYPE_CHECKING:
    from fastmcp import FastMCP

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLEARABLE_FIELDS = ("state", "tags", "scheduled", "deadline", "body")


async def _run(action: str, coro: Awaitable[T]) -> T:
    """Await an engine mutation, turning engine errors into client errors."""
    try:
        return await coro
    except IoFailure as e:
        logger.error("Failed to %s: %s", action, e)
        raise ValueError(f"Failed to {action}: {e}") from e
    except VaultError as e:
        logger.info("Rejected %s: %s", action, e)
        raise ValueError(str(e)) from e


def _collect(**fields: Any) -> dict[str, Any]:
    return {name: value for name, value in fields.items() if value is not None}


def register_tools_write(mcp: FastMCP, config: Config, engine: VaultEngine) -> dict[str, Callable]:
    """Register write tools with the MCP server.

    Every tool checks write permission first and only returns once the change
    is on disk and visible to the read tools.

    Args:
        mcp: FastMCP server instance
        config: Config instance
        engine: Vault engine performing the writes

    Returns:
        The tool functions by name.
    """

    async def create_node(
        title: str,
        parent_id: str | None = None,
        path: str | None = None,
        state: str | None = None,
        tags: list[str] | None = None,
        scheduled: str | None = None,
        deadline: str | None = None,
        body: str | None = None,
        properties: dict[str, str] | None = None,
        position: int | None = None,
    ) -> dict:
        """Create a new node.

        Args:
            title: Heading text
            parent_id: Create the node as the last child of this node
            path: Without parent_id, create a top-level node in this document
                (the file is created if it does not exist yet)
            state: State keyword such as "TODO"
            tags: Tags of the node
            scheduled: Scheduled date, e.g. "2026-01-15 Thu"
            deadline: Deadline date
            body: Text under the heading
            properties: Extra properties for the node's drawer
            position: Index among the new siblings (default: append)

        Returns:
            The created node, including its generated ID.
        """
        check_write_permission(config)
        fields = _collect(
            title=title,
            state=state,
            tags=tags,
            scheduled=scheduled,
            deadline=deadline,
            body=body,
            properties=properties,
        )
        node = await _run(
            "create node",
            engine.create(parent_id, fields, path=path, position=position),
        )
        logger.info("Created node %s in %s", node.id, node.path)
        return node.to_dict()

    async def update_node(
        node_id: str,
        title: str | None = None,
        state: str | None = None,
        tags: list[str] | None = None,
        scheduled: str | None = None,
        deadline: str | None = None,
        body: str | None = None,
        properties: dict[str, str | None] | None = None,
        clear: list[str] | None = None,
    ) -> dict:
        """Update fields of an existing node. Omitted fields are left unchanged.

        Args:
            node_id: ID of the node to update
            title: New heading text
            state: New state keyword (e.g. "DONE")
            tags: Replacement tag list
            scheduled: New scheduled date
            deadline: New deadline
            body: Replacement body text
            properties: Properties to set; a null value removes the property
            clear: Fields to reset: any of state, tags, scheduled, deadline, body

        Returns:
            The updated node.
        """
        check_write_permission(config)
        changes = _collect(
            title=title,
            state=state,
            tags=tags,
            scheduled=scheduled,
            deadline=deadline,
            body=body,
            properties=properties,
        )
        for name in clear or []:
            if name not in CLEARABLE_FIELDS:
                raise ValueError(
                    f"Cannot clear '{name}', expected one of: {', '.join(CLEARABLE_FIELDS)}"
                )
            if name in changes:
                raise ValueError(f"Field '{name}' is both set and cleared")
            changes[name] = None
        if not changes:
            raise ValueError("No changes given")

        node = await _run("update node", engine.update(node_id, changes))
        logger.info("Updated node %s (%s)", node_id, ", ".join(sorted(changes)))
        return node.to_dict()

    async def move_node(
        node_id: str,
        new_parent_id: str | None = None,
        position: int | None = None,
    ) -> dict:
        """Move a node, with its subtree, within its document.

        Args:
            node_id: ID of the node to move
            new_parent_id: New parent; omit to make it a top-level node
            position: Index among the new siblings (default: append)

        Returns:
            The moved node.
        """
        check_write_permission(config)
        node = await _run("move node", engine.move(node_id, new_parent_id, position))
        logger.info("Moved node %s under %s", node_id, new_parent_id or "top level")
        return node.to_dict()

    async def delete_node(node_id: str) -> dict:
        """Delete a node and its whole subtree.

        Args:
            node_id: ID of the node to delete
        """
        check_write_permission(config)
        await _run("delete node", engine.delete(node_id))
        logger.info("Deleted node %s", node_id)
        return {"status": "deleted", "id": node_id}

    tools = {fn.__name__: fn for fn in (create_node, update_node, move_node, delete_node)}
    for fn in tools.values():
        mcp.tool()(fn)
    return tools
