"""Tree edits behind the mutation API.

Every function validates its input and raises InvalidOperation before changing
anything, and works on a tree the caller is free to throw away.
"""

import re
from collections.abc import Iterable
from typing import Any

from vault_mcp.engine.models import ID_PROPERTY, UPDATABLE_FIELDS, OutlineNode, OutlineTree
from vault_mcp.engine.outline import is_fence_line
from vault_mcp.errors import InvalidOperation

_TAG_RE = re.compile(r"^[\w@#%.-]+$")
_TRAILING_TAGS_RE = re.compile(r"(?:^|[ \t]):(?:[\w@#%.-]+:)+$")
_PROPERTY_KEY_RE = re.compile(r"^[^:\s]+$")
_DRAWER_MARKERS = ("PROPERTIES", "END")
_HEADING_LINE_RES = {
    "org": re.compile(r"^\*+[ \t]"),
    "markdown": re.compile(r"^#+[ \t]"),
}


def _single_line(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise InvalidOperation(f"{name} must be a string")
    if "\n" in value or "\r" in value:
        raise InvalidOperation(f"{name} must be a single line")
    return value.strip()


def _check_body(body: str, fmt: str) -> None:
    """Reject body text that would parse back as something other than body text."""
    heading_re = _HEADING_LINE_RES[fmt]
    in_fence = False
    for line in body.split("\n"):
        if fmt == "markdown" and is_fence_line(line):
            in_fence = not in_fence
        elif not in_fence and heading_re.match(line):
            raise InvalidOperation("body must not contain heading lines")
    if in_fence:
        raise InvalidOperation("body must not leave a code fence open")


def validate_fields(
    fields: dict[str, Any],
    fmt: str,
    action_keywords: Iterable[str],
    allowed_tags: Iterable[str] = (),
) -> dict[str, Any]:
    """Check and normalise a field-change mapping.

    Raises:
        InvalidOperation: On unknown fields or values the outline format
            cannot represent.
    """
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise InvalidOperation(f"Unknown fields: {', '.join(sorted(unknown))}")

    keywords = set(action_keywords)
    allowed = set(allowed_tags)
    clean: dict[str, Any] = {}

    if "title" in fields:
        title = _single_line("title", fields["title"])
        # Either would be read back as part of the heading syntax
        if _TRAILING_TAGS_RE.search(title):
            raise InvalidOperation("title must not end with a :tag: group")
        if title.partition(" ")[0] in keywords:
            raise InvalidOperation("title must not start with a state keyword")
        clean["title"] = title

    if "state" in fields:
        state = fields["state"]
        if state is not None:
            state = _single_line("state", state).upper() or None
        if state is not None and state not in keywords:
            raise InvalidOperation(
                f"Unknown state '{state}', expected one of: {', '.join(sorted(keywords))}"
            )
        clean["state"] = state

    if "tags" in fields:
        tags = fields["tags"] or []
        if isinstance(tags, str) or not all(isinstance(t, str) for t in tags):
            raise InvalidOperation("tags must be a list of strings")
        for tag in tags:
            if not _TAG_RE.match(tag):
                raise InvalidOperation(f"Invalid tag '{tag}'")
            if allowed and tag not in allowed:
                raise InvalidOperation(f"Tag '{tag}' is not in the allowed tag list")
        clean["tags"] = list(dict.fromkeys(tags))

    for name in ("scheduled", "deadline"):
        if name in fields:
            value = fields[name]
            if value is not None:
                value = _single_line(name, value)
                if "<" in value or ">" in value:
                    raise InvalidOperation(f"{name} must not contain angle brackets")
            clean[name] = value or None

    if "body" in fields:
        body = fields["body"] or ""
        if not isinstance(body, str):
            raise InvalidOperation("body must be a string")
        _check_body(body, fmt)
        if body and not body.endswith("\n"):
            body += "\n"
        clean["body"] = body

    if "properties" in fields:
        properties = fields["properties"] or {}
        if not isinstance(properties, dict):
            raise InvalidOperation("properties must be a mapping")
        for key, value in properties.items():
            if not isinstance(key, str) or not _PROPERTY_KEY_RE.match(key):
                raise InvalidOperation(f"Invalid property name {key!r}")
            if key.upper() == ID_PROPERTY:
                raise InvalidOperation("The ID property cannot be changed")
            if key.upper() in _DRAWER_MARKERS:
                raise InvalidOperation(f"{key!r} is reserved by the property drawer")
            if value is not None:
                _single_line(f"property {key}", value)
        clean["properties"] = properties

    return clean


def update_node(node: OutlineNode, fields: dict[str, Any]) -> None:
    """Apply validated field changes. Property values of None delete the key."""
    if "title" in fields:
        node.title = fields["title"]
    if "state" in fields:
        node.keyword = fields["state"]
    if "tags" in fields:
        node.tags = list(fields["tags"])
    if "scheduled" in fields:
        node.scheduled = fields["scheduled"]
    if "deadline" in fields:
        node.deadline = fields["deadline"]
    if "body" in fields:
        node.body = fields["body"]
    for key, value in fields.get("properties", {}).items():
        if value is None:
            node.properties.pop(key, None)
        else:
            node.properties[key] = value.strip()


def _locate(tree: OutlineTree, node_id: str) -> tuple[OutlineNode, OutlineNode | None]:
    found = tree.find(node_id)
    if found is None:
        raise InvalidOperation(f"Unknown node id: {node_id}")
    return found


def edit_node(tree: OutlineTree, node_id: str, fields: dict[str, Any]) -> OutlineNode:
    """Apply validated field changes to the node with ``node_id``."""
    node, _ = _locate(tree, node_id)
    update_node(node, fields)
    return node


def _detach(siblings: list[OutlineNode], node: OutlineNode) -> None:
    # By identity: equal-looking nodes must not be confused
    for i, sibling in enumerate(siblings):
        if sibling is node:
            del siblings[i]
            return


def _check_position(position: int | None, siblings: list[OutlineNode]) -> int:
    if position is None:
        return len(siblings)
    if not 0 <= position <= len(siblings):
        raise InvalidOperation(
            f"Position {position} out of range (0..{len(siblings)})"
        )
    return position


def move_node(
    tree: OutlineTree, node_id: str, new_parent_id: str | None, position: int | None
) -> OutlineNode:
    """Move a node, with its whole subtree, under a new parent in the same tree."""
    node, parent = _locate(tree, node_id)

    new_parent = None
    if new_parent_id is not None:
        new_parent, _ = _locate(tree, new_parent_id)
        if any(n is new_parent for n in node.walk()):
            raise InvalidOperation(
                f"Cannot move node {node_id} under itself or one of its descendants"
            )

    old_siblings = tree.siblings_of(parent)
    new_siblings = tree.siblings_of(new_parent)
    # Bounds are checked against the sibling list as it will be after removal
    remaining = [n for n in new_siblings if n is not node]
    index = _check_position(position, remaining)

    _detach(old_siblings, node)
    new_siblings.insert(index, node)
    target_level = new_parent.level + 1 if new_parent is not None else 1
    node.shift_levels(target_level - node.level)
    return node


def delete_node(tree: OutlineTree, node_id: str) -> OutlineNode:
    """Remove a node and its subtree."""
    node, parent = _locate(tree, node_id)
    _detach(tree.siblings_of(parent), node)
    return node


def create_node(
    tree: OutlineTree,
    parent_id: str | None,
    fields: dict[str, Any],
    new_id: str,
    position: int | None = None,
) -> OutlineNode:
    """Insert a new node under ``parent_id`` (top level when None)."""
    parent = _locate(tree, parent_id)[0] if parent_id is not None else None
    siblings = tree.siblings_of(parent)
    index = _check_position(position, siblings)

    node = OutlineNode(level=parent.level + 1 if parent is not None else 1)
    node.id = new_id
    update_node(node, fields)
    siblings.insert(index, node)
    return node
