"""Data models for the vault engine."""

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

CHANGED = "changed"
REMOVED = "removed"

ID_PROPERTY = "ID"


@dataclass
class OutlineNode:
    """One heading in a parsed outline, owning its children."""

    level: int
    title: str = ""
    keyword: str | None = None
    tags: list[str] = field(default_factory=list)
    scheduled: str | None = None
    deadline: str | None = None
    properties: dict[str, str] = field(default_factory=dict)  # Drawer order, includes ID
    body: str = ""
    children: list["OutlineNode"] = field(default_factory=list)

    @property
    def id(self) -> str | None:
        return self.properties.get(ID_PROPERTY)

    @id.setter
    def id(self, value: str) -> None:
        if ID_PROPERTY in self.properties:
            self.properties[ID_PROPERTY] = value
        else:
            self.properties = {ID_PROPERTY: value, **self.properties}

    def walk(self) -> Iterator["OutlineNode"]:
        """Yield this node and all descendants, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()

    def shift_levels(self, delta: int) -> None:
        for node in self.walk():
            node.level += delta


@dataclass
class OutlineTree:
    """A parsed document: preamble text plus top-level headings."""

    format: str  # "org" or "markdown"
    preamble: str = ""
    nodes: list[OutlineNode] = field(default_factory=list)
    title: str | None = None  # From #+title or frontmatter
    tags: list[str] = field(default_factory=list)

    def walk(self) -> Iterator[tuple[OutlineNode, OutlineNode | None]]:
        """Yield (node, parent) pairs depth first; parent is None for top level."""
        stack: list[tuple[OutlineNode, OutlineNode | None]] = [
            (node, None) for node in reversed(self.nodes)
        ]
        while stack:
            node, parent = stack.pop()
            yield node, parent
            stack.extend((child, node) for child in reversed(node.children))

    def find(self, node_id: str) -> tuple[OutlineNode, OutlineNode | None] | None:
        """Find a node by identifier, returning it with its parent."""
        for node, parent in self.walk():
            if node.id == node_id:
                return node, parent
        return None

    def siblings_of(self, parent: OutlineNode | None) -> list[OutlineNode]:
        return self.nodes if parent is None else parent.children


@dataclass(frozen=True)
class Fingerprint:
    """Content digest plus the stat data observed with it."""

    digest: str
    mtime_ns: int
    size: int


@dataclass
class Document:
    """One tracked file and its parsed representation."""

    path: str  # Relative to the vault root, POSIX separators
    raw_text: str
    fingerprint: Fingerprint | None  # None when the file could not be read
    tree: OutlineTree | None = None
    error: str | None = None  # Parse diagnostic when tree is None
    dirty: bool = False  # In-memory edits (ids, link titles) not yet persisted

    @property
    def is_valid(self) -> bool:
        return self.tree is not None


@dataclass(frozen=True)
class DocumentDelta:
    """Either "document now has this tree" or "document removed"."""

    path: str
    tree: OutlineTree | None = None

    @property
    def is_removal(self) -> bool:
        return self.tree is None

    @classmethod
    def replace(cls, path: str, tree: OutlineTree) -> "DocumentDelta":
        return cls(path=path, tree=tree)

    @classmethod
    def tombstone(cls, path: str) -> "DocumentDelta":
        return cls(path=path, tree=None)


@dataclass(frozen=True)
class Link:
    """A typed reference from a node's title or body to another node."""

    target: str  # Identifier of the node linked to
    type: str
    title: str  # Link text as written

    def to_dict(self) -> dict[str, Any]:
        return {"target": self.target, "type": self.type, "title": self.title}


@dataclass(frozen=True)
class Connection:
    """All links between a node and one other node, folded together."""

    id: str  # The other node
    title: str
    types: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "types": list(self.types)}


@dataclass(frozen=True)
class Node:
    """Immutable snapshot of an outline node as seen through the index."""

    id: str
    path: str
    parent_id: str | None
    position: tuple[int, ...]  # Index path from the document's top level
    level: int
    title: str
    state: str | None
    done: bool
    tags: tuple[str, ...]
    inherited_tags: tuple[str, ...]
    title_path: tuple[str, ...]
    scheduled: str | None
    deadline: str | None
    body: str
    properties: tuple[tuple[str, str], ...]  # Without ID
    children: tuple[str, ...]
    links: tuple[Link, ...] = ()  # In order of appearance, title first

    @property
    def all_tags(self) -> tuple[str, ...]:
        return self.tags + tuple(t for t in self.inherited_tags if t not in self.tags)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "parent_id": self.parent_id,
            "position": list(self.position),
            "level": self.level,
            "title": self.title,
            "state": self.state,
            "done": self.done,
            "tags": list(self.tags),
            "inherited_tags": list(self.inherited_tags),
            "title_path": list(self.title_path),
            "scheduled": self.scheduled,
            "deadline": self.deadline,
            "body": self.body,
            "properties": dict(self.properties),
            "children": list(self.children),
            "links": [link.to_dict() for link in self.links],
        }


@dataclass(frozen=True)
class PendingWrite:
    """A write the engine issued and expects to see echoed by the watcher."""

    path: str
    fingerprint: Fingerprint
    issued_at: float  # time.monotonic()


@dataclass(frozen=True)
class ChangeIntent:
    """A settled filesystem change for one path."""

    path: str
    kind: str  # CHANGED or REMOVED


# Mutation operations

UPDATABLE_FIELDS = frozenset(
    {"title", "state", "tags", "scheduled", "deadline", "body", "properties"}
)


@dataclass(frozen=True)
class UpdateFields:
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MoveNode:
    new_parent_id: str | None  # None moves to the document's top level
    position: int | None = None  # None appends


@dataclass(frozen=True)
class DeleteNode:
    pass


@dataclass(frozen=True)
class CreateChild:
    fields: dict[str, Any] = field(default_factory=dict)
    position: int | None = None


Operation = UpdateFields | MoveNode | DeleteNode | CreateChild
