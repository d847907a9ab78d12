"""In-memory index of nodes across all documents.

The index state is an immutable value swapped in one assignment, so readers
never take a lock and never observe a half-applied delta. Writers serialize on
a short lock that covers only the in-memory rebuild of the affected document's
entries.
"""

import fnmatch
import logging
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field

from vault_mcp.engine.links import LinkSyntax
from vault_mcp.engine.models import (
    ID_PROPERTY,
    Connection,
    DocumentDelta,
    Link,
    Node,
    OutlineTree,
)
from vault_mcp.engine.outline import format_for_path
from vault_mcp.errors import DuplicateIdentifier, InvalidOperation

logger = logging.getLogger(__name__)

Predicate = Callable[[Node], bool]


def snapshot_tree(
    path: str,
    tree: OutlineTree,
    done_keywords: Iterable[str] = ("DONE",),
    links: LinkSyntax | None = None,
) -> list[Node]:
    """Build immutable Node snapshots for every node of a tree, in document order."""
    done = frozenset(done_keywords)
    syntax = links or LinkSyntax()
    doc_title = tree.title or path
    nodes: list[Node] = []

    def visit(outline_nodes, parent_id, prefix, titles, inherited):
        for i, node in enumerate(outline_nodes):
            if node.id is None:
                raise InvalidOperation(f"Node '{node.title}' in {path} has no identifier")
            position = prefix + (i,)
            title_path = titles + (node.title,)
            nodes.append(
                Node(
                    id=node.id,
                    path=path,
                    parent_id=parent_id,
                    position=position,
                    level=node.level,
                    title=node.title,
                    state=node.keyword,
                    done=node.keyword in done,
                    tags=tuple(node.tags),
                    inherited_tags=inherited,
                    title_path=title_path,
                    scheduled=node.scheduled,
                    deadline=node.deadline,
                    body=node.body,
                    properties=tuple(
                        (k, v) for k, v in node.properties.items() if k != ID_PROPERTY
                    ),
                    children=tuple(child.id for child in node.children),
                    links=tuple(
                        syntax.parse(node.title, tree.format) + syntax.parse(node.body, tree.format)
                    ),
                )
            )
            child_inherited = inherited + tuple(t for t in node.tags if t not in inherited)
            visit(node.children, node.id, position, title_path, child_inherited)

    visit(tree.nodes, None, (), (doc_title,), tuple(tree.tags))
    return nodes


@dataclass(frozen=True)
class _IndexState:
    by_id: Mapping[str, Node] = field(default_factory=dict)
    by_path: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    named: Mapping[str, frozenset[str]] = field(default_factory=dict)
    backlinks: Mapping[str, frozenset[str]] = field(default_factory=dict)  # Target -> sources
    generation: int = 0


def _check_identifiers(state: _IndexState, path: str, nodes: list[Node]) -> None:
    seen: set[str] = set()
    for node in nodes:
        owner = state.by_id.get(node.id)
        if owner is not None and owner.path != path:
            raise DuplicateIdentifier(node.id, owner.path, path)
        if node.id in seen:
            raise DuplicateIdentifier(node.id, path, path)
        seen.add(node.id)


def _relink(
    backlinks: Mapping[str, frozenset[str]], old: list[Node], new: list[Node]
) -> dict[str, frozenset[str]]:
    result = dict(backlinks)
    for node in old:
        for target in {link.target for link in node.links}:
            sources = result.get(target, frozenset()) - {node.id}
            if sources:
                result[target] = sources
            else:
                result.pop(target, None)
    for node in new:
        for target in {link.target for link in node.links}:
            result[target] = result.get(target, frozenset()) | {node.id}
    return result


def _fold(pairs: Iterable[tuple[Node, str]]) -> list[Connection]:
    """Fold (other node, link type) pairs into one Connection per other node."""
    types: dict[str, list[str]] = {}
    others: dict[str, Node] = {}
    for other, link_type in pairs:
        others[other.id] = other
        seen = types.setdefault(other.id, [])
        if link_type not in seen:
            seen.append(link_type)
    ordered = sorted(others.values(), key=lambda n: (n.path, n.position))
    return [Connection(id=n.id, title=n.title, types=tuple(types[n.id])) for n in ordered]


class NodeQuery:
    """A lazy, restartable sequence of nodes matching a predicate.

    Every iteration re-reads the index's current state.
    """

    def __init__(self, index: "Index", predicate: Predicate):
        self._index = index
        self._predicate = predicate

    def __iter__(self) -> Iterator[Node]:
        state = self._index._state
        for path in sorted(state.by_path):
            for node_id in state.by_path[path]:
                node = state.by_id[node_id]
                if self._predicate(node):
                    yield node

    def first(self) -> Node | None:
        return next(iter(self), None)

    def count(self) -> int:
        return sum(1 for _ in self)


class Index:
    """
    Global node index with id-based and path-based lookup.

    Thread Safety:
        apply() and define() are serialized by a lock. Lookups and queries are
        lock-free and see either the state before or after any given apply().
    """

    def __init__(
        self, done_keywords: Iterable[str] = ("DONE",), links: LinkSyntax | None = None
    ):
        self._done_keywords = tuple(done_keywords)
        self.links = links or LinkSyntax()
        self._state = _IndexState()
        self._criteria: dict[str, Predicate] = {}
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        """Incremented on every apply() that changed the index."""
        return self._state.generation

    def __len__(self) -> int:
        return len(self._state.by_id)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._state.by_id

    def apply(self, delta: DocumentDelta) -> set[str]:
        """Replace or drop one document's entries atomically.

        Returns the other documents holding links that were dangling before
        this delta and now resolve to one of its nodes.

        Raises:
            DuplicateIdentifier: If the new tree uses an identifier owned by
                another document, or the same identifier twice. The index is
                left untouched.
        """
        nodes = (
            []
            if delta.is_removal
            else snapshot_tree(delta.path, delta.tree, self._done_keywords, self.links)
        )

        with self._lock:
            state = self._state
            old_ids = state.by_path.get(delta.path, ())
            old_nodes = [state.by_id[i] for i in old_ids]

            _check_identifiers(state, delta.path, nodes)

            unchanged = tuple(old_nodes) == tuple(nodes)
            if unchanged and (delta.path in state.by_path) != delta.is_removal:
                return set()

            by_id = dict(state.by_id)
            for node_id in old_ids:
                del by_id[node_id]
            by_id.update((node.id, node) for node in nodes)

            by_path = dict(state.by_path)
            if delta.is_removal:
                by_path.pop(delta.path, None)
            else:
                by_path[delta.path] = tuple(node.id for node in nodes)

            old = set(old_ids)
            named = {}
            for name, members in state.named.items():
                predicate = self._criteria[name]
                named[name] = (members - old) | {n.id for n in nodes if predicate(n)}

            backlinks = _relink(state.backlinks, old_nodes, nodes)
            resolved = set()
            for node in nodes:
                if node.id not in state.by_id:
                    resolved.update(by_id[s].path for s in backlinks.get(node.id, ()))
            resolved.discard(delta.path)

            self._state = _IndexState(
                by_id=by_id,
                by_path=by_path,
                named=named,
                backlinks=backlinks,
                generation=state.generation + 1,
            )

        logger.debug(
            "Index %s %s (%d nodes)",
            "dropped" if delta.is_removal else "updated",
            delta.path,
            len(nodes),
        )
        return resolved

    def check(self, delta: DocumentDelta) -> None:
        """Raise DuplicateIdentifier if apply(delta) would be rejected, without applying it."""
        if not delta.is_removal:
            nodes = snapshot_tree(delta.path, delta.tree, self._done_keywords)
            _check_identifiers(self._state, delta.path, nodes)

    def lookup_by_id(self, node_id: str) -> Node | None:
        return self._state.by_id.get(node_id)

    def lookup_by_path(self, path: str) -> list[Node]:
        """Return a document's nodes in document order (empty if unknown)."""
        state = self._state
        return [state.by_id[node_id] for node_id in state.by_path.get(path, ())]

    def owner_of(self, node_id: str) -> str | None:
        node = self._state.by_id.get(node_id)
        return node.path if node is not None else None

    def paths(self) -> list[str]:
        return sorted(self._state.by_path)

    def query(self, predicate: Predicate) -> NodeQuery:
        return NodeQuery(self, predicate)

    def define(self, name: str, predicate: Predicate) -> None:
        """Register a named subset that is kept materialised on every apply()."""
        with self._lock:
            state = self._state
            self._criteria[name] = predicate
            named = dict(state.named)
            named[name] = frozenset(n.id for n in state.by_id.values() if predicate(n))
            self._state = _IndexState(
                by_id=state.by_id,
                by_path=state.by_path,
                named=named,
                backlinks=state.backlinks,
                generation=state.generation,
            )

    def members(self, name: str) -> list[Node]:
        """Return the nodes of a named subset, ordered by path and position."""
        state = self._state
        if name not in state.named:
            raise KeyError(f"No index named '{name}'")
        nodes = [state.by_id[node_id] for node_id in state.named[name]]
        return sorted(nodes, key=lambda n: (n.path, n.position))

    def names(self) -> list[str]:
        return sorted(self._state.named)

    # Links

    def _descendants(self, state: _IndexState, node: Node) -> Iterator[Node]:
        for child_id in node.children:
            child = state.by_id[child_id]
            yield child
            yield from self._descendants(state, child)

    def _split(
        self, own: list[tuple[Node, str]], below: list[tuple[Node, str]]
    ) -> tuple[list[Connection], list[Connection]]:
        # A node reached from both the node and its descendants is reported on the node
        own_ids = {other.id for other, _ in own}
        own += [pair for pair in below if pair[0].id in own_ids]
        return _fold(own), _fold(pair for pair in below if pair[0].id not in own_ids)

    def connections(
        self, node_id: str, include_children: bool = False
    ) -> tuple[list[Connection], list[Connection]]:
        """Return (own, descendants') resolved links from a node to other nodes.

        Dangling links are left out; see broken_links(). The second list is
        empty unless ``include_children`` is set.
        """
        state = self._state
        node = state.by_id.get(node_id)
        if node is None:
            return [], []

        def outgoing(source: Node) -> list[tuple[Node, str]]:
            return [
                (state.by_id[link.target], link.type)
                for link in source.links
                if link.target in state.by_id
            ]

        below = []
        if include_children:
            for child in self._descendants(state, node):
                below.extend(outgoing(child))
        return self._split(outgoing(node), below)

    def backlinks(
        self, node_id: str, include_children: bool = False
    ) -> tuple[list[Connection], list[Connection]]:
        """Return (own, descendants') links from other nodes pointing at a node."""
        state = self._state
        node = state.by_id.get(node_id)
        if node is None:
            return [], []

        def incoming(target_id: str) -> list[tuple[Node, str]]:
            pairs = []
            for source_id in state.backlinks.get(target_id, ()):
                source = state.by_id[source_id]
                pairs.extend(
                    (source, link.type) for link in source.links if link.target == target_id
                )
            return pairs

        below = []
        if include_children:
            for child in self._descendants(state, node):
                below.extend(incoming(child.id))
        return self._split(incoming(node_id), below)

    def broken_links(self, path: str | None = None) -> list[tuple[Node, Link]]:
        """Return (node, link) pairs whose target is not in the index, in document order."""
        state = self._state
        paths = [path] if path is not None else sorted(state.by_path)
        broken = []
        for doc_path in paths:
            for node_id in state.by_path.get(doc_path, ()):
                node = state.by_id[node_id]
                broken.extend(
                    (node, link) for link in node.links if link.target not in state.by_id
                )
        return broken

    def link_title(self, node_id: str) -> str | None:
        """Return the title other documents should show for a node, links flattened."""
        node = self._state.by_id.get(node_id)
        if node is None:
            return None
        fmt = format_for_path(node.path) or "org"
        return self.links.plain(node.title, fmt)


def where(
    state: str | None = None,
    tag: str | None = None,
    text: str | None = None,
    path: str | None = None,
) -> Predicate:
    """Build a predicate from simple filters; all given filters must match.

    ``state`` accepts a keyword (``TODO``) or the groups ``open`` and ``done``.
    ``path`` accepts an exact path or a glob.
    """
    needle = text.lower() if text else None

    def predicate(node: Node) -> bool:
        if state is not None:
            wanted = state.lower()
            if wanted == "open":
                if node.state is None or node.done:
                    return False
            elif wanted == "done":
                if not node.done:
                    return False
            elif node.state != state.upper():
                return False
        if tag is not None and tag not in node.all_tags:
            return False
        if needle is not None:
            if needle not in node.title.lower() and needle not in node.body.lower():
                return False
        if path is not None and node.path != path and not fnmatch.fnmatch(node.path, path):
            return False
        return True

    return predicate
