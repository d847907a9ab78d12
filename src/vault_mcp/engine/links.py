"""Typed links between nodes.

A link names the identifier of another node, a link type and a title:

    org:       [[type:id][Title]]
    markdown:  [Title](type:id)

Only configured types make a link. Without a type prefix the target must be a
UUID and the default type applies. URLs, file links and anything else that
merely looks like a link stay ordinary text. Links inside markdown code fences
are ignored.
"""

import re
import uuid
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass

from vault_mcp.engine.models import Link, OutlineTree
from vault_mcp.engine.outline import is_fence_line

DEFAULT_LINK_TYPE = "link"

_LINK_RES = {
    "org": re.compile(r"\[\[([^\[\]\s]+)\]\[([^\[\]\n]*)\]\]"),
    "markdown": re.compile(r"\[([^\[\]\n]*)\]\(([^()\s]+)\)"),
}


def _linkable_spans(text: str, fmt: str) -> Iterator[tuple[int, int]]:
    """Yield (start, end) offsets of the text outside markdown code fences."""
    if fmt != "markdown":
        yield 0, len(text)
        return
    start = offset = 0
    in_fence = False
    for line in text.split("\n"):
        end = offset + len(line) + 1
        if is_fence_line(line):
            if not in_fence:
                yield start, offset
            in_fence = not in_fence
            start = end
        offset = end
    if not in_fence:
        yield start, len(text)


def _fits_link(title: str) -> bool:
    return not any(c in title for c in "[]\n")


@dataclass(frozen=True)
class LinkSyntax:
    """Recognises, renders and re-titles links for a set of link types."""

    types: tuple[str, ...] = (DEFAULT_LINK_TYPE,)
    default_type: str = DEFAULT_LINK_TYPE

    @classmethod
    def from_config(cls, link_types: Sequence[str], default_type: str) -> "LinkSyntax":
        return cls(types=tuple(link_types), default_type=default_type)

    def _resolve(self, target: str) -> tuple[str, str] | None:
        prefix, sep, key = target.partition(":")
        if sep:
            if prefix in self.types and key:
                return key, prefix
            return None
        try:
            uuid.UUID(target)
        except ValueError:
            return None
        return target, self.default_type

    def _matches(self, text: str, fmt: str) -> Iterator[tuple[re.Match, Link]]:
        pattern = _LINK_RES[fmt]
        for start, end in _linkable_spans(text, fmt):
            for match in pattern.finditer(text, start, end):
                if fmt == "org":
                    target, title = match.group(1), match.group(2)
                else:
                    title, target = match.group(1), match.group(2)
                resolved = self._resolve(target)
                if resolved is not None:
                    yield match, Link(target=resolved[0], type=resolved[1], title=title)

    def parse(self, text: str, fmt: str) -> list[Link]:
        return [link for _, link in self._matches(text, fmt)]

    def render(self, link: Link, fmt: str) -> str:
        """Render a link with its type spelled out, default type included."""
        if fmt == "org":
            return f"[[{link.type}:{link.target}][{link.title}]]"
        return f"[{link.title}]({link.type}:{link.target})"

    def retitle(self, text: str, fmt: str, title_of: Callable[[str], str | None]) -> str:
        """Rewrite each link's title to the current title of its target.

        Links to unknown targets, and targets whose title cannot be written
        inside a link, are left as they are.
        """
        out = []
        last = 0
        for match, link in self._matches(text, fmt):
            title = title_of(link.target)
            if title is None or not _fits_link(title):
                continue
            out.append(text[last : match.start()])
            out.append(self.render(Link(link.target, link.type, title), fmt))
            last = match.end()
        out.append(text[last:])
        return "".join(out)

    def plain(self, text: str, fmt: str) -> str:
        """Replace every link-shaped span by its title."""
        group = 2 if fmt == "org" else 1
        return _LINK_RES[fmt].sub(lambda m: m.group(group), text)

    def retitle_tree(self, tree: OutlineTree, title_of: Callable[[str], str | None]) -> bool:
        """Re-title links in every heading and body of a tree; return True if any changed.

        Targets inside the tree itself resolve to their titles as they were
        before this pass; everything else goes through ``title_of``.
        """
        fmt = tree.format
        local = {node.id: self.plain(node.title, fmt) for node, _ in tree.walk() if node.id}

        def lookup(node_id: str) -> str | None:
            if node_id in local:
                return local[node_id]
            return title_of(node_id)

        changed = False
        for node, _ in tree.walk():
            title = self.retitle(node.title, fmt, lookup)
            body = self.retitle(node.body, fmt, lookup)
            if title != node.title or body != node.body:
                node.title, node.body = title, body
                changed = True
        return changed
