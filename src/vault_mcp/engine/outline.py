"""Outline parser and serializer for org and markdown documents.

Both formats share one tree shape. A heading line carries an optional action
keyword, a title and trailing ``:tag:`` groups. It may be followed by a
planning line (``SCHEDULED: <...> DEADLINE: <...>``) and a property drawer::

    * TODO Buy milk :errand:
    SCHEDULED: <2024-05-01 Wed>
    :PROPERTIES:
    :ID: 0b6f0c52-...
    :END:
    Free-form body text.

Markdown uses ``#`` markers instead of ``*``. Text before the first heading is
the preamble; document title and tags come from ``#+title:``/``#+filetags:``
in org files and from YAML frontmatter in markdown files.

Parsing preserves preamble and body text verbatim, so for any tree produced by
``parse_outline``, ``parse_outline(render_outline(tree))`` is equal to it.
"""

import re
from collections.abc import Iterable
from pathlib import PurePosixPath

import yaml

from vault_mcp.engine.models import OutlineNode, OutlineTree
from vault_mcp.errors import ParseFailure

FORMATS = {".org": "org", ".md": "markdown", ".markdown": "markdown"}

DEFAULT_KEYWORDS = ("TODO", "DONE", "CANCELLED")

_MARKERS = {"org": "*", "markdown": "#"}
_HEADING_RES = {
    "org": re.compile(r"^(\*+)[ \t]+(.*?)\s*$"),
    "markdown": re.compile(r"^(#+)[ \t]+(.*?)\s*$"),
}
_TAGS_RE = re.compile(r"(?:^|[ \t]+)(:(?:[\w@#%.-]+:)+)$")
_PLANNING_RE = re.compile(r"^[ \t]*(?:(?:SCHEDULED|DEADLINE):[ \t]*<[^>\n]*>[ \t]*)+$")
_PLANNING_ITEM_RE = re.compile(r"(SCHEDULED|DEADLINE):[ \t]*<([^>\n]*)>")
_PROPERTY_RE = re.compile(r"^:([^:\s]+):(?:[ \t]+(.*?))?[ \t]*$")
_FENCE_RE = re.compile(r"^[ \t]*(```|~~~)")
_ORG_KEYWORD_RE = re.compile(r"^#\+(\w+):[ \t]*(.*?)[ \t]*$", re.IGNORECASE | re.MULTILINE)


def format_for_path(path: str) -> str | None:
    """Return the outline format for a file path, or None if it is not tracked."""
    return FORMATS.get(PurePosixPath(path).suffix.lower())


def decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseFailure(f"file is not valid UTF-8 ({e.reason} at byte {e.start})") from e


def is_fence_line(line: str) -> bool:
    return _FENCE_RE.match(line) is not None


def _split_lines(text: str) -> list[str]:
    """Split text into lines keeping their terminators (only on \\n)."""
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _split_tags(value: str) -> list[str]:
    return [tag for tag in re.split(r"[:\s,]+", value) if tag]


def _parse_heading(text: str, keywords: Iterable[str]) -> tuple[str | None, str, list[str]]:
    tags: list[str] = []
    match = _TAGS_RE.search(text)
    if match:
        tags = _split_tags(match.group(1))
        text = text[: match.start()]

    keyword = None
    first, _, rest = text.partition(" ")
    if first in keywords:
        keyword = first
        text = rest
    return keyword, text.strip(), tags


def _markdown_frontmatter_end(lines: list[str]) -> int:
    """Return the index of the first line after the frontmatter block (0 if none)."""
    if not lines or lines[0].rstrip("\r\n") != "---":
        return 0
    for i in range(1, len(lines)):
        if lines[i].rstrip("\r\n") in ("---", "..."):
            return i + 1
    # No closing fence: not frontmatter
    return 0


def _markdown_attributes(lines: list[str], end: int) -> tuple[str | None, list[str]]:
    if end == 0:
        return None, []
    try:
        data = yaml.safe_load("".join(lines[1 : end - 1]))
    except yaml.YAMLError as e:
        raise ParseFailure(f"invalid YAML frontmatter: {e}", line=1) from e

    if data is None:
        return None, []
    if not isinstance(data, dict):
        raise ParseFailure("frontmatter must be a mapping", line=1)

    title = data.get("title")
    raw_tags = data.get("tags") or []
    if isinstance(raw_tags, str):
        tags = _split_tags(raw_tags)
    elif isinstance(raw_tags, list):
        tags = [str(tag) for tag in raw_tags]
    else:
        raise ParseFailure("frontmatter tags must be a list or a string", line=1)
    return (str(title) if title is not None else None), tags


def _org_attributes(preamble: str) -> tuple[str | None, list[str]]:
    title = None
    tags: list[str] = []
    for match in _ORG_KEYWORD_RE.finditer(preamble):
        key = match.group(1).lower()
        if key == "title":
            title = match.group(2)
        elif key == "filetags":
            tags.extend(_split_tags(match.group(2)))
    return title, tags


def _read_node_header(lines: list[str], i: int, node: OutlineNode) -> int:
    """Consume the planning line and property drawer under a heading."""
    if i < len(lines) and _PLANNING_RE.match(lines[i].rstrip("\r\n")):
        for kind, value in _PLANNING_ITEM_RE.findall(lines[i]):
            if kind == "SCHEDULED":
                node.scheduled = value
            else:
                node.deadline = value
        i += 1

    if i < len(lines) and lines[i].strip().upper() == ":PROPERTIES:":
        drawer_line = i + 1
        i += 1
        while True:
            if i >= len(lines):
                raise ParseFailure("unterminated property drawer", line=drawer_line)
            stripped = lines[i].strip()
            if stripped.upper() == ":END:":
                return i + 1
            match = _PROPERTY_RE.match(stripped)
            if match is None:
                raise ParseFailure(f"malformed property line {stripped!r}", line=i + 1)
            node.properties[match.group(1)] = match.group(2) or ""
            i += 1
    return i


def _check_tags(tree: OutlineTree, allowed_tags: Iterable[str]) -> None:
    allowed = set(allowed_tags)
    if not allowed:
        return
    for tag in tree.tags:
        if tag not in allowed:
            raise ParseFailure(f"document tag '{tag}' is not in the allowed tag list")
    for node, _ in tree.walk():
        for tag in node.tags:
            if tag not in allowed:
                raise ParseFailure(
                    f"tag '{tag}' on heading '{node.title}' is not in the allowed tag list"
                )


def parse_outline(
    text: str,
    fmt: str,
    action_keywords: Iterable[str] = DEFAULT_KEYWORDS,
    allowed_tags: Iterable[str] = (),
) -> OutlineTree:
    """Parse document text into an OutlineTree.

    Raises:
        ParseFailure: If the frontmatter, a property drawer or a tag is invalid.
    """
    if fmt not in _HEADING_RES:
        raise ValueError(f"Unknown outline format: {fmt}")

    keywords = frozenset(action_keywords)
    heading_re = _HEADING_RES[fmt]
    lines = _split_lines(text)
    tree = OutlineTree(format=fmt)

    start = _markdown_frontmatter_end(lines) if fmt == "markdown" else 0
    preamble_lines = lines[:start]
    collected = preamble_lines
    current: OutlineNode | None = None
    stack: list[OutlineNode] = []
    in_fence = False

    i = start
    while i < len(lines):
        stripped = lines[i].rstrip("\r\n")
        if fmt == "markdown" and _FENCE_RE.match(stripped):
            in_fence = not in_fence
        match = None if in_fence else heading_re.match(stripped)
        if match is None:
            collected.append(lines[i])
            i += 1
            continue

        if current is not None:
            current.body = "".join(collected)
        keyword, title, tags = _parse_heading(match.group(2), keywords)
        node = OutlineNode(level=len(match.group(1)), title=title, keyword=keyword, tags=tags)
        i = _read_node_header(lines, i + 1, node)

        # Skipped depths nest under the nearest shallower heading
        while stack and stack[-1].level >= node.level:
            stack.pop()
        tree.siblings_of(stack[-1] if stack else None).append(node)
        stack.append(node)
        current = node
        collected = []

    if current is not None:
        current.body = "".join(collected)
    tree.preamble = "".join(preamble_lines)

    if fmt == "markdown":
        tree.title, tree.tags = _markdown_attributes(lines, start)
    else:
        tree.title, tree.tags = _org_attributes(tree.preamble)

    _check_tags(tree, allowed_tags)
    return tree


def _ensure_newline(out: list[str]) -> None:
    for chunk in reversed(out):
        if chunk:
            if not chunk.endswith("\n"):
                out.append("\n")
            return


def render_node_header(node: OutlineNode, fmt: str) -> str:
    """Render a heading line plus its planning line and property drawer."""
    parts = []
    if node.keyword:
        parts.append(node.keyword)
    if node.title:
        parts.append(node.title)
    if node.tags:
        parts.append(":" + ":".join(node.tags) + ":")
    out = [_MARKERS[fmt] * node.level + " " + " ".join(parts) + "\n"]

    planning = []
    if node.scheduled:
        planning.append(f"SCHEDULED: <{node.scheduled}>")
    if node.deadline:
        planning.append(f"DEADLINE: <{node.deadline}>")
    if planning:
        out.append(" ".join(planning) + "\n")

    if node.properties:
        out.append(":PROPERTIES:\n")
        for key, value in node.properties.items():
            out.append(f":{key}: {value}".rstrip() + "\n")
        out.append(":END:\n")
    return "".join(out)


def render_outline(tree: OutlineTree) -> str:
    """Serialize an OutlineTree back to document text."""
    out = [tree.preamble]
    for node, _ in tree.walk():
        _ensure_newline(out)
        out.append(render_node_header(node, tree.format))
        out.append(node.body)
    return "".join(out)
