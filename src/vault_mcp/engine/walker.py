"""File walker for discovering tracked documents under the vault root."""

import fnmatch
import hashlib
import os
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from vault_mcp.engine.models import Fingerprint
from vault_mcp.engine.outline import format_for_path


@dataclass
class FileInfo:
    """Information about a discovered file."""

    path: Path  # Absolute path
    relative_path: str  # Relative to the vault root, POSIX separators
    mtime_ns: int
    size: int


def compute_hash(content: bytes) -> str:
    """Compute SHA-256 hash of content."""
    return hashlib.sha256(content).hexdigest()


def read_with_fingerprint(path: Path) -> tuple[bytes, Fingerprint]:
    """Read a file's bytes and fingerprint them with the stat taken from the same handle."""
    with open(path, "rb") as f:
        content = f.read()
        stat = os.fstat(f.fileno())
    return content, Fingerprint(compute_hash(content), stat.st_mtime_ns, stat.st_size)


def read_fingerprint(path: Path) -> Fingerprint:
    return read_with_fingerprint(path)[1]


def is_included(relative_path: str, exclude: Sequence[str] = ()) -> bool:
    """Whether a vault-relative path is a tracked document.

    Hidden files and directories are ignored, as are files with an untracked
    extension and paths matching one of the exclude globs.
    """
    parts = PurePosixPath(relative_path).parts
    if not parts or any(part.startswith(".") for part in parts):
        return False
    if format_for_path(relative_path) is None:
        return False
    return not any(fnmatch.fnmatch(relative_path, pattern) for pattern in exclude)


def relative_to_root(root: Path, path: str | Path) -> str | None:
    """Return the POSIX path of ``path`` relative to ``root``, or None if outside it."""
    try:
        return Path(path).relative_to(root).as_posix()
    except ValueError:
        return None


def walk_vault(vault_root: Path, exclude: Sequence[str] = ()) -> Iterator[FileInfo]:
    """
    Walk the vault root and yield FileInfo for each tracked document, in path order.

    Directories starting with a dot (including the engine's own ``.vault``
    cache directory) are not descended into.
    """
    if not vault_root.exists():
        return

    yield from sorted(_walk(vault_root, exclude), key=lambda info: info.relative_path)


def _walk(vault_root: Path, exclude: Sequence[str]) -> Iterator[FileInfo]:
    for dirpath, dirnames, filenames in os.walk(vault_root):
        dirnames[:] = [d for d in dirnames if not d.startswith(".")]
        for filename in filenames:
            file_path = Path(dirpath) / filename
            relative_path = relative_to_root(vault_root, file_path)
            if relative_path is None or not is_included(relative_path, exclude):
                continue
            try:
                stat = file_path.stat()
            except FileNotFoundError:
                continue  # Removed while walking
            if not file_path.is_file():
                continue
            yield FileInfo(
                path=file_path,
                relative_path=relative_path,
                mtime_ns=stat.st_mtime_ns,
                size=stat.st_size,
            )


def vault_fingerprint(files: Iterable[FileInfo]) -> str:
    """Hash the (path, mtime, size) triples of every tracked file."""
    digest = hashlib.sha256()
    for info in sorted(files, key=lambda f: f.relative_path):
        digest.update(f"{info.relative_path}\0{info.mtime_ns}\0{info.size}\n".encode())
    return digest.hexdigest()
