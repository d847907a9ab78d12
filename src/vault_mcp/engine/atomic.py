"""Crash-consistent file replacement: temp file, fsync, rename."""

import logging
import os
import tempfile
from pathlib import Path

from vault_mcp.engine.models import Fingerprint
from vault_mcp.engine.walker import compute_hash

logger = logging.getLogger(__name__)


def write_temp(target: Path, data: bytes) -> tuple[Path, Fingerprint]:
    """Write data to a fsynced temp file beside target; return it with its fingerprint.

    The temp name starts with a dot, so the watcher and walker ignore it.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="wb",
        delete=False,
        dir=str(target.parent),
        prefix=f".{target.name}.tmp.",
    ) as f:
        tmp_path = Path(f.name)
        try:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
            stat = os.fstat(f.fileno())
        except BaseException:
            f.close()
            tmp_path.unlink(missing_ok=True)
            raise

    try:
        os.chmod(tmp_path, target.stat().st_mode & 0o7777)
    except FileNotFoundError:
        pass  # New file, keep the default mode
    return tmp_path, Fingerprint(compute_hash(data), stat.st_mtime_ns, stat.st_size)


def replace(tmp_path: Path, target: Path) -> None:
    """Atomically move a temp file over target, removing the temp file on failure."""
    try:
        os.replace(tmp_path, target)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    _fsync_directory(target.parent)


def atomic_write(target: Path, data: bytes) -> Fingerprint:
    tmp_path, fingerprint = write_temp(target, data)
    replace(tmp_path, target)
    return fingerprint


def _fsync_directory(directory: Path) -> None:
    if not hasattr(os, "O_DIRECTORY"):
        return
    try:
        fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError as e:
        # The rename itself already happened
        logger.debug("Could not fsync directory %s: %s", directory, e)
