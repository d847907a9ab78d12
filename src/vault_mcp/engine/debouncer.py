"""Change debouncer: raw filesystem notifications in, settled per-path intents out.

Each path owns at most one pending settle timer. A new event for the path
cancels and replaces it, so only the state observed after the quiet window is
forwarded. Before forwarding a change, the debouncer checks the PendingWrite
registry and drops changes that are echoes of the engine's own writes.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from vault_mcp.engine.models import CHANGED, REMOVED, ChangeIntent, Fingerprint, PendingWrite
from vault_mcp.engine.walker import read_fingerprint

logger = logging.getLogger(__name__)


class PendingWrites:
    """Registry of writes the engine expects the watcher to report back.

    Only touched from the event loop thread.
    """

    def __init__(self, timeout: float, clock: Callable[[], float] = time.monotonic):
        if timeout <= 0:
            raise ValueError(f"Pending write timeout must be positive, got {timeout}")
        self.timeout = timeout
        self._clock = clock
        self._records: dict[str, list[PendingWrite]] = {}

    def __len__(self) -> int:
        return sum(len(records) for records in self._records.values())

    def register(self, path: str, fingerprint: Fingerprint) -> PendingWrite:
        record = PendingWrite(path=path, fingerprint=fingerprint, issued_at=self._clock())
        self._records.setdefault(path, []).append(record)
        return record

    def discard(self, record: PendingWrite) -> None:
        """Withdraw a record whose write never reached the file."""
        records = self._records.get(record.path, [])
        if record in records:
            records.remove(record)
        if not records:
            self._records.pop(record.path, None)

    def has(self, path: str) -> bool:
        return bool(self._records.get(path))

    def consume(self, path: str, fingerprint: Fingerprint) -> bool:
        """Consume the record matching an observed fingerprint.

        Returns True if the observation is the engine's own write. Records for
        the same path issued before the matched one are dropped too, since a
        later write has superseded them. Non-matching records stay until they
        expire.
        """
        self.expire()
        records = self._records.get(path, [])
        for i, record in enumerate(records):
            if record.fingerprint == fingerprint:
                del records[: i + 1]
                if not records:
                    self._records.pop(path, None)
                return True
        return False

    def expire(self) -> list[PendingWrite]:
        """Drop records older than the timeout, warning about each."""
        cutoff = self._clock() - self.timeout
        expired = []
        for path in list(self._records):
            records = self._records[path]
            keep = [r for r in records if r.issued_at > cutoff]
            expired.extend(r for r in records if r.issued_at <= cutoff)
            if keep:
                self._records[path] = keep
            else:
                del self._records[path]
        for record in expired:
            logger.warning(
                "Pending write for %s expired without a matching filesystem event",
                record.path,
            )
        return expired


class ChangeDebouncer:
    """Coalesces raw (path, kind) events into settled ChangeIntents."""

    def __init__(
        self,
        root: Path,
        window: float,
        pending: PendingWrites,
        emit: Callable[[ChangeIntent], Awaitable[None]],
    ):
        """
        Args:
            root: Vault root that relative paths resolve against.
            window: Quiet window in seconds.
            pending: Registry consulted for self-write suppression.
            emit: Coroutine receiving each settled intent.
        """
        if window <= 0:
            raise ValueError(f"Debounce window must be positive, got {window}")
        self._root = root
        self._window = window
        self._pending = pending
        self._emit = emit
        self._timers: dict[str, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()
        self.suppressed = 0

    @property
    def pending_paths(self) -> list[str]:
        """Paths with a settle timer still running."""
        return sorted(self._timers)

    @property
    def idle(self) -> bool:
        return not self._timers and not self._inflight

    def notify(self, path: str, kind: str) -> None:
        """Record a raw event, restarting the path's settle timer. Loop thread only."""
        previous = self._timers.pop(path, None)
        if previous is not None:
            previous.cancel()
        self._timers[path] = asyncio.get_running_loop().create_task(
            self._settle(path, kind), name=f"settle:{path}"
        )

    async def run(self, queue: asyncio.Queue) -> None:
        """Consume raw events from the watcher queue until cancelled."""
        while True:
            try:
                path, kind = await asyncio.wait_for(queue.get(), timeout=self._pending.timeout)
            except asyncio.TimeoutError:
                pass
            else:
                self.notify(path, kind)
            # Busy vaults never hit the timeout, so expire on every pass
            self._pending.expire()

    async def wait_idle(self, poll: float = 0.01) -> None:
        """Wait until no timer is pending and no intent is being processed."""
        while not self.idle:
            await asyncio.sleep(poll)

    async def close(self) -> None:
        """Cancel pending timers and wait for intents already being processed."""
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _settle(self, path: str, kind: str) -> None:
        await asyncio.sleep(self._window)

        # Past this point a newer event no longer cancels us
        task = asyncio.current_task()
        if self._timers.get(path) is task:
            del self._timers[path]
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

        try:
            intent = await self._resolve(path)
            if intent is None:
                return
            logger.debug("Settled %s (%s, last raw event %s)", path, intent.kind, kind)
            await self._emit(intent)
        except Exception:
            logger.exception("Error processing settled change for %s", path)

    async def _resolve(self, path: str) -> ChangeIntent | None:
        full_path = self._root / path
        if not await asyncio.to_thread(full_path.is_file):
            return ChangeIntent(path, REMOVED)

        if self._pending.has(path):
            try:
                fingerprint = await asyncio.to_thread(read_fingerprint, full_path)
            except FileNotFoundError:
                return ChangeIntent(path, REMOVED)
            except OSError:
                # Let ingestion surface the read error
                return ChangeIntent(path, CHANGED)
            if self._pending.consume(path, fingerprint):
                self.suppressed += 1
                logger.debug("Suppressed echo of own write to %s", path)
                return None

        return ChangeIntent(path, CHANGED)
