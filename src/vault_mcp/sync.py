"""Periodic full rescan of the vault.

The watcher covers changes as they happen; this task is the safety net for
events the OS never delivered (network filesystems, sleep/resume, overflow on
platforms that do not report it).
"""

import asyncio
import logging

from vault_mcp.engine import VaultEngine

logger = logging.getLogger(__name__)


class SyncManager:
    """Runs engine.rescan() every ``interval`` seconds on the event loop."""

    def __init__(self, engine: VaultEngine, interval: int):
        """Initialize the sync manager.

        Args:
            engine: The engine to rescan.
            interval: Rescan interval in seconds. Must be > 0.
        """
        if interval <= 0:
            raise ValueError(f"Sync interval must be positive, got {interval}")

        self._engine = engine
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background rescan task. Must be called from the event loop."""
        if self.running:
            logger.warning("Sync task already running")
            return

        self._task = asyncio.get_running_loop().create_task(self._sync_loop(), name="vault-sync")
        logger.info("Sync manager started (interval: %ds)", self._interval)

    async def stop(self) -> None:
        """Cancel the rescan task and wait for it to finish."""
        if not self.running:
            self._task = None
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Sync manager stopped")

    async def _sync_loop(self) -> None:
        logger.debug("Sync loop started")

        while True:
            # Sleep first, then sync
            await asyncio.sleep(self._interval)

            try:
                added, updated, removed = await self._engine.rescan()
                if added or updated or removed:
                    logger.info(
                        "Auto-sync: %d added, %d updated, %d removed",
                        added,
                        updated,
                        removed,
                    )
                else:
                    logger.debug("Auto-sync: no changes detected")
            except Exception:
                logger.exception("Error during auto-sync")
