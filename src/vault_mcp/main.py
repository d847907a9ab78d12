"""Main entry point for vaultmcp MCP server."""

import argparse
import asyncio
import logging
import sys

from fastmcp import FastMCP

from vault_mcp.auth import get_auth_provider
from vault_mcp.config import Config, get_config, set_read_only_override
from vault_mcp.engine import SnapshotCache, VaultEngine
from vault_mcp.logging_setup import setup_logging
from vault_mcp.sync import SyncManager
from vault_mcp.tools import register_tools
from vault_mcp.tools_write import register_tools_write

logger = logging.getLogger(__name__)


def create_server(config: Config, engine: VaultEngine) -> FastMCP:
    """Create and configure the MCP server around a vault engine.

    Args:
        config: Configuration instance with all settings.
        engine: Engine answering the tools. Starting it is the caller's job.
    """
    auth_provider = get_auth_provider(config)

    mcp = FastMCP(
        name="vaultMCP",
        instructions=(
            "vaultMCP gives access to a vault of org-mode and markdown outlines. "
            "Every heading is a node with a stable ID. Use search_nodes to find "
            "nodes by state, tag or text, get_node to read one, and the write tools "
            "to change them; changes are saved to the files immediately."
        ),
        auth=auth_provider,
    )

    logger.info("Registering read tools...")
    register_tools(mcp, engine)

    if config.read_only:
        logger.info("Read-only mode, write tools will reject every call")
    logger.info("Registering write tools...")
    register_tools_write(mcp, config, engine)

    logger.info("Server configured successfully")
    return mcp


async def serve(config: Config) -> None:
    """Run the engine and the SSE server on one event loop until cancelled."""
    engine = VaultEngine(config)
    await engine.start()

    sync_mgr: SyncManager | None = None
    if config.rescan_interval > 0:
        sync_mgr = SyncManager(engine, config.rescan_interval)
        sync_mgr.start()

    try:
        mcp = create_server(config, engine)
        logger.info("Starting MCP server on port %s...", config.vault_port)
        await mcp.run_async(transport="sse", host="0.0.0.0", port=config.vault_port)
    finally:
        if sync_mgr is not None:
            await sync_mgr.stop()
        await engine.stop()


def main() -> None:
    """Main function - starts the MCP server."""
    parser = argparse.ArgumentParser(description="vaultMCP - MCP server for outline vaults")
    parser.add_argument(
        "--read-only",
        action="store_true",
        help="Run in read-only mode (disable write tools)",
    )
    parser.add_argument(
        "--rebuild-cache",
        action="store_true",
        help="Discard the snapshot cache and re-ingest every document on startup",
    )
    args = parser.parse_args()

    # CLI flag overrides env var
    set_read_only_override(True if args.read_only else None)
    try:
        config = get_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    # Configure logging here to avoid side effects on import
    setup_logging(config)

    logger.info("=" * 50)
    logger.info("vaultMCP starting...")
    logger.info("  VAULT_ROOT:  %s", config.vault_root)
    logger.info("  VAULT_PORT:  %s", config.vault_port)
    logger.info("  VAULT_CACHE: %s", config.vault_cache)
    logger.info("  KEYWORDS:    %s", " ".join(config.action_keywords))
    logger.info("  AUTH:        %s", "enabled" if config.auth_token else "disabled")
    logger.info("  READ_ONLY:   %s", config.read_only)
    logger.info(
        "  RESCAN:      %s",
        f"every {config.rescan_interval}s" if config.rescan_interval else "disabled",
    )
    logger.info("=" * 50)

    if args.rebuild_cache:
        logger.info("Cache rebuild requested, removing %s", config.vault_cache)
        SnapshotCache(config.vault_cache).clear()

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        sys.exit(0)
    except Exception:
        logger.exception("Server error")
        sys.exit(1)


if __name__ == "__main__":
    main()
