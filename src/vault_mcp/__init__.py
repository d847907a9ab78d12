"""
vaultmcp - MCP server for an outline vault.

Keeps a directory of org and markdown outline files synchronized, in both
directions, with an in-memory node index that MCP clients can query and edit.

Stack:
- Python + FastMCP
- watchdog (filesystem events)
- msgpack (startup snapshot cache)
- Org / Markdown (source of truth)
"""

__version__ = "0.1.0"
__author__ = "macward"
