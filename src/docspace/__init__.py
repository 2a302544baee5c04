"""
Docspace - workspace metadata and search-index core for a git-backed
document workspace, exposed as an MCP server.

Keeps three views of "which documents exist" consistent: the files under
``documents/``, the JSON metadata sidecar, and the SQLite full-text index.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("docspace-mcp")
except PackageNotFoundError:
    __version__ = "0.3.0"
