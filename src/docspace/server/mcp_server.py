"""MCP server exposing a Docspace workspace to editors and agents."""

import atexit
import json
import logging
import uuid
from typing import Optional

from mcp.server.fastmcp import FastMCP

from docspace.config import config
from docspace.exceptions import DocspaceError
from docspace.observability import metrics, timed_operation
from docspace.services.workspace_service import WorkspaceService
from docspace.storage.git_wrapper import GitError

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_CONTENT_LENGTH = 1_000_000  # 1 MB


def _validate_input_lengths(
    title: Optional[str] = None, content: Optional[str] = None
) -> None:
    """Validate input string lengths at the MCP boundary."""
    if title and len(title) > MAX_TITLE_LENGTH:
        raise ValueError(
            f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters"
        )
    if content and len(content) > MAX_CONTENT_LENGTH:
        raise ValueError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters"
        )


def _split_tags(tags: Optional[str]) -> list:
    if not tags:
        return []
    return [t.strip() for t in tags.split(",") if t.strip()]


class DocspaceMcpServer:
    """MCP server for one Docspace workspace."""

    def __init__(self, workspace: Optional[WorkspaceService] = None):
        """Initialize the MCP server.

        Args:
            workspace: An unopened or open workspace handle. Defaults to the
                configured workspace path.
        """
        self.mcp = FastMCP(config.server_name)
        self.workspace = workspace or WorkspaceService(config.workspace_path)
        self.workspace.open()
        atexit.register(self._shutdown)
        self._register_tools()
        logger.info(f"Docspace MCP server ready for {self.workspace.workspace_path}")

    def _shutdown(self) -> None:
        """Close the workspace on server exit."""
        self.workspace.close()

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        # Generate a unique error ID for traceability in logs
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, DocspaceError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, GitError):
            logger.error(f"Git error [{error_id}]: {error}")
            return f"Error: {error.message} (ref: {error_id})"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        elif isinstance(error, (IOError, OSError)):
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""
        ws = self.workspace

        @self.mcp.tool(name="ws_list_documents")
        def ws_list_documents(tag: Optional[str] = None) -> str:
            """List every document in the workspace.
            Args:
                tag: Only list documents carrying this tag (optional)
            """
            with timed_operation("ws_list_documents") as op:
                try:
                    entries = ws.list_documents()
                    if tag:
                        entries = [e for e in entries if tag in e.metadata.tags]
                    op["result_count"] = len(entries)
                    if not entries:
                        return "No documents found."
                    lines = [f"Found {len(entries)} documents:"]
                    for entry in entries:
                        meta = entry.metadata
                        tags = f" [{', '.join(meta.tags)}]" if meta.tags else ""
                        lines.append(f"- {entry.path}: {meta.title} ({meta.mode.value}){tags}")
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_read_document")
        def ws_read_document(path: str) -> str:
            """Read a document's body, without its frontmatter header.
            Args:
                path: Workspace-relative path, e.g. documents/ideas.md
            """
            with timed_operation("ws_read_document", path=path[:60]):
                try:
                    return ws.read_document(path)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_write_document")
        def ws_write_document(
            path: str,
            content: str,
            title: Optional[str] = None,
            mode: Optional[str] = None,
            tags: Optional[str] = None,
            language: Optional[str] = None,
        ) -> str:
            """Create or overwrite a document.
            Args:
                path: Workspace-relative path, e.g. documents/ideas.md
                content: Document body (any existing frontmatter is replaced)
                title: Title (defaults to the file name)
                mode: Editor mode: notes, markdown or code (inferred from the extension)
                tags: Comma-separated list of tags (optional)
                language: Source language for code documents (optional)
            """
            with timed_operation("ws_write_document", path=path[:60]) as op:
                try:
                    _validate_input_lengths(title=title, content=content)
                    metadata = {"title": title, "mode": mode, "language": language}
                    if tags is not None:
                        metadata["tags"] = _split_tags(tags)
                    entry = ws.write_document(path, content, metadata)
                    op["document_id"] = entry.metadata.id
                    return f"Document saved: {entry.path} (id: {entry.metadata.id})"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_delete_document")
        def ws_delete_document(path: str) -> str:
            """Delete a document and its metadata.
            Args:
                path: Workspace-relative path of the document
            """
            with timed_operation("ws_delete_document", path=path[:60]):
                try:
                    ws.delete_document(path)
                    return f"Document deleted: {path}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_add_tags")
        def ws_add_tags(path: str, tags: str) -> str:
            """Add tags to a document.
            Args:
                path: Workspace-relative path of the document
                tags: Comma-separated list of tags
            """
            with timed_operation("ws_add_tags", path=path[:60]):
                try:
                    doc = ws.add_tags(path, _split_tags(tags))
                    return f"Tags for {path}: {', '.join(doc.tags)}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_search")
        def ws_search(query: str, limit: int = 20) -> str:
            """Full-text search across titles, content and tags.
            Args:
                query: Words to search for (FTS5 syntax such as AND, OR, prefix* is supported)
                limit: Maximum number of results (default: 20)
            """
            with timed_operation("ws_search", query=query[:30]) as op:
                try:
                    results = ws.search(query, limit=limit)
                    op["result_count"] = len(results)
                    if not results:
                        return f"No documents match '{query}'."
                    lines = [f"Found {len(results)} matches for '{query}':"]
                    for r in results:
                        lines.append(f"- {r.path}: {r.title} (score {r.score:.2f})")
                        if r.snippet:
                            lines.append(f"  {r.snippet}")
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_by_tag")
        def ws_by_tag(tag: str) -> str:
            """List documents whose tags contain the given text, newest first.
            Args:
                tag: Tag (or part of a tag) to look for
            """
            with timed_operation("ws_by_tag", tag=tag[:30]) as op:
                try:
                    results = ws.by_tag(tag)
                    op["result_count"] = len(results)
                    if not results:
                        return f"No documents tagged '{tag}'."
                    lines = [f"Found {len(results)} documents tagged '{tag}':"]
                    for r in results:
                        lines.append(f"- {r.path}: {r.title} (modified {r.modified})")
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_tag_cloud")
        def ws_tag_cloud() -> str:
            """List every tag with the number of documents carrying it."""
            with timed_operation("ws_tag_cloud"):
                try:
                    counts = ws.tag_cloud()
                    if not counts:
                        return "No tags found."
                    return "\n".join(f"{t.name}: {t.count}" for t in counts)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_workspace_info")
        def ws_workspace_info() -> str:
            """Show workspace name, location and document counts."""
            with timed_operation("ws_workspace_info"):
                try:
                    return json.dumps(ws.workspace_info(), indent=2)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_metrics")
        def ws_metrics() -> str:
            """Show operation counts, timings and recent errors for this server."""
            try:
                return json.dumps(metrics.get_summary(), indent=2)
            except Exception as e:
                return self.format_error_response(e)

        @self.mcp.tool(name="ws_rebuild_index")
        def ws_rebuild_index() -> str:
            """Re-scan the document tree and rebuild the search index."""
            with timed_operation("ws_rebuild_index"):
                try:
                    report = ws.rebuild_index()
                    return json.dumps(report.to_dict(), indent=2)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_prune_dangling")
        def ws_prune_dangling() -> str:
            """Forget documents whose files were deleted outside the workspace."""
            with timed_operation("ws_prune_dangling"):
                try:
                    pruned = ws.prune_dangling()
                    if not pruned:
                        return "No missing documents to prune."
                    return f"Pruned {len(pruned)} documents:\n" + "\n".join(
                        f"- {p}" for p in pruned
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_git_status")
        def ws_git_status() -> str:
            """Show uncommitted changes and ahead/behind counts."""
            with timed_operation("ws_git_status"):
                try:
                    return json.dumps(ws.git_status().to_dict(), indent=2)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_commit")
        def ws_commit(message: str) -> str:
            """Commit every pending change in the workspace.
            Args:
                message: Commit message
            """
            with timed_operation("ws_commit"):
                try:
                    version = ws.commit(message)
                    if version is None:
                        return "Nothing to commit."
                    return f"Committed {version.short_hash}: {version.message}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_pull")
        def ws_pull(remote: Optional[str] = None, branch: Optional[str] = None) -> str:
            """Pull from a remote, then re-scan the workspace.
            Args:
                remote: Remote name (default from configuration)
                branch: Branch name (default from configuration)
            """
            with timed_operation("ws_pull"):
                try:
                    report = ws.pull(remote, branch)
                    return "Pulled.\n" + json.dumps(report.to_dict(), indent=2)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_push")
        def ws_push(remote: Optional[str] = None, branch: Optional[str] = None) -> str:
            """Push committed changes to a remote.
            Args:
                remote: Remote name (default from configuration)
                branch: Branch name (default from configuration)
            """
            with timed_operation("ws_push"):
                try:
                    ws.push(remote, branch)
                    return "Pushed."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_sync")
        def ws_sync(url: str) -> str:
            """Connect the workspace to a remote repository and sync both ways.
            Args:
                url: Remote repository URL (the token comes from DOCSPACE_GIT_TOKEN)
            """
            with timed_operation("ws_sync"):
                try:
                    report = ws.sync_with_remote(url)
                    return "Synced.\n" + json.dumps(report.to_dict(), indent=2)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ws_history")
        def ws_history(path: Optional[str] = None, limit: int = 10) -> str:
            """Show commit history for the workspace or one document.
            Args:
                path: Workspace-relative document path (optional)
                limit: Maximum number of commits (default: 10)
            """
            with timed_operation("ws_history"):
                try:
                    versions = ws.history(path, limit=limit)
                    if not versions:
                        return "No history found."
                    return "\n".join(
                        f"{v.short_hash} {v.timestamp.isoformat()} {v.message}" for v in versions
                    )
                except Exception as e:
                    return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
