"""Tests for the MCP server tools."""
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from docspace.exceptions import DocumentNotFoundError
from docspace.models.schema import ReconcileReport
from docspace.server.mcp_server import DocspaceMcpServer
from docspace.services.workspace_service import WorkspaceService
from docspace.storage.git_wrapper import GitError, GitVersion


class TestMcpServer:
    """Tests for DocspaceMcpServer against a real workspace without git."""

    @pytest.fixture(autouse=True)
    def server(self, test_config):
        # Capture tool functions as they are registered
        self.registered_tools = {}
        self.mock_mcp = MagicMock()

        def mock_tool_decorator(*args, **kwargs):
            def tool_wrapper(func):
                self.registered_tools[kwargs.get("name")] = func
                return func
            return tool_wrapper
        self.mock_mcp.tool = mock_tool_decorator

        with patch("docspace.server.mcp_server.FastMCP", return_value=self.mock_mcp):
            self.workspace = WorkspaceService(test_config.workspace_path, git_enabled=False)
            self.server = DocspaceMcpServer(self.workspace)
        yield self.server
        self.workspace.close()

    def call(self, name, **kwargs):
        return self.registered_tools[name](**kwargs)

    def test_server_opens_workspace(self):
        assert self.workspace.is_open
        assert {
            "ws_list_documents", "ws_read_document", "ws_write_document",
            "ws_delete_document", "ws_add_tags", "ws_search", "ws_by_tag",
            "ws_tag_cloud", "ws_workspace_info", "ws_rebuild_index",
            "ws_prune_dangling", "ws_git_status", "ws_commit", "ws_pull",
            "ws_push", "ws_sync", "ws_history", "ws_metrics",
        } <= set(self.registered_tools)

    def test_write_then_read(self):
        result = self.call(
            "ws_write_document",
            path="documents/ideas.md",
            content="Grow tomatoes",
            title="Ideas",
            tags="garden, summer",
        )
        assert result.startswith("Document saved: documents/ideas.md (id: ")

        assert self.call("ws_read_document", path="documents/ideas.md") == "Grow tomatoes"
        listing = self.call("ws_list_documents")
        assert "documents/ideas.md: Ideas (markdown) [garden, summer]" in listing

    def test_list_filters_by_tag(self):
        self.call("ws_write_document", path="documents/a.md", content="a", tags="keep")
        self.call("ws_write_document", path="documents/b.md", content="b")

        listing = self.call("ws_list_documents", tag="keep")
        assert "documents/a.md" in listing
        assert "documents/b.md" not in listing
        assert self.call("ws_list_documents", tag="nothing") == "No documents found."

    def test_search_and_tags(self):
        self.call("ws_write_document", path="documents/a.md", content="the lighthouse keeper", tags="sea")
        self.call("ws_add_tags", path="documents/a.md", tags="coast, sea")

        search = self.call("ws_search", query="lighthouse")
        assert "documents/a.md" in search
        assert "<mark>lighthouse</mark>" in search
        assert self.call("ws_search", query="desert") == "No documents match 'desert'."

        assert "documents/a.md" in self.call("ws_by_tag", tag="coa")
        assert self.call("ws_tag_cloud") == "coast: 1\nsea: 1"

    def test_delete(self):
        self.call("ws_write_document", path="documents/a.md", content="x")
        assert self.call("ws_delete_document", path="documents/a.md") == "Document deleted: documents/a.md"
        assert self.call("ws_list_documents") == "No documents found."
        assert self.call("ws_tag_cloud") == "No tags found."

    def test_errors_become_messages(self):
        assert self.call("ws_read_document", path="documents/missing.md").startswith("Error:")
        assert self.call("ws_write_document", path="../out.md", content="x").startswith("Error:")
        assert self.call(
            "ws_write_document", path="documents/a.md", content="x", mode="slides"
        ).startswith("Error:")

    def test_overlong_title_rejected(self):
        result = self.call("ws_write_document", path="documents/a.md", content="x", title="t" * 501)
        assert result.startswith("Error: Invalid input (ref: ")
        assert self.call("ws_list_documents") == "No documents found."

    def test_workspace_info_and_rebuild(self, write_file):
        write_file("documents/outside.md", "added by hand")

        report = json.loads(self.call("ws_rebuild_index"))
        assert report["discovered"] == ["documents/outside.md"]

        info = json.loads(self.call("ws_workspace_info"))
        assert info["document_count"] == 1
        assert info["git_enabled"] is False

    def test_prune_dangling(self, test_config):
        self.call("ws_write_document", path="documents/a.md", content="x")
        (test_config.workspace_path / "documents" / "a.md").unlink()

        assert self.call("ws_prune_dangling") == "Pruned 1 documents:\n- documents/a.md"
        assert self.call("ws_prune_dangling") == "No missing documents to prune."

    def test_metrics_summary(self):
        self.call("ws_write_document", path="documents/a.md", content="x")
        summary = json.loads(self.call("ws_metrics"))
        assert summary["operations"]["write_document"]["success_count"] >= 1
        assert summary["total_operations"] >= 1

    def test_git_tools_report_disabled_git(self):
        for name in ("ws_git_status", "ws_pull", "ws_push", "ws_history"):
            assert self.call(name).startswith("Error: Version control is disabled")
        assert self.call("ws_commit", message="x").startswith("Error:")


class TestMcpServerWithMockWorkspace:
    """Formatting of version control results with a mocked workspace."""

    @pytest.fixture(autouse=True)
    def server(self):
        self.registered_tools = {}
        mock_mcp = MagicMock()

        def mock_tool_decorator(*args, **kwargs):
            def tool_wrapper(func):
                self.registered_tools[kwargs.get("name")] = func
                return func
            return tool_wrapper
        mock_mcp.tool = mock_tool_decorator

        self.workspace = MagicMock()
        with patch("docspace.server.mcp_server.FastMCP", return_value=mock_mcp):
            self.server = DocspaceMcpServer(self.workspace)
        yield self.server

    def test_server_opens_given_workspace(self):
        self.workspace.open.assert_called_once()

    def test_commit_formats_version(self):
        self.workspace.commit.return_value = GitVersion(
            "abcdef1234567", datetime(2024, 1, 1, tzinfo=timezone.utc), "Save work"
        )
        assert self.registered_tools["ws_commit"](message="Save work") == "Committed abcdef1: Save work"

        self.workspace.commit.return_value = None
        assert self.registered_tools["ws_commit"](message="again") == "Nothing to commit."

    def test_sync_reports_reconciliation(self):
        self.workspace.sync_with_remote.return_value = ReconcileReport(discovered=["documents/new.md"])
        result = self.registered_tools["ws_sync"](url="https://example.com/repo.git")

        assert result.startswith("Synced.\n")
        assert json.loads(result.split("\n", 1)[1])["discovered"] == ["documents/new.md"]
        self.workspace.sync_with_remote.assert_called_once_with("https://example.com/repo.git")

    def test_git_error_includes_reference(self):
        self.workspace.push.side_effect = GitError("Git command failed: push")
        result = self.registered_tools["ws_push"]()
        assert result.startswith("Error: Git command failed: push (ref: ")

    def test_not_found_message(self):
        self.workspace.read_document.side_effect = DocumentNotFoundError("documents/x.md")
        result = self.registered_tools["ws_read_document"](path="documents/x.md")
        assert result.startswith("Error:")
        assert "documents/x.md" in result

    def test_unexpected_error_is_hidden(self):
        self.workspace.tag_cloud.side_effect = RuntimeError("boom")
        result = self.registered_tools["ws_tag_cloud"]()
        assert "boom" not in result
        assert result.startswith("Error: An unexpected error occurred (ref: ")
