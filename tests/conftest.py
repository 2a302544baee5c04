"""Common test fixtures for the Docspace workspace core."""

import tempfile
from pathlib import Path

import pytest

from docspace.config import config
from docspace.services.reconciler import Reconciler
from docspace.services.workspace_service import WorkspaceService
from docspace.storage.metadata_store import MetadataStore
from docspace.storage.search_index import SearchIndex


@pytest.fixture
def temp_workspace():
    """Create a temporary workspace directory with an empty document root."""
    with tempfile.TemporaryDirectory() as tmp:
        workspace = Path(tmp) / "workspace"
        (workspace / "documents").mkdir(parents=True)
        yield workspace


@pytest.fixture
def test_config(temp_workspace, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "workspace_path", temp_workspace)
    monkeypatch.setattr(config, "git_enabled", False)
    monkeypatch.setattr(config, "git_credential", None)
    yield config


@pytest.fixture
def metadata_store(test_config):
    """A metadata store backed by a freshly initialized file."""
    store = MetadataStore(
        test_config.get_metadata_path(), workspace_name=test_config.workspace_path.name
    )
    store.load_or_initialize()
    return store


@pytest.fixture
def search_index(test_config):
    """An empty search index in the workspace's index directory."""
    index = SearchIndex.open(test_config.get_db_url())
    index.create_schema()
    yield index
    index.close()


@pytest.fixture
def reconciler(metadata_store, search_index, test_config):
    """A reconciler wired to the test store and index."""
    return Reconciler(
        metadata_store, search_index, test_config.workspace_path, test_config.documents_dir
    )


@pytest.fixture
def workspace(test_config):
    """An open workspace handle without version control."""
    ws = WorkspaceService(test_config.workspace_path, git_enabled=False)
    ws.open()
    yield ws
    ws.close()


@pytest.fixture
def write_file(temp_workspace):
    """Return a helper that writes a file under the workspace."""
    def _write(relative: str, content: str) -> Path:
        path = temp_workspace / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path
    return _write
