"""Configuration module for the Docspace workspace core."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from docspace import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls, lives alongside the logs
_USER_ENV = Path.home() / ".docspace" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class DocspaceConfig(BaseModel):
    """Configuration for a Docspace workspace."""

    # Root of the workspace (git repository root)
    workspace_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv(
                "DOCSPACE_WORKSPACE",
                str(Path.home() / "Documents" / "Docspace"),
            )
        ).expanduser()
    )
    # Layout inside the workspace, all relative to workspace_path
    documents_dir: str = Field(
        default_factory=lambda: os.getenv("DOCSPACE_DOCUMENTS_DIR", "documents")
    )
    metadata_filename: str = Field(
        default_factory=lambda: os.getenv(
            "DOCSPACE_METADATA_FILE", ".docspace-metadata.json"
        )
    )
    # Machine-local directory holding index.db; never tracked by git
    index_dir: str = Field(
        default_factory=lambda: os.getenv("DOCSPACE_INDEX_DIR", ".docspace")
    )
    # Git versioning configuration
    git_enabled: bool = Field(
        default_factory=lambda: _env_flag("DOCSPACE_GIT_ENABLED", "true")
    )
    git_user_name: str = Field(
        default_factory=lambda: os.getenv("DOCSPACE_GIT_USER_NAME", "Docspace User")
    )
    git_user_email: str = Field(
        default_factory=lambda: os.getenv(
            "DOCSPACE_GIT_USER_EMAIL", "docspace@localhost"
        )
    )
    default_remote: str = Field(
        default_factory=lambda: os.getenv("DOCSPACE_GIT_REMOTE", "origin")
    )
    default_branch: str = Field(
        default_factory=lambda: os.getenv("DOCSPACE_GIT_BRANCH", "main")
    )
    # Personal access token used for sync; never written to .git/config
    git_credential: Optional[str] = Field(
        default_factory=lambda: os.getenv("DOCSPACE_GIT_TOKEN") or None
    )
    # Search configuration
    search_limit: int = Field(
        default_factory=lambda: int(os.getenv("DOCSPACE_SEARCH_LIMIT", "50"))
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("DOCSPACE_SERVER_NAME", "docspace-mcp"))
    server_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_layout(self) -> "DocspaceConfig":
        """Reject layouts that would escape the workspace or collide."""
        if self.search_limit < 1:
            raise ValueError("search_limit must be >= 1")
        for name in ("documents_dir", "metadata_filename", "index_dir"):
            value = getattr(self, name)
            if not value or Path(value).is_absolute() or ".." in Path(value).parts:
                raise ValueError(f"{name} must be a relative path inside the workspace")
        docs = Path(self.documents_dir).parts
        if not docs or docs[0] == ".git":
            raise ValueError("documents_dir must be a subdirectory of the workspace other than .git")
        # Anything under the document root would be discovered as a document
        for name in ("index_dir", "metadata_filename"):
            if Path(getattr(self, name)).parts[:len(docs)] == docs:
                raise ValueError(f"{name} must not be inside documents_dir")
        return self

    def get_documents_path(self, workspace: Optional[Path] = None) -> Path:
        """Get the document root for a workspace."""
        return (workspace or self.workspace_path) / self.documents_dir

    def get_metadata_path(self, workspace: Optional[Path] = None) -> Path:
        """Get the metadata sidecar path for a workspace."""
        return (workspace or self.workspace_path) / self.metadata_filename

    def get_index_db_path(self, workspace: Optional[Path] = None) -> Path:
        """Get the SQLite index path for a workspace, creating its directory."""
        db_path = (workspace or self.workspace_path) / self.index_dir / "index.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return db_path

    def get_db_url(self, workspace: Optional[Path] = None) -> str:
        """Get the database URL for SQLite."""
        return f"sqlite:///{self.get_index_db_path(workspace)}"


# Create a global config instance
config = DocspaceConfig()
