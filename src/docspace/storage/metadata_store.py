"""Durable JSON store for workspace and document metadata."""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from docspace.exceptions import (
    DocumentNotFoundError,
    ErrorCode,
    MetadataCorruptedError,
    StorageError,
)
from docspace.models.schema import (
    DocumentMetadata,
    WorkspaceInfo,
    WorkspaceMetadata,
    dedupe_tags,
    utc_timestamp,
)

logger = logging.getLogger(__name__)

# Fields a caller may never overwrite through upsert_document
_IMMUTABLE_FIELDS = {"id", "created", "modified"}


class MetadataStore:
    """Maps workspace-relative document paths to their metadata.

    The whole store lives in one JSON file alongside the workspace and is
    rewritten atomically on every save. Callers serialize writers; this
    class assumes a single writer process and takes no file locks.

    The most recently loaded or saved copy is kept in memory as
    :attr:`current`.
    """

    def __init__(self, metadata_path: Path, workspace_name: Optional[str] = None):
        """Initialize the store.

        Args:
            metadata_path: Location of the JSON sidecar file.
            workspace_name: Name used when initializing a fresh workspace.
                Defaults to the name of the directory holding the file.
        """
        self.metadata_path = metadata_path
        self.workspace_name = workspace_name or metadata_path.parent.name
        self._current: Optional[WorkspaceMetadata] = None

    @property
    def current(self) -> WorkspaceMetadata:
        """The in-memory metadata, loading it on first access."""
        if self._current is None:
            self._current = self.load()
        return self._current

    def exists(self) -> bool:
        """Whether the metadata file is present on disk."""
        return self.metadata_path.is_file()

    def load(self) -> WorkspaceMetadata:
        """Read and validate the metadata file.

        Raises:
            StorageError: If the file does not exist (METADATA_MISSING) or
                cannot be read.
            MetadataCorruptedError: If the file exists but is not valid
                workspace metadata.
        """
        try:
            raw = self.metadata_path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise StorageError(
                "Workspace metadata file does not exist",
                operation="load_metadata",
                path=str(self.metadata_path),
                code=ErrorCode.METADATA_MISSING,
                original_error=e,
            ) from e
        except OSError as e:
            raise StorageError(
                "Failed to read workspace metadata",
                operation="load_metadata",
                path=str(self.metadata_path),
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

        try:
            metadata = WorkspaceMetadata.model_validate(json.loads(raw))
        except (ValueError, PydanticValidationError) as e:
            logger.error(f"Workspace metadata at {self.metadata_path} is corrupt: {e}")
            raise MetadataCorruptedError(
                "Workspace metadata file is corrupt; refusing to open workspace",
                path=str(self.metadata_path),
                original_error=e,
            ) from e

        self._current = metadata
        logger.debug(
            f"Loaded metadata for {len(metadata.documents)} documents "
            f"from {self.metadata_path.name}"
        )
        return metadata

    def initialize(self, description: Optional[str] = None) -> WorkspaceMetadata:
        """Write a fresh, empty metadata file and return it."""
        metadata = WorkspaceMetadata(
            workspace=WorkspaceInfo(
                name=self.workspace_name,
                created=utc_timestamp(),
                description=description,
            ),
            documents={},
        )
        self.save(metadata)
        logger.info(f"Initialized workspace metadata at {self.metadata_path}")
        return metadata

    def load_or_initialize(self) -> WorkspaceMetadata:
        """Load the metadata, creating the file first if it is absent.

        A corrupt file is never replaced; MetadataCorruptedError propagates.
        """
        if not self.exists():
            return self.initialize()
        return self.load()

    def save(self, metadata: Optional[WorkspaceMetadata] = None) -> None:
        """Atomically overwrite the metadata file.

        Args:
            metadata: The metadata to write. Defaults to :attr:`current`.
        """
        metadata = metadata if metadata is not None else self.current
        payload = metadata.to_json()
        self.metadata_path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_name = tempfile.mkstemp(
            prefix=f".{self.metadata_path.name}.",
            suffix=".tmp",
            dir=str(self.metadata_path.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_name, self.metadata_path)
        except OSError as e:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise StorageError(
                "Failed to write workspace metadata",
                operation="save_metadata",
                path=str(self.metadata_path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

        self._current = metadata

    def get_document(self, path: str) -> Optional[DocumentMetadata]:
        """Get metadata for a path, or None if unknown."""
        return self.current.documents.get(path)

    def upsert_document(self, path: str, **fields: Any) -> DocumentMetadata:
        """Merge fields into a document record, creating it if needed.

        A new record gets a freshly generated id and ``created`` timestamp.
        ``modified`` is refreshed on every call. Fields passed as None are
        ignored so partial updates do not clear existing values.

        Args:
            path: Workspace-relative document path.
            **fields: Any of title, mode, tags, language, custom_fields.

        Returns:
            The stored DocumentMetadata.
        """
        metadata = self.current
        updates = {
            k: v for k, v in fields.items()
            if v is not None and k not in _IMMUTABLE_FIELDS
        }
        if "tags" in updates:
            updates["tags"] = dedupe_tags(list(updates["tags"]))

        existing = metadata.documents.get(path)
        now = utc_timestamp()
        if existing is None:
            if "title" not in updates:
                updates["title"] = Path(path).stem
            doc = DocumentMetadata(created=now, modified=now, **updates)
            logger.debug(f"Created metadata for {path} (id={doc.id})")
        else:
            merged = existing.model_dump(by_alias=False)
            merged.update(updates)
            merged["modified"] = now
            doc = DocumentMetadata(**merged)
            logger.debug(f"Updated metadata for {path}")

        metadata.documents[path] = doc
        self.save(metadata)
        return doc

    def remove_document(self, path: str) -> DocumentMetadata:
        """Delete a document record.

        Raises:
            DocumentNotFoundError: If the path is not in the store.
        """
        metadata = self.current
        doc = metadata.documents.pop(path, None)
        if doc is None:
            raise DocumentNotFoundError(path)
        self.save(metadata)
        logger.debug(f"Removed metadata for {path}")
        return doc
