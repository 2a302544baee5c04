"""Workspace handle: the one owner of a workspace's metadata and index.

A :class:`WorkspaceService` is opened for a directory, serves reads and
writes, and is closed before another workspace is opened. There is no
process-wide current workspace.
"""
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from docspace.config import DocspaceConfig, config as default_config
from docspace.exceptions import (
    DocspaceError,
    DocumentNotFoundError,
    ErrorCode,
    StorageError,
    ValidationError,
    WorkspaceClosedError,
)
from docspace.models.schema import (
    DocumentEntry,
    DocumentMetadata,
    DocumentMode,
    ReconcileReport,
    SearchResult,
    TagCount,
    dedupe_tags,
)
from docspace.observability import timed_operation, traced
from docspace.services.query_service import QueryService
from docspace.services.reconciler import Reconciler, infer_mode, read_body
from docspace.storage import frontmatter_codec
from docspace.storage.git_wrapper import GitError, GitStatus, GitVersion, GitWrapper
from docspace.storage.metadata_store import MetadataStore
from docspace.storage.search_index import SearchIndex
from docspace.utils import normalize_document_path, sanitize_commit_message

logger = logging.getLogger(__name__)

_WRITABLE_FIELDS = ("title", "mode", "tags", "language", "custom_fields")


class WorkspaceService:
    """An open (or openable) workspace.

    Usage::

        with WorkspaceService(path) as ws:
            ws.write_document("documents/a.md", "hello")
            ws.search("hello")

    Args:
        workspace_path: Workspace root. Defaults to the configured workspace.
        git_enabled: Override the configured git setting.
        settings: Configuration to read layout and git identity from.
    """

    def __init__(
        self,
        workspace_path: Optional[Path] = None,
        git_enabled: Optional[bool] = None,
        settings: Optional[DocspaceConfig] = None,
    ):
        self.settings = settings or default_config
        self.workspace_path = Path(workspace_path or self.settings.workspace_path).expanduser()
        self.git_enabled = self.settings.git_enabled if git_enabled is None else git_enabled

        self.store: Optional[MetadataStore] = None
        self.index: Optional[SearchIndex] = None
        self.reconciler: Optional[Reconciler] = None
        self.queries: Optional[QueryService] = None
        self.git: Optional[GitWrapper] = None
        self.last_report: Optional[ReconcileReport] = None
        self._lock = threading.RLock()
        self._open = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> "WorkspaceService":
        """Prepare the workspace on disk and reconcile it once.

        Raises:
            MetadataCorruptedError: If the metadata file exists but is unreadable.
            StorageError: If the workspace cannot be created or indexed.
        """
        if self._open:
            return self

        with timed_operation("open_workspace", workspace=self.workspace_path.name):
            try:
                self.workspace_path.mkdir(parents=True, exist_ok=True)
                self.settings.get_documents_path(self.workspace_path).mkdir(
                    parents=True, exist_ok=True
                )
            except OSError as e:
                raise StorageError(
                    "Failed to create workspace directories",
                    operation="open_workspace",
                    path=str(self.workspace_path),
                    code=ErrorCode.WORKSPACE_OPEN_FAILED,
                    original_error=e,
                ) from e

            if self.git_enabled:
                self.git = GitWrapper(
                    self.workspace_path,
                    user_name=self.settings.git_user_name,
                    user_email=self.settings.git_user_email,
                    ignore_patterns=(
                        f"{self.settings.index_dir}/index.db",
                        f"{self.settings.index_dir}/index.db-*",
                        f"{self.settings.index_dir}/cache/",
                        ".DS_Store",
                        "Thumbs.db",
                    ),
                )
                self.git.ensure_repo()

            store = MetadataStore(
                self.settings.get_metadata_path(self.workspace_path),
                workspace_name=self.workspace_path.name,
            )
            store.load_or_initialize()

            index = SearchIndex.open(self.settings.get_db_url(self.workspace_path))
            try:
                index.create_schema()
                reconciler = Reconciler(
                    store, index, self.workspace_path, self.settings.documents_dir
                )
                self.last_report = reconciler.rebuild_index()
            except Exception:
                index.close()
                raise

            self.store = store
            self.index = index
            self.reconciler = reconciler
            self.queries = QueryService(store, index, self.settings.search_limit)
            self._open = True

        logger.info(f"Opened workspace {self.workspace_path}")
        return self

    def close(self) -> None:
        """Release the index. Safe to call more than once."""
        with self._lock:
            if not self._open:
                return
            self.index.close()
            self._open = False
            self.store = None
            self.index = None
            self.reconciler = None
            self.queries = None
            self.git = None
        logger.info(f"Closed workspace {self.workspace_path}")

    def __enter__(self) -> "WorkspaceService":
        return self.open()

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self._open:
            raise WorkspaceClosedError(str(self.workspace_path))

    def _require_git(self) -> GitWrapper:
        self._require_open()
        if self.git is None:
            raise DocspaceError(
                "Version control is disabled for this workspace",
                code=ErrorCode.CONFIG_INVALID,
            )
        return self.git

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _resolve_key(self, path: str) -> str:
        """Normalize a caller path and refuse keys outside the document tree."""
        key = normalize_document_path(path)
        reserved = (
            self.settings.index_dir,
            ".git",
            self.settings.metadata_filename,
            ".gitignore",
        )
        head = key.split("/", 1)[0]
        if head in reserved:
            raise ValidationError(
                f"Path is reserved for workspace internals: {path}",
                field="path",
                value=path,
                code=ErrorCode.PATH_TRAVERSAL_DETECTED,
            )
        return key

    def _file_for(self, key: str) -> Path:
        return self.workspace_path / key

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_documents(self) -> List[DocumentEntry]:
        self._require_open()
        return self.queries.list_all()

    def get_document(self, path: str) -> DocumentMetadata:
        """Metadata for a known path.

        Raises:
            DocumentNotFoundError: If the path is unknown.
        """
        self._require_open()
        key = self._resolve_key(path)
        doc = self.store.get_document(key)
        if doc is None:
            raise DocumentNotFoundError(key)
        return doc

    def read_document(self, path: str) -> str:
        """Body of a document with its frontmatter stripped.

        Raises:
            DocumentNotFoundError: If the path is unknown or its file is gone.
            StorageError: If the file cannot be read.
        """
        self._require_open()
        key = self._resolve_key(path)
        if self.store.get_document(key) is None:
            raise DocumentNotFoundError(key)
        file_path = self._file_for(key)
        if not file_path.is_file():
            raise DocumentNotFoundError(key, message=f"Document file is missing: {key}")
        try:
            return read_body(file_path)
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(
                "Failed to read document",
                operation="read_document",
                path=key,
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

    def search(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        self._require_open()
        with timed_operation("search", query=query[:50]) as op:
            results = self.queries.search(query, limit)
            op["result_count"] = len(results)
        return results

    def by_tag(self, tag: str) -> List[SearchResult]:
        self._require_open()
        return self.queries.by_tag(tag)

    def tag_cloud(self) -> List[TagCount]:
        self._require_open()
        return self.queries.tag_cloud()

    def workspace_info(self) -> Dict[str, Any]:
        """Descriptive fields of the workspace plus current counts."""
        self._require_open()
        metadata = self.store.current
        info: Dict[str, Any] = {
            "name": metadata.workspace.name,
            "created": metadata.workspace.created,
            "description": metadata.workspace.description,
            "path": str(self.workspace_path),
            "version": metadata.version,
            "document_count": len(metadata.documents),
            "dangling": self.reconciler.find_dangling(),
            "git_enabled": self.git is not None,
        }
        if self.git is not None:
            info["branch"] = self.git.current_branch()
        return info

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _clean_fields(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Pick out writable fields and validate the mode."""
        fields: Dict[str, Any] = {}
        for name in _WRITABLE_FIELDS:
            if metadata and metadata.get(name) is not None:
                fields[name] = metadata[name]
        if metadata and metadata.get("customFields") is not None and "custom_fields" not in fields:
            fields["custom_fields"] = metadata["customFields"]

        if "mode" in fields:
            mode = DocumentMode.parse(fields["mode"])
            if mode is None:
                raise ValidationError(
                    f"Unknown document mode: {fields['mode']}",
                    field="mode",
                    value=fields["mode"],
                    code=ErrorCode.INVALID_MODE,
                )
            fields["mode"] = mode
        if "tags" in fields:
            tags = fields["tags"]
            if isinstance(tags, str):
                tags = tags.split(",")
            fields["tags"] = dedupe_tags(list(tags))
        if "title" in fields:
            fields["title"] = str(fields["title"]).strip()
            if not fields["title"]:
                del fields["title"]
        return fields

    @traced("write_document")
    def write_document(
        self, path: str, body: str, metadata: Optional[Dict[str, Any]] = None
    ) -> DocumentEntry:
        """Create or update a document.

        Any frontmatter already in ``body`` is discarded and a fresh header
        is written from the merged metadata. The metadata store, the index
        entry and the tag counts are updated, then the change is committed
        when version control is on.

        Args:
            path: Workspace-relative path, e.g. ``documents/notes/a.md``.
            body: Document text.
            metadata: Optional title, mode, tags, language, custom_fields.

        Returns:
            The written document.
        """
        self._require_open()
        key = self._resolve_key(path)
        fields = self._clean_fields(metadata)

        with self._lock:
            existing = self.store.get_document(key)
            is_new = existing is None

            title = fields.get("title") or (existing.title if existing else Path(key).stem)
            mode = fields.get("mode") or (existing.mode if existing else infer_mode(key))
            tags = fields.get("tags", existing.tags if existing else [])
            language = fields.get("language") or (existing.language if existing else None)

            header: Dict[str, Any] = {"title": title, "mode": DocumentMode(mode).value}
            if tags:
                header["tags"] = tags
            if language:
                header["language"] = language
            content = frontmatter_codec.encode(header, frontmatter_codec.strip(body))

            file_path = self._file_for(key)
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                file_path.write_text(content, encoding="utf-8")
            except OSError as e:
                raise StorageError(
                    "Failed to write document",
                    operation="write_document",
                    path=key,
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e

            fields.update({"title": title, "mode": mode, "tags": tags})
            doc = self.store.upsert_document(key, **fields)
            self.reconciler.reindex_one(key)

            if is_new:
                self.index.increment_tag_counts(doc.tags)
            elif doc.tags != existing.tags:
                self.index.rebuild_tag_counts(self.store.current)

            verb = "Create" if is_new else "Update"
            self._commit_paths([file_path], f"{verb} {sanitize_commit_message(doc.title)}")

        logger.info(f"{verb}d document {key}")
        return DocumentEntry(path=key, metadata=doc)

    @traced("delete_document")
    def delete_document(self, path: str) -> None:
        """Delete a document's file, metadata and index records.

        Raises:
            DocumentNotFoundError: If the path is unknown.
        """
        self._require_open()
        key = self._resolve_key(path)

        with self._lock:
            doc = self.store.get_document(key)
            if doc is None:
                raise DocumentNotFoundError(key)

            file_path = self._file_for(key)
            try:
                file_path.unlink()
            except FileNotFoundError:
                logger.debug(f"File for {key} was already gone")
            except OSError as e:
                raise StorageError(
                    "Failed to delete document file",
                    operation="delete_document",
                    path=key,
                    code=ErrorCode.STORAGE_DELETE_FAILED,
                    original_error=e,
                ) from e

            self.store.remove_document(key)
            self.index.remove_from_index(key)
            self.index.rebuild_tag_counts(self.store.current)
            self._commit_paths([file_path], f"Delete {sanitize_commit_message(doc.title)}")

        logger.info(f"Deleted document {key}")

    @traced("add_tags")
    def add_tags(self, path: str, tags: Iterable[str]) -> DocumentMetadata:
        """Add tags to a document, keeping existing ones and their order.

        Raises:
            DocumentNotFoundError: If the path is unknown.
        """
        self._require_open()
        key = self._resolve_key(path)

        with self._lock:
            existing = self.store.get_document(key)
            if existing is None:
                raise DocumentNotFoundError(key)
            merged = dedupe_tags(list(existing.tags) + list(tags))
            if merged == existing.tags:
                return existing

            doc = self.store.upsert_document(key, tags=merged)
            self.reconciler.reindex_one(key)
            self.index.rebuild_tag_counts(self.store.current)
            self._commit_paths([], f"Tag {sanitize_commit_message(doc.title)}")
        return doc

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def rebuild_index(self) -> ReconcileReport:
        """Run a full reconciliation pass."""
        self._require_open()
        with self._lock:
            self.last_report = self.reconciler.rebuild_index()
        return self.last_report

    def prune_dangling(self, paths: Optional[List[str]] = None) -> List[str]:
        """Forget documents whose files were deleted outside the workspace."""
        self._require_open()
        with self._lock:
            pruned = self.reconciler.prune_dangling(paths)
            if pruned:
                self._commit_paths([], f"Prune {len(pruned)} missing documents")
        return pruned

    # ------------------------------------------------------------------
    # Version control
    # ------------------------------------------------------------------

    def _commit_paths(self, paths: List[Path], message: str) -> Optional[GitVersion]:
        """Stage ``paths`` plus the metadata file and commit.

        A git failure is logged and does not undo the write it follows.
        """
        if self.git is None:
            return None
        try:
            self.git.stage(list(paths) + [self.store.metadata_path])
            return self.git.commit(message)
        except GitError as e:
            logger.warning(f"Could not commit '{message}': {e}")
            return None

    def git_status(self) -> GitStatus:
        return self._require_git().status()

    def commit(self, message: str) -> Optional[GitVersion]:
        """Stage every change in the workspace and commit it."""
        git = self._require_git()
        with self._lock:
            git.stage([Path(".")])
            return git.commit(message)

    def push(self, remote: Optional[str] = None, branch: Optional[str] = None) -> None:
        git = self._require_git()
        with timed_operation("push"):
            git.push(
                remote or self.settings.default_remote,
                branch or self.settings.default_branch,
                credential=self.settings.git_credential,
            )

    def pull(self, remote: Optional[str] = None, branch: Optional[str] = None) -> ReconcileReport:
        """Pull from a remote and reconcile, even if the pull fails."""
        git = self._require_git()
        with self._lock, timed_operation("pull"):
            try:
                git.pull(
                    remote or self.settings.default_remote,
                    branch or self.settings.default_branch,
                    credential=self.settings.git_credential,
                )
            finally:
                self.last_report = self.reconciler.rebuild_index()
        return self.last_report

    def sync_with_remote(self, url: str, credential: Optional[str] = None) -> ReconcileReport:
        """Connect to ``url``, merge and push, then reconcile regardless of outcome."""
        git = self._require_git()
        with self._lock, timed_operation("sync_with_remote"):
            try:
                git.sync_with_remote(
                    url,
                    credential=credential or self.settings.git_credential,
                    remote=self.settings.default_remote,
                    branch=self.settings.default_branch,
                )
            finally:
                self.last_report = self.reconciler.rebuild_index()
        return self.last_report

    def history(self, path: Optional[str] = None, limit: int = 20) -> List[GitVersion]:
        git = self._require_git()
        target = self._file_for(self._resolve_key(path)) if path else None
        return git.history(target, limit=limit)
