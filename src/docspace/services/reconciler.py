"""Reconciliation of the document tree, the metadata file and the index.

The filesystem and the metadata file can drift apart whenever something
other than this package touches the tree (a git pull, a merge, a user
copying files in). :class:`Reconciler` restores the invariant that every
document file is known to the metadata store and that the search index is
an exact projection of both.
"""
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from docspace.exceptions import DocumentNotFoundError
from docspace.models.schema import (
    DocumentMetadata,
    DocumentMode,
    ReconcileReport,
    derive_document_id,
    timestamp_from_epoch,
)
from docspace.observability import timed_operation
from docspace.storage import frontmatter_codec
from docspace.storage.metadata_store import MetadataStore
from docspace.storage.search_index import SearchIndex

logger = logging.getLogger(__name__)

EXTENSION_MODES: Dict[str, DocumentMode] = {
    **{ext: DocumentMode.MARKDOWN for ext in (
        ".md", ".markdown", ".mdown", ".mkd", ".mkdn", ".txt",
    )},
    **{ext: DocumentMode.CODE for ext in (
        ".js", ".jsx", ".ts", ".tsx", ".py", ".java", ".c", ".h", ".cpp", ".hpp",
        ".cc", ".cs", ".go", ".rs", ".rb", ".php", ".swift", ".kt", ".scala",
        ".sh", ".sql",
    )},
    **{ext: DocumentMode.RICH_NOTES for ext in (".html", ".htm")},
}

# OS droppings that are never documents
IGNORED_FILENAMES = frozenset({".DS_Store", "Thumbs.db", "desktop.ini"})

# Frontmatter keys mapped onto DocumentMetadata fields; the rest become custom fields
_RESERVED_KEYS = frozenset({"id", "title", "mode", "tags", "language", "created", "modified"})


def infer_mode(path: str) -> DocumentMode:
    """Editor mode for a file based on its extension alone."""
    return EXTENSION_MODES.get(Path(path).suffix.lower(), DocumentMode.MARKDOWN)


def read_body(file_path: Path) -> str:
    """Read a document file and return its body without frontmatter.

    Raises:
        OSError: If the file cannot be read.
        UnicodeDecodeError: If the file is not UTF-8 text.
    """
    raw = file_path.read_text(encoding="utf-8")
    return frontmatter_codec.strip(raw)


class Reconciler:
    """Rebuilds the search index and discovers untracked documents.

    Args:
        store: Metadata store of the open workspace.
        index: Search index of the open workspace.
        workspace_path: Workspace root; metadata keys are relative to it.
        documents_dir: Document root, relative to ``workspace_path``.
    """

    def __init__(
        self,
        store: MetadataStore,
        index: SearchIndex,
        workspace_path: Path,
        documents_dir: str = "documents",
    ):
        self.store = store
        self.index = index
        self.workspace_path = Path(workspace_path)
        self.documents_dir = documents_dir

    @property
    def documents_path(self) -> Path:
        return self.workspace_path / self.documents_dir

    def _file_for(self, path: str) -> Path:
        return self.workspace_path / path

    def rebuild_index(self) -> ReconcileReport:
        """Make the metadata and the index consistent with the document tree.

        1. Re-read the metadata file and clear the index document tables.
        2. Re-index every known path. Missing files are reported as dangling
           and kept; they are indexed from metadata alone.
        3. Discover files the metadata does not know and add them.
        4. Save the metadata once.
        5. Recount tags.

        Unreadable files are logged, reported as skipped and do not stop
        the pass. Index or metadata write failures propagate, and in that
        case the metadata file is left untouched. A metadata file that no
        longer parses, such as one left with merge conflict markers, raises
        MetadataCorruptedError before anything is written.
        """
        report = ReconcileReport()
        with timed_operation("rebuild_index", workspace=self.workspace_path.name) as op:
            metadata = self.store.load_or_initialize()
            self.index.clear()

            for path in sorted(metadata.documents):
                doc = metadata.documents[path]
                file_path = self._file_for(path)
                if not file_path.is_file():
                    logger.warning(f"Metadata references missing file {path}; keeping entry")
                    report.dangling.append(path)
                    self.index.index_document(path, doc, "")
                    continue
                try:
                    body = read_body(file_path)
                except (OSError, UnicodeDecodeError) as e:
                    logger.error(f"Cannot read {path} during reindex: {e}")
                    report.skipped.append(path)
                    body = ""
                self.index.index_document(path, doc, body)
                report.indexed.append(path)

            discovered: Dict[str, DocumentMetadata] = {}
            for path, file_path in self._walk_documents():
                if path in metadata.documents:
                    continue
                try:
                    doc, body = self._synthesize(path, file_path)
                except (OSError, UnicodeDecodeError) as e:
                    logger.error(f"Skipping unreadable file {path}: {e}")
                    report.skipped.append(path)
                    continue
                self.index.index_document(path, doc, body)
                discovered[path] = doc
                report.discovered.append(path)

            if discovered:
                logger.info(f"Discovered {len(discovered)} untracked documents")
            metadata.documents.update(discovered)
            self.store.save(metadata)
            self.index.rebuild_tag_counts(metadata)

            op["indexed"] = len(report.indexed)
            op["discovered"] = len(report.discovered)
            op["dangling"] = len(report.dangling)
            op["skipped"] = len(report.skipped)

        logger.info(
            f"Reconciled {self.workspace_path.name}: {len(report.indexed)} indexed, "
            f"{len(report.discovered)} discovered, {len(report.dangling)} dangling, "
            f"{len(report.skipped)} skipped"
        )
        return report

    def _walk_documents(self) -> List[Tuple[str, Path]]:
        """Every regular file under the document root in sorted order.

        Returns:
            (metadata key, absolute path) pairs.
        """
        root = self.documents_path
        if not root.is_dir():
            return []
        found: List[Tuple[str, Path]] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for name in sorted(filenames):
                if name in IGNORED_FILENAMES:
                    continue
                file_path = Path(dirpath) / name
                if not file_path.is_file():
                    continue
                key = file_path.relative_to(self.workspace_path).as_posix()
                found.append((key, file_path))
        found.sort(key=lambda item: item[0])
        return found

    def _synthesize(self, path: str, file_path: Path) -> Tuple[DocumentMetadata, str]:
        """Build metadata for a newly discovered file.

        Frontmatter enriches the record when present but is never required.
        """
        raw = file_path.read_text(encoding="utf-8")
        stat = file_path.stat()
        fields, body = frontmatter_codec.decode(raw)

        mode = DocumentMode.parse(fields.get("mode")) or infer_mode(path)

        title = fields.get("title")
        if not isinstance(title, str) or not title.strip():
            title = Path(path).stem

        language = fields.get("language")
        if not isinstance(language, str) or not language.strip():
            language = None

        custom = {k: v for k, v in fields.items() if k not in _RESERVED_KEYS}

        created = getattr(stat, "st_birthtime", None) or stat.st_mtime
        doc = DocumentMetadata(
            id=derive_document_id(path),
            title=title.strip(),
            mode=mode,
            tags=_tags_from(fields.get("tags")),
            created=timestamp_from_epoch(created),
            modified=timestamp_from_epoch(stat.st_mtime),
            language=language,
            custom_fields=custom or None,
        )
        return doc, body

    def reindex_one(self, path: str) -> None:
        """Refresh the index records of one known document.

        Every write path calls this instead of a full rebuild. A missing
        file is indexed from metadata alone.

        Raises:
            DocumentNotFoundError: If ``path`` is not in the metadata store.
        """
        doc = self.store.get_document(path)
        if doc is None:
            raise DocumentNotFoundError(path)
        file_path = self._file_for(path)
        body = read_body(file_path) if file_path.is_file() else ""
        self.index.index_document(path, doc, body)

    def find_dangling(self) -> List[str]:
        """Known paths whose backing file is gone, sorted."""
        return sorted(
            path for path in self.store.current.documents
            if not self._file_for(path).is_file()
        )

    def prune_dangling(self, paths: Optional[List[str]] = None) -> List[str]:
        """Drop metadata and index entries for documents missing on disk.

        This never runs as part of :meth:`rebuild_index`. A path that has
        reappeared on disk since it was reported is left alone.

        Args:
            paths: Restrict pruning to these paths. Defaults to every
                dangling path.

        Returns:
            The paths that were removed.
        """
        with timed_operation("prune_dangling") as op:
            candidates = self.find_dangling()
            if paths is not None:
                wanted = set(paths)
                candidates = [p for p in candidates if p in wanted]

            if not candidates:
                op["pruned"] = 0
                return []

            metadata = self.store.current
            for path in candidates:
                metadata.documents.pop(path, None)
                self.index.remove_from_index(path)
            self.store.save(metadata)
            self.index.rebuild_tag_counts(metadata)
            op["pruned"] = len(candidates)

        logger.info(f"Pruned {len(candidates)} dangling metadata entries")
        return candidates


def _tags_from(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and not isinstance(v, (list, dict))]
    if isinstance(value, str):
        return value.split(",")
    return [str(value)]
