"""Read-only queries over an open workspace.

Results reflect the index as of the last write or reconciliation; after
an out-of-band change to the document tree they are stale until the
Reconciler has run.
"""
import logging
from typing import List, Optional

from docspace.models.schema import DocumentEntry, SearchResult, TagCount
from docspace.storage.metadata_store import MetadataStore
from docspace.storage.search_index import SearchIndex

logger = logging.getLogger(__name__)


class QueryService:
    """Thin read layer over the metadata store and search index."""

    def __init__(self, store: MetadataStore, index: SearchIndex, default_limit: int = 50):
        self.store = store
        self.index = index
        self.default_limit = default_limit

    def list_all(self) -> List[DocumentEntry]:
        """Every known document with its path, sorted by path."""
        documents = self.store.current.documents
        return [DocumentEntry(path=path, metadata=documents[path]) for path in sorted(documents)]

    def search(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        """Ranked full-text search; a blank query yields no results."""
        return self.index.search(query, limit=limit or self.default_limit)

    def by_tag(self, tag: str) -> List[SearchResult]:
        return self.index.by_tag(tag)

    def tag_cloud(self) -> List[TagCount]:
        return self.index.tag_counts()
