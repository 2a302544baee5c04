"""SQLite FTS5 search index over workspace documents.

Holds three tables: an exact-match ``documents`` table, the tokenized
``documents_fts`` table and the ``tags`` count table. All of it can be
regenerated from the metadata file plus document contents; the Reconciler
is the only code that does a full regeneration.
"""
import logging
import re
import sqlite3
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError
from sqlalchemy.exc import SQLAlchemyError

from docspace.exceptions import ErrorCode, SearchError, StorageError
from docspace.models.db_models import Base, get_session_factory, init_fts5, init_index_db
from docspace.models.schema import DocumentMetadata, SearchResult, TagCount, WorkspaceMetadata
from docspace.utils import escape_like_pattern

logger = logging.getLogger(__name__)

SNIPPET_TOKENS = 32


def _split_tags(joined: Optional[str]) -> List[str]:
    return [t for t in (joined or "").split(",") if t]


class SearchIndex:
    """Search index with graceful degradation to LIKE scans.

    Args:
        engine: SQLAlchemy engine used for database access.
        session_factory: Callable returning a context-manager session.
    """

    def __init__(self, engine: Any, session_factory=None) -> None:
        self.engine = engine
        self._session_factory = session_factory or get_session_factory(engine)
        self.fts_available: bool = True
        self._closed = False

    @classmethod
    def open(cls, db_url: str) -> "SearchIndex":
        """Open (creating if needed) the index database at ``db_url``."""
        engine = init_index_db(db_url)
        logger.debug(f"Opened search index at {db_url}")
        return cls(engine)

    # ------------------------------------------------------------------
    # Schema and writes
    # ------------------------------------------------------------------

    def create_schema(self) -> None:
        """Create all three tables if they do not exist yet."""
        Base.metadata.create_all(self.engine)
        init_fts5(self.engine)

    def index_document(self, path: str, metadata: DocumentMetadata, content: str) -> None:
        """Replace every index record for ``path``.

        Prior rows are deleted from both tables and fresh ones inserted in a
        single transaction, so a path never has two full-text rows.
        """
        params = {
            "path": path,
            "id": metadata.id,
            "title": metadata.title,
            "mode": metadata.mode.value,
            "tags": ",".join(metadata.tags),
            "fts_tags": " ".join(metadata.tags),
            "created": metadata.created,
            "modified": metadata.modified,
            "content": content,
        }
        try:
            with self._session_factory() as session:
                self._delete_path(session, path)
                session.execute(
                    text("""
                        INSERT INTO documents (path, id, title, mode, tags, created, modified)
                        VALUES (:path, :id, :title, :mode, :tags, :created, :modified)
                    """),
                    params,
                )
                session.execute(
                    text("""
                        INSERT INTO documents_fts (path, title, content, tags)
                        VALUES (:path, :title, :content, :fts_tags)
                    """),
                    params,
                )
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to index document: {e}",
                operation="index_document",
                path=path,
                code=ErrorCode.INDEX_WRITE_FAILED,
                original_error=e,
            ) from e

    def remove_from_index(self, path: str) -> None:
        """Delete every index record for ``path``; no-op when absent."""
        try:
            with self._session_factory() as session:
                self._delete_path(session, path)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to remove document from index: {e}",
                operation="remove_from_index",
                path=path,
                code=ErrorCode.INDEX_WRITE_FAILED,
                original_error=e,
            ) from e

    def clear(self) -> None:
        """Empty the exact-match and full-text tables."""
        try:
            with self._session_factory() as session:
                session.execute(text("DELETE FROM documents"))
                session.execute(text("DELETE FROM documents_fts"))
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to clear search index: {e}",
                operation="clear_index",
                code=ErrorCode.INDEX_WRITE_FAILED,
                original_error=e,
            ) from e
        logger.debug("Cleared search index tables")

    @staticmethod
    def _delete_path(session, path: str) -> None:
        session.execute(text("DELETE FROM documents WHERE path = :path"), {"path": path})
        session.execute(text("DELETE FROM documents_fts WHERE path = :path"), {"path": path})

    # ------------------------------------------------------------------
    # Tag counts
    # ------------------------------------------------------------------

    def rebuild_tag_counts(self, metadata: WorkspaceMetadata) -> Dict[str, int]:
        """Recount tags from scratch using the metadata as the only input.

        Returns:
            Mapping of tag name to document count.
        """
        counts: Counter = Counter()
        for doc in metadata.documents.values():
            counts.update(set(doc.tags))

        try:
            with self._session_factory() as session:
                session.execute(text("DELETE FROM tags"))
                for name in sorted(counts):
                    session.execute(
                        text("INSERT INTO tags (name, count) VALUES (:name, :count)"),
                        {"name": name, "count": counts[name]},
                    )
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to rebuild tag counts: {e}",
                operation="rebuild_tag_counts",
                code=ErrorCode.INDEX_WRITE_FAILED,
                original_error=e,
            ) from e

        logger.debug(f"Rebuilt tag counts for {len(counts)} tags")
        return dict(counts)

    def increment_tag_counts(self, tags: Iterable[str]) -> None:
        """Add one to each tag's count.

        Only valid when a single new document carrying ``tags`` was added;
        any other change needs :meth:`rebuild_tag_counts`.
        """
        try:
            with self._session_factory() as session:
                for name in set(tags):
                    session.execute(
                        text("""
                            INSERT INTO tags (name, count) VALUES (:name, 1)
                            ON CONFLICT(name) DO UPDATE SET count = count + 1
                        """),
                        {"name": name},
                    )
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to update tag counts: {e}",
                operation="increment_tag_counts",
                code=ErrorCode.INDEX_WRITE_FAILED,
                original_error=e,
            ) from e

    def tag_counts(self) -> List[TagCount]:
        """All tags with their counts, sorted by name."""
        with self._session_factory() as session:
            rows = session.execute(
                text("SELECT name, count FROM tags WHERE count > 0 ORDER BY name")
            ).fetchall()
        return [TagCount(name=row[0], count=row[1]) for row in rows]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def search(self, query: str, limit: int = 50, literal: Optional[bool] = None) -> List[SearchResult]:
        """Ranked full-text search with graceful fallback.

        Args:
            query: Search text. FTS5 operator syntax is passed through.
            limit: Maximum results.
            literal: None = auto-detect, True = escape, False = preserve syntax.

        Returns:
            Results ordered by relevance, best first. Empty for a blank query.
        """
        if not query or not query.strip():
            return []
        if not self.fts_available:
            logger.debug("FTS5 unavailable, using fallback search")
            return self._fallback_text_search(query, limit)

        if literal is None:
            literal = self._should_escape(query)
        safe_query = self._escape_query(query) if literal else query

        sql = text("""
            SELECT
                documents.path, documents.title, documents.mode, documents.tags,
                documents.modified,
                bm25(documents_fts) AS rank,
                snippet(documents_fts, 2, '<mark>', '</mark>', '...', :tokens) AS snippet
            FROM documents_fts
            JOIN documents ON documents.path = documents_fts.path
            WHERE documents_fts MATCH :query
            ORDER BY rank, documents.path
            LIMIT :limit
        """)

        results: List[SearchResult] = []
        with self._session_factory() as session:
            try:
                rows = session.execute(
                    sql, {"query": safe_query, "limit": limit, "tokens": SNIPPET_TOKENS}
                ).fetchall()
            except (sqlite3.OperationalError, SQLAlchemyOperationalError) as e:
                logger.warning(f"FTS5 query failed for '{query}': {e}. Using fallback search.")
                return self._fallback_text_search(query, limit)
            except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
                error_msg = str(e).lower()
                if "malformed" in error_msg or "corrupt" in error_msg:
                    logger.error(
                        f"FTS5 corruption detected: {e}. Disabling FTS5 until the "
                        f"index is rebuilt."
                    )
                    self.fts_available = False
                else:
                    logger.error(f"FTS5 database error: {e}. Using fallback search.")
                return self._fallback_text_search(query, limit)

            for row in rows:
                results.append(SearchResult(
                    path=row[0],
                    title=row[1],
                    mode=row[2],
                    tags=_split_tags(row[3]),
                    modified=row[4],
                    # bm25 is negative, lower is better
                    score=-float(row[5]),
                    snippet=row[6],
                ))

        logger.debug(f"Search for '{query}' returned {len(results)} results")
        return results

    def by_tag(self, tag: str) -> List[SearchResult]:
        """Documents whose tag column contains ``tag``, newest first.

        This is a metadata filter: every hit scores 1.0 and has no snippet.
        """
        if not tag or not tag.strip():
            return []
        term = f"%{escape_like_pattern(tag.strip())}%"
        try:
            with self._session_factory() as session:
                rows = session.execute(
                    text("""
                        SELECT path, title, mode, tags, modified
                        FROM documents
                        WHERE tags LIKE :term ESCAPE '\\'
                        ORDER BY modified DESC, path
                    """),
                    {"term": term},
                ).fetchall()
        except SQLAlchemyError as e:
            raise SearchError(f"Tag lookup failed: {e}", query=tag) from e

        return [
            SearchResult(
                path=row[0],
                title=row[1],
                mode=row[2],
                tags=_split_tags(row[3]),
                modified=row[4],
                score=1.0,
            )
            for row in rows
        ]

    def indexed_paths(self) -> List[str]:
        """Paths present in the exact-match table, sorted."""
        with self._session_factory() as session:
            rows = session.execute(text("SELECT path FROM documents ORDER BY path")).fetchall()
        return [row[0] for row in rows]

    def document_count(self) -> int:
        with self._session_factory() as session:
            return session.execute(text("SELECT COUNT(*) FROM documents")).scalar() or 0

    def snapshot(self) -> Tuple[List[tuple], List[tuple], List[tuple]]:
        """Full contents of all three tables in a stable order."""
        with self._session_factory() as session:
            documents = session.execute(text(
                "SELECT path, id, title, mode, tags, created, modified "
                "FROM documents ORDER BY path"
            )).fetchall()
            fts = session.execute(text(
                "SELECT path, title, content, tags FROM documents_fts ORDER BY path"
            )).fetchall()
            tags = session.execute(text("SELECT name, count FROM tags ORDER BY name")).fetchall()
        return (
            [tuple(r) for r in documents],
            [tuple(r) for r in fts],
            [tuple(r) for r in tags],
        )

    def close(self) -> None:
        """Release every pooled connection. Safe to call twice."""
        if self._closed:
            return
        self.engine.dispose()
        self._closed = True
        logger.debug("Closed search index")

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Query escaping helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _should_escape(query: str) -> bool:
        """Auto-detect whether a query needs FTS5 escaping."""
        fts5_keywords = {"AND", "OR", "NOT", "NEAR"}
        words = query.split()
        if any(word in fts5_keywords for word in words):
            return False
        if query.count('"') >= 2:
            return False
        if re.search(r"\b\w+\*", query):
            return False
        if re.search(r"\b\w+:", query):
            return False
        return True

    @staticmethod
    def _escape_query(query: str) -> str:
        """Escape a query for FTS5 literal matching (quoted phrase)."""
        result = query.replace('"', '""')
        result = re.sub(r"[*^]", "", result)
        return f'"{result}"'

    def _fallback_text_search(self, query: str, limit: int = 50) -> List[SearchResult]:
        """LIKE-based fallback when FTS5 is unavailable or rejects the query."""
        term = f"%{escape_like_pattern(query.strip())}%"
        results: List[SearchResult] = []
        try:
            with self._session_factory() as session:
                rows = session.execute(
                    text("""
                        SELECT documents.path, documents.title, documents.mode,
                               documents.tags, documents.modified
                        FROM documents_fts
                        JOIN documents ON documents.path = documents_fts.path
                        WHERE documents_fts.title LIKE :term ESCAPE '\\'
                           OR documents_fts.content LIKE :term ESCAPE '\\'
                        ORDER BY documents.path
                        LIMIT :limit
                    """),
                    {"term": term, "limit": limit},
                ).fetchall()
        except SQLAlchemyError as e:
            raise SearchError(
                f"Fallback text search failed: {e}",
                query=query,
                code=ErrorCode.SEARCH_FAILED,
            ) from e

        needle = query.strip().lower()
        for row in rows:
            title_match = needle in (row[1] or "").lower()
            results.append(SearchResult(
                path=row[0],
                title=row[1],
                mode=row[2],
                tags=_split_tags(row[3]),
                modified=row[4],
                score=2.0 if title_match else 1.0,
            ))
        results.sort(key=lambda r: -r.score)

        logger.debug(f"Fallback search returned {len(results)} results for query '{query}'")
        return results
