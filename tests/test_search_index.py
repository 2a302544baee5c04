"""Tests for the SQLite FTS5 search index."""
import pytest

from docspace.models.schema import DocumentMetadata, TagCount, WorkspaceInfo, WorkspaceMetadata


def make_doc(title, tags=(), mode="markdown", modified="2024-01-01T00:00:00.000Z"):
    return DocumentMetadata(
        title=title,
        tags=list(tags),
        mode=mode,
        created="2024-01-01T00:00:00.000Z",
        modified=modified,
    )


class TestSearchIndex:
    """Tests for SearchIndex writes and queries."""

    def test_create_schema_is_idempotent(self, search_index):
        search_index.create_schema()
        search_index.create_schema()
        assert search_index.document_count() == 0

    def test_index_document_replaces_prior_rows(self, search_index):
        search_index.index_document("documents/a.md", make_doc("First"), "old text")
        search_index.index_document("documents/a.md", make_doc("Second"), "new text")

        documents, fts, _ = search_index.snapshot()
        assert len(documents) == 1
        assert len(fts) == 1
        assert documents[0][2] == "Second"
        assert fts[0][2] == "new text"

    def test_remove_from_index(self, search_index):
        search_index.index_document("documents/a.md", make_doc("A"), "text")
        search_index.remove_from_index("documents/a.md")
        assert search_index.indexed_paths() == []
        # Removing again is a no-op
        search_index.remove_from_index("documents/a.md")

    def test_clear(self, search_index):
        for name in ("a", "b", "c"):
            search_index.index_document(f"documents/{name}.md", make_doc(name), name)
        search_index.clear()
        documents, fts, _ = search_index.snapshot()
        assert documents == [] and fts == []

    def test_search_ranks_and_highlights(self, search_index):
        search_index.index_document(
            "documents/fox.md", make_doc("Fox facts", tags=["animals"]),
            "The quick brown fox jumps over the fox den",
        )
        search_index.index_document("documents/dog.md", make_doc("Dogs"), "A lazy dog sleeps")
        search_index.index_document("documents/cat.md", make_doc("Cats"), "Cats ignore everyone")

        results = search_index.search("fox")

        assert [r.path for r in results] == ["documents/fox.md"]
        hit = results[0]
        assert hit.title == "Fox facts"
        assert hit.mode == "markdown"
        assert hit.tags == ["animals"]
        assert hit.score >= 0
        assert "<mark>fox</mark>" in hit.snippet

    def test_search_more_relevant_first(self, search_index):
        search_index.index_document("documents/a.md", make_doc("A"), "garden " * 10)
        search_index.index_document("documents/b.md", make_doc("B"), "garden and much else besides")
        search_index.index_document("documents/c.md", make_doc("C"), "nothing relevant")

        results = search_index.search("garden")

        assert [r.path for r in results] == ["documents/a.md", "documents/b.md"]
        assert results[0].score >= results[1].score

    def test_search_uses_stemming(self, search_index):
        search_index.index_document("documents/a.md", make_doc("A"), "running every morning")
        assert [r.path for r in search_index.search("run")] == ["documents/a.md"]

    def test_search_matches_tags(self, search_index):
        search_index.index_document("documents/a.md", make_doc("A", tags=["zeppelin"]), "body")
        assert [r.path for r in search_index.search("zeppelin")] == ["documents/a.md"]

    @pytest.mark.parametrize("query", ["", "   ", "\n\t"])
    def test_blank_query_returns_empty(self, search_index, query):
        search_index.index_document("documents/a.md", make_doc("A"), "text")
        assert search_index.search(query) == []

    def test_search_respects_limit(self, search_index):
        for i in range(5):
            search_index.index_document(f"documents/{i}.md", make_doc(str(i)), "common word")
        assert len(search_index.search("common", limit=3)) == 3

    def test_search_passes_operators_through(self, search_index):
        search_index.index_document("documents/a.md", make_doc("A"), "apple banana")
        search_index.index_document("documents/b.md", make_doc("B"), "apple cherry")

        assert [r.path for r in search_index.search("apple NOT cherry")] == ["documents/a.md"]
        assert len(search_index.search("appl*")) == 2

    def test_special_characters_are_escaped(self, search_index):
        search_index.index_document("documents/a.md", make_doc("A"), "C++ and c# notes")
        # Must not raise even though these are FTS5 syntax characters
        search_index.search("c++ (notes")
        search_index.search('say "hello')

    def test_invalid_fts_syntax_falls_back(self, search_index):
        search_index.index_document("documents/a.md", make_doc("A"), "alpha beta")
        assert search_index.search("alpha AND") == []

    def test_fallback_search_when_fts_unavailable(self, search_index):
        search_index.index_document("documents/a.md", make_doc("Alpha notes"), "alpha beta")
        search_index.index_document("documents/b.md", make_doc("Other"), "mentions alpha too")
        search_index.fts_available = False

        results = search_index.search("alpha")

        assert [r.path for r in results] == ["documents/a.md", "documents/b.md"]
        assert results[0].score == 2.0
        assert results[1].score == 1.0
        assert results[0].snippet is None

    def test_by_tag_is_substring_metadata_filter(self, search_index):
        search_index.index_document(
            "documents/old.md", make_doc("Old", tags=["python"], modified="2024-01-01T00:00:00.000Z"),
            "no mention here",
        )
        search_index.index_document(
            "documents/new.md", make_doc("New", tags=["pythonic", "web"], modified="2024-06-01T00:00:00.000Z"),
            "no mention here either",
        )
        search_index.index_document("documents/none.md", make_doc("None"), "python in body only")

        results = search_index.by_tag("python")

        assert [r.path for r in results] == ["documents/new.md", "documents/old.md"]
        assert all(r.score == 1.0 for r in results)
        assert all(r.snippet is None for r in results)
        assert results[0].tags == ["pythonic", "web"]

    def test_by_tag_escapes_wildcards(self, search_index):
        search_index.index_document("documents/a.md", make_doc("A", tags=["abc"]), "x")
        assert search_index.by_tag("%") == []
        assert search_index.by_tag("a_c") == []
        assert search_index.by_tag("") == []

    def test_rebuild_tag_counts(self, search_index):
        metadata = WorkspaceMetadata(
            workspace=WorkspaceInfo(name="w"),
            documents={
                "documents/a.md": make_doc("A", tags=["x", "y"]),
                "documents/b.md": make_doc("B", tags=["y"]),
                "documents/c.md": make_doc("C"),
            },
        )
        counts = search_index.rebuild_tag_counts(metadata)

        assert counts == {"x": 1, "y": 2}
        assert search_index.tag_counts() == [TagCount("x", 1), TagCount("y", 2)]

    def test_rebuild_tag_counts_discards_stale_counts(self, search_index):
        search_index.increment_tag_counts(["stale"])
        metadata = WorkspaceMetadata(
            workspace=WorkspaceInfo(name="w"),
            documents={"documents/a.md": make_doc("A", tags=["fresh"])},
        )
        search_index.rebuild_tag_counts(metadata)
        assert search_index.tag_counts() == [TagCount("fresh", 1)]

    def test_increment_tag_counts(self, search_index):
        search_index.increment_tag_counts(["a", "b"])
        search_index.increment_tag_counts(["a"])
        assert search_index.tag_counts() == [TagCount("a", 2), TagCount("b", 1)]

    def test_close_is_idempotent(self, search_index):
        search_index.close()
        search_index.close()
        assert search_index.closed
