"""Tests for the JSON metadata store."""
import json
import re

import pytest

from docspace.exceptions import (
    DocumentNotFoundError,
    ErrorCode,
    MetadataCorruptedError,
    StorageError,
)
from docspace.models.schema import DocumentMode
from docspace.storage.metadata_store import MetadataStore


class TestMetadataStore:
    """Tests for MetadataStore."""

    @pytest.fixture
    def store_path(self, temp_workspace):
        return temp_workspace / ".docspace-metadata.json"

    def test_load_missing_file_raises(self, store_path):
        store = MetadataStore(store_path)
        with pytest.raises(StorageError) as exc_info:
            store.load()
        assert exc_info.value.code == ErrorCode.METADATA_MISSING
        assert not store_path.exists()

    def test_load_or_initialize_creates_default(self, store_path):
        store = MetadataStore(store_path)
        metadata = store.load_or_initialize()

        assert store_path.exists()
        assert metadata.version == "1.0"
        assert metadata.workspace.name == "workspace"
        assert metadata.documents == {}

        on_disk = json.loads(store_path.read_text(encoding="utf-8"))
        assert on_disk["workspace"]["name"] == "workspace"
        assert on_disk["documents"] == {}
        assert "description" not in on_disk["workspace"]

    def test_load_or_initialize_keeps_existing(self, store_path):
        first = MetadataStore(store_path)
        first.load_or_initialize()
        first.upsert_document("documents/a.md", title="A")

        second = MetadataStore(store_path)
        metadata = second.load_or_initialize()
        assert "documents/a.md" in metadata.documents

    @pytest.mark.parametrize("content", [
        "{not json",
        "[]",
        '{"workspace": {"created": "x"}}',
        '{"workspace": {"name": "w"}, "documents": {"a.md": {"title": "A", "mode": "slides"}}}',
    ])
    def test_corrupt_file_fails_closed(self, store_path, content):
        store_path.write_text(content, encoding="utf-8")
        store = MetadataStore(store_path)

        with pytest.raises(MetadataCorruptedError) as exc_info:
            store.load_or_initialize()

        assert exc_info.value.code == ErrorCode.METADATA_CORRUPTED
        # The corrupt file is never replaced
        assert store_path.read_text(encoding="utf-8") == content

    def test_upsert_creates_record(self, metadata_store):
        doc = metadata_store.upsert_document(
            "documents/notes.md", title="Notes", tags=["a", "b", "a"]
        )

        assert doc.id
        assert doc.title == "Notes"
        assert doc.tags == ["a", "b"]
        assert doc.mode == DocumentMode.MARKDOWN
        assert doc.created == doc.modified
        assert metadata_store.get_document("documents/notes.md") == doc

    def test_upsert_defaults_title_to_stem(self, metadata_store):
        doc = metadata_store.upsert_document("documents/deep/report.txt")
        assert doc.title == "report"

    def test_upsert_merges_and_keeps_identity(self, metadata_store):
        created = metadata_store.upsert_document(
            "documents/a.md", title="A", tags=["x"], language="python"
        )
        updated = metadata_store.upsert_document(
            "documents/a.md", title="A2", id="spoofed", created="1999-01-01T00:00:00.000Z"
        )

        assert updated.id == created.id
        assert updated.created == created.created
        assert updated.title == "A2"
        assert updated.tags == ["x"]
        assert updated.language == "python"
        assert updated.modified >= created.modified

    def test_upsert_persists(self, metadata_store):
        metadata_store.upsert_document("documents/a.md", title="A", mode="code")

        reloaded = MetadataStore(metadata_store.metadata_path).load()
        doc = reloaded.documents["documents/a.md"]
        assert doc.title == "A"
        assert doc.mode == DocumentMode.CODE

    def test_ids_are_never_reused(self, metadata_store):
        ids = {metadata_store.upsert_document(f"documents/{i}.md").id for i in range(20)}
        assert len(ids) == 20

    def test_ids_are_timestamp_plus_counter(self, metadata_store):
        doc = metadata_store.upsert_document("documents/a.md")
        # YYYYMMDDTHHMMSS, then 6-digit microseconds and a 6-digit counter
        assert re.fullmatch(r"\d{8}T\d{6}\d{6}\d{6}", doc.id)

    def test_remove_document(self, metadata_store):
        metadata_store.upsert_document("documents/a.md", title="A")
        removed = metadata_store.remove_document("documents/a.md")

        assert removed.title == "A"
        assert metadata_store.get_document("documents/a.md") is None
        reloaded = MetadataStore(metadata_store.metadata_path).load()
        assert reloaded.documents == {}

    def test_remove_unknown_raises_not_found(self, metadata_store):
        with pytest.raises(DocumentNotFoundError) as exc_info:
            metadata_store.remove_document("documents/missing.md")
        assert exc_info.value.code == ErrorCode.DOCUMENT_NOT_FOUND

    def test_save_is_byte_stable(self, metadata_store):
        metadata_store.upsert_document("documents/a.md", title="A", custom_fields={"k": 1})
        before = metadata_store.metadata_path.read_bytes()

        store = MetadataStore(metadata_store.metadata_path)
        store.save(store.load())
        assert metadata_store.metadata_path.read_bytes() == before

    def test_unknown_keys_survive_save(self, store_path):
        store_path.write_text(json.dumps({
            "version": "1.0",
            "workspace": {"name": "w", "created": "2024-01-01T00:00:00.000Z", "theme": "dark"},
            "documents": {
                "documents/a.md": {
                    "id": "1", "title": "A", "tags": [], "mode": "markdown",
                    "created": "2024-01-01T00:00:00.000Z",
                    "modified": "2024-01-01T00:00:00.000Z",
                    "pinned": True,
                }
            },
        }), encoding="utf-8")

        store = MetadataStore(store_path)
        store.save(store.load())

        on_disk = json.loads(store_path.read_text(encoding="utf-8"))
        assert on_disk["workspace"]["theme"] == "dark"
        assert on_disk["documents"]["documents/a.md"]["pinned"] is True

    def test_rich_notes_spelling_accepted(self, metadata_store):
        doc = metadata_store.upsert_document("documents/page.html", mode="rich-notes")
        assert doc.mode == DocumentMode.RICH_NOTES

    def test_no_temp_files_left_behind(self, metadata_store):
        metadata_store.upsert_document("documents/a.md")
        leftovers = [
            p for p in metadata_store.metadata_path.parent.iterdir()
            if p.name.endswith(".tmp")
        ]
        assert leftovers == []
