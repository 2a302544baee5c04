"""Data models for the Docspace workspace core."""

import datetime
import json
import os
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

METADATA_SCHEMA_VERSION = "1.0"

# Namespace for ids derived from document paths during discovery
_DOCUMENT_ID_NAMESPACE = uuid.UUID("6f0c5e1a-3d2b-5b8e-9a47-2f1d0c6e4b93")


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def format_timestamp(dt_value: datetime.datetime) -> str:
    """Format a datetime the way the metadata file stores it.

    Millisecond precision with a trailing ``Z``, e.g.
    ``2024-05-01T09:30:00.000Z``. Naive datetimes are treated as UTC.
    """
    if dt_value.tzinfo is None:
        dt_value = dt_value.replace(tzinfo=timezone.utc)
    utc_value = dt_value.astimezone(timezone.utc)
    return utc_value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_timestamp() -> str:
    """Current time as a metadata timestamp string."""
    return format_timestamp(utc_now())


def timestamp_from_epoch(seconds: float) -> str:
    """Convert a filesystem epoch timestamp to a metadata timestamp string."""
    return format_timestamp(datetime.datetime.fromtimestamp(seconds, tz=timezone.utc))


# Thread-safe counter for uniqueness (seeded from PID for cross-process safety)
_id_lock = threading.Lock()
_last_timestamp = 0
_counter = (os.getpid() * 7) % 1_000_000


def generate_id() -> str:
    """Generate a timestamp-based document ID that is never reused.

    Returns:
        A string in format "YYYYMMDDTHHMMSSsssssscccccc": date, ``T``,
        time, 6-digit microseconds and a 6-digit counter for
        same-microsecond uniqueness.
    """
    global _last_timestamp, _counter

    with _id_lock:
        now = utc_now()
        current_timestamp = int(now.timestamp() * 1_000_000)

        if current_timestamp == _last_timestamp:
            _counter += 1
        else:
            _last_timestamp = current_timestamp
            _counter = (os.getpid() * 7) % 1_000_000

        _counter %= 1_000_000

        date_time = now.strftime("%Y%m%dT%H%M%S")
        return f"{date_time}{now.microsecond:06d}{_counter:06d}"


def derive_document_id(path: str) -> str:
    """Deterministic ID for a document discovered on disk.

    The same path always yields the same ID, so repeated reconciliation
    never mints a second identity for a file.
    """
    return uuid.uuid5(_DOCUMENT_ID_NAMESPACE, path).hex


class DocumentMode(str, Enum):
    """Editor mode a document is opened in."""

    RICH_NOTES = "notes"
    MARKDOWN = "markdown"
    CODE = "code"

    @classmethod
    def parse(cls, value: Any) -> Optional["DocumentMode"]:
        """Parse a mode from a loosely-typed frontmatter value.

        Accepts the stored values plus the ``rich-notes`` spelling.
        Returns None for anything unrecognised.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower().replace("_", "-")
        if normalized in ("rich-notes", "richnotes", "rich"):
            return cls.RICH_NOTES
        try:
            return cls(normalized)
        except ValueError:
            return None


def dedupe_tags(tags: List[Any]) -> List[str]:
    """Strip, stringify and de-duplicate tags, keeping first-seen order."""
    seen: Dict[str, None] = {}
    for tag in tags:
        if tag is None:
            continue
        name = str(tag).strip()
        if name and name not in seen:
            seen[name] = None
    return list(seen)


class DocumentMetadata(BaseModel):
    """Metadata for one document, keyed by its workspace-relative path."""

    id: str = Field(default_factory=generate_id, description="Opaque unique ID")
    title: str = Field(..., description="Human label")
    tags: List[str] = Field(default_factory=list, description="Ordered, duplicate-free tags")
    created: str = Field(default_factory=utc_timestamp, description="Creation time, immutable")
    modified: str = Field(default_factory=utc_timestamp, description="Last write time")
    mode: DocumentMode = Field(default=DocumentMode.MARKDOWN, description="Editor mode")
    language: Optional[str] = Field(
        default=None, description="Source language, meaningful for code mode"
    )
    custom_fields: Optional[Dict[str, Any]] = Field(
        default=None,
        alias="customFields",
        description="Extra frontmatter fields carried with the document",
    )

    # Unknown keys written by other tools are kept so a save never drops them
    model_config = {
        "validate_assignment": True,
        "populate_by_name": True,
        "extra": "allow",
    }

    @field_validator("tags", mode="before")
    @classmethod
    def validate_tags(cls, v: Any) -> List[str]:
        """Accept a list or a comma-separated string and de-duplicate."""
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        if not isinstance(v, (list, tuple)):
            v = [v]
        return dedupe_tags(list(v))

    @field_validator("mode", mode="before")
    @classmethod
    def validate_mode(cls, v: Any) -> DocumentMode:
        """Accept the ``rich-notes`` spelling alongside stored values."""
        mode = DocumentMode.parse(v)
        if mode is None:
            raise ValueError(f"Unknown document mode: {v!r}")
        return mode


class WorkspaceInfo(BaseModel):
    """Workspace-level descriptive fields, set once at creation."""

    name: str
    created: str = Field(default_factory=utc_timestamp)
    description: Optional[str] = None

    model_config = {"extra": "allow"}


class WorkspaceMetadata(BaseModel):
    """Root object persisted in the metadata sidecar file."""

    version: str = METADATA_SCHEMA_VERSION
    workspace: WorkspaceInfo
    documents: Dict[str, DocumentMetadata] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    def to_json(self) -> str:
        """Serialize deterministically: same model, same bytes."""
        payload = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


@dataclass
class DocumentEntry:
    """A document as listed to the editor: its path plus its metadata."""

    path: str
    metadata: DocumentMetadata

    def to_dict(self) -> Dict[str, Any]:
        """Flatten into a single dictionary."""
        return {
            "path": self.path,
            **self.metadata.model_dump(mode="json", by_alias=True, exclude_none=True),
        }


@dataclass
class SearchResult:
    """A search or tag-lookup hit."""

    path: str
    title: str
    mode: str
    tags: List[str]
    modified: str
    score: float
    snippet: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return asdict(self)


@dataclass(frozen=True)
class TagCount:
    """Number of documents carrying a tag."""

    name: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "count": self.count}


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation pass.

    Attributes:
        indexed: Paths indexed from existing metadata.
        discovered: Paths found on disk and added to the metadata.
        dangling: Metadata paths whose file is missing (kept, not pruned).
        skipped: Files that could not be read and were left out.
    """

    indexed: List[str] = field(default_factory=list)
    discovered: List[str] = field(default_factory=list)
    dangling: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
