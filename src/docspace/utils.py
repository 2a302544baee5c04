"""Utility functions for the Docspace workspace core."""
from pathlib import Path, PurePosixPath

from docspace.exceptions import ErrorCode, ValidationError


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Prevents SQL LIKE pattern injection where user input containing
    '%' or '_' could match unintended patterns.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for safe use in LIKE clauses

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
        >>> escape_like_pattern("file_name")
        'file\\_name'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def sanitize_commit_message(title: str, max_length: int = 100) -> str:
    """Sanitize a document title for use in a git commit message.

    Truncates, flattens newlines, and prefixes titles starting with a dash
    so they cannot be confused for git flags.
    """
    sanitized = title[:max_length]
    sanitized = sanitized.replace("\n", " ").replace("\r", " ")
    if sanitized.startswith("-"):
        sanitized = "_" + sanitized
    return sanitized


def normalize_document_path(path: str) -> str:
    """Normalize a workspace-relative document path to its metadata key.

    Keys always use forward slashes and never start with ``./``. Absolute
    paths and paths that climb out of the workspace are rejected.

    Args:
        path: Path relative to the workspace root, e.g. ``documents/a.md``.

    Returns:
        The normalized key.

    Raises:
        ValidationError: If the path is empty, absolute, or escapes the workspace.
    """
    if not path or not path.strip():
        raise ValidationError("Document path cannot be empty", field="path")

    candidate = path.strip().replace("\\", "/")
    posix = PurePosixPath(candidate)
    if posix.is_absolute() or Path(candidate).is_absolute():
        raise ValidationError(
            "Document path must be relative to the workspace",
            field="path",
            value=path,
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    parts = [p for p in posix.parts if p not in ("", ".")]
    if ".." in parts:
        raise ValidationError(
            "Document path cannot contain '..' (path traversal)",
            field="path",
            value=path,
            code=ErrorCode.PATH_TRAVERSAL_DETECTED,
        )
    if not parts:
        raise ValidationError("Document path cannot be empty", field="path")
    return "/".join(parts)
