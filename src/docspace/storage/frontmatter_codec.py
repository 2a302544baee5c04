"""Frontmatter parsing and serialization for workspace documents.

A document may start with a header block delimited by ``---`` lines. Each
header line is ``key: value`` where the value is parsed as a JSON scalar
or array when possible and kept as a raw string otherwise. A key with an
empty value followed by YAML ``- item`` lines takes those items as a list.

Documents synced from external sources are not always well formed. The
decoder therefore accepts a closing delimiter that has body text glued to
it (``---content``) and keeps that text as the first line of the body.
Decoding never raises: a header that cannot be delimited is treated as
no header at all.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

logger = logging.getLogger(__name__)

DELIMITER = "---"

FrontmatterScalar = Union[str, int, float, bool, None]
FrontmatterValue = Union[FrontmatterScalar, List[Any]]


@dataclass
class ParsedDocument:
    """Result of decoding a document: header fields and body text."""

    fields: Dict[str, FrontmatterValue] = field(default_factory=dict)
    body: str = ""
    has_header: bool = False

    def __iter__(self):
        # Allows ``fields, body = decode(raw)``
        yield self.fields
        yield self.body


def parse_value(raw: str) -> FrontmatterValue:
    """Parse a header value: JSON when it parses, the raw string otherwise."""
    if raw == "":
        return ""
    try:
        value = json.loads(raw)
    except (ValueError, RecursionError):
        return raw
    if isinstance(value, dict):
        # Nested mappings are outside the supported value types
        return raw
    return value


def _find_closing_line(lines: List[str]) -> Tuple[int, bool]:
    """Locate the closing delimiter.

    Returns:
        (index, malformed) where index is -1 when no closing line exists and
        malformed is True when body text shares the closing line.
    """
    for i in range(1, len(lines)):
        stripped = lines[i].strip()
        if stripped == DELIMITER:
            return i, False
        if stripped.startswith(DELIMITER):
            return i, True
    return -1, False


def _block_sequence(lines: List[str]) -> Optional[List[Any]]:
    """Parse ``- item`` lines into a list of scalars.

    Notes exported by other tools often write list values as a YAML block
    sequence under an empty key. Items that are not scalars are dropped;
    dates and other YAML-only types become strings.
    """
    try:
        value = yaml.safe_load("\n".join(lines))
    except yaml.YAMLError as e:
        logger.debug(f"Unparseable list in frontmatter: {e}")
        return None
    if not isinstance(value, list):
        return None
    items: List[Any] = []
    for item in value:
        if isinstance(item, (dict, list)):
            continue
        if item is None or isinstance(item, (str, int, float, bool)):
            items.append(item)
        else:
            items.append(str(item))
    return items


def _is_sequence_item(line: str) -> bool:
    stripped = line.strip()
    return line[:1] in (" ", "\t", "-") and (stripped == "-" or stripped.startswith("- "))


def _parse_header(lines: List[str]) -> Dict[str, FrontmatterValue]:
    fields: Dict[str, FrontmatterValue] = {}
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        colon = line.find(":")
        if colon == -1:
            continue
        key = line[:colon].strip()
        if not key:
            continue
        value = line[colon + 1:].strip()
        fields[key] = parse_value(value)
        if value:
            continue

        block: List[str] = []
        while i < len(lines) and _is_sequence_item(lines[i]):
            block.append(lines[i])
            i += 1
        if block:
            items = _block_sequence(block)
            if items is not None:
                fields[key] = items

    return fields


def decode(raw: str) -> ParsedDocument:
    """Split raw document text into header fields and body.

    Args:
        raw: Full file content.

    Returns:
        ParsedDocument. When there is no usable header the fields are empty
        and the body is ``raw`` unchanged.
    """
    lead = raw.lstrip().lstrip("\ufeff").lstrip()
    if not lead.startswith(DELIMITER):
        return ParsedDocument(fields={}, body=raw)

    lines = lead.split("\n")
    end, malformed = _find_closing_line(lines)
    if end == -1:
        logger.debug("Frontmatter opened but never closed; treating as plain text")
        return ParsedDocument(fields={}, body=raw)

    fields = _parse_header([line.rstrip("\r") for line in lines[1:end]])

    if malformed:
        closing = lines[end]
        on_closing = closing[closing.index(DELIMITER) + len(DELIMITER):].strip()
        after = "\n".join(lines[end + 1:]).strip()
        if on_closing and after:
            body = f"{on_closing}\n{after}"
        else:
            body = on_closing or after
    else:
        # Everything after the closing line, whitespace included
        body = "\n".join(lines[end + 1:])

    return ParsedDocument(fields=fields, body=body, has_header=True)


def encode(fields: Dict[str, FrontmatterValue], body: str) -> str:
    """Serialize header fields and body into document text.

    Values are written as JSON so that :func:`decode` reads back the same
    types. An empty field map produces the body alone.
    """
    if not fields:
        return body
    header = [DELIMITER]
    for key, value in fields.items():
        header.append(f"{key}: {json.dumps(value, ensure_ascii=False)}")
    header.append(DELIMITER)
    return "\n".join(header) + "\n" + body


def strip(raw: str) -> str:
    """Return only the body of a document."""
    return decode(raw).body
