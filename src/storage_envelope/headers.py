"""
HTTP header utilities for blob transfers.

Blob metadata travels as ``x-ms-meta-<name>`` headers; ranges use the
standard ``Range`` / ``Content-Range`` headers.
"""

import re
from collections.abc import Mapping
from typing import Any

from storage_envelope.constants import HEADER_META_PREFIX

__all__ = [
    "format_range",
    "metadata_from_headers",
    "metadata_to_headers",
    "parse_content_range",
]

_CONTENT_RANGE_RE = re.compile(r"^bytes (\d+)-(\d+)/(\d+|\*)$")


def metadata_to_headers(metadata: Mapping[str, str]) -> dict[str, str]:
    """
    Encode blob metadata as request headers.

    Args:
        metadata: Metadata name -> value

    Returns:
        Dict of ``x-ms-meta-<name>`` headers
    """
    return {f"{HEADER_META_PREFIX}{name}": value for name, value in metadata.items()}


def metadata_from_headers(headers: Mapping[str, Any]) -> dict[str, str]:
    """
    Collect blob metadata from response headers.

    Header names are case-insensitive; metadata names come back lowercased.

    Args:
        headers: Response headers

    Returns:
        Metadata name -> value
    """
    metadata: dict[str, str] = {}
    for name in headers:
        lower = str(name).lower()
        if lower.startswith(HEADER_META_PREFIX):
            metadata[lower[len(HEADER_META_PREFIX) :]] = str(headers[name])
    return metadata


def format_range(start: int, end: int | None = None) -> str:
    """Build a ``Range`` header value; ``end`` is inclusive, None means open-ended."""
    if end is None:
        return f"bytes={start}-"
    return f"bytes={start}-{end}"


def parse_content_range(value: str) -> tuple[int, int, int | None]:
    """
    Parse a ``Content-Range`` header value.

    Args:
        value: e.g. ``bytes 16-95/1024``

    Returns:
        Tuple of (start, end, total); total is None for ``*``

    Raises:
        ValueError: If the value is malformed
    """
    match = _CONTENT_RANGE_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid Content-Range: {value!r}")
    start, end, total = match.groups()
    return int(start), int(end), None if total == "*" else int(total)
