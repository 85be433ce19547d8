"""Regex pattern search over catalog entries."""

from __future__ import annotations

import re
from collections.abc import Iterable

from .scoring import to_search_result
from .types import CatalogEntry, MatchError, SearchResult

MAX_PATTERN_LENGTH = 200

# Leading marker requesting case-insensitive matching
CASE_INSENSITIVE_MARKER = "(?i)"


def search_with_regex(
    entries: Iterable[CatalogEntry],
    pattern: str,
    limit: int,
) -> list[SearchResult] | MatchError:
    """Search catalog entries with a regular expression.

    The pattern is matched anywhere in each entry's searchable text. Every
    match scores 1, and matches are ordered by id.

    Args:
        entries: Snapshot of catalog entries to search
        pattern: Regex, optionally prefixed with ``(?i)``
        limit: Maximum results to return

    Returns:
        Matching results, or a MatchError if the pattern is too long or
        does not compile.
    """
    if len(pattern) > MAX_PATTERN_LENGTH:
        return MatchError(
            code="pattern_too_long",
            message=f"Pattern exceeds maximum length of {MAX_PATTERN_LENGTH} characters",
        )

    flags = 0
    if pattern.startswith(CASE_INSENSITIVE_MARKER):
        flags = re.IGNORECASE
        pattern = pattern[len(CASE_INSENSITIVE_MARKER) :]

    try:
        compiled = re.compile(pattern, flags)
    except re.error as e:
        return MatchError(code="invalid_pattern", message=str(e))

    matches = sorted(
        (entry for entry in entries if compiled.search(entry.searchable_text)),
        key=lambda entry: entry.id_string,
    )
    return [to_search_result(entry, 1.0) for entry in matches[:limit]]
