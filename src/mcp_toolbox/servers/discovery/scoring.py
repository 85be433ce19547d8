"""Tokenization and result shaping shared by both search modes."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from .types import SearchResult

if TYPE_CHECKING:
    from .types import CatalogEntry

# Anything that is neither a word character nor whitespace becomes a separator
_NON_WORD = re.compile(r"[^\w\s]")

OPTIONAL_MARKER = "optional"


def tokenize(text: str) -> list[str]:
    """Lowercase text and split it into word tokens.

    Punctuation is treated as a separator, so ``"get_time(now)"`` yields
    ``["get_time", "now"]``. No stemming and no stopword removal.

    Args:
        text: Arbitrary text

    Returns:
        Tokens in the order they appear. Empty input yields an empty list.
    """
    return _NON_WORD.sub(" ", text.lower()).split()


def _is_optional(description: str | None) -> bool:
    return bool(description) and OPTIONAL_MARKER in description.lower()


def build_signature(entry: CatalogEntry) -> str:
    """Build a condensed call shape such as ``send_email(to, body?)``.

    An argument is marked with ``?`` when its description mentions
    "optional" in any letter case.
    """
    args = ", ".join(
        f"{arg.name}?" if _is_optional(arg.description) else arg.name
        for arg in entry.arguments
    )
    return f"{entry.id.name}({args})"


def to_search_result(entry: CatalogEntry, score: float) -> SearchResult:
    """Shape a scored catalog entry into a search result."""
    return SearchResult(
        tool=entry.id,
        id_string=entry.id_string,
        score=score,
        preview=entry.description,
        signature=build_signature(entry),
    )
