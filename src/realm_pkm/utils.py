"""Utility functions for the Realm PKM service."""
from typing import Iterable, List, Optional, Set

from bs4 import BeautifulSoup


def parse_html(text: Optional[str]) -> BeautifulSoup:
    return BeautifulSoup(text or "", "html.parser")


def strip_html(text: Optional[str]) -> str:
    """Plain text of rich-text content, with entities decoded.

    Tags are dropped, not replaced, so ``"<p>a</p><p>b</p>"`` becomes
    ``"ab"``. Callers that need word boundaries should split on whitespace
    in the original markup as well.
    """
    if not text:
        return ""
    if "<" not in text and "&" not in text:
        return text
    return parse_html(text).get_text()


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
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def normalize_tag(tag: Optional[str]) -> str:
    """Trim and lower-case a tag name. Returns "" for blank input."""
    if tag is None:
        return ""
    return tag.strip().lower()


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Normalize a tag collection, dropping blanks and duplicates.

    First occurrence wins, so the caller's ordering is preserved.
    """
    result: List[str] = []
    seen: Set[str] = set()
    for tag in tags or []:
        name = normalize_tag(tag)
        if name and name not in seen:
            seen.add(name)
            result.append(name)
    return result


def truncate_text(text: str, max_length: int, suffix: str = "...") -> str:
    """Cut text to max_length characters, ending with suffix when cut."""
    if len(text) <= max_length:
        return text
    return text[: max(0, max_length - len(suffix))] + suffix


def word_set(text: Optional[str]) -> Set[str]:
    """Lower-cased whitespace-separated words of plain text."""
    plain = strip_html(text).lower()
    return set(plain.split())


def jaccard_similarity(first: Set[str], second: Set[str]) -> float:
    """Jaccard index of two sets; 0.0 when both are empty."""
    if not first and not second:
        return 0.0
    union = first | second
    return len(first & second) / len(union)
