"""Content analysis for note bodies.

Notes carry rich text (HTML). Everything here works on the plain-text
projection of that markup: metrics, automatic summaries, hashtag
extraction and a rough quality score.
"""
import hashlib
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from realm_pkm.utils import normalize_tags, parse_html, strip_html, truncate_text

WORDS_PER_MINUTE = 200
MAX_TITLE_LENGTH = 200
MAX_SUMMARY_LENGTH = 500
MAX_CONTENT_LENGTH = 100_000
DISPLAY_SUMMARY_LENGTH = 150

_HEADINGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
_UNSAFE_TAGS = ["script", "style"]
_HASHTAG_PATTERN = re.compile(r"(?<![&\w])#(\w+)")
_EDGE_SEPARATORS = re.compile(r"^[\s,;:\-]+|[\s,;:\-]+$")


@dataclass
class ContentMetrics:
    """Size measurements of a note body."""

    word_count: int
    reading_time: int
    sentence_count: int
    paragraph_count: int


@dataclass
class ContentStructure:
    """Counts of structural HTML elements."""

    heading_count: int
    link_count: int
    list_count: int


def count_words(content: Optional[str]) -> int:
    plain = strip_html(content).strip()
    if not plain:
        return 0
    return len(plain.split())


def reading_time_minutes(word_count: int) -> int:
    """Whole minutes to read word_count words; at least 1 for any content."""
    if word_count <= 0:
        return 0
    return max(1, word_count // WORDS_PER_MINUTE)


def calculate_metrics(content: Optional[str]) -> ContentMetrics:
    plain = strip_html(content).strip()
    words = count_words(content)
    sentences = len([s for s in re.split(r"[.!?]+", plain) if s.strip()])
    paragraphs = len(parse_html(content).find_all("p"))
    if paragraphs == 0 and plain:
        paragraphs = len([p for p in plain.split("\n\n") if p.strip()])
    return ContentMetrics(
        word_count=words,
        reading_time=reading_time_minutes(words),
        sentence_count=sentences,
        paragraph_count=paragraphs,
    )


def analyze_structure(content: Optional[str]) -> ContentStructure:
    soup = parse_html(content)
    return ContentStructure(
        heading_count=len(soup.find_all(_HEADINGS)),
        link_count=len(soup.find_all("a")),
        list_count=len(soup.find_all(["ul", "ol"])),
    )


def generate_summary(content: Optional[str]) -> str:
    """Build an automatic summary from the leading sentences.

    Short bodies are returned whole. Longer ones keep as many complete
    sentences as fit in 147 characters and end with "...". A first
    sentence that is already too long is hard-truncated instead.
    """
    plain = " ".join(strip_html(content).split())
    if len(plain) <= DISPLAY_SUMMARY_LENGTH:
        return plain

    summary = ""
    for sentence in plain.split(". "):
        if len(summary) + len(sentence) > DISPLAY_SUMMARY_LENGTH - 3:
            break
        summary = f"{summary}. {sentence}" if summary else sentence
    if not summary:
        return truncate_text(plain, DISPLAY_SUMMARY_LENGTH)
    return summary + "..."


def display_summary(summary: Optional[str], content: Optional[str]) -> str:
    """Summary shown in lists: explicit summary, else a content preview."""
    if summary and summary.strip():
        return summary
    plain = strip_html(content).strip()
    if not plain:
        return "No content"
    return truncate_text(plain, DISPLAY_SUMMARY_LENGTH)


def quality_score(content: Optional[str], tags: Iterable[str]) -> float:
    """Heuristic 0..1 score rewarding length, structure and tagging."""
    score = 0.0
    words = count_words(content)
    if 100 <= words <= 2000:
        score += 0.3
    elif words > 50:
        score += 0.15

    structure = analyze_structure(content)
    if structure.heading_count > 0:
        score += 0.2
    if structure.link_count > 0:
        score += 0.15
    if structure.list_count > 0:
        score += 0.1

    tag_list = list(tags)
    if tag_list:
        score += min(0.25, len(tag_list) * 0.05)
    return min(1.0, score)


def preprocess_title(title: str) -> str:
    """Collapse whitespace and trim leading/trailing separator characters."""
    collapsed = " ".join(title.split())
    return _EDGE_SEPARATORS.sub("", collapsed)


def preprocess_content(content: Optional[str]) -> str:
    """Trim and drop <script> and <style> elements.

    Markup without them is returned as written.
    """
    if not content:
        return ""
    content = content.strip()
    soup = parse_html(content)
    unsafe = soup.find_all(_UNSAFE_TAGS)
    if not unsafe:
        return content
    for element in unsafe:
        element.decompose()
    return str(soup).strip()


def extract_hashtags(content: Optional[str]) -> List[str]:
    """Hashtags (``#word``) found in the plain text, normalized."""
    return normalize_tags(_HASHTAG_PATTERN.findall(strip_html(content)))


def content_hash(title: str, content: str, tags: Iterable[str]) -> str:
    """SHA-256 over the parts of a note that versions track."""
    payload = "\n".join([title, content, ",".join(sorted(tags))])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
