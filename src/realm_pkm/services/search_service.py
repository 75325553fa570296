"""Service for searching and discovering notes."""

import datetime
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from realm_pkm.config import config
from realm_pkm.exceptions import ErrorCode, ValidationError
from realm_pkm.models.schema import Note, NotePriority, NoteStatus, utc_now
from realm_pkm.observability import traced
from realm_pkm.services.note_service import NoteService
from realm_pkm.services.relationship_service import RelationshipService, bfs_distances
from realm_pkm.utils import jaccard_similarity, normalize_tag, normalize_tags, word_set

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 50
MIN_SUGGESTION_LENGTH = 2
SIMILARITY_THRESHOLD = 0.1
RECENT_DAYS = 30

_PHRASE_PATTERN = re.compile(r'"([^"]+)"')
_TAG_PATTERN = re.compile(r"(?<!\S)#([\w-]+)")
_FILTER_PATTERN = re.compile(r"(?<!\S)(status|favorite|after|priority):(\S+)", re.IGNORECASE)


@dataclass
class ParsedQuery:
    """A search string split into its parts."""

    raw: str
    terms: List[str] = field(default_factory=list)
    phrases: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    status: Optional[NoteStatus] = None
    priority: Optional[NotePriority] = None
    favorite: Optional[bool] = None
    after: Optional[datetime.datetime] = None

    @property
    def text(self) -> str:
        """Free text (phrases and terms) without tags and filters."""
        return " ".join(self.phrases + self.terms)

    @property
    def has_text(self) -> bool:
        return bool(self.terms or self.phrases)

    def fts_query(self) -> str:
        """FTS5 expression requiring every phrase and term."""
        parts = [p.replace('"', '""') for p in self.phrases + self.terms]
        return " ".join(f'"{part}"' for part in parts)


def _parse_date(value: str) -> datetime.datetime:
    try:
        parsed = datetime.datetime.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(
            f"Invalid date '{value}', expected YYYY-MM-DD",
            field="after",
            value=value,
            code=ErrorCode.SEARCH_INVALID_QUERY,
        ) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def parse_query(query: str) -> ParsedQuery:
    """Split a query into quoted phrases, #tags, key:value filters and terms.

    Supported filters are ``status:``, ``priority:``, ``favorite:`` and
    ``after:`` (an ISO date).

    Raises:
        ValidationError: For filter values that cannot be parsed.
    """
    parsed = ParsedQuery(raw=query or "")
    remaining = parsed.raw

    parsed.phrases = [p.strip() for p in _PHRASE_PATTERN.findall(remaining) if p.strip()]
    remaining = _PHRASE_PATTERN.sub(" ", remaining)

    for key, value in _FILTER_PATTERN.findall(remaining):
        key = key.lower()
        try:
            if key == "status":
                parsed.status = NoteStatus.parse(value)
            elif key == "priority":
                parsed.priority = NotePriority.parse(value)
            elif key == "favorite":
                parsed.favorite = value.lower() in ("true", "yes", "1")
            elif key == "after":
                parsed.after = _parse_date(value)
        except ValueError as e:
            raise ValidationError(
                str(e), field=key, value=value, code=ErrorCode.SEARCH_INVALID_QUERY
            ) from e
    remaining = _FILTER_PATTERN.sub(" ", remaining)

    parsed.tags = normalize_tags(_TAG_PATTERN.findall(remaining))
    remaining = _TAG_PATTERN.sub(" ", remaining)

    parsed.terms = [t for t in remaining.split() if t.strip()]
    return parsed


@dataclass
class SearchHit:
    """A note with its relevance score."""

    note: Note
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.note.id,
            "title": self.note.title,
            "summary": self.note.display_summary,
            "tags": self.note.tags,
            "status": self.note.status.value,
            "is_favorite": self.note.is_favorite,
            "updated_at": self.note.updated_at.isoformat(),
            "score": round(self.score, 3),
        }


@dataclass
class SearchResults:
    """One page of search hits plus facets over every match."""

    query: str
    hits: List[SearchHit]
    total: int
    limit: int
    offset: int
    facets: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "results": [hit.to_dict() for hit in self.hits],
            "facets": self.facets,
        }


class SearchService:
    """Service for searching notes and discovering related ones."""

    def __init__(
        self,
        note_service: NoteService,
        relationship_service: Optional[RelationshipService] = None,
    ):
        self.notes = note_service
        self.repository = note_service.repository
        self.relationships = relationship_service or RelationshipService(note_service)

    @staticmethod
    def score(note: Note, parsed: ParsedQuery) -> float:
        """Relevance in 0..1 from title, content, tag, recency and favourite signals."""
        score = 0.0
        text = parsed.text.lower()
        if text:
            if text in note.title.lower():
                score += 0.4
            if text in note.plain_text.lower():
                score += 0.3
        named = set(parsed.tags) | {normalize_tag(t) for t in parsed.terms}
        score += 0.2 * sum(1 for tag in note.tags if tag in named)
        if note.updated_at >= utc_now() - datetime.timedelta(days=RECENT_DAYS):
            score += 0.1
        if note.is_favorite:
            score += 0.05
        return min(1.0, score)

    def _candidate_ids(self, user_id: str, parsed: ParsedQuery) -> List[str]:
        if not parsed.has_text and not parsed.tags:
            return [n.id for n in self.repository.list_for_owner(user_id)]

        ids: List[str] = []
        if parsed.has_text:
            hits = self.repository.fts_search(
                parsed.fts_query(),
                owner_id=user_id,
                limit=config.search_max_limit,
                literal=False,
            )
            ids.extend(hit.id for hit in hits)
            # A bare word naming a tag also finds notes carrying that tag
            ids.extend(self.notes.tags.find_note_ids_by_tags(user_id, parsed.terms))
        if parsed.tags:
            ids.extend(self.notes.tags.find_note_ids_by_tags(user_id, parsed.tags))
        return list(dict.fromkeys(ids))

    @staticmethod
    def _passes_filters(note: Note, parsed: ParsedQuery) -> bool:
        if parsed.status is not None and note.status != parsed.status:
            return False
        if parsed.priority is not None and note.priority != parsed.priority:
            return False
        if parsed.favorite is not None and note.is_favorite != parsed.favorite:
            return False
        if parsed.after is not None and note.updated_at < parsed.after:
            return False
        return True

    @traced("search")
    def search(
        self, user_id: str, query: str, limit: int = DEFAULT_SEARCH_LIMIT, offset: int = 0
    ) -> SearchResults:
        """Search the user's notes.

        Args:
            user_id: Whose notes to search
            query: Free text with optional "phrases", #tags and filters
            limit: Page size, capped at the configured maximum
            offset: Number of hits to skip

        Returns:
            Scored hits, best first, with status and tag facets over all matches.
        """
        if offset < 0:
            raise ValidationError(
                "Offset cannot be negative", field="offset", value=offset,
                code=ErrorCode.INVALID_RANGE,
            )
        limit = max(1, min(limit, config.search_max_limit))
        parsed = parse_query(query)

        candidates = self.repository.get_by_ids(self._candidate_ids(user_id, parsed))
        matches = [
            SearchHit(note=note, score=self.score(note, parsed))
            for note in candidates
            if note.is_owned_by(user_id) and self._passes_filters(note, parsed)
        ]
        matches.sort(key=lambda h: (h.score, h.note.updated_at), reverse=True)

        status_counts = Counter(hit.note.status.value for hit in matches)
        tag_counts = Counter(tag for hit in matches for tag in hit.note.tags)
        facets = {
            "status": dict(status_counts),
            "tags": dict(tag_counts.most_common(20)),
        }
        logger.info(f"Search for user {user_id} matched {len(matches)} notes")
        return SearchResults(
            query=parsed.raw,
            hits=matches[offset:offset + limit],
            total=len(matches),
            limit=limit,
            offset=offset,
            facets=facets,
        )

    def get_suggestions(self, user_id: str, partial: str, limit: int = 10) -> List[str]:
        """Tag and title-word completions for a partial query."""
        prefix = (partial or "").strip().lower()
        if len(prefix) < MIN_SUGGESTION_LENGTH:
            return []

        suggestions: Set[str] = set(self.notes.tags.find_by_prefix(user_id, prefix, limit))
        for note in self.repository.search(owner_id=user_id, title=prefix):
            for word in note.title.lower().split():
                word = word.strip(".,;:!?()[]\"'")
                if word.startswith(prefix):
                    suggestions.add(word)
        return sorted(suggestions)[:limit]

    @traced("find_similar_notes")
    def find_similar_notes(
        self, note_id: str, user_id: str, limit: int = 10
    ) -> List[Tuple[Note, float]]:
        """Notes sharing words, tags and title words with the given note.

        Returns:
            (note, similarity) pairs above the threshold, most similar first.
        """
        reference = self.notes.get_owned_note(note_id, user_id)
        reference_words = word_set(reference.content)
        reference_tags = set(reference.tags)
        reference_title = word_set(reference.title)

        scored = []
        for candidate in self.repository.list_for_owner(user_id):
            if candidate.id == note_id:
                continue
            similarity = (
                jaccard_similarity(reference_words, word_set(candidate.content)) * 0.5
                + jaccard_similarity(reference_tags, set(candidate.tags)) * 0.3
                + jaccard_similarity(reference_title, word_set(candidate.title)) * 0.2
            )
            if similarity > SIMILARITY_THRESHOLD:
                scored.append((candidate, similarity))

        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    def search_by_graph_traversal(
        self, start_id: str, user_id: str, query: str, max_depth: int = 3
    ) -> List[Note]:
        """Notes reachable over outgoing links within max_depth that match query.

        A blank query matches every reachable note. Nearer notes come first.
        """
        self.notes.get_owned_note(start_id, user_id)
        adjacency = self.relationships.links.get_adjacency(user_id)
        distances = bfs_distances(adjacency, start_id, max(1, max_depth))
        distances.pop(start_id, None)

        term = (query or "").strip()
        reachable = self.repository.get_by_ids(list(distances))
        matches = [n for n in reachable if not term or n.contains_search_term(term)]
        matches.sort(key=lambda n: distances[n.id])
        return matches
