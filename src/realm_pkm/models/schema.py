"""Data models for the Realm PKM service."""

import datetime
import os
import re
import threading
import uuid
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from realm_pkm.content import (
    MAX_SUMMARY_LENGTH,
    MAX_TITLE_LENGTH,
    count_words,
    display_summary,
    reading_time_minutes,
)
from realm_pkm.utils import normalize_tag, normalize_tags, strip_html

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9+_.-]+@([A-Za-z0-9.-]+\.[A-Za-z]{2,})$")

MAX_DISPLAY_NAME_LENGTH = 100
MAX_PERSON_NAME_LENGTH = 50
MAX_BIO_LENGTH = 500


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite drops tzinfo on the way in, so every datetime read back from the
    database passes through here.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


# Thread-safe counter for uniqueness (seeded from PID for cross-process safety)
_id_lock = threading.Lock()
_last_timestamp = 0
_counter = (os.getpid() * 7) % 1_000_000


def generate_id() -> str:
    """Generate a timestamp-based note ID with guaranteed uniqueness.

    Returns:
        A string in format "YYYYMMDDTHHMMSSsssssscccccc": date, ``T``,
        time, microseconds and a 6-digit counter that separates IDs minted
        in the same microsecond.
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


def generate_user_id() -> str:
    return str(uuid.uuid4())


class NoteStatus(str, Enum):
    """Publication state of a note."""

    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"

    @classmethod
    def parse(cls, value: "str | NoteStatus") -> "NoteStatus":
        """Case-insensitive lookup. Raises ValueError for unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValueError(f"Invalid status '{value}'. Valid values: {valid}") from None


class NotePriority(str, Enum):
    """User-assigned importance of a note."""

    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @classmethod
    def parse(cls, value: "str | NotePriority") -> "NotePriority":
        """Case-insensitive lookup. Raises ValueError for unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ValueError(f"Invalid priority '{value}'. Valid values: {valid}") from None


class LinkType(str, Enum):
    """Types of links between notes."""

    REFERENCES = "REFERENCES"  # Plain citation of another note
    SUPPORTS = "SUPPORTS"  # Provides evidence for the target
    CONTRADICTS = "CONTRADICTS"  # Argues against the target
    BUILDS_ON = "BUILDS_ON"  # Extends the target's idea
    RELATED_TO = "RELATED_TO"  # Loosely related
    INSPIRED_BY = "INSPIRED_BY"  # Target sparked this note
    CLARIFIES = "CLARIFIES"  # Explains the target
    QUESTION = "QUESTION"  # Raises a question about the target
    ANSWER = "ANSWER"  # Answers a question posed by the target
    EXAMPLE = "EXAMPLE"  # Concrete example of the target
    # Hierarchical types: cycles through these are rejected
    PREREQUISITE = "PREREQUISITE"
    FOLLOWS_FROM = "FOLLOWS_FROM"
    GENERALIZES = "GENERALIZES"
    SPECIALIZES = "SPECIALIZES"

    @classmethod
    def parse(cls, value: "str | LinkType | None") -> "LinkType":
        """Case-insensitive lookup; None means REFERENCES.

        Raises:
            ValueError: If the value names no link type.
        """
        if value is None:
            return cls.REFERENCES
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().upper().replace("-", "_").replace(" ", "_")
        if not normalized:
            return cls.REFERENCES
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Invalid link type '{value}'") from None

    @property
    def display_name(self) -> str:
        return _LINK_DISPLAY_NAMES[self]

    @property
    def inverse(self) -> "LinkType":
        """Type used for the reverse link of a bidirectional pair."""
        return _LINK_INVERSES.get(self, LinkType.REFERENCES)

    @property
    def is_hierarchical(self) -> bool:
        return self in _HIERARCHICAL_LINK_TYPES


_LINK_DISPLAY_NAMES: Dict[LinkType, str] = {
    LinkType.REFERENCES: "References",
    LinkType.SUPPORTS: "Supports",
    LinkType.CONTRADICTS: "Contradicts",
    LinkType.BUILDS_ON: "Builds On",
    LinkType.RELATED_TO: "Related To",
    LinkType.INSPIRED_BY: "Inspired By",
    LinkType.CLARIFIES: "Clarifies",
    LinkType.QUESTION: "Questions",
    LinkType.ANSWER: "Answers",
    LinkType.EXAMPLE: "Examples",
    LinkType.PREREQUISITE: "Prerequisite Of",
    LinkType.FOLLOWS_FROM: "Follows From",
    LinkType.GENERALIZES: "Generalizes",
    LinkType.SPECIALIZES: "Specializes",
}

_LINK_INVERSES: Dict[LinkType, LinkType] = {
    LinkType.REFERENCES: LinkType.REFERENCES,
    LinkType.SUPPORTS: LinkType.SUPPORTS,
    LinkType.CONTRADICTS: LinkType.CONTRADICTS,
    LinkType.RELATED_TO: LinkType.RELATED_TO,
    LinkType.QUESTION: LinkType.ANSWER,
    LinkType.ANSWER: LinkType.QUESTION,
    LinkType.PREREQUISITE: LinkType.FOLLOWS_FROM,
    LinkType.FOLLOWS_FROM: LinkType.PREREQUISITE,
    LinkType.GENERALIZES: LinkType.SPECIALIZES,
    LinkType.SPECIALIZES: LinkType.GENERALIZES,
}

_HIERARCHICAL_LINK_TYPES = frozenset(
    {
        LinkType.PREREQUISITE,
        LinkType.FOLLOWS_FROM,
        LinkType.GENERALIZES,
        LinkType.SPECIALIZES,
    }
)

STRONG_LINK_THRESHOLD = 0.7
WEAK_LINK_THRESHOLD = 0.3
FREQUENT_TRAVERSAL_COUNT = 10


class NoteLink(BaseModel):
    """A directed, typed link stored on its source note."""

    id: Optional[int] = Field(default=None, description="Database ID of the link")
    source_id: str = Field(..., description="ID of the source note")
    target_id: str = Field(..., description="ID of the target note")
    link_type: LinkType = Field(default=LinkType.REFERENCES, description="Type of link")
    context: Optional[str] = Field(
        default=None, description="Why the source points at the target"
    )
    strength: float = Field(default=1.0, ge=0.0, le=1.0)
    is_inferred: bool = Field(default=False)
    traversal_count: int = Field(default=0, ge=0)
    last_traversed_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @property
    def is_strong(self) -> bool:
        return self.strength >= STRONG_LINK_THRESHOLD

    @property
    def is_weak(self) -> bool:
        return self.strength < WEAK_LINK_THRESHOLD

    @property
    def is_frequently_traversed(self) -> bool:
        return self.traversal_count >= FREQUENT_TRAVERSAL_COUNT

    @property
    def display_context(self) -> str:
        if self.context and self.context.strip():
            return self.context
        return "Linked note"


class Note(BaseModel):
    """A rich-text note owned by one user."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the note")
    owner_id: Optional[str] = Field(default=None, description="ID of the owning user")
    title: str = Field(..., description="Title of the note")
    content: str = Field(default="", description="Rich-text (HTML) body")
    summary: Optional[str] = Field(default=None)
    tags: List[str] = Field(default_factory=list, description="Normalized tag names")
    category: Optional[str] = Field(default=None)
    status: NoteStatus = Field(default=NoteStatus.DRAFT)
    priority: NotePriority = Field(default=NotePriority.NORMAL)
    is_public: bool = Field(default=False)
    is_favorite: bool = Field(default=False)
    word_count: int = Field(default=0, ge=0)
    reading_time: int = Field(default=0, ge=0)
    links: List[NoteLink] = Field(default_factory=list, description="Outgoing links")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)
    last_accessed_at: Optional[datetime.datetime] = None

    model_config = {"validate_assignment": True, "extra": "forbid"}

    def model_post_init(self, __context: Any) -> None:
        if self.word_count == 0 and self.content:
            self.refresh_metrics()

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Validate that the title is present and short enough."""
        v = v.strip()
        if not v:
            raise ValueError("Title cannot be empty")
        if len(v) > MAX_TITLE_LENGTH:
            raise ValueError(f"Title cannot exceed {MAX_TITLE_LENGTH} characters")
        return v

    @field_validator("summary")
    @classmethod
    def validate_summary(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if len(v) > MAX_SUMMARY_LENGTH:
            raise ValueError(f"Summary cannot exceed {MAX_SUMMARY_LENGTH} characters")
        return v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        return normalize_tags(v)

    def refresh_metrics(self) -> None:
        """Recompute word count and reading time from the content."""
        words = count_words(self.content)
        self.word_count = words
        self.reading_time = reading_time_minutes(words)

    @property
    def display_summary(self) -> str:
        return display_summary(self.summary, self.content)

    @property
    def plain_text(self) -> str:
        return strip_html(self.content)

    def has_tag(self, tag: str) -> bool:
        return normalize_tag(tag) in self.tags

    def add_tag(self, tag: str) -> bool:
        """Add a tag. Returns False when it is blank or already present."""
        name = normalize_tag(tag)
        if not name or name in self.tags:
            return False
        self.tags = self.tags + [name]
        self.updated_at = utc_now()
        return True

    def remove_tag(self, tag: str) -> bool:
        """Remove a tag. Returns False when the note did not carry it."""
        name = normalize_tag(tag)
        if name not in self.tags:
            return False
        self.tags = [t for t in self.tags if t != name]
        self.updated_at = utc_now()
        return True

    def contains_search_term(self, term: str) -> bool:
        """Case-insensitive match against title, plain content, summary and tags."""
        needle = term.strip().lower()
        if not needle:
            return False
        if needle in self.title.lower() or needle in self.plain_text.lower():
            return True
        if self.summary and needle in self.summary.lower():
            return True
        return any(needle in tag for tag in self.tags)

    def is_owned_by(self, user_id: str) -> bool:
        return self.owner_id is not None and self.owner_id == user_id


class NoteVersion(BaseModel):
    """Snapshot of a note taken before it was changed."""

    id: Optional[int] = None
    note_id: str
    version_number: int = Field(..., ge=1)
    title: str
    content: str = ""
    tags: List[str] = Field(default_factory=list)
    word_count: int = 0
    summary: Optional[str] = None
    change_description: Optional[str] = None
    content_hash: str
    created_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"extra": "forbid"}


class User(BaseModel):
    """An account. Notes belong to exactly one user."""

    id: str = Field(default_factory=generate_user_id)
    email: str
    password_hash: str = Field(..., repr=False)
    display_name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    bio: Optional[str] = None
    preferences: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    is_verified: bool = False
    last_login_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email address")
        return v

    @field_validator("display_name")
    @classmethod
    def validate_display_name(cls, v: str) -> str:
        v = v.strip()
        if not v or len(v) > MAX_DISPLAY_NAME_LENGTH:
            raise ValueError(
                f"Display name must be 1-{MAX_DISPLAY_NAME_LENGTH} characters"
            )
        return v

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_person_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if len(v) > MAX_PERSON_NAME_LENGTH:
            raise ValueError(f"Names cannot exceed {MAX_PERSON_NAME_LENGTH} characters")
        return v

    @field_validator("bio")
    @classmethod
    def validate_bio(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if len(v) > MAX_BIO_LENGTH:
            raise ValueError(f"Bio cannot exceed {MAX_BIO_LENGTH} characters")
        return v

    @property
    def full_name(self) -> str:
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.first_name or self.last_name or self.display_name

    def to_public_dict(self) -> Dict[str, Any]:
        """Serializable view without credentials."""
        data = self.model_dump(mode="json", exclude={"password_hash"})
        data["full_name"] = self.full_name
        return data


# =============================================================================
# Read models returned by the graph and relationship services
# =============================================================================


class GraphNode(BaseModel):
    """A note as drawn in the force-directed graph."""

    id: str
    title: str
    content: str = ""
    tags: List[str] = Field(default_factory=list)
    created_at: datetime.datetime
    updated_at: datetime.datetime
    size: int = 30
    color: str = "#9E9E9E"
    x: Optional[float] = None
    y: Optional[float] = None
    connection_count: int = 0
    is_favorite: bool = False
    status: NoteStatus = NoteStatus.DRAFT
    selected: bool = False
    highlighted: bool = False


class GraphEdge(BaseModel):
    """A link as drawn in the force-directed graph."""

    id: str
    source: str
    target: str
    type: LinkType = LinkType.REFERENCES
    label: str = "References"
    context: Optional[str] = None
    strength: float = 1.0
    color: str = "#999999"
    width: float = 4.0
    bidirectional: bool = False
    created_at: Optional[datetime.datetime] = None


class GraphData(BaseModel):
    nodes: List[GraphNode] = Field(default_factory=list)
    edges: List[GraphEdge] = Field(default_factory=list)
    center_node_id: Optional[str] = None
    total_nodes: int = 0
    total_edges: int = 0


class GraphStats(BaseModel):
    total_nodes: int = 0
    total_edges: int = 0
    avg_connections_per_node: float = 0.0
    most_connected_node_id: Optional[str] = None
    max_connections: int = 0
    orphan_count: int = 0
    cluster_count: int = 0
    link_type_distribution: Dict[str, int] = Field(default_factory=dict)


class NoteStatistics(BaseModel):
    total_notes: int = 0
    favorite_notes: int = 0
    draft_notes: int = 0
    published_notes: int = 0
    archived_notes: int = 0
    total_words: int = 0
    last_note_update: Optional[datetime.datetime] = None


class NoteCluster(BaseModel):
    """A weakly connected group of notes."""

    note_ids: List[str]
    size: int
    internal_links: int
    cohesion: float
    dominant_tags: List[str] = Field(default_factory=list)


class HubNote(BaseModel):
    note_id: str
    title: str
    connection_count: int


class RelationshipAnalytics(BaseModel):
    total_notes: int = 0
    total_relationships: int = 0
    avg_relationships_per_note: float = 0.0
    top_hubs: List[HubNote] = Field(default_factory=list)
    link_type_distribution: Dict[str, int] = Field(default_factory=dict)
