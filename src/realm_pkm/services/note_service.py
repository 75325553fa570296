"""Service layer for note operations."""

import datetime
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from realm_pkm.content import (
    MAX_CONTENT_LENGTH,
    MAX_TITLE_LENGTH,
    analyze_structure,
    calculate_metrics,
    content_hash,
    extract_hashtags,
    generate_summary,
    preprocess_content,
    preprocess_title,
    quality_score,
)
from realm_pkm.exceptions import (
    ErrorCode,
    NoteAccessDeniedError,
    NoteNotFoundError,
    NoteValidationError,
    TagError,
    ValidationError,
)
from realm_pkm.models.schema import (
    Note,
    NotePriority,
    NoteStatistics,
    NoteStatus,
    NoteVersion,
    utc_now,
)
from realm_pkm.observability import traced
from realm_pkm.storage.note_repository import NoteRepository
from realm_pkm.storage.tag_repository import TagRepository
from realm_pkm.storage.version_repository import VersionRepository
from realm_pkm.utils import normalize_tag, normalize_tags

logger = logging.getLogger(__name__)

MAX_RECENT_DAYS = 365
MAX_HISTORY_LIMIT = 100


def _parse_status(status: Any) -> NoteStatus:
    try:
        return NoteStatus.parse(status)
    except ValueError as e:
        raise ValidationError(
            str(e), field="status", value=status, code=ErrorCode.INVALID_STATUS
        ) from e


def _parse_priority(priority: Any) -> NotePriority:
    try:
        return NotePriority.parse(priority)
    except ValueError as e:
        raise ValidationError(
            str(e), field="priority", value=priority, code=ErrorCode.INVALID_PRIORITY
        ) from e


def _clean_title(title: Optional[str]) -> str:
    """Normalize a title, rejecting blank or over-long ones."""
    cleaned = preprocess_title(title or "")
    if not cleaned:
        raise NoteValidationError(
            "Title is required", field="title", code=ErrorCode.NOTE_TITLE_REQUIRED
        )
    if len(cleaned) > MAX_TITLE_LENGTH:
        raise NoteValidationError(
            f"Title cannot exceed {MAX_TITLE_LENGTH} characters",
            field="title",
            value=cleaned,
            code=ErrorCode.NOTE_TITLE_TOO_LONG,
        )
    return cleaned


def _clean_content(content: Optional[str]) -> str:
    cleaned = preprocess_content(content)
    if len(cleaned) > MAX_CONTENT_LENGTH:
        raise NoteValidationError(
            f"Content cannot exceed {MAX_CONTENT_LENGTH} characters",
            field="content",
            code=ErrorCode.NOTE_CONTENT_TOO_LONG,
        )
    return cleaned


def _validation_error(e: PydanticValidationError) -> NoteValidationError:
    first = e.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    return NoteValidationError(first["msg"], field=field)


class NoteService:
    """Business rules for notes: ownership, validation, tags and history.

    Every operation takes the acting user's ID. Touching another user's
    note raises NoteAccessDeniedError.
    """

    def __init__(
        self,
        repository: Optional[NoteRepository] = None,
        engine: Optional[Any] = None,
    ):
        """Initialize the service.

        Args:
            repository: Note storage backend. Created with defaults if None.
            engine: Pre-configured SQLAlchemy engine to pass to NoteRepository.
                Only used when repository is None.
        """
        self.repository = repository or NoteRepository(engine=engine)
        self.tags = TagRepository(self.repository.session_factory)
        self.versions = VersionRepository(self.repository.session_factory)

    def get_owned_note(self, note_id: str, user_id: str) -> Note:
        """Load a note and check that user_id owns it.

        Raises:
            NoteNotFoundError: If the note does not exist.
            NoteAccessDeniedError: If another user owns it.
        """
        note = self.repository.get(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        if not note.is_owned_by(user_id):
            logger.warning(f"User {user_id} denied access to note {note_id}")
            raise NoteAccessDeniedError(note_id, user_id)
        return note

    # =========================================================================
    # CRUD
    # =========================================================================

    @traced("create_note")
    def create_note(
        self,
        user_id: str,
        title: str,
        content: str = "",
        tags: Optional[List[str]] = None,
        summary: Optional[str] = None,
        category: Optional[str] = None,
        status: Any = None,
        priority: Any = None,
        is_public: bool = False,
        is_favorite: bool = False,
    ) -> Note:
        """Create a new note owned by user_id.

        Hashtags written in the content (``#idea``) are added to the tags.

        Returns:
            Created Note object.
        """
        clean_title = _clean_title(title)
        clean_content = _clean_content(content)
        try:
            note = Note(
                owner_id=user_id,
                title=clean_title,
                content=clean_content,
                summary=summary,
                tags=normalize_tags(list(tags or []) + extract_hashtags(clean_content)),
                category=category.strip() if category and category.strip() else None,
                status=_parse_status(status) if status is not None else NoteStatus.DRAFT,
                priority=(
                    _parse_priority(priority) if priority is not None else NotePriority.NORMAL
                ),
                is_public=is_public,
                is_favorite=is_favorite,
            )
        except PydanticValidationError as e:
            raise _validation_error(e) from e

        created = self.repository.create(note)
        logger.info(f"Created note {created.id} for user {user_id}")
        return created

    def get_note(self, note_id: str, user_id: str) -> Note:
        """Retrieve an owned note and record the access."""
        note = self.get_owned_note(note_id, user_id)
        self.repository.mark_accessed(note_id)
        note.last_accessed_at = utc_now()
        return note

    @traced("update_note")
    def update_note(
        self,
        note_id: str,
        user_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        tags: Optional[List[str]] = None,
        summary: Optional[str] = None,
        category: Optional[str] = None,
        is_public: Optional[bool] = None,
        change_description: Optional[str] = None,
    ) -> Note:
        """Update an owned note.

        A blank title is ignored. When title, content or tags change, the
        previous state is saved as a version first. An empty summary or
        category clears it.

        Returns:
            Updated Note object.
        """
        note = self.get_owned_note(note_id, user_id)

        new_title = note.title
        if title is not None and preprocess_title(title):
            new_title = _clean_title(title)
        new_content = note.content if content is None else _clean_content(content)
        new_tags = note.tags if tags is None else normalize_tags(tags)
        if content is not None:
            new_tags = normalize_tags(new_tags + extract_hashtags(new_content))

        if (new_title, new_content, new_tags) != (note.title, note.content, note.tags):
            self._snapshot(note, change_description)

        try:
            note.title = new_title
            if new_content != note.content:
                note.content = new_content
                note.refresh_metrics()
            note.tags = new_tags
            if summary is not None:
                note.summary = summary
            if category is not None:
                note.category = category.strip() or None
            if is_public is not None:
                note.is_public = is_public
        except PydanticValidationError as e:
            raise _validation_error(e) from e

        return self.repository.update(note)

    @traced("delete_note")
    def delete_note(self, note_id: str, user_id: str) -> None:
        """Delete an owned note, its links in both directions and its history."""
        self.get_owned_note(note_id, user_id)
        self.repository.delete(note_id)
        logger.info(f"Deleted note {note_id}")

    def list_notes(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[Note]:
        """The user's notes, most recently updated first."""
        if offset < 0:
            raise ValidationError(
                "Offset cannot be negative", field="offset", value=offset,
                code=ErrorCode.INVALID_RANGE,
            )
        return self.repository.list_for_owner(user_id, limit=limit, offset=offset)

    def count_notes(self, user_id: str) -> int:
        return self.repository.count_for_owner(user_id)

    def get_notes_by_ids(self, ids: List[str], user_id: str) -> List[Note]:
        """Batch fetch; notes owned by other users are silently dropped."""
        return [n for n in self.repository.get_by_ids(ids) if n.is_owned_by(user_id)]

    # =========================================================================
    # Finders
    # =========================================================================

    def search_notes(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0, **filters: Any
    ) -> List[Note]:
        """Structured filter search (see NoteRepository.search) scoped to the user."""
        filters["owner_id"] = user_id
        return self.repository.search(limit=limit, offset=offset, **filters)

    def find_by_tag(self, user_id: str, tag: str) -> List[Note]:
        name = normalize_tag(tag)
        if not name:
            return []
        return self.repository.search(owner_id=user_id, tag=name)

    def find_by_status(self, user_id: str, status: Any) -> List[Note]:
        return self.repository.search(owner_id=user_id, status=_parse_status(status))

    def find_favorites(self, user_id: str) -> List[Note]:
        return self.repository.search(owner_id=user_id, is_favorite=True)

    def find_recently_updated(self, user_id: str, days: int = 7) -> List[Note]:
        """Notes updated within the last ``days`` days (1..365)."""
        if days < 1 or days > MAX_RECENT_DAYS:
            raise ValidationError(
                f"Days must be between 1 and {MAX_RECENT_DAYS}",
                field="days",
                value=days,
                code=ErrorCode.INVALID_RANGE,
            )
        since = utc_now() - datetime.timedelta(days=days)
        return self.repository.search(owner_id=user_id, updated_after=since)

    # =========================================================================
    # Flags
    # =========================================================================

    def toggle_favorite(self, note_id: str, user_id: str) -> Note:
        note = self.get_owned_note(note_id, user_id)
        note.is_favorite = not note.is_favorite
        return self.repository.update(note)

    def update_status(self, note_id: str, user_id: str, status: Any) -> Note:
        """Set DRAFT, PUBLISHED or ARCHIVED (case-insensitive)."""
        new_status = _parse_status(status)
        note = self.get_owned_note(note_id, user_id)
        note.status = new_status
        return self.repository.update(note)

    def update_priority(self, note_id: str, user_id: str, priority: Any) -> Note:
        new_priority = _parse_priority(priority)
        note = self.get_owned_note(note_id, user_id)
        note.priority = new_priority
        return self.repository.update(note)

    # =========================================================================
    # Tags
    # =========================================================================

    def add_tag(self, note_id: str, user_id: str, tag: str) -> Note:
        """Add a tag to a note. Adding a tag it already has is a no-op."""
        if not normalize_tag(tag):
            raise TagError("Tag name cannot be empty", tag_name=tag)
        note = self.get_owned_note(note_id, user_id)
        if not note.add_tag(tag):
            return note
        return self.repository.update(note)

    def remove_tag(self, note_id: str, user_id: str, tag: str) -> Note:
        note = self.get_owned_note(note_id, user_id)
        if not note.remove_tag(tag):
            return note
        return self.repository.update(note)

    def get_all_tags(self, user_id: str) -> List[str]:
        return self.tags.get_all_for_owner(user_id)

    def get_tags_with_counts(self, user_id: str) -> Dict[str, int]:
        """Get all of the user's tags with their note counts, most used first."""
        return self.tags.get_with_counts(user_id)

    def rename_tag(self, user_id: str, old_name: str, new_name: str) -> int:
        """Retag the user's notes. Returns the number of notes changed."""
        if not normalize_tag(old_name) or not normalize_tag(new_name):
            raise TagError("Tag name cannot be empty", tag_name=new_name or old_name)
        return self.tags.rename(user_id, old_name, new_name)

    def delete_unused_tags(self) -> int:
        """Delete tags that are not associated with any notes.

        Returns:
            Number of tags deleted.
        """
        return self.tags.delete_unused()

    # =========================================================================
    # Statistics and content
    # =========================================================================

    def get_note_statistics(self, user_id: str) -> NoteStatistics:
        return self.repository.get_statistics(user_id)

    def generate_summary(self, note_id: str, user_id: str) -> Note:
        """Replace the summary with one built from the leading sentences."""
        note = self.get_owned_note(note_id, user_id)
        note.summary = generate_summary(note.content) or None
        return self.repository.update(note)

    def analyze_note(self, note_id: str, user_id: str) -> Dict[str, Any]:
        """Content metrics, HTML structure and a quality score for a note."""
        note = self.get_owned_note(note_id, user_id)
        metrics = calculate_metrics(note.content)
        structure = analyze_structure(note.content)
        return {
            "note_id": note.id,
            "word_count": metrics.word_count,
            "reading_time": metrics.reading_time,
            "sentence_count": metrics.sentence_count,
            "paragraph_count": metrics.paragraph_count,
            "heading_count": structure.heading_count,
            "link_count": structure.link_count,
            "list_count": structure.list_count,
            "hashtags": extract_hashtags(note.content),
            "quality_score": round(quality_score(note.content, note.tags), 2),
        }

    # =========================================================================
    # Version history
    # =========================================================================

    def _snapshot(self, note: Note, change_description: Optional[str]) -> Optional[NoteVersion]:
        """Store the note's current state unless it matches the latest version."""
        digest = content_hash(note.title, note.content, note.tags)
        latest = self.versions.get_latest(note.id)
        if latest is not None and latest.content_hash == digest:
            logger.debug(f"Note {note.id} unchanged since version {latest.version_number}")
            return None
        return self.versions.add(
            NoteVersion(
                note_id=note.id,
                version_number=(latest.version_number + 1) if latest else 1,
                title=note.title,
                content=note.content,
                tags=list(note.tags),
                word_count=note.word_count,
                summary=note.summary,
                change_description=change_description,
                content_hash=digest,
            )
        )

    def get_note_history(
        self, note_id: str, user_id: str, limit: int = 10
    ) -> List[NoteVersion]:
        """Stored versions of a note, most recent first."""
        if limit < 1 or limit > MAX_HISTORY_LIMIT:
            raise ValidationError(
                f"Limit must be between 1 and {MAX_HISTORY_LIMIT}",
                field="limit",
                value=limit,
                code=ErrorCode.INVALID_RANGE,
            )
        self.get_owned_note(note_id, user_id)
        return self.versions.list_for_note(note_id, limit=limit)

    @traced("restore_version")
    def restore_version(self, note_id: str, user_id: str, version_number: int) -> Note:
        """Bring back the title, content, tags and summary of a stored version.

        The current state is saved as a new version first, so a restore can
        itself be undone.
        """
        note = self.get_owned_note(note_id, user_id)
        version = self.versions.get(note_id, version_number)
        if version is None:
            raise NoteValidationError(
                f"Version {version_number} of note '{note_id}' not found",
                field="version_number",
                value=version_number,
                code=ErrorCode.NOTE_VERSION_NOT_FOUND,
            )
        self._snapshot(note, f"Before restoring version {version_number}")

        note.title = version.title
        note.content = version.content
        note.refresh_metrics()
        note.tags = list(version.tags)
        note.summary = version.summary
        restored = self.repository.update(note)
        logger.info(f"Restored note {note_id} to version {version_number}")
        return restored
