"""Repository for note storage and retrieval."""
import logging
import threading
import weakref
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, func, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from realm_pkm.exceptions import ErrorCode, NoteNotFoundError, StorageError
from realm_pkm.models.db_models import (DBLink, DBNote, DBTag, get_session_factory,
                                        init_db, note_tags)
from realm_pkm.models.schema import (Note, NoteLink, NotePriority, NoteStatistics,
                                     NoteStatus, LinkType, ensure_timezone_aware,
                                     utc_now)
from realm_pkm.storage.fts_index import FtsHit, FtsIndex
from realm_pkm.storage.tag_repository import TagRepository
from realm_pkm.utils import escape_like_pattern, normalize_tag

logger = logging.getLogger(__name__)


class NoteRepository:
    """Repository for notes, backed by SQLite.

    Owns the engine and session factory shared by the other repositories.
    Links are read here for convenience (``Note.links``) but written
    through LinkRepository.
    """

    def __init__(self, engine: Optional[Any] = None):
        """Initialize the repository.

        Args:
            engine: Pre-configured SQLAlchemy engine. ``init_db()`` is
                called to build one when omitted.
        """
        self.engine = engine if engine is not None else init_db()
        self.session_factory = get_session_factory(self.engine)
        self._fts = FtsIndex(self.engine, self.session_factory)
        # Entries vanish once no thread holds a reference to the lock
        self._note_locks: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()

    def _get_note_lock(self, note_id: str) -> threading.RLock:
        """Per-note lock serialising update and delete of the same note."""
        with self._locks_guard:
            lock = self._note_locks.get(note_id)
            if lock is None:
                lock = threading.RLock()
                self._note_locks[note_id] = lock
            return lock

    # =========================================================================
    # Mapping
    # =========================================================================

    def _sync_note_to_db(self, session: Session, note: Note) -> DBNote:
        """Write a Note model into the database within an existing session.

        Tag associations are replaced with the note's tags. Links are left
        untouched. The caller commits.
        """
        db_note = session.get(DBNote, note.id)
        if db_note is None:
            db_note = DBNote(id=note.id, owner_id=note.owner_id, created_at=note.created_at)
            session.add(db_note)

        db_note.title = note.title
        db_note.content = note.content
        db_note.summary = note.summary
        db_note.category = note.category
        db_note.status = note.status.value
        db_note.priority = note.priority.value
        db_note.is_public = note.is_public
        db_note.is_favorite = note.is_favorite
        db_note.word_count = note.word_count
        db_note.reading_time = note.reading_time
        db_note.updated_at = note.updated_at
        db_note.last_accessed_at = note.last_accessed_at

        # The note row must exist before its tag rows reference it
        session.flush()
        session.execute(note_tags.delete().where(note_tags.c.note_id == note.id))
        for position, name in enumerate(note.tags):
            tag = TagRepository.get_or_create_in_session(session, name)
            session.execute(
                note_tags.insert().values(note_id=note.id, tag_id=tag.id, position=position)
            )
        return db_note

    @staticmethod
    def _db_note_to_model(db_note: DBNote) -> Note:
        """Convert a SQLAlchemy DBNote (with loaded relationships) to a Note."""
        links = [
            NoteLink(
                id=lnk.id,
                source_id=lnk.source_id,
                target_id=lnk.target_id,
                link_type=LinkType.parse(lnk.link_type),
                context=lnk.context,
                strength=lnk.strength if lnk.strength is not None else 1.0,
                is_inferred=bool(lnk.is_inferred),
                traversal_count=lnk.traversal_count or 0,
                last_traversed_at=(
                    ensure_timezone_aware(lnk.last_traversed_at)
                    if lnk.last_traversed_at
                    else None
                ),
                created_at=ensure_timezone_aware(lnk.created_at),
                updated_at=ensure_timezone_aware(lnk.updated_at),
            )
            for lnk in sorted(db_note.outgoing_links or [], key=lambda db_link: db_link.id)
        ]

        return Note(
            id=db_note.id,
            owner_id=db_note.owner_id,
            title=db_note.title,
            content=db_note.content or "",
            summary=db_note.summary,
            tags=[t.name for t in (db_note.tags or [])],
            category=db_note.category,
            status=NoteStatus.parse(db_note.status),
            priority=NotePriority.parse(db_note.priority),
            is_public=bool(db_note.is_public),
            is_favorite=bool(db_note.is_favorite),
            word_count=db_note.word_count or 0,
            reading_time=db_note.reading_time or 0,
            links=links,
            created_at=ensure_timezone_aware(db_note.created_at),
            updated_at=ensure_timezone_aware(db_note.updated_at),
            last_accessed_at=(
                ensure_timezone_aware(db_note.last_accessed_at)
                if db_note.last_accessed_at
                else None
            ),
        )

    @staticmethod
    def _with_relationships(query: Any) -> Any:
        return query.options(
            joinedload(DBNote.tags),
            joinedload(DBNote.outgoing_links),
        )

    def _load(self, session: Session, query: Any) -> List[Note]:
        db_notes = session.execute(self._with_relationships(query)).unique().scalars().all()
        return [self._db_note_to_model(db_note) for db_note in db_notes]

    # =========================================================================
    # CRUD
    # =========================================================================

    def create(self, note: Note) -> Note:
        """Insert a new note.

        Raises:
            StorageError: If the note has no owner or the write fails.
        """
        if not note.owner_id:
            raise StorageError(
                "Cannot store a note without an owner",
                operation="create",
                code=ErrorCode.STORAGE_WRITE_FAILED,
            )
        try:
            with self.session_factory() as session:
                self._sync_note_to_db(session, note)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to write note {note.id}",
                operation="create",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        return self.get(note.id) or note

    def get(self, note_id: str) -> Optional[Note]:
        """Get a note by ID, with tags and outgoing links."""
        with self.session_factory() as session:
            notes = self._load(session, select(DBNote).where(DBNote.id == note_id))
            return notes[0] if notes else None

    def exists(self, note_id: str) -> bool:
        with self.session_factory() as session:
            return session.scalar(
                select(func.count(DBNote.id)).where(DBNote.id == note_id)
            ) > 0

    def get_by_ids(self, ids: List[str]) -> List[Note]:
        """Get multiple notes by their IDs in a single query.

        Missing IDs are skipped; the result follows the request order.
        """
        if not ids:
            return []
        with self.session_factory() as session:
            notes = self._load(session, select(DBNote).where(DBNote.id.in_(ids)))
        id_to_note = {note.id: note for note in notes}
        return [id_to_note[nid] for nid in ids if nid in id_to_note]

    def list_for_owner(
        self, owner_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> List[Note]:
        """The user's notes, most recently updated first."""
        query = (
            select(DBNote)
            .where(DBNote.owner_id == owner_id)
            .order_by(DBNote.updated_at.desc(), DBNote.id.desc())
        )
        if offset > 0:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        # Paginate ids first: LIMIT over a joined eager load would cut rows, not notes
        with self.session_factory() as session:
            ids = list(session.scalars(query.with_only_columns(DBNote.id)).all())
        return self.get_by_ids(ids)

    def count_for_owner(self, owner_id: str) -> int:
        with self.session_factory() as session:
            return session.scalar(
                select(func.count(DBNote.id)).where(DBNote.owner_id == owner_id)
            ) or 0

    def update(self, note: Note, touch: bool = True) -> Note:
        """Update a stored note.

        Args:
            note: The note with its new field values.
            touch: Bump ``updated_at`` to now.

        Raises:
            NoteNotFoundError: If the note does not exist.
            StorageError: If the write fails.
        """
        with self._get_note_lock(note.id):
            if not self.exists(note.id):
                raise NoteNotFoundError(note.id)
            if touch:
                note.updated_at = utc_now()
            try:
                with self.session_factory() as session:
                    self._sync_note_to_db(session, note)
                    session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Failed to update note in database: {e}")
                raise StorageError(
                    f"Failed to update note {note.id}",
                    operation="update",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e
        return self.get(note.id) or note

    def mark_accessed(self, note_id: str) -> None:
        """Record a read without touching ``updated_at``."""
        with self.session_factory() as session:
            db_note = session.get(DBNote, note_id)
            if db_note is not None:
                db_note.last_accessed_at = utc_now()
                session.commit()

    def delete(self, note_id: str) -> None:
        """Delete a note together with its links, tags and versions.

        Raises:
            NoteNotFoundError: If the note doesn't exist.
        """
        with self._get_note_lock(note_id):
            if not self.exists(note_id):
                raise NoteNotFoundError(note_id)
            try:
                with self.session_factory() as session:
                    session.execute(
                        text(
                            "DELETE FROM links WHERE source_id = :note_id OR target_id = :note_id"
                        ),
                        {"note_id": note_id},
                    )
                    session.execute(
                        text("DELETE FROM note_tags WHERE note_id = :note_id"),
                        {"note_id": note_id},
                    )
                    session.execute(
                        text("DELETE FROM note_versions WHERE note_id = :note_id"),
                        {"note_id": note_id},
                    )
                    session.execute(
                        text("DELETE FROM notes WHERE id = :note_id"), {"note_id": note_id}
                    )
                    session.commit()
            except SQLAlchemyError as e:
                raise StorageError(
                    f"Failed to delete note {note_id}",
                    operation="delete",
                    code=ErrorCode.STORAGE_DELETE_FAILED,
                    original_error=e,
                ) from e
        with self._locks_guard:
            self._note_locks.pop(note_id, None)

    # =========================================================================
    # Queries
    # =========================================================================

    @staticmethod
    def _apply_search_filters(query: Any, kwargs: Dict[str, Any]) -> Any:
        """Apply search filter criteria to a SQLAlchemy query.

        Shared by search() and count_search_results().
        """
        if kwargs.get("owner_id"):
            query = query.where(DBNote.owner_id == kwargs["owner_id"])
        if kwargs.get("content"):
            search_term = escape_like_pattern(kwargs["content"])
            query = query.where(
                or_(
                    DBNote.content.like(f"%{search_term}%", escape="\\"),
                    DBNote.title.like(f"%{search_term}%", escape="\\"),
                    DBNote.summary.like(f"%{search_term}%", escape="\\"),
                )
            )
        if kwargs.get("title"):
            search_title = escape_like_pattern(kwargs["title"])
            query = query.where(
                func.lower(DBNote.title).like(f"%{search_title.lower()}%", escape="\\")
            )
        if kwargs.get("status") is not None:
            query = query.where(DBNote.status == NoteStatus.parse(kwargs["status"]).value)
        if kwargs.get("priority") is not None:
            query = query.where(
                DBNote.priority == NotePriority.parse(kwargs["priority"]).value
            )
        if kwargs.get("is_favorite") is not None:
            query = query.where(DBNote.is_favorite == bool(kwargs["is_favorite"]))
        if kwargs.get("category"):
            query = query.where(DBNote.category == kwargs["category"])
        if kwargs.get("tag"):
            tag_name = normalize_tag(kwargs["tag"])
            query = query.where(DBNote.tags.any(DBTag.name == tag_name))
        if kwargs.get("tags"):
            tag_names = [normalize_tag(t) for t in kwargs["tags"]]
            query = query.where(DBNote.tags.any(DBTag.name.in_(tag_names)))
        if kwargs.get("linked_to"):
            query = query.where(
                DBNote.outgoing_links.any(DBLink.target_id == kwargs["linked_to"])
            )
        if kwargs.get("updated_after"):
            query = query.where(DBNote.updated_at >= kwargs["updated_after"])
        if kwargs.get("updated_before"):
            query = query.where(DBNote.updated_at <= kwargs["updated_before"])
        return query

    def search(
        self, limit: Optional[int] = None, offset: int = 0, **kwargs: Any
    ) -> List[Note]:
        """Search for notes based on criteria with optional pagination.

        Args:
            limit: Maximum number of results to return. None for all matches.
            offset: Number of results to skip (for pagination).
            **kwargs: Search criteria (owner_id, content, title, status,
                     priority, is_favorite, category, tag, tags, linked_to,
                     updated_after, updated_before).

        Returns:
            Matching notes, most recently updated first.
        """
        query = self._apply_search_filters(select(DBNote.id), kwargs)
        query = query.order_by(DBNote.updated_at.desc(), DBNote.id.desc())
        if offset > 0:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        with self.session_factory() as session:
            ids = list(session.scalars(query).all())
        return self.get_by_ids(ids)

    def count_search_results(self, **kwargs: Any) -> int:
        """Count notes matching search criteria without loading them."""
        with self.session_factory() as session:
            query = self._apply_search_filters(select(func.count(DBNote.id)), kwargs)
            return session.scalar(query) or 0

    def find_linked_notes(
        self, note_id: str, direction: str = "outgoing"
    ) -> List[Note]:
        """Find notes linked to/from this note.

        Args:
            note_id: The note at the centre.
            direction: "outgoing" (targets), "incoming" (backlink sources) or "both".

        Raises:
            ValueError: For an unknown direction.
        """
        if direction not in ("outgoing", "incoming", "both"):
            raise ValueError(
                f"Invalid direction '{direction}'. Use 'outgoing', 'incoming' or 'both'"
            )
        with self.session_factory() as session:
            ids: List[str] = []
            if direction in ("outgoing", "both"):
                ids.extend(
                    session.scalars(
                        select(DBLink.target_id)
                        .where(DBLink.source_id == note_id)
                        .order_by(DBLink.id)
                    ).all()
                )
            if direction in ("incoming", "both"):
                ids.extend(
                    session.scalars(
                        select(DBLink.source_id)
                        .where(DBLink.target_id == note_id)
                        .order_by(DBLink.id)
                    ).all()
                )
        unique_ids = list(dict.fromkeys(nid for nid in ids if nid != note_id))
        return self.get_by_ids(unique_ids)

    def get_statistics(self, owner_id: str) -> NoteStatistics:
        """Aggregate counts over the user's notes in one query."""
        with self.session_factory() as session:
            row = session.execute(
                select(
                    func.count(DBNote.id),
                    func.sum(case((DBNote.is_favorite.is_(True), 1), else_=0)),
                    func.sum(case((DBNote.status == NoteStatus.DRAFT.value, 1), else_=0)),
                    func.sum(case((DBNote.status == NoteStatus.PUBLISHED.value, 1), else_=0)),
                    func.sum(case((DBNote.status == NoteStatus.ARCHIVED.value, 1), else_=0)),
                    func.sum(DBNote.word_count),
                    func.max(DBNote.updated_at),
                ).where(DBNote.owner_id == owner_id)
            ).one()

        total, favorites, drafts, published, archived, words, last_update = row
        return NoteStatistics(
            total_notes=total or 0,
            favorite_notes=favorites or 0,
            draft_notes=drafts or 0,
            published_notes=published or 0,
            archived_notes=archived or 0,
            total_words=words or 0,
            last_note_update=ensure_timezone_aware(last_update) if last_update else None,
        )

    def find_orphaned_note_ids(self, owner_id: str) -> List[str]:
        """IDs of the user's notes with no incoming or outgoing links."""
        with self.session_factory() as session:
            query = (
                select(DBNote.id)
                .where(DBNote.owner_id == owner_id)
                .where(DBNote.id.not_in(select(DBLink.source_id)))
                .where(DBNote.id.not_in(select(DBLink.target_id)))
                .order_by(DBNote.updated_at.desc())
            )
            return list(session.scalars(query).all())

    def find_central_note_ids_with_counts(
        self, owner_id: str, limit: int = 10, min_connections: int = 1
    ) -> List[Tuple[str, int]]:
        """Note IDs with the most connections (incoming + outgoing links).

        Returns:
            (note_id, connection_count) tuples, highest count first.
        """
        with self.session_factory() as session:
            query = text(
                """
            WITH outgoing AS (
                SELECT source_id as note_id, COUNT(*) as outgoing_count
                FROM links
                GROUP BY source_id
            ),
            incoming AS (
                SELECT target_id as note_id, COUNT(*) as incoming_count
                FROM links
                GROUP BY target_id
            )
            SELECT n.id,
                (COALESCE(o.outgoing_count, 0) + COALESCE(i.incoming_count, 0)) as total
            FROM notes n
            LEFT JOIN outgoing o ON n.id = o.note_id
            LEFT JOIN incoming i ON n.id = i.note_id
            WHERE n.owner_id = :owner_id
              AND (COALESCE(o.outgoing_count, 0) + COALESCE(i.incoming_count, 0)) >= :min_connections
            ORDER BY total DESC, n.id
            LIMIT :limit
            """
            )
            results = session.execute(
                query,
                {"owner_id": owner_id, "limit": limit, "min_connections": max(1, min_connections)},
            ).all()
            return [(row[0], row[1]) for row in results]

    # =========================================================================
    # Full-text search
    # =========================================================================

    def fts_search(
        self,
        query: str,
        owner_id: Optional[str] = None,
        limit: int = 50,
        highlight: bool = False,
        literal: Optional[bool] = None,
    ) -> List[FtsHit]:
        """Full-text search over the user's notes, see :class:`FtsIndex`."""
        return self._fts.search(
            query, owner_id=owner_id, limit=limit, highlight=highlight, literal=literal
        )

    def reset_fts_availability(self) -> bool:
        return self._fts.reset_availability()

    def rebuild_fts(self) -> int:
        return self._fts.rebuild()
