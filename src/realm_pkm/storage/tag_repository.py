"""Repository for tag storage and retrieval."""
import logging
from typing import Dict, List

from sqlalchemy import func, select, text

from realm_pkm.models.db_models import DBNote, DBTag, note_tags
from realm_pkm.utils import escape_like_pattern, normalize_tag

logger = logging.getLogger(__name__)


class TagRepository:
    """Repository for managing tags.

    Tag rows are shared between users; every read is scoped through the
    notes that carry the tag, so users only ever see their own tags.
    """

    def __init__(self, session_factory):
        """Initialize the tag repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    @staticmethod
    def get_or_create_in_session(session, tag_name: str) -> DBTag:
        """Atomically get or create a tag inside an existing session.

        INSERT OR IGNORE followed by SELECT survives two writers creating
        the same tag at once.
        """
        session.execute(
            text("INSERT OR IGNORE INTO tags (name) VALUES (:name)"), {"name": tag_name}
        )
        return session.scalar(select(DBTag).where(DBTag.name == tag_name))

    def get_or_create(self, tag_name: str) -> str:
        """Get an existing tag or create a new one. Returns the stored name."""
        name = normalize_tag(tag_name)
        with self.session_factory() as session:
            db_tag = self.get_or_create_in_session(session, name)
            session.commit()
            return db_tag.name

    def get_all_for_owner(self, owner_id: str) -> List[str]:
        """Sorted names of every tag used by the user's notes."""
        with self.session_factory() as session:
            names = session.scalars(
                select(DBTag.name)
                .join(note_tags, note_tags.c.tag_id == DBTag.id)
                .join(DBNote, DBNote.id == note_tags.c.note_id)
                .where(DBNote.owner_id == owner_id)
                .distinct()
                .order_by(DBTag.name)
            ).all()
            return list(names)

    def get_with_counts(self, owner_id: str) -> Dict[str, int]:
        """Tag usage counts across the user's notes, most used first."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBTag.name, func.count(note_tags.c.note_id))
                .join(note_tags, note_tags.c.tag_id == DBTag.id)
                .join(DBNote, DBNote.id == note_tags.c.note_id)
                .where(DBNote.owner_id == owner_id)
                .group_by(DBTag.name)
                .order_by(func.count(note_tags.c.note_id).desc(), DBTag.name)
            ).all()
            return {name: count for name, count in rows}

    def find_by_prefix(self, owner_id: str, prefix: str, limit: int = 10) -> List[str]:
        """User tags starting with prefix (case-insensitive)."""
        pattern = f"{escape_like_pattern(normalize_tag(prefix))}%"
        with self.session_factory() as session:
            names = session.scalars(
                select(DBTag.name)
                .join(note_tags, note_tags.c.tag_id == DBTag.id)
                .join(DBNote, DBNote.id == note_tags.c.note_id)
                .where(DBNote.owner_id == owner_id)
                .where(DBTag.name.like(pattern, escape="\\"))
                .distinct()
                .order_by(DBTag.name)
                .limit(limit)
            ).all()
            return list(names)

    def find_note_ids_by_tags(
        self, owner_id: str, tags: List[str], match_all: bool = False
    ) -> List[str]:
        """IDs of the user's notes carrying any (or all) of the tags."""
        names = [normalize_tag(t) for t in tags if normalize_tag(t)]
        if not names:
            return []
        with self.session_factory() as session:
            query = (
                select(note_tags.c.note_id)
                .join(DBTag, DBTag.id == note_tags.c.tag_id)
                .join(DBNote, DBNote.id == note_tags.c.note_id)
                .where(DBNote.owner_id == owner_id)
                .where(DBTag.name.in_(names))
                .group_by(note_tags.c.note_id)
            )
            if match_all:
                query = query.having(
                    func.count(func.distinct(DBTag.name)) == len(set(names))
                )
            return list(session.scalars(query).all())

    def rename(self, owner_id: str, old_name: str, new_name: str) -> int:
        """Retag the user's notes from old_name to new_name.

        Notes that already carry new_name simply lose old_name.

        Returns:
            Number of notes changed.
        """
        old = normalize_tag(old_name)
        new = normalize_tag(new_name)
        note_ids = self.find_note_ids_by_tags(owner_id, [old])
        if not note_ids or old == new:
            return 0

        with self.session_factory() as session:
            old_tag = session.scalar(select(DBTag).where(DBTag.name == old))
            new_tag = self.get_or_create_in_session(session, new)
            for note_id in note_ids:
                params = {"nid": note_id, "old": old_tag.id, "new": new_tag.id}
                # The new tag takes the old one's place in the note's order
                session.execute(
                    text(
                        "INSERT OR IGNORE INTO note_tags (note_id, tag_id, position) "
                        "SELECT note_id, :new, position FROM note_tags "
                        "WHERE note_id = :nid AND tag_id = :old"
                    ),
                    params,
                )
                session.execute(
                    text(
                        "DELETE FROM note_tags WHERE note_id = :nid AND tag_id = :old"
                    ),
                    params,
                )
            session.commit()
        logger.info(f"Renamed tag '{old}' to '{new}' on {len(note_ids)} notes")
        return len(note_ids)

    def delete_unused(self) -> int:
        """Delete tags that no note carries. Returns the number removed."""
        with self.session_factory() as session:
            result = session.execute(
                text(
                    "DELETE FROM tags WHERE id NOT IN "
                    "(SELECT DISTINCT tag_id FROM note_tags)"
                )
            )
            session.commit()
            return result.rowcount or 0
