"""Repository for link storage and retrieval."""
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from realm_pkm.models.db_models import DBLink, DBNote
from realm_pkm.models.schema import LinkType, NoteLink, ensure_timezone_aware, utc_now

logger = logging.getLogger(__name__)


class LinkRepository:
    """Repository for managing links between notes.

    Links are directed and owned by their source note. Backlinks are
    never stored; they are the same rows read from the target side.
    """

    def __init__(self, session_factory):
        """Initialize the link repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    @staticmethod
    def _db_link_to_model(db_link: DBLink) -> NoteLink:
        return NoteLink(
            id=db_link.id,
            source_id=db_link.source_id,
            target_id=db_link.target_id,
            link_type=LinkType.parse(db_link.link_type),
            context=db_link.context,
            strength=db_link.strength if db_link.strength is not None else 1.0,
            is_inferred=bool(db_link.is_inferred),
            traversal_count=db_link.traversal_count or 0,
            last_traversed_at=(
                ensure_timezone_aware(db_link.last_traversed_at)
                if db_link.last_traversed_at
                else None
            ),
            created_at=ensure_timezone_aware(db_link.created_at),
            updated_at=ensure_timezone_aware(db_link.updated_at),
        )

    def create(self, link: NoteLink) -> NoteLink:
        """Create a new link in the database.

        Args:
            link: The link to create. Its ``id`` is ignored.

        Returns:
            The stored link, carrying its database ID.

        Raises:
            ValueError: If a link with the same source, target, and type already exists.
        """
        with self.session_factory() as session:
            existing = session.scalar(
                select(DBLink.id).where(
                    (DBLink.source_id == link.source_id) &
                    (DBLink.target_id == link.target_id) &
                    (DBLink.link_type == link.link_type.value)
                )
            )
            if existing:
                raise ValueError(
                    f"Link already exists: {link.source_id} -> {link.target_id} ({link.link_type.value})"
                )

            db_link = DBLink(
                source_id=link.source_id,
                target_id=link.target_id,
                link_type=link.link_type.value,
                context=link.context,
                strength=link.strength,
                is_inferred=link.is_inferred,
                traversal_count=link.traversal_count,
                last_traversed_at=link.last_traversed_at,
                created_at=link.created_at,
                updated_at=link.updated_at,
            )
            session.add(db_link)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ValueError(
                    f"Link already exists: {link.source_id} -> {link.target_id} ({link.link_type.value})"
                ) from e
            return self._db_link_to_model(db_link)

    def get(self, link_id: int) -> Optional[NoteLink]:
        with self.session_factory() as session:
            db_link = session.get(DBLink, link_id)
            return self._db_link_to_model(db_link) if db_link else None

    def find(
        self, source_id: str, target_id: str, link_type: Optional[LinkType] = None
    ) -> List[NoteLink]:
        """Get links from source to target, optionally of one type."""
        with self.session_factory() as session:
            query = select(DBLink).where(
                (DBLink.source_id == source_id) &
                (DBLink.target_id == target_id)
            )
            if link_type:
                query = query.where(DBLink.link_type == link_type.value)
            db_links = session.scalars(query).all()
            return [self._db_link_to_model(db_link) for db_link in db_links]

    def get_outgoing(self, note_id: str) -> List[NoteLink]:
        """Get all outgoing links from a note, oldest first."""
        with self.session_factory() as session:
            db_links = session.scalars(
                select(DBLink)
                .where(DBLink.source_id == note_id)
                .order_by(DBLink.created_at, DBLink.id)
            ).all()
            return [self._db_link_to_model(db_link) for db_link in db_links]

    def get_incoming(self, note_id: str) -> List[NoteLink]:
        """Get all incoming links (backlinks) to a note, oldest first."""
        with self.session_factory() as session:
            db_links = session.scalars(
                select(DBLink)
                .where(DBLink.target_id == note_id)
                .order_by(DBLink.created_at, DBLink.id)
            ).all()
            return [self._db_link_to_model(db_link) for db_link in db_links]

    def get_all_for_owner(self, owner_id: str) -> List[NoteLink]:
        """All links whose source note belongs to the user."""
        with self.session_factory() as session:
            db_links = session.scalars(
                select(DBLink)
                .join(DBNote, DBNote.id == DBLink.source_id)
                .where(DBNote.owner_id == owner_id)
                .order_by(DBLink.id)
            ).all()
            return [self._db_link_to_model(db_link) for db_link in db_links]

    def get_adjacency(self, owner_id: str) -> Dict[str, List[str]]:
        """Outgoing adjacency lists for the user's link graph.

        Only edges whose both endpoints belong to the user are included.
        """
        target_note = aliased(DBNote)
        with self.session_factory() as session:
            rows = session.execute(
                select(DBLink.source_id, DBLink.target_id)
                .join(DBNote, DBNote.id == DBLink.source_id)
                .join(target_note, target_note.id == DBLink.target_id)
                .where(DBNote.owner_id == owner_id)
                .where(target_note.owner_id == owner_id)
                .order_by(DBLink.id)
            ).all()

        adjacency: Dict[str, List[str]] = defaultdict(list)
        for source_id, target_id in rows:
            if target_id not in adjacency[source_id]:
                adjacency[source_id].append(target_id)
        return dict(adjacency)

    def update(self, link: NoteLink) -> NoteLink:
        """Persist type, context, strength and tracking fields of a link.

        Raises:
            ValueError: If the link does not exist or the new type collides.
        """
        link.updated_at = utc_now()
        with self.session_factory() as session:
            db_link = session.get(DBLink, link.id)
            if db_link is None:
                raise ValueError(f"Link {link.id} does not exist")
            db_link.link_type = link.link_type.value
            db_link.context = link.context
            db_link.strength = link.strength
            db_link.is_inferred = link.is_inferred
            db_link.traversal_count = link.traversal_count
            db_link.last_traversed_at = link.last_traversed_at
            db_link.updated_at = link.updated_at
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ValueError(
                    f"Link already exists: {link.source_id} -> {link.target_id} ({link.link_type.value})"
                ) from e
            return self._db_link_to_model(db_link)

    def record_traversal(self, link_id: int) -> Optional[NoteLink]:
        """Increment the traversal counter of a link."""
        with self.session_factory() as session:
            db_link = session.get(DBLink, link_id)
            if db_link is None:
                return None
            db_link.traversal_count = DBLink.traversal_count + 1
            db_link.last_traversed_at = utc_now()
            session.commit()
            return self._db_link_to_model(db_link)

    def delete(self, link_id: int) -> bool:
        """Delete a link by ID. Returns False if it did not exist."""
        with self.session_factory() as session:
            db_link = session.get(DBLink, link_id)
            if db_link is None:
                return False
            session.delete(db_link)
            session.commit()
            return True

    def count_for_owner(self, owner_id: str) -> int:
        with self.session_factory() as session:
            return session.scalar(
                select(func.count(DBLink.id))
                .join(DBNote, DBNote.id == DBLink.source_id)
                .where(DBNote.owner_id == owner_id)
            ) or 0

    def get_type_distribution(self, owner_id: str) -> Dict[str, int]:
        """Number of links per type for the user's notes."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBLink.link_type, func.count(DBLink.id))
                .join(DBNote, DBNote.id == DBLink.source_id)
                .where(DBNote.owner_id == owner_id)
                .group_by(DBLink.link_type)
                .order_by(func.count(DBLink.id).desc(), DBLink.link_type)
            ).all()
            return {link_type: count for link_type, count in rows}

    def get_degrees(self, owner_id: str) -> Dict[str, Tuple[int, int]]:
        """(outgoing, incoming) link counts per note of the user.

        Notes without links are absent from the result.
        """
        with self.session_factory() as session:
            outgoing = session.execute(
                select(DBLink.source_id, func.count(DBLink.id))
                .join(DBNote, DBNote.id == DBLink.source_id)
                .where(DBNote.owner_id == owner_id)
                .group_by(DBLink.source_id)
            ).all()
            incoming = session.execute(
                select(DBLink.target_id, func.count(DBLink.id))
                .join(DBNote, DBNote.id == DBLink.target_id)
                .where(DBNote.owner_id == owner_id)
                .group_by(DBLink.target_id)
            ).all()

        degrees: Dict[str, Tuple[int, int]] = {}
        for note_id, count in outgoing:
            degrees[note_id] = (count, 0)
        for note_id, count in incoming:
            out_count = degrees.get(note_id, (0, 0))[0]
            degrees[note_id] = (out_count, count)
        return degrees
