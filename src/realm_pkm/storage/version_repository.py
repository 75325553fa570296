"""Repository for note version history."""
import json
import logging
from typing import List, Optional

from sqlalchemy import func, select, text

from realm_pkm.models.db_models import DBNoteVersion
from realm_pkm.models.schema import NoteVersion, ensure_timezone_aware

logger = logging.getLogger(__name__)


class VersionRepository:
    """Append-only store of note snapshots, numbered per note from 1."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @staticmethod
    def _db_version_to_model(db_version: DBNoteVersion) -> NoteVersion:
        return NoteVersion(
            id=db_version.id,
            note_id=db_version.note_id,
            version_number=db_version.version_number,
            title=db_version.title,
            content=db_version.content or "",
            tags=json.loads(db_version.tags or "[]"),
            word_count=db_version.word_count or 0,
            summary=db_version.summary,
            change_description=db_version.change_description,
            content_hash=db_version.content_hash,
            created_at=ensure_timezone_aware(db_version.created_at),
        )

    def add(self, version: NoteVersion) -> NoteVersion:
        """Store a snapshot. The version number is assigned here."""
        with self.session_factory() as session:
            current = session.scalar(
                select(func.max(DBNoteVersion.version_number)).where(
                    DBNoteVersion.note_id == version.note_id
                )
            )
            db_version = DBNoteVersion(
                note_id=version.note_id,
                version_number=(current or 0) + 1,
                title=version.title,
                content=version.content,
                tags=json.dumps(version.tags),
                word_count=version.word_count,
                summary=version.summary,
                change_description=version.change_description,
                content_hash=version.content_hash,
                created_at=version.created_at,
            )
            session.add(db_version)
            session.commit()
            return self._db_version_to_model(db_version)

    def get_latest(self, note_id: str) -> Optional[NoteVersion]:
        with self.session_factory() as session:
            db_version = session.scalar(
                select(DBNoteVersion)
                .where(DBNoteVersion.note_id == note_id)
                .order_by(DBNoteVersion.version_number.desc())
                .limit(1)
            )
            return self._db_version_to_model(db_version) if db_version else None

    def get(self, note_id: str, version_number: int) -> Optional[NoteVersion]:
        with self.session_factory() as session:
            db_version = session.scalar(
                select(DBNoteVersion).where(
                    (DBNoteVersion.note_id == note_id) &
                    (DBNoteVersion.version_number == version_number)
                )
            )
            return self._db_version_to_model(db_version) if db_version else None

    def list_for_note(self, note_id: str, limit: int = 10) -> List[NoteVersion]:
        """Most recent snapshots first."""
        with self.session_factory() as session:
            db_versions = session.scalars(
                select(DBNoteVersion)
                .where(DBNoteVersion.note_id == note_id)
                .order_by(DBNoteVersion.version_number.desc())
                .limit(limit)
            ).all()
            return [self._db_version_to_model(v) for v in db_versions]

    def delete_for_note(self, note_id: str) -> int:
        with self.session_factory() as session:
            result = session.execute(
                text("DELETE FROM note_versions WHERE note_id = :nid"),
                {"nid": note_id},
            )
            session.commit()
            return result.rowcount or 0
