"""SQLAlchemy database models for the Realm PKM service."""
import datetime
from typing import Optional

from sqlalchemy import (Boolean, Column, DateTime, Float, ForeignKey, Integer,
                        String, Table, Text, UniqueConstraint, create_engine,
                        event, inspect, text)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from realm_pkm.config import config
from realm_pkm.models.schema import LinkType, NotePriority, NoteStatus


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# Create base class for SQLAlchemy models
Base = declarative_base()

# Association table for tags and notes. position keeps the note's tag order.
note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", String(255), ForeignKey("notes.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
    Column("position", Integer, nullable=False, default=0),
)


class DBUser(Base):
    """Database model for a user account."""
    __tablename__ = "users"
    id = Column(String(36), primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    display_name = Column(String(100), nullable=False)
    first_name = Column(String(50), nullable=True)
    last_name = Column(String(50), nullable=True)
    bio = Column(Text, nullable=True)
    preferences = Column(Text, nullable=False, default="{}")  # JSON object
    is_active = Column(Boolean, nullable=False, default=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    notes = relationship("DBNote", back_populates="owner")

    def __repr__(self) -> str:
        return f"<User(id='{self.id}', email='{self.email}')>"


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(255), primary_key=True, index=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    summary = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    status = Column(String(20), default=NoteStatus.DRAFT.value, nullable=False, index=True)
    priority = Column(String(20), default=NotePriority.NORMAL.value, nullable=False)
    is_public = Column(Boolean, default=False, nullable=False)
    is_favorite = Column(Boolean, default=False, nullable=False, index=True)
    word_count = Column(Integer, default=0, nullable=False)
    reading_time = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False, index=True)
    last_accessed_at = Column(DateTime, nullable=True)

    # Relationships
    owner = relationship("DBUser", back_populates="notes")
    # Written row by row through note_tags so the position survives
    tags = relationship(
        "DBTag",
        secondary=note_tags,
        back_populates="notes",
        order_by=[note_tags.c.position, note_tags.c.tag_id],
        viewonly=True,
    )
    outgoing_links = relationship(
        "DBLink",
        foreign_keys="DBLink.source_id",
        back_populates="source",
        cascade="all, delete-orphan"
    )
    incoming_links = relationship(
        "DBLink",
        foreign_keys="DBLink.target_id",
        back_populates="target",
        cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBTag(Base):
    """Database model for a tag."""
    __tablename__ = "tags"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)

    notes = relationship(
        "DBNote", secondary=note_tags, back_populates="tags", viewonly=True
    )

    def __repr__(self) -> str:
        """Return string representation of tag."""
        return f"<Tag(id={self.id}, name='{self.name}')>"


class DBLink(Base):
    """Database model for a directed link between notes."""
    __tablename__ = "links"
    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(String(255), ForeignKey("notes.id"), nullable=False, index=True)
    target_id = Column(String(255), ForeignKey("notes.id"), nullable=False, index=True)
    link_type = Column(String(50), default=LinkType.REFERENCES.value, nullable=False)
    context = Column(Text, nullable=True)
    strength = Column(Float, default=1.0, nullable=False)
    is_inferred = Column(Boolean, default=False, nullable=False)
    traversal_count = Column(Integer, default=0, nullable=False)
    last_traversed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    source = relationship(
        "DBNote", foreign_keys=[source_id], back_populates="outgoing_links"
    )
    target = relationship(
        "DBNote", foreign_keys=[target_id], back_populates="incoming_links"
    )

    # One link per (source, target, type)
    __table_args__ = (
        UniqueConstraint('source_id', 'target_id', 'link_type',
                         name='unique_link_type'),
    )

    def __repr__(self) -> str:
        """Return string representation of link."""
        return (
            f"<Link(id={self.id}, source='{self.source_id}', "
            f"target='{self.target_id}', type='{self.link_type}')>"
        )


class DBNoteVersion(Base):
    """Database model for a snapshot of a note before an update."""
    __tablename__ = "note_versions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    note_id = Column(String(255), ForeignKey("notes.id"), nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False, default="")
    tags = Column(Text, nullable=False, default="[]")  # JSON list
    word_count = Column(Integer, default=0, nullable=False)
    summary = Column(Text, nullable=True)
    change_description = Column(Text, nullable=True)
    content_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('note_id', 'version_number', name='unique_note_version'),
    )

    def __repr__(self) -> str:
        return f"<NoteVersion(note='{self.note_id}', version={self.version_number})>"


def _is_memory_url(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:")


def init_db(db_url: Optional[str] = None):
    """Initialize the database with hardened configuration.

    File databases get WAL journaling and a small QueuePool. In-memory
    databases share one connection through StaticPool so every session
    sees the same data.

    Args:
        db_url: SQLAlchemy URL. Defaults to ``config.get_db_url()``.

    Returns:
        The configured engine.
    """
    db_url = db_url or config.get_db_url()
    memory = _is_memory_url(db_url)

    if memory:
        engine = create_engine(
            db_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        # SQLite is single-writer, so a small pool is ideal
        engine = create_engine(
            db_url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        if not memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA cache_size=-64000")  # 64MB cache
        cursor.close()

    Base.metadata.create_all(engine)

    _migrate_add_link_tracking_columns(engine)
    _migrate_add_tag_position_column(engine)

    init_fts5(engine)

    return engine


def _migrate_add_link_tracking_columns(engine) -> None:
    """Migration: add traversal tracking columns to older link tables.

    SQLite doesn't support IF NOT EXISTS for ADD COLUMN, so we check
    the schema first. This is idempotent and safe to run multiple times.
    """
    inspector = inspect(engine)
    columns = [col['name'] for col in inspector.get_columns('links')]

    statements = []
    if 'traversal_count' not in columns:
        statements.append(
            "ALTER TABLE links ADD COLUMN traversal_count INTEGER NOT NULL DEFAULT 0"
        )
    if 'last_traversed_at' not in columns:
        statements.append("ALTER TABLE links ADD COLUMN last_traversed_at DATETIME")

    if statements:
        with engine.connect() as conn:
            for statement in statements:
                conn.execute(text(statement))
            conn.commit()


def _migrate_add_tag_position_column(engine) -> None:
    """Migration: older note_tags tables have no position column.

    Existing rows get position 0 and read back by tag id until the note
    is saved again.
    """
    columns = [col['name'] for col in inspect(engine).get_columns('note_tags')]
    if 'position' in columns:
        return
    with engine.connect() as conn:
        conn.execute(text(
            "ALTER TABLE note_tags ADD COLUMN position INTEGER NOT NULL DEFAULT 0"
        ))
        conn.commit()


def init_fts5(engine) -> None:
    """Initialize the FTS5 virtual table mirroring note text.

    The table uses the notes table as external content and is kept in
    sync by triggers, so BM25 ranking is available without double writes.
    """
    with engine.connect() as conn:
        conn.execute(text("""
            CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
                id UNINDEXED,
                title,
                content,
                summary,
                content='notes',
                content_rowid='rowid'
            )
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_ai AFTER INSERT ON notes BEGIN
                INSERT INTO notes_fts(rowid, id, title, content, summary)
                VALUES (NEW.rowid, NEW.id, NEW.title, NEW.content, NEW.summary);
            END
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_ad AFTER DELETE ON notes BEGIN
                INSERT INTO notes_fts(notes_fts, rowid, id, title, content, summary)
                VALUES ('delete', OLD.rowid, OLD.id, OLD.title, OLD.content, OLD.summary);
            END
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_au AFTER UPDATE ON notes BEGIN
                INSERT INTO notes_fts(notes_fts, rowid, id, title, content, summary)
                VALUES ('delete', OLD.rowid, OLD.id, OLD.title, OLD.content, OLD.summary);
                INSERT INTO notes_fts(rowid, id, title, content, summary)
                VALUES (NEW.rowid, NEW.id, NEW.title, NEW.content, NEW.summary);
            END
        """))

        conn.commit()


def rebuild_fts_index(engine) -> int:
    """Rebuild the FTS5 index from existing notes.

    Returns:
        Number of notes indexed.
    """
    with engine.connect() as conn:
        conn.execute(text("INSERT INTO notes_fts(notes_fts) VALUES('rebuild')"))
        conn.commit()
        count = conn.execute(text("SELECT COUNT(*) FROM notes")).scalar()

    return count or 0


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine)
