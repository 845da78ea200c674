"""SQLAlchemy database models for the Notekeeper entity store."""
import datetime
from typing import Dict, Optional, Type

from sqlalchemy import (Boolean, Column, DateTime, Integer, String, Text,
                        UniqueConstraint, create_engine, event)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from notekeeper.config import config
from notekeeper.models.schema import EntityKind

# Create base class for SQLAlchemy models
Base = declarative_base()


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# References between tables are plain integer columns. Cascades run as
# separate statements, so readers must tolerate orphaned references.


class DBFolder(Base):
    """Database model for a folder."""
    __tablename__ = "folders"
    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255), nullable=False)
    user_id = Column(Integer, nullable=True, index=True)
    color = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)

    def __repr__(self) -> str:
        return f"<Folder(id={self.id}, name='{self.name}')>"


class DBTag(Base):
    """Database model for a tag."""
    __tablename__ = "tags"
    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255), nullable=False, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    color = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)

    def __repr__(self) -> str:
        return f"<Tag(id={self.id}, name='{self.name}')>"


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(Integer, primary_key=True, autoincrement=False)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False, default="")
    preview = Column(Text, nullable=False, default="")
    background_color = Column(String(32), nullable=True)
    text_color = Column(String(32), nullable=True)
    font_family = Column(String(64), nullable=True)
    font_size = Column(String(16), nullable=True)
    is_pinned = Column(Boolean, nullable=False, default=False, index=True)
    folder_id = Column(Integer, nullable=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, nullable=False)

    def __repr__(self) -> str:
        return f"<Note(id={self.id}, title='{self.title}')>"


class DBNoteTag(Base):
    """Database model for a note-tag association."""
    __tablename__ = "note_tags"
    id = Column(Integer, primary_key=True, autoincrement=False)
    note_id = Column(Integer, nullable=False, index=True)
    tag_id = Column(Integer, nullable=False, index=True)

    # A tag is attached to a note at most once
    __table_args__ = (
        UniqueConstraint("note_id", "tag_id", name="unique_note_tag"),
    )

    def __repr__(self) -> str:
        return f"<NoteTag(id={self.id}, note={self.note_id}, tag={self.tag_id})>"


class DBMetadata(Base):
    """Key/value store for sync metadata (JSON encoded values)."""
    __tablename__ = "metadata"
    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)


TABLE_FOR_KIND: Dict[EntityKind, Type[Base]] = {
    EntityKind.FOLDERS: DBFolder,
    EntityKind.TAGS: DBTag,
    EntityKind.NOTES: DBNote,
    EntityKind.NOTE_TAGS: DBNoteTag,
}


def init_db(db_url: Optional[str] = None):
    """Initialize the database with hardened configuration.

    Applies SQLite settings for crash resilience:
    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode
    - QueuePool with pre-ping to detect stale connections

    Args:
        db_url: SQLAlchemy URL. Defaults to the configured database path.

    Returns:
        The initialized engine.
    """
    engine = create_engine(
        db_url or config.get_db_url(),
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    Base.metadata.create_all(engine)

    return engine


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = create_engine(config.get_db_url())
    return sessionmaker(bind=engine, expire_on_commit=False)
