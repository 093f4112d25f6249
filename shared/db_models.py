"""SQLAlchemy database models for the local Timeline notes store."""

from datetime import timezone
from sqlalchemy import (
    Column, String, Boolean, Text, DateTime, ForeignKey, Index, JSON, TypeDecorator
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime type.

    SQLite has no timezone support, so values are stored as naive UTC and
    re-tagged with UTC when loaded.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


Base = declarative_base()


class NoteRecord(Base):
    """Model for notes table."""
    __tablename__ = 'notes'

    id = Column(String(36), primary_key=True)
    text = Column(Text, nullable=False, default="")
    is_pinned = Column(Boolean, nullable=False, default=False)
    image_paths = Column(JSON, nullable=False, default=list)
    audio_paths = Column(JSON, nullable=False, default=list)
    created_at = Column(UTCDateTime(), nullable=False)
    updated_at = Column(UTCDateTime(), nullable=False)

    tags = relationship(
        "NoteTag",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __table_args__ = (
        Index('idx_notes_pinned_created', 'is_pinned', 'created_at'),
    )


class NoteTag(Base):
    """Model for note_tags table; tags are plain names attached by value."""
    __tablename__ = 'note_tags'

    note_id = Column(String(36), ForeignKey('notes.id', ondelete='CASCADE'), primary_key=True)
    name = Column(String(255), primary_key=True)

    __table_args__ = (
        Index('idx_note_tags_name', 'name'),
    )


class Credential(Base):
    """Model for credentials table."""
    __tablename__ = 'credentials'

    account = Column(String(255), primary_key=True)
    access_token = Column(Text, nullable=False)   # Encrypted
    refresh_token = Column(Text, nullable=True)   # Encrypted
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
