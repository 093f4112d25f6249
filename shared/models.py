"""Shared data models for the Timeline notes client."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional, Set


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def normalize_tags(tag_input: Iterable[str]) -> Set[str]:
    """Trim, lowercase and de-duplicate raw tag input, dropping a leading '#'."""
    tags = set()
    for raw in tag_input:
        value = raw.strip()
        if value.startswith("#"):
            value = value[1:].strip()
        value = value.lower()
        if value:
            tags.add(value)
    return tags


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as ISO-8601 UTC with a trailing 'Z'."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, accepting a trailing 'Z'."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class OpType(str, Enum):
    """Kind of note mutation carried by a queue entry."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MediaKind(str, Enum):
    IMAGE = "image"
    AUDIO = "audio"


@dataclass
class Note:
    """A locally persisted note."""
    id: str
    text: str
    created_at: datetime
    updated_at: datetime
    is_pinned: bool = False
    tags: Set[str] = field(default_factory=set)
    image_paths: List[str] = field(default_factory=list)
    audio_paths: List[str] = field(default_factory=list)

    @classmethod
    def new(
        cls,
        text: str,
        image_paths: Optional[List[str]] = None,
        audio_paths: Optional[List[str]] = None,
        tags: Optional[Iterable[str]] = None
    ) -> "Note":
        """Create a note with a fresh id and matching created/updated timestamps."""
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            text=text,
            created_at=now,
            updated_at=now,
            tags=normalize_tags(tags or []),
            image_paths=list(image_paths or []),
            audio_paths=list(audio_paths or []),
        )

    def touch(self) -> None:
        """Bump updated_at, never moving it before created_at."""
        self.updated_at = max(utcnow(), self.created_at)


@dataclass
class QueuedNote:
    """Point-in-time snapshot of a note's metadata held by a queue entry."""
    id: str
    text: str
    is_pinned: bool
    tags: List[str]
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "isPinned": self.is_pinned,
            "tags": list(self.tags),
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "deletedAt": format_timestamp(self.deleted_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueuedNote":
        return cls(
            id=data["id"],
            text=data["text"],
            is_pinned=data["isPinned"],
            tags=list(data["tags"]),
            created_at=parse_timestamp(data["createdAt"]),
            updated_at=parse_timestamp(data["updatedAt"]),
            deleted_at=parse_timestamp(data.get("deletedAt")),
        )


@dataclass
class QueuedMedia:
    """A media blob copied into the queue's private media store."""
    id: str
    note_id: str
    kind: MediaKind
    filename: str
    content_type: str
    checksum: str
    local_path: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "noteId": self.note_id,
            "kind": self.kind.value,
            "filename": self.filename,
            "contentType": self.content_type,
            "checksum": self.checksum,
            "localPath": self.local_path,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueuedMedia":
        return cls(
            id=data["id"],
            note_id=data["noteId"],
            kind=MediaKind(data["kind"]),
            filename=data["filename"],
            content_type=data["contentType"],
            checksum=data["checksum"],
            local_path=data["localPath"],
        )


@dataclass
class QueueEntry:
    """One durable unit of the mutation queue."""
    op_id: str
    op_type: OpType
    note: QueuedNote
    media: List[QueuedMedia] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "opId": self.op_id,
            "opType": self.op_type.value,
            "note": self.note.to_dict(),
            "media": [media.to_dict() for media in self.media],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueueEntry":
        return cls(
            op_id=data["opId"],
            op_type=OpType(data["opType"]),
            note=QueuedNote.from_dict(data["note"]),
            media=[QueuedMedia.from_dict(item) for item in data.get("media", [])],
        )


@dataclass
class Credentials:
    """Access/refresh token pair for the notesync service."""
    access_token: str
    refresh_token: Optional[str]
