"""Pydantic models for notesync wire payloads."""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel

from shared.models import QueuedNote, format_timestamp


class WireModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class NotePayload(WireModel):
    id: str
    text: str
    is_pinned: bool
    tags: List[str]
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    @field_serializer("created_at", "updated_at", "deleted_at", when_used="json")
    def _serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        return format_timestamp(value)

    @classmethod
    def from_queued(cls, note: QueuedNote) -> "NotePayload":
        return cls(
            id=note.id,
            text=note.text,
            is_pinned=note.is_pinned,
            tags=list(note.tags),
            created_at=note.created_at,
            updated_at=note.updated_at,
            deleted_at=note.deleted_at,
        )


class MediaPayload(WireModel):
    id: str
    note_id: str
    kind: Literal["image", "audio"]
    filename: str
    content_type: str
    checksum: str
    data_base64: str


class OperationPayload(WireModel):
    op_id: str
    op_type: Literal["create", "update", "delete"]
    note: NotePayload
    media: List[MediaPayload] = Field(default_factory=list)


class SyncRequest(WireModel):
    """Body of POST /api/sync."""
    ops: List[OperationPayload]


class SyncNoteResult(WireModel):
    note_id: str
    result: str
    note: Optional[NotePayload] = None


class SyncResponse(WireModel):
    results: List[SyncNoteResult] = Field(default_factory=list)


class RestoreResponse(WireModel):
    """Body returned by GET /api/notes."""
    notes: List[NotePayload] = Field(default_factory=list)
    media: List[MediaPayload] = Field(default_factory=list)


class AuthExchangeRequest(WireModel):
    code: str


class AuthRefreshRequest(WireModel):
    refresh_token: str


class AuthTokenResponse(WireModel):
    """Token pair returned by both the exchange and refresh endpoints.

    Accepts camelCase and snake_case keys.
    """
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
