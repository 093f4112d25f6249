"""Unit tests for shared data models."""

import json
from datetime import datetime, timedelta, timezone

from shared.models import (
    Credentials,
    MediaKind,
    Note,
    OpType,
    QueueEntry,
    QueuedMedia,
    QueuedNote,
    format_timestamp,
    normalize_tags,
    parse_timestamp,
)


class TestNormalizeTags:
    """Tests for tag input normalization."""

    def test_trims_lowercases_and_deduplicates(self):
        assert normalize_tags([" Work ", "work", "#Ideas", "", "   ", "# todo"]) == {
            "work", "ideas", "todo"
        }

    def test_empty_input(self):
        assert normalize_tags([]) == set()


class TestNote:
    """Tests for Note dataclass."""

    def test_new_note_gets_unique_id_and_equal_timestamps(self):
        first = Note.new("hello", tags=["A"])
        second = Note.new("hello")

        assert first.id != second.id
        assert first.created_at == first.updated_at
        assert first.created_at.tzinfo is not None
        assert first.tags == {"a"}
        assert first.is_pinned is False

    def test_touch_never_moves_before_created_at(self):
        note = Note.new("future")
        note.created_at = note.created_at + timedelta(days=1)

        note.touch()

        assert note.updated_at >= note.created_at


class TestTimestamps:
    """Tests for ISO-8601 helpers."""

    def test_format_uses_utc_z_suffix(self):
        value = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(value) == "2024-01-01T10:00:00Z"

    def test_naive_datetimes_are_treated_as_utc(self):
        assert format_timestamp(datetime(2024, 1, 1, 10, 0)) == "2024-01-01T10:00:00Z"

    def test_parse_accepts_z_suffix(self):
        parsed = parse_timestamp("2024-01-01T10:00:00Z")
        assert parsed == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

    def test_none_passes_through(self):
        assert format_timestamp(None) is None
        assert parse_timestamp(None) is None


class TestQueueEntry:
    """Tests for QueueEntry serialization used by the queue records."""

    def test_record_keys_and_values(self):
        created = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
        entry = QueueEntry(
            op_id="op-1",
            op_type=OpType.DELETE,
            note=QueuedNote(
                id="n1",
                text="bye",
                is_pinned=True,
                tags=["a"],
                created_at=created,
                updated_at=created,
                deleted_at=created + timedelta(hours=1),
            ),
            media=[
                QueuedMedia(
                    id="m1",
                    note_id="n1",
                    kind=MediaKind.AUDIO,
                    filename="m1.m4a",
                    content_type="audio/m4a",
                    checksum="abc",
                    local_path="m1.m4a",
                )
            ],
        )

        data = json.loads(json.dumps(entry.to_dict()))

        assert data["opId"] == "op-1"
        assert data["opType"] == "delete"
        assert data["note"]["deletedAt"] == "2024-01-01T11:00:00Z"
        assert data["media"][0]["kind"] == "audio"
        assert QueueEntry.from_dict(data) == entry

    def test_missing_deleted_at_reads_as_none(self):
        data = {
            "opId": "op-2",
            "opType": "create",
            "note": {
                "id": "n2",
                "text": "",
                "isPinned": False,
                "tags": [],
                "createdAt": "2024-01-01T10:00:00Z",
                "updatedAt": "2024-01-01T10:00:00Z",
            },
        }

        entry = QueueEntry.from_dict(data)

        assert entry.note.deleted_at is None
        assert entry.media == []
        assert entry.op_type is OpType.CREATE


def test_credentials_allow_missing_refresh_token():
    credentials = Credentials(access_token="a", refresh_token=None)
    assert credentials.refresh_token is None
