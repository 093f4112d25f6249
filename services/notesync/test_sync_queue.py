"""Unit tests for the file-backed sync queue.

Tests cover:
- Enqueue order is preserved by pending()
- Media copies and checksums
- Idempotent removal
- Failed enqueues leave the queue unchanged
- Crash leftovers are ignored and purged
"""

import hashlib
import json
from unittest.mock import patch

import pytest

from shared.content_store import MediaStore
from shared.models import MediaKind, Note, OpType
from services.notesync.errors import SyncQueueError
from services.notesync.sync_queue import SyncQueue


# Test fixtures

@pytest.fixture
def image_store(tmp_path):
    return MediaStore(tmp_path, "Images", "jpg")


@pytest.fixture
def audio_store(tmp_path):
    return MediaStore(tmp_path, "Audio", "m4a")


@pytest.fixture
def queue(tmp_path, image_store, audio_store):
    return SyncQueue(tmp_path, image_store, audio_store)


def record_files(queue):
    return sorted(p.name for p in queue.base_path.iterdir() if p.suffix == ".json")


def media_files(queue):
    return sorted(p.name for p in queue.media_path.iterdir())


# Test: Ordering

def test_pending_returns_entries_in_enqueue_order(queue):
    notes = [Note.new(f"note {i}") for i in range(12)]
    for note in notes:
        queue.enqueue_create(note, [], [], [])

    pending = queue.pending()

    assert [entry.note.id for entry in pending] == [note.id for note in notes]
    assert queue.pending_count() == 12


def test_delete_follows_create_for_same_note(queue):
    note = Note.new("short lived")
    queue.enqueue_create(note, [], [], [])
    queue.enqueue_update(note, [], [], ["x"])
    queue.enqueue_delete(note)

    op_types = [entry.op_type for entry in queue.pending()]

    assert op_types == [OpType.CREATE, OpType.UPDATE, OpType.DELETE]


def test_entries_get_unique_op_ids(queue):
    note = Note.new("twice")
    first = queue.enqueue_update(note, [], [], [])
    second = queue.enqueue_update(note, [], [], [])

    assert first.op_id != second.op_id


def test_record_names_sort_by_enqueue_order(queue):
    for i in range(5):
        queue.enqueue_create(Note.new(str(i)), [], [], [])

    names = record_files(queue)

    assert all(name.startswith("op_") for name in names)
    assert [json.loads((queue.base_path / n).read_text())["note"]["text"] for n in names] == [
        "0", "1", "2", "3", "4"
    ]


# Test: Snapshot contents

def test_enqueue_create_snapshots_note_fields(queue):
    note = Note.new("hello", tags=["b", "a"])
    note.is_pinned = True

    entry = queue.enqueue_create(note, [], [], ["a", "b"])
    [stored] = queue.pending()

    assert stored == entry
    assert stored.op_type is OpType.CREATE
    assert stored.note.id == note.id
    assert stored.note.text == "hello"
    assert stored.note.is_pinned is True
    assert stored.note.tags == ["a", "b"]
    assert stored.note.created_at == note.created_at
    assert stored.note.deleted_at is None


def test_enqueue_delete_sets_deleted_at_and_carries_media(queue, image_store, audio_store):
    [image] = image_store.save([b"img"])
    [audio] = audio_store.save([b"aud"])
    note = Note.new("to delete", image_paths=[image], audio_paths=[audio], tags=["t"])

    entry = queue.enqueue_delete(note)

    assert entry.op_type is OpType.DELETE
    assert entry.note.deleted_at is not None
    assert entry.note.tags == ["t"]
    assert [m.kind for m in entry.media] == [MediaKind.IMAGE, MediaKind.AUDIO]


def test_media_checksum_matches_content(queue, image_store):
    content = b"\xff\xd8 fake jpeg bytes" * 100
    [path] = image_store.save([content])
    note = Note.new("with image", image_paths=[path])

    queue.enqueue_create(note, [path], [], [])
    [entry] = queue.pending()
    [media] = entry.media

    assert media.checksum == hashlib.sha256(content).hexdigest()
    assert media.note_id == note.id
    assert media.kind is MediaKind.IMAGE
    assert media.content_type == "image/jpeg"
    assert queue.read_media(media.local_path) == content


def test_audio_media_metadata(queue, audio_store):
    [path] = audio_store.save([b"audio bytes"])

    entry = queue.enqueue_create(Note.new("memo"), [], [path], [])
    [media] = entry.media

    assert media.kind is MediaKind.AUDIO
    assert media.filename.endswith(".m4a")
    assert media.content_type.startswith("audio/")


def test_queue_keeps_its_own_media_copy(queue, image_store):
    [path] = image_store.save([b"original"])
    queue.enqueue_create(Note.new("n", image_paths=[path]), [path], [], [])

    image_store.delete([path])
    image_store.write(path, b"reused name, different bytes")

    [entry] = queue.pending()
    assert queue.read_media(entry.media[0].local_path) == b"original"


# Test: Removal

def test_remove_deletes_records_and_media(queue, image_store):
    [path] = image_store.save([b"img"])
    first = queue.enqueue_create(Note.new("a", image_paths=[path]), [path], [], [])
    second = queue.enqueue_create(Note.new("b"), [], [], [])

    removed = queue.remove([first])

    assert removed == 1
    assert [entry.op_id for entry in queue.pending()] == [second.op_id]
    assert media_files(queue) == []


def test_remove_is_idempotent(queue):
    entry = queue.enqueue_create(Note.new("a"), [], [], [])
    keep = queue.enqueue_create(Note.new("b"), [], [], [])

    assert queue.remove([entry]) == 1
    before = queue.pending()
    assert queue.remove([entry]) == 0
    assert queue.pending() == before == [keep]


def test_remove_unknown_entry_is_noop(queue):
    entry = queue.enqueue_create(Note.new("a"), [], [], [])
    queue.remove([entry])

    queue.remove([entry])

    assert queue.pending_count() == 0


# Test: Failure handling

def test_enqueue_with_missing_media_fails_and_leaves_queue_unchanged(queue, image_store):
    [good] = image_store.save([b"present"])
    queue.enqueue_create(Note.new("existing"), [], [], [])

    with pytest.raises(SyncQueueError):
        queue.enqueue_create(Note.new("broken"), [good, "missing.jpg"], [], [])

    assert queue.pending_count() == 1
    assert media_files(queue) == []


def test_enqueue_record_write_failure_cleans_up_media(queue, image_store):
    [path] = image_store.save([b"img"])

    with patch("services.notesync.sync_queue.os.fsync", side_effect=OSError("disk full")):
        with pytest.raises(SyncQueueError):
            queue.enqueue_create(Note.new("n"), [path], [], [])

    assert queue.pending_count() == 0
    assert media_files(queue) == []
    assert [p.name for p in queue.base_path.iterdir() if p.is_file()] == []


def test_pending_ignores_and_init_purges_partial_writes(tmp_path, queue, image_store, audio_store):
    queue.enqueue_create(Note.new("complete"), [], [], [])
    (queue.base_path / "op_99999999999999999999_half.json.tmp").write_text("{\"opId\"")
    (queue.media_path / "half.jpg.tmp").write_bytes(b"partial")

    assert [entry.note.text for entry in queue.pending()] == ["complete"]

    reopened = SyncQueue(tmp_path, image_store, audio_store)

    assert not list(reopened.base_path.glob("*.tmp"))
    assert not list(reopened.media_path.glob("*.tmp"))
    assert reopened.pending_count() == 1


def test_pending_skips_records_removed_while_reading(queue):
    first = queue.enqueue_create(Note.new("a"), [], [], [])
    second = queue.enqueue_create(Note.new("b"), [], [], [])
    original = queue._record_files

    def listing_then_removal():
        files = original()
        queue.remove([first])
        return files

    with patch.object(queue, "_record_files", side_effect=listing_then_removal):
        pending = queue.pending()

    assert [entry.op_id for entry in pending] == [second.op_id]


def test_corrupt_record_raises(queue):
    (queue.base_path / "op_00000000000000000001_bad.json").write_text("not json")

    with pytest.raises(SyncQueueError):
        queue.pending()


def test_queue_survives_reopen(tmp_path, queue, image_store, audio_store):
    entry = queue.enqueue_create(Note.new("persisted"), [], [], ["tag"])

    reopened = SyncQueue(tmp_path, image_store, audio_store)

    assert reopened.pending() == [entry]


def test_init_failure_raises_sync_queue_error(tmp_path, image_store, audio_store):
    blocker = tmp_path / "blocked"
    blocker.write_text("a file where a directory should be")

    with pytest.raises(SyncQueueError):
        SyncQueue(blocker, image_store, audio_store)
