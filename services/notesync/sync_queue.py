"""Durable, file-backed queue of note mutations awaiting sync.

Every entry is its own JSON record under ``SyncQueue/``, named
``op_<timestamp>_<op id>.json`` so that lexicographic order is enqueue order.
Media referenced by an entry are copied into ``SyncQueue/Media/`` so the
user-facing media stores can change independently of pending uploads.
Records and media copies are written to a temp file and renamed into place,
so a crash leaves either nothing or a complete entry.
"""

import json
import logging
import mimetypes
import os
import shutil
import threading
import time
import uuid
from pathlib import Path
from typing import Iterable, List, Union

from shared.content_store import MediaStore, sha256_file
from shared.models import (
    MediaKind, Note, OpType, QueueEntry, QueuedMedia, QueuedNote, utcnow
)
from services.notesync.errors import SyncQueueError

logger = logging.getLogger(__name__)

RECORD_PREFIX = "op_"
RECORD_SUFFIX = ".json"
TMP_SUFFIX = ".tmp"

DEFAULT_CONTENT_TYPES = {
    MediaKind.IMAGE: ("image/jpeg", "jpg"),
    MediaKind.AUDIO: ("audio/m4a", "m4a"),
}


class SyncQueue:
    """Append-only log of pending create/update/delete operations."""

    def __init__(
        self,
        base_dir: Union[str, Path],
        image_store: MediaStore,
        audio_store: MediaStore
    ):
        """
        Initialize the queue, creating its directories.

        Args:
            base_dir: Data directory; the queue lives in ``base_dir/SyncQueue``
            image_store: Store resolving note image paths
            audio_store: Store resolving note audio paths

        Raises:
            SyncQueueError: If the queue directories cannot be created
        """
        self.base_path = Path(base_dir) / "SyncQueue"
        self.media_path = self.base_path / "Media"
        self.image_store = image_store
        self.audio_store = audio_store
        self._stamp_lock = threading.Lock()
        self._last_stamp = 0

        try:
            self.media_path.mkdir(parents=True, exist_ok=True)
            self._purge_partial_writes()
        except OSError as e:
            raise SyncQueueError(f"Unable to initialize sync queue at {self.base_path}: {e}") from e

    def _purge_partial_writes(self) -> None:
        for directory in (self.base_path, self.media_path):
            for leftover in directory.glob(f"*{TMP_SUFFIX}"):
                logger.warning(f"Removing incomplete queue write {leftover.name}")
                leftover.unlink(missing_ok=True)

    # Enqueue

    def enqueue_create(
        self,
        note: Note,
        image_paths: List[str],
        audio_paths: List[str],
        tags: Iterable[str]
    ) -> QueueEntry:
        """Queue creation of a note together with its media."""
        return self._enqueue(note, image_paths, audio_paths, tags, OpType.CREATE)

    def enqueue_update(
        self,
        note: Note,
        image_paths: List[str],
        audio_paths: List[str],
        tags: Iterable[str]
    ) -> QueueEntry:
        """Queue an update of a note; media lists carry the blobs to upload."""
        return self._enqueue(note, image_paths, audio_paths, tags, OpType.UPDATE)

    def enqueue_delete(self, note: Note) -> QueueEntry:
        """Queue deletion of a note, stamped with the current time."""
        return self._enqueue(
            note,
            note.image_paths,
            note.audio_paths,
            sorted(note.tags),
            OpType.DELETE,
            deleted_at=utcnow()
        )

    def _enqueue(
        self,
        note: Note,
        image_paths: List[str],
        audio_paths: List[str],
        tags: Iterable[str],
        op_type: OpType,
        deleted_at=None
    ) -> QueueEntry:
        op_id = str(uuid.uuid4())
        copied: List[QueuedMedia] = []

        try:
            for path in image_paths:
                copied.append(self._copy_media(note.id, MediaKind.IMAGE, self.image_store, path))
            for path in audio_paths:
                copied.append(self._copy_media(note.id, MediaKind.AUDIO, self.audio_store, path))

            entry = QueueEntry(
                op_id=op_id,
                op_type=op_type,
                note=QueuedNote(
                    id=note.id,
                    text=note.text,
                    is_pinned=note.is_pinned,
                    tags=list(tags),
                    created_at=note.created_at,
                    updated_at=note.updated_at,
                    deleted_at=deleted_at,
                ),
                media=copied,
            )
            self._write_record(entry)
        except Exception as e:
            self._delete_media_copies(copied)
            logger.error(f"Failed to enqueue {op_type.value} for note {note.id}: {e}", exc_info=True)
            if isinstance(e, SyncQueueError):
                raise
            raise SyncQueueError(f"Unable to enqueue {op_type.value} for note {note.id}: {e}") from e

        logger.info(
            f"Enqueued {op_type.value} op {op_id} for note {note.id} with {len(copied)} media"
        )
        return entry

    def _copy_media(self, note_id: str, kind: MediaKind, store: MediaStore, path: str) -> QueuedMedia:
        source = store.url_for(path)
        content_type, default_ext = DEFAULT_CONTENT_TYPES[kind]
        extension = source.suffix.lstrip(".").lower() or default_ext
        guessed, _ = mimetypes.guess_type(source.name)
        if guessed and guessed.startswith(f"{kind.value}/"):
            content_type = guessed

        media_id = str(uuid.uuid4())
        filename = f"{media_id}.{extension}"
        dest = self.media_path / filename
        tmp = self.media_path / f"{filename}{TMP_SUFFIX}"
        try:
            shutil.copyfile(source, tmp)
            checksum = sha256_file(tmp)
            os.replace(tmp, dest)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        return QueuedMedia(
            id=media_id,
            note_id=note_id,
            kind=kind,
            filename=filename,
            content_type=content_type,
            checksum=checksum,
            local_path=filename,
        )

    def _next_stamp(self) -> int:
        # Strictly increasing even when the clock stalls or steps back
        with self._stamp_lock:
            stamp = max(time.time_ns(), self._last_stamp + 1)
            self._last_stamp = stamp
            return stamp

    def _write_record(self, entry: QueueEntry) -> None:
        name = f"{RECORD_PREFIX}{self._next_stamp():020d}_{entry.op_id}{RECORD_SUFFIX}"
        target = self.base_path / name
        tmp = self.base_path / f"{name}{TMP_SUFFIX}"
        data = json.dumps(entry.to_dict(), separators=(",", ":")).encode()
        try:
            with open(tmp, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    # Read

    def _record_files(self) -> List[Path]:
        return sorted(
            (
                path for path in self.base_path.iterdir()
                if path.name.startswith(RECORD_PREFIX) and path.name.endswith(RECORD_SUFFIX)
            ),
            key=lambda path: path.name
        )

    def pending(self) -> List[QueueEntry]:
        """
        Read all queued entries, oldest first.

        Records removed between listing and reading are skipped, so the
        result is a consistent snapshot of entries present at call time.

        Raises:
            SyncQueueError: If the directory or a record cannot be read
        """
        entries = []
        try:
            files = self._record_files()
        except OSError as e:
            raise SyncQueueError(f"Unable to list sync queue: {e}") from e

        for path in files:
            try:
                data = json.loads(path.read_bytes())
            except FileNotFoundError:
                continue
            except (OSError, ValueError) as e:
                raise SyncQueueError(f"Unable to read queue record {path.name}: {e}") from e
            entries.append(QueueEntry.from_dict(data))
        return entries

    def pending_count(self) -> int:
        try:
            return len(self._record_files())
        except OSError as e:
            raise SyncQueueError(f"Unable to list sync queue: {e}") from e

    def media_file(self, local_path: str) -> Path:
        """Absolute path of a queued media copy."""
        return self.media_path / Path(local_path).name

    def read_media(self, local_path: str) -> bytes:
        """
        Read a queued media copy.

        Raises:
            SyncQueueError: If the copy is missing or unreadable
        """
        try:
            return self.media_file(local_path).read_bytes()
        except OSError as e:
            raise SyncQueueError(f"Unable to read queued media {local_path}: {e}") from e

    # Remove

    def remove(self, entries: Iterable[QueueEntry]) -> int:
        """
        Delete the given entries and their media copies.

        Entries that are no longer queued are ignored, so removal can be
        repeated safely.

        Returns:
            Number of records deleted
        """
        removed = 0
        for entry in entries:
            matches = list(self.base_path.glob(f"{RECORD_PREFIX}*_{entry.op_id}{RECORD_SUFFIX}"))
            try:
                for path in matches:
                    path.unlink(missing_ok=True)
                    removed += 1
                self._delete_media_copies(entry.media)
            except OSError as e:
                raise SyncQueueError(f"Unable to remove queue entry {entry.op_id}: {e}") from e

        if removed:
            logger.info(f"Removed {removed} acknowledged queue entries")
        return removed

    def _delete_media_copies(self, media: Iterable[QueuedMedia]) -> None:
        for item in media:
            self.media_file(item.local_path).unlink(missing_ok=True)

    def __repr__(self) -> str:
        return f"SyncQueue(base_path={str(self.base_path)!r})"
