"""Note repository: persists local notes and records their sync mutations."""

import base64
import binascii
import hashlib
import logging
import uuid
from datetime import datetime
from pathlib import PurePosixPath
from typing import Iterable, List, Optional, Tuple

from shared.content_store import MediaStore
from shared.db_operations import DatabaseOperations
from shared.models import Note, normalize_tags
from services.notesync.api import MediaPayload
from services.notesync.sync_queue import SyncQueue

logger = logging.getLogger(__name__)


class NotesRepository:
    """Single write path for notes.

    Each mutation enqueues its sync entry before the local change is
    committed; if enqueueing fails the user action fails and local state
    is left unchanged.
    """

    def __init__(
        self,
        db_ops: DatabaseOperations,
        image_store: MediaStore,
        audio_store: MediaStore,
        sync_queue: SyncQueue
    ):
        self.db_ops = db_ops
        self.image_store = image_store
        self.audio_store = audio_store
        self.sync_queue = sync_queue

    def list_notes(self) -> List[Note]:
        return self.db_ops.fetch_all_notes()

    def get_note(self, note_id: str) -> Optional[Note]:
        return self.db_ops.get_note(note_id)

    def create(
        self,
        text: str,
        images: Iterable[bytes],
        audio_paths: List[str],
        tag_input: Iterable[str]
    ) -> Note:
        """
        Create a note from captured content.

        Args:
            text: Note body
            images: Encoded image payloads to store
            audio_paths: Audio store paths of already recorded clips
            tag_input: Raw tag strings; normalized before storing

        Returns:
            The created note
        """
        image_paths = self.image_store.save(images)
        note = Note.new(text, image_paths=image_paths, audio_paths=audio_paths, tags=tag_input)

        try:
            entry = self.sync_queue.enqueue_create(
                note, note.image_paths, note.audio_paths, sorted(note.tags)
            )
        except Exception:
            self.image_store.delete(image_paths)
            raise

        try:
            created = self.db_ops.create_note(note)
        except Exception:
            self.sync_queue.remove([entry])
            self.image_store.delete(image_paths)
            raise

        logger.info(f"Created note {note.id}")
        return created

    def update(
        self,
        note: Note,
        text: str,
        images: Iterable[bytes],
        removed_paths: List[str],
        audio_paths: List[str],
        removed_audio_paths: List[str],
        tag_input: Iterable[str],
        is_pinned: bool
    ) -> Note:
        """
        Edit a note.

        The queued update carries only newly added media; removed media are
        dropped from the note and deleted from the stores once the change is
        committed.

        Returns:
            The updated note
        """
        # Only media the note actually references may be dropped
        removed_paths = [p for p in note.image_paths if p in removed_paths]
        removed_audio_paths = [p for p in note.audio_paths if p in removed_audio_paths]
        new_paths = self.image_store.save(images)

        updated = Note(
            id=note.id,
            text=text,
            created_at=note.created_at,
            updated_at=note.updated_at,
            is_pinned=is_pinned,
            tags=normalize_tags(tag_input),
            image_paths=[p for p in note.image_paths if p not in removed_paths] + new_paths,
            audio_paths=[p for p in note.audio_paths if p not in removed_audio_paths] + list(audio_paths),
        )
        updated.touch()

        try:
            entry = self.sync_queue.enqueue_update(
                updated, new_paths, list(audio_paths), sorted(updated.tags)
            )
        except Exception:
            self.image_store.delete(new_paths)
            raise

        try:
            result = self.db_ops.upsert_note(updated)
        except Exception:
            self.sync_queue.remove([entry])
            self.image_store.delete(new_paths)
            raise

        self._delete_unreferenced(note.id, removed_paths, removed_audio_paths)
        logger.info(f"Updated note {note.id}")
        return result

    def set_pinned(self, note: Note, is_pinned: bool) -> Note:
        """Pin or unpin a note; queued as a metadata-only update."""
        updated = Note(
            id=note.id,
            text=note.text,
            created_at=note.created_at,
            updated_at=note.updated_at,
            is_pinned=is_pinned,
            tags=set(note.tags),
            image_paths=list(note.image_paths),
            audio_paths=list(note.audio_paths),
        )
        updated.touch()

        entry = self.sync_queue.enqueue_update(updated, [], [], sorted(updated.tags))
        try:
            return self.db_ops.upsert_note(updated)
        except Exception:
            self.sync_queue.remove([entry])
            raise

    def delete(self, note: Note) -> None:
        """Delete a note and its media; the queued delete keeps its own media copies."""
        entry = self.sync_queue.enqueue_delete(note)
        try:
            self.db_ops.delete_note(note.id)
        except Exception:
            self.sync_queue.remove([entry])
            raise

        self._delete_unreferenced(note.id, note.image_paths, note.audio_paths)
        logger.info(f"Deleted note {note.id}")

    def _delete_unreferenced(self, note_id: str, image_paths: List[str], audio_paths: List[str]) -> None:
        # Restored notes can share one blob; keep files another note still uses
        in_use_images = set()
        in_use_audio = set()
        for other in self.db_ops.fetch_all_notes():
            if other.id != note_id:
                in_use_images.update(other.image_paths)
                in_use_audio.update(other.audio_paths)

        self.image_store.delete([p for p in image_paths if p not in in_use_images])
        self.audio_store.delete([p for p in audio_paths if p not in in_use_audio])

    def enqueue_full_resync(self) -> int:
        """
        Queue an update with full media for every local note.

        Returns:
            Number of notes queued
        """
        notes = self.db_ops.fetch_all_notes()
        for note in notes:
            self.sync_queue.enqueue_update(
                note, note.image_paths, note.audio_paths, sorted(note.tags)
            )
        logger.info(f"Queued full resync of {len(notes)} notes")
        return len(notes)

    def upsert_note(
        self,
        note_id: str,
        text: str,
        is_pinned: bool,
        tags: Iterable[str],
        created_at: datetime,
        updated_at: datetime,
        image_paths: List[str],
        audio_paths: List[str]
    ) -> Note:
        """Insert or overwrite a note by id without queueing a sync entry."""
        note = Note(
            id=note_id,
            text=text,
            created_at=created_at,
            updated_at=max(updated_at, created_at),
            is_pinned=is_pinned,
            tags=normalize_tags(tags),
            image_paths=list(image_paths),
            audio_paths=list(audio_paths),
        )
        return self.db_ops.upsert_note(note)

    def save_restore_media(
        self,
        note_id: str,
        media: Iterable[MediaPayload]
    ) -> Tuple[List[str], List[str], int]:
        """
        Write restored media into the local stores, reusing identical blobs.

        A blob whose SHA-256 matches one already stored is not written again;
        the existing path is referenced instead.

        Returns:
            Image paths, audio paths, and the number of files written
        """
        image_paths: List[str] = []
        audio_paths: List[str] = []
        written = 0

        for item in media:
            try:
                data = base64.b64decode(item.data_base64, validate=True)
            except (binascii.Error, ValueError):
                logger.warning(f"Skipping media {item.id} of note {note_id}: invalid base64")
                continue

            checksum = hashlib.sha256(data).hexdigest()
            if checksum != item.checksum:
                logger.warning(
                    f"Media {item.id} of note {note_id} declares checksum {item.checksum} "
                    f"but content hashes to {checksum}"
                )

            if item.kind == "audio":
                store, paths = self.audio_store, audio_paths
            else:
                store, paths = self.image_store, image_paths

            existing = store.find_by_checksum(checksum)
            if existing is not None:
                paths.append(existing)
                continue

            filename = self._restore_filename(store, item)
            paths.append(store.write(filename, data))
            written += 1

        return image_paths, audio_paths, written

    @staticmethod
    def _restore_filename(store: MediaStore, item: MediaPayload) -> str:
        name = PurePosixPath(item.filename).name if item.filename else ""
        if name and not store.exists(name):
            return name

        extension = None
        if "." in name:
            extension = name.rsplit(".", 1)[-1]
        elif "png" in item.content_type:
            extension = "png"
        return f"{uuid.uuid4()}.{extension or store.default_extension}"
