"""Sync orchestration: drains the mutation queue and restores remote notes."""

import asyncio
import base64
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from shared.models import QueueEntry
from services.notesync.api import (
    MediaPayload, NotePayload, OperationPayload, SyncNoteResult, SyncRequest
)
from services.notesync.batcher import NotesyncBatcher
from services.notesync.client import NotesyncClient
from services.notesync.errors import NotesyncError, SyncInProgressError
from services.notesync.repository import NotesRepository
from services.notesync.sync_queue import SyncQueue

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of one perform_sync pass."""
    ops_sent: int = 0
    batches_sent: int = 0
    results: List[SyncNoteResult] = field(default_factory=list)


@dataclass
class RestoreResult:
    """Outcome of one restore_latest pass."""
    notes_restored: int = 0
    notes_skipped: int = 0
    media_written: int = 0
    media_reused: int = 0


class NotesyncManager:
    """Drives outbound sync and inbound restore.

    Only one pass runs at a time; a call made while another pass is in
    flight is rejected with SyncInProgressError rather than queued.
    """

    def __init__(
        self,
        queue: SyncQueue,
        client: NotesyncClient,
        batcher: NotesyncBatcher,
        repository: Optional[NotesRepository] = None
    ):
        """
        Initialize the sync manager.

        Args:
            queue: Mutation queue to drain
            client: Notesync HTTP client
            batcher: Splits operations into request-sized batches
            repository: Local note repository, required for restore
        """
        self.queue = queue
        self.client = client
        self.batcher = batcher
        self.repository = repository
        self._lock = asyncio.Lock()

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    async def perform_sync(self) -> SyncResult:
        """
        Send every pending queue entry to the notesync service.

        Entries are sent in enqueue order in byte-bounded batches. After each
        acknowledged batch its entries are removed from the queue. The first
        failing batch stops the pass and its error propagates; entries of
        earlier batches stay removed and later ones stay queued.

        Returns:
            Counts and per-note results of the acknowledged batches

        Raises:
            SyncInProgressError: If another pass is running
            OperationTooLargeError: If an entry can never fit a request
            AuthenticationError: If the session expired
            NotesyncHTTPError: For other service failures
        """
        if self._lock.locked():
            raise SyncInProgressError("A sync pass is already running")

        async with self._lock:
            pending = self.queue.pending()
            result = SyncResult()
            if not pending:
                logger.info("Sync queue is empty, nothing to send")
                return result

            logger.info(f"Starting sync of {len(pending)} queued ops")
            entries_by_op: Dict[str, QueueEntry] = {entry.op_id: entry for entry in pending}
            ops = [self.build_operation(entry) for entry in pending]
            batches = self.batcher.split(ops)

            for index, batch in enumerate(batches, start=1):
                try:
                    response = await self.client.send(SyncRequest(ops=batch))
                except (NotesyncError, httpx.HTTPError) as e:
                    logger.error(
                        f"Sync batch {index}/{len(batches)} failed after "
                        f"{result.batches_sent} acknowledged batches: {e}"
                    )
                    raise

                self._log_unmatched_results(batch, response.results)
                self.queue.remove([entries_by_op[op.op_id] for op in batch])
                result.batches_sent += 1
                result.ops_sent += len(batch)
                result.results.extend(response.results)
                logger.info(f"Sync batch {index}/{len(batches)} acknowledged ({len(batch)} ops)")

            logger.info(f"Sync completed: {result.ops_sent} ops in {result.batches_sent} batches")
            return result

    def build_operation(self, entry: QueueEntry) -> OperationPayload:
        """Turn a queue entry into its wire form, inlining media as base64."""
        media = [
            MediaPayload(
                id=item.id,
                note_id=item.note_id,
                kind=item.kind.value,
                filename=item.filename,
                content_type=item.content_type,
                checksum=item.checksum,
                data_base64=base64.b64encode(self.queue.read_media(item.local_path)).decode(),
            )
            for item in entry.media
        ]
        return OperationPayload(
            op_id=entry.op_id,
            op_type=entry.op_type.value,
            note=NotePayload.from_queued(entry.note),
            media=media,
        )

    @staticmethod
    def _log_unmatched_results(batch: List[OperationPayload], results: List[SyncNoteResult]) -> None:
        # Results may arrive in any order; correlate by note id
        answered = {item.note_id for item in results}
        for op in batch:
            if op.note.id not in answered:
                logger.warning(f"No result returned for note {op.note.id} (op {op.op_id})")
        for item in results:
            if item.result == "conflict":
                logger.warning(f"Notesync kept its own version of note {item.note_id} (conflict)")

    async def restore_latest(self, limit: int) -> RestoreResult:
        """
        Pull the most recent remote notes into local storage.

        Media are de-duplicated by checksum against local files, and notes are
        upserted by id. Remote notes marked deleted are skipped.

        Raises:
            SyncInProgressError: If another pass is running
            AuthenticationError: If the session expired
            NotesyncHTTPError: For other service failures
        """
        if self.repository is None:
            raise ValueError("restore_latest requires a notes repository")
        if self._lock.locked():
            raise SyncInProgressError("A sync pass is already running")

        async with self._lock:
            response = await self.client.fetch_latest(limit)
            result = RestoreResult()

            media_by_note: Dict[str, List[MediaPayload]] = defaultdict(list)
            for item in response.media:
                media_by_note[item.note_id].append(item)

            for note in response.notes:
                if note.deleted_at is not None:
                    result.notes_skipped += 1
                    continue

                note_media = media_by_note.get(note.id, [])
                image_paths, audio_paths, written = self.repository.save_restore_media(note.id, note_media)
                result.media_written += written
                result.media_reused += len(image_paths) + len(audio_paths) - written

                self.repository.upsert_note(
                    note_id=note.id,
                    text=note.text,
                    is_pinned=note.is_pinned,
                    tags=note.tags,
                    created_at=note.created_at,
                    updated_at=note.updated_at,
                    image_paths=image_paths,
                    audio_paths=audio_paths,
                )
                result.notes_restored += 1

            logger.info(
                f"Restore completed: {result.notes_restored} notes, "
                f"{result.media_written} media written, {result.media_reused} reused"
            )
            return result
