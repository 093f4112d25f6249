"""Splits sync operations into request-sized batches."""

import logging
from typing import List

from services.notesync.api import OperationPayload, SyncRequest
from services.notesync.errors import OperationTooLargeError

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_BYTES = 512 * 1024


def request_size(ops: List[OperationPayload]) -> int:
    """Size in bytes of the SyncRequest body carrying exactly these ops."""
    return len(SyncRequest(ops=ops).to_json().encode())


class NotesyncBatcher:
    """Greedy, order-preserving packing of operations under a byte budget.

    Operations are appended to the current batch in input order until the
    next one would push the serialized request past ``max_bytes``; that
    operation then starts a new batch. An operation is never split.
    """

    def __init__(self, max_bytes: int = DEFAULT_MAX_BATCH_BYTES):
        empty_size = request_size([])
        if max_bytes <= empty_size:
            raise ValueError(f"max_bytes must exceed the empty request size ({empty_size} bytes)")
        self.max_bytes = max_bytes
        self._envelope_size = empty_size

    def split(self, ops: List[OperationPayload]) -> List[List[OperationPayload]]:
        """
        Partition operations into batches.

        The request envelope is ``{"ops":[...]}`` with ops joined by commas,
        so a batch's size is the envelope plus each op's own JSON size plus
        one separator byte between ops.

        Args:
            ops: Operations in send order

        Returns:
            Batches whose concatenation equals ``ops``

        Raises:
            OperationTooLargeError: If one operation alone exceeds the budget
        """
        batches: List[List[OperationPayload]] = []
        current: List[OperationPayload] = []
        current_size = self._envelope_size

        for op in ops:
            op_size = len(op.to_json().encode())
            separator = 1 if current else 0
            if current_size + separator + op_size <= self.max_bytes:
                current.append(op)
                current_size += separator + op_size
                continue

            if not current:
                raise OperationTooLargeError(op.op_id, self._envelope_size + op_size, self.max_bytes)

            batches.append(current)
            current = [op]
            current_size = self._envelope_size + op_size
            if current_size > self.max_bytes:
                raise OperationTooLargeError(op.op_id, current_size, self.max_bytes)

        if current:
            batches.append(current)

        logger.debug(f"Split {len(ops)} ops into {len(batches)} batches (max {self.max_bytes} bytes)")
        return batches
