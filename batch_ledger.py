"""
Batch lifecycle and the encrypted records appended to each batch.

Batch ids start at 1 and strictly increase. The batch with the highest id is
the current batch, and submissions always target it. Once closed a batch
never accepts another record, and batches are never deleted.
"""

import time
from dataclasses import dataclass, field, replace
from typing import Callable, ClassVar, Dict, List, Optional, Tuple

from access_control import AccessControl, Role
from cooldown_guard import ActionKind, CooldownGuard
from homomorphic_encryption import CiphertextBackend, HECiphertext
from ledger_errors import BatchClosedOrInvalid, InvalidBatchId, NotInitialized
from ledger_events import EventLog, EventType
from ledger_logging import get_ledger_logger

bl_logger = get_ledger_logger("batch_ledger")


@dataclass(frozen=True)
class EncryptedRecord:
    """One provider observation, each field encrypted independently."""
    FIELDS: ClassVar[Tuple[str, str, str]] = (
        "antigen_affinity", "antibody_count", "t_cell_effectiveness"
    )

    antigen_affinity: HECiphertext
    antibody_count: HECiphertext
    t_cell_effectiveness: HECiphertext

    def ciphertexts(self) -> Tuple[HECiphertext, HECiphertext, HECiphertext]:
        """Field values in canonical order."""
        return tuple(getattr(self, name) for name in self.FIELDS)


@dataclass(frozen=True)
class LedgerEntry:
    """A record as stored, with who submitted it and when."""
    record: EncryptedRecord
    provider: str
    submitted_at: float


@dataclass
class Batch:
    """Batch metadata."""
    id: int
    record_count: int = 0
    closed: bool = False
    opened_at: float = 0.0
    closed_at: Optional[float] = None


class BatchLedger:
    """Owns the batch table and the per-batch record lists."""

    def __init__(self, access: AccessControl, cooldown: CooldownGuard,
                 backend: CiphertextBackend, events: EventLog,
                 clock: Callable[[], float] = time.time):
        self._access = access
        self._cooldown = cooldown
        self._backend = backend
        self._events = events
        self._clock = clock
        self._batches: Dict[int, Batch] = {}
        self._entries: Dict[int, List[LedgerEntry]] = {}
        self._current_batch_id = 0

    @property
    def current_batch_id(self) -> int:
        """Id of the current batch, 0 before the first batch is opened."""
        return self._current_batch_id

    def batch_exists(self, batch_id: int) -> bool:
        return batch_id in self._batches

    def get_batch(self, batch_id: int) -> Batch:
        """Return a copy of the batch metadata."""
        batch = self._batches.get(batch_id)
        if batch is None:
            raise InvalidBatchId(batch_id, "unknown batch")
        return replace(batch)

    def get_records(self, batch_id: int) -> Tuple[EncryptedRecord, ...]:
        """Records of a batch in append order."""
        if batch_id not in self._batches:
            raise InvalidBatchId(batch_id, "unknown batch")
        return tuple(entry.record for entry in self._entries[batch_id])

    def get_entries(self, batch_id: int) -> Tuple[LedgerEntry, ...]:
        if batch_id not in self._batches:
            raise InvalidBatchId(batch_id, "unknown batch")
        return tuple(self._entries[batch_id])

    def open_batch(self, caller: str) -> int:
        """
        Open a new current batch.

        Returns:
            The new batch id
        """
        self._access.require_role(caller, Role.OWNER)
        self._access.require_not_paused()

        now = self._clock()
        batch_id = self._current_batch_id + 1
        self._batches[batch_id] = Batch(id=batch_id, opened_at=now)
        self._entries[batch_id] = []
        self._current_batch_id = batch_id

        bl_logger.info(f"Opened batch {batch_id}")
        self._events.emit(EventType.BATCH_OPENED, now, batch_id=batch_id)
        return batch_id

    def close_batch(self, caller: str, batch_id: int) -> Batch:
        """
        Freeze a batch against further writes.

        Returns:
            The closed batch metadata
        """
        self._access.require_role(caller, Role.OWNER)
        self._access.require_not_paused()

        if batch_id == 0 or batch_id > self._current_batch_id or batch_id not in self._batches:
            raise InvalidBatchId(batch_id, "no such batch")
        batch = self._batches[batch_id]
        if batch.closed:
            raise InvalidBatchId(batch_id, "batch already closed")

        now = self._clock()
        batch.closed = True
        batch.closed_at = now

        bl_logger.info(f"Closed batch {batch_id} with {batch.record_count} records")
        self._events.emit(
            EventType.BATCH_CLOSED, now,
            batch_id=batch_id, record_count=batch.record_count
        )
        return replace(batch)

    def submit_encrypted_data(self, caller: str, record: EncryptedRecord) -> int:
        """
        Append a record to the current batch.

        Args:
            caller: Submitting provider
            record: Encrypted observation

        Returns:
            The batch id the record was appended to
        """
        self._access.require_role(caller, Role.PROVIDER)
        self._access.require_not_paused()
        now = self._clock()
        self._cooldown.check(caller, ActionKind.SUBMISSION, now)

        batch_id = self._current_batch_id
        batch = self._batches.get(batch_id)
        if batch is None or batch.closed:
            bl_logger.warning(f"Submission by {caller} rejected: batch {batch_id} closed or missing")
            raise BatchClosedOrInvalid(batch_id)

        if not isinstance(record, EncryptedRecord):
            raise NotInitialized("record")
        for name, ciphertext in zip(EncryptedRecord.FIELDS, record.ciphertexts()):
            if not self._backend.is_initialized(ciphertext):
                bl_logger.warning(f"Submission by {caller} rejected: {name} not initialized")
                raise NotInitialized(name)

        self._entries[batch_id].append(LedgerEntry(record=record, provider=caller, submitted_at=now))
        batch.record_count += 1
        self._cooldown.record(caller, ActionKind.SUBMISSION, now)

        bl_logger.info(f"Provider {caller} submitted to batch {batch_id} ({batch.record_count} records)")
        self._events.emit(
            EventType.DATA_SUBMITTED, now,
            provider=caller, batch_id=batch_id, count=1
        )
        return batch_id
