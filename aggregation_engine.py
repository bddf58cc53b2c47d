"""
Homomorphic summation over a batch and the canonical aggregate fingerprint.

Nothing is cached: every call re-reads the ledger and re-derives the sum, so
a fingerprint computed at callback time reflects the ledger as it is then.
"""

import hashlib
import struct
from typing import Tuple

from batch_ledger import BatchLedger, EncryptedRecord
from homomorphic_encryption import CiphertextBackend, HECiphertext
from ledger_errors import InvalidBatchId
from ledger_logging import get_ledger_logger

ag_logger = get_ledger_logger("aggregation_engine")

Aggregate = Tuple[HECiphertext, HECiphertext, HECiphertext]

FINGERPRINT_DOMAIN = b"immune-aggregation-ledger/state-fingerprint/v1"


class AggregationEngine:
    """Sums a closed batch field by field under encryption."""

    def __init__(self, ledger: BatchLedger, backend: CiphertextBackend, service_identity: str):
        self._ledger = ledger
        self._backend = backend
        self._service_identity = service_identity.encode()

    def aggregate(self, batch_id: int) -> Aggregate:
        """
        Compute the encrypted per-field sums of a closed, non-empty batch.

        Args:
            batch_id: Batch to aggregate

        Returns:
            (antigen_affinity, antibody_count, t_cell_effectiveness) sums
        """
        if not self._ledger.batch_exists(batch_id):
            raise InvalidBatchId(batch_id, "unknown batch")
        batch = self._ledger.get_batch(batch_id)
        if not batch.closed:
            raise InvalidBatchId(batch_id, "batch is still open")
        records = self._ledger.get_records(batch_id)
        if not records:
            raise InvalidBatchId(batch_id, "batch has no records")

        totals = [self._backend.encrypted_zero() for _ in EncryptedRecord.FIELDS]
        for record in records:
            for index, ciphertext in enumerate(record.ciphertexts()):
                totals[index] = self._backend.add(totals[index], ciphertext)

        ag_logger.debug(f"Aggregated {len(records)} records of batch {batch_id}")
        return tuple(totals)

    def fingerprint(self, aggregate: Aggregate) -> bytes:
        """
        Digest of the serialized aggregate bound to this service's identity.

        Returns:
            32-byte SHA3-256 digest
        """
        digest = hashlib.sha3_256(FINGERPRINT_DOMAIN)
        digest.update(struct.pack(">I", len(aggregate)))
        for ciphertext in aggregate:
            encoded = ciphertext.to_bytes()
            digest.update(struct.pack(">I", len(encoded)))
            digest.update(encoded)
        digest.update(struct.pack(">I", len(self._service_identity)))
        digest.update(self._service_identity)
        return digest.digest()

    def state_fingerprint(self, batch_id: int) -> Tuple[Aggregate, bytes]:
        """Aggregate a batch and fingerprint the result in one step."""
        aggregate = self.aggregate(batch_id)
        return aggregate, self.fingerprint(aggregate)
