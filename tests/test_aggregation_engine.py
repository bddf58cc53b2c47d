"""
Tests for homomorphic batch aggregation and the state fingerprint.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from aggregation_engine import AggregationEngine
from homomorphic_encryption import PaillierHomomorphic
from ledger_errors import InvalidBatchId
from tests.ledger_fixtures import (OWNER, PROVIDER_A, PROVIDER_B, build_deployment,
                                   encrypt_record, shared_keypair)


class TestAggregationEngine(unittest.TestCase):

    def setUp(self):
        self.deployment = build_deployment()
        self.service = self.deployment.service
        self.backend = self.deployment.backend
        _, self.private_key = shared_keypair()
        self.service.add_provider(OWNER, PROVIDER_A)
        self.service.add_provider(OWNER, PROVIDER_B)

    def _closed_batch(self, *rows):
        batch_id = self.service.open_batch(OWNER)
        providers = [PROVIDER_A, PROVIDER_B]
        for index, row in enumerate(rows):
            self.service.submit_encrypted_data(providers[index % 2], encrypt_record(self.backend, row))
        self.service.close_batch(OWNER, batch_id)
        return batch_id

    def _decrypt(self, aggregate):
        return tuple(PaillierHomomorphic.decrypt(ct, self.private_key) for ct in aggregate)

    def test_sums_each_field_independently(self):
        batch_id = self._closed_batch((10, 200, 30), (5, 100, 7), (1, 1, 1))
        self.assertEqual(self._decrypt(self.service.engine.aggregate(batch_id)), (16, 301, 38))

    def test_single_record(self):
        batch_id = self._closed_batch((72, 1500, 88))
        self.assertEqual(self._decrypt(self.service.engine.aggregate(batch_id)), (72, 1500, 88))

    def test_aggregate_is_deterministic(self):
        batch_id = self._closed_batch((10, 200, 30), (5, 100, 7))
        first = self.service.engine.aggregate(batch_id)
        second = self.service.engine.aggregate(batch_id)
        self.assertEqual(first, second)
        self.assertEqual(
            self.service.engine.fingerprint(first),
            self.service.engine.fingerprint(second)
        )
        self.assertEqual(len(self.service.state_fingerprint(batch_id)), 32)

    def test_aggregate_tracks_ledger_state(self):
        batch_id = self._closed_batch((10, 200, 30))
        before = self.service.state_fingerprint(batch_id)
        # Simulate out-of-band corruption of the stored record list
        entries = self.service.ledger._entries[batch_id]
        entries.append(entries[0])
        self.assertNotEqual(self.service.state_fingerprint(batch_id), before)

    def test_batches_have_distinct_fingerprints(self):
        first = self._closed_batch((1, 2, 3))
        second = self._closed_batch((1, 2, 3))
        self.assertNotEqual(
            self.service.state_fingerprint(first),
            self.service.state_fingerprint(second)
        )

    def test_fingerprint_binds_service_identity(self):
        batch_id = self._closed_batch((4, 5, 6))
        aggregate = self.service.engine.aggregate(batch_id)
        other = AggregationEngine(self.service.ledger, self.backend, "another-ledger")
        self.assertNotEqual(
            self.service.engine.fingerprint(aggregate),
            other.fingerprint(aggregate)
        )

    def test_unknown_batch(self):
        for batch_id in (0, 1, 42):
            with self.assertRaises(InvalidBatchId):
                self.service.engine.aggregate(batch_id)

    def test_open_batch_rejected(self):
        batch_id = self.service.open_batch(OWNER)
        self.service.submit_encrypted_data(PROVIDER_A, encrypt_record(self.backend, (1, 1, 1)))
        with self.assertRaises(InvalidBatchId) as ctx:
            self.service.engine.aggregate(batch_id)
        self.assertEqual(ctx.exception.batch_id, batch_id)

    def test_empty_batch_rejected(self):
        batch_id = self._closed_batch()
        with self.assertRaises(InvalidBatchId):
            self.service.engine.aggregate(batch_id)


if __name__ == "__main__":
    unittest.main()
