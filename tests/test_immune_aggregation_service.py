"""
End-to-end scenarios for the immune aggregation service.

These drive the service the way a deployment would: providers submit, the
owner closes and requests analysis, and the local oracle answers.
"""

import os
import sys
import threading
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from access_control import Role
from ledger_errors import (BatchClosedOrInvalid, CooldownActive, InvalidBatchId,
                           InvalidCooldown, Paused, ReplayAttempt, Unauthorized)
from ledger_events import EventType
from tests.ledger_fixtures import (FakeClock, OWNER, PROVIDER_A, PROVIDER_B,
                                   build_deployment)


class TestServiceScenarios(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.deployment = build_deployment(clock=self.clock, cooldown_seconds=30)
        self.service = self.deployment.service
        self.oracle = self.deployment.oracle

    def test_full_round_trip_then_replay(self):
        self.service.add_provider(OWNER, PROVIDER_A)
        batch_id = self.service.open_batch(OWNER)
        self.assertEqual(batch_id, 1)

        self.service.submit_encrypted_data(PROVIDER_A, self.deployment.encrypt_record(72, 1450, 91))
        self.service.close_batch(OWNER, batch_id)
        request_id = self.service.request_batch_analysis(OWNER, batch_id)
        fingerprint = self.service.get_decryption_context(request_id).state_fingerprint

        cleartexts, proof = self.oracle.decrypt_and_sign(request_id)
        result = self.service.on_decrypted(request_id, cleartexts, proof)
        self.assertEqual(result.values(), (72, 1450, 91))

        completed = self.service.get_events(EventType.DECRYPTION_COMPLETED)
        self.assertEqual(len(completed), 1)
        self.assertEqual(completed[0].payload["request_id"], request_id)
        requested = self.service.get_events(EventType.DECRYPTION_REQUESTED)[0]
        self.assertEqual(requested.payload["state_fingerprint"], fingerprint)

        with self.assertRaises(ReplayAttempt):
            self.service.on_decrypted(request_id, cleartexts, proof)

        types = [event.event_type for event in self.service.get_events()]
        self.assertEqual(types, [
            EventType.PROVIDER_ADDED,
            EventType.BATCH_OPENED,
            EventType.DATA_SUBMITTED,
            EventType.BATCH_CLOSED,
            EventType.DECRYPTION_REQUESTED,
            EventType.DECRYPTION_COMPLETED,
        ])

    def test_submission_cooldown_scenario(self):
        self.service.add_provider(OWNER, PROVIDER_A)
        batch_id = self.service.open_batch(OWNER)
        record = self.deployment.encrypt_record(1, 2, 3)

        self.service.submit_encrypted_data(PROVIDER_A, record)
        self.clock.advance(10)
        with self.assertRaises(CooldownActive):
            self.service.submit_encrypted_data(PROVIDER_A, record)
        self.assertEqual(self.service.get_batch(batch_id).record_count, 1)

        self.clock.advance(20)
        self.service.submit_encrypted_data(PROVIDER_A, record)
        self.assertEqual(self.service.get_batch(batch_id).record_count, 2)
        self.assertEqual(self.service.last_submission_time(PROVIDER_A), self.clock())

    def test_analysis_of_open_or_empty_batch_rejected(self):
        self.service.add_provider(OWNER, PROVIDER_A)
        batch_id = self.service.open_batch(OWNER)
        with self.assertRaises(InvalidBatchId):
            self.service.request_batch_analysis(OWNER, batch_id)

        self.service.close_batch(OWNER, batch_id)
        with self.assertRaises(InvalidBatchId):
            self.service.request_batch_analysis(OWNER, batch_id)

    def test_record_count_matches_accepted_submissions(self):
        providers = [PROVIDER_A, PROVIDER_B, "provider-c"]
        for provider in providers:
            self.service.add_provider(OWNER, provider)
        batch_id = self.service.open_batch(OWNER)
        record = self.deployment.encrypt_record(5, 5, 5)

        accepted = 0
        for round_number in range(3):
            for provider in providers + [OWNER, "outsider"]:
                try:
                    self.service.submit_encrypted_data(provider, record)
                    accepted += 1
                except (Unauthorized, CooldownActive):
                    pass
            self.clock.advance(15)

        self.assertEqual(accepted, 6)
        self.assertEqual(self.service.get_batch(batch_id).record_count, accepted)
        self.assertEqual(len(self.service.get_records(batch_id)), accepted)
        self.assertEqual(self.service.events.count(EventType.DATA_SUBMITTED), accepted)

    def test_multiple_batches_aggregate_independently(self):
        self.service.set_cooldown_seconds(OWNER, 0)
        self.service.add_provider(OWNER, PROVIDER_A)
        self.service.add_provider(OWNER, PROVIDER_B)

        first = self.service.open_batch(OWNER)
        self.service.submit_encrypted_data(PROVIDER_A, self.deployment.encrypt_record(1, 10, 100))
        self.service.submit_encrypted_data(PROVIDER_B, self.deployment.encrypt_record(2, 20, 200))
        self.service.close_batch(OWNER, first)

        second = self.service.open_batch(OWNER)
        self.service.submit_encrypted_data(PROVIDER_A, self.deployment.encrypt_record(7, 7, 7))
        self.service.close_batch(OWNER, second)

        first_request = self.service.request_batch_analysis(OWNER, first)
        second_request = self.service.request_batch_analysis(OWNER, second)

        # Callbacks arrive out of order
        self.assertEqual(self.oracle.fulfill(second_request).values(), (7, 7, 7))
        self.assertEqual(self.oracle.fulfill(first_request).values(), (3, 30, 300))

    def test_paused_service_rejects_writes(self):
        self.service.add_provider(OWNER, PROVIDER_A)
        batch_id = self.service.open_batch(OWNER)
        self.assertTrue(self.service.is_available())

        self.assertTrue(self.service.set_paused(OWNER, True))
        self.assertFalse(self.service.set_paused(OWNER, True))
        self.assertEqual(self.service.events.count(EventType.PAUSED), 1)
        self.assertFalse(self.service.is_available())

        with self.assertRaises(Paused):
            self.service.submit_encrypted_data(PROVIDER_A, self.deployment.encrypt_record(1, 1, 1))
        with self.assertRaises(Paused):
            self.service.close_batch(OWNER, batch_id)
        with self.assertRaises(Paused):
            self.service.open_batch(OWNER)

        self.service.set_paused(OWNER, False)
        self.service.submit_encrypted_data(PROVIDER_A, self.deployment.encrypt_record(1, 1, 1))

    def test_ownership_transfer_moves_all_owner_operations(self):
        self.service.transfer_ownership(OWNER, "new-owner")
        self.assertEqual(self.service.owner, "new-owner")
        self.assertTrue(self.service.has_role("new-owner", Role.OWNER))
        with self.assertRaises(Unauthorized):
            self.service.open_batch(OWNER)
        with self.assertRaises(Unauthorized):
            self.service.set_cooldown_seconds(OWNER, 5)
        self.assertEqual(self.service.open_batch("new-owner"), 1)

    def test_cooldown_administration(self):
        self.assertEqual(self.service.cooldown_seconds, 30)
        self.assertTrue(self.service.set_cooldown_seconds(OWNER, 5))
        self.assertFalse(self.service.set_cooldown_seconds(OWNER, 5))
        with self.assertRaises(InvalidCooldown):
            self.service.set_cooldown_seconds(OWNER, -1)
        self.assertEqual(self.service.events.count(EventType.COOLDOWN_CHANGED), 1)
        self.assertEqual(self.service.cooldown_seconds, 5)

    def test_provider_membership_queries(self):
        self.service.add_provider(OWNER, PROVIDER_A)
        self.service.add_provider(OWNER, PROVIDER_B)
        self.service.remove_provider(OWNER, PROVIDER_B)
        self.assertEqual(self.service.providers(), frozenset({PROVIDER_A}))
        self.assertTrue(self.service.is_provider(PROVIDER_A))
        self.assertFalse(self.service.is_provider(PROVIDER_B))

    def test_no_batch_yet(self):
        self.service.add_provider(OWNER, PROVIDER_A)
        self.assertEqual(self.service.current_batch_id, 0)
        with self.assertRaises(BatchClosedOrInvalid):
            self.service.submit_encrypted_data(PROVIDER_A, self.deployment.encrypt_record(1, 1, 1))

    def test_failing_subscriber_does_not_block_ledger(self):
        seen = []

        def broken(event):
            raise RuntimeError("monitor down")

        self.service.subscribe(broken)
        unsubscribe = self.service.subscribe(seen.append)
        self.service.add_provider(OWNER, PROVIDER_A)
        self.assertTrue(self.service.is_provider(PROVIDER_A))
        self.assertEqual([e.event_type for e in seen], [EventType.PROVIDER_ADDED])

        unsubscribe()
        self.service.open_batch(OWNER)
        self.assertEqual(len(seen), 1)

    def test_event_query_since(self):
        self.service.add_provider(OWNER, PROVIDER_A)
        marker = len(self.service.events)
        self.service.open_batch(OWNER)
        newer = self.service.get_events(since=marker)
        self.assertEqual([e.event_type for e in newer], [EventType.BATCH_OPENED])
        self.assertEqual(newer[0].to_dict()["payload"], {"batch_id": 1})


class TestOracleWorker(unittest.TestCase):
    """Callbacks delivered from the oracle's background thread."""

    def setUp(self):
        self.deployment = build_deployment()
        self.service = self.deployment.service
        self.oracle = self.deployment.oracle

    def tearDown(self):
        self.oracle.stop()

    def test_worker_delivers_callback(self):
        done = threading.Event()
        self.service.subscribe(
            lambda event: done.set() if event.event_type == EventType.DECRYPTION_COMPLETED else None
        )
        self.service.add_provider(OWNER, PROVIDER_A)
        batch_id = self.service.open_batch(OWNER)
        self.service.submit_encrypted_data(PROVIDER_A, self.deployment.encrypt_record(4, 40, 400))
        self.service.close_batch(OWNER, batch_id)

        self.oracle.start()
        request_id = self.service.request_batch_analysis(OWNER, batch_id)
        self.assertTrue(done.wait(timeout=10))

        self.assertEqual(self.service.get_decryption_result(request_id).values(), (4, 40, 400))
        self.assertEqual(self.service.pending_requests(), [])
        self.assertEqual(self.oracle.pending_request_ids(), [])

    def test_process_pending_drains_queue(self):
        self.service.add_provider(OWNER, PROVIDER_A)
        batch_id = self.service.open_batch(OWNER)
        self.service.submit_encrypted_data(PROVIDER_A, self.deployment.encrypt_record(1, 2, 3))
        self.service.close_batch(OWNER, batch_id)
        first = self.service.request_batch_analysis(OWNER, batch_id)
        second = self.service.request_batch_analysis(OWNER, batch_id)

        self.assertEqual(self.oracle.process_pending(), 2)
        self.assertEqual(self.oracle.process_pending(), 0)
        self.assertIsNotNone(self.service.get_decryption_result(first))
        self.assertIsNotNone(self.service.get_decryption_result(second))


if __name__ == "__main__":
    unittest.main()
