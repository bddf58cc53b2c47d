"""
Immune Aggregation Ledger Service

Collects encrypted immune measurements from authorized providers, groups them
into batches, sums each closed batch under encryption and releases the
decrypted aggregate only through a verified oracle round-trip.

Every state-changing call, including the oracle callback, runs to completion
under one service-wide lock, so the effects of two calls never interleave.
The components underneath do no locking of their own.
"""

import argparse
import functools
import threading
import time
from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional, Tuple

from access_control import AccessControl, Role
from aggregation_engine import Aggregate, AggregationEngine
from batch_ledger import Batch, BatchLedger, EncryptedRecord, LedgerEntry
from cooldown_guard import ActionKind, CooldownGuard
from decryption_coordinator import (DecryptionContext, DecryptionCoordinator,
                                    DecryptionResult)
from decryption_oracle import DecryptionDispatcher, LocalDecryptionOracle, ProofVerifier
from homomorphic_encryption import (CiphertextBackend, HEPublicKey,
                                    PaillierCiphertextBackend, PaillierHomomorphic)
from ledger_config import LedgerConfig
from ledger_errors import LedgerError
from ledger_events import EventLog, EventType, LedgerEvent
from ledger_logging import configure_ledger_logging, get_ledger_logger

svc_logger = get_ledger_logger("immune_aggregation_service")


def serialized(method):
    """Run a service method under the service-wide lock."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class ImmuneAggregationService:
    """Ledger-resident aggregation service."""

    def __init__(self, owner: str, backend: CiphertextBackend,
                 dispatcher: DecryptionDispatcher, verifier: ProofVerifier,
                 config: Optional[LedgerConfig] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the service.

        Args:
            owner: Initial owner address
            backend: Ciphertext capability (validity check, add, encrypted zero)
            dispatcher: Decryption dispatch capability
            verifier: Oracle proof verification capability
            config: Settings (defaults to LedgerConfig.from_env())
            clock: Time source in seconds
        """
        self.config = config or LedgerConfig.from_env()
        configure_ledger_logging(self.config.log_dir, self.config.log_level)
        self._clock = clock
        self._lock = threading.RLock()

        self.events = EventLog()
        self.access = AccessControl(owner, self.events, clock)
        self.cooldown = CooldownGuard(self.config.cooldown_seconds, self.events, clock)
        self.ledger = BatchLedger(self.access, self.cooldown, backend, self.events, clock)
        self.engine = AggregationEngine(self.ledger, backend, self.config.service_identity)
        self.coordinator = DecryptionCoordinator(
            self.access, self.cooldown, self.engine, dispatcher, verifier, self.events, clock
        )

        svc_logger.info(f"Immune aggregation service '{self.config.service_identity}' "
                        f"initialized (owner={owner}, cooldown={self.config.cooldown_seconds}s)")

    # Owner administration

    @serialized
    def transfer_ownership(self, caller: str, new_owner: str) -> bool:
        return self._run(self.access.transfer_ownership, caller, new_owner)

    @serialized
    def add_provider(self, caller: str, provider: str) -> bool:
        return self._run(self.access.add_provider, caller, provider)

    @serialized
    def remove_provider(self, caller: str, provider: str) -> bool:
        return self._run(self.access.remove_provider, caller, provider)

    @serialized
    def set_paused(self, caller: str, paused: bool) -> bool:
        return self._run(self.access.set_paused, caller, paused)

    @serialized
    def set_cooldown_seconds(self, caller: str, seconds: float) -> bool:
        def set_cooldown_seconds(caller, seconds):
            self.access.require_role(caller, Role.OWNER)
            return self.cooldown.set_cooldown_seconds(seconds)
        return self._run(set_cooldown_seconds, caller, seconds)

    # Batch lifecycle

    @serialized
    def open_batch(self, caller: str) -> int:
        return self._run(self.ledger.open_batch, caller)

    @serialized
    def close_batch(self, caller: str, batch_id: int) -> Batch:
        return self._run(self.ledger.close_batch, caller, batch_id)

    @serialized
    def submit_encrypted_data(self, caller: str, record: EncryptedRecord) -> int:
        return self._run(self.ledger.submit_encrypted_data, caller, record)

    # Decryption round-trip

    @serialized
    def request_batch_analysis(self, caller: str, batch_id: int) -> int:
        return self._run(self.coordinator.request_batch_analysis, caller, batch_id, self.on_decrypted)

    @serialized
    def on_decrypted(self, request_id: int, cleartexts: bytes, proof: bytes) -> DecryptionResult:
        """Oracle callback target."""
        return self._run(self.coordinator.on_decrypted, request_id, cleartexts, proof)

    def _run(self, operation, *args):
        try:
            return operation(*args)
        except LedgerError as e:
            svc_logger.warning(f"{operation.__name__} rejected: {type(e).__name__}: {e}")
            raise

    # Read-only queries

    @property
    def owner(self) -> str:
        return self.access.owner

    def is_provider(self, actor: str) -> bool:
        return self.access.is_provider(actor)

    def has_role(self, actor: str, role: Role) -> bool:
        return self.access.has_role(actor, role)

    def providers(self) -> FrozenSet[str]:
        return self.access.providers

    def is_paused(self) -> bool:
        return self.access.paused

    def is_available(self) -> bool:
        """Liveness probe: the service accepts writes."""
        return not self.access.paused

    @property
    def cooldown_seconds(self) -> float:
        return self.cooldown.cooldown_seconds

    def last_submission_time(self, actor: str) -> Optional[float]:
        return self.cooldown.last_action_time(actor, ActionKind.SUBMISSION)

    def last_decryption_request_time(self, actor: str) -> Optional[float]:
        return self.cooldown.last_action_time(actor, ActionKind.DECRYPTION_REQUEST)

    @property
    def current_batch_id(self) -> int:
        return self.ledger.current_batch_id

    @serialized
    def get_batch(self, batch_id: int) -> Batch:
        return self.ledger.get_batch(batch_id)

    @serialized
    def get_records(self, batch_id: int) -> Tuple[EncryptedRecord, ...]:
        return self.ledger.get_records(batch_id)

    @serialized
    def get_entries(self, batch_id: int) -> Tuple[LedgerEntry, ...]:
        return self.ledger.get_entries(batch_id)

    @serialized
    def aggregate(self, batch_id: int) -> Aggregate:
        return self.engine.aggregate(batch_id)

    @serialized
    def state_fingerprint(self, batch_id: int) -> bytes:
        return self.engine.state_fingerprint(batch_id)[1]

    @serialized
    def get_decryption_context(self, request_id: int) -> Optional[DecryptionContext]:
        return self.coordinator.get_context(request_id)

    @serialized
    def get_decryption_result(self, request_id: int) -> Optional[DecryptionResult]:
        return self.coordinator.get_result(request_id)

    @serialized
    def pending_requests(self) -> List[int]:
        return self.coordinator.pending_requests()

    def subscribe(self, callback: Callable[[LedgerEvent], None]) -> Callable[[], None]:
        return self.events.subscribe(callback)

    def get_events(self, event_type: Optional[EventType] = None, since: int = 0) -> List[LedgerEvent]:
        return self.events.events(event_type, since)


@dataclass
class LedgerDeployment:
    """A service wired to the reference Paillier backend and local oracle."""
    service: ImmuneAggregationService
    oracle: LocalDecryptionOracle
    backend: PaillierCiphertextBackend
    public_key: HEPublicKey

    def encrypt_record(self, antigen_affinity: int, antibody_count: int,
                       t_cell_effectiveness: int) -> EncryptedRecord:
        """Provider-side helper: encrypt one observation under the ledger key."""
        return EncryptedRecord(
            antigen_affinity=self.backend.encrypt(antigen_affinity),
            antibody_count=self.backend.encrypt(antibody_count),
            t_cell_effectiveness=self.backend.encrypt(t_cell_effectiveness)
        )


def create_immune_aggregation_service(owner: str, config: Optional[LedgerConfig] = None,
                                      clock: Callable[[], float] = time.time) -> LedgerDeployment:
    """
    Generate keys and wire a service to a local decryption oracle.

    Args:
        owner: Initial owner address
        config: Settings (defaults to LedgerConfig.from_env())
        clock: Time source in seconds

    Returns:
        LedgerDeployment with the service, oracle and provider backend
    """
    config = config or LedgerConfig.from_env()
    public_key, private_key = PaillierHomomorphic(config.paillier_key_bits).generate_keypair()
    backend = PaillierCiphertextBackend(public_key)
    oracle = LocalDecryptionOracle(private_key, poll_interval=config.oracle_poll_interval)
    service = ImmuneAggregationService(owner, backend, oracle, oracle.verifier, config, clock)
    return LedgerDeployment(service=service, oracle=oracle, backend=backend, public_key=public_key)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Immune aggregation ledger demonstration")
    parser.add_argument("--key-bits", type=int, default=1024, help="Paillier modulus size")
    parser.add_argument("--providers", type=int, default=3, help="Number of data providers")
    parser.add_argument("--async-oracle", action="store_true",
                        help="Deliver the callback from the oracle worker thread")
    args = parser.parse_args(argv)

    config = LedgerConfig.from_env()
    config.paillier_key_bits = args.key_bits
    config.cooldown_seconds = 0
    config.validate()

    print("Immune Aggregation Ledger")
    print("=" * 60)
    deployment = create_immune_aggregation_service("owner", config)
    service = deployment.service

    completed = threading.Event()
    service.subscribe(
        lambda event: completed.set() if event.event_type == EventType.DECRYPTION_COMPLETED else None
    )

    batch_id = service.open_batch("owner")
    print(f"\nOpened batch {batch_id}")

    expected = [0, 0, 0]
    for index in range(args.providers):
        provider = f"lab-{index + 1}"
        service.add_provider("owner", provider)
        values = (70 + index, 1200 + 10 * index, 85 - index)
        service.submit_encrypted_data(provider, deployment.encrypt_record(*values))
        expected = [total + value for total, value in zip(expected, values)]
        print(f"  {provider} submitted encrypted record")

    batch = service.close_batch("owner", batch_id)
    print(f"Closed batch {batch_id} with {batch.record_count} records")

    request_id = service.request_batch_analysis("owner", batch_id)
    context = service.get_decryption_context(request_id)
    print(f"Requested decryption {request_id}, fingerprint {context.state_fingerprint.hex()[:16]}...")

    if args.async_oracle:
        deployment.oracle.start()
        completed.wait(timeout=10)
        deployment.oracle.stop()
    else:
        deployment.oracle.process_pending()

    result = service.get_decryption_result(request_id)
    if result is None:
        print("Decryption did not complete")
        return 1
    print(f"Decrypted aggregate: {result.values()} (expected {tuple(expected)})")

    cleartexts, proof = b"\x00" * 96, b"\x00" * 64
    try:
        service.on_decrypted(request_id, cleartexts, proof)
    except LedgerError as e:
        print(f"Replayed callback rejected: {type(e).__name__}")

    print(f"\nEvents emitted: {len(service.events)}")
    for event in service.get_events():
        print(f"  #{event.sequence} {event.event_type.value}")
    return 0 if result.values() == tuple(expected) else 1


if __name__ == "__main__":
    raise SystemExit(main())
