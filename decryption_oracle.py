"""
Decryption Oracle Capabilities

The ledger never holds a private key. It hands aggregate ciphertexts to an
oracle through request_decryption(ciphertexts, callback), which returns a
request id immediately. Later the oracle invokes callback(request_id,
cleartexts, proof). The ledger checks the proof with check_signatures before
it trusts the cleartexts.

Wire format:
- cleartexts: each result as a 32-byte big-endian unsigned integer, concatenated
- proof: Ed25519 signature over SHA3-256(domain || request_id || cleartexts)

LocalDecryptionOracle is the in-process reference oracle. It queues requests
and answers them either from a background worker thread or when a test calls
fulfill().
"""

import hashlib
import itertools
import queue
import struct
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from homomorphic_encryption import HECiphertext, HEPrivateKey, PaillierHomomorphic
from ledger_logging import get_ledger_logger

oracle_logger = get_ledger_logger("decryption_oracle")

CLEARTEXT_WIDTH = 32
ED25519_SIGNATURE_SIZE = 64
PROOF_DOMAIN = b"immune-aggregation-ledger/decryption-proof/v1"

DecryptionCallback = Callable[[int, bytes, bytes], Any]


def encode_cleartexts(values: Sequence[int]) -> bytes:
    """Pack results as fixed-width big-endian unsigned integers."""
    out = bytearray()
    for value in values:
        if value < 0 or value.bit_length() > CLEARTEXT_WIDTH * 8:
            raise ValueError(f"Cleartext {value} does not fit in {CLEARTEXT_WIDTH} bytes")
        out += value.to_bytes(CLEARTEXT_WIDTH, 'big')
    return bytes(out)


def decode_cleartexts(data: bytes, count: int) -> Tuple[int, ...]:
    """
    Unpack exactly count fixed-width results.

    Raises:
        ValueError: If data is not exactly count * CLEARTEXT_WIDTH bytes
    """
    if not isinstance(data, (bytes, bytearray)) or len(data) != count * CLEARTEXT_WIDTH:
        raise ValueError(f"Expected {count * CLEARTEXT_WIDTH} bytes of cleartexts")
    return tuple(
        int.from_bytes(data[i * CLEARTEXT_WIDTH:(i + 1) * CLEARTEXT_WIDTH], 'big')
        for i in range(count)
    )


def proof_message(request_id: int, cleartexts: bytes) -> bytes:
    """Message the oracle signs for a decryption response."""
    return hashlib.sha3_256(
        PROOF_DOMAIN + struct.pack(">Q", request_id) + bytes(cleartexts)
    ).digest()


class DecryptionDispatcher:
    """Decryption dispatch capability."""

    def request_decryption(self, ciphertexts: Sequence[HECiphertext],
                           callback: DecryptionCallback) -> int:
        raise NotImplementedError


class ProofVerifier:
    """Authenticity verification capability."""

    def check_signatures(self, request_id: int, cleartexts: bytes, proof: bytes) -> bool:
        raise NotImplementedError


class OracleSignatureVerifier(ProofVerifier):
    """Verifies oracle responses against the oracle's Ed25519 public key."""

    def __init__(self, public_key: Ed25519PublicKey):
        self.public_key = public_key

    @classmethod
    def from_public_bytes(cls, raw: bytes) -> "OracleSignatureVerifier":
        return cls(Ed25519PublicKey.from_public_bytes(raw))

    def check_signatures(self, request_id: int, cleartexts: bytes, proof: bytes) -> bool:
        if not isinstance(proof, (bytes, bytearray)) or not isinstance(cleartexts, (bytes, bytearray)):
            return False
        if not isinstance(request_id, int) or request_id < 0:
            return False
        if len(proof) != ED25519_SIGNATURE_SIZE:
            oracle_logger.error(f"SECURITY ALERT: Malformed proof for request {request_id}")
            return False
        try:
            self.public_key.verify(bytes(proof), proof_message(request_id, cleartexts))
            return True
        except InvalidSignature:
            oracle_logger.error(f"SECURITY ALERT: Oracle signature check failed for request {request_id}")
            return False


@dataclass
class PendingDecryption:
    """A dispatched request the oracle has not answered yet."""
    request_id: int
    ciphertexts: Tuple[HECiphertext, ...]
    callback: DecryptionCallback
    requested_at: float = field(default_factory=time.time)


class LocalDecryptionOracle(DecryptionDispatcher):
    """In-process oracle holding the Paillier private key and a signing key."""

    def __init__(self, private_key: HEPrivateKey,
                 signing_key: Optional[Ed25519PrivateKey] = None,
                 poll_interval: float = 0.1):
        self._private_key = private_key
        self._signing_key = signing_key or Ed25519PrivateKey.generate()
        self._poll_interval = poll_interval
        self._request_ids = itertools.count(1)
        self._pending: Dict[int, PendingDecryption] = {}
        self._queue: "queue.Queue[int]" = queue.Queue()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None

        public_bytes = self._signing_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )
        oracle_logger.info(f"Decryption oracle ready, signing key {public_bytes.hex()[:16]}...")

    @property
    def verifier(self) -> OracleSignatureVerifier:
        """Verifier bound to this oracle's public key."""
        return OracleSignatureVerifier(self._signing_key.public_key())

    def request_decryption(self, ciphertexts: Sequence[HECiphertext],
                           callback: DecryptionCallback) -> int:
        """Queue ciphertexts for decryption and return the request id at once."""
        with self._lock:
            request_id = next(self._request_ids)
            self._pending[request_id] = PendingDecryption(
                request_id=request_id,
                ciphertexts=tuple(ciphertexts),
                callback=callback
            )
        self._queue.put(request_id)
        oracle_logger.info(f"Accepted decryption request {request_id} ({len(ciphertexts)} ciphertexts)")
        return request_id

    def pending_request_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._pending)

    def decrypt_and_sign(self, request_id: int) -> Tuple[bytes, bytes]:
        """
        Produce the signed response for a pending request without delivering it.

        Returns:
            Tuple of (cleartexts, proof)
        """
        with self._lock:
            pending = self._pending.get(request_id)
        if pending is None:
            raise KeyError(f"No pending decryption request {request_id}")

        values = [PaillierHomomorphic.decrypt(ct, self._private_key) for ct in pending.ciphertexts]
        cleartexts = encode_cleartexts(values)
        proof = self._signing_key.sign(proof_message(request_id, cleartexts))
        return cleartexts, proof

    def fulfill(self, request_id: int) -> Any:
        """
        Decrypt, sign and deliver one request on the calling thread.

        A rejected delivery leaves the request pending and re-raises.
        """
        cleartexts, proof = self.decrypt_and_sign(request_id)
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            raise KeyError(f"Decryption request {request_id} is already being delivered")
        try:
            result = pending.callback(request_id, cleartexts, proof)
        except Exception:
            with self._lock:
                self._pending[request_id] = pending
            raise
        oracle_logger.info(f"Delivered decryption result for request {request_id}")
        return result

    def process_pending(self) -> int:
        """Drain the request queue synchronously. Returns deliveries attempted."""
        attempted = 0
        while True:
            try:
                request_id = self._queue.get_nowait()
            except queue.Empty:
                return attempted
            attempted += self._deliver_queued(request_id)

    def _deliver_queued(self, request_id: int) -> int:
        with self._lock:
            if request_id not in self._pending:
                return 0
        try:
            self.fulfill(request_id)
        except Exception as e:
            # No automatic retry; the request stays visible as pending
            oracle_logger.error(f"Delivery of request {request_id} rejected: {type(e).__name__}: {e}")
        return 1

    def start(self) -> None:
        """Answer requests from a background worker thread."""
        if self._worker and self._worker.is_alive():
            return
        self._stop_event.clear()
        self._worker = threading.Thread(target=self._run, name="decryption-oracle", daemon=True)
        self._worker.start()
        oracle_logger.info("Decryption oracle worker started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._worker:
            self._worker.join(timeout)
            self._worker = None
        oracle_logger.info("Decryption oracle worker stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                request_id = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
            self._deliver_queued(request_id)
