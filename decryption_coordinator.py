"""
Decryption Request Coordination

Issues decryption requests for closed batches and validates the oracle's
asynchronous answers. Each request id moves Pending -> Completed at most once.

Callback validation order:
1. Replay check - a completed request is never completed again
2. Conflict check - an id the oracle issued twice is never completed
3. Integrity check - the aggregate is re-derived and its fingerprint must
   equal the one captured at request time
4. Authenticity check - the oracle proof must verify
5. Decoding - exactly three fixed-width results

A rejected callback changes nothing and leaves the request Pending, so a
corrected response can still complete it. If the oracle hands out a request
id that is already in use, the new request fails with DuplicateRequestId and
the pending context under that id is marked conflicted: the ledger can no
longer tell which dispatch a response answers, so it refuses them all.
"""

import hmac
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from access_control import AccessControl, Role
from aggregation_engine import AggregationEngine
from batch_ledger import EncryptedRecord
from cooldown_guard import ActionKind, CooldownGuard
from decryption_oracle import (DecryptionCallback, DecryptionDispatcher,
                               ProofVerifier, decode_cleartexts)
from ledger_errors import (DuplicateRequestId, InvalidCleartexts, InvalidProof,
                           ReplayAttempt, StateMismatch, UnknownRequest)
from ledger_events import EventLog, EventType
from ledger_logging import get_ledger_logger

dc_logger = get_ledger_logger("decryption_coordinator")


class RequestState(Enum):
    """Lifecycle of a decryption request."""
    PENDING = "pending"
    COMPLETED = "completed"


@dataclass
class DecryptionContext:
    """What was asked for, captured when the request was issued."""
    request_id: int
    batch_id: int
    state_fingerprint: bytes
    processed: bool = False
    conflicted: bool = False
    requested_by: str = ""
    requested_at: float = 0.0

    @property
    def state(self) -> RequestState:
        return RequestState.COMPLETED if self.processed else RequestState.PENDING


@dataclass(frozen=True)
class DecryptionResult:
    """Decrypted batch aggregate released by a verified callback."""
    request_id: int
    batch_id: int
    antigen_affinity: int
    antibody_count: int
    t_cell_effectiveness: int
    completed_at: float

    def values(self) -> Tuple[int, int, int]:
        return (self.antigen_affinity, self.antibody_count, self.t_cell_effectiveness)


class DecryptionCoordinator:
    """Pending-request table plus the single callback validation path."""

    def __init__(self, access: AccessControl, cooldown: CooldownGuard,
                 engine: AggregationEngine, dispatcher: DecryptionDispatcher,
                 verifier: ProofVerifier, events: EventLog,
                 clock: Callable[[], float] = time.time):
        self._access = access
        self._cooldown = cooldown
        self._engine = engine
        self._dispatcher = dispatcher
        self._verifier = verifier
        self._events = events
        self._clock = clock
        self._contexts: Dict[int, DecryptionContext] = {}
        self._results: Dict[int, DecryptionResult] = {}

    def request_batch_analysis(self, caller: str, batch_id: int,
                               callback: Optional[DecryptionCallback] = None) -> int:
        """
        Dispatch a decryption request for the aggregate of a closed batch.

        Args:
            caller: Must be the owner
            batch_id: Closed, non-empty batch
            callback: Target the oracle answers (defaults to on_decrypted)

        Returns:
            The oracle-issued request id

        Dispatch is asynchronous: the context is stored only after
        request_decryption returns, so an oracle that answers on the calling
        thread before returning gets UnknownRequest.
        """
        self._access.require_role(caller, Role.OWNER)
        self._access.require_not_paused()
        now = self._clock()
        self._cooldown.check(caller, ActionKind.DECRYPTION_REQUEST, now)

        aggregate, fingerprint = self._engine.state_fingerprint(batch_id)

        request_id = self._dispatcher.request_decryption(list(aggregate), callback or self.on_decrypted)
        existing = self._contexts.get(request_id)
        if existing is not None:
            dc_logger.error(f"SECURITY ALERT: Oracle reissued request id {request_id}")
            if not existing.processed:
                existing.conflicted = True
            raise DuplicateRequestId(request_id, existing.batch_id)

        self._contexts[request_id] = DecryptionContext(
            request_id=request_id,
            batch_id=batch_id,
            state_fingerprint=fingerprint,
            requested_by=caller,
            requested_at=now
        )
        self._cooldown.record(caller, ActionKind.DECRYPTION_REQUEST, now)

        dc_logger.info(f"Requested decryption {request_id} for batch {batch_id} "
                       f"(fingerprint {fingerprint.hex()[:16]}...)")
        self._events.emit(
            EventType.DECRYPTION_REQUESTED, now,
            request_id=request_id, batch_id=batch_id, state_fingerprint=fingerprint
        )
        return request_id

    def on_decrypted(self, request_id: int, cleartexts: bytes, proof: bytes) -> DecryptionResult:
        """
        Accept an oracle response after replay, integrity and proof checks.

        Returns:
            The stored DecryptionResult
        """
        if isinstance(request_id, bool) or not isinstance(request_id, int):
            dc_logger.error(f"SECURITY ALERT: Callback with malformed request id {request_id!r}")
            raise UnknownRequest(request_id)

        context = self._contexts.get(request_id)
        if context is None:
            dc_logger.error(f"SECURITY ALERT: Callback for unknown request {request_id}")
            raise UnknownRequest(request_id)

        if context.processed:
            dc_logger.error(f"SECURITY ALERT: Replay of completed request {request_id}")
            raise ReplayAttempt(request_id, context.batch_id)

        if context.conflicted:
            dc_logger.error(f"SECURITY ALERT: Callback for conflicted request id {request_id}")
            raise DuplicateRequestId(request_id, context.batch_id)

        _, fingerprint = self._engine.state_fingerprint(context.batch_id)
        if not hmac.compare_digest(fingerprint, context.state_fingerprint):
            dc_logger.error(f"SECURITY ALERT: Batch {context.batch_id} state changed "
                            f"while request {request_id} was pending")
            raise StateMismatch(request_id, context.batch_id, context.state_fingerprint, fingerprint)

        if not self._verifier.check_signatures(request_id, cleartexts, proof):
            dc_logger.error(f"SECURITY ALERT: Invalid decryption proof for request {request_id}")
            raise InvalidProof(request_id, context.batch_id)

        try:
            values = decode_cleartexts(cleartexts, len(EncryptedRecord.FIELDS))
        except ValueError:
            length = len(cleartexts) if isinstance(cleartexts, (bytes, bytearray)) else -1
            dc_logger.error(f"Malformed cleartexts for request {request_id}: {length} bytes")
            raise InvalidCleartexts(request_id, context.batch_id, length)

        now = self._clock()
        result = DecryptionResult(request_id, context.batch_id, *values, completed_at=now)
        context.processed = True
        self._results[request_id] = result

        dc_logger.info(f"Completed decryption {request_id} for batch {context.batch_id}: {values}")
        self._events.emit(
            EventType.DECRYPTION_COMPLETED, now,
            request_id=request_id, batch_id=context.batch_id,
            antigen_affinity=values[0], antibody_count=values[1], t_cell_effectiveness=values[2]
        )
        return result

    def get_context(self, request_id: int) -> Optional[DecryptionContext]:
        context = self._contexts.get(request_id)
        return replace(context) if context else None

    def get_result(self, request_id: int) -> Optional[DecryptionResult]:
        return self._results.get(request_id)

    def pending_requests(self) -> List[int]:
        """Request ids still awaiting a valid callback."""
        return sorted(rid for rid, ctx in self._contexts.items() if not ctx.processed)

    def requests_for_batch(self, batch_id: int) -> List[int]:
        return sorted(rid for rid, ctx in self._contexts.items() if ctx.batch_id == batch_id)
