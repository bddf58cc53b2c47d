"""
Named error conditions raised by the immune aggregation ledger.

Every failure aborts the triggering call without changing ledger state.
Callers distinguish conditions by type; the attributes carry the context
(actor, batch id, request id) that produced the rejection.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger rejections."""

    def __init__(self, message: str = "", **context):
        self.context = context
        for key, value in context.items():
            setattr(self, key, value)
        super().__init__(message or self.__class__.__name__)


class Unauthorized(LedgerError):
    """Caller does not hold the role the operation requires."""

    def __init__(self, actor: str, role: str):
        super().__init__(f"{actor!r} lacks role {role}", actor=actor, role=role)


class Paused(LedgerError):
    """The service is paused and rejects state-changing operations."""

    def __init__(self):
        super().__init__("service is paused")


class CooldownActive(LedgerError):
    """Actor repeated a rate-limited action inside the cooldown window."""

    def __init__(self, actor: str, action: str, retry_after: float):
        super().__init__(
            f"{action} cooldown active for {actor!r}, retry in {retry_after:.2f}s",
            actor=actor, action=action, retry_after=retry_after,
        )


class InvalidBatchId(LedgerError):
    """Batch id is unknown, or the batch is in the wrong state for the operation."""

    def __init__(self, batch_id: int, reason: str):
        super().__init__(f"batch {batch_id}: {reason}", batch_id=batch_id, reason=reason)


class BatchClosedOrInvalid(LedgerError):
    """There is no open current batch to receive submissions."""

    def __init__(self, batch_id: int):
        super().__init__(f"current batch {batch_id} is closed or missing", batch_id=batch_id)


class NotInitialized(LedgerError):
    """A submitted ciphertext is not well-formed."""

    def __init__(self, field: str):
        super().__init__(f"ciphertext field {field!r} is not initialized", field=field)


class InvalidAddress(LedgerError):
    """An actor address is empty or not a string."""

    def __init__(self, address):
        super().__init__(f"invalid address {address!r}", address=address)


class InvalidCooldown(LedgerError):
    """Cooldown window must be a non-negative number of seconds."""

    def __init__(self, seconds):
        super().__init__(f"invalid cooldown {seconds!r}", seconds=seconds)


class InvalidPauseFlag(LedgerError):
    """The pause flag must be a real bool."""

    def __init__(self, value):
        super().__init__(f"pause flag must be True or False, got {value!r}", value=value)


class CallbackRejected(LedgerError):
    """A decryption callback was refused; the request stays pending."""

    def __init__(self, message: str, request_id: int, batch_id: Optional[int] = None):
        super().__init__(message, request_id=request_id, batch_id=batch_id)


class ReplayAttempt(CallbackRejected):
    """The request already completed; the callback was delivered again."""

    def __init__(self, request_id: int, batch_id: Optional[int] = None):
        super().__init__(f"request {request_id} already processed", request_id, batch_id)


class StateMismatch(CallbackRejected):
    """The batch aggregate changed between the request and its callback."""

    def __init__(self, request_id: int, batch_id: int, expected: bytes, actual: bytes):
        super().__init__(
            f"request {request_id}: fingerprint {actual.hex()[:16]} != {expected.hex()[:16]}",
            request_id, batch_id,
        )
        self.expected = expected
        self.actual = actual


class InvalidProof(CallbackRejected):
    """The oracle's authenticity proof did not verify."""

    def __init__(self, request_id: int, batch_id: Optional[int] = None):
        super().__init__(f"request {request_id}: decryption proof rejected", request_id, batch_id)


class UnknownRequest(CallbackRejected):
    """No decryption context exists for the request id."""

    def __init__(self, request_id: int):
        super().__init__(f"request {request_id} was never issued", request_id)


class InvalidCleartexts(CallbackRejected):
    """Cleartexts do not decode to exactly three fixed-width results."""

    def __init__(self, request_id: int, batch_id: Optional[int], length: int):
        super().__init__(
            f"request {request_id}: expected 96 bytes of cleartexts, got {length}",
            request_id, batch_id,
        )
        self.length = length


class DuplicateRequestId(CallbackRejected):
    """The oracle issued a request id that is already in use."""

    def __init__(self, request_id: int, batch_id: Optional[int] = None):
        super().__init__(
            f"request id {request_id} was issued more than once; its callbacks are refused",
            request_id, batch_id,
        )
