"""
Ledger notifications.

Every successful state change appends one LedgerEvent to the EventLog. The log
is append-only, numbered, and pushes each event to registered subscribers so
external monitors can follow the ledger without polling.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ledger_logging import get_ledger_logger

ev_logger = get_ledger_logger("ledger_events")


class EventType(Enum):
    """Notifications a caller or monitor can subscribe to."""
    OWNERSHIP_CHANGED = "ownership_changed"
    PROVIDER_ADDED = "provider_added"
    PROVIDER_REMOVED = "provider_removed"
    PAUSED = "paused"
    UNPAUSED = "unpaused"
    COOLDOWN_CHANGED = "cooldown_changed"
    BATCH_OPENED = "batch_opened"
    BATCH_CLOSED = "batch_closed"
    DATA_SUBMITTED = "data_submitted"
    DECRYPTION_REQUESTED = "decryption_requested"
    DECRYPTION_COMPLETED = "decryption_completed"


@dataclass(frozen=True)
class LedgerEvent:
    """A single emitted notification."""
    sequence: int
    event_type: EventType
    payload: Dict[str, Any]
    timestamp: float
    emitted_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        payload = {
            key: value.hex() if isinstance(value, bytes) else value
            for key, value in self.payload.items()
        }
        return {
            'sequence': self.sequence,
            'event_type': self.event_type.value,
            'payload': payload,
            'timestamp': self.timestamp,
            'emitted_at': self.emitted_at.isoformat()
        }


Subscriber = Callable[[LedgerEvent], None]


class EventLog:
    """Append-only event log with push delivery to subscribers."""

    def __init__(self):
        self._events: List[LedgerEvent] = []
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns:
            A function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event_type: EventType, timestamp: float, **payload) -> LedgerEvent:
        """Append an event and deliver it to every subscriber."""
        event = LedgerEvent(
            sequence=len(self._events) + 1,
            event_type=event_type,
            payload=payload,
            timestamp=timestamp
        )
        self._events.append(event)
        ev_logger.debug(f"Event #{event.sequence} {event_type.value}: {event.to_dict()['payload']}")

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                # A broken monitor must not undo a committed ledger change
                ev_logger.error(f"Subscriber {subscriber!r} failed on event #{event.sequence}: {e}")
        return event

    def events(self, event_type: Optional[EventType] = None,
               since: int = 0) -> List[LedgerEvent]:
        """
        Query emitted events.

        Args:
            event_type: Only return events of this type
            since: Only return events with a sequence number greater than this

        Returns:
            Matching events in emission order
        """
        return [
            event for event in self._events
            if event.sequence > since
            and (event_type is None or event.event_type == event_type)
        ]

    def count(self, event_type: Optional[EventType] = None) -> int:
        return len(self.events(event_type))

    def __len__(self) -> int:
        return len(self._events)
