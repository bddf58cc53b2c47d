"""
Per-actor rate limiting.

Two independent action kinds share one cooldown window: data submissions by
providers and decryption requests by the owner. An action is rejected while
now < last[actor] + cooldown_seconds. Callers check first and record only
when the whole operation commits.
"""

import time
from enum import Enum
from typing import Callable, Dict, Optional

from ledger_errors import CooldownActive, InvalidCooldown
from ledger_events import EventLog, EventType
from ledger_logging import get_ledger_logger

cd_logger = get_ledger_logger("cooldown_guard")


class ActionKind(Enum):
    """Rate-limited action kinds."""
    SUBMISSION = "submission"
    DECRYPTION_REQUEST = "decryption_request"


class CooldownGuard:
    """Tracks last action times and enforces the shared cooldown window."""

    def __init__(self, cooldown_seconds: float, events: EventLog,
                 clock: Callable[[], float] = time.time):
        if not self._valid_window(cooldown_seconds):
            raise InvalidCooldown(cooldown_seconds)
        self._cooldown_seconds = cooldown_seconds
        self._events = events
        self._clock = clock
        self._last_action: Dict[ActionKind, Dict[str, float]] = {
            kind: {} for kind in ActionKind
        }

    @staticmethod
    def _valid_window(seconds) -> bool:
        return (isinstance(seconds, (int, float)) and not isinstance(seconds, bool)
                and seconds >= 0)

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown_seconds

    def set_cooldown_seconds(self, seconds: float) -> bool:
        """
        Change the cooldown window.

        Returns:
            True if the window changed, False if it already had that value
        """
        if not self._valid_window(seconds):
            raise InvalidCooldown(seconds)
        if seconds == self._cooldown_seconds:
            return False

        previous = self._cooldown_seconds
        self._cooldown_seconds = seconds
        cd_logger.info(f"Cooldown changed from {previous}s to {seconds}s")
        self._events.emit(
            EventType.COOLDOWN_CHANGED, self._clock(),
            previous_seconds=previous, new_seconds=seconds
        )
        return True

    def last_action_time(self, actor: str, kind: ActionKind) -> Optional[float]:
        """Time of the actor's last committed action of this kind, if any."""
        return self._last_action[kind].get(actor)

    def retry_after(self, actor: str, kind: ActionKind, now: float) -> float:
        """Seconds until the actor may act again; 0 if allowed now."""
        last = self._last_action[kind].get(actor)
        if last is None:
            return 0.0
        return max(0.0, last + self._cooldown_seconds - now)

    def check(self, actor: str, kind: ActionKind, now: float) -> None:
        """Raise CooldownActive if the actor is still inside the window."""
        last = self._last_action[kind].get(actor)
        if last is not None and now < last + self._cooldown_seconds:
            remaining = last + self._cooldown_seconds - now
            cd_logger.warning(f"Cooldown active: {actor} {kind.value}, {remaining:.2f}s left")
            raise CooldownActive(actor, kind.value, remaining)

    def record(self, actor: str, kind: ActionKind, now: float) -> None:
        """Store now as the actor's last action time for this kind."""
        self._last_action[kind][actor] = now
        cd_logger.debug(f"Recorded {kind.value} for {actor} at {now}")
