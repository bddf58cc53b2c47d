"""
Owner/provider authorization and the global pause gate.

Authorization is a capability check, has_role(actor, Role), backed by the
single transferable owner and the provider membership set. An admin call that
would leave its value unchanged returns False and emits nothing.
"""

import time
from enum import Enum
from typing import Callable, FrozenSet, Set

from ledger_errors import InvalidAddress, InvalidPauseFlag, Paused, Unauthorized
from ledger_events import EventLog, EventType
from ledger_logging import get_ledger_logger

ac_logger = get_ledger_logger("access_control")


class Role(Enum):
    """Capabilities an actor can hold."""
    OWNER = "owner"
    PROVIDER = "provider"


def validate_address(address) -> str:
    """Reject empty or non-string actor addresses."""
    if not isinstance(address, str) or not address.strip():
        raise InvalidAddress(address)
    return address


class AccessControl:
    """Owner, provider set and pause flag."""

    def __init__(self, owner: str, events: EventLog, clock: Callable[[], float] = time.time):
        self._owner = validate_address(owner)
        self._providers: Set[str] = set()
        self._paused = False
        self._events = events
        self._clock = clock
        ac_logger.info(f"Access control initialized with owner {owner}")

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def providers(self) -> FrozenSet[str]:
        return frozenset(self._providers)

    def is_provider(self, actor: str) -> bool:
        return actor in self._providers

    def has_role(self, actor: str, role: Role) -> bool:
        """Check whether actor currently holds role."""
        if role is Role.OWNER:
            return actor == self._owner
        if role is Role.PROVIDER:
            return actor in self._providers
        return False

    def require_role(self, actor: str, role: Role) -> None:
        if not self.has_role(actor, role):
            ac_logger.warning(f"Unauthorized: {actor} attempted a {role.value}-only operation")
            raise Unauthorized(actor, role.value)

    def require_not_paused(self) -> None:
        if self._paused:
            raise Paused()

    def transfer_ownership(self, caller: str, new_owner: str) -> bool:
        """
        Hand the owner role to new_owner.

        Returns:
            True if the owner changed, False if new_owner already owns the service
        """
        self.require_role(caller, Role.OWNER)
        validate_address(new_owner)
        if new_owner == self._owner:
            return False

        previous = self._owner
        self._owner = new_owner
        ac_logger.info(f"Ownership transferred from {previous} to {new_owner}")
        self._events.emit(
            EventType.OWNERSHIP_CHANGED, self._clock(),
            previous_owner=previous, new_owner=new_owner
        )
        return True

    def add_provider(self, caller: str, provider: str) -> bool:
        """
        Grant the provider role.

        Returns:
            True if membership changed, False for an existing provider
        """
        self.require_role(caller, Role.OWNER)
        validate_address(provider)
        if provider in self._providers:
            return False

        self._providers.add(provider)
        ac_logger.info(f"Provider {provider} added")
        self._events.emit(EventType.PROVIDER_ADDED, self._clock(), provider=provider)
        return True

    def remove_provider(self, caller: str, provider: str) -> bool:
        """
        Revoke the provider role.

        Returns:
            True if membership changed, False for a non-member
        """
        self.require_role(caller, Role.OWNER)
        if provider not in self._providers:
            return False

        self._providers.discard(provider)
        ac_logger.info(f"Provider {provider} removed")
        self._events.emit(EventType.PROVIDER_REMOVED, self._clock(), provider=provider)
        return True

    def set_paused(self, caller: str, paused: bool) -> bool:
        """
        Open or close the global write gate.

        Returns:
            True if the flag changed, False if it already had that value
        """
        self.require_role(caller, Role.OWNER)
        if not isinstance(paused, bool):
            raise InvalidPauseFlag(paused)
        if paused == self._paused:
            return False

        self._paused = paused
        if paused:
            ac_logger.warning(f"Service paused by {caller}")
            self._events.emit(EventType.PAUSED, self._clock(), account=caller)
        else:
            ac_logger.info(f"Service unpaused by {caller}")
            self._events.emit(EventType.UNPAUSED, self._clock(), account=caller)
        return True
