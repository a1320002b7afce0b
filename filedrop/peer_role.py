"""
Decides which of two peers opens the data channel.

Both sides see the same pair of ids in their user-list-update and compute the
same answer independently, so exactly one offer is ever created per pair.
"""

import logging
from enum import Enum
from typing import Dict, Iterable, Optional, Set, Tuple

logger = logging.getLogger(__name__)


def resolve(a: str, b: str) -> str:
    """Return the id of the initiator for the pair (a, b)."""
    if a == b:
        raise ValueError(f"A peer cannot connect to itself: {a}")
    return min(a, b)


def should_initiate(local_id: str, remote_id: str) -> bool:
    return resolve(local_id, remote_id) == local_id


def membership_delta(
    local_id: str, previous: Iterable[str], current: Iterable[str]
) -> Tuple[Set[str], Set[str]]:
    """(appeared, gone) remote ids between two membership snapshots."""
    before = set(previous) - {local_id}
    after = set(current) - {local_id}
    return after - before, before - after


class ConnectionState(str, Enum):
    PENDING = "pending"
    OPEN = "open"


class ConnectionTracker:
    """Per remote peer connection bookkeeping, so setup is never repeated."""

    def __init__(self, local_id: str):
        self.local_id = local_id
        self._states: Dict[str, ConnectionState] = {}

    def begin(self, remote_id: str) -> bool:
        """Claim the pair. False if a connection is already pending or open."""
        if remote_id in self._states:
            logger.debug(f"Connection to {remote_id} already {self._states[remote_id].value}")
            return False
        self._states[remote_id] = ConnectionState.PENDING
        return True

    def mark_open(self, remote_id: str) -> None:
        self._states[remote_id] = ConnectionState.OPEN

    def release(self, remote_id: str) -> None:
        self._states.pop(remote_id, None)

    def state_of(self, remote_id: str) -> Optional[ConnectionState]:
        return self._states.get(remote_id)

    def __contains__(self, remote_id: str) -> bool:
        return remote_id in self._states
