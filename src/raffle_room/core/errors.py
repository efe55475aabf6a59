"""Error taxonomy shared by the store, the bus and the synchronizers.

Every failure the raffle protocol knows about is one of the subclasses below.
They are caught at the boundary where they occur and turned into a loading
flag, an error message or a local ``ERROR`` state.
"""

from __future__ import annotations


class RaffleError(RuntimeError):
    """Base exception for raffle-related failures."""


class TransientConnectivity(RaffleError):
    """Raised when a store or bus call fails or times out.

    The core never retries these itself; recovery comes from the bus
    reconnecting and delivering fresh events.
    """


class GuardViolation(RaffleError):
    """Raised when a transition is requested from a disallowed state.

    Also covers ``pick_winner`` with no eligible participants and a second
    command issued while one is already in flight. Never reaches the store.
    """


class RecordMissing(RaffleError):
    """Raised when the single raffle record cannot be found."""

    def __init__(self, record_id: int) -> None:
        super().__init__(f"No raffle data found for ID {record_id}.")
        self.record_id = record_id


class ChannelFailure(RaffleError):
    """Raised when the realtime bus reports an error status for a channel."""
