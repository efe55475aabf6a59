"""Presence registry derived from bus sync snapshots.

The bus owns the authoritative presence set. What an observer holds here is a
copy of the last full snapshot it received. Join and leave notifications are
only logged: a missed one would otherwise leave the registry permanently
wrong, whereas the next sync heals everything.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

# Wire shape delivered by the bus: presence key -> list of tracked payloads.
PresenceState = Mapping[str, Sequence[Mapping[str, Any]]]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class ParticipantPresence:
    """One connected session as seen in a presence snapshot."""

    participant_id: str
    connected_at: datetime | None = None


def _parse_online_at(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def flatten_presence_state(state: PresenceState) -> dict[str, ParticipantPresence]:
    """Turn a raw presence state into participants keyed by id.

    Each payload's ``user`` field names the participant; the presence key is
    used when it is missing. A participant tracked more than once keeps the
    earliest ``online_at``.
    """
    participants: dict[str, ParticipantPresence] = {}
    for key, metas in state.items():
        for meta in metas:
            participant_id = str(meta.get("user") or key)
            connected_at = _parse_online_at(meta.get("online_at"))
            existing = participants.get(participant_id)
            if existing is not None and existing.connected_at is not None:
                if connected_at is None or existing.connected_at <= connected_at:
                    continue
            participants[participant_id] = ParticipantPresence(participant_id, connected_at)
    return participants


class PresenceRegistry:
    """Live set of participant ids, replaced wholesale on each sync event."""

    def __init__(self) -> None:
        self._participants: Mapping[str, ParticipantPresence] = {}
        self._snapshot: frozenset[str] = frozenset()

    def rebuild(self, state: PresenceState) -> frozenset[str]:
        """Replace the registry contents with ``state`` and return the new snapshot."""
        participants = flatten_presence_state(state)
        self._participants = participants
        self._snapshot = frozenset(participants)
        logger.debug("Presence registry rebuilt with %d participant(s)", len(self._snapshot))
        return self._snapshot

    def clear(self) -> None:
        self._participants = {}
        self._snapshot = frozenset()

    def snapshot(self) -> frozenset[str]:
        """Return the current participant ids as an immutable value."""
        return self._snapshot

    def participants(self) -> list[ParticipantPresence]:
        """Return participants ordered by connection time, unknown times last."""
        return sorted(
            self._participants.values(),
            key=lambda p: (p.connected_at is None, p.connected_at or _EPOCH, p.participant_id),
        )

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._snapshot

    @staticmethod
    def log_join(key: str, new_presences: Sequence[Mapping[str, Any]]) -> None:
        logger.info("Presence join: %s (%d payload(s))", key, len(new_presences))

    @staticmethod
    def log_leave(key: str, left_presences: Sequence[Mapping[str, Any]]) -> None:
        logger.info("Presence leave: %s (%d payload(s))", key, len(left_presences))
