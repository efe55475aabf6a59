"""Winner selection."""

from __future__ import annotations

import secrets
from collections.abc import Collection


def select(candidates: Collection[str]) -> str:
    """Pick one participant uniformly at random from ``candidates``.

    ``candidates`` must be a value captured by the caller (for example a
    ``PresenceRegistry.snapshot()``) and must be non-empty; callers check that
    before calling. The pick always comes from this exact value, never from a
    fresh registry read.
    """
    pool = tuple(candidates)
    return pool[secrets.randbelow(len(pool))]
