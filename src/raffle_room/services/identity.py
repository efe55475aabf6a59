"""Session-scoped participant identifiers."""

from __future__ import annotations

import secrets
import string
import time

_ALPHABET = string.ascii_lowercase + string.digits


def generate_participant_id() -> str:
    """Return a fresh id such as ``user_1745466081123_k3j9x0a``.

    One id per session, not per person: reconnecting yields a new one.
    """
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(7))
    return f"user_{int(time.time() * 1000)}_{suffix}"
