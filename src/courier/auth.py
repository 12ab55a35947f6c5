"""Identity normalization for courier.

Identities arrive in whatever shape the caller used (mixed case UUIDs,
padded strings from form fields). They are normalized exactly once, where
they enter the system, and compared as plain strings afterwards.
"""

import re

_IDENTITY_RE = re.compile(r"^[a-z0-9][a-z0-9_.:@-]{0,127}$")


def canonical_identity(raw: object) -> str:
    """Return the canonical form of an identity.

    Raises:
        ValueError: if the value cannot be an identity.
    """
    if raw is None:
        raise ValueError("Identity is required")
    identity = str(raw).strip().lower()
    if not _IDENTITY_RE.match(identity):
        raise ValueError(f"Malformed identity: {raw!r}")
    return identity


def pair_key(first: str, second: str) -> str:
    """Order-independent key for a pair of canonical identities."""
    low, high = sorted((first, second))
    return f"{low}|{high}"
