"""
Expiration tiers for cached values.
"""

from enum import IntEnum
from typing import Dict, Union


class TTL(IntEnum):
    """Named expiration tiers in seconds. PERMANENT means no expiry is sent."""
    SHORT = 300
    MEDIUM = 3600
    LONG = 86400
    PERMANENT = 0


DEFAULT_TTL: Dict[str, int] = {
    "short": int(TTL.SHORT),
    "medium": int(TTL.MEDIUM),
    "long": int(TTL.LONG),
    "permanent": int(TTL.PERMANENT),
}

MAX_TTL = int(TTL.LONG) * 10

_DATA_TYPE_TIERS: Dict[str, TTL] = {
    "session": TTL.SHORT,
    "auth": TTL.SHORT,
    "user": TTL.MEDIUM,
    "profile": TTL.MEDIUM,
    "domain": TTL.LONG,
    "search": TTL.LONG,
    "config": TTL.PERMANENT,
    "static": TTL.PERMANENT,
}

# Checked in order; first matching prefix wins.
_KEY_PREFIX_TIERS = (
    ("session:", TTL.SHORT),
    ("users:", TTL.MEDIUM),
    ("dashboard:", TTL.MEDIUM),
    ("inquiries:", TTL.MEDIUM),
    ("domains:", TTL.LONG),
    ("search:", TTL.LONG),
    ("analytics:", TTL.MEDIUM),
    ("config:", TTL.PERMANENT),
)


def resolve_ttl(ttl: Union[TTL, str, int]) -> int:
    """Turn a tier, tier name ("short", "LONG") or raw seconds into seconds."""
    if isinstance(ttl, TTL):
        return int(ttl)
    if isinstance(ttl, str):
        name = ttl.strip().lower()
        if name in DEFAULT_TTL:
            return DEFAULT_TTL[name]
        if name.isdigit():
            return int(name)
        raise ValueError(f"Unknown TTL tier: {ttl!r}")
    return int(ttl)


def ttl_for_data_type(data_type: str) -> int:
    """Pick a tier for a kind of data."""
    return int(_DATA_TYPE_TIERS.get(data_type.lower(), TTL.MEDIUM))


def ttl_for_key(key: str) -> int:
    """Pick a tier from the key's namespace prefix."""
    for prefix, tier in _KEY_PREFIX_TIERS:
        if key.startswith(prefix):
            return int(tier)
    return int(TTL.MEDIUM)


def validate_ttl(ttl: int) -> bool:
    """Check that a TTL is non-negative and at most ten times the long tier.

    Advisory only: writes accept any non-negative TTL and log a warning past the cap.
    """
    return 0 <= ttl <= MAX_TTL
