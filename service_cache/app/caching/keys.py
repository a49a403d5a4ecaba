"""
Key namespaces and key builders.

Every prefix ends with ":" so ``prefix + "*"`` and ``prefix + id + ":*"`` are
valid match patterns that never reach into a neighbouring namespace.
"""

import json
from enum import Enum
from typing import Any, Mapping, Optional


class Namespace(str, Enum):
    """Keyspace partitions, one per cached entity."""
    DOMAINS = "domains:"
    USERS = "users:"
    INQUIRIES = "inquiries:"
    DASHBOARD = "dashboard:"
    SEARCH = "search:"
    ANALYTICS = "analytics:"

    @property
    def prefix(self) -> str:
        return self.value

    @property
    def label(self) -> str:
        return self.value.rstrip(":")

    def pattern(self, entity_id: Optional[str] = None) -> str:
        """``prefix*`` for the whole namespace (no or empty id) or ``prefix{id}:*`` for one entity."""
        if not entity_id:
            return f"{self.value}*"
        return f"{self.value}{escape_pattern(str(entity_id))}:*"


PREFIXES = {namespace.name: namespace.value for namespace in Namespace}

_GLOB_SPECIAL = "*?[]\\"


def escape_pattern(text: str) -> str:
    """Make ``text`` match literally inside a glob pattern."""
    return "".join("\\" + char if char in _GLOB_SPECIAL else char for char in text)


def namespace_of(key: str) -> Optional[Namespace]:
    """Return the namespace a key or pattern belongs to, if any."""
    for namespace in Namespace:
        if key.startswith(namespace.value):
            return namespace
    return None


def _canonical(filters: Optional[Mapping[str, Any]]) -> str:
    return json.dumps(filters or {}, sort_keys=True, separators=(",", ":"), default=str)


def build_key(namespace: Namespace, *parts: Any) -> str:
    """Join parts under a namespace: ``build_key(USERS, "u1", "profile")`` -> ``users:u1:profile``."""
    if not parts:
        raise ValueError("at least one key part is required")
    return namespace.value + ":".join(str(part) for part in parts)


def domain_key(domain_id: str, *parts: Any) -> str:
    return build_key(Namespace.DOMAINS, domain_id, *(parts or ("info",)))


def domain_list_key(filters: Optional[Mapping[str, Any]] = None) -> str:
    return build_key(Namespace.DOMAINS, "list", _canonical(filters))


def user_key(user_id: str, *parts: Any) -> str:
    return build_key(Namespace.USERS, user_id, *(parts or ("profile",)))


def dashboard_key(user_id: str, *parts: Any) -> str:
    return build_key(Namespace.DASHBOARD, user_id, *(parts or ("stats",)))


def inquiry_key(inquiry_id: str, *parts: Any) -> str:
    return build_key(Namespace.INQUIRIES, inquiry_id, *(parts or ("info",)))


def search_key(query: str, filters: Optional[Mapping[str, Any]] = None) -> str:
    return build_key(Namespace.SEARCH, query, _canonical(filters))


def analytics_key(*parts: Any) -> str:
    return build_key(Namespace.ANALYTICS, *parts)
