"""
Named invalidation helpers, one per cached entity.
"""

import functools
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from shared.logging import get_logger

from .cache_service import CacheService
from .keys import Namespace, escape_pattern

T = TypeVar("T")

ENTITY_NAMESPACES: Dict[str, Namespace] = {
    "domain": Namespace.DOMAINS,
    "user": Namespace.USERS,
    "inquiry": Namespace.INQUIRIES,
    "dashboard": Namespace.DASHBOARD,
    "search": Namespace.SEARCH,
    "analytics": Namespace.ANALYTICS,
}

# Namespaces cleared in full when an entity of the key type changes.
RELATED_NAMESPACES: Dict[str, Tuple[Namespace, ...]] = {
    "domain": (Namespace.INQUIRIES, Namespace.SEARCH),
    "inquiry": (Namespace.DASHBOARD,),
    "user": (Namespace.DASHBOARD,),
}


class CacheInvalidation:
    """Compose namespace patterns and hand them to ``CacheService.delete_pattern``.

    Helpers that touch several namespaces issue independent deletes: a failure
    in one leaves the deletions of the others in place. Each helper returns the
    number of keys removed and, like the service underneath, never raises.
    """

    def __init__(self, cache: CacheService):
        self.cache = cache
        self.logger = get_logger("cache.invalidation")

    async def invalidate_domains(self, domain_id: Optional[str] = None) -> int:
        """One domain's keys, or every domain key when no id is given."""
        return await self.cache.delete_pattern(Namespace.DOMAINS.pattern(domain_id))

    async def invalidate_user(self, user_id: str) -> int:
        """A user's profile keys and their dashboard keys."""
        if not user_id:
            self.logger.error("User invalidation needs a user id", user_id=user_id)
            return 0

        removed = await self.cache.delete_pattern(Namespace.USERS.pattern(user_id))
        removed += await self.cache.delete_pattern(Namespace.DASHBOARD.pattern(user_id))
        self.logger.info("Invalidated user cache", user_id=user_id, removed=removed)
        return removed

    async def invalidate_search(self, query: str) -> int:
        """Every search key containing ``query``."""
        pattern = f"{Namespace.SEARCH.prefix}*{escape_pattern(query)}*"
        return await self.cache.delete_pattern(pattern)

    async def invalidate_analytics(self) -> int:
        return await self.cache.delete_pattern(Namespace.ANALYTICS.pattern())

    async def invalidate_inquiries(self, inquiry_id: Optional[str] = None) -> int:
        return await self.cache.delete_pattern(Namespace.INQUIRIES.pattern(inquiry_id))

    async def invalidate_dashboard(self, user_id: Optional[str] = None) -> int:
        return await self.cache.delete_pattern(Namespace.DASHBOARD.pattern(user_id))

    async def invalidate_related(self, entity: str, entity_id: Optional[str] = None) -> int:
        """Clear an entity's keys and the namespaces derived from it.

        A domain change also clears inquiries and search results; an inquiry or
        user change also clears dashboards. ``entity_id`` narrows the entity's
        own keys only. Unknown entities are logged and remove nothing.
        """
        namespace = ENTITY_NAMESPACES.get(entity)
        if namespace is None:
            self.logger.error("Unknown cache entity", entity=entity)
            return 0

        removed = await self.cache.delete_pattern(namespace.pattern(entity_id))
        for related in RELATED_NAMESPACES.get(entity, ()):
            removed += await self.cache.delete_pattern(related.pattern())

        self.logger.info("Invalidated related caches", entity=entity, entity_id=entity_id, removed=removed)
        return removed


def invalidates(
    helpers: CacheInvalidation,
    entity: str,
    id_extractor: Optional[Callable[..., Optional[str]]] = None,
) -> Callable:
    """Decorate an async write so related caches are cleared after it succeeds.

    With ``id_extractor``, the id is taken from the call arguments and nothing is
    cleared when it comes back empty. The write's result is returned unchanged.
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            result = await func(*args, **kwargs)
            if id_extractor is None:
                await helpers.invalidate_related(entity)
            else:
                entity_id = id_extractor(*args, **kwargs)
                if entity_id:
                    await helpers.invalidate_related(entity, entity_id)
            return result

        return wrapper
    return decorator
