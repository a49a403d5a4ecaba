"""
Shared fixtures for cache service tests.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.config import CacheSettings
from shared.metrics import MetricsCollector
from service_cache.app.caching.cache_service import CacheService
from service_cache.app.caching.memory_store import InMemoryStore


@pytest.fixture
def settings():
    """Settings that never touch the environment's Redis."""
    return CacheSettings(redis_url="redis://localhost:6379/15", warm_concurrency=5)


@pytest.fixture
def store():
    """In-memory backing store."""
    return InMemoryStore()


@pytest.fixture
def metrics():
    """Unregistered metrics collector."""
    return MetricsCollector("cache")


@pytest.fixture
def cache_service(store, settings, metrics):
    """CacheService wired to the in-memory store."""
    return CacheService(store, settings, metrics=metrics)
