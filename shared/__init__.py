"""
Shared utilities for the marketplace cache layer.

This package aggregates common building blocks consumed by the cache service:

- config: Cache configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses

Any cross-cutting logic should live here to avoid import cycles. Do not import
from service_* packages into shared/.
"""
