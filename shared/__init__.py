"""
Shared utilities for the Edge Cache Layer.

This package aggregates common building blocks consumed by the cache service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator with backoff
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service skeleton

Service packages import from here; do not import from service_* packages
into shared/.
"""
