"""
Shared utilities for the Policy Decision Point.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- circuit_breaker: Resilient external call protection
- tracing: OpenTelemetry setup and spans
- base_service: FastAPI service skeleton with health and metrics routes
- test_helpers: Token, header and catalog factories for tests

Do not import from service_* packages into shared/.
"""
