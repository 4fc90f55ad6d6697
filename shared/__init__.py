"""
Shared utilities for webplow services.

This package aggregates common building blocks consumed by the gateway and
its tooling:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI app scaffolding, middleware and error handlers

Do not import from service_* packages into shared/.
"""
