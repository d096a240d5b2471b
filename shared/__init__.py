"""
Shared utilities for the Pratibha Marketing web core.

This package aggregates common building blocks consumed by both contexts:

- config: Settings via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Error taxonomy and canonical error responses
- retry: Back-off configuration for resilient calls
- base_service: FastAPI service scaffolding

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
