"""
Shared utilities for the Fixia services and the realtime client.

This package aggregates common building blocks:

- config: Service configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator and backoff delay calculation
- base_service: FastAPI service skeleton (health, metrics, error handlers)

Do not import from service_* or realtime_client packages into shared/.
"""
