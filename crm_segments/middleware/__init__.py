"""
Middleware modules for the CRM segments API.

Provides request processing middleware for:
- Correlation ID tracking across the UI, this service and the CRM backend
"""

from .correlation import (
    CorrelationIdMiddleware,
    CorrelationLogFilter,
    correlation_id_ctx,
    request_id_ctx,
)

__all__ = [
    "CorrelationIdMiddleware",
    "CorrelationLogFilter",
    "correlation_id_ctx",
    "request_id_ctx",
]
