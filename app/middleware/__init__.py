"""
Middleware modules for the portal API.

Provides request processing middleware for:
- Correlation ID tracking for distributed tracing
- Log record context injection
"""

from .correlation import CorrelationIdMiddleware, correlation_id_ctx, request_id_ctx

__all__ = [
    "CorrelationIdMiddleware",
    "correlation_id_ctx",
    "request_id_ctx",
]
