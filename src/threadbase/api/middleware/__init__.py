"""API middleware package."""

from src.threadbase.api.middleware.logging import LoggingMiddleware
from src.threadbase.api.middleware.tenant import TenantMiddleware

__all__ = ["LoggingMiddleware", "TenantMiddleware"]
