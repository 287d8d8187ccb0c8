"""Error taxonomy shared by the tenant gate, the pipeline and the adapters.

Access-control and input errors are raised before any I/O and abort the
operation. Enrichment errors are recoverable and are converted to fallback
values by the pipeline. Adapter errors stay inside the adapter boundary.
Each class carries the HTTP status the API layer renders it with.
"""

from __future__ import annotations

from typing import Any


class ThreadbaseError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    retryable: bool = False
    public_detail: str = "Internal error"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        super().__init__(message or self.public_detail)
        self.message = message or self.public_detail
        self.context = context

    @property
    def detail(self) -> str:
        """Message safe to return to an external client."""
        return self.message


# ── Access control ──────────────────────────────────────────────────────────


class AccessError(ThreadbaseError):
    """Tenant resolution, membership, role or plan denial."""

    status_code = 403
    public_detail = "Access denied"


class TenantNotFound(AccessError):
    status_code = 404
    public_detail = "Tenant not found"

    @property
    def detail(self) -> str:
        return TenantNotFound.public_detail


class NotAuthorized(AccessError):
    """Caller has no membership in the tenant.

    Rendered exactly like TenantNotFound so an outsider cannot discover which
    tenants exist.
    """

    status_code = 404
    public_detail = "Not authorized"

    @property
    def detail(self) -> str:
        return TenantNotFound.public_detail


class InsufficientRole(AccessError):
    status_code = 403
    public_detail = "Insufficient role"


class PlanUpgradeRequired(AccessError):
    status_code = 402
    public_detail = "Plan upgrade required"


class PlanLimitExceeded(AccessError):
    status_code = 402
    public_detail = "Plan limit exceeded"


# ── Caller errors ───────────────────────────────────────────────────────────


class InvalidInput(ThreadbaseError):
    status_code = 422
    public_detail = "Invalid input"


class KnowledgeItemNotFound(ThreadbaseError):
    status_code = 404
    public_detail = "Knowledge item not found"


# ── Enrichment ──────────────────────────────────────────────────────────────


class EnrichmentFailure(ThreadbaseError):
    """Provider call failed, timed out or returned a malformed response."""

    status_code = 502
    retryable = True
    public_detail = "Enrichment failed"


class EnrichmentNotConfigured(ThreadbaseError):
    """Raised when constructing a provider without the required credentials."""

    status_code = 503
    public_detail = "Enrichment provider not configured"


# ── Persistence ─────────────────────────────────────────────────────────────


class PersistenceError(ThreadbaseError):
    status_code = 503
    retryable = True
    public_detail = "Storage unavailable"


# ── Integrations ────────────────────────────────────────────────────────────


class AdapterConnectionError(ThreadbaseError):
    status_code = 502
    retryable = True
    public_detail = "Integration unavailable"


class ExportFailure(ThreadbaseError):
    status_code = 502
    public_detail = "Export failed"


class CredentialsUnreadable(ThreadbaseError):
    """Stored credentials were encrypted with another key or altered."""

    status_code = 500
    public_detail = "Integration credentials unreadable"
