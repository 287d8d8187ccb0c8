"""Pydantic schemas for tenants, memberships and the audit trail.

- Enums: PlanTier, TenantStatus, MemberRole, AuditSeverity
- Tenants: TenantCreate (provisioning request), TenantRead
- Memberships: MembershipRead, RoleChange
- Audit: AuditEventRead
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class PlanTier(str, Enum):
    """Subscription tier; drives quotas and the AI gate."""

    FREE = "FREE"
    STARTER = "STARTER"
    BUSINESS = "BUSINESS"
    ENTERPRISE = "ENTERPRISE"


class TenantStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    PENDING = "PENDING"
    CANCELLED = "CANCELLED"


class MemberRole(str, Enum):
    """Membership role, highest first."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MODERATOR = "MODERATOR"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"


class AuditSeverity(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# ── Tenants ─────────────────────────────────────────────────────────────────


class TenantCreate(BaseModel):
    """Request schema for provisioning a new tenant."""

    slug: str = Field(
        ...,
        min_length=3,
        max_length=50,
        pattern=r"^[a-z0-9][a-z0-9-]*[a-z0-9]$",
        description="Unique tenant identifier, also used as the subdomain",
        examples=["acme", "globex-eu"],
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Human-readable tenant name",
        examples=["Acme Corp"],
    )
    owner_email: str = Field(..., min_length=3, max_length=255)
    owner_name: str | None = None
    plan: PlanTier = PlanTier.FREE
    domain: str | None = Field(default=None, max_length=255)


class TenantRead(BaseModel):
    """Resolved tenant as seen by the gate, the pipeline and the API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    slug: str
    subdomain: str | None = None
    domain: str | None = None
    plan: PlanTier = PlanTier.FREE
    status: TenantStatus = TenantStatus.ACTIVE
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


# ── Memberships ─────────────────────────────────────────────────────────────


class MembershipRead(BaseModel):
    id: str
    tenant_id: str
    user_id: str
    role: MemberRole
    created_at: datetime | None = None


class MemberInvite(BaseModel):
    """Request schema for adding a member by email."""

    email: str = Field(..., min_length=3, max_length=255)
    name: str | None = None
    role: MemberRole = MemberRole.MEMBER


class RoleChange(BaseModel):
    """Request schema for changing a member's role."""

    user_id: str
    role: MemberRole


# ── Audit ───────────────────────────────────────────────────────────────────


class AuditEventRead(BaseModel):
    id: str
    tenant_id: str | None = None
    actor_id: str | None = None
    action: str
    entity: str
    entity_id: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
    severity: AuditSeverity = AuditSeverity.INFO
    created_at: datetime | None = None
