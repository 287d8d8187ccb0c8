"""FastAPI dependency injection for tenant-scoped services and authentication.

Services are built once in the application lifespan and stored on
app.state; these dependencies hand them to the endpoints together with the
resolved tenant and the authenticated, authorized member.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status

from src.threadbase.core.access import AccessGate
from src.threadbase.core.database import SessionFactory
from src.threadbase.core.errors import TenantNotFound
from src.threadbase.core.security import verify_token
from src.threadbase.knowledge.service import KnowledgeService
from src.threadbase.schemas.tenant import MemberRole, MembershipRead, TenantRead
from src.threadbase.services.audit import AuditRecorder


def get_session_factory(request: Request) -> SessionFactory:
    return request.app.state.session_factory


def get_gate(request: Request) -> AccessGate:
    return request.app.state.gate


def get_audit(request: Request) -> AuditRecorder:
    return request.app.state.audit


def get_knowledge_service(request: Request) -> KnowledgeService:
    return request.app.state.knowledge_service


async def get_tenant(request: Request) -> TenantRead:
    """The tenant resolved by TenantMiddleware."""
    tenant = getattr(request.state, "tenant", None)
    if tenant is None:
        raise TenantNotFound()
    return tenant


async def get_current_user_id(request: Request) -> str:
    """Subject of the bearer token.

    Raises:
        HTTPException(401): Missing or invalid token.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = verify_token(auth_header[7:], token_type="access")
    return str(payload["sub"])


def require_role(min_role: MemberRole) -> Callable[..., Awaitable[MembershipRead]]:
    """Dependency factory: the caller's membership, at least min_role."""

    async def dependency(
        tenant: TenantRead = Depends(get_tenant),
        user_id: str = Depends(get_current_user_id),
        gate: AccessGate = Depends(get_gate),
    ) -> MembershipRead:
        return await gate.authorize(tenant, user_id, min_role)

    return dependency
