"""Audit recorder -- append-only security and activity trail.

record() never raises: a failed audit write is logged and swallowed so that
auditing can never break the operation being audited. Events without a tenant
(e.g. failed tenant resolution) are stored as system-wide events.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.threadbase.core.database import SessionFactory
from src.threadbase.core.scoped import TenantScopedAccessor, append_system_audit_event
from src.threadbase.schemas.tenant import AuditSeverity

logger = structlog.get_logger(__name__)


class AuditRecorder:
    """Records audit events through the tenant-scoped accessor.

    Args:
        session_factory: Session factory used for the audit writes.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        tenant_id: str | None,
        actor_id: str | None,
        action: str,
        entity: str,
        entity_id: str | None = None,
        detail: dict[str, Any] | None = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> None:
        """Append one audit event. Failures are logged, never raised."""
        log = logger.bind(
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            entity=entity,
            entity_id=entity_id,
            severity=severity.value,
        )
        try:
            if tenant_id is None:
                await append_system_audit_event(
                    self._session_factory,
                    actor_id=actor_id,
                    action=action,
                    entity=entity,
                    entity_id=entity_id,
                    detail=detail,
                    severity=severity,
                )
            else:
                accessor = TenantScopedAccessor(self._session_factory, tenant_id)
                await accessor.append_audit_event(
                    actor_id=actor_id,
                    action=action,
                    entity=entity,
                    entity_id=entity_id,
                    detail=detail,
                    severity=severity,
                )
        except Exception as exc:
            log.error("audit.record_failed", error=str(exc))
            return

        log.debug("audit.recorded")
