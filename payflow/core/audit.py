"""
Audit trail sink.

Audit records are append-only and written outside the primary transaction.
A failed audit write is logged as ``audit_write_failed`` and never propagates,
so it cannot roll back the operation being audited.
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payflow.database.models import AuditLog, utcnow

logger = structlog.get_logger(__name__)


class AuditSink:
    """Interface for fire-and-forget audit records."""

    async def record(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        *,
        user_id: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> None:
        raise NotImplementedError


class DatabaseAuditSink(AuditSink):
    """Writes audit records to the ``audit_logs`` table in a separate session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        *,
        user_id: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            async with self.session_factory() as db:
                db.add(
                    AuditLog(
                        user_id=user_id,
                        action=action,
                        resource_type=resource_type,
                        resource_id=resource_id,
                        old_values=old_values,
                        new_values=new_values,
                        created_at=utcnow(),
                    )
                )
                await db.commit()
        except Exception as e:
            logger.warning(
                "audit_write_failed",
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                error=str(e),
            )
