"""
CampusBid Escrow — Audit Trail
Writes one immutable AuditLog row per state transition (create, verify
success/failure, release, refund, dispute, resolve) in its own session,
after the primary transition has committed. Failures are logged, never raised.
"""
import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campusbid.models import AuditLog

logger = logging.getLogger("campusbid.audit")


def _serialize_value(value):
    """Convert a value to a JSON-serializable format."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)  # keep exact cents
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):  # Enum
        return value.value
    if isinstance(value, (int, float, bool, str)):
        return value
    return str(value)


class AuditRecorder:
    """Audit collaborator backed by the audit_logs table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        actor_id: Optional[str] = None,
        outcome: str = "success",
        details: Optional[dict] = None,
    ) -> None:
        payload = {k: _serialize_value(v) for k, v in (details or {}).items()}
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(AuditLog(
                        action=action,
                        resource_type=resource_type,
                        resource_id=resource_id,
                        actor_id=actor_id,
                        outcome=outcome,
                        details=json.dumps(payload, default=str),
                    ))

            logger.info(
                "📝 Audit: %s on %s [%s] by %s — %s",
                action, resource_type, resource_id, actor_id or "system", outcome,
            )
        except Exception as exc:
            # Audit logging must never crash the main transaction
            logger.error("Failed to write audit log for %s [%s]: %s", action, resource_id, exc)

    async def history(self, resource_id: str) -> list[AuditLog]:
        """All audit rows for a resource, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(AuditLog)
                .where(AuditLog.resource_id == resource_id)
                .order_by(AuditLog.id)
            )
            return list(result.scalars().all())
