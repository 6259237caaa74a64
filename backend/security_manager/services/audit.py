"""Audit logging helper — writes immutable AuditLog records.

Usage:
    await write_audit(db, organization_id=..., user_id=..., action="agent.created",
                      resource_type="agent", resource_id=str(agent.id))

Callers must never pass API key values in ``metadata``; use
``truncate_key`` from the credentials service instead.
"""

import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from security_manager.db.models import AuditLog


async def write_audit(
    db: AsyncSession,
    *,
    organization_id: uuid.UUID,
    user_id: Optional[str] = None,
    action: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Insert an immutable audit log entry."""
    entry = AuditLog(
        id=uuid.uuid4(),
        organization_id=organization_id,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        ip_address=ip_address,
        metadata_=metadata,
    )
    db.add(entry)
