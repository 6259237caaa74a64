"""Agent self-registration routes, authenticated with an organization API key.

POST /agents/register               — Upsert the calling host and mark it online
POST /agents/{host_id}/heartbeat    — Refresh status and last_seen
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from security_manager.api.dependencies import require_agent_organization_id
from security_manager.api.schemas import (
    AgentRegistrationRequest,
    AgentRegistrationView,
    AgentView,
    HeartbeatRequest,
)
from security_manager.db.engine import get_db
from security_manager.services import agents as registry

router = APIRouter()


@router.post("/register", response_model=AgentRegistrationView)
async def register(
    body: AgentRegistrationRequest,
    org_id: uuid.UUID = Depends(require_agent_organization_id),
    db: AsyncSession = Depends(get_db),
):
    agent = await registry.register_agent(
        db, org_id,
        host_id=body.host_id,
        hostname=body.hostname,
        ip_address=body.ip_address,
        os_type=body.os_type,
        os_version=body.os_version,
        version=body.version,
        capabilities=body.capabilities,
    )
    return AgentRegistrationView.from_agent(agent)


@router.post("/{host_id}/heartbeat", response_model=AgentView)
async def heartbeat(
    host_id: str,
    body: Optional[HeartbeatRequest] = Body(default=None),
    org_id: uuid.UUID = Depends(require_agent_organization_id),
    db: AsyncSession = Depends(get_db),
):
    agent = await registry.record_heartbeat(
        db, org_id, host_id, status=body.status if body else None
    )
    return AgentView.from_agent(agent)
