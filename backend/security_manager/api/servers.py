"""Server (agent) routes — organization-scoped CRUD plus install commands.

GET    /servers                               — List the organization's servers, newest first
POST   /servers                               — Register a server by hand (starts OFFLINE)
PUT    /servers/{id}                          — Edit name / IP / OS
DELETE /servers/{id}                          — Remove a server
GET    /servers/{id}/install-script           — Targeted install command for one server
POST   /servers/generate-install-command      — Headless install command (host self-registers)
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from security_manager.api.dependencies import (
    get_credential_issuer,
    require_organization_id,
    require_session,
)
from security_manager.api.schemas import (
    AgentView,
    DeleteResponse,
    GenerateInstallCommandRequest,
    InstallCommandResponse,
    InstallScriptResponse,
    ServerRequest,
)
from security_manager.db.engine import get_db
from security_manager.services import agents as registry
from security_manager.services.credentials import (
    DEFAULT_OS_TYPE,
    CredentialIssuer,
    truncate_key,
)
from security_manager.services.sessions import UserSession

router = APIRouter()


@router.get("", response_model=list[AgentView])
async def list_servers(
    org_id: uuid.UUID = Depends(require_organization_id),
    db: AsyncSession = Depends(get_db),
):
    agents = await registry.list_agents(db, org_id)
    return [AgentView.from_agent(a) for a in agents]


@router.post("", response_model=AgentView, status_code=201)
async def create_server(
    body: ServerRequest,
    session: UserSession = Depends(require_session),
    org_id: uuid.UUID = Depends(require_organization_id),
    db: AsyncSession = Depends(get_db),
):
    agent = await registry.create_agent(
        db, org_id,
        name=body.name, ip_address=body.ip_address, os_type=body.os_type,
        user_id=session.user_id,
    )
    return AgentView.from_agent(agent)


@router.put("/{server_id}", response_model=AgentView)
async def update_server(
    server_id: str,
    body: ServerRequest,
    session: UserSession = Depends(require_session),
    org_id: uuid.UUID = Depends(require_organization_id),
    db: AsyncSession = Depends(get_db),
):
    agent = await registry.update_agent(
        db, org_id, server_id,
        name=body.name, ip_address=body.ip_address, os_type=body.os_type,
        user_id=session.user_id,
    )
    return AgentView.from_agent(agent)


@router.delete("/{server_id}", response_model=DeleteResponse)
async def delete_server(
    server_id: str,
    session: UserSession = Depends(require_session),
    org_id: uuid.UUID = Depends(require_organization_id),
    db: AsyncSession = Depends(get_db),
):
    await registry.delete_agent(db, org_id, server_id, user_id=session.user_id)
    return DeleteResponse(message="Server deleted successfully")


@router.get("/{server_id}/install-script", response_model=InstallScriptResponse)
async def install_script(
    server_id: str,
    org_id: uuid.UUID = Depends(require_organization_id),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_credential_issuer),
):
    """Targeted install: the command carries this server's pre-assigned host id."""
    agent = await registry.get_agent(db, org_id, server_id)
    api_key = await issuer.ensure_api_key(db, org_id)
    # Issuance may have rolled back a lost race, which expires loaded rows.
    await db.refresh(agent)

    os_type = agent.os_info or DEFAULT_OS_TYPE
    return InstallScriptResponse(
        command=issuer.render_install_command(api_key, agent=agent, os_type=os_type),
        server_name=agent.name or agent.host_id,
        os_type=os_type,
        ip_address=agent.ip_address or "localhost",
    )


@router.post("/generate-install-command", response_model=InstallCommandResponse)
async def generate_install_command(
    body: Optional[GenerateInstallCommandRequest] = Body(default=None),
    org_id: uuid.UUID = Depends(require_organization_id),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_credential_issuer),
):
    """Headless install: no server record yet; the host registers itself with the key."""
    api_key = await issuer.ensure_api_key(db, org_id)
    os_type = (body.os_type if body else None) or DEFAULT_OS_TYPE
    return InstallCommandResponse(
        command=issuer.render_install_command(api_key, os_type=os_type),
        truncated_token=truncate_key(api_key.key),
        ingest_address=issuer.config.ingest_address,
    )
