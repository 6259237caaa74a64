"""Request and response models for the console API.

The dashboard speaks camelCase; models here use snake_case attributes and
serialize through a camelCase alias generator.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from security_manager.db.models import Agent, Organization
from security_manager.services.sessions import UserSession


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Servers ───────────────────────────────────


class ServerRequest(CamelModel):
    """Body for POST /servers and PUT /servers/{id}. Presence is checked by the registry."""

    name: Optional[str] = None
    ip_address: Optional[str] = None
    os_type: Optional[str] = None


class AgentView(CamelModel):
    """Client projection of an Agent, distinct from its storage shape."""

    id: str
    name: str
    ip_address: str
    os_type: str
    status: str
    last_seen: Optional[datetime] = None
    agent_version: Optional[str] = None
    organization_id: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_agent(cls, agent: Agent) -> "AgentView":
        return cls(
            id=str(agent.id),
            name=agent.name or agent.host_id,
            ip_address=agent.ip_address or "Unknown",
            os_type=agent.os_info or "linux",
            status=agent.status.to_view(),
            last_seen=agent.last_seen,
            agent_version=agent.version,
            organization_id=str(agent.organization_id),
            created_at=agent.created_at,
        )


class DeleteResponse(BaseModel):
    message: str


class InstallScriptResponse(CamelModel):
    command: str
    server_name: str
    os_type: str
    ip_address: str


class GenerateInstallCommandRequest(CamelModel):
    os_type: Optional[str] = None


class InstallCommandResponse(CamelModel):
    command: str
    truncated_token: str
    ingest_address: str


# ── Organizations & sessions ──────────────────


class OrganizationView(CamelModel):
    id: str
    name: str
    slug: str
    plan: str
    max_agents: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_organization(cls, org: Organization) -> "OrganizationView":
        return cls(
            id=str(org.id),
            name=org.name,
            slug=org.slug,
            plan=org.plan.value,
            max_agents=org.max_agents,
            created_at=org.created_at,
        )


class SetupOrganizationResponse(BaseModel):
    message: str
    organization: OrganizationView


class SessionView(CamelModel):
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None

    @classmethod
    def from_session(cls, session: UserSession) -> "SessionView":
        return cls(**session.to_dict())


# ── Agent self-registration ───────────────────


class AgentRegistrationRequest(CamelModel):
    host_id: Optional[str] = None
    hostname: Optional[str] = None
    ip_address: Optional[str] = None
    os_type: Optional[str] = None
    os_version: Optional[str] = None
    version: Optional[str] = None
    capabilities: Optional[list[str]] = None


class AgentRegistrationView(AgentView):
    """What a registering agent gets back, including the host id to heartbeat with."""

    host_id: str

    @classmethod
    def from_agent(cls, agent: Agent) -> "AgentRegistrationView":
        view = AgentView.from_agent(agent)
        return cls(**view.model_dump(), host_id=agent.host_id)


class HeartbeatRequest(CamelModel):
    status: Optional[str] = None
