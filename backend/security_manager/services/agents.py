"""Agent registry — organization-scoped CRUD over monitored servers.

Every lookup filters on both the record id and the caller's organization,
so an id from another tenant is indistinguishable from a missing one.
``(organization_id, ip_address)`` and ``(organization_id, host_id)`` are
unique; duplicates surface as ConflictError and leave no row behind.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from security_manager.db.models import Agent, AgentStatus, utcnow
from security_manager.exceptions import (
    ConflictError,
    NotFoundError,
    OrganizationNotProvisionedError,
    ValidationError,
)
from security_manager.services.audit import write_audit
from security_manager.services.provisioning import slugify

logger = logging.getLogger(__name__)

DUPLICATE_IP_MESSAGE = "Server with this IP address already exists"
DUPLICATE_HOST_MESSAGE = "Server with this name already exists"


def _require_organization(organization_id: Optional[uuid.UUID]) -> uuid.UUID:
    if organization_id is None:
        raise OrganizationNotProvisionedError()
    return organization_id


def _require_fields(**fields: Optional[str]) -> dict[str, str]:
    cleaned = {name: (value or "").strip() for name, value in fields.items()}
    missing = [name for name, value in cleaned.items() if not value]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    return cleaned


def host_id_for(name: str) -> str:
    return slugify(name, fallback="host")


def _parse_agent_id(agent_id: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(agent_id))
    except ValueError:
        return None


async def _find_by_ip(
    db: AsyncSession, organization_id: uuid.UUID, ip_address: str
) -> Optional[Agent]:
    result = await db.execute(
        select(Agent).where(
            Agent.organization_id == organization_id,
            Agent.ip_address == ip_address,
        )
    )
    return result.scalar_one_or_none()


async def _find_by_host_id(
    db: AsyncSession, organization_id: uuid.UUID, host_id: str
) -> Optional[Agent]:
    result = await db.execute(
        select(Agent).where(
            Agent.organization_id == organization_id,
            Agent.host_id == host_id,
        )
    )
    return result.scalar_one_or_none()


async def _flush_or_conflict(db: AsyncSession, message: str) -> None:
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        logger.info("Agent write rejected by unique constraint: %s", e.orig)
        raise ConflictError(message) from e


async def list_agents(
    db: AsyncSession, organization_id: Optional[uuid.UUID]
) -> list[Agent]:
    """All agents of the organization, newest first."""
    organization_id = _require_organization(organization_id)
    result = await db.execute(
        select(Agent)
        .where(Agent.organization_id == organization_id)
        .order_by(Agent.created_at.desc())
    )
    return list(result.scalars().all())


async def get_agent(
    db: AsyncSession, organization_id: Optional[uuid.UUID], agent_id: str
) -> Agent:
    organization_id = _require_organization(organization_id)
    parsed = _parse_agent_id(agent_id)
    if parsed is None:
        raise NotFoundError("Server not found")
    result = await db.execute(
        select(Agent).where(
            Agent.id == parsed,
            Agent.organization_id == organization_id,
        )
    )
    agent = result.scalar_one_or_none()
    if agent is None:
        raise NotFoundError("Server not found")
    return agent


async def create_agent(
    db: AsyncSession,
    organization_id: Optional[uuid.UUID],
    *,
    name: Optional[str],
    ip_address: Optional[str],
    os_type: Optional[str],
    user_id: Optional[str] = None,
) -> Agent:
    """Register a server by hand. It stays OFFLINE until its agent connects."""
    organization_id = _require_organization(organization_id)
    fields = _require_fields(name=name, ip_address=ip_address, os_type=os_type)

    if await _find_by_ip(db, organization_id, fields["ip_address"]) is not None:
        raise ConflictError(DUPLICATE_IP_MESSAGE)
    host_id = host_id_for(fields["name"])
    if await _find_by_host_id(db, organization_id, host_id) is not None:
        raise ConflictError(DUPLICATE_HOST_MESSAGE)

    agent = Agent(
        id=uuid.uuid4(),
        host_id=host_id,
        name=fields["name"],
        ip_address=fields["ip_address"],
        os_info=fields["os_type"],
        organization_id=organization_id,
        status=AgentStatus.OFFLINE,
        capabilities=[],
    )
    db.add(agent)
    await _flush_or_conflict(db, DUPLICATE_IP_MESSAGE)

    await write_audit(
        db,
        organization_id=organization_id,
        user_id=user_id,
        action="agent.created",
        resource_type="agent",
        resource_id=str(agent.id),
        metadata={"host_id": agent.host_id, "ip_address": agent.ip_address},
    )
    logger.info("Agent %s (%s) created in organization %s", agent.id, agent.host_id, organization_id)
    return agent


async def update_agent(
    db: AsyncSession,
    organization_id: Optional[uuid.UUID],
    agent_id: str,
    *,
    name: Optional[str],
    ip_address: Optional[str],
    os_type: Optional[str],
    user_id: Optional[str] = None,
) -> Agent:
    organization_id = _require_organization(organization_id)
    fields = _require_fields(name=name, ip_address=ip_address, os_type=os_type)
    agent = await get_agent(db, organization_id, agent_id)

    clash = await _find_by_ip(db, organization_id, fields["ip_address"])
    if clash is not None and clash.id != agent.id:
        raise ConflictError(DUPLICATE_IP_MESSAGE)

    agent.name = fields["name"]
    agent.ip_address = fields["ip_address"]
    agent.os_info = fields["os_type"]
    agent.updated_at = utcnow()
    await _flush_or_conflict(db, DUPLICATE_IP_MESSAGE)

    await write_audit(
        db,
        organization_id=organization_id,
        user_id=user_id,
        action="agent.updated",
        resource_type="agent",
        resource_id=str(agent.id),
    )
    return agent


async def delete_agent(
    db: AsyncSession,
    organization_id: Optional[uuid.UUID],
    agent_id: str,
    user_id: Optional[str] = None,
) -> None:
    """Hard delete, effective immediately."""
    organization_id = _require_organization(organization_id)
    agent = await get_agent(db, organization_id, agent_id)
    await db.delete(agent)
    await write_audit(
        db,
        organization_id=organization_id,
        user_id=user_id,
        action="agent.deleted",
        resource_type="agent",
        resource_id=str(agent.id),
        metadata={"host_id": agent.host_id},
    )
    await db.flush()
    logger.info("Agent %s deleted from organization %s", agent.id, organization_id)


async def register_agent(
    db: AsyncSession,
    organization_id: uuid.UUID,
    *,
    host_id: Optional[str] = None,
    hostname: Optional[str] = None,
    ip_address: Optional[str] = None,
    os_type: Optional[str] = None,
    os_version: Optional[str] = None,
    version: Optional[str] = None,
    capabilities: Optional[list[str]] = None,
) -> Agent:
    """Upsert the calling host's own record and mark it ONLINE.

    Matches an existing agent by host id first (targeted installs carry
    the pre-assigned one), then by IP (a headless install on a server the
    operator already added, which then takes the host's own id), and
    creates a new record otherwise.
    """
    hostname = (hostname or "").strip() or None
    host_id = (host_id or "").strip() or (host_id_for(hostname) if hostname else None)
    if not host_id:
        raise ValidationError("Missing required fields: host_id or hostname")
    ip_address = (ip_address or "").strip() or None
    os_info = (os_type or "").strip() or None
    if os_info and os_version:
        os_info = f"{os_info} ({os_version})"

    agent = await _find_by_host_id(db, organization_id, host_id)
    if agent is None and ip_address:
        agent = await _find_by_ip(db, organization_id, ip_address)
        if agent is not None:
            # The host id lookup missed, so the agent's own id is free to claim.
            agent.host_id = host_id
    if agent is not None and ip_address and ip_address != agent.ip_address:
        clash = await _find_by_ip(db, organization_id, ip_address)
        if clash is not None and clash.id != agent.id:
            raise ConflictError(DUPLICATE_IP_MESSAGE)

    created = agent is None
    if created:
        agent = Agent(
            id=uuid.uuid4(),
            host_id=host_id,
            organization_id=organization_id,
            capabilities=[],
        )
        db.add(agent)

    agent.name = hostname or agent.name or host_id
    if ip_address:
        agent.ip_address = ip_address
    if os_info:
        agent.os_info = os_info
    if version:
        agent.version = version
    if capabilities is not None:
        agent.capabilities = list(capabilities)
    agent.status = AgentStatus.ONLINE
    agent.last_seen = utcnow()
    agent.updated_at = agent.last_seen
    await _flush_or_conflict(db, DUPLICATE_IP_MESSAGE)

    await write_audit(
        db,
        organization_id=organization_id,
        action="agent.registered" if created else "agent.reconnected",
        resource_type="agent",
        resource_id=str(agent.id),
        ip_address=ip_address,
        metadata={"host_id": agent.host_id},
    )
    logger.info(
        "Agent %s %s in organization %s",
        agent.host_id,
        "registered" if created else "reconnected",
        organization_id,
    )
    return agent


async def record_heartbeat(
    db: AsyncSession,
    organization_id: uuid.UUID,
    host_id: str,
    status: Optional[str] = None,
) -> Agent:
    agent = await _find_by_host_id(db, organization_id, host_id)
    if agent is None:
        raise NotFoundError("Agent not found")
    try:
        agent.status = AgentStatus.from_view(status) if status else AgentStatus.ONLINE
    except ValueError as e:
        raise ValidationError(str(e)) from e
    agent.last_seen = utcnow()
    agent.updated_at = agent.last_seen
    await db.flush()
    return agent
