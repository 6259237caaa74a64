"""SQLAlchemy 2.0 ORM models for the Security Manager console.

Defines the identity store: users, organisations, API keys, monitored
agents, and the audit log. Uniqueness rules live here as constraints so
concurrent writers fail cleanly at the database instead of racing in
application code.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


def utcnow() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


# ──────────────────────────────────────────
# ENUMS
# ──────────────────────────────────────────

class PlanTier(str, enum.Enum):
    FREE = "FREE"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class AgentStatus(str, enum.Enum):
    """Canonical agent status. Stored upper-case, shown lower-case."""

    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    PENDING = "PENDING"

    def to_view(self) -> str:
        return self.value.lower()

    @classmethod
    def from_view(cls, value: str) -> "AgentStatus":
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Unknown agent status: {value!r}") from None


DEFAULT_MAX_AGENTS = 5


# ──────────────────────────────────────────
# ORGANISATIONS (Tenants)
# ──────────────────────────────────────────

class Organization(Base):
    """Top-level tenant. Agents and API keys are scoped to an organization."""
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    plan: Mapped[PlanTier] = mapped_column(
        SAEnum(PlanTier), default=PlanTier.FREE, nullable=False
    )
    max_agents: Mapped[int] = mapped_column(
        Integer, default=DEFAULT_MAX_AGENTS, nullable=False
    )

    # One organization per provisioning user; the second concurrent insert fails here.
    owner_user_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    agents: Mapped[list["Agent"]] = relationship(
        back_populates="organization", cascade="all, delete-orphan"
    )
    api_keys: Mapped[list["ApiKey"]] = relationship(
        back_populates="organization", cascade="all, delete-orphan"
    )


# ──────────────────────────────────────────
# USERS
# ──────────────────────────────────────────

class User(Base):
    """A signed-in principal. ``id`` is the identity provider's subject."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Set once, via a conditional update guarded by "organization_id IS NULL".
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    organization: Mapped[Optional["Organization"]] = relationship(
        foreign_keys=[organization_id]
    )


# ──────────────────────────────────────────
# API KEYS
# ──────────────────────────────────────────

class ApiKey(Base):
    """Bearer credential embedded in agent install commands.

    The raw value is kept (not hashed) because every install command
    re-embeds it. Only ``truncate_key`` output may leave the service
    anywhere else.
    """
    __tablename__ = "api_keys"
    __table_args__ = (
        Index("ix_api_keys_org_id", "organization_id"),
        # At most one auto-issued active key per organization.
        Index(
            "uq_api_keys_default_active",
            "organization_id",
            unique=True,
            postgresql_where=text("is_default AND is_active"),
            sqlite_where=text("is_default AND is_active"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    organization: Mapped["Organization"] = relationship(back_populates="api_keys")


# ──────────────────────────────────────────
# AGENTS (Monitored servers)
# ──────────────────────────────────────────

class Agent(Base):
    """A monitored remote host.

    Created by an operator (name + IP + OS) or by the remote installer
    self-registering with its own host id, in which case the IP may
    arrive later.
    """
    __tablename__ = "agents"
    __table_args__ = (
        UniqueConstraint("organization_id", "ip_address", name="uq_agent_org_ip"),
        UniqueConstraint("organization_id", "host_id", name="uq_agent_org_host"),
        Index("ix_agents_org_created", "organization_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    host_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    os_info: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[AgentStatus] = mapped_column(
        SAEnum(AgentStatus), default=AgentStatus.OFFLINE, nullable=False
    )
    version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_seen: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    capabilities: Mapped[list] = mapped_column(JSONB, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    organization: Mapped["Organization"] = relationship(back_populates="agents")


# ──────────────────────────────────────────
# AUDIT LOG (Immutable)
# ──────────────────────────────────────────

class AuditLog(Base):
    """Immutable audit trail. Never holds API key values."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_org_created", "organization_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True
    )
    resource_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    metadata_: Mapped[Optional[dict]] = mapped_column(
        "metadata", JSONB, nullable=True
    )
    ip_address: Mapped[Optional[str]] = mapped_column(
        String(45), nullable=True
    )
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
