"""Shared FastAPI dependencies: caller identity, organization, credential issuer."""

import uuid

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from security_manager.config import get_settings
from security_manager.db.engine import get_db
from security_manager.exceptions import AuthenticationError, OrganizationNotProvisionedError
from security_manager.services.credentials import CredentialIssuer
from security_manager.services.provisioning import load_user_organization
from security_manager.services.sessions import UserSession


def require_session(request: Request) -> UserSession:
    """The session the auth middleware materialized for this request."""
    session = getattr(request.state, "session", None)
    if session is None:
        raise AuthenticationError("Not authenticated")
    return session


async def require_organization_id(
    session: UserSession = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> uuid.UUID:
    """Organization of the caller, re-checked against the database.

    Raises OrganizationNotProvisionedError (403) rather than an auth error
    so the client knows to call ``POST /setup-organization``.
    """
    if session.organization_id is not None:
        return session.organization_id
    organization = await load_user_organization(db, session.user_id)
    if organization is None:
        raise OrganizationNotProvisionedError()
    return organization.id


def require_agent_organization_id(request: Request) -> uuid.UUID:
    """Organization of an API-key authenticated agent."""
    org_id = getattr(request.state, "org_id", None)
    if getattr(request.state, "auth_type", None) != "api_key" or not org_id:
        raise AuthenticationError("Agent API key required")
    return uuid.UUID(org_id)


def get_credential_issuer() -> CredentialIssuer:
    return CredentialIssuer(get_settings().installer_config())
