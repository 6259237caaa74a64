"""Session authority — turns a verified identity assertion into a local session.

The organization binding is re-derived from the database on every call
rather than trusted from an earlier session, and a user without one is
provisioned on the spot. Provisioning failures never block sign-in: the
session comes back without organization fields and privileged routes
report ``organization_not_provisioned`` until it succeeds.
"""

import logging
import uuid
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from security_manager.db.models import User
from security_manager.exceptions import AuthenticationError, SecurityManagerError
from security_manager.services.provisioning import (
    ensure_organization,
    load_user_organization,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExternalIdentity:
    """What the identity provider vouches for."""

    subject: str
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class UserSession:
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    organization_id: Optional[uuid.UUID] = None
    organization_name: Optional[str] = None

    @property
    def is_provisioned(self) -> bool:
        return self.organization_id is not None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.organization_id is not None:
            data["organization_id"] = str(self.organization_id)
        return data


def identity_from_claims(claims: Mapping[str, Any]) -> ExternalIdentity:
    """Map decoded JWT claims onto an ExternalIdentity.

    Clerk session tokens only carry ``sub`` by default; ``name`` and
    ``email`` appear when the JWT template adds them.
    """
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise AuthenticationError("Token missing subject")

    name = claims.get("name")
    if not name:
        parts = [claims.get("given_name") or claims.get("first_name"),
                 claims.get("family_name") or claims.get("last_name")]
        name = " ".join(p for p in parts if isinstance(p, str) and p) or None

    email = claims.get("email")
    return ExternalIdentity(
        subject=subject,
        name=name if isinstance(name, str) else None,
        email=email if isinstance(email, str) else None,
    )


async def _upsert_user(db: AsyncSession, identity: ExternalIdentity) -> Optional[str]:
    """Create or refresh the user row; return the best known display name."""
    user = await db.get(User, identity.subject)
    if user is None:
        db.add(User(id=identity.subject, name=identity.name, email=identity.email))
        try:
            await db.commit()
            logger.info("Created user %s on first sign-in", identity.subject)
        except IntegrityError:
            # A concurrent first sign-in created the row.
            await db.rollback()
        return identity.name

    changed = False
    if identity.name and user.name != identity.name:
        user.name = identity.name
        changed = True
    if identity.email and user.email != identity.email:
        user.email = identity.email
        changed = True
    if changed:
        await db.commit()
    return user.name


async def materialize_session(db: AsyncSession, identity: ExternalIdentity) -> UserSession:
    display_name = await _upsert_user(db, identity)

    organization = await load_user_organization(db, identity.subject)
    if organization is None:
        try:
            organization = await ensure_organization(db, identity.subject, display_name)
        except (SQLAlchemyError, SecurityManagerError):
            logger.exception(
                "Organization provisioning failed for user %s; continuing without one",
                identity.subject,
            )
            await db.rollback()
            organization = None

    return UserSession(
        user_id=identity.subject,
        name=display_name,
        email=identity.email,
        organization_id=organization.id if organization is not None else None,
        organization_name=organization.name if organization is not None else None,
    )
