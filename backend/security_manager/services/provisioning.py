"""Organization provisioning — one organization per user, created on demand.

``ensure_organization`` is called from two places: the session authority on
every sign-in, and ``POST /setup-organization`` when the dashboard sees a
session without an organization. Both may run at the same time for the same
user, so creation is guarded twice:

1. ``organizations.owner_user_id`` is unique, so a second insert for the
   same user fails with an IntegrityError.
2. The user is bound with ``UPDATE ... WHERE organization_id IS NULL``; a
   zero-row update means another request already bound the user.

Either way the loser rolls back (discarding its own organization) and
re-reads the winner's.
"""

import logging
import re
import time
import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from security_manager.db.models import DEFAULT_MAX_AGENTS, Organization, PlanTier, User
from security_manager.exceptions import NotFoundError, ProvisioningError
from security_manager.services.audit import write_audit

logger = logging.getLogger(__name__)

MAX_PROVISION_ATTEMPTS = 3

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


def slugify(value: str, fallback: str = "org") -> str:
    """Lower-case, collapse every non ``[a-z0-9]`` run to one hyphen, trim hyphens."""
    slug = _NON_SLUG_CHARS.sub("-", value.lower()).strip("-")
    return slug or fallback


def organization_name_for(display_name: Optional[str]) -> str:
    hint = (display_name or "").strip() or "User"
    return f"{hint}'s Organization"


def build_unique_slug(name: str) -> str:
    """Slug of ``name`` plus a microsecond timestamp suffix."""
    return f"{slugify(name)}-{time.time_ns() // 1_000}"


async def load_user_organization(
    db: AsyncSession, user_id: str
) -> Optional[Organization]:
    """Return the organization bound to ``user_id``, reading through the identity map."""
    result = await db.execute(
        select(User)
        .options(selectinload(User.organization))
        .where(User.id == user_id)
        .execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found")
    return user.organization


async def ensure_organization(
    db: AsyncSession, user_id: str, display_name: Optional[str] = None
) -> Organization:
    """Return the user's organization, creating and binding one if needed.

    Safe to call concurrently for the same user: exactly one organization
    survives and every caller gets it back.
    """
    for attempt in range(1, MAX_PROVISION_ATTEMPTS + 1):
        existing = await load_user_organization(db, user_id)
        if existing is not None:
            return existing

        name = organization_name_for(display_name)
        org = Organization(
            id=uuid.uuid4(),
            name=name,
            slug=build_unique_slug(name),
            plan=PlanTier.FREE,
            max_agents=DEFAULT_MAX_AGENTS,
            owner_user_id=user_id,
        )
        db.add(org)

        try:
            await db.flush()
            result = await db.execute(
                update(User)
                .where(User.id == user_id, User.organization_id.is_(None))
                .values(organization_id=org.id)
                .execution_options(synchronize_session=False)
            )
            bound = result.rowcount == 1
        except IntegrityError:
            bound = False

        if not bound:
            await db.rollback()
            logger.info(
                "Organization provisioning for user %s lost a race (attempt %d); re-reading",
                user_id,
                attempt,
            )
            continue

        await write_audit(
            db,
            organization_id=org.id,
            user_id=user_id,
            action="organization.provisioned",
            resource_type="organization",
            resource_id=str(org.id),
            metadata={"slug": org.slug},
        )
        await db.commit()
        logger.info("Organization %s (%s) provisioned for user %s", org.id, org.slug, user_id)
        return org

    existing = await load_user_organization(db, user_id)
    if existing is not None:
        return existing
    raise ProvisioningError(f"Could not provision an organization for user {user_id}")
