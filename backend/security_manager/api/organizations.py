"""Organization routes.

POST /setup-organization — Idempotently provision the caller's organization.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from security_manager.api.dependencies import require_session
from security_manager.api.schemas import OrganizationView, SetupOrganizationResponse
from security_manager.db.engine import get_db
from security_manager.services.provisioning import (
    ensure_organization,
    load_user_organization,
)
from security_manager.services.sessions import UserSession

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/setup-organization", response_model=SetupOrganizationResponse)
async def setup_organization(
    session: UserSession = Depends(require_session),
    db: AsyncSession = Depends(get_db),
):
    """Safe to repeat and to race with sign-in: both paths converge on one organization."""
    organization = await load_user_organization(db, session.user_id)
    if organization is not None:
        return SetupOrganizationResponse(
            message="Organization already exists",
            organization=OrganizationView.from_organization(organization),
        )

    organization = await ensure_organization(db, session.user_id, session.name)
    return SetupOrganizationResponse(
        message="Organization created successfully",
        organization=OrganizationView.from_organization(organization),
    )
