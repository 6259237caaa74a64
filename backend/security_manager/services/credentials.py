"""Credential issuance — the organization's install key and install commands.

The key embedded in install commands is "the first active key" of the
organization. When none exists one is minted lazily and flagged
``is_default``; a partial unique index allows only one active default key
per organization, so a concurrent second issuer fails on insert and
re-reads the winner's key.

Install commands come in two shapes:

    targeted  curl -fsSL <base>/install.sh | sudo SM_TOKEN=... SM_ORG_ID=... SM_HOST_ID=... SM_INGEST_URL=... bash
    headless  curl -fsSL <base>/install.sh | sudo SM_TOKEN=... SM_INGEST_URL=... bash

Windows has no installer yet, so that branch renders comment lines only.
"""

import logging
import secrets
import shlex
import time
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from security_manager.config import InstallerConfig
from security_manager.db.models import Agent, ApiKey
from security_manager.exceptions import ProvisioningError
from security_manager.services.audit import write_audit

logger = logging.getLogger(__name__)

KEY_PREFIX = "sm_"
DEFAULT_KEY_NAME = "Default API Key"
DEFAULT_OS_TYPE = "linux"
TRUNCATED_KEY_LENGTH = 20
MAX_ISSUE_ATTEMPTS = 3


def generate_key_value(organization_id: uuid.UUID) -> str:
    """``sm_<org id>_<unix millis>_<random hex>`` with a CSPRNG random part."""
    return f"{KEY_PREFIX}{organization_id}_{int(time.time() * 1000)}_{secrets.token_hex(12)}"


def truncate_key(key: str) -> str:
    """The only form of a key that may be logged or shown outside a command."""
    return key[:TRUNCATED_KEY_LENGTH] + "..."


def _is_windows(os_type: Optional[str]) -> bool:
    return (os_type or "").strip().lower().startswith("windows")


class CredentialIssuer:
    """Issues install keys and renders install commands.

    Args:
        config: Installer location and default ingest address.
    """

    def __init__(self, config: InstallerConfig) -> None:
        self.config = config

    @property
    def script_url(self) -> str:
        return f"{self.config.installer_base_url}/install.sh"

    async def find_active_key(
        self, db: AsyncSession, organization_id: uuid.UUID
    ) -> Optional[ApiKey]:
        result = await db.execute(
            select(ApiKey)
            .where(
                ApiKey.organization_id == organization_id,
                ApiKey.is_active.is_(True),
            )
            .order_by(ApiKey.created_at.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def ensure_api_key(
        self, db: AsyncSession, organization_id: uuid.UUID
    ) -> ApiKey:
        """Return the organization's active key, minting the default one if needed."""
        for attempt in range(1, MAX_ISSUE_ATTEMPTS + 1):
            existing = await self.find_active_key(db, organization_id)
            if existing is not None:
                return existing

            api_key = ApiKey(
                id=uuid.uuid4(),
                key=generate_key_value(organization_id),
                name=DEFAULT_KEY_NAME,
                organization_id=organization_id,
                is_active=True,
                is_default=True,
            )
            db.add(api_key)
            try:
                await db.flush()
            except IntegrityError:
                await db.rollback()
                logger.info(
                    "API key issuance for organization %s lost a race (attempt %d); re-reading",
                    organization_id,
                    attempt,
                )
                continue

            await write_audit(
                db,
                organization_id=organization_id,
                action="api_key.issued",
                resource_type="api_key",
                resource_id=str(api_key.id),
                metadata={"key": truncate_key(api_key.key)},
            )
            await db.commit()
            logger.info(
                "Issued API key %s for organization %s",
                truncate_key(api_key.key),
                organization_id,
            )
            return api_key

        existing = await self.find_active_key(db, organization_id)
        if existing is not None:
            return existing
        raise ProvisioningError(
            f"Could not issue an API key for organization {organization_id}"
        )

    def render_install_command(
        self,
        api_key: ApiKey,
        agent: Optional[Agent] = None,
        os_type: Optional[str] = None,
        ingest_address: Optional[str] = None,
    ) -> str:
        """Render the one-line installer for ``agent`` or, without one, a headless install."""
        if os_type is None:
            os_type = (agent.os_info if agent is not None else None) or DEFAULT_OS_TYPE
        ingest = ingest_address or self.config.ingest_address

        env: list[tuple[str, str]] = [("SM_TOKEN", api_key.key)]
        if agent is not None:
            env.append(("SM_ORG_ID", str(agent.organization_id)))
            env.append(("SM_HOST_ID", agent.host_id))
        env.append(("SM_INGEST_URL", ingest))
        assignments = " ".join(f"{name}={shlex.quote(value)}" for name, value in env)

        if _is_windows(os_type):
            return "\n".join([
                "# Windows installer not yet available - please use Linux/WSL",
                "# Set the variables below and run the installer from a WSL shell:",
                f"# curl -fsSL {self.script_url} | sudo {assignments} bash",
            ])

        return f"curl -fsSL {shlex.quote(self.script_url)} | sudo {assignments} bash"
