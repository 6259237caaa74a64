import asyncio

from httpx import AsyncClient
from sqlalchemy import func, select

from security_manager.db.models import Organization

from conftest import bearer


async def test_setup_organization_returns_existing(client: AsyncClient, seed_org: dict) -> None:
    resp = await client.post("/setup-organization", headers=seed_org["headers"])
    assert resp.status_code == 200
    data = resp.json()
    assert data["message"] == "Organization already exists"
    assert data["organization"]["id"] == str(seed_org["org"].id)
    assert data["organization"]["plan"] == "FREE"
    assert data["organization"]["maxAgents"] == 5


async def test_setup_organization_creates_when_sign_in_failed(
    client: AsyncClient, session_factory, monkeypatch
) -> None:
    from security_manager.exceptions import ProvisioningError
    from security_manager.services import sessions as sessions_service

    async def broken(*args, **kwargs):
        raise ProvisioningError("transient")

    monkeypatch.setattr(sessions_service, "ensure_organization", broken)

    resp = await client.post("/setup-organization", headers=bearer("user_late", name="Late"))
    assert resp.status_code == 200
    data = resp.json()
    assert data["message"] == "Organization created successfully"
    assert data["organization"]["name"] == "Late's Organization"
    assert data["organization"]["slug"].startswith("late-s-organization-")

    again = await client.post("/setup-organization", headers=bearer("user_late", name="Late"))
    assert again.json()["organization"]["id"] == data["organization"]["id"]


async def test_concurrent_first_sign_ins_share_one_organization(
    client: AsyncClient, session_factory
) -> None:
    headers = bearer("user_race", name="Racer")

    responses = await asyncio.gather(
        client.get("/auth/session", headers=headers),
        client.post("/setup-organization", headers=headers),
        client.get("/servers", headers=headers),
        client.post("/setup-organization", headers=headers),
    )

    assert all(r.status_code == 200 for r in responses)
    org_ids = {responses[0].json()["organizationId"]}
    org_ids |= {r.json()["organization"]["id"] for r in (responses[1], responses[3])}
    assert len(org_ids) == 1

    async with session_factory() as session:
        count = await session.scalar(
            select(func.count()).select_from(Organization).where(
                Organization.owner_user_id == "user_race"
            )
        )
        assert count == 1


async def test_setup_organization_requires_auth(client: AsyncClient) -> None:
    resp = await client.post("/setup-organization")
    assert resp.status_code == 401
