import uuid

from httpx import AsyncClient
from sqlalchemy import func, select

from security_manager.db.models import Agent, AgentStatus, AuditLog, User

from conftest import bearer

SERVER = {"name": "Web 01", "ipAddress": "10.0.0.10", "osType": "ubuntu"}


async def _create(client: AsyncClient, headers: dict, **overrides) -> dict:
    resp = await client.post("/servers", json={**SERVER, **overrides}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def test_create_then_list_round_trip(client: AsyncClient, seed_org: dict) -> None:
    headers = seed_org["headers"]
    created = await _create(client, headers)

    assert created["name"] == "Web 01"
    assert created["ipAddress"] == "10.0.0.10"
    assert created["osType"] == "ubuntu"
    assert created["status"] == "offline"
    assert created["organizationId"] == str(seed_org["org"].id)

    resp = await client.get("/servers", headers=headers)
    assert resp.status_code == 200
    servers = resp.json()
    assert [s["id"] for s in servers] == [created["id"]]


async def test_list_is_newest_first(client: AsyncClient, seed_org: dict) -> None:
    headers = seed_org["headers"]
    first = await _create(client, headers, name="first", ipAddress="10.0.0.1")
    second = await _create(client, headers, name="second", ipAddress="10.0.0.2")

    resp = await client.get("/servers", headers=headers)
    assert [s["id"] for s in resp.json()] == [second["id"], first["id"]]


async def test_duplicate_ip_conflicts_without_creating(
    client: AsyncClient, seed_org: dict, session_factory
) -> None:
    headers = seed_org["headers"]
    await _create(client, headers)

    resp = await client.post(
        "/servers", json={**SERVER, "name": "Web 02"}, headers=headers
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"

    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(Agent))
        assert count == 1


async def test_duplicate_name_conflicts(client: AsyncClient, seed_org: dict) -> None:
    headers = seed_org["headers"]
    await _create(client, headers)

    resp = await client.post(
        "/servers", json={**SERVER, "ipAddress": "10.0.0.99"}, headers=headers
    )
    assert resp.status_code == 409


async def test_missing_fields_return_400(client: AsyncClient, seed_org: dict) -> None:
    resp = await client.post(
        "/servers", json={"name": "Web 01", "osType": "ubuntu"}, headers=seed_org["headers"]
    )
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "validation_error"
    assert "ip_address" in error["message"]


async def test_update_server(client: AsyncClient, seed_org: dict) -> None:
    headers = seed_org["headers"]
    created = await _create(client, headers)

    resp = await client.put(
        f"/servers/{created['id']}",
        json={"name": "Web 01 renamed", "ipAddress": "10.0.0.11", "osType": "debian"},
        headers=headers,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["name"] == "Web 01 renamed"
    assert data["ipAddress"] == "10.0.0.11"
    assert data["osType"] == "debian"


async def test_update_to_taken_ip_conflicts(client: AsyncClient, seed_org: dict) -> None:
    headers = seed_org["headers"]
    await _create(client, headers)
    other = await _create(client, headers, name="db", ipAddress="10.0.0.20")

    resp = await client.put(
        f"/servers/{other['id']}",
        json={"name": "db", "ipAddress": "10.0.0.10", "osType": "ubuntu"},
        headers=headers,
    )
    assert resp.status_code == 409


async def test_delete_then_not_found(
    client: AsyncClient, seed_org: dict, session_factory
) -> None:
    headers = seed_org["headers"]
    created = await _create(client, headers)

    resp = await client.delete(f"/servers/{created['id']}", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"message": "Server deleted successfully"}

    resp = await client.delete(f"/servers/{created['id']}", headers=headers)
    assert resp.status_code == 404
    resp = await client.get(f"/servers/{created['id']}/install-script", headers=headers)
    assert resp.status_code == 404

    async with session_factory() as session:
        actions = (await session.execute(
            select(AuditLog.action).order_by(AuditLog.created_at)
        )).scalars().all()
        assert actions[0] == "agent.created"
        assert "agent.deleted" in actions


async def test_malformed_id_is_not_found(client: AsyncClient, seed_org: dict) -> None:
    resp = await client.delete("/servers/not-a-uuid", headers=seed_org["headers"])
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


async def test_other_tenant_cannot_see_or_touch_servers(
    client: AsyncClient, seed_org: dict
) -> None:
    created = await _create(client, seed_org["headers"])
    intruder = bearer("user_intruder", name="Mallory")

    resp = await client.get("/servers", headers=intruder)
    assert resp.status_code == 200
    assert resp.json() == []

    for method, path in (
        ("DELETE", f"/servers/{created['id']}"),
        ("GET", f"/servers/{created['id']}/install-script"),
    ):
        resp = await client.request(method, path, headers=intruder)
        assert resp.status_code == 404

    resp = await client.put(f"/servers/{created['id']}", json=SERVER, headers=intruder)
    assert resp.status_code == 404

    # Another tenant may reuse the same IP.
    resp = await client.post("/servers", json=SERVER, headers=intruder)
    assert resp.status_code == 201


async def test_unprovisioned_user_gets_403(
    client: AsyncClient, session_factory, monkeypatch
) -> None:
    from security_manager.exceptions import ProvisioningError
    from security_manager.services import sessions as sessions_service

    async def broken(*args, **kwargs):
        raise ProvisioningError("database unavailable")

    monkeypatch.setattr(sessions_service, "ensure_organization", broken)

    resp = await client.get("/servers", headers=bearer("user_orphan"))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "organization_not_provisioned"

    async with session_factory() as session:
        user = await session.get(User, "user_orphan")
        assert user is not None
        assert user.organization_id is None


async def test_requests_without_credentials_get_401(client: AsyncClient) -> None:
    resp = await client.get("/servers")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "auth_required"


async def test_targeted_install_script(
    client: AsyncClient, seed_org: dict, session_factory
) -> None:
    headers = seed_org["headers"]
    created = await _create(client, headers)

    resp = await client.get(f"/servers/{created['id']}/install-script", headers=headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["serverName"] == "Web 01"
    assert data["osType"] == "ubuntu"
    assert data["ipAddress"] == "10.0.0.10"
    command = data["command"]
    assert seed_org["raw_key"] in command
    assert f"SM_ORG_ID={seed_org['org'].id}" in command
    assert "SM_HOST_ID=web-01" in command

    # Rendering a command never changes the server.
    async with session_factory() as session:
        agent = await session.get(Agent, uuid.UUID(created["id"]))
        assert agent.status == AgentStatus.OFFLINE
        assert agent.last_seen is None


async def test_windows_install_script_is_commented_out(
    client: AsyncClient, seed_org: dict
) -> None:
    headers = seed_org["headers"]
    created = await _create(client, headers, osType="windows")

    resp = await client.get(f"/servers/{created['id']}/install-script", headers=headers)
    assert resp.status_code == 200
    lines = resp.json()["command"].splitlines()
    assert lines and all(line.startswith("#") for line in lines)


async def test_install_script_issues_key_when_none_exists(client: AsyncClient) -> None:
    headers = bearer("user_fresh", name="Fresh")
    created = await _create(client, headers)

    first = await client.get(f"/servers/{created['id']}/install-script", headers=headers)
    second = await client.get(f"/servers/{created['id']}/install-script", headers=headers)

    assert first.status_code == 200
    assert first.json()["command"] == second.json()["command"]
    assert "SM_TOKEN=sm_" in first.json()["command"]


async def test_generate_headless_install_command(client: AsyncClient, seed_org: dict) -> None:
    resp = await client.post("/servers/generate-install-command", headers=seed_org["headers"])
    assert resp.status_code == 200
    data = resp.json()
    raw_key = seed_org["raw_key"]
    assert f"SM_TOKEN={raw_key}" in data["command"]
    assert "SM_HOST_ID" not in data["command"]
    assert data["truncatedToken"] == raw_key[:20] + "..."
    assert data["ingestAddress"] == "178.79.139.38:9002"


async def test_generate_headless_install_command_for_windows(
    client: AsyncClient, seed_org: dict
) -> None:
    resp = await client.post(
        "/servers/generate-install-command",
        json={"osType": "windows"},
        headers=seed_org["headers"],
    )
    assert resp.status_code == 200
    assert all(line.startswith("#") for line in resp.json()["command"].splitlines())


async def test_linux_server_round_trip_and_delete(client: AsyncClient, seed_org: dict) -> None:
    headers = seed_org["headers"]
    created = await _create(client, headers, name="web-1", ipAddress="10.0.0.5", osType="linux")

    listed = (await client.get("/servers", headers=headers)).json()
    entry = next(s for s in listed if s["id"] == created["id"])
    assert entry["status"] == "offline"
    assert entry["osType"] == "linux"
    assert entry["ipAddress"] == "10.0.0.5"

    script = await client.get(f"/servers/{created['id']}/install-script", headers=headers)
    lines = script.json()["command"].splitlines()
    assert len(lines) == 1
    assert f"SM_TOKEN={seed_org['raw_key']} " in lines[0]

    await client.delete(f"/servers/{created['id']}", headers=headers)
    listed = (await client.get("/servers", headers=headers)).json()
    assert created["id"] not in [s["id"] for s in listed]
