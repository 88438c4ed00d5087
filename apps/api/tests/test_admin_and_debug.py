from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from trustgate.main import app
from trustgate.security import totp_code
from conftest import create_user, credential_for, load_user, login, trusted_rows


@pytest.mark.anyio
async def test_admin_routes_reject_regular_users(client: AsyncClient) -> None:
  await create_user("member@example.com")
  await login(client, "member@example.com")
  res = await client.get("/api/admin/users")
  assert res.status_code == 307
  assert res.headers["location"] == "/"

  debug = await client.get("/api/debug/2fa-status")
  assert debug.status_code == 307


@pytest.mark.anyio
async def test_admin_routes_need_a_session(client: AsyncClient) -> None:
  res = await client.get("/api/admin/users")
  assert res.status_code == 307
  assert res.headers["location"] == "/login"


@pytest.mark.anyio
async def test_admin_can_block_and_unblock(client: AsyncClient) -> None:
  await create_user("admin@example.com", role="admin")
  target, _ = await create_user("target@example.com")

  await login(client, "admin@example.com")
  listed = await client.get("/api/admin/users")
  assert listed.status_code == 200, listed.text
  assert {u["email"] for u in listed.json()} == {"admin@example.com", "target@example.com"}

  blocked = await client.post(f"/api/admin/users/{target.id}/block")
  assert blocked.status_code == 200, blocked.text
  assert blocked.json()["blocked"] is True

  audit = await client.get("/api/admin/audit", params={"eventType": "admin.user.blocked"})
  assert audit.status_code == 200
  assert [ev["entityId"] for ev in audit.json()] == [target.id]

  unblocked = await client.post(f"/api/admin/users/{target.id}/unblock")
  assert unblocked.json()["blocked"] is False

  me = await load_user("admin@example.com")
  self_block = await client.post(f"/api/admin/users/{me.id}/block")
  assert self_block.status_code == 400


@pytest.mark.anyio
async def test_blocked_session_is_redirected_to_blocked_page(client: AsyncClient) -> None:
  await create_user("admin@example.com", role="admin")
  target, _ = await create_user("target@example.com")

  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as target_client:
    await login(target_client, "target@example.com")
    await login(client, "admin@example.com")
    await client.post(f"/api/admin/users/{target.id}/block")

    res = await target_client.get("/profile")
    assert res.status_code == 307
    assert res.headers["location"] == "/blocked"


@pytest.mark.anyio
async def test_admin_reset_disables_two_factor_and_revokes_devices(client: AsyncClient) -> None:
  await create_user("admin@example.com", role="admin")
  target, secret = await create_user("locked@example.com", two_factor=True)

  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as target_client:
    await login(target_client, "locked@example.com", code=totp_code(secret), trustDevice=True)
  assert len(await trusted_rows(target.id)) == 1

  await login(client, "admin@example.com")
  res = await client.post(f"/api/admin/users/{target.id}/2fa/reset")
  assert res.status_code == 200, res.text
  assert res.json()["revokedDevices"] == 1
  assert await trusted_rows(target.id) == []
  assert await credential_for(target.id) is None
  assert (await load_user("locked@example.com")).two_factor_enabled is False


@pytest.mark.anyio
async def test_debug_status_shows_resolution_without_secrets(client: AsyncClient) -> None:
  await create_user("admin@example.com", role="admin", two_factor=True)
  admin = await load_user("admin@example.com")
  res = await client.post(
    "/api/auth/login",
    json={"email": "admin@example.com", "password": "correct-horse-1", "backupCode": "AB12CD34"},
  )
  assert res.status_code == 200, res.text

  debug = await client.get("/api/debug/2fa-status")
  assert debug.status_code == 200, debug.text
  body = debug.json()
  assert body["userId"] == admin.id
  assert body["state"] == "verified_this_session"
  assert body["markerPresent"] is True
  assert body["hasCredential"] is True
  assert body["backupCodesRemaining"] == 2
  assert body["trustedForOtherUser"] is False
  text = debug.text
  assert "AB12CD34" not in text and "secret" not in text.lower()
