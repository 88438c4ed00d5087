from __future__ import annotations

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from trustgate.db import SessionLocal
from trustgate.devices import derive_device_id
from trustgate.models import Session
from trustgate.security import totp_code
from conftest import BACKUP_CODES, create_user, login, trusted_rows


@pytest.mark.anyio
async def test_login_without_two_factor(client: AsyncClient) -> None:
  await create_user("plain@example.com")
  body = await login(client, "plain@example.com")
  assert body["requires2FA"] is False
  assert body["user"]["email"] == "plain@example.com"

  me = await client.get("/api/auth/me")
  assert me.status_code == 200, me.text


@pytest.mark.anyio
async def test_wrong_password_and_blocked_accounts(client: AsyncClient) -> None:
  await create_user("plain@example.com")
  await create_user("banned@example.com", blocked=True)

  bad = await client.post("/api/auth/login", json={"email": "plain@example.com", "password": "nope"})
  assert bad.status_code == 401
  assert bad.json() == {"error": "Invalid credentials"}

  blocked = await client.post("/api/auth/login", json={"email": "banned@example.com", "password": "correct-horse-1"})
  assert blocked.status_code == 403


@pytest.mark.anyio
async def test_deferred_challenge_gates_the_session_until_verified(client: AsyncClient) -> None:
  _, secret = await create_user("mfa@example.com", two_factor=True)
  body = await login(client, "mfa@example.com")
  assert body["requires2FA"] is True
  assert body["deviceId"] == derive_device_id(client.headers["user-agent"], "127.0.0.1")
  assert "user" not in body
  assert "backupCodes" not in body and "secret" not in body

  gated = await client.get("/api/auth/me")
  assert gated.status_code == 307
  assert gated.headers["location"] == "/2fa"

  status = await client.get("/api/auth/2fa/status")
  assert status.status_code == 200
  assert status.json()["requires2FA"] is True
  assert status.json()["state"] == "required_unverified"

  wrong = await client.post("/api/auth/2fa/verify", json={"code": "000001"})
  assert wrong.status_code == 400
  assert wrong.json() == {"error": "Invalid verification code"}

  ok = await client.post("/api/auth/2fa/verify", json={"code": totp_code(secret)})
  assert ok.status_code == 200, ok.text
  assert ok.json()["usedBackupCode"] is False
  assert client.cookies.get("2fa_verified")

  me = await client.get("/api/auth/me")
  assert me.status_code == 200, me.text


@pytest.mark.anyio
async def test_wrong_inline_code_creates_no_session(client: AsyncClient) -> None:
  await create_user("inline@example.com", two_factor=True)
  res = await client.post("/api/auth/login", json={"email": "inline@example.com", "password": "correct-horse-1", "code": "12345678"})
  assert res.status_code == 401
  assert res.json()["error"] == "Invalid verification code"
  assert client.cookies.get("tg_session") is None
  async with SessionLocal() as db:
    assert (await db.execute(select(func.count(Session.id)))).scalar_one() == 0


@pytest.mark.anyio
async def test_inline_code_verifies_at_login(client: AsyncClient) -> None:
  _, secret = await create_user("inline@example.com", two_factor=True)
  body = await login(client, "inline@example.com", code=totp_code(secret))
  assert body["requires2FA"] is False
  assert (await client.get("/api/auth/me")).status_code == 200


@pytest.mark.anyio
async def test_backup_code_with_trust_device_skips_future_challenges(client: AsyncClient) -> None:
  u, _ = await create_user("trust@example.com", two_factor=True)
  await login(client, "trust@example.com")

  res = await client.post("/api/auth/2fa/verify", json={"backupCode": "AB12CD34", "trustDevice": True})
  assert res.status_code == 200, res.text
  assert res.json()["usedBackupCode"] is True

  rows = await trusted_rows(u.id)
  assert len(rows) == 1
  assert rows[0].device_id == derive_device_id(client.headers["user-agent"], "127.0.0.1")

  # A fresh sign-in from the same device is not challenged.
  await client.post("/api/auth/logout")
  body = await login(client, "trust@example.com")
  assert body["requires2FA"] is False
  status = await client.get("/api/auth/2fa/status")
  assert status.json()["state"] == "not_required"
  assert status.json()["trustedDevice"] is True

  # The same code cannot be replayed.
  await client.post("/api/auth/logout")
  other_device = {"user-agent": "OtherBrowser/1.0"}
  res = await client.post(
    "/api/auth/login",
    json={"email": "trust@example.com", "password": "correct-horse-1", "backupCode": "AB12CD34"},
    headers=other_device,
  )
  assert res.status_code == 401
  res = await client.post(
    "/api/auth/login",
    json={"email": "trust@example.com", "password": "correct-horse-1", "backupCode": BACKUP_CODES[1]},
    headers=other_device,
  )
  assert res.status_code == 200, res.text


@pytest.mark.anyio
async def test_marker_from_another_session_does_not_verify(client: AsyncClient) -> None:
  _, secret = await create_user("marker@example.com", two_factor=True)
  await login(client, "marker@example.com", code=totp_code(secret))
  old_marker = client.cookies.get("2fa_verified")
  assert old_marker

  await client.post("/api/auth/logout")
  await login(client, "marker@example.com")
  sid = client.cookies.get("tg_session")
  res = await client.get("/api/auth/me", headers={"cookie": f"tg_session={sid}; 2fa_verified={old_marker}"})
  assert res.status_code == 307
  assert res.headers["location"] == "/2fa"


@pytest.mark.anyio
async def test_logout_clears_session_and_two_factor_cookies(client: AsyncClient) -> None:
  _, secret = await create_user("bye@example.com", two_factor=True)
  await login(client, "bye@example.com", code=totp_code(secret))
  assert client.cookies.get("2fa_verified")

  res = await client.post("/api/auth/logout")
  assert res.status_code == 200
  cleared = " ".join(res.headers.get_list("set-cookie"))
  for name in ("tg_session", "2fa_verified", "oauth_2fa_required", "oauth_provider"):
    assert f"{name}=" in cleared
  assert client.cookies.get("tg_session") is None
  assert client.cookies.get("2fa_verified") is None
  async with SessionLocal() as db:
    assert (await db.execute(select(func.count(Session.id)))).scalar_one() == 0
  assert (await client.get("/api/auth/me")).status_code == 401


@pytest.mark.anyio
async def test_pre_login_check_does_not_reveal_accounts(client: AsyncClient) -> None:
  await create_user("plain@example.com")
  await create_user("mfa@example.com", two_factor=True)

  unknown = await client.post("/api/auth/2fa/check", json={"email": "ghost@example.com"})
  plain = await client.post("/api/auth/2fa/check", json={"email": "plain@example.com"})
  assert unknown.status_code == plain.status_code == 200
  assert unknown.json() == plain.json() == {"requires2FA": False}

  mfa = await client.post("/api/auth/2fa/check", json={"email": "mfa@example.com"})
  assert mfa.json()["requires2FA"] is True
  assert set(mfa.json()) == {"requires2FA", "deviceId", "deviceName"}


@pytest.mark.anyio
async def test_setup_incomplete_user_is_let_through(client: AsyncClient) -> None:
  await create_user("half@example.com", two_factor=True, with_credential=False)
  body = await login(client, "half@example.com")
  assert body["requires2FA"] is False
  assert (await client.get("/api/auth/me")).status_code == 200
