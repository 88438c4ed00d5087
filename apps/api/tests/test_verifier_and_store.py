from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate import trusted_devices, two_factor
from trustgate.db import SessionLocal
from trustgate.models import TrustedDevice
from trustgate.resolver import load_credential
from trustgate.security import totp_code, totp_verify
from trustgate.verifier import remaining_backup_codes, verify_second_factor
from conftest import BACKUP_CODES, create_user, credential_for


@pytest.mark.anyio
async def test_backup_code_is_single_use(db: AsyncSession) -> None:
  u, _ = await create_user("codes@example.com", two_factor=True)
  credential = await load_credential(db, u.id)
  assert remaining_backup_codes(credential) == len(BACKUP_CODES)

  first = await verify_second_factor(db, credential, "AB12CD34")
  await db.commit()
  assert first.ok and first.consumed_backup_code

  again = await verify_second_factor(db, credential, "ab12-cd34")
  assert not again.ok

  stored = await credential_for(u.id)
  assert remaining_backup_codes(stored) == len(BACKUP_CODES) - 1


@pytest.mark.anyio
async def test_backup_code_race_consumes_at_most_once(clean_db) -> None:
  u, _ = await create_user("race@example.com", two_factor=True)
  async with SessionLocal() as a, SessionLocal() as b:
    cred_a = await load_credential(a, u.id)
    cred_b = await load_credential(b, u.id)
    first = await verify_second_factor(a, cred_a, "EF56AB78")
    await a.commit()
    # b still holds the list from before a's commit.
    second = await verify_second_factor(b, cred_b, "EF56AB78")
    await b.commit()
  assert first.ok
  assert not second.ok
  assert remaining_backup_codes(await credential_for(u.id)) == len(BACKUP_CODES) - 1


@pytest.mark.anyio
async def test_totp_code_is_accepted_without_side_effects(db: AsyncSession) -> None:
  u, secret = await create_user("totp@example.com", two_factor=True)
  credential = await load_credential(db, u.id)
  result = await verify_second_factor(db, credential, totp_code(secret))
  assert result.ok and not result.consumed_backup_code
  assert remaining_backup_codes(credential) == len(BACKUP_CODES)


@pytest.mark.anyio
@pytest.mark.parametrize("code", ["000000", "123456", "99999999", "AB12CD35", "", "   ", "--"])
async def test_unknown_codes_fail_closed(db: AsyncSession, code: str) -> None:
  u, secret = await create_user("strict@example.com", two_factor=True)
  credential = await load_credential(db, u.id)
  if totp_verify(secret, code):
    pytest.skip("random secret happened to match the probe")
  result = await verify_second_factor(db, credential, code)
  assert not result.ok


@pytest.mark.anyio
async def test_missing_credential_never_verifies(db: AsyncSession) -> None:
  assert not (await verify_second_factor(db, None, "AB12CD34")).ok


@pytest.mark.anyio
async def test_upsert_keeps_one_row_with_latest_metadata(db: AsyncSession) -> None:
  u, _ = await create_user("upsert@example.com")
  first = await trusted_devices.upsert(
    db, user_id=u.id, device_id="dev-1", device_name="Chrome Browser", user_agent="ua", ip_address="10.0.0.1"
  )
  await db.commit()
  second = await trusted_devices.upsert(
    db, user_id=u.id, device_id="dev-1", device_name="Chrome Browser", user_agent="ua", ip_address="10.0.0.2"
  )
  await db.commit()

  res = await db.execute(select(TrustedDevice).where(TrustedDevice.user_id == u.id))
  rows = res.scalars().all()
  assert len(rows) == 1
  assert rows[0].ip_address == "10.0.0.2"
  assert first.id == second.id


@pytest.mark.anyio
async def test_same_fingerprint_is_trusted_per_user(db: AsyncSession) -> None:
  alice, _ = await create_user("alice@example.com")
  bob, _ = await create_user("bob@example.com")
  await trusted_devices.upsert(db, user_id=alice.id, device_id="shared", device_name="x", user_agent=None, ip_address=None)
  await db.commit()

  assert await trusted_devices.find(db, alice.id, "shared") is not None
  assert await trusted_devices.find(db, bob.id, "shared") is None

  await trusted_devices.upsert(db, user_id=bob.id, device_id="shared", device_name="x", user_agent=None, ip_address=None)
  await db.commit()
  assert await trusted_devices.remove(db, "shared", user_id=bob.id) == 1
  await db.commit()
  assert await trusted_devices.find(db, alice.id, "shared") is not None


@pytest.mark.anyio
async def test_disabling_two_factor_revokes_every_trusted_device(db: AsyncSession) -> None:
  u, _ = await create_user("revoke@example.com", two_factor=True)
  for i in range(3):
    await trusted_devices.upsert(db, user_id=u.id, device_id=f"dev-{i}", device_name="x", user_agent=None, ip_address=None)
  await db.commit()

  user = await db.get(type(u), u.id)
  revoked = await two_factor.disable(db, user, actor_id=u.id)

  assert revoked == 3
  for i in range(3):
    assert await trusted_devices.find(db, u.id, f"dev-{i}") is None
  assert await credential_for(u.id) is None
  assert user.two_factor_enabled is False
