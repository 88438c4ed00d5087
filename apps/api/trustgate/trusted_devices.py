from __future__ import annotations

import logging

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate.models import TrustedDevice, new_id, utcnow

logger = logging.getLogger(__name__)


def _insert_for(db: AsyncSession):
  dialect = db.get_bind().dialect.name
  if dialect == "postgresql":
    return pg_insert
  if dialect == "sqlite":
    return sqlite_insert
  raise RuntimeError(f"Trusted-device upsert is not supported on {dialect}")


async def find(db: AsyncSession, user_id: str, device_id: str) -> TrustedDevice | None:
  res = await db.execute(
    select(TrustedDevice).where(TrustedDevice.user_id == user_id, TrustedDevice.device_id == device_id)
  )
  return res.scalar_one_or_none()


async def find_by_device_id(db: AsyncSession, device_id: str) -> TrustedDevice | None:
  # Not an access-control input: the same fingerprint may belong to several users.
  res = await db.execute(
    select(TrustedDevice).where(TrustedDevice.device_id == device_id).order_by(TrustedDevice.last_used.desc()).limit(1)
  )
  return res.scalars().first()


async def list_for_user(db: AsyncSession, user_id: str) -> list[TrustedDevice]:
  res = await db.execute(
    select(TrustedDevice).where(TrustedDevice.user_id == user_id).order_by(TrustedDevice.last_used.desc())
  )
  return list(res.scalars().all())


async def upsert(
  db: AsyncSession,
  *,
  user_id: str,
  device_id: str,
  device_name: str,
  user_agent: str | None,
  ip_address: str | None,
) -> TrustedDevice:
  now = utcnow()
  insert = _insert_for(db)
  stmt = insert(TrustedDevice).values(
    id=new_id(),
    user_id=user_id,
    device_id=device_id,
    device_name=device_name,
    user_agent=user_agent,
    ip_address=ip_address,
    created_at=now,
    last_used=now,
  )
  stmt = stmt.on_conflict_do_update(
    index_elements=["user_id", "device_id"],
    set_={
      "device_name": stmt.excluded.device_name,
      "user_agent": stmt.excluded.user_agent,
      "ip_address": stmt.excluded.ip_address,
      "last_used": stmt.excluded.last_used,
    },
  )
  await db.execute(stmt)
  td = await find(db, user_id, device_id)
  if td is None:
    raise RuntimeError("Trusted device upsert did not persist")
  # Rows loaded earlier in this session may be stale after the raw upsert.
  await db.refresh(td)
  return td


async def touch(db: AsyncSession, device: TrustedDevice) -> None:
  await db.execute(update(TrustedDevice).where(TrustedDevice.id == device.id).values(last_used=utcnow()))


async def remove(db: AsyncSession, device_id: str, *, user_id: str | None = None) -> int:
  q = delete(TrustedDevice).where(TrustedDevice.device_id == device_id)
  if user_id is not None:
    q = q.where(TrustedDevice.user_id == user_id)
  res = await db.execute(q)
  return int(res.rowcount or 0)


async def remove_by_id(db: AsyncSession, *, user_id: str, record_id: str) -> bool:
  res = await db.execute(delete(TrustedDevice).where(TrustedDevice.id == record_id, TrustedDevice.user_id == user_id))
  return bool(res.rowcount)


async def remove_all(db: AsyncSession, user_id: str) -> int:
  res = await db.execute(delete(TrustedDevice).where(TrustedDevice.user_id == user_id))
  removed = int(res.rowcount or 0)
  logger.info("revoked %s trusted device(s) for user %s", removed, user_id)
  return removed
