from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate import two_factor
from trustgate.audit import write_audit
from trustgate.deps import get_db, require_admin
from trustgate.models import AuditEvent, TrustedDevice, User
from trustgate.schemas import AdminUserOut, AuditOut

router = APIRouter(prefix="/api/admin", tags=["admin"])


async def _target_user(db: AsyncSession, user_id: str) -> User:
  res = await db.execute(select(User).where(User.id == user_id))
  u = res.scalar_one_or_none()
  if not u:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
  return u


async def _trusted_count(db: AsyncSession, user_id: str) -> int:
  res = await db.execute(select(func.count(TrustedDevice.id)).where(TrustedDevice.user_id == user_id))
  return int(res.scalar_one() or 0)


def _admin_user_out(u: User, trusted: int) -> AdminUserOut:
  return AdminUserOut(
    id=u.id,
    email=u.email,
    name=u.name,
    role=u.role,
    emailVerified=bool(u.email_verified),
    twoFactorEnabled=bool(u.two_factor_enabled),
    blocked=bool(u.blocked),
    createdAt=u.created_at,
    trustedDevices=trusted,
  )


@router.get("/users", response_model=list[AdminUserOut])
async def list_users(admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)) -> list[AdminUserOut]:
  counts_res = await db.execute(select(TrustedDevice.user_id, func.count(TrustedDevice.id)).group_by(TrustedDevice.user_id))
  counts = {uid: int(n) for uid, n in counts_res.all()}
  res = await db.execute(select(User).order_by(User.created_at.asc()))
  return [_admin_user_out(u, counts.get(u.id, 0)) for u in res.scalars().all()]


@router.post("/users/{user_id}/block", response_model=AdminUserOut)
async def block_user(user_id: str, admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)) -> AdminUserOut:
  u = await _target_user(db, user_id)
  if u.id == admin.id:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot block yourself")
  u.blocked = True
  await write_audit(db, event_type="admin.user.blocked", entity_type="User", entity_id=u.id, actor_id=admin.id)
  await db.commit()
  return _admin_user_out(u, await _trusted_count(db, u.id))


@router.post("/users/{user_id}/unblock", response_model=AdminUserOut)
async def unblock_user(user_id: str, admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)) -> AdminUserOut:
  u = await _target_user(db, user_id)
  u.blocked = False
  await write_audit(db, event_type="admin.user.unblocked", entity_type="User", entity_id=u.id, actor_id=admin.id)
  await db.commit()
  return _admin_user_out(u, await _trusted_count(db, u.id))


@router.post("/users/{user_id}/2fa/reset")
async def reset_two_factor(user_id: str, admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)) -> dict:
  u = await _target_user(db, user_id)
  revoked = await two_factor.disable(db, u, actor_id=admin.id)
  return {"ok": True, "revokedDevices": revoked}


@router.get("/audit", response_model=list[AuditOut])
async def list_audit(
  eventType: str | None = None,
  userId: str | None = None,
  limit: int = 200,
  admin: User = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> list[AuditOut]:
  q = select(AuditEvent).order_by(AuditEvent.created_at.desc()).limit(max(1, min(limit, 1000)))
  if eventType:
    q = q.where(AuditEvent.event_type == eventType)
  if userId:
    q = q.where((AuditEvent.actor_id == userId) | (AuditEvent.entity_id == userId))
  res = await db.execute(q)
  out = []
  for ev in res.scalars().all():
    out.append(
      AuditOut(
        id=ev.id,
        actorId=ev.actor_id,
        eventType=ev.event_type,
        entityType=ev.entity_type,
        entityId=ev.entity_id,
        payload=ev.payload or {},
        createdAt=ev.created_at,
      )
    )
  return out
