from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate import trusted_devices
from trustgate.audit import write_audit
from trustgate.context import RequestContext
from trustgate.cookies import clear_auth_cookies
from trustgate.deps import get_current_user, get_db, get_request_context
from trustgate.flows import password_login
from trustgate.models import Session as DbSession, TrustedDevice, User
from trustgate.schemas import LoginIn, LoginOut, RevokedOut, TrustedDeviceOut, UserOut

router = APIRouter(prefix="/api/auth", tags=["auth"])


def user_out(u: User) -> UserOut:
  return UserOut(
    id=u.id,
    email=u.email,
    name=u.name,
    role=u.role,
    emailVerified=bool(u.email_verified),
    twoFactorEnabled=bool(u.two_factor_enabled),
    blocked=bool(u.blocked),
  )


def _trusted_device_out(d: TrustedDevice, *, current_device_id: str | None = None) -> TrustedDeviceOut:
  return TrustedDeviceOut(
    id=d.id,
    deviceId=d.device_id,
    deviceName=d.device_name,
    userAgent=d.user_agent,
    ipAddress=d.ip_address,
    createdAt=d.created_at,
    lastUsed=d.last_used,
    current=d.device_id == current_device_id,
  )


@router.post("/login", response_model=LoginOut, response_model_exclude_none=True)
async def login(payload: LoginIn, request: Request, response: Response, db: AsyncSession = Depends(get_db)) -> LoginOut:
  outcome = await password_login(
    db,
    request,
    response,
    email=payload.email,
    password=payload.password,
    code=payload.code,
    backup_code=payload.backupCode,
    trust_device=payload.trustDevice,
  )
  if outcome.requires_two_factor:
    return LoginOut(requires2FA=True, deviceId=outcome.device.device_id, deviceName=outcome.device.device_name)
  return LoginOut(requires2FA=False, user=user_out(outcome.user))


@router.post("/logout")
async def logout(
  response: Response,
  ctx: RequestContext = Depends(get_request_context),
  db: AsyncSession = Depends(get_db),
) -> dict:
  if ctx.session is not None:
    await db.execute(delete(DbSession).where(DbSession.id == ctx.session.id))
    await write_audit(db, event_type="auth.logout", entity_type="User", entity_id=ctx.session.user_id, actor_id=ctx.session.user_id)
    await db.commit()
  clear_auth_cookies(response)
  return {"ok": True}


@router.get("/me", response_model=UserOut)
async def me(user: User = Depends(get_current_user)) -> UserOut:
  return user_out(user)


@router.get("/trusted-devices", response_model=list[TrustedDeviceOut])
async def list_trusted_devices(
  user: User = Depends(get_current_user),
  ctx: RequestContext = Depends(get_request_context),
  db: AsyncSession = Depends(get_db),
) -> list[TrustedDeviceOut]:
  rows = await trusted_devices.list_for_user(db, user.id)
  return [_trusted_device_out(d, current_device_id=ctx.device.device_id) for d in rows]


@router.delete("/trusted-devices/{record_id}", response_model=RevokedOut)
async def revoke_trusted_device(
  record_id: str,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> RevokedOut:
  removed = await trusted_devices.remove_by_id(db, user_id=user.id, record_id=record_id)
  if not removed:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trusted device not found")
  await write_audit(db, event_type="2fa.device.revoked", entity_type="TrustedDevice", entity_id=record_id, actor_id=user.id)
  await db.commit()
  return RevokedOut(revoked=1)


@router.delete("/trusted-devices", response_model=RevokedOut)
async def revoke_all_trusted_devices(
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> RevokedOut:
  removed = await trusted_devices.remove_all(db, user.id)
  await write_audit(
    db,
    event_type="2fa.device.revoked_all",
    entity_type="User",
    entity_id=user.id,
    actor_id=user.id,
    payload={"revoked": removed},
  )
  await db.commit()
  return RevokedOut(revoked=removed)
