from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate import two_factor
from trustgate.context import RequestContext
from trustgate.cookies import clear_auth_cookies, clear_oauth_pending, set_verified_marker
from trustgate.deps import get_current_user, get_db, get_request_context, get_session_context
from trustgate.devices import fingerprint_from_request
from trustgate.flows import complete_challenge
from trustgate.models import Session as DbSession, User
from trustgate.resolver import resolve_for_email
from trustgate.schemas import (
  BackupCodesIn,
  BackupCodesOut,
  TwoFactorCheckIn,
  TwoFactorCheckOut,
  TwoFactorConfirmIn,
  TwoFactorDisableIn,
  TwoFactorEnableIn,
  TwoFactorEnableOut,
  TwoFactorStatusOut,
  TwoFactorVerifyIn,
  TwoFactorVerifyOut,
)

router = APIRouter(prefix="/api/auth/2fa", tags=["2fa"])


@router.post("/check", response_model=TwoFactorCheckOut, response_model_exclude_none=True)
async def check(payload: TwoFactorCheckIn, request: Request, db: AsyncSession = Depends(get_db)) -> TwoFactorCheckOut:
  device = fingerprint_from_request(request)
  resolution = await resolve_for_email(db, payload.email, device)
  if resolution.requires_challenge:
    return TwoFactorCheckOut(requires2FA=True, deviceId=device.device_id, deviceName=device.device_name)
  return TwoFactorCheckOut(requires2FA=False)


@router.get("/status", response_model=TwoFactorStatusOut)
async def get_status(ctx: RequestContext = Depends(get_session_context)) -> TwoFactorStatusOut:
  return TwoFactorStatusOut(
    requires2FA=ctx.requires_challenge,
    state=ctx.resolution.state.value,
    oauthPending=ctx.oauth_pending is not None,
    provider=ctx.oauth_provider,
    trustedDevice=ctx.resolution.trusted_device is not None,
  )


@router.post("/verify", response_model=TwoFactorVerifyOut)
async def verify(
  payload: TwoFactorVerifyIn,
  response: Response,
  ctx: RequestContext = Depends(get_request_context),
  db: AsyncSession = Depends(get_db),
) -> TwoFactorVerifyOut:
  result = await complete_challenge(
    db,
    response,
    ctx,
    code=payload.code,
    backup_code=payload.backupCode,
    trust_device=payload.trustDevice,
  )
  return TwoFactorVerifyOut(ok=True, usedBackupCode=result.consumed_backup_code, trustedDevice=payload.trustDevice)


@router.post("/clear-oauth")
async def clear_oauth(
  response: Response,
  ctx: RequestContext = Depends(get_request_context),
  db: AsyncSession = Depends(get_db),
) -> dict:
  # Walking away from an OAuth challenge abandons the sign-in it belongs to.
  if ctx.oauth_pending is not None and ctx.session is not None and ctx.requires_challenge:
    await db.execute(delete(DbSession).where(DbSession.id == ctx.session.id))
    await db.commit()
    clear_auth_cookies(response)
  else:
    clear_oauth_pending(response)
  return {"ok": True}


@router.post("/enable", response_model=TwoFactorEnableOut)
async def enable(
  payload: TwoFactorEnableIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> TwoFactorEnableOut:
  enrollment = await two_factor.enable(db, user, password=payload.password)
  return TwoFactorEnableOut(secret=enrollment.secret, totpURI=enrollment.uri, backupCodes=enrollment.backup_codes)


@router.post("/confirm")
async def confirm(
  payload: TwoFactorConfirmIn,
  response: Response,
  user: User = Depends(get_current_user),
  ctx: RequestContext = Depends(get_session_context),
  db: AsyncSession = Depends(get_db),
) -> dict:
  await two_factor.confirm(db, user, code=payload.code)
  # The session that just proved the new secret counts as verified.
  set_verified_marker(response, ctx.session.id)
  return {"ok": True}


@router.post("/disable")
async def disable(
  payload: TwoFactorDisableIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> dict:
  two_factor.check_password(user, payload.password)
  revoked = await two_factor.disable(db, user, actor_id=user.id)
  return {"ok": True, "revokedDevices": revoked}


@router.post("/backup-codes", response_model=BackupCodesOut)
async def regenerate_backup_codes(
  payload: BackupCodesIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> BackupCodesOut:
  codes = await two_factor.regenerate_backup_codes(db, user, code=payload.code)
  return BackupCodesOut(backupCodes=codes)
