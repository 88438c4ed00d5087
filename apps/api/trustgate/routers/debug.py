from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate import trusted_devices
from trustgate.context import RequestContext
from trustgate.deps import get_db, get_request_context, require_admin
from trustgate.models import User
from trustgate.resolver import load_credential
from trustgate.schemas import DebugTwoFactorOut
from trustgate.security import oauth_pending_valid
from trustgate.verifier import remaining_backup_codes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/debug", tags=["debug"])


@router.get("/2fa-status", response_model=DebugTwoFactorOut)
async def two_factor_status(
  admin: User = Depends(require_admin),
  ctx: RequestContext = Depends(get_request_context),
  db: AsyncSession = Depends(get_db),
) -> DebugTwoFactorOut:
  credential = ctx.resolution.credential or await load_credential(db, admin.id)
  own = await trusted_devices.find(db, admin.id, ctx.device.device_id)
  latest = await trusted_devices.find_by_device_id(db, ctx.device.device_id)
  cross_user = own is None and latest is not None and latest.user_id != admin.id
  if cross_user:
    logger.warning("device fingerprint %s is trusted for another user (%s)", ctx.device.device_id, latest.user_id)

  return DebugTwoFactorOut(
    userId=admin.id,
    sessionId=ctx.session.id if ctx.session else None,
    loginMethod=ctx.session.login_method if ctx.session else None,
    twoFactorEnabled=bool(admin.two_factor_enabled),
    hasCredential=credential is not None,
    backupCodesRemaining=remaining_backup_codes(credential) if credential else 0,
    state=ctx.resolution.state.value,
    requires2FA=ctx.requires_challenge,
    markerPresent=ctx.marker_present,
    oauthPending=ctx.oauth_pending is not None,
    oauthPendingValid=oauth_pending_valid(ctx.oauth_pending, ctx.session.id if ctx.session else None),
    deviceId=ctx.device.device_id,
    deviceName=ctx.device.device_name,
    trustedForUser=own is not None,
    trustedForOtherUser=cross_user,
  )
