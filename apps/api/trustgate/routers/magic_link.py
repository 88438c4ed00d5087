from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate.deps import get_db, get_mailer
from trustgate.flows import MAGIC_LINK_LANDING_PATH, consume_magic_link, request_magic_link
from trustgate.notifications.mailer import Mailer
from trustgate.schemas import MagicLinkIn, MagicLinkOut

router = APIRouter(prefix="/api/auth/magic-link", tags=["magic-link"])


@router.post("", response_model=MagicLinkOut, response_model_exclude_none=True)
async def send_magic_link(
  payload: MagicLinkIn,
  request: Request,
  db: AsyncSession = Depends(get_db),
  mailer: Mailer = Depends(get_mailer),
) -> MagicLinkOut:
  outcome = await request_magic_link(
    db,
    request,
    mailer,
    email=payload.email,
    name=payload.name,
    code=payload.code,
    backup_code=payload.backupCode,
    trust_device=payload.trustDevice,
  )
  if outcome.requires_two_factor:
    return MagicLinkOut(sent=False, requires2FA=True, deviceId=outcome.device.device_id, deviceName=outcome.device.device_name)
  return MagicLinkOut(sent=True)


@router.get("/verify")
async def verify_magic_link(request: Request, token: str = "", db: AsyncSession = Depends(get_db)) -> RedirectResponse:
  response = RedirectResponse(url=MAGIC_LINK_LANDING_PATH, status_code=302)
  response.headers["location"] = await consume_magic_link(db, request, response, token)
  return response
