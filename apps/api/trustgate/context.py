from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate.audit import write_audit
from trustgate.devices import DeviceFingerprint, fingerprint_from_request
from trustgate.models import Session as DbSession, User, as_utc, utcnow
from trustgate.resolver import Resolution, TwoFactorState, resolve
from trustgate.security import (
  OAUTH_PENDING_COOKIE_NAME,
  OAUTH_PROVIDER_COOKIE_NAME,
  SESSION_COOKIE_NAME,
  VERIFIED_COOKIE_NAME,
  verification_marker_valid,
)

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
  """Everything a 2FA decision needs about one request, loaded once."""

  session: DbSession | None
  user: User | None
  device: DeviceFingerprint
  marker_present: bool
  oauth_pending: str | None
  oauth_provider: str | None
  resolution: Resolution

  @property
  def authenticated(self) -> bool:
    return self.session is not None and self.user is not None

  @property
  def is_admin(self) -> bool:
    return self.user is not None and self.user.role == "admin"

  @property
  def blocked(self) -> bool:
    return self.user is not None and bool(self.user.blocked)

  @property
  def requires_challenge(self) -> bool:
    return self.authenticated and self.resolution.requires_challenge


async def load_session(db: AsyncSession, session_id: str | None) -> tuple[DbSession | None, User | None]:
  if not session_id:
    return None, None
  res = await db.execute(select(DbSession).where(DbSession.id == session_id))
  s = res.scalar_one_or_none()
  if s is None or as_utc(s.expires_at) < utcnow():
    return None, None
  ures = await db.execute(select(User).where(User.id == s.user_id))
  u = ures.scalar_one_or_none()
  if u is None:
    return None, None
  return s, u


def challenge_overdue(s: DbSession, resolution: Resolution) -> bool:
  if s.two_factor_deadline is None or not resolution.requires_challenge:
    return False
  return as_utc(s.two_factor_deadline) <= utcnow()


async def revoke_overdue_session(db: AsyncSession, s: DbSession, u: User) -> None:
  logger.warning("pending second factor for user %s not completed in time; revoking session", u.id)
  await db.execute(delete(DbSession).where(DbSession.id == s.id))
  await write_audit(
    db,
    event_type="2fa.challenge.expired",
    entity_type="User",
    entity_id=u.id,
    actor_id=u.id,
    payload={"provider": s.provider},
  )
  await db.commit()


async def load_request_context(request: Request, db: AsyncSession) -> RequestContext:
  s, u = await load_session(db, request.cookies.get(SESSION_COOKIE_NAME))
  device = fingerprint_from_request(request)
  marker = verification_marker_valid(request.cookies.get(VERIFIED_COOKIE_NAME), s.id if s else None)
  resolution = Resolution(TwoFactorState.NOT_REQUIRED)
  if s is not None and u is not None:
    resolution = await resolve(db, u, device, marker_present=marker)
    # The deadline holds whether or not the browser still sends the pending cookie.
    if challenge_overdue(s, resolution):
      await revoke_overdue_session(db, s, u)
      s, u, marker = None, None, False
      resolution = Resolution(TwoFactorState.NOT_REQUIRED)
  return RequestContext(
    session=s,
    user=u,
    device=device,
    marker_present=marker,
    oauth_pending=request.cookies.get(OAUTH_PENDING_COOKIE_NAME),
    oauth_provider=request.cookies.get(OAUTH_PROVIDER_COOKIE_NAME),
    resolution=resolution,
  )
