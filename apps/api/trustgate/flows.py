"""Login flows that feed the second-factor gate.

Password, OAuth and magic-link sign-in differ only in how the challenge is
delivered. All of them resolve the requirement with `resolver.resolve` and
check codes with `verifier.verify_second_factor`.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from urllib.parse import urlencode

from fastapi import Request, Response
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate import trusted_devices
from trustgate.audit import write_audit
from trustgate.config import settings
from trustgate.context import RequestContext
from trustgate.cookies import clear_oauth_pending, set_oauth_pending, set_session_cookie, set_verified_marker
from trustgate.devices import DeviceFingerprint, fingerprint_from_request
from trustgate.gate import BLOCKED_PATH, CHALLENGE_PATH, HOME_PATH, LOGIN_PATH
from trustgate.models import MagicLinkToken, OAuthAccount, Session as DbSession, TrustedDevice, User, as_utc, utcnow
from trustgate.notifications.mailer import Mailer, magic_link_message
from trustgate.oauth.client import OAuthError, OAuthIdentity
from trustgate.resolver import load_credential, resolve, resolve_for_email
from trustgate.security import new_session_expires_at, oauth_pending_valid, token_hash, verify_password
from trustgate.verifier import VerificationResult, verify_second_factor

logger = logging.getLogger(__name__)

INVALID_CODE = "Invalid verification code"
MAGIC_LINK_LANDING_PATH = "/profile"
MAGIC_LINK_INVALID_PATH = f"{LOGIN_PATH}?error=invalid_link"
OAUTH_CHALLENGE_PATH = f"{CHALLENGE_PATH}?oauth=true"


class AuthFlowError(Exception):
  def __init__(
    self,
    message: str,
    *,
    status_code: int = 400,
    extra: dict[str, Any] | None = None,
    clear_cookies: bool = False,
  ) -> None:
    super().__init__(message)
    self.message = message
    self.status_code = status_code
    self.extra = extra or {}
    self.clear_cookies = clear_cookies


@dataclass(frozen=True)
class LoginOutcome:
  user: User
  session: DbSession
  device: DeviceFingerprint
  requires_two_factor: bool


@dataclass(frozen=True)
class MagicLinkOutcome:
  device: DeviceFingerprint
  sent: bool = False
  requires_two_factor: bool = False


def device_reference(device: DeviceFingerprint) -> dict[str, Any]:
  return {"requires2FA": True, "deviceId": device.device_id, "deviceName": device.device_name}


async def find_user_by_email(db: AsyncSession, email: str) -> User | None:
  res = await db.execute(select(User).where(User.email == (email or "").strip().lower()))
  return res.scalar_one_or_none()


async def set_two_factor_enabled(db: AsyncSession, user_id: str, enabled: bool) -> None:
  await db.execute(update(User).where(User.id == user_id).values(two_factor_enabled=enabled, updated_at=utcnow()))


async def create_session(
  db: AsyncSession,
  user: User,
  device: DeviceFingerprint,
  *,
  login_method: str,
  provider: str | None = None,
) -> DbSession:
  s = DbSession(
    user_id=user.id,
    login_method=login_method,
    provider=provider,
    created_ip=device.ip_address,
    user_agent=device.user_agent or None,
    created_at=utcnow(),
    expires_at=new_session_expires_at(),
  )
  db.add(s)
  await db.flush()
  return s


async def remember_device(db: AsyncSession, user: User, device: DeviceFingerprint) -> TrustedDevice:
  td = await trusted_devices.upsert(
    db,
    user_id=user.id,
    device_id=device.device_id,
    device_name=device.device_name,
    user_agent=device.user_agent or None,
    ip_address=device.ip_address,
  )
  await write_audit(
    db,
    event_type="2fa.device.trusted",
    entity_type="TrustedDevice",
    entity_id=td.id,
    actor_id=user.id,
    payload={"deviceName": td.device_name, "ip": td.ip_address},
  )
  return td


async def _record_failed_code(db: AsyncSession, user: User, device: DeviceFingerprint, *, flow: str) -> None:
  logger.warning("second factor rejected for user %s during %s from %s", user.id, flow, device.ip_address)
  await write_audit(
    db,
    event_type="2fa.challenge.failed",
    entity_type="User",
    entity_id=user.id,
    actor_id=user.id,
    payload={"flow": flow, "ip": device.ip_address},
  )
  await db.commit()


async def password_login(
  db: AsyncSession,
  request: Request,
  response: Response,
  *,
  email: str,
  password: str,
  code: str | None = None,
  backup_code: str | None = None,
  trust_device: bool = False,
) -> LoginOutcome:
  normalized_email = (email or "").strip().lower()
  device = fingerprint_from_request(request)
  u = await find_user_by_email(db, normalized_email)
  if not u or not verify_password(password or "", u.password_hash):
    await write_audit(
      db,
      event_type="auth.login.failed",
      entity_type="Auth",
      entity_id=None,
      payload={"email": normalized_email, "ip": device.ip_address},
    )
    await db.commit()
    raise AuthFlowError("Invalid credentials", status_code=401)
  if u.blocked:
    raise AuthFlowError("Account blocked", status_code=403)

  resolution = await resolve(db, u, device)
  if resolution.trusted_device is not None:
    await trusted_devices.touch(db, resolution.trusted_device)

  submitted = backup_code or code
  verified = False
  if resolution.requires_challenge and submitted:
    # Checked before any session exists: a wrong inline code leaves nothing behind.
    result = await verify_second_factor(db, resolution.credential, submitted)
    if not result.ok:
      await _record_failed_code(db, u, device, flow="password")
      raise AuthFlowError(INVALID_CODE, status_code=401)
    verified = True

  s = await create_session(db, u, device, login_method="password")
  if verified and trust_device:
    await remember_device(db, u, device)
  await write_audit(
    db,
    event_type="auth.login.success",
    entity_type="User",
    entity_id=u.id,
    actor_id=u.id,
    payload={"method": "password", "state": resolution.state.value, "secondFactor": verified, "ip": device.ip_address},
  )
  await db.commit()

  set_session_cookie(response, s)
  if verified:
    set_verified_marker(response, s.id)
  clear_oauth_pending(response)
  return LoginOutcome(user=u, session=s, device=device, requires_two_factor=resolution.requires_challenge and not verified)


async def complete_challenge(
  db: AsyncSession,
  response: Response,
  ctx: RequestContext,
  *,
  code: str | None = None,
  backup_code: str | None = None,
  trust_device: bool = False,
) -> VerificationResult:
  """Verify the second factor for an already signed-in session.

  A pending OAuth challenge cookie that is stale, forged or bound to another
  session ends the session outright; the user has to start over.
  """
  if not ctx.authenticated or ctx.session is None or ctx.user is None:
    raise AuthFlowError("Not authenticated", status_code=401, clear_cookies=True)
  user = ctx.user
  if user.blocked:
    raise AuthFlowError("Account blocked", status_code=403)

  if ctx.oauth_pending is not None and not oauth_pending_valid(ctx.oauth_pending, ctx.session.id):
    logger.warning("pending OAuth challenge for user %s expired or invalid; revoking session", user.id)
    await db.execute(delete(DbSession).where(DbSession.id == ctx.session.id))
    await write_audit(
      db,
      event_type="2fa.challenge.expired",
      entity_type="User",
      entity_id=user.id,
      actor_id=user.id,
      payload={"provider": ctx.oauth_provider},
    )
    await db.commit()
    raise AuthFlowError("Verification expired, please sign in again", status_code=401, clear_cookies=True)

  if not user.two_factor_enabled:
    raise AuthFlowError("Two-factor authentication is not enabled", status_code=400)

  credential = ctx.resolution.credential or await load_credential(db, user.id)
  result = await verify_second_factor(db, credential, backup_code or code)
  if not result.ok:
    await _record_failed_code(db, user, ctx.device, flow="oauth" if ctx.oauth_pending else "challenge")
    raise AuthFlowError(INVALID_CODE, status_code=400)

  if trust_device:
    await remember_device(db, user, ctx.device)
  if ctx.session.two_factor_deadline is not None:
    await db.execute(
      update(DbSession)
      .where(DbSession.id == ctx.session.id)
      .values(two_factor_deadline=None)
      .execution_options(synchronize_session=False)
    )
  await write_audit(
    db,
    event_type="2fa.challenge.passed",
    entity_type="User",
    entity_id=user.id,
    actor_id=user.id,
    payload={"backupCodeUsed": result.consumed_backup_code, "trustDevice": bool(trust_device)},
  )
  await db.commit()

  set_verified_marker(response, ctx.session.id)
  clear_oauth_pending(response)
  return result


async def _user_for_identity(db: AsyncSession, identity: OAuthIdentity) -> User:
  res = await db.execute(
    select(OAuthAccount).where(OAuthAccount.provider == identity.provider, OAuthAccount.account_id == identity.account_id)
  )
  link = res.scalar_one_or_none()
  if link is not None:
    ures = await db.execute(select(User).where(User.id == link.user_id))
    u = ures.scalar_one_or_none()
    if u is not None:
      return u

  u = await find_user_by_email(db, identity.email)
  if u is None:
    u = User(email=identity.email, name=identity.name, email_verified=identity.email_verified)
    db.add(u)
    await db.flush()
  elif not identity.email_verified:
    raise OAuthError(f"{identity.provider} email is not verified; refusing to link to an existing account")

  db.add(OAuthAccount(user_id=u.id, provider=identity.provider, account_id=identity.account_id))
  await db.flush()
  return u


async def oauth_sign_in(db: AsyncSession, request: Request, response: Response, identity: OAuthIdentity) -> str:
  """Finish an OAuth callback. Returns the path to redirect to."""
  u = await _user_for_identity(db, identity)
  device = fingerprint_from_request(request)
  if u.blocked:
    await write_audit(
      db,
      event_type="auth.login.blocked",
      entity_type="User",
      entity_id=u.id,
      actor_id=u.id,
      payload={"method": "oauth", "provider": identity.provider},
    )
    await db.commit()
    return BLOCKED_PATH

  s = await create_session(db, u, device, login_method="oauth", provider=identity.provider)
  resolution = await resolve(db, u, device)
  if resolution.requires_challenge:
    s.two_factor_deadline = utcnow() + timedelta(seconds=int(settings.oauth_challenge_ttl_seconds))
  if resolution.trusted_device is not None:
    await trusted_devices.touch(db, resolution.trusted_device)
  await write_audit(
    db,
    event_type="auth.login.success",
    entity_type="User",
    entity_id=u.id,
    actor_id=u.id,
    payload={"method": "oauth", "provider": identity.provider, "state": resolution.state.value, "ip": device.ip_address},
  )
  await db.commit()

  set_session_cookie(response, s)
  if resolution.requires_challenge:
    set_oauth_pending(response, s.id, identity.provider)
    return OAUTH_CHALLENGE_PATH
  clear_oauth_pending(response)
  return HOME_PATH


async def request_magic_link(
  db: AsyncSession,
  request: Request,
  mailer: Mailer,
  *,
  email: str,
  name: str | None = None,
  code: str | None = None,
  backup_code: str | None = None,
  trust_device: bool = False,
) -> MagicLinkOutcome:
  normalized_email = (email or "").strip().lower()
  if not normalized_email or "@" not in normalized_email:
    raise AuthFlowError("A valid email address is required", status_code=400)

  device = fingerprint_from_request(request)
  resolution = await resolve_for_email(db, normalized_email, device)
  u = resolution.user
  if u is not None and u.blocked:
    # Same answer as a real send so the address cannot be probed.
    logger.info("magic link suppressed for blocked user %s", u.id)
    return MagicLinkOutcome(device=device, sent=True)

  verified = False
  if resolution.requires_challenge and u is not None:
    submitted = backup_code or code
    if not submitted:
      return MagicLinkOutcome(device=device, requires_two_factor=True)
    result = await verify_second_factor(db, resolution.credential, submitted)
    if not result.ok:
      await _record_failed_code(db, u, device, flow="magic_link")
      raise AuthFlowError(INVALID_CODE, status_code=400, extra=device_reference(device))
    verified = True

  raw = secrets.token_urlsafe(32)
  db.add(
    MagicLinkToken(
      token_hash=token_hash(raw),
      email=normalized_email,
      name=(name or "").strip() or None,
      two_factor_verified=verified,
      created_ip=device.ip_address,
      expires_at=utcnow() + timedelta(seconds=max(1, int(settings.magic_link_ttl_seconds))),
    )
  )
  await db.flush()

  # Nothing is committed until the mail is out: a failed send leaves the backup
  # code unspent and the device untrusted.
  url = f"{settings.base_url.rstrip('/')}/api/auth/magic-link/verify?{urlencode({'token': raw})}"
  try:
    await mailer.send(magic_link_message(to=normalized_email, url=url))
  except OSError as exc:
    await db.rollback()
    logger.exception("failed to send magic link to %s", normalized_email)
    raise AuthFlowError("Failed to send magic link", status_code=500) from exc

  if verified and trust_device and u is not None:
    await remember_device(db, u, device)
  await db.commit()
  return MagicLinkOutcome(device=device, sent=True)


async def consume_magic_link(db: AsyncSession, request: Request, response: Response, token: str) -> str:
  """Redeem a magic link. Returns the path to redirect to."""
  res = await db.execute(select(MagicLinkToken).where(MagicLinkToken.token_hash == token_hash(token or "")))
  row = res.scalar_one_or_none()
  now = utcnow()
  if row is None or row.used_at is not None or as_utc(row.expires_at) <= now:
    return MAGIC_LINK_INVALID_PATH

  claimed = await db.execute(
    update(MagicLinkToken)
    .where(MagicLinkToken.id == row.id, MagicLinkToken.used_at.is_(None))
    .values(used_at=now)
    .execution_options(synchronize_session=False)
  )
  if not claimed.rowcount:
    return MAGIC_LINK_INVALID_PATH

  u = await find_user_by_email(db, row.email)
  if u is None:
    u = User(email=row.email, name=row.name or row.email.split("@")[0], email_verified=True)
    db.add(u)
    await db.flush()
  elif u.blocked:
    await db.commit()
    return BLOCKED_PATH
  else:
    u.email_verified = True

  device = fingerprint_from_request(request)
  s = await create_session(db, u, device, login_method="magic_link")
  await write_audit(
    db,
    event_type="auth.login.success",
    entity_type="User",
    entity_id=u.id,
    actor_id=u.id,
    payload={"method": "magic_link", "secondFactor": row.two_factor_verified, "ip": device.ip_address},
  )
  await db.commit()

  set_session_cookie(response, s)
  if row.two_factor_verified:
    set_verified_marker(response, s.id)
  clear_oauth_pending(response)
  return MAGIC_LINK_LANDING_PATH
