"""Decide whether a user must present a second factor right now.

The decision is made fresh at every call site from persisted state (user
flag, credential, trusted devices) and the request's own cookies. Nothing is
cached between requests.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate import trusted_devices
from trustgate.devices import DeviceFingerprint
from trustgate.models import TrustedDevice, TwoFactorCredential, User

logger = logging.getLogger(__name__)


class TwoFactorState(str, enum.Enum):
  NOT_REQUIRED = "not_required"
  REQUIRED_UNVERIFIED = "required_unverified"
  VERIFIED_THIS_SESSION = "verified_this_session"
  SETUP_INCOMPLETE = "setup_incomplete"


@dataclass(frozen=True)
class Resolution:
  state: TwoFactorState
  user: User | None = None
  credential: TwoFactorCredential | None = None
  trusted_device: TrustedDevice | None = None

  @property
  def requires_challenge(self) -> bool:
    return self.state is TwoFactorState.REQUIRED_UNVERIFIED


async def load_credential(db: AsyncSession, user_id: str) -> TwoFactorCredential | None:
  res = await db.execute(select(TwoFactorCredential).where(TwoFactorCredential.user_id == user_id))
  return res.scalar_one_or_none()


async def resolve(
  db: AsyncSession,
  user: User | None,
  device: DeviceFingerprint,
  *,
  marker_present: bool = False,
) -> Resolution:
  if user is None or not user.two_factor_enabled:
    return Resolution(TwoFactorState.NOT_REQUIRED, user=user)

  credential = await load_credential(db, user.id)
  if credential is None or not credential.secret_encrypted:
    logger.warning("2FA enabled for user %s but no usable credential exists; not enforcing", user.id)
    return Resolution(TwoFactorState.SETUP_INCOMPLETE, user=user)

  td = await trusted_devices.find(db, user.id, device.device_id)
  if td is not None:
    return Resolution(TwoFactorState.NOT_REQUIRED, user=user, credential=credential, trusted_device=td)

  if marker_present:
    return Resolution(TwoFactorState.VERIFIED_THIS_SESSION, user=user, credential=credential)

  return Resolution(TwoFactorState.REQUIRED_UNVERIFIED, user=user, credential=credential)


async def resolve_for_email(db: AsyncSession, email: str, device: DeviceFingerprint) -> Resolution:
  # An unknown address resolves exactly like a user without 2FA.
  normalized = (email or "").strip().lower()
  res = await db.execute(select(User).where(User.email == normalized))
  u = res.scalar_one_or_none()
  if u is None:
    return Resolution(TwoFactorState.NOT_REQUIRED)
  return await resolve(db, u, device)
