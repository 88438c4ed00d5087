from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate import trusted_devices
from trustgate.audit import write_audit
from trustgate.flows import INVALID_CODE, AuthFlowError, set_two_factor_enabled
from trustgate.models import TwoFactorCredential, User
from trustgate.resolver import load_credential
from trustgate.security import (
  backup_code_hash,
  backup_codes_generate,
  decrypt_secret,
  encrypt_secret,
  seal_backup_codes,
  totp_new_secret,
  totp_uri,
  totp_verify,
  verify_password,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Enrollment:
  secret: str
  uri: str
  backup_codes: list[str]


def check_password(user: User, password: str | None) -> None:
  # Accounts created through OAuth or a magic link have no password to re-enter.
  if user.password_hash is None:
    return
  if not verify_password(password or "", user.password_hash):
    raise AuthFlowError("Invalid password", status_code=401)


async def enable(db: AsyncSession, user: User, *, password: str | None) -> Enrollment:
  check_password(user, password)
  if user.two_factor_enabled:
    raise AuthFlowError("Two-factor authentication is already enabled", status_code=400)

  secret = totp_new_secret()
  codes = backup_codes_generate()
  # An unconfirmed credential from an earlier attempt is replaced.
  await db.execute(delete(TwoFactorCredential).where(TwoFactorCredential.user_id == user.id))
  db.add(
    TwoFactorCredential(
      user_id=user.id,
      secret_encrypted=encrypt_secret(secret),
      backup_codes_encrypted=seal_backup_codes([backup_code_hash(c) for c in codes]),
    )
  )
  await write_audit(db, event_type="2fa.enable.started", entity_type="User", entity_id=user.id, actor_id=user.id)
  await db.commit()
  return Enrollment(secret=secret, uri=totp_uri(secret, account=user.email), backup_codes=codes)


async def confirm(db: AsyncSession, user: User, *, code: str) -> None:
  if user.two_factor_enabled:
    raise AuthFlowError("Two-factor authentication is already enabled", status_code=400)
  credential = await load_credential(db, user.id)
  if credential is None:
    raise AuthFlowError("Start two-factor setup first", status_code=400)
  if not totp_verify(decrypt_secret(credential.secret_encrypted), code):
    raise AuthFlowError(INVALID_CODE, status_code=400)

  await set_two_factor_enabled(db, user.id, True)
  await write_audit(db, event_type="2fa.enabled", entity_type="User", entity_id=user.id, actor_id=user.id)
  await db.commit()


async def disable(db: AsyncSession, user: User, *, actor_id: str) -> int:
  """Turn 2FA off and forget every device the user trusted.

  The credential delete, the device revocation and the flag change commit
  together; a failure in any of them leaves 2FA fully enabled.
  """
  await db.execute(delete(TwoFactorCredential).where(TwoFactorCredential.user_id == user.id))
  revoked = await trusted_devices.remove_all(db, user.id)
  await set_two_factor_enabled(db, user.id, False)
  await write_audit(
    db,
    event_type="2fa.disabled",
    entity_type="User",
    entity_id=user.id,
    actor_id=actor_id,
    payload={"revokedDevices": revoked, "byAdmin": actor_id != user.id},
  )
  await db.commit()
  logger.info("2FA disabled for user %s by %s", user.id, actor_id)
  return revoked


async def regenerate_backup_codes(db: AsyncSession, user: User, *, code: str) -> list[str]:
  credential = await load_credential(db, user.id)
  if not user.two_factor_enabled or credential is None:
    raise AuthFlowError("Two-factor authentication is not enabled", status_code=400)
  if not totp_verify(decrypt_secret(credential.secret_encrypted), code):
    raise AuthFlowError(INVALID_CODE, status_code=400)

  codes = backup_codes_generate()
  credential.backup_codes_encrypted = seal_backup_codes([backup_code_hash(c) for c in codes])
  await write_audit(db, event_type="2fa.backup_codes.regenerated", entity_type="User", entity_id=user.id, actor_id=user.id)
  await db.commit()
  return codes
