from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from trustgate.models import TwoFactorCredential, utcnow
from trustgate.security import backup_code_hash, backup_code_normalize, decrypt_secret, open_backup_codes, seal_backup_codes, totp_verify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
  ok: bool
  consumed_backup_code: bool = False


FAILED = VerificationResult(ok=False)


async def _consume_backup_code(db: AsyncSession, credential: TwoFactorCredential, code: str) -> bool:
  sealed = credential.backup_codes_encrypted
  hashes = open_backup_codes(sealed)
  h = backup_code_hash(code)
  if h not in hashes:
    return False
  remaining = list(hashes)
  remaining.remove(h)
  new_sealed = seal_backup_codes(remaining)
  # Compare-and-swap on the sealed list so a concurrent use of the same code wins at most once.
  res = await db.execute(
    update(TwoFactorCredential)
    .where(TwoFactorCredential.id == credential.id, TwoFactorCredential.backup_codes_encrypted == sealed)
    .values(backup_codes_encrypted=new_sealed, updated_at=utcnow())
    .execution_options(synchronize_session=False)
  )
  if not res.rowcount:
    logger.warning("backup code for user %s was consumed concurrently", credential.user_id)
    return False
  credential.backup_codes_encrypted = new_sealed
  return True


async def verify_second_factor(
  db: AsyncSession,
  credential: TwoFactorCredential | None,
  code: str | None,
  *,
  now: int | None = None,
) -> VerificationResult:
  """Check a submitted code against a user's backup codes, then their TOTP secret.

  Backup codes are tried first and are single use. TOTP codes are accepted
  within the configured step window and have no side effect. Anything else is
  a failure; there is no format-based fallback.
  """
  code = code or ""
  if credential is None or not credential.secret_encrypted:
    return FAILED
  if not backup_code_normalize(code):
    return FAILED

  if await _consume_backup_code(db, credential, code):
    return VerificationResult(ok=True, consumed_backup_code=True)

  secret = decrypt_secret(credential.secret_encrypted)
  if totp_verify(secret, code, now=now):
    return VerificationResult(ok=True)
  return FAILED


def remaining_backup_codes(credential: TwoFactorCredential) -> int:
  return len(open_backup_codes(credential.backup_codes_encrypted))
