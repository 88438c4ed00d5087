from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import struct
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import quote

from cryptography.fernet import Fernet, InvalidToken
from passlib.context import CryptContext

from trustgate.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SESSION_COOKIE_NAME = "tg_session"
VERIFIED_COOKIE_NAME = "2fa_verified"
OAUTH_PENDING_COOKIE_NAME = "oauth_2fa_required"
OAUTH_PROVIDER_COOKIE_NAME = "oauth_provider"
OAUTH_STATE_COOKIE_NAME = "oauth_state"

TOTP_DIGITS = 6
TOTP_STEP_SECONDS = 30


class CredentialDecryptError(RuntimeError):
  pass


def hash_password(password: str) -> str:
  return pwd_context.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
  if not password_hash:
    return False
  return pwd_context.verify(password, password_hash)


def _fernet() -> Fernet:
  key = settings.fernet_key
  # accept raw strings as well as proper Fernet keys
  try:
    base64.urlsafe_b64decode(key.encode("utf-8"))
    return Fernet(key.encode("utf-8"))
  except Exception:
    b = base64.urlsafe_b64encode(key.encode("utf-8").ljust(32, b"\0")[:32])
    return Fernet(b)


def encrypt_secret(value: str) -> str:
  return _fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_secret(value: str) -> str:
  try:
    return _fernet().decrypt(value.encode("utf-8")).decode("utf-8")
  except InvalidToken as exc:
    raise CredentialDecryptError("Stored credential cannot be decrypted with the current key") from exc


def new_session_expires_at() -> datetime:
  return datetime.now(timezone.utc) + timedelta(days=max(1, int(settings.session_ttl_days)))


def _mac(*parts: str) -> str:
  key = (settings.app_secret or "").encode("utf-8")
  msg = "|".join(parts).encode("utf-8")
  return hmac.new(key, msg, hashlib.sha256).hexdigest()


def token_hash(token: str) -> str:
  return _mac("token", (token or "").strip())


# --- TOTP (RFC 6238, HMAC-SHA1) ---


def totp_new_secret() -> str:
  # RFC 3548 base32 without padding; 20 bytes -> 32 chars
  return base64.b32encode(secrets.token_bytes(20)).decode("utf-8").replace("=", "")


def _totp_counter(now: int | None = None, step_seconds: int = TOTP_STEP_SECONDS) -> int:
  ts = int(now if now is not None else time.time())
  return ts // step_seconds


def totp_code(secret_b32: str, *, now: int | None = None, digits: int = TOTP_DIGITS, step_seconds: int = TOTP_STEP_SECONDS) -> str:
  s = secret_b32.strip().replace(" ", "").upper()
  pad = "=" * ((8 - (len(s) % 8)) % 8)
  key = base64.b32decode((s + pad).encode("utf-8"))
  counter = _totp_counter(now, step_seconds)
  msg = struct.pack(">Q", counter)
  digest = hmac.new(key, msg, hashlib.sha1).digest()
  offset = digest[-1] & 0x0F
  binary = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
  return str(binary % (10**digits)).zfill(digits)


def totp_verify(secret_b32: str, code: str, *, window: int | None = None, now: int | None = None) -> bool:
  c = (code or "").strip().replace(" ", "")
  if len(c) != TOTP_DIGITS or not c.isdigit():
    return False
  w_max = int(settings.totp_window if window is None else window)
  ts = int(now if now is not None else time.time())
  for w in range(-w_max, w_max + 1):
    if secrets.compare_digest(totp_code(secret_b32, now=ts + w * TOTP_STEP_SECONDS), c):
      return True
  return False


def totp_uri(secret_b32: str, *, account: str, issuer: str | None = None) -> str:
  iss = issuer or settings.totp_issuer
  label = quote(f"{iss}:{account}")
  return (
    f"otpauth://totp/{label}?secret={secret_b32}&issuer={quote(iss)}"
    f"&algorithm=SHA1&digits={TOTP_DIGITS}&period={TOTP_STEP_SECONDS}"
  )


# --- backup codes ---


def backup_codes_generate(n: int | None = None) -> list[str]:
  count = max(1, int(settings.backup_code_count if n is None else n))
  return [secrets.token_hex(4).upper() for _ in range(count)]


def backup_code_normalize(code: str) -> str:
  # Dashes are dropped along with case and whitespace so "AB12-CD34" matches the issued "AB12CD34".
  return "".join(ch for ch in (code or "").lower() if not ch.isspace() and ch != "-")


def backup_code_hash(code: str) -> str:
  return hashlib.sha256(backup_code_normalize(code).encode("utf-8")).hexdigest()


def seal_backup_codes(hashes: list[str]) -> str:
  return encrypt_secret(json.dumps(list(hashes)))


def open_backup_codes(sealed: str | None) -> list[str]:
  if not sealed:
    return []
  raw = json.loads(decrypt_secret(sealed))
  return [str(h) for h in raw] if isinstance(raw, list) else []


# --- signed cookie values ---


def verification_marker(session_id: str) -> str:
  return _mac("2fa-verified", session_id)


def verification_marker_valid(value: str | None, session_id: str | None) -> bool:
  if not value or not session_id:
    return False
  return secrets.compare_digest(value, verification_marker(session_id))


def oauth_pending_value(session_id: str, *, issued_at: int | None = None) -> str:
  issued = int(issued_at if issued_at is not None else time.time())
  return f"{issued}.{_mac('oauth-pending', session_id, str(issued))}"


def oauth_pending_valid(value: str | None, session_id: str | None, *, now: int | None = None) -> bool:
  if not value or not session_id or "." not in value:
    return False
  issued_raw, sig = value.split(".", 1)
  if not issued_raw.isdigit():
    return False
  if not secrets.compare_digest(sig, _mac("oauth-pending", session_id, issued_raw)):
    return False
  ts = int(now if now is not None else time.time())
  return 0 <= ts - int(issued_raw) <= int(settings.oauth_challenge_ttl_seconds)


def oauth_state_new(provider: str) -> str:
  nonce = secrets.token_urlsafe(16)
  return f"{provider}.{nonce}.{_mac('oauth-state', provider, nonce)}"


def oauth_state_valid(value: str | None, provider: str) -> bool:
  if not value or value.count(".") < 2:
    return False
  p, nonce, sig = value.split(".", 2)
  if p != provider:
    return False
  return secrets.compare_digest(sig, _mac("oauth-state", provider, nonce))
