from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

BACKUP_CODE_HINT = "One-time backup code. Case, whitespace and dashes are ignored."


class UserOut(BaseModel):
  id: str
  email: str
  name: str
  role: Literal["admin", "user"]
  emailVerified: bool = False
  twoFactorEnabled: bool = False
  blocked: bool = False


class AdminUserOut(UserOut):
  createdAt: datetime
  trustedDevices: int = 0


class LoginIn(BaseModel):
  email: str
  password: str
  code: str | None = None
  backupCode: str | None = Field(default=None, description=BACKUP_CODE_HINT)
  trustDevice: bool = False


class LoginOut(BaseModel):
  requires2FA: bool = False
  deviceId: str | None = None
  deviceName: str | None = None
  user: UserOut | None = None


class MagicLinkIn(BaseModel):
  email: str
  name: str | None = Field(default=None, max_length=200)
  code: str | None = None
  backupCode: str | None = Field(default=None, description=BACKUP_CODE_HINT)
  trustDevice: bool = False


class MagicLinkOut(BaseModel):
  sent: bool = False
  requires2FA: bool = False
  deviceId: str | None = None
  deviceName: str | None = None


class TwoFactorCheckIn(BaseModel):
  email: str


class TwoFactorCheckOut(BaseModel):
  requires2FA: bool
  deviceId: str | None = None
  deviceName: str | None = None


class TwoFactorStatusOut(BaseModel):
  requires2FA: bool
  state: str
  oauthPending: bool = False
  provider: str | None = None
  trustedDevice: bool = False


class TwoFactorVerifyIn(BaseModel):
  code: str | None = None
  backupCode: str | None = Field(default=None, description=BACKUP_CODE_HINT)
  trustDevice: bool = False


class TwoFactorVerifyOut(BaseModel):
  ok: bool = True
  usedBackupCode: bool = False
  trustedDevice: bool = False


class TwoFactorEnableIn(BaseModel):
  password: str | None = None


class TwoFactorEnableOut(BaseModel):
  secret: str
  totpURI: str
  backupCodes: list[str]


class TwoFactorConfirmIn(BaseModel):
  code: str


class TwoFactorDisableIn(BaseModel):
  password: str | None = None


class BackupCodesIn(BaseModel):
  code: str


class BackupCodesOut(BaseModel):
  backupCodes: list[str]


class TrustedDeviceOut(BaseModel):
  id: str
  deviceId: str
  deviceName: str
  userAgent: str | None = None
  ipAddress: str | None = None
  createdAt: datetime
  lastUsed: datetime
  current: bool = False


class RevokedOut(BaseModel):
  ok: bool = True
  revoked: int = 0


class AuditOut(BaseModel):
  id: str
  actorId: str | None = None
  eventType: str
  entityType: str
  entityId: str | None = None
  payload: dict[str, Any]
  createdAt: datetime


class DebugTwoFactorOut(BaseModel):
  userId: str | None = None
  sessionId: str | None = None
  loginMethod: str | None = None
  twoFactorEnabled: bool = False
  hasCredential: bool = False
  backupCodesRemaining: int = 0
  state: str
  requires2FA: bool
  markerPresent: bool = False
  oauthPending: bool = False
  oauthPendingValid: bool = False
  deviceId: str
  deviceName: str
  trustedForUser: bool = False
  # Set when this fingerprint is trusted, but only for some other user.
  trustedForOtherUser: bool = False
