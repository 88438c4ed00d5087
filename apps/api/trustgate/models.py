from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
  # SQLite hands back naive datetimes even for timezone-aware columns.
  if value.tzinfo is None:
    return value.replace(tzinfo=timezone.utc)
  return value.astimezone(timezone.utc)


def new_id() -> str:
  return str(uuid.uuid4())


class Base(DeclarativeBase):
  pass


class User(Base):
  __tablename__ = "users"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  email: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  password_hash: Mapped[str | None] = mapped_column(String, nullable=True)
  role: Mapped[str] = mapped_column(String, nullable=False, default="user")
  blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  two_factor_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Session(Base):
  __tablename__ = "sessions"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  login_method: Mapped[str] = mapped_column(String, nullable=False, default="password")
  provider: Mapped[str | None] = mapped_column(String, nullable=True)
  created_ip: Mapped[str | None] = mapped_column(String, nullable=True)
  user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  # Set while an OAuth sign-in still owes its second factor; past it the session is revoked.
  two_factor_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TwoFactorCredential(Base):
  __tablename__ = "two_factor_credentials"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  user_id: Mapped[str] = mapped_column(
    String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
  )
  secret_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
  backup_codes_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class TrustedDevice(Base):
  __tablename__ = "trusted_devices"
  __table_args__ = (UniqueConstraint("user_id", "device_id", name="ux_trusted_devices_user_device"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  device_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  device_name: Mapped[str] = mapped_column(String, nullable=False)
  user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
  ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  last_used: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class OAuthAccount(Base):
  __tablename__ = "oauth_accounts"
  __table_args__ = (UniqueConstraint("provider", "account_id", name="ux_oauth_accounts_provider_account"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
  provider: Mapped[str] = mapped_column(String, nullable=False)
  account_id: Mapped[str] = mapped_column(String, nullable=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class MagicLinkToken(Base):
  __tablename__ = "magic_link_tokens"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  token_hash: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  email: Mapped[str] = mapped_column(String, nullable=False, index=True)
  name: Mapped[str | None] = mapped_column(String, nullable=True)
  two_factor_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  created_ip: Mapped[str | None] = mapped_column(String, nullable=True)
  used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class AuditEvent(Base):
  __tablename__ = "audit_events"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
  payload: Mapped[dict[str, Any]] = mapped_column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
