"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  op.create_table(
    "users",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("email", sa.String(), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("password_hash", sa.String(), nullable=True),
    sa.Column("role", sa.String(), nullable=False, server_default="user"),
    sa.Column("blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("two_factor_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_users_email", "users", ["email"], unique=True)

  op.create_table(
    "sessions",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("login_method", sa.String(), nullable=False),
    sa.Column("provider", sa.String(), nullable=True),
    sa.Column("created_ip", sa.String(), nullable=True),
    sa.Column("user_agent", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_sessions_user_id", "sessions", ["user_id"], unique=False)

  op.create_table(
    "two_factor_credentials",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("secret_encrypted", sa.Text(), nullable=False),
    sa.Column("backup_codes_encrypted", sa.Text(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_two_factor_credentials_user_id", "two_factor_credentials", ["user_id"], unique=True)

  op.create_table(
    "trusted_devices",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("device_id", sa.String(), nullable=False),
    sa.Column("device_name", sa.String(), nullable=False),
    sa.Column("user_agent", sa.String(), nullable=True),
    sa.Column("ip_address", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("last_used", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("user_id", "device_id", name="ux_trusted_devices_user_device"),
  )
  op.create_index("ix_trusted_devices_user_id", "trusted_devices", ["user_id"], unique=False)
  op.create_index("ix_trusted_devices_device_id", "trusted_devices", ["device_id"], unique=False)

  op.create_table(
    "oauth_accounts",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("provider", sa.String(), nullable=False),
    sa.Column("account_id", sa.String(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("provider", "account_id", name="ux_oauth_accounts_provider_account"),
  )
  op.create_index("ix_oauth_accounts_user_id", "oauth_accounts", ["user_id"], unique=False)

  op.create_table(
    "magic_link_tokens",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("token_hash", sa.String(), nullable=False),
    sa.Column("email", sa.String(), nullable=False),
    sa.Column("name", sa.String(), nullable=True),
    sa.Column("two_factor_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("created_ip", sa.String(), nullable=True),
    sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_magic_link_tokens_token_hash", "magic_link_tokens", ["token_hash"], unique=True)
  op.create_index("ix_magic_link_tokens_email", "magic_link_tokens", ["email"], unique=False)

  op.create_table(
    "audit_events",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("actor_id", sa.String(length=36), nullable=True),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("entity_type", sa.String(), nullable=False),
    sa.Column("entity_id", sa.String(), nullable=True),
    sa.Column("payload", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_audit_events_actor_id", "audit_events", ["actor_id"], unique=False)
  op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"], unique=False)


def downgrade() -> None:
  op.drop_table("audit_events")
  op.drop_table("magic_link_tokens")
  op.drop_table("oauth_accounts")
  op.drop_table("trusted_devices")
  op.drop_table("two_factor_credentials")
  op.drop_table("sessions")
  op.drop_table("users")
