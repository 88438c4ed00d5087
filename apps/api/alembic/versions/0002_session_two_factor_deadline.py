"""add sessions.two_factor_deadline

Revision ID: 0002_session_two_factor_deadline
Revises: 0001_init
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_session_two_factor_deadline"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
  op.add_column("sessions", sa.Column("two_factor_deadline", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
  op.drop_column("sessions", "two_factor_deadline")
