"""create_verification_tables

Revision ID: a1f3c9d2e7b4
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


def table_exists(table_name: str) -> bool:
    """Check whether a table already exists (init_db may have created it)."""
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    return table_name in inspector.get_table_names()


# revision identifiers, used by Alembic.
revision: str = 'a1f3c9d2e7b4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    if not table_exists("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("email_verified_at", sa.DateTime(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_users_email", "users", ["email"], unique=True)

    if not table_exists("pending_registrations"):
        op.create_table(
            "pending_registrations",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_pending_registrations_email", "pending_registrations", ["email"], unique=True)
        op.create_index("ix_pending_registrations_expires_at", "pending_registrations", ["expires_at"])

    if not table_exists("verification_codes"):
        op.create_table(
            "verification_codes",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("user_id", sa.String(length=36), nullable=True),
            sa.Column("target", sa.String(length=255), nullable=True),
            sa.Column("type", sa.String(length=32), nullable=False),
            sa.Column("code_hash", sa.String(length=255), nullable=False),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("verified_at", sa.DateTime(), nullable=True),
            sa.Column("invalidated", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_verification_codes_email_type", "verification_codes", ["email", "type"])
        op.create_index("ix_verification_codes_user_type", "verification_codes", ["user_id", "type"])
        op.create_index("ix_verification_codes_created_at", "verification_codes", ["created_at"])

    if not table_exists("rate_limit_attempts"):
        op.create_table(
            "rate_limit_attempts",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("identifier_type", sa.String(length=16), nullable=False),
            sa.Column("identifier", sa.String(length=255), nullable=False),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("window_start", sa.DateTime(), nullable=False),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("identifier_type", "identifier", name="uq_rate_limit_identifier"),
        )

    if not table_exists("account_lockouts"):
        op.create_table(
            "account_lockouts",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("identifier_type", sa.String(length=16), nullable=False),
            sa.Column("identifier", sa.String(length=255), nullable=False),
            sa.Column("reason", sa.String(length=500), nullable=False),
            sa.Column("locked_at", sa.DateTime(), nullable=False),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            sa.Column("unlocked", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("unlocked_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("identifier_type", "identifier", name="uq_account_lockout_identifier"),
        )
        op.create_index("ix_account_lockouts_expires_at", "account_lockouts", ["expires_at"])

    if not table_exists("security_logs"):
        op.create_table(
            "security_logs",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("user_id", sa.String(length=36), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("event_type", sa.String(length=32), nullable=False),
            sa.Column("ip_address", sa.String(length=45), nullable=True),
            sa.Column("user_agent", sa.String(length=255), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_security_logs_user_id", "security_logs", ["user_id"])
        op.create_index("ix_security_logs_email", "security_logs", ["email"])
        op.create_index("ix_security_logs_event_type", "security_logs", ["event_type"])
        op.create_index("ix_security_logs_created_at", "security_logs", ["created_at"])


def downgrade() -> None:
    for table_name in (
        "security_logs",
        "account_lockouts",
        "rate_limit_attempts",
        "verification_codes",
        "pending_registrations",
        "users",
    ):
        if table_exists(table_name):
            op.drop_table(table_name)
