"""create invites and invite audit log tables

Revision ID: b7c8d9e0f1a2
Revises:
Create Date: 2026-10-18 12:00:00.000000

This migration:
1. Creates the invite_role and invite_status enum types
2. Creates the invites table with a CHECK constraint tying accepted_at and
   accepted_by to the ACCEPTED status
3. Creates a unique partial index so an email can hold at most one PENDING
   invite; concurrent creates for the same email fail on insert
4. Creates the append-only invite_audit_log table
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "b7c8d9e0f1a2"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

INVITE_ROLE_VALUES = ("TEACHER", "STUDENT")
INVITE_STATUS_VALUES = ("PENDING", "ACCEPTED", "EXPIRED", "CANCELLED")


def upgrade() -> None:
    """Create invites and invite_audit_log."""
    invite_role_enum = postgresql.ENUM(*INVITE_ROLE_VALUES, name="invite_role", create_type=False)
    invite_status_enum = postgresql.ENUM(
        *INVITE_STATUS_VALUES, name="invite_status", create_type=False
    )
    invite_role_enum.create(op.get_bind(), checkfirst=True)
    invite_status_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "invites",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", invite_role_enum, nullable=False),
        sa.Column("status", invite_status_enum, nullable=False, server_default="PENDING"),
        sa.Column("invited_by", sa.String(length=255), nullable=False),
        sa.Column("token", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_by", sa.String(length=255), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(length=255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token", name="uq_invites_token"),
        sa.CheckConstraint(
            "(status = 'ACCEPTED' AND accepted_at IS NOT NULL AND accepted_by IS NOT NULL) "
            "OR (status <> 'ACCEPTED' AND accepted_at IS NULL AND accepted_by IS NULL)",
            name="ck_invites_accepted_fields",
        ),
    )

    op.create_index("ix_invites_email", "invites", ["email"], unique=False)
    # Supports the expiry sweep: pending invites ordered by expiry
    op.create_index("ix_invites_status_expires_at", "invites", ["status", "expires_at"])
    op.execute(
        """
        CREATE UNIQUE INDEX ix_invites_email_unique_pending
        ON invites (email)
        WHERE status = 'PENDING'
        """
    )

    op.create_table(
        "invite_audit_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("actor_role", sa.String(length=50), nullable=False),
        sa.Column("resource_type", sa.String(length=50), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=True),
        sa.Column("outcome", sa.String(length=20), nullable=False),
        sa.Column("detail", postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_invite_audit_log_resource_id", "invite_audit_log", ["resource_id"], unique=False
    )
    op.create_index(
        "ix_invite_audit_log_created_at", "invite_audit_log", ["created_at"], unique=False
    )


def downgrade() -> None:
    """Drop invite tables and enum types."""
    op.drop_index("ix_invite_audit_log_created_at", table_name="invite_audit_log")
    op.drop_index("ix_invite_audit_log_resource_id", table_name="invite_audit_log")
    op.drop_table("invite_audit_log")

    op.execute("DROP INDEX IF EXISTS ix_invites_email_unique_pending")
    op.drop_index("ix_invites_status_expires_at", table_name="invites")
    op.drop_index("ix_invites_email", table_name="invites")
    op.drop_table("invites")

    postgresql.ENUM(*INVITE_STATUS_VALUES, name="invite_status").drop(
        op.get_bind(), checkfirst=True
    )
    postgresql.ENUM(*INVITE_ROLE_VALUES, name="invite_role").drop(op.get_bind(), checkfirst=True)
