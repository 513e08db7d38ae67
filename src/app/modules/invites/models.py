"""
Invite Models

Database models for invites and the invite audit log.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class InviteRole(str, enum.Enum):
    """Roles that can be granted through an invite. Admins are never invited."""

    TEACHER = "teacher"
    STUDENT = "student"


class InviteStatus(str, enum.Enum):
    """Status of an invite."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Pending is the only non-terminal state
VALID_STATUS_TRANSITIONS: dict[InviteStatus, set[InviteStatus]] = {
    InviteStatus.PENDING: {
        InviteStatus.ACCEPTED,  # Invitee signed up
        InviteStatus.EXPIRED,  # Lazy expiry or reconciler sweep
        InviteStatus.CANCELLED,  # Revoked by an admin
    },
    InviteStatus.ACCEPTED: set(),
    InviteStatus.EXPIRED: set(),
    InviteStatus.CANCELLED: set(),
}


def can_transition(current: InviteStatus, new: InviteStatus) -> bool:
    return new in VALID_STATUS_TRANSITIONS.get(current, set())


class Invite(Base):
    """
    An offer to join the portal under a role, bound to one email address.

    The token column holds the encrypted bearer credential sent to the
    invitee. The encryption key lives in settings, never in this table.
    """

    __tablename__ = "invites"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[InviteRole] = mapped_column(Enum(InviteRole, name="invite_role"), nullable=False)
    status: Mapped[InviteStatus] = mapped_column(
        Enum(InviteStatus, name="invite_status"),
        nullable=False,
        default=InviteStatus.PENDING,
    )
    invited_by: Mapped[str] = mapped_column(String(255), nullable=False)

    token: Mapped[str | None] = mapped_column(Text, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("token", name="uq_invites_token"),
        Index("ix_invites_email", "email"),
        Index("ix_invites_status_expires_at", "status", "expires_at"),
        # At most one pending invite per email; closes the check-then-insert race
        Index(
            "ix_invites_email_unique_pending",
            "email",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
        ),
        CheckConstraint(
            "(status = 'ACCEPTED' AND accepted_at IS NOT NULL AND accepted_by IS NOT NULL) "
            "OR (status <> 'ACCEPTED' AND accepted_at IS NULL AND accepted_by IS NULL)",
            name="ck_invites_accepted_fields",
        ),
    )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_active(self, now: datetime) -> bool:
        return self.status == InviteStatus.PENDING and not self.is_expired(now)


class InviteAuditLog(Base):
    """Append-only record of invite lifecycle events."""

    __tablename__ = "invite_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, default="invite")
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    detail: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_invite_audit_log_resource_id", "resource_id"),
        Index("ix_invite_audit_log_created_at", "created_at"),
    )
