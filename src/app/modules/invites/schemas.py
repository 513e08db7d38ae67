"""
Invite Schemas

Pydantic schemas for request validation and response serialization.

Email syntax and role checks happen in the service so that every caller
(HTTP or not) gets the same VALIDATION_ERROR; the request schemas only bound
the shape and size of the input.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.modules.invites.models import InviteRole, InviteStatus

MAX_BULK_EMAILS = 100


class CreateInviteRequest(BaseModel):
    """Request body for POST /invites."""

    email: str = Field(..., min_length=1, max_length=255)
    role: str = Field(..., min_length=1, max_length=20)
    expires_in_days: int | None = Field(None, ge=1, le=90)


class BulkInviteRequest(BaseModel):
    """Request body for POST /invites/bulk."""

    emails: list[str] = Field(..., min_length=1, max_length=MAX_BULK_EMAILS)
    role: str = Field(..., min_length=1, max_length=20)


class ValidateTokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=2048)


class AcceptInviteRequest(BaseModel):
    """Request body for POST /invites/accept."""

    token: str = Field(..., min_length=1, max_length=2048)
    # Identifier of the account the invitee just created
    accepted_by: str = Field(..., min_length=1, max_length=255)


class ResendInviteRequest(BaseModel):
    """Request body for POST /invites/resend."""

    email: str = Field(..., min_length=1, max_length=255)
    role: str | None = Field(None, max_length=20)


class InviteResponse(BaseModel):
    """An invite as returned to administrators. The token is never included."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    role: InviteRole
    status: InviteStatus
    invited_by: str
    expires_at: datetime
    accepted_at: datetime | None = None
    accepted_by: str | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    created_at: datetime
    updated_at: datetime


class CreateInviteResponse(BaseModel):
    """Response after creating or resending an invite."""

    invite: InviteResponse
    token: str
    email_sent: bool
    message: str = "Invite created."


class BulkInviteFailure(BaseModel):
    email: str
    role: str
    reason: str
    error_code: str


class BulkInviteResponse(BaseModel):
    """Per-email outcome of a bulk invite. Partial success is normal."""

    successful: list[CreateInviteResponse]
    failed: list[BulkInviteFailure]


class TokenValidationResponse(BaseModel):
    """
    Outcome of validating an invite token.

    On success the decoded invite details are filled in; on failure
    ``error_code`` is one of INVALID_TOKEN, EXPIRED_TOKEN, ALREADY_ACCEPTED,
    or INVALID_STATUS.
    """

    valid: bool
    error_code: str | None = None
    message: str | None = None
    invite_id: UUID | None = None
    email: str | None = None
    role: InviteRole | None = None
    expires_at: datetime | None = None


class InviteListResponse(BaseModel):
    """Paginated list of invites."""

    items: list[InviteResponse]
    total: int
    page: int
    limit: int
    pages: int
