"""
Invites Router

API endpoints for the invite lifecycle.

Endpoints:
- POST /invites - Create an invite
- POST /invites/bulk - Create invites for many emails
- POST /invites/validate - Check a token (public)
- POST /invites/accept - Consume a token (public)
- POST /invites/{id}/cancel - Revoke a pending invite
- POST /invites/resend - Re-deliver an invite
- GET /invites/history - All invites for an email
- GET /invites - List invites with filters and pagination
- GET /invites/{id} - Get invite details

Security:
- Management endpoints require a valid JWT with the admin role
- validate and accept are public since the invitee has no account yet
- Tokens are only ever returned to the admin who created or resent them
- Rate limiting is enforced by the service (per IP, per email, per bulk actor)
"""

import logging
from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.core.auth import Actor, require_invite_admin
from app.core.exceptions import RateLimitExceededError, ServiceError
from app.modules.invites.models import InviteRole, InviteStatus
from app.modules.invites.schemas import (
    AcceptInviteRequest,
    BulkInviteRequest,
    BulkInviteResponse,
    CreateInviteRequest,
    CreateInviteResponse,
    InviteListResponse,
    InviteResponse,
    ResendInviteRequest,
    TokenValidationResponse,
    ValidateTokenRequest,
)
from app.modules.invites.service import CreatedInvite, InviteService

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================
# Helper Functions
# ============================================


def get_invite_service(request: Request) -> InviteService:
    """Return the service built during application startup."""
    service = getattr(request.app.state, "invite_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "DEPENDENCY_UNAVAILABLE",
                "message": "Invite service is not initialized.",
            },
        )
    return service


def _handle_service_error(e: ServiceError) -> None:
    """Convert service errors to HTTPExceptions."""
    headers = None
    if isinstance(e, RateLimitExceededError):
        headers = {"Retry-After": str(e.retry_after_seconds)}
    raise HTTPException(status_code=e.status_code, detail=e.to_dict(), headers=headers) from e


def _internal_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


def _created_to_response(created: CreatedInvite, message: str) -> CreateInviteResponse:
    return CreateInviteResponse(
        invite=InviteResponse.model_validate(created.invite),
        token=created.token.value,
        email_sent=created.email_sent,
        message=message,
    )


# ============================================
# Admin endpoints
# ============================================


@router.post(
    "",
    response_model=CreateInviteResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Invite",
    description="""
Invite a teacher or student to join the portal.

The invite is valid for 7 days unless `expires_in_days` is given. An email
with the signup link is sent to the invitee; the token is also returned so
the admin can share it another way if delivery fails.

**Rejections:**
- 400 VALIDATION_ERROR: malformed email, role not invitable, teacher domain not allowed
- 409 DUPLICATE_INVITE: the email already has an active invite
- 429 RATE_LIMIT_EXCEEDED: too many invites from this IP or to this email
""",
)
async def create_invite(
    data: CreateInviteRequest,
    admin: Actor = Depends(require_invite_admin),
    service: InviteService = Depends(get_invite_service),
) -> CreateInviteResponse:
    try:
        created = await service.create_invite(
            data.email,
            data.role,
            admin.id,
            client_ip=admin.ip,
            expires_in=timedelta(days=data.expires_in_days) if data.expires_in_days else None,
        )
        logger.info(f"Admin {admin.id} created invite {created.invite.id}")
        return _created_to_response(created, "Invite created.")
    except ServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Unexpected error creating invite: {e}")
        raise _internal_error() from e


@router.post(
    "/bulk",
    response_model=BulkInviteResponse,
    summary="Create Invites in Bulk",
    description="""
Invite up to 100 emails under one role.

Each email is processed independently: failures are listed in `failed` with
a reason and error code while the rest are created. Only the bulk limit (2 calls
per hour per admin by default) and the per-IP limit, each charged once per
call, reject the whole request.
""",
)
async def create_bulk_invites(
    data: BulkInviteRequest,
    admin: Actor = Depends(require_invite_admin),
    service: InviteService = Depends(get_invite_service),
) -> BulkInviteResponse:
    try:
        result = await service.create_bulk_invites(
            data.emails, data.role, admin.id, client_ip=admin.ip
        )
        return BulkInviteResponse(
            successful=[_created_to_response(c, "Invite created.") for c in result.successful],
            failed=result.failed,
        )
    except ServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Unexpected error creating bulk invites: {e}")
        raise _internal_error() from e


@router.post(
    "/resend",
    response_model=CreateInviteResponse,
    summary="Resend Invite",
    description="""
Re-deliver an invite email.

If the email has an active invite, the same link is sent again. If its last
invite expired or was cancelled, a new invite is created using `role`, or
the role of the most recent invite when `role` is omitted.
""",
)
async def resend_invite(
    data: ResendInviteRequest,
    admin: Actor = Depends(require_invite_admin),
    service: InviteService = Depends(get_invite_service),
) -> CreateInviteResponse:
    try:
        created = await service.resend_invite(
            data.email, admin.id, role=data.role, client_ip=admin.ip
        )
        return _created_to_response(created, "Invite sent.")
    except ServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Unexpected error resending invite: {e}")
        raise _internal_error() from e


@router.post(
    "/{invite_id}/cancel",
    response_model=InviteResponse,
    summary="Cancel Invite",
    description="Revoke a pending invite. Accepted, expired, or cancelled invites return 409.",
)
async def cancel_invite(
    invite_id: UUID,
    admin: Actor = Depends(require_invite_admin),
    service: InviteService = Depends(get_invite_service),
) -> InviteResponse:
    try:
        invite = await service.cancel_invite(invite_id, admin.id)
        return InviteResponse.model_validate(invite)
    except ServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Unexpected error cancelling invite {invite_id}: {e}")
        raise _internal_error() from e


@router.get(
    "/history",
    response_model=list[InviteResponse],
    summary="Invite History",
    description="All invites ever issued to an email, newest first.",
)
async def get_invite_history(
    email: str = Query(..., min_length=1, max_length=255, description="Invitee email"),
    admin: Actor = Depends(require_invite_admin),
    service: InviteService = Depends(get_invite_service),
) -> list[InviteResponse]:
    try:
        invites = await service.get_invite_history(email)
        return [InviteResponse.model_validate(invite) for invite in invites]
    except ServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Unexpected error loading invite history: {e}")
        raise _internal_error() from e


@router.get(
    "",
    response_model=InviteListResponse,
    summary="List Invites",
    description="""
List invites, newest first.

**Filters:** `role`, `status`, `email`

**Pagination:** `page` (from 1) and `limit` (1-100, default 20)
""",
)
async def list_invites(
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(20, ge=1, le=100, description="Maximum records to return"),
    role: InviteRole | None = Query(None, description="Filter by role"),
    status_filter: InviteStatus | None = Query(
        None, alias="status", description="Filter by invite status"
    ),
    email: str | None = Query(None, min_length=1, max_length=255, description="Filter by email"),
    admin: Actor = Depends(require_invite_admin),
    service: InviteService = Depends(get_invite_service),
) -> InviteListResponse:
    try:
        return await service.list_invites(
            page=page, limit=limit, role=role, status=status_filter, email=email
        )
    except ServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Unexpected error listing invites: {e}")
        raise _internal_error() from e


@router.get(
    "/{invite_id}",
    response_model=InviteResponse,
    summary="Get Invite",
)
async def get_invite(
    invite_id: UUID,
    admin: Actor = Depends(require_invite_admin),
    service: InviteService = Depends(get_invite_service),
) -> InviteResponse:
    try:
        return InviteResponse.model_validate(await service.get_invite(invite_id))
    except ServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Unexpected error loading invite {invite_id}: {e}")
        raise _internal_error() from e


# ============================================
# Public endpoints
# ============================================


@router.post(
    "/validate",
    response_model=TokenValidationResponse,
    summary="Validate Invite Token",
    description="""
Check whether an invite link can still be used.

Always returns 200; `valid` is false with an `error_code` of INVALID_TOKEN,
EXPIRED_TOKEN, ALREADY_ACCEPTED, or INVALID_STATUS when it cannot.
""",
)
async def validate_token(
    data: ValidateTokenRequest,
    service: InviteService = Depends(get_invite_service),
) -> TokenValidationResponse:
    try:
        return await service.validate_token(data.token)
    except ServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Unexpected error validating invite token: {e}")
        raise _internal_error() from e


@router.post(
    "/accept",
    response_model=InviteResponse,
    summary="Accept Invite",
    description="""
Consume an invite after the invitee has signed up.

**Rejections:**
- 400 INVALID_TOKEN: token cannot be decoded or matches no invite
- 410 EXPIRED_TOKEN: the invite expired
- 409 INVALID_STATUS_TRANSITION: already accepted or cancelled
""",
)
async def accept_invite(
    data: AcceptInviteRequest,
    service: InviteService = Depends(get_invite_service),
) -> InviteResponse:
    try:
        invite = await service.accept_invite(data.token, data.accepted_by)
        return InviteResponse.model_validate(invite)
    except ServiceError as e:
        _handle_service_error(e)
    except Exception as e:
        logger.exception(f"Unexpected error accepting invite: {e}")
        raise _internal_error() from e
