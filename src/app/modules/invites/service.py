"""
Invites Service Layer

Business logic for the invite lifecycle. The service holds no state of its
own: it orchestrates the invite store, token codec, rate limiter, audit trail,
and notifier that are injected at startup.

This module implements:
1. Issuance:
   - Normalize and validate email and role (admins are never invitable)
   - Reject duplicates (one active invite per email), lazily expiring a stale one
   - Per-IP and per-email rate limits; nothing is persisted on a breach
   - Mint an encrypted token, persist the invite, audit, then email it

2. Bulk issuance:
   - Bulk tier (keyed by the acting admin) and IP tier checked once per call
   - Each email processed independently; per-item failures are data

3. Validation and acceptance:
   - Decode the token, load the invite, compare payload with stored state
   - Stored expiry is authoritative; an expired invite is lazily marked expired
   - Acceptance is a single conditional update so only one caller can win

4. Administration:
   - Cancel a pending invite
   - Resend (same token while active, a new invite otherwise)
   - History, single lookup, and filtered listing

State machine:
    pending -> accepted | expired | cancelled   (all terminal)

Security considerations:
- Tokens are AES-GCM encrypted and never logged
- Email comparison is case-insensitive (addresses are lower-cased on entry)
- Notifier failures are logged and never roll back an issued invite
"""

import logging
import math
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from email_validator import EmailNotValidError, validate_email

from app.core.email import Notifier
from app.core.exceptions import (
    DuplicateInviteError,
    ExpiredTokenError,
    InvalidStatusTransitionError,
    InvalidTokenError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from app.core.rate_limit import TIER_BULK, TIER_EMAIL, TIER_IP, RateLimiter
from app.modules.invites.audit import AuditAction, AuditEvent, AuditOutcome, AuditTrail
from app.modules.invites.models import Invite, InviteRole, InviteStatus, can_transition
from app.modules.invites.repository import ActiveInviteConflictError, InviteStore
from app.modules.invites.schemas import (
    BulkInviteFailure,
    InviteListResponse,
    InviteResponse,
    TokenValidationResponse,
)
from app.modules.invites.tokens import InviteToken, TokenCodec, TokenPayload

logger = logging.getLogger(__name__)

# Constants
DEFAULT_EXPIRY = timedelta(days=7)
ADMIN_ROLE = "admin"
SYSTEM_ACTOR = "system"
MAX_PAGE_SIZE = 100

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def normalize_email(email: str) -> str:
    """
    Trim, lower-case, and syntax-check an email address.

    Raises:
        ValidationError: If the address is empty or malformed
    """
    if not isinstance(email, str) or not email.strip():
        raise ValidationError("Email address is required.")

    candidate = email.strip().lower()
    try:
        validate_email(candidate, check_deliverability=False)
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email address: {email.strip()}") from e
    return candidate


def parse_role(role: InviteRole | str) -> InviteRole:
    """
    Resolve an invitable role.

    Raises:
        ValidationError: For unknown roles and for ``admin``
    """
    if isinstance(role, InviteRole):
        return role
    try:
        return InviteRole(str(role).strip().lower())
    except ValueError:
        allowed = ", ".join(r.value for r in InviteRole)
        raise ValidationError(
            f"Role '{role}' cannot be invited. Allowed roles: {allowed}."
        ) from None


@dataclass
class CreatedInvite:
    """An issued (or re-delivered) invite together with its bearer token."""

    invite: Invite
    token: InviteToken
    email_sent: bool


@dataclass
class BulkInviteResult:
    successful: list[CreatedInvite] = field(default_factory=list)
    failed: list[BulkInviteFailure] = field(default_factory=list)


class InviteService:
    """
    Invite lifecycle orchestrator.

    Args:
        store: Invite persistence
        codec: Token encryption
        rate_limiter: Multi-tier rate limiter
        audit: Audit sink
        notifier: Invite email delivery
        expiry: Default invite lifetime
        teacher_email_domains: If non-empty, teacher invites must use one of these domains
        clock: Returns the current timezone-aware time
    """

    def __init__(
        self,
        store: InviteStore,
        codec: TokenCodec,
        rate_limiter: RateLimiter,
        audit: AuditTrail,
        notifier: Notifier,
        *,
        expiry: timedelta = DEFAULT_EXPIRY,
        teacher_email_domains: Iterable[str] = (),
        clock: Clock = utc_now,
    ):
        self.store = store
        self.codec = codec
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.notifier = notifier
        self.expiry = expiry
        self.teacher_email_domains = frozenset(d.lower() for d in teacher_email_domains)
        self._clock = clock

    # ============================================
    # Internal helpers
    # ============================================

    async def _audit(
        self,
        action: AuditAction,
        actor_id: str,
        actor_role: str,
        resource_id: UUID | None,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        **detail: Any,
    ) -> None:
        await self.audit.record(
            AuditEvent(
                action=action,
                actor_id=actor_id,
                actor_role=actor_role,
                resource_id=str(resource_id) if resource_id else None,
                outcome=outcome,
                detail=detail,
                timestamp=self._clock(),
            )
        )

    async def _audit_failure(
        self,
        operation: str,
        actor_id: str,
        actor_role: str,
        resource_id: UUID | None,
        error: ServiceError,
    ) -> None:
        await self._audit(
            AuditAction.INVITE_FAILED,
            actor_id,
            actor_role,
            resource_id,
            outcome=AuditOutcome.FAILURE,
            operation=operation,
            error_code=error.error_code,
        )

    def _check_teacher_domain(self, email: str, role: InviteRole) -> None:
        if role != InviteRole.TEACHER or not self.teacher_email_domains:
            return
        domain = email.rsplit("@", 1)[1]
        if domain not in self.teacher_email_domains:
            allowed = ", ".join(sorted(self.teacher_email_domains))
            raise ValidationError(f"Teachers must be invited with an email from: {allowed}.")

    async def _check_rate_limits(self, email: str, client_ip: str | None) -> None:
        if client_ip:
            await self.rate_limiter.check_limit(client_ip, TIER_IP)
        await self.rate_limiter.check_limit(email, TIER_EMAIL)

    async def _expire(self, invite: Invite, reason: str) -> Invite | None:
        """Transition a pending invite past its expiry to expired."""
        now = self._clock()
        updated = await self.store.update_status(
            invite.id,
            InviteStatus.EXPIRED,
            expected_status=InviteStatus.PENDING,
            updated_at=now,
        )
        if updated is not None:
            logger.info(f"Invite {invite.id} expired ({reason})")
            await self._audit(
                AuditAction.INVITE_EXPIRED, SYSTEM_ACTOR, SYSTEM_ACTOR, invite.id, reason=reason
            )
        return updated

    async def _find_stale_invite(self, email: str) -> Invite | None:
        """
        The pending invite for ``email`` if it is past its expiry, else None.

        Raises:
            DuplicateInviteError: If an unexpired pending invite exists for the email
        """
        existing = await self.store.find_active_by_email(email)
        if existing is None or existing.is_expired(self._clock()):
            return existing
        logger.warning(f"Duplicate invite attempt for {email}")
        raise DuplicateInviteError(email)

    async def _issue(
        self,
        email: str,
        role: InviteRole,
        invited_by: str,
        lifetime: timedelta,
        action: AuditAction = AuditAction.INVITE_CREATED,
    ) -> tuple[Invite, InviteToken]:
        """Mint a token, persist the pending invite, and audit it."""
        now = self._clock()
        invite_id = uuid.uuid4()
        expires_at = now + lifetime
        token = self.codec.encode(TokenPayload.for_invite(invite_id, email, role, expires_at))

        invite = Invite(
            id=invite_id,
            email=email,
            role=role,
            status=InviteStatus.PENDING,
            invited_by=invited_by,
            token=token.value,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        try:
            invite = await self.store.insert(invite)
        except ActiveInviteConflictError as e:
            # Lost the race against a concurrent create for the same email
            raise DuplicateInviteError(email) from e

        logger.info(f"Created invite {invite.id} for {email} as {role.value}")
        await self._audit(
            action,
            invited_by,
            ADMIN_ROLE,
            invite.id,
            email=email,
            role=role.value,
            expires_at=expires_at.isoformat(),
        )
        return invite, token

    async def _notify(self, invite: Invite, token: InviteToken) -> bool:
        """Send the invite email. Failures are logged, never raised."""
        try:
            sent = await self.notifier.send_invite(invite.email, invite.role.value, token.value)
        except Exception as e:
            logger.error(f"Exception sending invite email for invite {invite.id}: {e}")
            return False

        if not sent:
            logger.error(f"Failed to send invite email for invite {invite.id}")
        return bool(sent)

    async def _resolve(self, token: InviteToken | str) -> tuple[Invite, TokenPayload]:
        """
        Decode a token and load the invite it refers to.

        Raises:
            InvalidTokenError: If decoding fails, the invite is unknown, or the
                payload disagrees with the stored invite
        """
        payload = self.codec.decode(token)
        invite = await self.store.find_by_id(UUID(payload.id))
        if invite is None:
            raise InvalidTokenError()
        if (
            invite.email != payload.email
            or invite.role != payload.role
            or int(invite.expires_at.timestamp()) != payload.expires_at_epoch
        ):
            logger.warning(f"Token payload does not match stored invite {invite.id}")
            raise InvalidTokenError()
        return invite, payload

    # ============================================
    # Issuance
    # ============================================

    async def create_invite(
        self,
        email: str,
        role: InviteRole | str,
        invited_by: str,
        *,
        client_ip: str | None = None,
        expires_in: timedelta | None = None,
    ) -> CreatedInvite:
        """
        Issue a new invite.

        Args:
            email: Recipient address
            role: ``teacher`` or ``student``
            invited_by: Identifier of the issuing admin
            client_ip: Caller address for the per-IP tier
            expires_in: Lifetime override (defaults to the service expiry)

        Returns:
            The pending invite, its token, and whether the email went out

        Raises:
            ValidationError: Malformed email, non-invitable role, or teacher domain not allowed
            DuplicateInviteError: An active invite already exists for the email
            RateLimitExceededError: The IP or email tier is exhausted
        """
        normalized = normalize_email(email)
        invite_role = parse_role(role)
        if not invited_by:
            raise ValidationError("invited_by is required.")
        if expires_in is not None and expires_in <= timedelta(0):
            raise ValidationError("Invite expiry must be in the future.")
        self._check_teacher_domain(normalized, invite_role)

        stale = await self._find_stale_invite(normalized)
        await self._check_rate_limits(normalized, client_ip)
        if stale is not None:
            await self._expire(stale, reason="superseded")

        invite, token = await self._issue(
            normalized, invite_role, invited_by, expires_in or self.expiry
        )
        email_sent = await self._notify(invite, token)
        return CreatedInvite(invite=invite, token=token, email_sent=email_sent)

    async def create_bulk_invites(
        self,
        emails: Iterable[str],
        role: InviteRole | str,
        invited_by: str,
        *,
        client_ip: str | None = None,
    ) -> BulkInviteResult:
        """
        Issue invites to many addresses.

        Only the call-wide rate limits abort the call; every other failure is
        reported per email in ``failed``. The bulk and IP tiers are charged
        once per call, each email only against its own tier.

        Raises:
            RateLimitExceededError: The bulk or IP tier is exhausted
        """
        await self.rate_limiter.check_limit(invited_by, TIER_BULK)
        if client_ip:
            await self.rate_limiter.check_limit(client_ip, TIER_IP)

        result = BulkInviteResult()
        for email in emails:
            try:
                created = await self.create_invite(email, role, invited_by)
            except ServiceError as e:
                result.failed.append(
                    BulkInviteFailure(
                        email=email,
                        role=str(role.value if isinstance(role, InviteRole) else role),
                        reason=e.message,
                        error_code=e.error_code,
                    )
                )
                continue
            result.successful.append(created)

        logger.info(
            f"Bulk invite by {invited_by}: {len(result.successful)} created, "
            f"{len(result.failed)} failed"
        )
        return result

    # ============================================
    # Validation and acceptance
    # ============================================

    async def validate_token(self, token: InviteToken | str) -> TokenValidationResponse:
        """
        Check whether a token can still be accepted.

        Never raises for token problems; the outcome is reported in the
        response's ``error_code`` instead. Validating an expired invite marks
        it expired.
        """
        try:
            invite, payload = await self._resolve(token)
        except InvalidTokenError as e:
            return TokenValidationResponse(valid=False, error_code=e.error_code, message=e.message)

        if invite.status == InviteStatus.ACCEPTED:
            return TokenValidationResponse(
                valid=False,
                error_code="ALREADY_ACCEPTED",
                message="This invite has already been accepted.",
                invite_id=invite.id,
            )
        if invite.status != InviteStatus.PENDING:
            return TokenValidationResponse(
                valid=False,
                error_code="INVALID_STATUS",
                message=f"This invite is {invite.status.value}.",
                invite_id=invite.id,
            )

        if invite.is_expired(self._clock()):
            await self._expire(invite, reason="validation")
            error = ExpiredTokenError()
            return TokenValidationResponse(
                valid=False,
                error_code=error.error_code,
                message=error.message,
                invite_id=invite.id,
            )

        return TokenValidationResponse(
            valid=True,
            invite_id=invite.id,
            email=payload.email,
            role=payload.role,
            expires_at=invite.expires_at,
        )

    async def accept_invite(self, token: InviteToken | str, accepted_by: str) -> Invite:
        """
        Consume an invite.

        Args:
            token: The invite token
            accepted_by: Identifier of the account created for the invitee

        Returns:
            The accepted invite

        Raises:
            ValidationError: If accepted_by is empty
            InvalidTokenError: Token cannot be decoded or matches no invite
            ExpiredTokenError: The invite is past its expiry (it is marked expired)
            InvalidStatusTransitionError: The invite is not pending, including
                when a concurrent accept won the race
        """
        if not accepted_by:
            raise ValidationError("accepted_by is required.")

        invite: Invite | None = None
        try:
            invite, _ = await self._resolve(token)

            if not can_transition(invite.status, InviteStatus.ACCEPTED):
                raise InvalidStatusTransitionError(
                    invite.status.value, InviteStatus.ACCEPTED.value
                )

            now = self._clock()
            if invite.is_expired(now):
                await self._expire(invite, reason="acceptance")
                raise ExpiredTokenError()

            accepted = await self.store.update_status(
                invite.id,
                InviteStatus.ACCEPTED,
                expected_status=InviteStatus.PENDING,
                accepted_at=now,
                accepted_by=accepted_by,
                updated_at=now,
            )
            if accepted is None:
                current = await self.store.find_by_id(invite.id)
                current_status = current.status.value if current else "missing"
                raise InvalidStatusTransitionError(current_status, InviteStatus.ACCEPTED.value)
        except ServiceError as e:
            logger.warning(f"Invite acceptance failed: {e.error_code}")
            await self._audit_failure(
                "accept",
                accepted_by,
                invite.role.value if invite else "unknown",
                invite.id if invite else None,
                e,
            )
            raise

        logger.info(f"Invite {accepted.id} accepted by {accepted_by}")
        await self._audit(
            AuditAction.INVITE_ACCEPTED,
            accepted_by,
            accepted.role.value,
            accepted.id,
            email=accepted.email,
        )
        return accepted

    # ============================================
    # Administration
    # ============================================

    async def cancel_invite(self, invite_id: UUID, cancelled_by: str) -> Invite:
        """
        Revoke a pending invite.

        Raises:
            NotFoundError: Unknown invite id
            InvalidStatusTransitionError: The invite is not pending
        """
        invite = await self.store.find_by_id(invite_id)
        if invite is None:
            raise NotFoundError()

        if not can_transition(invite.status, InviteStatus.CANCELLED):
            error = InvalidStatusTransitionError(
                invite.status.value, InviteStatus.CANCELLED.value
            )
            await self._audit_failure("cancel", cancelled_by, ADMIN_ROLE, invite_id, error)
            raise error

        now = self._clock()
        cancelled = await self.store.update_status(
            invite_id,
            InviteStatus.CANCELLED,
            expected_status=InviteStatus.PENDING,
            cancelled_at=now,
            cancelled_by=cancelled_by,
            updated_at=now,
        )
        if cancelled is None:
            current = await self.store.find_by_id(invite_id)
            error = InvalidStatusTransitionError(
                current.status.value if current else invite.status.value,
                InviteStatus.CANCELLED.value,
            )
            await self._audit_failure("cancel", cancelled_by, ADMIN_ROLE, invite_id, error)
            raise error

        logger.info(f"Invite {invite_id} cancelled by {cancelled_by}")
        await self._audit(
            AuditAction.INVITE_CANCELLED, cancelled_by, ADMIN_ROLE, invite_id, email=invite.email
        )
        return cancelled

    async def resend_invite(
        self,
        email: str,
        requested_by: str,
        *,
        role: InviteRole | str | None = None,
        client_ip: str | None = None,
    ) -> CreatedInvite:
        """
        Re-deliver an invite.

        If the email has an active invite its existing token is sent again.
        Otherwise a new invite is issued with ``role``, falling back to the
        role of the most recent invite for the email.

        Raises:
            ValidationError: Malformed email or role
            RateLimitExceededError: The IP or email tier is exhausted
            NotFoundError: No role given and the email was never invited
        """
        normalized = normalize_email(email)
        await self._check_rate_limits(normalized, client_ip)

        active = await self.store.find_active_by_email(normalized)
        if active is not None and active.token and not active.is_expired(self._clock()):
            token = InviteToken.restore(active.token)
            await self._audit(
                AuditAction.INVITE_RESENT,
                requested_by,
                ADMIN_ROLE,
                active.id,
                email=normalized,
                reissued=False,
            )
            email_sent = await self._notify(active, token)
            return CreatedInvite(invite=active, token=token, email_sent=email_sent)

        if active is not None:
            await self._expire(active, reason="superseded")

        if role is None:
            latest = await self.store.find_by_email(normalized)
            if latest is None:
                raise NotFoundError(f"No invite found for {normalized}.")
            invite_role = latest.role
        else:
            invite_role = parse_role(role)
        self._check_teacher_domain(normalized, invite_role)

        invite, token = await self._issue(
            normalized, invite_role, requested_by, self.expiry, action=AuditAction.INVITE_RESENT
        )
        email_sent = await self._notify(invite, token)
        return CreatedInvite(invite=invite, token=token, email_sent=email_sent)

    async def get_invite_history(self, email: str) -> list[Invite]:
        """All invites ever issued to ``email``, newest first."""
        return await self.store.list_history(normalize_email(email))

    async def get_invite(self, invite_id: UUID) -> Invite:
        invite = await self.store.find_by_id(invite_id)
        if invite is None:
            raise NotFoundError()
        return invite

    async def list_invites(
        self,
        page: int = 1,
        limit: int = 20,
        role: InviteRole | str | None = None,
        status: InviteStatus | str | None = None,
        email: str | None = None,
    ) -> InviteListResponse:
        """
        Paginated, filtered invite listing, newest first.

        Raises:
            ValidationError: Invalid page, limit, or filter value
        """
        if page < 1:
            raise ValidationError("page must be at least 1.")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}.")

        role_filter = parse_role(role) if role is not None else None
        try:
            status_filter = InviteStatus(status) if status is not None else None
        except ValueError:
            raise ValidationError(f"Unknown invite status: {status}") from None
        email_filter = normalize_email(email) if email else None

        invites, total = await self.store.list_invites(
            offset=(page - 1) * limit,
            limit=limit,
            role=role_filter,
            status=status_filter,
            email=email_filter,
        )
        return InviteListResponse(
            items=[InviteResponse.model_validate(invite) for invite in invites],
            total=total,
            page=page,
            limit=limit,
            pages=math.ceil(total / limit) if total else 0,
        )
