"""
Invite Repository

Persistence for invites behind the ``InviteStore`` interface.

Two implementations ship with the module:
- ``SqlAlchemyInviteStore``: async SQLAlchemy, one session per operation
- ``InMemoryInviteStore``: process-local reference implementation used in
  tests and single-process tooling

Design Principles:
- Single responsibility: data access only, no business rules
- Status updates are conditional ("only if currently <expected>"), returning
  None when the condition does not hold, so callers can detect lost races
- At most one pending invite per email, enforced by the store itself
- Timezone-aware datetime handling (UTC)
"""

import asyncio
import functools
import itertools
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any, ParamSpec, TypeVar
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import DependencyError

from .models import Invite, InviteRole, InviteStatus

logger = logging.getLogger(__name__)

UNIQUE_PENDING_INDEX = "ix_invites_email_unique_pending"


class ActiveInviteConflictError(ValueError):
    """Raised by ``insert`` when a pending invite already exists for the email."""

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"A pending invite already exists for {email}")


class InviteStore(ABC):
    """Invite persistence interface."""

    @abstractmethod
    async def insert(self, invite: Invite) -> Invite:
        """
        Persist a new invite.

        Raises:
            ActiveInviteConflictError: If the email already has a pending invite
        """

    @abstractmethod
    async def find_by_id(self, invite_id: UUID) -> Invite | None:
        """Get an invite by id."""

    @abstractmethod
    async def find_by_email(self, email: str) -> Invite | None:
        """Get the most recent invite for an email, in any status."""

    @abstractmethod
    async def find_active_by_email(self, email: str) -> Invite | None:
        """Get the pending invite for an email (it may be past its expiry)."""

    @abstractmethod
    async def find_by_token(self, token: str) -> Invite | None:
        """Get an invite by its token string."""

    @abstractmethod
    async def update_status(
        self,
        invite_id: UUID,
        status: InviteStatus,
        *,
        expected_status: InviteStatus = InviteStatus.PENDING,
        **fields: Any,
    ) -> Invite | None:
        """
        Set ``status`` (and ``fields``) only if the invite is currently
        ``expected_status``, as one atomic write.

        Returns:
            The updated invite, or None if the invite is missing or was not
            in ``expected_status``
        """

    @abstractmethod
    async def list_history(self, email: str) -> list[Invite]:
        """All invites ever issued to an email, newest first."""

    @abstractmethod
    async def list_invites(
        self,
        *,
        offset: int = 0,
        limit: int = 20,
        role: InviteRole | None = None,
        status: InviteStatus | None = None,
        email: str | None = None,
    ) -> tuple[list[Invite], int]:
        """A filtered page of invites, newest first, plus the total match count."""

    @abstractmethod
    async def find_expired_pending(self, now: datetime, limit: int) -> list[UUID]:
        """Ids of pending invites whose expiry is before ``now``, oldest expiry first."""

    @abstractmethod
    async def bulk_expire(self, invite_ids: Iterable[UUID], now: datetime) -> int:
        """
        Transition the given invites to expired where they are still pending
        and past expiry. Returns the number of invites changed.
        """


# ============================================
# In-memory implementation
# ============================================


class InMemoryInviteStore(InviteStore):
    """
    Invite store held in process memory.

    Writes take an asyncio lock so the pending-per-email check and the
    conditional status updates are atomic with respect to other coroutines.
    """

    def __init__(self):
        self._invites: dict[UUID, Invite] = {}
        self._sequence: dict[UUID, int] = {}
        self._counter = itertools.count()
        self._lock = asyncio.Lock()

    def _newest_first(self, invites: Iterable[Invite]) -> list[Invite]:
        return sorted(
            invites,
            key=lambda invite: (invite.created_at, self._sequence[invite.id]),
            reverse=True,
        )

    async def insert(self, invite: Invite) -> Invite:
        async with self._lock:
            for existing in self._invites.values():
                if existing.email == invite.email and existing.status == InviteStatus.PENDING:
                    raise ActiveInviteConflictError(invite.email)
            self._invites[invite.id] = invite
            self._sequence[invite.id] = next(self._counter)
        return invite

    async def find_by_id(self, invite_id: UUID) -> Invite | None:
        return self._invites.get(invite_id)

    async def find_by_email(self, email: str) -> Invite | None:
        history = await self.list_history(email)
        return history[0] if history else None

    async def find_active_by_email(self, email: str) -> Invite | None:
        for invite in self._invites.values():
            if invite.email == email and invite.status == InviteStatus.PENDING:
                return invite
        return None

    async def find_by_token(self, token: str) -> Invite | None:
        for invite in self._invites.values():
            if invite.token == token:
                return invite
        return None

    async def update_status(
        self,
        invite_id: UUID,
        status: InviteStatus,
        *,
        expected_status: InviteStatus = InviteStatus.PENDING,
        **fields: Any,
    ) -> Invite | None:
        async with self._lock:
            invite = self._invites.get(invite_id)
            if invite is None or invite.status != expected_status:
                return None
            invite.status = status
            for name, value in fields.items():
                setattr(invite, name, value)
            return invite

    async def list_history(self, email: str) -> list[Invite]:
        return self._newest_first(i for i in self._invites.values() if i.email == email)

    async def list_invites(
        self,
        *,
        offset: int = 0,
        limit: int = 20,
        role: InviteRole | None = None,
        status: InviteStatus | None = None,
        email: str | None = None,
    ) -> tuple[list[Invite], int]:
        matches = [
            invite
            for invite in self._invites.values()
            if (role is None or invite.role == role)
            and (status is None or invite.status == status)
            and (email is None or invite.email == email)
        ]
        ordered = self._newest_first(matches)
        return ordered[offset : offset + limit], len(ordered)

    async def find_expired_pending(self, now: datetime, limit: int) -> list[UUID]:
        expired = sorted(
            (
                invite
                for invite in self._invites.values()
                if invite.status == InviteStatus.PENDING and invite.expires_at < now
            ),
            key=lambda invite: invite.expires_at,
        )
        return [invite.id for invite in expired[:limit]]

    async def bulk_expire(self, invite_ids: Iterable[UUID], now: datetime) -> int:
        changed = 0
        async with self._lock:
            for invite_id in invite_ids:
                invite = self._invites.get(invite_id)
                if (
                    invite is not None
                    and invite.status == InviteStatus.PENDING
                    and invite.expires_at < now
                ):
                    invite.status = InviteStatus.EXPIRED
                    invite.updated_at = now
                    changed += 1
        return changed


# ============================================
# SQLAlchemy implementation
# ============================================

P = ParamSpec("P")
R = TypeVar("R")


def _translate_connection_errors(
    func_: Callable[P, Awaitable[R]],
) -> Callable[P, Awaitable[R]]:
    """Surface an unreachable database as DependencyError."""

    @functools.wraps(func_)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return await func_(*args, **kwargs)
        except (OperationalError, InterfaceError, ConnectionError) as e:
            logger.error(f"Invite store unavailable during {func_.__name__}: {e}")
            raise DependencyError("database") from e

    return wrapper


class SqlAlchemyInviteStore(InviteStore):
    """
    Invite store backed by PostgreSQL through async SQLAlchemy.

    The partial unique index ``ix_invites_email_unique_pending`` enforces one
    pending invite per email; conditional updates use
    ``UPDATE ... WHERE status = :expected RETURNING *``.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    @_translate_connection_errors
    async def insert(self, invite: Invite) -> Invite:
        async with self.session_maker() as db:
            db.add(invite)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                if UNIQUE_PENDING_INDEX in str(e.orig):
                    raise ActiveInviteConflictError(invite.email) from e
                raise
            await db.refresh(invite)
            return invite

    @_translate_connection_errors
    async def find_by_id(self, invite_id: UUID) -> Invite | None:
        async with self.session_maker() as db:
            return await db.get(Invite, invite_id)

    @_translate_connection_errors
    async def find_by_email(self, email: str) -> Invite | None:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Invite)
                .where(Invite.email == email)
                .order_by(Invite.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    @_translate_connection_errors
    async def find_active_by_email(self, email: str) -> Invite | None:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Invite).where(
                    Invite.email == email,
                    Invite.status == InviteStatus.PENDING,
                )
            )
            return result.scalar_one_or_none()

    @_translate_connection_errors
    async def find_by_token(self, token: str) -> Invite | None:
        async with self.session_maker() as db:
            result = await db.execute(select(Invite).where(Invite.token == token))
            return result.scalar_one_or_none()

    @_translate_connection_errors
    async def update_status(
        self,
        invite_id: UUID,
        status: InviteStatus,
        *,
        expected_status: InviteStatus = InviteStatus.PENDING,
        **fields: Any,
    ) -> Invite | None:
        async with self.session_maker() as db:
            result = await db.execute(
                update(Invite)
                .where(Invite.id == invite_id, Invite.status == expected_status)
                .values(status=status, **fields)
                .returning(Invite)
                .execution_options(synchronize_session=False)
            )
            invite = result.scalars().first()
            await db.commit()
            return invite

    @_translate_connection_errors
    async def list_history(self, email: str) -> list[Invite]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Invite).where(Invite.email == email).order_by(Invite.created_at.desc())
            )
            return list(result.scalars().all())

    @_translate_connection_errors
    async def list_invites(
        self,
        *,
        offset: int = 0,
        limit: int = 20,
        role: InviteRole | None = None,
        status: InviteStatus | None = None,
        email: str | None = None,
    ) -> tuple[list[Invite], int]:
        conditions = []
        if role is not None:
            conditions.append(Invite.role == role)
        if status is not None:
            conditions.append(Invite.status == status)
        if email is not None:
            conditions.append(Invite.email == email)

        async with self.session_maker() as db:
            total = await db.scalar(select(func.count()).select_from(Invite).where(*conditions))
            result = await db.execute(
                select(Invite)
                .where(*conditions)
                .order_by(Invite.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all()), int(total or 0)

    @_translate_connection_errors
    async def find_expired_pending(self, now: datetime, limit: int) -> list[UUID]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Invite.id)
                .where(Invite.status == InviteStatus.PENDING, Invite.expires_at < now)
                .order_by(Invite.expires_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    @_translate_connection_errors
    async def bulk_expire(self, invite_ids: Iterable[UUID], now: datetime) -> int:
        ids = list(invite_ids)
        if not ids:
            return 0
        async with self.session_maker() as db:
            result = await db.execute(
                update(Invite)
                .where(
                    Invite.id.in_(ids),
                    Invite.status == InviteStatus.PENDING,
                    Invite.expires_at < now,
                )
                .values(status=InviteStatus.EXPIRED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0
