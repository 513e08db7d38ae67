"""
Invite Audit Trail

Append-only record of invite lifecycle events.

``AuditTrail.record`` never raises: a failed write is logged and dropped so
that auditing can never turn a successful invite operation into a failure.

Implementations:
- ``LoggingAuditTrail``: one JSON line per event on the ``app.audit`` logger
- ``DatabaseAuditTrail``: rows in the ``invite_audit_log`` table
- ``InMemoryAuditTrail``: keeps events in a list, for tests
"""

import enum
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import InviteAuditLog

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("app.audit")


class AuditAction(str, enum.Enum):
    INVITE_CREATED = "invite_created"
    INVITE_ACCEPTED = "invite_accepted"
    INVITE_CANCELLED = "invite_cancelled"
    INVITE_RESENT = "invite_resent"
    INVITE_EXPIRED = "invite_expired"
    INVITE_FAILED = "invite_failed"


class AuditOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class AuditEvent:
    """A single immutable audit record."""

    action: AuditAction
    actor_id: str
    actor_role: str
    resource_id: str | None
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    detail: dict[str, Any] = field(default_factory=dict)
    resource_type: str = "invite"
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditTrail(ABC):
    """Base class for audit sinks."""

    async def record(self, event: AuditEvent) -> None:
        try:
            await self._write(event)
        except Exception as e:
            logger.error(
                f"Failed to record audit event {event.action.value} "
                f"for {event.resource_type} {event.resource_id}: {e}"
            )

    @abstractmethod
    async def _write(self, event: AuditEvent) -> None:
        """Persist one event. May raise; ``record`` contains the failure."""


class LoggingAuditTrail(AuditTrail):
    """Writes events as JSON lines to the ``app.audit`` logger."""

    async def _write(self, event: AuditEvent) -> None:
        audit_logger.info(json.dumps(event.to_dict(), default=str, sort_keys=True))


class DatabaseAuditTrail(AuditTrail):
    """Writes events to the ``invite_audit_log`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def _write(self, event: AuditEvent) -> None:
        async with self.session_maker() as db:
            db.add(
                InviteAuditLog(
                    action=event.action.value,
                    actor_id=event.actor_id,
                    actor_role=event.actor_role,
                    resource_type=event.resource_type,
                    resource_id=event.resource_id,
                    outcome=event.outcome.value,
                    detail=event.detail or None,
                    created_at=event.timestamp,
                )
            )
            await db.commit()


class InMemoryAuditTrail(AuditTrail):
    """Keeps events in memory."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def _write(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[AuditAction]:
        return [event.action for event in self.events]
