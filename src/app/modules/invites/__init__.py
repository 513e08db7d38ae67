"""
Invites Module

Handles onboarding of teachers and students by invitation:
1. Admin issues an invite (encrypted, single-use, 7-day token)
2. Invitee validates the link and signs up
3. Acceptance consumes the invite exactly once
4. Stale invites expire lazily on validation and via a daily sweep

API Endpoints:
- POST /invites, POST /invites/bulk, POST /invites/resend (admin)
- POST /invites/{id}/cancel, GET /invites, GET /invites/{id}, GET /invites/history (admin)
- POST /invites/validate, POST /invites/accept (public)

Security Features:
- AES-256-GCM tokens; tampering fails decryption
- Rate limiting per inviter IP, per recipient email, and per bulk actor
  (fail-open when Redis is unavailable, configurable)
- One pending invite per email, enforced by a partial unique index
- Audit trail of every lifecycle event

Background Jobs (via APScheduler):
- invites_expire_stale: Runs daily, expires pending invites past their expiry
"""

from .jobs import ExpiryReconciler, register_invite_jobs
from .router import router
from .service import InviteService

__all__ = ["router", "InviteService", "ExpiryReconciler", "register_invite_jobs"]
