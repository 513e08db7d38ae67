"""
Invite Email Delivery

The invite service only depends on the ``Notifier`` interface.
``ResendNotifier`` delivers through Resend and is configured from settings at
startup. Without an API key it logs the message instead of sending it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from html import escape
from string import Template
from urllib.parse import quote

import resend

from app.core.config import Settings

logger = logging.getLogger(__name__)

INVITE_SUBJECT = "Your invitation to the school portal"

ROLE_LABELS = {
    "teacher": "a teacher",
    "student": "a student",
}

INVITE_TEMPLATE = Template(
    """\
<!DOCTYPE html>
<html>
<body style="margin: 0; background: #f3f4f6; font-family: Helvetica, Arial, sans-serif;">
  <table role="presentation" width="100%" cellpadding="0" cellspacing="0">
    <tr>
      <td align="center" style="padding: 32px 16px;">
        <table role="presentation" width="560" cellpadding="0" cellspacing="0"
               style="background: #ffffff; border-radius: 6px; padding: 32px; color: #111827;">
          <tr><td>
            <h2 style="margin-top: 0;">Welcome to the school portal</h2>
            <p>An administrator has invited you to join as $role_label.</p>
            <p style="margin: 28px 0;">
              <a href="$invite_url"
                 style="background: #14532d; color: #ffffff; padding: 12px 24px;
                        border-radius: 6px; text-decoration: none;">Create your account</a>
            </p>
            <p style="font-size: 13px; color: #4b5563;">
              If the button does not work, open this address:<br>
              <span style="word-break: break-all;">$invite_url</span>
            </p>
            <p style="font-size: 13px; color: #4b5563;">
              The invitation is valid for $expiry_days days and works only once.
              You can ignore this message if you did not expect it.
            </p>
          </td></tr>
        </table>
      </td>
    </tr>
  </table>
</body>
</html>
"""
)


class Notifier(ABC):
    """Transport-agnostic invite delivery."""

    @abstractmethod
    async def send_invite(self, email: str, role: str, token: str) -> bool:
        """Deliver an invite. Returns False if delivery failed."""


class ResendNotifier(Notifier):
    """
    Delivers invites through Resend.

    Args:
        api_key: Resend API key; when empty, emails are logged instead
        from_address: Sender, e.g. ``School Portal <noreply@school.edu>``
        frontend_url: Base URL of the signup page
        expiry_days: Invite lifetime quoted in the email body
    """

    def __init__(
        self,
        api_key: str | None,
        from_address: str,
        frontend_url: str,
        expiry_days: int,
    ):
        self.api_key = api_key
        self.from_address = from_address
        self.frontend_url = frontend_url.rstrip("/")
        self.expiry_days = expiry_days
        if api_key:
            resend.api_key = api_key

    @classmethod
    def from_settings(cls, config: Settings) -> "ResendNotifier":
        return cls(
            api_key=config.resend_api_key,
            from_address=config.email_from,
            frontend_url=config.frontend_url,
            expiry_days=config.invite_expiry_days,
        )

    def invite_url(self, token: str) -> str:
        return f"{self.frontend_url}/signup?token={quote(token, safe='')}"

    def render_invite(self, role: str, token: str) -> str:
        return INVITE_TEMPLATE.substitute(
            role_label=escape(ROLE_LABELS.get(role, role)),
            invite_url=escape(self.invite_url(token)),
            expiry_days=self.expiry_days,
        )

    async def _deliver(self, to_email: str, subject: str, html_content: str) -> bool:
        if not self.api_key:
            logger.warning("RESEND_API_KEY not set, invite email logged instead of sent")
            logger.info(f"Invite email to {to_email}: {subject}")
            return True

        params: resend.Emails.SendParams = {
            "from": self.from_address,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }
        try:
            # The Resend client is synchronous
            response = await asyncio.to_thread(resend.Emails.send, params)
        except Exception as e:
            logger.error(f"Resend rejected invite email to {to_email}: {e}")
            return False

        logger.info(f"Invite email accepted by Resend for {to_email}, id: {response['id']}")
        return True

    async def send_invite(self, email: str, role: str, token: str) -> bool:
        return await self._deliver(email, INVITE_SUBJECT, self.render_invite(role, token))
