"""
Unit tests for invite email delivery.
"""

import logging
from unittest.mock import patch

import pytest

from app.core import email
from app.core.config import Settings
from app.core.email import INVITE_SUBJECT, ResendNotifier


def _notifier(api_key: str | None = None) -> ResendNotifier:
    return ResendNotifier(
        api_key=api_key,
        from_address="School Portal <noreply@school.edu>",
        frontend_url="https://portal.school.edu/",
        expiry_days=7,
    )


class TestRenderInvite:
    def test_token_is_url_encoded(self):
        url = _notifier().invite_url("abc:def_-")
        assert url == "https://portal.school.edu/signup?token=abc%3Adef_-"

    def test_body_names_role_link_and_expiry(self):
        html = _notifier().render_invite("teacher", "tok:en")

        assert "a teacher" in html
        assert "token=tok%3Aen" in html
        assert "valid for 7 days" in html

    def test_unknown_role_is_escaped(self):
        html = _notifier().render_invite("<script>", "token")
        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    def test_from_settings(self):
        settings = Settings(
            resend_api_key=None, frontend_url="http://localhost:3000", invite_expiry_days=3
        )
        notifier = ResendNotifier.from_settings(settings)

        assert notifier.expiry_days == 3
        assert notifier.invite_url("t").startswith("http://localhost:3000/signup")


class TestSendInvite:
    @pytest.mark.asyncio
    async def test_without_api_key_logs_instead(self, caplog):
        with caplog.at_level(logging.INFO), patch.object(email.resend.Emails, "send") as send:
            assert await _notifier().send_invite("a@x.com", "student", "token") is True

        send.assert_not_called()
        assert "a@x.com" in caplog.text

    @pytest.mark.asyncio
    async def test_sends_through_resend(self):
        with patch.object(email.resend.Emails, "send", return_value={"id": "email-1"}) as send:
            sent = await _notifier("re_test").send_invite("a@x.com", "teacher", "token")

        assert sent is True
        params = send.call_args.args[0]
        assert params["to"] == ["a@x.com"]
        assert params["from"] == "School Portal <noreply@school.edu>"
        assert params["subject"] == INVITE_SUBJECT

    @pytest.mark.asyncio
    async def test_provider_failure_returns_false(self):
        with patch.object(email.resend.Emails, "send", side_effect=RuntimeError("quota")):
            sent = await _notifier("re_test").send_invite("a@x.com", "teacher", "token")

        assert sent is False
