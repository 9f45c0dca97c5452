"""
auth/mailer.py -- Email-send capability and OTP email templates.

SmtpMailer is the production implementation (smtplib + STARTTLS). Anything
with a send_email(to, subject, html) method can stand in for it; the tests
inject a recording fake through app.state.mailer.

send_email() raises on any delivery failure. The OTP manager relies on that
to roll back an OTP that never reached the user.

Layer rule: no imports from api/. core/ is allowed for settings.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

from auth.models import OtpPurpose
from core.config import Settings

logger = logging.getLogger("tripauth.mailer")

VERIFICATION_SUBJECT = "Verification Code"


class Mailer(Protocol):
    def send_email(self, to: str, subject: str, html: str) -> None: ...


class SmtpMailer:
    """Deliver mail through an SMTP relay configured in Settings."""

    def __init__(self, settings: Settings, timeout: float = 10.0) -> None:
        self._settings = settings
        self._timeout = timeout

    def send_email(self, to: str, subject: str, html: str) -> None:
        s = self._settings
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{s.mail_from_name} <{s.mail_from}>"
        msg["To"] = to
        msg.set_content("This message requires an HTML-capable mail client.")
        msg.add_alternative(html, subtype="html")

        with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=self._timeout) as smtp:
            if s.smtp_starttls:
                smtp.starttls(context=ssl.create_default_context())
            if s.smtp_user and s.smtp_password:
                smtp.login(s.smtp_user, s.smtp_password)
            smtp.send_message(msg)
        logger.info("Mail sent subject=%r", subject)


# ---------------------------------------------------------------------------
# OTP templates
# ---------------------------------------------------------------------------

_TEMPLATE_TEXT: dict[str, tuple[str, str]] = {
    OtpPurpose.registration.value: (
        "Account Registration",
        "Thank you for registering with us. Please use the following code to verify your account:",
    ),
    OtpPurpose.resend.value: (
        "Resend Verification Code",
        "Thank you for registering with us. Please use the following code to verify your account:",
    ),
    OtpPurpose.password_reset.value: (
        "Password Reset",
        "Please use the following code to reset your password.",
    ),
}

_OTP_HTML = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>{title}</title></head>
<body style="font-family: Arial, sans-serif; background-color: #f9f9f9; margin: 0; padding: 0; color: #333;">
  <div style="max-width: 600px; margin: 50px auto; background: #ffffff; border: 1px solid #ddd; border-radius: 8px;">
    <div style="background-color: #007bff; color: #ffffff; text-align: center; padding: 20px;">
      <h2 style="margin: 0;">Hi there,</h2>
    </div>
    <div style="padding: 20px;">
      <h4 style="margin: 0 0 15px; font-weight: normal;">{description}</h4>
      <h1 style="font-size: 36px; color: #007bff; margin: 20px 0; text-align: center;">{code}</h1>
      <p style="font-size: 14px; line-height: 1.6;">If you did not request this, please ignore this email.
      This code will expire in {minutes} minutes.</p>
    </div>
  </div>
</body>
</html>
"""


def render_otp_email(code: str, purpose: str, ttl_seconds: int) -> str:
    """Return the HTML body for an OTP email.

    Raises ValueError for an unknown purpose rather than sending a generic mail.
    """
    try:
        title, description = _TEMPLATE_TEXT[purpose]
    except KeyError:
        raise ValueError(f"Unknown OTP purpose: {purpose!r}") from None
    return _OTP_HTML.format(
        title=title,
        description=description,
        code=code,
        minutes=max(1, ttl_seconds // 60),
    )
