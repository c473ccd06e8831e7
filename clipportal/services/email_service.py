"""
clipportal.services.email_service — Verification & Magic-Link Mail
===================================================================

SMTP settings come from the environment (``.env``)::

    SMTP_HOST=smtp.example.com
    SMTP_PORT=587
    SMTP_USERNAME=portal@example.com
    SMTP_PASSWORD=...
    SMTP_FROM_EMAIL=portal@example.com
    SMTP_USE_TLS=true
    SMTP_USE_SSL=false

Without ``SMTP_HOST`` the mailer logs the link instead of sending it, so a
fresh checkout can still complete verification from the console.  Delivery
is best-effort: send failures are logged and reported as ``False``.
"""

from __future__ import annotations

import logging
import os
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage

logger = logging.getLogger(__name__)


def _get_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True, slots=True)
class SMTPSettings:
    host: str | None = None
    port: int = 587
    username: str | None = None
    password: str | None = None
    from_email: str = ""
    use_tls: bool = True
    use_ssl: bool = False

    @classmethod
    def from_env(cls) -> SMTPSettings:
        username = os.getenv("SMTP_USERNAME")
        return cls(
            host=os.getenv("SMTP_HOST") or None,
            port=int(os.getenv("SMTP_PORT", "587")),
            username=username,
            password=os.getenv("SMTP_PASSWORD"),
            from_email=os.getenv("SMTP_FROM_EMAIL", username or ""),
            use_tls=_get_bool_env("SMTP_USE_TLS", default=True),
            use_ssl=_get_bool_env("SMTP_USE_SSL", default=False),
        )


class Mailer:
    def __init__(self, settings: SMTPSettings | None = None, site_name: str = "Clip Portal") -> None:
        self.settings = settings or SMTPSettings()
        self.site_name = site_name

    @property
    def configured(self) -> bool:
        return bool(self.settings.host)

    def _client(self) -> smtplib.SMTP:
        s = self.settings
        if s.use_ssl:
            return smtplib.SMTP_SSL(s.host, s.port, timeout=30)
        server = smtplib.SMTP(s.host, s.port, timeout=30)
        if s.use_tls:
            server.starttls()
        return server

    def send(self, to_email: str, subject: str, text_body: str, html_body: str | None = None) -> bool:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.settings.from_email
        msg["To"] = to_email
        msg.set_content(text_body)
        if html_body:
            msg.add_alternative(html_body, subtype="html")

        try:
            with self._client() as server:
                if self.settings.username and self.settings.password:
                    server.login(self.settings.username, self.settings.password)
                server.send_message(msg)
        except (OSError, smtplib.SMTPException) as exc:
            logger.error("Email delivery failed (%s): %s", subject, exc)
            return False
        return True

    def send_link(self, to_email: str, username: str, purpose: str, link: str) -> bool:
        """Deliver a verification or sign-in link, or log it when SMTP is off."""
        if purpose == "login":
            subject = f"Your {self.site_name} sign-in link"
            action = "sign in"
        else:
            subject = f"Verify your {self.site_name} account"
            action = "verify your email"

        if not self.configured:
            logger.info("SMTP not configured; %s link for %s: %s", purpose, username, link)
            return False

        text = (
            f"Hi {username}\n\n"
            f"Please {action} by clicking the link below:\n{link}\n\n"
            "If you did not request this, you can ignore this email."
        )
        html = (
            f"<p>Hi {username},</p><p>Please {action} by clicking the link below:</p>"
            f'<p><a href="{link}">{link}</a></p>'
            "<p>If you did not request this, you can ignore this email.</p>"
        )
        return self.send(to_email, subject, text, html)
