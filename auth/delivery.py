"""
auth/delivery.py -- Outbound email for credentials that reach the user out of band.

EmailSender is the seam: the identity and session services only call these
five methods. Two implementations:

  SmtpEmailSender -- real delivery. Each message is multipart/alternative
      (plain text + HTML), sent with the application's name as the sender
      display name. STARTTLS on the submission port by default, implicit TLS
      when SMTP_USE_TLS=false.

  ConsoleEmailSender -- the default when SMTP_HOST is unset. Writes each
      message to the "tokenly.mail" logger, which is how OTP codes and links
      are delivered in development. It is the only place plaintext tokens are
      ever logged.

build_email_sender() picks one from settings; api/main.py calls it at startup.

Delivery failures are logged and not raised: the caller has already answered
(or must answer) identically whether or not the address exists, and an SMTP
outage must not turn signup into a 500 after the user row is written.

Links:
  verification  -> {backend_base_url}/api/v1/auth/verify-email?token=...
  password reset -> {frontend_base_url}/auth/reset-password?token=...
  magic link    -> {frontend_base_url}/auth/verify?token=...&appId=...
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Optional, Protocol
from urllib.parse import urlencode

from core.config import Settings, get_settings

logger = logging.getLogger("tokenly.mail")


class EmailSender(Protocol):
    def send_verification(self, to: str, token: str, app_name: str) -> None: ...

    def send_password_reset(self, to: str, token: str, app_name: str) -> None: ...

    def send_magic_link(self, to: str, token: str, app_id: str, app_name: str) -> None: ...

    def send_otp(self, to: str, code: str, app_name: str) -> None: ...

    def send_welcome(self, to: str, app_name: str) -> None: ...


def verification_link(token: str) -> str:
    base = get_settings().backend_base_url.rstrip("/")
    return f"{base}/api/v1/auth/verify-email?{urlencode({'token': token})}"


def password_reset_link(token: str) -> str:
    base = get_settings().frontend_base_url.rstrip("/")
    return f"{base}/auth/reset-password?{urlencode({'token': token})}"


def magic_link(token: str, app_id: str) -> str:
    base = get_settings().frontend_base_url.rstrip("/")
    return f"{base}/auth/verify?{urlencode({'token': token, 'appId': app_id})}"


class ConsoleEmailSender:
    """Simulated delivery: every message goes to the log."""

    def send_verification(self, to: str, token: str, app_name: str) -> None:
        hours = get_settings().verification_token_ttl_hours
        logger.info("[SIMULATION] Verification email for %s to %s", app_name, to)
        logger.info("[SIMULATION] Link: %s (expires in %d hours)", verification_link(token), hours)

    def send_password_reset(self, to: str, token: str, app_name: str) -> None:
        hours = get_settings().password_reset_ttl_hours
        logger.info("[SIMULATION] Password reset email for %s to %s", app_name, to)
        logger.info("[SIMULATION] Link: %s (expires in %d hours)", password_reset_link(token), hours)

    def send_magic_link(self, to: str, token: str, app_id: str, app_name: str) -> None:
        minutes = get_settings().magic_link_ttl_minutes
        logger.info("[SIMULATION] Magic link for %s to %s", app_name, to)
        logger.info("[SIMULATION] Link: %s (expires in %d minutes)", magic_link(token, app_id), minutes)

    def send_otp(self, to: str, code: str, app_name: str) -> None:
        minutes = get_settings().otp_ttl_minutes
        logger.info("[SIMULATION] OTP for %s to %s: %s (expires in %d minutes)", app_name, to, code, minutes)

    def send_welcome(self, to: str, app_name: str) -> None:
        logger.info("[SIMULATION] Welcome email for %s to %s", app_name, to)


def _redact(address: str) -> str:
    local, _, domain = address.partition("@")
    return f"{local[:2]}***@{domain}" if domain else "redacted"


def _html_page(app_name: str, *paragraphs: str) -> str:
    body = "".join(f"<p>{p}</p>" for p in paragraphs)
    return (
        '<html><body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">'
        f"<h2>{html.escape(app_name)}</h2>{body}</body></html>"
    )


def _button(url: str, label: str) -> str:
    return f'<a href="{html.escape(url)}">{html.escape(label)}</a>'


class SmtpEmailSender:
    """Deliver messages through an SMTP relay."""

    def __init__(
        self,
        host: str,
        from_address: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: int = 30,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.from_address = from_address

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpEmailSender":
        from_address = settings.email_from_address or settings.smtp_user
        if not from_address:
            raise ValueError("EMAIL_FROM_ADDRESS (or SMTP_USER) is required when SMTP_HOST is set.")
        return cls(
            host=settings.smtp_host,
            from_address=from_address,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            timeout=settings.smtp_timeout_seconds,
        )

    def send_verification(self, to: str, token: str, app_name: str) -> None:
        link = verification_link(token)
        hours = get_settings().verification_token_ttl_hours
        self._send(
            "verification",
            to,
            f"Verify your email for {app_name}",
            app_name,
            f"Confirm your email address for {app_name}:\n{link}\n\nThe link expires in {hours} hours.",
            _html_page(
                app_name,
                "Confirm your email address to finish signing up.",
                _button(link, "Verify email"),
                f"The link expires in {hours} hours.",
            ),
        )

    def send_password_reset(self, to: str, token: str, app_name: str) -> None:
        link = password_reset_link(token)
        hours = get_settings().password_reset_ttl_hours
        self._send(
            "password_reset",
            to,
            f"Reset your password for {app_name}",
            app_name,
            f"Reset your {app_name} password:\n{link}\n\nThe link expires in {hours} hour(s). "
            "If you did not ask for this, ignore this email.",
            _html_page(
                app_name,
                "We received a request to reset your password.",
                _button(link, "Reset password"),
                f"The link expires in {hours} hour(s). If you did not ask for this, ignore this email.",
            ),
        )

    def send_magic_link(self, to: str, token: str, app_id: str, app_name: str) -> None:
        link = magic_link(token, app_id)
        minutes = get_settings().magic_link_ttl_minutes
        self._send(
            "magic_link",
            to,
            f"Your {app_name} Magic Link",
            app_name,
            f"Sign in to {app_name}:\n{link}\n\nThe link works once and expires in {minutes} minutes.",
            _html_page(
                app_name,
                _button(link, f"Sign in to {app_name}"),
                f"The link works once and expires in {minutes} minutes.",
            ),
        )

    def send_otp(self, to: str, code: str, app_name: str) -> None:
        minutes = get_settings().otp_ttl_minutes
        self._send(
            "otp",
            to,
            f"{code} is your {app_name} verification code",
            app_name,
            f"Your {app_name} code is {code}. It expires in {minutes} minutes.",
            _html_page(
                app_name,
                f'Your verification code is <strong style="font-size: 24px;">{html.escape(code)}</strong>',
                f"It expires in {minutes} minutes.",
            ),
        )

    def send_welcome(self, to: str, app_name: str) -> None:
        self._send(
            "welcome",
            to,
            f"Welcome to {app_name}",
            app_name,
            f"Your {app_name} account is ready.",
            _html_page(app_name, f"Your {html.escape(app_name)} account is ready."),
        )

    def _send(self, kind: str, to: str, subject: str, app_name: str, text_body: str, html_body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((app_name, self.from_address))
        msg["To"] = to
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.sendmail(self.from_address, [to], msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    self._login(server)
                    server.sendmail(self.from_address, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email delivery failed: kind=%s to=%s error=%s", kind, _redact(to), exc)
            return
        logger.info("Email sent: kind=%s to=%s", kind, _redact(to))

    def _login(self, server: smtplib.SMTP) -> None:
        if self.user and self.password:
            server.login(self.user, self.password)


def build_email_sender(settings: Settings) -> EmailSender:
    """SMTP delivery when SMTP_HOST is configured, the log otherwise."""
    if settings.smtp_host:
        logger.info("Email delivery: SMTP via %s:%d", settings.smtp_host, settings.smtp_port)
        return SmtpEmailSender.from_settings(settings)
    logger.info("Email delivery: console (SMTP_HOST not set)")
    return ConsoleEmailSender()
