from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol, Sequence

from backoffice_auth.config import Settings
from backoffice_auth.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    def send_two_factor_code(self, to_email: str, code: str, expires_in: str) -> bool: ...

    def send_email_change_code(self, to_email: str, code: str, expires_in: str) -> bool: ...

    def send_password_reset(self, to_email: str, token: str, expires_in: str) -> bool: ...

    def send_invite(
        self, to_email: str, token: str, invited_by: str, expires_in: str
    ) -> bool: ...

    def send_security_alert(self, to_email: str, title: str, message: str) -> bool: ...

    def send_new_login(
        self, to_email: str, device: str, location: str, ip_address: str
    ) -> bool: ...

    def send_lockout_notice(self, to_email: str, minutes: int) -> bool: ...


class EmailService:
    """Transactional email over SMTP.

    When SMTP is not configured the message is logged instead of sent, so
    development and tests never need a mail server.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Backoffice",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.app_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        title: str,
        paragraphs: Sequence[str],
        *,
        highlight: Optional[str] = None,
        link: Optional[tuple[str, str]] = None,
    ) -> tuple[str, str]:
        """Build matching HTML and plain-text bodies."""
        html_parts = [f"<h1>{html.escape(title)}</h1>"]
        text_parts = [title, ""]
        for paragraph in paragraphs:
            html_parts.append(f"<p>{html.escape(paragraph)}</p>")
            text_parts.extend([paragraph, ""])
        if highlight:
            html_parts.append(
                '<p style="font-size: 28px; letter-spacing: 6px; font-weight: 700;">'
                f"{html.escape(highlight)}</p>"
            )
            text_parts.extend([highlight, ""])
        if link:
            label, url = link
            html_parts.append(
                f'<p style="margin: 30px 0;"><a href="{html.escape(url)}" '
                f'style="background: #1f6feb; color: white; padding: 12px 24px; '
                f'border-radius: 8px; text-decoration: none;">{html.escape(label)}</a></p>'
            )
            text_parts.extend([url, ""])
        html_body = (
            '<!DOCTYPE html><html><head><meta charset="utf-8"></head>'
            '<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">'
            '<div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">'
            + "".join(html_parts)
            + f'<p style="margin-top: 40px; font-size: 12px; color: #5b6470;">'
            f"{html.escape(self.from_name)}</p></div></body></html>"
        )
        text_parts.extend(["---", self.from_name])
        return html_body, "\n".join(text_parts)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send via SMTP; returns False on delivery failure instead of raising."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=self._redact_email(to_email), error=str(e)
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_two_factor_code(self, to_email: str, code: str, expires_in: str) -> bool:
        html_body, text_body = self._render(
            "Your sign-in code",
            [
                "Use this code to finish signing in.",
                f"The code expires in {expires_in}. If you did not try to sign in, change your password.",
            ],
            highlight=code,
        )
        return self._send_email(to_email, f"{self.from_name} sign-in code", html_body, text_body)

    def send_email_change_code(self, to_email: str, code: str, expires_in: str) -> bool:
        html_body, text_body = self._render(
            "Confirm your new email address",
            [
                "Enter this code to confirm the change of your account email.",
                f"The code expires in {expires_in}.",
            ],
            highlight=code,
        )
        return self._send_email(to_email, "Confirm your new email address", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str, expires_in: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password.",
                f"This link expires in {expires_in}. If you didn't request this, you can ignore this email.",
            ],
            link=("Reset password", reset_url),
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_invite(
        self, to_email: str, token: str, invited_by: str, expires_in: str
    ) -> bool:
        invite_url = f"{self.base_url}/accept-invite?token={token}"
        html_body, text_body = self._render(
            "You have been invited",
            [
                f"{invited_by} invited you to join {self.from_name}.",
                f"The invitation expires in {expires_in}.",
            ],
            link=("Accept invitation", invite_url),
        )
        return self._send_email(
            to_email, f"Invitation to {self.from_name}", html_body, text_body
        )

    def send_security_alert(self, to_email: str, title: str, message: str) -> bool:
        html_body, text_body = self._render(
            title,
            [message, "If you didn't make this change, contact your administrator immediately."],
        )
        return self._send_email(to_email, title, html_body, text_body)

    def send_new_login(
        self, to_email: str, device: str, location: str, ip_address: str
    ) -> bool:
        html_body, text_body = self._render(
            "New sign-in to your account",
            [
                f"Device: {device}",
                f"Location: {location}",
                f"IP address: {ip_address}",
                "If this wasn't you, change your password and sign out other sessions.",
            ],
        )
        return self._send_email(to_email, "New sign-in to your account", html_body, text_body)

    def send_lockout_notice(self, to_email: str, minutes: int) -> bool:
        html_body, text_body = self._render(
            "Account temporarily locked",
            [
                "Too many failed sign-in attempts were made on your account.",
                f"Sign-in is blocked for {minutes} minutes.",
            ],
        )
        return self._send_email(to_email, "Account temporarily locked", html_body, text_body)
