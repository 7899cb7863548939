from __future__ import annotations

import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from coopapp.logging import get_logger, redact_email
from coopapp.storage.models import Organization, User

logger = get_logger(__name__)


class Notifier(Protocol):
    """Delivery channel for login codes and account links.

    Injected into the runtime so tests can swap in a recording implementation.
    Methods are blocking; async callers run them via ``asyncio.to_thread``.
    """

    def send_two_factor_code(
        self,
        user: User,
        organization: Optional[Organization],
        code: str,
        expires_at: datetime,
    ) -> bool: ...

    def send_account_verification(
        self, user: User, organization: Optional[Organization], link: str
    ) -> bool: ...

    def send_registration_received(
        self, user: User, organization: Optional[Organization]
    ) -> bool: ...


_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .button {{ display: inline-block; background: #0b7a4b; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        {content}
        <div class="footer">
            <p>{org_label}</p>
        </div>
    </div>
</body>
</html>
"""


def _org_label(organization: Optional[Organization]) -> str:
    if organization is None:
        return "Coop App"
    return organization.label or organization.name


def _greeting(user: User) -> str:
    return f"Hello {user.first_name}," if user.first_name else "Hello,"


class EmailNotifier:
    """SMTP delivery with TLS or SSL; logs instead of sending when unconfigured."""

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Coop App",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: Optional[str],
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not to_email:
            logger.warning("email_skipped_no_recipient", subject=subject)
            return False
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_status=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_two_factor_code(
        self,
        user: User,
        organization: Optional[Organization],
        code: str,
        expires_at: datetime,
    ) -> bool:
        label = _org_label(organization)
        subject = f"Your {label} login code"
        minutes = max(1, int((expires_at - datetime.now(expires_at.tzinfo)).total_seconds() // 60))
        html_body = _HTML_TEMPLATE.format(
            heading="Your login code",
            content=(
                f"<p>{_greeting(user)}</p>"
                f'<p>Use this code to finish signing in:</p><p class="code">{code}</p>'
                f"<p>The code expires in {minutes} minutes. If you did not try to sign in, "
                "you can ignore this email.</p>"
            ),
            org_label=label,
        )
        text_body = (
            f"{_greeting(user)}\n\nYour {label} login code is {code}.\n\n"
            f"It expires in {minutes} minutes. If you did not try to sign in, "
            "you can ignore this email.\n"
        )
        return self._send_email(user.email, subject, html_body, text_body)

    def send_account_verification(
        self, user: User, organization: Optional[Organization], link: str
    ) -> bool:
        label = _org_label(organization)
        subject = f"Set up your {label} account"
        html_body = _HTML_TEMPLATE.format(
            heading="Finish setting up your account",
            content=(
                f"<p>{_greeting(user)}</p>"
                f"<p>An administrator created an account for you at {label}. "
                "Choose a password to activate it:</p>"
                f'<p style="margin: 30px 0;"><a href="{link}" class="button">Set password</a></p>'
                f"<p>If the button doesn't work, copy and paste this URL: {link}</p>"
            ),
            org_label=label,
        )
        text_body = (
            f"{_greeting(user)}\n\nAn administrator created an account for you at {label}.\n"
            f"Choose a password to activate it:\n\n{link}\n"
        )
        return self._send_email(user.email, subject, html_body, text_body)

    def send_registration_received(
        self, user: User, organization: Optional[Organization]
    ) -> bool:
        label = _org_label(organization)
        subject = f"{label}: registration received"
        html_body = _HTML_TEMPLATE.format(
            heading="Registration received",
            content=(
                f"<p>{_greeting(user)}</p>"
                "<p>Thanks for registering. An administrator will review and activate "
                "your account.</p>"
            ),
            org_label=label,
        )
        text_body = (
            f"{_greeting(user)}\n\nThanks for registering with {label}. "
            "An administrator will review and activate your account.\n"
        )
        return self._send_email(user.email, subject, html_body, text_body)
