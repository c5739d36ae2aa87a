from __future__ import annotations

import asyncio
import html
import re
import smtplib
import ssl
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from warden.config import Settings
from warden.logging import get_logger
from warden.storage.models import utc_now

logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
{body}
        <div class="footer">
            <p>&copy; {{{{year}}}} {{{{CompanyName}}}} &middot; {{{{ContactEmail}}}}</p>
        </div>
    </div>
</body>
</html>
"""

# name -> (html body, text body); both use {{Var}} placeholders
_TEMPLATES: Dict[str, Tuple[str, str]] = {
    "activation": (
        """        <h1>Activate your account</h1>
        <p>Hi {{username}}, thanks for signing up. Confirm your email address to activate your account:</p>
        <p style="margin: 30px 0;"><a href="{{activationUrl}}" class="button">Activate Account</a></p>
        <p>This link expires in {{expiresIn}}.</p>
        <p>If the button doesn't work, copy and paste this URL: {{activationUrl}}</p>""",
        "Hi {{username}},\n\nActivate your {{CompanyName}} account by visiting:\n\n"
        "{{activationUrl}}\n\nThis link expires in {{expiresIn}}.\n",
    ),
    "otp": (
        """        <h1>Your authentication code</h1>
        <p class="code">{{otp}}</p>
        <p>This code expires in {{expiresIn}}. If you did not try to sign in, change your password.</p>""",
        "Your {{CompanyName}} authentication code is: {{otp}}\n\n"
        "This code expires in {{expiresIn}}.\n",
    ),
    "password-reset": (
        """        <h1>Reset your password</h1>
        <p>We received a request to reset your password. Choose a new one here:</p>
        <p style="margin: 30px 0;"><a href="{{resetUrl}}" class="button">Reset Password</a></p>
        <p>This link expires in {{expiresIn}}. If you didn't request this, you can safely ignore this email.</p>
        <p>If the button doesn't work, copy and paste this URL: {{resetUrl}}</p>""",
        "You requested a password reset. Set a new password here:\n\n{{resetUrl}}\n\n"
        "This link expires in {{expiresIn}}. If you didn't request this, ignore this email.\n",
    ),
    "password-changed": (
        """        <h1>Your password was changed</h1>
        <p>Hi {{username}}, the password for your account was just changed.</p>
        <p>If you didn't make this change, contact {{ContactEmail}} immediately.</p>""",
        "Hi {{username}},\n\nThe password for your {{CompanyName}} account was just changed.\n"
        "If you didn't make this change, contact {{ContactEmail}} immediately.\n",
    ),
    "welcome": (
        """        <h1>Welcome to {{CompanyName}}</h1>
        <p>Hi {{username}}, an administrator created an account for you.</p>
        <p style="margin: 30px 0;"><a href="{{loginUrl}}" class="button">Sign in</a></p>""",
        "Hi {{username}},\n\nAn administrator created a {{CompanyName}} account for you.\n"
        "Sign in at {{loginUrl}}\n",
    ),
    "account-activated": (
        """        <h1>Your account is active</h1>
        <p>Hi {{username}}, an administrator activated your account. You can now sign in.</p>
        <p style="margin: 30px 0;"><a href="{{loginUrl}}" class="button">Sign in</a></p>""",
        "Hi {{username}},\n\nAn administrator activated your {{CompanyName}} account.\n"
        "Sign in at {{loginUrl}}\n",
    ),
    "account-deactivated": (
        """        <h1>Your account was deactivated</h1>
        <p>Hi {{username}}, an administrator deactivated your account.</p>
        <p>Contact {{ContactEmail}} if you think this is a mistake.</p>""",
        "Hi {{username}},\n\nAn administrator deactivated your {{CompanyName}} account.\n"
        "Contact {{ContactEmail}} if you think this is a mistake.\n",
    ),
    "account-deleted": (
        """        <h1>Your account was deleted</h1>
        <p>Hi {{username}}, your account and its data have been removed.</p>
        <p>Contact {{ContactEmail}} if you think this is a mistake.</p>""",
        "Hi {{username}},\n\nYour {{CompanyName}} account has been deleted.\n"
        "Contact {{ContactEmail}} if you think this is a mistake.\n",
    ),
    "admin-password-reset": (
        """        <h1>Your password was reset</h1>
        <p>Hi {{username}}, an administrator reset your password. Your temporary password is:</p>
        <p class="code">{{tempPassword}}</p>
        <p>Sign in at <a href="{{loginUrl}}">{{loginUrl}}</a> and change it right away.</p>""",
        "Hi {{username}},\n\nAn administrator reset your {{CompanyName}} password.\n"
        "Temporary password: {{tempPassword}}\n\nSign in at {{loginUrl}} and change it right away.\n",
    ),
}


class EmailDeliveryError(RuntimeError):
    """Raised when the SMTP transport rejects or cannot deliver a message."""


@dataclass(frozen=True)
class EmailReceipt:
    message_id: str
    to: str
    delivered: bool


@dataclass(frozen=True)
class OutboundEmail:
    to: str
    subject: str
    template_name: str
    variables: Dict[str, Any] = field(default_factory=dict)
    html_body: str = ""
    text_body: str = ""


def _humanize(minutes: int) -> str:
    if minutes % (24 * 60) == 0:
        days = minutes // (24 * 60)
        return f"{days} day" + ("s" if days != 1 else "")
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" + ("s" if hours != 1 else "")
    return f"{minutes} minutes"


def _substitute(template: str, variables: Mapping[str, Any], *, escape: bool) -> str:
    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        value = str(variables[key])
        return html.escape(value) if escape else value

    return _PLACEHOLDER.sub(_replace, template)


class EmailService:
    """Transactional email over SMTP.

    Templates are plain HTML/text with ``{{Var}}`` placeholders. When no SMTP
    host is configured the message is logged (without its body) instead of
    sent, which keeps local development working.
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
        from_name: str = "Warden",
        site_url: str = "http://localhost:3000",
        company_name: str = "Warden",
        contact_email: str = "support@example.com",
        clock: Callable[[], datetime] = utc_now,
        logger=None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.site_url = site_url.rstrip("/")
        self.company_name = company_name
        self.contact_email = contact_email
        self._clock = clock
        self.logger = logger or get_logger(__name__)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            site_url=settings.site_url,
            company_name=settings.company_name,
            contact_email=settings.contact_email,
            **kwargs,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def default_variables(self) -> Dict[str, Any]:
        return {
            "CompanyName": self.company_name,
            "ContactEmail": self.contact_email,
            "year": self._clock().year,
            "SiteUrl": self.site_url,
        }

    def render(self, template_name: str, variables: Mapping[str, Any]) -> Tuple[str, str]:
        """Return ``(html, text)`` for ``template_name`` with defaults merged in."""
        merged = {**self.default_variables(), **variables}
        template = _TEMPLATES.get(template_name)
        if template is None:
            self.logger.warning("email_template_missing", template=template_name)
            body = "        <h1>{{subject}}</h1>\n        <p>{{message}}</p>"
            text = "{{message}}\n"
            merged.setdefault("subject", f"Message from {self.company_name}")
            merged.setdefault("message", "Please check your account.")
        else:
            body, text = template
        html_body = _substitute(_LAYOUT.format(body=body), merged, escape=True)
        return html_body, _substitute(text, merged, escape=False)

    async def send(
        self,
        to: str,
        subject: str,
        template_name: str,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> EmailReceipt:
        """Render and deliver one message.

        Raises:
            EmailDeliveryError: the transport failed; callers decide whether
                the failure is fatal for their operation.
        """
        variables = dict(variables or {})
        html_body, text_body = self.render(template_name, variables)
        message = OutboundEmail(
            to=to,
            subject=subject,
            template_name=template_name,
            variables=variables,
            html_body=html_body,
            text_body=text_body,
        )
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            message_id = make_msgid(domain="warden.local")
            self.logger.info(
                "email_dev_mode",
                to=self._redact_email(to),
                subject=subject,
                template=template_name,
                message_id=message_id,
            )
            return EmailReceipt(message_id=message_id, to=to, delivered=False)
        message_id = await asyncio.to_thread(self._deliver, message)
        return EmailReceipt(message_id=message_id, to=to, delivered=True)

    def _deliver(self, message: OutboundEmail) -> str:
        """Send ``message`` via SMTP and return its Message-ID."""
        to_email = message.to
        message_id = make_msgid()
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(message.text_body, "plain"))
        msg.attach(MIMEText(message.html_body, "html"))

        context = ssl.create_default_context()
        self.logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=self._redact_email(to_email),
        )
        try:
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
        except smtplib.SMTPAuthenticationError as e:
            self.logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            raise EmailDeliveryError("SMTP authentication failed") from e
        except smtplib.SMTPConnectError as e:
            self.logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            raise EmailDeliveryError("could not connect to SMTP server") from e
        except smtplib.SMTPRecipientsRefused as e:
            self.logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            raise EmailDeliveryError("recipient refused") from e
        except smtplib.SMTPException as e:
            self.logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("SMTP error") from e
        except ssl.SSLError as e:
            self.logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            raise EmailDeliveryError("TLS negotiation failed") from e
        except OSError as e:
            # Covers socket timeouts and refused connections
            self.logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("SMTP transport error") from e

        self.logger.info(
            "email_sent",
            to=self._redact_email(to_email),
            subject=message.subject,
            template=message.template_name,
        )
        return message_id

    # Transactional helpers -------------------------------------------------

    async def send_activation(
        self, to: str, *, username: str, token: str, ttl_minutes: int
    ) -> EmailReceipt:
        activation_url = f"{self.site_url}/api/auth/activate/{token}"
        return await self.send(
            to,
            "Activate Your Account",
            "activation",
            {
                "username": username,
                "token": token,
                "activationUrl": activation_url,
                "expiresIn": _humanize(ttl_minutes),
            },
        )

    async def send_otp(self, to: str, *, otp: str, ttl_minutes: int) -> EmailReceipt:
        return await self.send(
            to,
            "Your Authentication Code",
            "otp",
            {"otp": otp, "expiresIn": _humanize(ttl_minutes)},
        )

    async def send_password_reset(
        self, to: str, *, token: str, ttl_minutes: int
    ) -> EmailReceipt:
        reset_url = f"{self.site_url}/api/auth/reset-password/{token}"
        return await self.send(
            to,
            "Reset Your Password",
            "password-reset",
            {"token": token, "resetUrl": reset_url, "expiresIn": _humanize(ttl_minutes)},
        )

    async def send_password_changed(self, to: str, *, username: str) -> EmailReceipt:
        return await self.send(
            to, "Your Password Was Changed", "password-changed", {"username": username}
        )

    async def send_welcome(self, to: str, *, username: str) -> EmailReceipt:
        return await self.send(
            to,
            f"Welcome to {self.company_name}",
            "welcome",
            {"username": username, "loginUrl": f"{self.site_url}/login"},
        )

    async def send_account_status(
        self, to: str, *, username: str, active: bool
    ) -> EmailReceipt:
        if active:
            return await self.send(
                to,
                "Your Account Has Been Activated",
                "account-activated",
                {"username": username, "loginUrl": f"{self.site_url}/login"},
            )
        return await self.send(
            to,
            "Your Account Has Been Deactivated",
            "account-deactivated",
            {"username": username},
        )

    async def send_account_deleted(self, to: str, *, username: str) -> EmailReceipt:
        return await self.send(
            to, "Your Account Has Been Deleted", "account-deleted", {"username": username}
        )

    async def send_admin_password_reset(
        self, to: str, *, username: str, temp_password: str
    ) -> EmailReceipt:
        return await self.send(
            to,
            "Your Password Has Been Reset",
            "admin-password-reset",
            {
                "username": username,
                "tempPassword": temp_password,
                "loginUrl": f"{self.site_url}/login",
            },
        )
