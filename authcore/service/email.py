from __future__ import annotations

import asyncio
import inspect
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Optional

from authcore.config import EmailOptions, EmailTemplate, Settings
from authcore.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    from_email: str
    subject: str
    text: str
    html: Optional[str] = None


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def render_template(template: EmailTemplate, **values: str) -> EmailTemplate:
    """Substitute ``{name}`` placeholders; other braces (CSS, JSON) are left alone."""

    def _render(raw: Optional[str]) -> Optional[str]:
        if raw is None:
            return None
        for key, value in values.items():
            raw = raw.replace("{" + key + "}", value)
        return raw

    return EmailTemplate(
        subject=_render(template.subject),
        text=_render(template.text),
        html=_render(template.html),
    )


class EmailService:
    """SMTP transport usable as the ``send_email`` collaborator.

    Falls back to logging the message (without its body) when no SMTP host is
    configured, which is the development default.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_name: str = "authcore",
        timeout: float = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host)

    def __call__(self, message: EmailMessage) -> bool:
        return self.send(message)

    def _build(self, message: EmailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{message.from_email}>"
        msg["To"] = message.to
        msg.attach(MIMEText(message.text, "plain"))
        if message.html:
            msg.attach(MIMEText(message.html, "html"))
        return msg

    def send(self, message: EmailMessage) -> bool:
        """Send ``message`` via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(message.to),
                subject=message.subject,
            )
            return True

        msg = self._build(message)
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(message.from_email, message.to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(message.from_email, message.to, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(message.to),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(message.to),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(message.to),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(message.to),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(message.to), subject=message.subject)
        return True


class EmailNotifier:
    """Render the configured templates and hand them to ``send_email``.

    ``send_email`` may be a plain callable or a coroutine function; it
    receives a single :class:`EmailMessage`.
    """

    def __init__(
        self, options: EmailOptions, send_email: Optional[Callable[[EmailMessage], Any]] = None
    ) -> None:
        self.options = options
        self.send_email = send_email or options.send_email

    async def _deliver(self, to: str, template: EmailTemplate, **values: str) -> bool:
        if self.send_email is None:
            logger.warning("email_sender_missing", to=redact_email(to))
            return False
        rendered = render_template(template, **values)
        message = EmailMessage(
            to=to,
            from_email=self.options.from_email,
            subject=rendered.subject,
            text=rendered.text,
            html=rendered.html,
        )
        try:
            if inspect.iscoroutinefunction(self.send_email):
                result = await self.send_email(message)
            else:
                # SMTP delivery blocks; keep it off the event loop
                result = await asyncio.to_thread(self.send_email, message)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as exc:
            # delivery failures must not change the caller-visible outcome
            logger.error(
                "email_delivery_failed",
                to=redact_email(to),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return result is not False

    async def send_password_reset(self, to: str, token: str) -> bool:
        return await self._deliver(
            to, self.options.reset_password_template, token=token, email=to
        )

    async def send_verification(self, to: str, token: str) -> bool:
        return await self._deliver(
            to, self.options.verification_template, token=token, email=to
        )
