"""
Outbound email.

Sending is a best-effort side effect: callers get a SideEffectResult back
and decide whether to mention a failure, but a failed send never undoes
the write that triggered it.
"""
import asyncio
from dataclasses import dataclass
from email.message import EmailMessage
import smtplib
from typing import Optional

from provider_admin.core import config
from provider_admin.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class SideEffectResult:
    """Outcome of a non-fatal side effect."""
    ok: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class OutboundEmail:
    to: str
    subject: str
    body: str


@dataclass(frozen=True)
class RegistrationEmail:
    """Welcome email carrying a temporary password."""
    to: str
    user_name: str
    user_role: str
    customer_name: str
    temp_password: str
    login_url: str
    username: str
    provider_group_name: Optional[str] = None

    def render(self) -> OutboundEmail:
        group_line = f"Provider group: {self.provider_group_name}\n" if self.provider_group_name else ""
        body = (
            f"Hello {self.user_name},\n\n"
            f"An account has been created for you at {self.customer_name}.\n\n"
            f"Username: {self.username}\n"
            f"Role: {self.user_role}\n"
            f"{group_line}"
            f"Temporary password: {self.temp_password}\n\n"
            f"Sign in at {self.login_url}. You will be asked to choose a new password.\n"
        )
        return OutboundEmail(to=self.to, subject=f"Your account for {self.customer_name}", body=body)


@dataclass(frozen=True)
class PasswordResetEmail:
    """Sent after an administrator resets someone's password."""
    to: str
    recipient_name: str
    username: str
    temp_password: str
    login_url: str
    requested_by_name: Optional[str] = None
    customer_name: Optional[str] = None

    def render(self) -> OutboundEmail:
        by = f" by {self.requested_by_name}" if self.requested_by_name else ""
        at = f" for {self.customer_name}" if self.customer_name else ""
        body = (
            f"Hello {self.recipient_name},\n\n"
            f"Your password{at} was reset{by}.\n\n"
            f"Username: {self.username}\n"
            f"New password: {self.temp_password}\n\n"
            f"Sign in at {self.login_url}. You will be asked to choose a new password.\n"
        )
        return OutboundEmail(to=self.to, subject="Your password has been reset", body=body)


class EmailSender:
    """Sends rendered email. The base class only logs; SmtpEmailSender delivers."""

    async def send(self, message: OutboundEmail) -> None:
        log.info("Email (not delivered, SMTP_HOST unset) to=%s subject=%r", message.to, message.subject)


class SmtpEmailSender(EmailSender):
    def __init__(self, host: str, port: int, username: Optional[str], password: Optional[str], sender: str):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender

    def _send_sync(self, message: OutboundEmail) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = message.to
        msg["Subject"] = message.subject
        msg.set_content(message.body)
        with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
            smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(msg)

    async def send(self, message: OutboundEmail) -> None:
        await asyncio.to_thread(self._send_sync, message)


_sender: EmailSender | None = None


def get_email_sender() -> EmailSender:
    """FastAPI dependency returning the process-wide sender."""
    global _sender
    if _sender is None:
        if config.SMTP_HOST:
            _sender = SmtpEmailSender(
                config.SMTP_HOST, config.SMTP_PORT, config.SMTP_USERNAME, config.SMTP_PASSWORD, config.EMAIL_FROM
            )
        else:
            _sender = EmailSender()
    return _sender


def login_url() -> str:
    return f"{config.FRONTEND_URL.rstrip('/')}/login"


async def send_best_effort(sender: EmailSender, email: RegistrationEmail | PasswordResetEmail) -> SideEffectResult:
    """Render and send; log and report failures instead of raising."""
    try:
        await sender.send(email.render())
    except Exception as exc:  # noqa: BLE001 - any transport failure is non-fatal here
        log.error("Failed to send %s to %s: %s", type(email).__name__, email.to, exc)
        return SideEffectResult(ok=False, error=str(exc))
    log.info("%s sent to %s", type(email).__name__, email.to)
    return SideEffectResult(ok=True)
