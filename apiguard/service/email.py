from __future__ import annotations

import asyncio
import functools
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Optional, Protocol

from apiguard.config import Settings
from apiguard.logging import get_logger

logger = get_logger(__name__)


class NotificationSender(Protocol):
    """Outbound channel for one-time tokens and account notices.

    Implementations report failure by returning ``False`` or raising; callers
    dispatch fire-and-forget and only log the outcome.
    """

    def send_email_verification(self, to_email: str, token: str) -> bool: ...

    def send_password_reset(self, to_email: str, token: str) -> bool: ...

    def send_password_changed(self, to_email: str) -> bool: ...

    def send_workspace_invitation(
        self, to_email: str, token: str, *, workspace_name: str, inviter_name: str, role: str
    ) -> bool: ...


class EmailService:
    """SMTP sender for transactional emails.

    When SMTP is not configured the message is logged (without its body, which
    carries one-time tokens) and reported as sent.
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
        from_name: str = "APIGuard",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(self, heading: str, paragraphs: list[str], link: Optional[str] = None) -> tuple[str, str]:
        text_parts = [heading, ""] + paragraphs
        html_parts = [f"<h1>{html.escape(heading)}</h1>"]
        html_parts += [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        if link:
            text_parts += ["", link]
            escaped = html.escape(link, quote=True)
            html_parts.append(f'<p><a href="{escaped}">{escaped}</a></p>')
        text_parts += ["", "---", self.from_name]
        return "\n".join(text_parts), "<html><body>" + "".join(html_parts) + "</body></html>"

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", to=to_email, subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(exc))
            return False
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=to_email,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=to_email, subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        text_body, html_body = self._render(
            "Verify your email",
            [
                "Thanks for signing up. Confirm your email address with the link below.",
                "The link expires in 24 hours.",
            ],
            f"{self.base_url}/verify-email?token={token}",
        )
        return self._send_email(to_email, f"Verify your {self.from_name} email", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        text_body, html_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Choose a new one with the link below.",
                "The link expires in 24 hours. If you did not ask for this, ignore this email.",
            ],
            f"{self.base_url}/reset-password?token={token}",
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        text_body, html_body = self._render(
            "Your password was changed",
            [
                "The password on your account was just changed and every device was signed out.",
                "If this was not you, reset your password immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)

    def send_workspace_invitation(
        self, to_email: str, token: str, *, workspace_name: str, inviter_name: str, role: str
    ) -> bool:
        text_body, html_body = self._render(
            f"Join {workspace_name}",
            [
                f"{inviter_name} invited you to {workspace_name} as {role}.",
                "The invitation expires in 7 days.",
            ],
            f"{self.base_url}/invitations/accept?token={token}",
        )
        return self._send_email(
            to_email, f"You're invited to {workspace_name}", html_body, text_body
        )


class NotificationDispatcher:
    """Fire-and-forget delivery on a worker thread.

    Delivery failures are logged and never reach the caller. Pending sends are
    tracked so shutdown (and tests) can wait for them with ``flush``.
    """

    def __init__(self, sender: NotificationSender) -> None:
        self.sender = sender
        self._pending: set[asyncio.Task] = set()

    def dispatch(self, kind: str, *args: Any, **kwargs: Any) -> None:
        send = getattr(self.sender, kind)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop (scripts, sync callers): deliver inline
            self._deliver_inline(kind, send, *args, **kwargs)
            return
        task = loop.create_task(asyncio.to_thread(send, *args, **kwargs))
        self._pending.add(task)
        task.add_done_callback(functools.partial(self._finished, kind))

    def _deliver_inline(self, kind: str, send: Callable[..., bool], *args: Any, **kwargs: Any) -> None:
        try:
            delivered = send(*args, **kwargs)
        except Exception as exc:
            logger.error("notification_failed", kind=kind, error_type=type(exc).__name__, error=str(exc))
            return
        if delivered is False:
            logger.warning("notification_not_delivered", kind=kind)

    def _finished(self, kind: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("notification_cancelled", kind=kind)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("notification_failed", kind=kind, error_type=type(exc).__name__, error=str(exc))
        elif task.result() is False:
            logger.warning("notification_not_delivered", kind=kind)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def flush(self) -> None:
        """Wait for every dispatched notification to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
