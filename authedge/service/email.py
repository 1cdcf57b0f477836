from __future__ import annotations

import asyncio
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional, Set

from authedge.logging import get_logger, redact_email

logger = get_logger(__name__)

_CODE_SUBJECTS = {
    "email_verification": "Your email verification code",
    "password_reset": "Your password reset code",
}


class EmailService:
    """Account notices over SMTP.

    Without an SMTP host the message is logged instead of sent, which is what
    local development and the tests rely on. Delivery failures are logged and
    reported as ``False``; callers never see SMTP exceptions.
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
        from_name: str = "AuthEdge",
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

    def _deliver(self, msg: MIMEMultipart, to_email: str) -> None:
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

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        if not self.is_configured:
            # Dev mode: log instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))

        try:
            self._deliver(msg, to_email)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_lockout_notice(self, to_email: str, locked_until: Optional[datetime]) -> bool:
        until = locked_until.strftime("%Y-%m-%d %H:%M UTC") if locked_until else "further notice"
        text_body = f"""Your account has been temporarily locked

We saw too many failed sign-in attempts on your account, so sign-in is
disabled until {until}.

If these attempts were not yours, consider changing your password once the
lock lifts.

---
{self.from_name}
"""
        return self._send_email(to_email, "Your account has been locked", text_body)

    def send_code(self, to_email: str, purpose: str, code: str, *, ttl_minutes: int) -> bool:
        subject = _CODE_SUBJECTS.get(purpose, "Your verification code")
        text_body = f"""{subject}

Enter this code to continue: {code}

The code expires in {ttl_minutes} minutes. If you did not request it, you can
ignore this message.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, text_body)


class Notifier:
    """Runs blocking notice senders off the request path.

    ``notify`` returns immediately. Failures, including a sender reporting
    ``False``, are logged as ``notification_failed`` and go no further.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, kind: str, func: Callable[..., bool], *args, **kwargs) -> asyncio.Task:
        task = asyncio.create_task(self._run(kind, func, *args, **kwargs))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, kind: str, func: Callable[..., bool], *args, **kwargs) -> None:
        try:
            delivered = await asyncio.to_thread(func, *args, **kwargs)
        except Exception as exc:
            logger.error(
                "notification_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            logger.warning("notification_failed", kind=kind, error="not delivered")

    async def drain(self) -> None:
        """Wait for outstanding notices; used at shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = ["EmailService", "Notifier"]
