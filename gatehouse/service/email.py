from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from datetime import timedelta
from html import escape
from typing import Any, Callable, Optional, Set

from gatehouse.logging import get_logger, redact_email

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>Hi {name},</p>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{url}" class="button">{action}</a>
        </p>
        <p>{expiry}</p>
        <div class="footer">
            <p>{product}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

Hi {name},

{intro}

{url}

{expiry}

---
{product}
"""


def describe_ttl(ttl: timedelta) -> str:
    """Render a link lifetime as ``"24 hours"``, ``"1 hour"`` or ``"30 minutes"``."""
    minutes = max(1, int(ttl.total_seconds() // 60))
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour{'' if hours == 1 else 's'}"
    return f"{minutes} minute{'' if minutes == 1 else 's'}"


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host or sender is configured the message is logged instead
    of sent, which keeps local development and tests free of a mail server.
    Sending is blocking; request handlers go through :meth:`dispatch` so a
    slow relay never holds up a response.
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
        from_name: str = "Gatehouse",
        base_url: Optional[str] = None,
        send_timeout: float = 30.0,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
        log_links: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.send_timeout = send_timeout
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self.log_links = log_links
        self._pending: Set[asyncio.Task] = set()

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        *,
        link: Optional[str] = None,
    ) -> bool:
        """Send one message; returns False on any delivery failure.

        Without SMTP the message is only logged, and its body never is;
        ``link`` is logged in full when ``log_links`` is on.
        """
        if not self.is_configured:
            extra = {"link": link} if self.log_links and link else {}
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject, **extra)
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
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=redact_email(to_email),
            )
            timeout = self.send_timeout
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=timeout
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
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=redact_email(to_email))
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
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_network_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _render(
        self,
        *,
        name: str,
        heading: str,
        intro: str,
        action: str,
        url: str,
        expiry: str,
    ) -> tuple[str, str]:
        html_body = _HTML_TEMPLATE.format(
            heading=escape(heading),
            name=escape(name),
            intro=escape(intro),
            action=escape(action),
            url=escape(url, quote=True),
            expiry=escape(expiry),
            product=escape(self.from_name),
        )
        text_body = _TEXT_TEMPLATE.format(
            heading=heading,
            name=name,
            intro=intro,
            url=url,
            expiry=expiry,
            product=self.from_name,
        )
        return html_body, text_body

    def send_verification_email(self, to_email: str, name: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            name=name or "there",
            heading="Verify your email",
            intro="Thanks for signing up! Please confirm your email address by clicking the button below.",
            action="Verify Email",
            url=verify_url,
            expiry=f"This link will expire in {describe_ttl(self.verification_ttl)}.",
        )
        return self._send_email(
            to_email,
            f"Verify your {self.from_name} email",
            html_body,
            text_body,
            link=verify_url,
        )

    def send_password_reset_email(self, to_email: str, name: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            name=name or "there",
            heading="Reset your password",
            intro="We received a request to reset your password. If you didn't request this, you can safely ignore this email.",
            action="Reset Password",
            url=reset_url,
            expiry=f"This link will expire in {describe_ttl(self.reset_ttl)}.",
        )
        return self._send_email(
            to_email,
            f"Reset your {self.from_name} password",
            html_body,
            text_body,
            link=reset_url,
        )

    def dispatch(self, send: Callable[..., bool], *args: Any, kind: str) -> asyncio.Task:
        """Run a blocking ``send`` call in the background, at most once.

        The task is bounded by ``send_timeout``; failures and timeouts are
        logged and dropped. Must be called from a running event loop.
        """
        task = asyncio.get_running_loop().create_task(self._deliver(send, args, kind))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, send: Callable[..., bool], args: tuple, kind: str) -> None:
        try:
            delivered = await asyncio.wait_for(
                asyncio.to_thread(send, *args), timeout=self.send_timeout
            )
        except asyncio.TimeoutError:
            logger.error(
                "email_dispatch_timeout", kind=kind, timeout_seconds=self.send_timeout
            )
            return
        except Exception as exc:
            logger.error(
                "email_dispatch_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            logger.error("email_dispatch_failed", kind=kind, error_type="delivery_failed")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries, e.g. during application shutdown."""
        if not self._pending:
            return
        pending = list(self._pending)
        _done, still_pending = await asyncio.wait(
            pending, timeout=timeout if timeout is not None else self.send_timeout
        )
        for task in still_pending:
            task.cancel()
        if still_pending:
            logger.warning("email_drain_incomplete", cancelled=len(still_pending))
