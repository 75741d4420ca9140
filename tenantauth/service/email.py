from __future__ import annotations

import asyncio
import heapq
import itertools
import smtplib
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from html import escape
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
from urllib.parse import quote

from tenantauth.logging import get_logger

logger = get_logger(__name__)


class EmailTemplate(str, Enum):
    CONFIRM_EMAIL = "confirm-email"
    MAGIC_LINK = "magic-link"
    FORGOT_PASSWORD = "forgot-password"
    WELCOME = "welcome"
    INVITE_USER = "invite-user"


@dataclass(frozen=True)
class _Copy:
    subject: str
    heading: str
    body: str
    action: str
    # Path segment under <auth_base_url>/auth/ that receives the token; None links to the app
    link_path: Optional[str]
    expiry_note: Optional[str] = None


_COPY: Dict[EmailTemplate, _Copy] = {
    EmailTemplate.CONFIRM_EMAIL: _Copy(
        subject="Confirm your email for {app_name}",
        heading="Confirm your email",
        body="Thanks for signing up to {app_name}. Please confirm your email address by clicking the button below.",
        action="Confirm Email",
        link_path="confirm-email",
        expiry_note="This link will expire in 24 hours.",
    ),
    EmailTemplate.MAGIC_LINK: _Copy(
        subject="Your sign in link for {app_name}",
        heading="Sign in to {app_name}",
        body="Click the button below to sign in. No password needed.",
        action="Sign In",
        link_path="magic",
        expiry_note="This link will expire in 30 minutes and can only be used once.",
    ),
    EmailTemplate.FORGOT_PASSWORD: _Copy(
        subject="Reset your {app_name} password",
        heading="Reset your password",
        body="We received a request to reset the password for your account. Click the button below to choose a new password.",
        action="Reset Password",
        link_path="reset-password",
        expiry_note="This link will expire in 30 minutes. If you didn't request this, you can safely ignore this email.",
    ),
    EmailTemplate.WELCOME: _Copy(
        subject="Welcome to {app_name}",
        heading="Welcome aboard",
        body="We're glad to have you at {app_name}. Everything is ready for you.",
        action="Open {app_name}",
        link_path=None,
    ),
    EmailTemplate.INVITE_USER: _Copy(
        subject="You've been invited to {app_name}",
        heading="You're invited",
        body="You have been invited to join {app_name}. Accept the invitation to set up your account.",
        action="Accept Invitation",
        link_path="confirm-email",
        expiry_note="This invitation will expire in 7 days.",
    ),
}


def first_name(full_name: Optional[str]) -> Optional[str]:
    if not full_name or not full_name.strip():
        return None
    return full_name.strip().split()[0]


class EmailTrigger(Protocol):
    """Send template X with payload Y to recipient Z.

    ``synchronous=True`` awaits delivery and returns whether it was accepted;
    ``synchronous=False`` (or any ``scheduled_at``) queues the send and returns
    whether it was queued.
    """

    async def send(
        self,
        template: EmailTemplate,
        recipient: str,
        payload: Dict[str, Any],
        *,
        scheduled_at: Optional[datetime] = None,
        synchronous: bool = True,
    ) -> bool: ...


@dataclass
class EmailJob:
    template: EmailTemplate
    recipient: str
    payload: Dict[str, Any]
    scheduled_at: Optional[datetime] = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EmailDispatcher:
    """Bounded queue of fire-and-forget sends drained by one worker task.

    Jobs with a future ``scheduled_at`` are parked in a heap until due. A full
    queue drops the job and logs it.
    """

    def __init__(
        self,
        deliver: Callable[[EmailJob], bool],
        *,
        max_queue: int = 1000,
    ) -> None:
        self._deliver_fn = deliver
        self._queue: asyncio.Queue[EmailJob] = asyncio.Queue(maxsize=max_queue)
        self._scheduled: List[Tuple[datetime, int, EmailJob]] = []
        self._seq = itertools.count()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def pending(self) -> int:
        return self._queue.qsize() + len(self._scheduled)

    def submit(self, job: EmailJob) -> bool:
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.warning(
                "email_queue_full",
                template=job.template.value,
                queue_size=self._queue.maxsize,
            )
            return False
        return True

    async def start(self) -> None:
        if self._running:
            logger.warning("email_dispatcher_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("email_dispatcher_started", queue_size=self._queue.maxsize)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("email_dispatcher_stopped", pending=self.pending())

    def _seconds_until_next_due(self) -> Optional[float]:
        if not self._scheduled:
            return None
        due_at = self._scheduled[0][0]
        return max(0.0, (due_at - datetime.now(timezone.utc)).total_seconds())

    def _pop_due(self) -> List[EmailJob]:
        now = datetime.now(timezone.utc)
        due: List[EmailJob] = []
        while self._scheduled and self._scheduled[0][0] <= now:
            due.append(heapq.heappop(self._scheduled)[2])
        return due

    async def _run_loop(self) -> None:
        while self._running:
            try:
                job = await asyncio.wait_for(
                    self._queue.get(), timeout=self._seconds_until_next_due()
                )
            except asyncio.TimeoutError:
                job = None
            if job is not None:
                if job.scheduled_at and job.scheduled_at > datetime.now(timezone.utc):
                    heapq.heappush(
                        self._scheduled, (job.scheduled_at, next(self._seq), job)
                    )
                else:
                    await self._deliver(job)
            for due in self._pop_due():
                await self._deliver(due)

    async def _deliver(self, job: EmailJob) -> None:
        try:
            accepted = await asyncio.to_thread(self._deliver_fn, job)
        except Exception as exc:
            logger.error(
                "email_job_failed",
                template=job.template.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not accepted:
            logger.warning("email_job_rejected", template=job.template.value)


class EmailService:
    """Transactional email over SMTP.

    Renders the five auth templates and falls back to logging when SMTP is not
    configured (dev mode). Implements :class:`EmailTrigger`.
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
        from_name: Optional[str] = None,
        base_url: Optional[str] = None,
        max_queue: int = 1000,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.dispatcher = EmailDispatcher(self.deliver, max_queue=max_queue)

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def link_for(self, template: EmailTemplate, payload: Dict[str, Any]) -> str:
        copy = _COPY[template]
        app_url = payload.get("app_url") or ""
        if copy.link_path is None:
            return app_url
        token = quote(str(payload.get("token", "")), safe="")
        return f"{self.base_url}/auth/{copy.link_path}/{token}?r={quote(app_url, safe='')}"

    def render(
        self, template: EmailTemplate, payload: Dict[str, Any]
    ) -> Tuple[str, str, str]:
        """Return (subject, html_body, text_body) for a template and payload."""
        copy = _COPY[template]
        app_name = payload.get("app_name") or "your app"
        greeting_name = payload.get("user_first_name") or "there"
        url = self.link_for(template, payload)
        subject = copy.subject.format(app_name=app_name)
        heading = copy.heading.format(app_name=app_name)
        body = copy.body.format(app_name=app_name)
        action = copy.action.format(app_name=app_name)
        note_html = f"<p>{escape(copy.expiry_note)}</p>" if copy.expiry_note else ""
        note_text = f"\n{copy.expiry_note}\n" if copy.expiry_note else ""

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1f6feb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{escape(heading)}</h1>
        <p>Hey {escape(greeting_name)}!</p>
        <p>{escape(body)}</p>
        <p style="margin: 30px 0;">
            <a href="{escape(url, quote=True)}" class="button">{escape(action)}</a>
        </p>
        {note_html}
        <div class="footer">
            <p>{escape(app_name)}</p>
            <p>If the button doesn't work, copy and paste this URL: {escape(url)}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""{heading}

Hey {greeting_name}!

{body}

{url}
{note_text}
---
{app_name}
"""
        return subject, html_body, text_body

    def _sender_name(self, payload: Dict[str, Any]) -> str:
        if self.from_name:
            return self.from_name
        app_name = payload.get("app_name")
        return f"{app_name} Team" if app_name else "Team"

    def deliver(self, job: EmailJob) -> bool:
        """Render and send one job. Blocking; run it off the event loop."""
        subject, html_body, text_body = self.render(job.template, job.payload)
        return self._send_email(
            job.recipient,
            subject,
            html_body,
            text_body,
            from_name=self._sender_name(job.payload),
            template=job.template,
        )

    async def send(
        self,
        template: EmailTemplate,
        recipient: str,
        payload: Dict[str, Any],
        *,
        scheduled_at: Optional[datetime] = None,
        synchronous: bool = True,
    ) -> bool:
        job = EmailJob(
            template=EmailTemplate(template),
            recipient=recipient,
            payload=dict(payload),
            scheduled_at=scheduled_at,
        )
        if synchronous and scheduled_at is None:
            return await asyncio.to_thread(self.deliver, job)
        queued = self.dispatcher.submit(job)
        logger.info(
            "email_queued" if queued else "email_dropped",
            template=job.template.value,
            to=self._redact_email(recipient),
            scheduled_at=scheduled_at.isoformat() if scheduled_at else None,
        )
        return queued

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        *,
        from_name: str,
        template: EmailTemplate,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                template=template.value,
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{from_name} <{self.from_email}>"
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

            logger.info(
                "email_sent",
                to=self._redact_email(to_email),
                template=template.value,
            )
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
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
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
                "email_connection_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
