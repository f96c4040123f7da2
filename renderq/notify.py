"""Completion notifications: a local message plus optional email."""

import logging
import smtplib
from email.message import EmailMessage
from typing import Callable, Optional
from pydantic import BaseModel
from .models import EmailSettings, Job, JobStatus
from .utils import format_duration

logger = logging.getLogger(__name__)


class NotifyResult(BaseModel):
    success: bool
    error: Optional[str] = None


class LogNotifier:
    """Local notifier that writes to the log.

    Desktop toasts are left to whatever front end embeds the queue; it can
    pass its own object with a notify_local(title, body) method instead.
    """

    def notify_local(self, title: str, body: str) -> None:
        logger.info("%s: %s", title, body)


class SmtpMailer:
    """Sends plain text email through an SMTP server."""

    def __init__(self, settings: EmailSettings, timeout: float = 30.0):
        self.settings = settings
        self.timeout = timeout

    def notify_remote(self, to: str, subject: str, body: str) -> NotifyResult:
        s = self.settings
        if not s.configured:
            return NotifyResult(success=False, error="Email not configured")

        msg = EmailMessage()
        msg["From"] = s.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        msg.add_alternative(body.replace("\n", "<br>"), subtype="html")

        try:
            if s.port == 465:
                server = smtplib.SMTP_SSL(s.smtp, s.port, timeout=self.timeout)
            else:
                server = smtplib.SMTP(s.smtp, s.port, timeout=self.timeout)
            with server:
                if s.port != 465:
                    server.starttls()
                if s.username:
                    server.login(s.username, s.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("Email to %s failed: %s", to, e)
            return NotifyResult(success=False, error=str(e))
        return NotifyResult(success=True)


class RenderNotifier:
    """Tells the user a job has finished.

    Args:
        local: object with notify_local(title, body)
        remote: object with notify_remote(to, subject, body) -> NotifyResult
        email_settings: callable returning the current EmailSettings
    """

    def __init__(self, local=None, remote=None, email_settings: Optional[Callable[[], EmailSettings]] = None):
        self.local = local or LogNotifier()
        self.remote = remote
        self.email_settings = email_settings or EmailSettings

    def notify(self, job: Job) -> None:
        title, body = self._local_message(job)
        try:
            self.local.notify_local(title, body)
        except Exception:
            logger.exception("Local notification for %s failed", job.name)

        settings = self.email_settings()
        if self.remote is None or not (settings.enabled and settings.to):
            return
        message = self._email_message(job)
        if message is None:
            return
        result = self.remote.notify_remote(settings.to, *message)
        if not result.success:
            logger.warning("Email notification for %s failed: %s", job.name, result.error)

    def send_test(self) -> NotifyResult:
        settings = self.email_settings()
        if self.remote is None:
            return NotifyResult(success=False, error="Email not configured")
        return self.remote.notify_remote(
            settings.to,
            "AE Renderer - Test Email",
            "This is a test email from AE Background Renderer. "
            "Email notifications are working correctly!",
        )

    def _local_message(self, job: Job):
        if job.status is JobStatus.COMPLETED:
            return "Render Complete", f"{job.name} finished in {format_duration(job.duration)}"
        if job.status is JobStatus.CANCELLED:
            return "Render Cancelled", f"{job.name} was cancelled"
        return "Render Failed", f"{job.name} failed: {job.error}"

    def _email_message(self, job: Job):
        if job.status is JobStatus.COMPLETED:
            return (
                "AE Render Complete",
                f"Project: {job.name}\nDuration: {format_duration(job.duration)}\nStatus: Success",
            )
        if job.status is JobStatus.ERROR:
            return (
                "AE Render Failed",
                f"Project: {job.name}\nError: {job.error}\nDetails: {job.details or 'See logs for details'}",
            )
        return None
