"""
Email Service.

SMTP delivery for the notification dispatcher, with one HTML template.
When MAIL_SERVER is not configured, emails are logged but not sent
(dev/test mode).

Every attempt is recorded in EmailLog. ``send`` never raises: SMTP errors
and timeouts come back as an EmailLog with status='failed' and the
error text, and the dispatcher decides what to do with it.

Configuration (env vars):
    MAIL_SERVER               SMTP host (default: None -> log-only mode)
    MAIL_PORT                 SMTP port (default: 587)
    MAIL_USE_TLS              Use STARTTLS (default: true)
    MAIL_USERNAME             SMTP username
    MAIL_PASSWORD             SMTP password
    MAIL_DEFAULT_SENDER       From address
    DELIVERY_TIMEOUT_SECONDS  Socket timeout per SMTP operation
"""

from __future__ import annotations

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app

from pmis.models import db
from pmis.models.scheduling import EmailLog
from pmis.utils.helpers import utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_TEMPLATE = "notification_alert"

_NOTIFICATION_HTML = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: #1e3a5f; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">PMMIS</h2>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        <div style="background: {priority_color}; color: white; padding: 4px 12px; border-radius: 4px;
                    display: inline-block; font-size: 12px; font-weight: 600; text-transform: uppercase;">
            {priority}
        </div>
        <h3 style="margin: 16px 0 8px; color: #1e293b;">{title}</h3>
        <p style="color: #475569; line-height: 1.6; white-space: pre-line;">{message}</p>
        {link}
    </div>
    <div style="background: #f1f5f9; padding: 12px 24px; border-radius: 0 0 8px 8px;
                border: 1px solid #e2e8f0; border-top: none; text-align: center;">
        <p style="color: #94a3b8; font-size: 12px; margin: 0;">
            Automated notification. Delivery preferences can be changed in your profile.
        </p>
    </div>
</div>
"""

PRIORITY_COLORS = {
    "low": "#64748b",
    "normal": "#3b82f6",
    "high": "#f59e0b",
    "urgent": "#ef4444",
}


def render_notification(notification, base_url="") -> str:
    """HTML body for a Notification row."""
    link = ""
    if notification.action_url and base_url:
        href = html.escape(f"{base_url}{notification.action_url}")
        link = (f'<p><a href="{href}" style="color: #2563eb;">Open in PMMIS</a></p>')
    priority = notification.priority.value
    return _NOTIFICATION_HTML.format(
        priority=priority,
        priority_color=PRIORITY_COLORS.get(priority, PRIORITY_COLORS["normal"]),
        title=html.escape(notification.title),
        message=html.escape(notification.message or ""),
        link=link,
    )


class EmailService:
    """
    Email sending service.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database but not actually sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        subject: str,
        html_body: str,
        template_name: str | None = None,
        notification_id: int | None = None,
    ) -> EmailLog:
        """
        Send an email and log it.

        Returns:
            The flushed EmailLog; ``status`` is 'sent' or 'failed'.
        """
        log = EmailLog(
            recipient_email=to_email,
            subject=subject[:500],
            template_name=template_name,
            status="queued",
            notification_id=notification_id,
        )
        db.session.add(log)
        db.session.flush()

        if not cls.is_configured():
            log.status = "sent"
            log.sent_at = utcnow()
            logger.info("Email (dev mode): to=%s subject='%s'", to_email, subject,
                        extra={"notification_id": notification_id, "channel": "email"})
            return log

        try:
            cls._send_smtp(to_email=to_email, subject=subject, html_body=html_body)
            log.status = "sent"
            log.sent_at = utcnow()
            logger.info("Email sent: to=%s subject='%s'", to_email, subject,
                        extra={"notification_id": notification_id, "channel": "email"})
        except (smtplib.SMTPException, OSError) as exc:
            # OSError covers socket.timeout and refused connections
            log.status = "failed"
            log.error_message = f"{type(exc).__name__}: {exc}"[:1000]
            logger.error("Email failed: to=%s error=%s", to_email, exc,
                         extra={"notification_id": notification_id, "channel": "email"})
        return log

    @staticmethod
    def _send_smtp(*, to_email: str, subject: str, html_body: str) -> None:
        """Actually send via SMTP."""
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        sender = cfg.get("MAIL_DEFAULT_SENDER") or f"noreply@{server}"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = to_email
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        timeout = cfg.get("DELIVERY_TIMEOUT_SECONDS", 15)
        with smtplib.SMTP(server, cfg.get("MAIL_PORT", 587), timeout=timeout) as smtp:
            if cfg.get("MAIL_USE_TLS", True):
                smtp.starttls()
            username, password = cfg.get("MAIL_USERNAME"), cfg.get("MAIL_PASSWORD")
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)
