"""
Scheduling and delivery-preference models.

Models:
    - NotificationSettings: per-user channel switches and quiet hours
    - ScheduledJob: persisted registry of background loops (run history)
    - EmailLog: outbound email audit trail
"""

from datetime import time

from pmis.models import db
from pmis.utils.helpers import iso, utcnow

SETTINGS_FIELDS = (
    "in_app_enabled",
    "email_enabled",
    "telegram_enabled",
    "telegram_chat_id",
    "quiet_hours_enabled",
    "quiet_hours_start",
    "quiet_hours_end",
)


class NotificationSettings(db.Model):
    """
    Per-user delivery preferences.

    A user without a row gets the column defaults: in-app and email on,
    Telegram off, no quiet hours.
    """

    __tablename__ = "notification_settings"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    in_app_enabled = db.Column(db.Boolean, default=True, nullable=False)
    email_enabled = db.Column(db.Boolean, default=True, nullable=False)
    telegram_enabled = db.Column(db.Boolean, default=False, nullable=False)
    telegram_chat_id = db.Column(db.String(100), nullable=True)

    quiet_hours_enabled = db.Column(db.Boolean, default=False, nullable=False)
    quiet_hours_start = db.Column(db.Time, nullable=True)
    quiet_hours_end = db.Column(db.Time, nullable=True)

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @classmethod
    def defaults(cls, user_id):
        """Transient (unsaved) settings carrying the default values."""
        return cls(
            user_id=user_id,
            in_app_enabled=True,
            email_enabled=True,
            telegram_enabled=False,
            quiet_hours_enabled=False,
            quiet_hours_start=time(22, 0),
            quiet_hours_end=time(8, 0),
        )

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "in_app_enabled": self.in_app_enabled,
            "email_enabled": self.email_enabled,
            "telegram_enabled": self.telegram_enabled,
            "telegram_chat_id": self.telegram_chat_id,
            "quiet_hours_enabled": self.quiet_hours_enabled,
            "quiet_hours_start": self.quiet_hours_start.strftime("%H:%M") if self.quiet_hours_start else None,
            "quiet_hours_end": self.quiet_hours_end.strftime("%H:%M") if self.quiet_hours_end else None,
        }

    def __repr__(self):
        return f"<NotificationSettings user={self.user_id}>"


class ScheduledJob(db.Model):
    """
    Registry of background loops.

    One row per registered job; ``interval_seconds`` is the tick length
    and ``is_enabled`` is checked at every tick.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    interval_seconds = db.Column(db.Integer, nullable=False, default=3600)
    status = db.Column(db.String(20), default="active", comment="active, paused")
    is_enabled = db.Column(db.Boolean, default=True, nullable=False)

    last_run_at = db.Column(db.DateTime, nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True, comment="success, failed")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    run_count = db.Column(db.Integer, default=0, nullable=False)
    error_count = db.Column(db.Integer, default=0, nullable=False)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        """Record one execution."""
        self.last_run_at = utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "interval_seconds": self.interval_seconds,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": iso(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"


class EmailLog(db.Model):
    """One row per outbound email attempt."""

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False, index=True)
    subject = db.Column(db.String(500), nullable=False)
    template_name = db.Column(db.String(100), nullable=True)
    status = db.Column(db.String(20), default="queued", comment="queued, sent, failed")
    error_message = db.Column(db.Text, nullable=True)
    notification_id = db.Column(
        db.Integer, db.ForeignKey("notifications.id", ondelete="SET NULL"), nullable=True, index=True
    )
    sent_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_email": self.recipient_email,
            "subject": self.subject,
            "template_name": self.template_name,
            "status": self.status,
            "error_message": self.error_message,
            "notification_id": self.notification_id,
            "sent_at": iso(self.sent_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<EmailLog {self.id}: {self.subject[:40]} -> {self.recipient_email}>"
