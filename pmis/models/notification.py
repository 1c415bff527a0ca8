"""
Notification domain model.

Models:
    - Notification: one record per recipient per event. It is both the
      in-app inbox entry and the outbound delivery queue item, with
      independent sent flags for the email and Telegram channels.
"""

from pmis.models import db
from pmis.models.base import StrEnum, enum_column
from pmis.utils.helpers import iso, utcnow


class NotificationType(StrEnum):
    TASK_ASSIGNED = "task_assigned"
    TASK_STATUS_CHANGED = "task_status_changed"
    TASK_EXTENSION_REQUESTED = "task_extension_requested"
    TASK_EXTENSION_APPROVED = "task_extension_approved"
    TASK_EXTENSION_REJECTED = "task_extension_rejected"
    DEADLINE_APPROACHING = "deadline_approaching"
    DEADLINE_OVERDUE = "deadline_overdue"
    PAYMENT_APPROVED = "payment_approved"
    PAYMENT_REJECTED = "payment_rejected"
    SYSTEM_MESSAGE = "system_message"


class NotificationPriority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationChannel(StrEnum):
    IN_APP = "in_app"
    EMAIL = "email"
    TELEGRAM = "telegram"
    ALL = "all"


EMAIL_CHANNELS = frozenset({NotificationChannel.EMAIL, NotificationChannel.ALL})
TELEGRAM_CHANNELS = frozenset({NotificationChannel.TELEGRAM, NotificationChannel.ALL})

# Reference types carried on notifications
REF_TASK = "task"
REF_TASK_EXTENSION = "task_extension"
REF_PAYMENT = "payment"


def build_dedup_key(user_id, reference_type, reference_id, notification_type, day):
    """Key allowing at most one notification per (user, reference, type, day)."""
    return f"{user_id}:{reference_type}:{reference_id}:{notification_type}:{day.isoformat()}"


class Notification(db.Model):
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_user_unread", "user_id", "is_read"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    type = enum_column(NotificationType, default=NotificationType.SYSTEM_MESSAGE)
    priority = enum_column(NotificationPriority, default=NotificationPriority.NORMAL)
    channel = enum_column(NotificationChannel, default=NotificationChannel.IN_APP)

    reference_type = db.Column(db.String(50), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    action_url = db.Column(db.String(500), nullable=True)
    # NULL for ordinary notifications; set by the deadline scanner
    dedup_key = db.Column(db.String(200), nullable=True, unique=True)

    is_read = db.Column(db.Boolean, default=False, nullable=False)
    read_at = db.Column(db.DateTime, nullable=True)

    email_sent = db.Column(db.Boolean, default=False, nullable=False)
    email_sent_at = db.Column(db.DateTime, nullable=True)
    telegram_sent = db.Column(db.Boolean, default=False, nullable=False)
    telegram_sent_at = db.Column(db.DateTime, nullable=True)
    scheduled_at = db.Column(db.DateTime, nullable=True, index=True)
    retry_count = db.Column(db.Integer, default=0, nullable=False)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    user = db.relationship("User", lazy="joined")

    def mark_read(self):
        self.is_read = True
        self.read_at = utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.type.value,
            "priority": self.priority.value,
            "channel": self.channel.value,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "action_url": self.action_url,
            "is_read": self.is_read,
            "read_at": iso(self.read_at),
            "email_sent": self.email_sent,
            "email_sent_at": iso(self.email_sent_at),
            "telegram_sent": self.telegram_sent,
            "telegram_sent_at": iso(self.telegram_sent_at),
            "scheduled_at": iso(self.scheduled_at),
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
