"""
Notification Service.

Creates notification rows (inbox entry + delivery queue item), applies
quiet hours at creation time, and serves the in-app reads.

Creation never commits; the caller owns the transaction so that a
notification is persisted together with the change it announces.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from flask import current_app
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from pmis.core.exceptions import NotFoundError, ValidationError
from pmis.models import db
from pmis.models.auth import User
from pmis.models.notification import (
    Notification, NotificationChannel, NotificationPriority, NotificationType, build_dedup_key,
)
from pmis.models.scheduling import SETTINGS_FIELDS, NotificationSettings
from pmis.utils.helpers import atomic, utcnow

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {"sqlite": sqlite_insert, "postgresql": pg_insert}


# ── Quiet hours ──────────────────────────────────────────────────────────────

def in_quiet_window(local_time: time, start: time, end: time) -> bool:
    """Half-open [start, end) check; windows with start > end wrap midnight."""
    if start == end:
        return False
    if start < end:
        return start <= local_time < end
    return local_time >= start or local_time < end


def quiet_hours_release(settings, now: datetime, tz_name: str = "UTC") -> datetime | None:
    """Return the naive-UTC instant delivery may resume, or None if not deferred."""
    if settings is None or not settings.quiet_hours_enabled:
        return None
    start, end = settings.quiet_hours_start, settings.quiet_hours_end
    if start is None or end is None:
        return None
    tz = ZoneInfo(tz_name)
    local_now = now.replace(tzinfo=timezone.utc).astimezone(tz)
    if not in_quiet_window(local_now.time(), start, end):
        return None
    release = datetime.combine(local_now.date(), end, tzinfo=tz)
    if release <= local_now:
        release += timedelta(days=1)
    return release.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_hhmm(value, field):
    if value in (None, ""):
        return None
    if isinstance(value, time):
        return value
    try:
        return datetime.strptime(str(value), "%H:%M").time()
    except ValueError:
        raise ValidationError(f"{field} must be HH:MM", details={field: "format HH:MM"})


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Settings ──────────────────────────────────────────────────────────

    @staticmethod
    def get_settings(user_id: int) -> NotificationSettings:
        """Stored settings, or transient defaults when the user has none."""
        settings = NotificationSettings.query.filter_by(user_id=user_id).first()
        return settings or NotificationSettings.defaults(user_id)

    @staticmethod
    def update_settings(user_id: int, data: dict) -> NotificationSettings:
        if db.session.get(User, user_id) is None:
            raise NotFoundError(resource="User", resource_id=user_id)
        with atomic():
            settings = NotificationSettings.query.filter_by(user_id=user_id).first()
            if settings is None:
                settings = NotificationSettings.defaults(user_id)
                db.session.add(settings)

            for field in SETTINGS_FIELDS:
                if field not in data:
                    continue
                value = data[field]
                if field in ("quiet_hours_start", "quiet_hours_end"):
                    value = _parse_hhmm(value, field)
                elif field != "telegram_chat_id":
                    value = bool(value)
                setattr(settings, field, value)

            if settings.quiet_hours_enabled and (
                settings.quiet_hours_start is None or settings.quiet_hours_end is None
            ):
                raise ValidationError(
                    "Quiet hours need both start and end",
                    details={"quiet_hours_start": "required", "quiet_hours_end": "required"},
                )
            if settings.telegram_enabled and not settings.telegram_chat_id:
                raise ValidationError(
                    "Telegram needs a chat id", details={"telegram_chat_id": "required"},
                )
        return settings

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def _row_values(*, user_id, title, message, type, priority, channel,
                    reference_type, reference_id, action_url, now):
        settings = NotificationService.get_settings(user_id)
        tz_name = current_app.config.get("NOTIFICATION_TIMEZONE", "UTC")
        scheduled_at = quiet_hours_release(settings, now, tz_name)
        if scheduled_at is not None:
            logger.debug("Notification for user=%s deferred to %s (quiet hours)", user_id, scheduled_at)
        return {
            "user_id": user_id,
            "title": title[:300],
            "message": message,
            "type": NotificationType(type),
            "priority": NotificationPriority(priority),
            "channel": NotificationChannel(channel),
            "reference_type": reference_type,
            "reference_id": reference_id,
            "action_url": action_url,
            "scheduled_at": scheduled_at,
            "created_at": now,
        }

    @staticmethod
    def create(*, user_id, title, message="", type=NotificationType.SYSTEM_MESSAGE,
               priority=NotificationPriority.NORMAL, channel=NotificationChannel.IN_APP,
               reference_type=None, reference_id=None, action_url=None, now=None):
        """
        Add a single notification to the session (flushed, not committed).

        If the recipient is inside quiet hours, ``scheduled_at`` is set to
        the end of the window; the dispatcher skips it until then.
        """
        values = NotificationService._row_values(
            user_id=user_id, title=title, message=message, type=type,
            priority=priority, channel=channel, reference_type=reference_type,
            reference_id=reference_id, action_url=action_url, now=now or utcnow(),
        )
        notif = Notification(**values)
        db.session.add(notif)
        db.session.flush()
        return notif

    @staticmethod
    def create_if_absent(*, user_id, title, reference_type, reference_id,
                         type, message="", priority=NotificationPriority.NORMAL,
                         channel=NotificationChannel.IN_APP, action_url=None, now=None):
        """
        Insert unless a notification with the same (user, reference, type,
        calendar day) already exists.

        The check and the insert are one statement guarded by the unique
        ``dedup_key`` column, so concurrent scans cannot both insert.

        Returns:
            The new Notification, or None when it already existed.
        """
        now = now or utcnow()
        key = build_dedup_key(user_id, reference_type, reference_id,
                              NotificationType(type).value, now.date())
        values = NotificationService._row_values(
            user_id=user_id, title=title, message=message, type=type,
            priority=priority, channel=channel, reference_type=reference_type,
            reference_id=reference_id, action_url=action_url, now=now,
        )
        values["dedup_key"] = key
        db.session.flush()

        dialect = db.session.get_bind().dialect.name
        insert_fn = _UPSERT_INSERTS.get(dialect)
        if insert_fn is not None:
            stmt = (
                insert_fn(Notification.__table__)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["dedup_key"])
            )
            if db.session.execute(stmt).rowcount == 0:
                return None
            return Notification.query.filter_by(dedup_key=key).one()

        notif = Notification(**values)
        try:
            with db.session.begin_nested():
                db.session.add(notif)
        except IntegrityError:
            return None
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50, offset=0):
        """Notifications for a user, newest first. Returns (items, total)."""
        q = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(user_id):
        return Notification.query.filter_by(user_id=user_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, user_id=None):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or (user_id is not None and notif.user_id != user_id):
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        if not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(user_id):
        """Mark every unread notification of a user as read; returns the count."""
        now = utcnow()
        count = (
            Notification.query.filter_by(user_id=user_id, is_read=False)
            .update({"is_read": True, "read_at": now}, synchronize_session=False)
        )
        db.session.commit()
        return count
