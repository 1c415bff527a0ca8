"""
Notification Dispatcher.

Periodic job (every 5 minutes by default) that drains the outbound side
of the notification table. Each run picks up to NOTIFICATION_BATCH_SIZE
rows that still owe an email or a Telegram message and whose
``scheduled_at`` (quiet-hours deferral) has passed.

Per channel:
    - recipient has no address / chat id, or switched the channel off
        -> flag set as sent without sending (satisfied, never retried)
    - delivery succeeds -> flag + timestamp set
    - delivery fails or times out -> retry_count += 1, last_error set,
        flag stays False so the next run tries again

The two channels are tracked independently: a Telegram failure never
causes an already-delivered email to be re-sent. Each notification is
committed on its own for the same reason.

Failed rows are retried every run without backoff. NOTIFICATION_MAX_RETRIES
caps this when set; rows at the cap are left in place, excluded from
selection and logged, not deleted or marked.
"""

from __future__ import annotations

import logging
from typing import Any

from flask import current_app
from sqlalchemy import and_, or_

from pmis.core.exceptions import DeliveryFailedError
from pmis.integrations.telegram_gateway import format_message, telegram_gateway
from pmis.models import db
from pmis.models.notification import EMAIL_CHANNELS, TELEGRAM_CHANNELS, Notification
from pmis.services.email_service import NOTIFICATION_TEMPLATE, EmailService, render_notification
from pmis.services.notification import NotificationService
from pmis.utils.helpers import utcnow

logger = logging.getLogger(__name__)

_UNSET = object()


class NotificationDispatcher:
    """Delivers pending notifications over email and Telegram.

    Senders are injectable: ``email_sender.send(...)`` must return an
    object with ``status`` ('sent' | 'failed') and ``error_message``;
    ``telegram_sender.send_message(chat_id, text, timeout=...)`` must
    return an object with ``ok`` and ``error``.
    """

    def __init__(self, email_sender=None, telegram_sender=None,
                 batch_size: int | None = None, max_retries=_UNSET):
        cfg = current_app.config
        self.email_sender = email_sender or EmailService
        self.telegram_sender = telegram_sender or telegram_gateway
        self.batch_size = batch_size or cfg.get("NOTIFICATION_BATCH_SIZE", 50)
        self.max_retries = cfg.get("NOTIFICATION_MAX_RETRIES") if max_retries is _UNSET else max_retries
        self.timeout = cfg.get("DELIVERY_TIMEOUT_SECONDS", 15)
        self.base_url = (cfg.get("APP_BASE_URL") or "").rstrip("/")

    # ── Selection ─────────────────────────────────────────────────────────

    def pending_query(self, now):
        q = Notification.query.filter(
            or_(
                and_(Notification.channel.in_(list(EMAIL_CHANNELS)),
                     Notification.email_sent.is_(False)),
                and_(Notification.channel.in_(list(TELEGRAM_CHANNELS)),
                     Notification.telegram_sent.is_(False)),
            ),
            or_(Notification.scheduled_at.is_(None), Notification.scheduled_at <= now),
        )
        if self.max_retries is not None:
            exhausted = q.filter(Notification.retry_count >= self.max_retries).count()
            if exhausted:
                logger.warning("%d notifications reached the retry ceiling (%d) and are skipped",
                               exhausted, self.max_retries)
            q = q.filter(Notification.retry_count < self.max_retries)
        return q.order_by(Notification.created_at, Notification.id)

    # ── Run ───────────────────────────────────────────────────────────────

    def process_queue(self, now=None) -> dict[str, Any]:
        now = now or utcnow()
        results = {"processed": 0, "email_sent": 0, "telegram_sent": 0, "skipped": 0, "failed": 0}
        batch = self.pending_query(now).limit(self.batch_size).all()
        for notification in batch:
            self._process(notification, now, results)
            db.session.commit()
            results["processed"] += 1
        logger.info("Notification dispatch: %s", results, extra={"job_name": "notification_dispatch"})
        return results

    def _process(self, notification, now, results):
        settings = NotificationService.get_settings(notification.user_id)
        user = notification.user

        if notification.channel in EMAIL_CHANNELS and not notification.email_sent:
            if not user.email or not settings.email_enabled:
                notification.email_sent = True
                results["skipped"] += 1
            else:
                try:
                    self._send_email(notification, user.email)
                    notification.email_sent = True
                    notification.email_sent_at = now
                    results["email_sent"] += 1
                except DeliveryFailedError as exc:
                    self._record_failure(notification, exc)
                    results["failed"] += 1

        if notification.channel in TELEGRAM_CHANNELS and not notification.telegram_sent:
            if not settings.telegram_chat_id or not settings.telegram_enabled:
                notification.telegram_sent = True
                results["skipped"] += 1
            else:
                try:
                    self._send_telegram(notification, settings.telegram_chat_id)
                    notification.telegram_sent = True
                    notification.telegram_sent_at = now
                    results["telegram_sent"] += 1
                except DeliveryFailedError as exc:
                    self._record_failure(notification, exc)
                    results["failed"] += 1

    # ── Channels ──────────────────────────────────────────────────────────

    def _send_email(self, notification, address):
        log = self.email_sender.send(
            to_email=address,
            subject=notification.title,
            html_body=render_notification(notification, self.base_url),
            template_name=NOTIFICATION_TEMPLATE,
            notification_id=notification.id,
        )
        if log.status != "sent":
            raise DeliveryFailedError("email", log.error_message or "unknown error")

    def _send_telegram(self, notification, chat_id):
        link = f"{self.base_url}{notification.action_url}" if (
            self.base_url and notification.action_url) else None
        text = format_message(notification.title, notification.message or "", link)
        result = self.telegram_sender.send_message(chat_id, text, timeout=self.timeout)
        if not result.ok:
            raise DeliveryFailedError("telegram", result.error or "unknown error")

    def _record_failure(self, notification, exc: DeliveryFailedError):
        notification.retry_count = (notification.retry_count or 0) + 1
        notification.last_error = str(exc)[:1000]
        logger.warning(
            "Delivery failed for notification %s (attempt %d): %s",
            notification.id, notification.retry_count, exc,
            extra={"notification_id": notification.id, "channel": exc.channel},
        )
        if self.max_retries is not None and notification.retry_count >= self.max_retries:
            logger.error("Notification %s reached the retry ceiling; no further attempts",
                         notification.id, extra={"notification_id": notification.id})
