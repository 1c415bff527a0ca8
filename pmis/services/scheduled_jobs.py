"""
Scheduled jobs.

Jobs:
    - deadline_scan: approaching / overdue tasks and overdue milestones
    - notification_dispatch: email and Telegram delivery of pending notifications

Importing this module registers both with the SchedulerService.
"""

from __future__ import annotations

from typing import Any

from pmis.services.deadline_scanner import DeadlineScanner
from pmis.services.notification_dispatcher import NotificationDispatcher
from pmis.services.scheduler_service import register_job


@register_job("deadline_scan", "DEADLINE_SCAN_INTERVAL_SECONDS")
def deadline_scan(app) -> dict[str, Any]:
    """Notify approaching and overdue task deadlines; escalate overdue milestones."""
    return DeadlineScanner().run()


@register_job("notification_dispatch", "NOTIFICATION_DISPATCH_INTERVAL_SECONDS")
def notification_dispatch(app) -> dict[str, Any]:
    """Deliver pending email and Telegram notifications."""
    return NotificationDispatcher().process_queue()
