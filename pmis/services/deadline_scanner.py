"""
Deadline Scanner.

Periodic job (hourly by default) that turns due dates into attention:

    1. tasks due within the warning window  -> DeadlineApproaching to the assignee
    2. tasks past their due date            -> DeadlineOverdue to the assignee,
                                               and by email to the assigner
    3. milestones past their due date       -> status Overdue + Critical escalation
                                               tasks for curator and project manager

Notifications go through ``NotificationService.create_if_absent`` keyed by
(user, reference, type, day), so hourly reruns and overlapping scans
produce at most one notification per condition per day. Escalation tasks
are created at most once per milestone (any task already pointing at the
milestone suppresses them).

All writes of one run are committed together.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from flask import current_app

from pmis.models import db
from pmis.models.auth import User
from pmis.models.contract import ContractMilestone, MilestoneStatus
from pmis.models.notification import (
    REF_TASK, NotificationChannel, NotificationPriority, NotificationType,
)
from pmis.models.task import ACTIVE_TASK_STATUSES, Task, TaskPriority
from pmis.services.notification import NotificationService
from pmis.services.task_service import TaskOrchestrator
from pmis.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def days_between(earlier: datetime, later: datetime) -> int:
    """Whole calendar days from ``earlier`` to ``later``."""
    return (later.date() - earlier.date()).days


def approaching_message(title: str, days_left: int) -> str:
    if days_left <= 0:
        return f'Task "{title}" is due today'
    if days_left == 1:
        return f'Task "{title}" is due tomorrow'
    return f'{days_left} days remain until the deadline of task "{title}"'


def overdue_message(title: str, days_overdue: int) -> str:
    if days_overdue <= 0:
        return f'Task "{title}" is overdue'
    return f'Task "{title}" is overdue by {days_overdue} day{"s" if days_overdue != 1 else ""}'


class DeadlineScanner:
    """One instance per run; ``run`` returns a results dict for the job log."""

    def __init__(self, warning_days: int | None = None):
        self.warning_days = (
            warning_days if warning_days is not None
            else current_app.config.get("DEADLINE_WARNING_DAYS", 3)
        )

    def run(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        results = {
            "approaching_notified": 0,
            "overdue_notified": 0,
            "milestones_marked_overdue": 0,
            "escalation_tasks_created": 0,
        }
        try:
            self._scan_approaching(now, results)
            self._scan_overdue_tasks(now, results)
            self._scan_overdue_milestones(now, results)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("Deadline scan: %s", results, extra={"job_name": "deadline_scan"})
        return results

    # ── 1. Approaching ────────────────────────────────────────────────────

    def _scan_approaching(self, now, results):
        window_end = now + timedelta(days=self.warning_days)
        tasks = (
            Task.query
            .filter(Task.status.in_(ACTIVE_TASK_STATUSES),
                    Task.due_date >= now, Task.due_date <= window_end)
            .order_by(Task.id)
            .all()
        )
        for task in tasks:
            days_left = days_between(now, task.due_date)
            created = NotificationService.create_if_absent(
                user_id=task.assignee_id,
                title="Deadline approaching",
                message=approaching_message(task.title, days_left),
                type=NotificationType.DEADLINE_APPROACHING,
                priority=(NotificationPriority.URGENT if days_left <= 0
                          else NotificationPriority.NORMAL),
                channel=NotificationChannel.ALL,
                reference_type=REF_TASK,
                reference_id=task.id,
                action_url=f"/tasks/{task.id}",
                now=now,
            )
            if created is not None:
                results["approaching_notified"] += 1

    # ── 2. Overdue tasks ──────────────────────────────────────────────────

    def _scan_overdue_tasks(self, now, results):
        tasks = (
            Task.query
            .filter(Task.status.in_(ACTIVE_TASK_STATUSES), Task.due_date < now)
            .order_by(Task.id)
            .all()
        )
        for task in tasks:
            days_overdue = days_between(task.due_date, now)
            message = overdue_message(task.title, days_overdue)
            if NotificationService.create_if_absent(
                user_id=task.assignee_id,
                title="Task overdue",
                message=message,
                type=NotificationType.DEADLINE_OVERDUE,
                priority=NotificationPriority.URGENT,
                channel=NotificationChannel.ALL,
                reference_type=REF_TASK,
                reference_id=task.id,
                action_url=f"/tasks/{task.id}",
                now=now,
            ) is not None:
                results["overdue_notified"] += 1

            if task.assigned_by_id == task.assignee_id:
                continue
            assignee_name = task.assignee.full_name if task.assignee else f"user {task.assignee_id}"
            if NotificationService.create_if_absent(
                user_id=task.assigned_by_id,
                title="Assigned task overdue",
                message=f"{message} (assignee: {assignee_name})",
                type=NotificationType.DEADLINE_OVERDUE,
                priority=NotificationPriority.HIGH,
                channel=NotificationChannel.EMAIL,
                reference_type=REF_TASK,
                reference_id=task.id,
                action_url=f"/tasks/{task.id}",
                now=now,
            ) is not None:
                results["overdue_notified"] += 1

    # ── 3. Overdue milestones ─────────────────────────────────────────────

    def _scan_overdue_milestones(self, now, results):
        milestones = (
            ContractMilestone.query
            .filter(ContractMilestone.due_date < now,
                    ContractMilestone.status != MilestoneStatus.COMPLETED)
            .order_by(ContractMilestone.id)
            .all()
        )
        for milestone in milestones:
            if milestone.status != MilestoneStatus.OVERDUE:
                milestone.status = MilestoneStatus.OVERDUE
                results["milestones_marked_overdue"] += 1

            already_escalated = db.session.query(
                Task.query.filter(Task.milestone_id == milestone.id).exists()
            ).scalar()
            if already_escalated:
                continue

            contract = milestone.contract
            days_overdue = days_between(milestone.due_date, now)
            for user_id in self._escalation_recipients(contract):
                TaskOrchestrator.create(
                    title=f"Overdue milestone: {milestone.title} (contract {contract.contract_number})",
                    description=(
                        f'Milestone "{milestone.title}" of contract {contract.contract_number} '
                        f"is overdue by {days_overdue} days.\n"
                        f"Due date was {milestone.due_date:%d.%m.%Y}."
                    ),
                    priority=TaskPriority.CRITICAL,
                    due_date=milestone.due_date,
                    assignee_id=user_id,
                    creator_id=user_id,
                    contract_id=contract.id,
                    milestone_id=milestone.id,
                    project_id=contract.project_id,
                    commit=False,
                )
                results["escalation_tasks_created"] += 1

    @staticmethod
    def _escalation_recipients(contract) -> list[int]:
        """Curator, then project manager if different; inactive users are skipped."""
        recipients = []
        for user_id in (contract.curator_id, contract.project_manager_id):
            if user_id is None or user_id in recipients:
                continue
            user = db.session.get(User, user_id)
            if user is None or not user.is_active:
                logger.warning("Skipping escalation to inactive user=%s for contract %s",
                               user_id, contract.contract_number)
                continue
            recipients.append(user_id)
        return recipients
