"""
Task Orchestrator.

Single entry point for every task in the system. User-created tasks,
approval follow-ups and deadline escalations all pass through
``TaskOrchestrator.create`` so validation, history and assignment
notifications happen in exactly one place.

Status changes and extension decisions are compare-and-swap updates
(``UPDATE ... WHERE status = <expected>``): a concurrent writer that
moved the row first makes the second caller fail with
InvalidStateTransitionError instead of overwriting.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import update

from pmis.core.exceptions import (
    InvalidStateTransitionError, UnauthorizedError, ValidationError,
)
from pmis.models import db
from pmis.models.auth import PMU_ADMIN, User
from pmis.models.notification import (
    REF_TASK, REF_TASK_EXTENSION, NotificationChannel, NotificationPriority, NotificationType,
)
from pmis.models.task import (
    ACTIVE_TASK_STATUSES, MIN_EXTENSION_REASON_LENGTH, TASK_TRANSITIONS, ExtensionRequest,
    ExtensionStatus, Task, TaskChangeType, TaskHistory, TaskPriority, TaskStatus,
    validate_extension_transition, validate_task_transition,
)
from pmis.services.notification import NotificationService
from pmis.services.role_router import can_assign
from pmis.utils.helpers import atomic, get_or_raise, utcnow

logger = logging.getLogger(__name__)


def _task_url(task_id):
    return f"/tasks/{task_id}"


def _require_user(user_id) -> User:
    return get_or_raise(User, user_id)


def _require_task(task_id) -> Task:
    return get_or_raise(Task, task_id)


def _require_extension(request_id) -> ExtensionRequest:
    return get_or_raise(ExtensionRequest, request_id)


def _add_history(task, user_id, change_type, *, field_name=None, old_value=None,
                 new_value=None, description=None):
    entry = TaskHistory(
        task_id=task.id,
        user_id=user_id,
        change_type=change_type,
        field_name=field_name,
        old_value=None if old_value is None else str(old_value),
        new_value=None if new_value is None else str(new_value),
        description=description,
    )
    db.session.add(entry)
    return entry


def _fmt_date(value: datetime) -> str:
    return value.strftime("%d.%m.%Y")


class TaskOrchestrator:
    """Stateless service class for task operations."""

    # ── Assignment policy ─────────────────────────────────────────────────

    @staticmethod
    def can_assign_to(assigner_id, assignee_id) -> bool:
        """Assignment policy over stored users; False if either is missing or inactive."""
        assigner = db.session.get(User, assigner_id) if assigner_id is not None else None
        assignee = db.session.get(User, assignee_id) if assignee_id is not None else None
        if assigner is None or assignee is None:
            return False
        if not assigner.is_active or not assignee.is_active:
            return False
        return can_assign(
            assigner.role_names, assignee.role_names, is_self=assigner.id == assignee.id,
        )

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, due_date, assignee_id, creator_id, description="",
               priority=TaskPriority.NORMAL, start_date=None, contract_id=None,
               progress_report_id=None, milestone_id=None, procurement_item_id=None,
               project_id=None, enforce_policy=False, commit=True) -> Task:
        """
        Create a task assigned by ``creator_id``.

        System callers (approval workflow, deadline scanner) pass
        ``commit=False`` to join their transaction and leave
        ``enforce_policy`` off; the HTTP API turns it on.
        """
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title is required", details={"title": "required"})
        if due_date is None:
            raise ValidationError("Due date is required", details={"due_date": "required"})
        try:
            priority = TaskPriority(priority)
        except ValueError:
            raise ValidationError(f"Unknown priority: {priority}", details={"priority": "invalid"})

        _require_user(creator_id)
        assignee = _require_user(assignee_id)
        if not assignee.is_active:
            raise ValidationError("Assignee is not active", details={"assignee_id": "inactive"})
        if enforce_policy and not TaskOrchestrator.can_assign_to(creator_id, assignee_id):
            raise UnauthorizedError(f"User {creator_id} may not assign tasks to user {assignee_id}")

        with atomic(commit):
            task = Task(
                title=title,
                description=description or "",
                status=TaskStatus.NEW,
                priority=priority,
                due_date=due_date,
                start_date=start_date,
                completion_percent=0,
                assignee_id=assignee_id,
                assigned_by_id=creator_id,
                contract_id=contract_id,
                progress_report_id=progress_report_id,
                milestone_id=milestone_id,
                procurement_item_id=procurement_item_id,
                project_id=project_id,
            )
            db.session.add(task)
            db.session.flush()
            _add_history(task, creator_id, TaskChangeType.CREATED, description="Task created")

            if assignee_id != creator_id:
                NotificationService.create(
                    user_id=assignee_id,
                    title="New task assigned",
                    message=f'You have been assigned the task "{task.title}"',
                    type=NotificationType.TASK_ASSIGNED,
                    priority=(NotificationPriority.URGENT if priority == TaskPriority.CRITICAL
                              else NotificationPriority.NORMAL),
                    channel=NotificationChannel.ALL,
                    reference_type=REF_TASK,
                    reference_id=task.id,
                    action_url=_task_url(task.id),
                )

        logger.info("Task %s created by user=%s for user=%s priority=%s",
                    task.id, creator_id, assignee_id, priority.value)
        return task

    # ── Assign ────────────────────────────────────────────────────────────

    @staticmethod
    def assign(task_id, assignee_id, assigner_id) -> Task:
        task = _require_task(task_id)
        _require_user(assignee_id)
        if not TaskOrchestrator.can_assign_to(assigner_id, assignee_id):
            raise UnauthorizedError(f"User {assigner_id} may not assign tasks to user {assignee_id}")
        if task.is_terminal:
            raise InvalidStateTransitionError("task", "reassign", task.status.value)
        if task.assignee_id == assignee_id:
            return task

        with atomic():
            previous = task.assignee_id
            task.assignee_id = assignee_id
            _add_history(task, assigner_id, TaskChangeType.ASSIGNEE_CHANGED,
                         field_name="assignee_id", old_value=previous, new_value=assignee_id)
            NotificationService.create(
                user_id=assignee_id,
                title="Task assigned to you",
                message=f'You have been assigned the task "{task.title}"',
                type=NotificationType.TASK_ASSIGNED,
                priority=(NotificationPriority.URGENT if task.priority == TaskPriority.CRITICAL
                          else NotificationPriority.NORMAL),
                channel=NotificationChannel.ALL,
                reference_type=REF_TASK,
                reference_id=task.id,
                action_url=_task_url(task.id),
            )
        logger.info("Task %s reassigned %s -> %s by user=%s", task.id, previous, assignee_id, assigner_id)
        return task

    # ── Status ────────────────────────────────────────────────────────────

    @staticmethod
    def change_status(task_id, new_status, actor_id, now=None) -> Task:
        """Move a task along TASK_TRANSITIONS; Completed stamps completion fields."""
        try:
            new_status = TaskStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown task status: {new_status}", details={"status": "invalid"})
        task = _require_task(task_id)
        _require_user(actor_id)
        old_status = task.status
        if not validate_task_transition(old_status, new_status):
            raise InvalidStateTransitionError(
                "task", f"move to {new_status.value}", old_status.value,
                [s.value for s, targets in TASK_TRANSITIONS.items() if new_status in targets],
            )

        now = now or utcnow()
        values = {"status": new_status, "updated_at": now}
        if new_status == TaskStatus.COMPLETED:
            values.update(completed_at=now, completion_percent=100)

        with atomic():
            swapped = db.session.execute(
                update(Task)
                .where(Task.id == task.id, Task.status == old_status)
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount
            if swapped == 0:
                db.session.refresh(task)
                raise InvalidStateTransitionError(
                    "task", f"move to {new_status.value}", task.status.value,
                )
            db.session.refresh(task)
            _add_history(task, actor_id, TaskChangeType.STATUS_CHANGED, field_name="status",
                         old_value=old_status.value, new_value=new_status.value)
            if actor_id != task.assigned_by_id:
                NotificationService.create(
                    user_id=task.assigned_by_id,
                    title="Task status changed",
                    message=f'Task "{task.title}": {old_status.value} -> {new_status.value}',
                    type=NotificationType.TASK_STATUS_CHANGED,
                    reference_type=REF_TASK,
                    reference_id=task.id,
                    action_url=_task_url(task.id),
                    now=now,
                )

        logger.info("Task %s status %s -> %s by user=%s",
                    task.id, old_status.value, new_status.value, actor_id)
        return task

    @staticmethod
    def update_progress(task_id, percent, actor_id, now=None) -> Task:
        """
        Record partial progress on an open task.

        The value is clamped to 0..99; only completing the task moves it
        to 100. Terminal tasks keep their final value.
        """
        try:
            percent = int(percent)
        except (TypeError, ValueError):
            raise ValidationError("Completion percent must be a number",
                                  details={"completion_percent": "invalid"})
        percent = max(0, min(percent, 99))
        task = _require_task(task_id)
        _require_user(actor_id)
        if task.is_terminal:
            raise InvalidStateTransitionError("task", "update progress of", task.status.value)
        if task.completion_percent == percent:
            return task

        now = now or utcnow()
        with atomic():
            previous = task.completion_percent
            task.completion_percent = percent
            task.updated_at = now
            _add_history(task, actor_id, TaskChangeType.PROGRESS_UPDATED,
                         field_name="completion_percent", old_value=previous, new_value=percent)
        logger.info("Task %s progress %s%% -> %s%% by user=%s", task.id, previous, percent, actor_id)
        return task

    @staticmethod
    def complete_related_tasks(*, contract_id=None, progress_report_id=None, actor_id,
                               commit=True, now=None) -> int:
        """
        Complete every non-terminal task linked to a progress report, or
        failing that to a contract. Already-closed tasks are untouched, so
        repeated calls are no-ops.

        Returns:
            Number of tasks completed by this call.
        """
        if progress_report_id is None and contract_id is None:
            raise ValidationError(
                "contract_id or progress_report_id is required",
                details={"contract_id": "required", "progress_report_id": "required"},
            )
        now = now or utcnow()
        q = Task.query.filter(Task.status.in_(ACTIVE_TASK_STATUSES))
        if progress_report_id is not None:
            q = q.filter(Task.progress_report_id == progress_report_id)
        else:
            q = q.filter(Task.contract_id == contract_id)

        completed = 0
        with atomic(commit):
            for task in q.order_by(Task.id).all():
                old_status = task.status
                task.status = TaskStatus.COMPLETED
                task.completed_at = now
                task.completion_percent = 100
                _add_history(task, actor_id, TaskChangeType.COMPLETED, field_name="status",
                             old_value=old_status.value, new_value=TaskStatus.COMPLETED.value,
                             description="Completed automatically after payment")
                completed += 1
            db.session.flush()

        if completed:
            logger.info("Auto-completed %d tasks (contract=%s report=%s) by user=%s",
                        completed, contract_id, progress_report_id, actor_id)
        return completed

    # ── Extensions ────────────────────────────────────────────────────────

    @staticmethod
    def request_extension(task_id, actor_id, reason, new_due_date) -> ExtensionRequest:
        """Assignee asks to move the due date; validated before anything is written."""
        reason = (reason or "").strip()
        if len(reason) < MIN_EXTENSION_REASON_LENGTH:
            raise ValidationError(
                f"Reason must be at least {MIN_EXTENSION_REASON_LENGTH} characters",
                details={"reason": "too_short"},
            )
        if new_due_date is None:
            raise ValidationError("New due date is required", details={"new_due_date": "required"})
        task = _require_task(task_id)
        if new_due_date <= task.due_date:
            raise ValidationError(
                "New due date must be later than the current due date",
                details={"new_due_date": f"must be after {task.due_date.isoformat()}"},
            )
        if actor_id != task.assignee_id:
            raise UnauthorizedError("Only the assignee can request an extension")
        if task.is_terminal:
            raise InvalidStateTransitionError("task", "request extension for", task.status.value)

        with atomic():
            ext = ExtensionRequest(
                task_id=task.id,
                reason=reason,
                original_due_date=task.due_date,
                requested_due_date=new_due_date,
                status=ExtensionStatus.PENDING,
                requested_by_id=actor_id,
            )
            db.session.add(ext)
            db.session.flush()
            _add_history(task, actor_id, TaskChangeType.EXTENSION_REQUESTED,
                         field_name="due_date", old_value=task.due_date.isoformat(),
                         new_value=new_due_date.isoformat(), description=reason)
            if task.assigned_by_id != actor_id:
                NotificationService.create(
                    user_id=task.assigned_by_id,
                    title="Deadline extension requested",
                    message=(f'Extension requested for "{task.title}" until '
                             f"{_fmt_date(new_due_date)}. Reason: {reason}"),
                    type=NotificationType.TASK_EXTENSION_REQUESTED,
                    priority=NotificationPriority.HIGH,
                    channel=NotificationChannel.ALL,
                    reference_type=REF_TASK_EXTENSION,
                    reference_id=ext.id,
                    action_url=_task_url(task.id),
                )
        logger.info("Extension %s requested on task %s by user=%s", ext.id, task.id, actor_id)
        return ext

    @staticmethod
    def _authorize_resolution(task, actor_id):
        actor = _require_user(actor_id)
        if actor.id != task.assigned_by_id and not actor.has_role(PMU_ADMIN):
            raise UnauthorizedError("Only the task's assigner can resolve extension requests")

    @staticmethod
    def _swap_extension(ext, new_status, values):
        if not validate_extension_transition(ext.status, new_status):
            raise InvalidStateTransitionError(
                "extension_request", new_status.value, ext.status.value,
                [ExtensionStatus.PENDING.value],
            )
        swapped = db.session.execute(
            update(ExtensionRequest)
            .where(ExtensionRequest.id == ext.id,
                   ExtensionRequest.status == ExtensionStatus.PENDING)
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.session.refresh(ext)
        if swapped == 0:
            raise InvalidStateTransitionError(
                "extension_request", new_status.value, ext.status.value,
                [ExtensionStatus.PENDING.value],
            )

    @staticmethod
    def approve_extension(request_id, actor_id, now=None) -> ExtensionRequest:
        """Approve a pending request and move the task's due date to the requested value."""
        ext = _require_extension(request_id)
        task = ext.task
        TaskOrchestrator._authorize_resolution(task, actor_id)
        if task.is_terminal:
            raise InvalidStateTransitionError("task", "approve extension for", task.status.value)
        now = now or utcnow()

        with atomic():
            TaskOrchestrator._swap_extension(
                ext, ExtensionStatus.APPROVED, {"approved_by_id": actor_id, "approved_at": now},
            )
            old_due = task.due_date
            task.due_date = ext.requested_due_date
            _add_history(task, actor_id, TaskChangeType.EXTENSION_APPROVED,
                         description=f"Extension request #{ext.id} approved")
            _add_history(task, actor_id, TaskChangeType.DUE_DATE_CHANGED, field_name="due_date",
                         old_value=old_due.isoformat(), new_value=ext.requested_due_date.isoformat())
            NotificationService.create(
                user_id=ext.requested_by_id,
                title="Extension approved",
                message=(f'Your extension for "{task.title}" was approved. '
                         f"New due date: {_fmt_date(ext.requested_due_date)}"),
                type=NotificationType.TASK_EXTENSION_APPROVED,
                channel=NotificationChannel.ALL,
                reference_type=REF_TASK_EXTENSION,
                reference_id=ext.id,
                action_url=_task_url(task.id),
                now=now,
            )
        logger.info("Extension %s approved by user=%s; task %s due %s",
                    ext.id, actor_id, task.id, task.due_date.isoformat())
        return ext

    @staticmethod
    def reject_extension(request_id, actor_id, reason, now=None) -> ExtensionRequest:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason is required", details={"reason": "required"})
        ext = _require_extension(request_id)
        task = ext.task
        TaskOrchestrator._authorize_resolution(task, actor_id)
        now = now or utcnow()

        with atomic():
            TaskOrchestrator._swap_extension(
                ext, ExtensionStatus.REJECTED,
                {"approved_by_id": actor_id, "approved_at": now, "rejection_reason": reason},
            )
            _add_history(task, actor_id, TaskChangeType.EXTENSION_REJECTED, description=reason)
            NotificationService.create(
                user_id=ext.requested_by_id,
                title="Extension rejected",
                message=f'Your extension for "{task.title}" was rejected. Reason: {reason}',
                type=NotificationType.TASK_EXTENSION_REJECTED,
                priority=NotificationPriority.HIGH,
                channel=NotificationChannel.ALL,
                reference_type=REF_TASK_EXTENSION,
                reference_id=ext.id,
                action_url=_task_url(task.id),
                now=now,
            )
        logger.info("Extension %s rejected by user=%s", ext.id, actor_id)
        return ext

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def get(task_id) -> Task:
        return _require_task(task_id)

    @staticmethod
    def history(task_id) -> list[TaskHistory]:
        return _require_task(task_id).history.all()

    @staticmethod
    def list_for_user(user_id, active_only=True) -> list[Task]:
        q = Task.query.filter_by(assignee_id=user_id)
        if active_only:
            q = q.filter(Task.status.in_(ACTIVE_TASK_STATUSES))
        return q.order_by(Task.due_date, Task.id).all()

    @staticmethod
    def pending_extensions(approver_id=None) -> list[ExtensionRequest]:
        """Pending extension requests, newest first; only tasks assigned by ``approver_id`` if given."""
        q = ExtensionRequest.query.filter(ExtensionRequest.status == ExtensionStatus.PENDING)
        if approver_id is not None:
            q = q.join(Task, ExtensionRequest.task_id == Task.id).filter(
                Task.assigned_by_id == approver_id,
            )
        return q.order_by(ExtensionRequest.requested_at.desc(), ExtensionRequest.id.desc()).all()
