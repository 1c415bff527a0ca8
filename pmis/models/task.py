"""
Task models: assignable work items and their audit trail.

Models:
    - Task: assigned unit of work, optionally linked to a contract,
      progress report or milestone
    - TaskHistory: append-only change log per task
    - ExtensionRequest: assignee's request to move a due date,
      resolved by the task's assigner

State machines:
    TASK_TRANSITIONS        New / InProgress / OnHold / UnderReview,
                            Completed and Cancelled terminal
    EXTENSION_TRANSITIONS   Pending -> Approved | Rejected
"""

from pmis.models import db
from pmis.models.base import StrEnum, enum_column
from pmis.utils.helpers import iso, utcnow


class TaskStatus(StrEnum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    UNDER_REVIEW = "under_review"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskPriority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class ExtensionStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskChangeType(StrEnum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    ASSIGNEE_CHANGED = "assignee_changed"
    DUE_DATE_CHANGED = "due_date_changed"
    PROGRESS_UPDATED = "progress_updated"
    COMPLETED = "completed"
    EXTENSION_REQUESTED = "extension_requested"
    EXTENSION_APPROVED = "extension_approved"
    EXTENSION_REJECTED = "extension_rejected"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})
ACTIVE_TASK_STATUSES = tuple(s for s in TaskStatus if s not in TERMINAL_TASK_STATUSES)

TASK_TRANSITIONS = {
    TaskStatus.NEW: frozenset({
        TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.CANCELLED,
    }),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.ON_HOLD, TaskStatus.UNDER_REVIEW,
        TaskStatus.COMPLETED, TaskStatus.CANCELLED,
    }),
    TaskStatus.ON_HOLD: frozenset({
        TaskStatus.IN_PROGRESS, TaskStatus.UNDER_REVIEW,
        TaskStatus.COMPLETED, TaskStatus.CANCELLED,
    }),
    TaskStatus.UNDER_REVIEW: frozenset({
        TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.CANCELLED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

EXTENSION_TRANSITIONS = {
    ExtensionStatus.PENDING: frozenset({ExtensionStatus.APPROVED, ExtensionStatus.REJECTED}),
    ExtensionStatus.APPROVED: frozenset(),
    ExtensionStatus.REJECTED: frozenset(),
}

MIN_EXTENSION_REASON_LENGTH = 10


def validate_task_transition(old_status, new_status):
    """Return True if the task status transition is allowed."""
    return new_status in TASK_TRANSITIONS.get(old_status, frozenset())


def validate_extension_transition(old_status, new_status):
    """Return True if the extension request transition is allowed."""
    return new_status in EXTENSION_TRANSITIONS.get(old_status, frozenset())


class Task(db.Model):
    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(500), nullable=False)
    description = db.Column(db.Text, default="")
    status = enum_column(TaskStatus, default=TaskStatus.NEW, index=True)
    priority = enum_column(TaskPriority, default=TaskPriority.NORMAL)

    due_date = db.Column(db.DateTime, nullable=False, index=True)
    start_date = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    completion_percent = db.Column(db.Integer, nullable=False, default=0)

    assignee_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    assigned_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    contract_id = db.Column(
        db.Integer, db.ForeignKey("contracts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    progress_report_id = db.Column(
        db.Integer, db.ForeignKey("progress_reports.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("contract_milestones.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    procurement_item_id = db.Column(db.Integer, nullable=True)
    project_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    assignee = db.relationship("User", foreign_keys=[assignee_id])
    assigned_by = db.relationship("User", foreign_keys=[assigned_by_id])
    history = db.relationship(
        "TaskHistory", back_populates="task", cascade="all, delete-orphan",
        order_by="TaskHistory.id", lazy="dynamic",
    )
    extension_requests = db.relationship(
        "ExtensionRequest", back_populates="task", cascade="all, delete-orphan",
        order_by="ExtensionRequest.id",
    )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_TASK_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "due_date": iso(self.due_date),
            "start_date": iso(self.start_date),
            "completed_at": iso(self.completed_at),
            "completion_percent": self.completion_percent,
            "assignee_id": self.assignee_id,
            "assigned_by_id": self.assigned_by_id,
            "contract_id": self.contract_id,
            "progress_report_id": self.progress_report_id,
            "milestone_id": self.milestone_id,
            "procurement_item_id": self.procurement_item_id,
            "project_id": self.project_id,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Task {self.id}: {self.title[:40]} [{self.status}]>"


class TaskHistory(db.Model):
    """Append-only change record; never updated after insert."""

    __tablename__ = "task_history"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    change_type = enum_column(TaskChangeType)
    field_name = db.Column(db.String(100), nullable=True)
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    task = db.relationship("Task", back_populates="history")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "user_id": self.user_id,
            "change_type": self.change_type.value,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "description": self.description,
            "created_at": iso(self.created_at),
        }


class ExtensionRequest(db.Model):
    __tablename__ = "task_extension_requests"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reason = db.Column(db.Text, nullable=False)
    original_due_date = db.Column(db.DateTime, nullable=False)
    requested_due_date = db.Column(db.DateTime, nullable=False)
    status = enum_column(ExtensionStatus, default=ExtensionStatus.PENDING, index=True)

    requested_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    requested_at = db.Column(db.DateTime, default=utcnow)
    approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    task = db.relationship("Task", back_populates="extension_requests")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "reason": self.reason,
            "original_due_date": iso(self.original_due_date),
            "requested_due_date": iso(self.requested_due_date),
            "status": self.status.value,
            "requested_by_id": self.requested_by_id,
            "requested_at": iso(self.requested_at),
            "approved_by_id": self.approved_by_id,
            "approved_at": iso(self.approved_at),
            "rejection_reason": self.rejection_reason,
        }

    def __repr__(self):
        return f"<ExtensionRequest {self.id} task={self.task_id} [{self.status}]>"
