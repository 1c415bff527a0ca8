"""
Progress report (AVR) and payment models.

Models:
    - ProgressReport: contractor claim of completed work, signed off in
      three stages (submission, manager review, director approval)
    - Payment: created exactly once per director-approved report

State machines:
    APPROVAL_TRANSITIONS   Draft -> SubmittedForReview -> ManagerApproved
                           -> DirectorApproved; Rejected from either review
                           stage; Rejected -> Draft to revise and resubmit
    PAYMENT_TRANSITIONS    Pending -> Approved -> Paid; Rejected from
                           Pending or Approved
"""

from sqlalchemy import event, inspect

from pmis.core.exceptions import ValidationError
from pmis.models import db
from pmis.models.base import StrEnum, enum_column
from pmis.utils.helpers import iso, utcnow


class ApprovalStatus(StrEnum):
    DRAFT = "draft"
    SUBMITTED_FOR_REVIEW = "submitted_for_review"
    MANAGER_APPROVED = "manager_approved"
    DIRECTOR_APPROVED = "director_approved"
    REJECTED = "rejected"


APPROVAL_TRANSITIONS = {
    ApprovalStatus.DRAFT: frozenset({ApprovalStatus.SUBMITTED_FOR_REVIEW}),
    ApprovalStatus.SUBMITTED_FOR_REVIEW: frozenset({
        ApprovalStatus.MANAGER_APPROVED, ApprovalStatus.REJECTED,
    }),
    ApprovalStatus.MANAGER_APPROVED: frozenset({
        ApprovalStatus.DIRECTOR_APPROVED, ApprovalStatus.REJECTED,
    }),
    ApprovalStatus.DIRECTOR_APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset({
        ApprovalStatus.DRAFT, ApprovalStatus.SUBMITTED_FOR_REVIEW,
    }),
}


class PaymentStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REJECTED = "rejected"


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.APPROVED, PaymentStatus.REJECTED}),
    PaymentStatus.APPROVED: frozenset({PaymentStatus.PAID, PaymentStatus.REJECTED}),
    PaymentStatus.PAID: frozenset(),
    PaymentStatus.REJECTED: frozenset(),
}

PAYMENT_TYPE_INTERIM = "interim"


def validate_approval_transition(old_status, new_status):
    """Return True if the approval transition is allowed."""
    return new_status in APPROVAL_TRANSITIONS.get(old_status, frozenset())


def approval_sources(new_status):
    """States from which ``new_status`` may be entered."""
    return sorted(
        (src for src, targets in APPROVAL_TRANSITIONS.items() if new_status in targets),
        key=lambda s: s.value,
    )


def validate_payment_transition(old_status, new_status):
    """Return True if the payment transition is allowed."""
    return new_status in PAYMENT_TRANSITIONS.get(old_status, frozenset())


class ProgressReport(db.Model):
    __tablename__ = "progress_reports"

    id = db.Column(db.Integer, primary_key=True)
    contract_id = db.Column(
        db.Integer, db.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    report_date = db.Column(db.Date, nullable=False)
    completed_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    description = db.Column(db.Text, default="")
    approval_status = enum_column(ApprovalStatus, default=ApprovalStatus.DRAFT, index=True)

    submitted_at = db.Column(db.DateTime, nullable=True)
    submitted_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    manager_reviewed_at = db.Column(db.DateTime, nullable=True)
    manager_reviewed_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    manager_comment = db.Column(db.Text, nullable=True)

    director_approved_at = db.Column(db.DateTime, nullable=True)
    director_approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    director_comment = db.Column(db.Text, nullable=True)

    rejected_at = db.Column(db.DateTime, nullable=True)
    rejected_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    contract = db.relationship("Contract", lazy="joined")
    payment = db.relationship("Payment", back_populates="progress_report", uselist=False)

    def to_dict(self):
        return {
            "id": self.id,
            "contract_id": self.contract_id,
            "report_date": iso(self.report_date),
            "completed_percent": str(self.completed_percent),
            "description": self.description,
            "approval_status": self.approval_status.value,
            "submitted_at": iso(self.submitted_at),
            "submitted_by_id": self.submitted_by_id,
            "manager_reviewed_at": iso(self.manager_reviewed_at),
            "manager_reviewed_by_id": self.manager_reviewed_by_id,
            "manager_comment": self.manager_comment,
            "director_approved_at": iso(self.director_approved_at),
            "director_approved_by_id": self.director_approved_by_id,
            "director_comment": self.director_comment,
            "rejected_at": iso(self.rejected_at),
            "rejected_by_id": self.rejected_by_id,
            "rejection_reason": self.rejection_reason,
            "payment_id": self.payment.id if self.payment else None,
        }

    def __repr__(self):
        return f"<ProgressReport {self.id} [{self.approval_status}]>"


@event.listens_for(ProgressReport, "before_update")
def _freeze_director_approved(mapper, connection, target):
    """Refuse column edits to a report that has been director-approved."""
    state = inspect(target)
    status_hist = state.attrs.approval_status.history
    previous = (status_hist.deleted or status_hist.unchanged or [None])[0]
    if previous != ApprovalStatus.DIRECTOR_APPROVED:
        return
    changed = [
        attr.key for attr in mapper.column_attrs
        if attr.key != "updated_at" and state.attrs[attr.key].history.has_changes()
    ]
    if changed:
        raise ValidationError(
            f"ProgressReport {target.id} is director-approved and cannot be modified",
            details={field: "immutable" for field in changed},
        )


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    contract_id = db.Column(
        db.Integer, db.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # One payment per approved report
    progress_report_id = db.Column(
        db.Integer, db.ForeignKey("progress_reports.id", ondelete="SET NULL"),
        nullable=True, unique=True,
    )
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    currency = db.Column(db.String(3), default="USD")
    payment_type = db.Column(db.String(20), default=PAYMENT_TYPE_INTERIM)
    payment_date = db.Column(db.Date, nullable=True)
    description = db.Column(db.Text, default="")
    status = enum_column(PaymentStatus, default=PaymentStatus.PENDING, index=True)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    contract = db.relationship("Contract", lazy="joined")
    progress_report = db.relationship("ProgressReport", back_populates="payment")

    def to_dict(self):
        return {
            "id": self.id,
            "contract_id": self.contract_id,
            "progress_report_id": self.progress_report_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "payment_type": self.payment_type,
            "payment_date": iso(self.payment_date),
            "description": self.description,
            "status": self.status.value,
            "approved_by_id": self.approved_by_id,
            "approved_at": iso(self.approved_at),
            "paid_at": iso(self.paid_at),
            "rejection_reason": self.rejection_reason,
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<Payment {self.id}: {self.amount} [{self.status}]>"
