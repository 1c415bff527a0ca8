"""
Progress-report (AVR) approval workflow.

    Draft ─submit─▶ SubmittedForReview ─manager_approve─▶ ManagerApproved
      ▲                 ▲        │                         │          │
      │                 │      reject                    reject   director_approve
      │                 │        ▼                         │          ▼
      │                 └─submit─ Rejected ◀───────────────┘   DirectorApproved (+ Payment)
      │                            │
      └──────── return_to_draft ───┘

Every transition:
    1. compare-and-swap on ``approval_status`` (no lost update between read
       and write; a replayed call fails with InvalidStateTransitionError)
    2. writes its audit event
    3. creates its follow-up task (and for director approval the Payment)
    4. commits all of the above together, or rolls everything back

Who receives each follow-up task is decided by the injected RoleRouter.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import update

from pmis.core.exceptions import InvalidStateTransitionError, ValidationError
from pmis.models import db
from pmis.models.audit import write_audit
from pmis.models.auth import User
from pmis.models.progress_report import (
    PAYMENT_TYPE_INTERIM, ApprovalStatus, Payment, PaymentStatus, ProgressReport,
    approval_sources, validate_approval_transition,
)
from pmis.models.task import TaskPriority
from pmis.services.role_router import (
    STAGE_DIRECTOR_APPROVAL, STAGE_MANAGER_REVIEW, STAGE_PAYMENT_PREPARATION, STAGE_REJECTION,
    RoleRouter, default_router,
)
from pmis.services.task_service import TaskOrchestrator
from pmis.utils.helpers import atomic, get_or_raise, utcnow

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

REVIEW_DUE_DAYS = 3
DIRECTOR_DUE_DAYS = 2
PAYMENT_DUE_DAYS = 5
REJECTION_DUE_DAYS = 3


def compute_payment_amount(contract_amount, completed_percent) -> Decimal:
    """contract amount × completed percent / 100, rounded half-up to cents."""
    amount = Decimal(str(contract_amount)) * Decimal(str(completed_percent)) / Decimal(100)
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def _contractor_name(contract):
    return contract.contractor.name if contract.contractor else "unknown contractor"


def _percent(value):
    return f"{Decimal(str(value)).normalize():f}"


class ApprovalWorkflow:
    """Sign-off state machine for progress reports."""

    def __init__(self, router: RoleRouter | None = None):
        self.router = router or default_router()

    # ── Core transition ───────────────────────────────────────────────────

    def _transition(self, report_id, action, target, actor_id, now, values=None):
        """Swap the report's status to ``target`` iff it is still in the state we read."""
        report = get_or_raise(ProgressReport, report_id)
        get_or_raise(User, actor_id)
        current = report.approval_status
        if not validate_approval_transition(current, target):
            raise InvalidStateTransitionError(
                "progress_report", action, current.value,
                [s.value for s in approval_sources(target)],
            )

        swapped = db.session.execute(
            update(ProgressReport)
            .where(ProgressReport.id == report.id, ProgressReport.approval_status == current)
            .values(approval_status=target, updated_at=now, **(values or {}))
            .execution_options(synchronize_session=False)
        ).rowcount
        db.session.refresh(report)
        if swapped == 0:
            raise InvalidStateTransitionError(
                "progress_report", action, report.approval_status.value,
                [s.value for s in approval_sources(target)],
            )

        write_audit(
            entity_type="progress_report",
            entity_id=report.id,
            action=f"progress_report.{action}",
            actor_user_id=actor_id,
            diff={"approval_status": {"old": current.value, "new": target.value}, **(values or {})},
        )
        logger.info(
            "Progress report %s %s: %s -> %s by user=%s",
            report.id, action, current.value, target.value, actor_id,
            extra={"entity_type": "progress_report", "entity_id": report.id, "actor_id": actor_id},
        )
        return report

    def _follow_up(self, stage, report, actor_id, *, title, description, due_in_days, now):
        assignee_id = self.router.resolve_approver(stage, report.contract)
        if assignee_id is None:
            logger.warning("No assignee for stage=%s on progress report %s; no task created",
                           stage, report.id)
            return None
        return TaskOrchestrator.create(
            title=title,
            description=description,
            priority=TaskPriority.HIGH,
            due_date=now + timedelta(days=due_in_days),
            assignee_id=assignee_id,
            creator_id=actor_id,
            contract_id=report.contract_id,
            progress_report_id=report.id,
            project_id=report.contract.project_id,
            commit=False,
        )

    # ── Transitions ───────────────────────────────────────────────────────

    def submit(self, report_id, actor_id, now=None) -> ProgressReport:
        """Draft or Rejected -> SubmittedForReview; review task for the project manager if one is set."""
        now = now or utcnow()
        with atomic():
            report = self._transition(
                report_id, "submit", ApprovalStatus.SUBMITTED_FOR_REVIEW, actor_id, now,
                {"submitted_at": now, "submitted_by_id": actor_id},
            )
            contract = report.contract
            self._follow_up(
                STAGE_MANAGER_REVIEW, report, actor_id,
                title=f"Review progress report #{report.id} ({contract.contract_number})",
                description=(
                    f"Progress report for contract {contract.contract_number} is waiting for review.\n"
                    f"Contractor: {_contractor_name(contract)}\n"
                    f"Completed: {_percent(report.completed_percent)}%\n"
                    f"Report date: {report.report_date:%d.%m.%Y}"
                ),
                due_in_days=REVIEW_DUE_DAYS, now=now,
            )
        return report

    def manager_approve(self, report_id, actor_id, comment=None, now=None) -> ProgressReport:
        """SubmittedForReview -> ManagerApproved; approval task for the director."""
        now = now or utcnow()
        with atomic():
            report = self._transition(
                report_id, "manager_approve", ApprovalStatus.MANAGER_APPROVED, actor_id, now,
                {"manager_reviewed_at": now, "manager_reviewed_by_id": actor_id,
                 "manager_comment": comment},
            )
            contract = report.contract
            description = (
                f"Progress report for contract {contract.contract_number} was approved by the "
                f"project manager and needs director approval.\n"
                f"Contractor: {_contractor_name(contract)}\n"
                f"Completed: {_percent(report.completed_percent)}%"
            )
            if comment:
                description += f"\nManager comment: {comment}"
            self._follow_up(
                STAGE_DIRECTOR_APPROVAL, report, actor_id,
                title=f"Approve progress report #{report.id} ({contract.contract_number})",
                description=description,
                due_in_days=DIRECTOR_DUE_DAYS, now=now,
            )
        return report

    def director_approve(self, report_id, actor_id, comment=None, now=None) -> ProgressReport:
        """ManagerApproved -> DirectorApproved; creates the Payment and a preparation task."""
        now = now or utcnow()
        with atomic():
            report = self._transition(
                report_id, "director_approve", ApprovalStatus.DIRECTOR_APPROVED, actor_id, now,
                {"director_approved_at": now, "director_approved_by_id": actor_id,
                 "director_comment": comment},
            )
            contract = report.contract
            payment = Payment(
                contract_id=contract.id,
                progress_report_id=report.id,
                amount=compute_payment_amount(contract.contract_amount, report.completed_percent),
                currency=contract.currency,
                payment_type=PAYMENT_TYPE_INTERIM,
                payment_date=now.date(),
                description=(f"Auto-payment for progress report #{report.id} "
                             f"dated {report.report_date:%d.%m.%Y}"),
                status=PaymentStatus.PENDING,
                created_by_id=actor_id,
            )
            db.session.add(payment)
            db.session.flush()
            write_audit(
                entity_type="payment",
                entity_id=payment.id,
                action="payment.create",
                actor_user_id=actor_id,
                diff={"amount": str(payment.amount), "progress_report_id": report.id},
            )
            self._follow_up(
                STAGE_PAYMENT_PREPARATION, report, actor_id,
                title=f"Prepare payment #{payment.id} ({contract.contract_number})",
                description=(
                    f"Progress report #{report.id} was approved by the director.\n"
                    f"Payment amount: {payment.amount:,.2f} {payment.currency}\n"
                    f"Contractor: {_contractor_name(contract)}\n"
                    "Prepare the payment documents and confirm the payment."
                ),
                due_in_days=PAYMENT_DUE_DAYS, now=now,
            )
        logger.info("Payment %s (%s) created for progress report %s",
                    payment.id, payment.amount, report.id)
        return report

    def reject(self, report_id, actor_id, reason, now=None) -> ProgressReport:
        """SubmittedForReview | ManagerApproved -> Rejected; revision task for the curator."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason is required", details={"reason": "required"})
        now = now or utcnow()
        with atomic():
            report = self._transition(
                report_id, "reject", ApprovalStatus.REJECTED, actor_id, now,
                {"rejected_at": now, "rejected_by_id": actor_id, "rejection_reason": reason},
            )
            contract = report.contract
            self._follow_up(
                STAGE_REJECTION, report, actor_id,
                title=f"Progress report #{report.id} rejected ({contract.contract_number})",
                description=(
                    f'Progress report for contract {contract.contract_number} was rejected.\n'
                    f'Reason: "{reason}"\n'
                    "Revise the report and submit it again."
                ),
                due_in_days=REJECTION_DUE_DAYS, now=now,
            )
        return report

    def return_to_draft(self, report_id, actor_id, now=None) -> ProgressReport:
        """Rejected -> Draft so the report can be revised and submitted again."""
        now = now or utcnow()
        with atomic():
            report = self._transition(
                report_id, "return_to_draft", ApprovalStatus.DRAFT, actor_id, now,
            )
        return report
