"""
Progress report approval workflow and payment lifecycle.

Covers:
    1. compute_payment_amount rounding
    2. submit / manager_approve / director_approve / reject / return_to_draft
    3. follow-up task routing and the audit trail
    4. stale-read protection (compare-and-swap) and replayed calls
    5. director-approved immutability
    6. payment approve / mark_paid / reject
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from pmis.core.exceptions import InvalidStateTransitionError, ValidationError
from pmis.models import db
from pmis.models.audit import AuditLog
from pmis.models.notification import Notification, NotificationType
from pmis.models.progress_report import ApprovalStatus, Payment, PaymentStatus, ProgressReport
from pmis.models.task import Task, TaskPriority, TaskStatus
from pmis.services import payment_service
from pmis.services.approval_workflow import ApprovalWorkflow, compute_payment_amount
from pmis.services.role_router import STAGE_DIRECTOR_APPROVAL, ConfiguredRoleRouter

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture()
def workflow():
    return ApprovalWorkflow()


@pytest.fixture()
def contract(make_contract):
    return make_contract()


@pytest.fixture()
def report(make_report, contract):
    return make_report(contract)


def _approved_report(workflow, report, people):
    workflow.submit(report.id, people["contractor"].id, now=NOW)
    workflow.manager_approve(report.id, people["manager"].id, now=NOW)
    return workflow.director_approve(report.id, people["admin"].id, now=NOW)


def _audit_actions(entity_type, entity_id):
    rows = (AuditLog.query
            .filter_by(entity_type=entity_type, entity_id=str(entity_id))
            .order_by(AuditLog.id).all())
    return [r.action for r in rows]


# ═════════════════════════════════════════════════════════════════════════
# PAYMENT AMOUNT
# ═════════════════════════════════════════════════════════════════════════

class TestComputePaymentAmount:
    def test_percent_of_contract(self):
        assert compute_payment_amount(Decimal("100000.00"), Decimal("25")) == Decimal("25000.00")

    def test_rounds_half_up_to_cents(self):
        assert compute_payment_amount(Decimal("10.00"), Decimal("12.35")) == Decimal("1.24")

    def test_accepts_floats_without_binary_error(self):
        assert compute_payment_amount(1234.5, 33.3) == Decimal("411.09")


# ═════════════════════════════════════════════════════════════════════════
# SUBMIT
# ═════════════════════════════════════════════════════════════════════════

class TestSubmit:
    def test_submit_moves_to_review_and_stamps(self, workflow, report, people):
        result = workflow.submit(report.id, people["contractor"].id, now=NOW)
        assert result.approval_status == ApprovalStatus.SUBMITTED_FOR_REVIEW
        assert result.submitted_at == NOW
        assert result.submitted_by_id == people["contractor"].id

    def test_submit_creates_review_task_for_project_manager(self, workflow, report, people, contract):
        workflow.submit(report.id, people["contractor"].id, now=NOW)
        task = Task.query.filter_by(progress_report_id=report.id).one()
        assert task.assignee_id == people["manager"].id
        assert task.assigned_by_id == people["contractor"].id
        assert task.priority == TaskPriority.HIGH
        assert task.due_date == NOW + timedelta(days=3)
        assert task.contract_id == contract.id
        assert task.title == f"Review progress report #{report.id} ({contract.contract_number})"
        assert "25%" in task.description

    def test_submit_notifies_assignee(self, workflow, report, people):
        workflow.submit(report.id, people["contractor"].id, now=NOW)
        notif = Notification.query.filter_by(user_id=people["manager"].id).one()
        assert notif.type == NotificationType.TASK_ASSIGNED

    def test_submit_writes_audit(self, workflow, report, people):
        workflow.submit(report.id, people["contractor"].id, now=NOW)
        assert _audit_actions("progress_report", report.id) == ["progress_report.submit"]

    def test_submit_without_project_manager_creates_no_task(self, workflow, make_contract,
                                                            make_report, people):
        contract = make_contract(manager=None)
        report = make_report(contract)
        result = workflow.submit(report.id, people["contractor"].id, now=NOW)
        assert result.approval_status == ApprovalStatus.SUBMITTED_FOR_REVIEW
        assert Task.query.count() == 0

    def test_submit_twice_is_rejected(self, workflow, report, people):
        workflow.submit(report.id, people["contractor"].id, now=NOW)
        with pytest.raises(InvalidStateTransitionError) as exc:
            workflow.submit(report.id, people["contractor"].id, now=NOW)
        assert exc.value.current == "submitted_for_review"
        assert exc.value.allowed == ["draft", "rejected"]
        assert Task.query.count() == 1

    def test_stale_read_loses_compare_and_swap(self, workflow, report, people):
        assert report.approval_status == ApprovalStatus.DRAFT
        # Another writer moves the row without refreshing our loaded instance
        db.session.execute(
            update(ProgressReport)
            .where(ProgressReport.id == report.id)
            .values(approval_status=ApprovalStatus.SUBMITTED_FOR_REVIEW)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(InvalidStateTransitionError) as exc:
            workflow.submit(report.id, people["contractor"].id, now=NOW)
        assert exc.value.current == "submitted_for_review"
        assert Task.query.count() == 0
        assert AuditLog.query.count() == 0

    def test_unknown_report(self, workflow, people):
        from pmis.core.exceptions import NotFoundError
        with pytest.raises(NotFoundError):
            workflow.submit(9999, people["contractor"].id)


# ═════════════════════════════════════════════════════════════════════════
# MANAGER / DIRECTOR APPROVAL
# ═════════════════════════════════════════════════════════════════════════

class TestApprovalStages:
    def test_manager_approve_routes_to_director(self, workflow, report, people):
        workflow.submit(report.id, people["contractor"].id, now=NOW)
        result = workflow.manager_approve(report.id, people["manager"].id,
                                          comment="Checked on site", now=NOW)
        assert result.approval_status == ApprovalStatus.MANAGER_APPROVED
        assert result.manager_comment == "Checked on site"
        task = (Task.query.filter_by(progress_report_id=report.id)
                .order_by(Task.id.desc()).first())
        assert task.assignee_id == people["admin"].id
        assert task.due_date == NOW + timedelta(days=2)
        assert "Manager comment: Checked on site" in task.description

    def test_manager_approve_from_draft_fails(self, workflow, report, people):
        with pytest.raises(InvalidStateTransitionError):
            workflow.manager_approve(report.id, people["manager"].id)
        db.session.refresh(report)
        assert report.approval_status == ApprovalStatus.DRAFT

    def test_director_approve_creates_single_payment(self, workflow, report, people, contract):
        result = _approved_report(workflow, report, people)
        assert result.approval_status == ApprovalStatus.DIRECTOR_APPROVED
        payment = Payment.query.filter_by(progress_report_id=report.id).one()
        assert payment.amount == Decimal("25000.00")
        assert payment.status == PaymentStatus.PENDING
        assert payment.currency == "USD"
        assert payment.payment_date == NOW.date()
        assert payment.contract_id == contract.id

    def test_director_approve_creates_payment_task_for_staff(self, workflow, report, people):
        _approved_report(workflow, report, people)
        payment = Payment.query.one()
        task = Task.query.filter(Task.title.like("Prepare payment%")).one()
        assert task.assignee_id == people["staff"].id
        assert task.due_date == NOW + timedelta(days=5)
        assert f"#{payment.id}" in task.title
        assert "25,000.00 USD" in task.description

    def test_director_approve_audit_trail(self, workflow, report, people):
        _approved_report(workflow, report, people)
        assert _audit_actions("progress_report", report.id) == [
            "progress_report.submit",
            "progress_report.manager_approve",
            "progress_report.director_approve",
        ]
        assert _audit_actions("payment", Payment.query.one().id) == ["payment.create"]

    def test_replayed_director_approve_fails(self, workflow, report, people):
        _approved_report(workflow, report, people)
        with pytest.raises(InvalidStateTransitionError):
            workflow.director_approve(report.id, people["admin"].id)
        assert Payment.query.count() == 1

    def test_director_approved_report_is_frozen(self, workflow, report, people):
        _approved_report(workflow, report, people)
        report = db.session.get(ProgressReport, report.id)
        report.description = "Edited afterwards"
        with pytest.raises(ValidationError):
            db.session.commit()
        db.session.rollback()

    def test_override_router_pins_director(self, report, people, make_user):
        from pmis.models.auth import PMU_ADMIN
        deputy = make_user(PMU_ADMIN, full_name="Deputy Director")
        workflow = ApprovalWorkflow(ConfiguredRoleRouter({STAGE_DIRECTOR_APPROVAL: deputy.id}))
        workflow.submit(report.id, people["contractor"].id, now=NOW)
        workflow.manager_approve(report.id, people["manager"].id, now=NOW)
        task = Task.query.filter(Task.title.like("Approve progress report%")).one()
        assert task.assignee_id == deputy.id


# ═════════════════════════════════════════════════════════════════════════
# REJECTION
# ═════════════════════════════════════════════════════════════════════════

class TestReject:
    def test_reject_requires_reason(self, workflow, report, people):
        workflow.submit(report.id, people["contractor"].id, now=NOW)
        with pytest.raises(ValidationError):
            workflow.reject(report.id, people["manager"].id, "   ")

    def test_reject_from_review_routes_to_curator(self, workflow, report, people):
        workflow.submit(report.id, people["contractor"].id, now=NOW)
        result = workflow.reject(report.id, people["manager"].id, "Missing photos", now=NOW)
        assert result.approval_status == ApprovalStatus.REJECTED
        assert result.rejection_reason == "Missing photos"
        task = Task.query.filter(Task.title.like("%rejected%")).one()
        assert task.assignee_id == people["curator"].id
        assert '"Missing photos"' in task.description

    def test_reject_from_manager_approved(self, workflow, report, people):
        workflow.submit(report.id, people["contractor"].id, now=NOW)
        workflow.manager_approve(report.id, people["manager"].id, now=NOW)
        result = workflow.reject(report.id, people["admin"].id, "Amount disputed", now=NOW)
        assert result.approval_status == ApprovalStatus.REJECTED

    def test_reject_draft_fails(self, workflow, report, people):
        with pytest.raises(InvalidStateTransitionError) as exc:
            workflow.reject(report.id, people["manager"].id, "Too early")
        assert set(exc.value.allowed) == {"submitted_for_review", "manager_approved"}

    def test_reject_director_approved_fails(self, workflow, report, people):
        _approved_report(workflow, report, people)
        with pytest.raises(InvalidStateTransitionError):
            workflow.reject(report.id, people["admin"].id, "Changed mind")

    def test_resubmit_directly_after_rejection(self, workflow, report, people):
        workflow.submit(report.id, people["contractor"].id, now=NOW)
        workflow.reject(report.id, people["manager"].id, "Missing photos", now=NOW)
        later = NOW + timedelta(days=1)
        result = workflow.submit(report.id, people["contractor"].id, now=later)
        assert result.approval_status == ApprovalStatus.SUBMITTED_FOR_REVIEW
        assert result.submitted_at == later
        review_tasks = Task.query.filter(Task.progress_report_id == report.id,
                                         Task.title.like("Review%")).count()
        assert review_tasks == 2

    def test_resubmit_after_return_to_draft(self, workflow, report, people):
        workflow.submit(report.id, people["contractor"].id, now=NOW)
        workflow.reject(report.id, people["manager"].id, "Missing photos", now=NOW)
        workflow.return_to_draft(report.id, people["curator"].id, now=NOW)
        result = workflow.submit(report.id, people["contractor"].id, now=NOW + timedelta(days=1))
        assert result.approval_status == ApprovalStatus.SUBMITTED_FOR_REVIEW
        assert result.submitted_at == NOW + timedelta(days=1)

    def test_submit_from_manager_approved_fails(self, workflow, report, people):
        workflow.submit(report.id, people["contractor"].id, now=NOW)
        workflow.manager_approve(report.id, people["manager"].id, now=NOW)
        with pytest.raises(InvalidStateTransitionError) as exc:
            workflow.submit(report.id, people["contractor"].id)
        assert set(exc.value.allowed) == {"draft", "rejected"}


# ═════════════════════════════════════════════════════════════════════════
# PAYMENT LIFECYCLE
# ═════════════════════════════════════════════════════════════════════════

class TestPaymentLifecycle:
    def test_approve_and_mark_paid_completes_report_tasks(self, workflow, report, people):
        _approved_report(workflow, report, people)
        payment = Payment.query.one()
        payment_service.approve(payment.id, people["accountant"].id, now=NOW)
        paid = payment_service.mark_paid(payment.id, people["accountant"].id, now=NOW)
        assert paid.status == PaymentStatus.PAID
        assert paid.paid_at == NOW
        open_tasks = Task.query.filter(
            Task.progress_report_id == report.id,
            Task.status.notin_([TaskStatus.COMPLETED, TaskStatus.CANCELLED]),
        ).count()
        assert open_tasks == 0

    def test_mark_paid_leaves_other_contract_work_open(self, workflow, contract, report, people,
                                                       make_report, make_task):
        second = make_report(contract, percent=Decimal("40.00"))
        _approved_report(workflow, report, people)
        workflow.submit(second.id, people["contractor"].id, now=NOW)
        escalation = make_task(assignee=people["curator"], assigner=people["curator"],
                               title="Overdue milestone", contract_id=contract.id)

        payment = Payment.query.filter_by(progress_report_id=report.id).one()
        payment_service.approve(payment.id, people["accountant"].id, now=NOW)
        payment_service.mark_paid(payment.id, people["accountant"].id, now=NOW)

        second_review = Task.query.filter_by(progress_report_id=second.id).one()
        assert second_review.status == TaskStatus.NEW
        assert db.session.get(Task, escalation.id).status == TaskStatus.NEW
        assert Task.query.filter(
            Task.progress_report_id == report.id, Task.status != TaskStatus.COMPLETED,
        ).count() == 0

    def test_mark_paid_without_report_link_uses_contract(self, workflow, contract, report, people,
                                                         make_task):
        _approved_report(workflow, report, people)
        payment = Payment.query.one()
        payment.progress_report_id = None
        db.session.commit()
        loose = make_task(assignee=people["staff"], assigner=people["admin"], contract_id=contract.id)
        payment_service.approve(payment.id, people["accountant"].id, now=NOW)
        payment_service.mark_paid(payment.id, people["accountant"].id, now=NOW)
        assert db.session.get(Task, loose.id).status == TaskStatus.COMPLETED

    def test_approve_notifies_curator(self, workflow, report, people):
        _approved_report(workflow, report, people)
        payment = Payment.query.one()
        payment_service.approve(payment.id, people["accountant"].id, now=NOW)
        notif = Notification.query.filter_by(
            user_id=people["curator"].id, type=NotificationType.PAYMENT_APPROVED,
        ).one()
        assert "25,000.00 USD" in notif.message

    def test_mark_paid_requires_approval(self, workflow, report, people):
        _approved_report(workflow, report, people)
        payment = Payment.query.one()
        with pytest.raises(InvalidStateTransitionError):
            payment_service.mark_paid(payment.id, people["accountant"].id)

    def test_reject_payment(self, workflow, report, people):
        _approved_report(workflow, report, people)
        payment = Payment.query.one()
        rejected = payment_service.reject(payment.id, people["accountant"].id, "Wrong bank details")
        assert rejected.status == PaymentStatus.REJECTED
        assert rejected.rejection_reason == "Wrong bank details"
        assert Notification.query.filter_by(type=NotificationType.PAYMENT_REJECTED).count() == 1
        assert _audit_actions("payment", payment.id)[-1] == "payment.reject"
