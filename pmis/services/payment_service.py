"""
Payment lifecycle after a payment has been created by director approval.

    Pending ─approve─▶ Approved ─mark_paid─▶ Paid
       └──── reject ────┴──────▶ Rejected

Marking a payment paid closes the open tasks of its originating progress
report (the "prepare payment documents" follow-ups) in the same
transaction. Only a payment with no report link falls back to every open
task of the contract.
"""

import logging

from sqlalchemy import update

from pmis.core.exceptions import InvalidStateTransitionError, ValidationError
from pmis.models import db
from pmis.models.audit import write_audit
from pmis.models.auth import User
from pmis.models.notification import (
    REF_PAYMENT, NotificationChannel, NotificationPriority, NotificationType,
)
from pmis.models.progress_report import (
    PAYMENT_TRANSITIONS, Payment, PaymentStatus, validate_payment_transition,
)
from pmis.services.notification import NotificationService
from pmis.services.task_service import TaskOrchestrator
from pmis.utils.helpers import atomic, get_or_raise, utcnow

logger = logging.getLogger(__name__)


def _swap_status(payment, action, target, actor_id, values):
    current = payment.status
    allowed = [s.value for s, targets in PAYMENT_TRANSITIONS.items() if target in targets]
    if not validate_payment_transition(current, target):
        raise InvalidStateTransitionError("payment", action, current.value, allowed)
    swapped = db.session.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == current)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.session.refresh(payment)
    if swapped == 0:
        raise InvalidStateTransitionError("payment", action, payment.status.value, allowed)
    write_audit(
        entity_type="payment",
        entity_id=payment.id,
        action=f"payment.{action}",
        actor_user_id=actor_id,
        diff={"status": {"old": current.value, "new": target.value}},
    )
    logger.info("Payment %s %s: %s -> %s by user=%s",
                payment.id, action, current.value, target.value, actor_id)


def approve(payment_id, actor_id, now=None) -> Payment:
    payment = get_or_raise(Payment, payment_id)
    get_or_raise(User, actor_id)
    now = now or utcnow()
    with atomic():
        _swap_status(payment, "approve", PaymentStatus.APPROVED, actor_id,
                     {"approved_by_id": actor_id, "approved_at": now})
        curator_id = payment.contract.curator_id
        if curator_id is not None:
            NotificationService.create(
                user_id=curator_id,
                title="Payment approved",
                message=(f"Payment #{payment.id} of {payment.amount:,.2f} {payment.currency} "
                         f"for contract {payment.contract.contract_number} was approved"),
                type=NotificationType.PAYMENT_APPROVED,
                channel=NotificationChannel.ALL,
                reference_type=REF_PAYMENT,
                reference_id=payment.id,
                now=now,
            )
    return payment


def mark_paid(payment_id, actor_id, now=None) -> Payment:
    """Approved -> Paid, then complete the originating report's open tasks."""
    payment = get_or_raise(Payment, payment_id)
    get_or_raise(User, actor_id)
    now = now or utcnow()
    with atomic():
        _swap_status(payment, "mark_paid", PaymentStatus.PAID, actor_id, {"paid_at": now})
        TaskOrchestrator.complete_related_tasks(
            contract_id=payment.contract_id, progress_report_id=payment.progress_report_id,
            actor_id=actor_id, commit=False, now=now,
        )
    return payment


def reject(payment_id, actor_id, reason, now=None) -> Payment:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required", details={"reason": "required"})
    payment = get_or_raise(Payment, payment_id)
    get_or_raise(User, actor_id)
    now = now or utcnow()
    with atomic():
        _swap_status(payment, "reject", PaymentStatus.REJECTED, actor_id,
                     {"rejection_reason": reason})
        curator_id = payment.contract.curator_id
        if curator_id is not None:
            NotificationService.create(
                user_id=curator_id,
                title="Payment rejected",
                message=f"Payment #{payment.id} was rejected. Reason: {reason}",
                type=NotificationType.PAYMENT_REJECTED,
                priority=NotificationPriority.HIGH,
                channel=NotificationChannel.ALL,
                reference_type=REF_PAYMENT,
                reference_id=payment.id,
                now=now,
            )
    return payment
