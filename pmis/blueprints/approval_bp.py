"""Progress-report approval and payment lifecycle API.

Endpoint groups:
  Progress reports   GET  /api/v1/progress-reports/<id>
                     POST /api/v1/progress-reports/<id>/submit
                     POST /api/v1/progress-reports/<id>/manager-approve
                     POST /api/v1/progress-reports/<id>/director-approve
                     POST /api/v1/progress-reports/<id>/reject
                     POST /api/v1/progress-reports/<id>/return-to-draft
  Payments           GET  /api/v1/payments/<id>
                     POST /api/v1/payments/<id>/approve
                     POST /api/v1/payments/<id>/mark-paid
                     POST /api/v1/payments/<id>/reject

The acting user comes from X-User-Id (or ``actor_id`` in the body).
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import pmis.services.payment_service as payment_service
from pmis.models.progress_report import Payment, ProgressReport
from pmis.services.approval_workflow import ApprovalWorkflow
from pmis.utils.errors import E, api_error, register_error_handlers, require_actor
from pmis.utils.helpers import get_or_raise

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval", __name__, url_prefix="/api/v1")
register_error_handlers(approval_bp)


def _body() -> dict:
    return request.get_json(silent=True) or {}


# ═════════════════════════════════════════════════════════════════════════
# Progress reports
# ═════════════════════════════════════════════════════════════════════════


@approval_bp.route("/progress-reports/<int:report_id>", methods=["GET"])
def get_report(report_id):
    return jsonify(get_or_raise(ProgressReport, report_id).to_dict()), 200


@approval_bp.route("/progress-reports/<int:report_id>/submit", methods=["POST"])
def submit_report(report_id):
    actor_id, err = require_actor()
    if err:
        return err
    report = ApprovalWorkflow().submit(report_id, actor_id)
    return jsonify(report.to_dict()), 200


@approval_bp.route("/progress-reports/<int:report_id>/manager-approve", methods=["POST"])
def manager_approve_report(report_id):
    actor_id, err = require_actor()
    if err:
        return err
    report = ApprovalWorkflow().manager_approve(report_id, actor_id, _body().get("comment"))
    return jsonify(report.to_dict()), 200


@approval_bp.route("/progress-reports/<int:report_id>/director-approve", methods=["POST"])
def director_approve_report(report_id):
    actor_id, err = require_actor()
    if err:
        return err
    report = ApprovalWorkflow().director_approve(report_id, actor_id, _body().get("comment"))
    return jsonify(report.to_dict()), 200


@approval_bp.route("/progress-reports/<int:report_id>/reject", methods=["POST"])
def reject_report(report_id):
    actor_id, err = require_actor()
    if err:
        return err
    reason = _body().get("reason")
    if not reason:
        return api_error(E.VALIDATION_REQUIRED, "reason is required")
    report = ApprovalWorkflow().reject(report_id, actor_id, reason)
    return jsonify(report.to_dict()), 200


@approval_bp.route("/progress-reports/<int:report_id>/return-to-draft", methods=["POST"])
def return_report_to_draft(report_id):
    actor_id, err = require_actor()
    if err:
        return err
    report = ApprovalWorkflow().return_to_draft(report_id, actor_id)
    return jsonify(report.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Payments
# ═════════════════════════════════════════════════════════════════════════


@approval_bp.route("/payments/<int:payment_id>", methods=["GET"])
def get_payment(payment_id):
    return jsonify(get_or_raise(Payment, payment_id).to_dict()), 200


@approval_bp.route("/payments/<int:payment_id>/approve", methods=["POST"])
def approve_payment(payment_id):
    actor_id, err = require_actor()
    if err:
        return err
    return jsonify(payment_service.approve(payment_id, actor_id).to_dict()), 200


@approval_bp.route("/payments/<int:payment_id>/mark-paid", methods=["POST"])
def mark_payment_paid(payment_id):
    actor_id, err = require_actor()
    if err:
        return err
    return jsonify(payment_service.mark_paid(payment_id, actor_id).to_dict()), 200


@approval_bp.route("/payments/<int:payment_id>/reject", methods=["POST"])
def reject_payment(payment_id):
    actor_id, err = require_actor()
    if err:
        return err
    reason = _body().get("reason")
    if not reason:
        return api_error(E.VALIDATION_REQUIRED, "reason is required")
    return jsonify(payment_service.reject(payment_id, actor_id, reason).to_dict()), 200
