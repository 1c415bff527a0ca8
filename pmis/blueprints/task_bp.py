"""Task API.

Endpoint groups:
  Tasks          POST /api/v1/tasks
                 GET  /api/v1/tasks/<id>
                 POST /api/v1/tasks/<id>/assign
                 PUT  /api/v1/tasks/<id>/status
                 PUT  /api/v1/tasks/<id>/progress
                 GET  /api/v1/tasks/<id>/history
                 POST /api/v1/tasks/complete-related
  Extensions     POST /api/v1/tasks/<id>/extensions
                 POST /api/v1/extensions/<id>/approve
                 POST /api/v1/extensions/<id>/reject
  Users          GET  /api/v1/users/<id>/tasks
                 GET  /api/v1/users/<assigner_id>/can-assign/<assignee_id>

Tasks created here go through the assignment policy; system-created
tasks (approval follow-ups, escalations) do not.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from pmis.services.task_service import TaskOrchestrator
from pmis.utils.errors import E, api_error, register_error_handlers, require_actor
from pmis.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

task_bp = Blueprint("tasks", __name__, url_prefix="/api/v1")
register_error_handlers(task_bp)

_OPTIONAL_LINKS = ("contract_id", "progress_report_id", "milestone_id",
                   "procurement_item_id", "project_id")


def _body() -> dict:
    return request.get_json(silent=True) or {}


@task_bp.route("/tasks", methods=["POST"])
def create_task():
    """Create a task for ``assignee_id`` (defaults to the actor)."""
    actor_id, err = require_actor()
    if err:
        return err
    data = _body()
    due_date = parse_datetime(data.get("due_date"))
    if due_date is None:
        return api_error(E.VALIDATION_REQUIRED, "due_date is required (ISO 8601)")
    task = TaskOrchestrator.create(
        title=data.get("title"),
        description=data.get("description", ""),
        priority=data.get("priority", "normal"),
        due_date=due_date,
        start_date=parse_datetime(data.get("start_date")),
        assignee_id=data.get("assignee_id", actor_id),
        creator_id=actor_id,
        enforce_policy=True,
        **{key: data.get(key) for key in _OPTIONAL_LINKS},
    )
    return jsonify(task.to_dict()), 201


@task_bp.route("/tasks/<int:task_id>", methods=["GET"])
def get_task(task_id):
    task = TaskOrchestrator.get(task_id)
    d = task.to_dict()
    d["extension_requests"] = [e.to_dict() for e in task.extension_requests]
    return jsonify(d), 200


@task_bp.route("/tasks/<int:task_id>/assign", methods=["POST"])
def assign_task(task_id):
    actor_id, err = require_actor()
    if err:
        return err
    assignee_id = _body().get("assignee_id")
    if assignee_id is None:
        return api_error(E.VALIDATION_REQUIRED, "assignee_id is required")
    return jsonify(TaskOrchestrator.assign(task_id, assignee_id, actor_id).to_dict()), 200


@task_bp.route("/tasks/<int:task_id>/status", methods=["PUT"])
def change_task_status(task_id):
    actor_id, err = require_actor()
    if err:
        return err
    status = _body().get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    return jsonify(TaskOrchestrator.change_status(task_id, status, actor_id).to_dict()), 200


@task_bp.route("/tasks/<int:task_id>/progress", methods=["PUT"])
def update_task_progress(task_id):
    actor_id, err = require_actor()
    if err:
        return err
    percent = _body().get("completion_percent")
    if percent is None:
        return api_error(E.VALIDATION_REQUIRED, "completion_percent is required")
    return jsonify(TaskOrchestrator.update_progress(task_id, percent, actor_id).to_dict()), 200


@task_bp.route("/tasks/<int:task_id>/history", methods=["GET"])
def task_history(task_id):
    return jsonify([h.to_dict() for h in TaskOrchestrator.history(task_id)]), 200


@task_bp.route("/tasks/complete-related", methods=["POST"])
def complete_related_tasks():
    actor_id, err = require_actor()
    if err:
        return err
    data = _body()
    count = TaskOrchestrator.complete_related_tasks(
        contract_id=data.get("contract_id"),
        progress_report_id=data.get("progress_report_id"),
        actor_id=actor_id,
    )
    return jsonify({"completed": count}), 200


# ── Extensions ───────────────────────────────────────────────────────────────


@task_bp.route("/tasks/<int:task_id>/extensions", methods=["POST"])
def request_extension(task_id):
    actor_id, err = require_actor()
    if err:
        return err
    data = _body()
    new_due = parse_datetime(data.get("new_due_date"))
    if new_due is None:
        return api_error(E.VALIDATION_REQUIRED, "new_due_date is required (ISO 8601)")
    ext = TaskOrchestrator.request_extension(task_id, actor_id, data.get("reason"), new_due)
    return jsonify(ext.to_dict()), 201


@task_bp.route("/extensions/<int:request_id>/approve", methods=["POST"])
def approve_extension(request_id):
    actor_id, err = require_actor()
    if err:
        return err
    return jsonify(TaskOrchestrator.approve_extension(request_id, actor_id).to_dict()), 200


@task_bp.route("/extensions/<int:request_id>/reject", methods=["POST"])
def reject_extension(request_id):
    actor_id, err = require_actor()
    if err:
        return err
    ext = TaskOrchestrator.reject_extension(request_id, actor_id, _body().get("reason"))
    return jsonify(ext.to_dict()), 200


# ── Users ────────────────────────────────────────────────────────────────────


@task_bp.route("/users/<int:user_id>/tasks", methods=["GET"])
def list_user_tasks(user_id):
    active_only = request.args.get("active_only", "true").lower() != "false"
    tasks = TaskOrchestrator.list_for_user(user_id, active_only=active_only)
    return jsonify({"items": [t.to_dict() for t in tasks], "total": len(tasks)}), 200


@task_bp.route("/users/<int:user_id>/pending-extensions", methods=["GET"])
def list_pending_extensions(user_id):
    """Extension requests waiting on ``user_id`` as the tasks' assigner."""
    pending = TaskOrchestrator.pending_extensions(approver_id=user_id)
    return jsonify({"items": [r.to_dict() for r in pending], "total": len(pending)}), 200


@task_bp.route("/users/<int:assigner_id>/can-assign/<int:assignee_id>", methods=["GET"])
def can_assign_to(assigner_id, assignee_id):
    allowed = TaskOrchestrator.can_assign_to(assigner_id, assignee_id)
    return jsonify({"assigner_id": assigner_id, "assignee_id": assignee_id,
                    "allowed": allowed}), 200
