"""Notification inbox, delivery settings and scheduler API.

Endpoint groups:
  Inbox        GET  /api/v1/users/<id>/notifications[?unread_only=true&limit=&offset=]
               GET  /api/v1/users/<id>/notifications/unread-count
               POST /api/v1/users/<id>/notifications/read-all
               POST /api/v1/notifications/<id>/read
  Settings     GET  /api/v1/users/<id>/notification-settings
               PUT  /api/v1/users/<id>/notification-settings
  Scheduler    GET  /api/v1/scheduler/jobs
               POST /api/v1/scheduler/jobs/<name>/run
               PUT  /api/v1/scheduler/jobs/<name>/toggle
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from pmis.services.notification import NotificationService
from pmis.services.scheduler_service import SchedulerService, get_registered_jobs
from pmis.utils.errors import E, api_error, register_error_handlers
from pmis.utils.helpers import request_actor_id

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notifications", __name__, url_prefix="/api/v1")
register_error_handlers(notification_bp)


# ── Inbox ────────────────────────────────────────────────────────────────────


@notification_bp.route("/users/<int:user_id>/notifications", methods=["GET"])
def list_notifications(user_id):
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)
    items, total = NotificationService.list_for_user(
        user_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total}), 200


@notification_bp.route("/users/<int:user_id>/notifications/unread-count", methods=["GET"])
def unread_count(user_id):
    return jsonify({"unread_count": NotificationService.unread_count(user_id)}), 200


@notification_bp.route("/users/<int:user_id>/notifications/read-all", methods=["POST"])
def mark_all_read(user_id):
    return jsonify({"marked_read": NotificationService.mark_all_read(user_id)}), 200


@notification_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_read(notification_id):
    notif = NotificationService.mark_read(notification_id, user_id=request_actor_id())
    return jsonify(notif.to_dict()), 200


# ── Settings ─────────────────────────────────────────────────────────────────


@notification_bp.route("/users/<int:user_id>/notification-settings", methods=["GET"])
def get_settings(user_id):
    return jsonify(NotificationService.get_settings(user_id).to_dict()), 200


@notification_bp.route("/users/<int:user_id>/notification-settings", methods=["PUT"])
def update_settings(user_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_INVALID, "JSON object body is required")
    return jsonify(NotificationService.update_settings(user_id, data).to_dict()), 200


# ── Scheduler ────────────────────────────────────────────────────────────────


@notification_bp.route("/scheduler/jobs", methods=["GET"])
def list_jobs():
    return jsonify({"jobs": SchedulerService.list_jobs(),
                    "running": SchedulerService.is_running()}), 200


@notification_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    return jsonify(SchedulerService.run_job(job_name)), 200


@notification_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PUT"])
def toggle_job(job_name):
    data = request.get_json(silent=True) or {}
    if "enabled" not in data:
        return api_error(E.VALIDATION_REQUIRED, "enabled is required")
    SchedulerService.ensure_jobs_registered()
    record = SchedulerService.toggle_job(job_name, bool(data["enabled"]))
    if record is None:
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    return jsonify(record), 200
