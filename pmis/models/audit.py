"""
Audit domain model.

Models:
    - AuditLog: immutable, append-only trail of approval and payment
      lifecycle events. Each row is the domain event emitted by a
      transition and is written in the same transaction as the
      transition itself.
"""

import json

from pmis.models import db
from pmis.utils.helpers import iso, utcnow

AUDIT_ACTIONS = {
    "progress_report.submit",
    "progress_report.manager_approve",
    "progress_report.director_approve",
    "progress_report.reject",
    "progress_report.return_to_draft",
    "payment.create",
    "payment.approve",
    "payment.mark_paid",
    "payment.reject",
}


class AuditLog(db.Model):
    """One row per lifecycle event; ``diff_json`` carries {field: {old, new}}."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    actor_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    diff_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow)

    @property
    def diff(self):
        return json.loads(self.diff_json or "{}")

    def to_dict(self):
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": iso(self.timestamp),
        }

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entity_type}:{self.entity_id}>"


def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor_user_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
