"""
Role-based routing and assignment policy.

Two concerns live here because both are pure reads of the identity
tables:

  * ``can_assign``: who may hand a task to whom, as a function of the
    two users' role sets only.
  * ``RoleRouter``: which user receives the follow-up task at each
    approval stage. The default strategy picks the first active holder
    of a role; ``ConfiguredRoleRouter`` pins stages to explicit users
    via the APPROVER_OVERRIDES config key.

Usage:
    router = FirstActiveRoleRouter()
    user_id = router.resolve_approver(STAGE_DIRECTOR_APPROVAL, contract)
"""

from __future__ import annotations

import logging

from flask import current_app

from pmis.models import db
from pmis.models.auth import (
    ACCOUNTANT, CONTRACTOR, PMU_ADMIN, PMU_STAFF, Role, User, UserRole,
)

logger = logging.getLogger(__name__)

STAGE_MANAGER_REVIEW = "manager_review"
STAGE_DIRECTOR_APPROVAL = "director_approval"
STAGE_PAYMENT_PREPARATION = "payment_preparation"
STAGE_REJECTION = "rejection"

APPROVAL_STAGES = (
    STAGE_MANAGER_REVIEW,
    STAGE_DIRECTOR_APPROVAL,
    STAGE_PAYMENT_PREPARATION,
    STAGE_REJECTION,
)

# Roles a staff member or accountant may hand work to
_STAFF_ASSIGNABLE = frozenset({PMU_STAFF, ACCOUNTANT, CONTRACTOR})


def can_assign(assigner_roles, assignee_roles, *, is_self=False) -> bool:
    """Assignment policy over two role sets.

    - PMU_ADMIN assigns to anyone.
    - PMU_STAFF / ACCOUNTANT assign to staff, accountants and contractors.
    - Everyone may assign to themself; nothing else is allowed.
    """
    assigner_roles = set(assigner_roles)
    if PMU_ADMIN in assigner_roles:
        return True
    if is_self:
        return True
    if assigner_roles & {PMU_STAFF, ACCOUNTANT}:
        return bool(set(assignee_roles) & _STAFF_ASSIGNABLE)
    return False


def first_active_user_with_role(role_name: str) -> int | None:
    """Lowest-id active user holding ``role_name``."""
    return (
        db.session.query(User.id)
        .join(UserRole, UserRole.user_id == User.id)
        .join(Role, Role.id == UserRole.role_id)
        .filter(Role.name == role_name, User.is_active.is_(True))
        .order_by(User.id)
        .limit(1)
        .scalar()
    )


def _active_or_none(user_id):
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    return user_id if user is not None and user.is_active else None


class RoleRouter:
    """Resolves the user that owns the follow-up task of an approval stage."""

    def resolve_approver(self, stage: str, contract) -> int | None:
        raise NotImplementedError


class FirstActiveRoleRouter(RoleRouter):
    """Contract people for manager/rejection stages, first role holder otherwise."""

    stage_roles = {
        STAGE_DIRECTOR_APPROVAL: PMU_ADMIN,
        STAGE_PAYMENT_PREPARATION: PMU_STAFF,
    }

    def resolve_approver(self, stage, contract):
        if stage not in APPROVAL_STAGES:
            raise ValueError(f"Unknown approval stage: {stage}")
        if stage == STAGE_MANAGER_REVIEW:
            return _active_or_none(contract.project_manager_id)
        if stage == STAGE_REJECTION:
            return _active_or_none(contract.curator_id)
        return first_active_user_with_role(self.stage_roles[stage])


class ConfiguredRoleRouter(RoleRouter):
    """Explicit stage -> user mapping with a fallback strategy.

    Overrides come from ``APPROVER_OVERRIDES`` unless passed in; an
    override pointing at an inactive or missing user falls through.
    """

    def __init__(self, overrides: dict | None = None, fallback: RoleRouter | None = None):
        self._overrides = overrides
        self._fallback = fallback or FirstActiveRoleRouter()

    @property
    def overrides(self):
        if self._overrides is not None:
            return self._overrides
        return current_app.config.get("APPROVER_OVERRIDES") or {}

    def resolve_approver(self, stage, contract):
        pinned = _active_or_none(self.overrides.get(stage))
        if pinned is not None:
            return pinned
        if stage in self.overrides:
            logger.warning("Approver override for stage=%s is not an active user; falling back", stage)
        return self._fallback.resolve_approver(stage, contract)


def default_router() -> RoleRouter:
    """Router used when a service is built without one."""
    return ConfiguredRoleRouter()
