"""
DeadlineScanner tests.

Covers:
    1. approaching-deadline notifications and per-day deduplication
    2. overdue task notifications (assignee + assigner)
    3. milestone overdue marking and one-time escalation tasks
    4. message helpers
"""

from datetime import datetime, timedelta

import pytest

from pmis.models import db
from pmis.models.contract import ContractMilestone, MilestoneStatus
from pmis.models.notification import (
    Notification, NotificationChannel, NotificationPriority, NotificationType,
)
from pmis.models.task import Task, TaskPriority, TaskStatus
from pmis.services.deadline_scanner import (
    DeadlineScanner, approaching_message, days_between, overdue_message,
)

NOW = datetime(2026, 3, 10, 12, 0, 0)


def _create_milestone(contract, *, due_date, status=MilestoneStatus.PENDING, title="Roof slab"):
    m = ContractMilestone(contract_id=contract.id, title=title, due_date=due_date, status=status)
    db.session.add(m)
    db.session.commit()
    return m


@pytest.fixture()
def scanner():
    return DeadlineScanner(warning_days=3)


# ═════════════════════════════════════════════════════════════════════════
# HELPERS
# ═════════════════════════════════════════════════════════════════════════

class TestMessages:
    def test_days_between_uses_calendar_days(self):
        assert days_between(datetime(2026, 3, 10, 23, 0), datetime(2026, 3, 11, 1, 0)) == 1

    def test_approaching_wording(self):
        assert approaching_message("Pour", 0) == 'Task "Pour" is due today'
        assert approaching_message("Pour", 1) == 'Task "Pour" is due tomorrow'
        assert approaching_message("Pour", 3).startswith("3 days remain")

    def test_overdue_wording(self):
        assert overdue_message("Pour", 1) == 'Task "Pour" is overdue by 1 day'
        assert overdue_message("Pour", 4) == 'Task "Pour" is overdue by 4 days'


# ═════════════════════════════════════════════════════════════════════════
# APPROACHING
# ═════════════════════════════════════════════════════════════════════════

class TestApproaching:
    def test_notifies_assignee_within_window(self, scanner, people, make_task):
        task = make_task(assignee=people["contractor"], assigner=people["staff"],
                         due_date=NOW + timedelta(days=2))
        results = scanner.run(now=NOW)
        assert results["approaching_notified"] == 1
        notif = Notification.query.filter_by(type=NotificationType.DEADLINE_APPROACHING).one()
        assert notif.user_id == people["contractor"].id
        assert notif.reference_id == task.id
        assert notif.channel == NotificationChannel.ALL
        assert "2 days remain" in notif.message

    def test_outside_window_ignored(self, scanner, people, make_task):
        make_task(assignee=people["contractor"], assigner=people["staff"],
                  due_date=NOW + timedelta(days=4))
        assert scanner.run(now=NOW)["approaching_notified"] == 0

    def test_closed_tasks_ignored(self, scanner, people, make_task):
        make_task(assignee=people["contractor"], assigner=people["staff"],
                  due_date=NOW + timedelta(days=1), status=TaskStatus.COMPLETED)
        assert scanner.run(now=NOW)["approaching_notified"] == 0

    def test_same_day_rerun_is_deduplicated(self, scanner, people, make_task):
        make_task(assignee=people["contractor"], assigner=people["staff"],
                  due_date=NOW + timedelta(days=2))
        scanner.run(now=NOW)
        results = scanner.run(now=NOW + timedelta(hours=1))
        assert results["approaching_notified"] == 0
        assert Notification.query.filter_by(type=NotificationType.DEADLINE_APPROACHING).count() == 1

    def test_next_day_notifies_again(self, scanner, people, make_task):
        make_task(assignee=people["contractor"], assigner=people["staff"],
                  due_date=NOW + timedelta(days=2))
        scanner.run(now=NOW)
        scanner.run(now=NOW + timedelta(days=1))
        assert Notification.query.filter_by(type=NotificationType.DEADLINE_APPROACHING).count() == 2

    def test_due_today_is_urgent(self, scanner, people, make_task):
        make_task(assignee=people["contractor"], assigner=people["staff"],
                  due_date=NOW + timedelta(hours=3))
        scanner.run(now=NOW)
        notif = Notification.query.one()
        assert notif.priority == NotificationPriority.URGENT
        assert notif.message.endswith("is due today")


# ═════════════════════════════════════════════════════════════════════════
# OVERDUE TASKS
# ═════════════════════════════════════════════════════════════════════════

class TestOverdueTasks:
    def test_assignee_and_assigner_notified(self, scanner, people, make_task):
        make_task(assignee=people["contractor"], assigner=people["staff"],
                  due_date=NOW - timedelta(days=2))
        results = scanner.run(now=NOW)
        assert results["overdue_notified"] == 2
        to_assignee = Notification.query.filter_by(user_id=people["contractor"].id).one()
        to_assigner = Notification.query.filter_by(user_id=people["staff"].id).one()
        assert to_assignee.priority == NotificationPriority.URGENT
        assert "overdue by 2 days" in to_assignee.message
        assert to_assigner.channel == NotificationChannel.EMAIL
        assert "Contractor Rep" in to_assigner.message

    def test_self_assigned_only_notifies_once(self, scanner, people, make_task):
        make_task(assignee=people["staff"], assigner=people["staff"],
                  due_date=NOW - timedelta(days=1))
        assert scanner.run(now=NOW)["overdue_notified"] == 1

    def test_overdue_rerun_same_day(self, scanner, people, make_task):
        make_task(assignee=people["contractor"], assigner=people["staff"],
                  due_date=NOW - timedelta(days=1))
        scanner.run(now=NOW)
        assert scanner.run(now=NOW + timedelta(hours=2))["overdue_notified"] == 0


# ═════════════════════════════════════════════════════════════════════════
# MILESTONES
# ═════════════════════════════════════════════════════════════════════════

class TestOverdueMilestones:
    def test_marks_overdue_and_escalates(self, scanner, people, make_contract):
        contract = make_contract()
        milestone = _create_milestone(contract, due_date=NOW - timedelta(days=3))
        results = scanner.run(now=NOW)
        assert results["milestones_marked_overdue"] == 1
        assert results["escalation_tasks_created"] == 2
        assert db.session.get(ContractMilestone, milestone.id).status == MilestoneStatus.OVERDUE

        tasks = Task.query.filter_by(milestone_id=milestone.id).order_by(Task.id).all()
        assert [t.assignee_id for t in tasks] == [people["curator"].id, people["manager"].id]
        assert all(t.priority == TaskPriority.CRITICAL for t in tasks)
        assert "overdue by 3 days" in tasks[0].description

    def test_escalation_happens_once(self, scanner, people, make_contract):
        contract = make_contract()
        milestone = _create_milestone(contract, due_date=NOW - timedelta(days=3))
        scanner.run(now=NOW)
        results = scanner.run(now=NOW + timedelta(days=1))
        assert results["milestones_marked_overdue"] == 0
        assert results["escalation_tasks_created"] == 0
        assert Task.query.filter_by(milestone_id=milestone.id).count() == 2

    def test_same_curator_and_manager_gets_one_task(self, scanner, people, make_contract):
        contract = make_contract(manager=people["curator"].id)
        _create_milestone(contract, due_date=NOW - timedelta(days=1))
        assert scanner.run(now=NOW)["escalation_tasks_created"] == 1

    def test_inactive_recipient_skipped(self, scanner, people, make_user, make_contract):
        away = make_user("PMU_STAFF", is_active=False)
        contract = make_contract(manager=away.id)
        _create_milestone(contract, due_date=NOW - timedelta(days=1))
        assert scanner.run(now=NOW)["escalation_tasks_created"] == 1
        assert Task.query.one().assignee_id == people["curator"].id

    def test_completed_and_future_milestones_untouched(self, scanner, make_contract):
        contract = make_contract()
        _create_milestone(contract, due_date=NOW - timedelta(days=5),
                          status=MilestoneStatus.COMPLETED, title="Excavation")
        _create_milestone(contract, due_date=NOW + timedelta(days=5), title="Facade")
        results = scanner.run(now=NOW)
        assert results["milestones_marked_overdue"] == 0
        assert results["escalation_tasks_created"] == 0

    def test_failure_rolls_back_whole_run(self, scanner, people, make_contract, make_task,
                                          monkeypatch):
        contract = make_contract()
        _create_milestone(contract, due_date=NOW - timedelta(days=1))
        make_task(assignee=people["contractor"], assigner=people["staff"],
                  due_date=NOW + timedelta(days=1))

        def _boom(*args, **kwargs):
            raise RuntimeError("db went away")

        monkeypatch.setattr("pmis.services.deadline_scanner.TaskOrchestrator.create", _boom)
        with pytest.raises(RuntimeError):
            scanner.run(now=NOW)
        assert Notification.query.count() == 0
        assert ContractMilestone.query.one().status == MilestoneStatus.PENDING
