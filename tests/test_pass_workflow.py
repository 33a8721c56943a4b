"""
Tests for the two-stage approval state machine
"""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from gatepass.config import config
from gatepass.models.enums import LiveEventType, PassStatus
from gatepass.models.tables import gate_passes, notifications
from gatepass.services.pass_workflow import generate_pass_code, is_overdue
from gatepass.utils.exceptions import (
    ExpiredError,
    ForbiddenError,
    StateConflictError,
    ValidationError,
)


def _count(tx, table):
    return tx(lambda conn: conn.execute(select(func.count()).select_from(table)).scalar_one())


class TestSubmit:
    """Pass submission"""

    def test_submit_creates_pending_pass(self, tx, workflow, student, mentor, hod, make_draft, now):
        """Submission stores a pending pass routed to the mentor and HOD"""
        row, events = tx(workflow.submit, student, make_draft(), now)

        assert row["status"] == PassStatus.PENDING.value
        assert row["mentor_status"] == "pending"
        assert row["hod_status"] == "pending"
        assert row["mentor_id"] == mentor["id"]
        assert row["hod_id"] == hod["id"]
        assert row["pass_code"].startswith("GP-")
        assert row["qr_token"] is None

        assert len(events) == 1
        assert events[0].event == LiveEventType.NEW_PASS_REQUEST.value
        assert events[0].room == f"user:{mentor['id']}"

    def test_submit_writes_history_and_notification(self, tx, workflow, submitted, mentor):
        history = tx(workflow.get_history, submitted["id"])
        assert [h["action"] for h in history] == ["created"]

        inbox = tx(workflow.notifications.get_unread, mentor["id"])
        assert len(inbox) == 1
        assert inbox[0]["type"] == "pass_submitted"
        assert inbox[0]["pass_id"] == submitted["id"]

    def test_departure_in_past_is_rejected_before_insert(self, tx, workflow, student, make_draft, now):
        """A draft leaving in the past fails validation and creates nothing"""
        draft = make_draft(departure_time=now - timedelta(hours=1), return_time=now + timedelta(hours=2))

        with pytest.raises(ValidationError) as exc_info:
            tx(workflow.submit, student, draft, now)

        assert "departure_time" in exc_info.value.fields
        assert _count(tx, gate_passes) == 0
        assert _count(tx, notifications) == 0

    def test_return_before_departure_is_rejected(self, tx, workflow, student, make_draft, now):
        draft = make_draft(return_time=now + timedelta(minutes=30))

        with pytest.raises(ValidationError) as exc_info:
            tx(workflow.submit, student, draft, now)

        assert "return_time" in exc_info.value.fields

    def test_field_errors_are_collected(self, tx, workflow, student, make_draft, now):
        draft = make_draft(reason="short", destination="x")
        draft.emergency_contact.phone = "12345"

        with pytest.raises(ValidationError) as exc_info:
            tx(workflow.submit, student, draft, now)

        fields = exc_info.value.fields
        assert set(fields) >= {"reason", "destination", "emergency_contact.phone"}

    def test_only_students_can_submit(self, tx, workflow, mentor, make_draft, now):
        with pytest.raises(ForbiddenError):
            tx(workflow.submit, mentor, make_draft(), now)

    def test_department_without_hod_is_rejected(self, tx, workflow, make_user, mentor, make_draft, now):
        orphan = make_user("student", mentor_id=mentor["id"], department="Civil Engineering")

        with pytest.raises(ValidationError) as exc_info:
            tx(workflow.submit, orphan, make_draft(), now)

        assert "hod" in exc_info.value.fields

    def test_open_pass_limit(self, tx, workflow, student, make_draft, now, monkeypatch):
        monkeypatch.setattr(config, "MAX_OPEN_PASSES", 2)
        tx(workflow.submit, student, make_draft(), now)
        tx(workflow.submit, student, make_draft(), now)

        with pytest.raises(StateConflictError):
            tx(workflow.submit, student, make_draft(), now)

        assert _count(tx, gate_passes) == 2


class TestApprovals:
    """Mentor and HOD decisions"""

    def test_full_approval_issues_token(self, tx, workflow, submitted, mentor, hod, student, now):
        """pending -> mentor_approved -> approved with a QR token"""
        row, events = tx(workflow.mentor_decide, mentor, submitted["id"], "approve", "Fine", now)
        assert row["status"] == PassStatus.MENTOR_APPROVED.value
        assert row["mentor_status"] == "approved"
        assert row["mentor_comments"] == "Fine"
        assert row["hod_status"] == "pending"
        assert [e.event for e in events] == [
            LiveEventType.PASS_APPROVED.value,
            LiveEventType.NEW_PASS_REQUEST.value,
        ]
        assert events[0].room == f"user:{student['id']}"
        assert events[1].room == f"user:{hod['id']}"

        row, events = tx(workflow.hod_decide, hod, submitted["id"], "approve", None, now)
        assert row["status"] == PassStatus.APPROVED.value
        assert row["hod_status"] == "approved"
        assert row["qr_token"]
        assert row["security_code"]
        assert row["qr_expires_at"] == row["return_time"] + timedelta(minutes=config.QR_EXPIRY_BUFFER_MINUTES)
        assert events[0].event == LiveEventType.PASS_FULLY_APPROVED.value

        history = [h["action"] for h in tx(workflow.get_history, submitted["id"])]
        assert history == ["created", "mentor_approved", "hod_approved"]

    def test_mentor_rejection_is_terminal(self, tx, workflow, submitted, mentor, hod, now):
        """A rejected pass cannot be approved by the HOD afterwards"""
        row, events = tx(workflow.mentor_decide, mentor, submitted["id"], "reject", "insufficient reason", now)
        assert row["status"] == PassStatus.REJECTED.value
        assert row["mentor_comments"] == "insufficient reason"
        assert events[0].event == LiveEventType.PASS_REJECTED.value
        assert events[0].data["reason"] == "insufficient reason"

        with pytest.raises(StateConflictError) as exc_info:
            tx(workflow.hod_decide, hod, submitted["id"], "approve", None, now)

        assert exc_info.value.details["status"] == "rejected"
        assert tx(workflow.fetch_pass, submitted["id"])["status"] == "rejected"

    def test_hod_cannot_approve_while_mentor_pending(self, tx, workflow, submitted, hod, now):
        with pytest.raises(StateConflictError):
            tx(workflow.hod_decide, hod, submitted["id"], "approve", None, now)

        row = tx(workflow.fetch_pass, submitted["id"])
        assert row["hod_status"] == "pending"
        assert row["qr_token"] is None

    def test_second_mentor_decision_conflicts(self, tx, workflow, submitted, mentor, now):
        tx(workflow.mentor_decide, mentor, submitted["id"], "approve", None, now)

        with pytest.raises(StateConflictError):
            tx(workflow.mentor_decide, mentor, submitted["id"], "reject", None, now)

    def test_hod_rejection(self, tx, workflow, submitted, mentor, hod, now):
        tx(workflow.mentor_decide, mentor, submitted["id"], "approve", None, now)
        row, events = tx(workflow.hod_decide, hod, submitted["id"], "reject", "Exams this week", now)

        assert row["status"] == PassStatus.REJECTED.value
        assert row["hod_status"] == "rejected"
        assert row["qr_token"] is None
        assert events[0].event == LiveEventType.PASS_REJECTED.value

    def test_unassigned_mentor_is_forbidden(self, tx, workflow, submitted, make_user, now):
        other = make_user("mentor")
        with pytest.raises(ForbiddenError):
            tx(workflow.mentor_decide, other, submitted["id"], "approve", None, now)

    def test_invalid_action(self, tx, workflow, submitted, mentor, now):
        with pytest.raises(ValidationError) as exc_info:
            tx(workflow.mentor_decide, mentor, submitted["id"], "maybe", None, now)
        assert "action" in exc_info.value.fields

    def test_decision_on_overdue_pass(self, tx, workflow, submitted, mentor, now):
        late = submitted["return_time"] + timedelta(minutes=1)
        with pytest.raises(ExpiredError):
            tx(workflow.mentor_decide, mentor, submitted["id"], "approve", None, late)


class TestCancel:
    """Owner cancellation"""

    def test_cancel_pending_notifies_mentor(self, tx, workflow, submitted, student, mentor, now):
        row, events = tx(workflow.cancel, student, submitted["id"], now)

        assert row["status"] == PassStatus.CANCELLED.value
        assert row["cancelled_at"] == now
        assert events[0].event == LiveEventType.PASS_CANCELLED.value
        assert events[0].room == f"user:{mentor['id']}"

    def test_cancel_approved_notifies_hod(self, tx, workflow, approved, student, hod, now):
        _, events = tx(workflow.cancel, student, approved["id"], now + timedelta(minutes=15))
        assert events[0].room == f"user:{hod['id']}"

    def test_only_owner_can_cancel(self, tx, workflow, submitted, make_user, mentor, now):
        other = make_user("student", mentor_id=mentor["id"])
        with pytest.raises(ForbiddenError):
            tx(workflow.cancel, other, submitted["id"], now)
        with pytest.raises(ForbiddenError):
            tx(workflow.cancel, mentor, submitted["id"], now)

    def test_cannot_cancel_after_departure(self, tx, workflow, submitted, student):
        after_departure = submitted["departure_time"] + timedelta(minutes=1)
        with pytest.raises(StateConflictError):
            tx(workflow.cancel, student, submitted["id"], after_departure)

    def test_cannot_cancel_rejected_pass(self, tx, workflow, submitted, student, mentor, now):
        tx(workflow.mentor_decide, mentor, submitted["id"], "reject", None, now)
        with pytest.raises(StateConflictError):
            tx(workflow.cancel, student, submitted["id"], now)

    def test_cancelled_is_terminal(self, tx, workflow, gate_service, submitted, student, mentor, hod, security, now):
        tx(workflow.cancel, student, submitted["id"], now)
        departed = submitted["departure_time"] + timedelta(minutes=5)

        attempts = [
            (workflow.mentor_decide, mentor, submitted["id"], "approve", None, now),
            (workflow.hod_decide, hod, submitted["id"], "approve", None, now),
            (workflow.cancel, student, submitted["id"], now),
            (gate_service.checkout, submitted["id"], security, departed),
        ]
        for fn, *args in attempts:
            with pytest.raises(StateConflictError):
                tx(fn, *args)
            assert tx(workflow.fetch_pass, submitted["id"])["status"] == PassStatus.CANCELLED.value

    def test_cancel_refuses_when_status_moved_since_read(self, tx, workflow, submitted, student, mentor, now, monkeypatch):
        stale = dict(submitted)
        tx(workflow.mentor_decide, mentor, submitted["id"], "approve", None, now)
        notices_before = _count(tx, notifications)

        fetch_pass = workflow.fetch_pass
        reads = []

        def fetch_stale_first(conn, pass_id):
            reads.append(pass_id)
            return dict(stale) if len(reads) == 1 else fetch_pass(conn, pass_id)

        monkeypatch.setattr(workflow, "fetch_pass", fetch_stale_first)
        with pytest.raises(StateConflictError):
            tx(workflow.cancel, student, submitted["id"], now)

        assert tx(fetch_pass, submitted["id"])["status"] == PassStatus.MENTOR_APPROVED.value
        assert _count(tx, notifications) == notices_before


class TestExpiry:
    """Lazy expiry and the periodic sweep"""

    def test_load_pass_expires_overdue_pass(self, tx, workflow, submitted, student):
        late = submitted["return_time"] + timedelta(minutes=1)
        events = []

        row = tx(workflow.load_pass, submitted["id"], late, events)

        assert row["status"] == PassStatus.EXPIRED.value
        assert events[0].event == LiveEventType.PASS_EXPIRED.value
        assert events[0].room == f"user:{student['id']}"

    def test_grace_period_delays_expiry(self, tx, workflow, submitted, monkeypatch):
        monkeypatch.setattr(config, "EXPIRY_GRACE_MINUTES", 30)
        within_grace = submitted["return_time"] + timedelta(minutes=10)

        assert not is_overdue(submitted, within_grace)
        assert tx(workflow.load_pass, submitted["id"], within_grace)["status"] == "pending"

    def test_expire_stale_only_touches_open_passes(self, tx, workflow, student, make_draft, mentor, now):
        kept, _ = tx(workflow.submit, student, make_draft(), now)
        rejected, _ = tx(workflow.submit, student, make_draft(), now)
        tx(workflow.mentor_decide, mentor, rejected["id"], "reject", None, now)
        later = now + timedelta(days=1)

        events = tx(workflow.expire_stale, later)

        assert len(events) == 1
        assert tx(workflow.fetch_pass, kept["id"])["status"] == "expired"
        assert tx(workflow.fetch_pass, rejected["id"])["status"] == "rejected"

    def test_expired_is_terminal(self, tx, workflow, submitted, mentor, student):
        later = submitted["return_time"] + timedelta(hours=1)
        tx(workflow.expire_stale, later)

        with pytest.raises(StateConflictError):
            tx(workflow.cancel, student, submitted["id"], submitted["departure_time"] - timedelta(hours=2))
        assert tx(workflow.expire_stale, later) == []


def test_generate_pass_code_is_unique(now):
    codes = {generate_pass_code(now) for _ in range(50)}
    assert len(codes) == 50
    assert all(code.startswith("GP-") and len(code.split("-")[2]) == 9 for code in codes)


class TestReminders:
    """Approval reminders for stalled passes"""

    def test_reminds_current_holder_once(self, tx, workflow, submitted, mentor, now):
        later = now + timedelta(minutes=61)

        events = tx(workflow.remind_pending, later)
        assert [e.room for e in events] == [f"user:{mentor['id']}"]
        assert events[0].event == LiveEventType.SYSTEM_NOTIFICATION.value

        assert tx(workflow.remind_pending, later + timedelta(minutes=5)) == []

    def test_fresh_passes_are_not_reminded(self, tx, workflow, submitted, now):
        assert tx(workflow.remind_pending, now + timedelta(minutes=30)) == []

    def test_hod_is_reminded_after_mentor_approval(self, tx, workflow, submitted, mentor, hod, now):
        tx(workflow.mentor_decide, mentor, submitted["id"], "approve", None, now)
        events = tx(workflow.remind_pending, now + timedelta(minutes=90))
        assert [e.room for e in events] == [f"user:{hod['id']}"]

    def test_disabled(self, tx, workflow, submitted, now, monkeypatch):
        monkeypatch.setattr(config, "REMINDER_AFTER_MINUTES", 0)
        assert tx(workflow.remind_pending, now + timedelta(hours=2)) == []


class TestOverdueAlerts:
    """Alerts for checked-out students past their return time"""

    @pytest.fixture
    def checked_out(self, tx, gate_service, approved, security):
        row, _ = tx(gate_service.checkout, approved["id"], security, approved["departure_time"] + timedelta(minutes=5))
        return row

    def test_alerts_student_and_security_once_per_window(self, tx, workflow, checked_out, student):
        late = checked_out["return_time"] + timedelta(minutes=20)

        events = tx(workflow.alert_overdue, late)

        assert [e.room for e in events] == [f"user:{student['id']}", "role:security"]
        assert events[0].data["notification"]["type"] == "pass_overdue"
        assert events[0].data["minutes_late"] == 20
        assert events[1].data["overdue"][0]["pass_code"] == checked_out["pass_code"]

        assert tx(workflow.alert_overdue, late + timedelta(minutes=5)) == []
        again = tx(workflow.alert_overdue, late + timedelta(minutes=31))
        assert [e.room for e in again] == [f"user:{student['id']}", "role:security"]

    def test_not_before_return_time(self, tx, workflow, checked_out):
        assert tx(workflow.alert_overdue, checked_out["return_time"] - timedelta(minutes=1)) == []

    def test_completed_passes_are_ignored(self, tx, gate_service, workflow, checked_out, security):
        tx(gate_service.checkin, checked_out["id"], security, checked_out["return_time"] + timedelta(minutes=10))
        assert tx(workflow.alert_overdue, checked_out["return_time"] + timedelta(hours=1)) == []

    def test_disabled(self, tx, workflow, checked_out, monkeypatch):
        monkeypatch.setattr(config, "OVERDUE_ALERT_MINUTES", 0)
        assert tx(workflow.alert_overdue, checked_out["return_time"] + timedelta(hours=1)) == []


class TestExpiryWarnings:
    """Warnings before an unused approved pass times out"""

    def test_warns_once_inside_window(self, tx, workflow, approved, student):
        soon = approved["return_time"] - timedelta(minutes=10)

        events = tx(workflow.warn_expiring, soon)

        assert [e.room for e in events] == [f"user:{student['id']}"]
        assert events[0].event == LiveEventType.SYSTEM_NOTIFICATION.value
        assert events[0].data["notification"]["type"] == "expiry_warning"
        assert events[0].data["minutes_left"] == 10
        assert tx(workflow.warn_expiring, soon + timedelta(minutes=5)) == []

    def test_outside_window(self, tx, workflow, approved):
        assert tx(workflow.warn_expiring, approved["return_time"] - timedelta(minutes=30)) == []

    def test_only_approved_passes(self, tx, workflow, submitted):
        assert tx(workflow.warn_expiring, submitted["return_time"] - timedelta(minutes=10)) == []

    def test_window_follows_grace_period(self, tx, workflow, approved, monkeypatch):
        monkeypatch.setattr(config, "EXPIRY_GRACE_MINUTES", 30)
        assert tx(workflow.warn_expiring, approved["return_time"] - timedelta(minutes=10)) == []
        events = tx(workflow.warn_expiring, approved["return_time"] + timedelta(minutes=20))
        assert events[0].data["minutes_left"] == 10
