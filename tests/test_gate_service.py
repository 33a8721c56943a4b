"""
Tests for QR verification, checkout and check-in
"""
from datetime import timedelta

import pytest
from sqlalchemy import update

from gatepass.config import config
from gatepass.models.enums import LiveEventType, PassStatus
from gatepass.models.tables import gate_passes
from gatepass.services.qr_service import QRService
from gatepass.utils.exceptions import (
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)


@pytest.fixture
def departed(approved):
    """A moment just after the approved pass's departure time."""
    return approved["departure_time"] + timedelta(minutes=5)


class TestVerify:
    """Token lookup and gate action checks"""

    def test_verify_exit_with_qr_token(self, tx, gate_service, approved, departed):
        row = tx(gate_service.verify, approved["qr_token"], "exit", departed)
        assert row["id"] == approved["id"]
        assert row["status"] == PassStatus.APPROVED.value

    def test_verify_does_not_write(self, tx, gate_service, workflow, approved, departed):
        tx(gate_service.verify, approved["qr_token"], "exit", departed)
        assert tx(workflow.fetch_pass, approved["id"])["status"] == PassStatus.APPROVED.value

    def test_manual_fallback_by_pass_code(self, tx, gate_service, approved, departed):
        row = tx(gate_service.verify, approved["pass_code"].lower(), "exit", departed)
        assert row["id"] == approved["id"]

    def test_manual_fallback_by_id(self, tx, gate_service, approved, departed):
        row = tx(gate_service.verify, str(approved["id"]), "exit", departed)
        assert row["id"] == approved["id"]

    def test_unknown_token(self, tx, gate_service, approved, departed):
        with pytest.raises(NotFoundError):
            tx(gate_service.verify, "GP-000-NOTAPASS", "exit", departed)

    def test_token_signed_elsewhere_is_unknown(self, tx, gate_service, approved, departed):
        forged = QRService(secret_key="someone-else").issue(approved, departed).token
        with pytest.raises(NotFoundError):
            tx(gate_service.verify, forged, "exit", departed)

    def test_rebound_pass_rejects_old_token(self, tx, gate_service, approved, departed):
        tx(lambda conn: conn.execute(
            update(gate_passes).where(gate_passes.c.id == approved["id"]).values(unique_token="rotated")
        ))
        with pytest.raises(NotFoundError):
            tx(gate_service.verify, approved["qr_token"], "exit", departed)

    def test_expired_token(self, tx, gate_service, approved):
        after_expiry = approved["qr_expires_at"] + timedelta(minutes=1)
        with pytest.raises(ExpiredError):
            tx(gate_service.verify, approved["qr_token"], "exit", after_expiry)

    def test_overdue_pass_cannot_exit(self, tx, gate_service, approved):
        overdue = approved["return_time"] + timedelta(minutes=1)
        with pytest.raises(ExpiredError):
            tx(gate_service.verify, approved["pass_code"], "exit", overdue)

    def test_entry_requires_active(self, tx, gate_service, approved, departed):
        with pytest.raises(InvalidStateError) as exc_info:
            tx(gate_service.verify, approved["qr_token"], "entry", departed)
        assert exc_info.value.details["expected"] == ["active"]

    def test_pending_pass_cannot_exit(self, tx, gate_service, submitted, now):
        with pytest.raises(InvalidStateError):
            tx(gate_service.verify, submitted["pass_code"], "exit", now)

    def test_invalid_action(self, tx, gate_service, approved, departed):
        with pytest.raises(ValidationError):
            tx(gate_service.verify, approved["qr_token"], "teleport", departed)

    def test_security_code_must_match(self, tx, gate_service, approved, departed):
        row = tx(gate_service.verify, approved["pass_code"], "exit", departed, approved["security_code"].lower())
        assert row["id"] == approved["id"]

        with pytest.raises(ValidationError) as exc_info:
            tx(gate_service.verify, approved["pass_code"], "exit", departed, "WRONG123")
        assert "security_code" in exc_info.value.fields


class TestCheckout:
    """Leaving campus"""

    def test_checkout_activates_pass(self, tx, gate_service, workflow, approved, security, student, departed):
        row, events = tx(gate_service.checkout, approved["id"], security, departed)

        assert row["status"] == PassStatus.ACTIVE.value
        assert row["actual_exit_time"] == departed
        assert row["checked_out_by"] == security["id"]
        assert events[0].event == LiveEventType.PASS_USED.value
        assert events[0].room == f"user:{student['id']}"
        assert tx(workflow.get_history, approved["id"])[-1]["action"] == "checked_out"

    def test_checkout_before_departure(self, tx, gate_service, approved, security):
        early = approved["departure_time"] - timedelta(minutes=10)
        with pytest.raises(StateConflictError):
            tx(gate_service.checkout, approved["id"], security, early)

    def test_checkout_early_window(self, tx, gate_service, approved, security, monkeypatch):
        monkeypatch.setattr(config, "CHECKOUT_EARLY_MINUTES", 15)
        early = approved["departure_time"] - timedelta(minutes=10)

        row, _ = tx(gate_service.checkout, approved["id"], security, early)
        assert row["status"] == PassStatus.ACTIVE.value

    def test_checkout_requires_approved(self, tx, gate_service, submitted, security):
        with pytest.raises(StateConflictError):
            tx(gate_service.checkout, submitted["id"], security, submitted["departure_time"])

    def test_checkout_twice_conflicts(self, tx, gate_service, approved, security, departed):
        tx(gate_service.checkout, approved["id"], security, departed)
        with pytest.raises(StateConflictError):
            tx(gate_service.checkout, approved["id"], security, departed)

    def test_checkout_overdue(self, tx, gate_service, approved, security):
        with pytest.raises(ExpiredError):
            tx(gate_service.checkout, approved["id"], security, approved["return_time"] + timedelta(minutes=1))

    def test_only_security_records_movement(self, tx, gate_service, approved, student, departed):
        with pytest.raises(ForbiddenError):
            tx(gate_service.checkout, approved["id"], student, departed)


class TestCheckin:
    """Returning to campus"""

    def test_on_time_return(self, tx, gate_service, approved, security, departed):
        tx(gate_service.checkout, approved["id"], security, departed)
        back = approved["return_time"] - timedelta(minutes=20)

        row, events = tx(gate_service.checkin, approved["id"], security, back)

        assert row["status"] == PassStatus.COMPLETED.value
        assert row["actual_return_time"] == back
        assert row["is_late"] is False
        assert events[0].event == LiveEventType.PASS_RETURNED.value
        assert events[0].data["late"] is False

    def test_late_return_is_flagged_not_refused(self, tx, gate_service, workflow, approved, security, departed):
        """Returning 30 minutes late completes the pass and marks it late"""
        tx(gate_service.checkout, approved["id"], security, departed)
        back = approved["return_time"] + timedelta(minutes=30)

        row, _ = tx(gate_service.checkin, approved["id"], security, back)

        assert row["status"] == PassStatus.COMPLETED.value
        assert row["is_late"] is True
        history = tx(workflow.get_history, approved["id"])
        assert history[-1]["action"] == "checked_in"
        assert history[-1]["comments"] == "Returned 30 minutes late"

    def test_late_return_after_token_expiry_verifies(self, tx, gate_service, approved, security, departed):
        tx(gate_service.checkout, approved["id"], security, departed)
        much_later = approved["qr_expires_at"] + timedelta(hours=3)

        row = tx(gate_service.verify, approved["qr_token"], "entry", much_later)
        assert row["status"] == PassStatus.ACTIVE.value

    def test_checkin_requires_active(self, tx, gate_service, approved, security, departed):
        with pytest.raises(StateConflictError):
            tx(gate_service.checkin, approved["id"], security, departed)

    def test_completed_is_terminal(self, tx, gate_service, approved, security, departed):
        tx(gate_service.checkout, approved["id"], security, departed)
        tx(gate_service.checkin, approved["id"], security, departed + timedelta(hours=1))

        with pytest.raises(StateConflictError):
            tx(gate_service.checkin, approved["id"], security, departed + timedelta(hours=2))
        with pytest.raises(StateConflictError):
            tx(gate_service.checkout, approved["id"], security, departed + timedelta(hours=2))


class TestVerifyAndApply:
    """Scanner shortcut"""

    def test_round_trip(self, tx, gate_service, approved, security, departed):
        row, _ = tx(gate_service.verify_and_apply, approved["qr_token"], "exit", security, departed)
        assert row["status"] == PassStatus.ACTIVE.value

        row, _ = tx(gate_service.verify_and_apply, approved["qr_token"], "entry", security, departed + timedelta(hours=1))
        assert row["status"] == PassStatus.COMPLETED.value


class TestQRRetrieval:
    """Credential retrieval"""

    def test_owner_gets_png(self, tx, gate_service, approved, student):
        qr = tx(gate_service.get_qr, approved["id"], student)

        assert qr["token"] == approved["qr_token"]
        assert qr["security_code"] == approved["security_code"]
        assert qr["qr_code"].startswith("iVBOR")

    def test_security_can_fetch(self, tx, gate_service, approved, security):
        qr = tx(gate_service.get_qr, approved["id"], security, False)
        assert qr["qr_code"] is None
        assert qr["pass_code"] == approved["pass_code"]

    def test_other_student_is_forbidden(self, tx, gate_service, approved, make_user, mentor):
        other = make_user("student", mentor_id=mentor["id"])
        with pytest.raises(ForbiddenError):
            tx(gate_service.get_qr, approved["id"], other)

    def test_no_token_before_approval(self, tx, gate_service, submitted, student):
        with pytest.raises(NotFoundError):
            tx(gate_service.get_qr, submitted["id"], student)
