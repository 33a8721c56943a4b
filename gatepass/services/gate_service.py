# =======================================================================================
# gatepass/services/gate_service.py - QR Verification and Checkout / Check-in
# =======================================================================================
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import or_, select
from sqlalchemy.engine import Connection

from ..config import config
from ..models.enums import HistoryAction, LiveEventType, NotificationType, PassStatus, Role
from ..models.tables import gate_passes
from ..utils.exceptions import (
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from ..utils.timeutils import utcnow
from .pass_workflow import PassWorkflow, Transition, is_overdue

logger = logging.getLogger(__name__)

# Status a pass must be in for each gate action.
REQUIRED_STATUS = {
    "exit": PassStatus.APPROVED,
    "entry": PassStatus.ACTIVE,
}


class GateService:
    """Maps a scanned token to a pass and gates the exit / return transitions."""

    def __init__(self, workflow: Optional[PassWorkflow] = None):
        self.workflow = workflow or PassWorkflow()
        self.qr_service = self.workflow.qr_service
        self.notifications = self.workflow.notifications

    @staticmethod
    def _require_security(officer: Mapping[str, Any]) -> None:
        if officer.get("role") != Role.SECURITY.value:
            raise ForbiddenError("Only security staff can record gate movements")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def resolve(self, conn: Connection, token: str, now: datetime) -> Dict[str, Any]:
        """Find the pass a scanned QR token or a typed identifier refers to."""
        token = token.strip()
        claims = self.qr_service.decode(token)
        if claims is not None:
            row = conn.execute(
                select(gate_passes).where(gate_passes.c.id == claims["pass_id"])
            ).mappings().first()
            # a token whose binding no longer matches is treated as unknown
            if not row or row["unique_token"] != claims["token"]:
                raise NotFoundError("QR token does not match any gate pass")
            if self.qr_service.is_expired(claims, now) and row["status"] != PassStatus.ACTIVE.value:
                raise ExpiredError("QR code has expired")
            return dict(row)

        # manual fallback: pass code, raw unique token or numeric id
        conditions = [gate_passes.c.pass_code == token.upper(), gate_passes.c.unique_token == token]
        if token.isdigit():
            conditions.append(gate_passes.c.id == int(token))
        row = conn.execute(select(gate_passes).where(or_(*conditions)).limit(1)).mappings().first()
        if not row:
            raise NotFoundError("Invalid gate pass ID or token")
        return dict(row)

    def verify(
        self,
        conn: Connection,
        token: str,
        action: str,
        now: Optional[datetime] = None,
        security_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Check that ``token`` names a pass that permits ``action``.

        ``exit`` needs an approved, unexpired pass; ``entry`` needs an active one.
        Returning late is allowed, so expiry is not enforced for ``entry``.
        Nothing is written.
        """
        now = now or utcnow()
        if action not in REQUIRED_STATUS:
            raise ValidationError("Validation failed", fields={"action": "Action must be exit or entry"})

        row = self.resolve(conn, token, now)

        if security_code and (row["security_code"] or "") != security_code.strip().upper():
            raise ValidationError(
                "Invalid security code", fields={"security_code": "The security code does not match"}
            )

        if action == "exit":
            if row["status"] == PassStatus.EXPIRED.value or is_overdue(row, now):
                raise ExpiredError("This gate pass has expired")
            if row["qr_expires_at"] and now > row["qr_expires_at"]:
                raise ExpiredError("QR code has expired")

        required = REQUIRED_STATUS[action]
        if row["status"] != required.value:
            raise InvalidStateError(
                f"This gate pass is {row['status']}",
                details={"status": row["status"], "expected": [required.value]},
            )
        return row

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def checkout(
        self,
        conn: Connection,
        pass_id: int,
        officer: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> Transition:
        """Record the student leaving campus."""
        now = now or utcnow()
        self._require_security(officer)
        row = self.workflow.fetch_pass(conn, pass_id)

        if row["status"] != PassStatus.APPROVED.value:
            raise StateConflictError(
                f"Only approved passes can be checked out; this pass is {row['status']}",
                details={"status": row["status"], "expected": [PassStatus.APPROVED.value]},
            )
        if is_overdue(row, now):
            raise ExpiredError("This gate pass has expired")
        earliest = row["departure_time"] - timedelta(minutes=config.CHECKOUT_EARLY_MINUTES)
        if now < earliest:
            raise StateConflictError(
                "Departure time has not arrived yet",
                details={"departure_time": row["departure_time"].isoformat()},
            )

        updated = self.workflow.transition(
            conn,
            row,
            [PassStatus.APPROVED],
            {
                "status": PassStatus.ACTIVE.value,
                "actual_exit_time": now,
                "checked_out_by": officer["id"],
            },
            now,
        )
        self.workflow.record_history(conn, pass_id, HistoryAction.CHECKED_OUT, officer["id"], now)
        event = self.notifications.publish(
            conn,
            updated["student_id"],
            NotificationType.PASS_USED,
            LiveEventType.PASS_USED,
            "Checked out",
            f"You left campus at {now:%H:%M} on gate pass {updated['pass_code']}.",
            pass_row=updated,
            sender_id=officer["id"],
            now=now,
            extra={"usedBy": officer["name"], "timestamp": now.isoformat()},
        )
        logger.info("Pass %s checked out by officer %s", updated["pass_code"], officer["id"])
        return updated, [event]

    def checkin(
        self,
        conn: Connection,
        pass_id: int,
        officer: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> Transition:
        """Record the student returning; a late return is flagged, never refused."""
        now = now or utcnow()
        self._require_security(officer)
        row = self.workflow.fetch_pass(conn, pass_id)

        late = now > row["return_time"]
        updated = self.workflow.transition(
            conn,
            row,
            [PassStatus.ACTIVE],
            {
                "status": PassStatus.COMPLETED.value,
                "actual_return_time": now,
                "checked_in_by": officer["id"],
                "is_late": late,
            },
            now,
        )
        comments = None
        if late:
            minutes = int((now - row["return_time"]).total_seconds() // 60)
            comments = f"Returned {minutes} minutes late"
        self.workflow.record_history(conn, pass_id, HistoryAction.CHECKED_IN, officer["id"], now, comments)

        message = f"Welcome back. Gate pass {updated['pass_code']} is complete."
        if late:
            message += f" {comments}."
        event = self.notifications.publish(
            conn,
            updated["student_id"],
            NotificationType.PASS_RETURNED,
            LiveEventType.PASS_RETURNED,
            "Checked in",
            message,
            pass_row=updated,
            sender_id=officer["id"],
            now=now,
            extra={"late": late},
        )
        if late:
            logger.warning("Pass %s returned late", updated["pass_code"])
        logger.info("Pass %s checked in by officer %s", updated["pass_code"], officer["id"])
        return updated, [event]

    def verify_and_apply(
        self,
        conn: Connection,
        token: str,
        action: str,
        officer: Mapping[str, Any],
        now: Optional[datetime] = None,
        security_code: Optional[str] = None,
    ) -> Transition:
        """Verify a scan and immediately record the matching gate movement."""
        now = now or utcnow()
        self._require_security(officer)
        row = self.verify(conn, token, action, now, security_code)
        if action == "exit":
            return self.checkout(conn, row["id"], officer, now)
        return self.checkin(conn, row["id"], officer, now)

    # ------------------------------------------------------------------
    # Credential retrieval
    # ------------------------------------------------------------------
    def get_qr(self, conn: Connection, pass_id: int, user: Mapping[str, Any], render: bool = True) -> Dict[str, Any]:
        """QR token and image for the owning student or security staff."""
        row = self.workflow.fetch_pass(conn, pass_id)
        is_owner = user.get("role") == Role.STUDENT.value and row["student_id"] == user["id"]
        if not is_owner and user.get("role") != Role.SECURITY.value:
            raise ForbiddenError("Access denied")
        if not row["qr_token"]:
            raise NotFoundError("QR code has not been generated for this pass")

        return {
            "pass_code": row["pass_code"],
            "token": row["qr_token"],
            "qr_code": self.qr_service.render_png_b64(row["qr_token"]) if render else None,
            "security_code": row["security_code"],
            "expires_at": row["qr_expires_at"],
        }
