# =======================================================================================
# gatepass/services/pass_workflow.py - Gate Pass Approval State Machine
# =======================================================================================
import logging
import math
import secrets
import string
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection

from ..config import config
from ..models.enums import (
    OPEN_STATUSES,
    ApprovalStatus,
    HistoryAction,
    LiveEventType,
    NotificationType,
    PassStatus,
    Role,
)
from ..models.schemas import PassCreateRequest
from ..models.tables import gate_passes, notifications, pass_history
from ..utils.exceptions import (
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from ..utils.timeutils import utcnow
from ..utils.validators import PassValidator
from .notification_service import LiveEvent, NotificationService, role_room
from .qr_service import QRService
from .user_service import UserService

logger = logging.getLogger(__name__)

PassRow = Dict[str, Any]
Transition = Tuple[PassRow, List[LiveEvent]]

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_pass_code(now: datetime) -> str:
    """Human readable pass code, e.g. ``GP-1760781234567-K3J9ZQ2XA``."""
    millis = int((now - datetime(1970, 1, 1)).total_seconds() * 1000)
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(9))
    return f"GP-{millis}-{suffix}"


def expiry_deadline(row: Mapping[str, Any]) -> datetime:
    """Moment after which an unused pass times out."""
    return row["return_time"] + timedelta(minutes=config.EXPIRY_GRACE_MINUTES)


def is_overdue(row: Mapping[str, Any], now: datetime) -> bool:
    return PassStatus(row["status"]) in OPEN_STATUSES and now > expiry_deadline(row)


class PassWorkflow:
    """
    Enforces the two-stage approval protocol of a gate pass.

    Every transition is a single conditional UPDATE guarded by the expected
    current status. When the guard does not match, nothing is written and
    StateConflictError is raised, so of two racing approvers the second one
    sees the conflict and has to retry against fresh state.
    """

    def __init__(
        self,
        notifications: Optional[NotificationService] = None,
        qr_service: Optional[QRService] = None,
    ):
        self.notifications = notifications or NotificationService()
        self.qr_service = qr_service or QRService()
        self.user_service = UserService()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def fetch_pass(self, conn: Connection, pass_id: int) -> PassRow:
        row = conn.execute(select(gate_passes).where(gate_passes.c.id == pass_id)).mappings().first()
        if not row:
            raise NotFoundError(f"Gate pass {pass_id} not found")
        return dict(row)

    def load_pass(
        self,
        conn: Connection,
        pass_id: int,
        now: Optional[datetime] = None,
        events: Optional[List[LiveEvent]] = None,
    ) -> PassRow:
        """Fetch a pass, applying a due expiry first."""
        now = now or utcnow()
        row = self.fetch_pass(conn, pass_id)
        if is_overdue(row, now):
            row, expired_events = self._expire(conn, row, now)
            if events is not None:
                events.extend(expired_events)
        return row

    def get_history(self, conn: Connection, pass_id: int) -> List[Dict[str, Any]]:
        rows = conn.execute(
            select(
                pass_history.c.action,
                pass_history.c.actor_id,
                pass_history.c.comments,
                pass_history.c.created_at,
            )
            .where(pass_history.c.pass_id == pass_id)
            .order_by(pass_history.c.id)
        ).mappings().all()
        return [dict(r) for r in rows]

    def count_open_passes(self, conn: Connection, student_id: int) -> int:
        return conn.execute(
            select(func.count())
            .select_from(gate_passes)
            .where(
                gate_passes.c.student_id == student_id,
                gate_passes.c.status.in_([s.value for s in OPEN_STATUSES]),
            )
        ).scalar_one()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def transition(
        self,
        conn: Connection,
        row: Mapping[str, Any],
        expected: Iterable[PassStatus],
        values: Dict[str, Any],
        now: datetime,
    ) -> PassRow:
        """Apply ``values`` only if the stored status is still one of ``expected``."""
        expected = list(expected)
        result = conn.execute(
            update(gate_passes)
            .where(
                gate_passes.c.id == row["id"],
                gate_passes.c.status.in_([s.value for s in expected]),
            )
            .values(updated_at=now, **values)
        )
        if result.rowcount != 1:
            current = self.fetch_pass(conn, row["id"])
            logger.warning(
                "Refused transition of pass %s: status is %s, expected %s",
                row["pass_code"], current["status"], "/".join(s.value for s in expected),
            )
            raise StateConflictError(
                f"Gate pass is {current['status']}; refresh and try again",
                details={"status": current["status"], "expected": [s.value for s in expected]},
            )
        return self.fetch_pass(conn, row["id"])

    def record_history(
        self,
        conn: Connection,
        pass_id: int,
        action: HistoryAction,
        actor_id: Optional[int],
        now: datetime,
        comments: Optional[str] = None,
    ) -> None:
        conn.execute(
            insert(pass_history).values(
                pass_id=pass_id,
                action=action.value,
                actor_id=actor_id,
                comments=comments,
                created_at=now,
            )
        )

    def _expire(self, conn: Connection, row: Mapping[str, Any], now: datetime) -> Transition:
        updated = self.transition(
            conn, row, OPEN_STATUSES, {"status": PassStatus.EXPIRED.value}, now
        )
        self.record_history(conn, row["id"], HistoryAction.EXPIRED, None, now)
        event = self.notifications.publish(
            conn,
            updated["student_id"],
            NotificationType.PASS_EXPIRED,
            LiveEventType.PASS_EXPIRED,
            "Gate pass expired",
            f"Your gate pass {updated['pass_code']} expired before it was used.",
            pass_row=updated,
            now=now,
        )
        logger.info("Pass %s expired", updated["pass_code"])
        return updated, [event]

    @staticmethod
    def _require_role(actor: Mapping[str, Any], role: Role, message: str) -> None:
        if actor.get("role") != role.value:
            raise ForbiddenError(message)

    @staticmethod
    def _clean_comments(comments: Optional[str]) -> Optional[str]:
        if comments is None:
            return None
        comments = comments.strip()
        return comments or None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def submit(
        self,
        conn: Connection,
        student: Mapping[str, Any],
        draft: PassCreateRequest,
        now: Optional[datetime] = None,
    ) -> Transition:
        """Create a pending pass and notify the student's mentor."""
        now = now or utcnow()
        self._require_role(student, Role.STUDENT, "Only students can request gate passes")

        PassValidator.validate_draft(draft, now)

        if not student.get("mentor_id"):
            raise ValidationError(
                "No mentor assigned",
                fields={"mentor": "You must have an assigned mentor to request gate passes"},
            )
        hod = self.user_service.find_department_hod(conn, student.get("department"))
        if not hod:
            raise ValidationError(
                "No HOD found", fields={"hod": "No HOD found for your department"}
            )

        if self.count_open_passes(conn, student["id"]) >= config.MAX_OPEN_PASSES:
            raise StateConflictError(
                f"You cannot have more than {config.MAX_OPEN_PASSES} open gate passes at a time"
            )

        contact = draft.emergency_contact
        result = conn.execute(
            insert(gate_passes).values(
                pass_code=generate_pass_code(now),
                unique_token=uuid.uuid4().hex,
                student_id=student["id"],
                mentor_id=student["mentor_id"],
                hod_id=hod["id"],
                reason=draft.reason.strip(),
                destination=draft.destination.strip(),
                category=draft.category,
                priority=draft.priority,
                departure_time=draft.departure_time,
                return_time=draft.return_time,
                emergency_contact_name=contact.name.strip(),
                emergency_contact_phone=contact.phone,
                emergency_contact_relation=contact.relation.strip(),
                mentor_status=ApprovalStatus.PENDING.value,
                hod_status=ApprovalStatus.PENDING.value,
                status=PassStatus.PENDING.value,
                is_late=False,
                created_at=now,
                updated_at=now,
            )
        )
        row = self.fetch_pass(conn, result.inserted_primary_key[0])
        self.record_history(conn, row["id"], HistoryAction.CREATED, student["id"], now)

        event = self.notifications.publish(
            conn,
            row["mentor_id"],
            NotificationType.PASS_SUBMITTED,
            LiveEventType.NEW_PASS_REQUEST,
            "New gate pass request",
            f"{student['name']} requested a {row['category']} pass: {row['reason']}",
            pass_row=row,
            sender_id=student["id"],
            now=now,
            extra={"student": student["name"]},
        )
        logger.info("Pass %s submitted by student %s", row["pass_code"], student["id"])
        return row, [event]

    def mentor_decide(
        self,
        conn: Connection,
        mentor: Mapping[str, Any],
        pass_id: int,
        action: str,
        comments: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transition:
        """First-stage decision by the student's assigned mentor."""
        now = now or utcnow()
        self._require_role(mentor, Role.MENTOR, "Only mentors can take this action")
        PassValidator.validate_decision(action, comments)
        comments = self._clean_comments(comments)

        row = self.fetch_pass(conn, pass_id)
        if row["mentor_id"] != mentor["id"]:
            raise ForbiddenError("You can only decide on passes of your mentees")
        if is_overdue(row, now):
            raise ExpiredError("This gate pass has expired")

        approve = action == "approve"
        decision = ApprovalStatus.APPROVED if approve else ApprovalStatus.REJECTED
        new_status = PassStatus.MENTOR_APPROVED if approve else PassStatus.REJECTED
        updated = self.transition(
            conn,
            row,
            [PassStatus.PENDING],
            {
                "status": new_status.value,
                "mentor_status": decision.value,
                "mentor_approver_id": mentor["id"],
                "mentor_comments": comments,
                "mentor_decided_at": now,
            },
            now,
        )
        self.record_history(
            conn,
            pass_id,
            HistoryAction.MENTOR_APPROVED if approve else HistoryAction.MENTOR_REJECTED,
            mentor["id"],
            now,
            comments,
        )

        events: List[LiveEvent] = []
        if approve:
            events.append(self.notifications.publish(
                conn,
                updated["student_id"],
                NotificationType.PASS_APPROVED,
                LiveEventType.PASS_APPROVED,
                "Approved by mentor",
                f"{mentor['name']} approved your gate pass {updated['pass_code']}; awaiting HOD approval.",
                pass_row=updated,
                sender_id=mentor["id"],
                now=now,
                extra={"approver": mentor["name"], "type": Role.MENTOR.value},
            ))
            student_name = self.user_service.get_user_name(conn, updated["student_id"])
            events.append(self.notifications.publish(
                conn,
                updated["hod_id"],
                NotificationType.PASS_SUBMITTED,
                LiveEventType.NEW_PASS_REQUEST,
                "Gate pass awaiting approval",
                f"{student_name}'s gate pass {updated['pass_code']} was approved by the mentor.",
                pass_row=updated,
                sender_id=mentor["id"],
                now=now,
                extra={"student": student_name},
            ))
        else:
            events.append(self._rejection_event(conn, updated, mentor, comments, now))

        logger.info("Mentor %s %sd pass %s", mentor["id"], action, updated["pass_code"])
        return updated, events

    def hod_decide(
        self,
        conn: Connection,
        hod: Mapping[str, Any],
        pass_id: int,
        action: str,
        comments: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transition:
        """Final decision by the department HOD; approval issues the QR token."""
        now = now or utcnow()
        self._require_role(hod, Role.HOD, "Only HODs can take this action")
        PassValidator.validate_decision(action, comments)
        comments = self._clean_comments(comments)

        row = self.fetch_pass(conn, pass_id)
        if row["hod_id"] != hod["id"]:
            raise ForbiddenError("You can only decide on passes of your department")
        if is_overdue(row, now):
            raise ExpiredError("This gate pass has expired")

        approve = action == "approve"
        values: Dict[str, Any] = {
            "status": (PassStatus.APPROVED if approve else PassStatus.REJECTED).value,
            "hod_status": (ApprovalStatus.APPROVED if approve else ApprovalStatus.REJECTED).value,
            "hod_approver_id": hod["id"],
            "hod_comments": comments,
            "hod_decided_at": now,
        }
        if approve:
            issued = self.qr_service.issue(row, now)
            values.update(
                qr_token=issued.token,
                qr_expires_at=issued.expires_at,
                security_code=issued.security_code,
            )

        updated = self.transition(conn, row, [PassStatus.MENTOR_APPROVED], values, now)
        self.record_history(
            conn,
            pass_id,
            HistoryAction.HOD_APPROVED if approve else HistoryAction.HOD_REJECTED,
            hod["id"],
            now,
            comments,
        )

        if approve:
            event = self.notifications.publish(
                conn,
                updated["student_id"],
                NotificationType.PASS_APPROVED,
                LiveEventType.PASS_FULLY_APPROVED,
                "Gate pass approved",
                f"Your gate pass {updated['pass_code']} is fully approved. Show the QR code at the gate.",
                pass_row=updated,
                sender_id=hod["id"],
                now=now,
                extra={"approver": hod["name"]},
            )
        else:
            event = self._rejection_event(conn, updated, hod, comments, now)

        logger.info("HOD %s %sd pass %s", hod["id"], action, updated["pass_code"])
        return updated, [event]

    def _rejection_event(
        self,
        conn: Connection,
        row: Mapping[str, Any],
        approver: Mapping[str, Any],
        comments: Optional[str],
        now: datetime,
    ) -> LiveEvent:
        reason = comments or "No reason provided"
        return self.notifications.publish(
            conn,
            row["student_id"],
            NotificationType.PASS_REJECTED,
            LiveEventType.PASS_REJECTED,
            "Gate pass rejected",
            f"{approver['name']} rejected your gate pass {row['pass_code']}: {reason}",
            pass_row=row,
            sender_id=approver["id"],
            now=now,
            extra={"rejector": approver["name"], "reason": reason},
        )

    def cancel(
        self,
        conn: Connection,
        actor: Mapping[str, Any],
        pass_id: int,
        now: Optional[datetime] = None,
    ) -> Transition:
        """Owner cancellation while the pass is still open and departure is ahead."""
        now = now or utcnow()
        row = self.fetch_pass(conn, pass_id)
        if actor.get("role") != Role.STUDENT.value or row["student_id"] != actor["id"]:
            raise ForbiddenError("Only the student who requested the pass can cancel it")

        if PassStatus(row["status"]) not in OPEN_STATUSES:
            raise StateConflictError(
                f"A {row['status']} gate pass cannot be cancelled",
                details={"status": row["status"]},
            )
        if row["departure_time"] <= now:
            raise StateConflictError("Departure time has already passed")

        # whoever currently holds the pass hears about it, so the status must not move underneath
        holder_id = row["mentor_id"] if row["status"] == PassStatus.PENDING.value else row["hod_id"]
        updated = self.transition(
            conn,
            row,
            [PassStatus(row["status"])],
            {"status": PassStatus.CANCELLED.value, "cancelled_at": now},
            now,
        )
        self.record_history(conn, pass_id, HistoryAction.CANCELLED, actor["id"], now)
        event = self.notifications.publish(
            conn,
            holder_id,
            NotificationType.PASS_CANCELLED,
            LiveEventType.PASS_CANCELLED,
            "Gate pass cancelled",
            f"{actor['name']} cancelled gate pass {updated['pass_code']}.",
            pass_row=updated,
            sender_id=actor["id"],
            now=now,
        )
        logger.info("Pass %s cancelled by student %s", updated["pass_code"], actor["id"])
        return updated, [event]

    def expire_stale(self, conn: Connection, now: Optional[datetime] = None) -> List[LiveEvent]:
        """Expire every open pass whose deadline has passed."""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=config.EXPIRY_GRACE_MINUTES)
        rows = conn.execute(
            select(gate_passes).where(
                gate_passes.c.status.in_([s.value for s in OPEN_STATUSES]),
                gate_passes.c.return_time < cutoff,
            ).order_by(gate_passes.c.id)
        ).mappings().all()

        events: List[LiveEvent] = []
        for row in rows:
            row = dict(row)
            if not is_overdue(row, now):
                continue
            try:
                _, expired_events = self._expire(conn, row, now)
            except StateConflictError:
                # changed by a concurrent request since the select
                continue
            events.extend(expired_events)
        return events

    def remind_pending(self, conn: Connection, now: Optional[datetime] = None) -> List[LiveEvent]:
        """Nudge the current approver about passes left waiting too long."""
        now = now or utcnow()
        if config.REMINDER_AFTER_MINUTES <= 0:
            return []
        cutoff = now - timedelta(minutes=config.REMINDER_AFTER_MINUTES)
        rows = conn.execute(
            select(gate_passes).where(
                gate_passes.c.status.in_([PassStatus.PENDING.value, PassStatus.MENTOR_APPROVED.value]),
                gate_passes.c.updated_at <= cutoff,
            ).order_by(gate_passes.c.id)
        ).mappings().all()

        events: List[LiveEvent] = []
        for row in rows:
            if is_overdue(row, now):
                continue
            holder_id = row["mentor_id"] if row["status"] == PassStatus.PENDING.value else row["hod_id"]
            # at most one reminder per approver and pass in each window
            if self._recently_notified(conn, holder_id, row["id"], NotificationType.REMINDER, cutoff):
                continue
            student_name = self.user_service.get_user_name(conn, row["student_id"])
            events.append(self.notifications.publish(
                conn,
                holder_id,
                NotificationType.REMINDER,
                LiveEventType.SYSTEM_NOTIFICATION,
                "Pending pass approval",
                f"{student_name}'s gate pass {row['pass_code']} is still waiting for your decision.",
                pass_row=row,
                now=now,
            ))
        return events

    def alert_overdue(self, conn: Connection, now: Optional[datetime] = None) -> List[LiveEvent]:
        """Remind checked-out students past their return time, and tell security."""
        now = now or utcnow()
        if config.OVERDUE_ALERT_MINUTES <= 0:
            return []
        window_start = now - timedelta(minutes=config.OVERDUE_ALERT_MINUTES)
        rows = conn.execute(
            select(gate_passes).where(
                gate_passes.c.status == PassStatus.ACTIVE.value,
                gate_passes.c.return_time < now,
            ).order_by(gate_passes.c.return_time, gate_passes.c.id)
        ).mappings().all()

        events: List[LiveEvent] = []
        alerted: List[Dict[str, Any]] = []
        for row in rows:
            if self._recently_notified(conn, row["student_id"], row["id"], NotificationType.PASS_OVERDUE, window_start):
                continue
            minutes_late = int((now - row["return_time"]).total_seconds() // 60)
            events.append(self.notifications.publish(
                conn,
                row["student_id"],
                NotificationType.PASS_OVERDUE,
                LiveEventType.SYSTEM_NOTIFICATION,
                "Gate pass overdue",
                f"Your gate pass {row['pass_code']} was due back {minutes_late} minutes ago. Please return immediately.",
                pass_row=row,
                now=now,
                extra={"minutes_late": minutes_late},
            ))
            alerted.append({
                "pass_id": row["id"],
                "pass_code": row["pass_code"],
                "student": self.user_service.get_user_name(conn, row["student_id"]),
                "minutes_late": minutes_late,
            })

        if alerted:
            events.append(LiveEvent(
                room=role_room(Role.SECURITY.value),
                event=LiveEventType.SYSTEM_NOTIFICATION.value,
                data={
                    "title": "Overdue passes alert",
                    "message": f"{len(alerted)} students are past their return time.",
                    "overdue": alerted,
                },
            ))
            logger.info("Alerted %d overdue passes", len(alerted))
        return events

    def warn_expiring(self, conn: Connection, now: Optional[datetime] = None) -> List[LiveEvent]:
        """Warn students whose approved pass is about to time out unused."""
        now = now or utcnow()
        if config.EXPIRY_WARNING_MINUTES <= 0:
            return []
        grace = timedelta(minutes=config.EXPIRY_GRACE_MINUTES)
        horizon = now + timedelta(minutes=config.EXPIRY_WARNING_MINUTES)
        rows = conn.execute(
            select(gate_passes).where(
                gate_passes.c.status == PassStatus.APPROVED.value,
                gate_passes.c.return_time >= now - grace,
                gate_passes.c.return_time <= horizon - grace,
            ).order_by(gate_passes.c.return_time, gate_passes.c.id)
        ).mappings().all()

        events: List[LiveEvent] = []
        for row in rows:
            deadline = expiry_deadline(row)
            if not now <= deadline <= horizon:
                continue
            if self._recently_notified(conn, row["student_id"], row["id"], NotificationType.EXPIRY_WARNING):
                continue
            minutes_left = max(1, math.ceil((deadline - now).total_seconds() / 60))
            events.append(self.notifications.publish(
                conn,
                row["student_id"],
                NotificationType.EXPIRY_WARNING,
                LiveEventType.SYSTEM_NOTIFICATION,
                "Gate pass expiring soon",
                f"Your gate pass {row['pass_code']} will expire in {minutes_left} minutes if it is not used.",
                pass_row=row,
                now=now,
                extra={"minutes_left": minutes_left},
            ))
        return events

    def _recently_notified(
        self,
        conn: Connection,
        recipient_id: int,
        pass_id: int,
        ntype: NotificationType,
        since: Optional[datetime] = None,
    ) -> bool:
        query = (
            select(func.count())
            .select_from(notifications)
            .where(
                notifications.c.recipient_id == recipient_id,
                notifications.c.pass_id == pass_id,
                notifications.c.type == ntype.value,
            )
        )
        if since is not None:
            query = query.where(notifications.c.created_at > since)
        return conn.execute(query).scalar_one() > 0
