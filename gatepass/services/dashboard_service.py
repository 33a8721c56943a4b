# =======================================================================================
# gatepass/services/dashboard_service.py
# =======================================================================================

import math
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import and_, func, select, true
from sqlalchemy.engine import Connection
from sqlalchemy.sql.elements import ColumnElement

from ..models.enums import PassStatus, Role
from ..models.tables import gate_passes
from ..utils.exceptions import ForbiddenError


# canonical status -> label shown on dashboards
DISPLAY_LABELS = {
    PassStatus.PENDING.value: "Pending mentor approval",
    PassStatus.MENTOR_APPROVED.value: "Pending HOD approval",
    PassStatus.APPROVED.value: "Approved",
    PassStatus.REJECTED.value: "Rejected",
    PassStatus.ACTIVE.value: "Checked out",
    PassStatus.COMPLETED.value: "Returned",
    PassStatus.EXPIRED.value: "Expired",
    PassStatus.CANCELLED.value: "Cancelled",
}

# older screens speak of hod_approved / used instead of approved / active
LEGACY_STATUS_ALIASES = {
    "hod_approved": PassStatus.APPROVED.value,
    "used": PassStatus.ACTIVE.value,
    "returned": PassStatus.COMPLETED.value,
}


class DashboardService:
    """Role-scoped read projections over gate passes."""

    # ---------- helper mapping ----------

    def display_status(self, status: Optional[str]) -> str:
        if status is None:
            return "Unknown"
        return DISPLAY_LABELS.get(status, status.replace("_", " ").title())

    def canonical_status(self, status: str) -> str:
        """Accept a legacy vocabulary status filter and return the canonical value."""
        status = status.strip().lower()
        return LEGACY_STATUS_ALIASES.get(status, status)

    def scope_for(self, user: Mapping[str, Any]) -> ColumnElement:
        """Which passes a user may see in lists and statistics."""
        role = Role(user["role"])
        if role == Role.STUDENT:
            return gate_passes.c.student_id == user["id"]
        if role == Role.MENTOR:
            return gate_passes.c.mentor_id == user["id"]
        if role == Role.HOD:
            return gate_passes.c.hod_id == user["id"]
        if role == Role.SECURITY:
            return true()
        raise ForbiddenError(f"Unsupported role {role.value}")

    def can_view(self, user: Mapping[str, Any], row: Mapping[str, Any]) -> bool:
        role = Role(user["role"])
        if role == Role.STUDENT:
            return row["student_id"] == user["id"]
        if role == Role.MENTOR:
            return row["mentor_id"] == user["id"]
        if role == Role.HOD:
            return row["hod_id"] == user["id"]
        return role == Role.SECURITY

    # ---------- lists ----------

    def _paginate(
        self, conn: Connection, condition: ColumnElement, page: int, limit: int
    ) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
        total = conn.execute(
            select(func.count()).select_from(gate_passes).where(condition)
        ).scalar_one()
        rows = conn.execute(
            select(gate_passes)
            .where(condition)
            .order_by(gate_passes.c.created_at.desc(), gate_passes.c.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).mappings().all()
        pagination = {
            "page": page,
            "pages": math.ceil(total / limit) if limit else 0,
            "total": total,
            "limit": limit,
        }
        return [dict(r) for r in rows], pagination

    def list_passes(
        self,
        conn: Connection,
        user: Mapping[str, Any],
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
        condition = self.scope_for(user)
        if status:
            condition = and_(condition, gate_passes.c.status == self.canonical_status(status))
        return self._paginate(conn, condition, page, limit)

    def for_approval(
        self, conn: Connection, user: Mapping[str, Any], page: int = 1, limit: int = 10
    ) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
        """Passes waiting on the caller's decision."""
        role = Role(user["role"])
        if role == Role.MENTOR:
            condition = and_(
                gate_passes.c.mentor_id == user["id"],
                gate_passes.c.status == PassStatus.PENDING.value,
            )
        elif role == Role.HOD:
            condition = and_(
                gate_passes.c.hod_id == user["id"],
                gate_passes.c.status == PassStatus.MENTOR_APPROVED.value,
            )
        else:
            raise ForbiddenError("Only mentors and HODs can access the approval queue")
        return self._paginate(conn, condition, page, limit)

    def active_passes(
        self, conn: Connection, user: Mapping[str, Any], now: datetime, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Passes that are usable at the gate or currently out."""
        role = Role(user["role"])
        if role in (Role.STUDENT, Role.SECURITY):
            condition = and_(
                self.scope_for(user),
                gate_passes.c.status.in_([PassStatus.APPROVED.value, PassStatus.ACTIVE.value]),
            )
        else:
            condition = and_(self.scope_for(user), gate_passes.c.status == PassStatus.ACTIVE.value)

        rows = conn.execute(
            select(gate_passes)
            .where(condition)
            .order_by(gate_passes.c.departure_time, gate_passes.c.id)
            .limit(limit)
        ).mappings().all()
        # approved passes past their QR validity are no longer usable
        return [
            dict(r) for r in rows
            if r["status"] == PassStatus.ACTIVE.value
            or r["qr_expires_at"] is None
            or r["qr_expires_at"] >= now
        ]

    # ---------- summary ----------

    def get_stats(self, conn: Connection, user: Mapping[str, Any]) -> Dict[str, Any]:
        scope = self.scope_for(user)
        rows = conn.execute(
            select(gate_passes.c.status, func.count().label("count"))
            .where(scope)
            .group_by(gate_passes.c.status)
        ).mappings().all()

        stats = {s.value: 0 for s in PassStatus}
        stats["total"] = 0
        for row in rows:
            stats[row["status"]] = int(row["count"] or 0)
            stats["total"] += int(row["count"] or 0)

        late_returns = conn.execute(
            select(func.count())
            .select_from(gate_passes)
            .where(scope, gate_passes.c.is_late.is_(True))
        ).scalar_one()

        recent = conn.execute(
            select(
                gate_passes.c.id,
                gate_passes.c.pass_code,
                gate_passes.c.student_id,
                gate_passes.c.status,
                gate_passes.c.departure_time,
                gate_passes.c.created_at,
            )
            .where(scope)
            .order_by(gate_passes.c.created_at.desc(), gate_passes.c.id.desc())
            .limit(5)
        ).mappings().all()

        return {
            "stats": stats,
            "late_returns": int(late_returns or 0),
            "recent_passes": [
                {**dict(r), "display_status": self.display_status(r["status"])} for r in recent
            ],
        }
