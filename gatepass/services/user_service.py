# =======================================================================================
# gatepass/services/user_service.py - User Lookup Service
# =======================================================================================
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.engine import Connection

from ..models.enums import Role
from ..models.schemas import UserOut
from ..models.tables import users
from ..utils.exceptions import NotFoundError


class UserService:
    """Handles user lookups used by the approval flow and the staff UI."""

    @staticmethod
    def to_public(user: Dict[str, Any]) -> UserOut:
        """Strip credentials from a user row."""
        data = {k: v for k, v in user.items() if k in UserOut.model_fields}
        data["is_active"] = bool(user.get("is_active", True))
        return UserOut(**data)

    def get_user_by_id(self, conn: Connection, user_id: int) -> Optional[Dict[str, Any]]:
        """Get user by ID."""
        user = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
        return dict(user) if user else None

    def require_user(self, conn: Connection, user_id: int) -> Dict[str, Any]:
        user = self.get_user_by_id(conn, user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def get_user_by_email(self, conn: Connection, email: str) -> Optional[Dict[str, Any]]:
        user = conn.execute(
            select(users).where(users.c.email == email.strip().lower())
        ).mappings().first()
        return dict(user) if user else None

    def get_user_by_registration_number(self, conn: Connection, registration_number: str) -> Optional[Dict[str, Any]]:
        user = conn.execute(
            select(users).where(users.c.registration_number == registration_number.strip())
        ).mappings().first()
        return dict(user) if user else None

    def get_user_name(self, conn: Connection, user_id: Optional[int]) -> str:
        if user_id is None:
            return "Unknown"
        name = conn.execute(select(users.c.name).where(users.c.id == user_id)).scalar()
        return name or "Unknown"

    def find_department_hod(self, conn: Connection, department: Optional[str]) -> Optional[Dict[str, Any]]:
        """The active HOD of a department, if one is registered."""
        if not department:
            return None
        hod = conn.execute(
            select(users)
            .where(
                users.c.role == Role.HOD.value,
                users.c.department == department,
                users.c.is_active.is_(True),
            )
            .order_by(users.c.id)
            .limit(1)
        ).mappings().first()
        return dict(hod) if hod else None

    def list_mentees(self, conn: Connection, mentor_id: int) -> List[Dict[str, Any]]:
        rows = conn.execute(
            select(users)
            .where(users.c.role == Role.STUDENT.value, users.c.mentor_id == mentor_id)
            .order_by(users.c.name)
        ).mappings().all()
        return [dict(r) for r in rows]

    def search_users(self, conn: Connection, query: str) -> List[Dict[str, Any]]:
        """
        Search students by registration number or e-mail, falling back to a
        partial match on name / registration number.
        """
        query = query.strip()
        rows = conn.execute(
            select(users)
            .where(
                users.c.role == Role.STUDENT.value,
                or_(users.c.registration_number == query, users.c.email == query.lower()),
            )
            .order_by(users.c.id.desc())
            .limit(10)
        ).mappings().all()

        if not rows:
            like = f"%{query}%"
            rows = conn.execute(
                select(users)
                .where(
                    users.c.role == Role.STUDENT.value,
                    or_(users.c.name.like(like), users.c.registration_number.like(like)),
                )
                .order_by(users.c.id.desc())
                .limit(10)
            ).mappings().all()

        return [dict(r) for r in rows]
