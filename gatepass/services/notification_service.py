# =======================================================================================
# gatepass/services/notification_service.py - Persisted Inbox + Live Events
# =======================================================================================
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection

from ..models.enums import LiveEventType, NotificationType
from ..models.schemas import NotificationOut, PassOut
from ..models.tables import notifications
from ..utils.exceptions import NotFoundError
from ..utils.timeutils import utcnow

logger = logging.getLogger(__name__)


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def role_room(role: str) -> str:
    return f"role:{role}"


def department_room(department: str, role: str) -> str:
    return f"department:{department}:{role}"


@dataclass
class LiveEvent:
    """A message for the live channel, produced inside a transaction and sent after commit."""
    room: str
    event: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        return {"event": self.event, "data": self.data}


class NotificationService:
    """Writes inbox notifications and builds the matching live events."""

    def notify(
        self,
        conn: Connection,
        recipient_id: int,
        ntype: NotificationType,
        title: str,
        message: str,
        pass_id: Optional[int] = None,
        sender_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Persist one notification and return it as a row dict."""
        now = now or utcnow()
        result = conn.execute(
            insert(notifications).values(
                recipient_id=recipient_id,
                sender_id=sender_id,
                type=ntype.value,
                title=title[:100],
                message=message[:500],
                pass_id=pass_id,
                is_read=False,
                created_at=now,
            )
        )
        notification_id = result.inserted_primary_key[0]
        row = conn.execute(
            select(notifications).where(notifications.c.id == notification_id)
        ).mappings().first()
        return dict(row)

    def publish(
        self,
        conn: Connection,
        recipient_id: int,
        ntype: NotificationType,
        event: LiveEventType,
        title: str,
        message: str,
        pass_row: Optional[Mapping[str, Any]] = None,
        sender_id: Optional[int] = None,
        now: Optional[datetime] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> LiveEvent:
        """Persist a notification for ``recipient_id`` and return its live counterpart.

        The persisted row is the authoritative copy; the returned event is only
        delivered once the caller's transaction has committed.
        """
        row = self.notify(
            conn,
            recipient_id,
            ntype,
            title,
            message,
            pass_id=pass_row["id"] if pass_row else None,
            sender_id=sender_id,
            now=now,
        )
        data: Dict[str, Any] = {
            "notification": NotificationOut(**row).model_dump(mode="json"),
        }
        if pass_row is not None:
            data["pass"] = PassOut.from_row(pass_row).model_dump(mode="json", exclude={"history"})
        if extra:
            data.update(extra)
        logger.debug("Queued %s for user %s", event.value, recipient_id)
        return LiveEvent(room=user_room(recipient_id), event=event.value, data=data)

    # ---------- inbox ----------

    def get_notifications(
        self,
        conn: Connection,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        unread_only: bool = False,
    ) -> Tuple[List[Dict[str, Any]], int, int]:
        """Return (rows, total, pages), newest first."""
        conditions = [notifications.c.recipient_id == user_id]
        if unread_only:
            conditions.append(notifications.c.is_read.is_(False))

        total = conn.execute(
            select(func.count()).select_from(notifications).where(*conditions)
        ).scalar_one()
        rows = conn.execute(
            select(notifications)
            .where(*conditions)
            .order_by(notifications.c.created_at.desc(), notifications.c.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).mappings().all()
        pages = math.ceil(total / limit) if limit else 0
        return [dict(r) for r in rows], total, pages

    def get_unread(self, conn: Connection, user_id: int) -> List[Dict[str, Any]]:
        """Unread notifications in creation order, used to replay state on reconnect."""
        rows = conn.execute(
            select(notifications)
            .where(notifications.c.recipient_id == user_id, notifications.c.is_read.is_(False))
            .order_by(notifications.c.created_at, notifications.c.id)
        ).mappings().all()
        return [dict(r) for r in rows]

    def get_unread_count(self, conn: Connection, user_id: int) -> int:
        return conn.execute(
            select(func.count())
            .select_from(notifications)
            .where(notifications.c.recipient_id == user_id, notifications.c.is_read.is_(False))
        ).scalar_one()

    def mark_as_read(
        self, conn: Connection, notification_id: int, user_id: int, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        row = self._get_owned(conn, notification_id, user_id)
        if not row["is_read"]:
            conn.execute(
                update(notifications)
                .where(notifications.c.id == notification_id)
                .values(is_read=True, read_at=now or utcnow())
            )
            row = self._get_owned(conn, notification_id, user_id)
        return row

    def mark_all_as_read(self, conn: Connection, user_id: int, now: Optional[datetime] = None) -> int:
        result = conn.execute(
            update(notifications)
            .where(notifications.c.recipient_id == user_id, notifications.c.is_read.is_(False))
            .values(is_read=True, read_at=now or utcnow())
        )
        return result.rowcount

    def delete_notification(self, conn: Connection, notification_id: int, user_id: int) -> None:
        self._get_owned(conn, notification_id, user_id)
        conn.execute(delete(notifications).where(notifications.c.id == notification_id))

    def _get_owned(self, conn: Connection, notification_id: int, user_id: int) -> Dict[str, Any]:
        row = conn.execute(
            select(notifications).where(
                notifications.c.id == notification_id,
                notifications.c.recipient_id == user_id,
            )
        ).mappings().first()
        if not row:
            raise NotFoundError("Notification not found")
        return dict(row)
