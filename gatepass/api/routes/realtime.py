# =======================================================================================
# gatepass/api/routes/realtime.py - Live Channel WebSocket
# =======================================================================================
import json
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

from ...database import db_manager
from ...models.enums import LiveEventType
from ...models.schemas import NotificationOut
from ...services.auth_service import AuthService
from ...services.connection_manager import LiveConnection, connection_manager
from ...services.notification_service import (
    NotificationService,
    department_room,
    role_room,
    user_room,
)
from ...utils.exceptions import GatePassError

logger = logging.getLogger(__name__)

router = APIRouter()
auth_service = AuthService()
notification_service = NotificationService()


# Blocking DB helpers, run in the threadpool so a slow pool checkout
# never stalls the event loop.
def _resolve_user(token: str) -> Dict[str, Any]:
    with db_manager.get_connection() as conn:
        return auth_service.resolve_user(conn, token)


def _load_unread(user_id: int) -> List[Dict[str, Any]]:
    with db_manager.get_connection() as conn:
        return notification_service.get_unread(conn, user_id)


async def _replay_unread(connection: LiveConnection) -> None:
    unread = await run_in_threadpool(_load_unread, connection.user_id)
    await connection_manager.send(
        connection,
        LiveEventType.SYSTEM_NOTIFICATION.value,
        {
            "unread_count": len(unread),
            "notifications": [NotificationOut(**n).model_dump(mode="json") for n in unread],
        },
    )


async def _handle_message(connection: LiveConnection, user: Dict[str, Any], message: Dict[str, Any]) -> None:
    event = message.get("event")
    data = message.get("data")
    if not isinstance(data, dict):
        data = {}

    if event == "join":
        await connection_manager.join(connection, user_room(user["id"]))
        await _replay_unread(connection)
    elif event == "join_role":
        role = data.get("role", user["role"])
        # a socket may only listen on its own role's rooms
        if role != user["role"]:
            await connection_manager.send(connection, "error", {"message": "Cannot join another role"})
            return
        await connection_manager.join(connection, role_room(role))
        if user.get("department"):
            await connection_manager.join(connection, department_room(user["department"], role))
    else:
        await connection_manager.send(connection, "error", {"message": f"Unknown event: {event}"})


@router.websocket("/ws")
async def live_channel(websocket: WebSocket, token: str = Query("")):
    try:
        user = await run_in_threadpool(_resolve_user, token)
    except GatePassError as e:
        logger.warning("Live channel rejected: %s", e.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    connection = await connection_manager.connect(websocket, user["id"], user["role"])
    await connection_manager.join(connection, user_room(user["id"]))
    await connection_manager.join(connection, role_room(user["role"]))
    if user.get("department"):
        await connection_manager.join(connection, department_room(user["department"], user["role"]))

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await connection_manager.send(connection, "error", {"message": "Message is not valid JSON"})
                continue
            if not isinstance(message, dict):
                await connection_manager.send(connection, "error", {"message": "Message must be a JSON object"})
                continue
            await _handle_message(connection, user, message)
    except WebSocketDisconnect:
        pass
    finally:
        await connection_manager.disconnect(connection)
