# =======================================================================================
# gatepass/api/routes/passes.py - Gate Pass Endpoints
# =======================================================================================
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.engine import Connection

from ...database import db_manager
from ...models.enums import Role
from ...models.schemas import (
    DashboardStats,
    DecisionRequest,
    PassCreateRequest,
    PassListResponse,
    PassOut,
    PassResponse,
    QRResponse,
)
from ...services.connection_manager import connection_manager
from ...services.dashboard_service import DashboardService
from ...services.gate_service import GateService
from ...services.notification_service import LiveEvent
from ...services.pass_workflow import PassWorkflow
from ...utils.exceptions import ForbiddenError
from ...utils.timeutils import utcnow
from ..dependencies import get_current_user, get_db_connection, require_roles

router = APIRouter()
workflow = PassWorkflow()
gate_service = GateService(workflow)
dashboard_service = DashboardService()


def present_pass(row: dict) -> PassOut:
    out = PassOut.from_row(row)
    out.display_status = dashboard_service.display_status(row["status"])
    return out


# ---------- submission ----------

@router.post("/passes", response_model=PassResponse, status_code=status.HTTP_201_CREATED)
def submit_pass(
    request: PassCreateRequest,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_roles(Role.STUDENT)),
):
    """Student submits a new gate pass request."""
    with db_manager.get_connection() as conn:
        gate_pass, events = workflow.submit(conn, user, request)
    background_tasks.add_task(connection_manager.deliver, events)
    return PassResponse(message="Gate pass request submitted successfully", data=present_pass(gate_pass))


# ---------- read projections ----------

@router.get("/passes", response_model=PassListResponse)
def list_passes(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_db_connection),
):
    rows, pagination = dashboard_service.list_passes(conn, user, status_filter, page, limit)
    return PassListResponse(passes=[present_pass(r) for r in rows], pagination=pagination)


@router.get("/passes/for-approval", response_model=PassListResponse)
def passes_for_approval(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(require_roles(Role.MENTOR, Role.HOD)),
    conn: Connection = Depends(get_db_connection),
):
    rows, pagination = dashboard_service.for_approval(conn, user, page, limit)
    return PassListResponse(passes=[present_pass(r) for r in rows], pagination=pagination)


@router.get("/passes/active", response_model=PassListResponse)
def active_passes(
    user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_db_connection),
):
    rows = dashboard_service.active_passes(conn, user, utcnow())
    return PassListResponse(passes=[present_pass(r) for r in rows])


@router.get("/passes/stats/dashboard", response_model=DashboardStats)
def dashboard_stats(
    user: dict = Depends(get_current_user),
    conn: Connection = Depends(get_db_connection),
):
    return dashboard_service.get_stats(conn, user)


@router.get("/passes/{pass_id}", response_model=PassResponse)
def get_pass(
    pass_id: int,
    background_tasks: BackgroundTasks,
    user: dict = Depends(get_current_user),
):
    events: List[LiveEvent] = []
    with db_manager.get_connection() as conn:
        row = workflow.load_pass(conn, pass_id, events=events)
        if not dashboard_service.can_view(user, row):
            raise ForbiddenError("You do not have permission to view this gate pass")
        out = PassOut.from_row(row, history=workflow.get_history(conn, pass_id))
    out.display_status = dashboard_service.display_status(row["status"])
    background_tasks.add_task(connection_manager.deliver, events)
    return PassResponse(data=out)


@router.get("/passes/{pass_id}/qr", response_model=QRResponse)
def get_pass_qr(
    pass_id: int,
    user: dict = Depends(require_roles(Role.STUDENT, Role.SECURITY)),
    conn: Connection = Depends(get_db_connection),
):
    return gate_service.get_qr(conn, pass_id, user)


# ---------- decisions ----------

@router.put("/passes/{pass_id}/mentor-approve", response_model=PassResponse)
def mentor_approve(
    pass_id: int,
    request: DecisionRequest,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_roles(Role.MENTOR)),
):
    with db_manager.get_connection() as conn:
        gate_pass, events = workflow.mentor_decide(conn, user, pass_id, request.action, request.comments)
    background_tasks.add_task(connection_manager.deliver, events)
    return PassResponse(message=f"Gate pass {request.action}d successfully", data=present_pass(gate_pass))


@router.put("/passes/{pass_id}/hod-approve", response_model=PassResponse)
def hod_approve(
    pass_id: int,
    request: DecisionRequest,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_roles(Role.HOD)),
):
    with db_manager.get_connection() as conn:
        gate_pass, events = workflow.hod_decide(conn, user, pass_id, request.action, request.comments)
    background_tasks.add_task(connection_manager.deliver, events)
    return PassResponse(message=f"Gate pass {request.action}d successfully", data=present_pass(gate_pass))


@router.patch("/passes/{pass_id}/cancel", response_model=PassResponse)
def cancel_pass(
    pass_id: int,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_roles(Role.STUDENT)),
):
    with db_manager.get_connection() as conn:
        gate_pass, events = workflow.cancel(conn, user, pass_id)
    background_tasks.add_task(connection_manager.deliver, events)
    return PassResponse(message="Gate pass cancelled", data=present_pass(gate_pass))
