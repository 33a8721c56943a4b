# =======================================================================================
# gatepass/api/routes/gate.py - Gate Verification Endpoints
# =======================================================================================
from fastapi import APIRouter, BackgroundTasks, Depends

from ...database import db_manager
from ...models.enums import Role
from ...models.schemas import PassResponse, VerifyRequest, VerifyResponse
from ...services.connection_manager import connection_manager
from .passes import gate_service, present_pass
from ..dependencies import require_roles

router = APIRouter()


@router.post("/passes/verify", response_model=VerifyResponse)
def verify_pass(
    request: VerifyRequest,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_roles(Role.SECURITY)),
):
    """Verify a scanned QR token or a manually typed pass code."""
    with db_manager.get_connection() as conn:
        if request.commit:
            gate_pass, events = gate_service.verify_and_apply(
                conn, request.token, request.action, user, security_code=request.security_code
            )
        else:
            gate_pass = gate_service.verify(
                conn, request.token, request.action, security_code=request.security_code
            )
            events = []
    background_tasks.add_task(connection_manager.deliver, events)

    if request.commit:
        message = "Checked out" if request.action == "exit" else "Checked in"
    else:
        message = f"Gate pass verified for {request.action}"
    return VerifyResponse(valid=True, action=request.action, message=message, gate_pass=present_pass(gate_pass))


@router.patch("/passes/{pass_id}/checkout", response_model=PassResponse)
def checkout_pass(
    pass_id: int,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_roles(Role.SECURITY)),
):
    with db_manager.get_connection() as conn:
        gate_pass, events = gate_service.checkout(conn, pass_id, user)
    background_tasks.add_task(connection_manager.deliver, events)
    return PassResponse(message="Student checked out", data=present_pass(gate_pass))


@router.patch("/passes/{pass_id}/checkin", response_model=PassResponse)
def checkin_pass(
    pass_id: int,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_roles(Role.SECURITY)),
):
    with db_manager.get_connection() as conn:
        gate_pass, events = gate_service.checkin(conn, pass_id, user)
    background_tasks.add_task(connection_manager.deliver, events)
    message = "Student checked in (late return)" if gate_pass["is_late"] else "Student checked in"
    return PassResponse(message=message, data=present_pass(gate_pass))
