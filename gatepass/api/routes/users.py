# =======================================================================================
# gatepass/api/routes/users.py - User Endpoints
# =======================================================================================
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.engine import Connection

from ...models.enums import Role
from ...models.schemas import UserOut, UserSearchResponse
from ...services.user_service import UserService
from ..dependencies import get_current_user, get_db_connection, require_roles

router = APIRouter()
user_service = UserService()


@router.get("/users/me", response_model=UserOut)
def get_me(user: dict = Depends(get_current_user)):
    return user_service.to_public(user)


@router.get("/users/mentees", response_model=List[UserOut])
def get_mentees(
    user: dict = Depends(require_roles(Role.MENTOR)),
    conn: Connection = Depends(get_db_connection),
):
    return [user_service.to_public(u) for u in user_service.list_mentees(conn, user["id"])]


# ---- student search used by the staff dashboards ----

@router.get("/users/search", response_model=UserSearchResponse)
def search_users(
    query: str = Query(..., min_length=1, description="Registration number, e-mail or name"),
    user: dict = Depends(require_roles(Role.MENTOR, Role.HOD, Role.SECURITY)),
    conn: Connection = Depends(get_db_connection),
):
    users = user_service.search_users(conn, query)
    return UserSearchResponse(
        success=True,
        data=[user_service.to_public(u) for u in users],
    )
