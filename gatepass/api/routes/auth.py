# =======================================================================================
# gatepass/api/routes/auth.py - Session Endpoints
# =======================================================================================
from fastapi import APIRouter, Depends, status
from sqlalchemy.engine import Connection

from ...models.schemas import LoginRequest, RefreshRequest, RegisterRequest, TokenResponse
from ...services.auth_service import AuthService
from ...services.user_service import UserService
from ...utils.exceptions import UnauthorizedError
from ..dependencies import get_db_connection

router = APIRouter()
auth_service = AuthService()


def _token_response(user: dict) -> TokenResponse:
    return TokenResponse(
        access_token=auth_service.create_access_token(user),
        refresh_token=auth_service.create_refresh_token(user),
        user=UserService.to_public(user),
    )


@router.post("/auth/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(request: RegisterRequest, conn: Connection = Depends(get_db_connection)):
    user = auth_service.register(conn, request)
    return _token_response(user)


@router.post("/auth/login", response_model=TokenResponse)
def login(request: LoginRequest, conn: Connection = Depends(get_db_connection)):
    user = auth_service.authenticate(conn, request.email, request.password)
    if not user:
        raise UnauthorizedError("Invalid email or password")
    return _token_response(user)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: RefreshRequest, conn: Connection = Depends(get_db_connection)):
    user = auth_service.resolve_user(conn, request.refresh_token, expected_type="refresh")
    return _token_response(user)
