# =======================================================================================
# gatepass/api/dependencies.py - FastAPI Dependencies
# =======================================================================================
from typing import Any, Callable, Dict, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.engine import Connection

from ..database import db_manager
from ..models.enums import Role
from ..services.auth_service import AuthService
from ..utils.exceptions import ForbiddenError, UnauthorizedError

bearer_scheme = HTTPBearer(auto_error=False)
auth_service = AuthService()


def get_db_connection() -> Connection:
    """Dependency to get a transactional database connection."""
    with db_manager.get_connection() as conn:
        yield conn


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Dict[str, Any]:
    """Resolve the bearer token to an active user row."""
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Not authenticated")
    with db_manager.get_connection() as conn:
        return auth_service.resolve_user(conn, credentials.credentials)


def require_roles(*roles: Role) -> Callable[..., Dict[str, Any]]:
    """Dependency factory restricting an endpoint to the given roles."""
    allowed = {r.value for r in roles}

    def checker(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user["role"] not in allowed:
            raise ForbiddenError(
                f"This action requires role: {', '.join(sorted(allowed))}"
            )
        return user

    return checker
