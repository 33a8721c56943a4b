# =======================================================================================
# gatepass/services/auth_service.py - Authentication and Session Tokens
# =======================================================================================
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import insert
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from ..config import config
from ..models.enums import Role
from ..models.schemas import RegisterRequest
from ..models.tables import users
from ..utils.exceptions import UnauthorizedError, ValidationError
from ..utils.timeutils import utcnow
from .user_service import UserService

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class AuthService:
    """Handles registration, password login and bearer tokens."""

    def __init__(self):
        self.user_service = UserService()

    def hash_password(self, password: str) -> str:
        return pwd_context.hash(password)

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        return pwd_context.verify(plain_password, hashed_password)

    # ---------- registration ----------

    def register(self, conn: Connection, request: RegisterRequest) -> Dict[str, Any]:
        """Create a user after checking role-specific attributes."""
        errors: Dict[str, str] = {}
        email = request.email.strip().lower()

        if self.user_service.get_user_by_email(conn, email):
            errors["email"] = "Email already registered"

        role = Role(request.role)
        if role in (Role.STUDENT, Role.MENTOR, Role.HOD) and not request.department:
            errors["department"] = "Department is required"

        if role == Role.STUDENT:
            if not request.registration_number:
                errors["registration_number"] = "Registration number is required"
            elif self.user_service.get_user_by_registration_number(conn, request.registration_number):
                errors["registration_number"] = "Registration number already registered"
            if request.mentor_id is None:
                errors["mentor_id"] = "A mentor must be assigned"
            else:
                mentor = self.user_service.get_user_by_id(conn, request.mentor_id)
                if not mentor or mentor["role"] != Role.MENTOR.value:
                    errors["mentor_id"] = "Assigned mentor does not exist"

        if errors:
            raise ValidationError("Registration failed", fields=errors)

        is_student = role == Role.STUDENT
        try:
            result = conn.execute(
                insert(users).values(
                    name=request.name.strip(),
                    email=email,
                    password_hash=self.hash_password(request.password),
                    role=role.value,
                    phone=request.phone,
                    department=request.department,
                    registration_number=request.registration_number.strip() if is_student else None,
                    year=request.year if is_student else None,
                    section=request.section if is_student else None,
                    mentor_id=request.mentor_id if is_student else None,
                    is_active=True,
                    created_at=utcnow(),
                )
            )
        except IntegrityError as e:
            # concurrent registration with the same email or registration number
            logger.warning("Registration of %s rejected by a unique constraint: %s", email, e.orig)
            raise ValidationError(
                "Registration failed",
                fields={"email": "Email or registration number already registered"},
            ) from e
        user_id = result.inserted_primary_key[0]
        logger.info("Registered %s user %s", role.value, user_id)
        return self.user_service.require_user(conn, user_id)

    def authenticate(self, conn: Connection, email: str, password: str) -> Optional[Dict[str, Any]]:
        user = self.user_service.get_user_by_email(conn, email)
        if not user or not user["is_active"]:
            return None
        if not self.verify_password(password, user["password_hash"]):
            return None
        return user

    # ---------- tokens ----------

    def _encode(self, user: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "sub": str(user["id"]),
            "role": user["role"],
            "type": token_type,
            "iat": now,
            "exp": now + expires_delta,
        }
        return jwt.encode(claims, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)

    def create_access_token(self, user: Dict[str, Any]) -> str:
        return self._encode(user, "access", timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))

    def create_refresh_token(self, user: Dict[str, Any]) -> str:
        return self._encode(user, "refresh", timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS))

    def decode_token(self, token: str, expected_type: str = "access") -> int:
        """Validate a bearer token and return the user id it was issued for."""
        try:
            claims = jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
        except ExpiredSignatureError:
            raise UnauthorizedError("Token has expired")
        except JWTError:
            raise UnauthorizedError("Could not validate credentials")

        if claims.get("type") != expected_type:
            raise UnauthorizedError("Invalid token type")
        try:
            return int(claims["sub"])
        except (KeyError, ValueError):
            raise UnauthorizedError("Could not validate credentials")

    def resolve_user(self, conn: Connection, token: str, expected_type: str = "access") -> Dict[str, Any]:
        user_id = self.decode_token(token, expected_type)
        user = self.user_service.get_user_by_id(conn, user_id)
        if not user or not user["is_active"]:
            raise UnauthorizedError("User not found or inactive")
        return user
