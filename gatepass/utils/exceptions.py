# =======================================================================================
# gatepass/utils/exceptions.py - Custom Exceptions
# =======================================================================================
from typing import Any, Dict, Optional


class GatePassError(Exception):
    """Base exception for the gate pass system."""

    code = "GATEPASS_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(GatePassError):
    """Raised when input is malformed or incomplete.

    ``details`` maps field names to their error messages.
    """
    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Validation failed", fields: Optional[Dict[str, str]] = None):
        super().__init__(message, details=fields)

    @property
    def fields(self) -> Dict[str, str]:
        return self.details


class StateConflictError(GatePassError):
    """Raised when a pass no longer satisfies the status precondition of an action."""
    code = "STATE_CONFLICT"


class InvalidStateError(StateConflictError):
    """Raised when a verified pass is not in a status that permits the gate action."""
    code = "INVALID_STATE"


class NotFoundError(GatePassError):
    """Raised when a pass, token, user or notification is unknown."""
    code = "NOT_FOUND"


class ExpiredError(GatePassError):
    """Raised when a QR token or pass is past its validity."""
    code = "EXPIRED"


class UnauthorizedError(GatePassError):
    """Raised when credentials are missing or invalid."""
    code = "UNAUTHORIZED"


class ForbiddenError(GatePassError):
    """Raised on a role or ownership mismatch."""
    code = "FORBIDDEN"


class NetworkError(GatePassError):
    """Raised by the REST client when the transport fails."""
    code = "NETWORK_ERROR"
