# =======================================================================================
# gatepass/utils/__init__.py - Utils Package
# =======================================================================================
from .exceptions import *
from .validators import *

__all__ = [
    "GatePassError", "ValidationError", "StateConflictError", "InvalidStateError",
    "NotFoundError", "ExpiredError", "UnauthorizedError", "ForbiddenError",
    "NetworkError", "PassValidator",
]
