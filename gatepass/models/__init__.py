# =======================================================================================
# gatepass/models/__init__.py - Models Package
# =======================================================================================
from .schemas import *
from .enums import *

__all__ = [
    "PassCreateRequest", "DecisionRequest", "VerifyRequest", "PassOut", "PassResponse",
    "PassListResponse", "QRResponse", "VerifyResponse", "DashboardStats",
    "NotificationOut", "RegisterRequest", "LoginRequest", "TokenResponse", "UserOut",
    "Role", "PassStatus", "ApprovalStatus", "Category", "Priority", "HistoryAction",
    "NotificationType", "LiveEventType",
]
