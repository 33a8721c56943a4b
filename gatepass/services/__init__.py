# =======================================================================================
# gatepass/services/__init__.py - Services Package
# =======================================================================================
from .pass_workflow import PassWorkflow
from .gate_service import GateService
from .qr_service import QRService
from .notification_service import NotificationService, LiveEvent
from .dashboard_service import DashboardService
from .auth_service import AuthService
from .user_service import UserService
from .connection_manager import ConnectionManager, connection_manager

__all__ = [
    "PassWorkflow", "GateService", "QRService", "NotificationService", "LiveEvent",
    "DashboardService", "AuthService", "UserService", "ConnectionManager",
    "connection_manager",
]
