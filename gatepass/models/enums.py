# =======================================================================================
# gatepass/models/enums.py - Enums and Constants
# =======================================================================================
from enum import Enum
from typing import FrozenSet, Literal

# Type aliases for request payloads
DecisionAction = Literal["approve", "reject"]
GateAction = Literal["exit", "entry"]

class Role(str, Enum):
    """Closed set of user roles."""
    STUDENT = "student"
    MENTOR = "mentor"
    HOD = "hod"
    SECURITY = "security"

class PassStatus(str, Enum):
    """Canonical gate pass lifecycle status."""
    PENDING = "pending"
    MENTOR_APPROVED = "mentor_approved"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class Category(str, Enum):
    PERSONAL = "personal"
    MEDICAL = "medical"
    FAMILY = "family"
    ACADEMIC = "academic"
    EMERGENCY = "emergency"
    OTHER = "other"

class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

class HistoryAction(str, Enum):
    CREATED = "created"
    MENTOR_APPROVED = "mentor_approved"
    MENTOR_REJECTED = "mentor_rejected"
    HOD_APPROVED = "hod_approved"
    HOD_REJECTED = "hod_rejected"
    CHECKED_OUT = "checked_out"
    CHECKED_IN = "checked_in"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

class NotificationType(str, Enum):
    """Persisted inbox notification types."""
    PASS_SUBMITTED = "pass_submitted"
    PASS_APPROVED = "pass_approved"
    PASS_REJECTED = "pass_rejected"
    PASS_USED = "pass_used"
    PASS_RETURNED = "pass_returned"
    PASS_EXPIRED = "pass_expired"
    PASS_CANCELLED = "pass_cancelled"
    PASS_OVERDUE = "pass_overdue"
    EXPIRY_WARNING = "expiry_warning"
    REMINDER = "reminder"
    SYSTEM_ALERT = "system_alert"

class LiveEventType(str, Enum):
    """Server -> client events on the live channel."""
    NEW_PASS_REQUEST = "new_pass_request"
    PASS_APPROVED = "pass_approved"
    PASS_REJECTED = "pass_rejected"
    PASS_USED = "pass_used"
    PASS_RETURNED = "pass_returned"
    PASS_FULLY_APPROVED = "pass_fully_approved"
    PASS_EXPIRED = "pass_expired"
    PASS_CANCELLED = "pass_cancelled"
    SYSTEM_NOTIFICATION = "system_notification"

# Statuses that still count against a student's open-pass limit and can be
# cancelled or time out.
OPEN_STATUSES: FrozenSet[PassStatus] = frozenset(
    {PassStatus.PENDING, PassStatus.MENTOR_APPROVED, PassStatus.APPROVED}
)

TERMINAL_STATUSES: FrozenSet[PassStatus] = frozenset(
    {PassStatus.REJECTED, PassStatus.COMPLETED, PassStatus.EXPIRED, PassStatus.CANCELLED}
)
