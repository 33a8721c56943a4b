# =======================================================================================
# gatepass/models/schemas.py - Pydantic Models
# =======================================================================================
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from .enums import DecisionAction, GateAction
from ..utils.timeutils import to_naive_utc

RoleType = Literal["student", "mentor", "hod", "security"]
CategoryType = Literal["personal", "medical", "family", "academic", "emergency", "other"]
PriorityType = Literal["low", "medium", "high"]

# ========== Passes ==========

class EmergencyContact(BaseModel):
    """Person to reach while the student is off campus."""
    name: str = Field(..., max_length=50)
    phone: str = Field(..., max_length=15)
    relation: str = Field(..., max_length=30)

class PassCreateRequest(BaseModel):
    """Gate pass submission."""
    reason: str = Field(..., max_length=500, description="Reason for leaving campus")
    destination: str = Field(..., max_length=200)
    category: CategoryType
    priority: PriorityType = "medium"
    departure_time: datetime
    return_time: datetime
    emergency_contact: EmergencyContact

    @field_validator("departure_time", "return_time")
    @classmethod
    def _as_naive_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

class DecisionRequest(BaseModel):
    """Mentor / HOD decision."""
    action: DecisionAction
    comments: Optional[str] = Field(None, max_length=300)

class VerifyRequest(BaseModel):
    """Scanned QR token or manually entered pass code."""
    token: str = Field(..., min_length=1)
    action: GateAction = "exit"
    security_code: Optional[str] = None
    commit: bool = Field(False, description="Apply checkout/checkin after a successful verification")

class ApprovalInfo(BaseModel):
    status: str
    approver_id: Optional[int] = None
    comments: Optional[str] = None
    timestamp: Optional[datetime] = None

class HistoryItem(BaseModel):
    action: str
    actor_id: Optional[int] = None
    comments: Optional[str] = None
    created_at: datetime

class PassOut(BaseModel):
    id: int
    pass_code: str
    student_id: int
    mentor_id: int
    hod_id: int
    reason: str
    destination: str
    category: str
    priority: str
    departure_time: datetime
    return_time: datetime
    actual_exit_time: Optional[datetime] = None
    actual_return_time: Optional[datetime] = None
    emergency_contact: EmergencyContact
    mentor_approval: ApprovalInfo
    hod_approval: ApprovalInfo
    status: str
    display_status: Optional[str] = None
    qr_expires_at: Optional[datetime] = None
    is_late: bool = False
    checked_out_by: Optional[int] = None
    checked_in_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    history: Optional[List[HistoryItem]] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], history: Optional[List[Mapping[str, Any]]] = None) -> "PassOut":
        """Build the API shape from a ``gate_passes`` row."""
        return cls(
            id=row["id"],
            pass_code=row["pass_code"],
            student_id=row["student_id"],
            mentor_id=row["mentor_id"],
            hod_id=row["hod_id"],
            reason=row["reason"],
            destination=row["destination"],
            category=row["category"],
            priority=row["priority"],
            departure_time=row["departure_time"],
            return_time=row["return_time"],
            actual_exit_time=row["actual_exit_time"],
            actual_return_time=row["actual_return_time"],
            emergency_contact=EmergencyContact(
                name=row["emergency_contact_name"],
                phone=row["emergency_contact_phone"],
                relation=row["emergency_contact_relation"],
            ),
            mentor_approval=ApprovalInfo(
                status=row["mentor_status"],
                approver_id=row["mentor_approver_id"],
                comments=row["mentor_comments"],
                timestamp=row["mentor_decided_at"],
            ),
            hod_approval=ApprovalInfo(
                status=row["hod_status"],
                approver_id=row["hod_approver_id"],
                comments=row["hod_comments"],
                timestamp=row["hod_decided_at"],
            ),
            status=row["status"],
            qr_expires_at=row["qr_expires_at"],
            is_late=bool(row["is_late"]),
            checked_out_by=row["checked_out_by"],
            checked_in_by=row["checked_in_by"],
            cancelled_at=row["cancelled_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            history=[HistoryItem(**dict(h)) for h in history] if history is not None else None,
        )

class PassResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: PassOut

class Pagination(BaseModel):
    page: int
    pages: int
    total: int
    limit: int

class PassListResponse(BaseModel):
    passes: List[PassOut]
    pagination: Optional[Pagination] = None

class QRResponse(BaseModel):
    pass_code: str
    token: str
    qr_code: Optional[str] = Field(None, description="Base64 encoded PNG")
    security_code: Optional[str] = None
    expires_at: Optional[datetime] = None

class VerifyResponse(BaseModel):
    valid: bool
    action: GateAction
    message: str
    gate_pass: PassOut

# ========== Dashboard ==========

class RecentPass(BaseModel):
    id: int
    pass_code: str
    student_id: int
    status: str
    display_status: str
    departure_time: datetime
    created_at: datetime

class DashboardStats(BaseModel):
    stats: Dict[str, int]
    late_returns: int
    recent_passes: List[RecentPass]

# ========== Notifications ==========

class NotificationOut(BaseModel):
    id: int
    recipient_id: int
    sender_id: Optional[int] = None
    type: str
    title: str
    message: str
    pass_id: Optional[int] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

class NotificationListResponse(BaseModel):
    notifications: List[NotificationOut]
    total: int
    page: int
    pages: int

class UnreadCountResponse(BaseModel):
    count: int

class MessageResponse(BaseModel):
    success: bool = True
    message: str
    count: Optional[int] = None

# ========== Auth / Users ==========

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(..., min_length=8)
    role: RoleType = "student"
    phone: Optional[str] = None
    department: Optional[str] = None
    registration_number: Optional[str] = None
    year: Optional[int] = Field(None, ge=1, le=6)
    section: Optional[str] = None
    mentor_id: Optional[int] = None

class LoginRequest(BaseModel):
    email: str
    password: str

class RefreshRequest(BaseModel):
    refresh_token: str

class UserOut(BaseModel):
    id: int
    name: str
    email: str
    role: RoleType
    phone: Optional[str] = None
    department: Optional[str] = None
    registration_number: Optional[str] = None
    year: Optional[int] = None
    section: Optional[str] = None
    mentor_id: Optional[int] = None
    is_active: bool = True

class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: UserOut

class UserSearchResponse(BaseModel):
    success: bool
    data: List[UserOut]

# ========== Health ==========

class HealthResponse(BaseModel):
    status: str                 # "ok" | "error"
    dataAvailable: bool
    message: Optional[str] = None
