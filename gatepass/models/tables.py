# =======================================================================================
# gatepass/models/tables.py - Table Definitions
# =======================================================================================
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("role", String(20), nullable=False),
    Column("phone", String(20)),
    Column("department", String(100)),
    # student-only attributes
    Column("registration_number", String(50), unique=True),
    Column("year", Integer),
    Column("section", String(10)),
    Column("mentor_id", Integer, ForeignKey("users.id")),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False),
    Index("ix_users_role_department", "role", "department"),
)

gate_passes = Table(
    "gate_passes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("pass_code", String(40), nullable=False, unique=True),
    Column("unique_token", String(64), nullable=False, unique=True),
    Column("student_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("mentor_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("hod_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("reason", String(500), nullable=False),
    Column("destination", String(200), nullable=False),
    Column("category", String(20), nullable=False),
    Column("priority", String(10), nullable=False, default="medium"),
    Column("departure_time", DateTime, nullable=False),
    Column("return_time", DateTime, nullable=False),
    Column("actual_exit_time", DateTime),
    Column("actual_return_time", DateTime),
    Column("emergency_contact_name", String(50), nullable=False),
    Column("emergency_contact_phone", String(15), nullable=False),
    Column("emergency_contact_relation", String(30), nullable=False),
    # approval sub-records
    Column("mentor_status", String(10), nullable=False, default="pending"),
    Column("mentor_approver_id", Integer, ForeignKey("users.id")),
    Column("mentor_comments", String(300)),
    Column("mentor_decided_at", DateTime),
    Column("hod_status", String(10), nullable=False, default="pending"),
    Column("hod_approver_id", Integer, ForeignKey("users.id")),
    Column("hod_comments", String(300)),
    Column("hod_decided_at", DateTime),
    Column("status", String(20), nullable=False, default="pending"),
    # gate credential
    Column("qr_token", Text),
    Column("qr_expires_at", DateTime),
    Column("security_code", String(16)),
    Column("checked_out_by", Integer, ForeignKey("users.id")),
    Column("checked_in_by", Integer, ForeignKey("users.id")),
    Column("is_late", Boolean, nullable=False, default=False),
    Column("cancelled_at", DateTime),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Index("ix_gate_passes_student_status", "student_id", "status"),
    Index("ix_gate_passes_mentor_status", "mentor_id", "status"),
    Index("ix_gate_passes_hod_status", "hod_id", "status"),
)

pass_history = Table(
    "pass_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("pass_id", Integer, ForeignKey("gate_passes.id"), nullable=False, index=True),
    Column("action", String(30), nullable=False),
    Column("actor_id", Integer, ForeignKey("users.id")),
    Column("comments", String(300)),
    Column("created_at", DateTime, nullable=False),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("recipient_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("sender_id", Integer, ForeignKey("users.id")),
    Column("type", String(30), nullable=False),
    Column("title", String(100), nullable=False),
    Column("message", String(500), nullable=False),
    Column("pass_id", Integer, ForeignKey("gate_passes.id")),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("read_at", DateTime),
    Column("created_at", DateTime, nullable=False),
    Index("ix_notifications_recipient_read", "recipient_id", "is_read"),
)
