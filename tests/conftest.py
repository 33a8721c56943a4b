"""
Gate Pass - Test Configuration and Fixtures
"""
import os
import tempfile
from datetime import datetime, timedelta

import pytest
from faker import Faker

# Set testing environment before the package reads its configuration
_db_dir = tempfile.mkdtemp(prefix="gatepass-tests-")
os.environ["DB_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ["EXPIRY_SWEEP_INTERVAL"] = "0"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key-for-testing"
os.environ["QR_SECRET_KEY"] = "test-qr-secret-key-for-testing"

from gatepass.database import db_manager
from gatepass.models.schemas import EmergencyContact, PassCreateRequest, RegisterRequest
from gatepass.services.auth_service import AuthService
from gatepass.services.gate_service import GateService
from gatepass.services.pass_workflow import PassWorkflow

fake = Faker()

DEPARTMENT = "Computer Science"
PASSWORD = "password123"


@pytest.fixture(autouse=True)
def database():
    """Fresh schema for each test"""
    db_manager.create_all()
    yield db_manager
    db_manager.drop_all()


@pytest.fixture
def tx():
    """Run ``fn(conn, ...)`` inside one committed transaction."""
    def run(fn, *args, **kwargs):
        with db_manager.get_connection() as conn:
            return fn(conn, *args, **kwargs)
    return run


@pytest.fixture
def auth_service() -> AuthService:
    return AuthService()


@pytest.fixture
def workflow() -> PassWorkflow:
    return PassWorkflow()


@pytest.fixture
def gate_service(workflow) -> GateService:
    return GateService(workflow)


@pytest.fixture
def make_user(auth_service, tx):
    """Register a user with realistic fake attributes."""
    def factory(role: str, **overrides) -> dict:
        fields = {
            "name": fake.name(),
            "email": fake.unique.email(),
            "password": PASSWORD,
            "role": role,
            "phone": "9876543210",
            "department": DEPARTMENT,
        }
        if role == "security":
            fields["department"] = None
        if role == "student":
            fields["registration_number"] = fake.unique.bothify("21CS####")
            fields["year"] = 3
            fields["section"] = "A"
        fields.update(overrides)
        return tx(auth_service.register, RegisterRequest(**fields))
    return factory


@pytest.fixture
def mentor(make_user) -> dict:
    return make_user("mentor")


@pytest.fixture
def hod(make_user) -> dict:
    return make_user("hod")


@pytest.fixture
def security(make_user) -> dict:
    return make_user("security")


@pytest.fixture
def student(make_user, mentor, hod) -> dict:
    return make_user("student", mentor_id=mentor["id"])


@pytest.fixture
def now() -> datetime:
    return datetime(2025, 3, 10, 9, 0, 0)


@pytest.fixture
def make_draft(now):
    """Valid pass draft leaving in an hour and returning four hours later."""
    def factory(**overrides) -> PassCreateRequest:
        fields = {
            "reason": "Doctor appointment at the city hospital",
            "destination": "City General Hospital",
            "category": "medical",
            "priority": "high",
            "departure_time": now + timedelta(hours=1),
            "return_time": now + timedelta(hours=5),
            "emergency_contact": EmergencyContact(name="Ravi Kumar", phone="9123456780", relation="Father"),
        }
        fields.update(overrides)
        return PassCreateRequest(**fields)
    return factory


@pytest.fixture
def submitted(tx, workflow, student, make_draft, now) -> dict:
    """A pending pass."""
    row, _ = tx(workflow.submit, student, make_draft(), now)
    return row


@pytest.fixture
def approved(tx, workflow, submitted, mentor, hod, now) -> dict:
    """A fully approved pass with its QR token issued."""
    tx(workflow.mentor_decide, mentor, submitted["id"], "approve", None, now + timedelta(minutes=5))
    row, _ = tx(workflow.hod_decide, hod, submitted["id"], "approve", None, now + timedelta(minutes=10))
    return row
