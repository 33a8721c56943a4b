# =======================================================================================
# gatepass/utils/validators.py - Validation Helpers
# =======================================================================================
import re
from datetime import datetime
from typing import Dict, Optional

from .exceptions import ValidationError
from ..models.enums import Category, Priority

PHONE_PATTERN = re.compile(r"^[6-9]\d{9}$")

REASON_MIN, REASON_MAX = 10, 500
DESTINATION_MIN, DESTINATION_MAX = 3, 200
CONTACT_NAME_MIN, CONTACT_NAME_MAX = 2, 50
RELATION_MIN, RELATION_MAX = 2, 30
COMMENTS_MAX = 300


def _length_error(value: Optional[str], label: str, low: int, high: int) -> Optional[str]:
    text = (value or "").strip()
    if len(text) < low or len(text) > high:
        return f"{label} must be between {low} and {high} characters"
    return None


class PassValidator:
    """Validates gate pass drafts and approval decisions."""

    @staticmethod
    def validate_draft(draft, now: datetime) -> None:
        """Collect every field error of a pass draft and raise them together."""
        errors: Dict[str, str] = {}

        for field, label, low, high in (
            ("reason", "Reason", REASON_MIN, REASON_MAX),
            ("destination", "Destination", DESTINATION_MIN, DESTINATION_MAX),
        ):
            message = _length_error(getattr(draft, field), label, low, high)
            if message:
                errors[field] = message

        if draft.category not in [c.value for c in Category]:
            errors["category"] = "Invalid category"
        if draft.priority not in [p.value for p in Priority]:
            errors["priority"] = "Invalid priority"

        if draft.departure_time <= now:
            errors["departure_time"] = "Departure time must be in the future"
        if draft.return_time <= draft.departure_time:
            errors["return_time"] = "Return time must be after departure time"

        contact = draft.emergency_contact
        message = _length_error(contact.name, "Emergency contact name", CONTACT_NAME_MIN, CONTACT_NAME_MAX)
        if message:
            errors["emergency_contact.name"] = message
        if not PHONE_PATTERN.match(contact.phone or ""):
            errors["emergency_contact.phone"] = "Invalid emergency contact phone number"
        message = _length_error(contact.relation, "Emergency contact relation", RELATION_MIN, RELATION_MAX)
        if message:
            errors["emergency_contact.relation"] = message

        if errors:
            raise ValidationError("Validation failed", fields=errors)

    @staticmethod
    def validate_decision(action: str, comments: Optional[str]) -> None:
        errors: Dict[str, str] = {}
        if action not in ("approve", "reject"):
            errors["action"] = "Action must be approve or reject"
        if comments and len(comments.strip()) > COMMENTS_MAX:
            errors["comments"] = f"Comments cannot exceed {COMMENTS_MAX} characters"
        if errors:
            raise ValidationError("Validation failed", fields=errors)
