import re
from typing import Dict

from shared.security_config import sanitize_input
from commerce.models import AddressDB
from commerce.schemas import Address

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^[0-9]{10}$")

# Form order; first failing field is reported first
REQUIRED_FIELDS = (
    ("full_name", "Full name"),
    ("email", "Email address"),
    ("phone", "Phone number"),
    ("address", "Street address"),
    ("city", "City"),
    ("state", "State"),
    ("pincode", "PIN code"),
    ("country", "Country"),
)

INVALID_EMAIL = "Please enter a valid email address."
INVALID_PHONE = "Please enter a valid 10-digit phone number."


def address_errors(info: Address) -> Dict[str, str]:
    """Map each invalid field (snake_case name) to a human-readable message."""
    errors = {}
    for field, label in REQUIRED_FIELDS:
        if not getattr(info, field).strip():
            errors[field] = f"{label} is required"

    if "email" not in errors and not EMAIL_PATTERN.match(info.email.strip()):
        errors["email"] = INVALID_EMAIL
    if "phone" not in errors and not PHONE_PATTERN.match(info.phone.strip()):
        errors["phone"] = INVALID_PHONE
    return errors


def to_address_db(info: Address) -> AddressDB:
    values = {field: sanitize_input(getattr(info, field)) for field, _ in REQUIRED_FIELDS}
    return AddressDB(delivery_date=info.delivery_date, **values)
