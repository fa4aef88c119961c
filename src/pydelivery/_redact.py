"""Log-safe views of entity records.

DEBUG logs may show whole snapshots, but contact details are masked and
admin credential hashes never appear: emails keep the first letter and
the domain, phone numbers keep their last two digits.
"""

from __future__ import annotations

from typing import Any

from pydelivery.models._base import ContactInfo
from pydelivery.models.entities import Admin, Customer, Driver, Entity


def mask_email(email: str) -> str:
    if not email:
        return ""
    local, _, domain = email.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


def mask_phone(phone: str) -> str:
    if not phone:
        return ""
    digits = "".join(ch for ch in phone if ch.isdigit())
    return f"***{digits[-2:]}"


def redact_contact(contact: ContactInfo) -> dict[str, str]:
    return {
        "email": mask_email(contact.email),
        "phone": mask_phone(contact.phone),
        "address": contact.address,
    }


def redact_entity(entity: Entity | None) -> dict[str, Any] | None:
    """JSON-ready dump of *entity* with personal data masked, or ``None`` for a tombstone."""
    if entity is None:
        return None
    payload = entity.model_dump(mode="json", exclude={"credential_hash"})
    if isinstance(entity, (Driver, Customer, Admin)):
        payload["contact"] = redact_contact(entity.contact)
    return payload
