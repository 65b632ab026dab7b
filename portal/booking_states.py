"""Booking status vocabulary and the statuses each action may start from."""
from __future__ import annotations

from typing import Any, Dict

from portal.errors import ValidationError

PENDING_PAYMENT = "pending_payment"
PENDING_PARTNER_APPROVAL = "pending_partner_approval"
PARTNER_ACCEPTED = "partner_accepted"
PENDING_INSURANCE_UPLOAD = "pending_insurance_upload"
CONFIRMED = "confirmed"
ACTIVE = "active"
IN_PROGRESS = "in_progress"
OVERDUE = "overdue"
COMPLETED = "completed"
CANCELLED = "cancelled"
PARTNER_REJECTED = "partner_rejected"
AUTO_REJECTED = "auto_rejected"
PAYMENT_EXPIRED = "payment_expired"
INSURANCE_EXPIRED = "insurance_expired"

TERMINAL = frozenset({
    COMPLETED, CANCELLED, PARTNER_REJECTED, AUTO_REJECTED,
    PAYMENT_EXPIRED, INSURANCE_EXPIRED,
})

ALL_STATUSES = (
    PENDING_PAYMENT, PENDING_PARTNER_APPROVAL, PARTNER_ACCEPTED,
    PENDING_INSURANCE_UPLOAD, CONFIRMED, ACTIVE, IN_PROGRESS, OVERDUE,
) + tuple(sorted(TERMINAL))

ALLOWED_FROM = {
    "partner_response": frozenset({PENDING_PARTNER_APPROVAL}),
    "start_active": frozenset({PARTNER_ACCEPTED, PENDING_INSURANCE_UPLOAD, CONFIRMED}),
    "request_return": frozenset({PARTNER_ACCEPTED, ACTIVE, IN_PROGRESS}),
    "change_vehicle": frozenset({ACTIVE, PARTNER_ACCEPTED, CONFIRMED, PENDING_INSURANCE_UPLOAD}),
    "release_vehicle": frozenset({ACTIVE, IN_PROGRESS, PARTNER_ACCEPTED, PENDING_INSURANCE_UPLOAD}),
    "finish": frozenset({ACTIVE, IN_PROGRESS, PARTNER_ACCEPTED}),
    "cancel": frozenset(s for s in ALL_STATUSES if s not in TERMINAL),
}

# Statuses check_deadlines looks at
DEADLINE_STATUSES = (PENDING_PARTNER_APPROVAL, PENDING_PAYMENT, PENDING_INSURANCE_UPLOAD, ACTIVE)

PAID_PAYMENT_STATUSES = frozenset({"completed", "paid", "confirmed"})
ACTIVATION_PAYMENT_STATUSES = PAID_PAYMENT_STATUSES | {"active"}

# Vehicle documents released to a booking once payment is confirmed
RELEASABLE_DOCUMENTS = ("mot", "private_hire_license", "insurance", "logbook", "roadTax")


def can(action: str, status: str) -> bool:
    return status in ALLOWED_FROM[action]


def ensure_transition(booking: Dict[str, Any], action: str) -> None:
    status = booking.get("status")
    if not can(action, status):
        raise ValidationError(
            f"Cannot {action.replace('_', ' ')} booking with status: {status}"
        )


def is_terminal(status: str) -> bool:
    return status in TERMINAL


def insurance_satisfied(booking: Dict[str, Any]) -> bool:
    return bool(
        not booking.get("insurance_required")
        or booking.get("driver_insurance_valid")
        or booking.get("partner_provides_insurance")
    )


def documents_satisfied(booking: Dict[str, Any]) -> bool:
    return bool(
        not booking.get("requires_document_verification")
        or booking.get("all_documents_approved")
    )


def payment_confirmed(booking: Dict[str, Any]) -> bool:
    return booking.get("payment_status") in PAID_PAYMENT_STATUSES
