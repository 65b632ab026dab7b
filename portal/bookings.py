"""Booking lifecycle actions.

Each action loads the booking, checks who is acting and whether the
booking's status allows the action (see booking_states), performs one
primary write and then a handful of secondary writes: vehicle status,
payment instructions, ledger rows, history and notifications. Secondary
writes are best effort; a failure there is logged and the action still
succeeds.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from postgrest.exceptions import APIError
from supabase import Client

from portal import booking_states as states
from portal.accounts import get_user, partner_profile
from portal.config import AppConfig, BookingPolicy
from portal.errors import NotAuthorized, NotFound, PersistenceError, ValidationError, require
from portal.fleet import approved_vehicle_documents, free_vehicle, set_vehicle_status
from portal.history import booking_timeline as _timeline
from portal.history import record_history, record_partner_action
from portal.ledger import detail_snapshots, record_transaction
from portal.notifications import notify, notify_admins
from portal.payments import paid_total, prorated_refund
from portal.records import (
    booking_vehicle_id,
    booking_weekly_rate,
    car_label,
    car_snapshot,
    ceil_days,
    display_name,
    generate_id,
    iso,
    parse_ts,
    round_money,
    to_amount,
    utcnow,
    vehicle_image,
    vehicle_reg,
)
from portal.records import weekly_rate as vehicle_rate
from portal.tools import email_tool
from store import models
from store.database import (
    best_effort_insert,
    best_effort_update,
    best_effort_upsert,
    error_message,
    fetch_all,
    fetch_one,
)

logger = logging.getLogger(__name__)

ISSUE_TYPES = ("mechanical", "damage", "cleanliness", "documentation", "other")
SEVERITIES = ("low", "medium", "high", "critical")
CANCEL_TYPES = ("full", "prorated", "none")
ADJUSTMENT_TYPES = ("prorated", "immediate", "next_cycle")
RETURN_ACTIONS = ("request", "approve", "reject")


# ----------------- HELPERS ------------------------

def get_booking(supabase: Client, booking_id: str) -> Dict[str, Any]:
    booking = fetch_one(supabase, models.BOOKINGS, booking_id)
    if not booking:
        raise NotFound("Booking not found")
    return booking


def check_actor(booking: Dict[str, Any], actor_id: str, actor_type: str) -> None:
    if actor_type not in models.ACTOR_TYPES:
        raise ValidationError(f"Invalid actor type: {actor_type}")
    if actor_type == "driver" and booking.get("driver_id") != actor_id:
        raise NotAuthorized("Unauthorized - not your booking")
    if actor_type == "partner" and booking.get("partner_id") != actor_id:
        raise NotAuthorized("Unauthorized - not your booking")


def _update_booking(supabase: Client, booking: Dict[str, Any], values: Dict[str, Any]) -> Dict[str, Any]:
    """The primary write of every action. Failure aborts the action."""
    try:
        res = supabase.table(models.BOOKINGS).update(values).eq("id", booking["id"]).execute()
    except APIError as e:
        logger.error("booking %s update failed: %s", booking["id"], error_message(e))
        raise PersistenceError("Failed to update booking")
    return res.data[0] if res.data else {**booking, **values}


def _received(supabase: Client, booking: Dict[str, Any]) -> float:
    instructions = fetch_all(supabase, models.PAYMENT_INSTRUCTIONS, booking_id=booking["id"])
    return paid_total(instructions) or to_amount(booking.get("total_paid"))


def _parse_date(value: Any, name: str) -> datetime:
    parsed = parse_ts(value)
    if parsed is None:
        raise ValidationError(f"Invalid {name}")
    return parsed


def _counterparty(booking: Dict[str, Any], actor_type: str):
    if actor_type == "driver":
        return booking.get("partner_id"), "partner"
    return booking.get("driver_id"), "driver"


# ----------------- CREATE ------------------------

def create_booking(
    supabase: Client,
    driver_id: str,
    partner_id: str,
    vehicle_id: str,
    start_date: Any,
    end_date: Any,
    weekly_rate: Optional[float] = None,
    deposit_amount: float = 0,
    insurance_required: bool = False,
    partner_provides_insurance: bool = False,
    requires_document_verification: bool = False,
    payment_method: str = "bank_transfer",
    now: Optional[datetime] = None,
    cfg: Optional[AppConfig] = None,
) -> Dict[str, Any]:
    require(driver_id=driver_id, partner_id=partner_id, vehicle_id=vehicle_id,
            start_date=start_date, end_date=end_date)
    now = now or utcnow()
    start = _parse_date(start_date, "start date")
    end = _parse_date(end_date, "end date")
    if start < now:
        raise ValidationError("Start date cannot be in the past")
    if end <= start:
        raise ValidationError("End date must be after start date")

    vehicle = fetch_one(supabase, models.VEHICLES, vehicle_id)
    if not vehicle:
        raise NotFound("Vehicle not found")
    if vehicle.get("status") != models.VEHICLE_AVAILABLE:
        raise ValidationError("Vehicle is not available")

    driver = get_user(supabase, driver_id)
    if not driver:
        raise NotFound("Driver not found")
    partner = partner_profile(supabase, partner_id)
    if not partner:
        raise NotFound("Partner not found")

    rate = to_amount(weekly_rate) if weekly_rate is not None else vehicle_rate(vehicle)
    if rate <= 0:
        raise ValidationError("Weekly rate must be greater than zero")
    deposit = to_amount(deposit_amount)

    total_weeks = math.ceil(ceil_days(start, end) / 7)
    total_amount = round_money(total_weeks * rate + deposit)
    booking_id = generate_id("booking")
    stamp = iso(now)
    car = car_snapshot(vehicle)
    name = f"{vehicle.get('make') or ''} {vehicle.get('model') or ''}".strip()

    row = {
        "id": booking_id,
        "driver_id": driver_id,
        "partner_id": partner_id,
        "vehicle_id": vehicle_id,
        "current_vehicle_id": vehicle_id,
        "start_date": iso(start),
        "end_date": iso(end),
        "weekly_rate": rate,
        "total_weeks": total_weeks,
        "total_amount": total_amount,
        "deposit_amount": deposit,
        "insurance_required": insurance_required,
        "partner_provides_insurance": partner_provides_insurance,
        "requires_document_verification": requires_document_verification,
        "payment_method": payment_method,
        "status": states.PENDING_PAYMENT,
        "payment_status": "pending",
        "car": car,
        "car_name": name,
        "car_image": vehicle_image(vehicle),
        "car_plate": vehicle.get("registration_number"),
        "driver": {
            "id": driver_id,
            "full_name": driver.get("full_name") or driver.get("name") or driver.get("email"),
            "email": driver.get("email"),
            "phone": driver.get("phone"),
        },
        "partner": {
            "id": partner_id,
            "full_name": partner.get("full_name") or partner.get("name") or partner.get("email"),
            "email": partner.get("email"),
            "company_name": partner.get("company_name") or partner.get("company"),
        },
        "created_at": stamp,
        "updated_at": stamp,
    }
    try:
        res = supabase.table(models.BOOKINGS).insert(row).execute()
    except APIError as e:
        logger.error("booking insert failed: %s", error_message(e))
        raise PersistenceError("Failed to create booking")
    booking = res.data[0] if res.data else row

    set_vehicle_status(supabase, vehicle_id, models.VEHICLE_BOOKED, booking_id)

    reg = vehicle.get("registration_number")
    instruction = {
        "booking_id": booking_id,
        "driver_id": driver_id,
        "partner_id": partner_id,
        "vehicle_reg": reg,
        "method": payment_method,
        "status": models.INSTRUCTION_PENDING,
        "created_at": stamp,
        "updated_at": stamp,
    }
    if deposit > 0:
        best_effort_insert(supabase, models.PAYMENT_INSTRUCTIONS, {
            **instruction, "amount": deposit, "type": "deposit",
            "frequency": "one_off", "next_due_date": stamp,
        })
    best_effort_insert(supabase, models.PAYMENT_INSTRUCTIONS, {
        **instruction, "amount": rate, "type": "weekly_rent",
        "frequency": "weekly", "next_due_date": iso(start),
    })

    record_history(supabase, booking_id, "booking_created", driver_id, "driver",
                   f"Booking created for {name}",
                   {"vehicle_id": vehicle_id, "total_amount": total_amount, "weekly_rate": rate})

    driver_name = display_name(driver, default="a driver")
    data = {"booking_id": booking_id, "vehicle_id": vehicle_id}
    notify(supabase, partner_id, "partner", "new_booking", "New Booking Request",
           f"New booking request from {driver_name} for {name}", data, priority="high",
           sender_id=driver_id)
    notify(supabase, driver_id, "driver", "booking_created", "Booking Created",
           f"Your booking for {name} has been created. Please complete payment to proceed.", data)

    if cfg and cfg.email and driver.get("email"):
        email_tool(cfg, driver["email"], f"Booking {booking_id} created",
                   f"Your booking for {name} ({reg}) from {start.date()} to {end.date()} "
                   f"has been created. Total: {cfg.policy.currency_symbol}{total_amount:.2f}.")

    logger.info("booking %s created for driver %s", booking_id, driver_id)
    return {"booking": booking, "booking_id": booking_id, "total_amount": total_amount,
            "total_weeks": total_weeks, "status": states.PENDING_PAYMENT}


# ----------------- PARTNER RESPONSE ------------------------

def partner_response(
    supabase: Client,
    booking_id: str,
    partner_id: str,
    action: str,
    rejection_reason: Optional[str] = None,
    override_insurance: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    require(booking_id=booking_id, partner_id=partner_id, action=action)
    if action not in ("accept", "reject"):
        raise ValidationError("Invalid action. Must be 'accept' or 'reject'")
    now = now or utcnow()

    booking = get_booking(supabase, booking_id)
    if booking.get("partner_id") != partner_id:
        raise NotAuthorized("Unauthorized - not your booking")
    states.ensure_transition(booking, "partner_response")

    created = parse_ts(booking.get("created_at")) or now
    response_ms = int((now - created).total_seconds() * 1000)
    stamp = iso(now)
    values: Dict[str, Any] = {
        "partner_response_time": response_ms,
        "partner_responded_at": stamp,
        "updated_at": stamp,
    }
    vehicle_id = booking_vehicle_id(booking)
    driver_id = booking.get("driver_id")
    label = car_label(booking)

    if action == "accept":
        if override_insurance:
            values["driver_insurance_valid"] = True
            values["driver_insurance_status"] = "approved"
        effective = {**booking, **values}
        waiting_for_insurance = not states.insurance_satisfied(effective)
        status = states.PENDING_INSURANCE_UPLOAD if waiting_for_insurance else states.PARTNER_ACCEPTED
        values["partner_accepted_at"] = stamp

        if (not waiting_for_insurance and states.payment_confirmed(effective)
                and states.documents_satisfied(effective)):
            status = states.ACTIVE
            values.update({
                "activated_at": stamp,
                "activated_by": partner_id,
                "activated_by_type": "partner",
                "activated_trigger": "auto_on_acceptance",
            })
        if states.payment_confirmed(effective):
            vehicle = fetch_one(supabase, models.VEHICLES, vehicle_id)
            documents = approved_vehicle_documents(vehicle)
            if documents:
                values["vehicle_documents"] = documents
                values["documents_released_at"] = stamp
        values["status"] = status
    else:
        status = states.PARTNER_REJECTED
        values.update({
            "status": status,
            "rejection_reason": rejection_reason or "No reason provided",
            "partner_rejected_at": stamp,
        })

    updated = _update_booking(supabase, booking, values)

    if action == "accept":
        best_effort_upsert(supabase, models.PARTNER_DRIVERS, {
            "partner_id": partner_id,
            "driver_id": driver_id,
            "status": "active",
            "updated_at": stamp,
        })
        driver_snapshot = booking.get("driver") or {}
        best_effort_upsert(supabase, models.DRIVERS, {
            "id": driver_id,
            "name": driver_snapshot.get("full_name"),
            "email": driver_snapshot.get("email"),
            "status": "active",
            "updated_at": stamp,
        })
        if status == states.ACTIVE:
            set_vehicle_status(supabase, vehicle_id, models.VEHICLE_BOOKED, booking_id,
                               active_booking_started=stamp)
    else:
        free_vehicle(supabase, vehicle_id)
        _refund_on_rejection(supabase, booking, stamp)

    record_history(
        supabase, booking_id, f"partner_{'accepted' if action == 'accept' else 'rejected'}",
        partner_id, "partner",
        f"Partner {'accepted' if action == 'accept' else 'rejected'} the booking",
        {"status": status, "response_time_ms": response_ms,
         "rejection_reason": values.get("rejection_reason")},
    )
    record_partner_action(supabase, partner_id, f"booking_{action}ed",
                          f"{action.title()}ed booking for {label}", booking_id=booking_id,
                          details={"response_time_ms": response_ms})

    data = {"booking_id": booking_id, "status": status}
    if action == "accept":
        notify(supabase, driver_id, "driver", "booking_accepted", "Booking Accepted",
               f"Your booking for {label} has been accepted by the partner.", data,
               priority="high", sender_id=partner_id)
    else:
        notify(supabase, driver_id, "driver", "booking_rejected", "Booking Rejected",
               f"Your booking for {label} was rejected: {values['rejection_reason']}", data,
               sender_id=partner_id)
    notify_admins(supabase, f"booking_{action}ed_admin", f"Booking {action.title()}ed",
                  f"Partner {action}ed booking {booking_id}.", data)

    best_effort_update(supabase, models.SCHEDULED_TASKS,
                       {"status": "completed", "completed_at": stamp},
                       {"booking_id": booking_id, "type": "check_partner_acceptance",
                        "status": "pending"})

    return {"status": status, "response_time": round(response_ms / 60000), "booking": updated}


def _refund_on_rejection(supabase: Client, booking: Dict[str, Any], stamp: str) -> None:
    base = {
        "booking_id": booking["id"],
        "driver_id": booking.get("driver_id"),
        "partner_id": booking.get("partner_id"),
        "vehicle_reg": vehicle_reg(booking),
        "type": "refund",
        "frequency": "one_off",
        "status": models.INSTRUCTION_PENDING,
        "created_at": stamp,
        "updated_at": stamp,
    }
    instructions = fetch_all(supabase, models.PAYMENT_INSTRUCTIONS, booking_id=booking["id"])
    deposit_paid = round_money(sum(
        to_amount(i.get("amount")) for i in instructions
        if i.get("type") == "deposit" and i.get("status") == models.INSTRUCTION_DEPOSIT_RECEIVED
    ))
    if deposit_paid > 0:
        best_effort_insert(supabase, models.PAYMENT_INSTRUCTIONS, {
            **base, "amount": deposit_paid, "method": "deposit",
            "reason": "Deposit refund after partner rejection",
        })

    # total_paid counts confirmed deposits too
    rent = [i for i in instructions if i.get("type") not in ("deposit", "refund")]
    received = paid_total(rent) or max(0.0, to_amount(booking.get("total_paid")) - deposit_paid)
    if received > 0:
        best_effort_insert(supabase, models.PAYMENT_INSTRUCTIONS, {
            **base, "amount": round_money(received), "method": "weekly",
            "reason": "Weekly payments refund after partner rejection",
        })


# ----------------- ACTIVATION ------------------------

def activation_readiness(supabase: Client, booking_id: str) -> Dict[str, Any]:
    booking = get_booking(supabase, booking_id)
    checks = {
        "valid_status": states.can("start_active", booking.get("status")),
        "payment_confirmed": booking.get("payment_status") in states.ACTIVATION_PAYMENT_STATUSES,
        "insurance_valid": states.insurance_satisfied(booking),
        "documents_approved": states.documents_satisfied(booking),
    }
    return {
        "can_activate": all(checks.values()),
        "current_status": booking.get("status"),
        "requirements": [name for name, ok in checks.items() if not ok],
        "checks": checks,
    }


def start_active(
    supabase: Client,
    booking_id: str,
    partner_id: str,
    triggered_by: str = "partner",
    bypass_requirements: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    require(booking_id=booking_id, partner_id=partner_id)
    now = now or utcnow()
    booking = get_booking(supabase, booking_id)
    if booking.get("partner_id") != partner_id:
        raise NotAuthorized("Unauthorized - not your booking")
    if booking.get("status") == states.ACTIVE:
        return {"status": states.ACTIVE, "already_active": True, "booking": booking}
    states.ensure_transition(booking, "start_active")

    if not bypass_requirements:
        unmet = []
        if booking.get("payment_status") not in states.ACTIVATION_PAYMENT_STATUSES:
            unmet.append("payment confirmation")
        if not states.insurance_satisfied(booking):
            unmet.append("valid insurance")
        if not states.documents_satisfied(booking):
            unmet.append("document approval")
        if unmet:
            raise ValidationError(f"Booking requirements not met: {', '.join(unmet)}",
                                  details={"unmet": unmet})

    stamp = iso(now)
    updated = _update_booking(supabase, booking, {
        "status": states.ACTIVE,
        "activated_at": stamp,
        "activated_by": partner_id,
        "activated_by_type": "partner",
        "activated_trigger": triggered_by,
        "updated_at": stamp,
    })

    set_vehicle_status(supabase, booking_vehicle_id(booking), models.VEHICLE_BOOKED, booking_id,
                       active_booking_started=stamp)
    record_history(supabase, booking_id, "booking_activated", partner_id, "partner",
                   "Booking activated", {"trigger": triggered_by, "bypassed": bypass_requirements})

    label = car_label(booking)
    data = {"booking_id": booking_id}
    notify(supabase, booking.get("driver_id"), "driver", "booking_activated", "Booking Active",
           f"Your rental of {label} is now active.", data, priority="high", sender_id=partner_id)
    notify_admins(supabase, "booking_activated_admin", "Booking Activated",
                  f"Booking {booking_id} was activated by the partner.", data)

    logger.info("booking %s activated (%s)", booking_id, triggered_by)
    return {"status": states.ACTIVE, "already_active": False, "booking": updated}


# ----------------- RETURNS ------------------------

def request_return(
    supabase: Client,
    booking_id: str,
    requested_by: str,
    requested_by_type: str,
    action: str = "request",
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    require(booking_id=booking_id, requested_by=requested_by, requested_by_type=requested_by_type)
    if action not in RETURN_ACTIONS:
        raise ValidationError("Invalid action. Must be 'request', 'approve' or 'reject'")
    now = now or utcnow()
    booking = get_booking(supabase, booking_id)
    check_actor(booking, requested_by, requested_by_type)
    stamp = iso(now)
    data = {"booking_id": booking_id}
    label = car_label(booking)

    if action == "request":
        states.ensure_transition(booking, "request_return")
        if booking.get("return_requested"):
            raise ValidationError("Return already requested")
        updated = _update_booking(supabase, booking, {
            "return_requested": True,
            "return_requested_at": stamp,
            "return_requested_by": requested_by,
            "return_requested_by_type": requested_by_type,
            "return_reason": reason,
            "updated_at": stamp,
        })
        record_history(supabase, booking_id, "return_requested", requested_by, requested_by_type,
                       f"Return requested{': ' + reason if reason else ''}", {"reason": reason})
        other_id, other_type = _counterparty(booking, requested_by_type)
        notify(supabase, other_id, other_type, "return_requested", "Vehicle Return Requested",
               f"A return has been requested for {label}.", data, priority="high",
               sender_id=requested_by)
        notify_admins(supabase, "return_requested_admin", "Vehicle Return Requested",
                      f"Return requested for booking {booking_id}.", data)
        return {"status": booking.get("status"), "return_requested": True, "booking": updated}

    if not booking.get("return_requested"):
        raise ValidationError("No return has been requested")
    if booking.get("return_approved"):
        raise ValidationError("Return already approved")

    if action == "approve":
        updated = _update_booking(supabase, booking, {
            "status": states.COMPLETED,
            "return_approved": True,
            "return_approved_at": stamp,
            "return_approved_by": requested_by,
            "return_approved_by_type": requested_by_type,
            "completed_at": stamp,
            "updated_at": stamp,
        })
        free_vehicle(supabase, booking_vehicle_id(booking))
        record_history(supabase, booking_id, "return_approved", requested_by, requested_by_type,
                       "Vehicle return approved; booking completed")
        notify(supabase, booking.get("driver_id"), "driver", "return_approved", "Return Approved",
               f"The return of {label} has been approved.", data, sender_id=requested_by)
        return {"status": states.COMPLETED, "return_requested": True, "booking": updated}

    updated = _update_booking(supabase, booking, {
        "return_requested": False,
        "return_rejection_reason": reason,
        "return_rejected_at": stamp,
        "return_rejected_by": requested_by,
        "updated_at": stamp,
    })
    record_history(supabase, booking_id, "return_rejected", requested_by, requested_by_type,
                   f"Return request rejected{': ' + reason if reason else ''}", {"reason": reason})
    notify(supabase, booking.get("driver_id"), "driver", "return_rejected", "Return Rejected",
           f"The return request for {label} was rejected.", data, sender_id=requested_by)
    return {"status": booking.get("status"), "return_requested": False, "booking": updated}


# ----------------- VEHICLE CHANGES ------------------------

def vehicle_change_adjustment(
    old_rate: float,
    new_rate: float,
    paid: float,
    adjustment_type: str,
    days_used: Optional[int] = None,
) -> Dict[str, float]:
    """Price difference owed (positive) or refunded (negative) for a vehicle swap.

    `days_used` is given for an active booking; paid-for days already used
    are then not re-priced.
    """
    rate_difference = new_rate - old_rate
    daily = old_rate / 7 if old_rate > 0 else 0
    paid_days = math.ceil(paid / daily) * 7 if daily > 0 else 0
    remaining_days = paid_days
    if days_used is not None:
        remaining_days = max(0, paid_days - max(0, days_used))

    if adjustment_type == "prorated":
        amount = rate_difference / 7 * remaining_days
    elif adjustment_type == "immediate":
        amount = rate_difference
    else:
        amount = 0
    return {
        "rate_difference": rate_difference,
        "remaining_days": remaining_days,
        "adjustment": round(amount, 2),
    }


def change_vehicle(
    supabase: Client,
    booking_id: str,
    partner_id: str,
    new_vehicle_id: str,
    reason: str,
    adjustment_type: str = "prorated",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    require(booking_id=booking_id, partner_id=partner_id, new_vehicle_id=new_vehicle_id, reason=reason)
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationError(f"Invalid adjustment type: {adjustment_type}")
    now = now or utcnow()
    booking = get_booking(supabase, booking_id)
    if booking.get("partner_id") != partner_id:
        raise NotAuthorized("Unauthorized - not your booking")
    states.ensure_transition(booking, "change_vehicle")

    old_vehicle_id = booking_vehicle_id(booking)
    if new_vehicle_id == old_vehicle_id:
        raise ValidationError("Booking already uses this vehicle")
    new_vehicle = fetch_one(supabase, models.VEHICLES, new_vehicle_id)
    if not new_vehicle:
        raise NotFound("New vehicle not found")
    if new_vehicle.get("status") != models.VEHICLE_AVAILABLE:
        raise ValidationError("New vehicle is not available")

    old_vehicle = fetch_one(supabase, models.VEHICLES, old_vehicle_id)
    old_rate = to_amount(booking.get("weekly_rate")) or vehicle_rate(old_vehicle)
    new_rate = vehicle_rate(new_vehicle)
    paid = _received(supabase, booking)

    days_used = None
    if booking.get("status") == states.ACTIVE:
        start = parse_ts(booking.get("start_date")) or now
        days_used = max(0, ceil_days(start, now))
    calc = vehicle_change_adjustment(old_rate, new_rate, paid, adjustment_type, days_used)
    adjustment = calc["adjustment"]
    stamp = iso(now)

    if adjustment != 0:
        reference = generate_id("inv" if adjustment > 0 else "ref")
        best_effort_insert(supabase, models.PAYMENTS, {
            "booking_id": booking_id,
            "driver_id": booking.get("driver_id"),
            "partner_id": partner_id,
            "amount": adjustment,
            "currency": "GBP",
            "status": "pending",
            "type": "vehicle_change_adjustment",
            "reference": reference,
            "created_at": stamp,
        })
        record_transaction(
            supabase, booking_id, partner_id, booking.get("driver_id"),
            "income" if adjustment > 0 else "expense", "Vehicle Change Adjustment",
            abs(adjustment),
            f"Vehicle change {adjustment_type} adjustment ({calc['remaining_days']} days)",
            source="partner", status="pending", reference={"reference": reference},
            snapshots=detail_snapshots(booking, vehicle_reg=new_vehicle.get("registration_number")),
        )

    history_entry = {
        "from_vehicle_id": old_vehicle_id,
        "to_vehicle_id": new_vehicle_id,
        "changed_at": stamp,
        "changed_by": partner_id,
        "reason": reason,
        "adjustment_type": adjustment_type,
        "adjustment": adjustment,
    }
    name = f"{new_vehicle.get('make') or ''} {new_vehicle.get('model') or ''}".strip()
    updated = _update_booking(supabase, booking, {
        "current_vehicle_id": new_vehicle_id,
        "car_id": new_vehicle_id,
        "car_name": name,
        "car_image": vehicle_image(new_vehicle),
        "car_plate": new_vehicle.get("registration_number"),
        "car": car_snapshot(new_vehicle),
        "vehicle_history": list(booking.get("vehicle_history") or []) + [history_entry],
        "updated_at": stamp,
    })

    free_vehicle(supabase, old_vehicle_id)
    set_vehicle_status(supabase, new_vehicle_id, models.VEHICLE_BOOKED, booking_id)
    record_history(supabase, booking_id, "vehicle_assigned", partner_id, "partner",
                   f"Vehicle changed to {name}: {reason}", history_entry)

    data = {"booking_id": booking_id, "vehicle_id": new_vehicle_id, "adjustment": adjustment}
    notify(supabase, booking.get("driver_id"), "driver", "vehicle_assigned", "Vehicle Changed",
           f"Your booking now uses {name} ({new_vehicle.get('registration_number')}).", data,
           priority="high", sender_id=partner_id)
    notify_admins(supabase, "vehicle_assigned_admin", "Vehicle Changed",
                  f"Booking {booking_id} moved to vehicle {new_vehicle_id}.", data)

    return {**calc, "booking": updated, "old_rate": old_rate, "new_rate": new_rate}


def release_vehicle(
    supabase: Client,
    booking_id: str,
    released_by: str,
    released_by_type: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    require(booking_id=booking_id, released_by=released_by, released_by_type=released_by_type)
    now = now or utcnow()
    booking = get_booking(supabase, booking_id)
    check_actor(booking, released_by, released_by_type)
    states.ensure_transition(booking, "release_vehicle")

    vehicle_id = booking_vehicle_id(booking)
    if not vehicle_id:
        raise ValidationError("No vehicle assigned to this booking")

    stamp = iso(now)
    updated = _update_booking(supabase, booking, {
        "current_vehicle_id": None,
        "car_id": None,
        "vehicle_released": True,
        "vehicle_released_at": stamp,
        "vehicle_released_by": released_by,
        "vehicle_released_by_type": released_by_type,
        "vehicle_release_reason": reason,
        "updated_at": stamp,
    })
    free_vehicle(supabase, vehicle_id)
    record_history(supabase, booking_id, "vehicle_released", released_by, released_by_type,
                   f"Vehicle released{': ' + reason if reason else ''}",
                   {"vehicle_id": vehicle_id, "reason": reason})
    other_id, other_type = _counterparty(booking, released_by_type)
    notify(supabase, other_id, other_type, "vehicle_released", "Vehicle Released",
           f"The vehicle on booking {booking_id} has been released.",
           {"booking_id": booking_id, "vehicle_id": vehicle_id}, sender_id=released_by)
    return {"vehicle_id": vehicle_id, "booking": updated}


# ----------------- ISSUES ------------------------

def report_issue(
    supabase: Client,
    booking_id: str,
    issue_type: str,
    description: str,
    reported_by: str,
    reported_by_type: str,
    severity: str = "medium",
    images: Sequence[str] = (),
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    require(booking_id=booking_id, issue_type=issue_type, description=description,
            reported_by=reported_by, reported_by_type=reported_by_type)
    if issue_type not in ISSUE_TYPES:
        raise ValidationError(f"Invalid issue type. Must be one of: {', '.join(ISSUE_TYPES)}")
    if severity not in SEVERITIES:
        raise ValidationError(f"Invalid severity. Must be one of: {', '.join(SEVERITIES)}")
    now = now or utcnow()
    booking = get_booking(supabase, booking_id)
    check_actor(booking, reported_by, reported_by_type)

    stamp = iso(now)
    issue = {
        "id": generate_id("issue"),
        "type": issue_type,
        "description": description,
        "severity": severity,
        "status": "open",
        "reported_by": reported_by,
        "reported_by_type": reported_by_type,
        "reported_at": stamp,
        "images": list(images),
        "updates": [],
    }
    _update_booking(supabase, booking, {
        "issues": list(booking.get("issues") or []) + [issue],
        "updated_at": stamp,
    })
    record_history(supabase, booking_id, "issue_reported", reported_by, reported_by_type,
                   f"{severity.title()} {issue_type} issue reported",
                   {"issue_id": issue["id"], "severity": severity})

    data = {"booking_id": booking_id, "issue_id": issue["id"], "severity": severity}
    other_id, other_type = _counterparty(booking, reported_by_type)
    notify(supabase, other_id, other_type, "issue_reported", "Issue Reported",
           f"A {issue_type} issue was reported on booking {booking_id}: {description}", data,
           sender_id=reported_by)
    notify_admins(supabase, "issue_reported_admin", "Issue Reported",
                  f"{severity.title()} {issue_type} issue on booking {booking_id}.", data,
                  priority="high" if severity in ("high", "critical") else "medium")
    return {"issue": issue}


# ----------------- CANCEL / FINISH ------------------------

def cancel_booking(
    supabase: Client,
    booking_id: str,
    reason: str,
    cancel_type: str,
    insurance_refund_amount: float = 0,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    require(booking_id=booking_id, reason=reason, cancel_type=cancel_type)
    if cancel_type not in CANCEL_TYPES:
        raise ValidationError(f"Invalid cancel type. Must be one of: {', '.join(CANCEL_TYPES)}")
    now = now or utcnow()
    booking = get_booking(supabase, booking_id)
    states.ensure_transition(booking, "cancel")

    start = parse_ts(booking.get("start_date")) or now
    end = parse_ts(booking.get("end_date")) or start
    total_days = ceil_days(start, end)
    days_used = max(0, ceil_days(start, now))
    remaining_days = max(0, total_days - days_used)

    paid = _received(supabase, booking)
    rate = booking_weekly_rate(booking)
    if cancel_type == "full":
        refund = round_money(paid)
    elif cancel_type == "prorated":
        refund = prorated_refund(paid, rate, days_used)
    else:
        refund = 0.0
    insurance_refund = to_amount(insurance_refund_amount)

    stamp = iso(now)
    reference = None
    driver_id = booking.get("driver_id")
    partner_id = booking.get("partner_id")
    if booking.get("payment_status") == "paid" and refund > 0:
        reference = f"ref_{int(now.timestamp() * 1000)}"
        snapshots = detail_snapshots(booking, vehicle_reg=vehicle_reg(booking))
        kwargs = dict(payment_method=booking.get("payment_method") or "bank_transfer",
                      reference={"reference": reference}, snapshots=snapshots)
        record_transaction(supabase, booking_id, partner_id, driver_id, "income", "Vehicle Rental",
                           -refund, f"Refund for cancelled booking {booking_id}", source="refund",
                           **kwargs)
        record_transaction(supabase, booking_id, partner_id, driver_id, "expense", "Vehicle Rental",
                           -refund, f"Refund received for cancelled booking {booking_id}",
                           source="refund", **kwargs)
        if insurance_refund > 0:
            record_transaction(supabase, booking_id, partner_id, driver_id, "income", "Insurance",
                               -insurance_refund, f"Insurance refund for booking {booking_id}",
                               source="refund", **kwargs)

    values = {
        "status": states.CANCELLED,
        "cancelled_at": stamp,
        "cancelled_by": driver_id,
        "cancelled_by_type": "driver",
        "cancel_reason": reason,
        "cancel_type": cancel_type,
        "refund_amount": refund,
        "insurance_refund": insurance_refund,
        "refund_reference": reference,
        "days_used": days_used,
        "remaining_days": remaining_days,
        "updated_at": stamp,
    }
    if refund > 0:
        values["payment_status"] = "refunded"
    updated = _update_booking(supabase, booking, values)

    record_history(supabase, booking_id, "booking_cancelled", driver_id, "driver",
                   f"Booking cancelled ({cancel_type}): {reason}",
                   {"refund_amount": refund, "days_used": days_used, "remaining_days": remaining_days})
    free_vehicle(supabase, booking_vehicle_id(booking))

    data = {"booking_id": booking_id, "refund_amount": refund}
    notify(supabase, partner_id, "partner", "booking_cancelled", "Booking Cancelled",
           f"Booking {booking_id} for {car_label(booking)} was cancelled by the driver: {reason}",
           data, priority="high", sender_id=driver_id)
    notify_admins(supabase, "booking_cancelled_admin", "Booking Cancelled",
                  f"Booking {booking_id} cancelled ({cancel_type}), refund £{refund:.2f}.", data)

    return {"status": states.CANCELLED, "refund_amount": refund, "days_used": days_used,
            "remaining_days": remaining_days, "refund_reference": reference, "booking": updated}


def finish_booking(
    supabase: Client,
    booking_id: str,
    finished_by: str,
    finished_by_type: str,
    final_notes: Optional[str] = None,
    final_mileage: Optional[float] = None,
    final_fuel_level: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    require(booking_id=booking_id, finished_by=finished_by, finished_by_type=finished_by_type)
    now = now or utcnow()
    booking = get_booking(supabase, booking_id)
    check_actor(booking, finished_by, finished_by_type)
    states.ensure_transition(booking, "finish")

    start = parse_ts(booking.get("start_date")) or now
    total_days = max(0, ceil_days(start, now))
    total_weeks = math.ceil(total_days / 7)
    final_amount = round_money(total_weeks * booking_weekly_rate(booking))
    paid = _received(supabase, booking)
    outstanding = round_money(max(0, final_amount - paid))

    stamp = iso(now)
    updated = _update_booking(supabase, booking, {
        "status": states.COMPLETED,
        "finished_at": stamp,
        "finished_by": finished_by,
        "finished_by_type": finished_by_type,
        "completed_at": stamp,
        "final_notes": final_notes,
        "final_mileage": final_mileage,
        "final_fuel_level": final_fuel_level,
        "total_days": total_days,
        "total_weeks": total_weeks,
        "final_amount": final_amount,
        "outstanding_amount": outstanding,
        "payment_status": "outstanding" if outstanding > 0 else "completed",
        "updated_at": stamp,
    })

    free_vehicle(supabase, booking_vehicle_id(booking))
    record_history(supabase, booking_id, "booking_finished", finished_by, finished_by_type,
                   f"Booking finished after {total_days} days",
                   {"final_amount": final_amount, "outstanding": outstanding})

    driver_id = booking.get("driver_id")
    partner_id = booking.get("partner_id")
    if outstanding > 0:
        best_effort_insert(supabase, models.PAYMENT_INSTRUCTIONS, {
            "booking_id": booking_id,
            "driver_id": driver_id,
            "partner_id": partner_id,
            "vehicle_reg": vehicle_reg(booking),
            "amount": outstanding,
            "type": "final_payment",
            "method": booking.get("payment_method") or "bank_transfer",
            "frequency": "one_off",
            "status": models.INSTRUCTION_PENDING,
            "next_due_date": stamp,
            "created_at": stamp,
            "updated_at": stamp,
        })
    record_transaction(supabase, booking_id, partner_id, driver_id, "income", "Booking Revenue",
                       final_amount, f"Final amount for booking {booking_id}",
                       source="booking_completion",
                       status="pending" if outstanding > 0 else "completed",
                       snapshots=detail_snapshots(booking, vehicle_reg=vehicle_reg(booking)))

    data = {"booking_id": booking_id, "final_amount": final_amount, "outstanding": outstanding}
    message = f"Your rental of {car_label(booking)} has finished."
    if outstanding > 0:
        message += f" An outstanding balance of £{outstanding:.2f} is due."
    notify(supabase, driver_id, "driver", "booking_finished", "Booking Finished", message, data,
           priority="high" if outstanding > 0 else "medium", sender_id=finished_by)

    return {"status": states.COMPLETED, "total_days": total_days, "total_weeks": total_weeks,
            "final_amount": final_amount, "outstanding_amount": outstanding, "booking": updated}


# ----------------- DEADLINES ------------------------

def _expire(
    supabase: Client,
    booking: Dict[str, Any],
    status: str,
    reason: str,
    stamp: str,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    values = {"status": status, "updated_at": stamp, **(extra or {})}
    _update_booking(supabase, booking, values)
    record_history(supabase, booking["id"], status, "system", "system", reason, {"reason": reason})


def check_deadlines(
    supabase: Client,
    booking_id: str,
    now: Optional[datetime] = None,
    policy: Optional[BookingPolicy] = None,
) -> Dict[str, Any]:
    require(booking_id=booking_id)
    now = now or utcnow()
    policy = policy or BookingPolicy()
    booking = get_booking(supabase, booking_id)
    status = booking.get("status")
    stamp = iso(now)
    driver_id = booking.get("driver_id")
    partner_id = booking.get("partner_id")
    data = {"booking_id": booking_id}
    results: Dict[str, Any] = {
        "booking_id": booking_id,
        "checks_performed": [],
        "actions_taken": [],
        "notifications_sent": [],
    }

    def sent(ok: bool, label: str) -> None:
        if ok:
            results["notifications_sent"].append(label)

    acceptance = parse_ts(booking.get("partner_acceptance_deadline"))
    if status == states.PENDING_PARTNER_APPROVAL and acceptance:
        results["checks_performed"].append("partner_acceptance_deadline")
        if now > acceptance:
            reason = "Partner acceptance deadline exceeded"
            _expire(supabase, booking, states.AUTO_REJECTED, reason, stamp,
                    {"auto_rejected_at": stamp, "auto_rejection_reason": reason})
            free_vehicle(supabase, booking_vehicle_id(booking))
            results["actions_taken"].append("auto_rejected")
            sent(notify(supabase, driver_id, "driver", "booking_auto_rejected", "Booking Auto-Rejected",
                        "Your booking has been automatically rejected because the partner did not "
                        "respond within the required time.", {**data, "reason": reason},
                        priority="high"), "driver_auto_rejected")
            sent(notify_admins(supabase, "booking_auto_rejected_admin", "Booking Auto-Rejected",
                               f"Booking {booking_id} was automatically rejected due to partner "
                               "acceptance deadline being exceeded.", {**data, "reason": reason}),
                 "admin_auto_rejected")
        else:
            hours_left = (acceptance - now).total_seconds() / 3600
            if hours_left <= policy.partner_reminder_hours:
                sent(notify(supabase, partner_id, "partner", "partner_acceptance_reminder",
                            "URGENT: Booking Response Required",
                            f"You have {round(hours_left)} hours to respond to booking {booking_id}. "
                            "Please accept or reject the booking.",
                            {**data, "hours_remaining": round(hours_left)}, priority="high"),
                     "partner_reminder")

    payment_deadline = parse_ts(booking.get("payment_deadline"))
    if status == states.PENDING_PAYMENT and payment_deadline:
        results["checks_performed"].append("payment_deadline")
        if now > payment_deadline:
            _expire(supabase, booking, states.PAYMENT_EXPIRED, "Payment deadline exceeded", stamp,
                    {"payment_expired_at": stamp})
            free_vehicle(supabase, booking_vehicle_id(booking))
            results["actions_taken"].append("payment_expired")
            sent(notify(supabase, driver_id, "driver", "payment_expired", "Payment Deadline Expired",
                        "Your payment deadline has expired. Please contact support to resolve "
                        "this issue.", data, priority="high"), "driver_payment_expired")

    insurance_deadline = parse_ts(booking.get("insurance_upload_deadline"))
    if status == states.PENDING_INSURANCE_UPLOAD and insurance_deadline:
        results["checks_performed"].append("insurance_upload_deadline")
        if now > insurance_deadline:
            _expire(supabase, booking, states.INSURANCE_EXPIRED, "Insurance upload deadline exceeded",
                    stamp, {"insurance_expired_at": stamp})
            free_vehicle(supabase, booking_vehicle_id(booking))
            results["actions_taken"].append("insurance_expired")
            sent(notify(supabase, driver_id, "driver", "insurance_expired",
                        "Insurance Upload Deadline Expired",
                        "Your insurance upload deadline has expired. Please contact support to "
                        "resolve this issue.", data, priority="high"), "driver_insurance_expired")

    end = parse_ts(booking.get("end_date"))
    if status == states.ACTIVE and end:
        results["checks_performed"].append("end_date")
        if now > end:
            _expire(supabase, booking, states.OVERDUE, "Booking end date exceeded", stamp,
                    {"overdue_at": stamp})
            results["actions_taken"].append("marked_overdue")
            sent(notify(supabase, driver_id, "driver", "booking_overdue", "Booking Overdue",
                        "Your booking has exceeded its end date. Please contact your partner to "
                        "arrange vehicle return.", data, priority="high"), "driver_overdue")
            sent(notify(supabase, partner_id, "partner", "booking_overdue", "Booking Overdue",
                        f"Booking {booking_id} has exceeded its end date. Please contact the "
                        "driver to arrange vehicle return.", data, priority="high"), "partner_overdue")

    if results["actions_taken"]:
        logger.info("deadline check on %s: %s", booking_id, ", ".join(results["actions_taken"]))
    return results


def sweep_deadlines(
    supabase: Client,
    now: Optional[datetime] = None,
    policy: Optional[BookingPolicy] = None,
) -> Dict[str, Any]:
    """Run check_deadlines over every booking that can have a deadline."""
    rows = fetch_all(supabase, models.BOOKINGS, status=list(states.DEADLINE_STATUSES))
    checked, acted, failed = 0, [], []
    for row in rows:
        try:
            result = check_deadlines(supabase, row["id"], now=now, policy=policy)
        except PersistenceError as e:
            logger.warning("deadline check failed for %s: %s", row["id"], e.message)
            failed.append(row["id"])
            continue
        checked += 1
        if result["actions_taken"]:
            acted.append(result)
    return {"checked": checked, "actions": acted, "failed": failed}


# ----------------- LISTING ------------------------

def recent_bookings(supabase: Client, limit: int = 10, partner_id: Optional[str] = None) -> List[Dict[str, Any]]:
    query = supabase.table(models.BOOKINGS).select("*")
    if partner_id:
        query = query.eq("partner_id", partner_id)
    return query.order("created_at", desc=True).limit(limit).execute().data or []


def booking_timeline(supabase: Client, booking_id: str) -> List[Dict[str, Any]]:
    get_booking(supabase, booking_id)
    return _timeline(supabase, booking_id)
