"""Payment instructions: weekly rent, deposits, refunds, and the arithmetic behind them.

Drivers pay partners directly by bank transfer or direct debit. An
instruction row tracks each obligation; the driver marks it sent, the
partner confirms receipt, and a weekly instruction then rolls forward a
week. Every confirmed movement of money leaves a pair of ledger rows.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from postgrest.exceptions import APIError
from supabase import Client

from portal.accounts import partner_profile
from portal.errors import NotAuthorized, NotFound, PersistenceError, ValidationError, require
from portal.history import record_history
from portal.ledger import detail_snapshots, record_income_and_expense, record_transaction
from portal.notifications import notify, notify_financial_staff
from portal.records import (
    booking_weekly_rate,
    iso,
    parse_ts,
    round_money,
    sum_received,
    to_amount,
    utcnow,
    vehicle_reg,
)
from store import models
from store.database import best_effort_update, error_message, fetch_all, fetch_one

logger = logging.getLogger(__name__)

INSTRUCTION_METHODS = ("bank_transfer", "direct_debit")
REFUND_REJECTABLE = (
    models.INSTRUCTION_PENDING,
    models.INSTRUCTION_REFUND_PENDING,
    models.INSTRUCTION_SENT,
)


# ----------------- ARITHMETIC ------------------------

def paid_total(instructions: Iterable[Dict[str, Any]]) -> float:
    """Money actually received across a booking's instructions."""
    return sum_received(instructions)


def prorated_refund(paid: float, weekly_rate: float, days_used: int) -> float:
    """Refund the paid-for days the driver will not use.

    Paid days are whole days the payment covers (rounded up); with no
    rate there is nothing to prorate against.
    """
    daily = to_amount(weekly_rate) / 7
    if daily <= 0:
        return 0.0
    paid_days = math.ceil(to_amount(paid) / daily)
    return round(max(0, paid_days - days_used) * daily, 2)


# ----------------- LOOKUPS ------------------------

def get_instruction(supabase: Client, instruction_id: str) -> Dict[str, Any]:
    instruction = fetch_one(supabase, models.PAYMENT_INSTRUCTIONS, instruction_id)
    if not instruction:
        raise NotFound("Instruction not found")
    return instruction


def _update_instruction(supabase: Client, instruction_id: str, values: Dict[str, Any]) -> None:
    values = {**values, "updated_at": iso(utcnow())}
    try:
        supabase.table(models.PAYMENT_INSTRUCTIONS).update(values).eq("id", instruction_id).execute()
    except APIError as e:
        logger.error("instruction %s update failed: %s", instruction_id, error_message(e))
        raise PersistenceError("Failed to update instruction status")


def _snapshots(supabase: Client, instruction: Dict[str, Any]) -> Dict[str, Any]:
    booking = fetch_one(supabase, models.BOOKINGS, instruction.get("booking_id"))
    driver = fetch_one(supabase, models.USERS, instruction.get("driver_id"))
    partner = fetch_one(supabase, models.USERS, instruction.get("partner_id"))
    return detail_snapshots(booking, driver, partner, instruction.get("vehicle_reg"))


def list_instructions(
    supabase: Client,
    partner_id: Optional[str] = None,
    driver_id: Optional[str] = None,
    status: Optional[str] = None,
) -> List[Dict[str, Any]]:
    query = supabase.table(models.PAYMENT_INSTRUCTIONS).select("*")
    if partner_id:
        query = query.eq("partner_id", partner_id)
    if driver_id:
        query = query.eq("driver_id", driver_id)
    if status:
        query = query.eq("status", status)
    return query.order("created_at", desc=True).execute().data or []


def is_overdue(instruction: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    due = parse_ts(instruction.get("next_due_date"))
    return bool(due and due < (now or utcnow()))


def instruction_stats(supabase: Client, partner_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    stats = {
        "pending_count": 0, "pending_amount": 0.0,
        "sent_count": 0, "sent_amount": 0.0,
        "overdue_count": 0, "overdue_amount": 0.0,
        "received_count": 0, "received_amount": 0.0,
        "total_count": 0, "total_amount": 0.0,
    }
    received = set(models.RECEIVED_STATUSES) | {models.INSTRUCTION_DEPOSIT_RECEIVED}
    for row in fetch_all(supabase, models.PAYMENT_INSTRUCTIONS, partner_id=partner_id):
        amount = to_amount(row.get("amount"))
        status = row.get("status")
        stats["total_count"] += 1
        stats["total_amount"] += amount
        if status in (models.INSTRUCTION_PENDING, models.INSTRUCTION_AUTO):
            bucket = "overdue" if is_overdue(row, now) else "pending"
        elif status == models.INSTRUCTION_SENT:
            bucket = "sent"
        elif status in received:
            bucket = "received"
        else:
            continue
        stats[f"{bucket}_count"] += 1
        stats[f"{bucket}_amount"] += amount
    return {k: round_money(v) if isinstance(v, float) else v for k, v in stats.items()}


# ----------------- ACTIONS ------------------------

def create_weekly_instruction(
    supabase: Client,
    booking_id: str,
    method: str,
    currency: str = "£",
) -> Dict[str, Any]:
    require(booking_id=booking_id, method=method)
    if method not in INSTRUCTION_METHODS:
        raise ValidationError("Invalid method")

    booking = fetch_one(supabase, models.BOOKINGS, booking_id)
    if not booking:
        raise NotFound("Booking not found")

    partner = partner_profile(supabase, booking.get("partner_id")) or {}
    bank = partner.get("bank_details") or {}

    amount = booking_weekly_rate(booking)
    reg = vehicle_reg(booking)
    now = iso(utcnow())
    row = {
        "booking_id": booking_id,
        "driver_id": booking.get("driver_id"),
        "partner_id": booking.get("partner_id"),
        "vehicle_reg": reg,
        "amount": amount,
        "type": "weekly_rent",
        "method": method,
        "frequency": "weekly",
        "status": models.INSTRUCTION_AUTO if method == "direct_debit" else models.INSTRUCTION_PENDING,
        "next_due_date": now,
        "bank_details": bank,
        "created_at": now,
        "updated_at": now,
    }
    try:
        res = supabase.table(models.PAYMENT_INSTRUCTIONS).insert(row).execute()
    except APIError as e:
        raise PersistenceError(f"Failed to create payment instruction: {error_message(e)}")
    instruction = res.data[0] if res.data else row

    best_effort_update(supabase, models.BOOKINGS, {
        "payment_method": method,
        "payment_instruction_id": instruction.get("id"),
        "payment_status": "active",
        "updated_at": now,
    }, {"id": booking_id})

    record_history(
        supabase, booking_id, "weekly_payment_instruction_created",
        booking.get("partner_id"), "partner",
        f"Weekly {method.replace('_', ' ')} instruction created for {reg}",
        {"instruction_id": instruction.get("id"), "amount": amount, "method": method},
    )

    if method == "bank_transfer":
        message = (
            f"Please transfer {currency}{amount:.2f} each week using reference {reg} "
            f"to account {bank.get('account_number', 'N/A')} (sort {bank.get('sort_code', 'N/A')})."
        )
    else:
        message = f"A weekly direct debit of {currency}{amount:.2f} has been set up for {reg}."
    notify(supabase, booking.get("driver_id"), "driver", "payment_instruction",
           "Weekly Payment Set Up", message,
           {"instruction_id": instruction.get("id"), "booking_id": booking_id}, priority="high")

    return {"instruction": instruction}


def mark_sent(
    supabase: Client,
    instruction_id: str,
    driver_id: str,
    now: Optional[datetime] = None,
    acceptance_hours: float = 2.0,
) -> Dict[str, Any]:
    """Driver says the transfer has gone out.

    The first payment on a `pending_payment` booking may be sent early and
    hands the booking to the partner with an acceptance deadline.
    """
    require(instruction_id=instruction_id, driver_id=driver_id)
    now = now or utcnow()
    instruction = get_instruction(supabase, instruction_id)

    if instruction.get("driver_id") != driver_id:
        raise NotAuthorized("Unauthorized")
    if instruction.get("method") != "bank_transfer":
        raise ValidationError("Only manual transfers can be marked sent")
    status = instruction.get("status")
    if status == models.INSTRUCTION_SENT:
        raise ValidationError("Already marked sent")
    if status != models.INSTRUCTION_PENDING:
        raise ValidationError(f"Cannot mark a {status} payment as sent")

    booking = fetch_one(supabase, models.BOOKINGS, instruction.get("booking_id"))
    first_payment = bool(booking) and booking.get("status") == "pending_payment"
    if not first_payment and not is_overdue(instruction, now):
        raise ValidationError("Payment is not due yet")

    _update_instruction(supabase, instruction_id, {
        "status": models.INSTRUCTION_SENT,
        "last_sent_at": iso(now),
    })

    amount = to_amount(instruction.get("amount"))
    reg = instruction.get("vehicle_reg")
    booking_id = instruction.get("booking_id")
    partner_id = instruction.get("partner_id")
    if booking:
        record_transaction(
            supabase, booking_id, partner_id, driver_id,
            "payment_sent", "Booking Revenue", amount,
            f"Payment marked as sent for {instruction.get('type')}",
            source="driver", status="pending_confirmation", instruction_id=instruction_id,
        )

    data = {"instruction_id": instruction_id, "booking_id": booking_id,
            "amount": amount, "vehicle_reg": reg}
    if first_payment:
        deadline = now + timedelta(hours=acceptance_hours)
        best_effort_update(supabase, models.BOOKINGS, {
            "status": "pending_partner_approval",
            "partner_acceptance_deadline": iso(deadline),
            "updated_at": iso(now),
        }, {"id": booking_id})
        record_history(supabase, booking_id, "first_payment_sent", driver_id, "driver",
                       f"Driver marked first payment of £{amount:g} as sent.",
                       {"amount": amount, "instruction_id": instruction_id})
        message = f"Payment sent. Please approve or reject booking for {reg}."
        notify(supabase, partner_id, "partner", "new_booking", "New Booking Request",
               message, data, priority="high", sender_id=driver_id)
        notify_financial_staff(supabase, partner_id, "new_booking", "New Booking Request", message, data)
    else:
        notify(supabase, partner_id, "partner", "payment_sent", "Payment Marked as Sent",
               f"Driver has marked payment of £{amount:g} as sent for {reg}",
               data, sender_id=driver_id)

    return {
        "message": "Payment marked as sent successfully",
        "instruction": {"id": instruction_id, "status": models.INSTRUCTION_SENT, "last_sent_at": iso(now)},
        "booking_status": "pending_partner_approval" if first_payment else (booking or {}).get("status"),
    }


def _sent_deposit_for(supabase: Client, booking_id: str) -> Dict[str, Any]:
    rows = fetch_all(supabase, models.PAYMENT_INSTRUCTIONS, booking_id=booking_id,
                     type="deposit", status=models.INSTRUCTION_SENT)
    if not rows:
        raise NotFound("No pending deposit instruction found for this booking")
    return rows[0]


def confirm_received(
    supabase: Client,
    instruction_id: Optional[str] = None,
    partner_id: Optional[str] = None,
    booking_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if not instruction_id and not booking_id:
        raise ValidationError("Missing instructionId or bookingId")
    now = now or utcnow()

    if instruction_id:
        instruction = get_instruction(supabase, instruction_id)
    else:
        instruction = _sent_deposit_for(supabase, booking_id)
        instruction_id = instruction["id"]

    if partner_id and instruction.get("partner_id") != partner_id:
        raise NotAuthorized("Unauthorized")
    if instruction.get("method") != "bank_transfer":
        raise ValidationError("Only manual transfers require confirmation")
    if instruction.get("status") != models.INSTRUCTION_SENT:
        raise ValidationError("Payment not marked sent yet")

    next_due = None
    if instruction.get("type") == "deposit" or instruction.get("frequency") == "one_off":
        _update_instruction(supabase, instruction_id, {"status": models.INSTRUCTION_DEPOSIT_RECEIVED})
    else:
        # weekly rent rolls forward from the due date, not from today
        next_due = (parse_ts(instruction.get("next_due_date")) or now) + timedelta(days=7)
        _update_instruction(supabase, instruction_id, {
            "status": models.INSTRUCTION_PENDING,
            "next_due_date": iso(next_due),
        })

    amount = to_amount(instruction.get("amount"))
    reg = instruction.get("vehicle_reg")
    inst_booking_id = instruction.get("booking_id")
    inst_partner_id = instruction.get("partner_id")
    driver_id = instruction.get("driver_id")

    record_income_and_expense(
        supabase, inst_booking_id, inst_partner_id, driver_id, amount,
        "Booking Revenue", "Vehicle Rental",
        f"Weekly payment received for {reg}",
        f"Weekly rental payment for {reg}",
        instruction_id=instruction_id,
        snapshots=_snapshots(supabase, instruction),
    )

    booking = fetch_one(supabase, models.BOOKINGS, inst_booking_id) or {}
    best_effort_update(supabase, models.BOOKINGS, {
        "last_payment_date": iso(now),
        "total_paid": round_money(to_amount(booking.get("total_paid")) + amount),
        "payment_status": "active",
        "updated_at": iso(now),
    }, {"id": inst_booking_id})

    record_history(
        supabase, inst_booking_id, "weekly_payment_received", inst_partner_id, "partner",
        f"Weekly payment of £{amount:g} received for {reg}",
        {"amount": amount, "instruction_id": instruction_id, "received_at": iso(now)},
    )

    data = {"instruction_id": instruction_id, "booking_id": inst_booking_id, "amount": amount}
    notify(supabase, driver_id, "driver", "payment_received", "Payment Received",
           f"Partner has confirmed receipt of your weekly payment (£{amount:g}) for {reg}.", data)
    notify(supabase, inst_partner_id, "partner", "payment_received", "Payment Confirmed",
           f"You confirmed a payment of £{amount:g} for {reg}.", data, priority="low")
    notify_financial_staff(supabase, inst_partner_id, "payment_received", "Payment Received",
                           f"Payment of £{amount:g} received for {reg}.", data)

    return {
        "message": "Payment confirmed",
        "instruction_id": instruction_id,
        "next_due": iso(next_due) if next_due else None,
    }


def refund_deposit(supabase: Client, instruction_id: str, refund_amount: Any, partner_id: str) -> Dict[str, Any]:
    require(instruction_id=instruction_id, partner_id=partner_id)
    if isinstance(refund_amount, bool) or not isinstance(refund_amount, (int, float)) or refund_amount <= 0:
        raise ValidationError("Invalid refundAmount")

    instruction = get_instruction(supabase, instruction_id)
    if instruction.get("partner_id") != partner_id:
        raise NotAuthorized("Unauthorized")
    if instruction.get("type") != "deposit":
        raise ValidationError("Only deposit instructions are refundable")
    if instruction.get("status") == models.INSTRUCTION_DEPOSIT_REFUNDED:
        raise ValidationError("Deposit already refunded")

    existing_refund = (
        supabase.table(models.TRANSACTIONS).select("id")
        .eq("instruction_id", instruction_id)
        .eq("category", "Deposit Refund")
        .eq("type", "expense")
        .limit(1).execute().data
    )
    deposit_income = (
        supabase.table(models.TRANSACTIONS).select("id")
        .eq("instruction_id", instruction_id)
        .eq("type", "income")
        .limit(1).execute().data
    )
    now = iso(utcnow())
    if deposit_income:
        best_effort_update(supabase, models.TRANSACTIONS,
                           {"status": "refunded", "updated_at": now},
                           {"id": deposit_income[0]["id"]})

    _update_instruction(supabase, instruction_id, {
        "status": models.INSTRUCTION_DEPOSIT_REFUNDED,
        "refunded_amount": refund_amount,
        "refunded_at": now,
    })

    reg = instruction.get("vehicle_reg")
    booking_id = instruction.get("booking_id")
    driver_id = instruction.get("driver_id")
    if not existing_refund:
        snapshots = _snapshots(supabase, instruction)
        method = instruction.get("method") or "bank_transfer"
        record_transaction(supabase, booking_id, partner_id, driver_id, "expense", "Deposit Refund",
                           refund_amount, f"Deposit refund to driver for {reg}", source="partner",
                           payment_method=method, instruction_id=instruction_id, snapshots=snapshots)
        record_transaction(supabase, booking_id, partner_id, driver_id, "income", "Deposit Refund",
                           refund_amount, f"Deposit refund received for {reg}", source="partner",
                           payment_method=method, instruction_id=instruction_id, snapshots=snapshots)
    else:
        logger.info("refund rows already exist for instruction %s", instruction_id)

    best_effort_update(supabase, models.BOOKINGS,
                       {"deposit_refunded": refund_amount, "updated_at": now}, {"id": booking_id})
    record_history(supabase, booking_id, "deposit_refunded", partner_id, "partner",
                   f"Deposit refund of £{refund_amount:g} issued",
                   {"amount": refund_amount, "instruction_id": instruction_id, "refunded_at": now})
    notify(supabase, driver_id, "driver", "deposit_refunded", "Deposit Refunded",
           f"Your deposit (£{refund_amount:g}) has been refunded by the partner.",
           {"instruction_id": instruction_id, "booking_id": booking_id, "amount": refund_amount})

    return {"message": "Deposit refunded", "refund_amount": refund_amount}


def reject_refund(supabase: Client, instruction_id: str, partner_id: str, reason: str) -> Dict[str, Any]:
    require(instruction_id=instruction_id, partner_id=partner_id, reason=reason)
    instruction = get_instruction(supabase, instruction_id)
    if instruction.get("partner_id") != partner_id:
        raise NotAuthorized("Unauthorized")
    if instruction.get("status") not in REFUND_REJECTABLE:
        raise ValidationError(f"Cannot reject refund with status: {instruction.get('status')}")

    now = iso(utcnow())
    _update_instruction(supabase, instruction_id, {
        "status": models.INSTRUCTION_REFUND_REJECTED,
        "refund_rejection_reason": reason,
        "refund_rejected_at": now,
    })

    booking_id = instruction.get("booking_id")
    amount = to_amount(instruction.get("amount"))
    notify(supabase, instruction.get("driver_id"), "driver", "refund_rejected", "Refund Rejected",
           f"Your refund request of £{amount:g} was rejected: {reason}",
           {"instruction_id": instruction_id, "booking_id": booking_id, "reason": reason},
           priority="high")
    record_history(supabase, booking_id, "refund_rejected", partner_id, "partner",
                   f"Refund rejected: {reason}", {"instruction_id": instruction_id, "amount": amount})
    best_effort_update(supabase, models.BOOKINGS, {"updated_at": now}, {"id": booking_id})

    return {"message": "Refund rejected"}
