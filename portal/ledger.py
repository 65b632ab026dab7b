"""Ledger rows in `transactions`: partner income, driver expense, refunds."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from supabase import Client

from portal.records import booking_weekly_rate, clean, display_name, iso, utcnow
from store import models
from store.database import best_effort_insert

ZERO_FEES = {"platform": 0, "payment": 0, "insurance": 0, "maintenance": 0}


def detail_snapshots(
    booking: Optional[Dict[str, Any]],
    driver: Optional[Dict[str, Any]] = None,
    partner: Optional[Dict[str, Any]] = None,
    vehicle_reg: Optional[str] = None,
) -> Dict[str, Optional[Dict[str, Any]]]:
    booking = booking or {}
    car = booking.get("car_info") or booking.get("car") or {}
    booking_driver = booking.get("driver") or {}
    booking_partner = booking.get("partner") or {}
    return {
        "booking_details": clean({
            "start_date": booking.get("start_date"),
            "end_date": booking.get("end_date"),
            "total_amount": booking.get("total_amount"),
            "weekly_rate": booking_weekly_rate(booking) or None,
        }),
        "driver_details": clean({
            "name": display_name(driver or booking_driver, default=booking.get("driver_email") or "Unknown"),
            "email": (driver or {}).get("email") or booking.get("driver_email") or booking_driver.get("email"),
        }),
        "partner_details": clean({
            "name": display_name(partner or booking_partner, default=booking.get("partner_email") or "Unknown"),
            "email": (partner or {}).get("email") or booking.get("partner_email") or booking_partner.get("email"),
            "company_name": (partner or {}).get("company_name") or booking_partner.get("company_name"),
        }),
        "vehicle_details": clean({
            "registration": vehicle_reg or booking.get("car_plate") or car.get("registration_number"),
            "make": car.get("make"),
            "model": car.get("model"),
        }),
    }


def record_transaction(
    supabase: Client,
    booking_id: Optional[str],
    partner_id: Optional[str],
    driver_id: Optional[str],
    type: str,
    category: str,
    amount: float,
    description: str,
    source: str,
    payment_method: str = "bank_transfer",
    status: str = "completed",
    instruction_id: Optional[str] = None,
    reference: Optional[Dict[str, Any]] = None,
    snapshots: Optional[Dict[str, Any]] = None,
) -> bool:
    now = iso(utcnow())
    row: Dict[str, Any] = {
        "booking_id": booking_id,
        "partner_id": partner_id,
        "driver_id": driver_id,
        "type": type,
        "category": category,
        "amount": amount,
        "net_amount": amount,
        "description": description,
        "date": now,
        "status": status,
        "fees": dict(ZERO_FEES),
        "source": source,
        "payment_method": payment_method,
        "created_at": now,
        "updated_at": now,
    }
    if instruction_id:
        row["instruction_id"] = instruction_id
    if reference:
        row.update(reference)
    if snapshots:
        row.update(snapshots)
    return best_effort_insert(supabase, models.TRANSACTIONS, row)


def record_income_and_expense(
    supabase: Client,
    booking_id: Optional[str],
    partner_id: Optional[str],
    driver_id: Optional[str],
    amount: float,
    income_category: str,
    expense_category: str,
    income_description: str,
    expense_description: str,
    **kwargs: Any,
) -> List[bool]:
    """The usual pair: partner income and the matching driver expense."""
    return [
        record_transaction(supabase, booking_id, partner_id, driver_id, "income",
                           income_category, amount, income_description, source="driver", **kwargs),
        record_transaction(supabase, booking_id, partner_id, driver_id, "expense",
                           expense_category, amount, expense_description, source="partner", **kwargs),
    ]
