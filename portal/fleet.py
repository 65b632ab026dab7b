"""Vehicles: availability, status, pricing and document release."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from postgrest.exceptions import APIError
from supabase import Client

from portal.accounts import resolve_partner_id
from portal.booking_states import RELEASABLE_DOCUMENTS
from portal.errors import NotAuthorized, NotFound, PersistenceError, ValidationError, require
from portal.history import record_partner_action
from portal.records import first_present, iso, utcnow, weekly_rate
from store import models
from store.database import best_effort_update, error_message, fetch_one

logger = logging.getLogger(__name__)

RATE_FIELDS = ("daily_rate", "weekly_rate", "monthly_rate", "price_per_day", "price_per_week")


def available_vehicles(supabase: Client, partner_id: Optional[str] = None) -> List[Dict[str, Any]]:
    query = supabase.table(models.VEHICLES).select("*").eq("status", models.VEHICLE_AVAILABLE)
    if partner_id:
        query = query.eq("partner_id", partner_id)
    rows = query.execute().data or []
    for row in rows:
        row["effective_weekly_rate"] = weekly_rate(row)
    return rows


def set_vehicle_status(
    supabase: Client,
    vehicle_id: Optional[str],
    status: str,
    booking_id: Optional[str] = None,
    **extra: Any,
) -> bool:
    """Secondary write: booking actions keep going if this fails."""
    if not vehicle_id:
        return False
    values = {
        "status": status,
        "current_booking_id": booking_id,
        "updated_at": iso(utcnow()),
    }
    values.update(extra)
    return best_effort_update(supabase, models.VEHICLES, values, {"id": vehicle_id})


def free_vehicle(supabase: Client, vehicle_id: Optional[str], **extra: Any) -> bool:
    return set_vehicle_status(supabase, vehicle_id, models.VEHICLE_AVAILABLE, None, **extra)


def _rate_values(rates: Dict[str, Any]) -> Dict[str, float]:
    unknown = set(rates) - set(RATE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown pricing fields: {', '.join(sorted(unknown))}")
    values = {}
    for field, value in rates.items():
        if value is None:
            continue
        try:
            amount = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be a number")
        if amount < 0:
            raise ValidationError(f"{field} cannot be negative")
        values[field] = amount
    if not values:
        raise ValidationError("No pricing fields supplied")
    return values


def update_vehicle_pricing(supabase: Client, vehicle_id: str, partner_id: str, **rates: Any) -> Dict[str, Any]:
    require(vehicle_id=vehicle_id, partner_id=partner_id)
    values = _rate_values(rates)

    vehicle = fetch_one(supabase, models.VEHICLES, vehicle_id)
    if not vehicle:
        raise NotFound("Vehicle not found")
    if vehicle.get("partner_id") != partner_id:
        raise NotAuthorized("Unauthorized - not your vehicle")

    values["updated_at"] = iso(utcnow())
    try:
        res = supabase.table(models.VEHICLES).update(values).eq("id", vehicle_id).execute()
    except APIError as e:
        raise PersistenceError(f"Failed to update vehicle pricing: {error_message(e)}")

    updated = res.data[0] if res.data else {**vehicle, **values}
    return {"vehicle": updated, "weekly_rate": weekly_rate(updated)}


def bulk_update_pricing(supabase: Client, user_id: str, vehicle_ids: Sequence[str], **rates: Any) -> Dict[str, Any]:
    require(user_id=user_id)
    if not vehicle_ids or isinstance(vehicle_ids, str):
        raise ValidationError("Vehicle IDs array is required")
    values = _rate_values(rates)

    partner_id = resolve_partner_id(supabase, user_id)
    if not partner_id:
        raise NotFound("Partner not found")

    values["updated_at"] = iso(utcnow())
    try:
        res = (
            supabase.table(models.VEHICLES)
            .update(values)
            .in_("id", list(vehicle_ids))
            .eq("partner_id", partner_id)
            .execute()
        )
    except APIError as e:
        raise PersistenceError(f"Failed to update vehicle pricing: {error_message(e)}")

    vehicles = res.data or []
    logger.info("partner %s repriced %d vehicles", partner_id, len(vehicles))
    record_partner_action(supabase, partner_id, "pricing_updated",
                          f"Updated pricing on {len(vehicles)} vehicles",
                          details={"vehicle_ids": [v.get("id") for v in vehicles], **values})
    return {
        "vehicles": vehicles,
        "message": f"{len(vehicles)} vehicles pricing updated successfully",
    }


def approved_vehicle_documents(vehicle: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Approved documents with a URL, in the shape released to partners on a booking."""
    documents = (vehicle or {}).get("documents") or {}
    approved = {}
    for doc_type in RELEASABLE_DOCUMENTS:
        doc = documents.get(doc_type)
        if doc and doc.get("status") == "approved" and doc.get("url"):
            approved[doc_type] = {
                "type": doc_type,
                "url": doc["url"],
                "expiry_date": first_present(doc.get("expiry_date"), doc.get("expiryDate")),
                "uploaded_at": first_present(doc.get("uploaded_at"), doc.get("uploadedAt")),
                "status": doc["status"],
            }
    return approved
