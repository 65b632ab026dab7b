"""Field fallbacks shared by every screen and action.

Rows written over time use different names for the same thing
(`weekly_rate` / `price_per_week`, `car` / `car_info` / `vehicle`), so
reads always go through these helpers.
"""
from __future__ import annotations

import math
import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from store.models import RECEIVED_STATUSES


def first_present(*values: Any, default: Any = None) -> Any:
    """First value that is not None or empty string."""
    for v in values:
        if v is not None and v != "":
            return v
    return default


def _nested(row: Optional[Dict[str, Any]], key: str) -> Dict[str, Any]:
    value = (row or {}).get(key)
    return value if isinstance(value, dict) else {}


# ----------------- MONEY ------------------------

def to_amount(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def round_money(value: float) -> float:
    return round(value * 100) / 100


def weekly_rate(row: Optional[Dict[str, Any]]) -> float:
    """weekly_rate, else price_per_week, else daily_rate * 7, else 0."""
    row = row or {}
    rate = first_present(row.get("weekly_rate"), row.get("price_per_week"))
    if rate is None and row.get("daily_rate"):
        rate = to_amount(row["daily_rate"]) * 7
    return to_amount(rate)


def booking_weekly_rate(booking: Optional[Dict[str, Any]]) -> float:
    booking = booking or {}
    return to_amount(first_present(
        booking.get("weekly_rate"),
        booking.get("price_per_week"),
        _nested(booking, "car_info").get("weekly_rate"),
        _nested(booking, "car").get("price_per_week"),
        default=0,
    ))


# ----------------- NAMES & IDS ------------------------

def display_name(user: Optional[Dict[str, Any]], default: str = "Unknown") -> str:
    user = user or {}
    return first_present(
        user.get("company_name"),
        user.get("company"),
        user.get("full_name"),
        user.get("name"),
        user.get("email"),
        default=default,
    )


def vehicle_reg(booking: Optional[Dict[str, Any]]) -> str:
    booking = booking or {}
    vehicle = _nested(booking, "vehicle")
    car_info = _nested(booking, "car_info")
    car = _nested(booking, "car")
    return first_present(
        vehicle.get("license_plate"),
        car_info.get("registration_plate"),
        car_info.get("license_plate"),
        vehicle.get("registration_number"),
        car.get("registration_number"),
        booking.get("vehicle_reg"),
        booking.get("car_plate"),
        car.get("license_plate"),
        default="UNKNOWN",
    )


def booking_vehicle_id(booking: Optional[Dict[str, Any]]) -> Optional[str]:
    booking = booking or {}
    return first_present(
        booking.get("current_vehicle_id"),
        booking.get("car_id"),
        booking.get("vehicle_id"),
    )


def car_label(booking: Optional[Dict[str, Any]]) -> str:
    car = _nested(booking, "car") or _nested(booking, "car_info")
    label = f"{car.get('make') or ''} {car.get('model') or ''}".strip()
    return label or (booking or {}).get("car_name") or "vehicle"


def vehicle_image(vehicle: Dict[str, Any]) -> str:
    urls = vehicle.get("image_urls") or []
    return vehicle.get("image_url") or (urls[0] if urls else "")


def car_snapshot(vehicle: Dict[str, Any]) -> Dict[str, Any]:
    """Denormalised copy of a vehicle stored on the booking row."""
    return {
        "id": vehicle.get("id"),
        "make": vehicle.get("make") or "",
        "model": vehicle.get("model") or "",
        "year": vehicle.get("year") or "",
        "registration_number": vehicle.get("registration_number") or "",
        "color": vehicle.get("color") or "",
        "fuel_type": vehicle.get("fuel_type") or "",
        "transmission": vehicle.get("transmission") or "",
        "seats": vehicle.get("seats") or "",
        "mileage": vehicle.get("mileage") or "",
        "image": vehicle_image(vehicle),
        "price_per_week": weekly_rate(vehicle),
    }


def generate_id(prefix: str) -> str:
    """`<prefix>_<epoch ms>_<9 base36 chars>`"""
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choice(alphabet) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def clean(obj: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Drop None values; an empty result becomes None."""
    if not obj:
        return None
    cleaned = {k: v for k, v in obj.items() if v is not None}
    return cleaned or None


# ----------------- DATES ------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
    """ISO string / date / datetime to an aware UTC datetime."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    elif hasattr(value, "isoformat") and not isinstance(value, str):
        dt = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip().replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def iso(dt: datetime) -> str:
    return dt.isoformat()


def ceil_days(start: datetime, end: datetime) -> int:
    return math.ceil((end - start).total_seconds() / 86400)


def sum_received(instructions: Iterable[Dict[str, Any]]) -> float:
    return sum(
        to_amount(i.get("amount"))
        for i in instructions
        if i.get("status") in RECEIVED_STATUSES
    )
