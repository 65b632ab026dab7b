"""Sign-in, registration, partner staff and partner-id resolution."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from postgrest.exceptions import APIError
from email_validator import validate_email as _validate_email, EmailNotValidError
from supabase import AuthError, Client

from portal.errors import NotAuthorized, NotFound, PersistenceError, ValidationError, require
from portal.permissions import STAFF_FLAGS
from portal.records import iso, utcnow
from store import models
from store.database import best_effort_upsert, error_message, fetch_one

logger = logging.getLogger(__name__)


# ----------------- VALIDATORS ------------------------

def validate_email(email: str) -> bool:
    try:
        _validate_email(email, check_deliverability=False)
        return True
    except EmailNotValidError:
        return False


def normalise_phone(phone: str) -> str:
    return re.sub(r"\s", "", str(phone or ""))


def split_name(name: str):
    parts = str(name or "").strip().split(" ")
    first = (parts[0] if parts else "").strip()
    last = " ".join(parts[1:]).strip()
    return first, last


# ----------------- LOOKUPS ------------------------

def get_user(supabase: Client, user_id: str) -> Optional[Dict[str, Any]]:
    return fetch_one(supabase, models.USERS, user_id)


def resolve_partner_id(supabase: Client, user_id: str) -> Optional[str]:
    """Partner staff resolve to their employer; partner owners to their partners row."""
    staff = fetch_one(supabase, models.PARTNER_STAFF, user_id, column="user_id")
    if staff and staff.get("partner_id"):
        return staff["partner_id"]
    partner = fetch_one(supabase, models.PARTNERS, user_id, column="user_id")
    if partner:
        return partner["id"]
    return None


def partner_profile(supabase: Client, partner_id: str) -> Optional[Dict[str, Any]]:
    """Bookings carry the partner's user id; older rows carry partners.id."""
    return get_user(supabase, partner_id) or fetch_one(supabase, models.PARTNERS, partner_id)


def staff_row(supabase: Client, user_id: str) -> Optional[Dict[str, Any]]:
    return fetch_one(supabase, models.PARTNER_STAFF, user_id, column="user_id")


# ----------------- AUTH ------------------------

def sign_in(supabase: Client, email: str, password: str) -> Dict[str, Any]:
    require(email=email, password=password)
    try:
        res = supabase.auth.sign_in_with_password({"email": email, "password": password})
    except AuthError as e:
        raise NotAuthorized(f"Sign-in failed: {e}")

    if not res or not res.user:
        raise NotAuthorized("Sign-in failed: invalid credentials")

    profile = get_user(supabase, res.user.id)
    if not profile:
        raise NotFound("No profile found for this account")
    return profile


def _create_auth_user(supabase: Client, email: str, password: str, role: str, name: str) -> str:
    try:
        created = supabase.auth.admin.create_user({
            "email": email,
            "password": password,
            "email_confirm": True,
            "user_metadata": {"role": role, "name": name, "accountType": role},
            "app_metadata": {"role": role},
        })
    except AuthError as e:
        raise ValidationError(f"Failed to create auth user: {e}")
    if not created or not created.user:
        raise ValidationError("Failed to create auth user")
    return created.user.id


def _existing_profile(supabase: Client, email: str) -> Optional[Dict[str, Any]]:
    return fetch_one(supabase, models.USERS, email, column="email")


def _insert_profile(supabase: Client, row: Dict[str, Any]) -> None:
    try:
        supabase.table(models.USERS).insert(row).execute()
    except APIError as e:
        raise PersistenceError(f"Failed to create profile: {error_message(e)}")


def register_driver(supabase: Client, name: str, email: str, password: str, phone: str) -> Dict[str, Any]:
    require(name=name, email=email, password=password, phone=phone)
    if not validate_email(email):
        raise ValidationError("Invalid email. Please try format: name@example.com")

    existing = _existing_profile(supabase, email)
    now = iso(utcnow())
    if existing:
        user_id = existing["id"]
    else:
        user_id = _create_auth_user(supabase, email, password, "driver", name)
        first, last = split_name(name)
        _insert_profile(supabase, {
            "id": user_id,
            "email": email,
            "phone": normalise_phone(phone),
            "first_name": first,
            "last_name": last,
            "full_name": name.strip(),
            "role": "driver",
            "is_active": True,
            "is_verified": False,
            "created_at": now,
            "updated_at": now,
        })

    if not fetch_one(supabase, models.DRIVERS, user_id):
        best_effort_upsert(supabase, models.DRIVERS, {
            "id": user_id,
            "name": name.strip(),
            "email": email,
            "phone": normalise_phone(phone),
            "status": "pending",
            "total_bookings": 0,
            "created_at": now,
            "updated_at": now,
        })

    logger.info("driver registered: %s", user_id)
    return {"user_id": user_id, "existing": bool(existing)}


def register_partner(
    supabase: Client,
    company_name: str,
    contact_name: str,
    email: str,
    password: str,
    phone: str,
) -> Dict[str, Any]:
    require(company_name=company_name, contact_name=contact_name, email=email,
            password=password, phone=phone)
    if not validate_email(email):
        raise ValidationError("Invalid email. Please try format: name@example.com")
    if _existing_profile(supabase, email):
        raise ValidationError("An account with this email already exists")

    user_id = _create_auth_user(supabase, email, password, "partner", contact_name)
    now = iso(utcnow())
    first, last = split_name(contact_name)
    _insert_profile(supabase, {
        "id": user_id,
        "email": email,
        "phone": normalise_phone(phone),
        "first_name": first,
        "last_name": last,
        "full_name": contact_name.strip(),
        "company_name": company_name.strip(),
        "role": "partner",
        "is_active": True,
        "is_verified": False,
        "created_at": now,
        "updated_at": now,
    })

    try:
        res = supabase.table(models.PARTNERS).insert({
            "user_id": user_id,
            "company_name": company_name.strip(),
            "contact_name": contact_name.strip(),
            "email": email,
            "phone": normalise_phone(phone),
            "status": "pending",
            "fleet_size": 0,
            "total_earnings": 0,
            "created_at": now,
            "updated_at": now,
        }).execute()
    except APIError as e:
        raise PersistenceError(f"Failed to create partner: {error_message(e)}")

    partner_id = res.data[0]["id"] if res.data else None
    logger.info("partner registered: %s (%s)", company_name, partner_id)
    return {"user_id": user_id, "partner_id": partner_id}


def create_partner_staff(
    supabase: Client,
    partner_id: str,
    user_id: str,
    name: str,
    email: str,
    permissions: Optional[Dict[str, bool]] = None,
) -> Dict[str, Any]:
    require(partner_id=partner_id, user_id=user_id, name=name, email=email)
    if not validate_email(email):
        raise ValidationError("Invalid email. Please try format: name@example.com")

    unknown = set(permissions or {}) - set(STAFF_FLAGS)
    if unknown:
        raise ValidationError(f"Unknown staff permissions: {', '.join(sorted(unknown))}")

    flags = {flag: bool((permissions or {}).get(flag)) for flag in STAFF_FLAGS}
    now = iso(utcnow())
    try:
        res = supabase.table(models.PARTNER_STAFF).insert({
            "partner_id": partner_id,
            "user_id": user_id,
            "name": name,
            "email": email,
            "permissions": flags,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }).execute()
    except APIError as e:
        raise PersistenceError(f"Failed to create staff member: {error_message(e)}")
    return res.data[0] if res.data else {}
