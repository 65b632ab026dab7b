"""Fleet, driver and partner documents: upload, review, expiry."""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import Client

from portal.errors import NotFound, PersistenceError, ValidationError, require
from portal.notifications import notify
from portal.records import iso, parse_ts, utcnow
from store import models
from store.database import best_effort_insert, error_message, fetch_one

logger = logging.getLogger(__name__)

OPTIONAL_FIELDS = (
    "car_id", "car_name", "driver_id", "driver_name", "mime_type", "expiry_date",
    "notes", "uploader_name", "uploader_email", "uploader_type", "partner_name",
)


def upload_document(
    supabase: Client,
    partner_id: str,
    uploader_id: str,
    name: str,
    type: str,
    category: str,
    file_name: str,
    file_url: str,
    file_size: int,
    **optional: Any,
) -> Dict[str, Any]:
    require(partner_id=partner_id, uploader_id=uploader_id, name=name, type=type,
            category=category, file_name=file_name, file_url=file_url, file_size=file_size)
    unknown = set(optional) - set(OPTIONAL_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown document fields: {', '.join(sorted(unknown))}")

    now = iso(utcnow())
    row = {
        "partner_id": partner_id,
        "uploader_id": uploader_id,
        "name": name,
        "type": type,
        "category": category,
        "file_name": file_name,
        "file_url": file_url,
        "file_size": file_size,
        "status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    row.update({field: optional.get(field) or None for field in OPTIONAL_FIELDS})
    try:
        res = supabase.table(models.DOCUMENTS).insert(row).execute()
    except APIError as e:
        raise PersistenceError(f"Failed to create document: {error_message(e)}")
    return {"document": res.data[0] if res.data else row}


def list_documents(
    supabase: Client,
    partner_id: Optional[str] = None,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
) -> List[Dict[str, Any]]:
    if not partner_id and not user_id:
        raise ValidationError("Missing partnerId or userId")
    if not partner_id:
        user = fetch_one(supabase, models.USERS, user_id)
        if not user or not user.get("partner_id"):
            raise NotFound("User not found or no partner associated")
        partner_id = user["partner_id"]

    query = supabase.table(models.DOCUMENTS).select("*").eq("partner_id", partner_id)
    if status:
        query = query.eq("status", status)
    return query.order("created_at", desc=True).execute().data or []


def pending_documents(supabase: Client) -> List[Dict[str, Any]]:
    res = (
        supabase.table(models.DOCUMENTS)
        .select("*")
        .eq("status", "pending")
        .order("created_at", desc=True)
        .execute()
    )
    return res.data or []


def review_document(
    supabase: Client,
    document_id: str,
    admin_id: str,
    approved: bool,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    require(document_id=document_id, admin_id=admin_id)
    document = fetch_one(supabase, models.DOCUMENTS, document_id)
    if not document:
        raise NotFound("Document not found")
    if not approved and not notes:
        raise ValidationError("A reason is required to reject a document")

    status = "approved" if approved else "rejected"
    now = iso(utcnow())
    values = {
        "status": status,
        "rejection_reason": None if approved else notes,
        "approved_by": admin_id if approved else None,
        "reviewed_by": admin_id,
        "reviewed_at": now,
        "updated_at": now,
    }
    try:
        res = supabase.table(models.DOCUMENTS).update(values).eq("id", document_id).execute()
    except APIError as e:
        raise PersistenceError(f"Failed to update document status: {error_message(e)}")

    best_effort_insert(supabase, models.ADMIN_ACTIVITY_LOGS, {
        "admin_id": admin_id,
        "action_type": "approve_file" if approved else "reject_file",
        "target_id": document_id,
        "target_type": "document",
        "details": {"name": document.get("name"), "notes": notes},
        "created_at": now,
    })
    notify(supabase, document.get("uploader_id"), document.get("uploader_type") or "partner",
           f"document_{status}", f"Document {status.title()}",
           f"Your document '{document.get('name')}' was {status}."
           + (f" Reason: {notes}" if not approved else ""),
           {"document_id": document_id}, sender_id=admin_id)

    logger.info("document %s %s by %s", document_id, status, admin_id)
    return {"document": res.data[0] if res.data else {**document, **values}, "status": status}


# ----------------- EXPIRY ------------------------

def days_until(expiry: Any, now: Optional[datetime] = None) -> Optional[int]:
    expires = parse_ts(expiry)
    if expires is None:
        return None
    return math.ceil((expires - (now or utcnow())).total_seconds() / 86400)


def expiry_urgency(expiry: Any, now: Optional[datetime] = None) -> str:
    days = days_until(expiry, now)
    if days is None:
        return "UPCOMING"
    if days <= 7:
        return "URGENT"
    if days <= 14:
        return "SOON"
    return "UPCOMING"


def expiring_documents(
    supabase: Client,
    days: int = 30,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Approved documents expiring within `days`, soonest first, with days left and urgency."""
    now = now or utcnow()
    res = (
        supabase.table(models.DOCUMENTS)
        .select("*")
        .eq("status", "approved")
        .gte("expiry_date", iso(now))
        .lte("expiry_date", iso(now + timedelta(days=days)))
        .order("expiry_date")
        .execute()
    )
    rows = []
    for doc in res.data or []:
        rows.append({
            **doc,
            "days_until_expiry": days_until(doc.get("expiry_date"), now),
            "urgency": expiry_urgency(doc.get("expiry_date"), now),
        })
    return rows
