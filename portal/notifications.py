"""Notification rows for drivers, partners, partner staff and the admin feed."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from postgrest.exceptions import APIError
from supabase import Client

from portal.records import iso, utcnow
from store import models
from store.database import best_effort_insert, error_message

logger = logging.getLogger(__name__)


def notify(
    supabase: Client,
    recipient_id: Optional[str],
    recipient_type: Optional[str],
    type: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    priority: str = "medium",
    sender_id: Optional[str] = None,
) -> bool:
    """Insert one notification. A None recipient goes to the admin feed."""
    row = {
        "recipient_id": recipient_id,
        "recipient_type": recipient_type or ("admin" if recipient_id is None else None),
        "sender_id": sender_id,
        "type": type,
        "title": title,
        "message": message,
        "data": data or {},
        "priority": priority,
        "is_read": False,
        "created_at": iso(utcnow()),
    }
    ok = best_effort_insert(supabase, models.NOTIFICATIONS, row)
    if not ok:
        logger.warning("notification %s for %s not delivered", type, recipient_id or "admin")
    return ok


def notify_admins(supabase: Client, type: str, title: str, message: str,
                  data: Optional[Dict[str, Any]] = None, priority: str = "medium") -> bool:
    return notify(supabase, None, "admin", type, title, message, data, priority)


def notify_financial_staff(supabase: Client, partner_id: str, type: str, title: str,
                           message: str, data: Optional[Dict[str, Any]] = None) -> int:
    """Notify active partner staff allowed to see financials. Returns how many were sent."""
    try:
        res = (
            supabase.table(models.PARTNER_STAFF)
            .select("user_id, permissions")
            .eq("partner_id", partner_id)
            .eq("is_active", True)
            .execute()
        )
    except APIError as e:
        logger.warning("could not load staff for partner %s: %s", partner_id, error_message(e))
        return 0

    sent = 0
    for staff in res.data or []:
        if (staff.get("permissions") or {}).get("canViewFinancials"):
            if notify(supabase, staff.get("user_id"), "partner_staff", type, title, message, data):
                sent += 1
    return sent


# ----------------- INBOX ------------------------

def list_notifications(
    supabase: Client,
    recipient_id: Optional[str] = None,
    unread_only: bool = False,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    query = supabase.table(models.NOTIFICATIONS).select("*")
    if recipient_id is None:
        query = query.is_("recipient_id", "null")
    else:
        query = query.eq("recipient_id", recipient_id)
    if unread_only:
        query = query.eq("is_read", False)
    return query.order("created_at", desc=True).limit(limit).execute().data or []


def mark_read(supabase: Client, notification_id: str, read: bool = True) -> None:
    supabase.table(models.NOTIFICATIONS).update(
        {"is_read": read, "read_at": iso(utcnow()) if read else None}
    ).eq("id", notification_id).execute()


def mark_all_read(supabase: Client, recipient_id: str) -> None:
    supabase.table(models.NOTIFICATIONS).update(
        {"is_read": True, "read_at": iso(utcnow())}
    ).eq("recipient_id", recipient_id).eq("is_read", False).execute()


def delete_notifications(supabase: Client, notification_ids: Iterable[str]) -> None:
    ids = list(notification_ids)
    if ids:
        supabase.table(models.NOTIFICATIONS).delete().in_("id", ids).execute()
