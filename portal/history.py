"""Audit trail: booking_history rows and the partner_actions feed."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from supabase import Client

from portal.records import iso, utcnow
from store import models
from store.database import best_effort_insert


def record_history(
    supabase: Client,
    booking_id: str,
    action: str,
    performed_by: Optional[str],
    performed_by_type: str,
    description: str,
    details: Optional[Dict[str, Any]] = None,
) -> bool:
    # history must never fail the action that produced it
    return best_effort_insert(supabase, models.BOOKING_HISTORY, {
        "booking_id": booking_id,
        "action": action,
        "performed_by": performed_by,
        "performed_by_type": performed_by_type,
        "details": details or {},
        "description": description,
        "created_at": iso(utcnow()),
    })


def record_partner_action(
    supabase: Client,
    partner_id: str,
    action_type: str,
    description: str,
    booking_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> bool:
    return best_effort_insert(supabase, models.PARTNER_ACTIONS, {
        "partner_id": partner_id,
        "action_type": action_type,
        "booking_id": booking_id,
        "description": description,
        "details": details or {},
        "created_at": iso(utcnow()),
    })


def booking_timeline(supabase: Client, booking_id: str) -> List[Dict[str, Any]]:
    res = (
        supabase.table(models.BOOKING_HISTORY)
        .select("*")
        .eq("booking_id", booking_id)
        .order("created_at")
        .execute()
    )
    return res.data or []


def recent_partner_actions(supabase: Client, limit: int = 50) -> List[Dict[str, Any]]:
    res = (
        supabase.table(models.PARTNER_ACTIONS)
        .select("*")
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return res.data or []
