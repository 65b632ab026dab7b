# store/database.py

import logging
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import create_client, Client
import streamlit as st

from portal.config import load_config


logger = logging.getLogger(__name__)


def get_supabase_client() -> Client:
    """
    Returns a cached Supabase client.
    Uses service_role_key because booking actions write across
    bookings, vehicles, payment_instructions and notifications,
    which requires RLS bypass.
    """

    if "supabase_client" not in st.session_state:
        cfg = load_config()
        st.session_state.supabase_client = create_client(
            cfg.supabase.url, cfg.supabase.service_key
        )

    return st.session_state.supabase_client


def error_message(e: Exception) -> str:
    """Best readable text for a PostgREST / SDK error."""
    if getattr(e, "message", None):
        return e.message
    if getattr(e, "details", None):
        return e.details
    return str(e)


# --- ROW HELPERS ------------------------------------------------------------

def fetch_one(supabase: Client, table: str, value: Any, column: str = "id") -> Optional[Dict[str, Any]]:
    if value in (None, ""):
        return None
    res = supabase.table(table).select("*").eq(column, value).limit(1).execute()
    return res.data[0] if res.data else None


def fetch_all(supabase: Client, table: str, **filters: Any) -> List[Dict[str, Any]]:
    query = supabase.table(table).select("*")
    for column, value in filters.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            query = query.in_(column, list(value))
        else:
            query = query.eq(column, value)
    return query.execute().data or []


def best_effort_insert(supabase: Client, table: str, row: Dict[str, Any]) -> bool:
    """Insert a secondary row. Failures are logged, never raised."""
    try:
        supabase.table(table).insert(row).execute()
        return True
    except APIError as e:
        logger.warning("insert into %s failed: %s", table, error_message(e))
        return False


def best_effort_update(
    supabase: Client,
    table: str,
    values: Dict[str, Any],
    filters: Dict[str, Any],
) -> bool:
    """Update secondary rows matched by equality filters. Failures are logged."""
    try:
        query = supabase.table(table).update(values)
        for column, value in filters.items():
            query = query.eq(column, value)
        query.execute()
        return True
    except APIError as e:
        logger.warning("update of %s %s failed: %s", table, filters, error_message(e))
        return False


def best_effort_upsert(supabase: Client, table: str, row: Dict[str, Any]) -> bool:
    try:
        supabase.table(table).upsert(row).execute()
        return True
    except APIError as e:
        logger.warning("upsert into %s failed: %s", table, error_message(e))
        return False


