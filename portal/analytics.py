"""Aggregates behind the admin and partner dashboards.

Functions take plain row lists (as returned by Supabase) and return
pandas DataFrames or dicts ready for `st.metric` / plotly.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from supabase import Client

from portal.booking_states import ACTIVE, COMPLETED, PAID_PAYMENT_STATUSES
from store import models

BOOKING_COLUMNS = ["id", "partner_id", "driver_id", "status", "total_amount", "created_at"]
PARTNER_COLUMNS = ["id", "user_id", "company_name", "contact_name", "status", "fleet_size",
                   "rating", "total_earnings", "location"]
VEHICLE_COLUMNS = ["id", "partner_id", "status"]
PAYMENT_COLUMNS = ["id", "booking_id", "amount", "status", "created_at"]

LOW_COMPLETION_THRESHOLD = 60.0


def _frame(rows: Any, columns: List[str]) -> pd.DataFrame:
    """DataFrame from rows (or an existing frame) with every expected column present."""
    df = rows.copy() if isinstance(rows, pd.DataFrame) else pd.DataFrame(list(rows or []))
    for col in columns:
        if col not in df.columns:
            df[col] = None
    return df


def _amounts(series: pd.Series) -> pd.Series:
    return pd.to_numeric(series, errors="coerce").fillna(0.0)


def _num(value: Any) -> float:
    return 0.0 if value is None or pd.isna(value) else float(value)


def _text(*values: Any, default: str = "Unknown") -> str:
    for value in values:
        if value is not None and not pd.isna(value) and value != "":
            return str(value)
    return default


def completion_rate(bookings: Iterable[Dict[str, Any]]) -> float:
    df = _frame(bookings, BOOKING_COLUMNS)
    if df.empty:
        return 0.0
    completed = int((df["status"] == COMPLETED).sum())
    return round(completed / len(df) * 100, 1)


def _partner_keys(partners: pd.DataFrame) -> Dict[Any, Any]:
    """Bookings reference a partner by partners.id or by the owner's user id."""
    keys = {}
    for _, row in partners.iterrows():
        keys[row["id"]] = row["id"]
        if _text(row["user_id"], default=""):
            keys[row["user_id"]] = row["id"]
    return keys


def _with_partner(bookings: pd.DataFrame, partners: pd.DataFrame) -> pd.DataFrame:
    keys = _partner_keys(partners)
    bookings = bookings.copy()
    bookings["partner_key"] = bookings["partner_id"].map(keys)
    return bookings


def partner_overview(partners, bookings, vehicles, payments) -> Dict[str, Any]:
    partners = _frame(partners, PARTNER_COLUMNS)
    bookings = _with_partner(_frame(bookings, BOOKING_COLUMNS), partners)
    vehicles = _frame(vehicles, VEHICLE_COLUMNS)
    payments = _frame(payments, PAYMENT_COLUMNS)

    paid = payments[payments["status"].isin(PAID_PAYMENT_STATUSES)].copy()
    paid["amount"] = _amounts(paid["amount"])
    paid = paid.merge(bookings[["id", "partner_key"]].rename(columns={"id": "booking_id"}),
                      on="booking_id", how="left")

    vehicles = vehicles.copy()
    vehicles["partner_key"] = vehicles["partner_id"].map(_partner_keys(partners))
    bookings["total_amount"] = _amounts(bookings["total_amount"])

    rows = []
    for _, partner in partners.iterrows():
        pid = partner["id"]
        own = bookings[bookings["partner_key"] == pid]
        total = len(own)
        completed = int((own["status"] == COMPLETED).sum())
        fleet = int((vehicles["partner_key"] == pid).sum()) or int(_num(partner["fleet_size"]))
        rows.append({
            "partner_id": pid,
            "company_name": _text(partner["company_name"], partner["contact_name"]),
            "status": partner["status"],
            "bookings": total,
            "completed": completed,
            "completion_rate": round(completed / total * 100, 1) if total else 0.0,
            "avg_booking_value": round(own["total_amount"].mean(), 2) if total else 0.0,
            "revenue": round(float(paid.loc[paid["partner_key"] == pid, "amount"].sum()), 2),
            "fleet_size": fleet,
            "utilisation": round(total / fleet * 100, 1) if fleet else 0.0,
        })
    frame = pd.DataFrame(rows, columns=[
        "partner_id", "company_name", "status", "bookings", "completed", "completion_rate",
        "avg_booking_value", "revenue", "fleet_size", "utilisation",
    ])

    totals = {
        "total_partners": len(partners),
        "active_partners": int((partners["status"] == "active").sum()),
        "pending_partners": int((partners["status"] == "pending").sum()),
        "total_revenue": round(float(paid["amount"].sum()), 2),
        "active_bookings": int((bookings["status"] == ACTIVE).sum()),
        "total_vehicles": len(vehicles),
        "completion_rate": completion_rate(bookings),
    }
    return {"totals": totals, "partners": frame}


def partner_alerts(partners, bookings, payments) -> List[Dict[str, Any]]:
    partners = _frame(partners, PARTNER_COLUMNS)
    bookings = _with_partner(_frame(bookings, BOOKING_COLUMNS), partners)
    payments = _frame(payments, PAYMENT_COLUMNS)

    alerts = []
    for _, partner in partners.iterrows():
        own = bookings[bookings["partner_key"] == partner["id"]]
        if own.empty:
            continue
        rate = completion_rate(own)
        if rate < LOW_COMPLETION_THRESHOLD:
            alerts.append({
                "partner_id": partner["id"],
                "partner": _text(partner["company_name"]),
                "issue": "Low completion rate",
                "priority": "medium",
                "completion_rate": rate,
                "estimated_impact": _num(partner["total_earnings"]),
            })

    pending = payments[payments["status"] == "pending"]
    if not pending.empty:
        alerts.append({
            "partner_id": None,
            "partner": "Multiple Partners",
            "issue": "Payment overdue",
            "priority": "high",
            "count": len(pending),
            "estimated_impact": round(float(_amounts(pending["amount"]).sum()), 2),
        })
    return alerts


def top_partners(partners, bookings, limit: int = 5) -> pd.DataFrame:
    partners = _frame(partners, PARTNER_COLUMNS)
    bookings = _with_partner(_frame(bookings, BOOKING_COLUMNS), partners)

    active = partners[partners["status"] == "active"].copy()
    active["total_earnings"] = _amounts(active["total_earnings"])
    active = active.sort_values("total_earnings", ascending=False).head(limit)

    counts = bookings.groupby("partner_key").size()
    completed = bookings[bookings["status"] == COMPLETED].groupby("partner_key").size()
    active["bookings"] = active["id"].map(counts).fillna(0).astype(int)
    done = active["id"].map(completed).fillna(0)
    active["completion_rate"] = [
        round(d / b * 100, 1) if b else 0.0 for d, b in zip(done, active["bookings"])
    ]
    active["rating"] = _amounts(active["rating"])
    return active[["id", "company_name", "contact_name", "total_earnings", "bookings",
                   "completion_rate", "rating", "fleet_size"]].reset_index(drop=True)


def booking_status_breakdown(bookings) -> pd.DataFrame:
    df = _frame(bookings, BOOKING_COLUMNS)
    if df.empty:
        return pd.DataFrame(columns=["status", "count"])
    counts = df["status"].fillna("unknown").value_counts()
    return counts.rename_axis("status").reset_index(name="count")


def revenue_by_month(payments) -> pd.DataFrame:
    df = _frame(payments, PAYMENT_COLUMNS)
    df = df[df["status"].isin(PAID_PAYMENT_STATUSES)].copy()
    df["created_at"] = pd.to_datetime(df["created_at"], errors="coerce", utc=True, format="ISO8601")
    df = df.dropna(subset=["created_at"])
    if df.empty:
        return pd.DataFrame(columns=["month", "revenue"])
    df["amount"] = _amounts(df["amount"])
    df["month"] = df["created_at"].dt.strftime("%Y-%m")
    return df.groupby("month", as_index=False)["amount"].sum().rename(columns={"amount": "revenue"})


def driver_summary(bookings) -> pd.DataFrame:
    df = _frame(bookings, BOOKING_COLUMNS)
    columns = ["driver_id", "bookings", "active", "completed", "total_spent", "last_booking"]
    if df.empty:
        return pd.DataFrame(columns=columns)
    df["total_amount"] = _amounts(df["total_amount"])
    df["is_active"] = df["status"] == ACTIVE
    df["is_completed"] = df["status"] == COMPLETED
    summary = df.groupby("driver_id").agg(
        bookings=("id", "count"),
        active=("is_active", "sum"),
        completed=("is_completed", "sum"),
        total_spent=("total_amount", "sum"),
        last_booking=("created_at", "max"),
    ).reset_index()
    summary["active"] = summary["active"].astype(int)
    summary["completed"] = summary["completed"].astype(int)
    return summary.sort_values("total_spent", ascending=False)[columns].reset_index(drop=True)


def fleet_utilisation(vehicles) -> Dict[str, Any]:
    df = _frame(vehicles, VEHICLE_COLUMNS)
    by_status = df["status"].fillna("unknown").value_counts().to_dict()
    total = len(df)
    booked = int(by_status.get(models.VEHICLE_BOOKED, 0))
    return {
        "total": total,
        "by_status": by_status,
        "utilisation": round(booked / total * 100, 1) if total else 0.0,
    }


def load_frames(supabase: Client, partner_id: Optional[str] = None) -> Dict[str, pd.DataFrame]:
    """Fetch the four tables behind the analytics screens."""
    if partner_id:
        partners = supabase.table(models.PARTNERS).select("*").eq("id", partner_id).execute().data
        bookings = supabase.table(models.BOOKINGS).select("*").eq("partner_id", partner_id).execute().data
        vehicles = supabase.table(models.VEHICLES).select("*").eq("partner_id", partner_id).execute().data
        booking_ids = [b["id"] for b in bookings or []]
        payments = (
            supabase.table(models.PAYMENTS).select("*").in_("booking_id", booking_ids).execute().data
            if booking_ids else []
        )
    else:
        partners = supabase.table(models.PARTNERS).select("*").execute().data
        bookings = supabase.table(models.BOOKINGS).select("*").execute().data
        vehicles = supabase.table(models.VEHICLES).select("*").execute().data
        payments = supabase.table(models.PAYMENTS).select("*").execute().data
    return {
        "partners": _frame(partners, PARTNER_COLUMNS),
        "bookings": _frame(bookings, BOOKING_COLUMNS),
        "vehicles": _frame(vehicles, VEHICLE_COLUMNS),
        "payments": _frame(payments, PAYMENT_COLUMNS),
    }
