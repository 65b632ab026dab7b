import datetime as dt
from typing import Any, Dict, Optional

import streamlit as st
import pandas as pd

from portal import bookings, notifications, payments
from portal.booking_states import ALLOWED_FROM, is_terminal
from portal.config import load_config
from portal.fleet import available_vehicles
from portal.records import car_label, vehicle_reg
from portal.tools import run_action, show_result
from store import models
from store.database import fetch_all, get_supabase_client


def render_driver_dashboard(user):
    st.title("🚙 My Rentals")

    supabase = get_supabase_client()
    cfg = load_config()

    my_bookings = fetch_all(supabase, models.BOOKINGS, driver_id=user["id"])

    tab_book, tab_mine, tab_pay, tab_inbox = st.tabs(
        ["Book a Car", "My Bookings", "Payments", "Notifications"]
    )

    with tab_book:
        _render_booking_form(supabase, user, cfg)
    with tab_mine:
        _render_my_bookings(supabase, user, my_bookings)
    with tab_pay:
        _render_payments(supabase, user, my_bookings, cfg)
    with tab_inbox:
        _render_inbox(supabase, user["id"])


def booking_window(start: dt.date, weeks: int, now: Optional[dt.datetime] = None):
    """Rentals start at 09:00 UTC; a same-day rental starts on the next full hour."""
    now = now or dt.datetime.now(dt.timezone.utc)
    start_at = dt.datetime.combine(start, dt.time(9, 0), tzinfo=dt.timezone.utc)
    if start_at <= now:
        start_at = now.replace(minute=0, second=0, microsecond=0) + dt.timedelta(hours=1)
    return start_at, start_at + dt.timedelta(weeks=int(weeks))


def booking_request(vehicle: Dict[str, Any], start: dt.date, weeks: int, partner_insurance: bool,
                    now: Optional[dt.datetime] = None) -> Dict[str, Any]:
    start_at, end_at = booking_window(start, weeks, now)
    return {
        "partner_id": vehicle.get("partner_id"),
        "vehicle_id": vehicle["id"],
        "start_date": start_at,
        "end_date": end_at,
        "deposit_amount": vehicle.get("deposit_amount") or 0,
        "insurance_required": bool(vehicle.get("insurance_required")),
        "partner_provides_insurance": partner_insurance,
    }


def _render_booking_form(supabase, user, cfg):
    vehicles = available_vehicles(supabase)
    if not vehicles:
        st.info("No vehicles are available right now.")
        return

    currency = cfg.policy.currency_symbol
    options = {
        f"{v.get('make')} {v.get('model')} ({v.get('registration_number')}) - "
        f"{currency}{v['effective_weekly_rate']:,.2f}/week": v
        for v in vehicles
    }

    with st.form("booking_form"):
        st.write("### Book a vehicle")
        choice = st.selectbox("Vehicle", list(options))
        today = dt.date.today()
        start = st.date_input("Start date", value=today + dt.timedelta(days=1), min_value=today)
        weeks = st.number_input("Weeks", min_value=1, max_value=52, value=4, step=1)
        insurance = st.checkbox("I need the partner to provide insurance")
        submitted = st.form_submit_button("Request booking")

    if submitted:
        request = booking_request(options[choice], start, weeks, insurance)
        result = run_action(bookings.create_booking, supabase, user["id"], cfg=cfg, **request)
        if result["success"]:
            result["message"] = (
                f"Booking {result['booking_id']} created: {result['total_weeks']} weeks, "
                f"{currency}{result['total_amount']:,.2f}. Mark your first payment as sent to continue."
            )
        show_result(result)


def _render_my_bookings(supabase, user, my_bookings):
    if not my_bookings:
        st.info("You have no bookings yet.")
        return

    frame = pd.DataFrame(my_bookings)
    cols = ["id", "car_name", "car_plate", "start_date", "end_date", "status", "total_amount"]
    st.dataframe(frame[[c for c in cols if c in frame.columns]], use_container_width=True)

    for b in my_bookings:
        status = b.get("status")
        if is_terminal(status):
            continue
        with st.expander(f"{car_label(b)} ({vehicle_reg(b)}) - {status}"):
            if st.button("Show history", key=f"hist-{b['id']}"):
                st.dataframe(pd.DataFrame(bookings.booking_timeline(supabase, b["id"])),
                             use_container_width=True)

            if status in ALLOWED_FROM["request_return"] and not b.get("return_requested"):
                reason = st.text_input("Return reason", key=f"rr-{b['id']}")
                if st.button("Request return", key=f"ret-{b['id']}"):
                    show_result(run_action(bookings.request_return, supabase, b["id"], user["id"],
                                           "driver", reason=reason or None))

            issue_type = st.selectbox("Issue type", bookings.ISSUE_TYPES, key=f"it-{b['id']}")
            severity = st.selectbox("Severity", bookings.SEVERITIES, index=1, key=f"sev-{b['id']}")
            description = st.text_area("Describe the issue", key=f"desc-{b['id']}")
            if st.button("Report issue", key=f"issue-{b['id']}"):
                show_result(run_action(bookings.report_issue, supabase, b["id"], issue_type, description,
                                       user["id"], "driver", severity=severity))

            cancel_reason = st.text_input("Cancellation reason", key=f"cr-{b['id']}")
            if st.button("Cancel booking", key=f"cancel-{b['id']}"):
                show_result(run_action(bookings.cancel_booking, supabase, b["id"], cancel_reason, "prorated"))


def _render_payments(supabase, user, my_bookings, cfg):
    currency = cfg.policy.currency_symbol
    rows = payments.list_instructions(supabase, driver_id=user["id"])

    missing = [b for b in my_bookings
               if b.get("status") == "active" and not b.get("payment_instruction_id")]
    for b in missing:
        method = st.selectbox(f"Weekly payments for {vehicle_reg(b)}", payments.INSTRUCTION_METHODS,
                              key=f"method-{b['id']}")
        if st.button("Set up weekly payments", key=f"setup-{b['id']}"):
            show_result(run_action(payments.create_weekly_instruction, supabase, b["id"], method,
                                   currency=currency))

    if not rows:
        st.info("No payment instructions yet.")
        return

    for inst in rows:
        due = (inst.get("next_due_date") or "")[:10]
        st.write(f"**{inst.get('vehicle_reg')}** {inst.get('type')}: "
                 f"{currency}{float(inst.get('amount') or 0):,.2f} ({inst.get('status')}, due {due or 'n/a'})")
        if inst.get("method") == "bank_transfer" and inst.get("status") == models.INSTRUCTION_PENDING:
            if st.button("I've sent this payment", key=f"sent-{inst['id']}"):
                show_result(run_action(payments.mark_sent, supabase, inst["id"], user["id"],
                                       acceptance_hours=cfg.policy.partner_reminder_hours))


def _render_inbox(supabase, user_id):
    rows = notifications.list_notifications(supabase, user_id)
    if not rows:
        st.info("No notifications.")
        return
    for row in rows:
        marker = "" if row.get("is_read") else "🔵 "
        st.write(f"{marker}**{row.get('title')}**: {row.get('message')}")
    if st.button("Mark all as read"):
        notifications.mark_all_read(supabase, user_id)
        st.rerun()
