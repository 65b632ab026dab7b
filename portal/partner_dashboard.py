import streamlit as st
import pandas as pd
import plotly.express as px

from portal import analytics, bookings, documents, fleet, notifications, payments
from portal.accounts import create_partner_staff, resolve_partner_id, staff_row
from portal.booking_states import ALLOWED_FROM, PENDING_PARTNER_APPROVAL
from portal.config import load_config
from portal.permissions import STAFF_FLAGS, normalise_role, staff_can
from portal.records import booking_weekly_rate, car_label, vehicle_reg, weekly_rate
from portal.tools import run_action, show_result
from store import models
from store.database import fetch_all, fetch_one, get_supabase_client


def _partner_ids(supabase, user):
    """Bookings are keyed by the owner's user id; staff act for their employer."""
    ids = {user["id"]}
    resolved = resolve_partner_id(supabase, user["id"])
    if resolved:
        ids.add(resolved)
    return ids


def render_partner_dashboard(user):
    st.title("🚗 Partner Dashboard")

    supabase = get_supabase_client()
    cfg = load_config()
    currency = cfg.policy.currency_symbol

    is_staff = normalise_role(user) == "PARTNER_STAFF"
    staff = staff_row(supabase, user["id"]) if is_staff else None

    def allowed(flag):
        return not is_staff or staff_can(staff, flag)

    partner_ids = _partner_ids(supabase, user)
    # actions are taken as the id the booking was made against
    booking_rows = fetch_all(supabase, models.BOOKINGS, partner_id=list(partner_ids))
    df = pd.DataFrame(booking_rows)

    col1, col2, col3 = st.columns(3)
    col1.metric("Bookings", len(booking_rows))
    col2.metric("Active", sum(1 for b in booking_rows if b.get("status") == "active"))
    col3.metric("Completion Rate", f"{analytics.completion_rate(booking_rows)}%")

    tabs = st.tabs(["Approvals", "Rentals", "Payments", "Fleet", "Documents", "Staff", "Notifications"])

    with tabs[0]:
        if allowed("canManageBookings"):
            _render_approvals(supabase, booking_rows)
        else:
            st.info("You do not have permission to manage bookings.")
    with tabs[1]:
        if allowed("canManageBookings"):
            _render_rentals(supabase, booking_rows, partner_ids)
        else:
            st.info("You do not have permission to manage bookings.")
    with tabs[2]:
        if allowed("canViewFinancials"):
            _render_payments(supabase, partner_ids, currency)
        else:
            st.info("You do not have permission to view financials.")
    with tabs[3]:
        if allowed("canManageFleet"):
            _render_fleet(supabase, user, partner_ids, currency, df)
        else:
            st.info("You do not have permission to manage the fleet.")
    with tabs[4]:
        if allowed("canManageDocuments"):
            _render_documents(supabase, user, partner_ids)
        else:
            st.info("You do not have permission to manage documents.")
    with tabs[5]:
        if allowed("canManageStaff"):
            _render_staff(supabase, partner_ids)
        else:
            st.info("You do not have permission to manage staff.")
    with tabs[6]:
        _render_inbox(supabase, user["id"])


def _render_approvals(supabase, booking_rows):
    pending = [b for b in booking_rows if b.get("status") == PENDING_PARTNER_APPROVAL]
    if not pending:
        st.info("No bookings waiting for your approval.")
        return

    for b in pending:
        with st.expander(f"{car_label(b)} ({vehicle_reg(b)}) - {b.get('start_date', '')[:10]}"):
            st.write(f"Driver: {(b.get('driver') or {}).get('full_name', b.get('driver_id'))}")
            st.write(f"Deadline: {b.get('partner_acceptance_deadline') or 'none'}")
            override = st.checkbox("Partner provides insurance cover", key=f"ins-{b['id']}")
            reason = st.text_input("Rejection reason", key=f"rej-{b['id']}")
            a, r = st.columns(2)
            if a.button("Accept", key=f"accept-{b['id']}"):
                show_result(run_action(bookings.partner_response, supabase, b["id"], b["partner_id"],
                                       "accept", override_insurance=override))
            if r.button("Reject", key=f"reject-{b['id']}"):
                show_result(run_action(bookings.partner_response, supabase, b["id"], b["partner_id"],
                                       "reject", rejection_reason=reason or None))


def _render_rentals(supabase, booking_rows, partner_ids):
    live = [b for b in booking_rows if b.get("status") in ALLOWED_FROM["finish"] | ALLOWED_FROM["start_active"]]
    if not live:
        st.info("No current rentals.")
        return

    available = fleet.available_vehicles(supabase)
    available = [v for v in available if v.get("partner_id") in partner_ids]

    for b in live:
        pid = b["partner_id"]
        status = b.get("status")
        with st.expander(f"{car_label(b)} ({vehicle_reg(b)}) - {status}"):
            if status in ALLOWED_FROM["start_active"]:
                readiness = bookings.activation_readiness(supabase, b["id"])
                st.json(readiness["checks"])
                bypass = st.checkbox("Start without all requirements", key=f"bypass-{b['id']}")
                if st.button("Start rental", key=f"start-{b['id']}"):
                    show_result(run_action(bookings.start_active, supabase, b["id"], pid,
                                           bypass_requirements=bypass))

            if b.get("return_requested") and not b.get("return_approved"):
                st.warning(f"Return requested: {b.get('return_reason') or 'no reason given'}")
                a, r = st.columns(2)
                if a.button("Approve return", key=f"ret-ok-{b['id']}"):
                    show_result(run_action(bookings.request_return, supabase, b["id"], pid, "partner",
                                           action="approve"))
                reason = r.text_input("Reason", key=f"ret-reason-{b['id']}")
                if r.button("Reject return", key=f"ret-no-{b['id']}"):
                    show_result(run_action(bookings.request_return, supabase, b["id"], pid, "partner",
                                           action="reject", reason=reason or None))

            if status in ALLOWED_FROM["change_vehicle"] and available:
                options = {f"{v.get('make')} {v.get('model')} ({v.get('registration_number')})": v["id"]
                           for v in available}
                choice = st.selectbox("Swap to", list(options), key=f"swap-{b['id']}")
                adjustment = st.selectbox("Price adjustment", ["prorated", "immediate", "next_cycle"],
                                          key=f"adj-{b['id']}")
                why = st.text_input("Reason for change", key=f"why-{b['id']}")
                if st.button("Change vehicle", key=f"change-{b['id']}"):
                    show_result(run_action(bookings.change_vehicle, supabase, b["id"], pid,
                                           options[choice], why, adjustment_type=adjustment))

            if status in ALLOWED_FROM["release_vehicle"] and st.button("Release vehicle", key=f"rel-{b['id']}"):
                show_result(run_action(bookings.release_vehicle, supabase, b["id"], pid, "partner"))

            if status in ALLOWED_FROM["finish"]:
                notes = st.text_input("Final notes", key=f"notes-{b['id']}")
                mileage = st.number_input("Final mileage", min_value=0, step=1, key=f"mi-{b['id']}")
                if st.button("Finish rental", key=f"finish-{b['id']}"):
                    show_result(run_action(bookings.finish_booking, supabase, b["id"], pid, "partner",
                                           final_notes=notes or None, final_mileage=mileage or None))


def _render_payments(supabase, partner_ids, currency):
    rows = []
    for pid in partner_ids:
        rows.extend(payments.list_instructions(supabase, partner_id=pid))
    stats = {}
    for pid in partner_ids:
        for key, value in payments.instruction_stats(supabase, pid).items():
            stats[key] = stats.get(key, 0) + value

    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Pending", stats.get("pending_count", 0), f"{currency}{stats.get('pending_amount', 0):,.2f}")
    c2.metric("Sent", stats.get("sent_count", 0), f"{currency}{stats.get('sent_amount', 0):,.2f}")
    c3.metric("Overdue", stats.get("overdue_count", 0), f"{currency}{stats.get('overdue_amount', 0):,.2f}")
    c4.metric("Received", stats.get("received_count", 0), f"{currency}{stats.get('received_amount', 0):,.2f}")

    if not rows:
        st.info("No payment instructions yet.")
        return

    cols = ["vehicle_reg", "type", "method", "amount", "status", "next_due_date"]
    frame = pd.DataFrame(rows)
    st.dataframe(frame[[c for c in cols if c in frame.columns]], use_container_width=True)

    for inst in rows:
        label = f"{inst.get('vehicle_reg')} {inst.get('type')} {currency}{inst.get('amount')}"
        if inst.get("status") == models.INSTRUCTION_SENT:
            if st.button(f"Confirm received: {label}", key=f"conf-{inst['id']}"):
                show_result(run_action(payments.confirm_received, supabase, inst["id"], inst["partner_id"]))
        if inst.get("type") == "deposit" and inst.get("status") == models.INSTRUCTION_DEPOSIT_RECEIVED:
            amount = st.number_input(f"Refund for {label}", min_value=0.0,
                                     value=float(inst.get("amount") or 0), key=f"refamt-{inst['id']}")
            if st.button("Refund deposit", key=f"refund-{inst['id']}"):
                show_result(run_action(payments.refund_deposit, supabase, inst["id"], amount,
                                       inst["partner_id"]))
        if inst.get("type") == "refund" and inst.get("status") in payments.REFUND_REJECTABLE:
            reason = st.text_input(f"Reason to reject {label}", key=f"rrr-{inst['id']}")
            if st.button("Reject refund", key=f"rr-{inst['id']}"):
                show_result(run_action(payments.reject_refund, supabase, inst["id"],
                                       inst["partner_id"], reason))


def _render_fleet(supabase, user, partner_ids, currency, bookings_df):
    vehicles = fetch_all(supabase, models.VEHICLES, partner_id=list(partner_ids))
    if not vehicles:
        st.info("No vehicles in your fleet.")
        return

    usage = analytics.fleet_utilisation(vehicles)
    st.metric("Utilisation", f"{usage['utilisation']}%")
    by_status = pd.DataFrame(list(usage["by_status"].items()), columns=["status", "count"])
    st.plotly_chart(px.bar(by_status, x="status", y="count", title="Fleet by status"),
                    use_container_width=True)

    frame = pd.DataFrame(vehicles)
    frame["weekly"] = [weekly_rate(v) for v in vehicles]
    cols = ["make", "model", "registration_number", "status", "weekly"]
    st.dataframe(frame[[c for c in cols if c in frame.columns]], use_container_width=True)

    if not bookings_df.empty:
        bookings_df = bookings_df.assign(
            weekly=[booking_weekly_rate(b) for b in bookings_df.to_dict("records")]
        )
        st.caption(f"Average weekly rate booked: {currency}{bookings_df['weekly'].mean():,.2f}")

    st.subheader("Update pricing")
    labels = {f"{v.get('make')} {v.get('model')} ({v.get('registration_number')})": v["id"] for v in vehicles}
    chosen = st.multiselect("Vehicles", list(labels))
    new_rate = st.number_input("Weekly rate", min_value=0.0, step=5.0)
    if st.button("Apply weekly rate") and chosen:
        show_result(run_action(fleet.bulk_update_pricing, supabase, user["id"],
                               [labels[c] for c in chosen], weekly_rate=new_rate,
                               price_per_week=new_rate))


def _render_documents(supabase, user, partner_ids):
    partner_id = resolve_partner_id(supabase, user["id"]) or user["id"]

    with st.form("upload_document"):
        st.write("### Upload a document")
        name = st.text_input("Name")
        category = st.selectbox("Category", ["insurance", "mot", "logbook", "private_hire_license",
                                             "roadTax", "other"])
        file_url = st.text_input("File URL")
        expiry = st.date_input("Expiry date", value=None)
        submitted = st.form_submit_button("Upload")
    if submitted:
        file_name = file_url.rsplit("/", 1)[-1] if file_url else ""
        show_result(run_action(documents.upload_document, supabase, partner_id, user["id"], name,
                               category, category, file_name, file_url, 0,
                               expiry_date=expiry.isoformat() if expiry else None,
                               uploader_type="partner"))

    rows = []
    for pid in partner_ids:
        rows.extend(documents.list_documents(supabase, partner_id=pid))
    if not rows:
        st.info("No documents uploaded.")
        return
    cols = ["name", "category", "status", "expiry_date", "rejection_reason", "created_at"]
    frame = pd.DataFrame(rows)
    st.dataframe(frame[[c for c in cols if c in frame.columns]], use_container_width=True)


def _render_staff(supabase, partner_ids):
    staff = fetch_all(supabase, models.PARTNER_STAFF, partner_id=list(partner_ids))
    if staff:
        frame = pd.DataFrame(staff)
        cols = ["name", "email", "is_active", "created_at"]
        st.dataframe(frame[[c for c in cols if c in frame.columns]], use_container_width=True)

    with st.form("add_staff"):
        st.write("### Add staff member")
        staff_user = st.text_input("User ID")
        name = st.text_input("Name")
        email = st.text_input("Email")
        flags = {flag: st.checkbox(flag) for flag in STAFF_FLAGS}
        submitted = st.form_submit_button("Add")
    if submitted:
        owner = next((pid for pid in partner_ids if fetch_one(supabase, models.PARTNERS, pid)), None)
        show_result(run_action(lambda: {"staff": create_partner_staff(
            supabase, owner, staff_user, name, email, flags)}))


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
