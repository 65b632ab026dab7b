import streamlit as st
import pandas as pd
import plotly.express as px
from postgrest.exceptions import APIError

from portal import analytics, bookings, documents, history, notifications
from portal.booking_states import ALL_STATUSES
from portal.config import load_config
from portal.permissions import has_permission, normalise_role
from portal.tools import run_action, show_result
from store.database import error_message, get_supabase_client


def render_admin_dashboard(user):
    st.title("📊 Fleet Admin Dashboard")

    role = normalise_role(user)
    if not has_permission(role, "bookingManagement"):
        st.warning("Your account does not have access to the admin dashboard.")
        return

    supabase = get_supabase_client()
    cfg = load_config()

    # --- Fetch Data ---
    try:
        frames = analytics.load_frames(supabase)
    except APIError as e:
        st.error(f"Error loading data: {error_message(e)}")
        return

    df = frames["bookings"]

    tab_bookings, tab_partners, tab_docs, tab_inbox = st.tabs(
        ["Bookings", "Partner Analytics", "Documents", "Notifications"]
    )

    with tab_bookings:
        _render_bookings(supabase, df, frames, cfg)
    with tab_partners:
        _render_partner_analytics(frames, cfg.policy.currency_symbol)
    with tab_docs:
        _render_documents(supabase, user, cfg.policy.expiry_window_days,
                          can_review=has_permission(role, "documentApproval", "MANAGE"))
    with tab_inbox:
        _render_admin_inbox(supabase)


def _render_bookings(supabase, df, frames, cfg):
    # --- KPI Metrics ---
    fleet = analytics.fleet_utilisation(frames["vehicles"])
    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Total Bookings", len(df))
    col2.metric("Active", int((df["status"] == "active").sum()))
    col3.metric("Completion Rate", f"{analytics.completion_rate(df)}%")
    col4.metric("Fleet Utilisation", f"{fleet['utilisation']}%")

    if df.empty:
        st.info("No bookings found in the database.")
        return

    breakdown = analytics.booking_status_breakdown(df)
    st.plotly_chart(px.pie(breakdown, names="status", values="count", title="Bookings by status"),
                    use_container_width=True)

    # --- Filters ---
    st.divider()
    st.subheader("Booking Management")

    present = [s for s in ALL_STATUSES if s in set(df["status"].dropna())]
    status_filter = st.multiselect("Filter by Status", options=present, default=present)

    if status_filter:
        filtered_df = df[df["status"].isin(status_filter)]
    else:
        filtered_df = df

    # --- Main Data Table ---
    display_cols = [
        "id", "car_name", "car_plate", "driver_id", "partner_id", "start_date",
        "end_date", "status", "payment_status", "total_amount",
    ]
    final_cols = [c for c in display_cols if c in filtered_df.columns]
    st.dataframe(filtered_df[final_cols], use_container_width=True)

    # --- Actions ---
    st.write("### Actions")
    c1, c2 = st.columns([2, 1])

    with c1:
        booking_id = st.text_input("Booking ID")
        if booking_id and st.button("Show timeline"):
            result = run_action(lambda: {"timeline": bookings.booking_timeline(supabase, booking_id)})
            if result["success"]:
                st.dataframe(pd.DataFrame(result["timeline"]), use_container_width=True)
            else:
                st.error(result["error"])

        if st.button("Run deadline checks"):
            _run_deadline_sweep(supabase, cfg.policy)

    # --- Actions: Export ---
    with c2:
        st.write("### Export")
        csv = filtered_df.to_csv(index=False).encode('utf-8')
        st.download_button(
            "📥 Download as CSV",
            csv,
            "bookings.csv",
            "text/csv",
            key='download-csv'
        )


def _run_deadline_sweep(supabase, policy):
    try:
        sweep = bookings.sweep_deadlines(supabase, policy=policy)
    except APIError as e:
        st.error(f"Deadline checks failed: {error_message(e)}")
        return None

    st.success(f"Checked {sweep['checked']} bookings, {len(sweep['actions'])} updated.")
    for item in sweep["actions"]:
        st.write(f"- `{item['booking_id']}`: {', '.join(item['actions_taken'])}")
    if sweep["failed"]:
        st.warning(f"Failed: {', '.join(sweep['failed'])}")
    return sweep


def _mark_feed_read(supabase, rows):
    try:
        for row in rows:
            if not row.get("is_read"):
                notifications.mark_read(supabase, row["id"])
    except APIError as e:
        st.error(f"Could not update notifications: {error_message(e)}")
        return False
    return True


def _render_partner_analytics(frames, currency):
    overview = analytics.partner_overview(
        frames["partners"], frames["bookings"], frames["vehicles"], frames["payments"]
    )
    totals = overview["totals"]

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Partners", totals["total_partners"], f"{totals['pending_partners']} pending")
    col2.metric("Active Partners", totals["active_partners"])
    col3.metric("Revenue", f"{currency}{totals['total_revenue']:,.2f}")
    col4.metric("Active Bookings", totals["active_bookings"])

    monthly = analytics.revenue_by_month(frames["payments"])
    if not monthly.empty:
        st.plotly_chart(px.bar(monthly, x="month", y="revenue", title="Revenue by month"),
                        use_container_width=True)

    st.subheader("Alerts")
    alerts = analytics.partner_alerts(frames["partners"], frames["bookings"], frames["payments"])
    if not alerts:
        st.success("No partner alerts.")
    for alert in alerts:
        text = f"**{alert['partner']}**: {alert['issue']} (impact {currency}{alert['estimated_impact']:,.2f})"
        if alert["priority"] == "high":
            st.error(text)
        else:
            st.warning(text)

    st.subheader("Top Partners")
    top = analytics.top_partners(frames["partners"], frames["bookings"])
    st.dataframe(top, use_container_width=True)

    partners = overview["partners"]
    if not partners.empty:
        st.plotly_chart(
            px.bar(partners, x="company_name", y="completion_rate", title="Completion rate by partner"),
            use_container_width=True,
        )
        st.dataframe(partners, use_container_width=True)


def _render_documents(supabase, user, window_days, can_review):
    st.subheader("Review Queue")
    pending = documents.pending_documents(supabase)
    if not pending:
        st.info("No documents waiting for review.")
    for doc in pending:
        with st.expander(f"{doc.get('name')} ({doc.get('category')}) - {doc.get('partner_name') or doc.get('partner_id')}"):
            st.write(f"[Open file]({doc.get('file_url')})")
            if not can_review:
                continue
            notes = st.text_input("Rejection reason", key=f"notes-{doc['id']}")
            a, r = st.columns(2)
            if a.button("Approve", key=f"approve-{doc['id']}"):
                show_result(run_action(documents.review_document, supabase, doc["id"], user["id"], True))
            if r.button("Reject", key=f"reject-{doc['id']}"):
                show_result(run_action(documents.review_document, supabase, doc["id"], user["id"], False, notes))

    st.subheader(f"Expiring in the next {window_days} days")
    expiring = documents.expiring_documents(supabase, days=window_days)
    if expiring:
        cols = ["name", "category", "partner_name", "expiry_date", "days_until_expiry", "urgency"]
        frame = pd.DataFrame(expiring)
        st.dataframe(frame[[c for c in cols if c in frame.columns]], use_container_width=True)
    else:
        st.info("Nothing expiring soon.")


def _render_admin_inbox(supabase):
    with st.expander("Recent partner actions"):
        actions = history.recent_partner_actions(supabase, limit=20)
        if actions:
            columns = ["created_at", "partner_id", "action_type", "description"]
            st.dataframe(pd.DataFrame(actions).reindex(columns=columns),
                         use_container_width=True, hide_index=True)
        else:
            st.caption("No partner actions recorded yet.")

    rows = notifications.list_notifications(supabase, None)
    if not rows:
        st.info("No notifications.")
        return
    for row in rows:
        marker = "" if row.get("is_read") else "🔵 "
        st.write(f"{marker}**{row.get('title')}**: {row.get('message')}")
    if st.button("Mark all as read") and _mark_feed_read(supabase, rows):
        st.rerun()
