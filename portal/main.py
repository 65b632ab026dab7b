from __future__ import annotations

import sys
import os
import logging

# --- Add project root to sys.path ---
current_dir = os.path.dirname(os.path.abspath(__file__))
parent_dir = os.path.dirname(current_dir)
if parent_dir not in sys.path:
    sys.path.insert(0, parent_dir)

import streamlit as st

# IMPORTS
from portal.config import load_config
from portal.accounts import register_driver, register_partner, sign_in
from portal.permissions import ROLE_LABELS, is_admin, normalise_role
from portal.tools import run_action
from portal.admin_dashboard import render_admin_dashboard
from portal.partner_dashboard import render_partner_dashboard
from portal.driver_dashboard import render_driver_dashboard
from store.database import get_supabase_client


def _init_app_state():
    if "user" not in st.session_state:
        st.session_state.user = None


def _pages_for(user):
    if is_admin(user):
        return {"Admin Dashboard": render_admin_dashboard}
    if normalise_role(user) in ("PARTNER", "PARTNER_STAFF"):
        return {"Partner Dashboard": render_partner_dashboard}
    return {"My Rentals": render_driver_dashboard}


def main():
    st.set_page_config(
        page_title="FleetDesk",
        page_icon="🚗",
        layout="wide",
        initial_sidebar_state="expanded",
    )

    cfg = load_config()
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _init_app_state()

    user = st.session_state.user
    if user is None:
        render_sign_in()
        return

    pages = _pages_for(user)

    # --- SIDEBAR NAVIGATION ---
    with st.sidebar:
        st.title("Navigation")
        st.caption(f"{user.get('full_name') or user.get('email')} ({ROLE_LABELS[normalise_role(user)]})")
        menu = st.radio("Go to", list(pages))
        st.divider()
        if st.button("Sign out"):
            st.session_state.user = None
            st.rerun()

    pages[menu](user)


def render_sign_in():
    st.title("🚗 FleetDesk")
    st.caption("Vehicle rentals for private hire drivers and fleet partners.")

    supabase = get_supabase_client()
    tab_in, tab_driver, tab_partner = st.tabs(["Sign in", "Register as driver", "Register as partner"])

    with tab_in:
        with st.form("sign_in"):
            email = st.text_input("Email")
            password = st.text_input("Password", type="password")
            submitted = st.form_submit_button("Sign in")
        if submitted:
            result = run_action(lambda: {"profile": sign_in(supabase, email, password)})
            if result["success"]:
                st.session_state.user = result["profile"]
                st.rerun()
            else:
                st.error(result["error"])

    with tab_driver:
        with st.form("register_driver"):
            name = st.text_input("Full name")
            email = st.text_input("Email")
            phone = st.text_input("Phone")
            password = st.text_input("Password", type="password")
            submitted = st.form_submit_button("Create account")
        if submitted:
            result = run_action(register_driver, supabase, name, email, password, phone)
            if result["success"]:
                st.success("Account created. You can now sign in.")
            else:
                st.error(result["error"])

    with tab_partner:
        with st.form("register_partner"):
            company = st.text_input("Company name")
            contact = st.text_input("Contact name")
            email = st.text_input("Email")
            phone = st.text_input("Phone")
            password = st.text_input("Password", type="password")
            submitted = st.form_submit_button("Apply")
        if submitted:
            result = run_action(register_partner, supabase, company, contact, email, password, phone)
            if result["success"]:
                st.success("Application received. An admin will review your account.")
            else:
                st.error(result["error"])


if __name__ == "__main__":
    main()
