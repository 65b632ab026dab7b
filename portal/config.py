from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import streamlit as st


# ---------------------- DATA CLASSES ----------------------

@dataclass
class SupabaseConfig:
    url: str
    service_key: str  # service role key, used for all server-side writes
    anon_key: str = ""


@dataclass
class EmailConfig:
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    from_email: str
    from_name: str


@dataclass
class BookingPolicy:
    partner_reminder_hours: float = 2.0
    expiry_window_days: int = 30
    currency_symbol: str = "£"


@dataclass
class AppConfig:
    supabase: SupabaseConfig
    email: Optional[EmailConfig]
    policy: BookingPolicy
    log_level: str = "INFO"


# ---------------------- LOADING ----------------------

def _section(secrets: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    try:
        return secrets[name] if name in secrets else {}
    except FileNotFoundError:
        # st.secrets raises when no secrets.toml exists at all
        return {}


def load_config(secrets: Optional[Mapping[str, Any]] = None) -> AppConfig:
    if secrets is None:
        secrets = st.secrets

    # --- Supabase ---
    # secrets.toml first, then the same environment variables the
    # hosted deployment uses
    sb = _section(secrets, "supabase")
    url = sb.get("url") or os.environ.get("SUPABASE_URL", "")
    service_key = sb.get("service_key") or os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
    anon_key = sb.get("anon_key") or os.environ.get("SUPABASE_ANON_KEY", "")

    if not url or not service_key:
        raise ValueError(
            "Supabase is not configured: set [supabase] url/service_key "
            "or SUPABASE_URL/SUPABASE_SERVICE_ROLE_KEY"
        )

    supabase_cfg = SupabaseConfig(url=url, service_key=service_key, anon_key=anon_key)

    # --- Email (optional) ---
    email_cfg = None
    em = _section(secrets, "email")
    if em.get("smtp_host"):
        # ports are often stored as strings
        email_cfg = EmailConfig(
            smtp_host=em["smtp_host"],
            smtp_port=int(em.get("smtp_port", 587)),
            smtp_user=em.get("smtp_user", ""),
            smtp_password=em.get("smtp_password", ""),
            from_email=em.get("from_email", ""),
            from_name=em.get("from_name", "FleetDesk"),
        )

    # --- App / policy ---
    app = _section(secrets, "app")
    policy = BookingPolicy(
        partner_reminder_hours=float(app.get("partner_reminder_hours", 2)),
        expiry_window_days=int(app.get("expiry_window_days", 30)),
        currency_symbol=app.get("currency_symbol", "£"),
    )

    return AppConfig(
        supabase=supabase_cfg,
        email=email_cfg,
        policy=policy,
        log_level=str(app.get("log_level", "INFO")).upper(),
    )
