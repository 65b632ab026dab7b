from typing import Any, Callable, Dict
from email.mime.text import MIMEText
import logging
import smtplib

import streamlit as st

from portal.config import AppConfig
from portal.errors import ActionError

logger = logging.getLogger(__name__)


# --- ACTION RUNNER ----------------------------------------------------------

def run_action(fn: Callable[..., Dict[str, Any]], *args, **kwargs) -> Dict[str, Any]:
    """Call a booking/payment/document action and answer with a result dict.

    Screens branch on `success` and show `error`; unexpected exceptions
    are not caught here and surface as a Streamlit traceback.
    """
    try:
        result = fn(*args, **kwargs) or {}
    except ActionError as e:
        logger.info("%s rejected (%s): %s", fn.__name__, e.status_code, e.message)
        return {
            "success": False,
            "error": e.message,
            "status": e.status_code,
            "details": e.details,
        }

    return {"success": True, "error": None, **result}


def show_result(result: Dict[str, Any], rerun: bool = True) -> None:
    if result["success"]:
        st.success(result.get("message") or "Done")
        if rerun:
            st.rerun()
    else:
        st.error(result["error"])


# --- EMAIL TOOL -------------------------------------------------------------

def email_tool(cfg: AppConfig, to_email: str, subject: str, body: str) -> Dict[str, Any]:
    if not cfg.email or not cfg.email.smtp_host:
        logger.info("Email tool skipped: No SMTP config provided.")
        return {"success": True, "error": None}

    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = f"{cfg.email.from_name} <{cfg.email.from_email}>"
    msg["To"] = to_email

    try:
        with smtplib.SMTP(cfg.email.smtp_host, cfg.email.smtp_port) as server:
            server.starttls()
            server.login(cfg.email.smtp_user, cfg.email.smtp_password)
            server.send_message(msg)
        return {"success": True, "error": None}

    except (smtplib.SMTPException, OSError) as e:
        logger.warning("email to %s failed: %s", to_email, e)
        return {"success": False, "error": str(e)}
