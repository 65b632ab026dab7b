import smtplib

from portal import tools
from portal.config import AppConfig, BookingPolicy, EmailConfig, SupabaseConfig
from portal.errors import NotFound


def _cfg(email=None):
    return AppConfig(supabase=SupabaseConfig(url="https://demo.supabase.co", service_key="svc"),
                     email=email, policy=BookingPolicy())


EMAIL = EmailConfig(smtp_host="smtp.fleetmail.co.uk", smtp_port=587, smtp_user="bot",
                    smtp_password="pw", from_email="bot@fleetmail.co.uk", from_name="FleetDesk")


def test_run_action_success():
    result = tools.run_action(lambda x: {"message": f"got {x}"}, 3)
    assert result == {"success": True, "error": None, "message": "got 3"}


def test_run_action_maps_action_errors():
    def missing():
        raise NotFound("Booking not found", details={"id": "bk-1"})

    result = tools.run_action(missing)
    assert result == {"success": False, "error": "Booking not found", "status": 404,
                      "details": {"id": "bk-1"}}


def test_show_result(monkeypatch):
    seen = []
    monkeypatch.setattr(tools.st, "success", lambda msg: seen.append(("success", msg)))
    monkeypatch.setattr(tools.st, "error", lambda msg: seen.append(("error", msg)))
    monkeypatch.setattr(tools.st, "rerun", lambda: seen.append(("rerun", None)))

    tools.show_result({"success": True, "message": "Saved"})
    tools.show_result({"success": True}, rerun=False)
    tools.show_result({"success": False, "error": "Nope"})
    assert seen == [("success", "Saved"), ("rerun", None), ("success", "Done"), ("error", "Nope")]


def test_email_tool_skips_without_smtp():
    assert tools.email_tool(_cfg(), "sam@fleetmail.co.uk", "Hi", "Body") == {"success": True, "error": None}


class FakeSMTP:
    sent = []

    def __init__(self, host, port):
        self.host, self.port = host, port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def send_message(self, msg):
        FakeSMTP.sent.append(msg)


def test_email_tool_sends(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(tools.smtplib, "SMTP", FakeSMTP)
    result = tools.email_tool(_cfg(EMAIL), "sam@fleetmail.co.uk", "Booking created", "Body")
    assert result["success"] is True
    msg = FakeSMTP.sent[0]
    assert msg["To"] == "sam@fleetmail.co.uk"
    assert msg["From"] == "FleetDesk <bot@fleetmail.co.uk>"


def test_email_tool_reports_smtp_failure(monkeypatch):
    class Broken(FakeSMTP):
        def login(self, user, password):
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    monkeypatch.setattr(tools.smtplib, "SMTP", Broken)
    result = tools.email_tool(_cfg(EMAIL), "sam@fleetmail.co.uk", "Hi", "Body")
    assert result["success"] is False
    assert "bad credentials" in result["error"]
