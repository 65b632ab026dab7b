import pytest

from portal.config import load_config
from portal.errors import NotFound, ValidationError, require


def test_load_config_from_secrets():
    cfg = load_config({
        "supabase": {"url": "https://demo.supabase.co", "service_key": "svc"},
        "email": {"smtp_host": "smtp.fleetmail.co.uk", "smtp_port": "2525"},
        "app": {"partner_reminder_hours": "3", "currency_symbol": "€", "log_level": "debug"},
    })
    assert cfg.supabase.url == "https://demo.supabase.co"
    assert cfg.email.smtp_port == 2525
    assert cfg.email.from_name == "FleetDesk"
    assert cfg.policy.partner_reminder_hours == 3.0
    assert cfg.policy.expiry_window_days == 30
    assert cfg.policy.currency_symbol == "€"
    assert cfg.log_level == "DEBUG"


def test_load_config_falls_back_to_environment(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://env.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "env-key")
    cfg = load_config({})
    assert cfg.supabase.service_key == "env-key"
    assert cfg.email is None
    assert cfg.policy.currency_symbol == "£"


def test_load_config_requires_supabase(monkeypatch):
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)
    with pytest.raises(ValueError):
        load_config({})


def test_require_lists_missing_params():
    with pytest.raises(ValidationError) as exc:
        require(booking_id="bk-1", reason="", partner_id=None)
    assert exc.value.message == "Missing required parameters: reason, partner_id"


def test_error_status_codes():
    assert NotFound("x").status_code == 404
    assert ValidationError("x").status_code == 400
