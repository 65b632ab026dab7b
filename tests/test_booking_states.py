import pytest

from portal import booking_states as states
from portal.errors import ValidationError


def test_terminal_statuses_cannot_be_cancelled():
    for status in states.TERMINAL:
        assert not states.can("cancel", status)
    assert states.can("cancel", states.PENDING_PAYMENT)
    assert states.can("cancel", states.OVERDUE)


def test_partner_response_only_from_pending_approval():
    assert states.can("partner_response", states.PENDING_PARTNER_APPROVAL)
    assert not states.can("partner_response", states.PENDING_PAYMENT)


def test_ensure_transition_names_current_status():
    with pytest.raises(ValidationError) as exc:
        states.ensure_transition({"status": "completed"}, "finish")
    assert exc.value.message == "Cannot finish booking with status: completed"
    assert exc.value.status_code == 400


def test_insurance_satisfied():
    assert states.insurance_satisfied({"insurance_required": False})
    assert not states.insurance_satisfied({"insurance_required": True})
    assert states.insurance_satisfied({"insurance_required": True, "driver_insurance_valid": True})
    assert states.insurance_satisfied({"insurance_required": True, "partner_provides_insurance": True})


def test_documents_and_payment():
    assert states.documents_satisfied({})
    assert not states.documents_satisfied({"requires_document_verification": True})
    assert states.payment_confirmed({"payment_status": "paid"})
    assert not states.payment_confirmed({"payment_status": "active"})
    assert "active" in states.ACTIVATION_PAYMENT_STATUSES


def test_all_statuses_lists_each_once():
    assert len(states.ALL_STATUSES) == len(set(states.ALL_STATUSES)) == 14
