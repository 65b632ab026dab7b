from datetime import timedelta

import pytest

from conftest import NOW
from portal import bookings, payments
from portal.config import BookingPolicy
from portal.errors import NotAuthorized, NotFound, PersistenceError, ValidationError


def _instruction(db, amount, status="completed", **extra):
    db.seed("payment_instructions", {
        "id": f"pi-{len(db.rows('payment_instructions')) + 1}",
        "booking_id": "bk-1", "driver_id": "drv-1", "partner_id": "ptn-user-1",
        "amount": amount, "status": status, "type": "weekly_rent",
        "method": "bank_transfer", **extra,
    })


# ----------------- CREATE ------------------------

def test_create_booking(fleet_db):
    result = bookings.create_booking(
        fleet_db, "drv-1", "ptn-user-1", "veh-1",
        "2030-01-10T09:00:00+00:00", "2030-02-07T09:00:00+00:00",
        deposit_amount=200, now=NOW,
    )
    assert result["status"] == "pending_payment"
    assert result["total_weeks"] == 4
    assert result["total_amount"] == 1320.0

    booking = fleet_db.one("bookings", result["booking_id"])
    assert booking["weekly_rate"] == 280.0
    assert booking["car_plate"] == "AB12CDE"
    assert booking["partner"]["company_name"] == "North Cars"
    assert fleet_db.one("vehicles", "veh-1")["status"] == "booked"

    instructions = fleet_db.rows("payment_instructions", booking_id=result["booking_id"])
    assert sorted((i["type"], i["amount"], i["frequency"]) for i in instructions) == [
        ("deposit", 200.0, "one_off"),
        ("weekly_rent", 280.0, "weekly"),
    ]
    assert fleet_db.rows("booking_history")[0]["action"] == "booking_created"
    assert {n["recipient_id"] for n in fleet_db.rows("notifications")} == {"drv-1", "ptn-user-1"}


def test_create_booking_uses_given_rate(fleet_db):
    result = bookings.create_booking(fleet_db, "drv-1", "ptn-user-1", "veh-2",
                                     "2030-01-10", "2030-01-17", weekly_rate=300, now=NOW)
    assert result["total_amount"] == 300.0


@pytest.mark.parametrize("start,end,message", [
    ("2030-01-01", "2030-02-01", "Start date cannot be in the past"),
    ("2030-01-20", "2030-01-10", "End date must be after start date"),
    ("someday", "2030-01-10", "Invalid start date"),
])
def test_create_booking_date_errors(fleet_db, start, end, message):
    with pytest.raises(ValidationError) as exc:
        bookings.create_booking(fleet_db, "drv-1", "ptn-user-1", "veh-1", start, end, now=NOW)
    assert exc.value.message == message


def test_create_booking_vehicle_must_be_available(fleet_db):
    fleet_db.one("vehicles", "veh-1")["status"] = "booked"
    with pytest.raises(ValidationError) as exc:
        bookings.create_booking(fleet_db, "drv-1", "ptn-user-1", "veh-1",
                                "2030-01-10", "2030-01-17", now=NOW)
    assert exc.value.message == "Vehicle is not available"
    with pytest.raises(NotFound):
        bookings.create_booking(fleet_db, "drv-1", "ptn-user-1", "veh-404",
                                "2030-01-10", "2030-01-17", now=NOW)


def test_create_booking_insert_failure(fleet_db):
    fleet_db.fail("bookings", "insert")
    with pytest.raises(PersistenceError):
        bookings.create_booking(fleet_db, "drv-1", "ptn-user-1", "veh-1",
                                "2030-01-10", "2030-01-17", now=NOW)
    assert fleet_db.one("vehicles", "veh-1")["status"] == "available"


# ----------------- PARTNER RESPONSE ------------------------

def _pending(fleet_db, booking_row, **extra):
    fields = {"status": "pending_partner_approval", "payment_status": "pending",
              "created_at": "2030-01-07T11:00:00+00:00", **extra}
    fleet_db.seed("bookings", booking_row(**fields))


def test_partner_accepts(fleet_db, booking_row):
    _pending(fleet_db, booking_row)
    result = bookings.partner_response(fleet_db, "bk-1", "ptn-user-1", "accept", now=NOW)
    assert result["status"] == "partner_accepted"
    assert result["response_time"] == 60
    assert fleet_db.rows("partner_drivers")[0]["driver_id"] == "drv-1"
    assert fleet_db.rows("notifications", recipient_id="drv-1")[0]["type"] == "booking_accepted"


def test_partner_accept_with_paid_booking_activates(fleet_db, booking_row):
    fleet_db.one("vehicles", "veh-1")["documents"] = {
        "mot": {"status": "approved", "url": "https://files/mot.pdf"},
    }
    _pending(fleet_db, booking_row, payment_status="paid")
    result = bookings.partner_response(fleet_db, "bk-1", "ptn-user-1", "accept", now=NOW)
    assert result["status"] == "active"
    booking = fleet_db.one("bookings", "bk-1")
    assert booking["activated_trigger"] == "auto_on_acceptance"
    assert list(booking["vehicle_documents"]) == ["mot"]
    assert fleet_db.one("vehicles", "veh-1")["status"] == "booked"


def test_partner_accept_waits_for_insurance(fleet_db, booking_row):
    _pending(fleet_db, booking_row, insurance_required=True)
    result = bookings.partner_response(fleet_db, "bk-1", "ptn-user-1", "accept", now=NOW)
    assert result["status"] == "pending_insurance_upload"


def test_partner_accept_overrides_insurance(fleet_db, booking_row):
    _pending(fleet_db, booking_row, insurance_required=True)
    result = bookings.partner_response(fleet_db, "bk-1", "ptn-user-1", "accept",
                                       override_insurance=True, now=NOW)
    assert result["status"] == "partner_accepted"
    assert fleet_db.one("bookings", "bk-1")["driver_insurance_valid"] is True


def test_partner_rejects_and_refunds(fleet_db, booking_row):
    _pending(fleet_db, booking_row)
    fleet_db.one("vehicles", "veh-1")["status"] = "booked"
    _instruction(fleet_db, 280)
    result = bookings.partner_response(fleet_db, "bk-1", "ptn-user-1", "reject",
                                       rejection_reason="Car in service", now=NOW)
    assert result["status"] == "partner_rejected"
    assert fleet_db.one("bookings", "bk-1")["rejection_reason"] == "Car in service"
    assert fleet_db.one("vehicles", "veh-1")["status"] == "available"
    refunds = fleet_db.rows("payment_instructions", type="refund")
    assert [(r["amount"], r["method"]) for r in refunds] == [(280.0, "weekly")]


def test_rejection_refunds_confirmed_deposit(fleet_db):
    booking_id = bookings.create_booking(
        fleet_db, "drv-1", "ptn-user-1", "veh-1",
        "2030-01-10T09:00:00+00:00", "2030-02-07T09:00:00+00:00",
        deposit_amount=200, now=NOW,
    )["booking_id"]
    deposit = fleet_db.rows("payment_instructions", booking_id=booking_id, type="deposit")[0]
    payments.mark_sent(fleet_db, deposit["id"], "drv-1", now=NOW)
    payments.confirm_received(fleet_db, booking_id=booking_id, now=NOW)
    assert fleet_db.one("bookings", booking_id)["total_paid"] == 200.0

    bookings.partner_response(fleet_db, booking_id, "ptn-user-1", "reject",
                              rejection_reason="Car in service", now=NOW)
    refunds = fleet_db.rows("payment_instructions", type="refund")
    assert [(r["amount"], r["method"], r["status"]) for r in refunds] == [(200.0, "deposit", "pending")]


def test_rejection_refunds_rent_recorded_on_booking(fleet_db, booking_row):
    _pending(fleet_db, booking_row, total_paid=480)
    _instruction(fleet_db, 200, status="deposit_received", type="deposit")
    _instruction(fleet_db, 280, status="pending")
    bookings.partner_response(fleet_db, "bk-1", "ptn-user-1", "reject",
                              rejection_reason="Car in service", now=NOW)
    refunds = fleet_db.rows("payment_instructions", type="refund")
    assert sorted((r["method"], r["amount"]) for r in refunds) == [("deposit", 200.0), ("weekly", 280.0)]


def test_partner_response_guards(fleet_db, booking_row):
    _pending(fleet_db, booking_row)
    with pytest.raises(NotAuthorized):
        bookings.partner_response(fleet_db, "bk-1", "ptn-other", "accept", now=NOW)
    with pytest.raises(ValidationError):
        bookings.partner_response(fleet_db, "bk-1", "ptn-user-1", "maybe", now=NOW)
    fleet_db.one("bookings", "bk-1")["status"] = "active"
    with pytest.raises(ValidationError):
        bookings.partner_response(fleet_db, "bk-1", "ptn-user-1", "accept", now=NOW)


# ----------------- ACTIVATION ------------------------

def test_start_active_lists_unmet_requirements(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row(status="partner_accepted", payment_status="pending",
                                          insurance_required=True))
    readiness = bookings.activation_readiness(fleet_db, "bk-1")
    assert readiness["can_activate"] is False
    assert readiness["requirements"] == ["payment_confirmed", "insurance_valid"]

    with pytest.raises(ValidationError) as exc:
        bookings.start_active(fleet_db, "bk-1", "ptn-user-1", now=NOW)
    assert exc.value.message == "Booking requirements not met: payment confirmation, valid insurance"


def test_start_active_bypass_and_repeat(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row(status="partner_accepted", payment_status="pending"))
    result = bookings.start_active(fleet_db, "bk-1", "ptn-user-1", bypass_requirements=True, now=NOW)
    assert result == {"status": "active", "already_active": False, "booking": result["booking"]}
    assert fleet_db.one("vehicles", "veh-1")["status"] == "booked"

    again = bookings.start_active(fleet_db, "bk-1", "ptn-user-1", now=NOW)
    assert again["already_active"] is True


# ----------------- RETURNS ------------------------

def test_return_request_then_approve(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row())
    result = bookings.request_return(fleet_db, "bk-1", "drv-1", "driver", reason="Moving away", now=NOW)
    assert result["return_requested"] is True
    assert fleet_db.rows("notifications", recipient_id="ptn-user-1")[0]["type"] == "return_requested"

    with pytest.raises(ValidationError) as exc:
        bookings.request_return(fleet_db, "bk-1", "drv-1", "driver", now=NOW)
    assert exc.value.message == "Return already requested"

    done = bookings.request_return(fleet_db, "bk-1", "ptn-user-1", "partner", action="approve", now=NOW)
    assert done["status"] == "completed"
    assert fleet_db.one("vehicles", "veh-1")["status"] == "available"


def test_return_reject_and_guards(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row())
    with pytest.raises(ValidationError) as exc:
        bookings.request_return(fleet_db, "bk-1", "ptn-user-1", "partner", action="reject", now=NOW)
    assert exc.value.message == "No return has been requested"
    with pytest.raises(NotAuthorized):
        bookings.request_return(fleet_db, "bk-1", "drv-2", "driver", now=NOW)

    bookings.request_return(fleet_db, "bk-1", "drv-1", "driver", now=NOW)
    result = bookings.request_return(fleet_db, "bk-1", "ptn-user-1", "partner", action="reject",
                                     reason="Contract term", now=NOW)
    assert result["return_requested"] is False
    assert fleet_db.one("bookings", "bk-1")["return_rejection_reason"] == "Contract term"


# ----------------- VEHICLE CHANGES ------------------------

def test_vehicle_change_adjustment_types():
    assert bookings.vehicle_change_adjustment(280, 350, 280, "immediate")["adjustment"] == 70
    assert bookings.vehicle_change_adjustment(280, 350, 280, "next_cycle")["adjustment"] == 0
    calc = bookings.vehicle_change_adjustment(280, 350, 280, "prorated", days_used=42)
    assert calc["remaining_days"] == 7
    assert calc["adjustment"] == 70.0
    assert bookings.vehicle_change_adjustment(0, 350, 280, "prorated")["adjustment"] == 0


def test_change_vehicle(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row())
    fleet_db.one("vehicles", "veh-1")["status"] = "booked"
    _instruction(fleet_db, 280)
    result = bookings.change_vehicle(fleet_db, "bk-1", "ptn-user-1", "veh-2", "Accident repair",
                                     adjustment_type="immediate", now=NOW)
    assert result["adjustment"] == 70
    assert result["new_rate"] == 350.0

    booking = fleet_db.one("bookings", "bk-1")
    assert booking["current_vehicle_id"] == "veh-2"
    assert booking["car_plate"] == "XY34ZZZ"
    assert booking["vehicle_history"][0]["from_vehicle_id"] == "veh-1"
    assert fleet_db.one("vehicles", "veh-1")["status"] == "available"
    assert fleet_db.one("vehicles", "veh-2")["status"] == "booked"
    payment = fleet_db.rows("payments")[0]
    assert payment["amount"] == 70
    assert payment["reference"].startswith("inv_")
    assert fleet_db.rows("transactions")[0]["category"] == "Vehicle Change Adjustment"


def test_change_vehicle_guards(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row())
    with pytest.raises(ValidationError) as exc:
        bookings.change_vehicle(fleet_db, "bk-1", "ptn-user-1", "veh-1", "same", now=NOW)
    assert exc.value.message == "Booking already uses this vehicle"
    fleet_db.one("vehicles", "veh-2")["status"] = "maintenance"
    with pytest.raises(ValidationError) as exc:
        bookings.change_vehicle(fleet_db, "bk-1", "ptn-user-1", "veh-2", "swap", now=NOW)
    assert exc.value.message == "New vehicle is not available"


def test_release_vehicle(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row())
    fleet_db.one("vehicles", "veh-1")["status"] = "booked"
    result = bookings.release_vehicle(fleet_db, "bk-1", "ptn-user-1", "partner", reason="MOT", now=NOW)
    assert result["vehicle_id"] == "veh-1"
    assert fleet_db.one("bookings", "bk-1")["vehicle_released"] is True
    assert fleet_db.one("vehicles", "veh-1")["status"] == "available"
    assert fleet_db.rows("notifications", recipient_id="drv-1")[0]["type"] == "vehicle_released"


def test_release_vehicle_without_vehicle(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row(vehicle_id=None, current_vehicle_id=None))
    with pytest.raises(ValidationError) as exc:
        bookings.release_vehicle(fleet_db, "bk-1", "ptn-user-1", "partner", now=NOW)
    assert exc.value.message == "No vehicle assigned to this booking"


# ----------------- ISSUES ------------------------

def test_report_issue(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row())
    result = bookings.report_issue(fleet_db, "bk-1", "mechanical", "Warning light on", "drv-1",
                                   "driver", severity="critical", now=NOW)
    issues = fleet_db.one("bookings", "bk-1")["issues"]
    assert issues == [result["issue"]]
    assert result["issue"]["status"] == "open"
    admin = fleet_db.rows("notifications", recipient_type="admin")[0]
    assert admin["priority"] == "high"

    with pytest.raises(ValidationError):
        bookings.report_issue(fleet_db, "bk-1", "ufo", "?", "drv-1", "driver", now=NOW)


# ----------------- CANCEL / FINISH ------------------------

def test_cancel_prorated_refund(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row())
    _instruction(fleet_db, 560)
    result = bookings.cancel_booking(fleet_db, "bk-1", "Changed plans", "prorated", now=NOW)
    assert result["days_used"] == 7
    assert result["remaining_days"] == 21
    assert result["refund_amount"] == 280.0
    assert result["refund_reference"] == f"ref_{int(NOW.timestamp() * 1000)}"

    booking = fleet_db.one("bookings", "bk-1")
    assert booking["status"] == "cancelled"
    assert booking["payment_status"] == "refunded"
    rows = fleet_db.rows("transactions")
    assert [(r["type"], r["amount"], r["source"]) for r in rows] == [
        ("income", -280.0, "refund"),
        ("expense", -280.0, "refund"),
    ]


def test_cancel_full_and_none(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row())
    _instruction(fleet_db, 560)
    assert bookings.cancel_booking(fleet_db, "bk-1", "r", "full", now=NOW)["refund_amount"] == 560.0

    fleet_db.seed("bookings", booking_row(id="bk-2"))
    result = bookings.cancel_booking(fleet_db, "bk-2", "r", "none", now=NOW)
    assert result["refund_amount"] == 0.0
    assert result["refund_reference"] is None


def test_cancel_guards(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row(status="completed"))
    with pytest.raises(ValidationError):
        bookings.cancel_booking(fleet_db, "bk-1", "r", "prorated", now=NOW)
    with pytest.raises(ValidationError):
        bookings.cancel_booking(fleet_db, "bk-1", "r", "partial", now=NOW)


def test_finish_with_outstanding_balance(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row())
    result = bookings.finish_booking(fleet_db, "bk-1", "ptn-user-1", "partner",
                                     final_mileage=42000, now=NOW)
    assert result["total_days"] == 7
    assert result["final_amount"] == 280.0
    assert result["outstanding_amount"] == 280.0
    assert fleet_db.one("bookings", "bk-1")["payment_status"] == "outstanding"
    final = fleet_db.rows("payment_instructions", type="final_payment")
    assert final[0]["amount"] == 280.0


def test_finish_fully_paid(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row())
    _instruction(fleet_db, 280)
    result = bookings.finish_booking(fleet_db, "bk-1", "drv-1", "driver", now=NOW)
    assert result["outstanding_amount"] == 0
    assert fleet_db.one("bookings", "bk-1")["payment_status"] == "completed"
    assert fleet_db.rows("payment_instructions", type="final_payment") == []


def test_booking_update_failure_aborts(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row())
    fleet_db.fail("bookings", "update")
    with pytest.raises(PersistenceError):
        bookings.finish_booking(fleet_db, "bk-1", "drv-1", "driver", now=NOW)
    assert fleet_db.rows("booking_history") == []


# ----------------- DEADLINES ------------------------

def test_auto_reject_after_acceptance_deadline(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row(
        status="pending_partner_approval",
        partner_acceptance_deadline=(NOW - timedelta(hours=1)).isoformat()))
    result = bookings.check_deadlines(fleet_db, "bk-1", now=NOW)
    assert result["actions_taken"] == ["auto_rejected"]
    assert result["notifications_sent"] == ["driver_auto_rejected", "admin_auto_rejected"]
    assert fleet_db.one("bookings", "bk-1")["status"] == "auto_rejected"
    assert fleet_db.rows("booking_history")[0]["performed_by"] == "system"


def test_partner_reminder_inside_window(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row(
        status="pending_partner_approval",
        partner_acceptance_deadline=(NOW + timedelta(hours=1)).isoformat()))
    result = bookings.check_deadlines(fleet_db, "bk-1", now=NOW)
    assert result["checks_performed"] == ["partner_acceptance_deadline"]
    assert result["actions_taken"] == []
    assert result["notifications_sent"] == ["partner_reminder"]

    quiet = bookings.check_deadlines(fleet_db, "bk-1", now=NOW,
                                     policy=BookingPolicy(partner_reminder_hours=0.5))
    assert quiet["notifications_sent"] == []


def test_payment_and_insurance_expiry(fleet_db, booking_row):
    past = (NOW - timedelta(minutes=5)).isoformat()
    fleet_db.seed("bookings",
                  booking_row(status="pending_payment", payment_deadline=past),
                  booking_row(id="bk-2", status="pending_insurance_upload",
                              insurance_upload_deadline=past))
    assert bookings.check_deadlines(fleet_db, "bk-1", now=NOW)["actions_taken"] == ["payment_expired"]
    assert bookings.check_deadlines(fleet_db, "bk-2", now=NOW)["actions_taken"] == ["insurance_expired"]
    assert fleet_db.one("bookings", "bk-2")["status"] == "insurance_expired"


def test_active_booking_past_end_is_overdue(fleet_db, booking_row):
    fleet_db.seed("bookings", booking_row(end_date="2030-01-06T09:00:00+00:00"))
    result = bookings.check_deadlines(fleet_db, "bk-1", now=NOW)
    assert result["actions_taken"] == ["marked_overdue"]
    assert result["notifications_sent"] == ["driver_overdue", "partner_overdue"]


def test_sweep_deadlines_reports_failures(fleet_db, booking_row):
    fleet_db.seed("bookings",
                  booking_row(end_date="2030-01-06T09:00:00+00:00"),
                  booking_row(id="bk-2"),
                  booking_row(id="bk-3", status="completed", end_date="2030-01-06T09:00:00+00:00"))
    result = bookings.sweep_deadlines(fleet_db, now=NOW)
    assert result["checked"] == 2
    assert [a["booking_id"] for a in result["actions"]] == ["bk-1"]

    fleet_db.one("bookings", "bk-2")["end_date"] = "2030-01-06T09:00:00+00:00"
    fleet_db.fail("bookings", "update")
    result = bookings.sweep_deadlines(fleet_db, now=NOW)
    assert result["failed"] == ["bk-2"]


def test_booking_timeline_requires_booking(fleet_db):
    with pytest.raises(NotFound):
        bookings.booking_timeline(fleet_db, "missing")


def test_recent_bookings_newest_first(fleet_db, booking_row):
    fleet_db.seed("bookings",
                  booking_row(),
                  booking_row(id="bk-2", created_at="2030-01-03T08:00:00+00:00"),
                  booking_row(id="bk-3", partner_id="ptn-user-2", created_at="2030-01-05T08:00:00+00:00"))
    assert [b["id"] for b in bookings.recent_bookings(fleet_db, limit=2)] == ["bk-3", "bk-2"]
    assert [b["id"] for b in bookings.recent_bookings(fleet_db, partner_id="ptn-user-1")] == ["bk-2", "bk-1"]


@pytest.mark.parametrize("call", [
    lambda db: bookings.request_return(db, "bk-1", "bot-1", "robot", now=NOW),
    lambda db: bookings.release_vehicle(db, "bk-1", "bot-1", "robot", now=NOW),
    lambda db: bookings.report_issue(db, "bk-1", "damage", "Dent", "bot-1", "robot", now=NOW),
    lambda db: bookings.finish_booking(db, "bk-1", "bot-1", "robot", now=NOW),
])
def test_unknown_actor_type_is_rejected(fleet_db, booking_row, call):
    fleet_db.seed("bookings", booking_row())
    with pytest.raises(ValidationError) as exc:
        call(fleet_db)
    assert exc.value.message == "Invalid actor type: robot"
    assert fleet_db.one("bookings", "bk-1")["status"] == "active"
    assert fleet_db.rows("booking_history") == []
