from portal import permissions


def test_super_admin_has_everything():
    for cap in permissions.CAPABILITIES:
        assert permissions.has_permission("SUPER_ADMIN", cap, "FULL")


def test_admin_cannot_manage_roles():
    assert not permissions.has_permission("ADMIN", "roleManagement")
    assert permissions.has_permission("ADMIN", "bookingManagement", "FULL")


def test_admin_staff_overrides():
    assert not permissions.has_permission("ADMIN_STAFF", "documentApproval")
    assert permissions.has_permission("ADMIN_STAFF", "documentApproval", "MANAGE",
                                      staff_permissions={"documentApproval": "MANAGE"})


def test_levels_are_ordered():
    assert permissions.level_at_least("FULL", "MANAGE")
    assert permissions.level_at_least("view", "LIMITED")
    assert not permissions.level_at_least("LIMITED", "VIEW")
    assert not permissions.level_at_least("BOGUS", "VIEW")


def test_unknown_role_has_nothing():
    assert not permissions.has_permission("GUEST", "analyticsAccess")


def test_staff_can_needs_active_row_and_flag():
    row = {"is_active": True, "permissions": {"canViewFinancials": True}}
    assert permissions.staff_can(row, "canViewFinancials")
    assert not permissions.staff_can(row, "canManageFleet")
    assert not permissions.staff_can({**row, "is_active": False}, "canViewFinancials")
    assert not permissions.staff_can(None, "canViewFinancials")


def test_normalise_role_and_is_admin():
    assert permissions.normalise_role({"role": "partner_staff"}) == "PARTNER_STAFF"
    assert permissions.normalise_role({"role": "wizard"}) == "DRIVER"
    assert permissions.normalise_role(None) == "DRIVER"
    assert permissions.is_admin({"role": "admin_staff"})
    assert not permissions.is_admin({"role": "partner"})
