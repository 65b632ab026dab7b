from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

ROLES = ("SUPER_ADMIN", "ADMIN", "ADMIN_STAFF", "STAFF", "PARTNER", "PARTNER_STAFF", "DRIVER")

ROLE_LABELS = {
    "SUPER_ADMIN": "Super Admin",
    "ADMIN": "Admin",
    "ADMIN_STAFF": "Admin Staff",
    "STAFF": "Staff",
    "PARTNER": "Partner",
    "PARTNER_STAFF": "Partner Staff",
    "DRIVER": "Driver",
}

LEVELS = ("NONE", "LIMITED", "VIEW", "MANAGE", "FULL")

CAPABILITIES = (
    "systemSettings", "roleManagement",
    "fleetManagement", "vehicleApproval", "fleetAnalytics",
    "partnerManagement", "partnerApproval",
    "driverManagement", "driverApproval",
    "bookingManagement", "bookingApproval",
    "financialManagement", "paymentManagement", "revenueAnalytics",
    "documentManagement", "documentApproval",
    "supportManagement", "notificationManagement",
    "analyticsAccess", "reportGeneration",
    "securityManagement", "auditLogs", "complianceManagement",
)


def _table(default: str, **overrides: str) -> Dict[str, str]:
    perms = {cap: default for cap in CAPABILITIES}
    perms.update(overrides)
    return perms


ROLE_PERMISSIONS: Dict[str, Dict[str, str]] = {
    "SUPER_ADMIN": _table("FULL"),
    "ADMIN": _table(
        "FULL",
        systemSettings="VIEW", roleManagement="NONE",
        securityManagement="VIEW", auditLogs="VIEW", complianceManagement="VIEW",
    ),
    "ADMIN_STAFF": _table(
        "VIEW",
        systemSettings="NONE", roleManagement="NONE",
        vehicleApproval="NONE", partnerApproval="NONE", driverApproval="NONE",
        bookingApproval="NONE", documentApproval="NONE",
        supportManagement="MANAGE",
        securityManagement="NONE", auditLogs="NONE", complianceManagement="NONE",
    ),
    "STAFF": _table("NONE"),
    "PARTNER": _table(
        "NONE",
        fleetManagement="FULL", fleetAnalytics="VIEW",
        driverManagement="VIEW",
        bookingManagement="FULL", bookingApproval="FULL",
        financialManagement="MANAGE", paymentManagement="MANAGE", revenueAnalytics="VIEW",
        documentManagement="MANAGE",
        notificationManagement="VIEW", analyticsAccess="VIEW", reportGeneration="VIEW",
    ),
    "PARTNER_STAFF": _table(
        "NONE",
        fleetManagement="LIMITED", bookingManagement="LIMITED",
        documentManagement="LIMITED", notificationManagement="VIEW",
    ),
    "DRIVER": _table(
        "NONE",
        bookingManagement="LIMITED", paymentManagement="LIMITED",
        documentManagement="LIMITED", notificationManagement="VIEW",
    ),
}

# Flags stored on partner_staff.permissions
STAFF_FLAGS = (
    "canManageFleet",
    "canManageStaff",
    "canManageBookings",
    "canManageClaims",
    "canViewFinancials",
    "canManageDocuments",
)


def level_at_least(level: str, required: str) -> bool:
    level = (level or "NONE").upper()
    required = (required or "VIEW").upper()
    if level not in LEVELS or required not in LEVELS:
        return False
    return LEVELS.index(level) >= LEVELS.index(required)


def has_permission(
    role: str,
    capability: str,
    required: str = "VIEW",
    staff_permissions: Optional[Mapping[str, str]] = None,
) -> bool:
    """Role table lookup; admin staff may carry per-person overrides."""
    role = (role or "").upper()
    if role == "SUPER_ADMIN":
        return True
    if role == "ADMIN_STAFF" and staff_permissions and capability in staff_permissions:
        return level_at_least(staff_permissions[capability], required)
    table = ROLE_PERMISSIONS.get(role)
    if not table:
        return False
    return level_at_least(table.get(capability, "NONE"), required)


def staff_can(staff_row: Optional[Dict[str, Any]], flag: str) -> bool:
    if not staff_row or not staff_row.get("is_active", True):
        return False
    return bool((staff_row.get("permissions") or {}).get(flag))


def normalise_role(user: Optional[Dict[str, Any]]) -> str:
    """users.role is stored lowercase ("partner_staff"); tables are keyed uppercase."""
    role = ((user or {}).get("role") or "driver").upper()
    return role if role in ROLES else "DRIVER"


def is_admin(user: Optional[Dict[str, Any]]) -> bool:
    return normalise_role(user) in ("SUPER_ADMIN", "ADMIN", "ADMIN_STAFF")
