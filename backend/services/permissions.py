"""
HomeXpert - Permission System
Granular permission keys + staff role presets + FastAPI dependencies.
Permissions are the source of truth. Roles are presets only.
Vendors never carry staff permissions.
"""

import logging
from typing import Dict
from fastapi import Depends, HTTPException

logger = logging.getLogger("permissions")

# ════════════════════════════════════════════════════════════════════════
# ALL PERMISSION KEYS
# ════════════════════════════════════════════════════════════════════════

ALL_PERMISSION_KEYS = [
    "dashboard.view",

    "leads.view",
    "leads.create",
    "leads.edit",
    "leads.assign",
    "leads.delete",
    "leads.refund",

    "vendors.view",
    "vendors.manage",

    "subscriptions.view",
    "subscriptions.manage",
    "payments.verify",

    "support.view",
    "support.reply",
    "support.manage",

    "activity.view",

    "users.manage",
]

# ════════════════════════════════════════════════════════════════════════
# ROLE PRESETS (defaults when creating a user with a role)
# ════════════════════════════════════════════════════════════════════════

ROLE_PRESETS: Dict[str, Dict[str, bool]] = {
    "super_admin": {k: True for k in ALL_PERMISSION_KEYS},

    "admin": {
        **{k: True for k in ALL_PERMISSION_KEYS},
        "users.manage": False,
    },

    "support": {
        "dashboard.view": True,
        "leads.view": True, "leads.create": False, "leads.edit": False,
        "leads.assign": False, "leads.delete": False, "leads.refund": False,
        "vendors.view": True, "vendors.manage": False,
        "subscriptions.view": True, "subscriptions.manage": False, "payments.verify": False,
        "support.view": True, "support.reply": True, "support.manage": True,
        "activity.view": False,
        "users.manage": False,
    },

    "viewer": {
        "dashboard.view": True,
        "leads.view": True, "leads.create": False, "leads.edit": False,
        "leads.assign": False, "leads.delete": False, "leads.refund": False,
        "vendors.view": True, "vendors.manage": False,
        "subscriptions.view": True, "subscriptions.manage": False, "payments.verify": False,
        "support.view": True, "support.reply": False, "support.manage": False,
        "activity.view": False,
        "users.manage": False,
    },
}


def get_preset_permissions(role: str) -> Dict[str, bool]:
    """Returns the default permissions for a role."""
    return dict(ROLE_PRESETS.get(role, ROLE_PRESETS["viewer"]))


def user_has_permission(user: dict, key: str) -> bool:
    """Check if user has a specific permission."""
    if user.get("role") == "super_admin":
        return True
    if user.get("role") == "vendor":
        return False
    perms = user.get("permissions") or {}
    return perms.get(key, False) is True


# ════════════════════════════════════════════════════════════════════════
# FASTAPI DEPENDENCIES
# ════════════════════════════════════════════════════════════════════════

def require_permission(permission_key: str):
    """
    FastAPI dependency factory.
    Usage: user: dict = Depends(require_permission("leads.view"))
    """
    from routes.auth import get_current_user

    async def _check(user: dict = Depends(get_current_user)):
        if not user_has_permission(user, permission_key):
            logger.warning(
                f"[PERMISSION_DENIED] user={user.get('email')} "
                f"key={permission_key} role={user.get('role')}"
            )
            raise HTTPException(
                status_code=403,
                detail=f"Permission required: {permission_key}"
            )
        return user

    return _check
