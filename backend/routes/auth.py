"""
HomeXpert - Routes Auth
Sessions for staff and vendors, vendor self-registration,
staff user management and the activity journal.
"""

import logging
import uuid
from datetime import datetime, timezone, timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Request, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from models.auth import UserLogin, UserCreate, UserUpdate, VALID_ROLES, VENDOR_ROLE
from models.vendor import VendorRegister
from config import db, hash_password, generate_token, now_iso, SESSION_DAYS
from services.activity_logger import log_activity, get_activity_logs
from services.notification_service import notify_admins
from services.vendor_service import create_vendor, VendorError
from services.role_service import permissions_for_custom_role, RoleError
from services.permissions import (
    get_preset_permissions,
    require_permission,
    ALL_PERMISSION_KEYS,
    ROLE_PRESETS,
)

logger = logging.getLogger("auth")

router = APIRouter(prefix="/auth", tags=["Auth"])
security = HTTPBearer(auto_error=False)


# ==================== SESSION DEPENDENCIES ====================

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Resolve the logged-in account (staff or vendor) from the bearer token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    session = await db.sessions.find_one({"token": credentials.credentials, "expires_at": {"$gt": now_iso()}})
    if not session:
        raise HTTPException(status_code=401, detail="Session expired")

    account = await db.users.find_one({"id": session["user_id"]}, {"_id": 0, "password": 0})
    if not account:
        raise HTTPException(status_code=401, detail="User not found")
    if not account.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account disabled")

    # Staff created before permissions existed fall back to their role preset
    if account.get("role") != VENDOR_ROLE and not account.get("permissions"):
        account["permissions"] = get_preset_permissions(account.get("role", "viewer"))
    return account


async def get_current_vendor(user: dict = Depends(get_current_user)):
    """
    Vendor-only endpoints.
    Returns the vendor document with the login account attached under "user".
    """
    if user.get("role") != VENDOR_ROLE:
        raise HTTPException(status_code=403, detail="Vendor access required")

    vendor = await db.vendors.find_one({"id": user.get("vendor_id")}, {"_id": 0})
    if not vendor:
        raise HTTPException(status_code=404, detail="Vendor profile not found")
    if vendor.get("status") in ("suspended", "inactive"):
        raise HTTPException(status_code=403, detail=f"Vendor account is {vendor['status']}")

    vendor["user"] = user
    return vendor


def staff_actor(user: dict) -> dict:
    return {"id": user.get("id"), "type": "admin", "name": user.get("name", "")}


def vendor_actor(vendor: dict) -> dict:
    return {"id": vendor["id"], "type": "vendor", "name": vendor.get("business_name", "")}


def _session_profile(account: dict) -> dict:
    is_vendor = account.get("role") == VENDOR_ROLE
    return {
        "id": account["id"],
        "email": account["email"],
        "name": account.get("name", ""),
        "role": account.get("role", "viewer"),
        "vendor_id": account.get("vendor_id"),
        "permissions": {} if is_vendor else (
            account.get("permissions") or get_preset_permissions(account.get("role", "viewer"))
        ),
    }


# ==================== LOGIN / LOGOUT ====================

@router.post("/login")
async def login(data: UserLogin, request: Request):
    email = data.email.lower().strip()
    account = await db.users.find_one({"email": email}, {"_id": 0})

    if not account or account.get("password") != hash_password(data.password):
        logger.warning(f"[LOGIN_FAILED] {email}")
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not account.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account disabled")

    token = generate_token()
    await db.sessions.insert_one({
        "token": token,
        "user_id": account["id"],
        "created_at": now_iso(),
        "expires_at": (datetime.now(timezone.utc) + timedelta(days=SESSION_DAYS)).isoformat(),
    })
    await db.users.update_one({"id": account["id"]}, {"$set": {"last_login_at": now_iso()}})

    await log_activity(
        user=account,
        action="login",
        entity_type="user",
        entity_id=account["id"],
        ip_address=request.client.host if request.client else None
    )
    return {"token": token, "user": _session_profile(account)}


@router.post("/logout")
async def logout(
    user: dict = Depends(get_current_user),
    credentials: HTTPAuthorizationCredentials = Depends(security)
):
    await db.sessions.delete_one({"token": credentials.credentials})
    await log_activity(user, "logout", "user", user["id"])
    return {"success": True}


@router.get("/me")
async def get_me(user: dict = Depends(get_current_user)):
    if user.get("role") == VENDOR_ROLE:
        user["vendor"] = await db.vendors.find_one({"id": user.get("vendor_id")}, {"_id": 0})
    return user


# ==================== VENDOR SELF-REGISTRATION ====================

@router.post("/vendor/register")
async def register_vendor(data: VendorRegister):
    """Vendor signs up. The account stays pending until an admin activates it."""
    try:
        vendor = await create_vendor(data.model_dump(), status="pending")
    except VendorError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await notify_admins(
        "New vendor registration",
        f"{vendor['business_name']} registered and is waiting for approval.",
        type="system",
        data={"vendor_id": vendor["id"]},
    )
    return {"success": True, "vendor": vendor}


# ==================== STAFF USERS (users.manage) ====================

def _guard_super_admin(actor: dict, target_role: str, message: str):
    """Only a super_admin may create, modify or deactivate a super_admin."""
    if target_role == "super_admin" and actor.get("role") != "super_admin":
        raise HTTPException(status_code=403, detail=message)


async def _custom_role_permissions(role_id: str) -> dict:
    try:
        return await permissions_for_custom_role(role_id)
    except RoleError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


async def _get_staff_user(user_id: str) -> dict:
    target = await db.users.find_one({"id": user_id, "role": {"$in": VALID_ROLES}}, {"_id": 0, "password": 0})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    return target


@router.get("/users")
async def list_users(
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    user: dict = Depends(require_permission("users.manage"))
):
    query = {"role": {"$in": VALID_ROLES}}
    if role:
        if role not in VALID_ROLES:
            raise HTTPException(status_code=400, detail=f"Invalid role: {role}")
        query["role"] = role
    if is_active is not None:
        query["is_active"] = is_active

    users = await db.users.find(query, {"_id": 0, "password": 0}).sort("created_at", -1).to_list(200)
    return {"users": users, "count": len(users)}


@router.post("/users")
async def create_user(data: UserCreate, user: dict = Depends(require_permission("users.manage"))):
    email = data.email.lower().strip()
    if await db.users.find_one({"email": email}, {"_id": 1}):
        raise HTTPException(status_code=400, detail="Email already in use")

    _guard_super_admin(user, data.role, "Only a super_admin can create a super_admin")

    permissions = data.permissions or get_preset_permissions(data.role)
    if data.custom_role_id:
        permissions = await _custom_role_permissions(data.custom_role_id)

    staff = {
        "id": str(uuid.uuid4()),
        "email": email,
        "password": hash_password(data.password),
        "name": data.name,
        "phone": data.phone,
        "role": data.role,
        "permissions": permissions,
        "custom_role_id": data.custom_role_id or None,
        "is_active": True,
        "created_at": now_iso(),
        "created_by": user.get("id"),
    }
    await db.users.insert_one(dict(staff))
    logger.info(f"[USER_CREATED] {email} role={data.role} by={user.get('email')}")

    await log_activity(user, "create", "user", staff["id"], email, {"role": data.role})

    staff.pop("password")
    return {"success": True, "user": staff}


@router.put("/users/{user_id}")
async def update_user(user_id: str, data: UserUpdate, user: dict = Depends(require_permission("users.manage"))):
    target = await _get_staff_user(user_id)
    _guard_super_admin(user, target.get("role"), "Cannot modify a super_admin")

    changes = data.model_dump(exclude_none=True)
    if "role" in changes:
        _guard_super_admin(user, changes["role"], "Cannot grant the super_admin role")
        # A role change without explicit permissions resets them to the new preset
        changes.setdefault("permissions", get_preset_permissions(changes["role"]))
    if changes.get("custom_role_id"):
        changes["permissions"] = await _custom_role_permissions(changes["custom_role_id"])
    elif "custom_role_id" in changes or "permissions" in changes:
        # Explicit permissions or an empty custom_role_id unlink the custom role
        changes["custom_role_id"] = None
        changes.setdefault("permissions", get_preset_permissions(changes.get("role", target.get("role"))))
    if not changes:
        return {"success": True, "user": target}

    await db.users.update_one({"id": user_id}, {"$set": {**changes, "updated_at": now_iso()}})
    await log_activity(user, "update", "user", user_id, target.get("email"), changes)

    return {"success": True, "user": await _get_staff_user(user_id)}


@router.delete("/users/{user_id}")
async def deactivate_user(user_id: str, user: dict = Depends(require_permission("users.manage"))):
    """Soft delete: the account is disabled and every open session revoked."""
    target = await _get_staff_user(user_id)
    if user_id == user.get("id"):
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
    _guard_super_admin(user, target.get("role"), "Cannot deactivate a super_admin")

    await db.users.update_one({"id": user_id}, {"$set": {"is_active": False, "deactivated_at": now_iso()}})
    revoked = await db.sessions.delete_many({"user_id": user_id})
    logger.info(f"[USER_DEACTIVATED] {target.get('email')} sessions_revoked={revoked.deleted_count}")

    await log_activity(user, "delete", "user", user_id, target.get("email"))
    return {"success": True}


@router.get("/permission-keys")
async def list_permission_keys(user: dict = Depends(require_permission("users.manage"))):
    return {"keys": ALL_PERMISSION_KEYS, "presets": ROLE_PRESETS, "roles": VALID_ROLES}


# ==================== ACTIVITY LOG ====================

@router.get("/activity-logs")
async def list_activity_logs(
    user_id: Optional[str] = None,
    vendor_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    actor_type: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    skip: int = Query(0, ge=0),
    user: dict = Depends(require_permission("activity.view"))
):
    filters = {
        "user_id": user_id,
        "vendor_id": vendor_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "actor_type": actor_type,
    }
    return await get_activity_logs(filters, date_from=date_from, date_to=date_to, limit=limit, skip=skip)
