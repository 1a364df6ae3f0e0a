"""
HomeXpert - Custom roles
Built-in roles (ROLE_PRESETS) are read-only. Custom roles live in `roles`
and hand their permission set to every staff user linked by custom_role_id.
"""

import logging
import re
import uuid
from typing import Dict, Any, List, Optional

from config import db, now_iso
from models.auth import VALID_ROLES
from services.permissions import ALL_PERMISSION_KEYS, ROLE_PRESETS

logger = logging.getLogger("roles")


class RoleError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def permission_map(keys: List[str]) -> Dict[str, bool]:
    """Full {key: bool} map from a list of granted keys."""
    unknown = sorted(set(keys) - set(ALL_PERMISSION_KEYS))
    if unknown:
        raise RoleError(f"Unknown permission key(s): {unknown}")
    granted = set(keys)
    return {k: k in granted for k in ALL_PERMISSION_KEYS}


def _granted(perms: Dict[str, bool]) -> List[str]:
    return [k for k in ALL_PERMISSION_KEYS if perms.get(k)]


async def _user_count(role_id: str) -> int:
    return await db.users.count_documents({"custom_role_id": role_id})


def system_roles() -> List[Dict[str, Any]]:
    return [
        {
            "id": name,
            "name": name,
            "description": "Built-in role",
            "permissions": _granted(ROLE_PRESETS[name]),
            "is_system_role": True,
        }
        for name in VALID_ROLES
    ]


async def list_roles(search: Optional[str] = None) -> List[Dict[str, Any]]:
    query = {}
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query = {"$or": [{"name": pattern}, {"description": pattern}]}

    custom = await db.roles.find(query, {"_id": 0}).sort("created_at", -1).to_list(200)
    for role in custom:
        role["user_count"] = await _user_count(role["id"])

    builtin = system_roles()
    if search:
        needle = search.strip().lower()
        builtin = [r for r in builtin if needle in r["name"]]
    for role in builtin:
        role["user_count"] = await db.users.count_documents(
            {"role": role["name"], "custom_role_id": None}
        )
    return builtin + custom


async def _get_custom_role(role_id: str) -> Dict[str, Any]:
    role = await db.roles.find_one({"id": role_id}, {"_id": 0})
    if not role:
        if role_id in VALID_ROLES:
            raise RoleError("Built-in roles cannot be modified", 400)
        raise RoleError("Role not found", 404)
    return role


async def get_role(role_id: str) -> Dict[str, Any]:
    if role_id in VALID_ROLES:
        role = next(r for r in system_roles() if r["id"] == role_id)
        role["user_count"] = await db.users.count_documents({"role": role_id, "custom_role_id": None})
        return role
    role = await _get_custom_role(role_id)
    role["user_count"] = await _user_count(role_id)
    return role


async def _check_name_free(name: str, exclude_id: Optional[str] = None):
    if name in VALID_ROLES or name == "vendor":
        raise RoleError(f"'{name}' is a built-in role", 409)
    query = {"name": name}
    if exclude_id:
        query["id"] = {"$ne": exclude_id}
    if await db.roles.find_one(query, {"_id": 1}):
        raise RoleError("Role with this name already exists", 409)


async def create_role(data: Dict[str, Any], created_by: Optional[str]) -> Dict[str, Any]:
    await _check_name_free(data["name"])
    perms = permission_map(data.get("permissions") or [])

    role = {
        "id": str(uuid.uuid4()),
        "name": data["name"],
        "description": (data.get("description") or "").strip(),
        "permissions": _granted(perms),
        "is_system_role": False,
        "created_by": created_by,
        "created_at": now_iso(),
        "updated_at": now_iso(),
    }
    await db.roles.insert_one(dict(role))
    logger.info(f"[ROLE_CREATED] {role['name']} permissions={len(role['permissions'])}")
    role["user_count"] = 0
    return role


async def update_role(role_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Rename / redescribe / re-permission a custom role.
    A new permission set is pushed to every user holding the role.
    """
    role = await _get_custom_role(role_id)
    update = {}
    if "name" in changes and changes["name"] != role["name"]:
        await _check_name_free(changes["name"], exclude_id=role_id)
        update["name"] = changes["name"]
    if "description" in changes:
        update["description"] = changes["description"].strip()
    if "permissions" in changes:
        perms = permission_map(changes["permissions"])
        update["permissions"] = _granted(perms)

    if not update:
        role["user_count"] = await _user_count(role_id)
        return role

    update["updated_at"] = now_iso()
    await db.roles.update_one({"id": role_id}, {"$set": update})

    if "permissions" in update:
        result = await db.users.update_many(
            {"custom_role_id": role_id},
            {"$set": {"permissions": perms, "updated_at": update["updated_at"]}}
        )
        logger.info(f"[ROLE_PERMISSIONS_SYNCED] {role['name']} users={result.modified_count}")

    updated = await db.roles.find_one({"id": role_id}, {"_id": 0})
    updated["user_count"] = await _user_count(role_id)
    return updated


async def delete_role(role_id: str) -> Dict[str, Any]:
    role = await _get_custom_role(role_id)
    count = await _user_count(role_id)
    if count:
        raise RoleError(f"Cannot delete role. It is assigned to {count} user(s)")
    await db.roles.delete_one({"id": role_id})
    logger.info(f"[ROLE_DELETED] {role['name']}")
    return role


async def permissions_for_custom_role(role_id: str) -> Dict[str, bool]:
    """Permission map a staff user gets when linked to a custom role."""
    role = await db.roles.find_one({"id": role_id}, {"_id": 0})
    if not role:
        raise RoleError(f"Custom role not found: {role_id}")
    return permission_map(role["permissions"])
