"""
HomeXpert - Routes Roles
Custom staff roles (users.manage). Built-in roles are listed read-only.
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends

from models import RoleCreate, RoleUpdate
from services.permissions import require_permission, ALL_PERMISSION_KEYS
from services.activity_logger import log_activity
from services.role_service import list_roles, get_role, create_role, update_role, delete_role, RoleError

router = APIRouter(prefix="/admin/roles", tags=["Roles"])


@router.get("")
async def get_roles(search: Optional[str] = None, user: dict = Depends(require_permission("users.manage"))):
    roles = await list_roles(search)
    return {"roles": roles, "count": len(roles), "permission_keys": ALL_PERMISSION_KEYS}


@router.get("/{role_id}")
async def get_one_role(role_id: str, user: dict = Depends(require_permission("users.manage"))):
    try:
        return {"role": await get_role(role_id)}
    except RoleError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("", status_code=201)
async def post_role(data: RoleCreate, user: dict = Depends(require_permission("users.manage"))):
    try:
        role = await create_role(data.model_dump(), user.get("id"))
    except RoleError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await log_activity(user, "create", "role", role["id"], role["name"], {"permissions": role["permissions"]})
    return {"success": True, "role": role}


@router.put("/{role_id}")
async def put_role(role_id: str, data: RoleUpdate, user: dict = Depends(require_permission("users.manage"))):
    changes = data.model_dump(exclude_none=True)
    try:
        role = await update_role(role_id, changes)
    except RoleError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await log_activity(user, "update", "role", role_id, role["name"], changes)
    return {"success": True, "role": role}


@router.delete("/{role_id}")
async def remove_role(role_id: str, user: dict = Depends(require_permission("users.manage"))):
    try:
        role = await delete_role(role_id)
    except RoleError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await log_activity(user, "delete", "role", role_id, role["name"])
    return {"success": True}
