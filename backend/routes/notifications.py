"""
HomeXpert - In-app notifications (vendors and staff)
"""

from fastapi import APIRouter, Depends

from models import MarkReadRequest
from routes.auth import get_current_vendor
from services.permissions import require_permission
from services.notification_service import list_notifications, mark_read

router = APIRouter(tags=["Notifications"])


@router.get("/vendors/notifications")
async def vendor_notifications(
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
    vendor: dict = Depends(get_current_vendor)
):
    return await list_notifications(vendor["id"], "vendor", unread_only, max(1, page), max(1, min(limit, 100)))


@router.post("/vendors/notifications/mark-read")
async def vendor_mark_read(data: MarkReadRequest, vendor: dict = Depends(get_current_vendor)):
    updated = await mark_read(vendor["id"], "vendor", data.notification_ids, data.all)
    return {"success": True, "updated": updated}


@router.get("/admin/notifications")
async def admin_notifications(
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
    user: dict = Depends(require_permission("dashboard.view"))
):
    return await list_notifications(user["id"], "admin", unread_only, max(1, page), max(1, min(limit, 100)))


@router.post("/admin/notifications/mark-read")
async def admin_mark_read(data: MarkReadRequest, user: dict = Depends(require_permission("dashboard.view"))):
    updated = await mark_read(user["id"], "admin", data.notification_ids, data.all)
    return {"success": True, "updated": updated}
