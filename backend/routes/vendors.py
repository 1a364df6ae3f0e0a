"""
HomeXpert - Admin vendor management
"""

import re
from fastapi import APIRouter, HTTPException, Depends
from typing import Optional

from models import VendorCreate, VendorUpdate, DocumentReview
from config import db, now_iso, normalize_phone_in
from services.permissions import require_permission
from services.activity_logger import log_activity
from services.notification_service import notify_vendors
from services.vendor_service import create_vendor, subscription_summary, review_document, VendorError
from services.subscription_service import get_current_subscription, with_virtuals
from services.lead_service import pagination, count_by_status

router = APIRouter(prefix="/admin/vendors", tags=["Admin Vendors"])


@router.get("")
async def list_vendors(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    service: Optional[str] = None,
    city: Optional[str] = None,
    search: Optional[str] = None,
    user: dict = Depends(require_permission("vendors.view"))
):
    page = max(1, page)
    limit = max(1, min(limit, 100))

    query = {}
    if status:
        query["status"] = status
    if service:
        query["services"] = {"$regex": f"^{re.escape(service)}$", "$options": "i"}
    if city:
        pattern = {"$regex": f"^{re.escape(city)}$", "$options": "i"}
        query["$or"] = [{"address.city": pattern}, {"service_areas.city": pattern}]
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        search_or = [{"business_name": pattern}, {"owner_name": pattern}, {"email": pattern}, {"phone": pattern}]
        if "$or" in query:
            query = {"$and": [query, {"$or": search_or}]}
        else:
            query["$or"] = search_or

    total = await db.vendors.count_documents(query)
    vendors = await db.vendors.find(query, {"_id": 0}) \
        .sort("created_at", -1) \
        .skip((page - 1) * limit) \
        .limit(limit) \
        .to_list(limit)

    for v in vendors:
        v.update(await subscription_summary(v["id"]))

    return {"vendors": vendors, "pagination": pagination(page, limit, total)}


@router.post("", status_code=201)
async def create_vendor_admin(data: VendorCreate, user: dict = Depends(require_permission("vendors.manage"))):
    try:
        vendor = await create_vendor(data.model_dump(exclude={"status"}), data.status, user.get("id"))
    except VendorError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await log_activity(user, "create", "vendor", vendor["id"], vendor["business_name"],
                       {"status": vendor["status"], "services": vendor["services"]})
    return {"success": True, "vendor": vendor}


@router.get("/{vendor_id}")
async def get_vendor(vendor_id: str, user: dict = Depends(require_permission("vendors.view"))):
    vendor = await db.vendors.find_one({"id": vendor_id}, {"_id": 0})
    if not vendor:
        raise HTTPException(status_code=404, detail="Vendor not found")

    return {
        "vendor": vendor,
        "subscription": with_virtuals(await get_current_subscription(vendor_id)),
        "lead_stats": await count_by_status({"taken_by": vendor_id}),
    }


@router.put("/{vendor_id}")
async def update_vendor(vendor_id: str, data: VendorUpdate, user: dict = Depends(require_permission("vendors.manage"))):
    vendor = await db.vendors.find_one({"id": vendor_id}, {"_id": 0})
    if not vendor:
        raise HTTPException(status_code=404, detail="Vendor not found")

    changes = data.model_dump(exclude_none=True)
    update = {}
    for field in ("business_name", "owner_name", "services", "address", "service_areas", "status"):
        if field in changes:
            update[field] = changes[field]
    if "phone" in changes:
        is_valid, phone = normalize_phone_in(changes["phone"])
        if not is_valid:
            raise HTTPException(status_code=400, detail=phone)
        update["phone"] = phone
    if "is_verified" in changes:
        update["verified"] = {
            "is_verified": changes["is_verified"],
            "verified_by": user.get("id") if changes["is_verified"] else None,
            "verified_at": now_iso() if changes["is_verified"] else None,
            "notes": changes.get("verification_notes"),
        }
    elif "verification_notes" in changes:
        update["verified.notes"] = changes["verification_notes"]

    if not update:
        raise HTTPException(status_code=400, detail="Nothing to update")
    update["updated_at"] = now_iso()

    operation = {"$set": update}
    if "is_verified" in changes:
        # A decision closes any open verification request
        if (vendor.get("verification_request") or {}).get("status") == "pending":
            update["verification_request.status"] = "approved" if changes["is_verified"] else "rejected"
            update["verification_request.resolved_at"] = update["updated_at"]
        operation["$push"] = {"history": {
            "action": "verified" if changes["is_verified"] else "unverified",
            "notes": changes.get("verification_notes") or "",
            "by": user.get("id"),
            "date": update["updated_at"],
        }}

    await db.vendors.update_one({"id": vendor_id}, operation)

    if "status" in update and update["status"] != vendor.get("status"):
        await notify_vendors(
            [vendor_id],
            "Account status updated",
            f"Your vendor account is now {update['status']}.",
            type="system",
            data={"status": update["status"]},
            send_email=True,
        )

    await log_activity(user, "update", "vendor", vendor_id, vendor.get("business_name"),
                       {k: v for k, v in update.items() if k != "updated_at"})

    return {"success": True, "vendor": await db.vendors.find_one({"id": vendor_id}, {"_id": 0})}


@router.put("/{vendor_id}/documents/{doc_type}")
async def review_vendor_document(
    vendor_id: str,
    doc_type: str,
    data: DocumentReview,
    user: dict = Depends(require_permission("vendors.manage"))
):
    """Verify or reject one submitted document, or the payout bank account (doc_type=bank_details)."""
    try:
        vendor = await review_document(vendor_id, doc_type, data.verified, data.notes, user.get("id"))
    except VendorError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await log_activity(user, "update", "vendor", vendor_id, vendor.get("business_name"),
                       {"document": doc_type, "verified": data.verified})
    return {"success": True, "vendor": vendor}
