"""
HomeXpert - Public lead intake
POST /api/leads   website form, no authentication
GET  /api/leads   staff listing (leads.view)
"""

import logging
import re
from fastapi import APIRouter, HTTPException, Depends, Request
from typing import Optional

from models import LeadSubmit
from config import db, normalize_phone_in
from services.permissions import require_permission
from services.lead_service import find_recent_duplicate, build_lead_document, pagination, count_by_status
from services.notification_service import notify_admins

logger = logging.getLogger("public")

router = APIRouter(tags=["Public"])

WEBSITE_ACTOR = {"id": "website", "type": "system", "name": "Website"}


@router.post("/leads", status_code=201)
async def submit_lead(data: LeadSubmit, request: Request):
    """
    Lead from the website form.

    Flow:
    1. Validate the Indian mobile number
    2. Duplicate check (same phone + service within 24h): accepted but flagged
    3. Insert as pending
    """
    is_valid, phone = normalize_phone_in(data.customer_phone)
    if not is_valid:
        raise HTTPException(status_code=400, detail=phone)

    lead = build_lead_document(
        data.model_dump(), phone, "website", WEBSITE_ACTOR, "Lead created from website"
    )
    lead["ip_address"] = request.client.host if request.client else None

    duplicate = await find_recent_duplicate(phone, lead["service"])
    if duplicate:
        lead["is_duplicate"] = True
        lead["duplicate_of"] = duplicate["id"]
        logger.warning(
            f"Duplicate lead {phone[-4:]} / {lead['service']} (original {duplicate['id']})"
        )

    await db.leads.insert_one(dict(lead))
    logger.info(f"Lead {lead['id']} received from website ({lead['service']}, {lead['address']['city']})")

    if not duplicate:
        await notify_admins(
            "New lead",
            f"{lead['customer_name']} requested {lead['service']}",
            type="lead",
            data={"lead_id": lead["id"]},
        )

    return {
        "success": True,
        "lead_id": lead["id"],
        "status": lead["status"],
        "is_duplicate": lead["is_duplicate"],
    }


@router.get("/leads")
async def list_leads(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    service: Optional[str] = None,
    phone: Optional[str] = None,
    vendor_id: Optional[str] = None,
    user: dict = Depends(require_permission("leads.view"))
):
    """
    Staff lead listing.
    status may be comma separated: ?status=pending,available
    vendor_id matches the taker or any eligible vendor.
    """
    page = max(1, page)
    limit = max(1, min(limit, 100))

    query = {}
    if status:
        statuses = [s.strip() for s in status.split(",") if s.strip()]
        query["status"] = {"$in": statuses}
    if service:
        query["service"] = {"$regex": re.escape(service), "$options": "i"}
    if phone:
        is_valid, normalized = normalize_phone_in(phone)
        query["customer_phone"] = normalized if is_valid else phone
    if vendor_id:
        query["$or"] = [{"taken_by": vendor_id}, {"available_to_vendors.vendors": vendor_id}]

    total = await db.leads.count_documents(query)
    leads = await db.leads.find(query, {"_id": 0}) \
        .sort("created_at", -1) \
        .skip((page - 1) * limit) \
        .limit(limit) \
        .to_list(limit)

    stats = await count_by_status(query)

    return {
        "leads": leads,
        "pagination": pagination(page, limit, total),
        "stats": stats,
    }
