"""
HomeXpert - Vendor lead pipeline
Marketplace (available leads), take, own pipeline, notes, follow-ups, refunds.
"""

import re
from fastapi import APIRouter, HTTPException, Depends
from typing import Optional, Dict, Any

from models import (
    TakeLeadRequest,
    VendorLeadUpdate,
    RefundRequestCreate,
    NoteCreate,
    FollowUpCreate,
    FollowUpUpdate,
)
from config import db, now_iso
from routes.auth import get_current_vendor, vendor_actor
from services.activity_logger import log_activity
from services.subscription_service import get_active_subscription
from services.lead_state_machine import (
    LeadTransitionError,
    LeadTakeError,
    take_lead,
    vendor_update,
    request_refund,
    build_note,
    TAKEABLE_STATUSES,
    WORKED_STATUSES,
)
from services.lead_service import (
    format_available_lead,
    format_vendor_lead,
    vendor_lead_detail,
    sorted_follow_ups,
    build_follow_up,
    time_ago,
    pagination,
)

router = APIRouter(prefix="/vendors", tags=["Vendor Leads"])

CONVERTED_STATUSES = ["completed", "converted"]


async def _get_own_lead(lead_id: str, vendor_id: str) -> Dict[str, Any]:
    lead = await db.leads.find_one({"id": lead_id, "taken_by": vendor_id}, {"_id": 0})
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


async def _conversion_rate(vendor_id: str) -> float:
    taken = await db.leads.count_documents({"taken_by": vendor_id})
    if not taken:
        return 0
    converted = await db.leads.count_documents({"taken_by": vendor_id, "status": {"$in": CONVERTED_STATUSES}})
    return round(converted / taken * 100, 1)


# ==================== MARKETPLACE ====================

@router.get("/available-leads")
async def available_leads(
    page: int = 1,
    limit: int = 20,
    service: Optional[str] = None,
    city: Optional[str] = None,
    max_price: Optional[float] = None,
    urgency: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    vendor: dict = Depends(get_current_vendor)
):
    """
    Leads offered to this vendor and not taken yet.
    Requires an active subscription with leads left.
    """
    subscription = await get_active_subscription(vendor["id"])
    if not subscription:
        raise HTTPException(status_code=403, detail={
            "message": "No active subscription found. Please purchase a subscription to view leads.",
            "requiresSubscription": True,
        })
    if subscription["usage"].get("leads_remaining", 0) <= 0:
        raise HTTPException(status_code=403, detail={
            "message": "No leads remaining in your subscription. Please upgrade your plan.",
            "needsUpgrade": True,
        })

    page = max(1, page)
    limit = max(1, min(limit, 50))

    query: Dict[str, Any] = {
        "available_to_vendors.vendors": vendor["id"],
        "status": {"$in": TAKEABLE_STATUSES},
        "taken_by": {"$exists": False},
    }
    if service:
        query["service"] = {"$regex": f"^{re.escape(service)}$", "$options": "i"}
    elif vendor.get("services"):
        query["service"] = {"$in": [re.compile(f"^{re.escape(s)}$", re.IGNORECASE) for s in vendor["services"]]}
    if city:
        query["address.city"] = {"$regex": f"^{re.escape(city)}$", "$options": "i"}
    if max_price is not None:
        query["price"] = {"$lte": max_price}
    if urgency:
        query["urgency"] = urgency

    sort_field = "price" if sort_by == "price" else "created_at"
    direction = 1 if sort_order == "asc" else -1

    total = await db.leads.count_documents(query)
    leads = await db.leads.find(query, {"_id": 0}) \
        .sort(sort_field, direction) \
        .skip((page - 1) * limit) \
        .limit(limit) \
        .to_list(limit)

    all_prices = await db.leads.find(query, {"_id": 0, "price": 1}).to_list(10000)

    return {
        "leads": [format_available_lead(lead) for lead in leads],
        "pagination": pagination(page, limit, total),
        "stats": {
            "available": total,
            "taken": await db.leads.count_documents({"taken_by": vendor["id"]}),
            "total_value": sum(p.get("price") or 0 for p in all_prices),
            "conversion_rate": await _conversion_rate(vendor["id"]),
        },
        "subscription": {
            "id": subscription["id"],
            "plan_name": subscription["plan_snapshot"]["plan_name"],
            "leads_remaining": subscription["usage"]["leads_remaining"],
            "leads_consumed": subscription["usage"]["leads_consumed"],
            "end_date": subscription["end_date"],
        },
    }


@router.post("/leads")
async def take(data: TakeLeadRequest, vendor: dict = Depends(get_current_vendor)):
    """Take a lead: exclusive, consumes one lead of the active subscription."""
    try:
        lead, subscription = await take_lead(data.lead_id, vendor["id"], vendor_actor(vendor))
    except LeadTakeError as e:
        raise HTTPException(status_code=e.status_code, detail={"message": e.message, **e.flags})

    await log_activity(vendor["user"], "take_lead", "lead", lead["id"], lead.get("customer_name"),
                       {"subscription_id": subscription["id"]})

    return {
        "success": True,
        "message": "Lead taken successfully",
        "lead": lead,
        "subscription": {
            "id": subscription["id"],
            "leads_remaining": subscription["usage"]["leads_remaining"],
            "leads_consumed": subscription["usage"]["leads_consumed"],
        },
    }


# ==================== PIPELINE ====================

@router.get("/leads")
async def my_leads(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    service: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    vendor: dict = Depends(get_current_vendor)
):
    page = max(1, page)
    limit = max(1, min(limit, 50))

    query: Dict[str, Any] = {"taken_by": vendor["id"]}
    if status:
        query["status"] = {"$in": [s.strip() for s in status.split(",") if s.strip()]}
    if service:
        query["service"] = {"$regex": re.escape(service), "$options": "i"}
    taken_filter = {}
    if date_from:
        taken_filter["$gte"] = date_from
    if date_to:
        taken_filter["$lte"] = date_to if "T" in date_to else f"{date_to}T23:59:59.999999+00:00"
    if taken_filter:
        query["taken_at"] = taken_filter

    total = await db.leads.count_documents(query)
    leads = await db.leads.find(query, {"_id": 0}) \
        .sort("taken_at", -1) \
        .skip((page - 1) * limit) \
        .limit(limit) \
        .to_list(limit)

    by_status = {s: {"count": 0, "value": 0} for s in WORKED_STATUSES}
    for row in await db.leads.find({"taken_by": vendor["id"]}, {"_id": 0, "status": 1, "price": 1,
                                                                 "conversion_value": 1}).to_list(10000):
        bucket = by_status.setdefault(row.get("status"), {"count": 0, "value": 0})
        bucket["count"] += 1
        bucket["value"] += row.get("conversion_value") or row.get("price") or 0

    return {
        "leads": [format_vendor_lead(lead) for lead in leads],
        "pagination": pagination(page, limit, total),
        "summary": {
            "by_status": by_status,
            "conversion_rate": await _conversion_rate(vendor["id"]),
        },
    }


@router.get("/leads/{lead_id}")
async def my_lead_detail(lead_id: str, vendor: dict = Depends(get_current_vendor)):
    return vendor_lead_detail(await _get_own_lead(lead_id, vendor["id"]))


@router.put("/leads/{lead_id}")
async def update_my_lead(lead_id: str, data: VendorLeadUpdate, vendor: dict = Depends(get_current_vendor)):
    lead = await _get_own_lead(lead_id, vendor["id"])
    try:
        updated = await vendor_update(lead, vendor["id"], vendor_actor(vendor), data.model_dump(exclude_none=True))
    except LeadTransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if data.status and data.status != lead["status"]:
        await log_activity(vendor["user"], "update", "lead", lead_id, lead.get("customer_name"),
                           {"from": lead["status"], "to": data.status})

    return {"success": True, "lead": format_vendor_lead(updated)}


@router.post("/leads/{lead_id}/refund")
async def refund_my_lead(lead_id: str, data: RefundRequestCreate, vendor: dict = Depends(get_current_vendor)):
    await _get_own_lead(lead_id, vendor["id"])
    try:
        lead = await request_refund(lead_id, data.reason, vendor_actor(vendor))
    except LeadTransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, "refund_request": lead["refund_request"]}


# ==================== NOTES ====================

@router.get("/leads/{lead_id}/notes")
async def list_notes(lead_id: str, page: int = 1, limit: int = 20, vendor: dict = Depends(get_current_vendor)):
    lead = await _get_own_lead(lead_id, vendor["id"])
    page = max(1, page)
    limit = max(1, min(limit, 100))

    notes = sorted(lead.get("notes", []), key=lambda n: n.get("created_at") or "", reverse=True)
    start = (page - 1) * limit

    return {
        "notes": [{**n, "time_ago": time_ago(n.get("created_at"))} for n in notes[start:start + limit]],
        "pagination": pagination(page, limit, len(notes)),
    }


@router.post("/leads/{lead_id}/notes", status_code=201)
async def add_note(lead_id: str, data: NoteCreate, vendor: dict = Depends(get_current_vendor)):
    await _get_own_lead(lead_id, vendor["id"])
    note = build_note(data.content, vendor_actor(vendor), data.type)

    await db.leads.update_one(
        {"id": lead_id, "taken_by": vendor["id"]},
        {"$push": {"notes": note}, "$set": {"updated_at": now_iso()}}
    )
    return {"success": True, "note": note}


# ==================== FOLLOW-UPS ====================

@router.get("/leads/{lead_id}/follow-ups")
async def list_follow_ups(lead_id: str, status: Optional[str] = None, vendor: dict = Depends(get_current_vendor)):
    lead = await _get_own_lead(lead_id, vendor["id"])
    everything = sorted_follow_ups(lead.get("follow_ups", []))

    summary = {"total": len(everything), "pending": 0, "overdue": 0, "completed": 0}
    for f in everything:
        summary[f["status"]] += 1

    items = [f for f in everything if f["status"] == status] if status else everything
    return {"follow_ups": items, "summary": summary}


@router.post("/leads/{lead_id}/follow-ups", status_code=201)
async def add_follow_up(lead_id: str, data: FollowUpCreate, vendor: dict = Depends(get_current_vendor)):
    await _get_own_lead(lead_id, vendor["id"])
    follow_up = build_follow_up(data.model_dump(), vendor_actor(vendor))

    await db.leads.update_one(
        {"id": lead_id, "taken_by": vendor["id"]},
        {"$push": {"follow_ups": follow_up}, "$set": {"updated_at": now_iso()}}
    )
    return {"success": True, "follow_up": follow_up}


@router.put("/leads/{lead_id}/follow-ups")
async def update_follow_up(lead_id: str, data: FollowUpUpdate, vendor: dict = Depends(get_current_vendor)):
    await _get_own_lead(lead_id, vendor["id"])

    result = await db.leads.update_one(
        {"id": lead_id, "taken_by": vendor["id"], "follow_ups.id": data.follow_up_id},
        {"$set": {
            "follow_ups.$.completed": data.completed,
            "follow_ups.$.completed_at": now_iso() if data.completed else None,
            "follow_ups.$.completion_note": data.completion_note,
            "updated_at": now_iso(),
        }}
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Follow-up not found")

    lead = await _get_own_lead(lead_id, vendor["id"])
    follow_up = next(f for f in sorted_follow_ups(lead["follow_ups"]) if f["id"] == data.follow_up_id)
    return {"success": True, "follow_up": follow_up}
