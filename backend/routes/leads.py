"""
HomeXpert - Admin lead management
List / create / bulk actions / per-lead actions / assignment engine.
Every status write goes through services/lead_state_machine.py.
"""

import re
import logging
from fastapi import APIRouter, HTTPException, Depends
from pydantic import ValidationError
from typing import Optional, List, Dict, Any

from models import (
    LeadCreate,
    BulkLeadAction,
    BulkLeadDelete,
    LeadAction,
    AssignRequest,
    FollowUpCreate,
    VALID_PRIORITIES,
)
from models.lead import VALID_URGENCIES, NOTE_TYPES, VALID_REFUND_STATUSES, LeadAddress
from config import db, now_iso, normalize_phone_in, validate_email
from routes.auth import staff_actor
from services.permissions import require_permission, user_has_permission
from services.activity_logger import log_activity
from services.notification_service import notify_vendors
from services.lead_state_machine import (
    LeadTransitionError,
    LeadTakeError,
    take_lead,
    make_available,
    unassign,
    admin_set_status,
    request_refund,
    process_refund,
    build_note,
)
from services.lead_service import (
    find_recent_duplicate,
    build_lead_document,
    build_follow_up,
    archive_and_delete,
    days_since,
    pagination,
    status_breakdown,
    vendor_lookup,
)
from services.assignment_engine import assign_leads, suggest_vendors, AssignmentError

logger = logging.getLogger("admin_leads")

router = APIRouter(prefix="/admin/leads", tags=["Admin Leads"])

SORTABLE_FIELDS = ["created_at", "updated_at", "customer_name", "service", "price", "status", "priority"]
BASIC_INFO_FIELDS = ["customer_name", "customer_email", "service", "price", "priority", "urgency", "description"]
ADDRESS_FIELDS = list(LeadAddress.model_fields)


# ==================== HELPERS ====================

async def _get_lead(lead_id: str) -> Dict[str, Any]:
    lead = await db.leads.find_one({"id": lead_id}, {"_id": 0})
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


async def _check_vendors_exist(vendor_ids: List[str]):
    if not vendor_ids:
        raise HTTPException(status_code=400, detail="vendor_ids is required")
    unique = list(dict.fromkeys(vendor_ids))
    found = await db.vendors.count_documents({"id": {"$in": unique}})
    if found != len(unique):
        raise HTTPException(status_code=400, detail="Some vendors not found")
    return unique


def _take_error(e: LeadTakeError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"message": e.message, **e.flags})


async def _notify_new_lead(lead: Dict[str, Any], vendor_ids: List[str]):
    await notify_vendors(
        vendor_ids,
        "New lead available",
        f"A new {lead.get('service')} lead in {(lead.get('address') or {}).get('city') or 'your area'} is available.",
        type="lead",
        data={"lead_id": lead["id"]},
    )


def _build_list_query(
    search: Optional[str], status: Optional[str], service: Optional[str], city: Optional[str],
    assigned_status: Optional[str], date_from: Optional[str], date_to: Optional[str],
    refund_status: Optional[str] = None,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    conditions = []

    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        conditions.append({"$or": [
            {"customer_name": pattern},
            {"customer_phone": pattern},
            {"customer_email": pattern},
            {"service": pattern},
            {"address.city": pattern},
        ]})
    if status:
        statuses = [s.strip() for s in status.split(",") if s.strip()]
        query["status"] = {"$in": statuses}
    if service:
        query["service"] = {"$regex": re.escape(service), "$options": "i"}
    if city:
        query["address.city"] = {"$regex": f"^{re.escape(city.strip())}$", "$options": "i"}
    if assigned_status == "assigned":
        query["available_to_vendors.vendors"] = {"$exists": True, "$ne": []}
    elif assigned_status == "unassigned":
        conditions.append({"$or": [
            {"available_to_vendors.vendors": {"$exists": False}},
            {"available_to_vendors.vendors": []},
        ]})
    if refund_status:
        query["refund_request.status"] = refund_status

    date_filter = {}
    if date_from:
        date_filter["$gte"] = date_from
    if date_to:
        date_filter["$lte"] = date_to if "T" in date_to else f"{date_to}T23:59:59.999999+00:00"
    if date_filter:
        query["created_at"] = date_filter

    if conditions:
        query["$and"] = conditions
    return query


# ==================== LIST / CREATE ====================

@router.get("")
async def list_admin_leads(
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
    status: Optional[str] = None,
    service: Optional[str] = None,
    city: Optional[str] = None,
    assigned_status: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    refund_status: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    user: dict = Depends(require_permission("leads.view"))
):
    if refund_status and refund_status not in VALID_REFUND_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid refund status: {refund_status}")
    page = max(1, page)
    limit = max(1, min(limit, 50))
    if sort_by not in SORTABLE_FIELDS:
        sort_by = "created_at"
    direction = 1 if sort_order == "asc" else -1

    query = _build_list_query(search, status, service, city, assigned_status, date_from, date_to, refund_status)

    total = await db.leads.count_documents(query)
    leads = await db.leads.find(query, {"_id": 0}) \
        .sort(sort_by, direction) \
        .skip((page - 1) * limit) \
        .limit(limit) \
        .to_list(limit)

    assigned = await db.leads.count_documents(
        {"$and": [query, {"available_to_vendors.vendors": {"$exists": True, "$ne": []}}]}
    )

    return {
        "leads": leads,
        "pagination": pagination(page, limit, total),
        "summary": {
            "total": total,
            "assigned": assigned,
            "unassigned": total - assigned,
            "status_breakdown": await status_breakdown(query),
        },
    }


@router.post("", status_code=201)
async def create_admin_lead(data: LeadCreate, user: dict = Depends(require_permission("leads.create"))):
    if not (data.address.city or "").strip():
        raise HTTPException(status_code=400, detail="Address city is required")

    is_valid, phone = normalize_phone_in(data.customer_phone)
    if not is_valid:
        raise HTTPException(status_code=400, detail=phone)
    if data.customer_email and not validate_email(data.customer_email):
        raise HTTPException(status_code=400, detail="Invalid email address")

    duplicate = await find_recent_duplicate(phone, data.service.strip())
    if duplicate:
        raise HTTPException(
            status_code=409,
            detail={"message": "A lead for this phone and service was created in the last 24 hours",
                    "duplicate_lead_id": duplicate["id"]}
        )

    actor = staff_actor(user)
    lead = build_lead_document(data.model_dump(), phone, "admin", actor, "Lead created by admin")
    await db.leads.insert_one(dict(lead))

    await log_activity(user, "create", "lead", lead["id"], lead["customer_name"],
                       {"service": lead["service"], "city": lead["address"]["city"]})
    logger.info(f"Lead {lead['id']} created by admin {user.get('id')}")

    return {"success": True, "lead": lead}


# ==================== BULK ====================

@router.patch("")
async def bulk_lead_action(data: BulkLeadAction, user: dict = Depends(require_permission("leads.edit"))):
    actor = staff_actor(user)
    payload = data.data or {}
    modified = 0
    errors = []

    if data.action == "updateStatus":
        status = payload.get("status")
        if not status:
            raise HTTPException(status_code=400, detail="data.status is required")
        for lead_id in data.lead_ids:
            try:
                before = await db.leads.find_one({"id": lead_id}, {"_id": 0, "status": 1})
                if not before:
                    errors.append({"lead_id": lead_id, "error": "Lead not found"})
                    continue
                await admin_set_status(lead_id, status, actor, payload.get("reason", ""))
                if before["status"] != status:
                    modified += 1
            except LeadTransitionError as e:
                errors.append({"lead_id": lead_id, "error": str(e)})

    elif data.action == "assignVendors":
        vendor_ids = await _check_vendors_exist(payload.get("vendor_ids") or [])
        for lead_id in data.lead_ids:
            if await make_available(lead_id, vendor_ids, actor, payload.get("reason", "")):
                modified += 1
                await _notify_new_lead(await _get_lead(lead_id), vendor_ids)
            else:
                errors.append({"lead_id": lead_id, "error": "Lead not assignable"})

    elif data.action == "unassignVendors":
        for lead_id in data.lead_ids:
            if await unassign(lead_id, actor, payload.get("reason", "")):
                modified += 1
            else:
                errors.append({"lead_id": lead_id, "error": "Lead cannot be unassigned"})

    elif data.action == "setPriority":
        priority = payload.get("priority")
        if priority not in VALID_PRIORITIES:
            raise HTTPException(status_code=400, detail=f"Invalid priority: {priority}")
        result = await db.leads.update_many(
            {"id": {"$in": data.lead_ids}},
            {"$set": {"priority": priority, "modified_by": user.get("id"), "updated_at": now_iso()}}
        )
        modified = result.modified_count

    elif data.action == "addNote":
        content = (payload.get("content") or "").strip()
        if not content:
            raise HTTPException(status_code=400, detail="data.content is required")
        note_type = payload.get("type") if payload.get("type") in NOTE_TYPES else "general"
        for lead_id in data.lead_ids:
            result = await db.leads.update_one(
                {"id": lead_id},
                {"$push": {"notes": build_note(content, actor, note_type)}, "$set": {"updated_at": now_iso()}}
            )
            modified += result.modified_count

    await log_activity(user, "update", "lead", None, None,
                       {"bulk_action": data.action, "lead_ids": data.lead_ids, "modified": modified})

    return {"success": True, "action": data.action, "modified_count": modified, "errors": errors}


@router.delete("")
async def bulk_delete_leads(data: BulkLeadDelete, user: dict = Depends(require_permission("leads.delete"))):
    reason = data.reason or "Deleted by admin"
    deleted = await archive_and_delete(data.lead_ids, reason, staff_actor(user))

    await log_activity(user, "delete", "lead", None, None,
                       {"lead_ids": data.lead_ids, "deleted": deleted, "reason": reason})

    return {"success": True, "deleted_count": deleted, "reason": reason}


# ==================== ASSIGNMENT ENGINE ====================

@router.post("/assign")
async def assign(data: AssignRequest, user: dict = Depends(require_permission("leads.assign"))):
    try:
        result = await assign_leads(
            data.lead_ids,
            data.assignment_type,
            staff_actor(user),
            data.vendor_ids,
            data.max_vendors_per_lead,
        )
    except (AssignmentError, LeadTransitionError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    await log_activity(user, "assign", "lead", None, None, {
        "assignment_type": data.assignment_type,
        "lead_ids": data.lead_ids,
        "assigned_count": result["assigned_count"],
    })
    return {"success": True, **result}


@router.get("/assign")
async def assignment_suggestions(
    lead_id: str,
    limit: int = 10,
    user: dict = Depends(require_permission("leads.assign"))
):
    lead = await _get_lead(lead_id)
    return {
        "lead_id": lead_id,
        "service": lead.get("service"),
        "city": (lead.get("address") or {}).get("city"),
        "suggestions": await suggest_vendors(lead, max(1, min(limit, 50))),
    }


# ==================== SINGLE LEAD ====================

@router.get("/{lead_id}")
async def get_admin_lead(lead_id: str, user: dict = Depends(require_permission("leads.view"))):
    lead = await _get_lead(lead_id)
    eligible_ids = (lead.get("available_to_vendors") or {}).get("vendors", [])

    taker = None
    if lead.get("taken_by"):
        found = await vendor_lookup([lead["taken_by"]])
        taker = found[0] if found else None

    return {
        "lead": lead,
        "eligible_vendors": await vendor_lookup(eligible_ids),
        "taken_by_vendor": taker,
        "is_assigned": bool(eligible_ids),
        "is_taken": bool(lead.get("taken_by")),
        "lead_age_days": days_since(lead.get("created_at")),
    }


@router.patch("/{lead_id}")
async def lead_action(lead_id: str, data: LeadAction, user: dict = Depends(require_permission("leads.edit"))):
    lead = await _get_lead(lead_id)
    actor = staff_actor(user)
    payload = data.data or {}

    try:
        if data.action == "updateBasicInfo":
            update = {k: payload[k] for k in BASIC_INFO_FIELDS if k in payload}
            if "customer_phone" in payload:
                is_valid, phone = normalize_phone_in(payload["customer_phone"])
                if not is_valid:
                    raise HTTPException(status_code=400, detail=phone)
                update["customer_phone"] = phone
            if update.get("customer_email") and not validate_email(update["customer_email"]):
                raise HTTPException(status_code=400, detail="Invalid email address")
            if "priority" in update and update["priority"] not in VALID_PRIORITIES:
                raise HTTPException(status_code=400, detail=f"Invalid priority: {update['priority']}")
            if "urgency" in update and update["urgency"] not in VALID_URGENCIES:
                raise HTTPException(status_code=400, detail=f"Invalid urgency: {update['urgency']}")
            if isinstance(payload.get("address"), dict):
                unknown = sorted(set(payload["address"]) - set(ADDRESS_FIELDS))
                if unknown:
                    raise HTTPException(status_code=400, detail=f"Unknown address field(s): {unknown}")
                for key, value in payload["address"].items():
                    update[f"address.{key}"] = value
            if not update:
                raise HTTPException(status_code=400, detail="Nothing to update")
            update["modified_by"] = user.get("id")
            update["updated_at"] = now_iso()
            await db.leads.update_one({"id": lead_id}, {"$set": update})

        elif data.action == "updateStatus":
            if not payload.get("status"):
                raise HTTPException(status_code=400, detail="data.status is required")
            await admin_set_status(lead_id, payload["status"], actor, payload.get("reason", ""))

        elif data.action == "assignVendors":
            vendor_ids = await _check_vendors_exist(payload.get("vendor_ids") or [])
            if not await make_available(lead_id, vendor_ids, actor, payload.get("reason", "")):
                raise HTTPException(status_code=400, detail="Lead is not assignable (already taken or closed)")
            await _notify_new_lead(lead, vendor_ids)

        elif data.action == "unassignVendors":
            if not await unassign(lead_id, actor, payload.get("reason", "")):
                raise HTTPException(status_code=400, detail=f"Lead in status '{lead['status']}' cannot be unassigned")

        elif data.action == "addNote":
            content = (payload.get("content") or "").strip()
            if not content:
                raise HTTPException(status_code=400, detail="data.content is required")
            note_type = payload.get("type") if payload.get("type") in NOTE_TYPES else "general"
            await db.leads.update_one(
                {"id": lead_id},
                {"$push": {"notes": build_note(content, actor, note_type)}, "$set": {"updated_at": now_iso()}}
            )

        elif data.action == "addFollowUp":
            try:
                follow_up = FollowUpCreate(**payload)
            except ValidationError as e:
                raise HTTPException(status_code=400, detail=e.errors()[0].get("msg", "Invalid follow-up"))
            await db.leads.update_one(
                {"id": lead_id},
                {"$push": {"follow_ups": build_follow_up(follow_up.model_dump(), actor)},
                 "$set": {"updated_at": now_iso()}}
            )

        elif data.action == "markTaken":
            vendor_id = payload.get("vendor_id")
            vendor = await db.vendors.find_one({"id": vendor_id, "status": "active"}, {"_id": 0, "id": 1})
            if not vendor:
                raise HTTPException(status_code=400, detail="Vendor not found or inactive")
            await take_lead(lead_id, vendor_id, actor, require_eligible=False)

        elif data.action == "requestRefund":
            await request_refund(lead_id, payload.get("reason") or "", actor)

        elif data.action == "processRefund":
            if not user_has_permission(user, "leads.refund"):
                raise HTTPException(status_code=403, detail="Permission required: leads.refund")
            await process_refund(lead_id, payload.get("action"), actor, payload.get("admin_notes"))

    except LeadTransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LeadTakeError as e:
        raise _take_error(e)

    await log_activity(user, "update", "lead", lead_id, lead.get("customer_name"),
                       {"action": data.action, **{k: v for k, v in payload.items() if k != "address"}})

    return {"success": True, "action": data.action, "lead": await _get_lead(lead_id)}


@router.delete("/{lead_id}")
async def delete_admin_lead(
    lead_id: str,
    reason: str = "Deleted by admin",
    user: dict = Depends(require_permission("leads.delete"))
):
    lead = await _get_lead(lead_id)
    await archive_and_delete([lead_id], reason, staff_actor(user))

    await log_activity(user, "delete", "lead", lead_id, lead.get("customer_name"), {"reason": reason})
    return {"success": True, "deleted_count": 1, "reason": reason}
