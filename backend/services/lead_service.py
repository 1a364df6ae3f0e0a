"""
HomeXpert - Lead service
Creation, duplicate check and the read-side views (admin + vendor).
Status writes live in services/lead_state_machine.py.
"""

import logging
import math
import uuid
from datetime import datetime, timezone, timedelta
from typing import Dict, Any, List, Optional

from config import db, now_iso, parse_iso
from services.lead_state_machine import (
    history_entry,
    default_refund_request,
    completion_percentage,
    NON_REFUNDABLE_STATUSES,
    CLOSED_STATUSES,
)

logger = logging.getLogger("leads")

DUPLICATE_WINDOW_HOURS = 24
OVERDUE_DAYS = 7
URGENT_AFTER_HOURS = 24

NEXT_STEPS = {
    "taken": ["Contact the customer immediately", "Understand requirements", "Provide initial quote"],
    "contacted": ["Follow up with customer", "Clarify requirements", "Send detailed quote"],
    "interested": ["Schedule service visit", "Prepare service materials", "Confirm appointment"],
    "not_interested": ["Document reason", "Close lead", "Focus on other opportunities"],
    "scheduled": ["Prepare for service", "Confirm appointment", "Gather required materials"],
    "in_progress": ["Complete the service", "Update progress", "Ensure quality"],
    "completed": ["Request payment", "Get customer feedback", "Ask for review"],
    "converted": ["Complete documentation", "Process payment", "Follow up for future needs"],
    "cancelled": ["Document cancellation reason", "Learn from feedback", "Close lead"],
}

MILESTONES = [
    ("taken", "Lead Taken", "taken_at"),
    ("contacted", "Customer Contacted", "contacted_at"),
    ("interested", "Customer Interested", "interested_at"),
    ("scheduled", "Service Scheduled", "scheduled_at"),
    ("completed", "Service Completed", "completed_at"),
]


# ==================== CREATION ====================

async def find_recent_duplicate(phone: str, service: str) -> Optional[Dict[str, Any]]:
    """Same phone + same service within DUPLICATE_WINDOW_HOURS"""
    since = (datetime.now(timezone.utc) - timedelta(hours=DUPLICATE_WINDOW_HOURS)).isoformat()
    return await db.leads.find_one(
        {"customer_phone": phone, "service": service, "created_at": {"$gte": since}},
        {"_id": 0, "id": 1, "created_at": 1}
    )


async def archive_and_delete(lead_ids: List[str], reason: str, actor: Dict[str, Any]) -> int:
    """Copy leads to leads_deleted, then remove them. Returns the deleted count."""
    leads = await db.leads.find({"id": {"$in": lead_ids}}, {"_id": 0}).to_list(len(lead_ids))
    if not leads:
        return 0

    now = now_iso()
    await db.leads_deleted.insert_many([
        {**lead, "deleted_at": now, "deleted_by": actor.get("id"), "delete_reason": reason}
        for lead in leads
    ])
    result = await db.leads.delete_many({"id": {"$in": [lead["id"] for lead in leads]}})

    logger.info(f"Archived and deleted {result.deleted_count} lead(s) by {actor.get('id')}: {reason}")
    return result.deleted_count


def build_lead_document(data: Dict[str, Any], phone: str, source: str,
                        actor: Dict[str, Any], reason: str) -> Dict[str, Any]:
    now = now_iso()
    address = data.get("address") or {}
    return {
        "id": str(uuid.uuid4()),
        "customer_name": data["customer_name"].strip(),
        "customer_phone": phone,
        "customer_email": (data.get("customer_email") or "").strip().lower() or None,
        "address": {
            "house_room_number": address.get("house_room_number", ""),
            "landmark": address.get("landmark", ""),
            "current_location": address.get("current_location", ""),
            "city": (address.get("city") or "").strip(),
            "state": address.get("state", ""),
            "country": address.get("country") or "India",
            "pincode": address.get("pincode", ""),
        },
        "service": data["service"].strip(),
        "description": data.get("description") or "",
        "price": data.get("price") or 0,
        "urgency": data.get("urgency") or "normal",
        "priority": data.get("priority") or "medium",
        "source": source,
        "status": "pending",
        "available_to_vendors": {"vendors": [], "assigned_at": None, "assigned_by": None},
        "notes": [],
        "follow_ups": [],
        "progress_history": [history_entry(None, "pending", actor, reason)],
        "refund_request": default_refund_request(),
        "is_duplicate": False,
        "created_by": actor.get("id"),
        "created_at": now,
        "updated_at": now,
    }


# ==================== TIME HELPERS ====================

def hours_since(value: Optional[str], now: Optional[datetime] = None) -> int:
    dt = parse_iso(value)
    if not dt:
        return 0
    now = now or datetime.now(timezone.utc)
    return max(0, int((now - dt).total_seconds() // 3600))


def days_since(value: Optional[str], now: Optional[datetime] = None) -> int:
    return hours_since(value, now) // 24


def time_ago(value: Optional[str], now: Optional[datetime] = None) -> str:
    dt = parse_iso(value)
    if not dt:
        return ""
    now = now or datetime.now(timezone.utc)
    minutes = int((now - dt).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''} ago"


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return ""
    return "X" * max(0, len(phone) - 4) + phone[-4:]


# ==================== VENDOR VIEWS ====================

def competition_level(vendor_count: int) -> str:
    if vendor_count > 3:
        return "high"
    if vendor_count > 1:
        return "medium"
    return "low"


def next_steps(status: str, days_taken: int = 0) -> List[str]:
    steps = list(NEXT_STEPS.get(status, ["Update lead status", "Take appropriate action"]))
    if status == "taken" and days_taken >= 1:
        steps.insert(0, "URGENT: Contact customer immediately - lead is overdue")
    return steps


def milestones(lead: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"status": status, "label": label, "completed": bool(lead.get(field)), "date": lead.get(field)}
        for status, label, field in MILESTONES
    ]


def profit_margin(lead: Dict[str, Any]) -> int:
    revenue = lead.get("conversion_value") or lead.get("actual_service_cost") or lead.get("price") or 0
    cost = lead.get("actual_service_cost") or 0
    if revenue <= 0:
        return 0
    return round((revenue - cost) / revenue * 100)


def last_communication(lead: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    items = [{**n, "kind": "note", "date": n.get("created_at")} for n in lead.get("notes", [])]
    items += [{**f, "kind": "follow_up", "date": f.get("created_at")} for f in lead.get("follow_ups", [])]
    items = [i for i in items if i.get("date")]
    if not items:
        return None
    return max(items, key=lambda i: i["date"])


def format_available_lead(lead: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Card shown to a vendor before taking: no full phone, no email"""
    hours = hours_since(lead.get("created_at"), now)
    vendors = (lead.get("available_to_vendors") or {}).get("vendors", [])
    address = lead.get("address") or {}
    return {
        "id": lead["id"],
        "customer_name": lead.get("customer_name"),
        "customer_phone": mask_phone(lead.get("customer_phone")),
        "service": lead.get("service"),
        "description": lead.get("description", ""),
        "city": address.get("city", ""),
        "state": address.get("state", ""),
        "pincode": address.get("pincode", ""),
        "price": lead.get("price", 0),
        "urgency": lead.get("urgency", "normal"),
        "status": lead.get("status"),
        "created_at": lead.get("created_at"),
        "hours_ago": hours,
        "is_urgent": lead.get("urgency") == "urgent" or hours >= URGENT_AFTER_HOURS,
        "vendor_count": len(vendors),
        "is_exclusive": len(vendors) == 1,
        "competition_level": competition_level(len(vendors)),
    }


def format_vendor_lead(lead: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Row of the vendor's own pipeline"""
    status = lead.get("status")
    taken_days = days_since(lead.get("taken_at"), now)
    is_overdue = taken_days > OVERDUE_DAYS and status in ("taken", "contacted")
    return {
        **lead,
        "days_since_taken": taken_days,
        "is_overdue": is_overdue,
        "can_refund": status not in NON_REFUNDABLE_STATUSES
        and not (lead.get("refund_request") or {}).get("requested"),
        "needs_action": is_overdue or (status == "taken" and taken_days >= 1),
        "next_steps": next_steps(status, taken_days),
    }


def vendor_lead_detail(lead: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    status = lead.get("status")
    taken_days = days_since(lead.get("taken_at"), now)
    is_overdue = taken_days > OVERDUE_DAYS and status in ("taken", "contacted")
    return {
        "lead": lead,
        "status": {
            "current": status,
            "days_since_taken": taken_days,
            "is_overdue": is_overdue,
            "needs_urgent_action": is_overdue or (status == "taken" and taken_days >= 1),
            "can_contact": status == "taken",
            "can_schedule": status in ("contacted", "interested"),
            "can_complete": status in ("scheduled", "in_progress"),
            "can_cancel": status not in NON_REFUNDABLE_STATUSES,
            "is_completed": status in ("completed", "converted"),
            "is_closed": status in CLOSED_STATUSES,
            "can_refund": status not in NON_REFUNDABLE_STATUSES
            and not (lead.get("refund_request") or {}).get("requested"),
        },
        "progress": {
            "milestones": milestones(lead),
            "completion": completion_percentage(status),
            "next_steps": next_steps(status, taken_days),
        },
        "financials": {
            "price": lead.get("price", 0),
            "conversion_value": lead.get("conversion_value"),
            "actual_service_cost": lead.get("actual_service_cost"),
            "profit_margin": profit_margin(lead),
        },
        "last_communication": last_communication(lead),
    }


# ==================== FOLLOW-UPS ====================

FOLLOW_UP_ORDER = {"pending": 0, "overdue": 1, "completed": 2}


def build_follow_up(data: Dict[str, Any], author: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "follow_up": data["follow_up"].strip(),
        "scheduled_date": data["scheduled_date"],
        "priority": data.get("priority") or "medium",
        "type": data.get("type") or "call",
        "completed": False,
        "completed_at": None,
        "completion_note": None,
        "created_by": author.get("id"),
        "created_by_type": author.get("type"),
        "created_at": now_iso(),
    }


def follow_up_status(follow_up: Dict[str, Any], now: Optional[datetime] = None) -> str:
    if follow_up.get("completed"):
        return "completed"
    now = now or datetime.now(timezone.utc)
    scheduled = parse_iso(follow_up.get("scheduled_date"))
    if scheduled and scheduled < now:
        return "overdue"
    return "pending"


def sorted_follow_ups(follow_ups: List[Dict[str, Any]], status_filter: Optional[str] = None,
                      now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    items = [{**f, "status": follow_up_status(f, now)} for f in follow_ups]
    if status_filter:
        items = [f for f in items if f["status"] == status_filter]
    return sorted(items, key=lambda f: (FOLLOW_UP_ORDER[f["status"]], f.get("scheduled_date") or ""))


# ==================== ADMIN VIEWS ====================

def pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit > 0 else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_items": total,
        "items_per_page": limit,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


async def status_breakdown(query: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """{status: {count, avg_age_days}} for the leads matching query"""
    leads = await db.leads.find(query, {"_id": 0, "status": 1, "created_at": 1}).to_list(10000)
    now = datetime.now(timezone.utc)
    buckets: Dict[str, Dict[str, Any]] = {}
    for lead in leads:
        b = buckets.setdefault(lead.get("status", "unknown"), {"count": 0, "age_total": 0})
        b["count"] += 1
        b["age_total"] += days_since(lead.get("created_at"), now)

    return {
        status: {"count": b["count"], "avg_age_days": round(b["age_total"] / b["count"], 1)}
        for status, b in buckets.items()
    }


async def count_by_status(query: Dict[str, Any]) -> Dict[str, int]:
    pipeline = [
        {"$match": query},
        {"$group": {"_id": "$status", "count": {"$sum": 1}}},
    ]
    stats = {}
    async for doc in db.leads.aggregate(pipeline):
        stats[doc["_id"] or "unknown"] = doc["count"]
    return stats


async def vendor_lookup(vendor_ids: List[str]) -> List[Dict[str, Any]]:
    if not vendor_ids:
        return []
    return await db.vendors.find(
        {"id": {"$in": vendor_ids}},
        {"_id": 0, "id": 1, "business_name": 1, "owner_name": 1, "phone": 1, "email": 1, "address.city": 1}
    ).to_list(len(vendor_ids))
