"""
HomeXpert - Assignment engine

Decides which vendors a lead is offered to, then hands the write to the
lead state machine (make_available).

Modes:
1. manual       → the given vendors, same set for every lead
2. auto         → active vendors serving the lead's service in the lead's city,
                  capped at max_vendors_per_lead, ordered by business name
3. round-robin  → lead i goes to vendor i % n (given vendors, else all active)

Only pending/available/assigned leads without a taker are assignable.
"""

import logging
from typing import List, Dict, Any, Optional

from config import db
from services.lead_state_machine import make_available, ASSIGNABLE_STATUSES
from services.notification_service import notify_vendors

logger = logging.getLogger("assignment_engine")

SERVICE_MATCH_SCORE = 2
CITY_MATCH_SCORE = 1


class AssignmentError(Exception):
    pass


class AssignmentResult:
    """Outcome of assigning one lead"""

    def __init__(self, lead_id: str, vendor_ids: Optional[List[str]] = None,
                 success: bool = False, reason: str = ""):
        self.lead_id = lead_id
        self.vendor_ids = vendor_ids or []
        self.success = success
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "vendor_ids": self.vendor_ids,
            "success": self.success,
            "reason": self.reason,
        }


# ==================== MATCHING (pure) ====================

def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def vendor_cities(vendor: Dict[str, Any]) -> set:
    cities = {_norm((vendor.get("address") or {}).get("city"))}
    for area in vendor.get("service_areas") or []:
        cities.add(_norm(area.get("city")))
    cities.discard("")
    return cities


def serves_service(vendor: Dict[str, Any], service: Optional[str]) -> bool:
    return _norm(service) in {_norm(s) for s in vendor.get("services") or []}


def serves_city(vendor: Dict[str, Any], city: Optional[str]) -> bool:
    return bool(city) and _norm(city) in vendor_cities(vendor)


def match_score(vendor: Dict[str, Any], lead: Dict[str, Any]) -> int:
    score = 0
    if serves_service(vendor, lead.get("service")):
        score += SERVICE_MATCH_SCORE
    if serves_city(vendor, (lead.get("address") or {}).get("city")):
        score += CITY_MATCH_SCORE
    return score


def pick_auto_vendors(lead: Dict[str, Any], vendors: List[Dict[str, Any]], max_vendors: int) -> List[str]:
    city = (lead.get("address") or {}).get("city")
    matched = [
        v for v in vendors
        if serves_city(v, city) and serves_service(v, lead.get("service"))
    ]
    matched.sort(key=lambda v: _norm(v.get("business_name")))
    return [v["id"] for v in matched[:max_vendors]]


def round_robin(lead_ids: List[str], vendor_ids: List[str]) -> Dict[str, List[str]]:
    n = len(vendor_ids)
    return {lead_id: [vendor_ids[i % n]] for i, lead_id in enumerate(lead_ids)}


# ==================== DB ====================

async def get_active_vendors(vendor_ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"status": "active"}
    if vendor_ids:
        query["id"] = {"$in": vendor_ids}
    return await db.vendors.find(query, {"_id": 0}).sort("business_name", 1).to_list(1000)


async def get_assignable_leads(lead_ids: List[str]) -> List[Dict[str, Any]]:
    leads = await db.leads.find(
        {"id": {"$in": lead_ids}, "status": {"$in": ASSIGNABLE_STATUSES}, "taken_by": {"$exists": False}},
        {"_id": 0}
    ).to_list(len(lead_ids))
    order = {lid: i for i, lid in enumerate(lead_ids)}
    return sorted(leads, key=lambda l: order.get(l["id"], 0))


async def assign_leads(
    lead_ids: List[str],
    assignment_type: str,
    actor: Dict[str, Any],
    vendor_ids: Optional[List[str]] = None,
    max_vendors_per_lead: int = 3,
) -> Dict[str, Any]:
    """
    Raises AssignmentError("No active vendors found" / "No assignable leads found").
    """
    vendor_ids = vendor_ids or []
    if assignment_type == "manual" and not vendor_ids:
        raise AssignmentError("Vendor IDs are required for manual assignment")

    if assignment_type == "auto":
        vendors = await get_active_vendors()
    else:
        vendors = await get_active_vendors(vendor_ids or None)
        if vendor_ids and assignment_type == "manual" and len(vendors) != len(set(vendor_ids)):
            raise AssignmentError("Some vendors not found or inactive")

    if not vendors:
        raise AssignmentError("No active vendors found")

    leads = await get_assignable_leads(lead_ids)
    if not leads:
        raise AssignmentError("No assignable leads found")

    active_ids = [v["id"] for v in vendors]
    if assignment_type == "manual":
        plan = {lead["id"]: active_ids for lead in leads}
    elif assignment_type == "round-robin":
        plan = round_robin([lead["id"] for lead in leads], active_ids)
    else:
        plan = {lead["id"]: pick_auto_vendors(lead, vendors, max_vendors_per_lead) for lead in leads}

    results: List[AssignmentResult] = []
    for lead in leads:
        chosen = plan.get(lead["id"], [])
        if not chosen:
            results.append(AssignmentResult(lead["id"], reason="No matching vendors"))
            continue

        ok = await make_available(lead["id"], chosen, actor, f"{assignment_type} assignment")
        results.append(AssignmentResult(
            lead["id"], chosen, success=ok, reason="" if ok else "Lead no longer assignable"
        ))
        if ok:
            await notify_vendors(
                chosen,
                "New lead available",
                f"A new {lead.get('service')} lead in {(lead.get('address') or {}).get('city') or 'your area'} is available.",
                type="lead",
                data={"lead_id": lead["id"]},
            )

    assigned = [r for r in results if r.success]
    skipped = [lid for lid in lead_ids if lid not in {r.lead_id for r in assigned}]

    logger.info(
        f"[ASSIGN] {assignment_type}: {len(assigned)}/{len(lead_ids)} lead(s) assigned by {actor.get('id')}"
    )

    return {
        "assignment_type": assignment_type,
        "assigned_count": len(assigned),
        "skipped": skipped,
        "assignments": [r.to_dict() for r in results],
    }


async def suggest_vendors(lead: Dict[str, Any], limit: int = 10) -> List[Dict[str, Any]]:
    """Active vendors ranked by match score (service 2 + city 1), then name"""
    vendors = await get_active_vendors()
    suggestions = []
    for v in vendors:
        score = match_score(v, lead)
        if score == 0:
            continue
        suggestions.append({
            "id": v["id"],
            "business_name": v.get("business_name"),
            "city": (v.get("address") or {}).get("city"),
            "services": v.get("services", []),
            "match_score": score,
            "service_match": serves_service(v, lead.get("service")),
            "city_match": serves_city(v, (lead.get("address") or {}).get("city")),
        })

    suggestions.sort(key=lambda s: (-s["match_score"], _norm(s["business_name"])))
    return suggestions[:limit]
