"""
HomeXpert - Admin dashboard statistics
"""

from fastapi import APIRouter, Depends
from datetime import datetime, timezone, timedelta

from config import db, parse_iso
from services.permissions import require_permission

router = APIRouter(prefix="/admin/dashboard", tags=["Dashboard"])

ACTIVE_LEAD_STATUSES = ["available", "assigned", "taken", "contacted", "interested", "scheduled", "in_progress"]
DONE_LEAD_STATUSES = ["completed", "converted"]
OPEN_TICKET_STATUSES = ["open", "in_progress", "waiting_for_vendor", "waiting_for_admin"]


@router.get("/stats")
async def dashboard_stats(user: dict = Depends(require_permission("dashboard.view"))):
    revenue = 0
    async for doc in db.vendor_subscriptions.aggregate([
        {"$match": {"payment.payment_status": "completed"}},
        {"$group": {"_id": None, "total": {"$sum": "$payment.amount"}}},
    ]):
        revenue = doc["total"]

    return {
        "total_leads": await db.leads.count_documents({}),
        "total_active_leads": await db.leads.count_documents({"status": {"$in": ACTIVE_LEAD_STATUSES}}),
        "total_revenue": round(revenue or 0, 2),
        "total_active_vendors": await db.vendors.count_documents({"status": "active"}),
        "open_tickets": await db.support_tickets.count_documents({"status": {"$in": OPEN_TICKET_STATUSES}}),
    }


@router.get("/lead-chart-data")
async def lead_chart_data(days: int = 15, user: dict = Depends(require_permission("dashboard.view"))):
    """One entry per day, oldest first: leads created and leads completed/converted that day"""
    days = max(1, min(days, 90))
    today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    start = today - timedelta(days=days - 1)

    buckets = {
        (start + timedelta(days=i)).date().isoformat(): {"created": 0, "completed": 0}
        for i in range(days)
    }

    created = await db.leads.find(
        {"created_at": {"$gte": start.isoformat()}}, {"_id": 0, "created_at": 1}
    ).to_list(50000)
    for lead in created:
        day = parse_iso(lead["created_at"]).date().isoformat()
        if day in buckets:
            buckets[day]["created"] += 1

    done = await db.leads.find(
        {"status": {"$in": DONE_LEAD_STATUSES}}, {"_id": 0, "completed_at": 1, "converted_at": 1, "updated_at": 1}
    ).to_list(50000)
    for lead in done:
        when = parse_iso(lead.get("completed_at") or lead.get("converted_at") or lead.get("updated_at"))
        if when and when.date().isoformat() in buckets:
            buckets[when.date().isoformat()]["completed"] += 1

    return {
        "days": days,
        "data": [{"date": day, **counts} for day, counts in buckets.items()],
    }


@router.get("/revenue-chart-data")
async def revenue_chart_data(user: dict = Depends(require_permission("dashboard.view"))):
    """Completed lead value grouped by service"""
    leads = await db.leads.find(
        {"status": {"$in": DONE_LEAD_STATUSES}},
        {"_id": 0, "service": 1, "price": 1, "conversion_value": 1}
    ).to_list(50000)

    by_service = {}
    for lead in leads:
        value = lead.get("conversion_value") or lead.get("price") or 0
        row = by_service.setdefault(lead.get("service") or "Other", {"value": 0, "count": 0})
        row["value"] += value
        row["count"] += 1

    total = sum(r["value"] for r in by_service.values())
    data = [
        {
            "service": service,
            "value": round(r["value"], 2),
            "count": r["count"],
            "percentage": round(r["value"] / total * 100, 1) if total > 0 else 0,
        }
        for service, r in by_service.items()
    ]
    data.sort(key=lambda r: -r["value"])

    return {"total": round(total, 2), "data": data}


@router.get("/recent-leads")
async def recent_leads(user: dict = Depends(require_permission("dashboard.view"))):
    leads = await db.leads.find(
        {},
        {"_id": 0, "id": 1, "customer_name": 1, "service": 1, "status": 1, "address.city": 1,
         "price": 1, "created_at": 1}
    ).sort("created_at", -1).limit(5).to_list(5)
    return {"leads": leads}


@router.get("/recent-vendors")
async def recent_vendors(user: dict = Depends(require_permission("dashboard.view"))):
    vendors = await db.vendors.find(
        {},
        {"_id": 0, "id": 1, "business_name": 1, "owner_name": 1, "status": 1, "services": 1,
         "address.city": 1, "created_at": 1}
    ).sort("created_at", -1).limit(5).to_list(5)
    return {"vendors": vendors}
