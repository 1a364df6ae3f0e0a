"""
HomeXpert - Admin subscription plans
"""

import re
import uuid
from fastapi import APIRouter, HTTPException, Depends
from typing import Optional

from models import PlanCreate, PlanUpdate
from config import db, now_iso
from services.permissions import require_permission
from services.activity_logger import log_activity
from services.subscription_service import normalize_plan_pricing, with_metrics

router = APIRouter(prefix="/admin/subscriptions", tags=["Admin Subscription Plans"])

PLAN_SORT_FIELDS = ["price", "created_at", "total_leads", "plan_name", "duration_in_days"]


async def _get_plan_or_404(plan_id: str):
    plan = await db.subscription_plans.find_one({"id": plan_id}, {"_id": 0})
    if not plan:
        raise HTTPException(status_code=404, detail="Plan not found")
    return plan


async def _ensure_unique_name(name: str, exclude_id: Optional[str] = None):
    query = {"plan_name": {"$regex": f"^{re.escape(name.strip())}$", "$options": "i"}}
    if exclude_id:
        query["id"] = {"$ne": exclude_id}
    if await db.subscription_plans.find_one(query, {"_id": 1}):
        raise HTTPException(status_code=400, detail="A plan with this name already exists")


@router.get("")
async def list_plans(
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    duration: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    user: dict = Depends(require_permission("subscriptions.view"))
):
    query = {}
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"plan_name": pattern}, {"description": pattern}]
    if is_active is not None:
        query["is_active"] = is_active
    if duration:
        query["duration"] = duration
    price_filter = {}
    if min_price is not None:
        price_filter["$gte"] = min_price
    if max_price is not None:
        price_filter["$lte"] = max_price
    if price_filter:
        query["price"] = price_filter

    if sort_by not in PLAN_SORT_FIELDS:
        sort_by = "created_at"

    plans = await db.subscription_plans.find(query, {"_id": 0}) \
        .sort(sort_by, 1 if sort_order == "asc" else -1) \
        .to_list(500)

    return {"plans": [with_metrics(p) for p in plans], "total": len(plans)}


@router.post("", status_code=201)
async def create_plan(data: PlanCreate, user: dict = Depends(require_permission("subscriptions.manage"))):
    await _ensure_unique_name(data.plan_name)

    now = now_iso()
    plan = normalize_plan_pricing({
        "id": str(uuid.uuid4()),
        **data.model_dump(mode="json"),
        "plan_name": data.plan_name.strip(),
        "created_by": user.get("id"),
        "created_at": now,
        "updated_at": now,
    })
    await db.subscription_plans.insert_one(dict(plan))

    await log_activity(user, "create", "subscription_plan", plan["id"], plan["plan_name"],
                       {"price": plan["price"], "total_leads": plan["total_leads"], "duration": plan["duration"]})

    return {"success": True, "plan": with_metrics(plan)}


@router.get("/{plan_id}")
async def get_plan(plan_id: str, user: dict = Depends(require_permission("subscriptions.view"))):
    plan = await _get_plan_or_404(plan_id)
    active_subscribers = await db.vendor_subscriptions.count_documents({"plan_id": plan_id, "status": "active"})
    return {"plan": with_metrics(plan), "active_subscribers": active_subscribers}


@router.put("/{plan_id}")
async def update_plan(plan_id: str, data: PlanUpdate, user: dict = Depends(require_permission("subscriptions.manage"))):
    plan = await _get_plan_or_404(plan_id)

    changes = data.model_dump(mode="json", exclude_none=True)
    if "plan_name" in changes:
        await _ensure_unique_name(changes["plan_name"], plan_id)
        changes["plan_name"] = changes["plan_name"].strip()
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")

    updated = normalize_plan_pricing({**plan, **changes, "updated_at": now_iso()})
    await db.subscription_plans.replace_one({"id": plan_id}, dict(updated))

    await log_activity(user, "update", "subscription_plan", plan_id, updated["plan_name"], changes)
    return {"success": True, "plan": with_metrics(updated)}


@router.delete("/{plan_id}")
async def delete_plan(plan_id: str, user: dict = Depends(require_permission("subscriptions.manage"))):
    plan = await _get_plan_or_404(plan_id)

    in_use = await db.vendor_subscriptions.count_documents({"plan_id": plan_id, "status": "active"})
    if in_use:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot delete plan: {in_use} active subscription(s) use it. Deactivate it instead."
        )

    await db.subscription_plans.delete_one({"id": plan_id})
    await log_activity(user, "delete", "subscription_plan", plan_id, plan["plan_name"])
    return {"success": True}


@router.patch("/{plan_id}/toggle")
async def toggle_plan(plan_id: str, user: dict = Depends(require_permission("subscriptions.manage"))):
    plan = await _get_plan_or_404(plan_id)
    is_active = not plan.get("is_active", True)

    await db.subscription_plans.update_one(
        {"id": plan_id},
        {"$set": {"is_active": is_active, "updated_at": now_iso()}}
    )
    await log_activity(user, "update", "subscription_plan", plan_id, plan["plan_name"], {"is_active": is_active})
    return {"success": True, "is_active": is_active}
