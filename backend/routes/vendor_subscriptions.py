"""
HomeXpert - Vendor subscriptions
Browse plans, purchase, submit bank transfer, upgrade/downgrade, cancel.
"""

from fastapi import APIRouter, HTTPException, Depends

from models import PurchaseRequest, PaymentSubmission, ChangePlanRequest
from config import db
from routes.auth import get_current_vendor
from services.activity_logger import log_activity
from services.subscription_service import (
    SubscriptionError,
    get_current_subscription,
    purchase_subscription,
    submit_payment,
    change_plan,
    cancel_subscription,
    with_metrics,
    with_virtuals,
)

router = APIRouter(prefix="/vendors/subscriptions", tags=["Vendor Subscriptions"])

DURATION_ORDER = ["1-month", "3-month", "6-month", "12-month"]


def recommendations(plans):
    """most_popular = 3-month, best_value = lowest price per lead, longest_duration = 12-month"""
    def first(duration):
        return next((p["id"] for p in plans if p["duration"] == duration), None)

    best = min(plans, key=lambda p: p["price_per_lead"]) if plans else None
    return {
        "most_popular": first("3-month"),
        "best_value": best["id"] if best else None,
        "longest_duration": first("12-month"),
    }


@router.get("/plans")
async def available_plans(vendor: dict = Depends(get_current_vendor)):
    current = await get_current_subscription(vendor["id"])

    plans = await db.subscription_plans.find(
        {
            "is_active": True,
            "$or": [{"is_custom": {"$ne": True}}, {"assigned_to_vendors": vendor["id"]}],
        },
        {"_id": 0}
    ).to_list(200)

    current_price = current["plan_snapshot"]["effective_price"] if current else None
    is_active = bool(current and current["status"] == "active")

    enriched = []
    for p in plans:
        p = with_metrics(p)
        p["is_current_plan"] = bool(current and current["plan_id"] == p["id"])
        p["can_upgrade_to"] = is_active and not p["is_current_plan"] and p["effective_price"] > current_price
        enriched.append(p)
    enriched.sort(key=lambda p: p["effective_price"])

    by_duration = {d: [p for p in enriched if p["duration"] == d] for d in DURATION_ORDER}

    return {
        "current_subscription": with_virtuals(current),
        "plans": enriched,
        "plans_by_duration": by_duration,
        "recommendations": recommendations(enriched),
    }


@router.post("", status_code=201)
async def purchase(data: PurchaseRequest, vendor: dict = Depends(get_current_vendor)):
    try:
        sub = await purchase_subscription(vendor, data.plan_id, data.payment_method, vendor["user"]["id"])
    except SubscriptionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await log_activity(vendor["user"], "purchase", "subscription", sub["id"],
                       sub["plan_snapshot"]["plan_name"],
                       {"payment_method": data.payment_method, "amount": sub["payment"]["amount"]})

    message = "Subscription activated" if sub["status"] == "active" else \
        "Subscription created. Submit your bank transfer details to activate it."
    return {"success": True, "message": message, "subscription": with_virtuals(sub)}


@router.get("")
async def current_subscription(vendor: dict = Depends(get_current_vendor)):
    return {"subscription": with_virtuals(await get_current_subscription(vendor["id"]))}


@router.get("/history")
async def subscription_history(vendor: dict = Depends(get_current_vendor)):
    subs = await db.vendor_subscriptions.find(
        {"vendor_id": vendor["id"], "status": {"$nin": ["active", "pending"]}},
        {"_id": 0}
    ).sort("created_at", -1).to_list(100)
    return {"subscriptions": [with_virtuals(s) for s in subs], "total": len(subs)}


@router.post("/{subscription_id}/payment")
async def submit_bank_transfer(subscription_id: str, data: PaymentSubmission,
                               vendor: dict = Depends(get_current_vendor)):
    try:
        sub = await submit_payment(vendor["id"], subscription_id, data.transaction_id, data.notes)
    except SubscriptionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return {
        "success": True,
        "message": "Payment details submitted. Your subscription will be activated after verification.",
        "subscription": with_virtuals(sub),
    }


@router.post("/{subscription_id}/change")
async def change_subscription_plan(subscription_id: str, data: ChangePlanRequest,
                                   vendor: dict = Depends(get_current_vendor)):
    try:
        result = await change_plan(vendor, subscription_id, data.plan_id)
    except SubscriptionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await log_activity(vendor["user"], "update", "subscription", subscription_id, None,
                       {"change_type": result["change_type"], "plan_id": data.plan_id})

    result["subscription"] = with_virtuals(result["subscription"])
    return {"success": True, **result}


@router.delete("/{subscription_id}")
async def cancel(subscription_id: str, reason: str = None, vendor: dict = Depends(get_current_vendor)):
    try:
        sub = await cancel_subscription(vendor["id"], subscription_id, reason)
    except SubscriptionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await log_activity(vendor["user"], "update", "subscription", subscription_id, None, {"cancelled": True})
    return {"success": True, "subscription": sub, "access_until": sub["end_date"]}
