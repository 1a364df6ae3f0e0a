"""
HomeXpert - Admin subscription records
Payment verification, rejection and lead quota adjustment.
Registered before routes/subscriptions.py so /history is not read as a plan id.
"""

from fastapi import APIRouter, HTTPException, Depends
from typing import Optional

from models import (
    RejectPaymentRequest,
    AdjustLeadsRequest,
    VALID_SUBSCRIPTION_STATUSES,
    VALID_PAYMENT_STATUSES,
)
from config import db
from services.permissions import require_permission
from services.activity_logger import log_activity
from services.subscription_service import (
    SubscriptionError,
    verify_payment,
    reject_payment,
    adjust_leads,
    with_virtuals,
)
from services.lead_service import pagination

router = APIRouter(prefix="/admin/subscriptions/history", tags=["Admin Subscriptions"])


@router.get("")
async def list_subscriptions(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    vendor_id: Optional[str] = None,
    user: dict = Depends(require_permission("subscriptions.view"))
):
    if status and status not in VALID_SUBSCRIPTION_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid subscription status: {status}")
    if payment_status and payment_status not in VALID_PAYMENT_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid payment status: {payment_status}")
    page = max(1, page)
    limit = max(1, min(limit, 100))

    query = {}
    if status:
        query["status"] = status
    if payment_status:
        query["payment.payment_status"] = payment_status
    if vendor_id:
        query["vendor_id"] = vendor_id

    total = await db.vendor_subscriptions.count_documents(query)
    subs = await db.vendor_subscriptions.find(query, {"_id": 0}) \
        .sort("created_at", -1) \
        .skip((page - 1) * limit) \
        .limit(limit) \
        .to_list(limit)

    by_status = {}
    revenue = 0
    rows = await db.vendor_subscriptions.find(
        {}, {"_id": 0, "status": 1, "payment.payment_status": 1, "payment.amount": 1}
    ).to_list(10000)
    for row in rows:
        by_status[row.get("status")] = by_status.get(row.get("status"), 0) + 1
        if row.get("payment", {}).get("payment_status") == "completed":
            revenue += row["payment"].get("amount") or 0

    return {
        "subscriptions": [with_virtuals(s) for s in subs],
        "pagination": pagination(page, limit, total),
        "summary": {"total_revenue": round(revenue, 2), "by_status": by_status},
    }


@router.post("/adjust-leads")
async def adjust_subscription_leads(data: AdjustLeadsRequest,
                                    user: dict = Depends(require_permission("subscriptions.manage"))):
    try:
        sub = await adjust_leads(data.subscription_id, data.type, data.amount, data.reason, user.get("id"))
    except SubscriptionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await log_activity(user, "adjust_leads", "subscription", data.subscription_id, sub.get("vendor_name"),
                       {"type": data.type, "amount": data.amount, "reason": data.reason})
    return {"success": True, "subscription": with_virtuals(sub)}


@router.post("/{subscription_id}/verify")
async def verify(subscription_id: str, user: dict = Depends(require_permission("payments.verify"))):
    try:
        sub = await verify_payment(subscription_id, user.get("id"))
    except SubscriptionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await log_activity(user, "verify_payment", "subscription", subscription_id, sub.get("vendor_name"),
                       {"transaction_id": sub["payment"].get("transaction_id")})
    return {"success": True, "subscription": with_virtuals(sub)}


@router.post("/{subscription_id}/reject")
async def reject(subscription_id: str, data: RejectPaymentRequest,
                 user: dict = Depends(require_permission("payments.verify"))):
    try:
        sub = await reject_payment(subscription_id, user.get("id"), data.reason)
    except SubscriptionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await log_activity(user, "reject_payment", "subscription", subscription_id, sub.get("vendor_name"),
                       {"reason": data.reason})
    return {"success": True, "subscription": sub}
