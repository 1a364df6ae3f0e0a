"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  HomeXpert - Subscription service                                            ║
║                                                                              ║
║  Plan pricing, vendor subscription lifecycle and lead quota accounting.      ║
║                                                                              ║
║  Lifecycle: pending → active → expired | cancelled                           ║
║             pending → cancelled (bank transfer rejected)                     ║
║  Payment:   pending → submitted → completed | failed                         ║
║                                                                              ║
║  QUOTA INVARIANTS:                                                           ║
║  - usage.leads_remaining never goes below 0                                  ║
║  - leads_consumed + leads_remaining <= plan_snapshot.total_leads             ║
║    (upgrade carry-over adds to total_leads of the new snapshot)              ║
║  - only the active subscription of a vendor is charged for a lead            ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import math
import random
import logging
import uuid
from datetime import datetime, timezone, timedelta
from typing import Dict, Any, Optional, Tuple

from config import db, now_iso, parse_iso, month_key, timestamp_ms
from models.subscription import DURATION_DAYS
from services.notification_service import notify_vendors, notify_admins
from email_service import email_service

logger = logging.getLogger("subscriptions")

EXPIRING_SOON_DAYS = 7
UPGRADE_PAYMENT_METHOD = "online"


class SubscriptionError(Exception):
    """Business rule violation on a subscription (mapped to HTTP by routes)"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


# ════════════════════════════════════════════════════════════════════════════
# PLAN PRICING (pure)
# ════════════════════════════════════════════════════════════════════════════

def normalize_plan_pricing(plan: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill derived fields on a plan document.
    A discounted price that is not strictly below price is dropped.
    """
    days = DURATION_DAYS[plan["duration"]]
    plan["duration_in_days"] = days
    plan["leads_per_month"] = math.ceil(plan["total_leads"] / (days / 30))

    discounted = plan.get("discounted_price")
    if discounted is not None and discounted >= plan["price"]:
        plan["discounted_price"] = None

    return plan


def effective_price(plan: Dict[str, Any]) -> float:
    discounted = plan.get("discounted_price")
    if discounted is not None and discounted < plan.get("price", 0):
        return discounted
    return plan.get("price", 0)


def plan_metrics(plan: Dict[str, Any]) -> Dict[str, Any]:
    """discount_percentage, price_per_lead, monthly_equivalent, effective_price"""
    price = plan.get("price", 0) or 0
    eff = effective_price(plan)
    days = plan.get("duration_in_days") or DURATION_DAYS.get(plan.get("duration"), 30)
    total_leads = plan.get("total_leads") or 0

    discount = round((price - eff) / price * 100) if price > 0 and eff < price else 0

    return {
        "effective_price": eff,
        "discount_percentage": discount,
        "price_per_lead": round(eff / total_leads, 2) if total_leads > 0 else 0,
        "monthly_equivalent": round(eff / (days / 30), 2) if days > 0 else eff,
    }


def with_metrics(plan: Dict[str, Any]) -> Dict[str, Any]:
    return {**plan, **plan_metrics(plan)}


def build_plan_snapshot(plan: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "plan_id": plan["id"],
        "plan_name": plan["plan_name"],
        "description": plan.get("description", ""),
        "duration": plan["duration"],
        "duration_in_days": plan["duration_in_days"],
        "total_leads": plan["total_leads"],
        "leads_per_month": plan["leads_per_month"],
        "price": plan["price"],
        "discounted_price": plan.get("discounted_price"),
        "effective_price": effective_price(plan),
        "currency": plan.get("currency", "INR"),
        "features": plan.get("features", []),
    }


# ════════════════════════════════════════════════════════════════════════════
# SUBSCRIPTION HELPERS (pure)
# ════════════════════════════════════════════════════════════════════════════

def generate_transaction_id(prefix: str = "TXN") -> str:
    return f"{prefix}{timestamp_ms()}{random.randint(1000, 9999)}"


def days_between(end: Optional[str], now: Optional[datetime] = None) -> int:
    """Whole days (rounded up) from now until end, floor 0"""
    end_dt = parse_iso(end)
    if not end_dt:
        return 0
    now = now or datetime.now(timezone.utc)
    seconds = (end_dt - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def subscription_virtuals(sub: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    usage = sub.get("usage", {})
    total = (sub.get("plan_snapshot") or {}).get("total_leads", 0)
    consumed = usage.get("leads_consumed", 0)
    end_dt = parse_iso(sub.get("end_date"))
    remaining_days = days_between(sub.get("end_date"), now)

    return {
        "days_remaining": remaining_days,
        "usage_percentage": round(consumed / total * 100) if total > 0 else 0,
        "is_expiring_soon": sub.get("status") == "active" and 0 < remaining_days <= EXPIRING_SOON_DAYS,
        "is_expired": bool(end_dt and end_dt <= now),
    }


def with_virtuals(sub: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not sub:
        return sub
    return {**sub, **subscription_virtuals(sub)}


def prorated_amount(new_price: float, duration_in_days: int, remaining_days: int) -> float:
    if duration_in_days <= 0:
        return 0
    return round(new_price / duration_in_days * remaining_days, 2)


def apply_lead_adjustment(consumed: int, remaining: int, adjust_type: str, amount: int) -> Tuple[int, int]:
    """
    increase: gives leads back (consumed shrinks, remaining grows)
    decrease: takes leads away (consumed grows, remaining shrinks)
    """
    if adjust_type == "increase":
        return max(0, consumed - amount), remaining + amount
    return consumed + amount, max(0, remaining - amount)


def history_entry(action: str, details: str = "", performed_by: Optional[str] = None) -> Dict[str, Any]:
    return {
        "action": action,
        "date": now_iso(),
        "details": details,
        "performed_by": performed_by or "system",
    }


def build_subscription_doc(
    vendor: Dict[str, Any],
    plan: Dict[str, Any],
    payment_method: str,
    amount: Optional[float] = None,
    start: Optional[datetime] = None,
    leads_remaining: Optional[int] = None,
) -> Dict[str, Any]:
    start = start or datetime.now(timezone.utc)
    snapshot = build_plan_snapshot(plan)
    now = now_iso()

    return {
        "id": str(uuid.uuid4()),
        "vendor_id": vendor["id"],
        "user_id": vendor.get("user_id"),
        "vendor_name": vendor.get("business_name", ""),
        "plan_id": plan["id"],
        "plan_snapshot": snapshot,
        "status": "pending",
        "is_active": False,
        "start_date": start.isoformat(),
        "end_date": (start + timedelta(days=snapshot["duration_in_days"])).isoformat(),
        "usage": {
            "leads_consumed": 0,
            "leads_remaining": snapshot["total_leads"] if leads_remaining is None else leads_remaining,
            "last_lead_consumed_at": None,
        },
        "monthly_usage": [],
        "lead_assignments": [],
        "payment": {
            "amount": snapshot["effective_price"] if amount is None else amount,
            "currency": snapshot["currency"],
            "payment_method": payment_method,
            "payment_status": "pending",
            "transaction_id": None,
            "payment_date": None,
            "submitted_at": None,
            "verified_at": None,
            "verified_by": None,
            "failure_reason": None,
        },
        "performance": {
            "job_completion_rate": 0,
            "total_revenue": 0,
            "average_job_value": 0,
        },
        "renewal_info": {
            "auto_renew": False,
            "next_renewal_plan": None,
            "renewal_date": None,
        },
        "previous_subscription": None,
        "next_subscription": None,
        "upgrade_downgrade_history": [],
        "history": [],
        "created_at": now,
        "updated_at": now,
    }


# ════════════════════════════════════════════════════════════════════════════
# LOOKUPS
# ════════════════════════════════════════════════════════════════════════════

async def get_active_subscription(vendor_id: str) -> Optional[Dict[str, Any]]:
    return await db.vendor_subscriptions.find_one(
        {"vendor_id": vendor_id, "status": "active", "is_active": True},
        {"_id": 0}
    )


async def get_current_subscription(vendor_id: str) -> Optional[Dict[str, Any]]:
    """Active subscription, else the latest pending one"""
    active = await get_active_subscription(vendor_id)
    if active:
        return active
    pending = await db.vendor_subscriptions.find(
        {"vendor_id": vendor_id, "status": "pending"},
        {"_id": 0}
    ).sort("created_at", -1).to_list(1)
    return pending[0] if pending else None


async def _get_vendor_subscription(vendor_id: str, subscription_id: str) -> Dict[str, Any]:
    sub = await db.vendor_subscriptions.find_one(
        {"id": subscription_id, "vendor_id": vendor_id},
        {"_id": 0}
    )
    if not sub:
        raise SubscriptionError("Subscription not found", 404)
    return sub


async def _get_plan(plan_id: str, vendor_id: Optional[str] = None) -> Dict[str, Any]:
    plan = await db.subscription_plans.find_one({"id": plan_id}, {"_id": 0})
    if not plan or not plan.get("is_active", True):
        raise SubscriptionError("Subscription plan not found or inactive", 404)
    if vendor_id and plan.get("is_custom") and vendor_id not in plan.get("assigned_to_vendors", []):
        raise SubscriptionError("This plan is not available for your account", 403)
    return plan


# ════════════════════════════════════════════════════════════════════════════
# PURCHASE / PAYMENT
# ════════════════════════════════════════════════════════════════════════════

async def purchase_subscription(vendor: Dict[str, Any], plan_id: str, payment_method: str,
                                performed_by: Optional[str] = None) -> Dict[str, Any]:
    existing = await db.vendor_subscriptions.find_one(
        {"vendor_id": vendor["id"], "status": {"$in": ["active", "pending"]}},
        {"_id": 0, "id": 1, "status": 1}
    )
    if existing:
        if existing["status"] == "active":
            raise SubscriptionError("You already have an active subscription")
        raise SubscriptionError("You already have a subscription awaiting payment")

    plan = await _get_plan(plan_id, vendor["id"])
    sub = build_subscription_doc(vendor, plan, payment_method)
    sub["history"].append(history_entry(
        "purchased", f"Purchased {plan['plan_name']} via {payment_method}", performed_by
    ))
    await db.vendor_subscriptions.insert_one(dict(sub))

    logger.info(
        f"[SUBSCRIPTION] Vendor {vendor['id']} purchased plan {plan['plan_name']} "
        f"({payment_method}) -> {sub['id']}"
    )

    if payment_method == "online":
        sub = await activate_subscription(sub["id"], generate_transaction_id(), performed_by)

    return sub


async def activate_subscription(subscription_id: str, transaction_id: Optional[str] = None,
                                performed_by: Optional[str] = None,
                                restart_period: bool = False) -> Dict[str, Any]:
    """
    pending → active. Payment becomes completed.
    restart_period: start/end dates restart now (bank transfer verified later than purchase)
    """
    sub = await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})
    if not sub:
        raise SubscriptionError("Subscription not found", 404)
    if sub["status"] != "pending":
        raise SubscriptionError(f"Cannot activate a subscription in status '{sub['status']}'")

    other_active = await get_active_subscription(sub["vendor_id"])
    if other_active:
        raise SubscriptionError("Vendor already has an active subscription")

    now = datetime.now(timezone.utc)
    update = {
        "status": "active",
        "is_active": True,
        "payment.payment_status": "completed",
        "payment.payment_date": now.isoformat(),
        "updated_at": now.isoformat(),
    }
    if transaction_id:
        update["payment.transaction_id"] = transaction_id
    if performed_by and sub["payment"]["payment_method"] == "bank_transfer":
        update["payment.verified_at"] = now.isoformat()
        update["payment.verified_by"] = performed_by
    if restart_period:
        days = sub["plan_snapshot"]["duration_in_days"]
        update["start_date"] = now.isoformat()
        update["end_date"] = (now + timedelta(days=days)).isoformat()

    await db.vendor_subscriptions.update_one(
        {"id": subscription_id, "status": "pending"},
        {
            "$set": update,
            "$push": {"history": history_entry("activated", "Subscription activated", performed_by)}
        }
    )

    logger.info(f"[SUBSCRIPTION] {subscription_id} -> active (vendor={sub['vendor_id']})")

    await notify_vendors(
        [sub["vendor_id"]],
        "Subscription activated",
        f"Your {sub['plan_snapshot']['plan_name']} plan is active. "
        f"{sub['usage']['leads_remaining']} leads available.",
        type="subscription",
        data={"subscription_id": subscription_id},
        send_email=True,
    )

    return await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})


async def submit_payment(vendor_id: str, subscription_id: str, transaction_id: str,
                         notes: Optional[str] = None) -> Dict[str, Any]:
    sub = await _get_vendor_subscription(vendor_id, subscription_id)
    payment = sub["payment"]

    if sub["status"] != "pending" or payment["payment_method"] != "bank_transfer":
        raise SubscriptionError("Payment details can only be submitted for pending bank transfer subscriptions")
    if payment.get("payment_status") == "submitted" or payment.get("transaction_id"):
        raise SubscriptionError("Payment details already submitted for this subscription")

    now = now_iso()
    await db.vendor_subscriptions.update_one(
        {"id": subscription_id},
        {
            "$set": {
                "payment.transaction_id": transaction_id.strip(),
                "payment.payment_status": "submitted",
                "payment.submitted_at": now,
                "payment.notes": notes,
                "updated_at": now,
            },
            "$push": {"history": history_entry("payment_submitted", f"Transaction {transaction_id.strip()}", vendor_id)}
        }
    )

    await notify_admins(
        "Payment submitted",
        f"{sub.get('vendor_name') or vendor_id} submitted a bank transfer for "
        f"{sub['plan_snapshot']['plan_name']} ({payment['amount']} {payment['currency']})",
        type="payment",
        data={"subscription_id": subscription_id, "transaction_id": transaction_id.strip()},
    )
    email_service.send_admin_alert(
        "PAYMENT_SUBMITTED",
        f"Bank transfer to verify for subscription {subscription_id}",
        {"vendor": sub.get("vendor_name"), "amount": payment["amount"], "transaction_id": transaction_id.strip()},
    )

    logger.info(f"[SUBSCRIPTION] {subscription_id} payment submitted ({transaction_id.strip()})")
    return await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})


async def verify_payment(subscription_id: str, admin_id: str) -> Dict[str, Any]:
    sub = await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})
    if not sub:
        raise SubscriptionError("Subscription not found", 404)
    if sub["payment"]["payment_method"] != "bank_transfer":
        raise SubscriptionError("Only bank transfer payments need verification")
    if sub["payment"]["payment_status"] not in ("submitted", "pending"):
        raise SubscriptionError(f"Payment is already {sub['payment']['payment_status']}")

    return await activate_subscription(subscription_id, performed_by=admin_id, restart_period=True)


async def reject_payment(subscription_id: str, admin_id: str, reason: str) -> Dict[str, Any]:
    sub = await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})
    if not sub:
        raise SubscriptionError("Subscription not found", 404)
    if sub["status"] != "pending":
        raise SubscriptionError(f"Cannot reject payment of a subscription in status '{sub['status']}'")

    now = now_iso()
    await db.vendor_subscriptions.update_one(
        {"id": subscription_id},
        {
            "$set": {
                "status": "cancelled",
                "is_active": False,
                "payment.payment_status": "failed",
                "payment.failure_reason": reason,
                "payment.verified_at": now,
                "payment.verified_by": admin_id,
                "updated_at": now,
            },
            "$push": {"history": history_entry("payment_rejected", reason, admin_id)}
        }
    )

    await notify_vendors(
        [sub["vendor_id"]],
        "Payment rejected",
        f"Your payment for {sub['plan_snapshot']['plan_name']} was rejected: {reason}",
        type="payment",
        data={"subscription_id": subscription_id},
        send_email=True,
    )

    logger.info(f"[SUBSCRIPTION] {subscription_id} payment rejected by {admin_id}: {reason}")
    return await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})


# ════════════════════════════════════════════════════════════════════════════
# UPGRADE / DOWNGRADE / CANCEL
# ════════════════════════════════════════════════════════════════════════════

async def change_plan(vendor: Dict[str, Any], subscription_id: str, plan_id: str) -> Dict[str, Any]:
    """
    Higher effective price → immediate upgrade (old cancelled, new active, leads carried over).
    Lower or equal price → downgrade scheduled for the next renewal.
    """
    current = await _get_vendor_subscription(vendor["id"], subscription_id)
    if current["status"] != "active":
        raise SubscriptionError("Only an active subscription can be changed")
    if current["plan_id"] == plan_id:
        raise SubscriptionError("You are already on this plan")

    new_plan = await _get_plan(plan_id, vendor["id"])
    current_price = current["plan_snapshot"]["effective_price"]
    new_price = effective_price(new_plan)
    change_type = "upgrade" if new_price > current_price else "downgrade"
    now = datetime.now(timezone.utc)

    if change_type == "downgrade":
        await db.vendor_subscriptions.update_one(
            {"id": subscription_id},
            {
                "$set": {
                    "renewal_info.next_renewal_plan": plan_id,
                    "renewal_info.renewal_date": current["end_date"],
                    "updated_at": now.isoformat(),
                },
                "$push": {
                    "history": history_entry(
                        "scheduled_change",
                        f"Scheduled downgrade to {new_plan['plan_name']} at next renewal",
                        vendor["id"]
                    ),
                    "upgrade_downgrade_history": {
                        "from_plan": current["plan_id"],
                        "to_plan": plan_id,
                        "date": now.isoformat(),
                        "type": "downgrade",
                        "price_difference": round(new_price - current_price, 2),
                        "leads_difference": new_plan["total_leads"] - current["plan_snapshot"]["total_leads"],
                        "applied": False,
                    }
                }
            }
        )
        logger.info(f"[SUBSCRIPTION] {subscription_id} downgrade to {new_plan['plan_name']} scheduled")
        sub = await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})
        return {"change_type": "downgrade", "strategy": "next_cycle", "subscription": sub}

    remaining_days = days_between(current["end_date"], now)
    amount = prorated_amount(new_price, new_plan["duration_in_days"], remaining_days)
    carried_leads = max(0, current["usage"]["leads_remaining"])

    new_sub = build_subscription_doc(
        vendor, new_plan, UPGRADE_PAYMENT_METHOD,
        amount=amount, start=now,
        leads_remaining=new_plan["total_leads"] + carried_leads,
    )
    new_sub["plan_snapshot"]["total_leads"] = new_plan["total_leads"] + carried_leads
    new_sub.update({
        "status": "active",
        "is_active": True,
        "previous_subscription": subscription_id,
    })
    new_sub["payment"].update({
        "payment_status": "completed",
        "payment_date": now.isoformat(),
        "transaction_id": generate_transaction_id("UPGRADE"),
    })
    new_sub["history"].append(history_entry(
        "upgraded",
        f"Upgrade from {current['plan_snapshot']['plan_name']} to {new_plan['plan_name']}",
        vendor["id"]
    ))
    new_sub["upgrade_downgrade_history"].append({
        "from_plan": current["plan_id"],
        "to_plan": plan_id,
        "date": now.isoformat(),
        "type": "upgrade",
        "price_difference": round(new_price - current_price, 2),
        "leads_difference": new_plan["total_leads"] - current["plan_snapshot"]["total_leads"],
        "bonus_leads": carried_leads,
        "applied": True,
    })

    # Old one must be closed before the new one becomes the single active subscription
    await db.vendor_subscriptions.update_one(
        {"id": subscription_id, "status": "active"},
        {
            "$set": {
                "status": "cancelled",
                "is_active": False,
                "next_subscription": new_sub["id"],
                "updated_at": now.isoformat(),
            },
            "$push": {"history": history_entry("upgraded", f"Upgraded to {new_plan['plan_name']}", vendor["id"])}
        }
    )
    await db.vendor_subscriptions.insert_one(dict(new_sub))

    logger.info(
        f"[SUBSCRIPTION] {subscription_id} upgraded -> {new_sub['id']} "
        f"(prorated={amount}, carried_leads={carried_leads})"
    )
    return {
        "change_type": "upgrade",
        "strategy": "immediate",
        "subscription": new_sub,
        "prorated_amount": amount,
        "bonus_leads": carried_leads,
    }


async def cancel_subscription(vendor_id: str, subscription_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    sub = await _get_vendor_subscription(vendor_id, subscription_id)
    if sub["status"] not in ("active", "pending"):
        raise SubscriptionError(f"Cannot cancel a subscription in status '{sub['status']}'")

    await db.vendor_subscriptions.update_one(
        {"id": subscription_id},
        {
            "$set": {
                "status": "cancelled",
                "is_active": False,
                "cancelled_at": now_iso(),
                "cancellation_reason": reason or "Cancelled by vendor",
                "updated_at": now_iso(),
            },
            "$push": {"history": history_entry("cancelled", reason or "Cancelled by vendor", vendor_id)}
        }
    )
    logger.info(f"[SUBSCRIPTION] {subscription_id} cancelled by vendor {vendor_id}")
    return await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})


MAX_USAGE_RETRIES = 3


async def _load_subscription(subscription_id: str) -> Optional[Dict[str, Any]]:
    return await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})


async def _adjust_usage(subscription_id: str, adjust_type: str, amount: int) -> Tuple[int, int]:
    """
    Apply an admin adjustment without overwriting a concurrent take.
    Usual case: a conditional $inc that keeps consumed + remaining constant.
    Floor-0 case: compare-and-set on the usage values just read, retried.
    """
    shrinking = "usage.leads_consumed" if adjust_type == "increase" else "usage.leads_remaining"
    sign = 1 if adjust_type == "increase" else -1

    for _ in range(MAX_USAGE_RETRIES):
        result = await db.vendor_subscriptions.update_one(
            {"id": subscription_id, "status": "active", shrinking: {"$gte": amount}},
            {
                "$inc": {"usage.leads_consumed": -sign * amount, "usage.leads_remaining": sign * amount},
                "$set": {"updated_at": now_iso()},
            }
        )
        sub = await _load_subscription(subscription_id)
        if result.modified_count == 1:
            return sub["usage"]["leads_consumed"], sub["usage"]["leads_remaining"]
        if sub["status"] != "active":
            raise SubscriptionError("Leads can only be adjusted on active subscriptions")

        before_consumed = sub["usage"].get("leads_consumed", 0)
        before_remaining = sub["usage"].get("leads_remaining", 0)
        consumed, remaining = apply_lead_adjustment(before_consumed, before_remaining, adjust_type, amount)
        total = sub["plan_snapshot"]["total_leads"]
        if consumed + remaining > total:
            raise SubscriptionError(
                f"Adjustment exceeds plan total: consumed ({consumed}) + remaining ({remaining}) > {total}"
            )

        result = await db.vendor_subscriptions.update_one(
            {
                "id": subscription_id,
                "status": "active",
                "usage.leads_consumed": before_consumed,
                "usage.leads_remaining": before_remaining,
            },
            {"$set": {"usage.leads_consumed": consumed, "usage.leads_remaining": remaining, "updated_at": now_iso()}}
        )
        if result.modified_count == 1:
            return consumed, remaining

    raise SubscriptionError("Lead usage changed during the adjustment, please retry", 409)


async def adjust_leads(subscription_id: str, adjust_type: str, amount: int, reason: str,
                       admin_id: str) -> Dict[str, Any]:
    sub = await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})
    if not sub:
        raise SubscriptionError("Subscription not found", 404)
    if sub["status"] != "active":
        raise SubscriptionError("Leads can only be adjusted on active subscriptions")

    consumed, remaining = await _adjust_usage(subscription_id, adjust_type, amount)

    action = "leads_increased" if adjust_type == "increase" else "leads_decreased"
    await db.vendor_subscriptions.update_one(
        {"id": subscription_id},
        {"$push": {"history": history_entry(action, f"{amount} lead(s): {reason}", admin_id)}}
    )

    verb = "added to" if adjust_type == "increase" else "removed from"
    await notify_vendors(
        [sub["vendor_id"]],
        "Lead quota adjusted",
        f"{amount} lead(s) {verb} your subscription. Reason: {reason}",
        type="subscription",
        data={"subscription_id": subscription_id, "leads_remaining": remaining},
    )

    logger.info(
        f"[SUBSCRIPTION] {subscription_id} {action} by {amount} "
        f"(consumed={consumed}, remaining={remaining}) admin={admin_id}"
    )
    return await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})


# ════════════════════════════════════════════════════════════════════════════
# LEAD QUOTA (called by the lead state machine)
# ════════════════════════════════════════════════════════════════════════════

async def reserve_lead_quota(subscription_id: str) -> bool:
    """Atomically take one lead from the quota. False when nothing is left."""
    result = await db.vendor_subscriptions.update_one(
        {"id": subscription_id, "status": "active", "usage.leads_remaining": {"$gt": 0}},
        {"$inc": {"usage.leads_remaining": -1, "usage.leads_consumed": 1}}
    )
    return result.modified_count == 1


async def release_lead_quota(subscription_id: str) -> None:
    await db.vendor_subscriptions.update_one(
        {"id": subscription_id, "usage.leads_consumed": {"$gt": 0}},
        {"$inc": {"usage.leads_remaining": 1, "usage.leads_consumed": -1}}
    )


async def record_lead_consumption(subscription_id: str, lead_id: str) -> Dict[str, Any]:
    """Bookkeeping after a successful take: assignment row + monthly usage bucket"""
    now = datetime.now(timezone.utc)
    key = month_key(now)

    await db.vendor_subscriptions.update_one(
        {"id": subscription_id},
        {
            "$set": {"usage.last_lead_consumed_at": now.isoformat(), "updated_at": now.isoformat()},
            "$push": {"lead_assignments": {
                "lead_id": lead_id,
                "assigned_at": now.isoformat(),
                "status": "assigned",
                "completed_at": None,
                "revenue": 0,
            }}
        }
    )

    sub = await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})
    allocated = sub["plan_snapshot"].get("leads_per_month", 0)

    result = await db.vendor_subscriptions.update_one(
        {"id": subscription_id, "monthly_usage.month": key},
        {"$inc": {"monthly_usage.$.leads_used": 1}}
    )
    if result.matched_count == 0:
        await db.vendor_subscriptions.update_one(
            {"id": subscription_id},
            {"$push": {"monthly_usage": {
                "month": key,
                "year": now.year,
                "month_number": now.month,
                "leads_used": 1,
                "leads_allocated": allocated,
                "usage_percentage": round(1 / allocated * 100) if allocated > 0 else 0,
            }}}
        )
    else:
        sub = await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})
        bucket = next(m for m in sub["monthly_usage"] if m["month"] == key)
        pct = round(bucket["leads_used"] / allocated * 100) if allocated > 0 else 0
        await db.vendor_subscriptions.update_one(
            {"id": subscription_id, "monthly_usage.month": key},
            {"$set": {"monthly_usage.$.usage_percentage": pct}}
        )

    return await db.vendor_subscriptions.find_one({"id": subscription_id}, {"_id": 0})


async def credit_lead_quota(vendor_id: str, lead_id: str, reason: str, performed_by: str,
                            subscription_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Give one lead back after an approved refund.
    The subscription the lead was taken under is credited while it is still active,
    otherwise the vendor's current active one. Only a consumed lead can come back,
    so consumed + remaining never grows past the plan total.
    """
    candidates = [subscription_id] if subscription_id else []
    active = await get_active_subscription(vendor_id)
    if active and active["id"] not in candidates:
        candidates.append(active["id"])

    for sub_id in candidates:
        result = await db.vendor_subscriptions.update_one(
            {"id": sub_id, "vendor_id": vendor_id, "status": "active", "usage.leads_consumed": {"$gt": 0}},
            {
                "$inc": {"usage.leads_remaining": 1, "usage.leads_consumed": -1},
                "$set": {"updated_at": now_iso()},
                "$push": {"history": history_entry("lead_refunded", f"Lead {lead_id}: {reason}", performed_by)},
            }
        )
        if result.modified_count == 1:
            logger.info(f"[SUBSCRIPTION] {sub_id} credited one lead (refund of {lead_id})")
            return await db.vendor_subscriptions.find_one({"id": sub_id}, {"_id": 0})

    logger.warning(f"[SUBSCRIPTION] Nothing to credit for vendor {vendor_id} (lead {lead_id})")
    return None


async def complete_lead_assignment(vendor_id: str, lead_id: str, revenue: float) -> None:
    """Mark the subscription's assignment row completed, then refresh performance"""
    now = now_iso()
    result = await db.vendor_subscriptions.update_one(
        {"vendor_id": vendor_id, "lead_assignments.lead_id": lead_id},
        {"$set": {
            "lead_assignments.$.status": "completed",
            "lead_assignments.$.completed_at": now,
            "lead_assignments.$.revenue": revenue or 0,
            "updated_at": now,
        }}
    )
    if result.matched_count == 0:
        return

    sub = await db.vendor_subscriptions.find_one(
        {"vendor_id": vendor_id, "lead_assignments.lead_id": lead_id},
        {"_id": 0, "id": 1, "lead_assignments": 1}
    )
    await db.vendor_subscriptions.update_one(
        {"id": sub["id"]},
        {"$set": {"performance": compute_performance(sub.get("lead_assignments", []))}}
    )


def compute_performance(assignments) -> Dict[str, Any]:
    total = len(assignments)
    completed = [a for a in assignments if a.get("status") == "completed"]
    revenue = sum(a.get("revenue") or 0 for a in assignments)
    return {
        "job_completion_rate": round(len(completed) / total * 100) if total > 0 else 0,
        "total_revenue": revenue,
        "average_job_value": round(revenue / len(completed)) if completed else 0,
    }


# ════════════════════════════════════════════════════════════════════════════
# EXPIRY (scheduler)
# ════════════════════════════════════════════════════════════════════════════

async def expire_subscriptions() -> Dict[str, int]:
    """
    Active subscriptions past end_date → expired.
    A scheduled downgrade turns into a pending subscription waiting for payment.
    """
    now = now_iso()
    expiring = await db.vendor_subscriptions.find(
        {"status": "active", "end_date": {"$lte": now}},
        {"_id": 0}
    ).to_list(1000)

    expired = 0
    renewals = 0
    for sub in expiring:
        result = await db.vendor_subscriptions.update_one(
            {"id": sub["id"], "status": "active"},
            {
                "$set": {"status": "expired", "is_active": False, "updated_at": now},
                "$push": {"history": history_entry("expired", "Subscription period ended")}
            }
        )
        if result.modified_count == 0:
            continue
        expired += 1

        next_plan_id = (sub.get("renewal_info") or {}).get("next_renewal_plan")
        if next_plan_id:
            vendor = await db.vendors.find_one({"id": sub["vendor_id"]}, {"_id": 0})
            plan = await db.subscription_plans.find_one({"id": next_plan_id, "is_active": True}, {"_id": 0})
            if vendor and plan:
                renewal = build_subscription_doc(vendor, plan, sub["payment"]["payment_method"])
                renewal["previous_subscription"] = sub["id"]
                renewal["history"].append(history_entry(
                    "renewal_created", f"Scheduled downgrade to {plan['plan_name']}"
                ))
                await db.vendor_subscriptions.insert_one(dict(renewal))
                await db.vendor_subscriptions.update_one(
                    {"id": sub["id"]}, {"$set": {"next_subscription": renewal["id"]}}
                )
                renewals += 1

        await notify_vendors(
            [sub["vendor_id"]],
            "Subscription expired",
            f"Your {sub['plan_snapshot']['plan_name']} plan has expired.",
            type="subscription",
            data={"subscription_id": sub["id"]},
            send_email=True,
        )

    if expired:
        logger.info(f"[SUBSCRIPTION] Expired {expired} subscription(s), {renewals} renewal(s) created")
    return {"expired": expired, "renewals": renewals}


async def send_expiry_reminders() -> int:
    """One reminder per subscription ending within EXPIRING_SOON_DAYS"""
    now = datetime.now(timezone.utc)
    limit = (now + timedelta(days=EXPIRING_SOON_DAYS)).isoformat()
    subs = await db.vendor_subscriptions.find(
        {
            "status": "active",
            "end_date": {"$gt": now.isoformat(), "$lte": limit},
            "expiry_reminder_sent": {"$ne": True},
        },
        {"_id": 0}
    ).to_list(1000)

    for sub in subs:
        days = days_between(sub["end_date"], now)
        await notify_vendors(
            [sub["vendor_id"]],
            "Subscription expiring soon",
            f"Your {sub['plan_snapshot']['plan_name']} plan expires in {days} day(s). "
            f"{sub['usage']['leads_remaining']} lead(s) left.",
            type="subscription",
            data={"subscription_id": sub["id"], "days_remaining": days},
            send_email=True,
        )
        await db.vendor_subscriptions.update_one({"id": sub["id"]}, {"$set": {"expiry_reminder_sent": True}})

    return len(subs)
