"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  HomeXpert - Lead State Machine                                              ║
║                                                                              ║
║  STATUS TRANSITION RULES                                                     ║
║                                                                              ║
║  ONLY THIS MODULE changes lead.status after creation and sets taken_by       ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - a lead is taken by at most one vendor                                     ║
║    (conditional update on taken_by not existing)                             ║
║  - taking a lead consumes exactly one lead of the vendor's active            ║
║    subscription (reserved before the lead write, released if it loses)       ║
║  - every status change appends one progress_history entry                    ║
║  - refund is a parallel branch: refund_request.status never moves            ║
║    lead.status except on approval (→ cancelled)                              ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
import uuid
from typing import List, Optional, Dict, Any, Tuple

from config import db, now_iso
from services import subscription_service

logger = logging.getLogger("lead_state_machine")


# ════════════════════════════════════════════════════════════════════════════
# VALID STATE TRANSITIONS
# ════════════════════════════════════════════════════════════════════════════

VALID_LEAD_TRANSITIONS = {
    "pending": ["available", "assigned", "cancelled"],
    "available": ["taken", "pending", "cancelled"],
    "assigned": ["taken", "pending", "cancelled"],
    "taken": ["contacted", "cancelled"],
    "contacted": ["interested", "not_interested", "cancelled"],
    "interested": ["scheduled", "not_interested", "cancelled"],
    "not_interested": [],  # TERMINAL
    "scheduled": ["in_progress", "completed", "cancelled"],
    "in_progress": ["completed", "converted", "cancelled"],
    "completed": ["converted"],
    "converted": [],  # TERMINAL
    "cancelled": [],  # TERMINAL
}

# None = no refund requested yet
VALID_REFUND_TRANSITIONS = {
    None: ["pending"],
    "pending": ["approved", "rejected"],
    "approved": [],
    "rejected": [],
}

STATUS_TIMESTAMP_FIELDS = {
    "contacted": "contacted_at",
    "interested": "interested_at",
    "not_interested": "not_interested_at",
    "scheduled": "scheduled_at",
    "completed": "completed_at",
    "converted": "converted_at",
    "cancelled": "cancelled_at",
}

ASSIGNABLE_STATUSES = ["pending", "available", "assigned"]
TAKEABLE_STATUSES = ["available", "assigned"]
UNASSIGNABLE_STATUSES = ["pending", "available", "assigned", "taken"]
WORKED_STATUSES = [
    "taken", "contacted", "interested", "not_interested",
    "scheduled", "in_progress", "completed", "converted", "cancelled",
]
NON_REFUNDABLE_STATUSES = ["completed", "converted", "cancelled"]
CLOSED_STATUSES = ["completed", "converted", "cancelled", "not_interested"]
PIPELINE_FLOW = ["taken", "contacted", "interested", "scheduled", "in_progress", "completed"]


# ════════════════════════════════════════════════════════════════════════════
# ERRORS
# ════════════════════════════════════════════════════════════════════════════

class LeadTransitionError(Exception):
    """Raised when a lead status move is not allowed"""
    pass


class LeadTakeError(Exception):
    """
    Raised when a vendor cannot take a lead.
    flags are surfaced to the client (requiresSubscription, needsUpgrade, alreadyTaken).
    """

    def __init__(self, message: str, status_code: int = 409, **flags):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.flags = flags


# ════════════════════════════════════════════════════════════════════════════
# PURE HELPERS
# ════════════════════════════════════════════════════════════════════════════

def validate_lead_transition(lead_id: str, from_status: str, to_status: str) -> bool:
    valid_next = VALID_LEAD_TRANSITIONS.get(from_status, [])

    if to_status not in valid_next:
        raise LeadTransitionError(
            f"Invalid transition: lead {lead_id} cannot go from '{from_status}' to '{to_status}'. "
            f"Valid transitions from '{from_status}': {valid_next}"
        )

    return True


def validate_admin_status(lead_id: str, to_status: str) -> bool:
    """Admins may force any status except 'taken' (only the take path sets a taker)"""
    if to_status not in VALID_LEAD_TRANSITIONS:
        raise LeadTransitionError(f"Unknown status '{to_status}' for lead {lead_id}")
    if to_status == "taken":
        raise LeadTransitionError(
            f"Lead {lead_id} cannot be set to 'taken' directly. Use markTaken with a vendor."
        )
    return True


def validate_refund_transition(lead_id: str, current: Optional[str], target: str) -> bool:
    valid_next = VALID_REFUND_TRANSITIONS.get(current, [])
    if target not in valid_next:
        if current is None:
            raise LeadTransitionError(f"No refund request to process for lead {lead_id}")
        raise LeadTransitionError(
            f"Refund for lead {lead_id} is already '{current}', cannot move to '{target}'"
        )
    return True


def history_entry(from_status: Optional[str], to_status: str, actor: Dict[str, Any],
                  reason: str = "") -> Dict[str, Any]:
    """
    actor = {"id": ..., "type": "admin" | "vendor" | "system"}
    """
    return {
        "from_status": from_status,
        "to_status": to_status,
        "changed_by": actor.get("id", "system"),
        "changed_by_type": actor.get("type", "system"),
        "reason": reason or f"Status updated to {to_status}",
        "timestamp": now_iso(),
    }


def status_timestamp_update(status: str, now: str) -> Dict[str, Any]:
    field = STATUS_TIMESTAMP_FIELDS.get(status)
    return {field: now} if field else {}


def completion_percentage(status: str) -> int:
    if status not in PIPELINE_FLOW:
        return 0
    return round((PIPELINE_FLOW.index(status) + 1) / len(PIPELINE_FLOW) * 100)


def default_refund_request() -> Dict[str, Any]:
    return {
        "requested": False,
        "status": None,
        "reason": None,
        "requested_at": None,
        "requested_by": None,
        "processed_at": None,
        "processed_by": None,
        "admin_notes": None,
    }


def build_note(content: str, author: Dict[str, Any], note_type: str = "general") -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "content": content.strip(),
        "type": note_type,
        "created_by": author.get("id", "system"),
        "created_by_type": author.get("type", "system"),
        "created_by_name": author.get("name", ""),
        "created_at": now_iso(),
    }


# ════════════════════════════════════════════════════════════════════════════
# TAKE (EXCLUSIVE LOCK + QUOTA)
# ════════════════════════════════════════════════════════════════════════════

async def take_lead(
    lead_id: str,
    vendor_id: str,
    actor: Dict[str, Any],
    require_eligible: bool = True,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    🔒 ONLY function that sets taken_by.

    1. Active subscription with leads left
    2. Lead visible to the vendor, untaken
    3. Reserve one lead of quota (conditional $inc)
    4. Compare-and-set on taken_by; on loss release the reservation
    5. Subscription bookkeeping (assignment row, monthly usage)

    require_eligible=False is the admin markTaken path (vendor need not be in the
    eligible list, quota and CAS still apply).

    Raises LeadTakeError.
    """
    subscription = await subscription_service.get_active_subscription(vendor_id)
    if not subscription:
        raise LeadTakeError(
            "No active subscription found. Please purchase a subscription to take leads.",
            status_code=403, requiresSubscription=True
        )
    if subscription["usage"].get("leads_remaining", 0) <= 0:
        raise LeadTakeError(
            "No leads remaining in your subscription. Please upgrade your plan.",
            status_code=403, needsUpgrade=True
        )

    visible = {
        "id": lead_id,
        "status": {"$in": TAKEABLE_STATUSES},
        "taken_by": {"$exists": False},
    }
    if require_eligible:
        visible["available_to_vendors.vendors"] = vendor_id

    lead = await db.leads.find_one(visible, {"_id": 0})
    if not lead:
        raise LeadTakeError(
            "Lead not found, not available to you, or already taken",
            status_code=404, alreadyTaken=True
        )

    if not await subscription_service.reserve_lead_quota(subscription["id"]):
        raise LeadTakeError(
            "No leads remaining in your subscription. Please upgrade your plan.",
            status_code=403, needsUpgrade=True
        )

    # Eligibility is re-checked in the write itself
    now = now_iso()
    result = await db.leads.update_one(
        visible,
        {
            "$set": {
                "taken_by": vendor_id,
                "taken_at": now,
                "status": "taken",
                "subscription_id": subscription["id"],
                "modified_by": actor.get("id"),
                "updated_at": now,
            },
            "$push": {"progress_history": history_entry(
                lead["status"], "taken", actor,
                "Lead taken by vendor" if actor.get("type") == "vendor" else f"Marked taken for vendor {vendor_id}"
            )}
        }
    )

    if result.matched_count == 0:
        await subscription_service.release_lead_quota(subscription["id"])
        logger.warning(f"[LEAD_SM] Lead {lead_id} take race lost by vendor {vendor_id}, quota released")
        raise LeadTakeError(
            "Lead was just taken by another vendor",
            status_code=409, alreadyTaken=True
        )

    subscription = await subscription_service.record_lead_consumption(subscription["id"], lead_id)

    logger.info(
        f"[LEAD_SM] Lead {lead_id} -> taken by vendor {vendor_id} | "
        f"subscription {subscription['id']} remaining={subscription['usage']['leads_remaining']}"
    )

    lead = await db.leads.find_one({"id": lead_id}, {"_id": 0})
    return lead, subscription


# ════════════════════════════════════════════════════════════════════════════
# ASSIGNMENT / AVAILABILITY
# ════════════════════════════════════════════════════════════════════════════

async def make_available(lead_id: str, vendor_ids: List[str], actor: Dict[str, Any],
                         reason: str = "") -> bool:
    """
    pending/available/assigned (untaken) → assigned (one vendor) | available (several)
    Returns False when the lead is not assignable.
    """
    if not vendor_ids:
        raise LeadTransitionError(f"Lead {lead_id}: at least one vendor is required")

    lead = await db.leads.find_one(
        {"id": lead_id, "status": {"$in": ASSIGNABLE_STATUSES}, "taken_by": {"$exists": False}},
        {"_id": 0, "status": 1}
    )
    if not lead:
        return False

    vendor_ids = list(dict.fromkeys(vendor_ids))
    new_status = "assigned" if len(vendor_ids) == 1 else "available"
    now = now_iso()

    result = await db.leads.update_one(
        {"id": lead_id, "status": {"$in": ASSIGNABLE_STATUSES}, "taken_by": {"$exists": False}},
        {
            "$set": {
                "available_to_vendors": {
                    "vendors": vendor_ids,
                    "assigned_at": now,
                    "assigned_by": actor.get("id"),
                },
                "made_available_at": now,
                "status": new_status,
                "modified_by": actor.get("id"),
                "updated_at": now,
            },
            "$push": {"progress_history": history_entry(
                lead["status"], new_status, actor,
                reason or f"Made available to {len(vendor_ids)} vendor(s)"
            )}
        }
    )

    if result.modified_count:
        logger.info(f"[LEAD_SM] Lead {lead_id} -> {new_status} for vendors {vendor_ids}")
    return result.modified_count == 1


async def unassign(lead_id: str, actor: Dict[str, Any], reason: str = "") -> bool:
    """pending/available/assigned/taken → pending, eligibility and taker cleared"""
    lead = await db.leads.find_one(
        {"id": lead_id, "status": {"$in": UNASSIGNABLE_STATUSES}},
        {"_id": 0, "status": 1, "taken_by": 1}
    )
    if not lead:
        return False

    now = now_iso()
    result = await db.leads.update_one(
        {"id": lead_id, "status": {"$in": UNASSIGNABLE_STATUSES}},
        {
            "$set": {"status": "pending", "modified_by": actor.get("id"), "updated_at": now},
            "$unset": {"available_to_vendors": "", "taken_by": "", "taken_at": "", "made_available_at": ""},
            "$push": {"progress_history": history_entry(
                lead["status"], "pending", actor, reason or "Vendors unassigned"
            )}
        }
    )

    if result.modified_count:
        logger.info(
            f"[LEAD_SM] Lead {lead_id} {lead['status']} -> pending (unassigned, previous taker={lead.get('taken_by')})"
        )
    return result.modified_count == 1


# ════════════════════════════════════════════════════════════════════════════
# STATUS CHANGES
# ════════════════════════════════════════════════════════════════════════════

async def admin_set_status(lead_id: str, to_status: str, actor: Dict[str, Any], reason: str = "") -> Dict[str, Any]:
    """Admin override: any status but 'taken'. Timestamp field follows the status."""
    validate_admin_status(lead_id, to_status)

    lead = await db.leads.find_one({"id": lead_id}, {"_id": 0, "status": 1})
    if not lead:
        raise LeadTransitionError(f"Lead {lead_id} not found")
    if lead["status"] == to_status:
        return await db.leads.find_one({"id": lead_id}, {"_id": 0})

    now = now_iso()
    update = {"status": to_status, "modified_by": actor.get("id"), "updated_at": now}
    update.update(status_timestamp_update(to_status, now))
    unset = {}
    # Back to a pre-take status means nobody holds the lead anymore
    if to_status in ASSIGNABLE_STATUSES:
        unset = {"taken_by": "", "taken_at": ""}
    if to_status == "pending":
        unset["available_to_vendors"] = ""

    ops = {
        "$set": update,
        "$push": {"progress_history": history_entry(
            lead["status"], to_status, actor, reason or f"Status set to {to_status} by admin"
        )}
    }
    if unset:
        ops["$unset"] = unset

    await db.leads.update_one({"id": lead_id}, ops)
    logger.info(f"[LEAD_SM] Lead {lead_id} {lead['status']} -> {to_status} (admin override)")
    return await db.leads.find_one({"id": lead_id}, {"_id": 0})


async def vendor_update(lead: Dict[str, Any], vendor_id: str, actor: Dict[str, Any],
                        changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Vendor pipeline update on a lead it holds.
    changes: status, scheduled_date, scheduled_time, conversion_value,
             actual_service_cost, reason, customer_feedback, note
    """
    if lead.get("taken_by") != vendor_id:
        raise LeadTransitionError(f"Lead {lead['id']} is not held by vendor {vendor_id}")

    current = lead["status"]
    status = changes.get("status")
    now = now_iso()
    update: Dict[str, Any] = {"modified_by": actor.get("id"), "updated_at": now}
    push: Dict[str, Any] = {}

    if status and status != current:
        validate_lead_transition(lead["id"], current, status)
        update["status"] = status
        update.update(status_timestamp_update(status, now))

    if changes.get("scheduled_date"):
        update["scheduled_date"] = changes["scheduled_date"]
    if changes.get("scheduled_time"):
        update["scheduled_time"] = changes["scheduled_time"]
    if changes.get("conversion_value") is not None:
        update["conversion_value"] = changes["conversion_value"]
    if changes.get("actual_service_cost") is not None:
        update["actual_service_cost"] = changes["actual_service_cost"]
    if changes.get("customer_feedback"):
        update["customer_feedback"] = changes["customer_feedback"]

    new_status = update.get("status", current)
    push["progress_history"] = history_entry(
        current, new_status, actor,
        changes.get("reason") or (f"Status updated to {new_status}" if new_status != current else "Lead details updated")
    )
    if changes.get("note"):
        push["notes"] = build_note(changes["note"], actor, "general")

    result = await db.leads.update_one(
        {"id": lead["id"], "taken_by": vendor_id, "status": current},
        {"$set": update, "$push": push}
    )
    if result.matched_count == 0:
        raise LeadTransitionError(f"Lead {lead['id']} changed concurrently, reload and retry")

    if new_status != current:
        logger.info(f"[LEAD_SM] Lead {lead['id']} {current} -> {new_status} by vendor {vendor_id}")

    if new_status in ("completed", "converted") and new_status != current:
        updated = await db.leads.find_one({"id": lead["id"]}, {"_id": 0})
        revenue = updated.get("conversion_value") or updated.get("actual_service_cost") or updated.get("price") or 0
        await subscription_service.complete_lead_assignment(vendor_id, lead["id"], revenue)

    return await db.leads.find_one({"id": lead["id"]}, {"_id": 0})


# ════════════════════════════════════════════════════════════════════════════
# REFUND BRANCH
# ════════════════════════════════════════════════════════════════════════════

async def request_refund(lead_id: str, reason: str, actor: Dict[str, Any]) -> Dict[str, Any]:
    if not reason or not reason.strip():
        raise LeadTransitionError("Refund reason is required")

    lead = await db.leads.find_one({"id": lead_id}, {"_id": 0})
    if not lead:
        raise LeadTransitionError(f"Lead {lead_id} not found")
    if not lead.get("taken_by"):
        raise LeadTransitionError(f"Lead {lead_id} has not been taken, nothing to refund")
    if lead["status"] in NON_REFUNDABLE_STATUSES:
        raise LeadTransitionError(f"Lead {lead_id} is '{lead['status']}' and can no longer be refunded")

    current = (lead.get("refund_request") or {}).get("status")
    validate_refund_transition(lead_id, current, "pending")

    now = now_iso()
    await db.leads.update_one(
        {"id": lead_id, "refund_request.status": current},
        {
            "$set": {
                "refund_request.requested": True,
                "refund_request.status": "pending",
                "refund_request.reason": reason.strip(),
                "refund_request.requested_at": now,
                "refund_request.requested_by": actor.get("id"),
                "updated_at": now,
            },
            "$push": {"progress_history": history_entry(
                lead["status"], lead["status"], actor, f"Refund requested: {reason.strip()}"
            )}
        }
    )
    logger.info(f"[LEAD_SM] Lead {lead_id} refund requested by {actor.get('type')} {actor.get('id')}")
    return await db.leads.find_one({"id": lead_id}, {"_id": 0})


async def process_refund(lead_id: str, decision: str, actor: Dict[str, Any],
                         admin_notes: Optional[str] = None) -> Dict[str, Any]:
    """
    approve → one lead credited back to the subscription it was taken under, lead cancelled
    reject  → lead untouched
    """
    if decision not in ("approve", "reject"):
        raise LeadTransitionError("Refund action must be 'approve' or 'reject'")

    lead = await db.leads.find_one({"id": lead_id}, {"_id": 0})
    if not lead:
        raise LeadTransitionError(f"Lead {lead_id} not found")

    target = "approved" if decision == "approve" else "rejected"
    validate_refund_transition(lead_id, (lead.get("refund_request") or {}).get("status"), target)

    now = now_iso()
    update = {
        "refund_request.status": target,
        "refund_request.processed_at": now,
        "refund_request.processed_by": actor.get("id"),
        "updated_at": now,
    }
    if admin_notes:
        update["refund_request.admin_notes"] = admin_notes

    to_status = lead["status"]
    if target == "approved" and lead["status"] != "cancelled":
        to_status = "cancelled"
        update["status"] = "cancelled"
        update["cancelled_at"] = now

    result = await db.leads.update_one(
        {"id": lead_id, "refund_request.status": "pending"},
        {
            "$set": update,
            "$push": {"progress_history": history_entry(
                lead["status"], to_status, actor,
                f"Refund {target}" + (f": {admin_notes}" if admin_notes else "")
            )}
        }
    )
    if result.modified_count == 0:
        raise LeadTransitionError(f"Refund for lead {lead_id} was already processed")

    if target == "approved" and lead.get("taken_by"):
        await subscription_service.credit_lead_quota(
            lead["taken_by"], lead_id, admin_notes or "Refund approved", actor.get("id"),
            subscription_id=lead.get("subscription_id"),
        )

    logger.info(f"[LEAD_SM] Lead {lead_id} refund {target} by {actor.get('id')}")
    return await db.leads.find_one({"id": lead_id}, {"_id": 0})
