"""
Activity journal: admin writes, logins, lead takes, purchases, tickets
"""

import logging
import uuid
from typing import Dict, Optional

from config import db, now_iso

logger = logging.getLogger("activity")


def _actor_type(user: dict) -> str:
    if not user:
        return "system"
    return "vendor" if user.get("role") == "vendor" else "admin"


async def log_activity(
    user: Optional[dict],
    action: str,
    entity_type: str,
    entity_id: str = None,
    entity_name: str = None,
    details: dict = None,
    ip_address: str = None
):
    """
    Append one entry to the journal. A missing user records a system action.

    Actions: create, update, delete, login, logout, assign, take_lead,
             purchase, verify_payment, reject_payment, adjust_leads, ticket_create
    Entity types: lead, vendor, user, subscription_plan, subscription, ticket, system
    """
    user = user or {}
    entry = {
        "id": str(uuid.uuid4()),
        "user_id": user.get("id", "system"),
        "user_email": user.get("email", "system"),
        "user_name": user.get("name", "System"),
        "actor_type": _actor_type(user),
        "vendor_id": user.get("vendor_id"),
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "entity_name": entity_name,
        "details": details or {},
        "ip_address": ip_address,
        "created_at": now_iso(),
    }
    await db.activity_logs.insert_one(dict(entry))
    logger.debug(f"[ACTIVITY] {entry['actor_type']}:{entry['user_email']} {action} {entity_type}/{entity_id}")
    return entry


async def get_activity_logs(
    filters: Dict[str, Optional[str]] = None,
    date_from: str = None,
    date_to: str = None,
    limit: int = 100,
    skip: int = 0
):
    """
    Newest first. Empty filter values are ignored.
    date_from / date_to compare against created_at (ISO strings, inclusive).
    """
    query = {k: v for k, v in (filters or {}).items() if v}

    if date_from or date_to:
        query["created_at"] = {}
        if date_from:
            query["created_at"]["$gte"] = date_from
        if date_to:
            query["created_at"]["$lte"] = date_to

    logs = await db.activity_logs.find(query, {"_id": 0}) \
        .sort("created_at", -1) \
        .skip(skip) \
        .limit(limit) \
        .to_list(limit)
    total = await db.activity_logs.count_documents(query)

    return {"logs": logs, "total": total, "limit": limit, "skip": skip}
