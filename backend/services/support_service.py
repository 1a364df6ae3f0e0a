"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  HomeXpert - Support tickets                                                 ║
║                                                                              ║
║  Threaded messages between a vendor and admin staff, with SLA tracking.      ║
║                                                                              ║
║  Unread counters:                                                            ║
║  - vendor message        → unread_count.admin += 1                           ║
║  - admin public message  → unread_count.vendor += 1                          ║
║  - system / internal     → no counter                                        ║
║  SLA first response = first message whose sender type differs from the       ║
║  creator's (system messages excluded)                                        ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from config import db, now_iso, parse_iso, timestamp_ms
from services.notification_service import notify_admins
from email_service import email_service

logger = logging.getLogger("support")

# priority → (response minutes, resolution minutes)
SLA_MINUTES = {
    "urgent": (60, 480),
    "high": (120, 720),
    "medium": (240, 1440),
    "low": (480, 2880),
}

FINAL_STATUSES = ["resolved", "closed"]
DEFAULT_ESCALATION_LEVEL = "level_2"


class TicketError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


# ==================== IDS / PURE HELPERS ====================

def generate_ticket_id() -> str:
    return f"TKT{str(timestamp_ms())[-8:]}{random.randint(0, 999):03d}"


def generate_message_id() -> str:
    return f"MSG{timestamp_ms()}{random.randint(0, 999):03d}"


def sla_for(priority: str) -> Dict[str, int]:
    response, resolution = SLA_MINUTES.get(priority, SLA_MINUTES["medium"])
    return {"response_time": response, "resolution_time": resolution}


def is_overdue(ticket: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """Open ticket still waiting for its first response past the response SLA"""
    if ticket.get("status") in FINAL_STATUSES:
        return False
    sla = ticket.get("sla") or {}
    if sla.get("first_response_at"):
        return False
    created = parse_iso(ticket.get("created_at"))
    if not created:
        return False
    now = now or datetime.now(timezone.utc)
    age_minutes = (now - created).total_seconds() / 60
    return age_minutes > sla.get("response_time", SLA_MINUTES["medium"][0])


def build_message(content: str, sender_id: str, sender_type: str,
                  message_type: str = "text", attachments: Optional[List[Dict]] = None,
                  is_internal: bool = False) -> Dict[str, Any]:
    return {
        "message_id": generate_message_id(),
        "content": content,
        "sender_id": sender_id,
        "sender_type": sender_type,
        "message_type": message_type,
        "attachments": attachments or [],
        "is_internal": is_internal,
        "read_by": [{"user_id": sender_id, "read_at": now_iso()}] if sender_type != "system" else [],
        "created_at": now_iso(),
    }


def system_message(content: str) -> Dict[str, Any]:
    return build_message(content, "system", "system", "system_notification")


def message_side_effects(ticket: Dict[str, Any], message: Dict[str, Any]) -> Dict[str, Any]:
    """
    Mongo update ($set / $inc) implied by appending message to ticket:
    unread counters, SLA response timestamps, last activity.
    """
    now = message["created_at"]
    sender_type = message["sender_type"]
    set_ops: Dict[str, Any] = {"last_activity": now, "updated_at": now}
    inc_ops: Dict[str, int] = {}

    if sender_type == "vendor":
        inc_ops["unread_count.admin"] = 1
    elif sender_type == "admin" and not message.get("is_internal"):
        inc_ops["unread_count.vendor"] = 1

    if sender_type != "system" and not message.get("is_internal"):
        set_ops["sla.last_response_at"] = now
        creator_type = (ticket.get("created_by") or {}).get("user_type")
        if sender_type != creator_type and not (ticket.get("sla") or {}).get("first_response_at"):
            set_ops["sla.first_response_at"] = now

    update: Dict[str, Any] = {"$set": set_ops}
    if inc_ops:
        update["$inc"] = inc_ops
    return update


def public_view(ticket: Dict[str, Any]) -> Dict[str, Any]:
    """Vendor side: internal notes removed"""
    return {
        **ticket,
        "messages": [m for m in ticket.get("messages", []) if not m.get("is_internal")],
        "is_overdue": is_overdue(ticket),
    }


# ==================== WRITES ====================

async def get_ticket(ticket_id: str, vendor_id: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {"ticket_id": ticket_id}
    if vendor_id:
        query["vendor_id"] = vendor_id
    ticket = await db.support_tickets.find_one(query, {"_id": 0})
    if not ticket:
        raise TicketError("Ticket not found", 404)
    return ticket


async def create_ticket(data: Dict[str, Any], vendor: Dict[str, Any], creator: Dict[str, Any]) -> Dict[str, Any]:
    """
    creator = {"id": user id, "type": "vendor" | "admin"}
    The description becomes the first message.
    """
    now = now_iso()
    priority = data.get("priority") or "medium"
    ticket = {
        "id": str(uuid.uuid4()),
        "ticket_id": generate_ticket_id(),
        "title": data["title"].strip(),
        "description": data["description"].strip(),
        "category": data["category"],
        "priority": priority,
        "status": "open",
        "vendor_id": vendor["id"],
        "vendor_name": vendor.get("business_name", ""),
        "created_by": {"user_id": creator["id"], "user_type": creator["type"], "vendor_id": vendor["id"]},
        "assigned_to": None,
        "related_lead_id": data.get("related_lead_id"),
        "tags": [],
        "linked_tickets": [],
        "escalation": {"level": None, "escalated_at": None, "reason": None},
        "satisfaction": {"rating": None, "feedback": None, "rated_at": None},
        "sla": {
            **sla_for(priority),
            "first_response_at": None,
            "last_response_at": None,
            "resolved_at": None,
            "closed_at": None,
            "is_overdue": False,
        },
        "unread_count": {"vendor": 0, "admin": 0},
        "messages": [],
        "last_activity": now,
        "created_at": now,
        "updated_at": now,
    }

    first = build_message(ticket["description"], creator["id"], creator["type"],
                          attachments=data.get("attachments") or [])
    ticket["messages"].append(first)
    if creator["type"] == "vendor":
        ticket["unread_count"]["admin"] = 1
    else:
        ticket["unread_count"]["vendor"] = 1

    await db.support_tickets.insert_one(dict(ticket))
    logger.info(f"[SUPPORT] Ticket {ticket['ticket_id']} created by {creator['type']} {creator['id']} ({priority})")
    return ticket


async def add_message(ticket: Dict[str, Any], message: Dict[str, Any],
                      status: Optional[str] = None) -> Dict[str, Any]:
    update = message_side_effects(ticket, message)
    update["$push"] = {"messages": message}
    if status:
        update["$set"]["status"] = status

    await db.support_tickets.update_one({"ticket_id": ticket["ticket_id"]}, update)
    return await db.support_tickets.find_one({"ticket_id": ticket["ticket_id"]}, {"_id": 0})


async def vendor_message(ticket: Dict[str, Any], user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    if ticket["status"] == "closed":
        raise TicketError("Cannot add messages to a closed ticket")

    message = build_message(data["content"].strip(), user_id, "vendor",
                            data.get("message_type", "text"), data.get("attachments"))
    status = "waiting_for_admin" if ticket["status"] == "waiting_for_vendor" else None
    return await add_message(ticket, message, status)


async def admin_reply(ticket: Dict[str, Any], admin_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    if ticket["status"] == "closed":
        raise TicketError("Cannot reply to a closed ticket")

    is_internal = bool(data.get("is_internal"))
    message = build_message(data["content"].strip(), admin_id, "admin",
                            data.get("message_type", "text"), data.get("attachments"), is_internal)

    status = None
    if not is_internal:
        if ticket["status"] == "open":
            status = "in_progress"
        elif ticket["status"] == "waiting_for_admin":
            status = "waiting_for_vendor"
    return await add_message(ticket, message, status)


async def mark_read(ticket: Dict[str, Any], reader_id: str, reader_type: str) -> Dict[str, Any]:
    """
    Add the reader to read_by of each message it has not read yet and reset that
    side's unread counter. The messages array itself is never rewritten.
    """
    now = now_iso()
    current = await db.support_tickets.find_one({"ticket_id": ticket["ticket_id"]}, {"_id": 0})
    for m in (current or {}).get("messages", []):
        if reader_id in {r.get("user_id") for r in m.get("read_by", [])}:
            continue
        await db.support_tickets.update_one(
            {
                "ticket_id": ticket["ticket_id"],
                "messages": {"$elemMatch": {"message_id": m["message_id"], "read_by.user_id": {"$ne": reader_id}}},
            },
            {"$push": {"messages.$.read_by": {"user_id": reader_id, "read_at": now}}}
        )

    await db.support_tickets.update_one(
        {"ticket_id": ticket["ticket_id"]},
        {"$set": {f"unread_count.{reader_type}": 0}}
    )
    return await db.support_tickets.find_one({"ticket_id": ticket["ticket_id"]}, {"_id": 0})


async def escalate(ticket: Dict[str, Any], admin_id: str, level: Optional[str] = None,
                   reason: Optional[str] = None) -> Dict[str, Any]:
    level = level or DEFAULT_ESCALATION_LEVEL
    now = now_iso()
    priority = ticket["priority"] if ticket["priority"] == "urgent" else "high"
    sla = sla_for(priority)

    await db.support_tickets.update_one(
        {"ticket_id": ticket["ticket_id"]},
        {
            "$set": {
                "escalation": {"level": level, "escalated_at": now, "reason": reason, "escalated_by": admin_id},
                "priority": priority,
                "sla.response_time": sla["response_time"],
                "sla.resolution_time": sla["resolution_time"],
                "last_activity": now,
                "updated_at": now,
            },
            "$push": {"messages": system_message(
                f"Ticket escalated to {level}" + (f": {reason}" if reason else "")
            )}
        }
    )
    logger.info(f"[SUPPORT] Ticket {ticket['ticket_id']} escalated to {level} (priority={priority})")
    return await db.support_tickets.find_one({"ticket_id": ticket["ticket_id"]}, {"_id": 0})


async def set_status(ticket: Dict[str, Any], status: str, actor_id: str,
                     note: Optional[str] = None) -> Dict[str, Any]:
    """Status change with a system message. resolved/closed stamp the SLA."""
    now = now_iso()
    set_ops: Dict[str, Any] = {"status": status, "last_activity": now, "updated_at": now}
    if status == "resolved":
        set_ops["sla.resolved_at"] = now
        set_ops["resolved_by"] = actor_id
    elif status == "closed":
        set_ops["sla.closed_at"] = now
        set_ops["closed_by"] = actor_id

    text = f"Status changed from {ticket['status']} to {status}"
    if note:
        text += f": {note}"

    await db.support_tickets.update_one(
        {"ticket_id": ticket["ticket_id"]},
        {"$set": set_ops, "$push": {"messages": system_message(text)}}
    )
    logger.info(f"[SUPPORT] Ticket {ticket['ticket_id']} {ticket['status']} -> {status} by {actor_id}")
    return await db.support_tickets.find_one({"ticket_id": ticket["ticket_id"]}, {"_id": 0})


async def reopen(ticket: Dict[str, Any], actor_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    if ticket["status"] not in FINAL_STATUSES:
        raise TicketError("Only resolved or closed tickets can be reopened")

    now = now_iso()
    await db.support_tickets.update_one(
        {"ticket_id": ticket["ticket_id"]},
        {
            "$set": {
                "status": "open",
                "sla.resolved_at": None,
                "sla.closed_at": None,
                "last_activity": now,
                "updated_at": now,
            },
            "$push": {"messages": system_message(
                "Ticket reopened" + (f": {reason}" if reason else "")
            )}
        }
    )
    logger.info(f"[SUPPORT] Ticket {ticket['ticket_id']} reopened by {actor_id}")
    return await db.support_tickets.find_one({"ticket_id": ticket["ticket_id"]}, {"_id": 0})


async def rate_satisfaction(ticket: Dict[str, Any], rating: Optional[int],
                            feedback: Optional[str] = None) -> Dict[str, Any]:
    if ticket["status"] not in FINAL_STATUSES:
        raise TicketError("Only resolved or closed tickets can be rated")
    if rating is None or not 1 <= rating <= 5:
        raise TicketError("Rating must be between 1 and 5")

    await db.support_tickets.update_one(
        {"ticket_id": ticket["ticket_id"]},
        {"$set": {
            "satisfaction": {"rating": rating, "feedback": feedback, "rated_at": now_iso()},
            "updated_at": now_iso(),
        }}
    )
    return await db.support_tickets.find_one({"ticket_id": ticket["ticket_id"]}, {"_id": 0})


async def flag_overdue_tickets() -> List[str]:
    """Mark tickets past their response SLA. Returns newly flagged ticket ids."""
    candidates = await db.support_tickets.find(
        {
            "status": {"$nin": FINAL_STATUSES},
            "sla.first_response_at": None,
            "sla.is_overdue": {"$ne": True},
        },
        {"_id": 0, "ticket_id": 1, "status": 1, "sla": 1, "created_at": 1}
    ).to_list(1000)

    now = datetime.now(timezone.utc)
    flagged = [t["ticket_id"] for t in candidates if is_overdue(t, now)]
    if flagged:
        await db.support_tickets.update_many(
            {"ticket_id": {"$in": flagged}},
            {"$set": {"sla.is_overdue": True}}
        )
        logger.warning(f"[SUPPORT] {len(flagged)} ticket(s) past response SLA: {flagged}")
        await notify_admins(
            "Tickets past response SLA",
            f"{len(flagged)} support ticket(s) have had no response within their SLA.",
            type="support",
            data={"ticket_ids": flagged},
            priority="high",
        )
        email_service.send_admin_alert(
            "TICKET_OVERDUE",
            f"{len(flagged)} support ticket(s) past their response SLA",
            {"tickets": ", ".join(flagged)},
        )
    return flagged


async def update_ticket(ticket: Dict[str, Any], fields: Dict[str, Any],
                        note: Optional[str] = None) -> Dict[str, Any]:
    """Plain field update (assignment, tags, links) with an optional system message"""
    now = now_iso()
    update: Dict[str, Any] = {"$set": {**fields, "last_activity": now, "updated_at": now}}
    if note:
        update["$push"] = {"messages": system_message(note)}

    await db.support_tickets.update_one({"ticket_id": ticket["ticket_id"]}, update)
    return await db.support_tickets.find_one({"ticket_id": ticket["ticket_id"]}, {"_id": 0})


async def set_priority(ticket: Dict[str, Any], priority: str) -> Dict[str, Any]:
    """New priority, SLA targets follow it"""
    sla = sla_for(priority)
    return await update_ticket(
        ticket,
        {
            "priority": priority,
            "sla.response_time": sla["response_time"],
            "sla.resolution_time": sla["resolution_time"],
        },
        f"Priority changed from {ticket['priority']} to {priority}",
    )


async def link_tickets(ticket: Dict[str, Any], ticket_ids: List[str]) -> Dict[str, Any]:
    others = [t for t in ticket_ids if t != ticket["ticket_id"]]
    found = await db.support_tickets.count_documents({"ticket_id": {"$in": others}})
    if found != len(set(others)):
        raise TicketError("Some linked tickets were not found")

    await db.support_tickets.update_one(
        {"ticket_id": ticket["ticket_id"]},
        {"$addToSet": {"linked_tickets": {"$each": others}}, "$set": {"updated_at": now_iso()}}
    )
    return await db.support_tickets.find_one({"ticket_id": ticket["ticket_id"]}, {"_id": 0})
