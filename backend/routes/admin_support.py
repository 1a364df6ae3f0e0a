"""
HomeXpert - Admin support desk
"""

import re
from fastapi import APIRouter, HTTPException, Depends
from typing import Optional

from models import AdminTicketCreate, MessageCreate, AdminTicketAction
from config import db
from services.permissions import require_permission
from services.activity_logger import log_activity
from services.notification_service import notify_vendors
from services.lead_service import pagination
from services import support_service
from services.support_service import TicketError, FINAL_STATUSES

router = APIRouter(prefix="/admin/support", tags=["Admin Support"])


async def _ticket_or_404(ticket_id: str):
    try:
        return await support_service.get_ticket(ticket_id)
    except TicketError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("")
async def list_tickets(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    category: Optional[str] = None,
    priority: Optional[str] = None,
    assigned_to: Optional[str] = None,
    vendor_id: Optional[str] = None,
    search: Optional[str] = None,
    user: dict = Depends(require_permission("support.view"))
):
    page = max(1, page)
    limit = max(1, min(limit, 100))

    query = {}
    if status:
        query["status"] = status
    if category:
        query["category"] = category
    if priority:
        query["priority"] = priority
    if assigned_to:
        query["assigned_to"] = assigned_to
    if vendor_id:
        query["vendor_id"] = vendor_id
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"title": pattern}, {"ticket_id": pattern}, {"vendor_name": pattern}]

    total = await db.support_tickets.count_documents(query)
    tickets = await db.support_tickets.find(query, {"_id": 0}) \
        .sort("last_activity", -1) \
        .skip((page - 1) * limit) \
        .limit(limit) \
        .to_list(limit)

    by_status, by_priority, overdue = {}, {}, 0
    everything = await db.support_tickets.find(
        {}, {"_id": 0, "status": 1, "priority": 1, "sla": 1, "created_at": 1}
    ).to_list(10000)
    for t in everything:
        by_status[t["status"]] = by_status.get(t["status"], 0) + 1
        if t["status"] not in FINAL_STATUSES:
            by_priority[t["priority"]] = by_priority.get(t["priority"], 0) + 1
        if support_service.is_overdue(t):
            overdue += 1

    return {
        "tickets": [{**t, "is_overdue": support_service.is_overdue(t)} for t in tickets],
        "pagination": pagination(page, limit, total),
        "stats": {"by_status": by_status, "by_priority": by_priority, "overdue": overdue},
    }


@router.post("", status_code=201)
async def create_ticket(data: AdminTicketCreate, user: dict = Depends(require_permission("support.manage"))):
    vendor = await db.vendors.find_one({"id": data.vendor_id}, {"_id": 0})
    if not vendor:
        raise HTTPException(status_code=404, detail="Vendor not found")

    ticket = await support_service.create_ticket(
        data.model_dump(mode="json", exclude={"vendor_id"}), vendor, {"id": user["id"], "type": "admin"}
    )

    await notify_vendors(
        [vendor["id"]],
        f"Support ticket {ticket['ticket_id']} opened",
        ticket["title"],
        type="support",
        data={"ticket_id": ticket["ticket_id"]},
    )
    await log_activity(user, "ticket_create", "ticket", ticket["ticket_id"], ticket["title"],
                       {"vendor_id": vendor["id"]})

    return {"success": True, "ticket": ticket}


@router.get("/{ticket_id}")
async def get_ticket(ticket_id: str, user: dict = Depends(require_permission("support.view"))):
    ticket = await _ticket_or_404(ticket_id)
    ticket = await support_service.mark_read(ticket, user["id"], "admin")
    return {"ticket": {**ticket, "is_overdue": support_service.is_overdue(ticket)}}


@router.post("/{ticket_id}/reply", status_code=201)
async def reply(ticket_id: str, data: MessageCreate, user: dict = Depends(require_permission("support.reply"))):
    ticket = await _ticket_or_404(ticket_id)

    try:
        ticket = await support_service.admin_reply(ticket, user["id"], data.model_dump(mode="json"))
    except TicketError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    if not data.is_internal:
        await notify_vendors(
            [ticket["vendor_id"]],
            f"New reply on ticket {ticket['ticket_id']}",
            data.content[:200],
            type="support",
            data={"ticket_id": ticket["ticket_id"]},
            send_email=True,
        )

    return {"success": True, "ticket": ticket}


@router.put("/{ticket_id}")
async def ticket_action(ticket_id: str, data: AdminTicketAction,
                        user: dict = Depends(require_permission("support.manage"))):
    ticket = await _ticket_or_404(ticket_id)
    admin_id = user["id"]

    try:
        if data.action == "assign":
            if not data.assigned_to:
                raise HTTPException(status_code=400, detail="assigned_to is required")
            assignee = await db.users.find_one({"id": data.assigned_to, "is_active": True}, {"_id": 0, "name": 1})
            if not assignee:
                raise HTTPException(status_code=404, detail="Assignee not found")
            fields = {"assigned_to": data.assigned_to}
            if ticket["status"] == "open":
                fields["status"] = "in_progress"
            ticket = await support_service.update_ticket(
                ticket, fields, f"Ticket assigned to {assignee.get('name') or data.assigned_to}"
            )

        elif data.action == "update_status":
            if not data.status:
                raise HTTPException(status_code=400, detail="status is required")
            ticket = await support_service.set_status(ticket, data.status, admin_id, data.note)

        elif data.action == "update_priority":
            if not data.priority:
                raise HTTPException(status_code=400, detail="priority is required")
            ticket = await support_service.set_priority(ticket, data.priority)

        elif data.action == "escalate":
            ticket = await support_service.escalate(ticket, admin_id, data.level, data.reason)

        elif data.action == "resolve":
            ticket = await support_service.set_status(ticket, "resolved", admin_id, data.note)

        elif data.action == "close":
            ticket = await support_service.set_status(ticket, "closed", admin_id, data.note)

        elif data.action == "reopen":
            ticket = await support_service.reopen(ticket, admin_id, data.reason)

        elif data.action == "update_tags":
            tags = sorted({t.strip().lower() for t in (data.tags or []) if t and t.strip()})
            ticket = await support_service.update_ticket(ticket, {"tags": tags})

        elif data.action == "link_tickets":
            if not data.ticket_ids:
                raise HTTPException(status_code=400, detail="ticket_ids is required")
            ticket = await support_service.link_tickets(ticket, data.ticket_ids)

    except TicketError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    if data.action in ("resolve", "close", "reopen", "escalate"):
        await notify_vendors(
            [ticket["vendor_id"]],
            f"Ticket {ticket['ticket_id']} {ticket['status']}",
            f"Your ticket '{ticket['title']}' is now {ticket['status'].replace('_', ' ')}.",
            type="support",
            data={"ticket_id": ticket["ticket_id"]},
        )

    await log_activity(user, "update", "ticket", ticket_id, ticket.get("title"), {"action": data.action})
    return {"success": True, "ticket": ticket}
