"""
HomeXpert - Vendor support tickets
"""

from fastapi import APIRouter, HTTPException, Depends
from typing import Optional

from models import TicketCreate, MessageCreate, VendorTicketAction
from config import db
from routes.auth import get_current_vendor
from services.activity_logger import log_activity
from services.notification_service import notify_admins
from services.lead_service import pagination
from services import support_service
from services.support_service import TicketError

router = APIRouter(prefix="/vendors/support", tags=["Vendor Support"])


async def _own_ticket(ticket_id: str, vendor: dict):
    try:
        return await support_service.get_ticket(ticket_id, vendor["id"])
    except TicketError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("")
async def list_tickets(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    category: Optional[str] = None,
    priority: Optional[str] = None,
    vendor: dict = Depends(get_current_vendor)
):
    page = max(1, page)
    limit = max(1, min(limit, 50))

    query = {"vendor_id": vendor["id"]}
    if status:
        query["status"] = status
    if category:
        query["category"] = category
    if priority:
        query["priority"] = priority

    total = await db.support_tickets.count_documents(query)
    tickets = await db.support_tickets.find(query, {"_id": 0}) \
        .sort("last_activity", -1) \
        .skip((page - 1) * limit) \
        .limit(limit) \
        .to_list(limit)

    stats = {}
    for row in await db.support_tickets.find({"vendor_id": vendor["id"]}, {"_id": 0, "status": 1}).to_list(1000):
        stats[row["status"]] = stats.get(row["status"], 0) + 1

    return {
        "tickets": [support_service.public_view(t) for t in tickets],
        "pagination": pagination(page, limit, total),
        "stats": stats,
    }


@router.post("", status_code=201)
async def create_ticket(data: TicketCreate, vendor: dict = Depends(get_current_vendor)):
    user = vendor["user"]
    ticket = await support_service.create_ticket(
        data.model_dump(mode="json"), vendor, {"id": user["id"], "type": "vendor"}
    )

    await notify_admins(
        f"New support ticket {ticket['ticket_id']}",
        f"{vendor.get('business_name')}: {ticket['title']}",
        type="support",
        data={"ticket_id": ticket["ticket_id"]},
        priority="high" if ticket["priority"] in ("high", "urgent") else "normal",
    )
    await log_activity(user, "ticket_create", "ticket", ticket["ticket_id"], ticket["title"],
                       {"category": ticket["category"], "priority": ticket["priority"]})

    return {"success": True, "ticket": support_service.public_view(ticket)}


@router.get("/{ticket_id}")
async def get_ticket(ticket_id: str, vendor: dict = Depends(get_current_vendor)):
    ticket = await _own_ticket(ticket_id, vendor)
    ticket = await support_service.mark_read(ticket, vendor["user"]["id"], "vendor")
    return {"ticket": support_service.public_view(ticket)}


@router.post("/{ticket_id}/messages", status_code=201)
async def post_message(ticket_id: str, data: MessageCreate, vendor: dict = Depends(get_current_vendor)):
    ticket = await _own_ticket(ticket_id, vendor)
    payload = data.model_dump(mode="json")
    payload["is_internal"] = False

    try:
        ticket = await support_service.vendor_message(ticket, vendor["user"]["id"], payload)
    except TicketError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return {"success": True, "ticket": support_service.public_view(ticket)}


@router.put("/{ticket_id}")
async def ticket_action(ticket_id: str, data: VendorTicketAction, vendor: dict = Depends(get_current_vendor)):
    ticket = await _own_ticket(ticket_id, vendor)

    try:
        if data.action == "rate_satisfaction":
            ticket = await support_service.rate_satisfaction(ticket, data.rating, data.feedback)
        elif data.action == "reopen":
            ticket = await support_service.reopen(ticket, vendor["user"]["id"], data.reason)
    except TicketError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return {"success": True, "ticket": support_service.public_view(ticket)}
