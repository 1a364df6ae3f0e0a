"""
HomeXpert - Notification service

One notification document + one recipient row per target (vendor or admin user).
Channels:
  - in_app: always delivered (the recipient row itself)
  - email:  SendGrid through email_service, only when asked
  - push:   not wired, recorded as "skipped"
"""

import logging
import uuid
from typing import List, Dict, Optional

from config import db, now_iso
from models.auth import VALID_ROLES

logger = logging.getLogger("notifications")


async def create_notification(
    title: str,
    message: str,
    type: str = "system",
    recipients: List[Dict] = None,
    data: Dict = None,
    priority: str = "normal",
    created_by: Optional[str] = None,
    send_email: bool = False,
) -> Dict:
    """
    recipients: [{"id": vendor_id | user_id, "type": "vendor" | "admin", "email": optional}]
    """
    from email_service import email_service

    recipients = recipients or []
    now = now_iso()
    notification = {
        "id": str(uuid.uuid4()),
        "title": title,
        "message": message,
        "type": type,
        "priority": priority,
        "data": data or {},
        "created_by": created_by or "system",
        "recipient_count": len(recipients),
        "created_at": now,
    }
    await db.notifications.insert_one(dict(notification))

    rows = []
    for r in recipients:
        email_status = "skipped"
        if send_email and r.get("email"):
            sent = email_service.send_notification(r["email"], title, message, data)
            email_status = "sent" if sent else "failed"

        rows.append({
            "id": str(uuid.uuid4()),
            "notification_id": notification["id"],
            "recipient_id": r["id"],
            "recipient_type": r.get("type", "vendor"),
            "title": title,
            "message": message,
            "type": type,
            "priority": priority,
            "data": data or {},
            "is_read": False,
            "read_at": None,
            "delivery_status": {
                "in_app": "delivered",
                "email": email_status,
                "push": "skipped",
            },
            "created_at": now,
        })

    if rows:
        await db.notification_recipients.insert_many([dict(r) for r in rows])

    logger.info(f"[NOTIFY] {type} '{title}' -> {len(rows)} recipient(s)")
    return notification


async def notify_vendors(vendor_ids: List[str], title: str, message: str,
                         type: str = "lead", data: Dict = None, send_email: bool = False) -> Optional[Dict]:
    if not vendor_ids:
        return None
    vendors = await db.vendors.find(
        {"id": {"$in": list(vendor_ids)}},
        {"_id": 0, "id": 1, "email": 1}
    ).to_list(len(vendor_ids))
    recipients = [{"id": v["id"], "type": "vendor", "email": v.get("email")} for v in vendors]
    return await create_notification(title, message, type, recipients, data, send_email=send_email)


async def notify_admins(title: str, message: str, type: str = "system",
                        data: Dict = None, priority: str = "normal") -> Optional[Dict]:
    """Notify every active staff user"""
    admins = await db.users.find(
        {"role": {"$in": VALID_ROLES}, "is_active": True},
        {"_id": 0, "id": 1, "email": 1}
    ).to_list(200)
    if not admins:
        return None
    recipients = [{"id": a["id"], "type": "admin", "email": a.get("email")} for a in admins]
    return await create_notification(title, message, type, recipients, data, priority=priority)


async def list_notifications(recipient_id: str, recipient_type: str,
                             unread_only: bool = False, page: int = 1, limit: int = 20) -> Dict:
    query = {"recipient_id": recipient_id, "recipient_type": recipient_type}
    if unread_only:
        query["is_read"] = False

    total = await db.notification_recipients.count_documents(query)
    items = await db.notification_recipients.find(query, {"_id": 0}) \
        .sort("created_at", -1) \
        .skip((page - 1) * limit) \
        .limit(limit) \
        .to_list(limit)
    unread = await db.notification_recipients.count_documents(
        {"recipient_id": recipient_id, "recipient_type": recipient_type, "is_read": False}
    )

    return {
        "notifications": items,
        "unread_count": unread,
        "total": total,
        "page": page,
        "limit": limit,
    }


async def mark_read(recipient_id: str, recipient_type: str,
                    notification_ids: List[str] = None, all: bool = False) -> int:
    query = {"recipient_id": recipient_id, "recipient_type": recipient_type, "is_read": False}
    if not all:
        if not notification_ids:
            return 0
        query["id"] = {"$in": notification_ids}

    result = await db.notification_recipients.update_many(
        query,
        {"$set": {"is_read": True, "read_at": now_iso()}}
    )
    return result.modified_count
