"""
HomeXpert - Vendor accounts
A vendor is a `vendors` profile plus a `users` row with role vendor.
"""

import logging
import uuid
from typing import Dict, Any, Optional

from config import db, hash_password, now_iso, normalize_phone_in, validate_email
from models.auth import VENDOR_ROLE
from models.vendor import DOCUMENT_TYPES

logger = logging.getLogger("vendors")


class VendorError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _history_entry(action: str, notes: str, by: Optional[str] = None) -> Dict[str, Any]:
    return {"action": action, "notes": notes, "by": by, "date": now_iso()}


async def create_vendor(data: Dict[str, Any], status: str, created_by: Optional[str] = None) -> Dict[str, Any]:
    """
    Creates the vendor profile and its login.
    Raises VendorError on invalid email/phone or an email already in use.
    """
    email = (data.get("email") or "").lower().strip()
    if not validate_email(email):
        raise VendorError("Invalid email address")

    is_valid, phone = normalize_phone_in(data.get("phone", ""))
    if not is_valid:
        raise VendorError(phone)

    if await db.users.find_one({"email": email}, {"_id": 1}) or \
            await db.vendors.find_one({"email": email}, {"_id": 1}):
        raise VendorError("A vendor with this email already exists", 409)

    now = now_iso()
    vendor_id = str(uuid.uuid4())
    user_id = str(uuid.uuid4())

    vendor = {
        "id": vendor_id,
        "user_id": user_id,
        "business_name": data["business_name"].strip(),
        "owner_name": data["owner_name"].strip(),
        "email": email,
        "phone": phone,
        "services": [s.strip() for s in data.get("services", []) if s and s.strip()],
        "address": data.get("address") or {},
        "service_areas": data.get("service_areas") or [],
        "status": status,
        "business_description": (data.get("business_description") or "").strip(),
        "documents": {
            doc_type: {**(data.get("documents") or {}).get(doc_type, {"number": "", "image_url": ""}), "verified": False}
            for doc_type in DOCUMENT_TYPES
        },
        "bank_details": {**data["bank_details"], "verified": False} if data.get("bank_details") else None,
        "verified": {"is_verified": False, "verified_by": None, "verified_at": None, "notes": None},
        "verification_request": None,
        "history": [_history_entry("registered", "Vendor registered", created_by)],
        "rating": 0,
        "created_by": created_by,
        "created_at": now,
        "updated_at": now,
    }
    user = {
        "id": user_id,
        "email": email,
        "password": hash_password(data["password"]),
        "name": vendor["owner_name"],
        "phone": phone,
        "role": VENDOR_ROLE,
        "permissions": {},
        "vendor_id": vendor_id,
        "is_active": True,
        "created_at": now,
    }

    await db.vendors.insert_one(dict(vendor))
    await db.users.insert_one(dict(user))

    logger.info(f"Vendor {vendor['business_name']} ({vendor_id}) created with status {status}")
    return vendor


async def subscription_summary(vendor_id: str) -> Dict[str, Any]:
    subs = await db.vendor_subscriptions.find(
        {"vendor_id": vendor_id, "status": {"$in": ["active", "pending"]}},
        {"_id": 0, "id": 1, "status": 1, "plan_snapshot": 1, "usage": 1, "end_date": 1}
    ).sort("status", 1).to_list(2)
    if not subs:
        return {"subscription_status": None, "leads_remaining": 0}
    # "active" sorts before "pending"
    sub = subs[0]
    return {
        "subscription_status": sub["status"],
        "plan_name": (sub.get("plan_snapshot") or {}).get("plan_name"),
        "leads_remaining": (sub.get("usage") or {}).get("leads_remaining", 0),
        "subscription_end": sub.get("end_date"),
    }


# ==================== VERIFICATION ====================

VERIFICATION_HISTORY_ACTIONS = ["registered", "verified", "unverified", "verification_requested", "document_reviewed"]


def _document_state(doc: Optional[Dict[str, Any]], provided: bool) -> Dict[str, Any]:
    verified = bool(doc and doc.get("verified"))
    return {
        "status": "verified" if verified else ("pending" if provided else "missing"),
        "provided": provided,
        "verified": verified,
    }


def mask_account_number(number: Optional[str]) -> Optional[str]:
    if not number:
        return number
    return "X" * max(len(number) - 4, 0) + number[-4:]


def verification_status(vendor: Dict[str, Any]) -> Dict[str, Any]:
    """
    Verification overview shown to the vendor.
    Three identity documents plus the payout bank account make up 100%.
    """
    documents = vendor.get("documents") or {}
    states = {
        doc_type: _document_state(
            documents.get(doc_type),
            bool((documents.get(doc_type) or {}).get("image_url") or (documents.get(doc_type) or {}).get("number")),
        )
        for doc_type in DOCUMENT_TYPES
    }
    bank = vendor.get("bank_details") or {}
    states["bank_details"] = _document_state(
        bank, all(bank.get(k) for k in ("account_holder_name", "account_number", "ifsc_code"))
    )

    provided = sum(1 for s in states.values() if s["provided"])
    verified_count = sum(1 for s in states.values() if s["verified"])
    completion = round(provided * 100 / len(states))

    verified = vendor.get("verified") or {}
    request = vendor.get("verification_request")

    next_steps = []
    if not verified.get("is_verified"):
        if completion < 100:
            next_steps.append("Complete all document submissions")
        if vendor.get("status") == "pending" or (request or {}).get("status") == "pending":
            next_steps.append("Wait for admin verification (24-48 hours)")
        elif completion == 100:
            next_steps.append("Request verification")

    history = [h for h in vendor.get("history") or [] if h.get("action") in VERIFICATION_HISTORY_ACTIONS]
    history.sort(key=lambda h: h.get("date") or "", reverse=True)

    return {
        "overall": {
            "is_verified": bool(verified.get("is_verified")),
            "status": vendor.get("status"),
            "verification_notes": verified.get("notes"),
            "verified_at": verified.get("verified_at"),
            "completion_percentage": completion,
            "verification_percentage": round(verified_count * 100 / len(states)),
        },
        "documents": states,
        "verification_request": request,
        "history": history[:5],
        "next_steps": next_steps,
    }


async def request_verification(vendor_id: str, reason: Optional[str]) -> Dict[str, Any]:
    """
    Vendor asks for (re-)verification.
    Refused when already verified or when a request is still open.
    """
    vendor = await db.vendors.find_one({"id": vendor_id}, {"_id": 0})
    if not vendor:
        raise VendorError("Vendor not found", 404)
    if (vendor.get("verified") or {}).get("is_verified"):
        raise VendorError("Vendor is already verified")

    request = {"status": "pending", "reason": reason or "", "requested_at": now_iso()}
    result = await db.vendors.update_one(
        {
            "id": vendor_id,
            "verified.is_verified": {"$ne": True},
            "verification_request.status": {"$ne": "pending"},
        },
        {
            "$set": {"verification_request": request, "updated_at": now_iso()},
            "$push": {"history": _history_entry(
                "verification_requested", reason or "Re-verification requested by vendor", vendor_id
            )},
        }
    )
    if result.modified_count == 0:
        raise VendorError("Verification is already in progress")

    logger.info(f"[VERIFICATION_REQUESTED] vendor={vendor_id}")
    return request


async def update_bank_details(vendor_id: str, details: Dict[str, Any]) -> Dict[str, Any]:
    """New payout account details replace the old ones and need verifying again."""
    bank_details = {**details, "verified": False, "updated_at": now_iso()}
    await db.vendors.update_one(
        {"id": vendor_id},
        {
            "$set": {"bank_details": bank_details, "updated_at": now_iso()},
            "$push": {"history": _history_entry("bank_details_updated", "Bank details updated", vendor_id)},
        }
    )
    logger.info(f"[BANK_DETAILS_UPDATED] vendor={vendor_id} account={mask_account_number(details['account_number'])}")
    return bank_details


async def review_document(vendor_id: str, doc_type: str, verified: bool,
                          notes: Optional[str], admin_id: Optional[str]) -> Dict[str, Any]:
    """Admin marks one submitted document (or the bank account) verified or not."""
    vendor = await db.vendors.find_one({"id": vendor_id}, {"_id": 0})
    if not vendor:
        raise VendorError("Vendor not found", 404)

    if doc_type == "bank_details":
        if not vendor.get("bank_details"):
            raise VendorError("Vendor has not submitted bank details")
        path = "bank_details"
    elif doc_type in DOCUMENT_TYPES:
        doc = (vendor.get("documents") or {}).get(doc_type) or {}
        if not (doc.get("image_url") or doc.get("number")):
            raise VendorError(f"Vendor has not submitted {doc_type}")
        path = f"documents.{doc_type}"
    else:
        raise VendorError(f"Unknown document type: {doc_type}")

    await db.vendors.update_one(
        {"id": vendor_id},
        {
            "$set": {
                f"{path}.verified": verified,
                f"{path}.verified_at": now_iso() if verified else None,
                f"{path}.verified_by": admin_id if verified else None,
                f"{path}.notes": notes,
                "updated_at": now_iso(),
            },
            "$push": {"history": _history_entry(
                "document_reviewed", f"{doc_type} {'verified' if verified else 'rejected'}", admin_id
            )},
        }
    )
    return await db.vendors.find_one({"id": vendor_id}, {"_id": 0})
