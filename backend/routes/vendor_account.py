"""
HomeXpert - Vendor profile, dashboard, onboarding and verification
"""

from fastapi import APIRouter, Depends, HTTPException

from config import db, PAYMENT_ACCOUNT
from models.vendor import VendorOnboard, BankDetails, VerificationRequestCreate
from routes.auth import get_current_vendor
from services.notification_service import notify_admins
from services.vendor_service import (
    create_vendor,
    verification_status,
    request_verification,
    update_bank_details,
    mask_account_number,
    VendorError,
)
from services.subscription_service import get_current_subscription, with_virtuals
from services.lead_service import count_by_status, format_vendor_lead

router = APIRouter(prefix="/vendors", tags=["Vendor Account"])

OPEN_TICKET_STATUSES = ["open", "in_progress", "waiting_for_vendor", "waiting_for_admin"]


@router.get("/profile")
async def get_profile(vendor: dict = Depends(get_current_vendor)):
    user = vendor.pop("user")
    return {
        "vendor": vendor,
        "user": {"id": user["id"], "email": user["email"], "name": user.get("name"), "role": user["role"]},
    }


@router.get("/dashboard")
async def get_dashboard(vendor: dict = Depends(get_current_vendor)):
    subscription = with_virtuals(await get_current_subscription(vendor["id"]))

    recent = await db.leads.find({"taken_by": vendor["id"]}, {"_id": 0}) \
        .sort("taken_at", -1) \
        .limit(5) \
        .to_list(5)

    return {
        "vendor": {
            "id": vendor["id"],
            "business_name": vendor.get("business_name"),
            "status": vendor.get("status"),
            "is_verified": (vendor.get("verified") or {}).get("is_verified", False),
        },
        "lead_stats": await count_by_status({"taken_by": vendor["id"]}),
        "available_leads": await db.leads.count_documents({
            "available_to_vendors.vendors": vendor["id"],
            "status": {"$in": ["available", "assigned"]},
            "taken_by": {"$exists": False},
        }),
        "subscription": {
            "id": subscription["id"],
            "status": subscription["status"],
            "plan_name": subscription["plan_snapshot"]["plan_name"],
            "leads_remaining": subscription["usage"]["leads_remaining"],
            "leads_consumed": subscription["usage"]["leads_consumed"],
            "days_remaining": subscription["days_remaining"],
            "is_expiring_soon": subscription["is_expiring_soon"],
        } if subscription else None,
        "recent_leads": [format_vendor_lead(lead) for lead in recent],
        "open_tickets": await db.support_tickets.count_documents(
            {"vendor_id": vendor["id"], "status": {"$in": OPEN_TICKET_STATUSES}}
        ),
        "unread_notifications": await db.notification_recipients.count_documents(
            {"recipient_id": vendor["id"], "recipient_type": "vendor", "is_read": False}
        ),
    }


# ==================== ONBOARDING ====================

@router.post("/onboard", status_code=201)
async def onboard_vendor(data: VendorOnboard):
    """Public onboarding form. The vendor starts pending with every document unverified."""
    try:
        vendor = await create_vendor(data.model_dump(), status="pending")
    except VendorError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await notify_admins(
        "New vendor application",
        f"{vendor['business_name']} submitted the onboarding form.",
        type="system",
        data={"vendor_id": vendor["id"]},
    )
    return {
        "success": True,
        "message": "Vendor application submitted successfully",
        "vendor_id": vendor["id"],
        "status": vendor["status"],
        "verification": verification_status(vendor),
    }


# ==================== VERIFICATION ====================

@router.get("/verification-status")
async def get_verification_status(vendor: dict = Depends(get_current_vendor)):
    return verification_status(vendor)


@router.post("/verification-status")
async def submit_verification_request(data: VerificationRequestCreate, vendor: dict = Depends(get_current_vendor)):
    try:
        request = await request_verification(vendor["id"], data.reason)
    except VendorError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await notify_admins(
        "Verification requested",
        f"{vendor.get('business_name')} asked for their documents to be reviewed.",
        type="system",
        data={"vendor_id": vendor["id"]},
    )
    return {
        "success": True,
        "message": "Verification request submitted. Documents are reviewed within 24-48 hours.",
        "verification_request": request,
    }


# ==================== BANK DETAILS ====================

@router.get("/bank-details")
async def get_bank_details(vendor: dict = Depends(get_current_vendor)):
    """Where to transfer subscription payments, plus the vendor's own payout account (masked)."""
    own = vendor.get("bank_details")
    if own:
        own = {**own, "account_number": mask_account_number(own.get("account_number"))}
    return {
        "payment_account": PAYMENT_ACCOUNT,
        "payment_instructions": [
            "Transfer the exact subscription amount",
            f"Include your vendor ID ({vendor['id']}) in the transaction remarks",
            "Submit the transaction ID / UTR number from the subscriptions page",
            "The subscription is activated once an admin verifies the payment",
        ],
        "vendor_bank_details": own,
    }


@router.put("/bank-details")
async def put_bank_details(data: BankDetails, vendor: dict = Depends(get_current_vendor)):
    bank_details = await update_bank_details(vendor["id"], data.model_dump())
    return {
        "success": True,
        "bank_details": {**bank_details, "account_number": mask_account_number(bank_details["account_number"])},
    }
