"""
Shared fixtures.

config.db is swapped for an in-memory mongomock database before any service
or route module is imported, so every `from config import db` sees it.
"""

import uuid
from datetime import datetime, timezone, timedelta

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

import config

config.db = AsyncMongoMockClient()[config.DB_NAME]

from config import db, hash_password, now_iso  # noqa: E402
from server import app  # noqa: E402
from services.permissions import get_preset_permissions  # noqa: E402
from services.subscription_service import normalize_plan_pricing, build_subscription_doc  # noqa: E402
from services.lead_service import build_lead_document  # noqa: E402

COLLECTIONS = [
    "users", "sessions", "vendors", "leads", "leads_deleted",
    "subscription_plans", "vendor_subscriptions", "support_tickets",
    "notifications", "notification_recipients", "activity_logs", "roles",
]

SYSTEM_ACTOR = {"id": "test", "type": "system", "name": "Test"}


@pytest.fixture(autouse=True)
async def clean_db():
    for name in COLLECTIONS:
        await db[name].delete_many({})
    yield


@pytest.fixture
async def client():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _session_for(user_id: str) -> dict:
    token = f"tok-{uuid.uuid4().hex}"
    await db.sessions.insert_one({
        "token": token,
        "user_id": user_id,
        "created_at": now_iso(),
        "expires_at": (datetime.now(timezone.utc) + timedelta(days=1)).isoformat(),
    })
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_staff():
    async def _make(role: str = "admin", name: str = "Test Admin"):
        user = {
            "id": str(uuid.uuid4()),
            "email": f"{role}-{uuid.uuid4().hex[:6]}@homexpert.test",
            "password": hash_password("secret123"),
            "name": name,
            "role": role,
            "permissions": get_preset_permissions(role),
            "is_active": True,
            "created_at": now_iso(),
        }
        await db.users.insert_one(dict(user))
        return user, await _session_for(user["id"])
    return _make


@pytest.fixture
def make_vendor():
    async def _make(business_name: str = "Sharma Plumbing", city: str = "Pune",
                    services=None, status: str = "active"):
        vendor_id = str(uuid.uuid4())
        user_id = str(uuid.uuid4())
        vendor = {
            "id": vendor_id,
            "user_id": user_id,
            "business_name": business_name,
            "owner_name": "Owner " + business_name,
            "email": f"{vendor_id[:8]}@vendor.test",
            "phone": "9876543210",
            "services": services or ["Plumbing"],
            "address": {"street": "MG Road", "city": city, "state": "MH", "pincode": "411001"},
            "service_areas": [],
            "status": status,
            "verified": {"is_verified": False},
            "created_at": now_iso(),
        }
        await db.vendors.insert_one(dict(vendor))
        await db.users.insert_one({
            "id": user_id,
            "email": vendor["email"],
            "password": hash_password("secret123"),
            "name": vendor["owner_name"],
            "role": "vendor",
            "vendor_id": vendor_id,
            "is_active": True,
            "created_at": now_iso(),
        })
        return vendor, await _session_for(user_id)
    return _make


@pytest.fixture
def make_plan():
    async def _make(plan_name: str = "Starter", duration: str = "1-month", total_leads: int = 10,
                    price: float = 1000, discounted_price=None, is_custom: bool = False,
                    assigned_to_vendors=None):
        plan = normalize_plan_pricing({
            "id": str(uuid.uuid4()),
            "plan_name": plan_name,
            "description": "",
            "duration": duration,
            "total_leads": total_leads,
            "price": price,
            "discounted_price": discounted_price,
            "currency": "INR",
            "is_active": True,
            "is_custom": is_custom,
            "assigned_to_vendors": assigned_to_vendors or [],
            "features": [],
            "limitations": {"max_leads_per_day": None, "priority_support": False},
            "created_at": now_iso(),
        })
        await db.subscription_plans.insert_one(dict(plan))
        return plan
    return _make


@pytest.fixture
def make_subscription():
    async def _make(vendor: dict, plan: dict, leads_remaining=None, status: str = "active",
                    payment_method: str = "online", start=None):
        sub = build_subscription_doc(vendor, plan, payment_method, start=start, leads_remaining=leads_remaining)
        sub["status"] = status
        sub["is_active"] = status == "active"
        if status == "active":
            sub["payment"]["payment_status"] = "completed"
        await db.vendor_subscriptions.insert_one(dict(sub))
        return sub
    return _make


@pytest.fixture
def make_lead():
    async def _make(service: str = "Plumbing", city: str = "Pune", phone: str = None,
                    price: float = 500, status: str = "pending", vendor_ids=None, **extra):
        data = {
            "customer_name": "Ravi Kumar",
            "service": service,
            "address": {"city": city, "state": "MH"},
            "price": price,
        }
        phone = phone or f"98{uuid.uuid4().int % 10 ** 8:08d}"
        lead = build_lead_document(data, phone, "website", SYSTEM_ACTOR, "Lead created from website")
        lead["status"] = status
        if vendor_ids:
            lead["available_to_vendors"] = {"vendors": vendor_ids, "assigned_at": now_iso(), "assigned_by": "test"}
        lead.update(extra)
        await db.leads.insert_one(dict(lead))
        return lead
    return _make
