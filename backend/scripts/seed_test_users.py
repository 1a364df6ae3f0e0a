"""
HomeXpert - Seed dev accounts and default plans (dev/staging only)
One staff user per role, one active demo vendor, four standard plans.
Run:   cd backend && python scripts/seed_test_users.py
Reset: cd backend && python scripts/seed_test_users.py --reset
"""

import asyncio
import sys
import uuid
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import hash_password, now_iso  # noqa: E402
from services.permissions import get_preset_permissions  # noqa: E402
from services.subscription_service import normalize_plan_pricing  # noqa: E402
from services.vendor_service import create_vendor  # noqa: E402

# Same password for all test accounts
TEST_PASSWORD = "HomeXpert2026!"

TEST_USERS = [
    {"email": "superadmin@test.local", "name": "Super Admin Test", "role": "super_admin"},
    {"email": "admin@test.local",      "name": "Admin Test",       "role": "admin"},
    {"email": "support@test.local",    "name": "Support Test",     "role": "support"},
    {"email": "viewer@test.local",     "name": "Viewer Test",      "role": "viewer"},
]

TEST_VENDOR = {
    "business_name": "Demo Plumbing & Electricals",
    "owner_name": "Demo Vendor",
    "email": "vendor@test.local",
    "phone": "9876500000",
    "password": TEST_PASSWORD,
    "services": ["Plumbing", "Electrical"],
    "address": {"street": "FC Road", "city": "Pune", "state": "MH", "pincode": "411004"},
    "service_areas": [{"city": "Pune", "areas": ["Kothrud", "Shivajinagar"]}],
}

DEFAULT_PLANS = [
    {"plan_name": "Starter Monthly",  "duration": "1-month",  "total_leads": 10,  "price": 999,   "discounted_price": None},
    {"plan_name": "Growth Quarterly", "duration": "3-month",  "total_leads": 40,  "price": 3499,  "discounted_price": 2999},
    {"plan_name": "Pro Half-Yearly",  "duration": "6-month",  "total_leads": 90,  "price": 6999,  "discounted_price": 5999},
    {"plan_name": "Elite Yearly",     "duration": "12-month", "total_leads": 200, "price": 12999, "discounted_price": 10999},
]


async def reset(db):
    """Delete test.local accounts, their sessions and vendor data"""
    users = await db.users.find({"email": {"$regex": "@test\\.local$"}}, {"_id": 0, "id": 1}).to_list(100)
    await db.sessions.delete_many({"user_id": {"$in": [u["id"] for u in users]}})
    result = await db.users.delete_many({"email": {"$regex": "@test\\.local$"}})
    vendors = await db.vendors.find({"email": {"$regex": "@test\\.local$"}}, {"_id": 0, "id": 1}).to_list(100)
    await db.vendor_subscriptions.delete_many({"vendor_id": {"$in": [v["id"] for v in vendors]}})
    await db.vendors.delete_many({"email": {"$regex": "@test\\.local$"}})
    print(f"Deleted {result.deleted_count} test users, {len(vendors)} test vendor(s)")


async def seed(db):
    """Create/update staff users, the demo vendor and missing default plans"""
    for u in TEST_USERS:
        existing = await db.users.find_one({"email": u["email"]})
        doc = {
            "email": u["email"],
            "password": hash_password(TEST_PASSWORD),
            "name": u["name"],
            "role": u["role"],
            "permissions": get_preset_permissions(u["role"]),
            "is_active": True,
        }
        if existing:
            await db.users.update_one({"email": u["email"]}, {"$set": doc})
            print(f"  Updated: {u['email']} ({u['role']})")
        else:
            doc["id"] = str(uuid.uuid4())
            doc["created_at"] = now_iso()
            await db.users.insert_one(doc)
            print(f"  Created: {u['email']} ({u['role']})")

    if await db.vendors.find_one({"email": TEST_VENDOR["email"]}, {"_id": 1}):
        print(f"  Exists:  {TEST_VENDOR['email']} (vendor)")
    else:
        vendor = await create_vendor(dict(TEST_VENDOR), "active", "seed")
        print(f"  Created: {vendor['email']} (vendor {vendor['id']})")

    for p in DEFAULT_PLANS:
        if await db.subscription_plans.find_one({"plan_name": p["plan_name"]}, {"_id": 1}):
            continue
        plan = normalize_plan_pricing({
            "id": str(uuid.uuid4()),
            **p,
            "description": "",
            "currency": "INR",
            "is_active": True,
            "is_custom": False,
            "assigned_to_vendors": [],
            "features": [],
            "limitations": {"max_leads_per_day": None, "priority_support": p["duration"] == "12-month"},
            "created_by": "seed",
            "created_at": now_iso(),
            "updated_at": now_iso(),
        })
        await db.subscription_plans.insert_one(plan)
        print(f"  Plan:    {plan['plan_name']} ({plan['leads_per_month']} leads/month)")


async def main():
    from config import db, client

    if "--reset" in sys.argv:
        await reset(db)
        print("Reset complete. Run without --reset to re-seed.")
    else:
        await reset(db)
        await seed(db)
        print(f"\nTest accounts seeded. Password for all: {TEST_PASSWORD}")
        print("Reset: python scripts/seed_test_users.py --reset")

    client.close()


if __name__ == "__main__":
    asyncio.run(main())
