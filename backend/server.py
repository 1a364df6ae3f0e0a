"""
HomeXpert - Marketplace API Backend

Start with:
    uvicorn server:app --host 0.0.0.0 --port 8001 --reload
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from config import CORS_ORIGINS

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("homexpert")

app = FastAPI(
    title="HomeXpert",
    description="Home services marketplace: leads, vendors, subscriptions, support",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== ROUTES ====================

from routes import (
    auth,
    public,
    leads,
    vendor_leads,
    vendors,
    vendor_account,
    roles,
    subscription_history,
    subscriptions,
    vendor_subscriptions,
    vendor_support,
    admin_support,
    notifications,
    dashboard,
)

app.include_router(auth.router, prefix="/api")
app.include_router(public.router, prefix="/api")
app.include_router(leads.router, prefix="/api")
app.include_router(vendor_leads.router, prefix="/api")
app.include_router(vendors.router, prefix="/api")
app.include_router(vendor_account.router, prefix="/api")
app.include_router(roles.router, prefix="/api")
# history before plans: /admin/subscriptions/{plan_id} would swallow /history
app.include_router(subscription_history.router, prefix="/api")
app.include_router(subscriptions.router, prefix="/api")
app.include_router(vendor_subscriptions.router, prefix="/api")
app.include_router(vendor_support.router, prefix="/api")
app.include_router(admin_support.router, prefix="/api")
app.include_router(notifications.router, prefix="/api")
app.include_router(dashboard.router, prefix="/api")


@app.get("/")
async def root():
    return {
        "name": "HomeXpert API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


# ==================== STARTUP / SHUTDOWN ====================

@app.on_event("startup")
async def startup():
    from config import db
    from scheduler_service import task_scheduler

    await db.users.create_index("email", unique=True)
    await db.sessions.create_index("token")
    await db.sessions.create_index("expires_at")
    await db.vendors.create_index("id", unique=True)
    await db.vendors.create_index("email", unique=True)
    await db.vendors.create_index("status")
    await db.roles.create_index("id", unique=True)
    await db.roles.create_index("name", unique=True)
    await db.users.create_index("custom_role_id")
    await db.leads.create_index("id", unique=True)
    await db.leads.create_index([("customer_phone", 1), ("service", 1), ("created_at", -1)])
    await db.leads.create_index("status")
    await db.leads.create_index("taken_by")
    await db.leads.create_index("available_to_vendors.vendors")
    await db.subscription_plans.create_index("id", unique=True)
    await db.vendor_subscriptions.create_index("id", unique=True)
    await db.vendor_subscriptions.create_index([("vendor_id", 1), ("status", 1)])
    await db.vendor_subscriptions.create_index("end_date")
    await db.support_tickets.create_index("ticket_id", unique=True)
    await db.support_tickets.create_index([("vendor_id", 1), ("status", 1)])
    await db.notification_recipients.create_index([("recipient_id", 1), ("recipient_type", 1), ("is_read", 1)])
    await db.activity_logs.create_index("created_at")
    logger.info("MongoDB indexes ready")

    task_scheduler.start()
    logger.info("HomeXpert API started")


@app.on_event("shutdown")
async def shutdown():
    from config import client
    from scheduler_service import task_scheduler

    task_scheduler.stop()
    client.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
