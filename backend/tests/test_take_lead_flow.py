"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  HomeXpert - Take / pipeline / refund flow (state machine against the DB)    ║
║                                                                              ║
║  1. Take requires an active subscription with leads left                     ║
║  2. Take is exclusive and consumes exactly one lead                          ║
║  3. Vendor pipeline moves are validated and stamped                          ║
║  4. Approved refund cancels the lead and credits one lead back               ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import pytest

from config import db
from services import subscription_service
from services.lead_state_machine import (
    take_lead,
    make_available,
    vendor_update,
    unassign,
    admin_set_status,
    request_refund,
    process_refund,
    LeadTakeError,
    LeadTransitionError,
)
from services.subscription_service import get_active_subscription

ADMIN = {"id": "admin-1", "type": "admin", "name": "Admin"}


def _actor(vendor):
    return {"id": vendor["id"], "type": "vendor", "name": vendor["business_name"]}


@pytest.fixture
async def subscribed_vendor(make_vendor, make_plan, make_subscription):
    vendor, _ = await make_vendor()
    plan = await make_plan(total_leads=5)
    sub = await make_subscription(vendor, plan)
    return vendor, sub


class TestTakeGuards:

    @pytest.mark.asyncio
    async def test_no_subscription(self, make_vendor, make_lead):
        vendor, _ = await make_vendor()
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])
        with pytest.raises(LeadTakeError) as exc_info:
            await take_lead(lead["id"], vendor["id"], _actor(vendor))
        assert exc_info.value.status_code == 403
        assert exc_info.value.flags == {"requiresSubscription": True}
        print("✅ No subscription -> requiresSubscription")

    @pytest.mark.asyncio
    async def test_quota_exhausted(self, make_vendor, make_plan, make_subscription, make_lead):
        vendor, _ = await make_vendor()
        plan = await make_plan(total_leads=5)
        await make_subscription(vendor, plan, leads_remaining=0)
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])
        with pytest.raises(LeadTakeError) as exc_info:
            await take_lead(lead["id"], vendor["id"], _actor(vendor))
        assert exc_info.value.flags == {"needsUpgrade": True}
        print("✅ Zero leads left -> needsUpgrade")

    @pytest.mark.asyncio
    async def test_not_eligible(self, subscribed_vendor, make_lead):
        vendor, _ = subscribed_vendor
        lead = await make_lead(status="assigned", vendor_ids=["someone-else"])
        with pytest.raises(LeadTakeError) as exc_info:
            await take_lead(lead["id"], vendor["id"], _actor(vendor))
        assert exc_info.value.status_code == 404
        print("✅ Lead not offered to this vendor")

    @pytest.mark.asyncio
    async def test_pending_lead_cannot_be_taken(self, subscribed_vendor, make_lead):
        vendor, _ = subscribed_vendor
        lead = await make_lead(status="pending", vendor_ids=[vendor["id"]])
        with pytest.raises(LeadTakeError):
            await take_lead(lead["id"], vendor["id"], _actor(vendor))
        print("✅ pending lead not takeable")


class TestTakeExclusive:

    @pytest.mark.asyncio
    async def test_take_consumes_one_lead(self, subscribed_vendor, make_lead):
        vendor, sub = subscribed_vendor
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])

        taken, updated_sub = await take_lead(lead["id"], vendor["id"], _actor(vendor))

        assert taken["status"] == "taken"
        assert taken["taken_by"] == vendor["id"]
        assert taken["subscription_id"] == sub["id"]
        assert taken["progress_history"][-1]["from_status"] == "assigned"
        assert updated_sub["usage"]["leads_remaining"] == 4
        assert updated_sub["usage"]["leads_consumed"] == 1
        assert updated_sub["lead_assignments"][0]["lead_id"] == lead["id"]
        assert updated_sub["monthly_usage"][0]["leads_used"] == 1
        print(f"✅ Taken, remaining={updated_sub['usage']['leads_remaining']}")

    @pytest.mark.asyncio
    async def test_second_vendor_loses(self, make_vendor, make_plan, make_subscription, make_lead):
        plan = await make_plan(total_leads=5)
        v1, _ = await make_vendor("First")
        v2, _ = await make_vendor("Second")
        await make_subscription(v1, plan)
        await make_subscription(v2, plan)
        lead = await make_lead(status="available", vendor_ids=[v1["id"], v2["id"]])

        await take_lead(lead["id"], v1["id"], _actor(v1))
        with pytest.raises(LeadTakeError) as exc_info:
            await take_lead(lead["id"], v2["id"], _actor(v2))
        assert exc_info.value.flags == {"alreadyTaken": True}

        v2_sub = await get_active_subscription(v2["id"])
        assert v2_sub["usage"]["leads_remaining"] == 5
        print("✅ Second vendor gets alreadyTaken and keeps its quota")

    @pytest.mark.asyncio
    async def test_lead_taken_between_read_and_write(self, subscribed_vendor, make_lead, monkeypatch):
        vendor, _ = subscribed_vendor
        lead = await make_lead(status="available", vendor_ids=[vendor["id"], "rival"])
        reserve = subscription_service.reserve_lead_quota

        async def reserve_then_rival_takes(subscription_id):
            ok = await reserve(subscription_id)
            await db.leads.update_one({"id": lead["id"]}, {"$set": {"taken_by": "rival", "status": "taken"}})
            return ok

        monkeypatch.setattr(subscription_service, "reserve_lead_quota", reserve_then_rival_takes)
        with pytest.raises(LeadTakeError) as exc_info:
            await take_lead(lead["id"], vendor["id"], _actor(vendor))
        assert exc_info.value.status_code == 409
        assert exc_info.value.flags == {"alreadyTaken": True}

        sub = await get_active_subscription(vendor["id"])
        assert sub["usage"]["leads_remaining"] == 5
        assert sub["usage"]["leads_consumed"] == 0
        assert (await db.leads.find_one({"id": lead["id"]}))["taken_by"] == "rival"
        print("✅ Lost compare-and-set -> 409 alreadyTaken, reservation released")

    @pytest.mark.asyncio
    async def test_reassigned_between_read_and_write(self, subscribed_vendor, make_lead, monkeypatch):
        vendor, _ = subscribed_vendor
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])
        reserve = subscription_service.reserve_lead_quota

        async def reserve_then_reassign(subscription_id):
            ok = await reserve(subscription_id)
            assert await make_available(lead["id"], ["other-vendor"], ADMIN, "Reassigned") is True
            return ok

        monkeypatch.setattr(subscription_service, "reserve_lead_quota", reserve_then_reassign)
        with pytest.raises(LeadTakeError) as exc_info:
            await take_lead(lead["id"], vendor["id"], _actor(vendor))
        assert exc_info.value.status_code == 409

        stored = await db.leads.find_one({"id": lead["id"]}, {"_id": 0})
        assert "taken_by" not in stored
        assert stored["available_to_vendors"]["vendors"] == ["other-vendor"]
        assert (await get_active_subscription(vendor["id"]))["usage"]["leads_remaining"] == 5
        print("✅ Vendor dropped from the eligible list cannot complete the take")

    @pytest.mark.asyncio
    async def test_monthly_bucket_accumulates(self, subscribed_vendor, make_lead):
        vendor, sub = subscribed_vendor
        for _ in range(2):
            lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])
            await take_lead(lead["id"], vendor["id"], _actor(vendor))
        stored = await get_active_subscription(vendor["id"])
        assert len(stored["monthly_usage"]) == 1
        assert stored["monthly_usage"][0]["leads_used"] == 2
        assert stored["usage"]["leads_remaining"] == 3
        print("✅ Monthly usage bucket reused within a month")

    @pytest.mark.asyncio
    async def test_admin_mark_taken_skips_eligibility(self, subscribed_vendor, make_lead):
        vendor, _ = subscribed_vendor
        lead = await make_lead(status="assigned", vendor_ids=["other"])
        taken, _ = await take_lead(lead["id"], vendor["id"], ADMIN, require_eligible=False)
        assert taken["taken_by"] == vendor["id"]
        assert taken["progress_history"][-1]["changed_by_type"] == "admin"
        print("✅ Admin markTaken bypasses the eligible list")


class TestPipeline:

    @pytest.fixture
    async def taken_lead(self, subscribed_vendor, make_lead):
        vendor, _ = subscribed_vendor
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]], price=1200)
        taken, _ = await take_lead(lead["id"], vendor["id"], _actor(vendor))
        return vendor, taken

    @pytest.mark.asyncio
    async def test_valid_move_stamps_timestamp(self, taken_lead):
        vendor, lead = taken_lead
        updated = await vendor_update(lead, vendor["id"], _actor(vendor), {"status": "contacted", "note": "Called"})
        assert updated["status"] == "contacted"
        assert updated["contacted_at"]
        assert updated["notes"][-1]["content"] == "Called"
        assert updated["progress_history"][-1]["to_status"] == "contacted"
        print("✅ taken -> contacted")

    @pytest.mark.asyncio
    async def test_invalid_move_rejected(self, taken_lead):
        vendor, lead = taken_lead
        with pytest.raises(LeadTransitionError):
            await vendor_update(lead, vendor["id"], _actor(vendor), {"status": "completed"})
        print("✅ taken -> completed blocked")

    @pytest.mark.asyncio
    async def test_other_vendor_cannot_update(self, taken_lead):
        vendor, lead = taken_lead
        with pytest.raises(LeadTransitionError):
            await vendor_update(lead, "intruder", {"id": "intruder", "type": "vendor"}, {"status": "contacted"})
        print("✅ Only the taker updates the lead")

    @pytest.mark.asyncio
    async def test_completion_updates_subscription_performance(self, taken_lead):
        vendor, lead = taken_lead
        actor = _actor(vendor)
        for status in ("contacted", "interested", "scheduled", "in_progress"):
            lead = await vendor_update(lead, vendor["id"], actor, {"status": status})
        lead = await vendor_update(lead, vendor["id"], actor, {"status": "completed", "conversion_value": 1500})

        assert lead["status"] == "completed"
        assert lead["completed_at"]
        sub = await get_active_subscription(vendor["id"])
        assert sub["lead_assignments"][0]["status"] == "completed"
        assert sub["lead_assignments"][0]["revenue"] == 1500
        assert sub["performance"]["job_completion_rate"] == 100
        assert sub["performance"]["total_revenue"] == 1500
        print(f"✅ Performance: {sub['performance']}")

    @pytest.mark.asyncio
    async def test_unassign_taken_lead(self, taken_lead):
        vendor, lead = taken_lead
        assert await unassign(lead["id"], ADMIN, "Customer called back") is True
        stored = await db.leads.find_one({"id": lead["id"]}, {"_id": 0})
        assert stored["status"] == "pending"
        assert "taken_by" not in stored
        assert "available_to_vendors" not in stored
        print("✅ Unassign clears taker and eligibility")

    @pytest.mark.asyncio
    async def test_admin_override_back_to_available_clears_taker(self, taken_lead):
        vendor, lead = taken_lead
        updated = await admin_set_status(lead["id"], "available", ADMIN)
        assert updated["status"] == "available"
        assert "taken_by" not in updated
        assert updated["available_to_vendors"]["vendors"] == [vendor["id"]]
        print("✅ Admin override to available releases the lead")


class TestRefund:

    @pytest.fixture
    async def taken_lead(self, subscribed_vendor, make_lead):
        vendor, _ = subscribed_vendor
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])
        taken, _ = await take_lead(lead["id"], vendor["id"], _actor(vendor))
        return vendor, taken

    @pytest.mark.asyncio
    async def test_request_then_approve(self, taken_lead):
        vendor, lead = taken_lead
        requested = await request_refund(lead["id"], "Wrong number", _actor(vendor))
        assert requested["refund_request"]["status"] == "pending"
        assert requested["refund_request"]["requested"] is True
        assert requested["status"] == "taken"

        approved = await process_refund(lead["id"], "approve", ADMIN, "Verified")
        assert approved["refund_request"]["status"] == "approved"
        assert approved["status"] == "cancelled"

        sub = await get_active_subscription(vendor["id"])
        assert sub["usage"]["leads_remaining"] == 5
        assert sub["usage"]["leads_consumed"] == 0
        print("✅ Approved refund: lead cancelled, one lead credited back")

    @pytest.mark.asyncio
    async def test_reject_keeps_lead(self, taken_lead):
        vendor, lead = taken_lead
        await request_refund(lead["id"], "Duplicate", _actor(vendor))
        rejected = await process_refund(lead["id"], "reject", ADMIN)
        assert rejected["refund_request"]["status"] == "rejected"
        assert rejected["status"] == "taken"
        sub = await get_active_subscription(vendor["id"])
        assert sub["usage"]["leads_remaining"] == 4
        print("✅ Rejected refund leaves lead and quota untouched")

    @pytest.mark.asyncio
    async def test_double_request_rejected(self, taken_lead):
        vendor, lead = taken_lead
        await request_refund(lead["id"], "Wrong number", _actor(vendor))
        with pytest.raises(LeadTransitionError):
            await request_refund(lead["id"], "Again", _actor(vendor))
        print("✅ One refund request per lead")

    @pytest.mark.asyncio
    async def test_reason_required(self, taken_lead):
        vendor, lead = taken_lead
        with pytest.raises(LeadTransitionError):
            await request_refund(lead["id"], "   ", _actor(vendor))
        print("✅ Empty reason rejected")

    @pytest.mark.asyncio
    async def test_untaken_lead_not_refundable(self, make_lead):
        lead = await make_lead()
        with pytest.raises(LeadTransitionError) as exc_info:
            await request_refund(lead["id"], "No reason", ADMIN)
        assert "not been taken" in str(exc_info.value)
        print("✅ Untaken lead cannot be refunded")


class TestQuotaWrites:

    @staticmethod
    def _within_plan(sub):
        usage = sub["usage"]
        return usage["leads_consumed"] + usage["leads_remaining"] <= sub["plan_snapshot"]["total_leads"]

    @pytest.mark.asyncio
    async def test_refund_credits_the_subscription_the_lead_was_taken_under(
            self, make_vendor, make_plan, make_subscription, make_lead):
        vendor, _ = await make_vendor()
        old_sub = await make_subscription(vendor, await make_plan(total_leads=5))
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])
        await take_lead(lead["id"], vendor["id"], _actor(vendor))

        # A second active subscription exists; the taking one still gets the lead back
        new_sub = await make_subscription(vendor, await make_plan("Growth", total_leads=10))
        await db.vendor_subscriptions.update_one(
            {"id": new_sub["id"]}, {"$set": {"usage.leads_consumed": 2, "usage.leads_remaining": 8}}
        )
        await request_refund(lead["id"], "Wrong number", _actor(vendor))
        await process_refund(lead["id"], "approve", ADMIN)

        old = await db.vendor_subscriptions.find_one({"id": old_sub["id"]}, {"_id": 0})
        new = await db.vendor_subscriptions.find_one({"id": new_sub["id"]}, {"_id": 0})
        assert (old["usage"]["leads_consumed"], old["usage"]["leads_remaining"]) == (0, 5)
        assert (new["usage"]["leads_consumed"], new["usage"]["leads_remaining"]) == (2, 8)
        assert old["history"][-1]["action"] == "lead_refunded"
        print("✅ Refund credited to the taking subscription")

    @pytest.mark.asyncio
    async def test_refund_after_expiry_never_overfills_a_fresh_subscription(
            self, subscribed_vendor, make_plan, make_subscription, make_lead):
        vendor, old_sub = subscribed_vendor
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])
        await take_lead(lead["id"], vendor["id"], _actor(vendor))
        await request_refund(lead["id"], "Wrong number", _actor(vendor))

        await db.vendor_subscriptions.update_one({"id": old_sub["id"]}, {"$set": {"status": "expired", "is_active": False}})
        fresh = await make_subscription(vendor, await make_plan("Growth", total_leads=10))

        await process_refund(lead["id"], "approve", ADMIN)
        stored = await db.vendor_subscriptions.find_one({"id": fresh["id"]}, {"_id": 0})
        assert (stored["usage"]["leads_consumed"], stored["usage"]["leads_remaining"]) == (0, 10)
        assert self._within_plan(stored)
        print("✅ Fresh subscription with nothing consumed is not credited past its total")

    @pytest.mark.asyncio
    async def test_refund_falls_back_to_active_subscription(
            self, subscribed_vendor, make_plan, make_subscription, make_lead):
        vendor, old_sub = subscribed_vendor
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])
        await take_lead(lead["id"], vendor["id"], _actor(vendor))
        await request_refund(lead["id"], "Wrong number", _actor(vendor))

        await db.vendor_subscriptions.update_one({"id": old_sub["id"]}, {"$set": {"status": "expired", "is_active": False}})
        renewed = await make_subscription(vendor, await make_plan("Growth", total_leads=10), leads_remaining=7)
        await db.vendor_subscriptions.update_one({"id": renewed["id"]}, {"$set": {"usage.leads_consumed": 3}})

        await process_refund(lead["id"], "approve", ADMIN)
        stored = await db.vendor_subscriptions.find_one({"id": renewed["id"]}, {"_id": 0})
        assert (stored["usage"]["leads_consumed"], stored["usage"]["leads_remaining"]) == (2, 8)
        assert self._within_plan(stored)
        print("✅ Expired taking subscription -> current one credited")

    @pytest.mark.asyncio
    async def test_adjustment_keeps_a_take_that_lands_mid_write(
            self, make_vendor, make_plan, make_subscription, monkeypatch):
        vendor, _ = await make_vendor()
        sub = await make_subscription(vendor, await make_plan(total_leads=10), leads_remaining=4)
        await db.vendor_subscriptions.update_one({"id": sub["id"]}, {"$set": {"usage.leads_consumed": 1}})

        load = subscription_service._load_subscription
        reads = []

        async def read_then_vendor_takes(subscription_id):
            snapshot = await load(subscription_id)
            reads.append(snapshot["usage"])
            if len(reads) == 1:
                assert await subscription_service.reserve_lead_quota(subscription_id) is True
            return snapshot

        monkeypatch.setattr(subscription_service, "_load_subscription", read_then_vendor_takes)
        # consumed 1 < 3: floor-0 path, written by compare-and-set on the values read
        await subscription_service.adjust_leads(sub["id"], "increase", 3, "Goodwill", "admin-1")

        stored = await db.vendor_subscriptions.find_one({"id": sub["id"]}, {"_id": 0})
        assert len(reads) == 2
        assert (stored["usage"]["leads_consumed"], stored["usage"]["leads_remaining"]) == (0, 6)
        assert self._within_plan(stored)
        print("✅ Concurrent take survives the adjustment")

    @pytest.mark.asyncio
    async def test_adjustment_uses_increment_when_no_floor(self, make_vendor, make_plan, make_subscription):
        vendor, _ = await make_vendor()
        sub = await make_subscription(vendor, await make_plan(total_leads=10), leads_remaining=6)
        await db.vendor_subscriptions.update_one({"id": sub["id"]}, {"$set": {"usage.leads_consumed": 4}})

        updated = await subscription_service.adjust_leads(sub["id"], "increase", 2, "Goodwill", "admin-1")
        assert (updated["usage"]["leads_consumed"], updated["usage"]["leads_remaining"]) == (2, 8)
        updated = await subscription_service.adjust_leads(sub["id"], "decrease", 8, "Chargeback", "admin-1")
        assert (updated["usage"]["leads_consumed"], updated["usage"]["leads_remaining"]) == (10, 0)
        print("✅ Increase/decrease keep consumed + remaining in step")
