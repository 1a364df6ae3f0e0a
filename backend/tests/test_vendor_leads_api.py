"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  HomeXpert - Vendor lead pipeline API                                        ║
║                                                                              ║
║  Marketplace gate (requiresSubscription / needsUpgrade), take, pipeline      ║
║  updates, notes, follow-ups, refund requests, dashboard.                     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import pytest

from config import db
from services.assignment_engine import assign_leads


@pytest.fixture
async def vendor_with_plan(make_vendor, make_plan, make_subscription):
    vendor, headers = await make_vendor()
    plan = await make_plan(total_leads=2)
    sub = await make_subscription(vendor, plan)
    return vendor, headers, sub


class TestMarketplace:

    @pytest.mark.asyncio
    async def test_requires_subscription(self, client, make_vendor):
        _, headers = await make_vendor()
        r = await client.get("/api/vendors/available-leads", headers=headers)
        assert r.status_code == 403
        assert r.json()["detail"]["requiresSubscription"] is True
        print("✅ No subscription -> 403 requiresSubscription")

    @pytest.mark.asyncio
    async def test_needs_upgrade(self, client, make_vendor, make_plan, make_subscription):
        vendor, headers = await make_vendor()
        plan = await make_plan()
        await make_subscription(vendor, plan, leads_remaining=0)
        r = await client.get("/api/vendors/available-leads", headers=headers)
        assert r.status_code == 403
        assert r.json()["detail"]["needsUpgrade"] is True
        print("✅ Quota exhausted -> 403 needsUpgrade")

    @pytest.mark.asyncio
    async def test_only_offered_leads_listed(self, client, vendor_with_plan, make_lead):
        vendor, headers, sub = vendor_with_plan
        offered = await make_lead(status="assigned", vendor_ids=[vendor["id"]], price=700)
        await make_lead(status="assigned", vendor_ids=["other-vendor"])
        await make_lead(status="pending")

        r = await client.get("/api/vendors/available-leads", headers=headers)
        assert r.status_code == 200, r.text
        body = r.json()
        assert [lead["id"] for lead in body["leads"]] == [offered["id"]]
        assert body["leads"][0]["customer_phone"].startswith("XXXXXX")
        assert body["stats"]["available"] == 1
        assert body["stats"]["total_value"] == 700
        assert body["subscription"]["leads_remaining"] == 2
        print("✅ Marketplace lists only leads offered to this vendor")

    @pytest.mark.asyncio
    async def test_auto_assigned_lead_listed_when_service_case_differs(
            self, client, make_vendor, make_plan, make_subscription, make_lead):
        vendor, headers = await make_vendor(services=["plumbing"])
        await make_subscription(vendor, await make_plan())
        lead = await make_lead(service="Plumbing")
        await make_lead(service="Electrical", status="assigned", vendor_ids=[vendor["id"]])

        result = await assign_leads([lead["id"]], "auto", {"id": "admin-1", "type": "admin", "name": "Admin"})
        assert result["assigned_count"] == 1

        r = await client.get("/api/vendors/available-leads", headers=headers)
        assert r.status_code == 200, r.text
        assert [item["id"] for item in r.json()["leads"]] == [lead["id"]]
        print("✅ 'plumbing' vendor sees the 'Plumbing' lead it was assigned")

    @pytest.mark.asyncio
    async def test_sort_order(self, client, vendor_with_plan, make_lead):
        vendor, headers, _ = vendor_with_plan
        cheap = await make_lead(status="assigned", vendor_ids=[vendor["id"]], price=300)
        pricey = await make_lead(status="assigned", vendor_ids=[vendor["id"]], price=900)

        r = await client.get("/api/vendors/available-leads?sort_by=price&sort_order=asc", headers=headers)
        assert [item["id"] for item in r.json()["leads"]] == [cheap["id"], pricey["id"]]
        r = await client.get("/api/vendors/available-leads?sort_by=price", headers=headers)
        assert [item["id"] for item in r.json()["leads"]] == [pricey["id"], cheap["id"]]
        print("✅ sort_order asc/desc honoured")


class TestTakeAndWork:

    @pytest.mark.asyncio
    async def test_take_and_progress(self, client, vendor_with_plan, make_lead):
        vendor, headers, _ = vendor_with_plan
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])

        r = await client.post("/api/vendors/leads", headers=headers, json={"lead_id": lead["id"]})
        assert r.status_code == 200, r.text
        assert r.json()["subscription"]["leads_remaining"] == 1
        assert r.json()["lead"]["customer_phone"] == lead["customer_phone"]

        r = await client.put(f"/api/vendors/leads/{lead['id']}", headers=headers, json={"status": "contacted"})
        assert r.status_code == 200
        assert r.json()["lead"]["status"] == "contacted"

        r = await client.put(f"/api/vendors/leads/{lead['id']}", headers=headers, json={"status": "completed"})
        assert r.status_code == 400

        r = await client.get("/api/vendors/leads", headers=headers)
        summary = r.json()["summary"]
        assert summary["by_status"]["contacted"]["count"] == 1
        assert summary["by_status"]["taken"]["count"] == 0
        print("✅ Take -> contacted, invalid jump rejected")

    @pytest.mark.asyncio
    async def test_take_twice(self, client, vendor_with_plan, make_lead):
        vendor, headers, _ = vendor_with_plan
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])
        await client.post("/api/vendors/leads", headers=headers, json={"lead_id": lead["id"]})
        r = await client.post("/api/vendors/leads", headers=headers, json={"lead_id": lead["id"]})
        assert r.status_code == 404
        assert r.json()["detail"]["alreadyTaken"] is True

        sub = await db.vendor_subscriptions.find_one({"vendor_id": vendor["id"]}, {"_id": 0})
        assert sub["usage"]["leads_remaining"] == 1
        print("✅ Second take refused, charged once")

    @pytest.mark.asyncio
    async def test_detail_of_other_vendors_lead(self, client, vendor_with_plan, make_lead):
        _, headers, _ = vendor_with_plan
        lead = await make_lead(status="taken", taken_by="someone-else")
        r = await client.get(f"/api/vendors/leads/{lead['id']}", headers=headers)
        assert r.status_code == 404
        print("✅ Vendor cannot read another vendor's lead")

    @pytest.mark.asyncio
    async def test_notes_and_follow_ups(self, client, vendor_with_plan, make_lead):
        vendor, headers, _ = vendor_with_plan
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])
        await client.post("/api/vendors/leads", headers=headers, json={"lead_id": lead["id"]})
        base = f"/api/vendors/leads/{lead['id']}"

        r = await client.post(f"{base}/notes", headers=headers, json={"content": "Site visit Tuesday", "type": "meeting"})
        assert r.status_code == 201
        r = await client.get(f"{base}/notes", headers=headers)
        assert r.json()["notes"][0]["content"] == "Site visit Tuesday"
        assert r.json()["notes"][0]["time_ago"] == "just now"

        r = await client.post(f"{base}/follow-ups", headers=headers, json={
            "follow_up": "Send quote", "scheduled_date": "2020-01-01T09:00:00+00:00", "type": "email",
        })
        assert r.status_code == 201
        follow_up_id = r.json()["follow_up"]["id"]

        r = await client.get(f"{base}/follow-ups", headers=headers)
        assert r.json()["summary"] == {"total": 1, "pending": 0, "overdue": 1, "completed": 0}

        r = await client.put(f"{base}/follow-ups", headers=headers, json={
            "follow_up_id": follow_up_id, "completion_note": "Quote sent",
        })
        assert r.status_code == 200
        assert r.json()["follow_up"]["status"] == "completed"

        r = await client.put(f"{base}/follow-ups", headers=headers, json={"follow_up_id": "missing"})
        assert r.status_code == 404
        print("✅ Notes and follow-ups")

    @pytest.mark.asyncio
    async def test_refund_request(self, client, vendor_with_plan, make_lead):
        vendor, headers, _ = vendor_with_plan
        lead = await make_lead(status="assigned", vendor_ids=[vendor["id"]])
        await client.post("/api/vendors/leads", headers=headers, json={"lead_id": lead["id"]})

        r = await client.post(f"/api/vendors/leads/{lead['id']}/refund", headers=headers,
                              json={"reason": "Customer unreachable"})
        assert r.status_code == 200
        assert r.json()["refund_request"]["status"] == "pending"

        r = await client.post(f"/api/vendors/leads/{lead['id']}/refund", headers=headers,
                              json={"reason": "Again"})
        assert r.status_code == 400

        detail = (await client.get(f"/api/vendors/leads/{lead['id']}", headers=headers)).json()
        assert detail["status"]["can_refund"] is False
        print("✅ One refund request per lead")


class TestVendorDashboard:

    @pytest.mark.asyncio
    async def test_dashboard(self, client, vendor_with_plan, make_lead):
        vendor, headers, sub = vendor_with_plan
        await make_lead(status="assigned", vendor_ids=[vendor["id"]])
        r = await client.get("/api/vendors/dashboard", headers=headers)
        assert r.status_code == 200
        body = r.json()
        assert body["available_leads"] == 1
        assert body["subscription"]["id"] == sub["id"]
        assert body["subscription"]["leads_remaining"] == 2
        assert body["open_tickets"] == 0
        print("✅ Vendor dashboard")

    @pytest.mark.asyncio
    async def test_profile(self, client, make_vendor):
        vendor, headers = await make_vendor()
        r = await client.get("/api/vendors/profile", headers=headers)
        assert r.status_code == 200
        assert r.json()["vendor"]["id"] == vendor["id"]
        assert r.json()["user"]["role"] == "vendor"
        print("✅ Vendor profile")
