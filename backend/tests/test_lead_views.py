"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  HomeXpert - Lead read-side helpers                                          ║
║                                                                              ║
║  Marketplace cards (masked phone, competition), vendor pipeline rows,        ║
║  follow-up status ordering, pagination block.                                ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from datetime import datetime, timezone, timedelta

from services.lead_service import (
    mask_phone,
    competition_level,
    next_steps,
    format_available_lead,
    format_vendor_lead,
    vendor_lead_detail,
    follow_up_status,
    sorted_follow_ups,
    time_ago,
    pagination,
    profit_margin,
)

NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)


def _ago(**kwargs) -> str:
    return (NOW - timedelta(**kwargs)).isoformat()


def _lead(**overrides):
    lead = {
        "id": "L1",
        "customer_name": "Ravi Kumar",
        "customer_phone": "9876543210",
        "customer_email": "ravi@example.com",
        "service": "Plumbing",
        "address": {"city": "Pune", "state": "MH", "pincode": "411001"},
        "price": 800,
        "urgency": "normal",
        "status": "available",
        "available_to_vendors": {"vendors": ["v1"]},
        "notes": [],
        "follow_ups": [],
        "refund_request": {"requested": False, "status": None},
        "created_at": _ago(hours=2),
    }
    lead.update(overrides)
    return lead


class TestMarketplaceCard:

    def test_phone_masked(self):
        assert mask_phone("9876543210") == "XXXXXX3210"
        assert mask_phone("") == ""
        print("✅ Phone masked to last 4 digits")

    def test_competition_levels(self):
        assert competition_level(1) == "low"
        assert competition_level(2) == "medium"
        assert competition_level(3) == "medium"
        assert competition_level(4) == "high"
        print("✅ Competition level by number of eligible vendors")

    def test_card_hides_contact_details(self):
        card = format_available_lead(_lead(), NOW)
        assert card["customer_phone"] == "XXXXXX3210"
        assert "customer_email" not in card
        assert card["city"] == "Pune"
        assert card["is_exclusive"] is True
        assert card["competition_level"] == "low"
        assert card["hours_ago"] == 2
        assert card["is_urgent"] is False
        print(f"✅ Card: {card['customer_phone']} / {card['competition_level']}")

    def test_old_lead_becomes_urgent(self):
        card = format_available_lead(_lead(created_at=_ago(hours=30)), NOW)
        assert card["is_urgent"] is True
        card = format_available_lead(_lead(urgency="urgent"), NOW)
        assert card["is_urgent"] is True
        print("✅ urgent flag or 24h+ age -> is_urgent")


class TestVendorPipeline:

    def test_overdue_contacted_lead(self):
        row = format_vendor_lead(_lead(status="contacted", taken_at=_ago(days=10)), NOW)
        assert row["days_since_taken"] == 10
        assert row["is_overdue"] is True
        assert row["needs_action"] is True
        print("✅ contacted for 10 days -> overdue")

    def test_fresh_taken_lead(self):
        row = format_vendor_lead(_lead(status="taken", taken_at=_ago(hours=3)), NOW)
        assert row["is_overdue"] is False
        assert row["needs_action"] is False
        assert row["can_refund"] is True
        assert row["next_steps"][0] == "Contact the customer immediately"
        print("✅ Fresh lead: no action flag yet")

    def test_day_old_taken_lead_is_urgent(self):
        steps = next_steps("taken", 1)
        assert steps[0].startswith("URGENT")
        print(f"✅ {steps[0]}")

    def test_refund_already_requested(self):
        row = format_vendor_lead(
            _lead(status="taken", taken_at=_ago(hours=3), refund_request={"requested": True, "status": "pending"}),
            NOW,
        )
        assert row["can_refund"] is False
        print("✅ No second refund request offered")

    def test_detail_flags_and_progress(self):
        detail = vendor_lead_detail(_lead(status="scheduled", taken_at=_ago(days=2)), NOW)
        assert detail["status"]["can_complete"] is True
        assert detail["status"]["can_contact"] is False
        assert detail["progress"]["completion"] == 67
        assert [m["status"] for m in detail["progress"]["milestones"]] == [
            "taken", "contacted", "interested", "scheduled", "completed"
        ]
        print("✅ Detail view flags")

    def test_profit_margin(self):
        assert profit_margin({"conversion_value": 1000, "actual_service_cost": 600}) == 40
        assert profit_margin({"price": 0}) == 0
        print("✅ Profit margin")


class TestFollowUps:

    def test_status(self):
        assert follow_up_status({"completed": True, "scheduled_date": _ago(days=3)}, NOW) == "completed"
        assert follow_up_status({"completed": False, "scheduled_date": _ago(days=1)}, NOW) == "overdue"
        assert follow_up_status({"completed": False, "scheduled_date": (NOW + timedelta(days=1)).isoformat()},
                                NOW) == "pending"
        print("✅ completed / overdue / pending")

    def test_sorted_pending_first(self):
        items = [
            {"id": "done", "completed": True, "scheduled_date": _ago(days=5)},
            {"id": "late", "completed": False, "scheduled_date": _ago(days=1)},
            {"id": "later", "completed": False, "scheduled_date": (NOW + timedelta(days=5)).isoformat()},
            {"id": "soon", "completed": False, "scheduled_date": (NOW + timedelta(days=1)).isoformat()},
        ]
        ordered = [f["id"] for f in sorted_follow_ups(items, now=NOW)]
        assert ordered == ["soon", "later", "late", "done"]
        only_overdue = sorted_follow_ups(items, "overdue", NOW)
        assert [f["id"] for f in only_overdue] == ["late"]
        print(f"✅ Follow-up order: {ordered}")


class TestMisc:

    def test_time_ago(self):
        assert time_ago(_ago(seconds=20), NOW) == "just now"
        assert time_ago(_ago(minutes=1), NOW) == "1 minute ago"
        assert time_ago(_ago(minutes=90), NOW) == "1 hour ago"
        assert time_ago(_ago(days=3), NOW) == "3 days ago"
        print("✅ time_ago")

    def test_pagination_block(self):
        p = pagination(2, 10, 25)
        assert p["total_pages"] == 3
        assert p["has_next_page"] is True
        assert p["has_prev_page"] is True
        assert pagination(1, 10, 0)["total_pages"] == 0
        print(f"✅ Pagination: {p}")
