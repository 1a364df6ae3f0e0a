"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  HomeXpert - Subscription pricing & quota arithmetic (pure functions)        ║
║                                                                              ║
║  1. Plan normalisation (duration days, leads per month, discount)            ║
║  2. Plan metrics (discount %, price per lead, monthly equivalent)            ║
║  3. Subscription virtuals (days remaining, expiring soon, usage %)           ║
║  4. Proration, lead adjustments, performance                                 ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from datetime import datetime, timezone, timedelta

from services.subscription_service import (
    normalize_plan_pricing,
    effective_price,
    plan_metrics,
    build_plan_snapshot,
    subscription_virtuals,
    days_between,
    prorated_amount,
    apply_lead_adjustment,
    compute_performance,
    generate_transaction_id,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _plan(**overrides):
    plan = {
        "id": "p1",
        "plan_name": "Quarterly",
        "duration": "3-month",
        "total_leads": 100,
        "price": 3000,
        "discounted_price": 2500,
        "currency": "INR",
    }
    plan.update(overrides)
    return normalize_plan_pricing(plan)


class TestPlanNormalisation:

    def test_duration_and_leads_per_month(self):
        plan = _plan()
        assert plan["duration_in_days"] == 90
        assert plan["leads_per_month"] == 34
        print(f"✅ 3-month / 100 leads -> {plan['leads_per_month']} leads per month")

    def test_yearly_plan(self):
        plan = _plan(duration="12-month", total_leads=120)
        assert plan["duration_in_days"] == 365
        assert plan["leads_per_month"] == 10
        print("✅ 12-month / 120 leads -> 10 leads per month")

    def test_discount_not_below_price_is_dropped(self):
        assert _plan(discounted_price=3000)["discounted_price"] is None
        assert _plan(discounted_price=3500)["discounted_price"] is None
        assert _plan(discounted_price=2999)["discounted_price"] == 2999
        print("✅ discounted_price kept only when strictly below price")

    def test_effective_price(self):
        assert effective_price(_plan()) == 2500
        assert effective_price(_plan(discounted_price=None)) == 3000
        print("✅ effective price = discounted price when present")


class TestPlanMetrics:

    def test_metrics_with_discount(self):
        metrics = plan_metrics(_plan())
        assert metrics["effective_price"] == 2500
        assert metrics["discount_percentage"] == 17
        assert metrics["price_per_lead"] == 25.0
        assert metrics["monthly_equivalent"] == 833.33
        print(f"✅ Metrics: {metrics}")

    def test_metrics_without_discount(self):
        metrics = plan_metrics(_plan(duration="1-month", total_leads=10, price=1000, discounted_price=None))
        assert metrics["discount_percentage"] == 0
        assert metrics["price_per_lead"] == 100.0
        assert metrics["monthly_equivalent"] == 1000.0
        print("✅ No discount -> 0%")

    def test_free_plan(self):
        metrics = plan_metrics(_plan(price=0, discounted_price=None))
        assert metrics["discount_percentage"] == 0
        assert metrics["price_per_lead"] == 0
        print("✅ Free plan metrics do not divide by zero")

    def test_snapshot_freezes_effective_price(self):
        snapshot = build_plan_snapshot(_plan())
        assert snapshot["plan_id"] == "p1"
        assert snapshot["effective_price"] == 2500
        assert snapshot["total_leads"] == 100
        assert snapshot["duration_in_days"] == 90
        print("✅ Plan snapshot")


class TestSubscriptionVirtuals:

    def _sub(self, end, status="active", consumed=4, total=10):
        return {
            "status": status,
            "end_date": end.isoformat(),
            "plan_snapshot": {"total_leads": total},
            "usage": {"leads_consumed": consumed, "leads_remaining": total - consumed},
        }

    def test_expiring_soon(self):
        v = subscription_virtuals(self._sub(NOW + timedelta(days=3)), NOW)
        assert v["days_remaining"] == 3
        assert v["usage_percentage"] == 40
        assert v["is_expiring_soon"] is True
        assert v["is_expired"] is False
        print(f"✅ Virtuals: {v}")

    def test_not_expiring_yet(self):
        v = subscription_virtuals(self._sub(NOW + timedelta(days=20)), NOW)
        assert v["days_remaining"] == 20
        assert v["is_expiring_soon"] is False
        print("✅ 20 days left is not expiring soon")

    def test_expired(self):
        v = subscription_virtuals(self._sub(NOW - timedelta(days=1)), NOW)
        assert v["days_remaining"] == 0
        assert v["is_expired"] is True
        assert v["is_expiring_soon"] is False
        print("✅ Past end_date is expired")

    def test_partial_day_rounds_up(self):
        assert days_between((NOW + timedelta(hours=5)).isoformat(), NOW) == 1
        assert days_between(None, NOW) == 0
        print("✅ Partial day counts as a day")


class TestQuotaArithmetic:

    def test_prorated_amount(self):
        assert prorated_amount(3000, 90, 45) == 1500.0
        assert prorated_amount(1000, 30, 0) == 0
        assert prorated_amount(1000, 0, 10) == 0
        print("✅ Proration")

    def test_increase_gives_leads_back(self):
        assert apply_lead_adjustment(5, 5, "increase", 3) == (2, 8)
        assert apply_lead_adjustment(2, 10, "increase", 5) == (0, 15)
        print("✅ increase: consumed shrinks (floor 0), remaining grows")

    def test_decrease_never_negative(self):
        assert apply_lead_adjustment(5, 5, "decrease", 3) == (8, 2)
        assert apply_lead_adjustment(5, 5, "decrease", 7) == (12, 0)
        print("✅ decrease: remaining floors at 0")

    def test_performance(self):
        perf = compute_performance([
            {"status": "completed", "revenue": 1000},
            {"status": "assigned", "revenue": 0},
            {"status": "completed", "revenue": 500},
        ])
        assert perf == {"job_completion_rate": 67, "total_revenue": 1500, "average_job_value": 750}
        assert compute_performance([])["job_completion_rate"] == 0
        print(f"✅ Performance: {perf}")

    def test_transaction_id_prefix(self):
        assert generate_transaction_id().startswith("TXN")
        assert generate_transaction_id("UPGRADE").startswith("UPGRADE")
        print("✅ Transaction ids")
