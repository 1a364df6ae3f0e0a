"""
Email rendering / disabled sender, and scheduler job failure handling.
"""

import pytest

import email_service as email_module
from email_service import EmailService, render_email
from scheduler_service import TaskScheduler


class TestEmail:

    def test_render_escapes_values(self):
        html = render_email("New lead", "Customer <b>Ravi</b>", {"service": "<script>x</script>"})
        assert "&lt;script&gt;" in html
        assert "<script>" not in html
        assert "Customer &lt;b&gt;Ravi&lt;/b&gt;" in html
        print("✅ Email body escapes caller values")

    def test_disabled_without_api_key(self):
        service = EmailService(api_key="", alert_recipient="ops@homexpert.test")
        assert service.enabled is False
        assert service.send_notification("vendor@homexpert.test", "Hi", "Hello") is False
        assert service.send_admin_alert("TICKET_OVERDUE", "2 tickets") is False
        print("✅ No API key -> nothing sent")

    def test_alert_needs_recipient(self):
        service = EmailService(api_key="SG.fake", alert_recipient="")
        assert service.send_admin_alert("PAYMENT_SUBMITTED", "payment") is False
        print("✅ No ADMIN_ALERT_EMAIL -> alert skipped")


class TestSchedulerJobs:

    @pytest.mark.asyncio
    async def test_failing_job_is_alerted_not_raised(self, monkeypatch):
        alerts = []
        monkeypatch.setattr(
            email_module.email_service, "send_admin_alert",
            lambda alert_type, message, details=None: alerts.append((alert_type, details))
        )

        async def broken():
            raise RuntimeError("mongo down")

        result = await TaskScheduler()._run("expire_subscriptions", broken)
        assert result is None
        assert alerts == [("SCHEDULER_ERROR", {"error": "mongo down"})]
        print("✅ Job failure -> SCHEDULER_ERROR alert")

    @pytest.mark.asyncio
    async def test_successful_job_returns_result(self):
        async def ok():
            return {"expired": 0}

        assert await TaskScheduler()._run("expire_subscriptions", ok) == {"expired": 0}
        print("✅ Job result passed through")
