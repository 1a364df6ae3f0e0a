"""
SendGrid email service for HomeXpert
- Copies of in-app notifications (new lead, subscription, payment, support reply)
- Admin alerts (payments to verify, overdue tickets, scheduler failures)
Sending is best effort: failures are logged and reported as False, never raised.
"""

import os
import logging
from datetime import datetime, timezone
from html import escape
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, Email, To, Content

logger = logging.getLogger("email_service")

SENDGRID_API_KEY = os.environ.get('SENDGRID_API_KEY', '')
ADMIN_ALERT_EMAIL = os.environ.get('ADMIN_ALERT_EMAIL', '')
SENDER_EMAIL = os.environ.get('SENDER_EMAIL', 'noreply@homexpert.in')
DASHBOARD_URL = os.environ.get('DASHBOARD_URL', 'https://homexpert.in')

BRAND_COLOR = "#2563EB"
ALERT_COLOR = "#DC2626"

TEMPLATE = """<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; background: #f5f5f5; padding: 20px;">
  <div style="max-width: 600px; margin: 0 auto; background: white; border-radius: 8px; overflow: hidden;">
    <div style="background: {color}; color: white; padding: 20px; text-align: center;"><h1>{title}</h1></div>
    <div style="padding: 30px;">
      <p style="color: #9CA3AF;">{sent_at} UTC</p>
      <p>{message}</p>
      {details}
      <p><a href="{dashboard}">Open dashboard</a></p>
    </div>
    <div style="background: #F9FAFB; padding: 15px; text-align: center; font-size: 12px; color: #6B7280;">
      HomeXpert - automatic notification
    </div>
  </div>
</body>
</html>"""


def render_email(title: str, message: str, details: dict = None, color: str = BRAND_COLOR) -> str:
    """HTML body. Every caller-supplied value is escaped."""
    details_html = ""
    if details:
        items = "".join(
            f"<li><strong>{escape(str(k))}:</strong> {escape(str(v))}</li>" for k, v in details.items()
        )
        details_html = f'<ul style="background: #F3F4F6; padding: 15px; border-radius: 4px;">{items}</ul>'

    return TEMPLATE.format(
        color=color,
        title=escape(title),
        sent_at=datetime.now(timezone.utc).strftime('%d/%m/%Y %H:%M'),
        message=escape(message),
        details=details_html,
        dashboard=DASHBOARD_URL,
    )


class EmailService:
    """Central email sender"""

    def __init__(self, api_key: str = None, sender: str = None, alert_recipient: str = None):
        self.api_key = api_key if api_key is not None else SENDGRID_API_KEY
        self.sender = sender or SENDER_EMAIL
        self.alert_recipient = alert_recipient if alert_recipient is not None else ADMIN_ALERT_EMAIL
        self._client = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _deliver(self, to_email: str, subject: str, html_content: str) -> bool:
        if not self.enabled:
            logger.debug(f"[EMAIL_SKIPPED] SendGrid disabled, '{subject}' not sent")
            return False
        if not to_email:
            logger.warning(f"[EMAIL_SKIPPED] no recipient for '{subject}'")
            return False

        if self._client is None:
            self._client = SendGridAPIClient(self.api_key)

        message = Mail(
            from_email=Email(self.sender, "HomeXpert"),
            to_emails=To(to_email),
            subject=subject,
            html_content=Content("text/html", html_content)
        )
        try:
            response = self._client.send(message)
        except Exception as e:
            logger.error(f"[EMAIL_FAILED] to={to_email} subject='{subject}': {e}")
            return False

        if response.status_code not in (200, 202):
            logger.error(f"[EMAIL_FAILED] to={to_email} status={response.status_code}")
            return False

        logger.info(f"[EMAIL_SENT] to={to_email} subject='{subject}'")
        return True

    def send_notification(self, to_email: str, title: str, message: str, details: dict = None) -> bool:
        """Email copy of an in-app notification"""
        return self._deliver(to_email, f"HomeXpert - {title}", render_email(title, message, details))

    def send_admin_alert(self, alert_type: str, message: str, details: dict = None) -> bool:
        """
        Alert to the admin mailbox.
        Types: PAYMENT_SUBMITTED, TICKET_OVERDUE, SCHEDULER_ERROR
        """
        if not self.alert_recipient:
            logger.warning(f"[EMAIL_SKIPPED] ADMIN_ALERT_EMAIL not set, alert {alert_type} not emailed")
            return False
        return self._deliver(
            self.alert_recipient,
            f"[ALERT] {alert_type}",
            render_email(alert_type, message, details, color=ALERT_COLOR)
        )


email_service = EmailService()
