"""
Billing notifications (renewal confirmation, retry failure, escalation,
cancellation and expiry reminders) sent via Brevo using BREVO_API_KEY.

Delivery is fire-and-forget: a failed send is logged and never affects the
billing operation that triggered it.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional
import logging
import httpx

from app.core.config import settings
from app.services.business_lookup import BusinessContact

logger = logging.getLogger(__name__)

BREVO_SEND_URL = "https://api.brevo.com/v3/smtp/email"


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value else "-"


class NotificationSender:
    """Interface for billing notifications."""

    def send_renewal_confirmation(self, contact: BusinessContact, plan_name: str, period_end: datetime) -> bool:
        raise NotImplementedError

    def send_payment_retry_failure(
        self,
        contact: BusinessContact,
        attempt: int,
        max_retries: int,
        next_retry_date: Optional[datetime],
    ) -> bool:
        raise NotImplementedError

    def send_payment_escalation(
        self,
        contact: BusinessContact,
        plan_name: str,
        failed_count: int,
        period_end: Optional[datetime],
    ) -> bool:
        raise NotImplementedError

    def send_subscription_cancellation(self, contact: BusinessContact, plan_name: str, failed_count: int) -> bool:
        raise NotImplementedError

    def send_renewal_reminder(self, contact: BusinessContact, plan_name: str, period_end: datetime) -> bool:
        raise NotImplementedError

    def send_trial_ending(self, contact: BusinessContact, plan_name: str, trial_end: datetime, amount: Decimal) -> bool:
        raise NotImplementedError


class LoggingNotificationSender(NotificationSender):
    """Writes notifications to the log. Used when no email provider is configured."""

    def send_renewal_confirmation(self, contact, plan_name, period_end):
        logger.info("[NOTIFY] Renewal confirmed for %s (%s) until %s", contact.business_name, plan_name, _format_date(period_end))
        return True

    def send_payment_retry_failure(self, contact, attempt, max_retries, next_retry_date):
        logger.info(
            "[NOTIFY] Payment attempt %s/%s failed for %s, next retry %s",
            attempt, max_retries, contact.business_name, _format_date(next_retry_date),
        )
        return True

    def send_payment_escalation(self, contact, plan_name, failed_count, period_end):
        logger.warning(
            "[NOTIFY] Escalation: %s (%s) has %s failed payments, period end %s",
            contact.business_name, plan_name, failed_count, _format_date(period_end),
        )
        return True

    def send_subscription_cancellation(self, contact, plan_name, failed_count):
        logger.info("[NOTIFY] Subscription %s canceled for %s after %s failed payments", plan_name, contact.business_name, failed_count)
        return True

    def send_renewal_reminder(self, contact, plan_name, period_end):
        logger.info("[NOTIFY] %s (%s) ends on %s and will not renew", contact.business_name, plan_name, _format_date(period_end))
        return True

    def send_trial_ending(self, contact, plan_name, trial_end, amount):
        logger.info(
            "[NOTIFY] Trial of %s for %s ends on %s, first charge %s",
            plan_name, contact.business_name, _format_date(trial_end), amount,
        )
        return True


class BrevoNotificationSender(NotificationSender):
    def __init__(
        self,
        api_key: str,
        sender_email: str,
        sender_name: str = "Billing",
        support_email: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key.strip()
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.support_email = support_email
        self._client = client

    def _send_email(self, to_email: Optional[str], subject: str, html_content: str, to_name: Optional[str] = None) -> bool:
        """
        Send a single transactional email.
        Returns True if sent successfully, False otherwise.
        """
        if not to_email:
            logger.warning("[NOTIFY] No recipient address for %r, skipping", subject)
            return False

        payload = {
            "sender": {"name": self.sender_name, "email": self.sender_email},
            "to": [{"email": to_email.strip().lower(), "name": (to_name or "").strip() or None}],
            "subject": subject,
            "htmlContent": html_content,
        }
        headers = {
            "accept": "application/json",
            "content-type": "application/json",
            "api-key": self.api_key,
        }
        post = self._client.post if self._client else httpx.post
        try:
            resp = post(BREVO_SEND_URL, headers=headers, json=payload, timeout=15.0)
        except httpx.HTTPError as e:
            logger.error("[NOTIFY] Brevo request failed: %s", e)
            return False
        if resp.status_code not in (200, 201):
            logger.error("[NOTIFY] Brevo rejected email (%s): %s", resp.status_code, resp.text[:200])
            return False
        return True

    def send_renewal_confirmation(self, contact, plan_name, period_end):
        subject = f"Your {plan_name} subscription has been renewed"
        html = f"""
        <p>Hi {contact.owner_name},</p>
        <p>Your <strong>{plan_name}</strong> subscription for {contact.business_name} has been renewed.</p>
        <p>Your current period runs until {_format_date(period_end)}.</p>
        """
        return self._send_email(contact.email, subject, html, contact.owner_name)

    def send_payment_retry_failure(self, contact, attempt, max_retries, next_retry_date):
        subject = "We couldn't process your payment"
        next_line = (
            f"<p>We will try again on {_format_date(next_retry_date)}.</p>"
            if next_retry_date and attempt < max_retries else ""
        )
        html = f"""
        <p>Hi {contact.owner_name},</p>
        <p>Payment attempt {attempt} of {max_retries} for {contact.business_name} failed.</p>
        {next_line}
        <p>Please check your payment method to avoid interruption of service.</p>
        """
        return self._send_email(contact.email, subject, html, contact.owner_name)

    def send_payment_escalation(self, contact, plan_name, failed_count, period_end):
        if not self.support_email:
            logger.warning("[NOTIFY] SUPPORT_EMAIL not set, escalation for %s not delivered", contact.business_id)
            return False
        subject = f"Payment escalation: {contact.business_name}"
        html = f"""
        <p>Business <strong>{contact.business_name}</strong> ({contact.business_id}) has {failed_count} failed payments
        on plan {plan_name}.</p>
        <p>Owner: {contact.owner_name} &lt;{contact.email or '-'}&gt; {contact.phone or ''}</p>
        <p>Current period end: {_format_date(period_end)}</p>
        """
        return self._send_email(self.support_email, subject, html, "Support")

    def send_subscription_cancellation(self, contact, plan_name, failed_count):
        subject = f"Your {plan_name} subscription has been canceled"
        reason = (
            f"after {failed_count} failed payment attempts" if failed_count else "because no payment could be collected"
        )
        html = f"""
        <p>Hi {contact.owner_name},</p>
        <p>Your <strong>{plan_name}</strong> subscription for {contact.business_name} was canceled {reason}.</p>
        <p>You can subscribe again at any time.</p>
        """
        return self._send_email(contact.email, subject, html, contact.owner_name)

    def send_renewal_reminder(self, contact, plan_name, period_end):
        subject = f"Your {plan_name} subscription ends on {_format_date(period_end)}"
        html = f"""
        <p>Hi {contact.owner_name},</p>
        <p>Your <strong>{plan_name}</strong> subscription for {contact.business_name} ends on
        {_format_date(period_end)} and will not renew automatically.</p>
        <p>Turn on auto-renewal to keep your service running.</p>
        """
        return self._send_email(contact.email, subject, html, contact.owner_name)

    def send_trial_ending(self, contact, plan_name, trial_end, amount):
        subject = f"Your {plan_name} trial ends on {_format_date(trial_end)}"
        html = f"""
        <p>Hi {contact.owner_name},</p>
        <p>The free trial of <strong>{plan_name}</strong> for {contact.business_name} ends on
        {_format_date(trial_end)}.</p>
        <p>Your saved payment method will then be charged {amount}.</p>
        """
        return self._send_email(contact.email, subject, html, contact.owner_name)


def notify(send, *args, **kwargs) -> bool:
    """Call a sender method, logging instead of raising on failure."""
    try:
        return bool(send(*args, **kwargs))
    except Exception as e:
        logger.error("[NOTIFY] %s failed: %s", getattr(send, "__name__", send), e)
        return False


def build_notification_sender() -> NotificationSender:
    api_key = settings.BREVO_API_KEY
    if not api_key or not str(api_key).strip():
        logger.info("[NOTIFY] BREVO_API_KEY not set, notifications will only be logged")
        return LoggingNotificationSender()
    return BrevoNotificationSender(
        api_key=str(api_key),
        sender_email=settings.NOTIFICATION_SENDER_EMAIL,
        sender_name=settings.NOTIFICATION_SENDER_NAME,
        support_email=settings.SUPPORT_EMAIL,
    )
