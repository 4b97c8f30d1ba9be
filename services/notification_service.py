"""
Payment Notification Service
Best-effort side effects driven by committed domain events: user emails,
invoices and operator alerts.

Email delivery and invoice rendering are external collaborators; they are passed
in as callables. Failures here are logged by the event bus and never touch
financial state.
"""

import logging
from typing import Any, Callable, List, Optional

from sqlalchemy.orm import sessionmaker

from config import Config
from models import User
from services.domain_events import (
    AccountSuspended, CreditsPurchased, DomainEventBus, OperatorAlert, PaymentFailed,
    RefundRecorded, SubscriptionActivated, SubscriptionCancelled, SubscriptionPastDue
)

logger = logging.getLogger(__name__)

EmailSender = Callable[[str, str, str], Any]
InvoiceGenerator = Callable[[int, str, str, Any, Optional[str], str], Any]


def log_only_email_sender(to: str, subject: str, body: str) -> None:
    """Default sender when no mail transport is wired in"""
    logger.info(f"📧 EMAIL (not sent - no transport configured): to={to} subject={subject!r}")


def log_only_invoice_generator(user_id, gateway, payment_id, amount, currency, description) -> None:
    logger.info(f"🧾 INVOICE (not generated - no generator configured): user={user_id} {gateway}:{payment_id}")


class NotificationService:
    """Sends user and operator notifications for payment events"""

    def __init__(
        self,
        session_factory: sessionmaker,
        email_sender: Optional[EmailSender] = None,
        invoice_generator: Optional[InvoiceGenerator] = None,
        admin_emails: Optional[List[str]] = None,
    ):
        self._session_factory = session_factory
        self.email_sender = email_sender or log_only_email_sender
        self.invoice_generator = invoice_generator or log_only_invoice_generator
        self.admin_emails = list(admin_emails if admin_emails is not None else Config.ADMIN_ALERT_EMAILS)

    def register(self, bus: DomainEventBus) -> None:
        """Subscribe every handler to the bus"""
        bus.subscribe(CreditsPurchased, self.on_credits_purchased)
        bus.subscribe(SubscriptionActivated, self.on_subscription_activated)
        bus.subscribe(SubscriptionPastDue, self.on_subscription_past_due)
        bus.subscribe(SubscriptionCancelled, self.on_subscription_cancelled)
        bus.subscribe(PaymentFailed, self.on_payment_failed)
        bus.subscribe(RefundRecorded, self.on_refund_recorded)
        bus.subscribe(AccountSuspended, self.on_account_suspended)
        bus.subscribe(OperatorAlert, self.alert_operators)

    def _user_email(self, user_id: Optional[int]) -> Optional[str]:
        if user_id is None:
            return None
        session = self._session_factory()
        try:
            user = session.get(User, user_id)
            return user.email if user else None
        finally:
            session.close()

    def _send_to_user(self, user_id: Optional[int], subject: str, body: str) -> None:
        email = self._user_email(user_id)
        if not email:
            logger.warning(f"⚠️ NOTIFY: No email on file for user {user_id} - skipping {subject!r}")
            return
        self.email_sender(email, subject, body)

    def on_credits_purchased(self, event: CreditsPurchased) -> None:
        self.invoice_generator(
            event.user_id, event.gateway, event.payment_id, event.amount, event.currency,
            f"{event.credits} credits",
        )
        self._send_to_user(
            event.user_id,
            "Credits added to your account",
            f"{event.credits} credits were added to your balance.",
        )

    def on_subscription_activated(self, event: SubscriptionActivated) -> None:
        if event.payment_id:
            self.invoice_generator(
                event.user_id, event.gateway, event.payment_id, event.amount, event.currency,
                f"{event.plan_name or event.plan_id} ({event.billing_period})",
            )
        period_end = event.current_period_end.strftime("%Y-%m-%d") if event.current_period_end else "-"
        self._send_to_user(
            event.user_id,
            "Your subscription is active",
            f"Your {event.plan_name or 'paid'} plan is active until {period_end}.",
        )

    def on_subscription_past_due(self, event: SubscriptionPastDue) -> None:
        self._send_to_user(
            event.user_id,
            "Payment failed - action required",
            "We could not collect your subscription payment. Please update your payment method "
            "to keep your plan.",
        )

    def on_subscription_cancelled(self, event: SubscriptionCancelled) -> None:
        self._send_to_user(
            event.user_id,
            "Your subscription has ended",
            "Your account has been moved to the free plan.",
        )

    def on_payment_failed(self, event: PaymentFailed) -> None:
        self._send_to_user(
            event.user_id,
            "Payment failed",
            f"Your payment could not be completed{': ' + event.reason if event.reason else '.'}",
        )

    def on_refund_recorded(self, event: RefundRecorded) -> None:
        self._send_to_user(
            event.user_id,
            "Refund processed",
            f"A refund of {event.amount} {event.currency} was processed. "
            f"{event.credits_reversed} credits were removed from your balance.",
        )

    def on_account_suspended(self, event: AccountSuspended) -> None:
        self._send_to_user(
            event.user_id,
            "Your account has been suspended",
            "A payment dispute was opened for your account, so it has been suspended. "
            "Contact support to resolve the dispute.",
        )

    def alert_operators(self, event: OperatorAlert) -> None:
        logger.critical(f"🚨 OPERATOR_ALERT: {event.title} - {event.message} {event.context}")
        if not self.admin_emails:
            logger.warning("⚠️ OPERATOR_ALERT: ADMIN_ALERT_EMAILS is empty - alert only logged")
            return
        for email in self.admin_emails:
            self.email_sender(email, f"[ALERT] {event.title}", f"{event.message}\n\n{event.context}")
