"""
Subscription Reconciler
Maps a canonical subscription status onto the user's UserSubscription row and
their top-level plan fields

Called from webhooks and from the retry scheduler; the same logical event
always produces the same final state. Re-applying a state is harmless.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from gateway.base import CanonicalStatus, GatewayAdapter
from gateway.registry import get_adapter
from models import (
    SUBSCRIPTION_ID_COLUMNS, BillingPeriod, CreditTransactionType, PaymentTransactionType,
    Plan, PlanTier, SubscriptionStatus, User, UserSubscription
)
from services.agent_downgrade_service import AgentDowngradeService
from services.credit_ledger import CreditLedger, PaymentRecord, credit_ledger
from services.domain_events import (
    SubscriptionActivated, SubscriptionCancelled, SubscriptionPastDue, domain_event_bus
)
from services.payment_audit_service import PaymentAuditService
from utils.datetime_helpers import add_months, add_years, ensure_utc, utc_now
from utils.reconciliation_errors import ReconciliationError

logger = logging.getLogger(__name__)

AdapterLookup = Callable[[str], Optional[GatewayAdapter]]

_ENDED = (CanonicalStatus.CANCELLED, CanonicalStatus.EXPIRED)


@dataclass
class ReconcileResult:
    """What a reconcile call did"""
    status: Optional[str]
    applied: bool = True
    already_processed: bool = False
    credits_granted: int = 0
    agents_migrated: int = 0
    previous_gateway: Optional[str] = None
    previous_subscription_cancelled: Optional[bool] = None


def period_end_for(start: datetime, billing_period: str) -> datetime:
    if billing_period == BillingPeriod.YEARLY.value:
        return add_years(start, 1)
    return add_months(start, 1)


class SubscriptionReconciler:
    """Applies gateway subscription status changes to local state"""

    def __init__(
        self,
        adapter_lookup: AdapterLookup = get_adapter,
        ledger: Optional[CreditLedger] = None,
        downgrade_service: Optional[AgentDowngradeService] = None,
    ):
        self._adapter_lookup = adapter_lookup
        self._ledger = ledger or credit_ledger
        self._downgrade = downgrade_service or AgentDowngradeService()

    async def reconcile(
        self,
        session: Session,
        user_id: int,
        gateway: str,
        gateway_status: CanonicalStatus,
        gateway_subscription_id: Optional[str],
        plan_id: Optional[str],
        billing_period: Optional[str],
        payment: Optional[PaymentRecord] = None,
        cancel_at_period_end: bool = False,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        """
        Bring UserSubscription and User plan fields in line with `gateway_status`.

        `billing_period=None` keeps the stored period (renewals rarely repeat it).
        When `payment` is given it is recorded once; a repeat delivery of the same
        payment returns already_processed and changes nothing.
        """
        if gateway not in SUBSCRIPTION_ID_COLUMNS:
            raise ReconciliationError(f"Unknown gateway {gateway!r}")
        now = now or utc_now()

        user = session.get(User, user_id)
        if user is None:
            raise ReconciliationError(f"User {user_id} not found for subscription reconcile")
        subscription = session.query(UserSubscription).filter(UserSubscription.user_id == user_id).first()

        if gateway_status == CanonicalStatus.ACTIVE:
            return await self._activate(
                session, user, subscription, gateway, gateway_subscription_id, plan_id,
                billing_period, payment, cancel_at_period_end, now,
            )
        if gateway_status == CanonicalStatus.PAST_DUE:
            return self._mark_past_due(session, user, subscription, gateway, gateway_subscription_id, plan_id)
        if gateway_status in _ENDED:
            return self._end(session, user, subscription, gateway, gateway_status, gateway_subscription_id, plan_id)
        return self._mark_pending(session, user, subscription, gateway, gateway_subscription_id, plan_id,
                                  billing_period)

    # ------------------------------------------------------------------
    # ACTIVE
    # ------------------------------------------------------------------

    async def _activate(
        self,
        session: Session,
        user: User,
        subscription: Optional[UserSubscription],
        gateway: str,
        gateway_subscription_id: Optional[str],
        plan_id: Optional[str],
        billing_period: Optional[str],
        payment: Optional[PaymentRecord],
        cancel_at_period_end: bool,
        now: datetime,
    ) -> ReconcileResult:
        plan_id = plan_id or (subscription.plan_id if subscription is not None else None)
        if plan_id is None:
            logger.warning(
                f"⚠️ SUBSCRIPTION: {gateway} activation for user {user.id} carries no plan and no "
                f"subscription exists - skipping"
            )
            return ReconcileResult(status=None, applied=False)

        plan = session.get(Plan, plan_id)
        credits_granted = 0
        if payment is not None:
            grant = self._ledger.add_credits(
                session,
                user.id,
                plan.monthly_credits if plan is not None else 0,
                description=f"{plan.name if plan else plan_id} plan credits ({gateway})",
                idempotency_key=f"plan_credits_{gateway}_{payment.gateway_transaction_id}",
                payment=PaymentRecord(
                    gateway=payment.gateway,
                    gateway_transaction_id=payment.gateway_transaction_id,
                    amount=payment.amount,
                    currency=payment.currency,
                    type=PaymentTransactionType.SUBSCRIPTION.value,
                    plan_id=plan_id,
                ),
                credit_type=CreditTransactionType.PLAN_GRANT.value,
            )
            if grant.already_processed:
                logger.info(
                    f"🔁 SUBSCRIPTION: {gateway} payment {payment.gateway_transaction_id} already applied "
                    f"for user {user.id}"
                )
                return ReconcileResult(
                    status=subscription.status if subscription is not None else None,
                    applied=False,
                    already_processed=True,
                )
            credits_granted = grant.applied_amount

        previous_gateway, cancelled = await self._cancel_superseded(subscription, gateway, gateway_subscription_id)

        created = subscription is None
        if created:
            subscription = UserSubscription(user_id=user.id)
            session.add(subscription)
        was_active = subscription.status == SubscriptionStatus.ACTIVE.value

        period = billing_period or subscription.billing_period or BillingPeriod.MONTHLY.value
        subscription.plan_id = plan_id
        subscription.billing_period = period
        subscription.status = SubscriptionStatus.ACTIVE.value

        renewing = payment is not None or not was_active or subscription.current_period_end is None
        if cancel_at_period_end and not renewing:
            # Non-renewing notice: access runs to the end of the paid period
            subscription.cancel_at_period_end = True
        else:
            subscription.current_period_start = now
            subscription.current_period_end = period_end_for(now, period)
            subscription.cancel_at_period_end = cancel_at_period_end
        self._set_gateway_slot(subscription, gateway, gateway_subscription_id)

        user.plan_type = plan.name if plan is not None else plan_id
        user.plan_expires_at = subscription.current_period_end
        session.flush()

        subscription_id = gateway_subscription_id or subscription.gateway_subscription_id(gateway)
        if created or not was_active:
            PaymentAuditService.log_subscription_created(session, user.id, gateway, plan_id, subscription_id, period)
        elif payment is not None:
            PaymentAuditService.log_subscription_renewed(session, user.id, gateway, plan_id, subscription_id)

        if created or not was_active or payment is not None:
            domain_event_bus.collect(session, SubscriptionActivated(
                user_id=user.id,
                gateway=gateway,
                plan_id=plan_id,
                plan_name=plan.name if plan is not None else None,
                billing_period=period,
                current_period_end=ensure_utc(subscription.current_period_end),
                payment_id=payment.gateway_transaction_id if payment is not None else None,
                amount=payment.amount if payment is not None else None,
                currency=payment.currency if payment is not None else None,
            ))

        logger.info(
            f"✅ SUBSCRIPTION: User {user.id} active on {gateway} plan={plan_id} ({period}) "
            f"until {subscription.current_period_end}"
        )
        return ReconcileResult(
            status=SubscriptionStatus.ACTIVE.value,
            credits_granted=credits_granted,
            previous_gateway=previous_gateway,
            previous_subscription_cancelled=cancelled,
        )

    async def _cancel_superseded(
        self,
        subscription: Optional[UserSubscription],
        gateway: str,
        gateway_subscription_id: Optional[str],
    ):
        """
        Cancel the subscription being replaced so the user is not billed twice.

        A failed cancel is logged and reconciliation continues; the local row is
        the source of truth for access.
        """
        if subscription is None or subscription.status in (
            SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value
        ):
            return None, None
        old_gateway = subscription.active_gateway()
        if old_gateway is None:
            return None, None
        old_id = subscription.gateway_subscription_id(old_gateway)
        switching_gateway = old_gateway != gateway
        switching_plan = not switching_gateway and gateway_subscription_id and gateway_subscription_id != old_id
        if not (switching_gateway or switching_plan):
            return None, None

        adapter = self._adapter_lookup(old_gateway)
        if adapter is None:
            logger.error(f"❌ SUBSCRIPTION_SWITCH: No adapter for {old_gateway} - cannot cancel {old_id}")
            return old_gateway, False
        try:
            await adapter.cancel_subscription(old_id)
        except Exception as e:
            logger.error(
                f"❌ SUBSCRIPTION_SWITCH: Failed to cancel {old_gateway} subscription {old_id} for user "
                f"{subscription.user_id}: {e} - continuing"
            )
            return old_gateway, False
        logger.info(f"🔀 SUBSCRIPTION_SWITCH: Cancelled {old_gateway} subscription {old_id} before {gateway} switch")
        return old_gateway, True

    @staticmethod
    def _set_gateway_slot(subscription: UserSubscription, gateway: str, gateway_subscription_id: Optional[str]):
        """Only one gateway slot is populated at a time"""
        for slot_gateway, column in SUBSCRIPTION_ID_COLUMNS.items():
            if slot_gateway == gateway:
                if gateway_subscription_id:
                    setattr(subscription, column, gateway_subscription_id)
            else:
                setattr(subscription, column, None)

    # ------------------------------------------------------------------
    # PAST_DUE / PENDING
    # ------------------------------------------------------------------

    def _mark_past_due(
        self,
        session: Session,
        user: User,
        subscription: Optional[UserSubscription],
        gateway: str,
        gateway_subscription_id: Optional[str],
        plan_id: Optional[str],
    ) -> ReconcileResult:
        if self._is_superseded(subscription, gateway, gateway_subscription_id):
            return ReconcileResult(status=subscription.status, applied=False)

        if subscription is None:
            subscription = UserSubscription(user_id=user.id, plan_id=plan_id)
            session.add(subscription)
        changed = subscription.status != SubscriptionStatus.PAST_DUE.value
        subscription.status = SubscriptionStatus.PAST_DUE.value
        self._set_gateway_slot(subscription, gateway, gateway_subscription_id)
        session.flush()

        # Plan fields untouched - past_due keeps access
        if changed:
            domain_event_bus.collect(session, SubscriptionPastDue(
                user_id=user.id,
                gateway=gateway,
                gateway_subscription_id=gateway_subscription_id,
            ))
            logger.warning(f"⚠️ SUBSCRIPTION: User {user.id} past due on {gateway}")
        return ReconcileResult(status=SubscriptionStatus.PAST_DUE.value, applied=changed)

    def _mark_pending(
        self,
        session: Session,
        user: User,
        subscription: Optional[UserSubscription],
        gateway: str,
        gateway_subscription_id: Optional[str],
        plan_id: Optional[str],
        billing_period: Optional[str],
    ) -> ReconcileResult:
        if subscription is not None and subscription.status in (
            SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value
        ):
            # A late mandate/authorisation notice must not demote a live subscription
            logger.info(f"ℹ️ SUBSCRIPTION: Ignoring pending status for user {user.id} ({subscription.status})")
            return ReconcileResult(status=subscription.status, applied=False)

        if subscription is None:
            subscription = UserSubscription(user_id=user.id)
            session.add(subscription)
        subscription.status = SubscriptionStatus.PENDING.value
        subscription.plan_id = plan_id or subscription.plan_id
        subscription.billing_period = billing_period or subscription.billing_period or BillingPeriod.MONTHLY.value
        self._set_gateway_slot(subscription, gateway, gateway_subscription_id)
        session.flush()
        logger.info(f"⏳ SUBSCRIPTION: User {user.id} pending on {gateway}")
        return ReconcileResult(status=SubscriptionStatus.PENDING.value)

    # ------------------------------------------------------------------
    # CANCELLED / EXPIRED
    # ------------------------------------------------------------------

    def _end(
        self,
        session: Session,
        user: User,
        subscription: Optional[UserSubscription],
        gateway: str,
        gateway_status: CanonicalStatus,
        gateway_subscription_id: Optional[str],
        plan_id: Optional[str],
    ) -> ReconcileResult:
        if self._is_superseded(subscription, gateway, gateway_subscription_id):
            return ReconcileResult(status=subscription.status, applied=False)

        status = (
            SubscriptionStatus.EXPIRED.value if gateway_status == CanonicalStatus.EXPIRED
            else SubscriptionStatus.CANCELLED.value
        )
        if subscription is None:
            subscription = UserSubscription(user_id=user.id, plan_id=plan_id)
            session.add(subscription)
        changed = subscription.status != status
        subscription.status = status
        subscription.cancel_at_period_end = False
        self._set_gateway_slot(subscription, gateway, gateway_subscription_id)

        user.plan_type = PlanTier.FREE.value
        user.plan_expires_at = None
        session.flush()

        # Raises ConfigurationError when no free model exists; the whole unit rolls back
        migrated = self._downgrade.downgrade_user_agents(session, user.id)

        if changed:
            PaymentAuditService.log_subscription_cancelled(session, user.id, gateway, gateway_subscription_id, status)
            domain_event_bus.collect(session, SubscriptionCancelled(
                user_id=user.id,
                gateway=gateway,
                status=status,
                agents_migrated=migrated,
            ))
        logger.info(f"🛑 SUBSCRIPTION: User {user.id} {status} on {gateway}, {migrated} agent(s) downgraded")
        return ReconcileResult(status=status, applied=changed or migrated > 0, agents_migrated=migrated)

    @staticmethod
    def _is_superseded(
        subscription: Optional[UserSubscription],
        gateway: str,
        gateway_subscription_id: Optional[str],
    ) -> bool:
        """A status for a subscription the user already replaced must not touch the current one"""
        if subscription is None or not gateway_subscription_id:
            return False
        current_gateway = subscription.active_gateway()
        if current_gateway is None:
            return False
        current_id = subscription.gateway_subscription_id(current_gateway)
        if current_gateway == gateway and current_id == gateway_subscription_id:
            return False
        logger.info(
            f"ℹ️ SUBSCRIPTION: {gateway} status for {gateway_subscription_id} ignored - user "
            f"{subscription.user_id} is on {current_gateway} {current_id}"
        )
        return True
