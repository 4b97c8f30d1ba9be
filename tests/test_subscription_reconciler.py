"""
Tests for subscription status reconciliation, gateway switching and agent downgrade
"""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import select

from database import managed_session
from gateway.base import CanonicalStatus
from models import Agent, LlmModel, PaymentTransactionType, SubscriptionStatus, User, UserSubscription
from services.credit_ledger import PaymentRecord
from services.domain_events import OperatorAlert, domain_event_bus
from services.subscription_reconciler import SubscriptionReconciler, period_end_for
from utils.datetime_helpers import ensure_utc
from utils.reconciliation_errors import ConfigurationError, GatewayAPIError, ReconciliationError

NOW = datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)


def _adapters(**by_gateway):
    return lambda gateway: by_gateway.get(gateway)


def _subscription(session_factory, user_id):
    with managed_session(session_factory) as session:
        return session.execute(
            select(UserSubscription).where(UserSubscription.user_id == user_id)
        ).scalar_one_or_none()


async def _activate(session_factory, reconciler, user_id, gateway, subscription_id, payment=None):
    with managed_session(session_factory) as session:
        return await reconciler.reconcile(
            session, user_id, gateway, CanonicalStatus.ACTIVE, subscription_id, "pro_monthly", "monthly",
            payment=payment, now=NOW,
        )


def _sub_payment(payment_id, gateway="razorpay"):
    return PaymentRecord(
        gateway=gateway,
        gateway_transaction_id=payment_id,
        amount=Decimal("1999.00"),
        currency="INR",
        type=PaymentTransactionType.SUBSCRIPTION.value,
    )


class TestPeriodEnd:

    def test_monthly_clamps_to_month_end(self):
        assert period_end_for(NOW, "monthly") == datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)

    def test_yearly(self):
        assert period_end_for(NOW, "yearly") == datetime(2027, 1, 31, 12, 0, tzinfo=timezone.utc)


class TestActivation:

    @pytest.mark.asyncio
    async def test_activation_with_payment_grants_plan_credits(self, session_factory, seeded):
        reconciler = SubscriptionReconciler(_adapters())
        result = await _activate(session_factory, reconciler, seeded["user_id"], "razorpay", "sub_1",
                                 payment=_sub_payment("pay_1"))

        assert result.status == SubscriptionStatus.ACTIVE.value
        assert result.credits_granted == 1000
        subscription = _subscription(session_factory, seeded["user_id"])
        assert subscription.razorpay_subscription_id == "sub_1"
        assert ensure_utc(subscription.current_period_end) == datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)
        with managed_session(session_factory) as session:
            user = session.get(User, seeded["user_id"])
            assert user.plan_type == "pro"
            assert user.credits == 1100
            assert ensure_utc(user.plan_expires_at) == ensure_utc(subscription.current_period_end)

    @pytest.mark.asyncio
    async def test_repeated_payment_is_already_processed(self, session_factory, seeded):
        reconciler = SubscriptionReconciler(_adapters())
        await _activate(session_factory, reconciler, seeded["user_id"], "razorpay", "sub_1",
                        payment=_sub_payment("pay_1"))
        again = await _activate(session_factory, reconciler, seeded["user_id"], "razorpay", "sub_1",
                                payment=_sub_payment("pay_1"))

        assert again.already_processed is True
        with managed_session(session_factory) as session:
            assert session.get(User, seeded["user_id"]).credits == 1100

    @pytest.mark.asyncio
    async def test_unknown_user_raises(self, session_factory, seeded):
        with pytest.raises(ReconciliationError):
            await _activate(session_factory, SubscriptionReconciler(_adapters()), 9999, "razorpay", "sub_1")


class TestGatewaySwitch:

    @pytest.mark.asyncio
    async def test_switch_cancels_previous_gateway(self, session_factory, seeded):
        stripe_adapter = Mock()
        stripe_adapter.cancel_subscription = AsyncMock()
        reconciler = SubscriptionReconciler(_adapters(stripe=stripe_adapter))

        await _activate(session_factory, reconciler, seeded["user_id"], "stripe", "sub_stripe_old")
        result = await _activate(session_factory, reconciler, seeded["user_id"], "paypal", "I-PAYPALNEW")

        stripe_adapter.cancel_subscription.assert_awaited_once_with("sub_stripe_old")
        assert result.previous_gateway == "stripe"
        assert result.previous_subscription_cancelled is True
        subscription = _subscription(session_factory, seeded["user_id"])
        assert subscription.stripe_subscription_id is None
        assert subscription.paypal_subscription_id == "I-PAYPALNEW"
        assert subscription.active_gateway() == "paypal"

    @pytest.mark.asyncio
    async def test_failed_cancel_does_not_block_switch(self, session_factory, seeded):
        stripe_adapter = Mock()
        stripe_adapter.cancel_subscription = AsyncMock(side_effect=GatewayAPIError("stripe", "timeout"))
        reconciler = SubscriptionReconciler(_adapters(stripe=stripe_adapter))

        await _activate(session_factory, reconciler, seeded["user_id"], "stripe", "sub_stripe_old")
        result = await _activate(session_factory, reconciler, seeded["user_id"], "paypal", "I-PAYPALNEW")

        assert result.status == SubscriptionStatus.ACTIVE.value
        assert result.previous_subscription_cancelled is False
        assert _subscription(session_factory, seeded["user_id"]).paypal_subscription_id == "I-PAYPALNEW"

    @pytest.mark.asyncio
    async def test_stale_cancel_for_replaced_subscription_is_ignored(self, session_factory, seeded):
        stripe_adapter = Mock()
        stripe_adapter.cancel_subscription = AsyncMock()
        reconciler = SubscriptionReconciler(_adapters(stripe=stripe_adapter))
        await _activate(session_factory, reconciler, seeded["user_id"], "stripe", "sub_stripe_old")
        await _activate(session_factory, reconciler, seeded["user_id"], "paypal", "I-PAYPALNEW")

        with managed_session(session_factory) as session:
            result = await reconciler.reconcile(
                session, seeded["user_id"], "stripe", CanonicalStatus.CANCELLED, "sub_stripe_old", None, None
            )

        assert result.applied is False
        assert _subscription(session_factory, seeded["user_id"]).status == SubscriptionStatus.ACTIVE.value


class TestPastDueAndPending:

    @pytest.mark.asyncio
    async def test_past_due_keeps_plan_access(self, session_factory, seeded):
        reconciler = SubscriptionReconciler(_adapters())
        await _activate(session_factory, reconciler, seeded["user_id"], "razorpay", "sub_1")

        with managed_session(session_factory) as session:
            result = await reconciler.reconcile(
                session, seeded["user_id"], "razorpay", CanonicalStatus.PAST_DUE, "sub_1", None, None
            )

        assert result.status == SubscriptionStatus.PAST_DUE.value
        with managed_session(session_factory) as session:
            user = session.get(User, seeded["user_id"])
            assert user.plan_type == "pro"
            assert user.plan_expires_at is not None

    @pytest.mark.asyncio
    async def test_pending_does_not_demote_active(self, session_factory, seeded):
        reconciler = SubscriptionReconciler(_adapters())
        await _activate(session_factory, reconciler, seeded["user_id"], "razorpay", "sub_1")

        with managed_session(session_factory) as session:
            result = await reconciler.reconcile(
                session, seeded["user_id"], "razorpay", CanonicalStatus.PENDING, "sub_1", None, None
            )

        assert result.applied is False
        assert _subscription(session_factory, seeded["user_id"]).status == SubscriptionStatus.ACTIVE.value


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_downgrades_premium_agents(self, session_factory, seeded):
        reconciler = SubscriptionReconciler(_adapters())
        await _activate(session_factory, reconciler, seeded["user_id"], "razorpay", "sub_1")
        with managed_session(session_factory) as session:
            session.add(Agent(user_id=seeded["user_id"], name="Helper", llm_model="large-pro",
                              config={"model": "large-pro", "temperature": 0.2}))

        with managed_session(session_factory) as session:
            result = await reconciler.reconcile(
                session, seeded["user_id"], "razorpay", CanonicalStatus.CANCELLED, "sub_1", None, None
            )

        assert result.status == SubscriptionStatus.CANCELLED.value
        assert result.agents_migrated == 1
        with managed_session(session_factory) as session:
            user = session.get(User, seeded["user_id"])
            assert user.plan_type == "free"
            assert user.plan_expires_at is None
            agent = session.execute(select(Agent)).scalar_one()
            assert agent.llm_model == "small-free"
            assert agent.config == {"model": "small-free", "temperature": 0.2}

    @pytest.mark.asyncio
    async def test_missing_free_model_rolls_back_and_alerts(self, session_factory, seeded):
        alerts = Mock()
        domain_event_bus.subscribe(OperatorAlert, alerts)
        reconciler = SubscriptionReconciler(_adapters())
        await _activate(session_factory, reconciler, seeded["user_id"], "razorpay", "sub_1")
        with managed_session(session_factory) as session:
            session.add(Agent(user_id=seeded["user_id"], name="Helper", llm_model="large-pro"))
            session.get(LlmModel, "small-free").is_active = False

        with pytest.raises(ConfigurationError):
            with managed_session(session_factory) as session:
                await reconciler.reconcile(
                    session, seeded["user_id"], "razorpay", CanonicalStatus.CANCELLED, "sub_1", None, None
                )

        alerts.assert_called_once()
        assert _subscription(session_factory, seeded["user_id"]).status == SubscriptionStatus.ACTIVE.value
        with managed_session(session_factory) as session:
            assert session.get(User, seeded["user_id"]).plan_type == "pro"
