"""
Tests for membership checks over the subscription row and the user's plan fields
"""

from datetime import datetime, timedelta, timezone

from database import managed_session
from models import SubscriptionStatus, User, UserSubscription
from services.membership_service import MembershipService

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _subscribe(session_factory, user_id, status, period_end, plan_id="pro_monthly"):
    with managed_session(session_factory) as session:
        session.add(UserSubscription(
            user_id=user_id, plan_id=plan_id, status=status,
            current_period_start=period_end - timedelta(days=30), current_period_end=period_end,
            stripe_subscription_id="sub_1",
        ))


class TestMembershipService:

    def test_free_user_has_no_membership(self, session_factory, seeded):
        with managed_session(session_factory) as session:
            assert MembershipService.has_active_membership(session, seeded["user_id"], NOW) is False
            assert MembershipService.get_active_plan_name(session, seeded["user_id"], NOW) == "free"

    def test_active_subscription_grants_membership(self, session_factory, seeded):
        _subscribe(session_factory, seeded["user_id"], SubscriptionStatus.ACTIVE.value, NOW + timedelta(days=10))
        with managed_session(session_factory) as session:
            assert MembershipService.has_active_membership(session, seeded["user_id"], NOW) is True
            assert MembershipService.get_active_plan_name(session, seeded["user_id"], NOW) == "pro"

    def test_plan_fields_alone_grant_membership(self, session_factory, seeded):
        with managed_session(session_factory) as session:
            user = session.get(User, seeded["user_id"])
            user.plan_type = "pro"
            user.plan_expires_at = NOW + timedelta(days=3)
        with managed_session(session_factory) as session:
            assert MembershipService.has_active_membership(session, seeded["user_id"], NOW) is True

    def test_lapsed_period_is_not_membership(self, session_factory, seeded):
        _subscribe(session_factory, seeded["user_id"], SubscriptionStatus.ACTIVE.value, NOW - timedelta(days=1))
        with managed_session(session_factory) as session:
            assert MembershipService.has_active_membership(session, seeded["user_id"], NOW) is False

    def test_sync_copies_subscription_onto_user(self, session_factory, seeded):
        period_end = NOW + timedelta(days=10)
        _subscribe(session_factory, seeded["user_id"], SubscriptionStatus.PAST_DUE.value, period_end)

        with managed_session(session_factory) as session:
            assert MembershipService.sync_user_with_subscription(session, seeded["user_id"], NOW) is True
            assert MembershipService.sync_user_with_subscription(session, seeded["user_id"], NOW) is False

        with managed_session(session_factory) as session:
            user = session.get(User, seeded["user_id"])
            assert user.plan_type == "pro"
