"""
Membership Service
Read-only view of "does this user have an active paid plan", plus the explicit
re-sync of the user's plan fields from their subscription row.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from models import Plan, PlanTier, SubscriptionStatus, User, UserSubscription
from utils.datetime_helpers import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class MembershipService:
    """Membership checks over the two independently maintained plan signals"""

    @staticmethod
    def _plan_is_paid(session: Session, plan_id: Optional[str]) -> bool:
        if not plan_id:
            return False
        plan = session.get(Plan, plan_id)
        if plan is None:
            # Unknown plan ids only come from gateways we billed through - treat as paid
            return plan_id != PlanTier.FREE.value
        return not plan.is_free

    @classmethod
    def has_active_membership(cls, session: Session, user_id: int, now: Optional[datetime] = None) -> bool:
        """
        Active iff (subscription active AND period end in the future AND plan is paid)
        OR (plan_type is not free AND plan_expires_at in the future).

        past_due subscriptions keep access through the user's plan fields.
        """
        now = now or utc_now()
        user = session.get(User, user_id)
        if user is None:
            return False

        subscription = session.query(UserSubscription).filter(UserSubscription.user_id == user_id).first()
        if (
            subscription is not None
            and subscription.status == SubscriptionStatus.ACTIVE.value
            and subscription.current_period_end is not None
            and ensure_utc(subscription.current_period_end) > now
            and cls._plan_is_paid(session, subscription.plan_id)
        ):
            return True

        return (
            user.plan_type != PlanTier.FREE.value
            and user.plan_expires_at is not None
            and ensure_utc(user.plan_expires_at) > now
        )

    @classmethod
    def get_active_plan_name(cls, session: Session, user_id: int, now: Optional[datetime] = None) -> str:
        """Name of the plan the user is currently entitled to, 'free' otherwise"""
        if not cls.has_active_membership(session, user_id, now):
            return PlanTier.FREE.value

        subscription = session.query(UserSubscription).filter(UserSubscription.user_id == user_id).first()
        if subscription is not None and subscription.plan_id:
            plan = session.get(Plan, subscription.plan_id)
            if plan is not None:
                return plan.name
        return session.get(User, user_id).plan_type

    @staticmethod
    def sync_user_with_subscription(session: Session, user_id: int, now: Optional[datetime] = None) -> bool:
        """
        Rewrite the user's plan_type/plan_expires_at from their subscription row.

        Returns True when the user row changed.
        """
        now = now or utc_now()
        user = session.get(User, user_id)
        if user is None:
            return False
        subscription = session.query(UserSubscription).filter(UserSubscription.user_id == user_id).first()

        entitled = (
            subscription is not None
            and subscription.status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)
            and subscription.current_period_end is not None
            and ensure_utc(subscription.current_period_end) > now
        )
        if entitled:
            plan = session.get(Plan, subscription.plan_id) if subscription.plan_id else None
            plan_type = plan.name if plan is not None else (subscription.plan_id or user.plan_type)
            plan_expires_at = subscription.current_period_end
        else:
            plan_type = PlanTier.FREE.value
            plan_expires_at = None

        changed = user.plan_type != plan_type or ensure_utc(user.plan_expires_at) != ensure_utc(plan_expires_at)
        if changed:
            user.plan_type = plan_type
            user.plan_expires_at = plan_expires_at
            session.flush()
            logger.info(f"🔄 MEMBERSHIP_SYNC: User {user_id} -> plan={plan_type} expires={plan_expires_at}")
        return changed
