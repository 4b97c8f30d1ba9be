"""
Admin Webhook Queue Routes
Inspect and operate the webhook retry queue and its settings, look up user membership
and issue operator refunds

Every route requires the X-Admin-Token header to match ADMIN_API_TOKEN.
"""

import hmac
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request

from config import Config
from database import managed_session
from models import User
from services.membership_service import MembershipService
from services.refund_service import refund_resolver
from services.webhook_settings_provider import (
    EXPIRY_HOURS_KEY, MAX_ATTEMPTS_KEY, RETRY_INTERVALS_KEY
)
from utils.reconciliation_errors import GatewayAPIError, RefundRejectedError, StateTransitionError

logger = logging.getLogger(__name__)


def require_admin_token(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> None:
    expected = Config.ADMIN_API_TOKEN
    if not expected:
        logger.error("❌ ADMIN_API: ADMIN_API_TOKEN not configured - admin routes disabled")
        raise HTTPException(status_code=503, detail="Admin API not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        logger.warning("🚫 ADMIN_API: Rejected request with bad admin token")
        raise HTTPException(status_code=401, detail="Invalid admin token")


router = APIRouter(
    prefix="/api/admin",
    tags=["admin-webhook-queue"],
    dependencies=[Depends(require_admin_token)],
)


@router.get("/webhook-queue/stats")
async def queue_stats(request: Request):
    state = request.app.state
    with managed_session(state.session_factory) as session:
        return state.retry_queue.get_stats(session)


@router.get("/webhook-queue")
async def list_queue_items(request: Request, status: Optional[str] = None, limit: int = 100):
    state = request.app.state
    with managed_session(state.session_factory) as session:
        items = state.retry_queue.list_items(session, status=status, limit=min(limit, 500))
        return {"items": [item.to_dict() for item in items], "count": len(items)}


@router.post("/webhook-queue/{item_id}/requeue")
async def requeue_item(item_id: int, request: Request):
    state = request.app.state
    try:
        with managed_session(state.session_factory) as session:
            item = state.retry_queue.requeue_failed(session, item_id)
            data = item.to_dict() if item is not None else None
    except StateTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if data is None:
        raise HTTPException(status_code=404, detail=f"Queue item {item_id} not found")
    logger.info(f"♻️ ADMIN_API: Requeued webhook item {item_id}")
    return data


@router.post("/webhook-queue/run")
async def run_retry_pass(request: Request):
    return await request.app.state.retry_scheduler.run_once()


@router.post("/webhook-queue/purge")
async def purge_completed(request: Request, older_than_days: int = 30):
    state = request.app.state
    with managed_session(state.session_factory) as session:
        purged = state.retry_queue.purge_completed(session, older_than_days)
    return {"purged": purged}


@router.get("/webhook-settings")
async def get_retry_settings(request: Request):
    settings = request.app.state.settings_provider.get_settings()
    return {
        "retry_intervals_minutes": settings.retry_intervals_minutes,
        "max_attempts": settings.max_attempts,
        "expiry_hours": settings.expiry_hours,
    }


@router.put("/webhook-settings")
async def update_retry_settings(request: Request, update: Dict[str, Any] = Body(...)):
    provider = request.app.state.settings_provider

    intervals = update.get("retry_intervals_minutes")
    if intervals is not None:
        if (
            not isinstance(intervals, list) or not intervals
            or not all(isinstance(m, int) and not isinstance(m, bool) and m > 0 for m in intervals)
        ):
            raise HTTPException(status_code=422, detail="retry_intervals_minutes must be a list of positive integers")
    for key in ("max_attempts", "expiry_hours"):
        value = update.get(key)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 1):
            raise HTTPException(status_code=422, detail=f"{key} must be a positive integer")

    if intervals is not None:
        provider.set_value(RETRY_INTERVALS_KEY, intervals, "json", "Per-attempt webhook retry delays in minutes")
    if update.get("max_attempts") is not None:
        provider.set_value(MAX_ATTEMPTS_KEY, update["max_attempts"], "int", "Webhook retry attempts before failing")
    if update.get("expiry_hours") is not None:
        provider.set_value(EXPIRY_HOURS_KEY, update["expiry_hours"], "int", "Hours before a queued webhook expires")
    logger.info(f"⚙️ ADMIN_API: Webhook retry settings updated: {update}")
    return await get_retry_settings(request)


@router.get("/webhook-settings/cache")
async def settings_cache_stats(request: Request):
    return request.app.state.settings_provider.cache_stats()


@router.get("/users/{user_id}/membership")
async def user_membership(user_id: int, request: Request, sync: bool = False):
    """Membership as derived from both plan signals; sync=true rewrites the user's plan fields first"""
    with managed_session(request.app.state.session_factory) as session:
        found = session.get(User, user_id) is not None
        if found:
            synced = MembershipService.sync_user_with_subscription(session, user_id) if sync else False
            membership = {
                "user_id": user_id,
                "active": MembershipService.has_active_membership(session, user_id),
                "plan": MembershipService.get_active_plan_name(session, user_id),
                "synced": synced,
            }
    if not found:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    return membership


@router.post("/refunds/{transaction_id}")
async def refund_transaction(transaction_id: int, request: Request, body: Dict[str, Any] = Body(...)):
    """Refund a completed payment through its gateway and reverse the matching share of credits"""
    state = request.app.state
    try:
        amount = Decimal(str(body.get("amount")))
        if not amount.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise HTTPException(status_code=422, detail="amount must be a decimal number")

    try:
        result = await refund_resolver.admin_refund(
            state.session_factory, state.adapter_lookup, transaction_id, amount, body.get("admin_note"),
        )
    except RefundRejectedError as e:
        raise HTTPException(status_code=404 if e.not_found else 400, detail=str(e))
    except NotImplementedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GatewayAPIError as e:
        logger.error(f"❌ ADMIN_API: Gateway refund for transaction {transaction_id} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    logger.info(f"💸 ADMIN_API: Refunded transaction {transaction_id} ({result.credits_reversed} credits reversed)")
    return {
        "transaction_id": transaction_id,
        "refund_id": result.refund_id,
        "already_processed": result.already_processed,
        "credits_reversed": result.credits_reversed,
    }
