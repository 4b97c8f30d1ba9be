"""
Payment Webhook Routes
One POST endpoint per gateway: verify, parse, reconcile, or queue for retry

Response contract:
- 200 {"received": true}   processed, already processed, or ignored
- 401                      signature missing/invalid (never queued)
- 400                      body could not be parsed (never queued)
- 404                      unknown gateway
- 500 {"received": false}  processing failed; the event is in the retry queue
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from database import managed_session
from utils.reconciliation_errors import EventParseError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["payment-webhooks"])


@router.post("/{gateway}/webhook")
async def receive_payment_webhook(gateway: str, request: Request):
    state = request.app.state
    gateway = gateway.lower()
    adapter = state.adapter_lookup(gateway)
    if adapter is None:
        logger.warning(f"⚠️ PAYMENT_WEBHOOK: Unknown gateway {gateway!r}")
        return JSONResponse(status_code=404, content={"detail": f"Unknown gateway: {gateway}"})

    tag = f"{gateway.upper()}_WEBHOOK"
    body = await request.body()

    if not await adapter.verify_signature(body, request.headers):
        logger.warning(f"🚫 {tag}: Signature verification failed from {getattr(request.client, 'host', 'unknown')}")
        return JSONResponse(status_code=401, content={"detail": "Invalid webhook signature"})

    try:
        payload = adapter.stamp_event_id(adapter.decode_body(body), request.headers)
        event = adapter.parse_event(payload)
    except EventParseError as e:
        logger.error(f"❌ {tag}: Unparseable webhook: {e}")
        return JSONResponse(status_code=400, content={"detail": str(e)})

    logger.info(f"📨 {tag}: {event.event_type} {event.event_id} ({event.kind.value})")
    try:
        state.reconciliation.record_webhook_received(gateway, event.event_type, event.event_id)
    except Exception as e:
        # Bookkeeping only - must not block reconciliation
        logger.warning(f"⚠️ {tag}: Could not record webhook receipt: {e}")

    try:
        result = await state.reconciliation.process_event(event)
    except EventParseError as e:
        logger.error(f"❌ {tag}: {event.event_id} is malformed: {e}")
        return JSONResponse(status_code=400, content={"detail": str(e)})
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        logger.error(f"❌ {tag}: Processing {event.event_type} {event.event_id} failed: {error}")
        queued = False
        try:
            with managed_session(state.session_factory) as session:
                _, created = state.retry_queue.enqueue(
                    session, gateway, event.event_type, event.event_id, payload, error, event.user_id
                )
            queued = True
            if not created:
                logger.info(f"🔁 {tag}: {event.event_id} was already in the retry queue")
        except Exception as queue_error:
            logger.critical(f"🚨 {tag}: Could not queue {event.event_id} for retry: {queue_error}")
        return JSONResponse(status_code=500, content={"received": False, "queued": queued})

    if result.already_processed:
        logger.info(f"🔁 {tag}: {event.event_id} already processed")
    return {"received": True}
