"""
FastAPI Webhook Server for Payment Reconciliation
Hosts the per-gateway webhook endpoints, the admin queue routes and the retry scheduler
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal, create_tables, test_connection
from gateway.base import GatewayAdapter
from gateway.registry import get_adapter
from handlers.admin_webhook_queue import router as admin_router
from handlers.payment_webhooks import router as webhook_router
from jobs.webhook_retry_scheduler import WebhookRetryScheduler
from services.domain_events import DomainEventBus, domain_event_bus
from services.notification_service import NotificationService
from services.reconciliation_service import ReconciliationService
from services.webhook_retry_queue import WebhookRetryQueue
from services.webhook_settings_provider import WebhookSettingsProvider

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Keep scheduler chatter out of the payment logs
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def create_app(
    session_factory: Optional[sessionmaker] = None,
    adapter_lookup: Callable[[str], Optional[GatewayAdapter]] = get_adapter,
    event_bus: Optional[DomainEventBus] = None,
    notification_service: Optional[NotificationService] = None,
    start_scheduler: Optional[bool] = None,
    create_schema: bool = True,
) -> FastAPI:
    """
    Build the application with its collaborators wired onto app.state.

    Tests pass their own session factory and adapter lookup; production uses
    the module defaults.
    """
    session_factory = session_factory or SessionLocal
    bus = event_bus or domain_event_bus
    run_scheduler = Config.WEBHOOK_RETRY_SCHEDULER_ENABLED if start_scheduler is None else start_scheduler

    settings_provider = WebhookSettingsProvider(session_factory)
    retry_queue = WebhookRetryQueue(settings_provider)
    reconciliation = ReconciliationService(session_factory, adapter_lookup)
    retry_scheduler = WebhookRetryScheduler(retry_queue, reconciliation, session_factory)
    notifications = notification_service or NotificationService(session_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info(f"🔧 Payment webhook worker {os.getpid()} starting ({Config.CURRENT_ENVIRONMENT})...")
        if create_schema:
            create_tables(bind=session_factory.kw.get("bind"))
        notifications.register(bus)

        missing = [name for name, ok in Config.gateway_secrets_status().items() if not ok]
        if missing:
            logger.warning(f"⚠️ STARTUP: Webhooks from {', '.join(missing)} will be rejected - secrets not configured")

        if run_scheduler:
            retry_scheduler.start()
        logger.info(f"✅ Worker {os.getpid()} initialized successfully")

        yield

        retry_scheduler.stop()
        bus.clear_subscribers()
        logger.info(f"🔄 Payment webhook worker {os.getpid()} shutting down...")

    app = FastAPI(
        title="Payment Reconciliation Webhook Server",
        description="Gateway webhooks reconciled into credits, subscriptions and refunds",
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory
    app.state.adapter_lookup = adapter_lookup
    app.state.settings_provider = settings_provider
    app.state.retry_queue = retry_queue
    app.state.reconciliation = reconciliation
    app.state.retry_scheduler = retry_scheduler

    app.include_router(webhook_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health():
        db_ok = test_connection() if session_factory is SessionLocal else True
        return JSONResponse(
            status_code=200 if db_ok else 503,
            content={
                "status": "healthy" if db_ok else "degraded",
                "database": db_ok,
                "scheduler_running": bool(retry_scheduler.scheduler and retry_scheduler.scheduler.running),
                "gateways": Config.gateway_secrets_status(),
            },
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8001")), log_level=Config.LOG_LEVEL.lower())
