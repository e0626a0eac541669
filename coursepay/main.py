"""
Main FastAPI application for the course payment service
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coursepay.config import Settings
from coursepay.database import create_db_engine, create_session_factory, init_db
from coursepay.routes import payments
from coursepay.services.entitlement_service import AccessControl, DatabaseAccessControl, EntitlementGrantor
from coursepay.services.ledger_service import ReconciliationLedger
from coursepay.services.payment_service import ConfirmationOrchestrator, PaymentGateway
from coursepay.services.paystack_service import PaystackClient

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    gateway: Optional[PaymentGateway] = None,
    access_control: Optional[AccessControl] = None,
) -> FastAPI:
    """
    Build the application. Settings come from the environment unless given;
    a ConfigError here stops the process before it serves any request.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    engine = create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    if gateway is None:
        gateway = PaystackClient(
            settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            timeout=settings.paystack_timeout_seconds,
            channels=settings.channels,
        )
    if access_control is None:
        access_control = DatabaseAccessControl(session_factory)

    ledger = ReconciliationLedger(
        session_factory,
        intent_ttl=timedelta(hours=settings.intent_ttl_hours),
        grant_retry_after=timedelta(seconds=settings.grant_retry_after_seconds),
    )
    grantor = EntitlementGrantor(
        session_factory,
        ledger,
        access_control,
        teacher_share_percent=settings.teacher_share_percent,
    )
    orchestrator = ConfirmationOrchestrator(settings, gateway, ledger, grantor)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting course payment service (Paystack %s key %s)",
            settings.key_mode,
            settings.key_preview,
        )
        scheduler = None
        if settings.sweep_interval_seconds > 0:
            scheduler = AsyncIOScheduler()
            scheduler.add_job(
                orchestrator.reconcile,
                trigger=IntervalTrigger(seconds=settings.sweep_interval_seconds),
                id="payment_reconciliation_sweep",
                name="Payment Reconciliation Sweep",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            engine.dispose()

    app = FastAPI(
        title="Course Payment API",
        version="1.0.0",
        description="Course and lesson payments through Paystack with webhook and redirect confirmation",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.grantor = grantor
    app.state.orchestrator = orchestrator

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins) or ["*"],
        allow_credentials=bool(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(payments.router)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "Course Payment API",
            "version": "1.0.0",
            "docs": "/docs",
            "features": [
                "Paystack checkout initialization",
                "Redirect verification",
                "Signed webhook confirmation",
                "Exactly-once course access",
                "Teacher payout bookkeeping",
            ]
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "paystack": {
                "mode": settings.key_mode,
                "key": settings.key_preview,
                "currency": settings.currency,
            },
        }

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
