from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from app.config import settings
from app.core.database import close_db, init_db
from app.core.errors import SubstreamError
from app.core.errors.middleware import substream_error_handler
from app.core.errors.registry import error_registry
from app.core.log_middleware import CorrelationMiddleware
from app.core.plans import PlanCatalog
from app.core.structured_logging import APP_VERSION, setup_logging
from app.routers import health, subscriptions
from app.services.billing_engine import BillingEngine
from app.services.due_sweeper import DueSweeper
from app.services.key_vault import KeyVault
from app.services.ledger_client import GatewayLedgerClient, LedgerClient
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

API_TITLE = "Substream API"

API_DESCRIPTION = """
## Substream - Recurring on-chain billing

Authorize a spending-limited delegated key once; the server then pulls the
plan price every interval until the subscription is cancelled or a payment
fails.
"""


def build_billing_engine(ledger: Optional[LedgerClient] = None) -> BillingEngine:
    """Wire the engine from settings. Plans are loaded once here."""
    return BillingEngine(
        store=SubscriptionStore(),
        vault=KeyVault(),
        ledger=ledger or GatewayLedgerClient(),
        plans=PlanCatalog.load(settings.plans_file),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    setup_logging()
    logger.info("Starting Substream API v%s...", APP_VERSION)

    error_registry.load()
    init_db()
    logger.info("Database initialized")

    engine = build_billing_engine()
    sweeper = DueSweeper(engine)
    app.state.billing_engine = engine
    app.state.sweeper = sweeper

    if settings.sweep_enabled:
        sweeper.start()
    else:
        logger.warning("Due sweeper disabled (SUBSTREAM_SWEEP_ENABLED=false)")

    yield

    logger.info("Shutting down Substream API...")
    await sweeper.stop()
    await engine.ledger.aclose()
    close_db()


def create_app() -> FastAPI:
    application = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=APP_VERSION,
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(SubstreamError, substream_error_handler)

    application.include_router(health.router, tags=["health"])
    application.include_router(subscriptions.router, tags=["subscriptions"])
    return application


app = create_app()
