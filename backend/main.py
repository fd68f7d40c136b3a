"""
FastAPI application entry point for the paygate membership service.

Authentication is handled upstream: request.state.user_id must be set by the
auth layer before billing routes run. Webhooks authenticate by signature.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from paygate.api.routes import billing
from paygate.api.routes import health
from paygate.api.routes import webhooks_billing
from paygate.config.plans import PlanRegistry, load_plan_registry
from paygate.config.settings import BillingSettings
from paygate.integrations.stripe.billing_client import StripeBillingClient, get_billing_client

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(
    plan_registry: Optional[PlanRegistry] = None,
    settings: Optional[BillingSettings] = None,
    billing_client: Optional[StripeBillingClient] = None,
) -> FastAPI:
    """
    Build the application.

    Anything not passed in is loaded from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting paygate API")

        app.state.billing_settings = settings or BillingSettings.from_env()
        app.state.plan_registry = plan_registry or load_plan_registry()

        owns_client = False
        client = billing_client
        if client is None and app.state.billing_settings.api_key:
            client = get_billing_client(
                app.state.billing_settings.api_key,
                base_url=app.state.billing_settings.api_base_url,
                timeout=app.state.billing_settings.api_timeout_seconds,
                max_retries=app.state.billing_settings.api_max_retries,
            )
            owns_client = True
        app.state.billing_client = client

        if os.getenv("PAYGATE_AUTO_CREATE_TABLES", "").lower() in ("1", "true", "yes"):
            from paygate.database.session import init_db
            init_db()
            logger.info("Database tables created")

        logger.info("Plan registry loaded", extra={
            "plan_ids": [plan.id for plan in app.state.plan_registry],
            "tie_break_policy": app.state.billing_settings.tie_break_policy.value,
        })

        yield

        if owns_client:
            await client.close()
        logger.info("Shutting down paygate API")

    app = FastAPI(
        title="Paygate API",
        description="Subscription-gated membership service",
        version="1.0.0",
        lifespan=lifespan
    )

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check (no auth)
    app.include_router(health.router)

    # Membership and subscription management (requires user context)
    app.include_router(billing.router)

    # Billing provider webhooks (signature verified)
    app.include_router(webhooks_billing.router)

    return app


app = create_app()
