"""
Application context - owns every shared client and the scheduled jobs.

Built once per process (or per test) and passed explicitly; nothing here is
a module-level singleton.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Request

from config.settings import Settings
from database import create_engine_for, create_session_factory, init_db, resolve_database_url
from services.food_service import FoodAnalyzer
from services.reconciler import BillingEventReconciler
from services.stripe_gateway import StripeGateway
from services.sweeper import ExpirySweeper
from utils.locks import KeyedLocks

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "entitlement-expiry-sweep"


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


class AppContext:
    """
    Shared resources for one running application.

    Call start() before serving and stop() on shutdown.
    """

    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], datetime] = utc_clock,
        gateway: Optional[StripeGateway] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.clock = clock
        self.engine = create_engine_for(resolve_database_url(settings))
        self.session_factory = create_session_factory(self.engine)
        self.locks = KeyedLocks()
        self.gateway = gateway or StripeGateway(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            price_id=settings.stripe_price_id,
            timeout_seconds=settings.stripe_timeout_seconds,
        )
        self.reconciler = BillingEventReconciler(
            self.session_factory,
            self.gateway,
            self.locks,
            clock,
            discard_stale_updates=settings.reconcile_discard_stale_updates,
            retry_attempts=settings.storage_retry_attempts,
        )
        self.sweeper = ExpirySweeper(self.session_factory, self.locks, clock)
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.external_api_timeout_seconds)
        self.food_analyzer = FoodAnalyzer(
            self.http_client,
            vision_api_key=settings.vision_api_key,
            fdc_api_key=settings.fdc_api_key,
            max_image_side=settings.max_image_side,
        )
        self.scheduler: Optional[AsyncIOScheduler] = None

    async def start(self, schedule_jobs: bool = True):
        """Create tables, check configuration and start the daily sweep."""
        await init_db(self.engine)
        logger.info("Database initialized")

        missing = [
            name for name, value in {
                "JWT_SECRET_KEY": self.settings.jwt_secret_key,
                "STRIPE_SECRET_KEY": self.settings.stripe_secret_key,
                "STRIPE_WEBHOOK_SECRET": self.settings.stripe_webhook_secret,
                "STRIPE_PRICE_ID": self.settings.stripe_price_id,
            }.items() if not value
        ]
        if missing:
            logger.warning(f"Startup check: Missing environment variables: {', '.join(missing)}")
        else:
            logger.info("Startup check: All critical environment variables are set")

        if schedule_jobs and self.settings.sweep_enabled:
            self.scheduler = AsyncIOScheduler(timezone="UTC")
            self.scheduler.add_job(
                self.sweeper.sweep,
                "cron",
                hour=self.settings.sweep_hour,
                minute=self.settings.sweep_minute,
                id=SWEEP_JOB_ID,
                max_instances=1,
                coalesce=True,
            )
            self.scheduler.start()
            logger.info(
                f"Expiry sweep scheduled daily at {self.settings.sweep_hour:02d}:{self.settings.sweep_minute:02d} UTC"
            )

    async def stop(self):
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        if self._owns_http_client:
            await self.http_client.aclose()
        await self.engine.dispose()
        logger.info("Application context stopped")


def get_context(request: Request) -> AppContext:
    return request.app.state.context
