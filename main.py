"""
NutriApp Backend - food-photo calorie tracking with trial and Stripe subscription gating
"""

import logging
import traceback
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from auth import auth_router
from config.settings import LOGS_DIR, Settings, get_settings
from context import AppContext
from routers.billing_router import WEBHOOK_PATH, billing_router
from routers.food_router import diary_router, food_router
from utils.rate_limit import RateLimiterMiddleware

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings):
    """Write all events to stderr and logs/app.log"""
    LOGS_DIR.mkdir(exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(LOGS_DIR / "app.log"),
            logging.StreamHandler()
        ]
    )


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception on {request.method} {request.url.path}: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "error": "Internal Server Error"}
            )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: HSTS, X-Frame-Options, X-Content-Type-Options"""

    def __init__(self, app, enforce_https: bool = False):
        super().__init__(app)
        self.enforce_https = enforce_https

    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # API only, nothing should be framed or sniffed
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"

        # Only in production where HTTPS is guaranteed
        if self.enforce_https:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    """
    Build the FastAPI application.

    When a started context is passed in (tests, embedding), the caller owns its
    lifecycle; otherwise one is created on startup and stopped on shutdown.
    """
    settings = settings or (context.settings if context else get_settings())
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if context is not None:
            yield
            return
        app.state.context = AppContext(settings)
        await app.state.context.start()
        logger.info("NutriApp backend started")
        try:
            yield
        finally:
            await app.state.context.stop()

    app = FastAPI(title="NutriApp Backend", lifespan=lifespan)
    if context is not None:
        app.state.context = context

    app.add_middleware(UncaughtExceptionMiddleware)
    app.add_middleware(
        RateLimiterMiddleware,
        requests_per_minute=settings.rate_limit_per_minute,
        redis_url=settings.redis_url,
        exempt_paths=[WEBHOOK_PATH],
    )
    app.add_middleware(SecurityHeadersMiddleware, enforce_https=settings.is_production)

    # CORS MUST be near the bottom
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(billing_router)
    app.include_router(auth_router)
    app.include_router(food_router)
    app.include_router(diary_router)

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
