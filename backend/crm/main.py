"""Application entry point for the CRM API service."""

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crm.api.routes.auth import router as auth_router
from crm.api.routes.campaigns import router as campaigns_router
from crm.api.routes.customers import router as customers_router
from crm.api.routes.orders import router as orders_router
from crm.api.routes.segments import router as segments_router
from crm.core.cache import close_redis_client, get_redis_client
from crm.core.config import settings
from crm.core.db import SessionLocal, get_session
from crm.core.logging import setup_logging
from crm.core.middleware import BodySizeLimitMiddleware, RequestContextLogMiddleware
from crm.core.rate_limit import init_rate_limiter
from crm.services.delivery import CompletionScheduler, DeliverySimulator, recover_running_campaigns

setup_logging()

app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)

init_rate_limiter(app)

app.add_middleware(RequestContextLogMiddleware)


def _cors_origins() -> list[str]:
    if settings.ENV == "prod":
        if not settings.CORS_ALLOWED_ORIGINS:
            raise RuntimeError("CORS_ALLOWED_ORIGINS must be configured for prod")
        return settings.CORS_ALLOWED_ORIGINS
    return settings.CORS_ALLOWED_ORIGINS or ["http://localhost:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "Idempotency-Key",
        "X-Request-ID",
    ],
)

app.add_middleware(BodySizeLimitMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=1000)

completion_scheduler = CompletionScheduler(SessionLocal)
app.state.completion_scheduler = completion_scheduler
app.state.delivery_simulator = DeliverySimulator(completion_scheduler)


@app.on_event("startup")
async def startup_event():
    """Re-arm campaign completions left over from a previous process and warm Redis."""

    try:
        async with SessionLocal() as session:
            await recover_running_campaigns(session, completion_scheduler)
    except SQLAlchemyError:
        # The API still serves; stranded campaigns are picked up on the next start.
        logger.opt(exception=True).warning("campaign_recovery_failed")

    await get_redis_client()


@app.on_event("shutdown")
async def shutdown_event():
    await completion_scheduler.shutdown()
    await close_redis_client()


@app.get("/api/healthz", tags=["system"], summary="Liveness probe")
def healthz() -> dict[str, str]:
    """Simple liveness probe that load balancers and monitors can call."""

    return {"status": "ok"}


@app.get("/api/readyz", tags=["system"], summary="Readiness probe")
async def readyz(session: AsyncSession = Depends(get_session)):
    try:
        await session.execute(text("SELECT 1"))
        return {"ready": True}
    except SQLAlchemyError:
        raise HTTPException(status_code=503, detail="Database not reachable")


app.include_router(auth_router, prefix="/api")
app.include_router(customers_router, prefix="/api")
app.include_router(orders_router, prefix="/api")
app.include_router(campaigns_router, prefix="/api")
app.include_router(segments_router, prefix="/api")
