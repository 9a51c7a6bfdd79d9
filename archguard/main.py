import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from archguard.api.middleware.logging import RequestLoggingMiddleware
from archguard.api.routes.jobs import router as jobs_router
from archguard.api.routes.patterns import router as patterns_router
from archguard.config import get_settings
from archguard.runtime import build_runtime

settings = get_settings()

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="ArchGuard API",
    description="Malware-scanned archive ingestion with Brazilian PII detection",
    version="0.1.0",
    docs_url="/v1/docs",
    openapi_url="/v1/openapi.json",
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(jobs_router)
app.include_router(patterns_router)

app.mount("/metrics", make_asgi_app())

# Runtime stored on app state so routes and tests can reach it; tests install
# their own before the first request.
app.state.runtime = None


@app.get("/healthz", tags=["health"])
async def health_check() -> JSONResponse:
    runtime = app.state.runtime
    if runtime is None:
        return JSONResponse({"status": "starting", "scanner": "unknown"}, status_code=503)
    available = await runtime.gateway.is_available()
    return JSONResponse(
        {
            "status": "ok" if available else "degraded",
            "scanner": "available" if available else "unavailable",
            "workers": runtime.pool.size,
            "patterns": len(runtime.registry.active_patterns()),
        }
    )


@app.on_event("startup")
async def startup_event() -> None:
    logger.info("ArchGuard API starting up")
    if app.state.runtime is None:
        app.state.runtime = build_runtime(settings)
    await app.state.runtime.start()
    logger.info("Ingestion runtime started")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    if app.state.runtime is not None:
        await app.state.runtime.stop()
        logger.info("Ingestion runtime stopped")
    logger.info("ArchGuard API shutting down")
