import logging

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from filekeeper.api.routes.webhooks import router as webhooks_router
from filekeeper.config import get_settings
from filekeeper.core.interfaces import ObjectStorage
from filekeeper.core.scan_client import ScanClient
from filekeeper.db.session import get_engine
from filekeeper.dependencies import get_redis, get_scan_client, get_storage
from filekeeper.schemas.notification import HealthResponse

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="FileKeeper API",
    description="File lifecycle manager: upload validation, malware scanning and storage reconciliation",
    version="1.0.0",
    docs_url="/v1/docs",
    openapi_url="/v1/openapi.json",
)

app.include_router(webhooks_router)


@app.get("/healthz", tags=["health"])
async def health_check(
    storage: ObjectStorage = Depends(get_storage),
    scan_client: ScanClient | None = Depends(get_scan_client),
) -> JSONResponse:
    storage_ok = await storage.health()
    scanner_ok = await scan_client.ping() if scan_client is not None else None
    healthy = storage_ok and scanner_ok is not False
    body = HealthResponse(
        status="ok" if healthy else "degraded",
        storage=storage_ok,
        scanner=scanner_ok,
    )
    return JSONResponse(body.model_dump(), status_code=200 if healthy else 503)


@app.on_event("startup")
async def startup_event() -> None:
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info(
        "FileKeeper API starting up environment=%s validation=%s scanning=%s",
        settings.environment,
        settings.validation_enabled,
        settings.scanning_enabled,
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    redis = get_redis()
    if redis is not None:
        await redis.aclose()
        logger.info("Redis client closed")
    await get_engine().dispose()
    logger.info("FileKeeper API shutting down")
