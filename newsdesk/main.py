import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.router import api_router
from .core.config import get_settings
from .core.log_config import configure_logging
from .db.session import AsyncSessionLocal, async_engine
from .features.cleanup.service import run_reconciliation
from .features.shared.errors import DomainError
from .features.storage import BlobStore, build_blob_store

settings = get_settings()
logger = logging.getLogger(__name__)


async def _reconciliation_loop(blob_store: BlobStore) -> None:
    while True:
        try:
            async with AsyncSessionLocal() as session:
                scan_result, process_result = await run_reconciliation(
                    session,
                    blob_store,
                    limit=settings.reconciliation_batch_limit,
                    grace_seconds=settings.orphan_grace_seconds,
                )
            logger.info(
                "Scheduled reconciliation completed: scan=%s process=%s",
                scan_result.model_dump(),
                process_result.model_dump(),
            )
        except Exception:
            # Reconciliation is best-effort and must not end the loop.
            logger.exception("Error in scheduled reconciliation")
        interval = max(1, settings.reconciliation_interval_seconds)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    blob_store = build_blob_store(settings, AsyncSessionLocal)
    await blob_store.start()
    app.state.blob_store = blob_store

    reconciliation_task: asyncio.Task[None] | None = None
    if settings.reconciliation_enabled:
        reconciliation_task = asyncio.create_task(_reconciliation_loop(blob_store))
    try:
        yield
    finally:
        if reconciliation_task is not None:
            reconciliation_task.cancel()
            with suppress(asyncio.CancelledError):
                await reconciliation_task
        await blob_store.close()
        app.state.blob_store = None
        await async_engine.dispose()


app = FastAPI(title="Newsdesk API", docs_url="/api/docs", lifespan=lifespan)
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.frontend_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
async def handle_domain_error(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
    else:
        logger.info("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


@app.get("/")
async def read_root() -> dict:
    return {"status": "ok", "service": "newsdesk"}


@app.get("/health")
async def health_check(request: Request) -> dict:
    blob_store = getattr(request.app.state, "blob_store", None)
    return {
        "healthy": True,
        "blob_backends": blob_store.status() if blob_store is not None else {},
    }
