"""FastAPI application entrypoint."""

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from app.api import router as api_router
from app.core.config import settings
from app.core.errors import CapacityError, NotFoundError, StorageError, TransformValidationError
from app.core.logging import configure_logging, get_logger
from app.tasks import image_tasks

configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Shared with eagerly executed tasks so the in-memory backend sees one set of stores.
    app.state.runtime = image_tasks.get_runtime()
    logger.info("api_started", environment=settings.environment, job_backend=settings.job_backend)
    try:
        yield
    finally:
        image_tasks.shutdown_runtime()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TransformValidationError)
def handle_validation_error(request: Request, exc: TransformValidationError) -> JSONResponse:
    logger.info("transform_rejected", path=request.url.path, errors=exc.errors)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc), "errors": exc.errors},
    )


@app.exception_handler(NotFoundError)
def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(CapacityError)
def handle_capacity(request: Request, exc: CapacityError) -> JSONResponse:
    logger.warning("storage_quota_exceeded", path=request.url.path)
    return JSONResponse(status_code=status.HTTP_413_CONTENT_TOO_LARGE, content={"detail": str(exc)})


@app.exception_handler(StorageError)
def handle_storage_error(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("storage_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Storage unavailable"})


app.include_router(api_router.api_router, prefix=settings.api_v1_prefix)

Path(settings.storage_dir).mkdir(parents=True, exist_ok=True)
app.mount("/storage", StaticFiles(directory=settings.storage_dir), name="storage")


@app.get("/healthz", tags=["health"])
def health_check() -> dict:
    """Simple health probe endpoint."""

    logger.debug("health_check_invoked")
    return {"status": "ok", "environment": settings.environment}
