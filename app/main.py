import logging
import time
from contextlib import asynccontextmanager

try:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
except ModuleNotFoundError:  # Sentry optional in local/test envs
    sentry_sdk = None
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import health, scans
from app.config import settings
from app.services.scan.errors import ScanPipelineError
from app.services.scan.pipeline import shutdown_scan_pipeline

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _init_sentry() -> None:
    if sentry_sdk is None or not settings.sentry_dsn:
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        integrations=[FastApiIntegration(), LoggingIntegration(level=logging.INFO)],
        traces_sample_rate=settings.sentry_traces_sample_rate,
        environment=settings.environment,
        release=f"idea-scan@{settings.app_version}",
    )
    logger.info("Sentry initialized")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start optional error reporting; release pipeline resources on shutdown."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    _init_sentry()
    yield
    logger.info("Shutting down application")
    await shutdown_scan_pipeline()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Ranks existing patents, startups and research similar to a submitted idea.",
    lifespan=lifespan,
    debug=settings.debug,
)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

app.add_middleware(
    TrustedHostMiddleware, allowed_hosts=["*"] if settings.debug else settings.trusted_hosts
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "http.request",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
        },
    )
    return response


@app.exception_handler(ScanPipelineError)
async def scan_pipeline_error_handler(request: Request, exc: ScanPipelineError) -> JSONResponse:
    """Render pipeline errors as ``{"error", "code"}`` with the mapped status."""
    status_code = scans.map_error_code(exc.code)
    log = logger.error if status_code >= 500 else logger.warning
    log("scan.api_error", extra={"path": request.url.path, "code": exc.code, "status": status_code})
    return JSONResponse(status_code=status_code, content={"error": str(exc), "code": exc.code})


app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(scans.router, prefix="/api", tags=["scans"])


@app.get("/")
async def root():
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.environment,
    }
