import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from upwatch.exceptions import StoreUnavailableError
from upwatch.server.api.incidents import router as incidents_router
from upwatch.server.api.monitors import router as monitors_router
from upwatch.server.api.plans import router as plans_router
from upwatch.server.core.config import Settings, get_settings
from upwatch.server.core.plans import load_plan_catalog
from upwatch.server.core.quota import UserLocks
from upwatch.server.core.runtime import MonitoringRuntime
from upwatch.server.db.init import AsyncSessionLocal, dispose_db, init_db

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings)

    # A missing or invalid plan catalog is fatal
    app.state.plans = load_plan_catalog(settings.plans_file)
    app.state.user_locks = UserLocks()
    app.state.runtime = None

    await init_db()
    if settings.scheduler_enabled:
        runtime = MonitoringRuntime.from_settings(settings, AsyncSessionLocal)
        await runtime.start()
        app.state.runtime = runtime
    else:
        logger.info("Scheduler disabled, serving API only")

    yield

    if app.state.runtime is not None:
        await app.state.runtime.stop()
    await dispose_db()


app = FastAPI(title="Upwatch", version="0.1.0", lifespan=lifespan)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register API routers
app.include_router(incidents_router)
app.include_router(monitors_router)
app.include_router(plans_router)


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable"})


@app.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}
