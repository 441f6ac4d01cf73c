from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from slotbook.config import get_settings
from slotbook.dependencies.services import get_runtime
from slotbook.health import router as health_router
from slotbook.tools.appointment import router as appointment_router
from slotbook.tools.availability import router as availability_router
from slotbook.tools.waiting_list import router as waiting_list_router


def configure_logging() -> None:
    """Ensure application logs use the INFO level by default."""
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
    else:
        root_logger.setLevel(logging.INFO)

# Configure logging as soon as the module is loaded
configure_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    # --- Startup Logic ---
    settings = get_settings()

    settings_snapshot = settings.model_dump(
        by_alias=True,
        exclude={"sms_gateway_token"},
    )
    logger.info("Application settings on startup: %s", settings_snapshot)

    runtime = get_runtime()
    runtime.sweeper.start()
    logger.info("Application startup complete.")

    try:
        yield  # The application is now running
    finally:
        # --- Shutdown Logic ---
        await runtime.sweeper.stop()
        await runtime.cascade.shutdown()
        logger.info("Closing SMS gateway connection.")
        await runtime.sms_client.close()
        logger.info("Application shutdown complete.")


# --- Application Setup ---

settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    lifespan=lifespan,
    redirect_slashes=False
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin).rstrip("/") for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Include Routers ---

app.include_router(availability_router, prefix="/availability")
app.include_router(appointment_router, prefix="/appointments")
app.include_router(waiting_list_router, prefix="/waiting-list")
app.include_router(health_router)
