from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from styleslot.config import get_settings
from styleslot.dependencies.services import get_backend_client_cached
from styleslot.health import router as health_router
from styleslot.mock_data_view import router as mock_data_router
from styleslot.tools.appointments import router as appointments_router
from styleslot.tools.conversations import router as conversations_router


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


configure_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    settings_snapshot = settings.model_dump(exclude={"api_token"})
    logger.info("Application settings on startup: %s", settings_snapshot)

    client = get_backend_client_cached()
    if client.use_mock_data:
        logger.info("Serving from the in-memory mock backend.")
    logger.info("Application startup complete.")

    try:
        yield
    finally:
        logger.info("Closing booking service client.")
        await client.close()
        logger.info("Application shutdown complete.")


settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    lifespan=lifespan,
    redirect_slashes=False,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin).rstrip("/") for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(appointments_router, prefix="/tools/appointments")
app.include_router(conversations_router, prefix="/tools/conversations")
app.include_router(health_router)
app.include_router(mock_data_router)
