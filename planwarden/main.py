import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from dotenv import load_dotenv

# Load env from planwarden/.env (tests configure settings directly)
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from planwarden.core.config import settings, validate_config
from planwarden.core.database import create_all_tables, get_database_url
from planwarden.core.logging import configure_logging
from planwarden.core.middleware.request_id import RequestIdMiddleware
from planwarden.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from planwarden.api import admin_billing, billing, health

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("planwarden")
    logger.info("Starting planwarden...")
    if get_database_url():
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("planwarden").info("Stopping planwarden...")


app = FastAPI(title="planwarden", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.router, tags=["health"])
app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(admin_billing.router, tags=["admin-billing"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("planwarden.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
