import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from the working directory's .env (skipped under pytest)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from vmdash.core.config import settings, validate_config
from vmdash.core.logging import configure_logging
from vmdash.core.middleware.request_id import RequestIdMiddleware
from vmdash.core.database import create_all_tables
from vmdash.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from vmdash.api import admin, billing, health, vms
from vmdash.features.subscriptions.service import ROLE_ADMIN, get_or_create_account

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


def _bootstrap_admins() -> None:
    for account_id in (a.strip() for a in settings.ADMIN_ACCOUNT_IDS.split(",")):
        if account_id:
            get_or_create_account(account_id, role=ROLE_ADMIN)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("vmdash")
    logger.info("Starting VMDash backend...")
    app.state.startup_time = time.time()
    create_all_tables()
    _bootstrap_admins()
    try:
        yield
    finally:
        logging.getLogger("vmdash").info("Stopping VMDash backend...")


app = FastAPI(title="VMDash - Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(vms.router, prefix="/api", tags=["vms"])
app.include_router(admin.router, prefix="/api", tags=["admin"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("vmdash.main:app", host="0.0.0.0", port=8000)
