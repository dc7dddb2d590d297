# /leadflow/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from leadflow.utils.logging import setup_logging
from leadflow.utils.alerting import alerting_service
from leadflow.services.cache_service import cache_service
from leadflow.services.db_service import db_service
from leadflow.services.whatsapp_service import whatsapp_service

# Startup and shutdown of the API process.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info("Application starting up...")
    await db_service.create_indexes()
    logger.info("Application startup complete. Ready to accept requests.")

    yield

    logger.info("Application shutting down...")
    await whatsapp_service.close()
    await alerting_service.cleanup()
    await cache_service.close()
    if db_service.client:
        db_service.client.close()
