# /chatflow/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from chatflow.utils.logging import setup_logging
from chatflow.services.db_service import db_service
from chatflow.services.chatbot_service import chatbot_service

# Application lifespan: indexes and delay wake-ups on startup, scheduler and
# connections on shutdown.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info("Application starting up...")

    await db_service.create_indexes()

    # Sessions parked on a delay node before a restart get their timers back
    chatbot_service.scheduler.start()
    await chatbot_service.restore()

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    await chatbot_service.shutdown()
    if db_service.client:
        db_service.client.close()
