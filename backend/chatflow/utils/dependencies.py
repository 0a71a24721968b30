# /chatflow/utils/dependencies.py

import secrets
import structlog
from fastapi import Request, HTTPException

from chatflow.config.settings import settings
from chatflow.services.chatbot_service import ChatbotService, chatbot_service
from chatflow.utils.request_utils import get_remote_address

log = structlog.get_logger(__name__)


def _key_matches(request: Request) -> bool:
    provided_key = request.headers.get("X-API-KEY")
    return bool(provided_key and secrets.compare_digest(provided_key, settings.api_key))


async def verify_api_key(request: Request):
    """Guards the chatbot API when an API key is configured."""
    if settings.api_key and not _key_matches(request):
        log.warning("Rejected request with invalid API key.", client=get_remote_address(request), path=request.url.path)
        raise HTTPException(status_code=403, detail="Invalid or missing API key")


async def verify_metrics_access(request: Request):
    if settings.api_key and not _key_matches(request):
        raise HTTPException(status_code=403, detail="Invalid or missing API key")


def get_chatbot_service() -> ChatbotService:
    return chatbot_service
