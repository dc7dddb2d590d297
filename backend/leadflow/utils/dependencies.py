# /leadflow/utils/dependencies.py

import secrets
import structlog
from fastapi import Request, HTTPException

from leadflow.config.settings import settings
from leadflow.services.security_service import SecurityService
from leadflow.utils.metrics import webhook_signature_counter
from leadflow.utils.request_utils import get_remote_address

log = structlog.get_logger(__name__)


async def verify_webhook_signature(request: Request) -> bytes:
    body = await request.body()
    signature = request.headers.get("x-hub-signature-256", "")
    if not SecurityService.verify_webhook_signature(body, signature, settings.whatsapp_app_secret):
        webhook_signature_counter.labels(status="invalid").inc()
        log.error("Invalid webhook signature.", signature=signature[:50], client_ip=get_remote_address(request))
        raise HTTPException(status_code=403, detail="Invalid signature")
    webhook_signature_counter.labels(status="valid").inc()
    return body


async def verify_metrics_access(request: Request):
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            raise HTTPException(status_code=403, detail="Invalid or missing API key")
