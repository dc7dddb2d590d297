# /leadflow/routes/webhooks.py

import json
import asyncio
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from leadflow.config.settings import settings
from leadflow.services import webhook_service
from leadflow.utils.dependencies import verify_webhook_signature
from leadflow.utils.metrics import response_time_histogram
from leadflow.utils.rate_limiter import limiter

# WhatsApp Cloud API webhook endpoints. The POST handler acknowledges quickly
# and runs each message through the conversation engine in the background.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)

# Keeps references to in-flight message tasks until they finish
_background_tasks = set()


def _spawn(coro):
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and hub_verify_token == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_whatsapp_webhook(
    request: Request,
    verified_body: bytes = Depends(verify_webhook_signature)
):
    """Handles both inbound messages and delivery status callbacks."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        try:
            data = json.loads(verified_body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.warning("Webhook body is not valid JSON.")
            raise HTTPException(status_code=400, detail="Invalid JSON")

        for entry in data.get("entry", []):
            for change in entry.get("changes", []):
                if change.get("field") != "messages":
                    log.debug("Ignoring non-message change", field=change.get("field"))
                    continue

                value = change.get("value", {})

                for status_data in value.get("statuses", []):
                    log.info("Processing status update", wamid=status_data.get("id"), status=status_data.get("status"))
                    await webhook_service.process_status_update(status_data)

                for message in value.get("messages", []):
                    log.info("Processing incoming message", wamid=message.get("id"), type=message.get("type"))
                    _spawn(webhook_service.process_webhook_message(message, value))

        return JSONResponse({"status": "success"})
