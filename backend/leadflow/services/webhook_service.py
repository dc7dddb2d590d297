# /leadflow/services/webhook_service.py

import logging
from typing import Any, Dict, Optional

from leadflow.models.domain import InboundMessage, MessageLog
from leadflow.services.cache_service import cache_service
from leadflow.services.conversation_service import conversation_engine
from leadflow.services.db_service import db_service
from leadflow.utils.metrics import inbound_messages_counter

# Turns decoded Cloud API webhook entries into engine turns and log updates.

logger = logging.getLogger(__name__)

ENGINE_KINDS = ("text", "interactive-button", "interactive-list")


async def process_webhook_message(message: Dict[str, Any], value: Dict[str, Any]):
    """Background task for one `messages[]` entry. Never raises."""
    try:
        business_number_id = (value.get("metadata") or {}).get("phone_number_id")
        inbound = InboundMessage.from_webhook(message)
        if inbound is None or not business_number_id:
            inbound_messages_counter.labels(message_type=message.get("type", "unknown"), status="ignored").inc()
            return

        if inbound.message_id and await cache_service.is_duplicate_message(inbound.message_id, inbound.from_phone):
            logger.info(f"Duplicate delivery of {inbound.message_id} from {inbound.from_phone}. Skipping.")
            inbound_messages_counter.labels(message_type=inbound.kind, status="duplicate").inc()
            return

        if inbound.message_id:
            entry = MessageLog(
                wamid=inbound.message_id,
                customer_phone=inbound.from_phone,
                business_number_id=business_number_id,
                direction="inbound",
                message_type=inbound.raw_type or inbound.kind,
                body=inbound.text,
                interactive=inbound.reply.model_dump() if inbound.reply else None,
                status="received",
            )
            if inbound.timestamp:
                entry.timestamp = inbound.timestamp
            await db_service.log_message(entry)

        if inbound.kind not in ENGINE_KINDS:
            logger.info(f"Message {inbound.message_id} of type {inbound.raw_type} logged only.")
            inbound_messages_counter.labels(message_type=inbound.kind, status="logged").inc()
            return

        inbound_messages_counter.labels(message_type=inbound.kind, status="processed").inc()
        await conversation_engine.handle_inbound_message(inbound, business_number_id)
    except Exception:
        logger.error(f"Unhandled error processing webhook message {message.get('id')}", exc_info=True)
        inbound_messages_counter.labels(message_type=message.get("type", "unknown"), status="error").inc()


def failure_reason_from(status_data: Dict[str, Any]) -> Optional[str]:
    errors = status_data.get("errors") or []
    if not errors:
        return None
    error = errors[0]
    details = (error.get("error_data") or {}).get("details")
    reason = f"{error.get('code')}: {error.get('title') or error.get('message') or 'Unknown error'}"
    return f"{reason} - {details}" if details else reason


async def process_status_update(status_data: Dict[str, Any]) -> bool:
    """Reconciles a sent/delivered/read/failed callback with the outbound log."""
    wamid = status_data.get("id")
    status = status_data.get("status")
    if not wamid or not status:
        return False
    failure_reason = failure_reason_from(status_data) if status == "failed" else None
    if failure_reason:
        logger.warning(f"Message {wamid} failed: {failure_reason}")
    return await db_service.update_message_status(wamid, status, failure_reason)
