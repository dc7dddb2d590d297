# /leadflow/services/whatsapp_service.py

import httpx
import logging
import re
import tenacity
from typing import Any, Dict, List, Optional

from leadflow.config.settings import settings
from leadflow.models.domain import BusinessCredentials, MessageLog, OutboundButton, OutboundListSection
from leadflow.utils.alerting import alerting_service
from leadflow.utils.metrics import outbound_messages_counter

logger = logging.getLogger(__name__)

# Cloud API limits for interactive messages
MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_LIST_ROWS = 10
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72
MAX_SECTION_TITLE = 24
MAX_INTERACTIVE_BODY = 1024
MAX_TEXT_BODY = 4096

# Outbound retry budget; conversation lock timings are sized from these
HTTP_TIMEOUT_SECONDS = 15.0
SEND_ATTEMPTS = 3
RETRY_MAX_WAIT_SECONDS = 10


class WhatsAppService:
    """
    Outbound gateway to the WhatsApp Cloud API. One instance serves every
    business number; credentials are passed per call.
    """

    def __init__(self, base_url: str, api_version: str):
        self.base_url = f"{base_url.rstrip('/')}/{api_version}"
        self.http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(SEND_ATTEMPTS),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=RETRY_MAX_WAIT_SECONDS),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING)
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await func(*args, **kwargs)

    @staticmethod
    def _clean_phone(phone: str) -> str:
        return re.sub(r"[^\d]", "", phone or "")

    async def send_whatsapp_request(
        self,
        credentials: BusinessCredentials,
        payload: Dict[str, Any],
        body: str,
        node_id: Optional[str] = None,
        interactive: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Posts one message and logs it. Returns the provider message id (wamid),
        or None if the message was not accepted.
        """
        to_phone = payload.get("to")
        message_type = payload.get("type", "text")
        if message_type == "interactive":
            message_type = (payload.get("interactive") or {}).get("type", "interactive")

        if not to_phone:
            logger.error(f"send_whatsapp_request_invalid_phone: {to_phone}")
            return None

        try:
            url = f"{self.base_url}/{credentials.phone_number_id}/messages"
            headers = {"Authorization": f"Bearer {credentials.access_token}", "Content-Type": "application/json"}
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)

            if response.status_code == 200:
                message_id = response.json().get("messages", [{}])[0].get("id")
                logger.info(f"WhatsApp message sent to {to_phone}, wamid: {message_id}")
                outbound_messages_counter.labels(message_type=message_type, status="sent").inc()

                if message_id:
                    from leadflow.services.db_service import db_service
                    await db_service.log_message(MessageLog(
                        wamid=message_id,
                        customer_phone=to_phone,
                        business_number_id=credentials.phone_number_id,
                        direction="outbound",
                        message_type=message_type,
                        body=body,
                        node_id=node_id,
                        interactive=interactive,
                        status="sent",
                    ))
                return message_id

            try:
                error_message = (response.json().get("error") or {}).get("message", "Unknown error")
            except ValueError:
                error_message = response.text
            logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
            outbound_messages_counter.labels(message_type=message_type, status="failed").inc()
            if response.status_code == 401:
                await alerting_service.send_critical_alert(
                    "WhatsApp authentication failed",
                    {"error": "Invalid access token", "phone_number_id": credentials.phone_number_id}
                )
            return None
        except Exception as e:
            logger.error(f"whatsapp_send_error to {to_phone}: {e}", exc_info=True)
            outbound_messages_counter.labels(message_type=message_type, status="error").inc()
            await alerting_service.send_critical_alert(
                "WhatsApp send message unexpected error", {"phone": to_phone, "error": str(e)}
            )
            return None

    async def send_text(
        self, credentials: BusinessCredentials, to_phone: str, body: str, node_id: Optional[str] = None
    ) -> Optional[str]:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": self._clean_phone(to_phone),
            "type": "text",
            "text": {"body": body[:MAX_TEXT_BODY]},
        }
        return await self.send_whatsapp_request(credentials, payload, body, node_id=node_id)

    async def send_buttons(
        self,
        credentials: BusinessCredentials,
        to_phone: str,
        body: str,
        buttons: List[OutboundButton],
        node_id: Optional[str] = None,
    ) -> Optional[str]:
        """Sends up to 3 reply buttons. Each button's id comes back as the reply id."""
        if len(buttons) > MAX_BUTTONS:
            logger.warning(f"Node {node_id} has {len(buttons)} buttons, only {MAX_BUTTONS} are sent.")
        reply_buttons = [
            {"type": "reply", "reply": {"id": b.id, "title": b.title[:MAX_BUTTON_TITLE]}}
            for b in buttons[:MAX_BUTTONS]
        ]
        action = {"buttons": reply_buttons}
        payload = {
            "messaging_product": "whatsapp",
            "to": self._clean_phone(to_phone),
            "type": "interactive",
            "interactive": {"type": "button", "body": {"text": body[:MAX_INTERACTIVE_BODY]}, "action": action},
        }
        return await self.send_whatsapp_request(credentials, payload, body, node_id=node_id, interactive=action)

    async def send_list(
        self,
        credentials: BusinessCredentials,
        to_phone: str,
        body: str,
        button_text: str,
        sections: List[OutboundListSection],
        node_id: Optional[str] = None,
    ) -> Optional[str]:
        """Sends a list message. Rows beyond the Cloud API's limit of 10 are dropped."""
        remaining = MAX_LIST_ROWS
        api_sections = []
        for section in sections:
            rows = []
            for row in section.rows[:remaining]:
                api_row = {"id": row["id"], "title": row["title"][:MAX_ROW_TITLE]}
                if row.get("description"):
                    api_row["description"] = row["description"][:MAX_ROW_DESCRIPTION]
                rows.append(api_row)
            remaining -= len(rows)
            if rows:
                api_sections.append({"title": (section.title or "")[:MAX_SECTION_TITLE], "rows": rows})
        if sum(len(s.rows) for s in sections) > MAX_LIST_ROWS:
            logger.warning(f"Node {node_id} list truncated to {MAX_LIST_ROWS} rows.")

        action = {"button": button_text[:MAX_BUTTON_TITLE], "sections": api_sections}
        payload = {
            "messaging_product": "whatsapp",
            "to": self._clean_phone(to_phone),
            "type": "interactive",
            "interactive": {"type": "list", "body": {"text": body[:MAX_INTERACTIVE_BODY]}, "action": action},
        }
        return await self.send_whatsapp_request(credentials, payload, body, node_id=node_id, interactive=action)

    async def close(self):
        await self.http_client.aclose()


# Globally accessible instance
whatsapp_service = WhatsAppService(settings.whatsapp_api_base_url, settings.whatsapp_api_version)
