# /leadflow/models/domain.py

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from leadflow.models.flow import FOLLOWUP_NO, FOLLOWUP_YES

# Core models passed between the webhook layer, the engine and the gateway.

logger = logging.getLogger(__name__)

MessageKind = Literal["text", "interactive-button", "interactive-list", "other"]


class InteractiveReply(BaseModel):
    id: str
    title: str = ""


class InboundMessage(BaseModel):
    """A decoded inbound WhatsApp message, the engine's only input."""
    message_id: Optional[str] = None
    from_phone: str
    kind: MessageKind
    text: str = ""
    reply: Optional[InteractiveReply] = None
    raw_type: Optional[str] = None
    timestamp: Optional[datetime] = None

    @property
    def is_interactive(self) -> bool:
        return self.kind in ("interactive-button", "interactive-list") and self.reply is not None

    @property
    def is_follow_up_reply(self) -> bool:
        return (
            self.kind == "interactive-button"
            and self.reply is not None
            and self.reply.id in (FOLLOWUP_YES, FOLLOWUP_NO)
        )

    @classmethod
    def from_webhook(cls, message: Dict[str, Any]) -> Optional["InboundMessage"]:
        """
        Translates a raw Cloud API `messages[]` entry. Text bodies, selected
        reply titles and media captions all become `text`; unsupported kinds
        are returned with kind="other" so they can still be logged.
        """
        sender = message.get("from")
        if not sender:
            logger.warning(f"Webhook message {message.get('id')} has no sender. Skipping.")
            return None

        msg_type = message.get("type")
        kind: MessageKind = "other"
        text = ""
        reply = None

        if msg_type == "text":
            kind = "text"
            text = (message.get("text") or {}).get("body", "")
        elif msg_type == "interactive":
            interactive = message.get("interactive") or {}
            if interactive.get("button_reply"):
                kind = "interactive-button"
                reply = InteractiveReply(**interactive["button_reply"])
            elif interactive.get("list_reply"):
                kind = "interactive-list"
                reply = InteractiveReply(**interactive["list_reply"])
            if reply:
                text = reply.title
        elif msg_type == "button":
            text = (message.get("button") or {}).get("text", "")
        elif msg_type in ("image", "video", "audio", "document", "voice"):
            text = (message.get(msg_type) or {}).get("caption", "")
        elif msg_type == "reaction":
            text = (message.get("reaction") or {}).get("emoji", "")

        timestamp = None
        if message.get("timestamp"):
            try:
                timestamp = datetime.fromtimestamp(int(message["timestamp"]), tz=timezone.utc)
            except (TypeError, ValueError):
                logger.warning(f"Invalid timestamp on webhook message: {message.get('timestamp')}")

        return cls(
            message_id=message.get("id"),
            from_phone=sender,
            kind=kind,
            text=text or "",
            reply=reply,
            raw_type=msg_type,
            timestamp=timestamp,
        )


class BusinessCredentials(BaseModel):
    phone_number_id: str
    access_token: str


class BusinessNumber(BaseModel):
    """A business WhatsApp number and the flow it currently runs."""
    phone_number_id: str
    name: str = ""
    active_flow_id: Optional[str] = None
    access_token_env: Optional[str] = None


class OutboundResult(BaseModel):
    """One message the engine asked the gateway to send."""
    to: str
    node_id: Optional[str] = None
    message_type: str
    body: str
    message_id: Optional[str] = None

    @property
    def delivered_to_gateway(self) -> bool:
        return self.message_id is not None


class MessageLog(BaseModel):
    wamid: str
    customer_phone: str
    business_number_id: str
    direction: str  # "inbound" or "outbound"
    message_type: str
    body: str = ""
    node_id: Optional[str] = None
    interactive: Optional[Dict[str, Any]] = None
    status: Optional[str] = None
    failure_reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OutboundButton(BaseModel):
    id: str
    title: str


class OutboundListSection(BaseModel):
    title: str = ""
    rows: List[Dict[str, str]] = Field(default_factory=list)
