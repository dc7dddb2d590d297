# /leadflow/services/flow_messenger.py

import logging
from typing import List, Optional

from leadflow.config import strings
from leadflow.config.settings import settings
from leadflow.models.conversation import ConversationRecord
from leadflow.models.domain import (
    BusinessCredentials,
    BusinessNumber,
    OutboundButton,
    OutboundListSection,
    OutboundResult,
)
from leadflow.models.flow import FOLLOWUP_NO, FOLLOWUP_YES, ButtonsNode, ListNode, Node
from leadflow.services.whatsapp_service import whatsapp_service
from leadflow.workflows.renderer import render_template

logger = logging.getLogger(__name__)


def resolve_credentials(business_number: Optional[BusinessNumber]) -> Optional[BusinessCredentials]:
    """Credentials for a business number, or None when its token is not configured."""
    if business_number is None:
        return None
    try:
        token = settings.get_access_token(business_number.access_token_env)
    except RuntimeError as e:
        logger.error(f"No credentials for business number {business_number.phone_number_id}: {e}")
        return None
    return BusinessCredentials(phone_number_id=business_number.phone_number_id, access_token=token)


class FlowMessenger:
    """Renders flow nodes for a conversation and hands them to the gateway."""

    def __init__(self, gateway=whatsapp_service):
        self.gateway = gateway

    async def send_node(self, credentials: BusinessCredentials, record: ConversationRecord, node: Node) -> OutboundResult:
        body = render_template(node.message_text, record.template_values())
        to = record.customer_phone

        if isinstance(node, ButtonsNode):
            buttons = self._buttons_for(node)
            message_id = await self.gateway.send_buttons(credentials, to, body, buttons, node_id=node.node_id)
        elif isinstance(node, ListNode):
            sections = self._sections_for(node)
            button_text = node.list_button_text or strings.DEFAULT_LIST_BUTTON_TEXT
            message_id = await self.gateway.send_list(credentials, to, body, button_text, sections, node_id=node.node_id)
        else:
            message_id = await self.gateway.send_text(credentials, to, body, node_id=node.node_id)

        return OutboundResult(
            to=to, node_id=node.node_id, message_type=node.message_type, body=body, message_id=message_id
        )

    async def send_text(
        self, credentials: BusinessCredentials, record: ConversationRecord, body: str, node_id: Optional[str] = None
    ) -> OutboundResult:
        rendered = render_template(body, record.template_values())
        message_id = await self.gateway.send_text(credentials, record.customer_phone, rendered, node_id=node_id)
        return OutboundResult(
            to=record.customer_phone, node_id=node_id, message_type="text", body=rendered, message_id=message_id
        )

    async def send_follow_up_question(
        self, credentials: BusinessCredentials, record: ConversationRecord, body: str
    ) -> OutboundResult:
        """Yes/no prompt whose replies carry the reserved follow-up ids."""
        rendered = render_template(body, record.template_values())
        buttons = [
            OutboundButton(id=FOLLOWUP_YES, title=strings.FOLLOW_UP_YES_TITLE),
            OutboundButton(id=FOLLOWUP_NO, title=strings.FOLLOW_UP_NO_TITLE),
        ]
        message_id = await self.gateway.send_buttons(credentials, record.customer_phone, rendered, buttons)
        return OutboundResult(
            to=record.customer_phone, message_type="buttons", body=rendered, message_id=message_id
        )

    @staticmethod
    def _buttons_for(node: ButtonsNode) -> List[OutboundButton]:
        buttons = []
        for button in node.buttons:
            if not button.reply_id:
                logger.warning(f"Button '{button.title}' on node {node.node_id} has no target or id. Skipping.")
                continue
            buttons.append(OutboundButton(id=button.reply_id, title=button.title))
        return buttons

    @staticmethod
    def _sections_for(node: ListNode) -> List[OutboundListSection]:
        sections = []
        for section in node.list_sections:
            rows = []
            for row in section.rows:
                if not row.reply_id:
                    logger.warning(f"List row '{row.title}' on node {node.node_id} has no target or id. Skipping.")
                    continue
                api_row = {"id": row.reply_id, "title": row.title}
                if row.description:
                    api_row["description"] = row.description
                rows.append(api_row)
            sections.append(OutboundListSection(title=section.title, rows=rows))
        return sections


# Globally accessible instance
flow_messenger = FlowMessenger(whatsapp_service)
