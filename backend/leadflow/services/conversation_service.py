# /leadflow/services/conversation_service.py

import logging
from datetime import datetime, timezone
from typing import List, Optional

from leadflow.config import strings
from leadflow.config.settings import settings
from leadflow.models.conversation import ConversationRecord
from leadflow.models.domain import BusinessCredentials, InboundMessage, OutboundResult
from leadflow.models.flow import FlowGraph, TextNode
from leadflow.services.db_service import db_service
from leadflow.services.flow_messenger import flow_messenger, resolve_credentials
from leadflow.services.flow_service import flow_service
from leadflow.services.followup_service import follow_up_scheduler
from leadflow.utils.locks import ConversationLockTimeout, conversation_locks
from leadflow.utils.metrics import bot_turns_counter
from leadflow.workflows.engine import (
    CaptureOutcome,
    capture_text_answer,
    is_cool_off_active,
    is_skippable,
    mark_ended,
    mark_node_sent,
    plan_opening,
    reset_for_restart,
    resolve_destination,
    resolve_next_node_id,
    seed_skip_flags,
)
from leadflow.workflows.errors import FlowConfigurationError, NodeResolutionError
from leadflow.workflows.project_reference import extract_project_reference

logger = logging.getLogger(__name__)


class ConversationEngine:
    """
    Runs one inbound message through the customer's flow: decides the next
    node, persists the record, then sends. Every turn holds the conversation
    lock for its (business number, customer) pair.
    """

    def __init__(
        self,
        store=db_service,
        flows=flow_service,
        messenger=flow_messenger,
        locks=conversation_locks,
        follow_ups=follow_up_scheduler,
        quiet_period_minutes: int = settings.completion_quiet_period_minutes,
    ):
        self.store = store
        self.flows = flows
        self.messenger = messenger
        self.locks = locks
        self.follow_ups = follow_ups
        self.quiet_period_minutes = quiet_period_minutes

    async def handle_inbound_message(
        self, message: InboundMessage, business_number_id: str, now: Optional[datetime] = None
    ) -> List[OutboundResult]:
        now = now or datetime.now(timezone.utc)
        try:
            async with self.locks.hold(business_number_id, message.from_phone):
                return await self._handle_turn(message, business_number_id, now)
        except ConversationLockTimeout as e:
            logger.warning(f"Dropping message {message.message_id} from {message.from_phone}: {e}")
            bot_turns_counter.labels(outcome="lock_timeout").inc()
            return []

    async def _handle_turn(self, message: InboundMessage, business_number_id: str, now: datetime) -> List[OutboundResult]:
        phone = message.from_phone

        if message.is_follow_up_reply:
            self._outcome("follow_up_reply", phone, reply=message.reply.id)
            return await self.follow_ups.resume_conversation(message, business_number_id, now)

        business = await self.store.get_business_number(business_number_id)
        if not business or not business.active_flow_id:
            self._outcome("no_active_flow", phone, business_number_id=business_number_id)
            return []

        credentials = resolve_credentials(business)
        if credentials is None:
            self._outcome("no_credentials", phone, business_number_id=business_number_id)
            return []

        try:
            flow = await self.flows.get_flow(business.active_flow_id)
        except FlowConfigurationError as e:
            logger.error(f"Flow unavailable for {business_number_id}: {e}")
            self._outcome("flow_configuration_error", phone)
            return []

        record = await self.store.find_active_conversation(phone, business_number_id)

        try:
            if record is None:
                return await self._start(message, business_number_id, flow, credentials, now)

            if record.is_ended:
                if is_cool_off_active(record, now, self.quiet_period_minutes):
                    self._outcome("dropped_cool_off", phone)
                    return []
                return await self._restart(record, message, flow, credentials, now)

            return await self._advance(record, message, flow, credentials, now)
        except NodeResolutionError as e:
            logger.error(f"Node resolution failed for {phone} in flow {flow.flow_id}: {e}")
            self._outcome("node_resolution_failed", phone, node_id=e.node_id)
            return []

    # ---------------- Opening the flow ---------------- #

    async def _start(
        self, message: InboundMessage, business_number_id: str, flow: FlowGraph,
        credentials: BusinessCredentials, now: datetime
    ) -> List[OutboundResult]:
        prior = await self.store.find_latest_conversation(message.from_phone, business_number_id)
        skip_name, skip_email = seed_skip_flags(prior)

        record = ConversationRecord(
            customer_phone=message.from_phone,
            business_number_id=business_number_id,
            flow_id=flow.flow_id,
            conversation_state=flow.start_node_id,
            skip_name=skip_name,
            skip_email=skip_email,
            created_at=now,
            updated_at=now,
        )
        self._apply_project_reference(record, message)
        self._outcome("started", message.from_phone, skip_name=skip_name, skip_email=skip_email)
        return await self._open_flow(record, flow, credentials, now)

    async def _restart(
        self, record: ConversationRecord, message: InboundMessage, flow: FlowGraph,
        credentials: BusinessCredentials, now: datetime
    ) -> List[OutboundResult]:
        reset_for_restart(record, flow)
        self._apply_project_reference(record, message)
        self._outcome("restarted", message.from_phone)
        return await self._open_flow(record, flow, credentials, now)

    async def _open_flow(
        self, record: ConversationRecord, flow: FlowGraph, credentials: BusinessCredentials, now: datetime
    ) -> List[OutboundResult]:
        plan = plan_opening(flow, record)
        if plan[0].is_end:
            return await self._finish(record, flow, credentials, now)

        mark_node_sent(record, plan[-1].node_id, now)
        await self.store.save_conversation(record, now)

        results = []
        for destination in plan:
            results.append(await self.messenger.send_node(credentials, record, destination.node))
        return results

    # ---------------- Mid-flow turns ---------------- #

    async def _advance(
        self, record: ConversationRecord, message: InboundMessage, flow: FlowGraph,
        credentials: BusinessCredentials, now: datetime
    ) -> List[OutboundResult]:
        phone = message.from_phone

        reference = extract_project_reference(message.text) if not message.is_interactive else None
        if reference:
            record.project_name = reference.project_name
            record.page_url = reference.page_url
            await self.store.save_conversation(record, now)
            self._outcome("project_reference_captured", phone, project_name=reference.project_name)
            return []

        node = flow.get(record.conversation_state)
        if node is None:
            raise NodeResolutionError(record.conversation_state, f"not found in flow '{flow.flow_id}'")

        if is_skippable(node, record):
            self._outcome("field_skipped", phone, node_id=node.node_id)
            return await self._transition(record, flow, node.next_node_id, credentials, now)

        captured = False
        if isinstance(node, TextNode) and node.save_to_field:
            capture = capture_text_answer(node.save_to_field, message.text)
            if capture.outcome == CaptureOutcome.INVALID:
                self._outcome("validation_failed", phone, node_id=node.node_id, reason=capture.reason)
                return [await self.messenger.send_text(credentials, record, strings.INVALID_EMAIL_PROMPT)]

            record.set_field(capture.field, capture.value)
            if capture.outcome == CaptureOutcome.SKIPPED:
                self._outcome("answer_skipped", phone, node_id=node.node_id, field=capture.field)
                return await self._transition_keeping_capture(record, flow, node.next_node_id, credentials, now)
            captured = True

        if message.is_interactive and node.save_to_field:
            record.set_field(node.save_to_field, message.reply.title)
            captured = True

        next_id = resolve_next_node_id(message, node)
        if not next_id:
            if captured:
                await self.store.save_conversation(record, now)
            self._outcome("no_next_node", phone, node_id=node.node_id)
            return []

        if captured:
            return await self._transition_keeping_capture(record, flow, next_id, credentials, now)
        return await self._transition(record, flow, next_id, credentials, now)

    async def _transition_keeping_capture(
        self, record: ConversationRecord, flow: FlowGraph, target_id: Optional[str],
        credentials: BusinessCredentials, now: datetime
    ) -> List[OutboundResult]:
        """Like _transition, but answers captured this turn survive a dead-end destination."""
        try:
            return await self._transition(record, flow, target_id, credentials, now)
        except NodeResolutionError:
            await self.store.save_conversation(record, now)
            raise

    async def _transition(
        self, record: ConversationRecord, flow: FlowGraph, target_id: Optional[str],
        credentials: BusinessCredentials, now: datetime
    ) -> List[OutboundResult]:
        destination = resolve_destination(flow, target_id, record)
        if destination.is_end:
            return await self._finish(record, flow, credentials, now)

        mark_node_sent(record, destination.node_id, now)
        await self.store.save_conversation(record, now)
        self._outcome("advanced", record.customer_phone, node_id=destination.node_id, skipped=destination.skipped)
        return [await self.messenger.send_node(credentials, record, destination.node)]

    async def _finish(
        self, record: ConversationRecord, flow: FlowGraph, credentials: BusinessCredentials, now: datetime
    ) -> List[OutboundResult]:
        end_node = mark_ended(record, flow, now)
        await self.store.save_conversation(record, now)
        self._outcome("ended", record.customer_phone, end_message=end_node is not None)
        if end_node is None:
            return []
        return [await self.messenger.send_node(credentials, record, end_node)]

    # ---------------- Helpers ---------------- #

    @staticmethod
    def _apply_project_reference(record: ConversationRecord, message: InboundMessage):
        reference = extract_project_reference(message.text) if not message.is_interactive else None
        if reference:
            record.project_name = reference.project_name
            record.page_url = reference.page_url

    @staticmethod
    def _outcome(outcome: str, phone: str, **context):
        bot_turns_counter.labels(outcome=outcome).inc()
        details = " ".join(f"{k}={v}" for k, v in context.items())
        logger.info(f"Turn for {phone}: {outcome} {details}".rstrip())


# Globally accessible instance
conversation_engine = ConversationEngine()
