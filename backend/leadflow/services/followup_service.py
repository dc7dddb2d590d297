# /leadflow/services/followup_service.py

"""
Follow-up scheduler.

A periodic sweep re-engages conversations that went quiet:

1. Stall prompt: "did an agent contact you?" (yes/no) for records with no
   confirmed agent contact, sent once per record after the stall delay.
2. Node nudges: a node may ask for a reminder when the customer has not
   answered it within its own delay.
3. Completion follow-up: a flow may ask, some time after END, whether the
   customer found what they were looking for (yes/no).

Yes/no replies come back through the conversation engine and are handled by
`resume_conversation`.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from leadflow.config import strings
from leadflow.config.settings import settings
from leadflow.models.conversation import ConversationRecord
from leadflow.models.domain import BusinessCredentials, InboundMessage, OutboundResult
from leadflow.models.flow import FlowGraph
from leadflow.services.db_service import db_service
from leadflow.services.flow_messenger import flow_messenger, resolve_credentials
from leadflow.services.flow_service import flow_service
from leadflow.utils.locks import ConversationLockTimeout, conversation_locks
from leadflow.utils.metrics import follow_ups_counter
from leadflow.workflows.engine import (
    apply_follow_up_answer,
    elapsed_at_least,
    follow_up_target,
    mark_ended,
    mark_node_sent,
    reopen,
    resolve_destination,
)
from leadflow.workflows.errors import FlowConfigurationError, NodeResolutionError

logger = logging.getLogger(__name__)


class FollowUpScheduler:
    def __init__(
        self,
        store=db_service,
        flows=flow_service,
        messenger=flow_messenger,
        locks=conversation_locks,
        stall_delay_minutes: int = settings.stall_follow_up_delay_minutes,
        node_default_delay_minutes: int = settings.node_follow_up_default_delay_minutes,
        completion_default_delay_minutes: int = settings.completion_follow_up_default_delay_minutes,
    ):
        self.store = store
        self.flows = flows
        self.messenger = messenger
        self.locks = locks
        self.stall_delay_minutes = stall_delay_minutes
        self.node_default_delay_minutes = node_default_delay_minutes
        self.completion_default_delay_minutes = completion_default_delay_minutes

    # ==================== Sweep ====================

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Runs all three follow-up passes once. Returns how many messages each
        pass sent. Failures are per record and never stop the sweep.
        """
        now = now or datetime.now(timezone.utc)
        credentials_cache: Dict[str, Optional[BusinessCredentials]] = {}

        sent = {
            "stall": await self._run_pass("stall", self._stall_candidates(now), self._send_stall_prompt, now, credentials_cache),
            "node": await self._run_pass("node", self.store.get_node_follow_up_candidates(), self._send_node_nudge, now, credentials_cache),
            "completion": await self._run_pass(
                "completion", self.store.get_completion_follow_up_candidates(), self._send_completion_follow_up, now, credentials_cache
            ),
        }
        logger.info(f"Follow-up sweep finished: {sent}")
        return sent

    def _stall_candidates(self, now: datetime):
        return self.store.get_stall_follow_up_candidates(now - timedelta(minutes=self.stall_delay_minutes))

    async def _run_pass(self, kind: str, candidates_query, handler, now: datetime, credentials_cache) -> int:
        try:
            candidates = await candidates_query
        except Exception:
            logger.error(f"Could not load {kind} follow-up candidates.", exc_info=True)
            return 0

        sent = 0
        for record in candidates:
            try:
                credentials = await self._credentials_for(record.business_number_id, credentials_cache)
                if credentials is None:
                    logger.warning(f"Skipping {kind} follow-up for {record.customer_phone}: no credentials for {record.business_number_id}")
                    follow_ups_counter.labels(kind=kind, status="no_credentials").inc()
                    continue
                async with self.locks.hold(record.business_number_id, record.customer_phone):
                    if await handler(record, credentials, now):
                        sent += 1
                        follow_ups_counter.labels(kind=kind, status="sent").inc()
            except ConversationLockTimeout:
                logger.warning(f"Conversation {record.id} busy, {kind} follow-up deferred to the next sweep.")
            except Exception:
                logger.error(f"Failed {kind} follow-up for conversation {record.id}", exc_info=True)
                follow_ups_counter.labels(kind=kind, status="error").inc()
        return sent

    async def _credentials_for(self, business_number_id: str, cache) -> Optional[BusinessCredentials]:
        if business_number_id not in cache:
            business = await self.store.get_business_number(business_number_id)
            cache[business_number_id] = resolve_credentials(business)
        return cache[business_number_id]

    async def _load_flow(self, record: ConversationRecord) -> Optional[FlowGraph]:
        flow_id = record.flow_id
        if not flow_id:
            business = await self.store.get_business_number(record.business_number_id)
            flow_id = business.active_flow_id if business else None
        try:
            return await self.flows.get_flow(flow_id)
        except FlowConfigurationError as e:
            logger.error(f"Flow unavailable for conversation {record.id}: {e}")
            return None

    async def _send_stall_prompt(self, record: ConversationRecord, credentials: BusinessCredentials, now: datetime) -> bool:
        # Claimed before sending; the flag stays set even if the send fails
        claimed = await self.store.claim_stall_follow_up(record.id, now)
        if claimed is None:
            return False
        await self.messenger.send_follow_up_question(credentials, claimed, strings.AGENT_CONTACT_FOLLOW_UP)
        return True

    async def _send_node_nudge(self, record: ConversationRecord, credentials: BusinessCredentials, now: datetime) -> bool:
        flow = await self._load_flow(record)
        if flow is None:
            return False
        node = flow.get(record.conversation_state)
        if node is None or not node.follow_up_enabled:
            return False
        delay = node.follow_up_delay_minutes or self.node_default_delay_minutes
        if not elapsed_at_least(record.last_node_sent_at, now, delay):
            return False

        current = await self.store.get_conversation(record.id)
        if (
            current is None
            or current.node_follow_up_sent
            or current.conversation_state != record.conversation_state
            or current.last_node_sent_at != record.last_node_sent_at
        ):
            return False

        current.node_follow_up_sent = True
        await self.store.set_conversation_flags(current.id, {"node_follow_up_sent": True})
        await self.messenger.send_text(
            credentials, current, node.follow_up_message or strings.NODE_FOLLOW_UP_DEFAULT, node_id=node.node_id
        )
        return True

    async def _send_completion_follow_up(self, record: ConversationRecord, credentials: BusinessCredentials, now: datetime) -> bool:
        flow = await self._load_flow(record)
        if flow is None or not flow.completion_follow_up_enabled:
            return False
        delay = flow.completion_follow_up_delay_minutes or self.completion_default_delay_minutes
        if not elapsed_at_least(record.ended_at, now, delay):
            return False

        current = await self.store.get_conversation(record.id)
        if current is None or current.completion_follow_up_sent or not current.is_ended:
            return False

        current.completion_follow_up_sent = True
        await self.store.set_conversation_flags(current.id, {"completion_follow_up_sent": True})
        await self.messenger.send_follow_up_question(
            credentials, current, flow.completion_follow_up_message or strings.COMPLETION_FOLLOW_UP_DEFAULT
        )
        return True

    # ==================== Resume ====================

    async def resume_conversation(
        self, message: InboundMessage, business_number_id: str, now: Optional[datetime] = None
    ) -> List[OutboundResult]:
        """
        Handles a followup_yes / followup_no tap. The caller holds the
        conversation lock.

        The answer is recorded, the conversation is reopened at the flow's
        yes/no target node and that node is sent. A repeated tap sends the
        same node again with the same resulting state.
        """
        now = now or datetime.now(timezone.utc)
        reply_id = message.reply.id
        kind = f"resume_{reply_id.split('_')[-1]}"

        record = await self.store.find_active_conversation(message.from_phone, business_number_id)
        if record is None:
            logger.warning(f"Follow-up reply from {message.from_phone} has no conversation to resume.")
            follow_ups_counter.labels(kind=kind, status="no_conversation").inc()
            return []

        apply_follow_up_answer(record, reply_id)

        business = await self.store.get_business_number(business_number_id)
        credentials = resolve_credentials(business)
        flow = await self._load_flow(record) if credentials else None
        target_id = follow_up_target(flow, reply_id) if flow else None

        if not target_id:
            await self.store.save_conversation(record, now)
            logger.warning(f"Recorded {reply_id} for {message.from_phone}, but there is no node to resume at.")
            follow_ups_counter.labels(kind=kind, status="no_target").inc()
            return []

        try:
            destination = resolve_destination(flow, target_id, record)
        except NodeResolutionError as e:
            await self.store.save_conversation(record, now)
            logger.error(f"Cannot resume {message.from_phone} at {target_id}: {e}")
            follow_ups_counter.labels(kind=kind, status="node_resolution_failed").inc()
            return []

        reopen(record)
        if destination.is_end:
            end_node = mark_ended(record, flow, now)
            await self.store.save_conversation(record, now)
            follow_ups_counter.labels(kind=kind, status="resumed").inc()
            if end_node is None:
                return []
            return [await self.messenger.send_node(credentials, record, end_node)]

        mark_node_sent(record, destination.node_id, now)
        await self.store.save_conversation(record, now)
        follow_ups_counter.labels(kind=kind, status="resumed").inc()
        logger.info(f"Resumed {message.from_phone} at {destination.node_id} after {reply_id}.")
        return [await self.messenger.send_node(credentials, record, destination.node)]


# Globally accessible instance
follow_up_scheduler = FollowUpScheduler()
