# /leadflow/workflows/engine.py

"""
Pure decision functions for the conversation state machine.

This module decides, from a flow graph, a conversation record and an inbound
message, where the conversation goes next. The effectful shell
(persistence, locking, sending) lives in services/conversation_service.py.

All functions are:
- Pure (no side effects on anything but their return values)
- Deterministic (same input = same output)
- No database writes
- No message sending
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, NamedTuple, Optional, Tuple

from leadflow.models.conversation import ConversationRecord
from leadflow.models.domain import InboundMessage
from leadflow.models.flow import END, FOLLOWUP_NO, FOLLOWUP_YES, FlowGraph, Node
from leadflow.workflows.errors import NodeResolutionError
from leadflow.workflows.validator import normalize_email, validate_email

SKIP_KEYWORD = "skip"


class CaptureOutcome(str, Enum):
    STORED = "stored"
    SKIPPED = "skipped"
    INVALID = "invalid"


class FieldCapture(NamedTuple):
    outcome: CaptureOutcome
    field: str
    value: Optional[str]
    reason: Optional[str] = None


class Destination(NamedTuple):
    """Where a transition lands after skip resolution. `node` is None for END."""
    node_id: str
    node: Optional[Node]
    skipped: List[str]

    @property
    def is_end(self) -> bool:
        return self.node_id == END


def as_utc(value: datetime) -> datetime:
    # Mongo hands back naive datetimes unless the client is tz-aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def elapsed_at_least(since: Optional[datetime], now: datetime, minutes: int) -> bool:
    if since is None:
        return False
    return as_utc(now) - as_utc(since) >= timedelta(minutes=minutes)


def is_cool_off_active(record: ConversationRecord, now: datetime, quiet_period_minutes: int) -> bool:
    """True while an ended conversation is still inside its completion quiet period."""
    return record.is_ended and not elapsed_at_least(record.updated_at, now, quiet_period_minutes)


def seed_skip_flags(prior: Optional[ConversationRecord]) -> Tuple[bool, bool]:
    """(skip_name, skip_email) for a new record, from the customer's latest earlier record."""
    if prior is None:
        return False, False
    return bool(prior.name), bool(prior.email)


def is_skippable(node: Node, record: ConversationRecord) -> bool:
    field = (node.save_to_field or "").lower()
    if field == "name":
        return record.skip_name
    if field == "email":
        return record.skip_email
    return False


def capture_text_answer(field: str, text: Optional[str]) -> FieldCapture:
    """
    Interpret a free-text reply to a field prompt.

    "skip" (any case) clears the field; email must look like local@domain and
    is stored lower-cased; anything else is stored trimmed.
    """
    answer = (text or "").strip()

    if answer.lower() == SKIP_KEYWORD:
        return FieldCapture(CaptureOutcome.SKIPPED, field, "")

    if field.lower() == "email":
        result = validate_email(answer)
        if not result["is_valid"]:
            return FieldCapture(CaptureOutcome.INVALID, field, None, result["message"])
        return FieldCapture(CaptureOutcome.STORED, field, normalize_email(answer))

    return FieldCapture(CaptureOutcome.STORED, field, answer)


def resolve_next_node_id(message: InboundMessage, node: Node) -> Optional[str]:
    """
    Interactive replies carry the next node id as their reply id; any other
    reply follows the node's linear next_node_id.
    """
    if message.is_interactive:
        return message.reply.id
    return node.next_node_id


def resolve_destination(flow: FlowGraph, target_id: Optional[str], record: ConversationRecord) -> Destination:
    """
    Follow `target_id` through every consecutive node the customer has already
    answered (skip_name / skip_email) and return the first node that must be
    sent, or END.

    Raises NodeResolutionError for unknown ids, skippable nodes with no
    continuation, and skip chains that loop.
    """
    skipped: List[str] = []
    current_id = target_id

    while True:
        if not current_id:
            raise NodeResolutionError(skipped[-1] if skipped else None, "no next node id")
        if current_id == END:
            return Destination(END, None, skipped)

        node = flow.get(current_id)
        if node is None:
            raise NodeResolutionError(current_id, f"not found in flow '{flow.flow_id}'")
        if not is_skippable(node, record):
            return Destination(current_id, node, skipped)

        if current_id in skipped:
            raise NodeResolutionError(current_id, "skip chain loops")
        skipped.append(current_id)
        current_id = node.next_node_id


# ---------------- Record transitions ---------------- #
# Mutate the record in memory only; the caller persists before sending.

def mark_node_sent(record: ConversationRecord, node_id: str, now: datetime) -> None:
    record.conversation_state = node_id
    record.last_node_sent_at = now
    record.node_follow_up_sent = False


def mark_ended(record: ConversationRecord, flow: FlowGraph, now: datetime) -> Optional[Node]:
    """
    Moves the record to END and stamps ended_at. Returns the END node when its
    message still has to be sent (at most once per conversation lifetime).
    """
    record.conversation_state = END
    record.ended_at = now
    end_node = flow.end_node
    if end_node is None or record.end_message_sent:
        return None
    record.end_message_sent = True
    return end_node


def reopen(record: ConversationRecord) -> None:
    record.end_message_sent = False
    record.ended_at = None


def reset_for_restart(record: ConversationRecord, flow: FlowGraph) -> None:
    """Reuses an ended record for a fresh pass through the flow."""
    reopen(record)
    record.conversation_state = flow.start_node_id
    record.flow_id = flow.flow_id
    record.completion_follow_up_sent = False
    record.node_follow_up_sent = False


def apply_follow_up_answer(record: ConversationRecord, reply_id: str) -> None:
    if reply_id == FOLLOWUP_YES:
        record.agent_contacted = True
    elif reply_id == FOLLOWUP_NO:
        record.agent_contacted = False
        record.needs_immediate_attention = True
    else:
        raise ValueError(f"Not a follow-up reply id: {reply_id}")


def follow_up_target(flow: FlowGraph, reply_id: str) -> Optional[str]:
    if reply_id == FOLLOWUP_YES:
        return flow.completion_follow_up_yes_node_id
    return flow.completion_follow_up_no_node_id


def plan_opening(flow: FlowGraph, record: ConversationRecord) -> List[Destination]:
    """
    Nodes to send when a conversation starts or restarts: the start node and,
    when it continues linearly to something other than END, its successor.
    Already-answered name/email nodes are skipped on both hops.
    """
    first = resolve_destination(flow, flow.start_node_id, record)
    if first.is_end:
        return [first]

    successor_id = first.node.next_node_id
    if not successor_id or successor_id == END:
        return [first]

    second = resolve_destination(flow, successor_id, record)
    if second.is_end:
        return [first]
    return [first, second]
