import asyncio
import copy
import itertools
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock

# Load the test environment before any leadflow import so Settings validates.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test", override=True)

from leadflow.main import app  # noqa: E402
from leadflow.models.conversation import ConversationRecord  # noqa: E402
from leadflow.models.domain import BusinessNumber, InboundMessage, InteractiveReply  # noqa: E402
from leadflow.models.flow import END, FlowGraph  # noqa: E402
from leadflow.services.conversation_service import ConversationEngine  # noqa: E402
from leadflow.services.flow_messenger import FlowMessenger  # noqa: E402
from leadflow.services.followup_service import FollowUpScheduler  # noqa: E402
from leadflow.utils.locks import ConversationLocks  # noqa: E402
from leadflow.workflows.errors import FlowConfigurationError  # noqa: E402
from leadflow.workflows.validator import build_flow_graph  # noqa: E402

BUSINESS_NUMBER_ID = "100200300"
CUSTOMER_PHONE = "971500000001"
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

FLOW_DOC = {
    "flow_id": "villa_leads",
    "name": "Villa leads",
    "start_node_id": "welcome",
    "completion_follow_up_yes_node_id": "thanks_again",
    "completion_follow_up_no_node_id": "ask_budget",
    "completion_follow_up_enabled": True,
    "completion_follow_up_delay_minutes": 60,
}

NODE_DOCS = [
    {"node_id": "welcome", "message_type": "text",
     "message_text": "Welcome to {{projectName}}!", "next_node_id": "ask_name"},
    {"node_id": "ask_name", "message_type": "text", "message_text": "What is your name?",
     "save_to_field": "name", "next_node_id": "ask_email",
     "follow_up_enabled": True, "follow_up_delay_minutes": 15},
    {"node_id": "ask_email", "message_type": "text", "message_text": "Thanks {{name}}, your email?",
     "save_to_field": "email", "next_node_id": "ask_budget"},
    {"node_id": "ask_budget", "message_type": "buttons", "message_text": "Your budget?",
     "save_to_field": "budget",
     "buttons": [{"title": "Under 1M", "next_node_id": "ask_bedrooms"},
                 {"title": "Above 1M", "next_node_id": "priority_callback"}]},
    {"node_id": "ask_bedrooms", "message_type": "list", "message_text": "How many bedrooms?",
     "save_to_field": "bedrooms", "list_button_text": "Pick",
     "list_sections": [{"title": "Bedrooms", "rows": [
         {"title": "1-2 BR", "next_node_id": END},
         {"title": "3+ BR", "description": "Family homes", "next_node_id": "priority_callback"}]}]},
    {"node_id": "priority_callback", "message_type": "text",
     "message_text": "An agent will call you today.", "next_node_id": END},
    {"node_id": "thanks_again", "message_type": "text",
     "message_text": "Glad we could help, {{name}}!", "next_node_id": END},
    {"node_id": END, "message_type": "text", "message_text": "Thank you {{name}}, we will be in touch."},
]


class InMemoryConversationStore:
    """Implements the db_service calls used by the engine and the scheduler."""

    def __init__(self):
        self.business_numbers: Dict[str, BusinessNumber] = {}
        self.records: Dict[str, ConversationRecord] = {}
        self._order: Dict[str, int] = {}
        self._ids = itertools.count(1)

    def add_business_number(self, phone_number_id=BUSINESS_NUMBER_ID, flow_id="villa_leads",
                            token_env="WHATSAPP_TOKEN_TEST"):
        self.business_numbers[phone_number_id] = BusinessNumber(
            phone_number_id=phone_number_id, active_flow_id=flow_id, access_token_env=token_env
        )

    def add_record(self, **fields) -> ConversationRecord:
        fields.setdefault("customer_phone", CUSTOMER_PHONE)
        fields.setdefault("business_number_id", BUSINESS_NUMBER_ID)
        fields.setdefault("flow_id", "villa_leads")
        record = ConversationRecord(**fields)
        self._store(record)
        return record.model_copy(deep=True)

    def only_record(self) -> ConversationRecord:
        assert len(self.records) == 1
        return next(iter(self.records.values())).model_copy(deep=True)

    def _store(self, record: ConversationRecord):
        if record.id is None:
            record.id = f"{next(self._ids):024x}"
            self._order[record.id] = len(self._order)
        self.records[record.id] = record.model_copy(deep=True)

    def _matching(self, phone, business_number_id, include_closed) -> List[ConversationRecord]:
        matches = [
            r for r in self.records.values()
            if r.customer_phone == phone and r.business_number_id == business_number_id
            and (include_closed or r.status != "closed")
        ]
        return sorted(matches, key=lambda r: (r.created_at, self._order[r.id]))

    async def get_business_number(self, phone_number_id):
        return self.business_numbers.get(phone_number_id)

    async def find_active_conversation(self, phone, business_number_id):
        await asyncio.sleep(0)
        matches = self._matching(phone, business_number_id, include_closed=False)
        return matches[-1].model_copy(deep=True) if matches else None

    async def find_latest_conversation(self, phone, business_number_id):
        matches = self._matching(phone, business_number_id, include_closed=True)
        return matches[-1].model_copy(deep=True) if matches else None

    async def get_conversation(self, record_id):
        record = self.records.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def insert_conversation(self, record):
        self._store(record)
        return record

    async def save_conversation(self, record, now=None):
        await asyncio.sleep(0)
        record.updated_at = now or datetime.now(timezone.utc)
        self._store(record)
        return record

    async def claim_stall_follow_up(self, record_id, now):
        record = self.records.get(record_id)
        if record is None or record.follow_up_sent:
            return None
        record.follow_up_sent = True
        record.follow_up_sent_at = now
        return record.model_copy(deep=True)

    async def set_conversation_flags(self, record_id, flags):
        record = self.records[record_id]
        for field, value in flags.items():
            setattr(record, field, value)

    async def get_stall_follow_up_candidates(self, cutoff):
        return [
            r.model_copy(deep=True) for r in self.records.values()
            if r.agent_contacted is not True and not r.follow_up_sent and r.created_at <= cutoff
        ]

    async def get_node_follow_up_candidates(self):
        return [
            r.model_copy(deep=True) for r in self.records.values()
            if r.conversation_state != END and not r.node_follow_up_sent
            and r.last_node_sent_at is not None and r.status != "closed"
        ]

    async def get_completion_follow_up_candidates(self):
        return [
            r.model_copy(deep=True) for r in self.records.values()
            if r.conversation_state == END and not r.completion_follow_up_sent
            and r.ended_at is not None and r.status != "closed"
        ]


class StaticFlowProvider:
    def __init__(self, *graphs: FlowGraph):
        self.graphs = {g.flow_id: g for g in graphs}

    async def get_flow(self, flow_id):
        if flow_id not in self.graphs:
            raise FlowConfigurationError(flow_id, "flow not found")
        return self.graphs[flow_id]


class RecordingGateway:
    """Stands in for WhatsAppService and remembers every send."""

    def __init__(self):
        self.sent: List[dict] = []
        self._wamids = itertools.count(1)

    def _record(self, **call) -> str:
        wamid = f"wamid.{next(self._wamids)}"
        self.sent.append({**call, "wamid": wamid})
        return wamid

    async def send_text(self, credentials, to_phone, body, node_id=None):
        return self._record(kind="text", to=to_phone, body=body, node_id=node_id)

    async def send_buttons(self, credentials, to_phone, body, buttons, node_id=None):
        return self._record(kind="buttons", to=to_phone, body=body, node_id=node_id,
                            buttons=[(b.id, b.title) for b in buttons])

    async def send_list(self, credentials, to_phone, body, button_text, sections, node_id=None):
        return self._record(kind="list", to=to_phone, body=body, node_id=node_id,
                            rows=[row["id"] for s in sections for row in s.rows])

    @property
    def node_ids(self) -> List[Optional[str]]:
        return [s["node_id"] for s in self.sent]

    def clear(self):
        self.sent.clear()


@pytest.fixture
def flow_docs():
    """Stored form of the test flow: (flow document, node documents)."""
    return copy.deepcopy(FLOW_DOC), copy.deepcopy(NODE_DOCS)


@pytest.fixture
def flow_graph() -> FlowGraph:
    return build_flow_graph(FLOW_DOC, NODE_DOCS)


@pytest.fixture
def store() -> InMemoryConversationStore:
    store = InMemoryConversationStore()
    store.add_business_number()
    return store


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def follow_ups(store, flow_graph, gateway) -> FollowUpScheduler:
    return FollowUpScheduler(
        store=store,
        flows=StaticFlowProvider(flow_graph),
        messenger=FlowMessenger(gateway),
        locks=ConversationLocks(None),
        stall_delay_minutes=45,
        node_default_delay_minutes=15,
        completion_default_delay_minutes=60,
    )


@pytest.fixture
def engine(store, flow_graph, gateway, follow_ups) -> ConversationEngine:
    return ConversationEngine(
        store=store,
        flows=StaticFlowProvider(flow_graph),
        messenger=FlowMessenger(gateway),
        locks=ConversationLocks(None),
        follow_ups=follow_ups,
        quiet_period_minutes=60,
    )


@pytest.fixture
def text_message():
    def _make(body: str, phone: str = CUSTOMER_PHONE, message_id: str = None) -> InboundMessage:
        return InboundMessage(message_id=message_id, from_phone=phone, kind="text", text=body, raw_type="text")
    return _make


@pytest.fixture
def button_reply():
    def _make(reply_id: str, title: str = "", phone: str = CUSTOMER_PHONE) -> InboundMessage:
        return InboundMessage(
            from_phone=phone, kind="interactive-button", text=title,
            reply=InteractiveReply(id=reply_id, title=title), raw_type="interactive",
        )
    return _make


@pytest.fixture
def list_reply():
    def _make(reply_id: str, title: str = "", phone: str = CUSTOMER_PHONE) -> InboundMessage:
        return InboundMessage(
            from_phone=phone, kind="interactive-list", text=title,
            reply=InteractiveReply(id=reply_id, title=title), raw_type="interactive",
        )
    return _make


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    TestClient for API tests. Startup index creation and shutdown cleanup are
    stubbed so no database is needed.
    """
    mocker.patch("leadflow.utils.lifecycle.db_service.create_indexes", new_callable=AsyncMock)
    mocker.patch("leadflow.utils.lifecycle.whatsapp_service.close", new_callable=AsyncMock)
    mocker.patch("leadflow.utils.lifecycle.cache_service.close", new_callable=AsyncMock)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def make_engine(store, gateway):
    """Builds an engine (and its scheduler) over custom flow graphs."""
    def _make(*graphs: FlowGraph, quiet_period_minutes: int = 60) -> ConversationEngine:
        flows = StaticFlowProvider(*graphs)
        messenger = FlowMessenger(gateway)
        locks = ConversationLocks(None)
        scheduler = FollowUpScheduler(store=store, flows=flows, messenger=messenger, locks=locks)
        return ConversationEngine(
            store=store, flows=flows, messenger=messenger, locks=locks,
            follow_ups=scheduler, quiet_period_minutes=quiet_period_minutes,
        )
    return _make
