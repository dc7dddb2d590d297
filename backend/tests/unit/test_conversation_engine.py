# backend/tests/unit/test_conversation_engine.py
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock

from leadflow.config import strings
from leadflow.models.domain import BusinessNumber
from leadflow.models.flow import END
from leadflow.services.conversation_service import ConversationEngine
from leadflow.services.flow_messenger import FlowMessenger
from leadflow.services.flow_service import FlowService
from leadflow.utils.locks import ConversationLocks
from leadflow.workflows.validator import build_flow_graph

BUSINESS_NUMBER_ID = "100200300"
CUSTOMER_PHONE = "971500000001"
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def minutes(n):
    return T0 + timedelta(minutes=n)


# --- Starting a conversation ---

@pytest.mark.asyncio
async def test_new_customer_gets_start_node_and_successor(engine, store, gateway, text_message):
    results = await engine.handle_inbound_message(text_message("hi"), BUSINESS_NUMBER_ID, now=T0)

    assert [r.node_id for r in results] == ["welcome", "ask_name"]
    assert all(r.delivered_to_gateway for r in results)
    record = store.only_record()
    assert record.conversation_state == "ask_name"
    assert record.created_at == T0
    assert record.last_node_sent_at == T0
    # Unknown placeholders render as empty text
    assert gateway.sent[0]["body"] == "Welcome to !"


@pytest.mark.asyncio
async def test_first_message_with_property_link_sets_project(engine, store, gateway, text_message):
    link = "https://example.com/properties/marina-heights-tower"
    await engine.handle_inbound_message(text_message(f"hi, interested in {link}"), BUSINESS_NUMBER_ID, now=T0)

    record = store.only_record()
    assert record.project_name == "Marina Heights Tower"
    assert record.page_url == link
    assert gateway.sent[0]["body"] == "Welcome to Marina Heights Tower!"


@pytest.mark.asyncio
async def test_no_active_flow_is_a_no_op(engine, store, gateway, text_message):
    store.business_numbers["555"] = BusinessNumber(phone_number_id="555", active_flow_id=None)

    assert await engine.handle_inbound_message(text_message("hi"), "555", now=T0) == []
    assert await engine.handle_inbound_message(text_message("hi"), "unknown-number", now=T0) == []
    assert store.records == {}
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_missing_flow_aborts_turn(engine, store, gateway, text_message):
    store.add_business_number(flow_id="deleted_flow")

    assert await engine.handle_inbound_message(text_message("hi"), BUSINESS_NUMBER_ID, now=T0) == []
    assert store.records == {}


@pytest.mark.asyncio
async def test_missing_access_token_aborts_turn(engine, store, gateway, text_message, monkeypatch):
    monkeypatch.delenv("LEADFLOW_UNSET_TOKEN", raising=False)
    store.add_business_number(token_env="LEADFLOW_UNSET_TOKEN")

    assert await engine.handle_inbound_message(text_message("hi"), BUSINESS_NUMBER_ID, now=T0) == []
    assert gateway.sent == []


# --- Field capture ---

@pytest.mark.asyncio
async def test_name_reply_is_stored_and_flow_advances(engine, store, gateway, text_message):
    await engine.handle_inbound_message(text_message("hi"), BUSINESS_NUMBER_ID, now=T0)
    gateway.clear()

    results = await engine.handle_inbound_message(text_message("  Sara  "), BUSINESS_NUMBER_ID, now=minutes(2))

    record = store.only_record()
    assert record.name == "Sara"
    assert record.conversation_state == "ask_email"
    assert [r.node_id for r in results] == ["ask_email"]
    assert results[0].body == "Thanks Sara, your email?"


@pytest.mark.asyncio
async def test_invalid_email_reprompts_without_advancing(engine, store, gateway, text_message):
    store.add_record(conversation_state="ask_email", name="Sara", created_at=T0, updated_at=T0)

    results = await engine.handle_inbound_message(text_message("not-an-email"), BUSINESS_NUMBER_ID, now=minutes(1))

    assert len(results) == 1
    assert results[0].body == strings.INVALID_EMAIL_PROMPT
    record = store.only_record()
    assert record.email is None
    assert record.conversation_state == "ask_email"


@pytest.mark.asyncio
async def test_valid_email_is_stored_and_advances(engine, store, gateway, text_message):
    store.add_record(conversation_state="ask_email", name="Sara", created_at=T0, updated_at=T0)

    await engine.handle_inbound_message(text_message("a@b.com"), BUSINESS_NUMBER_ID, now=minutes(1))

    record = store.only_record()
    assert record.email == "a@b.com"
    assert record.conversation_state == "ask_budget"
    assert gateway.sent[-1]["kind"] == "buttons"
    assert [b[0] for b in gateway.sent[-1]["buttons"]] == ["ask_bedrooms", "priority_callback"]


@pytest.mark.asyncio
async def test_email_is_lower_cased(engine, store, text_message):
    store.add_record(conversation_state="ask_email", created_at=T0, updated_at=T0)

    await engine.handle_inbound_message(text_message(" Sara@Example.COM "), BUSINESS_NUMBER_ID, now=minutes(1))

    assert store.only_record().email == "sara@example.com"


@pytest.mark.asyncio
async def test_skip_keyword_clears_field_and_advances(engine, store, text_message):
    store.add_record(conversation_state="ask_email", created_at=T0, updated_at=T0)

    await engine.handle_inbound_message(text_message("SKIP"), BUSINESS_NUMBER_ID, now=minutes(1))

    record = store.only_record()
    assert record.email == ""
    assert record.conversation_state == "ask_budget"


@pytest.mark.asyncio
async def test_button_reply_stores_title_and_follows_reply_id(engine, store, gateway, button_reply):
    store.add_record(conversation_state="ask_budget", created_at=T0, updated_at=T0)

    results = await engine.handle_inbound_message(button_reply("ask_bedrooms", "Under 1M"), BUSINESS_NUMBER_ID, now=minutes(1))

    record = store.only_record()
    assert record.budget == "Under 1M"
    assert record.conversation_state == "ask_bedrooms"
    assert results[0].message_type == "list"
    assert gateway.sent[-1]["rows"] == [END, "priority_callback"]


@pytest.mark.asyncio
async def test_list_reply_to_end_sends_end_message_once(engine, store, gateway, list_reply):
    store.add_record(conversation_state="ask_bedrooms", name="Sara", created_at=T0, updated_at=T0)

    results = await engine.handle_inbound_message(list_reply(END, "1-2 BR"), BUSINESS_NUMBER_ID, now=minutes(3))

    record = store.only_record()
    assert record.bedrooms == "1-2 BR"
    assert record.conversation_state == END
    assert record.ended_at == minutes(3)
    assert record.end_message_sent is True
    assert [r.body for r in results] == ["Thank you Sara, we will be in touch."]


@pytest.mark.asyncio
async def test_end_message_is_not_repeated(engine, store, gateway, text_message):
    store.add_record(conversation_state="priority_callback", end_message_sent=True, created_at=T0, updated_at=T0)

    results = await engine.handle_inbound_message(text_message("ok"), BUSINESS_NUMBER_ID, now=minutes(5))

    record = store.only_record()
    assert results == []
    assert record.conversation_state == END
    assert record.ended_at == minutes(5)


@pytest.mark.asyncio
async def test_linear_text_path_walks_next_node_ids_to_end(make_engine, store, gateway, text_message):
    graph = build_flow_graph(
        {"flow_id": "linear", "start_node_id": "intro"},
        [
            {"node_id": "intro", "message_type": "text", "message_text": "Hello", "next_node_id": "q1"},
            {"node_id": "q1", "message_type": "text", "message_text": "Budget?", "save_to_field": "budget", "next_node_id": "q2"},
            {"node_id": "q2", "message_type": "text", "message_text": "Bedrooms?", "save_to_field": "bedrooms", "next_node_id": "q3"},
            {"node_id": "q3", "message_type": "text", "message_text": "When?", "save_to_field": "timeline", "next_node_id": END},
        ],
    )
    store.add_business_number(flow_id="linear")
    engine = make_engine(graph)

    await engine.handle_inbound_message(text_message("hi"), BUSINESS_NUMBER_ID, now=T0)
    assert store.only_record().conversation_state == "q1"

    for step, (answer, expected_state) in enumerate([("2M", "q2"), ("3", "q3"), ("soon", END)], start=1):
        await engine.handle_inbound_message(text_message(answer), BUSINESS_NUMBER_ID, now=minutes(step))
        assert store.only_record().conversation_state == expected_state

    record = store.only_record()
    assert (record.budget, record.bedrooms, record.extra_fields["timeline"]) == ("2M", "3", "soon")
    # No END node configured: nothing is sent on completion
    assert gateway.node_ids == ["intro", "q1", "q2", "q3"]


# --- Property links mid-conversation ---

@pytest.mark.asyncio
async def test_property_link_mid_flow_updates_project_without_advancing(engine, store, gateway, text_message):
    store.add_record(conversation_state="ask_email", created_at=T0, updated_at=T0)
    message = text_message("Is this one available? https://example.com/properties/marina-heights-tower")

    results = await engine.handle_inbound_message(message, BUSINESS_NUMBER_ID, now=minutes(1))

    record = store.only_record()
    assert results == []
    assert gateway.sent == []
    assert record.project_name == "Marina Heights Tower"
    assert record.page_url == "https://example.com/properties/marina-heights-tower"
    assert record.conversation_state == "ask_email"
    assert record.email is None


# --- Skip logic ---

@pytest.mark.asyncio
async def test_known_name_is_never_asked_again(engine, store, gateway, text_message):
    store.add_record(
        status="closed", name="Sara", conversation_state=END,
        created_at=T0 - timedelta(days=3), updated_at=T0 - timedelta(days=3),
    )

    results = await engine.handle_inbound_message(text_message("hi"), BUSINESS_NUMBER_ID, now=T0)

    record = await store.find_active_conversation(CUSTOMER_PHONE, BUSINESS_NUMBER_ID)
    assert record.skip_name is True
    assert record.skip_email is False
    assert [r.node_id for r in results] == ["welcome", "ask_email"]
    assert record.conversation_state == "ask_email"
    assert "ask_name" not in gateway.node_ids


@pytest.mark.asyncio
async def test_consecutive_known_fields_are_all_skipped(engine, store, gateway, text_message):
    store.add_record(
        status="closed", name="Sara", email="sara@example.com", conversation_state=END,
        created_at=T0 - timedelta(days=3), updated_at=T0 - timedelta(days=3),
    )

    results = await engine.handle_inbound_message(text_message("hi"), BUSINESS_NUMBER_ID, now=T0)

    assert [r.node_id for r in results] == ["welcome", "ask_budget"]
    assert len(store.records) == 2


@pytest.mark.asyncio
async def test_skippable_current_node_is_bypassed_without_capturing(engine, store, gateway, text_message):
    store.add_record(conversation_state="ask_name", skip_name=True, created_at=T0, updated_at=T0)

    results = await engine.handle_inbound_message(text_message("hello"), BUSINESS_NUMBER_ID, now=minutes(1))

    record = store.only_record()
    assert record.name is None
    assert record.conversation_state == "ask_email"
    assert [r.node_id for r in results] == ["ask_email"]


# --- Cool-off and restart ---

@pytest.mark.asyncio
async def test_message_during_cool_off_is_dropped(engine, store, gateway, text_message):
    store.add_record(
        conversation_state=END, end_message_sent=True, ended_at=T0,
        created_at=T0 - timedelta(hours=2), updated_at=T0,
    )

    results = await engine.handle_inbound_message(text_message("hello again"), BUSINESS_NUMBER_ID, now=minutes(30))

    record = store.only_record()
    assert results == []
    assert gateway.sent == []
    assert record.conversation_state == END
    assert record.updated_at == T0


@pytest.mark.asyncio
async def test_message_after_cool_off_restarts_same_record(engine, store, gateway, text_message):
    store.add_record(
        conversation_state=END, end_message_sent=True, ended_at=T0, completion_follow_up_sent=True,
        created_at=T0 - timedelta(hours=2), updated_at=T0,
    )

    results = await engine.handle_inbound_message(text_message("hello again"), BUSINESS_NUMBER_ID, now=minutes(61))

    record = store.only_record()
    assert [r.node_id for r in results] == ["welcome", "ask_name"]
    assert record.conversation_state == "ask_name"
    assert record.end_message_sent is False
    assert record.ended_at is None
    assert record.completion_follow_up_sent is False


@pytest.mark.asyncio
async def test_restart_sends_one_message_when_start_leads_to_end(make_engine, store, gateway, text_message):
    graph = build_flow_graph(
        {"flow_id": "short", "start_node_id": "hello"},
        [
            {"node_id": "hello", "message_type": "text", "message_text": "Hello!", "next_node_id": END},
            {"node_id": END, "message_type": "text", "message_text": "Bye"},
        ],
    )
    store.add_business_number(flow_id="short")
    store.add_record(
        flow_id="short", conversation_state=END, end_message_sent=True, ended_at=T0,
        created_at=T0 - timedelta(hours=2), updated_at=T0,
    )
    engine = make_engine(graph)

    results = await engine.handle_inbound_message(text_message("hi"), BUSINESS_NUMBER_ID, now=minutes(61))

    assert [r.node_id for r in results] == ["hello"]
    assert store.only_record().conversation_state == "hello"


# --- Follow-up replies ---

@pytest.mark.asyncio
async def test_follow_up_yes_reopens_at_configured_node(engine, store, gateway, button_reply):
    store.add_record(
        conversation_state=END, name="Sara", end_message_sent=True, ended_at=T0,
        created_at=T0 - timedelta(hours=1), updated_at=T0,
    )

    # Within the cool-off window: follow-up replies are still handled
    results = await engine.handle_inbound_message(button_reply("followup_yes", "Yes"), BUSINESS_NUMBER_ID, now=minutes(10))

    record = store.only_record()
    assert [r.body for r in results] == ["Glad we could help, Sara!"]
    assert record.agent_contacted is True
    assert record.conversation_state == "thanks_again"
    assert record.end_message_sent is False
    assert record.ended_at is None


@pytest.mark.asyncio
async def test_repeated_follow_up_yes_resends_same_node(engine, store, gateway, button_reply):
    store.add_record(conversation_state=END, ended_at=T0, end_message_sent=True, created_at=T0, updated_at=T0)

    first = await engine.handle_inbound_message(button_reply("followup_yes", "Yes"), BUSINESS_NUMBER_ID, now=minutes(10))
    state_after_first = store.only_record().conversation_state
    second = await engine.handle_inbound_message(button_reply("followup_yes", "Yes"), BUSINESS_NUMBER_ID, now=minutes(11))

    record = store.only_record()
    assert [r.node_id for r in first] == [r.node_id for r in second] == ["thanks_again"]
    assert gateway.node_ids == ["thanks_again", "thanks_again"]
    assert record.conversation_state == state_after_first == "thanks_again"
    assert record.agent_contacted is True


@pytest.mark.asyncio
async def test_follow_up_no_flags_attention_and_resumes(engine, store, gateway, button_reply):
    store.add_record(conversation_state=END, ended_at=T0, end_message_sent=True, created_at=T0, updated_at=T0)

    results = await engine.handle_inbound_message(button_reply("followup_no", "No"), BUSINESS_NUMBER_ID, now=minutes(90))

    record = store.only_record()
    assert record.agent_contacted is False
    assert record.needs_immediate_attention is True
    assert record.conversation_state == "ask_budget"
    assert [r.node_id for r in results] == ["ask_budget"]


@pytest.mark.asyncio
async def test_follow_up_reply_bypasses_current_question(engine, store, button_reply):
    store.add_record(conversation_state="ask_email", created_at=T0, updated_at=T0)

    await engine.handle_inbound_message(button_reply("followup_yes", "Yes"), BUSINESS_NUMBER_ID, now=minutes(50))

    record = store.only_record()
    assert record.email is None
    assert record.conversation_state == "thanks_again"


@pytest.mark.asyncio
async def test_follow_up_reply_without_conversation_is_ignored(engine, store, gateway, button_reply):
    results = await engine.handle_inbound_message(button_reply("followup_yes", "Yes"), BUSINESS_NUMBER_ID, now=T0)

    assert results == []
    assert store.records == {}
    assert gateway.sent == []


# --- Broken flows ---

@pytest.mark.asyncio
async def test_unknown_current_node_aborts_without_touching_record(engine, store, gateway, text_message):
    store.add_record(conversation_state="removed_node", created_at=T0, updated_at=T0)

    results = await engine.handle_inbound_message(text_message("hello"), BUSINESS_NUMBER_ID, now=minutes(5))

    record = store.only_record()
    assert results == []
    assert record.conversation_state == "removed_node"
    assert record.updated_at == T0


@pytest.mark.asyncio
async def test_stale_reply_id_keeps_captured_answer(engine, store, gateway, button_reply):
    store.add_record(conversation_state="ask_budget", created_at=T0, updated_at=T0)

    results = await engine.handle_inbound_message(button_reply("retired_node", "Under 1M"), BUSINESS_NUMBER_ID, now=minutes(5))

    record = store.only_record()
    assert results == []
    assert record.budget == "Under 1M"
    assert record.conversation_state == "ask_budget"


@pytest.mark.asyncio
async def test_dangling_option_only_fails_the_turn_that_reaches_it(
    store, gateway, follow_ups, flow_docs, text_message, list_reply
):
    flow_doc, node_docs = flow_docs
    bedrooms = next(doc for doc in node_docs if doc["node_id"] == "ask_bedrooms")
    bedrooms["list_sections"][0]["rows"].append({"title": "Penthouse", "next_node_id": "retired_node"})
    flow_store = MagicMock()
    flow_store.get_flow_document = AsyncMock(return_value=flow_doc)
    flow_store.get_flow_nodes = AsyncMock(return_value=node_docs)
    engine = ConversationEngine(
        store=store, flows=FlowService(flow_store), messenger=FlowMessenger(gateway),
        locks=ConversationLocks(None), follow_ups=follow_ups, quiet_period_minutes=60,
    )
    store.add_record(customer_phone="971500000002", conversation_state="ask_bedrooms", created_at=T0, updated_at=T0)

    results = await engine.handle_inbound_message(text_message("hi"), BUSINESS_NUMBER_ID, now=T0)
    assert [r.node_id for r in results] == ["welcome", "ask_name"]

    stuck = await engine.handle_inbound_message(
        list_reply("retired_node", "Penthouse", phone="971500000002"), BUSINESS_NUMBER_ID, now=minutes(1)
    )
    assert stuck == []
    other = await store.find_active_conversation("971500000002", BUSINESS_NUMBER_ID)
    assert other.bedrooms == "Penthouse"
    assert other.conversation_state == "ask_bedrooms"

    results = await engine.handle_inbound_message(text_message("Sara"), BUSINESS_NUMBER_ID, now=minutes(2))
    assert [r.node_id for r in results] == ["ask_email"]


# --- Serialisation ---

@pytest.mark.asyncio
async def test_concurrent_messages_for_one_customer_are_serialised(engine, store, gateway, text_message):
    store.add_record(conversation_state="ask_name", created_at=T0, updated_at=T0)

    await asyncio.gather(
        engine.handle_inbound_message(text_message("Sara"), BUSINESS_NUMBER_ID, now=minutes(1)),
        engine.handle_inbound_message(text_message("sara@example.com"), BUSINESS_NUMBER_ID, now=minutes(1)),
    )

    record = store.only_record()
    assert record.name == "Sara"
    assert record.email == "sara@example.com"
    assert record.conversation_state == "ask_budget"
    assert gateway.node_ids == ["ask_email", "ask_budget"]
