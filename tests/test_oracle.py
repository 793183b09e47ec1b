"""Tests for oracle prompt construction and the Ollama chat adapter."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import ollama
import pytest

from intake.agents.models import DISCLAIMER, ExtractionPayload, Role, Turn, TurnKind
from intake.agents.oracle import (
    SENTINEL_INIT,
    OllamaOracle,
    build_conversation_window,
    build_system_context,
    schema_snapshot,
)
from intake.agents.reconciler import reconcile
from intake.agents.response_parser import DELIMITER, parse
from intake.core.criteria_schema import load_registry
from intake.core.errors import OracleUnavailable
from intake.documents.store import DocumentSearch

CORE_PATH = Path(__file__).resolve().parent.parent / "criteria_specs" / "o1_core_v1.yaml"


@pytest.fixture(scope="module")
def registry():
    return load_registry(CORE_PATH)


def _resp(content="Hello!", tool_calls=None):
    resp = MagicMock()
    resp.message.content = content
    resp.message.tool_calls = tool_calls
    return resp


def _tool_call(query):
    call = MagicMock()
    call.function.name = "search_documents"
    call.function.arguments = {"query": query}
    return call


def _user(text, kind=TurnKind.MESSAGE):
    return Turn(role=Role.USER, content=text, kind=kind)


# ── Prompt Construction ──────────────────────────────────────────────


def test_system_context_embeds_schema_and_state(registry):
    payload = ExtractionPayload.model_validate(
        {"criteria_instances": [{"criteria_id": "membership", "description": "YC", "fields": {"date_selected": "2019"}}]}
    )
    state = reconcile({}, payload, registry).instances
    ctx = build_system_context(registry, state)

    assert DELIMITER in ctx
    assert '"critical_role"' in ctx
    assert "Last 4 paystubs" in ctx
    assert '"date_selected": "2019"' in ctx


def test_system_context_turn_notes(registry):
    assert SENTINEL_INIT in build_system_context(registry, {}, TurnKind.GREETING)
    assert "[Uploaded:" in build_system_context(registry, {}, TurnKind.UPLOAD)


def test_system_context_steers_toward_touched_criterion(registry):
    payload = ExtractionPayload.model_validate(
        {"criteria_instances": [{"criteria_id": "membership", "description": "YC", "fields": {"date_selected": "2019"}}]}
    )
    state = reconcile({}, payload, registry).instances
    ctx = build_system_context(registry, state)
    missing = state["membership"].missing_fields

    assert f"(membership) is still missing {', '.join(missing[:2])}" in ctx
    assert "(critical_role) is still missing" not in ctx


def test_system_context_steers_toward_first_criterion_when_empty(registry):
    ctx = build_system_context(registry, {})
    first = registry.all()[0]
    assert f"FOCUS NEXT: {first.display_name} ({first.id})" in ctx


def test_system_context_focus_only_on_message_turns(registry):
    assert "FOCUS NEXT" not in build_system_context(registry, {}, TurnKind.GREETING)
    assert "FOCUS NEXT" not in build_system_context(registry, {}, TurnKind.UPLOAD)


def test_system_context_requests_assessment_with_disclaimer(registry):
    ctx = build_system_context(registry, {})
    assert '"classification_guess"' in ctx
    assert DISCLAIMER in ctx


def test_schema_snapshot_lists_every_field(registry):
    snap = schema_snapshot(registry)
    assert [c["criteria_id"] for c in snap] == [c.id for c in registry.all()]
    assert [f["name"] for f in snap[0]["fields"]] == registry.get("critical_role").field_names


def test_conversation_window_is_bounded():
    turns = [_user(f"msg {i}") for i in range(20)]
    window = build_conversation_window(turns, window=4)
    assert [m["content"] for m in window] == ["msg 16", "msg 17", "msg 18", "msg 19"]
    assert build_conversation_window(turns, window=0) == []


# ── Ollama Calls ─────────────────────────────────────────────────────


def test_extract_sends_system_window_and_latest(registry):
    client = MagicMock()
    client.chat.return_value = _resp("Hi there")
    oracle = OllamaOracle(model="test-model", client=client, window=2)
    history = [_user("one"), Turn(role=Role.ASSISTANT, content="two"), _user("three")]

    response = oracle.extract(registry, {}, history, _user("four"))

    assert response.raw_text == "Hi there"
    assert response.model == "test-model"
    kwargs = client.chat.call_args.kwargs
    messages = kwargs["messages"]
    assert messages[0]["role"] == "system"
    assert [m["content"] for m in messages[1:]] == ["two", "three", "four"]
    assert kwargs["options"] == {"temperature": 0}
    assert kwargs["tools"] is None


def test_transport_error_retried_then_succeeds(registry):
    client = MagicMock()
    client.chat.side_effect = [httpx.ConnectError("refused"), _resp("ok")]
    oracle = OllamaOracle(client=client, retries=1)

    response = oracle.extract(registry, {}, [], _user("hi"))

    assert response.raw_text == "ok"
    assert client.chat.call_count == 2


def test_exhausted_retries_raise_unavailable(registry):
    client = MagicMock()
    client.chat.side_effect = httpx.ReadTimeout("timed out")
    oracle = OllamaOracle(client=client, retries=1)

    with pytest.raises(OracleUnavailable):
        oracle.extract(registry, {}, [], _user("hi"))
    assert client.chat.call_count == 2


def test_client_error_not_retried(registry):
    client = MagicMock()
    client.chat.side_effect = ollama.ResponseError("model not found", 404)
    oracle = OllamaOracle(client=client, retries=2)

    with pytest.raises(OracleUnavailable, match="model not found"):
        oracle.extract(registry, {}, [], _user("hi"))
    assert client.chat.call_count == 1


def test_server_error_retried(registry):
    client = MagicMock()
    client.chat.side_effect = [ollama.ResponseError("overloaded", 503), _resp("fine")]
    oracle = OllamaOracle(client=client, retries=1)
    assert oracle.extract(registry, {}, [], _user("hi")).raw_text == "fine"


def test_client_built_from_host_and_timeout():
    with patch("intake.agents.oracle.ollama.Client") as mock_client:
        OllamaOracle(host="http://gpu-box:11434", timeout=30.0)
    mock_client.assert_called_once_with(host="http://gpu-box:11434", timeout=30.0)


# ── Document Search Tool ─────────────────────────────────────────────


def test_tool_call_resolved_with_document_search(registry):
    search = MagicMock(spec=DocumentSearch)
    search.search.return_value = []
    search.format_hits.return_value = "[o1_criteria_overview.md]\nEmployment in a critical capacity"

    client = MagicMock()
    client.chat.side_effect = [
        _resp("", tool_calls=[_tool_call("critical role definition")]),
        _resp(f"Thanks!\n{DELIMITER}\n" + json.dumps({"criteria_instances": []})),
    ]
    oracle = OllamaOracle(client=client)

    response = oracle.extract(registry, {}, [], _user("what counts?"), document_search=search)

    search.search.assert_called_once_with("critical role definition")
    assert response.tool_calls == 1
    assert response.raw_text.startswith("Thanks!")
    second_messages = client.chat.call_args_list[1].kwargs["messages"]
    assert second_messages[-1]["role"] == "tool"
    assert "critical capacity" in second_messages[-1]["content"]
    assert client.chat.call_args_list[0].kwargs["tools"][0]["function"]["name"] == "search_documents"


def test_tool_rounds_are_capped(registry):
    search = MagicMock(spec=DocumentSearch)
    search.search.return_value = []
    search.format_hits.return_value = "No matching passages found."

    client = MagicMock()
    client.chat.side_effect = [_resp("", tool_calls=[_tool_call("x y z")])] * 2 + [_resp("Done")]
    oracle = OllamaOracle(client=client, max_tool_rounds=2)

    response = oracle.extract(registry, {}, [], _user("hi"), document_search=search)

    assert response.raw_text == "Done"
    assert client.chat.call_count == 3
    assert client.chat.call_args_list[-1].kwargs["tools"] is None


# ── Live Ollama Tests ────────────────────────────────────────────────


@pytest.mark.ollama
def test_live_greeting_extracts_nothing(registry):
    """The greeting trigger must never produce stored fields."""
    oracle = OllamaOracle()
    response = oracle.extract(registry, {}, [], _user(SENTINEL_INIT, TurnKind.GREETING))
    message, payload = parse(response.raw_text)

    assert message
    result = reconcile({}, payload, registry, TurnKind.GREETING)
    assert result.instances == {}


@pytest.mark.ollama
def test_live_extracts_start_date(registry):
    """A clear statement should land in critical_role.start_date."""
    oracle = OllamaOracle()
    response = oracle.extract(
        registry, {}, [], _user("I started as CTO at Acme Inc in March 2022.")
    )
    _, payload = parse(response.raw_text)
    result = reconcile({}, payload, registry)

    inst = result.instances["critical_role"]
    assert inst.field("start_date").value in ("2022-03", "2022-03-01")
    assert inst.field("key_responsibilities").value is None
