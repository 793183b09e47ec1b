"""Tests for splitting oracle output into message and structured payload."""

import json

import pytest

from intake.agents.models import DISCLAIMER, Classification, ExtractionPayload, Strength
from intake.agents.response_parser import (
    DELIMITER,
    find_balanced_json,
    load_payload,
    parse,
    render,
    strip_code_fences,
)
from intake.core.errors import MalformedOracleResponse

PAYLOAD = {
    "criteria_instances": [
        {
            "criteria_id": "critical_role",
            "criteria_name": "Critical Role",
            "description": "CTO at Acme",
            "fields": {"start_date": "2021-06"},
            "missing_fields": [],
            "complete": False,
        }
    ]
}


# ── Delimited Responses ──────────────────────────────────────────────


def test_parse_delimited():
    raw = f"Thanks! When did you start?\n{DELIMITER}\n{json.dumps(PAYLOAD)}"
    message, payload = parse(raw)
    assert message == "Thanks! When did you start?"
    assert payload.criteria_instances[0].criteria_id == "critical_role"
    assert payload.criteria_instances[0].fields == {"start_date": "2021-06"}


def test_parse_delimited_with_code_fences():
    raw = f"Got it.\n{DELIMITER}\n```json\n{json.dumps(PAYLOAD)}\n```"
    message, payload = parse(raw)
    assert message == "Got it."
    assert payload is not None


def test_parse_malformed_json_keeps_message():
    raw = f"Noted.\n{DELIMITER}\n{{\"criteria_instances\": [}}"
    message, payload = parse(raw)
    assert message == "Noted."
    assert payload is None


def test_parse_non_object_json():
    message, payload = parse(f"Hi\n{DELIMITER}\n[1, 2, 3]")
    assert message == "Hi"
    assert payload is None


def test_parse_schema_invalid_entry_dropped():
    bad = {"criteria_instances": [{"fields": {"x": 1}}]}
    message, payload = parse(f"Hi\n{DELIMITER}\n{json.dumps(bad)}")
    assert message == "Hi"
    assert payload.criteria_instances == []


def test_parse_keeps_valid_entries_beside_invalid_one():
    data = {
        "criteria_instances": [
            {"criteria_id": None, "fields": {"x": 1}},
            "not an object",
            PAYLOAD["criteria_instances"][0],
        ]
    }
    _, payload = parse(f"Hi\n{DELIMITER}\n{json.dumps(data)}")
    assert [i.criteria_id for i in payload.criteria_instances] == ["critical_role"]
    assert payload.criteria_instances[0].fields == {"start_date": "2021-06"}


def test_parse_scalar_missing_fields_tolerated():
    data = {
        "criteria_instances": [
            {"criteria_id": "membership", "fields": {"date_selected": "2020"}, "missing_fields": "none"},
            {"criteria_id": "awards", "fields": {"award_name": "Best Paper"}, "missing_fields": 3},
        ]
    }
    _, payload = parse(f"Noted.\n{DELIMITER}\n{json.dumps(data)}")
    assert [i.criteria_id for i in payload.criteria_instances] == ["membership", "awards"]
    assert payload.criteria_instances[0].missing_fields == []
    assert payload.criteria_instances[1].fields == {"award_name": "Best Paper"}


def test_parse_delimited_with_trailing_prose():
    raw = f"Got it.\n{DELIMITER}\n{json.dumps(PAYLOAD)}\nLet me know if anything changed!"
    message, payload = parse(raw)
    assert message == "Got it."
    assert payload.criteria_instances[0].criteria_id == "critical_role"


def test_parse_delimited_with_second_fence():
    raw = f"Got it.\n{DELIMITER}\n```json\n{json.dumps(PAYLOAD)}\n```\n```\n```"
    _, payload = parse(raw)
    assert payload is not None


# ── Fallback Without Delimiter ───────────────────────────────────────


def test_parse_plain_prose():
    message, payload = parse("  Hello! Tell me about your background.  ")
    assert message == "Hello! Tell me about your background."
    assert payload is None


def test_parse_trailing_json_without_delimiter():
    raw = f"Great, noted your start date.\n{json.dumps(PAYLOAD)}"
    message, payload = parse(raw)
    assert message == "Great, noted your start date."
    assert payload.criteria_instances[0].description == "CTO at Acme"


def test_parse_fenced_json_without_delimiter():
    raw = f"Great.\n```json\n{json.dumps(PAYLOAD)}\n```"
    message, payload = parse(raw)
    assert message == "Great."
    assert payload is not None


def test_parse_braces_that_are_not_json():
    raw = "Use the format {name} when you answer."
    message, payload = parse(raw)
    assert message == raw
    assert payload is None


def test_parse_empty():
    assert parse("") == ("", None)
    assert parse(None) == ("", None)


# ── Helpers ──────────────────────────────────────────────────────────


def test_find_balanced_json_ignores_braces_in_strings():
    text = 'x {"a": "}{", "b": {"c": 1}} y'
    start, end = find_balanced_json(text)
    assert json.loads(text[start:end]) == {"a": "}{", "b": {"c": 1}}


def test_find_balanced_json_unbalanced():
    assert find_balanced_json('{"a": 1') is None


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('{"a": 1}') == '{"a": 1}'


def test_load_payload_accepts_aliases():
    payload = load_payload(json.dumps({"criteria": {"criterion_id": "membership", "fields": None}}))
    assert payload.criteria_instances[0].criteria_id == "membership"
    assert payload.criteria_instances[0].fields == {}


def test_load_payload_list_form_fields():
    raw = {"criteria_instances": [{"criteria_id": "membership", "fields": [{"name": "date_selected", "value": "2020"}]}]}
    assert load_payload(json.dumps(raw)).criteria_instances[0].fields == {"date_selected": "2020"}


def test_load_payload_invalid():
    with pytest.raises(MalformedOracleResponse):
        load_payload("not json")


# ── Rendering ────────────────────────────────────────────────────────


def test_render_then_parse():
    payload = ExtractionPayload.model_validate(PAYLOAD)
    message, parsed = parse(render("Thanks!", payload))
    assert message == "Thanks!"
    assert parsed == payload


def test_render_without_payload():
    assert render("Just talking.", None) == "Just talking."


# ── Assessment Block ─────────────────────────────────────────────────


ASSESSMENT = {
    "top_criteria": [
        {
            "criterion_id": "critical_role",
            "criterion_name": "Critical Role",
            "strength": "Strong",
            "rationale": "CTO of a funded startup",
            "evidence": [{"file_id": None, "snippet": "CTO since 2021", "why_it_matters": "leadership"}],
            "gaps": "no org chart",
            "next_steps": ["Upload an org chart"],
        }
    ],
    "other_possible_criteria": [{"criterion_id": "awards", "strength": "excellent"}],
    "not_supported_yet": [{"criterion_id": "membership", "reason": "no evidence yet"}],
    "classification_guess": "o-1a",
}


def test_parse_assessment():
    data = {**PAYLOAD, "assessment": ASSESSMENT}
    _, payload = parse(f"Here is where you stand.\n{DELIMITER}\n{json.dumps(data)}")
    assessment = payload.assessment
    assert assessment.classification_guess == Classification.O1A
    top = assessment.top_criteria[0]
    assert top.strength == Strength.STRONG
    assert top.gaps == ["no org chart"]
    assert top.evidence[0].snippet == "CTO since 2021"
    assert assessment.other_possible_criteria[0].strength == Strength.WEAK
    assert assessment.disclaimer == DISCLAIMER
    assert assessment.criterion_ids() == ["critical_role", "awards", "membership"]


def test_parse_unusable_assessment_keeps_instances():
    data = {**PAYLOAD, "assessment": "strong case overall"}
    _, payload = parse(f"Noted.\n{DELIMITER}\n{json.dumps(data)}")
    assert payload.assessment is None
    assert payload.criteria_instances[0].criteria_id == "critical_role"


def test_parse_assessment_unknown_classification():
    data = {"criteria_instances": [], "assessment": {"classification_guess": "H-1B", "disclaimer": ""}}
    _, payload = parse(f"Noted.\n{DELIMITER}\n{json.dumps(data)}")
    assert payload.assessment.classification_guess == Classification.UNCLEAR
    assert payload.assessment.disclaimer == DISCLAIMER
