"""Extraction oracle adapter: prompt construction and Ollama chat calls.

The oracle is untrusted. This module only builds the context it sees and
returns its raw text; parsing and merging happen downstream.
"""

import json
import logging
from typing import Optional, Protocol

import httpx
import ollama
from pydantic import BaseModel, Field

from intake.agents.models import DISCLAIMER, CriterionInstance, Turn, TurnKind
from intake.agents.reconciler import next_focus
from intake.agents.response_parser import DELIMITER
from intake.core.criteria_schema import CriteriaRegistry, field_type_label
from intake.core.errors import OracleUnavailable
from intake.documents.store import DocumentSearch

logger = logging.getLogger(__name__)

MODEL = "qwen3:32b"
ORACLE_TIMEOUT = 120.0
DEFAULT_WINDOW = 12
MAX_TOOL_ROUNDS = 3

SENTINEL_INIT = "__init__"

SEARCH_TOOL = {
    "type": "function",
    "function": {
        "name": "search_documents",
        "description": (
            "Search the O-1 reference material and the user's uploaded evidence. "
            "Returns matching passages with their file names."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to look for"},
            },
            "required": ["query"],
        },
    },
}


# ── Request / Response ───────────────────────────────────────────────


class OracleRequest(BaseModel):
    system_context: str
    conversation_window: list[dict] = Field(default_factory=list)
    latest_user_content: str


class OracleResponse(BaseModel):
    raw_text: str
    model: str
    tool_calls: int = 0


class Oracle(Protocol):
    """What the conversation driver needs from an extraction oracle."""

    def extract(
        self,
        registry: CriteriaRegistry,
        instances: dict[str, CriterionInstance],
        turns: list[Turn],
        latest_turn: Turn,
        document_search: Optional[DocumentSearch] = None,
    ) -> OracleResponse: ...


# ── Prompt Builder ───────────────────────────────────────────────────


def schema_snapshot(registry: CriteriaRegistry) -> list[dict]:
    """The schema as the oracle sees it: ids, field names, types, hints."""
    out = []
    for c in registry.all():
        out.append(
            {
                "criteria_id": c.id,
                "criteria_name": c.display_name,
                "description_hint": c.description_hint,
                "fields": [
                    {
                        "name": f.name,
                        "type": f.type.value,
                        "format": field_type_label(f.type),
                        **({"hint": f.hint} if f.hint else {}),
                    }
                    for f in c.fields
                ],
            }
        )
    return out


def state_snapshot(registry: CriteriaRegistry, instances: dict[str, CriterionInstance]) -> list[dict]:
    """Current reconciled state in the same shape the oracle must echo back."""
    out = []
    for c in registry.all():
        inst = instances.get(c.id)
        if inst is None:
            continue
        out.append(
            {
                "criteria_id": inst.criterion_id,
                "criteria_name": inst.display_name,
                "description": inst.description,
                "fields": {f.name: f.value for f in inst.fields},
                "missing_fields": list(inst.missing_fields),
                "complete": inst.complete,
            }
        )
    return out


def build_system_context(
    registry: CriteriaRegistry,
    instances: dict[str, CriterionInstance],
    turn_kind: TurnKind = TurnKind.MESSAGE,
) -> str:
    """Build the system prompt embedding the schema and state as JSON."""
    schema_json = json.dumps(schema_snapshot(registry), indent=2)
    state_json = json.dumps(state_snapshot(registry, instances), indent=2)

    if turn_kind == TurnKind.GREETING:
        turn_note = (
            f'The latest user message is the internal trigger "{SENTINEL_INIT}". '
            "It is NOT something the user said. Greet the user warmly, explain in "
            "one or two sentences how you will help, and ask them to describe their "
            "background. Output an empty criteria_instances list."
        )
    elif turn_kind == TurnKind.UPLOAD:
        turn_note = (
            "The latest user message is an upload notice of the form "
            "[Uploaded: <file>, <file>]. It is evidence ONLY for file-type fields "
            '(record the files as "uploaded:<file>"). Do not fill text or date '
            "fields from it."
        )
    else:
        turn_note = (
            "Extract only what the user stated in the latest message. Fields not "
            "mentioned must be null."
        )
        focus = next_focus(instances, registry)
        if focus is not None:
            cid, names = focus
            turn_note += (
                f"\nFOCUS NEXT: {registry.get(cid).display_name} ({cid}) is still "
                f"missing {', '.join(names[:2])}. Unless the user raised something "
                "else, ask about these."
            )
        else:
            turn_note += "\nEvery criterion is complete. Thank the user and answer any questions."

    return f"""You are Ava, a warm and precise O-1 visa evidence-intake assistant.
You help the user gather structured evidence for each criterion category below.

RULES YOU MUST FOLLOW:
1. Never invent, guess or infer values the user has not stated. If unsure, leave the field null.
2. Never copy hint text into a value. Hints describe what to ask for, not answers.
3. Never move data from one criterion to another unless the user says it applies to both.
4. Do not ask again for fields already collected in CURRENT STATE.
5. Ask for at most two missing items at a time, most important first.
6. File-type fields may only hold uploaded files ("uploaded:<file name>") or URLs the user gave.
7. Dates: YYYY-MM-DD, YYYY-MM, YYYY, or "present" for ongoing roles. Never add a day or month the user did not give.
8. For reference definitions of the criteria, use the search_documents tool when available.

THIS TURN:
{turn_note}

RESPONSE FORMAT (follow EXACTLY):
Write a short, friendly reply in plain prose (no headers).
Then output this exact delimiter on its own line:
{DELIMITER}
Then output a single JSON object (no markdown fences) of this shape:
{{
  "criteria_instances": [
    {{
      "criteria_id": "<id from SCHEMA>",
      "criteria_name": "<name>",
      "description": "<short label inferred from the conversation, e.g. 'CTO at Acme'>",
      "fields": {{"<field name>": <value or null>}},
      "missing_fields": ["<field name>"],
      "complete": false
    }}
  ],
  "assessment": {{
    "top_criteria": [
      {{
        "criterion_id": "<id from SCHEMA>",
        "criterion_name": "<name>",
        "strength": "strong" | "medium" | "weak",
        "rationale": "<one sentence>",
        "evidence": [{{"file_id": "<file name or null>", "snippet": "<quote>", "why_it_matters": "<short>"}}],
        "gaps": ["<what is missing>"],
        "next_steps": ["<concrete action>"]
      }}
    ],
    "other_possible_criteria": [],
    "not_supported_yet": [{{"criterion_id": "<id>", "reason": "<short>"}}],
    "classification_guess": "O-1A" | "O-1B (Arts)" | "O-1B (MPTV)" | "unclear",
    "disclaimer": "{DISCLAIMER}"
  }}
}}
Only include criteria that the latest message gives evidence for.
The assessment is optional. Include it only once there is enough evidence to judge,
with at most 3 top_criteria. Base strength on CURRENT STATE and uploaded files only,
use "unclear" when the visa type is not evident, and always copy the disclaimer verbatim.

SCHEMA:
{schema_json}

CURRENT STATE:
{state_json}
"""


def build_conversation_window(turns: list[Turn], window: int = DEFAULT_WINDOW) -> list[dict]:
    """Most recent ``window`` turns; older context lives in the reconciled state."""
    if window <= 0:
        return []
    return [t.as_message() for t in turns[-window:]]


def build_request(
    registry: CriteriaRegistry,
    instances: dict[str, CriterionInstance],
    turns: list[Turn],
    latest_turn: Turn,
    window: int = DEFAULT_WINDOW,
) -> OracleRequest:
    return OracleRequest(
        system_context=build_system_context(registry, instances, latest_turn.kind),
        conversation_window=build_conversation_window(turns, window),
        latest_user_content=latest_turn.content,
    )


# ── Ollama Oracle ────────────────────────────────────────────────────


class OllamaOracle:
    """Extraction oracle backed by a local Ollama model."""

    def __init__(
        self,
        model: str = MODEL,
        host: Optional[str] = None,
        timeout: float = ORACLE_TIMEOUT,
        retries: int = 1,
        window: int = DEFAULT_WINDOW,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
        client: Optional[ollama.Client] = None,
    ):
        self.model = model
        self.retries = retries
        self.window = window
        self.max_tool_rounds = max_tool_rounds
        self._client = client or ollama.Client(host=host, timeout=timeout)

    def extract(
        self,
        registry: CriteriaRegistry,
        instances: dict[str, CriterionInstance],
        turns: list[Turn],
        latest_turn: Turn,
        document_search: Optional[DocumentSearch] = None,
    ) -> OracleResponse:
        request = build_request(registry, instances, turns, latest_turn, self.window)
        return self.complete(request, document_search)

    def complete(
        self, request: OracleRequest, document_search: Optional[DocumentSearch] = None
    ) -> OracleResponse:
        """Run one oracle turn, resolving document-search tool calls if offered."""
        messages: list = [
            {"role": "system", "content": request.system_context},
            *request.conversation_window,
            {"role": "user", "content": request.latest_user_content},
        ]
        tools = [SEARCH_TOOL] if document_search is not None else None
        tool_calls = 0

        for _ in range(self.max_tool_rounds):
            response = self._chat(messages, tools)
            calls = response.message.tool_calls or []
            if not calls or document_search is None:
                return self._response(response, tool_calls)

            messages.append(response.message)
            for call in calls:
                tool_calls += 1
                messages.append(
                    {
                        "role": "tool",
                        "content": _run_tool(call, document_search),
                        "tool_name": call.function.name,
                    }
                )

        # Tool budget spent: force a final text answer
        response = self._chat(messages, None)
        return self._response(response, tool_calls)

    def _chat(self, messages: list, tools: Optional[list]):
        last_exc: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                return self._client.chat(
                    model=self.model,
                    messages=messages,
                    tools=tools,
                    options={"temperature": 0},
                    think=False,
                )
            except ollama.ResponseError as exc:
                last_exc = exc
                if exc.status_code < 500:
                    break
            except (httpx.HTTPError, ConnectionError) as exc:
                last_exc = exc
            if attempt < self.retries:
                logger.warning(
                    "Oracle call failed (attempt %d/%d): %s", attempt + 1, self.retries + 1, last_exc
                )

        logger.error("Oracle unavailable after %d attempt(s): %s", attempt + 1, last_exc)
        raise OracleUnavailable(f"Extraction oracle unavailable: {last_exc}") from last_exc

    def _response(self, response, tool_calls: int) -> OracleResponse:
        return OracleResponse(
            raw_text=response.message.content or "",
            model=self.model,
            tool_calls=tool_calls,
        )


def _run_tool(call, document_search: DocumentSearch) -> str:
    name = call.function.name
    if name != "search_documents":
        logger.warning("Oracle requested unknown tool %s", name)
        return f"Unknown tool: {name}"
    args = call.function.arguments or {}
    query = str(args.get("query", "")).strip()
    if not query:
        return "No query given."
    hits = document_search.search(query)
    logger.info("Document search '%s' returned %d hits", query[:60], len(hits))
    return document_search.format_hits(hits)
