"""Split raw oracle text into a user-facing message and a structured payload.

Pure functions only: every entry point can be exercised with literal strings.
``parse`` never raises; a malformed turn degrades to "no structured update".
"""

import json
import logging
import re
from typing import NamedTuple, Optional

from pydantic import ValidationError

from intake.agents.models import ExtractionPayload
from intake.core.errors import MalformedOracleResponse

logger = logging.getLogger(__name__)

DELIMITER = "---JSON---"

_FENCE_OPEN_RE = re.compile(r"^\s*```[a-zA-Z]*\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```\s*$")


class ParsedResponse(NamedTuple):
    message: str
    payload: Optional[ExtractionPayload]


# ── Public API ───────────────────────────────────────────────────────


def parse(raw_text: str) -> ParsedResponse:
    """Parse ``<prose>\\n---JSON---\\n<json>`` with best-effort recovery."""
    text = raw_text or ""
    idx = text.find(DELIMITER)

    if idx == -1:
        return _parse_without_delimiter(text)

    message = text[:idx].strip()
    json_region = strip_code_fences(text[idx + len(DELIMITER):])
    try:
        payload = load_payload(json_region)
    except MalformedOracleResponse as exc:
        # Trailing prose or a second fence after the object
        span = find_balanced_json(json_region)
        if span is None:
            logger.warning("Failed to parse structured block: %s", exc)
            return ParsedResponse(message, None)
        try:
            payload = load_payload(json_region[span[0]:span[1]])
        except MalformedOracleResponse as retry_exc:
            logger.warning("Failed to parse structured block: %s", retry_exc)
            return ParsedResponse(message, None)
        logger.info("Recovered structured block from surrounding text")
    return ParsedResponse(message, payload)


def render(message: str, payload: Optional[ExtractionPayload]) -> str:
    """Wire form of a message and payload; ``parse(render(m, p)) == (m, p)``."""
    if payload is None:
        return message
    return f"{message}\n{DELIMITER}\n{payload.model_dump_json()}"


def load_payload(json_text: str) -> ExtractionPayload:
    """Strict JSON parse plus schema validation of the structured block."""
    try:
        data = json.loads(json_text)
    except json.JSONDecodeError as exc:
        raise MalformedOracleResponse(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedOracleResponse(f"expected a JSON object, got {type(data).__name__}")
    try:
        return ExtractionPayload.model_validate(data)
    except ValidationError as exc:
        raise MalformedOracleResponse(
            f"payload failed validation ({exc.error_count()} errors)"
        ) from exc


def strip_code_fences(text: str) -> str:
    """Remove accidental markdown fences around a JSON region."""
    text = _FENCE_OPEN_RE.sub("", text.strip(), count=1)
    return _FENCE_CLOSE_RE.sub("", text).strip()


def find_balanced_json(text: str) -> Optional[tuple[int, int]]:
    """Return (start, end) of the first balanced ``{...}`` span, or None.

    Braces inside JSON string literals are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return start, i + 1
        # Unbalanced from this opener; try the next one
        start = text.find("{", start + 1)
    return None


# ── Helpers ──────────────────────────────────────────────────────────


def _parse_without_delimiter(text: str) -> ParsedResponse:
    span = find_balanced_json(text)
    if span is None:
        return ParsedResponse(text.strip(), None)

    start, end = span
    try:
        payload = load_payload(text[start:end])
    except MalformedOracleResponse as exc:
        logger.warning("No delimiter and fallback JSON span unusable: %s", exc)
        return ParsedResponse(text.strip(), None)

    message = strip_code_fences_inline(text[:start] + text[end:])
    return ParsedResponse(message, payload)


def strip_code_fences_inline(text: str) -> str:
    """Drop empty fence markers left behind once a fenced JSON span is cut out."""
    return re.sub(r"```[a-zA-Z]*\s*```", "", text).strip()
