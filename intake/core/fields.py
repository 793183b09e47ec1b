"""Field Value Model: typed normalization, collected flag, and no-regression merge."""

import re
from datetime import date
from typing import Any, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, model_validator

from intake.core.criteria_schema import FieldType
from intake.core.errors import FieldValidationError

TypedValue = Union[str, list[str]]

UPLOAD_PREFIX = "uploaded:"
PRESENT = "present"

# ── Date Grammar ─────────────────────────────────────────────────────

_OPEN_ENDED = {"present", "current", "ongoing", "now"}

_MONTHS = {
    name: i
    for i, names in enumerate(
        [
            ("january", "jan"),
            ("february", "feb"),
            ("march", "mar"),
            ("april", "apr"),
            ("may",),
            ("june", "jun"),
            ("july", "jul"),
            ("august", "aug"),
            ("september", "sep", "sept"),
            ("october", "oct"),
            ("november", "nov"),
            ("december", "dec"),
        ],
        start=1,
    )
    for name in names
}

_ISO_FULL_RE = re.compile(r"^(\d{4})[-/](\d{1,2})[-/](\d{1,2})$")
_ISO_MONTH_RE = re.compile(r"^(\d{4})[-/](\d{1,2})$")
_YEAR_RE = re.compile(r"^(\d{4})$")
_MONTH_YEAR_RE = re.compile(r"^([a-z]+)\.?\s+(\d{4})$")
_MONTH_DAY_YEAR_RE = re.compile(r"^([a-z]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})$")
_DAY_MONTH_YEAR_RE = re.compile(r"^(\d{1,2})(?:st|nd|rd|th)?\s+([a-z]+)\.?,?\s+(\d{4})$")

# ── File / URL Items ─────────────────────────────────────────────────

_UPLOAD_TOKEN_RE = re.compile(r"^uploaded\s*:\s*(.+)$", re.IGNORECASE)
_FILENAME_RE = re.compile(r"^[^\s/\\:]+\.[A-Za-z0-9]{1,5}$")


# ── Field State ──────────────────────────────────────────────────────


class FieldState(BaseModel):
    """A field's current value; ``collected`` is always re-derived from ``value``."""

    name: str
    type: FieldType
    value: Optional[TypedValue] = None
    collected: bool = False

    @model_validator(mode="after")
    def derive_collected(self) -> "FieldState":
        derived = is_collected(self.value)
        if self.collected != derived:
            # Untrusted flags are corrected, never believed.
            self.collected = derived
        return self


# ── Public API ───────────────────────────────────────────────────────


def is_collected(value: Any) -> bool:
    """None, empty strings and empty lists are not collected."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return True


def normalize(raw_value: Any, field_type: FieldType | str) -> Optional[TypedValue]:
    """Normalize a raw (untrusted) value for a field type.

    Returns None when the value is absent. Raises FieldValidationError when
    a value is present but does not fit the type.
    """
    field_type = FieldType(field_type)
    if raw_value is None:
        return None

    if field_type == FieldType.TEXT:
        return _normalize_text(raw_value)
    if field_type == FieldType.DATE:
        return normalize_date(raw_value)
    return _normalize_file_list(raw_value, field_type)


def normalize_date(raw_value: Any) -> Optional[str]:
    """Apply the accepted date grammar; never invents missing components.

    Accepted: YYYY-MM-DD, YYYY/MM/DD, YYYY-MM, YYYY/MM, YYYY,
    "<Month> YYYY", "<Month> D, YYYY", "D <Month> YYYY", and the open-ended
    markers present/current/ongoing/now (all become "present").
    """
    if isinstance(raw_value, bool) or not isinstance(raw_value, (str, int)):
        raise FieldValidationError("date", raw_value, "expected a string")
    text = str(raw_value).strip().lower()
    if not text:
        return None
    if text in _OPEN_ENDED:
        return PRESENT

    m = _ISO_FULL_RE.match(text)
    if m:
        return _format_date(raw_value, int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = _ISO_MONTH_RE.match(text)
    if m:
        return _format_date(raw_value, int(m.group(1)), int(m.group(2)))
    m = _YEAR_RE.match(text)
    if m:
        return _format_date(raw_value, int(m.group(1)))
    m = _MONTH_YEAR_RE.match(text)
    if m:
        return _format_date(raw_value, int(m.group(2)), _month(raw_value, m.group(1)))
    m = _MONTH_DAY_YEAR_RE.match(text)
    if m:
        return _format_date(
            raw_value, int(m.group(3)), _month(raw_value, m.group(1)), int(m.group(2))
        )
    m = _DAY_MONTH_YEAR_RE.match(text)
    if m:
        return _format_date(
            raw_value, int(m.group(3)), _month(raw_value, m.group(2)), int(m.group(1))
        )

    raise FieldValidationError("date", raw_value, "not in the accepted date grammar")


def normalize_file_item(item: str) -> Optional[str]:
    """Canonicalize one file/URL reference; unrecognized text is kept as-is."""
    item = item.strip()
    if not item:
        return None
    m = _UPLOAD_TOKEN_RE.match(item)
    if m:
        return f"{UPLOAD_PREFIX}{m.group(1).strip()}"
    if is_valid_url(item):
        return item
    if _FILENAME_RE.match(item):
        return f"{UPLOAD_PREFIX}{item}"
    return item


def is_valid_url(item: str) -> bool:
    parsed = urlparse(item)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc) and " " not in item


def merge_field(existing: FieldState, incoming: Optional[FieldState]) -> FieldState:
    """Incoming wins only if it is itself collected (no-regression rule)."""
    if incoming is None or not incoming.collected:
        return existing
    return existing.model_copy(update={"value": incoming.value, "collected": True})


def values_equal(a: Optional[TypedValue], b: Optional[TypedValue]) -> bool:
    if isinstance(a, list) and isinstance(b, list):
        return list(a) == list(b)
    return a == b


# ── Helpers ──────────────────────────────────────────────────────────


def _normalize_text(raw_value: Any) -> Optional[str]:
    if isinstance(raw_value, (list, tuple)):
        parts = [str(p).strip() for p in raw_value if p is not None and str(p).strip()]
        return "; ".join(parts) or None
    if isinstance(raw_value, dict):
        raise FieldValidationError("text", raw_value, "expected a string")
    text = str(raw_value).strip()
    return text or None


def _normalize_file_list(raw_value: Any, field_type: FieldType) -> Optional[list[str]]:
    if isinstance(raw_value, str):
        items = [raw_value]
    elif isinstance(raw_value, (list, tuple)):
        items = list(raw_value)
    else:
        raise FieldValidationError(field_type.value, raw_value, "expected a string or list")

    out: list[str] = []
    for item in items:
        if item is None:
            continue
        if not isinstance(item, str):
            raise FieldValidationError(field_type.value, raw_value, "list items must be strings")
        norm = normalize_file_item(item)
        if norm and norm not in out:
            out.append(norm)
    return out or None


def _month(raw_value: Any, name: str) -> int:
    month = _MONTHS.get(name)
    if month is None:
        raise FieldValidationError("date", raw_value, f"unknown month '{name}'")
    return month


def _format_date(raw_value: Any, year: int, month: int | None = None, day: int | None = None) -> str:
    try:
        date(year, month or 1, day or 1)
    except ValueError as exc:
        raise FieldValidationError("date", raw_value, str(exc)) from None
    if month is None:
        return f"{year:04d}"
    if day is None:
        return f"{year:04d}-{month:02d}"
    return f"{year:04d}-{month:02d}-{day:02d}"
