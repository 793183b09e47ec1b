"""Criteria Schema: YAML parser, Pydantic models, registry, and schema hashing."""

import hashlib
import json
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from intake.core.errors import UnknownCriterionError

RESERVED_FIELD_NAMES = frozenset({"description"})

_TYPE_ALIASES = {
    "files": "file_list",
    "files_or_urls": "file_or_url_list",
}


# ── Field Types ──────────────────────────────────────────────────────


class FieldType(str, Enum):
    """Governs how a field's raw value is validated and merged."""

    TEXT = "text"
    DATE = "date"
    FILE_LIST = "file_list"
    FILE_OR_URL_LIST = "file_or_url_list"

    @property
    def is_list(self) -> bool:
        return self in (FieldType.FILE_LIST, FieldType.FILE_OR_URL_LIST)


FILE_TYPES = frozenset({FieldType.FILE_LIST, FieldType.FILE_OR_URL_LIST})


# ── Definitions ──────────────────────────────────────────────────────


class FieldDefinition(BaseModel):
    """Single typed datum a criterion needs."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    type: FieldType
    hint: Optional[str] = None
    label: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def accept_aliases(cls, v):
        if isinstance(v, str):
            return _TYPE_ALIASES.get(v, v)
        return v

    @model_validator(mode="before")
    @classmethod
    def default_label(cls, data):
        if isinstance(data, dict) and not data.get("label") and data.get("name"):
            data = {**data, "label": field_label(data["name"])}
        return data


class CriterionDefinition(BaseModel):
    """One visa-qualification category with its ordered required fields."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    display_name: str
    description_hint: str = Field(
        description="Guidance for what kind of description to infer, never a stored value"
    )
    fields: tuple[FieldDefinition, ...]

    @field_validator("fields")
    @classmethod
    def unique_field_names(cls, v: tuple[FieldDefinition, ...]) -> tuple[FieldDefinition, ...]:
        if not v:
            raise ValueError("A criterion must define at least one field")
        names = [f.name for f in v]
        dupes = {n for n in names if names.count(n) > 1}
        if dupes:
            raise ValueError(f"Duplicate field names: {sorted(dupes)}")
        reserved = RESERVED_FIELD_NAMES.intersection(names)
        if reserved:
            raise ValueError(f"Reserved field names used: {sorted(reserved)}")
        return v

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def field(self, name: str) -> Optional[FieldDefinition]:
        for f in self.fields:
            if f.name == name:
                return f
        return None


class CriteriaSchema(BaseModel):
    """Top-level model for a criteria catalog file."""

    title: str
    version: str
    criteria: list[CriterionDefinition]

    @field_validator("criteria")
    @classmethod
    def unique_ids(cls, v: list[CriterionDefinition]) -> list[CriterionDefinition]:
        if not v:
            raise ValueError("Criteria schema must define at least one criterion")
        ids = [c.id for c in v]
        dupes = {i for i in ids if ids.count(i) > 1}
        if dupes:
            raise ValueError(f"Duplicate criterion ids: {sorted(dupes)}")
        return v

    def schema_hash(self) -> str:
        """SHA-256 of the criteria catalog (canonical JSON)."""
        return _canonical_hash(self.model_dump(mode="json"))


# ── Registry ─────────────────────────────────────────────────────────


class CriteriaRegistry:
    """Read-only lookup over a loaded criteria schema."""

    def __init__(self, schema: CriteriaSchema):
        self._schema = schema
        self._by_id = {c.id: c for c in schema.criteria}

    @property
    def schema(self) -> CriteriaSchema:
        return self._schema

    def get(self, criterion_id: str) -> CriterionDefinition:
        try:
            return self._by_id[criterion_id]
        except KeyError:
            raise UnknownCriterionError(criterion_id) from None

    def all(self) -> list[CriterionDefinition]:
        return list(self._schema.criteria)

    def has(self, criterion_id: str) -> bool:
        return criterion_id in self._by_id

    def field(self, criterion_id: str, name: str) -> Optional[FieldDefinition]:
        return self.get(criterion_id).field(name)

    def schema_hash(self) -> str:
        return self._schema.schema_hash()

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self):
        return iter(self._schema.criteria)


# ── Helpers ──────────────────────────────────────────────────────────


def field_label(name: str) -> str:
    """Flat label for a field name: ``start_date`` -> ``Start Date``."""
    return " ".join(part.capitalize() for part in name.split("_") if part)


def field_type_label(field_type: FieldType) -> str:
    """Human-readable field type description used in prompts."""
    return {
        FieldType.TEXT: "text",
        FieldType.DATE: "date (YYYY-MM-DD, YYYY-MM, YYYY or 'present')",
        FieldType.FILE_LIST: "uploaded file(s)",
        FieldType.FILE_OR_URL_LIST: "uploaded file(s) or URL(s)",
    }[FieldType(field_type)]


def _canonical_hash(data: dict) -> str:
    """Deterministic SHA-256 hash of a dict via sorted-key JSON."""
    blob = json.dumps(data, sort_keys=True, default=str).encode()
    return hashlib.sha256(blob).hexdigest()


def load_criteria_schema(path: str | Path) -> CriteriaSchema:
    """Load a YAML criteria catalog from disk and return a validated model."""
    path = Path(path)
    with open(path) as f:
        raw = yaml.safe_load(f)
    return CriteriaSchema.model_validate(raw)


def load_registry(path: str | Path) -> CriteriaRegistry:
    return CriteriaRegistry(load_criteria_schema(path))
