"""Shared data models for the intake conversation and its oracle payloads."""

import logging
from enum import Enum
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from intake.core.fields import FieldState, TypedValue

logger = logging.getLogger(__name__)

# ── Conversation Lifecycle ───────────────────────────────────────────


class ConversationPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    AWAITING_FIRST_TURN = "awaiting_first_turn"
    COLLECTING = "collecting"
    COMPLETE = "complete"


ALLOWED_TRANSITIONS: dict[ConversationPhase, set[ConversationPhase]] = {
    ConversationPhase.UNINITIALIZED: {ConversationPhase.AWAITING_FIRST_TURN},
    ConversationPhase.AWAITING_FIRST_TURN: {ConversationPhase.COLLECTING},
    ConversationPhase.COLLECTING: {ConversationPhase.COLLECTING, ConversationPhase.COMPLETE},
    # Terminal for structured extraction; turns are still answered
    ConversationPhase.COMPLETE: {ConversationPhase.COMPLETE},
}


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TurnKind(str, Enum):
    """What a user turn can count as evidence for."""

    GREETING = "greeting"
    MESSAGE = "message"
    UPLOAD = "upload"


class Turn(BaseModel):
    role: Role
    content: str
    kind: TurnKind = TurnKind.MESSAGE

    def as_message(self) -> dict:
        return {"role": self.role.value, "content": self.content}


# ── Reconciled State ─────────────────────────────────────────────────


class CriterionInstance(BaseModel):
    """Accumulated evidence for one criterion. Mutated only by the reconciler."""

    criterion_id: str
    display_name: str
    description: Optional[str] = None
    fields: list[FieldState]
    missing_fields: list[str] = Field(default_factory=list)
    complete: bool = False

    def field(self, name: str) -> Optional[FieldState]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def collected_fields(self) -> dict[str, TypedValue]:
        return {f.name: f.value for f in self.fields if f.collected}


class FinalizedRecord(BaseModel):
    """Persistence-ready shape: no collected/missing bookkeeping."""

    criterion_id: str
    description: Optional[str]
    fields: dict[str, Optional[TypedValue]]


# ── Criteria Assessment (advisory) ───────────────────────────────────

DISCLAIMER = (
    "This analysis is for educational purposes only and does not constitute "
    "legal advice. Consult a qualified immigration attorney before making any "
    "decisions about your visa petition."
)


class Strength(str, Enum):
    STRONG = "strong"
    MEDIUM = "medium"
    WEAK = "weak"


class Classification(str, Enum):
    O1A = "O-1A"
    O1B_ARTS = "O-1B (Arts)"
    O1B_MPTV = "O-1B (MPTV)"
    UNCLEAR = "unclear"


class EvidenceItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file_id: Optional[str] = None
    snippet: str = ""
    why_it_matters: str = ""


class CriterionAssessment(BaseModel):
    """How well the collected evidence supports one criterion."""

    model_config = ConfigDict(extra="ignore")

    criterion_id: str = Field(
        validation_alias=AliasChoices("criterion_id", "criteria_id", "id"),
        min_length=1,
    )
    criterion_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("criterion_name", "criteria_name", "name"),
    )
    strength: Strength = Strength.WEAK
    rationale: str = ""
    evidence: list[EvidenceItem] = Field(default_factory=list)
    gaps: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)

    @field_validator("rationale", mode="before")
    @classmethod
    def coerce_rationale(cls, v):
        return "" if v is None else str(v)

    @field_validator("strength", mode="before")
    @classmethod
    def coerce_strength(cls, v):
        if isinstance(v, Strength):
            return v
        v = str(v or "").strip().lower()
        return v if v in {s.value for s in Strength} else Strength.WEAK

    @field_validator("evidence", mode="before")
    @classmethod
    def coerce_evidence(cls, v):
        if not isinstance(v, list):
            return []
        return [e for e in v if isinstance(e, dict)]

    @field_validator("gaps", "next_steps", mode="before")
    @classmethod
    def coerce_str_list(cls, v):
        if isinstance(v, str):
            return [v] if v.strip() else []
        if not isinstance(v, list):
            return []
        return [str(x) for x in v if x is not None]


class UnsupportedCriterion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    criterion_id: str = Field(
        validation_alias=AliasChoices("criterion_id", "criteria_id", "id"),
        min_length=1,
    )
    reason: str = ""


class Assessment(BaseModel):
    """Latest-wins strength analysis. Never merged into reconciled state."""

    model_config = ConfigDict(extra="ignore")

    top_criteria: list[CriterionAssessment] = Field(default_factory=list)
    other_possible_criteria: list[CriterionAssessment] = Field(default_factory=list)
    not_supported_yet: list[UnsupportedCriterion] = Field(default_factory=list)
    classification_guess: Classification = Classification.UNCLEAR
    disclaimer: str = DISCLAIMER

    @field_validator("top_criteria", "other_possible_criteria", mode="before")
    @classmethod
    def coerce_entries(cls, v):
        return _validate_each(v, CriterionAssessment, "assessment entry")

    @field_validator("not_supported_yet", mode="before")
    @classmethod
    def coerce_unsupported(cls, v):
        return _validate_each(v, UnsupportedCriterion, "unsupported entry")

    @field_validator("classification_guess", mode="before")
    @classmethod
    def coerce_classification(cls, v):
        if isinstance(v, Classification):
            return v
        v = str(v or "").strip()
        for c in Classification:
            if v.lower() == c.value.lower():
                return c
        return Classification.UNCLEAR

    @field_validator("disclaimer", mode="before")
    @classmethod
    def coerce_disclaimer(cls, v):
        # Always present, whatever the oracle sent
        return v if isinstance(v, str) and v.strip() else DISCLAIMER

    def criterion_ids(self) -> list[str]:
        return [
            e.criterion_id
            for e in (*self.top_criteria, *self.other_possible_criteria, *self.not_supported_yet)
        ]


def _validate_each(v, model: type[BaseModel], label: str) -> list:
    """Validate list entries one at a time; a bad entry is dropped, not fatal."""
    if v is None:
        return []
    if isinstance(v, dict):
        v = [v]
    if not isinstance(v, list):
        logger.warning("SchemaViolation: expected a list of %ss, got %s", label, type(v).__name__)
        return []
    out = []
    for i, item in enumerate(v):
        if isinstance(item, BaseModel):
            out.append(item)
            continue
        if not isinstance(item, dict):
            logger.warning("SchemaViolation: dropping %s %d (not an object)", label, i)
            continue
        try:
            out.append(model.model_validate(item))
        except ValidationError as exc:
            logger.warning(
                "SchemaViolation: dropping %s %d (%d errors)", label, i, exc.error_count()
            )
    return out


class ConversationState(BaseModel):
    """Everything the driver owns for one session."""

    session_id: str
    phase: ConversationPhase = ConversationPhase.UNINITIALIZED
    turns: list[Turn] = Field(default_factory=list)
    instances: dict[str, CriterionInstance] = Field(default_factory=dict)
    finalized_records: list[FinalizedRecord] = Field(default_factory=list)
    assessment: Optional[Assessment] = None

    @property
    def is_complete(self) -> bool:
        return self.phase == ConversationPhase.COMPLETE


class StoreIds(BaseModel):
    user_store_id: str
    reference_store_id: str


# ── Oracle Wire Payload (untrusted) ──────────────────────────────────


class WireCriterionInstance(BaseModel):
    """One criterion instance as the oracle claims it for the current turn."""

    model_config = ConfigDict(extra="ignore")

    criteria_id: str = Field(
        validation_alias=AliasChoices("criteria_id", "criterion_id", "id"),
        min_length=1,
    )
    criteria_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("criteria_name", "criterion_name", "name"),
    )
    description: Optional[str] = None
    fields: dict[str, Any] = Field(default_factory=dict)
    missing_fields: list[str] = Field(default_factory=list)
    complete: bool = False

    @field_validator("description", mode="before")
    @classmethod
    def coerce_description(cls, v):
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @field_validator("fields", mode="before")
    @classmethod
    def coerce_fields(cls, v):
        """Accept ``{name: value}`` or ``[{"name": ..., "value": ...}]``."""
        if v is None:
            return {}
        if isinstance(v, list):
            out = {}
            for item in v:
                if isinstance(item, dict) and "name" in item:
                    out[str(item["name"])] = item.get("value")
            return out
        return v

    @field_validator("missing_fields", mode="before")
    @classmethod
    def coerce_missing(cls, v):
        # Advisory only; the reconciler recomputes it from the schema
        if not isinstance(v, list):
            return []
        return [str(x) for x in v]

    @field_validator("complete", mode="before")
    @classmethod
    def coerce_complete(cls, v):
        return bool(v) if v is not None else False


class ExtractionPayload(BaseModel):
    """The oracle's structured block: a delta proposal, never the full truth."""

    model_config = ConfigDict(extra="ignore")

    criteria_instances: list[WireCriterionInstance] = Field(
        default_factory=list,
        validation_alias=AliasChoices("criteria_instances", "criteria", "instances"),
    )
    assessment: Optional[Assessment] = None

    @field_validator("criteria_instances", mode="before")
    @classmethod
    def coerce_instances(cls, v):
        return _validate_each(v, WireCriterionInstance, "criterion instance")

    @field_validator("assessment", mode="before")
    @classmethod
    def coerce_assessment(cls, v):
        if v is None or isinstance(v, Assessment):
            return v
        if not isinstance(v, dict):
            logger.warning("SchemaViolation: assessment is not an object, ignored")
            return None
        try:
            return Assessment.model_validate(v)
        except ValidationError as exc:
            logger.warning("SchemaViolation: assessment ignored (%d errors)", exc.error_count())
            return None


# ── Turn Result ──────────────────────────────────────────────────────


class TurnResult(BaseModel):
    """What one processed turn hands back to the caller."""

    message: str
    changed_criterion_ids: list[str] = Field(default_factory=list)
    instances: list[CriterionInstance] = Field(default_factory=list)
    phase: ConversationPhase
    finalized_records: list[FinalizedRecord] = Field(default_factory=list)
    payload_received: bool = False
    assessment: Optional[Assessment] = None
