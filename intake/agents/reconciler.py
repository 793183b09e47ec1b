"""State reconciliation: merge an untrusted extraction payload into durable state.

``reconcile`` is pure. It never mutates its inputs, never trusts the
oracle's ``collected`` / ``missing_fields`` / ``complete`` claims, never
backfills a value from hint text, and never lets an uncollected incoming
value erase a collected one.
"""

import logging
from typing import NamedTuple, Optional

from intake.agents.models import (
    Assessment,
    CriterionInstance,
    ExtractionPayload,
    FinalizedRecord,
    TurnKind,
    WireCriterionInstance,
)
from intake.core.criteria_schema import (
    FILE_TYPES,
    CriteriaRegistry,
    CriterionDefinition,
    FieldDefinition,
    FieldType,
)
from intake.core.errors import FieldValidationError, SchemaViolation
from intake.core.fields import FieldState, merge_field, normalize, values_equal

logger = logging.getLogger(__name__)

DESCRIPTION = "description"


class Rejection(NamedTuple):
    """One incoming value the reconciler refused, with the reason."""

    criterion_id: str
    field_name: Optional[str]
    reason: str


class ReconcileResult(NamedTuple):
    instances: dict[str, CriterionInstance]
    changed_criterion_ids: list[str]
    rejected: list[Rejection]


# ── Instance Construction ────────────────────────────────────────────


def build_empty_instance(
    definition: CriterionDefinition, description: Optional[str] = None
) -> CriterionInstance:
    """A fresh instance carrying exactly the schema's fields, all uncollected."""
    instance = CriterionInstance(
        criterion_id=definition.id,
        display_name=definition.display_name,
        description=description,
        fields=[FieldState(name=f.name, type=f.type) for f in definition.fields],
    )
    return recompute(instance, definition)


def recompute(instance: CriterionInstance, definition: CriterionDefinition) -> CriterionInstance:
    """Derive ``missing_fields`` and ``complete`` from the schema, never from the oracle."""
    by_name = {f.name: f for f in instance.fields}
    fields: list[FieldState] = []
    missing: list[str] = []
    for fdef in definition.fields:
        state = by_name.get(fdef.name) or FieldState(name=fdef.name, type=fdef.type)
        # Rebuild so the derived collected flag is re-validated
        state = FieldState(name=fdef.name, type=fdef.type, value=state.value)
        fields.append(state)
        if not state.collected:
            missing.append(fdef.name)
    if not (instance.description or "").strip():
        missing.append(DESCRIPTION)

    return instance.model_copy(
        update={
            "display_name": definition.display_name,
            "fields": fields,
            "missing_fields": missing,
            "complete": not missing,
        }
    )


# ── Reconcile ────────────────────────────────────────────────────────


def reconcile(
    existing: dict[str, CriterionInstance],
    payload: Optional[ExtractionPayload],
    registry: CriteriaRegistry,
    turn_kind: TurnKind = TurnKind.MESSAGE,
) -> ReconcileResult:
    """Merge ``payload`` into ``existing`` and report which criteria changed."""
    merged = {cid: inst.model_copy(deep=True) for cid, inst in existing.items()}
    rejected: list[Rejection] = []
    changed: list[str] = []

    if payload is None or not payload.criteria_instances:
        return ReconcileResult(merged, changed, rejected)

    if turn_kind == TurnKind.GREETING:
        # The greeting trigger is never evidence
        for inc in payload.criteria_instances:
            rejected.append(Rejection(inc.criteria_id, None, "greeting turn"))
        logger.info("Greeting turn: discarded %d proposed instances", len(rejected))
        return ReconcileResult(merged, changed, rejected)

    for inc in payload.criteria_instances:
        if not registry.has(inc.criteria_id):
            violation = SchemaViolation(inc.criteria_id)
            logger.warning("Dropping payload entry: %s", violation)
            rejected.append(Rejection(inc.criteria_id, None, str(violation)))
            continue

        definition = registry.get(inc.criteria_id)
        current = merged.get(definition.id)
        updated, entry_rejections = _merge_instance(current, inc, definition, turn_kind)
        rejected.extend(entry_rejections)

        if updated is None:
            continue
        if current is None or _instance_changed(current, updated):
            merged[definition.id] = updated
            if definition.id not in changed:
                changed.append(definition.id)

    if changed:
        logger.info("Reconciled turn: %d criteria changed (%s)", len(changed), ", ".join(changed))
    return ReconcileResult(merged, changed, rejected)


def _merge_instance(
    current: Optional[CriterionInstance],
    inc: WireCriterionInstance,
    definition: CriterionDefinition,
    turn_kind: TurnKind,
) -> tuple[Optional[CriterionInstance], list[Rejection]]:
    rejected: list[Rejection] = []
    accepted: dict[str, FieldState] = {}

    for name, raw in inc.fields.items():
        fdef = definition.field(name)
        if fdef is None:
            violation = SchemaViolation(definition.id, name)
            logger.warning("Dropping field: %s", violation)
            rejected.append(Rejection(definition.id, name, str(violation)))
            continue

        if turn_kind == TurnKind.UPLOAD and fdef.type not in FILE_TYPES:
            if raw is not None:
                rejected.append(Rejection(definition.id, name, "upload notice is file evidence only"))
            continue

        try:
            value = normalize(raw, fdef.type)
        except FieldValidationError as exc:
            logger.info("Field %s.%s not collected this turn: %s", definition.id, name, exc)
            rejected.append(Rejection(definition.id, name, str(exc)))
            continue

        if value is not None and _echoes_hint(value, fdef, definition):
            logger.warning("Field %s.%s echoes schema hint text; rejected", definition.id, name)
            rejected.append(Rejection(definition.id, name, "value copied from hint text"))
            continue

        state = FieldState(name=name, type=fdef.type, value=value)
        if state.collected:
            accepted[name] = state

    description = None
    if turn_kind != TurnKind.UPLOAD:
        description = _accept_description(inc.description, definition, rejected)

    if current is None:
        if not accepted and description is None:
            return None, rejected
        current = build_empty_instance(definition)

    fields = [merge_field(f, accepted.get(f.name)) for f in current.fields]
    merged_description = current.description
    if not (merged_description or "").strip() and description:
        merged_description = description

    updated = current.model_copy(update={"fields": fields, "description": merged_description})
    return recompute(updated, definition), rejected


def _accept_description(
    raw: Optional[str], definition: CriterionDefinition, rejected: list[Rejection]
) -> Optional[str]:
    text = (raw or "").strip()
    if not text:
        return None
    if _same_text(text, definition.description_hint):
        rejected.append(Rejection(definition.id, DESCRIPTION, "value copied from hint text"))
        return None
    return text


def _echoes_hint(value, fdef: FieldDefinition, definition: CriterionDefinition) -> bool:
    if fdef.type not in (FieldType.TEXT,):
        return False
    hints = [h for h in (fdef.hint, definition.description_hint) if h]
    return any(_same_text(value, h) for h in hints)


def _same_text(a: str, b: str) -> bool:
    return " ".join(a.lower().split()) == " ".join(b.lower().split())


def _instance_changed(before: CriterionInstance, after: CriterionInstance) -> bool:
    if before.description != after.description:
        return True
    before_values = {f.name: f.value for f in before.fields}
    return any(not values_equal(before_values.get(f.name), f.value) for f in after.fields)


# ── Completeness ─────────────────────────────────────────────────────


def missing_by_criterion(
    instances: dict[str, CriterionInstance], registry: CriteriaRegistry
) -> dict[str, list[str]]:
    """Missing field names for every schema criterion, touched or not."""
    missing: dict[str, list[str]] = {}
    for definition in registry.all():
        inst = instances.get(definition.id)
        if inst is None:
            inst = build_empty_instance(definition)
        if inst.missing_fields:
            missing[definition.id] = list(inst.missing_fields)
    return missing


def all_complete(instances: dict[str, CriterionInstance], registry: CriteriaRegistry) -> bool:
    """True only when every field of every schema criterion is collected."""
    return not missing_by_criterion(instances, registry)


def completion_percent(instance: CriterionInstance) -> int:
    """Share of collected schema fields, as a rounded percentage."""
    if not instance.fields:
        return 100
    collected = sum(1 for f in instance.fields if f.collected)
    return round(collected / len(instance.fields) * 100)


def finalize(
    instances: dict[str, CriterionInstance], registry: CriteriaRegistry
) -> list[FinalizedRecord]:
    """One record per schema criterion, in schema order, without bookkeeping."""
    records = []
    for definition in registry.all():
        inst = instances.get(definition.id) or build_empty_instance(definition)
        records.append(
            FinalizedRecord(
                criterion_id=definition.id,
                description=inst.description,
                fields={f.name: f.value for f in inst.fields},
            )
        )
    return records


def next_focus(
    instances: dict[str, CriterionInstance], registry: CriteriaRegistry
) -> Optional[tuple[str, list[str]]]:
    """The criterion to steer toward next: touched-but-incomplete first."""
    missing = missing_by_criterion(instances, registry)
    if not missing:
        return None
    for cid, names in missing.items():
        if cid in instances:
            return cid, names
    cid = next(iter(missing))
    return cid, missing[cid]


# ── Assessment ───────────────────────────────────────────────────────


def vet_assessment(
    previous: Optional[Assessment],
    incoming: Optional[Assessment],
    registry: CriteriaRegistry,
    turn_kind: TurnKind = TurnKind.MESSAGE,
) -> Optional[Assessment]:
    """Latest-wins assessment, scoped to criteria the schema defines."""
    if incoming is None or turn_kind == TurnKind.GREETING:
        return previous

    def known(entries):
        kept = []
        for entry in entries:
            if registry.has(entry.criterion_id):
                kept.append(entry)
            else:
                logger.warning("Dropping assessment entry: %s", SchemaViolation(entry.criterion_id))
        return kept

    return incoming.model_copy(
        update={
            "top_criteria": known(incoming.top_criteria),
            "other_possible_criteria": known(incoming.other_possible_criteria),
            "not_supported_yet": known(incoming.not_supported_yet),
        }
    )
