"""Criterion record exports: CSV, JSON and Excel, plus the latest strength assessment."""

import csv
import json
import logging

import openpyxl
from openpyxl.styles import Font

from intake.agents.models import FinalizedRecord
from intake.agents.reconciler import completion_percent, finalize
from intake.core.criteria_schema import CriteriaRegistry
from intake.core.database import SessionDatabase

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────


def collect_records(
    db: SessionDatabase, registry: CriteriaRegistry, session_id: str
) -> tuple[list[FinalizedRecord], bool]:
    """Records to export and whether they are final.

    A session that has not reached completion exports its current state as
    a draft, one record per schema criterion.
    """
    records = [r for r in db.get_finalized_records(session_id) if registry.has(r.criterion_id)]
    if records:
        return records, True
    return finalize(db.get_instances(session_id), registry), False


def format_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "; ".join(value)
    return str(value)


def _record_rows(
    records: list[FinalizedRecord], registry: CriteriaRegistry
) -> tuple[list[str], list[list]]:
    """Long format: one row per (criterion, field)."""
    headers = ["criterion_id", "criterion_name", "description", "field", "type", "value"]
    rows = []
    for rec in records:
        definition = registry.get(rec.criterion_id)
        for fdef in definition.fields:
            rows.append([
                rec.criterion_id,
                definition.display_name,
                rec.description or "",
                fdef.name,
                fdef.type.value,
                format_value(rec.fields.get(fdef.name)),
            ])
    return headers, rows


# ── CSV Export ───────────────────────────────────────────────────────


def export_records_csv(
    db: SessionDatabase, registry: CriteriaRegistry, session_id: str, output_path: str
) -> None:
    records, _ = collect_records(db, registry, session_id)
    headers, rows = _record_rows(records, registry)

    with open(output_path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(headers)
        writer.writerows(rows)

    logger.info("Records CSV exported to %s (%d rows)", output_path, len(rows))


# ── JSON Export ──────────────────────────────────────────────────────


def export_records_json(
    db: SessionDatabase, registry: CriteriaRegistry, session_id: str, output_path: str
) -> None:
    """Export records in the persistence-ready shape, with session metadata."""
    records, final = collect_records(db, registry, session_id)
    session = db.get_session(session_id) or {}
    assessment = db.get_assessment(session_id)
    doc = {
        "session_id": session_id,
        "phase": session.get("phase"),
        "schema_hash": registry.schema_hash(),
        "final": final,
        "records": [r.model_dump() for r in records],
        "assessment": assessment.model_dump(mode="json") if assessment else None,
    }
    with open(output_path, "w") as f:
        json.dump(doc, f, indent=2)

    logger.info("Records JSON exported to %s (%d records)", output_path, len(records))


# ── Excel Export ─────────────────────────────────────────────────────


def export_records_excel(
    db: SessionDatabase, registry: CriteriaRegistry, session_id: str, output_path: str
) -> None:
    """Summary sheet, one sheet per criterion, and the conversation transcript."""
    records, final = collect_records(db, registry, session_id)
    instances = db.get_instances(session_id)

    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Summary"
    ws.append(["criterion_id", "criterion_name", "description", "status", "percent_complete", "missing_fields"])
    for definition in registry.all():
        inst = instances.get(definition.id)
        if inst is None:
            ws.append([definition.id, definition.display_name, "", "not started", 0, ", ".join(definition.field_names)])
            continue
        ws.append([
            definition.id,
            definition.display_name,
            inst.description or "",
            "complete" if inst.complete else "in progress",
            completion_percent(inst),
            ", ".join(inst.missing_fields),
        ])
    _style_header(ws)

    for rec in records:
        definition = registry.get(rec.criterion_id)
        # Excel caps sheet titles at 31 characters
        sheet = wb.create_sheet(rec.criterion_id[:31])
        sheet.append(["field", "label", "type", "value"])
        sheet.append(["description", "Description", "text", rec.description or ""])
        for fdef in definition.fields:
            sheet.append([fdef.name, fdef.label, fdef.type.value, format_value(rec.fields.get(fdef.name))])
        _style_header(sheet)

    assessment = db.get_assessment(session_id)
    if assessment is not None:
        sheet = wb.create_sheet("Assessment")
        sheet.append(["group", "criterion_id", "strength", "rationale", "gaps", "next_steps"])
        for group, entries in (
            ("top", assessment.top_criteria),
            ("other", assessment.other_possible_criteria),
        ):
            for e in entries:
                sheet.append([
                    group,
                    e.criterion_id,
                    e.strength.value,
                    e.rationale,
                    format_value(e.gaps),
                    format_value(e.next_steps),
                ])
        for e in assessment.not_supported_yet:
            sheet.append(["not supported yet", e.criterion_id, "", e.reason, "", ""])
        sheet.append([])
        sheet.append(["classification_guess", assessment.classification_guess.value])
        sheet.append(["disclaimer", assessment.disclaimer])
        _style_header(sheet)

    log = wb.create_sheet("Transcript")
    log.append(["seq", "role", "kind", "content"])
    for seq, turn in enumerate(db.get_turns(session_id), 1):
        log.append([seq, turn.role.value, turn.kind.value, turn.content])
    _style_header(log)

    wb.save(output_path)
    logger.info("Records Excel exported to %s (%s)", output_path, "final" if final else "draft")


def _style_header(ws) -> None:
    for cell in ws[1]:
        cell.font = Font(bold=True)
