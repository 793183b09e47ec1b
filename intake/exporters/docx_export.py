"""DOCX evidence summary: one table per criterion, ready for an attorney.

When the session has a strength assessment it follows the records, with
its disclaimer.
"""

import logging

from docx import Document
from docx.shared import Pt

from intake.agents.models import Assessment
from intake.core.criteria_schema import CriteriaRegistry
from intake.core.database import SessionDatabase
from intake.exporters.records import collect_records, format_value

logger = logging.getLogger(__name__)


def export_records_docx(
    db: SessionDatabase, registry: CriteriaRegistry, session_id: str, output_path: str
) -> None:
    records, final = collect_records(db, registry, session_id)
    doc = Document()

    title_para = doc.add_paragraph()
    run = title_para.add_run(registry.schema.title)
    run.bold = True
    run.font.size = Pt(14)
    status = "Final" if final else "Draft"
    title_para.add_run(f"\nVersion {registry.schema.version}, session {session_id} ({status})")

    for rec in records:
        definition = registry.get(rec.criterion_id)
        doc.add_heading(definition.display_name, level=2)
        if rec.description:
            doc.add_paragraph(rec.description)

        table = doc.add_table(rows=1 + len(definition.fields), cols=2)
        table.style = "Table Grid"
        header = table.rows[0].cells
        header[0].text = "Field"
        header[1].text = "Value"
        for cell in header:
            for paragraph in cell.paragraphs:
                for r in paragraph.runs:
                    r.bold = True
                    r.font.size = Pt(9)

        for row_idx, fdef in enumerate(definition.fields, 1):
            cells = table.rows[row_idx].cells
            cells[0].text = fdef.label
            cells[1].text = format_value(rec.fields.get(fdef.name)) or "(not provided)"
            for cell in cells:
                for paragraph in cell.paragraphs:
                    for r in paragraph.runs:
                        r.font.size = Pt(9)

    assessment = db.get_assessment(session_id)
    if assessment is not None:
        _add_assessment(doc, registry, assessment)

    doc.save(output_path)
    logger.info("Records DOCX exported to %s (%d criteria)", output_path, len(records))


def _add_assessment(doc, registry: CriteriaRegistry, assessment: Assessment) -> None:
    doc.add_heading("Criteria Strength Assessment", level=1)
    doc.add_paragraph(f"Likely visa type: {assessment.classification_guess.value}")

    entries = [*assessment.top_criteria, *assessment.other_possible_criteria]
    if entries:
        table = doc.add_table(rows=1 + len(entries), cols=4)
        table.style = "Table Grid"
        for cell, text in zip(table.rows[0].cells, ("Criterion", "Strength", "Rationale", "Next steps")):
            cell.text = text
            for r in cell.paragraphs[0].runs:
                r.bold = True
                r.font.size = Pt(9)
        for row_idx, e in enumerate(entries, 1):
            name = registry.get(e.criterion_id).display_name if registry.has(e.criterion_id) else e.criterion_id
            cells = table.rows[row_idx].cells
            cells[0].text = name
            cells[1].text = e.strength.value
            cells[2].text = e.rationale
            cells[3].text = format_value(e.next_steps)

    for e in assessment.not_supported_yet:
        doc.add_paragraph(f"Not yet supported: {e.criterion_id}. {e.reason}".strip())

    disclaimer = doc.add_paragraph().add_run(assessment.disclaimer)
    disclaimer.italic = True
    disclaimer.font.size = Pt(8)
