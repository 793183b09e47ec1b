"""Export convenience function."""

import logging
from pathlib import Path

from intake.core.criteria_schema import CriteriaRegistry
from intake.core.database import SessionDatabase
from intake.exporters.docx_export import export_records_docx
from intake.exporters.records import (
    export_records_csv,
    export_records_excel,
    export_records_json,
)

logger = logging.getLogger(__name__)


def export_all(
    db: SessionDatabase,
    registry: CriteriaRegistry,
    session_id: str,
    output_dir: str | None = None,
) -> dict:
    """Run all exports and return dict of file paths created."""
    if output_dir is None:
        output_dir = str(Path(db.db_path).parent / "exports")

    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    stem = f"records_{session_id[:8]}"

    paths = {}

    csv_path = str(out / f"{stem}.csv")
    export_records_csv(db, registry, session_id, csv_path)
    paths["records_csv"] = csv_path

    json_path = str(out / f"{stem}.json")
    export_records_json(db, registry, session_id, json_path)
    paths["records_json"] = json_path

    xlsx_path = str(out / f"{stem}.xlsx")
    export_records_excel(db, registry, session_id, xlsx_path)
    paths["records_xlsx"] = xlsx_path

    docx_path = str(out / f"{stem}.docx")
    export_records_docx(db, registry, session_id, docx_path)
    paths["records_docx"] = docx_path

    logger.info("All exports written to %s", output_dir)
    return paths
