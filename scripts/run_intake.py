#!/usr/bin/env python3
"""Interactive O-1 evidence intake session in the terminal."""

import argparse
import json
import logging
import shlex
import sys
from pathlib import Path

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from intake.agents.driver import ConversationDriver
from intake.agents.models import ConversationPhase, TurnResult
from intake.agents.oracle import OllamaOracle
from intake.core.criteria_schema import load_registry
from intake.core.database import SessionDatabase
from intake.core.errors import DocumentIndexingError, OracleUnavailable, TurnInProgressError
from intake.core.settings import load_settings
from intake.documents.store import DocumentStore, ReferenceStoreProvider
from intake.exporters import export_all

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("intake")

HELP = "Commands: /upload <file> [file ...], /status, /assessment, /export, /quit"


# ── Session ──────────────────────────────────────────────────────────


def run_session(args: argparse.Namespace) -> None:
    settings = load_settings(args.settings)
    schema_path = args.schema or settings.criteria_schema
    registry = load_registry(schema_path)
    logger.info("Criteria: %s (v%s, %d criteria)", registry.schema.title, registry.schema.version, len(registry))

    db = SessionDatabase(args.name, settings.data_root)
    store = DocumentStore(settings.data_root)
    provider = ReferenceStoreProvider(
        store,
        refs_dir=Path(args.refs or settings.refs_dir),
        configured_id=settings.reference_store_id,
    )
    oracle = OllamaOracle(
        model=args.model or settings.model,
        host=args.host or settings.ollama_host,
        timeout=settings.oracle_timeout,
        retries=settings.oracle_retries,
        window=settings.conversation_window,
        max_tool_rounds=settings.max_tool_rounds,
    )
    driver_opts = {
        "index_poll_interval": settings.index_poll_interval,
        "index_timeout": settings.index_timeout,
    }

    try:
        if args.session:
            driver = ConversationDriver.resume(
                args.session, registry, oracle, db, store, provider, **driver_opts
            )
        else:
            driver = ConversationDriver(registry, oracle, db, store, provider, **driver_opts)
            driver.start()
        print(f"Session {driver.session_id}  ({HELP})")

        if driver.phase == ConversationPhase.AWAITING_FIRST_TURN:
            _attempt(driver.greet)

        _loop(driver, db, registry)

        if args.export:
            for kind, path in export_all(db, registry, driver.session_id).items():
                logger.info("Exported %s: %s", kind, path)
    finally:
        store.close()
        db.close()


def _loop(driver: ConversationDriver, db: SessionDatabase, registry) -> None:
    while True:
        try:
            line = input("\nyou> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            return
        if not line:
            continue

        if line in ("/quit", "/exit"):
            return
        if line == "/help":
            print(HELP)
        elif line == "/assessment":
            _print_assessment(driver)
        elif line == "/status":
            _print_status(driver)
        elif line == "/export":
            for kind, path in export_all(db, registry, driver.session_id).items():
                print(f"  {kind}: {path}")
        elif line.startswith("/upload"):
            paths = shlex.split(line[len("/upload"):])
            if not paths:
                print("usage: /upload <file> [file ...]")
                continue
            missing = [p for p in paths if not Path(p).is_file()]
            if missing:
                print(f"Not found: {', '.join(missing)}")
                continue
            _attempt(driver.upload_evidence, paths)
        else:
            _attempt(driver.send, line)


def _attempt(fn, *args) -> None:
    """Run one turn; failures leave the session unchanged so the user can retry."""
    try:
        result = fn(*args)
    except OracleUnavailable as exc:
        print(f"[error] {exc}. Nothing was saved; please send that again.")
        return
    except DocumentIndexingError as exc:
        print(f"[error] Upload failed: {exc}")
        return
    except TurnInProgressError:
        print("[busy] Still working on your previous message.")
        return
    except (ValueError, RuntimeError, OSError) as exc:
        # Rejected input or an unreadable file; the session is unchanged
        print(f"[error] {exc}")
        return
    _print_result(result)


def _print_result(result: TurnResult) -> None:
    print(f"\nava> {result.message}")
    if result.changed_criterion_ids:
        print(f"  (updated: {', '.join(result.changed_criterion_ids)})")
    if result.phase == ConversationPhase.COMPLETE and result.finalized_records:
        print("\nAll criteria complete. Finalized records:")
        print(json.dumps([r.model_dump() for r in result.finalized_records], indent=2))


def _print_status(driver: ConversationDriver) -> None:
    missing = driver.missing_fields()
    if not missing:
        print("All criteria complete.")
        return
    for cid, names in missing.items():
        print(f"  {cid}: missing {', '.join(names)}")
    focus = driver.next_focus()
    if focus:
        print(f"  next: {focus[0]}")


def _print_assessment(driver: ConversationDriver) -> None:
    assessment = driver.state.assessment
    if assessment is None:
        print("No assessment yet; keep sharing evidence.")
        return
    print(f"Likely visa type: {assessment.classification_guess.value}")
    for e in assessment.top_criteria:
        print(f"  {e.criterion_id}: {e.strength.value}. {e.rationale}")
    for e in assessment.other_possible_criteria:
        print(f"  (possible) {e.criterion_id}: {e.strength.value}")
    for e in assessment.not_supported_yet:
        print(f"  (not yet) {e.criterion_id}: {e.reason}")
    print(assessment.disclaimer)


# ── CLI ──────────────────────────────────────────────────────────────


def main():
    parser = argparse.ArgumentParser(description="Run an O-1 evidence intake conversation")
    parser.add_argument("--schema", default=None, help="Path to criteria schema YAML file")
    parser.add_argument("--name", default="default", help="Workspace name (used for database/directory)")
    parser.add_argument("--session", default=None, help="Resume an existing session id")
    parser.add_argument("--model", default=None, help="Ollama model for the extraction oracle")
    parser.add_argument("--host", default=None, help="Ollama host URL")
    parser.add_argument("--refs", default=None, help="Directory of O-1 reference material")
    parser.add_argument("--settings", default=None, help="Optional settings YAML file")
    parser.add_argument("--export", action="store_true", help="Export records on exit")
    args = parser.parse_args()

    run_session(args)


if __name__ == "__main__":
    main()
