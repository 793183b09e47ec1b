"""SQLite database manager: sessions, turns, reconciled state, finalized records."""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from intake.agents.models import (
    ALLOWED_TRANSITIONS,
    Assessment,
    ConversationPhase,
    CriterionInstance,
    FinalizedRecord,
    Role,
    Turn,
    TurnKind,
)
from intake.core.errors import InvalidTransitionError

logger = logging.getLogger(__name__)

DATA_ROOT = Path("data")

# ── Schema DDL ───────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id                  TEXT PRIMARY KEY,
    phase               TEXT NOT NULL DEFAULT 'uninitialized',
    schema_hash         TEXT NOT NULL,
    user_store_id       TEXT,
    reference_store_id  TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS turns (
    id              INTEGER PRIMARY KEY,
    session_id      TEXT NOT NULL REFERENCES sessions(id),
    seq             INTEGER NOT NULL,
    role            TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
    kind            TEXT NOT NULL DEFAULT 'message'
                    CHECK (kind IN ('greeting', 'message', 'upload')),
    content         TEXT NOT NULL,
    raw_text        TEXT,           -- unparsed oracle output (assistant turns)
    model           TEXT,
    created_at      TEXT NOT NULL,
    UNIQUE (session_id, seq)
);

CREATE INDEX IF NOT EXISTS idx_turns_session ON turns(session_id);

CREATE TABLE IF NOT EXISTS criterion_instances (
    session_id      TEXT NOT NULL REFERENCES sessions(id),
    criterion_id    TEXT NOT NULL,
    data            TEXT NOT NULL,  -- JSON CriterionInstance
    complete        INTEGER NOT NULL DEFAULT 0,
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (session_id, criterion_id)
);

CREATE TABLE IF NOT EXISTS finalized_records (
    id              INTEGER PRIMARY KEY,
    session_id      TEXT NOT NULL REFERENCES sessions(id),
    criterion_id    TEXT NOT NULL,
    description     TEXT,
    fields          TEXT NOT NULL,  -- JSON name -> value
    finalized_at    TEXT NOT NULL,
    UNIQUE (session_id, criterion_id)
);

CREATE TABLE IF NOT EXISTS turn_failures (
    id              INTEGER PRIMARY KEY,
    session_id      TEXT NOT NULL REFERENCES sessions(id),
    user_content    TEXT NOT NULL,
    error           TEXT NOT NULL,
    failed_at       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS assessments (
    id              INTEGER PRIMARY KEY,
    session_id      TEXT NOT NULL REFERENCES sessions(id),
    data            TEXT NOT NULL,  -- JSON Assessment; latest row wins
    created_at      TEXT NOT NULL
);
"""


# ── SessionDatabase ──────────────────────────────────────────────────


class SessionDatabase:
    """SQLite persistence for intake sessions, committed one turn at a time."""

    def __init__(self, name: str, data_root: Path | None = None):
        root = (data_root or DATA_ROOT) / name
        root.mkdir(parents=True, exist_ok=True)
        (root / "exports").mkdir(exist_ok=True)

        self.db_path = root / "intake.db"
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    # ── Sessions ─────────────────────────────────────────────

    def create_session(self, session_id: str, schema_hash: str) -> None:
        now = _now()
        with self._lock, self._conn:
            self._conn.execute(
                """INSERT INTO sessions (id, phase, schema_hash, created_at, updated_at)
                   VALUES (?, 'uninitialized', ?, ?, ?)""",
                (session_id, schema_hash, now, now),
            )
        logger.info("Created session %s", session_id)

    def get_session(self, session_id: str) -> Optional[dict]:
        row = self._conn.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return dict(row) if row else None

    def set_store_ids(self, session_id: str, user_store_id: str, reference_store_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """UPDATE sessions
                   SET user_store_id = ?, reference_store_id = ?, updated_at = ?
                   WHERE id = ?""",
                (user_store_id, reference_store_id, _now(), session_id),
            )

    def update_phase(self, session_id: str, new_phase: ConversationPhase) -> None:
        """Transition a session to a new conversation phase."""
        with self._lock, self._conn:
            self._set_phase(session_id, ConversationPhase(new_phase))

    def _set_phase(self, session_id: str, new_phase: ConversationPhase) -> None:
        row = self._conn.execute(
            "SELECT phase FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        if row is None:
            raise ValueError(f"Session {session_id} not found")

        current = ConversationPhase(row["phase"])
        allowed = ALLOWED_TRANSITIONS.get(current, set())
        if new_phase not in allowed:
            raise InvalidTransitionError(
                f"Invalid transition: {current.value} → {new_phase.value} "
                f"(allowed: {sorted(p.value for p in allowed) or 'none'})"
            )
        self._conn.execute(
            "UPDATE sessions SET phase = ?, updated_at = ? WHERE id = ?",
            (new_phase.value, _now(), session_id),
        )

    # ── Turn Commit ──────────────────────────────────────────

    def commit_turn(
        self,
        session_id: str,
        turns: list[Turn],
        instances: list[CriterionInstance],
        phase: ConversationPhase,
        finalized: list[FinalizedRecord] | None = None,
        raw_text: str | None = None,
        model: str | None = None,
        assessment: Assessment | None = None,
    ) -> None:
        """Append turns and upsert changed state in a single transaction."""
        now = _now()
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT COALESCE(MAX(seq), 0) FROM turns WHERE session_id = ?", (session_id,)
            ).fetchone()
            seq = row[0]
            for turn in turns:
                seq += 1
                is_assistant = turn.role == Role.ASSISTANT
                self._conn.execute(
                    """INSERT INTO turns
                       (session_id, seq, role, kind, content, raw_text, model, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        session_id,
                        seq,
                        turn.role.value,
                        turn.kind.value,
                        turn.content,
                        raw_text if is_assistant else None,
                        model if is_assistant else None,
                        now,
                    ),
                )

            for inst in instances:
                self._conn.execute(
                    """INSERT INTO criterion_instances
                       (session_id, criterion_id, data, complete, updated_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT (session_id, criterion_id)
                       DO UPDATE SET data = excluded.data,
                                     complete = excluded.complete,
                                     updated_at = excluded.updated_at""",
                    (session_id, inst.criterion_id, inst.model_dump_json(), int(inst.complete), now),
                )

            for rec in finalized or []:
                self._conn.execute(
                    """INSERT OR IGNORE INTO finalized_records
                       (session_id, criterion_id, description, fields, finalized_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (session_id, rec.criterion_id, rec.description, json.dumps(rec.fields), now),
                )

            if assessment is not None:
                self._conn.execute(
                    """INSERT INTO assessments (session_id, data, created_at)
                       VALUES (?, ?, ?)""",
                    (session_id, assessment.model_dump_json(), now),
                )

            current = self._conn.execute(
                "SELECT phase FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
            if current is not None and current["phase"] != ConversationPhase(phase).value:
                self._set_phase(session_id, ConversationPhase(phase))
            else:
                self._conn.execute(
                    "UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session_id)
                )

    def record_failure(self, session_id: str, user_content: str, error: str) -> None:
        """Diagnostic log of a turn that failed and was not committed."""
        with self._lock, self._conn:
            self._conn.execute(
                """INSERT INTO turn_failures (session_id, user_content, error, failed_at)
                   VALUES (?, ?, ?, ?)""",
                (session_id, user_content, error, _now()),
            )

    # ── Reads ────────────────────────────────────────────────

    def get_turns(self, session_id: str) -> list[Turn]:
        rows = self._conn.execute(
            "SELECT role, kind, content FROM turns WHERE session_id = ? ORDER BY seq",
            (session_id,),
        ).fetchall()
        return [
            Turn(role=Role(r["role"]), kind=TurnKind(r["kind"]), content=r["content"])
            for r in rows
        ]

    def get_instances(self, session_id: str) -> dict[str, CriterionInstance]:
        rows = self._conn.execute(
            "SELECT criterion_id, data FROM criterion_instances WHERE session_id = ?",
            (session_id,),
        ).fetchall()
        return {r["criterion_id"]: CriterionInstance.model_validate_json(r["data"]) for r in rows}

    def get_finalized_records(self, session_id: str) -> list[FinalizedRecord]:
        rows = self._conn.execute(
            """SELECT criterion_id, description, fields FROM finalized_records
               WHERE session_id = ? ORDER BY id""",
            (session_id,),
        ).fetchall()
        return [
            FinalizedRecord(
                criterion_id=r["criterion_id"],
                description=r["description"],
                fields=json.loads(r["fields"]),
            )
            for r in rows
        ]

    def get_assessment(self, session_id: str) -> Optional[Assessment]:
        """Most recent strength assessment, or None before the first one."""
        row = self._conn.execute(
            """SELECT data FROM assessments
               WHERE session_id = ? ORDER BY id DESC LIMIT 1""",
            (session_id,),
        ).fetchone()
        return Assessment.model_validate_json(row["data"]) if row else None

    # ── Session Stats ────────────────────────────────────────

    def get_session_stats(self, session_id: str) -> dict:
        """Turn, criterion, and failure counts for one session."""
        q = self._conn.execute
        return {
            "turns": q("SELECT COUNT(*) FROM turns WHERE session_id = ?", (session_id,)).fetchone()[0],
            "criteria_touched": q(
                "SELECT COUNT(*) FROM criterion_instances WHERE session_id = ?", (session_id,)
            ).fetchone()[0],
            "criteria_complete": q(
                "SELECT COUNT(*) FROM criterion_instances WHERE session_id = ? AND complete = 1",
                (session_id,),
            ).fetchone()[0],
            "finalized_records": q(
                "SELECT COUNT(*) FROM finalized_records WHERE session_id = ?", (session_id,)
            ).fetchone()[0],
            "failures": q(
                "SELECT COUNT(*) FROM turn_failures WHERE session_id = ?", (session_id,)
            ).fetchone()[0],
        }

    # ── Cleanup ──────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()


# ── Helpers ──────────────────────────────────────────────────────────


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
