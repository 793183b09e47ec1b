"""Conversation driver: one intake session, turn by turn.

Phases: uninitialized -> awaiting_first_turn -> collecting -> complete.
Each turn runs oracle -> parser -> reconciler and is committed atomically:
either the user turn, the assistant reply, and the merged state all land
together, or nothing changes and the same input can simply be resent.
"""

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Optional

from intake.agents.models import (
    ConversationPhase,
    ConversationState,
    CriterionInstance,
    FinalizedRecord,
    Role,
    StoreIds,
    Turn,
    TurnKind,
    TurnResult,
)
from intake.agents.oracle import SENTINEL_INIT, Oracle
from intake.agents.reconciler import (
    ReconcileResult,
    all_complete,
    finalize,
    missing_by_criterion,
    next_focus as pick_focus,
    recompute,
    reconcile,
    vet_assessment,
)
from intake.agents.response_parser import parse
from intake.core.criteria_schema import CriteriaRegistry
from intake.core.database import SessionDatabase
from intake.core.errors import (
    InvalidTransitionError,
    OracleUnavailable,
    TurnInProgressError,
)
from intake.documents.store import (
    DocumentSearch,
    DocumentStore,
    ReferenceStoreProvider,
    ensure_stores,
)

logger = logging.getLogger(__name__)

NO_MESSAGE = "(no response text returned)"


def upload_notice(filenames: list[str]) -> str:
    """Synthetic user turn announcing uploaded evidence."""
    return f"[Uploaded: {', '.join(filenames)}]"


class ConversationDriver:
    """Owns a ConversationState and is the only thing that mutates it."""

    def __init__(
        self,
        registry: CriteriaRegistry,
        oracle: Oracle,
        db: SessionDatabase,
        document_store: Optional[DocumentStore] = None,
        reference_provider: Optional[ReferenceStoreProvider] = None,
        session_id: Optional[str] = None,
        index_poll_interval: float = 1.5,
        index_timeout: float = 120.0,
    ):
        self.registry = registry
        self.oracle = oracle
        self.db = db
        self.document_store = document_store
        self.reference_provider = reference_provider
        self.index_poll_interval = index_poll_interval
        self.index_timeout = index_timeout
        self._state = ConversationState(session_id=session_id or str(uuid.uuid4()))
        self._store_ids: Optional[StoreIds] = None
        self._turn_lock = threading.Lock()

    # ── Read-only views ──────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self._state.session_id

    @property
    def phase(self) -> ConversationPhase:
        return self._state.phase

    @property
    def state(self) -> ConversationState:
        """Deep-copied snapshot; mutating it has no effect on the session."""
        return self._state.model_copy(deep=True)

    @property
    def store_ids(self) -> Optional[StoreIds]:
        return self._store_ids

    @property
    def finalized_records(self) -> list[FinalizedRecord]:
        return [r.model_copy(deep=True) for r in self._state.finalized_records]

    @property
    def is_busy(self) -> bool:
        return self._turn_lock.locked()

    def missing_fields(self) -> dict[str, list[str]]:
        """Missing field names across every schema criterion, touched or not."""
        return missing_by_criterion(self._state.instances, self.registry)

    def next_focus(self) -> Optional[tuple[str, list[str]]]:
        """The criterion to steer toward next: touched-but-incomplete first."""
        return pick_focus(self._state.instances, self.registry)

    # ── Lifecycle ────────────────────────────────────────────

    def start(self) -> Optional[StoreIds]:
        """Create the session and provision its document stores."""
        if self._state.phase != ConversationPhase.UNINITIALIZED:
            raise InvalidTransitionError(f"Session already started ({self._state.phase.value})")

        self.db.create_session(self.session_id, self.registry.schema_hash())
        if self.document_store is not None and self.reference_provider is not None:
            self._store_ids = ensure_stores(
                self.document_store, self.reference_provider, self.session_id
            )
            self.db.set_store_ids(
                self.session_id,
                self._store_ids.user_store_id,
                self._store_ids.reference_store_id,
            )
        self.db.update_phase(self.session_id, ConversationPhase.AWAITING_FIRST_TURN)
        self._state = self._state.model_copy(update={"phase": ConversationPhase.AWAITING_FIRST_TURN})
        logger.info("Session %s awaiting first turn", self.session_id)
        return self._store_ids

    @classmethod
    def resume(
        cls,
        session_id: str,
        registry: CriteriaRegistry,
        oracle: Oracle,
        db: SessionDatabase,
        document_store: Optional[DocumentStore] = None,
        reference_provider: Optional[ReferenceStoreProvider] = None,
        **kwargs,
    ) -> "ConversationDriver":
        """Rebuild a driver from a persisted session."""
        row = db.get_session(session_id)
        if row is None:
            raise ValueError(f"Session {session_id} not found")
        if row["schema_hash"] != registry.schema_hash():
            logger.warning(
                "Session %s was started with a different criteria schema (hash %s)",
                session_id,
                row["schema_hash"][:12],
            )

        driver = cls(
            registry,
            oracle,
            db,
            document_store=document_store,
            reference_provider=reference_provider,
            session_id=session_id,
            **kwargs,
        )
        instances = {}
        for cid, inst in db.get_instances(session_id).items():
            if not registry.has(cid):
                logger.warning("Session %s: dropping instance of unknown criterion %s", session_id, cid)
                continue
            instances[cid] = recompute(inst, registry.get(cid))

        driver._state = ConversationState(
            session_id=session_id,
            phase=ConversationPhase(row["phase"]),
            turns=db.get_turns(session_id),
            instances=instances,
            finalized_records=db.get_finalized_records(session_id),
            assessment=db.get_assessment(session_id),
        )
        if document_store is not None and reference_provider is not None:
            driver._store_ids = ensure_stores(
                document_store, reference_provider, session_id, row["user_store_id"]
            )
            if driver._store_ids.user_store_id != row["user_store_id"]:
                db.set_store_ids(
                    session_id,
                    driver._store_ids.user_store_id,
                    driver._store_ids.reference_store_id,
                )
        logger.info(
            "Resumed session %s (%s, %d turns)",
            session_id,
            driver.phase.value,
            len(driver._state.turns),
        )
        return driver

    # ── Turns ────────────────────────────────────────────────

    def greet(self) -> TurnResult:
        """Send the internal greeting trigger. Never extracts any field."""
        if self._state.phase != ConversationPhase.AWAITING_FIRST_TURN:
            raise InvalidTransitionError(
                f"greet() requires awaiting_first_turn, session is {self._state.phase.value}"
            )
        return self._run_turn(Turn(role=Role.USER, content=SENTINEL_INIT, kind=TurnKind.GREETING))

    def send(self, message: str) -> TurnResult:
        """Process one real user message."""
        content = (message or "").strip()
        if not content:
            raise ValueError("message is required")
        if content == SENTINEL_INIT:
            if self._state.phase == ConversationPhase.AWAITING_FIRST_TURN:
                return self.greet()
            self._require_started()
            return self._run_turn(Turn(role=Role.USER, content=content, kind=TurnKind.GREETING))
        self._require_started()
        return self._run_turn(Turn(role=Role.USER, content=content, kind=TurnKind.MESSAGE))

    def upload_evidence(self, paths: list[str | Path]) -> TurnResult:
        """Upload and index files, then announce them as a synthetic turn.

        Indexing must finish before the announcement; a failure raises
        DocumentIndexingError and no turn is emitted.
        """
        self._require_started()
        if self.document_store is None or self._store_ids is None:
            raise RuntimeError("No document store configured for this session")
        if not paths:
            raise ValueError("No files provided")

        paths = [Path(p) for p in paths]
        store_id = self._store_ids.user_store_id
        refs = [self.document_store.upload(store_id, p) for p in paths]
        batch_id = self.document_store.index(store_id, refs)
        self.document_store.wait_for_batch(
            batch_id, interval=self.index_poll_interval, timeout=self.index_timeout
        )
        logger.info("Session %s: %d evidence files indexed", self.session_id, len(refs))

        notice = upload_notice([p.name for p in paths])
        return self._run_turn(Turn(role=Role.USER, content=notice, kind=TurnKind.UPLOAD))

    def _require_started(self) -> None:
        if self._state.phase in (ConversationPhase.UNINITIALIZED, ConversationPhase.AWAITING_FIRST_TURN):
            raise InvalidTransitionError(
                f"Conversation not started ({self._state.phase.value}); call start() and greet()"
            )

    def _run_turn(self, turn: Turn) -> TurnResult:
        if not self._turn_lock.acquire(blocking=False):
            raise TurnInProgressError(f"Session {self.session_id} already has a turn in flight")
        try:
            return self._process(turn)
        finally:
            self._turn_lock.release()

    def _process(self, turn: Turn) -> TurnResult:
        prior = self._state
        search = self._document_search()

        try:
            response = self.oracle.extract(
                self.registry, prior.instances, prior.turns, turn, document_search=search
            )
        except OracleUnavailable as exc:
            self.db.record_failure(self.session_id, turn.content, str(exc))
            raise

        parsed = parse(response.raw_text)
        message = parsed.message or NO_MESSAGE

        phase = prior.phase
        if phase == ConversationPhase.AWAITING_FIRST_TURN:
            phase = ConversationPhase.COLLECTING

        if phase == ConversationPhase.COMPLETE:
            # Finalized records are frozen; the turn is conversational only
            result = ReconcileResult(
                {cid: i.model_copy(deep=True) for cid, i in prior.instances.items()}, [], []
            )
        else:
            result = reconcile(prior.instances, parsed.payload, self.registry, turn.kind)

        finalized = list(prior.finalized_records)
        newly_finalized: list[FinalizedRecord] = []
        if phase == ConversationPhase.COLLECTING and all_complete(result.instances, self.registry):
            phase = ConversationPhase.COMPLETE
            newly_finalized = finalize(result.instances, self.registry)
            finalized = newly_finalized

        reply = Turn(role=Role.ASSISTANT, content=message)
        new_turns = [reply] if turn.kind == TurnKind.GREETING else [turn, reply]
        changed = [result.instances[cid] for cid in result.changed_criterion_ids]
        assessment = vet_assessment(
            prior.assessment,
            parsed.payload.assessment if parsed.payload is not None else None,
            self.registry,
            turn.kind,
        )

        self.db.commit_turn(
            self.session_id,
            new_turns,
            changed,
            phase,
            finalized=newly_finalized,
            raw_text=response.raw_text,
            model=response.model,
            assessment=assessment if assessment is not prior.assessment else None,
        )
        self._state = ConversationState(
            session_id=prior.session_id,
            phase=phase,
            turns=[*prior.turns, *new_turns],
            instances=result.instances,
            finalized_records=finalized,
            assessment=assessment,
        )

        self._log_changes(changed, newly_finalized)
        return TurnResult(
            message=message,
            changed_criterion_ids=list(result.changed_criterion_ids),
            instances=[i.model_copy(deep=True) for i in result.instances.values()],
            phase=phase,
            finalized_records=[r.model_copy(deep=True) for r in finalized],
            payload_received=parsed.payload is not None,
            assessment=assessment.model_copy(deep=True) if assessment is not None else None,
        )

    def _document_search(self) -> Optional[DocumentSearch]:
        if self.document_store is None or self._store_ids is None:
            return None
        return DocumentSearch(self.document_store, self._store_ids)

    def _log_changes(
        self, changed: list[CriterionInstance], finalized: list[FinalizedRecord]
    ) -> None:
        for inst in changed:
            logger.info(
                "Criterion %s updated (%s): %s",
                inst.criterion_id,
                "complete" if inst.complete else f"missing {', '.join(inst.missing_fields)}",
                json.dumps(inst.collected_fields()),
            )
        if finalized:
            logger.info(
                "Session %s complete: %d finalized records", self.session_id, len(finalized)
            )
