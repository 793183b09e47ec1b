"""Local document store: upload, index (poll-until-ready), and keyword search.

Two collections matter to a conversation: one shared store of static O-1
reference material and one store per session for user-submitted evidence.
Retrieval quality is deliberately simple; the merge logic never depends on it.
"""

import hashlib
import logging
import re
import shutil
import sqlite3
import threading
import time
import uuid
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF
from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from pydantic import BaseModel

from intake.agents.models import StoreIds
from intake.core.errors import DocumentIndexingError

logger = logging.getLogger(__name__)

REFERENCE_STORE_NAME = "O1 Visa Definitions"
REFERENCE_SUFFIXES = (".md", ".json")
TEXT_SUFFIXES = (".md", ".txt", ".json", ".csv")
IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg")

_CHUNK_CHARS = 1200
_WORD_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset(
    "the and for with that this from are was were have has had you your what which "
    "about into their there they them been will would can could not".split()
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS stores (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
    file_ref        TEXT PRIMARY KEY,
    store_id        TEXT NOT NULL REFERENCES stores(id),
    filename        TEXT NOT NULL,
    path            TEXT NOT NULL,
    content_hash    TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'uploaded'
                    CHECK (status IN ('uploaded', 'in_progress', 'completed', 'failed')),
    error           TEXT,
    uploaded_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_documents_store ON documents(store_id);

CREATE TABLE IF NOT EXISTS chunks (
    id          INTEGER PRIMARY KEY,
    file_ref    TEXT NOT NULL REFERENCES documents(file_ref),
    seq         INTEGER NOT NULL,
    text        TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_file ON chunks(file_ref);

CREATE TABLE IF NOT EXISTS batches (
    id          TEXT PRIMARY KEY,
    store_id    TEXT NOT NULL REFERENCES stores(id),
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS batch_files (
    batch_id    TEXT NOT NULL REFERENCES batches(id),
    file_ref    TEXT NOT NULL REFERENCES documents(file_ref),
    PRIMARY KEY (batch_id, file_ref)
);
"""


class SearchHit(BaseModel):
    file_ref: str
    filename: str
    store_id: str
    text: str
    score: float


class BatchStatus(BaseModel):
    batch_id: str
    in_progress: int
    completed: int
    failed: int

    @property
    def status(self) -> str:
        if self.in_progress:
            return "in_progress"
        return "failed" if self.failed else "completed"


# ── DocumentStore ────────────────────────────────────────────────────


class DocumentStore:
    """SQLite-backed collections of uploaded documents."""

    def __init__(self, data_root: Path):
        self.root = Path(data_root) / "documents"
        self.root.mkdir(parents=True, exist_ok=True)
        self.db_path = self.root / "documents.db"
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    # ── Stores ───────────────────────────────────────────────

    def create_store(self, name: str) -> str:
        store_id = f"vs_{uuid.uuid4().hex[:24]}"
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO stores (id, name, created_at) VALUES (?, ?, ?)",
                (store_id, name, _now()),
            )
        (self.root / store_id).mkdir(exist_ok=True)
        logger.info("Created document store %s (%s)", store_id, name)
        return store_id

    def has_store(self, store_id: str) -> bool:
        row = self._conn.execute("SELECT 1 FROM stores WHERE id = ?", (store_id,)).fetchone()
        return row is not None

    # ── Upload ───────────────────────────────────────────────

    def upload(self, store_id: str, path: str | Path) -> str:
        """Copy a file into a store. Re-uploading identical content returns the same ref."""
        path = Path(path)
        if not self.has_store(store_id):
            raise ValueError(f"Document store {store_id} not found")
        if not path.is_file():
            raise FileNotFoundError(path)

        content_hash = compute_file_hash(path)
        with self._lock:
            row = self._conn.execute(
                "SELECT file_ref FROM documents WHERE store_id = ? AND content_hash = ?",
                (store_id, content_hash),
            ).fetchone()
            if row:
                logger.info("%s already in store %s as %s", path.name, store_id, row["file_ref"])
                return row["file_ref"]

            file_ref = f"file_{uuid.uuid4().hex[:24]}"
            dest = self.root / store_id / f"{file_ref}_{path.name}"
            shutil.copyfile(path, dest)
            with self._conn:
                self._conn.execute(
                    """INSERT INTO documents
                       (file_ref, store_id, filename, path, content_hash, status, uploaded_at)
                       VALUES (?, ?, ?, ?, ?, 'uploaded', ?)""",
                    (file_ref, store_id, path.name, str(dest), content_hash, _now()),
                )
        logger.info("Uploaded %s -> %s", path.name, file_ref)
        return file_ref

    def get_document(self, file_ref: str) -> Optional[dict]:
        row = self._conn.execute(
            "SELECT * FROM documents WHERE file_ref = ?", (file_ref,)
        ).fetchone()
        return dict(row) if row else None

    # ── Indexing ─────────────────────────────────────────────

    def index(self, store_id: str, file_refs: list[str]) -> str:
        """Extract and chunk the given files. Returns a batch id to poll."""
        if not file_refs:
            raise ValueError("index: file_refs cannot be empty")

        batch_id = f"batch_{uuid.uuid4().hex[:24]}"
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO batches (id, store_id, created_at) VALUES (?, ?, ?)",
                    (batch_id, store_id, _now()),
                )
                for ref in file_refs:
                    doc = self.get_document(ref)
                    if doc is None or doc["store_id"] != store_id:
                        raise ValueError(f"File {ref} is not in store {store_id}")
                    self._conn.execute(
                        "INSERT OR IGNORE INTO batch_files (batch_id, file_ref) VALUES (?, ?)",
                        (batch_id, ref),
                    )
                    if doc["status"] != "completed":
                        self._conn.execute(
                            "UPDATE documents SET status = 'in_progress' WHERE file_ref = ?",
                            (ref,),
                        )

            for ref in file_refs:
                self._index_file(ref)

        return batch_id

    def _index_file(self, file_ref: str) -> None:
        doc = self.get_document(file_ref)
        if doc["status"] == "completed":
            return
        path = Path(doc["path"])
        try:
            text = extract_text(path)
            if not text.strip() and path.suffix.lower() not in IMAGE_SUFFIXES:
                raise ValueError("no extractable text")
        except (ValueError, RuntimeError, OSError) as exc:
            logger.warning("Indexing %s (%s) failed: %s", doc["filename"], file_ref, exc)
            with self._conn:
                self._conn.execute(
                    "UPDATE documents SET status = 'failed', error = ? WHERE file_ref = ?",
                    (str(exc), file_ref),
                )
            return

        chunks = chunk_text(text)
        with self._conn:
            self._conn.execute("DELETE FROM chunks WHERE file_ref = ?", (file_ref,))
            self._conn.executemany(
                "INSERT INTO chunks (file_ref, seq, text) VALUES (?, ?, ?)",
                [(file_ref, i, c) for i, c in enumerate(chunks)],
            )
            self._conn.execute(
                "UPDATE documents SET status = 'completed', error = NULL WHERE file_ref = ?",
                (file_ref,),
            )
        logger.info("Indexed %s: %d chunks", doc["filename"], len(chunks))

    def batch_status(self, batch_id: str) -> BatchStatus:
        rows = self._conn.execute(
            """SELECT d.status, COUNT(*) AS cnt
               FROM batch_files bf JOIN documents d ON d.file_ref = bf.file_ref
               WHERE bf.batch_id = ?
               GROUP BY d.status""",
            (batch_id,),
        ).fetchall()
        if not rows:
            raise ValueError(f"Batch {batch_id} not found")
        counts = {r["status"]: r["cnt"] for r in rows}
        return BatchStatus(
            batch_id=batch_id,
            in_progress=counts.get("in_progress", 0) + counts.get("uploaded", 0),
            completed=counts.get("completed", 0),
            failed=counts.get("failed", 0),
        )

    def wait_for_batch(
        self, batch_id: str, interval: float = 1.5, timeout: float = 120.0
    ) -> BatchStatus:
        """Poll until no file is in progress; raise if any failed or time runs out."""
        start = time.monotonic()
        while True:
            status = self.batch_status(batch_id)
            if status.in_progress == 0:
                if status.failed > 0:
                    raise DocumentIndexingError(
                        f"Indexing finished with failures (failed={status.failed})"
                    )
                return status
            if time.monotonic() - start > timeout:
                raise DocumentIndexingError("Timed out waiting for document indexing")
            time.sleep(interval)

    # ── Search ───────────────────────────────────────────────

    def search(self, store_ids: list[str], query: str, max_results: int = 8) -> list[SearchHit]:
        """Rank indexed chunks in the given stores by query-term overlap."""
        terms = _terms(query)
        if not terms or not store_ids:
            return []

        placeholders = ", ".join("?" for _ in store_ids)
        rows = self._conn.execute(
            f"""SELECT c.text, d.file_ref, d.filename, d.store_id
                FROM chunks c JOIN documents d ON d.file_ref = c.file_ref
                WHERE d.store_id IN ({placeholders}) AND d.status = 'completed'
                ORDER BY d.file_ref, c.seq""",
            tuple(store_ids),
        ).fetchall()

        hits = []
        for r in rows:
            words = _WORD_RE.findall(r["text"].lower())
            if not words:
                continue
            score = sum(words.count(t) for t in terms)
            if score:
                hits.append(
                    SearchHit(
                        file_ref=r["file_ref"],
                        filename=r["filename"],
                        store_id=r["store_id"],
                        text=r["text"],
                        score=score / len(terms),
                    )
                )
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:max_results]

    def close(self) -> None:
        self._conn.close()


# ── Search Capability ────────────────────────────────────────────────


class DocumentSearch:
    """Read-only search bound to exactly one reference and one user store."""

    def __init__(self, store: DocumentStore, store_ids: StoreIds, max_results: int = 8):
        self._store = store
        self.store_ids = store_ids
        self.max_results = max_results

    def search(self, query: str) -> list[SearchHit]:
        return self._store.search(
            [self.store_ids.reference_store_id, self.store_ids.user_store_id],
            query,
            self.max_results,
        )

    @staticmethod
    def format_hits(hits: list[SearchHit]) -> str:
        if not hits:
            return "No matching passages found."
        return "\n\n".join(f"[{h.filename}]\n{h.text}" for h in hits)


# ── Reference Store ──────────────────────────────────────────────────


class ReferenceStoreProvider:
    """Resolves the shared reference store once and hands out its id."""

    def __init__(
        self,
        store: DocumentStore,
        refs_dir: Optional[Path] = None,
        configured_id: Optional[str] = None,
    ):
        self._store = store
        self._refs_dir = Path(refs_dir) if refs_dir else None
        self._configured_id = configured_id
        self._store_id: Optional[str] = None
        self._lock = threading.Lock()

    def resolve(self) -> str:
        with self._lock:
            if self._store_id is None:
                self._store_id = self._resolve_locked()
            return self._store_id

    def _resolve_locked(self) -> str:
        if self._configured_id:
            if self._store.has_store(self._configured_id):
                return self._configured_id
            logger.warning(
                "Configured reference store %s not found; building a new one",
                self._configured_id,
            )

        store_id = self._store.create_store(REFERENCE_STORE_NAME)
        files = []
        if self._refs_dir and self._refs_dir.is_dir():
            files = sorted(
                p for p in self._refs_dir.iterdir() if p.suffix.lower() in REFERENCE_SUFFIXES
            )
        if not files:
            logger.warning("No reference files found in %s; reference store is empty", self._refs_dir)
            return store_id

        refs = [self._store.upload(store_id, p) for p in files]
        batch_id = self._store.index(store_id, refs)
        self._store.wait_for_batch(batch_id)
        logger.info("Reference store ready: %s (%d files)", store_id, len(refs))
        logger.info("Set REFERENCE_STORE_ID=%s to reuse it", store_id)
        return store_id


def ensure_stores(
    store: DocumentStore,
    provider: ReferenceStoreProvider,
    session_id: str,
    existing_user_store_id: Optional[str] = None,
) -> StoreIds:
    """Reference store from the provider plus the session's evidence store."""
    reference_store_id = provider.resolve()
    user_store_id = existing_user_store_id
    if not user_store_id or not store.has_store(user_store_id):
        user_store_id = store.create_store(f"O1 Evidence [{session_id[:8]}]")
    return StoreIds(user_store_id=user_store_id, reference_store_id=reference_store_id)


# ── Helpers ──────────────────────────────────────────────────────────


def compute_file_hash(path: Path) -> str:
    """SHA-256 hash of the file contents."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def extract_text(path: Path) -> str:
    """Plain text of a PDF (PyMuPDF), a Word document, or a text-like file.

    Images are accepted as evidence but carry no searchable text.
    """
    suffix = path.suffix.lower()
    if suffix == ".pdf":
        doc = fitz.open(str(path))
        try:
            return "\n\n".join(page.get_text() for page in doc)
        finally:
            doc.close()
    if suffix == ".docx":
        try:
            doc = Document(str(path))
        except (PackageNotFoundError, zipfile.BadZipFile) as exc:
            raise ValueError(f"unreadable Word document: {exc}") from exc
        parts = [p.text for p in doc.paragraphs]
        for table in doc.tables:
            for row in table.rows:
                parts.append(" | ".join(cell.text for cell in row.cells))
        return "\n\n".join(p for p in parts if p.strip())
    if suffix in IMAGE_SUFFIXES:
        if not path.is_file():
            raise OSError(f"file not found: {path}")
        return ""
    if suffix in TEXT_SUFFIXES:
        return path.read_text(errors="replace")
    raise ValueError(f"unsupported file type: {suffix or 'none'}")


def chunk_text(text: str, max_chars: int = _CHUNK_CHARS) -> list[str]:
    """Greedy paragraph packing into chunks of at most ``max_chars``."""
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
    chunks: list[str] = []
    buf = ""
    for para in paragraphs:
        while len(para) > max_chars:
            if buf:
                chunks.append(buf)
                buf = ""
            chunks.append(para[:max_chars])
            para = para[max_chars:]
        if buf and len(buf) + len(para) + 2 > max_chars:
            chunks.append(buf)
            buf = para
        else:
            buf = f"{buf}\n\n{para}" if buf else para
    if buf:
        chunks.append(buf)
    return chunks


def _terms(query: str) -> list[str]:
    return [w for w in _WORD_RE.findall(query.lower()) if len(w) > 2 and w not in _STOPWORDS]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
