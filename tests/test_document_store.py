"""Tests for the local document store: upload, indexing, search, reference store."""

from pathlib import Path
from unittest.mock import patch

import pytest
from docx import Document
from fpdf import FPDF

from intake.agents.models import StoreIds
from intake.core.errors import DocumentIndexingError
from intake.documents.store import (
    DocumentSearch,
    DocumentStore,
    ReferenceStoreProvider,
    chunk_text,
    ensure_stores,
    extract_text,
)

REFS_DIR = Path(__file__).resolve().parent.parent / "refs"


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture()
def store(tmp_path):
    ds = DocumentStore(tmp_path)
    yield ds
    ds.close()


@pytest.fixture()
def offer_pdf(tmp_path) -> Path:
    """A digital PDF with an extractable offer letter."""
    pdf = FPDF()
    pdf.add_page()
    pdf.set_font("Helvetica", size=12)
    pdf.multi_cell(w=0, text=(
        "Offer Letter. Acme Inc is pleased to offer you the position of Chief "
        "Technology Officer with an annual base salary of 300,000 USD and equity."
    ))
    path = tmp_path / "offer_letter.pdf"
    pdf.output(str(path))
    return path


@pytest.fixture()
def blank_pdf(tmp_path) -> Path:
    pdf = FPDF()
    pdf.add_page()
    path = tmp_path / "scan.pdf"
    pdf.output(str(path))
    return path


def _write(tmp_path, name, text) -> Path:
    path = tmp_path / name
    path.write_text(text)
    return path


# ── Upload & Index ───────────────────────────────────────────────────


def test_upload_and_index_pdf(store, offer_pdf):
    sid = store.create_store("evidence")
    ref = store.upload(sid, offer_pdf)
    batch = store.index(sid, [ref])

    status = store.wait_for_batch(batch, interval=0.01, timeout=1)
    assert status.status == "completed"
    assert status.completed == 1
    assert store.get_document(ref)["filename"] == "offer_letter.pdf"


def test_reupload_same_content_dedupes(store, tmp_path):
    sid = store.create_store("evidence")
    a = _write(tmp_path, "a.md", "same text")
    b = _write(tmp_path, "b.md", "same text")
    assert store.upload(sid, a) == store.upload(sid, b)


def test_upload_to_unknown_store(store, tmp_path):
    with pytest.raises(ValueError, match="not found"):
        store.upload("vs_missing", _write(tmp_path, "a.md", "x"))


def test_index_empty_list_rejected(store):
    sid = store.create_store("evidence")
    with pytest.raises(ValueError):
        store.index(sid, [])


def test_blank_pdf_fails_indexing(store, blank_pdf):
    sid = store.create_store("evidence")
    batch = store.index(sid, [store.upload(sid, blank_pdf)])
    assert store.batch_status(batch).status == "failed"
    with pytest.raises(DocumentIndexingError):
        store.wait_for_batch(batch, interval=0.01, timeout=1)


def test_unsupported_type_fails_indexing(store, tmp_path):
    sid = store.create_store("evidence")
    path = tmp_path / "photo.heic"
    path.write_bytes(b"\x00\x01")
    batch = store.index(sid, [store.upload(sid, path)])
    with pytest.raises(DocumentIndexingError, match="failed=1"):
        store.wait_for_batch(batch, interval=0.01, timeout=1)


def test_upload_and_index_docx(store, tmp_path):
    doc = Document()
    doc.add_paragraph("Recommendation letter from Dr. Rivera, Stanford University.")
    table = doc.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Salary"
    table.rows[0].cells[1].text = "310,000 USD"
    path = tmp_path / "letter.docx"
    doc.save(str(path))

    sid = store.create_store("evidence")
    ref = store.upload(sid, path)
    status = store.wait_for_batch(store.index(sid, [ref]), interval=0.01, timeout=1)
    assert status.status == "completed"

    hits = store.search([sid], "recommendation Rivera")
    assert hits[0].filename == "letter.docx"
    assert store.search([sid], "salary")[0].text.endswith("310,000 USD")


def test_image_stored_without_text(store, tmp_path):
    path = tmp_path / "carta.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 16)
    sid = store.create_store("evidence")
    ref = store.upload(sid, path)

    status = store.wait_for_batch(store.index(sid, [ref]), interval=0.01, timeout=1)
    assert status.status == "completed"
    assert store.get_document(ref)["status"] == "completed"
    assert store.search([sid], "carta") == []


def test_wait_for_batch_times_out(store, tmp_path):
    sid = store.create_store("evidence")
    ref = store.upload(sid, _write(tmp_path, "a.md", "text"))
    batch = store.index(sid, [ref])
    store._conn.execute("UPDATE documents SET status = 'in_progress'")
    store._conn.commit()
    with patch("intake.documents.store.time.sleep"):
        with pytest.raises(DocumentIndexingError, match="Timed out"):
            store.wait_for_batch(batch, interval=0.01, timeout=0)


# ── Search ───────────────────────────────────────────────────────────


def test_search_ranks_by_term_overlap(store, tmp_path, offer_pdf):
    sid = store.create_store("evidence")
    refs = [
        store.upload(sid, offer_pdf),
        store.upload(sid, _write(tmp_path, "notes.md", "Met the team for lunch.")),
    ]
    store.wait_for_batch(store.index(sid, refs), interval=0.01, timeout=1)

    hits = store.search([sid], "annual salary equity")
    assert [h.filename for h in hits] == ["offer_letter.pdf"]
    assert store.search([sid], "the and") == []


def test_search_scoped_to_given_stores(store, tmp_path):
    mine = store.create_store("mine")
    other = store.create_store("other")
    ref = store.upload(other, _write(tmp_path, "x.md", "salary details"))
    store.wait_for_batch(store.index(other, [ref]), interval=0.01, timeout=1)
    assert store.search([mine], "salary") == []


def test_document_search_covers_both_stores(store, tmp_path):
    ref_store = store.create_store("refs")
    user_store = store.create_store("user")
    for sid, name, text in [
        (ref_store, "defs.md", "Critical role means an essential capacity."),
        (user_store, "role.md", "I held a critical role as CTO."),
    ]:
        ref = store.upload(sid, _write(tmp_path, name, text))
        store.wait_for_batch(store.index(sid, [ref]), interval=0.01, timeout=1)

    search = DocumentSearch(store, StoreIds(user_store_id=user_store, reference_store_id=ref_store))
    hits = search.search("critical role")
    assert {h.filename for h in hits} == {"defs.md", "role.md"}
    assert "[defs.md]" in DocumentSearch.format_hits(hits)
    assert DocumentSearch.format_hits([]) == "No matching passages found."


# ── Reference Store ──────────────────────────────────────────────────


def test_reference_store_built_once(store):
    provider = ReferenceStoreProvider(store, refs_dir=REFS_DIR)
    first = provider.resolve()
    assert provider.resolve() == first
    assert store.search([first], "remuneration paystubs")


def test_configured_reference_store_reused(store):
    existing = store.create_store("prebuilt")
    provider = ReferenceStoreProvider(store, refs_dir=REFS_DIR, configured_id=existing)
    assert provider.resolve() == existing


def test_missing_configured_store_rebuilt(store):
    provider = ReferenceStoreProvider(store, refs_dir=REFS_DIR, configured_id="vs_gone")
    resolved = provider.resolve()
    assert resolved != "vs_gone"
    assert store.has_store(resolved)


def test_ensure_stores_keeps_existing_user_store(store, tmp_path):
    provider = ReferenceStoreProvider(store, refs_dir=tmp_path / "empty")
    ids = ensure_stores(store, provider, "session-1234")
    again = ensure_stores(store, provider, "session-1234", ids.user_store_id)
    assert again == ids
    assert ids.user_store_id != ids.reference_store_id


# ── Helpers ──────────────────────────────────────────────────────────


def test_chunk_text_respects_limit():
    text = "\n\n".join(["word " * 50] * 10)
    chunks = chunk_text(text, max_chars=600)
    assert len(chunks) > 1
    assert all(len(c) <= 600 for c in chunks)


def test_extract_text_unsupported(tmp_path):
    path = tmp_path / "a.heic"
    path.write_bytes(b"\x00\x01")
    with pytest.raises(ValueError, match="unsupported"):
        extract_text(path)


def test_extract_text_corrupt_docx(tmp_path):
    path = tmp_path / "a.docx"
    path.write_bytes(b"PK")
    with pytest.raises(ValueError, match="unreadable"):
        extract_text(path)
