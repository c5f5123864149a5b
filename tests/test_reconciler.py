import pytest
from conftest import (
    EXPECTED_AMOUNTS,
    FAKE_PDF,
    OFFICIAL_PDF_URL,
    FakeResponse,
    api_draw_payload,
    sample_prizes,
    sheet_text,
)

from src.database import get_draw, upsert_draw
from src.errors import InvalidDate
from src.models import DocumentRef, DrawRecord, PrizeSet, SourceResult, SourceTag
from src.reconciler import (
    Outcome,
    document_source,
    merge_amounts,
    merge_document,
    merge_prizes,
    merge_result,
    upgrade_source,
)

MIRROR_PDF = b"%PDF-1.4\n% mirror copy\n"
SCANNED_PDF = b"%PDF-1.4\n% scanned image only\n"


def _core():
    return PrizeSet(first=["730209"], last2=["51"], last3f=["446", "065"], last3b=["376", "297"])


# ----------------------------------------------------------------------------
# merge rules
# ----------------------------------------------------------------------------

def test_shorter_list_never_replaces_longer():
    full = sample_prizes()
    partial = PrizeSet(first=["999999"], fifth=full.fifth[:10])
    merged = merge_prizes(full, partial)
    assert merged.fifth == full.fifth
    # Same length from an equally trusted source replaces.
    assert merged.first == ["999999"]
    # ...but not from a less trusted one.
    assert merge_prizes(full, partial, incoming_wins_ties=False).first == full.first


def test_longer_list_replaces_shorter():
    merged = merge_prizes(PrizeSet(fifth=["000001"]), sample_prizes())
    assert len(merged.fifth) == 100


def test_partial_amounts_never_replace_full():
    partial = {**EXPECTED_AMOUNTS, "near1": None}
    assert merge_amounts(EXPECTED_AMOUNTS, partial) == EXPECTED_AMOUNTS
    assert merge_amounts(partial, EXPECTED_AMOUNTS) == EXPECTED_AMOUNTS
    assert merge_amounts(None, partial) is None
    assert merge_amounts(EXPECTED_AMOUNTS, {**EXPECTED_AMOUNTS, "first": 1}) == EXPECTED_AMOUNTS


def test_source_only_moves_up_in_trust():
    assert upgrade_source(SourceTag.OFFICIAL_DOCUMENT, SourceTag.API) == SourceTag.OFFICIAL_DOCUMENT
    assert upgrade_source(SourceTag.API, SourceTag.MIRROR_DOCUMENT) == SourceTag.MIRROR_DOCUMENT
    assert upgrade_source(SourceTag.MIRROR_DOCUMENT, SourceTag.UPLOAD) == SourceTag.UPLOAD
    assert upgrade_source(None, SourceTag.API) == SourceTag.API


def test_stored_document_beats_bare_reference():
    bare = DocumentRef(url=OFFICIAL_PDF_URL, document_id="lotto_160667.pdf")
    stored = DocumentRef(url="https://mirror/670616.pdf", document_id="lotteryco:670616",
                         sha256="ab", size=10, storage_path="lottery_pdfs/2024-06-16_lotteryco_670616.pdf")
    assert merge_document(bare, stored, incoming_outranks=False) == stored
    assert merge_document(stored, bare, incoming_outranks=True) == stored
    assert merge_document(None, bare, incoming_outranks=False) == bare


def test_document_source_from_id():
    assert document_source("lotteryco:670616") == SourceTag.MIRROR_DOCUMENT
    assert document_source("upload:abcdef012345") == SourceTag.UPLOAD
    assert document_source("lotto_160667.pdf") == SourceTag.OFFICIAL_DOCUMENT
    assert document_source(None) == SourceTag.OFFICIAL_DOCUMENT


def test_merge_is_idempotent():
    record = DrawRecord(date="2024-06-16", source=SourceTag.API, prizes=_core())
    result = SourceResult(
        source=SourceTag.MIRROR_DOCUMENT,
        prizes=sample_prizes(),
        document=DocumentRef(document_id="lotteryco:670616", storage_path="lottery_pdfs/x.pdf"),
    )
    once = merge_result(record, result)
    twice = merge_result(once, result)
    assert twice.same_content(once)
    assert once.source == SourceTag.MIRROR_DOCUMENT


def test_weaker_source_cannot_regress_record():
    record = merge_result(
        DrawRecord(date="2024-06-16"),
        SourceResult(source=SourceTag.OFFICIAL_DOCUMENT, prizes=sample_prizes(), amounts=EXPECTED_AMOUNTS),
    )
    weaker = SourceResult(
        source=SourceTag.MIRROR_DOCUMENT,
        prizes=PrizeSet(first=["111111"], fifth=["000001", "000002"]),
        amounts={**EXPECTED_AMOUNTS, "fifth": None},
    )
    merged = merge_result(record, weaker)
    assert merged.prizes == record.prizes
    assert merged.amounts == EXPECTED_AMOUNTS
    assert merged.source == SourceTag.OFFICIAL_DOCUMENT
    assert merged.diagnostics.complete is True


def test_empty_result_does_not_change_source():
    record = DrawRecord(date="2024-06-16", source=SourceTag.API, prizes=_core())
    merged = merge_result(record, SourceResult(source=SourceTag.OFFICIAL_DOCUMENT))
    assert merged.source == SourceTag.API


# ----------------------------------------------------------------------------
# reconcile
# ----------------------------------------------------------------------------

def test_reconcile_end_to_end_from_api_and_official_sheet(reconciler, session, pdf_text, db_path):
    session.add("POST", "getLotteryResult", FakeResponse(json_data=api_draw_payload()))
    session.add("GET", OFFICIAL_PDF_URL, FakeResponse(content=FAKE_PDF))
    pdf_text[FAKE_PDF] = sheet_text()

    result = reconciler.reconcile("2024-06-16")

    assert result.outcome == Outcome.UPDATED
    assert result.complete is True
    record = get_draw(db_path, "2024-06-16")
    assert record.source == SourceTag.OFFICIAL_DOCUMENT
    assert record.prizes == sample_prizes()
    assert record.amounts == EXPECTED_AMOUNTS
    assert record.document.storage_path == "lottery_pdfs/2024-06-16_lotto_160667.pdf"
    assert record.document.document_id == "lotto_160667.pdf"
    assert record.diagnostics.warnings == []
    assert [step.source for step in result.steps] == ["api", "official_document"]


def test_sheet_fills_in_what_a_sparse_api_answer_lacks(reconciler, session, pdf_text, db_path):
    payload = api_draw_payload()
    for key in ("last3f", "last3b"):
        payload["response"]["data"][key]["number"] = []
    session.add("POST", "getLotteryResult", FakeResponse(json_data=payload))
    session.add("GET", OFFICIAL_PDF_URL, FakeResponse(content=FAKE_PDF))
    pdf_text[FAKE_PDF] = sheet_text()

    result = reconciler.reconcile("2024-06-16")

    assert result.outcome == Outcome.UPDATED
    assert result.complete is True
    record = get_draw(db_path, "2024-06-16")
    assert record.source == SourceTag.OFFICIAL_DOCUMENT
    assert record.prizes == sample_prizes()
    assert record.amounts == EXPECTED_AMOUNTS


def test_reconcile_complete_record_is_left_alone(reconciler, session, pdf_text):
    session.add("POST", "getLotteryResult", FakeResponse(json_data=api_draw_payload()))
    session.add("GET", OFFICIAL_PDF_URL, FakeResponse(content=FAKE_PDF))
    pdf_text[FAKE_PDF] = sheet_text()
    reconciler.reconcile("2024-06-16")
    calls_after_first_run = len(session.calls)

    again = reconciler.reconcile("2567-06-16")

    assert again.outcome == Outcome.ALREADY_COMPLETE
    assert len(session.calls) == calls_after_first_run


def test_forced_rerun_is_unchanged(reconciler, session, pdf_text, db_path):
    session.add("POST", "getLotteryResult", FakeResponse(json_data=api_draw_payload()))
    session.add("GET", OFFICIAL_PDF_URL, FakeResponse(content=FAKE_PDF))
    pdf_text[FAKE_PDF] = sheet_text()
    reconciler.reconcile("2024-06-16")
    before = get_draw(db_path, "2024-06-16")

    again = reconciler.reconcile("2024-06-16", force=True)

    assert again.outcome == Outcome.UNCHANGED
    assert get_draw(db_path, "2024-06-16").updated_at == before.updated_at
    # The official sheet was already parsed; it is not downloaded twice.
    assert session.urls("GET").count(OFFICIAL_PDF_URL) == 1


def test_fallback_to_mirror_when_api_fails(reconciler, session, pdf_text, db_path):
    session.add("GET", "670616.pdf", FakeResponse(content=MIRROR_PDF))
    pdf_text[MIRROR_PDF] = sheet_text()

    result = reconciler.reconcile("2024-06-16")

    assert result.outcome == Outcome.UPDATED
    assert result.complete is False
    assert any(w.startswith("api:") for w in result.warnings)
    record = get_draw(db_path, "2024-06-16")
    assert record.source == SourceTag.MIRROR_DOCUMENT
    assert record.prizes == sample_prizes()
    assert record.amounts is None
    assert record.diagnostics.warnings == ["missing_amounts"]
    assert record.document.document_id == "lotteryco:670616"


def test_html_page_is_last_resort(reconciler, session, pdf_text, db_path):
    session.add("POST", "getLotteryResult", FakeResponse(json_data=api_draw_payload(pdf_url=None)))
    rows = "".join(f"<tr><td>{line}</td></tr>" for line in sheet_text().split("\n"))
    session.add("GET", "/16-06-67", FakeResponse(text=f"<html><body><table>{rows}</table></body></html>"))

    result = reconciler.reconcile("2024-06-16")

    assert result.outcome == Outcome.UPDATED
    assert result.complete is True
    assert [s.source for s in result.steps][-2:] == ["mirror_document", "html_page"]
    assert get_draw(db_path, "2024-06-16").source == SourceTag.MIRROR_DOCUMENT


def test_every_adapter_failing_is_a_failure(reconciler, db_path):
    result = reconciler.reconcile("2024-06-16")
    assert result.outcome == Outcome.FAILED
    assert get_draw(db_path, "2024-06-16") is None


def test_without_fallbacks_only_primary_runs(reconciler, session):
    result = reconciler.reconcile("2024-06-16", allow_fallbacks=False)
    assert result.outcome == Outcome.FAILED
    assert [s.source for s in result.steps] == ["api", "official_document"]
    assert session.urls("GET") == []


def test_scanned_sheet_goes_through_ocr(reconciler, session, pdf_text, recognition, db_path):
    upsert_draw(db_path, DrawRecord(date="2024-06-16", source=SourceTag.API, prizes=_core()))
    session.add("GET", "670616.pdf", FakeResponse(content=SCANNED_PDF))
    recognition.pages = [sheet_text()]

    result = reconciler.reconcile("2024-06-16", context="document", allow_fallbacks=False)

    assert result.outcome == Outcome.UPDATED
    assert len(recognition.submitted) == 1
    assert recognition.submitted[0].source_path == "lottery_pdfs/2024-06-16_lotteryco_670616.pdf"
    assert get_draw(db_path, "2024-06-16").prizes == sample_prizes()


def test_ocr_failure_is_a_warning_not_a_failure(reconciler, session, pdf_text, recognition, db_path):
    session.add("GET", "670616.pdf", FakeResponse(content=SCANNED_PDF))
    recognition.error = RuntimeError("quota exceeded")

    result = reconciler.reconcile("2024-06-16", context="document", allow_fallbacks=False)

    assert any(w.startswith("ocr:") for w in result.warnings)
    # The stored document reference is still a contribution worth keeping.
    assert result.outcome == Outcome.UPDATED
    assert get_draw(db_path, "2024-06-16").document.storage_path.endswith("lotteryco_670616.pdf")


def test_reconcile_rejects_bad_input(reconciler):
    with pytest.raises(InvalidDate):
        reconciler.reconcile("16/06/2024")
    with pytest.raises(ValueError):
        reconciler.reconcile("2024-06-16", context="nope")
