"""
Per-date reconciliation of draw results.

Each adapter result is folded into the stored record with a non-regression
merge: a prize list is only replaced by one at least as long, amounts are only
replaced by a full set, and the provenance tag only moves toward higher trust.
Merges are idempotent, so repeated or concurrent runs for the same date converge
on the same record.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

import requests
from loguru import logger

from src.blob_store import LocalBlobStore
from src.completeness import build_diagnostics, is_complete, is_full_amounts, is_full_prize_set
from src.config import PipelineConfig
from src.database import get_draw, upsert_draw
from src.date_utils import DateManager
from src.documents import ensure_pdf, extract_pdf_text, sha256_hex, store_document
from src.errors import PersistenceFailure, RecognitionFailure
from src.extractor import parse_results, pick_more_complete
from src.loader import (
    FetchedDocument,
    GloApiClient,
    HtmlTableAdapter,
    MirrorDocumentAdapter,
    OfficialDocumentAdapter,
    SourceDiagnostic,
    SourceStatus,
    get_status_emoji,
    result_from_draw,
    status_for_error,
)
from src.models import PRIZE_KEYS, DocumentRef, DrawRecord, PrizeCategory, PrizeSet, SourceResult, SourceTag
from src.ocr import AzureRecognitionService, OcrFallback, RecognitionService
from src.text_utils import has_likely_prize_digits


class Outcome(str, Enum):
    ALREADY_COMPLETE = "already-complete"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


# Primary adapters per orchestrator context, highest trust first.
PRIMARY_STEPS = {
    "api": ("api", "official_document"),
    "document": ("mirror_document",),
    "stored": ("stored_document",),
    "upload": ("uploaded_document",),
}

# Steps that only ever contribute prize lists.
_DOCUMENT_STEPS = {"official_document", "mirror_document", "stored_document", "uploaded_document",
                   "document_ocr", "html_page"}


@dataclass
class ReconcileResult:
    date: str
    outcome: Outcome
    complete: bool = False
    warnings: List[str] = field(default_factory=list)
    steps: List[SourceDiagnostic] = field(default_factory=list)
    record: Optional[DrawRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "outcome": self.outcome.value,
            "complete": self.complete,
            "warnings": list(self.warnings),
            "steps": [step.to_dict() for step in self.steps],
            "diagnostics": self.record.to_dict()["diagnostics"] if self.record else None,
        }


# ============================================================================
# PURE MERGE RULES
# ============================================================================

def merge_prizes(existing: PrizeSet, incoming: PrizeSet, incoming_wins_ties: bool = True) -> PrizeSet:
    """
    Per category, keep the longer list.

    An incoming list of equal length replaces the existing one only when
    `incoming_wins_ties` (the incoming source is at least as trusted).
    """
    merged = {}
    for key in PRIZE_KEYS:
        old = existing.get(key)
        new = incoming.get(key)
        if new and (len(new) > len(old) or (incoming_wins_ties and len(new) == len(old))):
            merged[key] = new
        else:
            merged[key] = old
    return PrizeSet.from_mapping(merged)


def merge_amounts(existing: Optional[Dict[str, int]], incoming: Optional[Dict[str, int]]) -> Optional[Dict[str, int]]:
    """A full incoming set replaces a missing or partial one; a full set is never replaced."""
    if incoming is not None and is_full_amounts(incoming) and not is_full_amounts(existing):
        return dict(incoming)
    return dict(existing) if existing is not None else None


def upgrade_source(current: Optional[SourceTag], incoming: Optional[SourceTag]) -> Optional[SourceTag]:
    if current is None:
        return incoming
    if incoming is None:
        return current
    return incoming if incoming.trust > current.trust else current


def merge_document(existing: Optional[DocumentRef], incoming: Optional[DocumentRef],
                   incoming_outranks: bool) -> Optional[DocumentRef]:
    """
    A stored document replaces a bare reference, or another stored document
    when its source is at least as trusted. Bare references only fill gaps.
    """
    if incoming is None:
        return existing
    if existing is None:
        return incoming
    if incoming.storage_path and (incoming_outranks or not existing.storage_path):
        return incoming
    if not existing.storage_path:
        return DocumentRef(
            url=existing.url or incoming.url,
            document_id=existing.document_id or incoming.document_id,
            sha256=existing.sha256 or incoming.sha256,
            size=existing.size or incoming.size,
            storage_path=existing.storage_path or incoming.storage_path,
        )
    return existing


def merge_result(record: DrawRecord, result: SourceResult,
                 categories: Optional[Sequence[PrizeCategory]] = None) -> DrawRecord:
    """Fold one adapter result into a record; diagnostics are recomputed."""
    current_trust = record.source.trust if record.source else -1
    outranks = result.source.trust >= current_trust

    prizes = merge_prizes(record.prizes, result.prizes, incoming_wins_ties=outranks)
    amounts = merge_amounts(record.amounts, result.amounts)
    document = merge_document(record.document, result.document, outranks)

    contributed = (
        not result.prizes.is_empty()
        or result.amounts is not None
        or bool(result.document and result.document.storage_path)
    )
    source = upgrade_source(record.source, result.source) if contributed else record.source

    return DrawRecord(
        date=record.date,
        source=source,
        document=document,
        prizes=prizes,
        amounts=amounts,
        diagnostics=build_diagnostics(prizes, amounts, categories),
        updated_at=record.updated_at,
        youtube_url=record.youtube_url or result.youtube_url,
    )


def merge_records(current: DrawRecord, incoming: DrawRecord) -> DrawRecord:
    """Re-apply an already merged record on top of whatever is stored now."""
    as_result = SourceResult(
        source=incoming.source or SourceTag.API,
        prizes=incoming.prizes,
        amounts=incoming.amounts,
        document=incoming.document,
        youtube_url=incoming.youtube_url,
    )
    return merge_result(current, as_result)


def document_source(document_id: Optional[str]) -> SourceTag:
    """Provenance of a stored document, recovered from its id prefix."""
    doc_id = str(document_id or "")
    if doc_id.startswith(f"{MirrorDocumentAdapter.ID_PREFIX}:"):
        return SourceTag.MIRROR_DOCUMENT
    if doc_id.startswith("upload:"):
        return SourceTag.UPLOAD
    return SourceTag.OFFICIAL_DOCUMENT


def _has_content(record: DrawRecord) -> bool:
    return not record.prizes.is_empty() or record.amounts is not None or record.document is not None


# ============================================================================
# RECONCILER
# ============================================================================

@dataclass
class _RunState:
    date: str
    record: DrawRecord
    prefetched: Optional[SourceResult] = None
    document: Optional[FetchedDocument] = None
    official_ref: Optional[DocumentRef] = None
    ocr_done: Set[str] = field(default_factory=set)
    steps: List[SourceDiagnostic] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    attempts: int = 0
    errors: int = 0


class DrawReconciler:
    """
    Runs the fetch-merge-persist cycle for one draw date.

    Primary adapters depend on the calling context; afterwards, if the prize
    set is still short, the fallback chain runs in trust order until the
    prizes are full or every fallback has been tried.
    """

    def __init__(
        self,
        config: PipelineConfig,
        blob_store: LocalBlobStore,
        api: GloApiClient,
        official: OfficialDocumentAdapter,
        mirror: MirrorDocumentAdapter,
        html: HtmlTableAdapter,
        ocr: Optional[OcrFallback] = None,
        db_path: Optional[str] = None,
    ):
        self.config = config
        self.db_path = db_path or config.database_file
        self.blob_store = blob_store
        self.api = api
        self.official = official
        self.mirror = mirror
        self.html = html
        self.ocr = ocr

    @classmethod
    def from_config(cls, config: PipelineConfig, session: Optional[requests.Session] = None,
                    recognition_service: Optional[RecognitionService] = None) -> "DrawReconciler":
        session = session or requests.Session()
        blob_store = LocalBlobStore(config.blob_root)
        api = GloApiClient(config, session)

        if recognition_service is None and config.azure_endpoint and config.azure_api_key:
            recognition_service = AzureRecognitionService(config.azure_endpoint, config.azure_api_key, blob_store)
        ocr = None
        if recognition_service is None:
            logger.warning("No recognition service configured; OCR fallback will be skipped")
        else:
            ocr = OcrFallback(
                recognition_service,
                blob_store,
                output_root=config.ocr_output_prefix,
                min_text_length=config.ocr_min_text_length,
                batch_size=config.ocr_batch_size,
            )
        return cls(
            config=config,
            blob_store=blob_store,
            api=api,
            official=OfficialDocumentAdapter(config, api, session),
            mirror=MirrorDocumentAdapter(config, session),
            html=HtmlTableAdapter(config, session),
            ocr=ocr,
        )

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    def reconcile(
        self,
        date: str,
        context: str = "api",
        force: bool = False,
        allow_fallbacks: bool = True,
        prefetched: Optional[SourceResult] = None,
        document: Optional[FetchedDocument] = None,
    ) -> ReconcileResult:
        """
        Bring the record for `date` as close to complete as the sources allow.

        Args:
            date: Draw date (ISO, slash-delimited or Buddhist-era year)
            context: "api", "document", "stored" or "upload"; picks the primary adapters
            force: Re-process even if the record is already complete
            allow_fallbacks: Run OCR / mirror / HTML fallbacks when prizes stay short
            prefetched: Structured API result already fetched by the caller
            document: Document bytes for the "stored" and "upload" contexts

        Raises:
            InvalidDate: If `date` is malformed
            ValueError: If `context` is unknown
        """
        date_iso = DateManager.normalize_date_input(date)
        if context not in PRIMARY_STEPS:
            raise ValueError(f"Unknown reconciliation context: {context}")

        try:
            existing = get_draw(self.db_path, date_iso)
        except PersistenceFailure as e:
            logger.warning(f"[reconcile] {date_iso}: cannot read record: {e}")
            return ReconcileResult(date=date_iso, outcome=Outcome.FAILED, warnings=[f"persistence: {e}"])

        if existing is not None and not force and is_complete(existing.prizes, existing.amounts,
                                                              self.config.categories):
            return ReconcileResult(date=date_iso, outcome=Outcome.ALREADY_COMPLETE, complete=True, record=existing)

        state = _RunState(
            date=date_iso,
            record=existing or DrawRecord(date=date_iso),
            prefetched=prefetched,
            document=document,
        )

        for name in PRIMARY_STEPS[context]:
            if self._is_done(state.record):
                break
            if name in _DOCUMENT_STEPS and self._prizes_full(state.record):
                continue
            self._run_step(name, state, force)

        if allow_fallbacks:
            for name in self.config.fallback_order:
                if self._prizes_full(state.record):
                    break
                if name in PRIMARY_STEPS[context]:
                    continue
                self._run_step(name, state, force)

        return self._finish(state, existing)

    # ------------------------------------------------------------------
    # state machine helpers
    # ------------------------------------------------------------------

    def _is_done(self, record: DrawRecord) -> bool:
        return is_complete(record.prizes, record.amounts, self.config.categories)

    def _prizes_full(self, record: DrawRecord) -> bool:
        return is_full_prize_set(record.prizes, self.config.categories)

    def _run_step(self, name: str, state: _RunState, force: bool) -> None:
        start_time = time.time()
        step = getattr(self, f"_step_{name}")
        try:
            result = step(state, force)
        except Exception as e:
            state.attempts += 1
            state.errors += 1
            status = status_for_error(e)
            state.warnings.append(f"{name}: {e}")
            state.steps.append(SourceDiagnostic(
                source=name,
                status=status,
                success=False,
                http_status=getattr(e, "status_code", None),
                response_time_ms=int((time.time() - start_time) * 1000),
                expected_date=state.date,
                error_message=str(e)[:200],
                diagnostic_message=f"{type(e).__name__}",
            ))
            logger.warning(f"   📡 [{name}] {state.date}: {get_status_emoji(status)} {status.value} - {e}")
            return

        if result is None:
            state.steps.append(SourceDiagnostic(
                source=name, status=SourceStatus.SKIPPED, success=False, expected_date=state.date,
                diagnostic_message="Not applicable for this draw",
            ))
            return

        state.attempts += 1
        state.record = merge_result(state.record, result, self.config.categories)
        counts = result.prizes.counts()
        state.steps.append(SourceDiagnostic(
            source=name,
            status=SourceStatus.SUCCESS,
            success=True,
            response_time_ms=int((time.time() - start_time) * 1000),
            expected_date=state.date,
            diagnostic_message=f"{sum(counts.values())} numbers, amounts={'yes' if result.amounts else 'no'}",
            counts=counts,
        ))
        logger.info(f"   📡 [{name}] {state.date}: ✅ {sum(counts.values())} numbers")

    def _finish(self, state: _RunState, existing: Optional[DrawRecord]) -> ReconcileResult:
        record = state.record
        complete = self._is_done(record)

        def result(outcome: Outcome, persisted: Optional[DrawRecord]) -> ReconcileResult:
            return ReconcileResult(
                date=state.date,
                outcome=outcome,
                complete=complete,
                warnings=state.warnings,
                steps=state.steps,
                record=persisted,
            )

        if state.attempts and state.errors == state.attempts:
            logger.warning(f"[reconcile] {state.date}: every adapter failed")
            return result(Outcome.FAILED, existing)

        if existing is None and not _has_content(record):
            return result(Outcome.UNCHANGED, None)
        if existing is not None and record.same_content(existing):
            return result(Outcome.UNCHANGED, existing)

        try:
            persisted = upsert_draw(self.db_path, record, merge=merge_records)
        except PersistenceFailure as e:
            state.warnings.append(f"persistence: {e}")
            logger.warning(f"[reconcile] {state.date}: write failed: {e}")
            return result(Outcome.FAILED, existing)

        complete = persisted.diagnostics.complete
        return result(Outcome.UPDATED, persisted)

    # ------------------------------------------------------------------
    # steps: each returns a SourceResult, or None when not applicable
    # ------------------------------------------------------------------

    def _step_api(self, state: _RunState, force: bool) -> SourceResult:
        result = state.prefetched
        if result is None:
            result = result_from_draw(self.api.fetch_by_date(state.date))
        if result.document and not result.document.storage_path:
            state.official_ref = result.document
        return result

    def _step_official_document(self, state: _RunState, force: bool) -> Optional[SourceResult]:
        ref = state.official_ref
        current = state.record.document
        if ref is None and current is not None and not current.storage_path:
            ref = current
        if ref is None:
            return None
        if (not force and current is not None and current.storage_path
                and current.document_id == ref.document_id
                and state.record.source == SourceTag.OFFICIAL_DOCUMENT):
            # Already parsed this exact sheet.
            return None
        fetched = self.official.fetch(url=ref.url, document_id=ref.document_id)
        return self._document_result(state, fetched)

    def _step_mirror_document(self, state: _RunState, force: bool) -> SourceResult:
        return self._document_result(state, self.mirror.fetch(state.date))

    def _step_stored_document(self, state: _RunState, force: bool) -> Optional[SourceResult]:
        if state.document is None:
            return None
        return self._document_result(state, state.document)

    _step_uploaded_document = _step_stored_document

    def _step_document_ocr(self, state: _RunState, force: bool) -> Optional[SourceResult]:
        doc = state.record.document
        if self.ocr is None or doc is None or not doc.storage_path or not doc.sha256:
            return None
        if doc.sha256 in state.ocr_done or not self.blob_store.exists(doc.storage_path):
            return None

        state.ocr_done.add(doc.sha256)
        text = self.ocr.recognize(state.date, doc.sha256, doc.storage_path)
        return SourceResult(
            source=document_source(doc.document_id),
            prizes=parse_results(text, self.config.categories) if text else PrizeSet(),
        )

    def _step_html_page(self, state: _RunState, force: bool) -> SourceResult:
        text = self.html.fetch_text(state.date)
        return SourceResult(source=SourceTag.MIRROR_DOCUMENT, prizes=parse_results(text, self.config.categories))

    # ------------------------------------------------------------------
    # documents
    # ------------------------------------------------------------------

    def _document_result(self, state: _RunState, fetched: FetchedDocument) -> SourceResult:
        """Store the bytes, parse the text layer and OCR it when the text is unusable."""
        if fetched.storage_path:
            ensure_pdf(fetched.data, origin=fetched.storage_path)
            ref = DocumentRef(
                url=fetched.url,
                document_id=fetched.document_id,
                sha256=sha256_hex(fetched.data),
                size=len(fetched.data),
                storage_path=fetched.storage_path,
            )
        else:
            ref = store_document(
                self.blob_store,
                self.config.document_prefix,
                state.date,
                fetched.key,
                fetched.data,
                url=fetched.url,
                document_id=fetched.document_id,
                extra_metadata=fetched.metadata,
            )
        text = pdf_text_or_empty(fetched.data, ref.storage_path)
        prizes = parse_results(text, self.config.categories)

        needs_ocr = not has_likely_prize_digits(text) or not is_full_prize_set(prizes, self.config.categories)
        if needs_ocr and fetched.ocr_text:
            # Recognized earlier in this run (stored-document date detection).
            state.ocr_done.add(ref.sha256)
            prizes = pick_more_complete(prizes, parse_results(fetched.ocr_text, self.config.categories))
        elif self.ocr is not None and needs_ocr and ref.sha256 not in state.ocr_done:
            state.ocr_done.add(ref.sha256)
            try:
                ocr_text = self.ocr.recognize(state.date, ref.sha256, ref.storage_path)
                if ocr_text:
                    prizes = pick_more_complete(prizes, parse_results(ocr_text, self.config.categories))
            except RecognitionFailure as e:
                state.warnings.append(f"ocr: {e}")
                logger.warning(f"👁️ [ocr] {state.date}: OCR failed for {ref.storage_path}: {e}")

        return SourceResult(source=fetched.source, prizes=prizes, document=ref)


def pdf_text_or_empty(data: bytes, label: str = "document") -> str:
    """Text layer of a PDF; an unparseable file yields an empty string."""
    try:
        return extract_pdf_text(data)
    except Exception as e:
        logger.warning(f"[documents] text extraction failed for {label}: {e}")
        return ""
