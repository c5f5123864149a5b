"""
Batch jobs over draw dates.

Every job walks a bounded window newest-first, hands each date to the
reconciler, stops once `max_upserts` records were updated or the run deadline
passed, and reports aggregate counters. A failure on one date is counted and
the loop moves on; only an invalid job configuration aborts a run.
"""

import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import pandas as pd
from loguru import logger

from src.blob_store import LocalBlobStore
from src.completeness import completeness_report, has_any_long_list, has_core_prizes, is_full_prize_set
from src.config import (
    API_BACKFILL_BOUNDS,
    COMPLETE_BOUNDS,
    DOCUMENT_BACKFILL_BOUNDS,
    STORED_DOCUMENT_BOUNDS,
    JobLimits,
    PipelineConfig,
)
from src.database import get_draw, list_draw_dates
from src.date_utils import DateManager
from src.documents import decode_base64_document, ensure_pdf, is_pdf, sha256_hex
from src.errors import InvalidDate, LotterySyncError, PersistenceFailure, RecognitionFailure
from src.loader import FetchedDocument, result_from_draw, result_from_page_item
from src.models import SourceTag
from src.reconciler import DrawReconciler, Outcome, ReconcileResult, document_source, pdf_text_or_empty

LIST_PAGE_SIZE = 100


@dataclass
class RunCounters:
    scanned: int = 0
    updated: int = 0
    skipped_complete: int = 0
    failed: int = 0
    unchanged: int = 0
    cutoff_date: Optional[str] = None
    timed_out: bool = False
    skipped_no_date: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)
    report: Optional[List[Dict[str, Any]]] = None

    def tally(self, result: ReconcileResult) -> None:
        if result.outcome == Outcome.UPDATED:
            self.updated += 1
        elif result.outcome == Outcome.ALREADY_COMPLETE:
            self.skipped_complete += 1
        elif result.outcome == Outcome.FAILED:
            self.failed += 1
        else:
            self.unchanged += 1

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.report is None:
            data.pop("report")
        return data


class _Deadline:
    def __init__(self, timeout_s: Optional[float]):
        self.expires = time.monotonic() + timeout_s if timeout_s else None

    def passed(self) -> bool:
        return self.expires is not None and time.monotonic() >= self.expires


class DrawOrchestrator:
    """Entry points for the scheduled and on-demand sync jobs."""

    def __init__(self, config: PipelineConfig, reconciler: DrawReconciler):
        self.config = config
        self.reconciler = reconciler
        self.db_path = reconciler.db_path
        self.blob_store: LocalBlobStore = reconciler.blob_store

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _cutoff(self, days: int) -> str:
        return DateManager.cutoff_iso(days, tz_name=self.config.timezone)

    def _window_dates(self, cutoff: str, limit: int) -> Iterator[str]:
        """Stored draw dates on/after cutoff, newest first, paged by offset."""
        offset = 0
        while offset < limit:
            page = list_draw_dates(self.db_path, cutoff, limit=min(LIST_PAGE_SIZE, limit - offset), offset=offset)
            if not page:
                return
            yield from page
            offset += len(page)

    @staticmethod
    def _banner(job: str, message: str) -> None:
        logger.info("=" * 80)
        logger.info(f"🚀 [{job}] {message}")
        logger.info("=" * 80)

    @staticmethod
    def _finish(job: str, counters: RunCounters) -> RunCounters:
        logger.info(
            f"✅ [{job}] finished: scanned={counters.scanned} updated={counters.updated} "
            f"skipped_complete={counters.skipped_complete} unchanged={counters.unchanged} "
            f"failed={counters.failed} cutoff={counters.cutoff_date}"
            + (" (timed out)" if counters.timed_out else "")
        )
        return counters

    def _reconcile_safely(self, job: str, counters: RunCounters, date_iso: str, **kwargs) -> Optional[ReconcileResult]:
        try:
            result = self.reconciler.reconcile(date_iso, **kwargs)
        except LotterySyncError as e:
            counters.failed += 1
            logger.warning(f"[{job}] {date_iso} failed: {e}")
            return None
        counters.tally(result)
        if result.outcome == Outcome.FAILED:
            logger.warning(f"[{job}] {date_iso} failed: {'; '.join(result.warnings)}")
        return result

    # ------------------------------------------------------------------
    # live sync
    # ------------------------------------------------------------------

    def sync_latest(self, force: bool = False) -> RunCounters:
        """Fetch the latest draw and its official sheet."""
        job = "sync_latest"
        self._banner(job, "Syncing latest draw")
        counters = RunCounters()

        try:
            response = self.reconciler.api.fetch_latest()
        except LotterySyncError as e:
            counters.failed += 1
            logger.warning(f"[{job}] latest draw unavailable: {e}")
            return self._finish(job, counters)

        counters.scanned = 1
        if not response.pdf_url:
            logger.warning(f"[{job}] {response.date}: response has no pdf_url")

        try:
            existing = get_draw(self.db_path, response.date)
        except PersistenceFailure as e:
            counters.failed += 1
            logger.warning(f"[{job}] {response.date}: {e}")
            return self._finish(job, counters)

        doc = existing.document if existing else None
        if (not force and doc is not None and doc.storage_path and existing.diagnostics.complete
                and response.pdf_id and doc.document_id == response.pdf_id):
            logger.info(f"[{job}] {response.date}: document {response.pdf_id} already synced")
            counters.skipped_complete += 1
            return self._finish(job, counters)

        result = self._reconcile_safely(
            job, counters, response.date,
            context="api", force=force, prefetched=result_from_draw(response),
        )
        if result is not None:
            counters.details.append(result.to_dict())
        return self._finish(job, counters)

    # ------------------------------------------------------------------
    # API backfill
    # ------------------------------------------------------------------

    def backfill_from_api(self, limits: Optional[JobLimits] = None) -> RunCounters:
        """
        Page through the historical listing and fill in core prizes.

        The listing only carries first / last2 / last3f / last3b, so dates whose
        core prizes are already stored are skipped. Paging stops at the first
        page that reaches past the cutoff.
        """
        job = "api_backfill"
        limits = (limits or JobLimits()).resolve(API_BACKFILL_BOUNDS)
        counters = RunCounters(cutoff_date=self._cutoff(limits.days))
        deadline = _Deadline(limits.timeout_s)
        self._banner(job, f"pages<={limits.limit} cutoff={counters.cutoff_date} max_upserts={limits.max_upserts}")

        for page in range(1, limits.limit + 1):
            if deadline.passed():
                counters.timed_out = True
                break
            try:
                items = self.reconciler.api.fetch_page(page)
            except LotterySyncError as e:
                counters.failed += 1
                logger.warning(f"[{job}] page {page} failed: {e}")
                break
            if not items:
                break

            reached_older_than_cutoff = False
            for item in items:
                counters.scanned += 1
                if not DateManager.is_within_or_after(item.date, counters.cutoff_date):
                    reached_older_than_cutoff = True
                    continue
                if deadline.passed():
                    counters.timed_out = True
                    return self._finish(job, counters)

                try:
                    existing = get_draw(self.db_path, item.date)
                except PersistenceFailure as e:
                    counters.failed += 1
                    logger.warning(f"[{job}] {item.date}: {e}")
                    continue

                if existing is not None and not limits.force and has_core_prizes(existing.prizes):
                    counters.skipped_complete += 1
                    continue

                result = result_from_page_item(item)
                if not result.prizes.first or not result.prizes.last2:
                    counters.unchanged += 1
                    continue

                self._reconcile_safely(
                    job, counters, item.date,
                    context="api", force=limits.force, allow_fallbacks=False, prefetched=result,
                )
                if counters.updated >= limits.max_upserts:
                    logger.info(f"[{job}] reached max_upserts={limits.max_upserts}")
                    return self._finish(job, counters)

            if reached_older_than_cutoff:
                break

        return self._finish(job, counters)

    # ------------------------------------------------------------------
    # mirror document backfill
    # ------------------------------------------------------------------

    def backfill_documents(self, limits: Optional[JobLimits] = None, date: Optional[str] = None,
                           allow_fallbacks: bool = True) -> RunCounters:
        """
        Fill long prize lists from the mirror's result sheets.

        Records that already have an official sheet or any long list are left
        alone unless forced. With `date`, only that draw is processed.
        """
        job = "document_backfill"
        limits = (limits or JobLimits()).resolve(DOCUMENT_BACKFILL_BOUNDS)
        target = DateManager.normalize_date_input(date) if date else None
        counters = RunCounters(cutoff_date=self._cutoff(limits.days))
        deadline = _Deadline(limits.timeout_s)
        self._banner(job, f"date={target or '-'} limit={limits.limit} cutoff={counters.cutoff_date}")

        try:
            dates = [target] if target else list(self._window_dates(counters.cutoff_date, limits.limit))
        except PersistenceFailure as e:
            counters.failed += 1
            logger.exception(f"[{job}] cannot list draws: {e}")
            return self._finish(job, counters)

        for date_iso in dates:
            if deadline.passed():
                counters.timed_out = True
                break
            counters.scanned += 1

            try:
                record = get_draw(self.db_path, date_iso)
            except PersistenceFailure as e:
                counters.failed += 1
                logger.warning(f"[{job}] {date_iso}: {e}")
                continue
            if record is None:
                counters.unchanged += 1
                continue

            doc = record.document
            has_official = bool(doc and doc.storage_path
                                and document_source(doc.document_id) == SourceTag.OFFICIAL_DOCUMENT)
            if not limits.force and (has_official or has_any_long_list(record.prizes)):
                counters.skipped_complete += 1
                continue

            self._reconcile_safely(
                job, counters, date_iso,
                context="document", force=limits.force, allow_fallbacks=allow_fallbacks,
            )
            if counters.updated >= limits.max_upserts:
                logger.info(f"[{job}] reached max_upserts={limits.max_upserts}")
                break

        return self._finish(job, counters)

    # ------------------------------------------------------------------
    # completeness repair
    # ------------------------------------------------------------------

    def complete_to_full(self, limits: Optional[JobLimits] = None, allow_fallbacks: bool = True) -> RunCounters:
        """Re-run the full adapter chain for every incomplete record in the window."""
        job = "complete"
        limits = (limits or JobLimits()).resolve(COMPLETE_BOUNDS)
        counters = RunCounters(cutoff_date=self._cutoff(limits.days))
        deadline = _Deadline(limits.timeout_s)
        self._banner(job, f"limit={limits.limit} cutoff={counters.cutoff_date} force={limits.force}")

        try:
            for date_iso in self._window_dates(counters.cutoff_date, limits.limit):
                if deadline.passed():
                    counters.timed_out = True
                    break
                counters.scanned += 1
                self._reconcile_safely(
                    job, counters, date_iso,
                    context="api", force=limits.force, allow_fallbacks=allow_fallbacks,
                )
                if counters.updated >= limits.max_upserts:
                    logger.info(f"[{job}] reached max_upserts={limits.max_upserts}")
                    break
        except PersistenceFailure as e:
            counters.failed += 1
            logger.exception(f"[{job}] cannot list draws: {e}")

        return self._finish(job, counters)

    def repair_date(self, date: str, force: bool = False, allow_fallbacks: bool = True) -> RunCounters:
        """Completeness repair for a single draw date."""
        job = "repair"
        date_iso = DateManager.normalize_date_input(date)
        counters = RunCounters(scanned=1)
        result = self._reconcile_safely(job, counters, date_iso,
                                        context="api", force=force, allow_fallbacks=allow_fallbacks)
        if result is not None:
            counters.details.append(result.to_dict())
        return self._finish(job, counters)

    # ------------------------------------------------------------------
    # stored documents
    # ------------------------------------------------------------------

    def _date_for_stored_document(self, path: str, text: str, sha256: str) -> Tuple[Optional[str], Optional[str]]:
        """
        Printed date first, then the object name, then metadata, then OCR.

        Returns (date, ocr_text); ocr_text is set only when OCR was needed, so
        the reconciler can parse it without a second recognition job.
        """
        detected = DateManager.extract_draw_date_from_thai_text(text)
        if detected:
            return detected, None

        from_path = DateManager.date_from_storage_path(path)
        if from_path:
            return from_path, None

        meta_date = self.blob_store.read_metadata(path).get("date")
        try:
            return DateManager.ensure_iso_date(meta_date), None
        except InvalidDate:
            pass

        ocr = self.reconciler.ocr
        if ocr is None:
            return None, None
        try:
            ocr_text = ocr.recognize("undated", sha256, path)
        except RecognitionFailure as e:
            logger.warning(f"[stored_documents] OCR date detection failed for {path}: {e}")
            return None, None
        return DateManager.extract_draw_date_from_thai_text(ocr_text), ocr_text or None

    def complete_from_stored_documents(
        self,
        limits: Optional[JobLimits] = None,
        prefix: Optional[str] = None,
        report_only: bool = False,
        report_limit: int = 100,
        allow_fallbacks: bool = False,
    ) -> RunCounters:
        """
        Re-parse documents already in the blob store.

        In report-only mode nothing is written; the result carries one row per
        candidate date with the stored record's per-category counts.
        """
        job = "stored_documents"
        limits = (limits or JobLimits()).resolve(STORED_DOCUMENT_BOUNDS)
        prefix = prefix or self.config.document_prefix
        counters = RunCounters(cutoff_date=self._cutoff(limits.days))
        deadline = _Deadline(limits.timeout_s)
        rows: List[Dict[str, Any]] = []
        self._banner(job, f"prefix={prefix} files<={limits.limit} report_only={report_only}")

        paths = [p for p in self.blob_store.list_prefix(prefix, max_results=limits.limit) if p.endswith(".pdf")]
        for path in paths:
            if deadline.passed():
                counters.timed_out = True
                break
            counters.scanned += 1

            try:
                data = self.blob_store.read(path)
            except OSError as e:
                counters.failed += 1
                logger.warning(f"[{job}] cannot read {path}: {e}")
                continue
            if not is_pdf(data):
                counters.failed += 1
                logger.warning(f"[{job}] stored object is not a PDF: {path}")
                continue

            sha256 = sha256_hex(data)
            date_iso, ocr_text = self._date_for_stored_document(path, pdf_text_or_empty(data, path), sha256)
            if not date_iso:
                counters.skipped_no_date += 1
                continue
            if not DateManager.is_within_or_after(date_iso, counters.cutoff_date):
                continue

            try:
                existing = get_draw(self.db_path, date_iso)
            except PersistenceFailure as e:
                counters.failed += 1
                logger.warning(f"[{job}] {date_iso}: {e}")
                continue

            if report_only:
                summary = completeness_report(existing.prizes, existing.amounts) if existing else None
                rows.append({
                    "date": date_iso,
                    "object_path": path,
                    "has_record": existing is not None,
                    "has_full_prizes": bool(summary and summary["has_full_prizes"]),
                    **{f"{k}_count": v for k, v in (summary["counts"] if summary else {}).items()},
                })
                continue

            if existing is not None and not limits.force and is_full_prize_set(existing.prizes):
                counters.skipped_complete += 1
                continue

            metadata = self.blob_store.read_metadata(path)
            document_id = metadata.get("document_id")
            fetched = FetchedDocument(
                data=data,
                key=path.rsplit("/", 1)[-1],
                source=document_source(document_id),
                url=metadata.get("source_url"),
                document_id=document_id,
                storage_path=path,
                ocr_text=ocr_text,
            )
            self._reconcile_safely(
                job, counters, date_iso,
                context="stored", force=True, allow_fallbacks=allow_fallbacks, document=fetched,
            )
            if counters.updated >= limits.max_upserts:
                logger.info(f"[{job}] reached max_upserts={limits.max_upserts}")
                break

        if report_only:
            counters.report = self._report_rows(rows, report_limit)
        return self._finish(job, counters)

    @staticmethod
    def _report_rows(rows: List[Dict[str, Any]], report_limit: int) -> List[Dict[str, Any]]:
        if not rows:
            return []
        df = pd.DataFrame(rows).drop_duplicates(subset=["date", "object_path"])
        df = df.sort_values("date", ascending=False).head(max(1, min(report_limit, 500)))
        count_columns = [c for c in df.columns if c.endswith("_count")]
        if count_columns:
            df[count_columns] = df[count_columns].fillna(0).astype(int)
        return df.to_dict(orient="records")

    # ------------------------------------------------------------------
    # uploads
    # ------------------------------------------------------------------

    def ingest_upload(
        self,
        pdf: Union[bytes, str],
        date: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        filename: Optional[str] = None,
        force: bool = False,
    ) -> Dict[str, Any]:
        """
        Ingest a manually uploaded result sheet.

        Args:
            pdf: Raw bytes, base64 text or a `data:application/pdf;base64,` URL
            date: Draw date; auto-detected from the sheet when omitted
            start, end: Optional inclusive range the draw date must fall in
            filename: Original file name, kept in the blob metadata
            force: Ingest even when an official sheet was already parsed

        Raises:
            NotADocument: If the payload is not a PDF
            InvalidDate: If no date is given or detected, or it is out of range
        """
        data = pdf if isinstance(pdf, bytes) else decode_base64_document(pdf)
        ensure_pdf(data, origin=filename or "upload")

        text = pdf_text_or_empty(data, filename or "upload")
        date_iso = DateManager.normalize_date_input(date) if date else DateManager.extract_draw_date_from_thai_text(text)
        if not date_iso:
            raise InvalidDate("Missing date and could not auto-detect draw date from PDF")

        start_iso = DateManager.normalize_date_input(start) if start else None
        end_iso = DateManager.normalize_date_input(end) if end else None
        if (start_iso and date_iso < start_iso) or (end_iso and date_iso > end_iso):
            raise InvalidDate(f"date_out_of_range: {date_iso} not in [{start_iso or '-'}, {end_iso or '-'}]")

        existing = get_draw(self.db_path, date_iso)
        if not force and existing is not None:
            doc = existing.document
            if (existing.source == SourceTag.OFFICIAL_DOCUMENT and doc and doc.storage_path
                    and existing.prizes.fifth):
                logger.info(f"[upload] {date_iso}: official sheet already parsed, skipping")
                return {"date": date_iso, "skipped": True, "reason": "already_has_official_document"}

        upload_id = sha256_hex(data)[:12]
        fetched = FetchedDocument(
            data=data,
            key=f"upload_{upload_id}",
            source=SourceTag.UPLOAD,
            document_id=f"upload:{upload_id}",
            metadata={"original_file_name": filename or None},
        )
        result = self.reconciler.reconcile(date_iso, context="upload", force=True,
                                           allow_fallbacks=False, document=fetched)
        record = result.record
        return {
            "date": date_iso,
            "skipped": False,
            "outcome": result.outcome.value,
            "storage_path": record.document.storage_path if record and record.document else None,
            "has_full_prizes": bool(record and is_full_prize_set(record.prizes)),
            "warnings": result.warnings,
        }
