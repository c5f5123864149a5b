import math
import os
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

import requests
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.config import PipelineConfig
from src.date_utils import DateManager
from src.documents import decode_base64_document, ensure_pdf, is_pdf
from src.errors import InvalidDate, NoCandidateAvailable, NotADocument, RecognitionFailure, UpstreamHttpError
from src.models import AMOUNT_KEYS, DocumentRef, PrizeSet, SourceResult, SourceTag
from src.text_utils import html_to_text, normalize_text


# ============================================================================
# SOURCE STATUS DIAGNOSTICS
# ============================================================================

class SourceStatus(str, Enum):
    """Diagnostic status codes for one adapter attempt."""
    SUCCESS = "SUCCESS"                      # ✅ Adapter returned usable data
    SKIPPED = "SKIPPED"                      # ⏭️ Adapter not applicable for this date
    NOT_AVAILABLE_YET = "NOT_AVAILABLE"      # ⏳ Upstream has nothing for the date
    BLOCKED_IP = "BLOCKED_IP"                # 🚫 IP blocked (403/429)
    TIMEOUT = "TIMEOUT"                      # ⏱️ Connection timeout
    CONNECTION_ERROR = "CONNECTION_ERROR"    # 🌐 Network error
    HTTP_ERROR = "HTTP_ERROR"                # 📡 Non-success HTTP status
    NOT_A_DOCUMENT = "NOT_A_DOCUMENT"        # 📄 Bytes are not a PDF
    NO_CANDIDATE = "NO_CANDIDATE"            # 🔎 No mirror file name worked
    RECOGNITION_FAILED = "RECOGNITION_FAILED"  # 👁️ OCR stage failed
    INVALID_RESPONSE = "INVALID_RESPONSE"    # ❌ Invalid response structure
    UNKNOWN_ERROR = "UNKNOWN_ERROR"          # ❓ Unknown error


@dataclass
class SourceDiagnostic:
    """Outcome of one adapter attempt during a reconciliation."""
    source: str
    status: SourceStatus
    success: bool
    http_status: Optional[int] = None
    response_time_ms: Optional[int] = None
    expected_date: Optional[str] = None
    error_message: Optional[str] = None
    diagnostic_message: str = ""
    counts: Optional[Dict[str, int]] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result['status'] = self.status.value
        return result


def get_status_emoji(status: SourceStatus) -> str:
    """Return emoji for status code."""
    emoji_map = {
        SourceStatus.SUCCESS: "✅",
        SourceStatus.SKIPPED: "⏭️",
        SourceStatus.NOT_AVAILABLE_YET: "⏳",
        SourceStatus.BLOCKED_IP: "🚫",
        SourceStatus.TIMEOUT: "⏱️",
        SourceStatus.CONNECTION_ERROR: "🌐",
        SourceStatus.HTTP_ERROR: "📡",
        SourceStatus.NOT_A_DOCUMENT: "📄",
        SourceStatus.NO_CANDIDATE: "🔎",
        SourceStatus.RECOGNITION_FAILED: "👁️",
        SourceStatus.INVALID_RESPONSE: "❌",
        SourceStatus.UNKNOWN_ERROR: "❓",
    }
    return emoji_map.get(status, "❓")


def status_for_error(error: Exception) -> SourceStatus:
    """Map a pipeline exception to the diagnostic status shown in run summaries."""
    if isinstance(error, UpstreamHttpError):
        if error.status_code in (403, 429):
            return SourceStatus.BLOCKED_IP
        if error.status_code == 404:
            return SourceStatus.NOT_AVAILABLE_YET
        if isinstance(error.__cause__, requests.exceptions.Timeout):
            return SourceStatus.TIMEOUT
        if isinstance(error.__cause__, requests.exceptions.ConnectionError):
            return SourceStatus.CONNECTION_ERROR
        if error.status_code is None:
            return SourceStatus.INVALID_RESPONSE
        return SourceStatus.HTTP_ERROR
    if isinstance(error, NotADocument):
        return SourceStatus.NOT_A_DOCUMENT
    if isinstance(error, NoCandidateAvailable):
        return SourceStatus.NO_CANDIDATE
    if isinstance(error, RecognitionFailure):
        return SourceStatus.RECOGNITION_FAILED
    return SourceStatus.UNKNOWN_ERROR


# ============================================================================
# API PAYLOAD MODELS
# ============================================================================

class PrizeNumber(BaseModel):
    model_config = ConfigDict(extra="ignore")

    value: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v):
        if v is None:
            return None
        return str(v).strip() or None


class PrizeBlock(BaseModel):
    """One prize tier as returned by the GLO API: a price and its numbers."""
    model_config = ConfigDict(extra="ignore")

    price: Optional[str] = None
    number: List[PrizeNumber] = Field(default_factory=list)

    @field_validator("price", mode="before")
    @classmethod
    def _price_as_text(cls, v):
        return None if v is None else str(v)

    @field_validator("number", mode="before")
    @classmethod
    def _only_objects(cls, v):
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict)]

    def values(self) -> List[str]:
        return [n.value for n in self.number if n.value]


class ApiDrawData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    first: Optional[PrizeBlock] = None
    near1: Optional[PrizeBlock] = None
    second: Optional[PrizeBlock] = None
    third: Optional[PrizeBlock] = None
    fourth: Optional[PrizeBlock] = None
    fifth: Optional[PrizeBlock] = None
    last2: Optional[PrizeBlock] = None
    last3f: Optional[PrizeBlock] = None
    last3b: Optional[PrizeBlock] = None


def _object_or_none(v):
    return v if isinstance(v, dict) else None


class ApiDrawResponse(BaseModel):
    """`response` object of getLatestLottery / getLotteryResult."""
    model_config = ConfigDict(extra="ignore")

    date: str
    pdf_url: Optional[str] = None
    youtube_url: Optional[str] = None
    data: Optional[ApiDrawData] = None

    @field_validator("date", mode="before")
    @classmethod
    def _iso_date(cls, v):
        return DateManager.ensure_iso_date(v)

    @field_validator("pdf_url", "youtube_url", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if not isinstance(v, str):
            return None
        return v.strip() or None

    @field_validator("data", mode="before")
    @classmethod
    def _data_object(cls, v):
        return _object_or_none(v)

    @property
    def pdf_id(self) -> Optional[str]:
        return last_path_segment(self.pdf_url) if self.pdf_url else None


class ApiPageItem(BaseModel):
    """One row of getLotteryResultByPage. `data` only carries the core prizes."""
    model_config = ConfigDict(extra="ignore")

    date: str
    data: Optional[Dict[str, Any]] = None

    @field_validator("date", mode="before")
    @classmethod
    def _iso_date(cls, v):
        return DateManager.ensure_iso_date(v)

    @field_validator("data", mode="before")
    @classmethod
    def _data_object(cls, v):
        return _object_or_none(v)


# ============================================================================
# PAYLOAD MAPPING
# ============================================================================

def last_path_segment(url: str) -> str:
    parts = [p for p in str(url or "").split("/") if p]
    return parts[-1] if parts else ""


def to_baht_int(price: Optional[str]) -> Optional[int]:
    """'6,000,000.00' -> 6000000. None when the price is missing or not numeric."""
    if price is None:
        return None
    normalized = str(price).replace(",", "").strip()
    if not normalized:
        return None
    try:
        value = float(normalized)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return int(math.floor(value + 0.5))


def amounts_from_api(data: Optional[ApiDrawData]) -> Optional[Dict[str, int]]:
    """All nine tier amounts, or None unless every one of them is numeric."""
    if data is None:
        return None
    blocks = {
        "first": data.first,
        "near1": data.near1,
        "second": data.second,
        "third": data.third,
        "fourth": data.fourth,
        "fifth": data.fifth,
        "last3": data.last3b,
        "last3f": data.last3f,
        "last2": data.last2,
    }
    amounts = {key: to_baht_int(blocks[key].price if blocks[key] else None) for key in AMOUNT_KEYS}
    if any(v is None for v in amounts.values()):
        return None
    return amounts


def prizes_from_api(data: Optional[ApiDrawData]) -> PrizeSet:
    if data is None:
        return PrizeSet()

    def values(block: Optional[PrizeBlock]) -> List[str]:
        return block.values() if block else []

    return PrizeSet(
        first=values(data.first)[:1],
        last2=values(data.last2)[:1],
        last3f=values(data.last3f)[:2],
        last3b=values(data.last3b)[:2],
        near1=values(data.near1),
        second=values(data.second),
        third=values(data.third),
        fourth=values(data.fourth),
        fifth=values(data.fifth),
    )


def result_from_draw(response: ApiDrawResponse) -> SourceResult:
    """Structured API draw -> typed source result (official PDF reference attached)."""
    document = None
    if response.pdf_url:
        document = DocumentRef(url=response.pdf_url, document_id=response.pdf_id)
    return SourceResult(
        source=SourceTag.API,
        prizes=prizes_from_api(response.data),
        amounts=amounts_from_api(response.data),
        document=document,
        youtube_url=response.youtube_url,
    )


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(x).strip() for x in value if isinstance(x, str) and x.strip()]


def result_from_page_item(item: ApiPageItem) -> SourceResult:
    """Historical listing rows: plain string arrays for first/last2/last3f/last3b."""
    data = item.data or {}
    prizes = PrizeSet(
        first=_string_list(data.get("first"))[:1],
        last2=_string_list(data.get("last2"))[:1],
        last3f=_string_list(data.get("last3f"))[:2],
        last3b=_string_list(data.get("last3b"))[:2],
    )
    return SourceResult(source=SourceTag.API, prizes=prizes)


# ============================================================================
# HTTP
# ============================================================================

class _HttpSource:
    """Shared requests.Session handling: timeouts, headers, error mapping."""

    name = "http"

    def __init__(self, config: PipelineConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", config.user_agent)

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        start_time = time.time()
        try:
            response = self.session.request(method, url, timeout=self.config.http_timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise UpstreamHttpError(f"{self.name}: request to {url} failed: {e}", url=url) from e

        elapsed_ms = int((time.time() - start_time) * 1000)
        if not 200 <= response.status_code < 300:
            raise UpstreamHttpError(
                f"{self.name}: HTTP {response.status_code} from {url}",
                status_code=response.status_code,
                url=url,
            )
        logger.debug(f"📡 [{self.name}] {method} {url} -> {response.status_code} in {elapsed_ms}ms")
        return response

    def _get_bytes(self, url: str, accept: str = "application/pdf,*/*") -> bytes:
        return self._request("GET", url, headers={"Accept": accept}).content


class GloApiClient(_HttpSource):
    """
    Client for the Government Lottery Office JSON API.

    Every endpoint is a POST with a JSON body; results live under `response`.
    Payloads are validated into pydantic models before leaving this class.
    """

    name = "glo_api"

    def _post_json(self, endpoint: str, body: Dict[str, Any]) -> Any:
        url = f"{self.config.api_base}/{endpoint}"
        response = self._request(
            "POST", url, json=body,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
        )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamHttpError(f"{endpoint}: response is not JSON", url=url) from e

    def _draw_response(self, endpoint: str, payload: Any, fallback_date: Optional[str] = None) -> ApiDrawResponse:
        body = payload.get("response") if isinstance(payload, dict) else None
        if not isinstance(body, dict):
            raise UpstreamHttpError(f"{endpoint}: missing 'response' object")
        if fallback_date and not body.get("date"):
            body = {**body, "date": fallback_date}
        try:
            return ApiDrawResponse.model_validate(body)
        except ValidationError as e:
            raise UpstreamHttpError(f"{endpoint}: invalid payload: {e.errors()[:1]}") from e

    def fetch_latest(self) -> ApiDrawResponse:
        """Most recent draw, including the official PDF URL."""
        payload = self._post_json("getLatestLottery", {})
        return self._draw_response("getLatestLottery", payload)

    def fetch_by_date(self, date_iso: str) -> ApiDrawResponse:
        """Full structured result for one draw date."""
        request_shape = DateManager.to_day_month_year(date_iso)
        payload = self._post_json("getLotteryResult", request_shape)
        return self._draw_response("getLotteryResult", payload, fallback_date=date_iso)

    def fetch_page(self, page: int) -> List[ApiPageItem]:
        """One page of the historical listing, newest first. Rows with bad dates are dropped."""
        payload = self._post_json("getLotteryResultByPage", {"page": page})
        body = payload.get("response") if isinstance(payload, dict) else None
        rows = body.get("lottery") if isinstance(body, dict) else None
        if not isinstance(rows, list):
            return []

        items = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                items.append(ApiPageItem.model_validate(row))
            except ValidationError:
                logger.debug(f"[glo_api] dropping listing row with invalid date: {row.get('date')!r}")
        return items

    def fetch_pdf_bytes(self, pdf_id: str) -> bytes:
        """Official PDF through the reader endpoint, which answers with base64 text."""
        url = f"{self.config.api_base}/getPdfReader"
        response = self._request(
            "POST", url, json={"url": pdf_id},
            headers={"Accept": "application/json", "Content-Type": "application/json"},
        )
        text = response.text.strip()
        if not text:
            raise NotADocument(f"getPdfReader returned an empty body for {pdf_id}")
        return ensure_pdf(decode_base64_document(text), origin=f"getPdfReader:{pdf_id}")


# ============================================================================
# DOCUMENT ADAPTERS
# ============================================================================

def _storage_key(document_id: Optional[str]) -> str:
    return os.path.splitext(document_id)[0] if document_id else "official"


@dataclass
class FetchedDocument:
    """Downloaded document bytes plus the identifiers used to store them."""
    data: bytes
    key: str
    source: SourceTag
    url: Optional[str] = None
    document_id: Optional[str] = None
    storage_path: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    ocr_text: Optional[str] = None


class OfficialDocumentAdapter(_HttpSource):
    """Official result sheet published alongside the structured API."""

    name = "official_document"

    def __init__(self, config: PipelineConfig, api: GloApiClient, session: Optional[requests.Session] = None):
        super().__init__(config, session or api.session)
        self.api = api

    def fetch(self, url: Optional[str] = None, document_id: Optional[str] = None) -> FetchedDocument:
        """
        Download the official PDF.

        The source-provided URL is tried first; when it fails or is absent the
        API reader endpoint is asked for the same document id.
        """
        document_id = document_id or (last_path_segment(url) if url else None)
        if not url and not document_id:
            raise NoCandidateAvailable("No official document reference for this draw")

        last_error = None
        if url:
            try:
                data = self._get_bytes(url)
                if is_pdf(data):
                    return FetchedDocument(data, _storage_key(document_id), SourceTag.OFFICIAL_DOCUMENT, url, document_id)
                last_error = NotADocument(f"Downloaded content is not a PDF ({url})")
            except UpstreamHttpError as e:
                last_error = e
            logger.debug(f"[{self.name}] direct download failed ({last_error}), trying reader endpoint")

        if not document_id:
            raise last_error
        data = self.api.fetch_pdf_bytes(document_id)
        return FetchedDocument(data, _storage_key(document_id), SourceTag.OFFICIAL_DOCUMENT, url, document_id)


class MirrorDocumentAdapter(_HttpSource):
    """Third-party mirror that republishes the result sheets under date-derived names."""

    name = "mirror_document"
    ID_PREFIX = "lotteryco"

    def candidates(self, date_iso: str) -> List[Dict[str, str]]:
        """
        File names tried for a date, most common first.

        `YYMMDD` uses the two-digit Buddhist-era year; older sheets appear as
        `DD-MM-YYYY` with the full Buddhist-era year.
        """
        try:
            iso = DateManager.ensure_iso_date(date_iso)
        except InvalidDate:
            return []
        year, month, day = (int(part) for part in iso.split("-"))
        be_year = DateManager.buddhist_year(year)
        yymmdd = f"{be_year % 100:02d}{month:02d}{day:02d}"
        ddmmyyyy = f"{day:02d}-{month:02d}-{be_year}"
        base = self.config.mirror_pdf_base.rstrip("/")
        return [
            {"url": f"{base}/{yymmdd}.pdf", "key": yymmdd},
            {"url": f"{base}/{ddmmyyyy}.pdf", "key": ddmmyyyy},
        ]

    def fetch(self, date_iso: str) -> FetchedDocument:
        last_error: Optional[Exception] = None
        for candidate in self.candidates(date_iso):
            try:
                data = self._get_bytes(candidate["url"])
            except UpstreamHttpError as e:
                last_error = e
                continue
            if not is_pdf(data):
                last_error = NotADocument(f"Downloaded content is not a PDF ({candidate['url']})")
                continue

            logger.debug(f"[{self.name}] {date_iso}: using {candidate['url']}")
            return FetchedDocument(
                data=data,
                key=f"{self.ID_PREFIX}_{candidate['key']}",
                source=SourceTag.MIRROR_DOCUMENT,
                url=candidate["url"],
                document_id=f"{self.ID_PREFIX}:{candidate['key']}",
            )

        raise NoCandidateAvailable(
            f"No mirror document candidate worked for {date_iso}: {last_error}",
            last_error=last_error,
        )


class HtmlTableAdapter(_HttpSource):
    """Per-draw result page of the mirror site, parsed as plain text."""

    name = "html_page"

    def page_url(self, date_iso: str) -> str:
        iso = DateManager.ensure_iso_date(date_iso)
        year, month, day = (int(part) for part in iso.split("-"))
        yy = DateManager.buddhist_year(year) % 100
        return f"{self.config.mirror_page_base.rstrip('/')}/{day:02d}-{month:02d}-{yy:02d}"

    def fetch_text(self, date_iso: str) -> str:
        url = self.page_url(date_iso)
        response = self._request("GET", url, headers={"Accept": "text/html,*/*"})
        return normalize_text(html_to_text(response.text))

