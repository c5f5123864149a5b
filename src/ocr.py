"""
OCR fallback for image-only result sheets.

Recognition is a two-phase operation: `submit` starts an asynchronous job that
writes page-level JSON fragments under a destination prefix, `wait` blocks the
calling reconciliation step until the job is done. The destination is derived
from (draw date, document hash), so an existing prefix doubles as a cache and
the same document is never sent to the service twice.
"""

import json
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

from azure.ai.documentintelligence import DocumentIntelligenceClient
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import AzureError
from loguru import logger

from src.blob_store import LocalBlobStore
from src.errors import ConfigurationError, RecognitionFailure


@dataclass(frozen=True)
class RecognitionJob:
    source_path: str
    output_prefix: str
    batch_size: int = 5


class RecognitionService(Protocol):
    def submit(self, job: RecognitionJob) -> Any:
        """Start recognition; returns a handle for `wait`."""

    def wait(self, handle: Any) -> None:
        """Block until the job has written its output fragments."""


def ocr_output_prefix(root: str, date_iso: str, sha256: str) -> str:
    return f"{root.strip('/')}/{date_iso}/{sha256}/"


def fragment_payload(texts: List[str]) -> dict:
    """Fragment layout: one `fullTextAnnotation` per page, in page order."""
    return {"responses": [{"fullTextAnnotation": {"text": text}} for text in texts]}


def read_output_text(blob_store: LocalBlobStore, prefix: str) -> str:
    """
    Concatenate the text of every JSON fragment under `prefix`.

    Fragments are read in file-name order so page order is stable across runs.
    """
    names = sorted(name for name in blob_store.list_prefix(prefix) if name.endswith(".json"))
    parts = []
    for name in names:
        try:
            payload = json.loads(blob_store.read(name).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RecognitionFailure(f"Unreadable OCR fragment {name}: {e}") from e

        if not isinstance(payload, dict):
            raise RecognitionFailure(f"Unexpected OCR fragment layout in {name}")
        responses = payload.get("responses") or []
        if not isinstance(responses, list) or not all(isinstance(r, dict) or r is None for r in responses):
            raise RecognitionFailure(f"Unexpected OCR fragment layout in {name}")

        for response in responses:
            annotation = (response or {}).get("fullTextAnnotation")
            text = annotation.get("text") if isinstance(annotation, dict) else None
            if isinstance(text, str) and text.strip():
                parts.append(text.strip())
    return "\n\n".join(parts)


@dataclass
class AzureRecognitionHandle:
    job: RecognitionJob
    poller: Any


class AzureRecognitionService:
    """Azure Document Intelligence `prebuilt-read` behind the two-phase contract."""

    def __init__(self, endpoint: Optional[str], api_key: Optional[str], blob_store: LocalBlobStore,
                 model_id: str = "prebuilt-read", client: Optional[DocumentIntelligenceClient] = None):
        if client is None:
            if not endpoint or not api_key:
                raise ConfigurationError(
                    "Missing Azure Document Intelligence credentials. "
                    "Set AZURE_DOCUMENT_INTELLIGENCE_ENDPOINT and AZURE_DOCUMENT_INTELLIGENCE_API_KEY."
                )
            client = DocumentIntelligenceClient(endpoint=endpoint, credential=AzureKeyCredential(api_key))
        self.client = client
        self.blob_store = blob_store
        self.model_id = model_id

    def submit(self, job: RecognitionJob) -> AzureRecognitionHandle:
        pdf_bytes = self.blob_store.read(job.source_path)
        try:
            poller = self.client.begin_analyze_document(
                self.model_id,
                body=pdf_bytes,
                content_type="application/pdf",
            )
        except AzureError as e:
            raise RecognitionFailure(f"Recognition submit failed for {job.source_path}: {e}") from e
        logger.info(f"👁️ [ocr] submitted {job.source_path} -> {job.output_prefix}")
        return AzureRecognitionHandle(job=job, poller=poller)

    def wait(self, handle: AzureRecognitionHandle) -> None:
        try:
            result = handle.poller.result()
        except AzureError as e:
            raise RecognitionFailure(f"Recognition failed for {handle.job.source_path}: {e}") from e

        pages = []
        for page in result.pages or []:
            lines = [line.content for line in (page.lines or []) if line.content]
            pages.append("\n".join(lines))
        if not pages and result.content:
            pages = [result.content]

        batch = max(1, handle.job.batch_size)
        for start in range(0, len(pages), batch):
            chunk = pages[start:start + batch]
            name = f"{handle.job.output_prefix}output-{start + 1:04d}-to-{start + len(chunk):04d}.json"
            self.blob_store.write_once(name, json.dumps(fragment_payload(chunk), ensure_ascii=False).encode("utf-8"))
        logger.info(f"👁️ [ocr] {len(pages)} page(s) written under {handle.job.output_prefix}")


class OcrFallback:
    """Cached OCR of a stored document, keyed by (date, sha256)."""

    def __init__(self, service: Optional[RecognitionService], blob_store: LocalBlobStore,
                 output_root: str = "lottery_ocr_output", min_text_length: int = 50, batch_size: int = 5):
        self.service = service
        self.blob_store = blob_store
        self.output_root = output_root
        self.min_text_length = min_text_length
        self.batch_size = batch_size

    def recognize(self, date_iso: str, sha256: str, storage_path: str) -> str:
        """
        Text of the document at `storage_path`.

        Returns an empty string when the output is too short to be a result
        sheet. Raises RecognitionFailure when the job cannot be run or read.
        """
        prefix = ocr_output_prefix(self.output_root, date_iso, sha256)

        if self.blob_store.exists_prefix(prefix):
            logger.debug(f"[ocr] cache hit for {prefix}")
        else:
            if self.service is None:
                raise RecognitionFailure("No recognition service configured")
            job = RecognitionJob(source_path=storage_path, output_prefix=prefix, batch_size=self.batch_size)
            try:
                handle = self.service.submit(job)
                self.service.wait(handle)
            except RecognitionFailure:
                raise
            except Exception as e:
                raise RecognitionFailure(f"Recognition job for {storage_path} failed: {e}") from e

        text = read_output_text(self.blob_store, prefix)
        if len(text) <= self.min_text_length:
            logger.debug(f"[ocr] output for {storage_path} too short ({len(text)} chars)")
            return ""
        return text
