"""
PDF document helpers: validation, hashing, storage paths and text extraction.
"""

import base64
import binascii
import hashlib
import io
from typing import Any, Dict, Optional

import pdfplumber
from loguru import logger

from src.blob_store import LocalBlobStore
from src.errors import NotADocument
from src.models import DocumentRef

PDF_MAGIC = b"%PDF"
MIN_DOCUMENT_BYTES = 10


def is_pdf(data: bytes) -> bool:
    return bool(data) and len(data) >= MIN_DOCUMENT_BYTES and data[:4] == PDF_MAGIC


def ensure_pdf(data: bytes, origin: str = "document") -> bytes:
    if not is_pdf(data):
        raise NotADocument(f"Downloaded content is not a PDF ({origin})")
    return data


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def decode_base64_document(raw: str) -> bytes:
    """Decode a base64 PDF, accepting `data:application/pdf;base64,` URLs."""
    text = str(raw or "").strip()
    if "base64," in text:
        text = text.split("base64,")[-1]
    if not text:
        raise NotADocument("Empty base64 payload")
    try:
        return base64.b64decode(text, validate=False)
    except (binascii.Error, ValueError) as e:
        raise NotADocument(f"Invalid base64 payload: {e}") from e


def document_storage_path(prefix: str, date_iso: str, key: str) -> str:
    return f"{prefix.rstrip('/')}/{date_iso}_{key}.pdf"


def store_document(
    blob_store: LocalBlobStore,
    prefix: str,
    date_iso: str,
    key: str,
    data: bytes,
    url: Optional[str] = None,
    document_id: Optional[str] = None,
    extra_metadata: Optional[Dict[str, Any]] = None,
) -> DocumentRef:
    """
    Persist document bytes and describe them.

    The blob is write-once. If the path is taken by identical bytes this is a
    no-op; if it holds different bytes (a reissued sheet under the same name)
    the new document goes to a hash-qualified path, so the returned hash always
    describes the stored object.
    """
    ensure_pdf(data, origin=url or key)
    digest = sha256_hex(data)
    storage_path = document_storage_path(prefix, date_iso, key)
    metadata = {
        "source_url": url,
        "document_id": document_id,
        "date": date_iso,
        "sha256": digest,
    }
    if extra_metadata:
        metadata.update(extra_metadata)

    written = blob_store.write_once(storage_path, data, metadata=metadata)
    if not written:
        if sha256_hex(blob_store.read(storage_path)) == digest:
            logger.debug(f"[documents] {storage_path} already stored")
        else:
            reissued_path = document_storage_path(prefix, date_iso, f"{key}_{digest[:12]}")
            logger.warning(
                f"[documents] {storage_path} holds different bytes, storing reissue as {reissued_path}"
            )
            storage_path = reissued_path
            blob_store.write_once(storage_path, data, metadata=metadata)

    return DocumentRef(
        url=url,
        document_id=document_id,
        sha256=digest,
        size=len(data),
        storage_path=storage_path,
    )


def extract_pdf_text(data: bytes) -> str:
    """Text layer of every page, joined by blank lines. Empty for scanned PDFs."""
    pages = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages:
            text = page.extract_text()
            if text:
                pages.append(text)
    return "\n\n".join(pages)
