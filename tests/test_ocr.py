import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError
from conftest import FAKE_PDF, FakeRecognitionService, sheet_text

from src.blob_store import LocalBlobStore
from src.errors import ConfigurationError, RecognitionFailure
from src.ocr import (
    AzureRecognitionService,
    OcrFallback,
    RecognitionJob,
    ocr_output_prefix,
    read_output_text,
)

SOURCE_PATH = "lottery_pdfs/2024-06-16_scan.pdf"


@pytest.fixture()
def store(tmp_path):
    store = LocalBlobStore(str(tmp_path))
    store.write_once(SOURCE_PATH, FAKE_PDF)
    return store


def test_output_prefix_layout():
    assert ocr_output_prefix("lottery_ocr_output", "2024-06-16", "abc") == "lottery_ocr_output/2024-06-16/abc/"


def test_recognize_submits_once_and_then_reads_cache(store):
    service = FakeRecognitionService(store, pages=[sheet_text()])
    ocr = OcrFallback(service, store)

    first = ocr.recognize("2024-06-16", "abc", SOURCE_PATH)
    second = ocr.recognize("2024-06-16", "abc", SOURCE_PATH)

    assert "รางวัลที่ 1" in first
    assert second == first
    assert len(service.submitted) == 1
    assert service.submitted[0].output_prefix == "lottery_ocr_output/2024-06-16/abc/"


def test_short_output_counts_as_no_text(store):
    service = FakeRecognitionService(store, pages=["สแกนไม่ชัด"])
    assert OcrFallback(service, store).recognize("2024-06-16", "abc", SOURCE_PATH) == ""


def test_missing_service_without_cache_fails(store):
    with pytest.raises(RecognitionFailure):
        OcrFallback(None, store).recognize("2024-06-16", "abc", SOURCE_PATH)


def test_service_errors_become_recognition_failures(store):
    service = FakeRecognitionService(store, error=RuntimeError("quota exceeded"))
    with pytest.raises(RecognitionFailure, match="quota exceeded"):
        OcrFallback(service, store).recognize("2024-06-16", "abc", SOURCE_PATH)


def test_read_output_text_orders_fragments_and_pages(store):
    prefix = "lottery_ocr_output/2024-06-16/abc/"
    store.write_once(prefix + "output-0006-to-0006.json",
                     json.dumps({"responses": [{"fullTextAnnotation": {"text": "page six"}}]}).encode())
    store.write_once(prefix + "output-0001-to-0005.json", json.dumps({"responses": [
        {"fullTextAnnotation": {"text": "page one"}},
        {},
        {"fullTextAnnotation": {"text": "page three"}},
    ]}).encode())

    assert read_output_text(store, prefix) == "page one\n\npage three\n\npage six"


def test_read_output_text_rejects_corrupt_fragment(store):
    prefix = "lottery_ocr_output/2024-06-16/abc/"
    store.write_once(prefix + "output-0001-to-0001.json", b"{not json")
    with pytest.raises(RecognitionFailure):
        read_output_text(store, prefix)


@pytest.mark.parametrize("payload", [
    ["page one"],
    {"responses": "page one"},
    {"responses": ["page one"]},
])
def test_read_output_text_rejects_unexpected_layout(store, payload):
    prefix = "lottery_ocr_output/2024-06-16/abc/"
    store.write_once(prefix + "output-0001-to-0001.json", json.dumps(payload).encode())
    with pytest.raises(RecognitionFailure, match="layout"):
        read_output_text(store, prefix)


def test_azure_service_requires_credentials(store):
    with pytest.raises(ConfigurationError):
        AzureRecognitionService(None, None, store)


def test_azure_service_writes_batched_fragments(store):
    pages = [SimpleNamespace(lines=[SimpleNamespace(content=f"line {i}")]) for i in range(7)]
    poller = MagicMock()
    poller.result.return_value = SimpleNamespace(pages=pages, content="")
    client = MagicMock()
    client.begin_analyze_document.return_value = poller

    service = AzureRecognitionService(None, None, store, client=client)
    job = RecognitionJob(source_path=SOURCE_PATH, output_prefix="lottery_ocr_output/2024-06-16/abc/", batch_size=5)
    service.wait(service.submit(job))

    args, kwargs = client.begin_analyze_document.call_args
    assert args[0] == "prebuilt-read"
    assert kwargs["body"] == FAKE_PDF
    assert store.list_prefix(job.output_prefix) == [
        "lottery_ocr_output/2024-06-16/abc/output-0001-to-0005.json",
        "lottery_ocr_output/2024-06-16/abc/output-0006-to-0007.json",
    ]
    assert read_output_text(store, job.output_prefix).split("\n\n") == [f"line {i}" for i in range(7)]


def test_azure_poll_failure_is_wrapped(store):
    poller = MagicMock()
    poller.result.side_effect = HttpResponseError(message="analysis failed")
    client = MagicMock()
    client.begin_analyze_document.return_value = poller

    service = AzureRecognitionService(None, None, store, client=client)
    job = RecognitionJob(source_path=SOURCE_PATH, output_prefix="lottery_ocr_output/2024-06-16/abc/")
    with pytest.raises(RecognitionFailure):
        service.wait(service.submit(job))
