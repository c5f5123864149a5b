import base64
import json
import os
import sys

import pytest

# Ensure repository root is on sys.path so `import src.*` works during tests
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from src.blob_store import LocalBlobStore  # noqa: E402
from src.config import PipelineConfig  # noqa: E402
from src.database import initialize_database  # noqa: E402
from src.models import PrizeSet  # noqa: E402
from src.ocr import fragment_payload  # noqa: E402
from src.orchestrator import DrawOrchestrator  # noqa: E402
from src.reconciler import DrawReconciler  # noqa: E402

API_BASE = "https://api.lottery.test/api/lottery"
MIRROR_PDF_BASE = "https://cdn.mirror.test/lotto/pdf"
MIRROR_PAGE_BASE = "https://www.mirror.test/lotto"
OFFICIAL_PDF_URL = "https://files.lottery.test/results/2567/06/16/lotto_160667.pdf"

FAKE_PDF = b"%PDF-1.4\n% fake official sheet\n"

PRICES = {
    "first": "6,000,000.00",
    "near1": "100,000.00",
    "second": "200,000.00",
    "third": "80,000.00",
    "fourth": "40,000.00",
    "fifth": "20,000.00",
    "last3f": "4,000.00",
    "last3b": "4,000.00",
    "last2": "2,000.00",
}

EXPECTED_AMOUNTS = {
    "first": 6000000,
    "near1": 100000,
    "second": 200000,
    "third": 80000,
    "fourth": 40000,
    "fifth": 20000,
    "last3": 4000,
    "last3f": 4000,
    "last2": 2000,
}


def sample_prizes() -> PrizeSet:
    """A complete, internally consistent draw."""
    return PrizeSet(
        first=["730209"],
        last2=["51"],
        last3f=["446", "065"],
        last3b=["376", "297"],
        near1=["730208", "730210"],
        second=[f"{100000 + i * 1111:06d}" for i in range(5)],
        third=[f"{200000 + i * 777:06d}" for i in range(10)],
        fourth=[f"{300000 + i * 331:06d}" for i in range(50)],
        fifth=[f"{400000 + i * 97:06d}" for i in range(100)],
    )


def sheet_text(prizes: PrizeSet = None, date_phrase: str = "งวดวันที่ 16 มิถุนายน 2567",
               include_long_lists: bool = True) -> str:
    """Text as it comes out of an official result sheet's text layer."""
    p = prizes or sample_prizes()
    lines = [
        "ผลการออกสลากกินแบ่งรัฐบาล",
        date_phrase,
        "รางวัลที่ 1",
        " ".join(p.first),
        "เลขหน้า 3 ตัว",
        " ".join(p.last3f),
        "เลขท้าย 3 ตัว",
        " ".join(p.last3b),
        "เลขท้าย 2 ตัว",
        " ".join(p.last2),
    ]
    if include_long_lists:
        lines += [
            "รางวัลข้างเคียงรางวัลที่ 1",
            " ".join(p.near1),
            "รางวัลที่ 2",
            " ".join(p.second),
            "รางวัลที่ 3",
            " ".join(p.third),
            "รางวัลที่ 4",
            " ".join(p.fourth),
            "รางวัลที่ 5",
            " ".join(p.fifth),
        ]
    return "\n".join(lines)


def api_block(price, numbers):
    return {"price": price, "number": [{"round": 1, "value": n} for n in numbers]}


def api_draw_payload(date_iso="2024-06-16", pdf_url=OFFICIAL_PDF_URL, long_lists=False, prices=True):
    """getLotteryResult / getLatestLottery body. The live API often omits the long lists."""
    p = sample_prizes()
    data = {}
    for key in ("first", "last2", "last3f", "last3b"):
        data[key] = api_block(PRICES[key] if prices else None, p.get(key))
    for key in ("near1", "second", "third", "fourth", "fifth"):
        data[key] = api_block(PRICES[key] if prices else None, p.get(key) if long_lists else [])
    return {
        "statusMessage": "Success",
        "response": {
            "date": date_iso,
            "pdf_url": pdf_url,
            "youtube_url": "https://www.youtube.com/watch?v=draw",
            "data": data,
        },
    }


class FakeResponse:
    def __init__(self, status_code=200, content=b"", json_data=None, text=None):
        self.status_code = status_code
        self.content = content
        self._json = json_data
        self._text = text

    @property
    def text(self):
        if self._text is not None:
            return self._text
        if self._json is not None:
            return json.dumps(self._json)
        return self.content.decode("latin-1")

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """
    Stand-in for requests.Session.

    Routes are (method, url substring) pairs checked in registration order; a
    route can answer with a FakeResponse, raise an exception, or compute the
    response from the request kwargs. Unrouted requests get a 404.
    """

    def __init__(self):
        self.headers = {}
        self.routes = []
        self.calls = []

    def add(self, method, url_part, answer):
        self.routes.append((method.upper(), url_part, answer))
        return self

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method.upper(), url, kwargs))
        for route_method, url_part, answer in self.routes:
            if route_method == method.upper() and url_part in url:
                if isinstance(answer, Exception):
                    raise answer
                if callable(answer):
                    return answer(url, kwargs)
                return answer
        return FakeResponse(status_code=404, content=b"not found")

    def urls(self, method=None):
        return [url for m, url, _ in self.calls if method is None or m == method.upper()]


class FakeRecognitionService:
    """Writes canned pages as OCR fragments; counts submissions."""

    def __init__(self, blob_store, pages=None, error=None):
        self.blob_store = blob_store
        self.pages = pages or []
        self.error = error
        self.submitted = []

    def submit(self, job):
        if self.error is not None:
            raise self.error
        self.submitted.append(job)
        return job

    def wait(self, handle):
        payload = fragment_payload(self.pages)
        name = f"{handle.output_prefix}output-0001-to-{len(self.pages):04d}.json"
        self.blob_store.write_once(name, json.dumps(payload, ensure_ascii=False).encode("utf-8"))


@pytest.fixture()
def config(tmp_path):
    return PipelineConfig(
        api_base=API_BASE,
        mirror_pdf_base=MIRROR_PDF_BASE,
        mirror_page_base=MIRROR_PAGE_BASE,
        database_file=str(tmp_path / "draws.db"),
        blob_root=str(tmp_path / "blobs"),
        http_timeout=5,
    )


@pytest.fixture()
def db_path(config):
    initialize_database(config.database_file)
    return config.database_file


@pytest.fixture()
def blob_store(config):
    return LocalBlobStore(config.blob_root)


@pytest.fixture()
def session():
    return FakeSession()


@pytest.fixture()
def recognition(blob_store):
    return FakeRecognitionService(blob_store)


@pytest.fixture()
def reconciler(config, db_path, session, recognition):
    return DrawReconciler.from_config(config, session=session, recognition_service=recognition)


@pytest.fixture()
def orchestrator(config, reconciler):
    return DrawOrchestrator(config, reconciler)


@pytest.fixture()
def pdf_text(monkeypatch):
    """
    Replace PDF text extraction with a lookup by document bytes.

    Tests register `bytes -> text`; unknown bytes extract to "" like a scanned sheet.
    """
    texts = {}

    def fake_extract(data):
        return texts.get(bytes(data), "")

    monkeypatch.setattr("src.reconciler.extract_pdf_text", fake_extract)
    return texts


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
