"""
Data model for canonical draw records.

One DrawRecord exists per draw date. Prize lists follow a fixed schema of nine
categories whose expected cardinalities never change at runtime; amounts are
nine named integer baht values.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Any, Tuple


class SourceTag(str, Enum):
    """Provenance of a record, ordered by trust."""
    API = "api-derived"
    MIRROR_DOCUMENT = "mirror-document"
    UPLOAD = "upload"
    OFFICIAL_DOCUMENT = "official-document"

    @property
    def trust(self) -> int:
        return _SOURCE_TRUST[self]


_SOURCE_TRUST = {
    SourceTag.API: 0,
    SourceTag.MIRROR_DOCUMENT: 1,
    SourceTag.UPLOAD: 2,
    SourceTag.OFFICIAL_DOCUMENT: 3,
}


@dataclass(frozen=True)
class PrizeCategory:
    key: str
    expected: int
    width: int
    heading: str
    label: str


# Headings tolerate OCR damage: dropped Thai diacritics and stray spaces.
PRIZE_CATEGORIES: Tuple[PrizeCategory, ...] = (
    PrizeCategory("first", 1, 6, r"รางวัล\s*ที่\s*1", "first prize"),
    PrizeCategory("last2", 1, 2, r"เลขท้าย\s*2\s*ตัว", "last two digits"),
    PrizeCategory("last3f", 2, 3, r"เลขหน้า\s*3\s*ตัว", "front three digits"),
    PrizeCategory("last3b", 2, 3, r"เลขท้าย\s*3\s*ตัว", "last three digits"),
    PrizeCategory("near1", 2, 6, r"รางวัลข้างเคียง\s*รางวัล\s*ที่\s*1", "adjacent to first prize"),
    PrizeCategory("second", 5, 6, r"รางวัล\s*(?:ที่|ที|ท)\s*2", "second prize"),
    PrizeCategory("third", 10, 6, r"รางวัล\s*(?:ที่|ที|ท)\s*3", "third prize"),
    PrizeCategory("fourth", 50, 6, r"รางวัล\s*(?:ที่|ที|ท)\s*4", "fourth prize"),
    PrizeCategory("fifth", 100, 6, r"รางวัล\s*(?:ที่|ที|ท)\s*5", "fifth prize"),
)

PRIZE_KEYS: Tuple[str, ...] = tuple(c.key for c in PRIZE_CATEGORIES)

AMOUNT_KEYS: Tuple[str, ...] = (
    "first", "near1", "second", "third", "fourth", "fifth", "last3", "last3f", "last2",
)


def _clean_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    out = []
    for item in value:
        if isinstance(item, str) and item.strip():
            out.append(item.strip())
    return out


@dataclass
class PrizeSet:
    """Prize numbers per category. A short list means the category is incomplete."""
    first: List[str] = field(default_factory=list)
    last2: List[str] = field(default_factory=list)
    last3f: List[str] = field(default_factory=list)
    last3b: List[str] = field(default_factory=list)
    near1: List[str] = field(default_factory=list)
    second: List[str] = field(default_factory=list)
    third: List[str] = field(default_factory=list)
    fourth: List[str] = field(default_factory=list)
    fifth: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> "PrizeSet":
        data = data or {}
        return cls(**{key: _clean_list(data.get(key)) for key in PRIZE_KEYS})

    def get(self, key: str) -> List[str]:
        return list(getattr(self, key))

    def to_dict(self) -> Dict[str, List[str]]:
        return {key: list(getattr(self, key)) for key in PRIZE_KEYS}

    def counts(self) -> Dict[str, int]:
        return {key: len(getattr(self, key)) for key in PRIZE_KEYS}

    def is_empty(self) -> bool:
        return not any(self.counts().values())


@dataclass
class DocumentRef:
    """Where a record's source document came from and where it is stored."""
    url: Optional[str] = None
    document_id: Optional[str] = None
    sha256: Optional[str] = None
    size: Optional[int] = None
    storage_path: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["DocumentRef"]:
        if not data:
            return None
        return cls(
            url=data.get("url"),
            document_id=data.get("document_id"),
            sha256=data.get("sha256"),
            size=data.get("size"),
            storage_path=data.get("storage_path"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Diagnostics:
    complete: bool = False
    warnings: List[str] = field(default_factory=list)


@dataclass
class SourceResult:
    """Typed output of one adapter, ready to be merged into a record."""
    source: SourceTag
    prizes: PrizeSet = field(default_factory=PrizeSet)
    amounts: Optional[Dict[str, int]] = None
    document: Optional[DocumentRef] = None
    youtube_url: Optional[str] = None


@dataclass
class DrawRecord:
    date: str
    source: Optional[SourceTag] = None
    document: Optional[DocumentRef] = None
    prizes: PrizeSet = field(default_factory=PrizeSet)
    amounts: Optional[Dict[str, int]] = None
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    updated_at: Optional[str] = None
    youtube_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "source": self.source.value if self.source else None,
            "document": self.document.to_dict() if self.document else None,
            "prizes": self.prizes.to_dict(),
            "amounts": dict(self.amounts) if self.amounts is not None else None,
            "diagnostics": {
                "complete": self.diagnostics.complete,
                "warnings": list(self.diagnostics.warnings),
            },
            "updated_at": self.updated_at,
            "youtube_url": self.youtube_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DrawRecord":
        diagnostics = data.get("diagnostics") or {}
        source = data.get("source")
        amounts = data.get("amounts")
        return cls(
            date=data["date"],
            source=SourceTag(source) if source else None,
            document=DocumentRef.from_dict(data.get("document")),
            prizes=PrizeSet.from_mapping(data.get("prizes")),
            amounts=dict(amounts) if isinstance(amounts, dict) else None,
            diagnostics=Diagnostics(
                complete=bool(diagnostics.get("complete", False)),
                warnings=list(diagnostics.get("warnings") or []),
            ),
            updated_at=data.get("updated_at"),
            youtube_url=data.get("youtube_url"),
        )

    def same_content(self, other: Optional["DrawRecord"]) -> bool:
        """Equality ignoring the write timestamp."""
        if other is None:
            return False
        mine = self.to_dict()
        theirs = other.to_dict()
        mine.pop("updated_at", None)
        theirs.pop("updated_at", None)
        return mine == theirs
