"""
Heading-anchored prize extraction.

Official result sheets (text layer or OCR) and mirror HTML pages list each prize
category under a Thai heading followed by its numbers. Extraction anchors on the
first heading match and collects fixed-width digit tokens after it; cardinalities
come from the category schema and are never inferred from the text.
"""

import re
from typing import Iterable, List, Optional, Sequence, Pattern, Union, Tuple

from loguru import logger

from src.models import PRIZE_CATEGORIES, PrizeCategory, PrizeSet
from src.text_utils import normalize_text

PatternLike = Union[str, Pattern]

# Terminators bounding the adjacent-to-first section: any later category heading.
NEAR1_TERMINATORS: Tuple[str, ...] = (
    r"รางวัล\s*(?:ที่|ที|ท)\s*2",
    r"รางวัล\s*(?:ที่|ที|ท)\s*3",
    r"เลขหน้า\s*3\s*ตัว",
    r"เลขท้าย\s*3\s*ตัว",
    r"เลขท้าย\s*2\s*ตัว",
)

# Conservative core patterns: number within a short distance of the heading.
_CORE_FIRST = re.compile(r"รางวัลที่\s*1[\s\S]{0,250}?(\d{6})")
_CORE_LAST3F = re.compile(r"เลขหน้า\s*3\s*ตัว[\s\S]{0,250}?(\d{3})\s*(\d{3})")
_CORE_LAST3B = re.compile(r"เลขท้าย\s*3\s*ตัว[\s\S]{0,250}?(\d{3})\s*(\d{3})")
_CORE_LAST2 = re.compile(r"เลขท้าย\s*2\s*ตัว[\s\S]{0,120}?(\d{2})")


def _compile(pattern: PatternLike) -> Pattern:
    return pattern if isinstance(pattern, re.Pattern) else re.compile(pattern)


def _token_pattern(width: int) -> Pattern:
    # Normalization glues neighbouring numbers into one digit run, so tokens are
    # consecutive `width`-digit chunks of each run.
    return re.compile(r"\d{%d}" % width)


def pick_unique(items: Iterable[str]) -> List[str]:
    """Deduplicate preserving first-seen order."""
    seen = set()
    out = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


def find_after_heading(text: str, heading: PatternLike, width: int, expected: int) -> List[str]:
    """
    Tokens of exactly `width` digits after the first heading match.

    Returns an empty list when the heading is absent. Duplicates are dropped in
    first-seen order and the result is truncated to `expected`.
    """
    match = _compile(heading).search(text or "")
    if not match:
        return []
    tail = text[match.end():]
    tokens = _token_pattern(width).findall(tail)
    return pick_unique(tokens)[:expected]


def find_in_section(
    text: str,
    heading: PatternLike,
    width: int,
    expected: int,
    terminators: Sequence[PatternLike] = (),
) -> List[str]:
    """
    Like find_after_heading, but the scan stops at the nearest terminator that
    occurs after the heading.
    """
    text = text or ""
    match = _compile(heading).search(text)
    if not match:
        return []

    start = match.end()
    end = len(text)
    for terminator in terminators:
        found = _compile(terminator).search(text, start)
        if found and start <= found.start() < end:
            end = found.start()

    tokens = _token_pattern(width).findall(text[start:end])
    return pick_unique(tokens)[:expected]


def parse_core_results(normalized: str) -> PrizeSet:
    """Older, stricter parse for first/last2/last3f/last3b only."""
    first = _CORE_FIRST.search(normalized)
    last3f = _CORE_LAST3F.search(normalized)
    last3b = _CORE_LAST3B.search(normalized)
    last2 = _CORE_LAST2.search(normalized)
    return PrizeSet(
        first=[first.group(1)] if first else [],
        last2=[last2.group(1)] if last2 else [],
        last3f=pick_unique(last3f.groups()) if last3f else [],
        last3b=pick_unique(last3b.groups()) if last3b else [],
    )


def parse_results(text: str, categories: Optional[Sequence[PrizeCategory]] = None) -> PrizeSet:
    """
    Extract every prize category from document or page text.

    Args:
        text: Raw or normalized text (normalized again here; the transform is idempotent)
        categories: Category schema, defaults to the nine standard categories

    Returns:
        PrizeSet with each list truncated to its expected count
    """
    normalized = normalize_text(text)
    schema = {c.key: c for c in (categories or PRIZE_CATEGORIES)}
    found = {}

    for key, category in schema.items():
        if key == "near1":
            # "รางวัลข้างเคียงรางวัลที่ 1" also contains the first-prize heading; bound
            # the scan so it does not run into the second prize list.
            found[key] = find_in_section(
                normalized, category.heading, category.width, category.expected, NEAR1_TERMINATORS
            )
        else:
            found[key] = find_after_heading(normalized, category.heading, category.width, category.expected)

    prizes = PrizeSet.from_mapping(found)

    # Some sheets lack the tolerant headings; fall back to the core parse.
    core = parse_core_results(normalized)
    if not prizes.first:
        prizes.first = core.first[: schema["first"].expected]
    if not prizes.last2:
        prizes.last2 = core.last2[: schema["last2"].expected]
    if len(prizes.last3f) != schema["last3f"].expected and core.last3f:
        prizes.last3f = core.last3f
    if len(prizes.last3b) != schema["last3b"].expected and core.last3b:
        prizes.last3b = core.last3b

    logger.debug(f"[extract] counts: {prizes.counts()}")
    return prizes


def completeness_weight(prizes: PrizeSet) -> float:
    """Weighted fill score: core fields count more than the long lists."""
    score = 0.0
    if prizes.first:
        score += 3
    if prizes.last2:
        score += 2
    if len(prizes.last3f) == 2:
        score += 2
    if len(prizes.last3b) == 2:
        score += 2
    if len(prizes.near1) == 2:
        score += 2
    score += min(5, len(prizes.second)) * 0.2
    score += min(10, len(prizes.third)) * 0.1
    score += min(50, len(prizes.fourth)) * 0.02
    score += min(100, len(prizes.fifth)) * 0.01
    return score


def pick_more_complete(a: PrizeSet, b: PrizeSet) -> PrizeSet:
    """Return whichever parse filled more of the schema (ties keep `a`)."""
    return b if completeness_weight(b) > completeness_weight(a) else a
