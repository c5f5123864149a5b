"""
Completeness scoring for draw records.

Prizes and amounts are judged independently: a record can have every prize list
filled from a document while its amounts still wait on the structured API.
"""

import math
from typing import Any, Dict, List, Mapping, Optional, Sequence

from src.models import AMOUNT_KEYS, PRIZE_CATEGORIES, Diagnostics, PrizeCategory, PrizeSet


def is_full_prize_set(prizes: PrizeSet, categories: Optional[Sequence[PrizeCategory]] = None) -> bool:
    """Every category list holds exactly its expected count."""
    counts = prizes.counts()
    return all(counts[c.key] == c.expected for c in (categories or PRIZE_CATEGORIES))


def has_core_prizes(prizes: PrizeSet) -> bool:
    """First, last-two and both three-digit lists present (what the listing API provides)."""
    return (
        len(prizes.first) == 1
        and len(prizes.last2) == 1
        and len(prizes.last3f) == 2
        and len(prizes.last3b) == 2
    )


def has_any_long_list(prizes: PrizeSet) -> bool:
    """Any of near1 / second..fifth is non-empty, i.e. a full sheet was parsed at some point."""
    return any(prizes.get(key) for key in ("near1", "second", "third", "fourth", "fifth"))


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def is_full_amounts(amounts: Optional[Mapping[str, Any]]) -> bool:
    """All nine amount keys resolve to finite numbers."""
    if not isinstance(amounts, Mapping):
        return False
    return all(_is_finite_number(amounts.get(key)) for key in AMOUNT_KEYS)


def is_complete(prizes: PrizeSet, amounts: Optional[Mapping[str, Any]],
                categories: Optional[Sequence[PrizeCategory]] = None) -> bool:
    """Halt condition for re-processing a date."""
    return is_full_prize_set(prizes, categories) and is_full_amounts(amounts)


def missing_warnings(prizes: PrizeSet, amounts: Optional[Mapping[str, Any]],
                     categories: Optional[Sequence[PrizeCategory]] = None) -> List[str]:
    """Ordered `missing_<field>` tags for every short category, then amounts."""
    counts = prizes.counts()
    warnings = [
        f"missing_{c.key}"
        for c in (categories or PRIZE_CATEGORIES)
        if counts[c.key] != c.expected
    ]
    if not is_full_amounts(amounts):
        warnings.append("missing_amounts")
    return warnings


def build_diagnostics(prizes: PrizeSet, amounts: Optional[Mapping[str, Any]],
                      categories: Optional[Sequence[PrizeCategory]] = None) -> Diagnostics:
    """Recompute diagnostics from the current prizes and amounts."""
    return Diagnostics(
        complete=is_complete(prizes, amounts, categories),
        warnings=missing_warnings(prizes, amounts, categories),
    )


def completeness_report(prizes: PrizeSet, amounts: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Per-category counts plus the two facet flags, for debug summaries."""
    return {
        "counts": prizes.counts(),
        "has_full_prizes": is_full_prize_set(prizes),
        "has_full_amounts": is_full_amounts(amounts),
        "missing_amount_keys": [
            key for key in AMOUNT_KEYS
            if not (isinstance(amounts, Mapping) and _is_finite_number(amounts.get(key)))
        ],
    }
