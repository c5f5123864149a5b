from conftest import EXPECTED_AMOUNTS, sample_prizes

from src.completeness import (
    build_diagnostics,
    completeness_report,
    has_any_long_list,
    has_core_prizes,
    is_complete,
    is_full_amounts,
    is_full_prize_set,
    missing_warnings,
)
from src.models import PrizeSet


def test_full_prize_set_requires_exact_counts():
    prizes = sample_prizes()
    assert is_full_prize_set(prizes) is True
    prizes.fifth = prizes.fifth[:99]
    assert is_full_prize_set(prizes) is False


def test_full_amounts_requires_all_nine_finite_numbers():
    assert is_full_amounts(EXPECTED_AMOUNTS) is True
    assert is_full_amounts(None) is False
    assert is_full_amounts({**EXPECTED_AMOUNTS, "last3": None}) is False
    assert is_full_amounts({**EXPECTED_AMOUNTS, "first": float("nan")}) is False
    assert is_full_amounts({**EXPECTED_AMOUNTS, "first": "6000000"}) is False
    assert is_full_amounts({k: v for k, v in EXPECTED_AMOUNTS.items() if k != "last2"}) is False


def test_complete_needs_both_facets():
    assert is_complete(sample_prizes(), EXPECTED_AMOUNTS) is True
    assert is_complete(sample_prizes(), None) is False
    assert is_complete(PrizeSet(), EXPECTED_AMOUNTS) is False


def test_missing_warnings_are_ordered():
    prizes = PrizeSet(first=["730209"], last2=["51"])
    assert missing_warnings(prizes, None) == [
        "missing_last3f", "missing_last3b", "missing_near1", "missing_second",
        "missing_third", "missing_fourth", "missing_fifth", "missing_amounts",
    ]
    assert missing_warnings(sample_prizes(), EXPECTED_AMOUNTS) == []


def test_build_diagnostics_mirrors_completeness():
    diagnostics = build_diagnostics(sample_prizes(), EXPECTED_AMOUNTS)
    assert diagnostics.complete is True
    assert diagnostics.warnings == []


def test_core_and_long_list_helpers():
    core = PrizeSet(first=["730209"], last2=["51"], last3f=["446", "065"], last3b=["376", "297"])
    assert has_core_prizes(core) is True
    assert has_any_long_list(core) is False
    assert has_core_prizes(PrizeSet(first=["730209"])) is False
    assert has_any_long_list(PrizeSet(fourth=["123456"])) is True


def test_completeness_report():
    report = completeness_report(sample_prizes(), {**EXPECTED_AMOUNTS, "near1": None})
    assert report["counts"]["fifth"] == 100
    assert report["has_full_prizes"] is True
    assert report["has_full_amounts"] is False
    assert report["missing_amount_keys"] == ["near1"]
