import random

import pytest

from dvo_errors import DataIntegrityError
from dvo_lookup import (
    BAND_3_5,
    BAND_5_10,
    BAND_GE10,
    BAND_LT3,
    age_bin,
    available_tscore_bins,
    highest_reached_band,
    lookup_cell,
    lookup_no_bmd_cell,
    map_tscore_to_bin,
    threshold_reached_from_lookup,
    tscore_key,
)

BINS = [0.0, -0.5, -1.0, -1.5, -2.0, -2.5, -3.0, -3.5, -4.0]


def test_age_bin_canonical_cases():
    assert age_bin(49) is None
    assert age_bin(49.9) is None
    assert age_bin(50) == 50
    assert age_bin(54) == 50
    assert age_bin(67) == 65
    assert age_bin(89) == 85
    assert age_bin(90) == 90
    assert age_bin(103) == 90


def test_age_bin_property_style_randomized():
    rng = random.Random(11)
    for _ in range(300):
        age = rng.randint(50, 120)
        b = age_bin(age)
        assert b % 5 == 0
        assert 50 <= b <= 90
        assert b <= age
        if age < 90:
            assert age - b < 5


def test_map_tscore_exact_and_clamped():
    assert map_tscore_to_bin(-2.0, BINS) == -2.0
    assert map_tscore_to_bin(0.4, BINS) == 0.0
    assert map_tscore_to_bin(-4.7, BINS) == -4.0


def test_map_tscore_between_bins_takes_worse_neighbour():
    assert map_tscore_to_bin(-2.3, BINS) == -2.5
    assert map_tscore_to_bin(-0.1, BINS) == -0.5
    assert map_tscore_to_bin(-3.99, BINS) == -4.0


def test_map_tscore_property_result_is_tabulated_and_never_better():
    rng = random.Random(3)
    shuffled = list(BINS)
    for _ in range(300):
        t = round(rng.uniform(-6.0, 1.0), 2)
        rng.shuffle(shuffled)
        b = map_tscore_to_bin(t, shuffled)
        assert b in BINS
        if t > max(BINS):
            assert b == max(BINS)
        elif t >= min(BINS):
            assert b <= t
        else:
            assert b == min(BINS)


def test_map_tscore_empty_bins_is_data_error():
    with pytest.raises(DataIntegrityError):
        map_tscore_to_bin(-1.0, [])


def test_tscore_key_matches_table_encoding():
    assert tscore_key(-1) == "-1.0"
    assert tscore_key(-2.5) == "-2.5"
    assert tscore_key(0.0) == "0.0"
    assert tscore_key(-0.0) == "0.0"
    assert tscore_key("no_bmd") == "no_bmd"


def test_available_bins_best_first(catalog):
    bins = available_tscore_bins(catalog.table("female", 10))
    assert bins[0] == 0.0
    assert bins[-1] == -4.0
    assert bins == sorted(bins, reverse=True)


def test_lookup_cells_against_shipped_tables(catalog):
    assert lookup_no_bmd_cell(catalog, "female", 3, 65) == pytest.approx(1.4)
    assert lookup_no_bmd_cell(catalog, "male", 3, 65) == pytest.approx(1.7)
    assert lookup_cell(catalog, "female", 10, 65, -2.0) == pytest.approx(3.5)
    # omitted entry -> empty cell
    assert lookup_cell(catalog, "female", 3, 65, -3.0) is None


def test_lookup_missing_table_is_empty_cell(raw_datasets, build_catalog):
    raw_datasets["bundle"]["tables"] = [
        t for t in raw_datasets["bundle"]["tables"]
        if not (t["sex"] == "male" and t["threshold_percent"] == 10)
    ]
    cat = build_catalog(raw_datasets)
    assert cat.table("male", 10) is None
    assert lookup_no_bmd_cell(cat, "male", 10, 65) is None
    assert threshold_reached_from_lookup(None) is True
    assert threshold_reached_from_lookup(2.0) is False


def test_highest_reached_band():
    assert highest_reached_band(False, False, False) == BAND_LT3
    assert highest_reached_band(True, False, False) == BAND_3_5
    assert highest_reached_band(True, True, False) == BAND_5_10
    assert highest_reached_band(True, True, True) == BAND_GE10
    assert highest_reached_band(False, False, True) == BAND_GE10


def test_map_tscore_rejects_nan():
    with pytest.raises(ValueError):
        map_tscore_to_bin(float("nan"), BINS)
