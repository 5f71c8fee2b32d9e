# dvo_lookup.py
# Threshold lookup against the DVO tables.
#
# Age and T-score are binned the way the printed tables are: age in 5-year
# steps from 50 to 90, T-score snapped to the next WORSE tabulated bin.
# A cell holds the risk-factor multiplier required to reach a tier; an empty
# cell means the baseline risk alone already crosses that tier.

import math
from typing import List, Optional, Union

import dvo_config as cfg
from dvo_catalog import DvoCatalog, ThresholdTable
from dvo_errors import DataIntegrityError

TscoreKey = Union[float, str]


# ----------------------------
# Binning
# ----------------------------
def age_bin(age_years: Union[int, float]) -> Optional[int]:
    if age_years < cfg.MIN_AGE:
        return None
    if age_years >= cfg.MAX_AGE_BIN:
        return cfg.MAX_AGE_BIN
    return int(math.floor(age_years / cfg.AGE_BIN_WIDTH) * cfg.AGE_BIN_WIDTH)


def available_tscore_bins(table: ThresholdTable) -> List[float]:
    """Numeric T-score bins of a table, best (0.0) first, worst last."""
    bins = set()
    for entry in table.entries:
        if entry.tscore == cfg.NO_BMD:
            continue
        try:
            bins.add(float(entry.tscore))
        except ValueError:
            continue
    return sorted(bins, reverse=True)


def map_tscore_to_bin(tscore: float, available_bins: List[float]) -> float:
    """
    1. exact match        -> that bin
    2. better than best   -> best bin
    3. worse than worst   -> worst bin
    4. between two bins   -> the worse (more negative) neighbour
    """
    if not available_bins:
        raise DataIntegrityError("No T-score bins available")
    if math.isnan(tscore):
        raise ValueError("T-score is NaN")

    bins = sorted(available_bins, reverse=True)
    best, worst = bins[0], bins[-1]

    for b in bins:
        if b == tscore:
            return b
    if tscore > best:
        return best
    if tscore < worst:
        return worst

    for better, worse in zip(bins, bins[1:]):
        if worse < tscore < better:
            return worse

    return worst


def tscore_key(tscore_bin_or_no_bmd: TscoreKey) -> str:
    if tscore_bin_or_no_bmd == cfg.NO_BMD:
        return cfg.NO_BMD
    # -1.0 -> "-1.0" to match the table encoding; 0.0 and -0.0 both -> "0.0"
    return f"{float(tscore_bin_or_no_bmd) + 0.0:.1f}"


# ----------------------------
# Cell lookup
# ----------------------------
def lookup_cell(
    catalog: DvoCatalog,
    sex: str,
    threshold_percent: int,
    age_bin_value: int,
    tscore_bin_or_no_bmd: TscoreKey,
) -> Optional[float]:
    """Required factor for the cell, or None when the cell is empty or missing."""
    table = catalog.table(sex, threshold_percent)
    if table is None:
        return None
    return table.cells.get((int(age_bin_value), tscore_key(tscore_bin_or_no_bmd)))


def lookup_no_bmd_cell(catalog: DvoCatalog, sex: str, threshold_percent: int, age_bin_value: int) -> Optional[float]:
    return lookup_cell(catalog, sex, threshold_percent, age_bin_value, cfg.NO_BMD)


def threshold_reached_from_lookup(cell_value: Optional[float]) -> bool:
    return cell_value is None


# ----------------------------
# Bands
# ----------------------------
BAND_LT3 = "<3%"
BAND_3_5 = "3–<5%"
BAND_5_10 = "5–<10%"
BAND_GE10 = ">=10%"
BANDS = (BAND_LT3, BAND_3_5, BAND_5_10, BAND_GE10)


def highest_reached_band(reached3: bool, reached5: bool, reached10: bool) -> str:
    if reached10:
        return BAND_GE10
    if reached5:
        return BAND_5_10
    if reached3:
        return BAND_3_5
    return BAND_LT3
