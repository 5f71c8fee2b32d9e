# dvo_selection.py
# DVO top-2 risk-factor selection and combined multiplier.
#
# Rules (DVO 2023 pseudocode):
# - G1 (falls) and G2 (RA / glucocorticoids) are exclusive: only the strongest
#   selected factor of each group is considered.
# - G3 (other) is non-exclusive: up to the two strongest are considered.
# - From that pool of <= 4, the two strongest overall form the multiplier.
# Ties keep catalog order (first encountered wins).

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import dvo_config as cfg
from dvo_catalog import RiskFactor

logger = logging.getLogger(__name__)

POOL_G1 = "G1_STURZ"
POOL_G2 = "G2_RA_GC"
POOL_G3_1 = "G3_OTHER_1"
POOL_G3_2 = "G3_OTHER_2"


@dataclass(frozen=True)
class SelectedRf:
    rf: RiskFactor
    pool_source: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rf_id": self.rf.rf_id,
            "label_de": self.rf.label_de,
            "group": self.rf.group,
            "rr_3y": self.rf.rr_3y,
            "poolSource": self.pool_source,
        }


def _strongest(rfs: List[RiskFactor]) -> Optional[RiskFactor]:
    best = None
    for rf in rfs:
        if best is None or rf.rr_3y > best.rr_3y:
            best = rf
    return best


def select_top2_risk_factors(selected_rf_ids: Iterable[str], calc_rfs: List[RiskFactor]) -> List[SelectedRf]:
    selected = set(selected_rf_ids)
    chosen = []
    for rf in calc_rfs:
        if rf.rf_id not in selected:
            continue
        if rf.rr_3y is None:
            logger.warning("RF %s is marked for calculation but has no rr_3y; skipped", rf.rf_id)
            continue
        chosen.append(rf)

    if not chosen:
        return []

    best_g1 = _strongest([rf for rf in chosen if rf.group == cfg.GROUP_FALLS])
    best_g2 = _strongest([rf for rf in chosen if rf.group == cfg.GROUP_RA_GC])
    g3_sorted = sorted(
        (rf for rf in chosen if rf.group == cfg.GROUP_OTHER),
        key=lambda rf: rf.rr_3y,
        reverse=True,
    )

    pool: List[SelectedRf] = []
    if best_g1 is not None:
        pool.append(SelectedRf(best_g1, POOL_G1))
    if best_g2 is not None:
        pool.append(SelectedRf(best_g2, POOL_G2))
    if len(g3_sorted) >= 1:
        pool.append(SelectedRf(g3_sorted[0], POOL_G3_1))
    if len(g3_sorted) >= 2:
        pool.append(SelectedRf(g3_sorted[1], POOL_G3_2))

    # sorted() is stable, so equal rr_3y keeps the G1, G2, G3_1, G3_2 order
    pool = sorted(pool, key=lambda s: s.rf.rr_3y, reverse=True)
    return pool[:2]


def compute_combined_multiplier(chosen: List[SelectedRf]) -> float:
    if not chosen:
        return 1.0
    if len(chosen) == 1:
        return chosen[0].rf.rr_3y
    return chosen[0].rf.rr_3y * chosen[1].rf.rr_3y


REASON_EMPTY_CELL = "Leeres Tabellenfeld: Schwelle bereits ohne RF erreicht"
REASON_COMPARED = "Multiplikator vs. erforderlicher Faktor"
REASON_BASELINE = "Schwelle nicht erreicht (ohne RF)"


def is_threshold_reached(required_factor: Optional[float], multiplier: float) -> Dict[str, Any]:
    if required_factor is None:
        return {"reached": True, "reason": REASON_EMPTY_CELL}
    return {
        "reached": multiplier >= (required_factor - cfg.EPSILON),
        "reason": REASON_COMPARED,
    }
