# dvo_output_adapter.py
# Output adapter: parses front-end input and turns catalog + engine result into what the front end shows.
# No clinical logic lives here; every decision comes from dvo_engine.

import math
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

import dvo_config as cfg
from dvo_catalog import DvoCatalog, RiskFactor, meg_label, risk_factors_for_calculation, trigger_only_risk_factors
from dvo_engine import STATUS_OK, Patient, render_quick_text
from dvo_lookup import BAND_3_5, BAND_5_10, BAND_GE10
from dvo_substances import approval_hint, metadata_for, regimen_text

GROUP_TITLES = {
    cfg.GROUP_FALLS: "G1: Sturzrisiko",
    cfg.GROUP_RA_GC: "G2: Rheumatoide Arthritis / Glukokortikoide",
    cfg.GROUP_OTHER: "G3: Sonstige Risikofaktoren",
}

GROUP_HINTS = {
    cfg.GROUP_FALLS: "Aus dieser Gruppe wird automatisch nur der stärkste Risikofaktor berücksichtigt.",
    cfg.GROUP_RA_GC: "Aus dieser Gruppe wird automatisch nur der stärkste Risikofaktor berücksichtigt.",
    cfg.GROUP_OTHER: "Bis zu zwei Risikofaktoren können berücksichtigt werden.",
}

# G2 starts collapsed
DEFAULT_EXPANDED_GROUPS = frozenset({cfg.GROUP_FALLS, cfg.GROUP_OTHER})

PARENT_HIP_FRACTURE_RF = "rf_parent_hip_fracture"


# ----------------------------
# Input parsing
# ----------------------------
def parse_tscore(raw: Optional[str]) -> Tuple[Optional[float], Optional[str]]:
    """Returns (tscore, warning). Accepts a German decimal comma; nan / inf are rejected."""
    if raw is None or not raw.strip():
        return None, None
    try:
        value = float(raw.strip().replace(",", "."))
    except ValueError:
        value = None
    if value is None or not math.isfinite(value):
        return None, f"T-Score '{raw}' ist keine Zahl und wird ignoriert."
    return value, None


# ----------------------------
# Risk factor display
# ----------------------------
def display_risk_factors(catalog: DvoCatalog) -> List[RiskFactor]:
    """Calculation RFs plus trigger-only RFs (flagged but excluded from the multiplier)."""
    return risk_factors_for_calculation(catalog) + trigger_only_risk_factors(catalog)


def format_rf_label(rf: RiskFactor) -> str:
    label = rf.label_de
    if not rf.included_in_risk_calc:
        label += " (nur Trigger)"
    if rf.rr_3y is not None:
        label += f" (RR: {rf.rr_3y:g})"
    return label


def should_show_age_hint(rf_id: str, age: Optional[int]) -> bool:
    return rf_id == PARENT_HIP_FRACTURE_RF and age is not None and age > 75


def _rr_desc_none_last(rfs: List[RiskFactor]) -> List[RiskFactor]:
    with_rr = sorted((rf for rf in rfs if rf.rr_3y is not None), key=lambda rf: rf.rr_3y, reverse=True)
    return with_rr + [rf for rf in rfs if rf.rr_3y is None]


def group_risk_factors(catalog: DvoCatalog) -> Dict[str, Dict[str, Any]]:
    groups: Dict[str, List[RiskFactor]] = {g: [] for g in cfg.RF_GROUPS}
    meg_groups: Dict[str, Dict[str, List[RiskFactor]]] = {g: {} for g in cfg.RF_GROUPS}

    for rf in display_risk_factors(catalog):
        groups[rf.group].append(rf)
        meg_id = catalog.meg_index.rf_to_meg.get(rf.rf_id)
        if meg_id:
            meg_groups[rf.group].setdefault(meg_id, []).append(rf)

    return {
        "groups": {g: _rr_desc_none_last(rfs) for g, rfs in groups.items()},
        "megGroups": {
            g: {meg_id: _rr_desc_none_last(rfs) for meg_id, rfs in megs.items()}
            for g, megs in meg_groups.items()
        },
        "megLabels": {meg_id: meg_label(catalog, meg_id) for meg_id in catalog.meg_index.meg_to_rfs},
    }


def meg_expansion_after_toggle(
    expanded_megs: Iterable[str],
    rf_id: str,
    selection: FrozenSet[str],
    catalog: DvoCatalog,
) -> FrozenSet[str]:
    """Expand a MEG once one of its members is selected; collapse it when none is left."""
    expanded = set(expanded_megs)
    meg_id = catalog.meg_index.rf_to_meg.get(rf_id)
    if not meg_id:
        return frozenset(expanded)

    if rf_id in selection:
        expanded.add(meg_id)

    meg = catalog.meg_index.meg_to_rfs.get(meg_id)
    if meg is not None and not any(m in selection for m in meg.rf_ids):
        expanded.discard(meg_id)
    return frozenset(expanded)


# ----------------------------
# Result display
# ----------------------------
_BADGE_BY_BAND = {
    BAND_GE10: "badge-10",
    BAND_5_10: "badge-5",
    BAND_3_5: "badge-3",
}


def badge_class(band: str) -> str:
    return _BADGE_BY_BAND.get(band, "")


def substance_cards(out: Dict[str, Any], sex: Optional[str], catalog: DvoCatalog) -> List[Dict[str, Any]]:
    cards = []
    for s in out.get("rankedSubstances") or []:
        meta = metadata_for(catalog, s["substance_id"])
        cards.append({
            "substanceId": s["substance_id"],
            "label": s["label_de"],
            "evidenceChip": s["ui"]["evidenceChip"],
            "efficacyHint": s["ui"]["efficacyHint"],
            "regimen": regimen_text(meta) if meta is not None else None,
            "approvalHint": approval_hint(meta, sex) if meta is not None else None,
            "note": s["ui"].get("note"),
            "sourceRefs": s["ui"].get("sourceRefs") or [],
        })
    return cards


def generate_dvo_output(p: Patient, out: Dict[str, Any], catalog: DvoCatalog) -> Dict[str, Any]:
    """
    Display contract for the front end.
    Safe for suppressed evaluations: only status, advisories and markdown are filled.
    """
    if out.get("status") != STATUS_OK:
        return {
            "status": out.get("status"),
            "advisories": out.get("advisories") or [],
            "markdown": render_quick_text(p, out),
        }

    plan = out["therapyPlan"]
    return {
        "status": out["status"],
        "advisories": out.get("advisories") or [],
        "band": out["band"],
        "badgeClass": badge_class(out["band"]),
        "summaryLine": f"3-Jahres-Frakturrisiko {out['band']}: {out['recommendation']}",
        "therapyLabel": plan["label_de"],
        "sequenceHint": plan.get("sequence_hint"),
        "guidelines": plan["guideline_strength"],
        "degamSofteningNote": (
            "Hinweis: DEGAM formuliert zurückhaltender als DVO."
            if plan.get("deviation_flag") == "DEGAM_SOFTENING" else None
        ),
        "showSubstances": plan["strategy"] != "none" and bool(out["rankedSubstances"]),
        "substanceCards": substance_cards(out, p.sex, catalog),
        "markdown": render_quick_text(p, out),
    }
