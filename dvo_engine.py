# dvo_engine.py
# DVO fracture-risk engine: 3-year risk band + therapy plan + ranked substances.
#
# Pipeline:
#   inputs -> age / T-score bins -> threshold cells (3 / 5 / 10 %)
#          -> top-2 risk factors -> combined multiplier
#          -> reached per tier -> band
#          -> triggers (all selected RFs, incl. trigger-only)
#          -> therapy plan (DEGAM default, DVO reference grading)
#          -> candidate substances ranked by evidence
#
# Out-of-scope inputs (age < 50, T-score > 0.0) are not errors: evaluation is
# suppressed and an advisory is returned instead.
#
# Legacy rule kept on purpose (needs domain review): without a T-score and with
# multiplier exactly 1.0, a numeric cell is "not reached" regardless of the
# comparison.
#
# Rule trace:
#     - trace: list of rule firings with values + effects

import math
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

import dvo_config as cfg
from dvo_catalog import DvoCatalog, RiskFactor, all_risk_factors, default_catalog, risk_factors_for_calculation
from dvo_lookup import (
    BAND_3_5,
    BAND_5_10,
    BAND_GE10,
    age_bin,
    available_tscore_bins,
    highest_reached_band,
    lookup_cell,
    map_tscore_to_bin,
)
from dvo_selection import REASON_BASELINE, compute_combined_multiplier, is_threshold_reached, select_top2_risk_factors
from dvo_substances import rank_substances_by_evidence
from dvo_therapy import derive_therapy_plan, get_candidate_substances

VERSION = {
    "engine": "dvo-fracture v1.0",
    "thresholds": "DVO 2023 threshold tables (3 / 5 / 10 % in 3 years)",
    "selection": "Top-2 RF (G1 / G2 exclusive, G3 up to two)",
    "therapy": "DEGAM default, DVO reference grading",
}

STATUS_OK = "ok"
STATUS_OUT_OF_SCOPE = "out_of_scope"
STATUS_INCOMPLETE = "incomplete"


# ----------------------------
# Patient input
# ----------------------------
@dataclass(frozen=True)
class Patient:
    sex: Optional[str]
    age: Optional[int]
    tscore: Optional[float] = None
    selected_rf_ids: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        if self.sex is not None and self.sex not in cfg.SEXES:
            raise ValueError(f"sex must be 'female' or 'male', got {self.sex!r}")
        # the caller's set is copied, never aliased
        object.__setattr__(self, "selected_rf_ids", frozenset(self.selected_rf_ids or ()))


# ----------------------------
# Trace helper (auditable rules)
# ----------------------------
def add_trace(trace: List[Dict[str, Any]], rule: str, value: Any = None, effect: str = "") -> None:
    trace.append({"rule": rule, "value": value, "effect": effect})


def _rf_brief(rf: RiskFactor) -> Dict[str, Any]:
    return {"rf_id": rf.rf_id, "label_de": rf.label_de, "rr_3y": rf.rr_3y}


# ----------------------------
# Scope checks
# ----------------------------
def scope_advisories(p: Patient) -> List[str]:
    advisories = []
    if p.age is not None and p.age < cfg.MIN_AGE:
        advisories.append(f"Alter unter {cfg.MIN_AGE} Jahren: außerhalb des Anwendungsbereichs dieses Rechners.")
    if p.tscore is not None and not math.isfinite(p.tscore):
        advisories.append("T-Score ist keine gültige Zahl: keine Auswertung.")
    elif p.tscore is not None and p.tscore > 0.0:
        advisories.append("T-Score > 0,0: außerhalb des Anwendungsbereichs der DVO-Tabellen.")
    return advisories


# ----------------------------
# Threshold evaluation
# ----------------------------
def evaluate_thresholds(
    catalog: DvoCatalog,
    sex: str,
    age_bin_value: int,
    tscore: Optional[float],
    multiplier: float,
    trace: List[Dict[str, Any]],
) -> Dict[int, Dict[str, Any]]:
    used_bmd = tscore is not None
    details: Dict[int, Dict[str, Any]] = {}

    for tier in cfg.TIERS:
        tscore_bin: Optional[float] = None
        if used_bmd:
            table = catalog.table(sex, tier)
            if table is None:
                add_trace(trace, f"Table_missing_{tier}", sex, "No table for sex/tier; cell treated as empty")
                cell = None
            else:
                tscore_bin = map_tscore_to_bin(tscore, available_tscore_bins(table))
                cell = lookup_cell(catalog, sex, tier, age_bin_value, tscore_bin)
        else:
            cell = lookup_cell(catalog, sex, tier, age_bin_value, cfg.NO_BMD)

        if not used_bmd and multiplier == 1.0 and cell is not None:
            res = {"reached": False, "reason": REASON_BASELINE}
            add_trace(trace, f"Threshold_{tier}_baseline_override", cell, "No T-score and no RF: numeric cell not reached")
        else:
            res = is_threshold_reached(cell, multiplier)
            add_trace(
                trace,
                f"Threshold_{tier}",
                {"required": cell, "multiplier": multiplier},
                f"reached={res['reached']}",
            )

        details[tier] = {
            "requiredFactor": cell,
            "reached": res["reached"],
            "reason": res["reason"],
            "tscoreBin": tscore_bin,
        }
    return details


# ----------------------------
# Triggers
# ----------------------------
def detect_triggers(selected_rf_ids: FrozenSet[str], catalog: DvoCatalog) -> Dict[str, Any]:
    """Scans every selected catalog RF, including trigger-only RFs outside the multiplier."""
    selected = [rf for rf in all_risk_factors(catalog) if rf.rf_id in selected_rf_ids]
    imminent_rfs = [rf for rf in selected if rf.flags.imminent_rr]
    strong_rfs = [rf for rf in selected if rf.flags.strong_irreversible_a]
    imminent = bool(imminent_rfs)
    strong = bool(strong_rfs)
    return {
        "imminent": imminent,
        "strongIrreversibleA": strong,
        "triggerPresent": imminent or strong,
        "imminentRfs": [_rf_brief(rf) for rf in imminent_rfs],
        "strongIrreversibleARfs": [_rf_brief(rf) for rf in strong_rfs],
    }


def recommendation_text(band: str, trigger_present: bool) -> str:
    if band == BAND_GE10:
        return "Therapie indiziert (hoch)"
    if band == BAND_5_10:
        return "Therapie empfohlen"
    if band == BAND_3_5 and trigger_present:
        return "Therapie kann erwogen werden"
    return "Keine spezifische Therapie; Prävention / Verlauf"


# ----------------------------
# Public API
# ----------------------------
def evaluate(p: Patient, catalog: Optional[DvoCatalog] = None) -> Dict[str, Any]:
    catalog = catalog if catalog is not None else default_catalog()
    trace: List[Dict[str, Any]] = []
    add_trace(trace, "Engine_start", VERSION["engine"], "Begin evaluation")

    out: Dict[str, Any] = {"version": VERSION, "status": STATUS_OK, "advisories": [], "trace": trace}

    if p.sex is None or p.age is None:
        missing = [k for k in ("sex", "age") if getattr(p, k) is None]
        add_trace(trace, "Input_incomplete", missing, "Not evaluated")
        out["status"] = STATUS_INCOMPLETE
        out["advisories"] = [f"Fehlende Eingabe: {', '.join(missing)}"]
        return out

    advisories = scope_advisories(p)
    bin_value = age_bin(p.age)
    out["ageBin"] = bin_value
    if advisories:
        add_trace(trace, "Input_out_of_scope", {"age": p.age, "tscore": p.tscore}, "Not evaluated")
        out["status"] = STATUS_OUT_OF_SCOPE
        out["advisories"] = advisories
        return out
    add_trace(trace, "Age_bin", bin_value, f"age {p.age} -> bin {bin_value}")

    top2 = select_top2_risk_factors(p.selected_rf_ids, risk_factors_for_calculation(catalog))
    multiplier = compute_combined_multiplier(top2)
    add_trace(trace, "RF_top2", [s.rf.rf_id for s in top2], f"multiplier={multiplier}")

    details = evaluate_thresholds(catalog, p.sex, bin_value, p.tscore, multiplier, trace)
    band = highest_reached_band(details[3]["reached"], details[5]["reached"], details[10]["reached"])
    add_trace(trace, "Band", band, "Highest reached tier")

    triggers = detect_triggers(p.selected_rf_ids, catalog)
    if triggers["triggerPresent"]:
        add_trace(
            trace,
            "Triggers",
            [r["rf_id"] for r in triggers["imminentRfs"] + triggers["strongIrreversibleARfs"]],
            "Trigger present",
        )

    plan = derive_therapy_plan(band, triggers["triggerPresent"])
    add_trace(trace, "Therapy_strategy", plan.strategy, plan.label_de)

    # no contraindication filtering: the full candidate list is ranked
    candidates = get_candidate_substances(plan.strategy, catalog)
    ranked = rank_substances_by_evidence(catalog, candidates)
    add_trace(trace, "Substances_ranked", [r.substance_id for r in ranked], "Evidence ranking applied")

    out.update({
        "thresholdDetails": {f"threshold{t}": details[t] for t in cfg.TIERS},
        "reached3": details[3]["reached"],
        "reached5": details[5]["reached"],
        "reached10": details[10]["reached"],
        "band": band,
        "usedBmd": p.tscore is not None,
        "multiplier": multiplier,
        "top2Rfs": [s.to_dict() for s in top2],
        "triggers": triggers,
        "recommendation": recommendation_text(band, triggers["triggerPresent"]),
        "therapyPlan": plan.to_dict(),
        "rankedSubstances": [r.to_dict() for r in ranked],
    })

    add_trace(trace, "Engine_end", VERSION["engine"], "Evaluation complete")
    return out


def _fmt_required(x: Optional[float]) -> str:
    return "leer (erreicht)" if x is None else f"{x:g}"


def render_quick_text(p: Patient, out: Dict[str, Any]) -> str:
    lines = [f"DVO Frakturrisiko {out['version']['engine']}: Kurzfassung"]

    if out["status"] != STATUS_OK:
        lines.extend(out.get("advisories") or [])
        return "\n".join(lines)

    sex_de = "weiblich" if p.sex == "female" else "männlich"
    tscore = "ohne T-Score" if p.tscore is None else f"T-Score {p.tscore:g}"
    lines.append(f"{sex_de}, {p.age} J. (Altersklasse {out['ageBin']}), {tscore}")
    lines.append(f"3-Jahres-Frakturrisiko: {out['band']}")
    lines.append(f"Multiplikator: {out['multiplier']:.2f}")

    if out["top2Rfs"]:
        lines.append("Berücksichtigte RF: " + "; ".join(
            f"{r['label_de']} (RR {r['rr_3y']})" for r in out["top2Rfs"]
        ))

    for t in cfg.TIERS:
        d = out["thresholdDetails"][f"threshold{t}"]
        mark = "erreicht" if d["reached"] else "nicht erreicht"
        lines.append(f"• {t} %: {mark} (Faktor {_fmt_required(d['requiredFactor'])})")

    trig = out["triggers"]
    if trig["triggerPresent"]:
        names = [r["label_de"] for r in trig["imminentRfs"] + trig["strongIrreversibleARfs"]]
        lines.append("Trigger: " + "; ".join(dict.fromkeys(names)))

    plan = out["therapyPlan"]
    lines.append("")
    lines.append(f"Empfehlung: {out['recommendation']}")
    lines.append(f"Therapie: {plan['label_de']}")
    if plan.get("sequence_hint"):
        lines.append(f"Sequenz: {plan['sequence_hint']}")
    gs = plan["guideline_strength"]
    lines.append(f"DEGAM ({gs['DEGAM']['grade']}): {gs['DEGAM']['wording_de']}")
    lines.append(f"DVO ({gs['DVO']['grade']}): {gs['DVO']['wording_de']}")
    if plan.get("deviation_flag") == "DEGAM_SOFTENING":
        lines.append("Hinweis: DEGAM formuliert zurückhaltender als DVO.")

    if out["rankedSubstances"]:
        lines.append("Substanzen: " + "; ".join(
            f"{s['label_de']} ({s['ui']['evidenceChip']}, {s['ui']['efficacyHint']})" for s in out["rankedSubstances"]
        ))
    return "\n".join(lines)
