# dvo_therapy.py
# Therapy strategy (level 1) and candidate substances (level 2).
#
# Strategy is a pure function of (risk band, trigger present). Each plan
# carries both the DEGAM and the DVO grading; at >=10% the two disagree
# (DVO "soll" / A vs DEGAM "sollte" / B) and the plan says so through
# deviation_flag instead of picking one.

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import dvo_config as cfg
from dvo_catalog import DvoCatalog
from dvo_lookup import BAND_3_5, BAND_5_10, BAND_GE10, BAND_LT3
from dvo_substances import substances_by_therapy_class

STRATEGY_NONE = "none"
STRATEGY_CONSIDER_AR = "consider_antiresorptive"
STRATEGY_AR = "antiresorptive"
STRATEGY_OA_START = "osteoanabolic_start"

CLASS_OSTEOANABOLIC = "osteoanabolic"
CLASS_ANTIRESORPTIVE = "antiresorptive"

DEVIATION_DEGAM_SOFTENING = "DEGAM_SOFTENING"
GUIDELINE_DEFAULT = "DEGAM"


@dataclass(frozen=True)
class GuidelineStatement:
    grade: str
    wording_de: str


@dataclass(frozen=True)
class TherapyPlan:
    strategy: str
    label_de: str
    degam: GuidelineStatement
    dvo: GuidelineStatement
    sequence_hint: Optional[str] = None
    guideline_default: str = GUIDELINE_DEFAULT
    deviation_flag: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "label_de": self.label_de,
            "sequence_hint": self.sequence_hint,
            "guideline_default": self.guideline_default,
            "guideline_strength": {
                "DEGAM": {"grade": self.degam.grade, "wording_de": self.degam.wording_de},
                "DVO": {"grade": self.dvo.grade, "wording_de": self.dvo.wording_de},
            },
            "deviation_flag": self.deviation_flag,
        }


_NO_THERAPY = GuidelineStatement("-", "keine spezifische medikamentöse Therapie")

_PLAN_NONE = TherapyPlan(
    strategy=STRATEGY_NONE,
    label_de="keine medikamentöse Therapie",
    degam=_NO_THERAPY,
    dvo=_NO_THERAPY,
)

_PLAN_CONSIDER_AR = TherapyPlan(
    strategy=STRATEGY_CONSIDER_AR,
    label_de="medikamentöse Therapie kann erwogen werden",
    sequence_hint="bei Entscheidung für Therapie: antiresorptiv",
    degam=GuidelineStatement("0", "kann erwogen werden (bei Triggern)"),
    dvo=GuidelineStatement("0", "kann erwogen werden (bei Triggern)"),
)

_PLAN_AR = TherapyPlan(
    strategy=STRATEGY_AR,
    label_de="antiresorptive Therapie empfohlen",
    sequence_hint="Monotherapie antiresorptiv; Verlaufskontrolle",
    degam=GuidelineStatement("A", "antiresorptiv empfohlen"),
    dvo=GuidelineStatement("A", "antiresorptiv empfohlen"),
)

_PLAN_OA_START = TherapyPlan(
    strategy=STRATEGY_OA_START,
    label_de="osteoanabole Starttherapie empfohlen",
    sequence_hint="zeitlich begrenzte osteoanabole Therapie, anschließend antiresorptive Erhaltung",
    degam=GuidelineStatement("B", "sollte osteoanabol behandelt werden"),
    dvo=GuidelineStatement("A", "soll osteoanabol behandelt werden"),
    deviation_flag=DEVIATION_DEGAM_SOFTENING,
)


def derive_therapy_plan(risk_band: str, trigger_present: bool) -> TherapyPlan:
    if risk_band == BAND_LT3:
        return _PLAN_NONE
    if risk_band == BAND_3_5:
        return _PLAN_CONSIDER_AR if trigger_present else _PLAN_NONE
    if risk_band == BAND_5_10:
        return _PLAN_AR
    if risk_band == BAND_GE10:
        return _PLAN_OA_START
    raise ValueError(f"Unknown risk band: {risk_band!r}")


def therapy_class_for(strategy: str) -> Optional[str]:
    if strategy == STRATEGY_NONE:
        return None
    if strategy == STRATEGY_OA_START:
        return CLASS_OSTEOANABOLIC
    if strategy in (STRATEGY_AR, STRATEGY_CONSIDER_AR):
        return CLASS_ANTIRESORPTIVE
    raise ValueError(f"Unknown therapy strategy: {strategy!r}")


def get_candidate_substances(strategy: str, catalog: DvoCatalog) -> List[str]:
    therapy_class = therapy_class_for(strategy)
    if therapy_class is None:
        return []

    candidates = substances_by_therapy_class(catalog, therapy_class, active_only=True)

    if strategy == STRATEGY_OA_START:
        return [sid for sid in candidates if sid in cfg.OSTEOANABOLIC_START_SUBSTANCES]
    return candidates
