# dvo_substances.py
# Substance registry, evidence table, administration metadata and ranking.
#
# The registry is the single source of truth for substance id, label and
# therapy class. Evidence and metadata only reference registry ids; a missing
# entry there is not an error, the substance just ranks last / renders with
# fewer annotations.

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from dvo_catalog import DvoCatalog, EvidenceEntry, FractureEfficacy, RegistryEntry, SubstanceAdminMeta

logger = logging.getLogger(__name__)


# ----------------------------
# Registry
# ----------------------------
def registry_entry(catalog: DvoCatalog, substance_id: str) -> Optional[RegistryEntry]:
    return catalog.registry_by_id.get(substance_id)


def substances_by_therapy_class(catalog: DvoCatalog, therapy_class: str, active_only: bool = True) -> List[str]:
    return [
        e.substance_id for e in catalog.registry
        if e.therapy_class == therapy_class and (e.active or not active_only)
    ]


def substance_label(catalog: DvoCatalog, substance_id: str) -> str:
    entry = registry_entry(catalog, substance_id)
    return entry.label_de if entry is not None and entry.label_de else substance_id


def is_valid_substance(catalog: DvoCatalog, substance_id: str) -> bool:
    entry = registry_entry(catalog, substance_id)
    return entry is not None and entry.active


def all_substance_ids(catalog: DvoCatalog, active_only: bool = True) -> List[str]:
    return [e.substance_id for e in catalog.registry if e.active or not active_only]


# ----------------------------
# Evidence
# ----------------------------
def evidence_for(catalog: DvoCatalog, substance_id: str) -> Optional[EvidenceEntry]:
    entry = catalog.evidence_by_id.get(substance_id)
    if entry is None:
        logger.warning("No evidence entry found for substance_id: %s", substance_id)
    return entry


def missing_evidence_ids(catalog: DvoCatalog, substance_ids: Iterable[str]) -> List[str]:
    missing = [sid for sid in substance_ids if sid not in catalog.evidence_by_id]
    if missing:
        logger.warning("Missing evidence entries for substances: %s", ", ".join(missing))
    return missing


def evidence_registry_errors(catalog: DvoCatalog) -> List[str]:
    return [
        f'Evidence Table: substance_id "{e.substance_id}" not found in Registry'
        for e in catalog.evidence
        if not is_valid_substance(catalog, e.substance_id)
    ]


# ----------------------------
# Administration metadata
# ----------------------------
_ROUTE_DE = {"oral": "oral", "iv": "i.v.", "sc": "s.c.", "mixed": "gemischt"}
_FREQUENCY_DE = {
    "daily": "täglich",
    "weekly": "wöchentlich",
    "monthly": "monatlich",
    "six_monthly": "alle 6 Monate",
    "quarterly": "vierteljährlich",
    "yearly": "jährlich",
    "mixed": "variabel",
}
_SETTING_DE = {"self": "Selbst", "practice": "Praxis", "mixed": "gemischt"}


def metadata_for(catalog: DvoCatalog, substance_id: str) -> Optional[SubstanceAdminMeta]:
    # metadata is optional: no warning
    return catalog.metadata_by_id.get(substance_id)


def regimen_text(meta: SubstanceAdminMeta) -> str:
    adm = meta.administration
    route = _ROUTE_DE.get(adm.route, adm.route)
    frequency = _FREQUENCY_DE.get(adm.frequency_default, adm.frequency_default)
    setting = _SETTING_DE.get(adm.setting_default, adm.setting_default)
    return f"{route} • {frequency} • {setting}"


def approval_hint(meta: SubstanceAdminMeta, sex: Optional[str]) -> Optional[str]:
    if not sex:
        return None
    approval = meta.approval.get(sex)
    if approval is None:
        return None
    if not approval.approved:
        who = "Männer" if sex == "male" else "Frauen"
        return f"Für {who} nicht zugelassen (Off-Label)."
    if approval.population_note_de:
        return f"Hinweis: {approval.population_note_de}"
    return None


# ----------------------------
# Evidence ranking
# ----------------------------
_LEVEL_ORDER = {"A": 0, "B": 1, "C": 2}


@dataclass(frozen=True)
class RankedSubstance:
    substance_id: str
    label_de: str
    evidence: Optional[EvidenceEntry]
    evidence_chip: str
    efficacy_hint: str
    note: Optional[str] = None
    source_refs: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        ev = self.evidence
        return {
            "substance_id": self.substance_id,
            "label_de": self.label_de,
            "evidence_level": ev.evidence_level if ev is not None else None,
            "fracture_efficacy": (
                {"hip": ev.fracture_efficacy.hip, "vertebral": ev.fracture_efficacy.vertebral}
                if ev is not None else None
            ),
            "ui": {
                "evidenceChip": self.evidence_chip,
                "efficacyHint": self.efficacy_hint,
                "note": self.note,
                "sourceRefs": list(self.source_refs),
            },
        }


def evidence_level_order(level: Optional[str]) -> int:
    return _LEVEL_ORDER.get(level, 3)


def format_efficacy_hint(efficacy: Optional[FractureEfficacy]) -> str:
    if efficacy is None:
        return "unklar"
    if efficacy.hip and efficacy.vertebral:
        return "Hüfte + Wirbel"
    if efficacy.vertebral:
        return "Wirbel"
    if efficacy.hip:
        return "Hüfte"
    return "unklar"


def format_evidence_chip(level: Optional[str]) -> str:
    if not level:
        return "Evidenz unklar"
    return f"Evidenz {level}"


def _rank_key(item: RankedSubstance) -> Tuple[int, bool, bool, str]:
    ev = item.evidence
    hip = ev.fracture_efficacy.hip if ev is not None else False
    vert = ev.fracture_efficacy.vertebral if ev is not None else False
    level = ev.evidence_level if ev is not None else None
    # False sorts before True, so negate to put efficacy first
    return (evidence_level_order(level), not hip, not vert, item.substance_id)


def rank_substances_by_evidence(catalog: DvoCatalog, allowed_substances: Iterable[str]) -> List[RankedSubstance]:
    """
    Order: evidence level (A > B > C > none), hip efficacy, vertebral efficacy,
    substance id. The id key makes the order total, so input order never matters.
    """
    ranked = []
    for sid in allowed_substances:
        ev = evidence_for(catalog, sid)
        label = substance_label(catalog, sid)
        if label == sid and ev is not None:
            label = ev.label_de
        ranked.append(RankedSubstance(
            substance_id=sid,
            label_de=label,
            evidence=ev,
            evidence_chip=format_evidence_chip(ev.evidence_level if ev is not None else None),
            efficacy_hint=format_efficacy_hint(ev.fracture_efficacy if ev is not None else None),
            note=ev.evidence_note_de if ev is not None else None,
            source_refs=ev.source_refs if ev is not None else (),
        ))
    return sorted(ranked, key=_rank_key)
