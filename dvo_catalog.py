# dvo_catalog.py
# Compiled reference data for the DVO fracture-risk engine.
#
# The five JSON datasets (threshold bundle, RF catalog, evidence table,
# administration metadata, substance registry) are read once and compiled
# into a single immutable DvoCatalog value. Every engine function receives
# that value explicitly; nothing below keeps module-level state except the
# memoized default_catalog().
#
# Also home of the RF <-> mutual-exclusion-group (MEG) index and the toggle
# rule that keeps at most one member of a single-choice MEG selected.

import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

import dvo_config as cfg
from dvo_errors import DataIntegrityError

logger = logging.getLogger(__name__)


# ----------------------------
# Threshold tables
# ----------------------------
@dataclass(frozen=True)
class ThresholdEntry:
    age: int
    tscore: str
    required_factor: Optional[float]


@dataclass(frozen=True)
class ThresholdTable:
    sex: str
    threshold_percent: int
    entries: Tuple[ThresholdEntry, ...]
    source: Optional[Dict[str, Any]] = None
    # (age, tscore key) -> required factor; first entry wins on duplicates
    cells: Dict[Tuple[int, str], Optional[float]] = field(default_factory=dict, compare=False, repr=False)


# ----------------------------
# Risk factors + MEGs
# ----------------------------
@dataclass(frozen=True)
class RiskFactorFlags:
    imminent_rr: bool = False
    strong_irreversible_a: bool = False


@dataclass(frozen=True)
class RiskFactor:
    rf_id: str
    label_de: str
    group: str
    rr_3y: Optional[float]
    included_in_risk_calc: bool
    flags: RiskFactorFlags = RiskFactorFlags()
    source_ref: Optional[str] = None
    mutual_exclusion_group_id: Optional[str] = None
    exclusion_mode: Optional[str] = None
    ui_hidden_when_other_selected: bool = False
    ui_disclosure_text: Optional[str] = None


@dataclass(frozen=True)
class MegEntry:
    meg_id: str
    label_de: str
    mode: str
    rf_ids: Tuple[str, ...]


@dataclass(frozen=True)
class MegIndex:
    meg_to_rfs: Dict[str, MegEntry]
    rf_to_meg: Dict[str, Optional[str]]


# ----------------------------
# Substances
# ----------------------------
@dataclass(frozen=True)
class RegistryEntry:
    substance_id: str
    label_de: str
    therapy_class: str
    active: bool = True


@dataclass(frozen=True)
class FractureEfficacy:
    hip: bool
    vertebral: bool


@dataclass(frozen=True)
class EvidenceEntry:
    substance_id: str
    label_de: str
    therapy_class: str
    evidence_level: str
    fracture_efficacy: FractureEfficacy
    evidence_note_de: str = ""
    source_refs: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ApprovalInfo:
    approved: bool
    population_note_de: Optional[str] = None


@dataclass(frozen=True)
class SubstanceAdministration:
    route: str
    frequency_default: str
    setting_default: str


@dataclass(frozen=True)
class SubstanceAdminMeta:
    substance_id: str
    therapy_class: str
    administration: SubstanceAdministration
    approval: Dict[str, ApprovalInfo]
    notes_de: Optional[str] = None


# ----------------------------
# Compiled catalog
# ----------------------------
@dataclass(frozen=True)
class DvoCatalog:
    bundle_version: str
    tables: Dict[Tuple[str, int], ThresholdTable]
    risk_factors: Tuple[RiskFactor, ...]
    rf_by_id: Dict[str, RiskFactor]
    meg_index: MegIndex
    registry: Tuple[RegistryEntry, ...]
    registry_by_id: Dict[str, RegistryEntry]
    evidence: Tuple[EvidenceEntry, ...]
    evidence_by_id: Dict[str, EvidenceEntry]
    metadata: Tuple[SubstanceAdminMeta, ...]
    metadata_by_id: Dict[str, SubstanceAdminMeta]
    rf_catalog_version: Optional[str] = None

    def table(self, sex: str, threshold_percent: int) -> Optional[ThresholdTable]:
        return self.tables.get((sex, int(threshold_percent)))


def _require(raw: Dict[str, Any], key: str, where: str) -> Any:
    if not isinstance(raw, dict) or key not in raw:
        raise DataIntegrityError(f"{where}: missing required field '{key}'")
    return raw[key]


def _opt_float(x: Any) -> Optional[float]:
    if x is None:
        return None
    return float(x)


def _parse_threshold_table(raw: Dict[str, Any]) -> ThresholdTable:
    sex = _require(raw, "sex", "threshold table")
    pct = int(_require(raw, "threshold_percent", "threshold table"))
    if sex not in cfg.SEXES:
        raise DataIntegrityError(f"threshold table: unknown sex {sex!r}")
    if pct not in cfg.TIERS:
        raise DataIntegrityError(f"threshold table: unknown threshold_percent {pct!r}")

    where = f"threshold table {sex}/{pct}%"
    entries: List[ThresholdEntry] = []
    cells: Dict[Tuple[int, str], Optional[float]] = {}
    for e in _require(raw, "entries", where):
        entry = ThresholdEntry(
            age=int(_require(e, "age", where)),
            tscore=str(_require(e, "tscore", where)),
            required_factor=_opt_float(e.get("required_factor")),
        )
        entries.append(entry)
        cells.setdefault((entry.age, entry.tscore), entry.required_factor)

    return ThresholdTable(
        sex=sex,
        threshold_percent=pct,
        entries=tuple(entries),
        source=raw.get("source"),
        cells=cells,
    )


def _parse_risk_factor(raw: Dict[str, Any]) -> RiskFactor:
    rf_id = _require(raw, "rf_id", "risk factor")
    where = f"risk factor {rf_id}"
    group = _require(raw, "group", where)
    if group not in cfg.RF_GROUPS:
        raise DataIntegrityError(f"{where}: unknown group {group!r}")
    flags = raw.get("flags") or {}
    return RiskFactor(
        rf_id=rf_id,
        label_de=_require(raw, "label_de", where),
        group=group,
        rr_3y=_opt_float(raw.get("rr_3y")),
        included_in_risk_calc=raw.get("included_in_risk_calc") is True,
        flags=RiskFactorFlags(
            imminent_rr=flags.get("imminent_rr") is True,
            strong_irreversible_a=flags.get("strong_irreversible_A") is True,
        ),
        source_ref=raw.get("source_ref"),
        mutual_exclusion_group_id=raw.get("mutual_exclusion_group_id") or None,
        exclusion_mode=raw.get("exclusion_mode") or None,
        ui_hidden_when_other_selected=raw.get("ui_hidden_when_other_selected") is True,
        ui_disclosure_text=raw.get("ui_disclosure_text"),
    )


def _parse_registry_entry(raw: Dict[str, Any]) -> RegistryEntry:
    sid = _require(raw, "substance_id", "registry entry")
    where = f"registry entry {sid}"
    return RegistryEntry(
        substance_id=sid,
        label_de=_require(raw, "label_de", where),
        therapy_class=_require(raw, "therapy_class", where),
        active=raw.get("active", True) is True,
    )


def _parse_evidence_entry(raw: Dict[str, Any]) -> EvidenceEntry:
    sid = _require(raw, "substance_id", "evidence entry")
    where = f"evidence entry {sid}"
    eff = raw.get("fracture_efficacy") or {}
    return EvidenceEntry(
        substance_id=sid,
        label_de=raw.get("label_de") or sid,
        therapy_class=raw.get("therapy_class") or "",
        evidence_level=_require(raw, "evidence_level", where),
        fracture_efficacy=FractureEfficacy(
            hip=eff.get("hip") is True,
            vertebral=eff.get("vertebral") is True,
        ),
        evidence_note_de=raw.get("evidence_note_de") or "",
        source_refs=tuple(raw.get("source_refs") or ()),
    )


def _parse_admin_meta(raw: Dict[str, Any]) -> SubstanceAdminMeta:
    sid = _require(raw, "substance_id", "metadata entry")
    where = f"metadata entry {sid}"
    adm = _require(raw, "administration", where)
    approval_raw = raw.get("approval") or {}
    approval = {}
    for sex in cfg.SEXES:
        a = approval_raw.get(sex) or {}
        approval[sex] = ApprovalInfo(
            approved=a.get("approved") is True,
            population_note_de=a.get("population_note_de"),
        )
    return SubstanceAdminMeta(
        substance_id=sid,
        therapy_class=raw.get("therapy_class") or "",
        administration=SubstanceAdministration(
            route=_require(adm, "route", where),
            frequency_default=_require(adm, "frequency_default", where),
            setting_default=_require(adm, "setting_default", where),
        ),
        approval=approval,
        notes_de=raw.get("notes_de"),
    )


# ----------------------------
# MEG index
# ----------------------------
def build_meg_index(raw_catalog: Dict[str, Any]) -> MegIndex:
    """
    Bidirectional MEG index from the raw RF catalog.

    Groups declared in meta.mutual_exclusion_groups are seeded first. A group
    referenced only by its members is synthesized from the first member's
    exclusion_mode (default single_choice_optional).
    """
    declared = ((raw_catalog.get("meta") or {}).get("mutual_exclusion_groups")) or []

    members: Dict[str, List[str]] = {}
    modes: Dict[str, str] = {}
    labels: Dict[str, str] = {}
    rf_to_meg: Dict[str, Optional[str]] = {}

    for meg in declared:
        meg_id = _require(meg, "id", "mutual exclusion group")
        members[meg_id] = []
        modes[meg_id] = meg.get("mode") or cfg.MEG_MODE_SINGLE_CHOICE
        labels[meg_id] = meg.get("label_de") or meg_id

    for rf in raw_catalog.get("risk_factors") or []:
        rf_id = rf.get("rf_id")
        meg_id = rf.get("mutual_exclusion_group_id") or None
        rf_to_meg[rf_id] = meg_id
        if meg_id is None:
            continue
        if meg_id not in members:
            members[meg_id] = []
            modes[meg_id] = rf.get("exclusion_mode") or cfg.MEG_MODE_SINGLE_CHOICE
            labels[meg_id] = meg_id
        members[meg_id].append(rf_id)

    meg_to_rfs = {
        meg_id: MegEntry(meg_id=meg_id, label_de=labels[meg_id], mode=modes[meg_id], rf_ids=tuple(ids))
        for meg_id, ids in members.items()
    }
    return MegIndex(meg_to_rfs=meg_to_rfs, rf_to_meg=rf_to_meg)


def enforce_meg_rules(selected_rf_ids: Iterable[str], rf_id: str, catalog: DvoCatalog) -> FrozenSet[str]:
    """
    Toggle rf_id and return the new selection; the caller's set is never touched.

    Deselecting removes only that factor. Selecting a member of a
    single_choice_optional MEG first drops the other members of that MEG.
    Unknown ids are a caller bug: logged, selection returned unchanged.
    """
    updated = set(selected_rf_ids)

    if rf_id not in catalog.rf_by_id:
        logger.warning("RF not found: %s", rf_id)
        return frozenset(updated)

    if rf_id in updated:
        updated.discard(rf_id)
        return frozenset(updated)

    meg_id = catalog.meg_index.rf_to_meg.get(rf_id)
    if meg_id:
        meg = catalog.meg_index.meg_to_rfs.get(meg_id)
        if meg is not None and meg.mode == cfg.MEG_MODE_SINGLE_CHOICE:
            for other in meg.rf_ids:
                if other != rf_id:
                    updated.discard(other)

    updated.add(rf_id)
    return frozenset(updated)


def meg_label(catalog: DvoCatalog, meg_id: str) -> str:
    meg = catalog.meg_index.meg_to_rfs.get(meg_id)
    return meg.label_de if meg is not None else meg_id


# ----------------------------
# RF views
# ----------------------------
def risk_factors_for_calculation(catalog: DvoCatalog) -> List[RiskFactor]:
    return [rf for rf in catalog.risk_factors if rf.included_in_risk_calc]


def all_risk_factors(catalog: DvoCatalog) -> List[RiskFactor]:
    return list(catalog.risk_factors)


def trigger_only_risk_factors(catalog: DvoCatalog) -> List[RiskFactor]:
    return [
        rf for rf in catalog.risk_factors
        if not rf.included_in_risk_calc and (rf.flags.imminent_rr or rf.flags.strong_irreversible_a)
    ]


# ----------------------------
# Compile + load
# ----------------------------
def compile_catalog(
    bundle: Dict[str, Any],
    rf_catalog: Dict[str, Any],
    evidence_table: Dict[str, Any],
    metadata_table: Dict[str, Any],
    registry: Dict[str, Any],
) -> DvoCatalog:
    """Pure compile step: raw dataset dicts in, immutable DvoCatalog out."""
    tables: Dict[Tuple[str, int], ThresholdTable] = {}
    for raw in _require(bundle, "tables", "threshold bundle"):
        t = _parse_threshold_table(raw)
        tables.setdefault((t.sex, t.threshold_percent), t)

    rfs = tuple(_parse_risk_factor(r) for r in _require(rf_catalog, "risk_factors", "RF catalog"))
    rf_by_id: Dict[str, RiskFactor] = {}
    for rf in rfs:
        if rf.rf_id in rf_by_id:
            raise DataIntegrityError(f"RF catalog: duplicate rf_id {rf.rf_id!r}")
        rf_by_id[rf.rf_id] = rf

    reg = tuple(_parse_registry_entry(r) for r in _require(registry, "substances", "substance registry"))
    ev = tuple(_parse_evidence_entry(r) for r in _require(evidence_table, "substances", "evidence table"))
    meta = tuple(_parse_admin_meta(r) for r in _require(metadata_table, "substances", "metadata table"))

    catalog = DvoCatalog(
        bundle_version=str(bundle.get("bundle_version", "")),
        tables=tables,
        risk_factors=rfs,
        rf_by_id=rf_by_id,
        meg_index=build_meg_index(rf_catalog),
        registry=reg,
        registry_by_id={e.substance_id: e for e in reg},
        evidence=ev,
        evidence_by_id={e.substance_id: e for e in ev},
        metadata=meta,
        metadata_by_id={m.substance_id: m for m in meta},
        rf_catalog_version=(rf_catalog.get("meta") or {}).get("version"),
    )
    logger.debug(
        "Compiled catalog: %d tables, %d RFs, %d MEGs, %d substances",
        len(tables), len(rfs), len(catalog.meg_index.meg_to_rfs), len(reg),
    )
    return catalog


def _read_json(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


def load_raw_datasets(data_dir: Optional[Union[str, Path]] = None) -> Dict[str, Dict[str, Any]]:
    d = Path(data_dir) if data_dir is not None else cfg.DATA_DIR
    return {
        "bundle": _read_json(d / cfg.BUNDLE_FILE),
        "rf_catalog": _read_json(d / cfg.RF_CATALOG_FILE),
        "evidence_table": _read_json(d / cfg.EVIDENCE_FILE),
        "metadata_table": _read_json(d / cfg.METADATA_FILE),
        "registry": _read_json(d / cfg.REGISTRY_FILE),
    }


def load_catalog(data_dir: Optional[Union[str, Path]] = None) -> DvoCatalog:
    raw = load_raw_datasets(data_dir)
    return compile_catalog(**raw)


@lru_cache(maxsize=1)
def default_catalog() -> DvoCatalog:
    """Catalog from cfg.DATA_DIR, built on first use and kept for the process lifetime."""
    return load_catalog()
