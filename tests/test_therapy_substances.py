import logging
import random

import pytest

from dvo_lookup import BAND_3_5, BAND_5_10, BAND_GE10, BAND_LT3
from dvo_substances import (
    approval_hint,
    evidence_registry_errors,
    format_efficacy_hint,
    is_valid_substance,
    metadata_for,
    missing_evidence_ids,
    rank_substances_by_evidence,
    regimen_text,
    substance_label,
    substances_by_therapy_class,
)
from dvo_therapy import (
    STRATEGY_AR,
    STRATEGY_CONSIDER_AR,
    STRATEGY_NONE,
    STRATEGY_OA_START,
    derive_therapy_plan,
    get_candidate_substances,
    therapy_class_for,
)


def test_therapy_strategy_table():
    cases = [
        (BAND_LT3, False, STRATEGY_NONE),
        (BAND_LT3, True, STRATEGY_NONE),
        (BAND_3_5, False, STRATEGY_NONE),
        (BAND_3_5, True, STRATEGY_CONSIDER_AR),
        (BAND_5_10, False, STRATEGY_AR),
        (BAND_5_10, True, STRATEGY_AR),
        (BAND_GE10, False, STRATEGY_OA_START),
        (BAND_GE10, True, STRATEGY_OA_START),
    ]
    for band, trigger, expected in cases:
        assert derive_therapy_plan(band, trigger).strategy == expected, (band, trigger)


def test_only_high_band_carries_degam_softening():
    for band in (BAND_LT3, BAND_3_5, BAND_5_10):
        for trigger in (False, True):
            assert derive_therapy_plan(band, trigger).deviation_flag is None
    plan = derive_therapy_plan(BAND_GE10, False)
    assert plan.deviation_flag == "DEGAM_SOFTENING"
    assert plan.guideline_default == "DEGAM"
    assert (plan.degam.grade, plan.dvo.grade) == ("B", "A")


def test_unknown_band_rejected():
    with pytest.raises(ValueError):
        derive_therapy_plan("7%", False)


def test_therapy_class_mapping():
    assert therapy_class_for(STRATEGY_NONE) is None
    assert therapy_class_for(STRATEGY_CONSIDER_AR) == "antiresorptive"
    assert therapy_class_for(STRATEGY_AR) == "antiresorptive"
    assert therapy_class_for(STRATEGY_OA_START) == "osteoanabolic"


def test_osteoanabolic_start_excludes_other_anabolics(catalog):
    assert "abaloparatide" in substances_by_therapy_class(catalog, "osteoanabolic")
    assert is_valid_substance(catalog, "abaloparatide")
    cands = get_candidate_substances(STRATEGY_OA_START, catalog)
    assert set(cands) == {"teriparatide", "romosozumab"}


def test_inactive_substances_are_not_candidates(catalog):
    cands = get_candidate_substances(STRATEGY_AR, catalog)
    assert "bazedoxifene" not in cands
    assert "alendronate" in cands
    assert get_candidate_substances(STRATEGY_NONE, catalog) == []


def test_ranking_independent_of_input_order(catalog):
    ids = get_candidate_substances(STRATEGY_AR, catalog)
    expected = [r.substance_id for r in rank_substances_by_evidence(catalog, ids)]
    rng = random.Random(13)
    for _ in range(30):
        rng.shuffle(ids)
        assert [r.substance_id for r in rank_substances_by_evidence(catalog, ids)] == expected


def test_missing_evidence_ranks_last(raw_datasets, build_catalog, caplog):
    raw_datasets["registry"]["substances"].append(
        {"substance_id": "aaa_newdrug", "label_de": "Neusubstanz", "therapy_class": "antiresorptive", "active": True}
    )
    cat = build_catalog(raw_datasets)
    with caplog.at_level(logging.WARNING, logger="dvo_substances"):
        ranked = rank_substances_by_evidence(cat, get_candidate_substances(STRATEGY_AR, cat))
    last = ranked[-1]
    assert last.substance_id == "aaa_newdrug"
    assert last.label_de == "Neusubstanz"
    assert last.evidence is None
    assert last.evidence_chip == "Evidenz unklar"
    assert last.to_dict()["evidence_level"] is None
    assert "aaa_newdrug" in caplog.text


def test_ranked_dict_shape(catalog):
    [top] = rank_substances_by_evidence(catalog, ["romosozumab"])
    d = top.to_dict()
    assert d["label_de"] == "Romosozumab"
    assert d["evidence_level"] == "A"
    assert d["fracture_efficacy"] == {"hip": True, "vertebral": True}
    assert d["ui"]["evidenceChip"] == "Evidenz A"
    assert d["ui"]["efficacyHint"] == "Hüfte + Wirbel"
    assert "ARCH" in d["ui"]["sourceRefs"]


def test_efficacy_hint_vertebral_only(catalog):
    ev = catalog.evidence_by_id["teriparatide"]
    assert format_efficacy_hint(ev.fracture_efficacy) == "Wirbel"
    assert format_efficacy_hint(None) == "unklar"


def test_labels_come_from_registry(catalog):
    assert substance_label(catalog, "zoledronate") == "Zoledronat"
    assert substance_label(catalog, "unknown_id") == "unknown_id"


def test_regimen_and_approval_hints(catalog):
    zol = metadata_for(catalog, "zoledronate")
    assert regimen_text(zol) == "i.v. • jährlich • Praxis"

    romo = metadata_for(catalog, "romosozumab")
    assert approval_hint(romo, "male") == "Für Männer nicht zugelassen (Off-Label)."
    assert approval_hint(romo, "female").startswith("Hinweis:")
    assert approval_hint(metadata_for(catalog, "alendronate"), "male") is None
    assert approval_hint(romo, None) is None

    assert metadata_for(catalog, "abaloparatide") is None


def test_evidence_helpers(catalog, raw_datasets, build_catalog, caplog):
    assert evidence_registry_errors(catalog) == []
    with caplog.at_level(logging.WARNING, logger="dvo_substances"):
        assert missing_evidence_ids(catalog, ["alendronate", "nope"]) == ["nope"]
    assert "nope" in caplog.text

    for s in raw_datasets["registry"]["substances"]:
        if s["substance_id"] == "raloxifene":
            s["active"] = False
    errors = evidence_registry_errors(build_catalog(raw_datasets))
    assert errors == ['Evidence Table: substance_id "raloxifene" not found in Registry']
