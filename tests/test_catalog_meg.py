import logging
import random

import pytest

from dvo_catalog import (
    build_meg_index,
    enforce_meg_rules,
    meg_label,
    risk_factors_for_calculation,
    trigger_only_risk_factors,
)
from dvo_errors import DataIntegrityError


def test_meg_index_is_bidirectional(catalog):
    idx = catalog.meg_index
    assert idx.rf_to_meg["rf_fall_single"] == "MEG_FALLS"
    assert idx.rf_to_meg["rf_copd"] is None
    assert idx.meg_to_rfs["MEG_FALLS"].rf_ids == ("rf_fall_single", "rf_fall_multiple")
    for meg_id, meg in idx.meg_to_rfs.items():
        for rf_id in meg.rf_ids:
            assert idx.rf_to_meg[rf_id] == meg_id


def test_selecting_meg_member_replaces_sibling(catalog):
    sel = enforce_meg_rules(frozenset(), "rf_fall_single", catalog)
    assert sel == {"rf_fall_single"}
    sel = enforce_meg_rules(sel, "rf_fall_multiple", catalog)
    assert sel == {"rf_fall_multiple"}


def test_meg_switch_keeps_unrelated_selection(catalog):
    sel = frozenset({"rf_copd", "rf_gc_low", "rf_parkinson"})
    out = enforce_meg_rules(sel, "rf_gc_high", catalog)
    assert out == {"rf_copd", "rf_gc_high", "rf_parkinson"}


def test_deselect_removes_only_that_factor(catalog):
    sel = frozenset({"rf_gc_high", "rf_copd"})
    assert enforce_meg_rules(sel, "rf_gc_high", catalog) == {"rf_copd"}


def test_caller_selection_is_not_mutated(catalog):
    sel = {"rf_fall_single"}
    out = enforce_meg_rules(sel, "rf_fall_multiple", catalog)
    assert sel == {"rf_fall_single"}
    assert out is not sel


def test_unknown_rf_is_noop_with_warning(catalog, caplog):
    sel = frozenset({"rf_copd"})
    with caplog.at_level(logging.WARNING, logger="dvo_catalog"):
        out = enforce_meg_rules(sel, "rf_does_not_exist", catalog)
    assert out == sel
    assert "rf_does_not_exist" in caplog.text


def test_meg_property_at_most_one_member_selected(catalog):
    rng = random.Random(5)
    ids = list(catalog.rf_by_id)
    sel = frozenset()
    for _ in range(400):
        sel = enforce_meg_rules(sel, rng.choice(ids), catalog)
        for meg in catalog.meg_index.meg_to_rfs.values():
            assert sum(1 for m in meg.rf_ids if m in sel) <= 1


def test_undeclared_meg_is_synthesized(raw_datasets):
    raw = raw_datasets["rf_catalog"]
    raw["meta"]["mutual_exclusion_groups"] = []
    idx = build_meg_index(raw)
    meg = idx.meg_to_rfs["MEG_DIABETES"]
    assert meg.rf_ids == ("rf_diabetes_type1", "rf_diabetes_type2")
    assert meg.mode == "single_choice_optional"
    assert meg.label_de == "MEG_DIABETES"


def test_non_single_choice_meg_allows_both(raw_datasets, build_catalog):
    for meg in raw_datasets["rf_catalog"]["meta"]["mutual_exclusion_groups"]:
        if meg["id"] == "MEG_DIABETES":
            meg["mode"] = "multi_choice"
    cat = build_catalog(raw_datasets)
    sel = enforce_meg_rules(frozenset({"rf_diabetes_type1"}), "rf_diabetes_type2", cat)
    assert sel == {"rf_diabetes_type1", "rf_diabetes_type2"}


def test_meg_label_falls_back_to_id(catalog):
    assert meg_label(catalog, "MEG_FALLS") == "Stürze in den letzten 12 Monaten"
    assert meg_label(catalog, "MEG_UNKNOWN") == "MEG_UNKNOWN"


def test_rf_views_split_calc_and_trigger_only(catalog):
    calc = {rf.rf_id for rf in risk_factors_for_calculation(catalog)}
    trig = {rf.rf_id for rf in trigger_only_risk_factors(catalog)}
    assert "rf_gc_high" in calc
    assert "rf_recent_vertebral_fracture" in trig
    assert "rf_multiple_vertebral_fractures" in trig
    # no flags, not in calc -> neither view
    assert "rf_vitamin_d_deficiency" not in calc | trig
    assert not calc & trig


def test_duplicate_rf_id_rejected(raw_datasets, build_catalog):
    rfs = raw_datasets["rf_catalog"]["risk_factors"]
    rfs.append(dict(rfs[0]))
    with pytest.raises(DataIntegrityError):
        build_catalog(raw_datasets)


def test_unknown_group_rejected(raw_datasets, build_catalog):
    raw_datasets["rf_catalog"]["risk_factors"][0]["group"] = "G9"
    with pytest.raises(DataIntegrityError):
        build_catalog(raw_datasets)


def test_missing_required_field_rejected(raw_datasets, build_catalog):
    del raw_datasets["registry"]["substances"][0]["therapy_class"]
    with pytest.raises(DataIntegrityError):
        build_catalog(raw_datasets)
