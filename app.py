# app.py
# ============================================================
# DVO Frakturrisiko: Streamlit app
# - Sex / age / optional total-hip T-score input
# - Risk factors grouped G1 / G2 / G3 with MEG single-choice behaviour
# - Out-of-scope inputs surfaced as advisories, not errors
# - Result: band, therapy plan (DEGAM + DVO), ranked substances,
#   transparency (top-2 RF, tier cells, triggers, rule trace)
# ============================================================

from __future__ import annotations

import logging
from typing import Optional

import streamlit as st

import dvo_config as cfg
from dvo_catalog import default_catalog, enforce_meg_rules
from dvo_engine import STATUS_OK, VERSION, Patient, evaluate
from dvo_output_adapter import (
    DEFAULT_EXPANDED_GROUPS,
    GROUP_HINTS,
    GROUP_TITLES,
    display_risk_factors,
    format_rf_label,
    generate_dvo_output,
    group_risk_factors,
    meg_expansion_after_toggle,
    parse_tscore,
    should_show_age_hint,
)
from ui_components import render_band_bar

cfg.configure_logging()
logger = logging.getLogger("dvo.app")


# ============================================================
# Styling
# ============================================================

st.set_page_config(page_title="DVO Frakturrisiko", layout="wide")

st.markdown(
    """
<style>
html, body, [class*="css"] {
  font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Inter, "Helvetica Neue", Arial, sans-serif;
  color: #111827;
}

.smallcaps {
  font-variant: all-small-caps;
  letter-spacing: 0.06em;
  color: rgba(17,24,39,0.72);
}

.card {
  background: #ffffff;
  border: 1px solid rgba(17,24,39,0.12);
  border-radius: 16px;
  padding: 16px;
}

.muted {
  color: rgba(17,24,39,0.65);
  font-size: 0.92rem;
}

.badge {
  display: inline-block;
  padding: 2px 10px;
  border-radius: 999px;
  border: 1px solid rgba(17,24,39,0.14);
  font-size: 0.82rem;
  margin-right: 6px;
}

.badge-3 {
  background: rgba(245,158,11,0.10);
  border-color: rgba(245,158,11,0.25);
}

.badge-5 {
  background: rgba(249,115,22,0.12);
  border-color: rgba(249,115,22,0.30);
}

.badge-10 {
  background: rgba(239,68,68,0.10);
  border-color: rgba(239,68,68,0.25);
}

pre {
  white-space: pre-wrap !important;
  word-wrap: break-word !important;
}
</style>
""",
    unsafe_allow_html=True,
)


# ============================================================
# State
# ============================================================

catalog = default_catalog()
display_rfs = display_risk_factors(catalog)

if "selected_rf_ids" not in st.session_state:
    st.session_state["selected_rf_ids"] = frozenset()
if "expanded_megs" not in st.session_state:
    st.session_state["expanded_megs"] = frozenset()


def on_toggle_rf(rf_id: str) -> None:
    current = st.session_state["selected_rf_ids"]
    updated = enforce_meg_rules(current, rf_id, catalog)
    st.session_state["selected_rf_ids"] = updated
    st.session_state["expanded_megs"] = meg_expansion_after_toggle(
        st.session_state["expanded_megs"], rf_id, updated, catalog
    )
    # keep every checkbox in sync with the (possibly MEG-pruned) selection
    for rf in display_rfs:
        st.session_state[f"rf_{rf.rf_id}"] = rf.rf_id in updated


def rf_checkbox(rf, age: Optional[int]) -> None:
    st.checkbox(
        format_rf_label(rf),
        key=f"rf_{rf.rf_id}",
        on_change=on_toggle_rf,
        args=(rf.rf_id,),
    )
    if should_show_age_hint(rf.rf_id, age) and rf.ui_disclosure_text:
        st.caption(rf.ui_disclosure_text)


# ============================================================
# UI
# ============================================================

st.markdown(
    f"""
<div class="card">
  <div style="display:flex;justify-content:space-between;align-items:center;gap:12px;">
    <div>
      <div class="smallcaps">DVO</div>
      <div style="font-size:1.35rem;font-weight:700;margin-top:4px;">3-Jahres-Frakturrisiko & Therapieempfehlung</div>
      <div class="muted" style="margin-top:4px;">Entscheidungshilfe nach DVO-Schwellentabellen. Ersetzt keine ärztliche Beurteilung.</div>
    </div>
    <div style="text-align:right;">
      <span class="badge">Engine {VERSION['engine']}</span>
      <span class="badge">Tabellen v{catalog.bundle_version}</span>
    </div>
  </div>
</div>
""",
    unsafe_allow_html=True,
)

left, right = st.columns([1.0, 1.0], gap="large")


# -----------------------------
# Left: inputs + risk factors
# -----------------------------
with left:
    st.markdown('<div class="smallcaps">Eingaben</div>', unsafe_allow_html=True)

    sex_label = st.radio("Geschlecht", options=["weiblich", "männlich"], index=None, horizontal=True)
    sex = {"weiblich": "female", "männlich": "male"}.get(sex_label)

    age = st.number_input("Alter (Jahre)", min_value=0, max_value=120, value=None, step=1)
    tscore_raw = st.text_input("T-Score Gesamthüfte (optional)", value="", placeholder="z. B. -2,3")
    tscore, tscore_warn = parse_tscore(tscore_raw)
    if tscore_warn:
        st.warning(tscore_warn)

    st.markdown('<div class="smallcaps" style="margin-top:12px;">Risikofaktoren (optional)</div>', unsafe_allow_html=True)
    grouped = group_risk_factors(catalog)
    age_value = int(age) if age is not None else None

    for group_id, title in GROUP_TITLES.items():
        with st.expander(title, expanded=group_id in DEFAULT_EXPANDED_GROUPS):
            st.caption(GROUP_HINTS[group_id])
            meg_groups = grouped["megGroups"][group_id]

            for rf in grouped["groups"][group_id]:
                if catalog.meg_index.rf_to_meg.get(rf.rf_id):
                    continue
                rf_checkbox(rf, age_value)

            for meg_id, members in meg_groups.items():
                with st.expander(
                    grouped["megLabels"].get(meg_id, meg_id),
                    expanded=meg_id in st.session_state["expanded_megs"],
                ):
                    for rf in members:
                        rf_checkbox(rf, age_value)


# -----------------------------
# Right: result
# -----------------------------
with right:
    st.markdown('<div class="smallcaps">Ergebnis</div>', unsafe_allow_html=True)

    patient = Patient(
        sex=sex,
        age=age_value,
        tscore=tscore,
        selected_rf_ids=st.session_state["selected_rf_ids"],
    )

    try:
        result = evaluate(patient, catalog)
    except ValueError as e:
        logger.exception("Evaluation failed")
        st.error(f"Referenzdaten fehlerhaft: {e}")
        result = None

    if result is not None:
        view = generate_dvo_output(patient, result, catalog)

        if result["status"] != STATUS_OK:
            for msg in view["advisories"]:
                st.info(msg)
        else:
            st.markdown(render_band_bar(view["band"]), unsafe_allow_html=True)
            st.markdown(
                f'<span class="badge {view["badgeClass"]}">{view["band"]}</span> {result["recommendation"]}',
                unsafe_allow_html=True,
            )

            st.markdown(f"#### {view['therapyLabel']}")
            if view["sequenceHint"]:
                st.markdown(f"<div class='muted'>{view['sequenceHint']}</div>", unsafe_allow_html=True)

            g = view["guidelines"]
            st.markdown(
                f"- **DEGAM ({g['DEGAM']['grade']})**: {g['DEGAM']['wording_de']}\n"
                f"- **DVO ({g['DVO']['grade']})**: {g['DVO']['wording_de']}"
            )
            if view["degamSofteningNote"]:
                st.warning(view["degamSofteningNote"])

            if view["showSubstances"]:
                st.markdown("#### Substanzoptionen (nach Evidenz)")
                st.caption("Keine Kontraindikationsprüfung: alle Substanzen der Therapieklasse werden angezeigt.")
                for card in view["substanceCards"]:
                    st.markdown(f"**{card['label']}** · {card['evidenceChip']} · {card['efficacyHint']}")
                    if card["regimen"]:
                        st.caption(card["regimen"])
                    if card["approvalHint"]:
                        st.caption(card["approvalHint"])
                    if card["note"]:
                        refs = f" ({'; '.join(card['sourceRefs'])})" if card["sourceRefs"] else ""
                        st.markdown(f"<div class='muted'>{card['note']}{refs}</div>", unsafe_allow_html=True)

            with st.expander("Transparenz"):
                st.markdown(f"Multiplikator: **{result['multiplier']:.2f}**"
                            f" · T-Score verwendet: {'ja' if result['usedBmd'] else 'nein'}"
                            f" · Altersklasse: {result['ageBin']}")
                if result["top2Rfs"]:
                    for r in result["top2Rfs"]:
                        st.markdown(f"- {r['label_de']} (RR {r['rr_3y']}, {r['poolSource']})")
                st.json(result["thresholdDetails"])
                st.json(result["triggers"])

            with st.expander("Kurzfassung"):
                st.code(view["markdown"])

            with st.expander("Debug: rule trace"):
                st.write(result["trace"])
