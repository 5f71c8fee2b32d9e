# ui_components.py

from dvo_lookup import BANDS


def render_band_bar(band: str) -> str:
    """
    4-step risk band bar (<3% … >=10%), active band highlighted.
    Unknown band strings render with nothing highlighted.
    """
    labels = {
        "<3%": "keine medikamentöse Therapie",
        "3–<5%": "Therapie bei Triggern erwägen",
        "5–<10%": "antiresorptiv",
        ">=10%": "osteoanabol starten",
    }

    segs = []
    for b in BANDS:
        active = (b == band)
        segs.append(f"""
        <div style="
            flex:1;
            padding:10px 10px;
            border:1px solid rgba(31,41,55,0.18);
            border-radius:12px;
            background:{'rgba(31,41,55,0.06)' if active else '#fff'};
            font-weight:{'800' if active else '600'};
            text-align:center;
            font-size:0.88rem;
        ">
          {b}
          <div style="font-weight:600; font-size:0.78rem; color:rgba(31,41,55,0.70); margin-top:2px;">
            {labels[b]}
          </div>
        </div>
        """)

    return f"""
    <div style="margin-top:8px; margin-bottom:10px;">
      <div style="font-weight:900; font-size:1.0rem; margin-bottom:6px;">
        3-Jahres-Frakturrisiko: {band}
      </div>
      <div style="display:flex; gap:8px;">
        {''.join(segs)}
      </div>
    </div>
    """
