# dvo_config.py
# Runtime configuration for the DVO fracture-risk calculator.
#
# Everything here is a plain module constant. Two values can be overridden
# from the environment:
#   DVO_DATA_DIR   directory holding the reference JSON datasets
#   DVO_LOG_LEVEL  logging level name used by configure_logging()

import logging
import os
from pathlib import Path
from typing import Optional, Union

# ----------------------------
# Reference data location
# ----------------------------
ROOT = Path(__file__).resolve().parent
DATA_DIR = Path(os.environ.get("DVO_DATA_DIR", str(ROOT / "data")))

BUNDLE_FILE = "DVO_Threshold_Tables_Bundle_v1.0.0.json"
RF_CATALOG_FILE = "DVO_RF_Katalog_Rohdaten_v0.5.json"
EVIDENCE_FILE = "DVO_Medication_Evidence_Table_v1.0.0.json"
METADATA_FILE = "DVO_Substance_Administration_Metadata_v1.0.0.json"
REGISTRY_FILE = "DVO_Substance_Registry_v1.0.0.json"


# ----------------------------
# Engine constants
# ----------------------------
MIN_AGE = 50
MAX_AGE_BIN = 90
AGE_BIN_WIDTH = 5

NO_BMD = "no_bmd"
TIERS = (3, 5, 10)
SEXES = ("female", "male")

# Absorbs binary rounding in the two-factor product (1.5 * 1.4 == 2.0999999999999996).
EPSILON = 1e-9

MEG_MODE_SINGLE_CHOICE = "single_choice_optional"

GROUP_FALLS = "G1_STURZ"
GROUP_RA_GC = "G2_RA_GC"
GROUP_OTHER = "G3_OTHER"
RF_GROUPS = (GROUP_FALLS, GROUP_RA_GC, GROUP_OTHER)

# Only these two are approved for osteoanabolic first-line therapy.
OSTEOANABOLIC_START_SUBSTANCES = ("romosozumab", "teriparatide")


# ----------------------------
# Logging
# ----------------------------
LOG_LEVEL = os.environ.get("DVO_LOG_LEVEL", "WARNING").upper()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: Optional[Union[str, int]] = None) -> None:
    """Set up root logging for the app and the CLI tools. The engine never calls this."""
    lvl = level if level is not None else LOG_LEVEL
    if isinstance(lvl, str):
        lvl = getattr(logging, lvl.upper(), logging.WARNING)
    logging.basicConfig(level=lvl, format=LOG_FORMAT)
