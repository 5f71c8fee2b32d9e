# dvo_validate.py
# Offline consistency check of the substance datasets.
#
# The registry is the master reference. Errors:
#   - evidence / metadata ids that are not active registry substances
# Warnings:
#   - evidence label_de differs from the registry label
#   - active registry substances without evidence or metadata entry
#
# Run: python dvo_validate.py [--data-dir DIR]   (exit 1 on errors)

import argparse
import sys
from dataclasses import dataclass, field
from typing import List, Optional

import dvo_config as cfg
from dvo_catalog import DvoCatalog, load_catalog
from dvo_substances import all_substance_ids, evidence_registry_errors, registry_entry


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def validate_consistency(catalog: DvoCatalog) -> ValidationResult:
    result = ValidationResult()

    registry_ids = set(all_substance_ids(catalog, active_only=True))
    evidence_ids = [e.substance_id for e in catalog.evidence]
    metadata_ids = [m.substance_id for m in catalog.metadata]

    result.errors.extend(evidence_registry_errors(catalog))

    for sid in metadata_ids:
        if sid not in registry_ids:
            result.errors.append(f'Administration Metadata: substance_id "{sid}" not found in Registry')

    # therapy_class is owned by the registry; only labels are cross-checked
    for entry in catalog.evidence:
        reg = registry_entry(catalog, entry.substance_id)
        if reg is not None and entry.label_de != reg.label_de:
            result.warnings.append(
                f'Evidence Table: label_de mismatch for "{entry.substance_id}" '
                f'(Evidence: "{entry.label_de}", Registry: "{reg.label_de}")'
            )

    for sid in sorted(registry_ids):
        if sid not in evidence_ids:
            result.warnings.append(f'Registry: substance_id "{sid}" exists in Registry but not in Evidence Table')
    for sid in sorted(registry_ids):
        if sid not in metadata_ids:
            result.warnings.append(
                f'Registry: substance_id "{sid}" exists in Registry but not in Administration Metadata'
            )

    return result


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate DVO reference data consistency.")
    parser.add_argument("--data-dir", default=None, help=f"dataset directory (default: {cfg.DATA_DIR})")
    args = parser.parse_args(argv)

    cfg.configure_logging()
    print("Validating data consistency...\n")

    result = validate_consistency(load_catalog(args.data_dir))

    if not result.errors and not result.warnings:
        print("✓ All validations passed!")
        return 0

    if result.errors:
        print("✗ ERRORS found:", file=sys.stderr)
        for e in result.errors:
            print(f"  - {e}", file=sys.stderr)
        print("", file=sys.stderr)

    if result.warnings:
        print("⚠ WARNINGS:")
        for w in result.warnings:
            print(f"  - {w}")
        print("")

    if result.errors:
        print(f"\n✗ Validation failed with {len(result.errors)} error(s)", file=sys.stderr)
        return 1

    print(f"\n✓ Validation passed with {len(result.warnings)} warning(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
