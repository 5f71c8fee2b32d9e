# dvo_errors.py


class DataIntegrityError(ValueError):
    """Reference data is corrupt or incomplete (e.g. a threshold table without T-score bins)."""
