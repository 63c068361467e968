"""Restore Pipeline - staging of restore slices from object storage."""

__version__ = "1.0.0"

# Essential exports only
__all__ = ["__version__"]
