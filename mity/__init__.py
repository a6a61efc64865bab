"""mity: mitochondrial variant normalisation, filtering and merging.

This package holds the Python helpers that turn raw mitochondrial variant
calls into a normalised call set and merge it with a nuclear-genome call
set. Importing the package immediately verifies that the required runtime
dependencies :mod:`vcfpy` and :mod:`pysam` are available so that later
operations can rely on them without deferred import errors.
"""

from __future__ import annotations


def _import_dependency(name: str):
    try:
        module = __import__(name)
    except ImportError as exc:  # pragma: no cover - exercised when dependency missing
        raise ModuleNotFoundError(
            f"The '{name}' package is required for mity. "
            f"Please install it with 'pip install {name}'."
        ) from exc
    return module


vcfpy = _import_dependency("vcfpy")
pysam = _import_dependency("pysam")

VCFPY_AVAILABLE = True
PYSAM_AVAILABLE = True

__version__ = "0.3.0"

__all__ = ["vcfpy", "pysam", "VCFPY_AVAILABLE", "PYSAM_AVAILABLE", "__version__"]
