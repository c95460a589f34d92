"""Linear-algebra backend implementations."""

from pyscicore.linalg.backends.cpu import VENDORS, LapackBackend, VendorSpec, numerical_rank

__all__ = [
    "VENDORS",
    "LapackBackend",
    "VendorSpec",
    "numerical_rank",
]
