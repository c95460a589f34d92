"""
Shared compute infrastructure: timing and cross-strategy tolerances.
"""

from pyscicore.core.compute.timing import Timer, timed
from pyscicore.core.compute.tolerances import ToleranceTier, select_tolerance

__all__ = [
    "Timer",
    "timed",
    "ToleranceTier",
    "select_tolerance",
]
