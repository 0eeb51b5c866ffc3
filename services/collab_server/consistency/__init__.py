"""
Cross-relation invariants: single primary image and membership counter.
"""

from .counter import CounterReconciler
from .images import apply_primary_index, normalize, primary_count

__all__ = [
    "CounterReconciler",
    "apply_primary_index",
    "normalize",
    "primary_count",
]
