"""Utility functions for sctrace.

Provides statistical helpers, content hashing and seed derivation used
across modules.
"""

from .hashing import (
    chain_version,
    derive_seed,
    hash_arrays,
    stable_hash,
)
from .stats import (
    cross_batch_neighbor_rate,
    is_constant,
    log2_fold_change,
    percent_of_total,
)

__all__ = [
    "chain_version",
    "derive_seed",
    "hash_arrays",
    "stable_hash",
    "cross_batch_neighbor_rate",
    "is_constant",
    "log2_fold_change",
    "percent_of_total",
]
