"""Statistical utilities for sctrace.

Provides percentage helpers, fold-change computation and the cross-batch
neighbor mixing metric used to evaluate integration.
"""

from __future__ import annotations

from typing import Iterable, Union

import numpy as np

ArrayLike = Union[Iterable[float], np.ndarray]


def percent_of_total(part: ArrayLike, total: ArrayLike) -> np.ndarray:
    """Compute ``100 * part / total`` with zero where total is zero.

    Parameters
    ----------
    part : ArrayLike
        Numerator values (e.g. mitochondrial counts per cell).
    total : ArrayLike
        Denominator values (total counts per cell).

    Returns
    -------
    np.ndarray
        Percentages in [0, 100].
    """
    part = np.asarray(part, dtype=float).ravel()
    total = np.asarray(total, dtype=float).ravel()
    out = np.zeros_like(total)
    mask = total > 0
    out[mask] = 100.0 * part[mask] / total[mask]
    return out


def log2_fold_change(mean_a: ArrayLike, mean_b: ArrayLike, pseudocount: float = 1.0) -> np.ndarray:
    """Compute ``log2((mean_a + pc) / (mean_b + pc))``."""
    a = np.asarray(mean_a, dtype=float)
    b = np.asarray(mean_b, dtype=float)
    return np.log2((a + pseudocount) / (b + pseudocount))


def is_constant(values: ArrayLike) -> bool:
    """Return True when no two finite values differ.

    Empty input and single values count as constant. NaN and infinite
    entries are ignored.
    """
    arr = np.asarray(values, dtype=float).ravel()
    finite = arr[np.isfinite(arr)]
    return bool(finite.size == 0 or np.ptp(finite) == 0)


def cross_batch_neighbor_rate(
    coords: np.ndarray,
    batches: ArrayLike,
    k: int = 15,
) -> float:
    """Fraction of k-nearest neighbors that belong to a different batch.

    Higher values mean better batch mixing. Self-matches are excluded.

    Parameters
    ----------
    coords : np.ndarray
        Cell coordinates (n_cells, n_dims).
    batches : ArrayLike
        Batch label per cell.
    k : int
        Number of neighbors per cell.

    Returns
    -------
    float
        Mixing rate in [0, 1]. NaN for fewer than 2 cells.
    """
    from sklearn.neighbors import NearestNeighbors

    coords = np.asarray(coords, dtype=float)
    labels = np.asarray(list(batches))
    n_cells = coords.shape[0]
    if n_cells < 2:
        return float("nan")

    n_neighbors = min(max(k, 1), n_cells - 1)
    nn = NearestNeighbors(n_neighbors=n_neighbors + 1, metric="euclidean")
    nn.fit(coords)
    _, indices = nn.kneighbors(coords)

    rates = []
    for i in range(n_cells):
        neighbors = [j for j in indices[i] if j != i][:n_neighbors]
        rates.append(np.mean(labels[neighbors] != labels[i]))
    return float(np.mean(rates))
