"""Clustering engine for cell population identification.

Builds a symmetric k-nearest-neighbor graph over an embedding and
partitions it by Louvain-style modularity optimization. Node visiting
order, move selection and tie breaking are fixed, so identical inputs give
identical labels.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import time
import warnings

import numpy as np
from scipy import sparse

from ...utils.hashing import chain_version, derive_seed, stable_hash
from ..artifacts import ClusterSet, Embedding
from ..errors import ConvergenceWarning
from .config import METRICS, ClusteringConfig

# Minimum modularity gain that counts as an improvement
GAIN_TOLERANCE = 1e-12


@dataclass
class ClusteringResult:
    """Result from clustering operation.

    Attributes
    ----------
    clusters : ClusterSet
        Cluster labels, centroids and modularity
    n_clusters : int
        Number of clusters found
    cluster_sizes : Dict[int, int]
        Map of cluster ID to cell count
    levels : int
        Aggregation levels performed
    passes : int
        Total local-moving passes
    converged : bool
        False if the level/pass budget or deadline stopped optimization
    warnings : List[ConvergenceWarning]
        Warnings emitted during optimization
    """

    clusters: ClusterSet
    n_clusters: int = 0
    cluster_sizes: Dict[int, int] = field(default_factory=dict)
    levels: int = 0
    passes: int = 0
    converged: bool = True
    warnings: List[ConvergenceWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_clusters": self.n_clusters,
            "resolution": self.clusters.resolution,
            "modularity": float(self.clusters.modularity),
            "levels": self.levels,
            "passes": self.passes,
            "converged": self.converged,
            "cluster_sizes": {str(k): v for k, v in self.cluster_sizes.items()},
        }


def build_knn_graph(coords: np.ndarray, k: int, metric: str = "euclidean") -> sparse.csr_matrix:
    """Build a symmetric unweighted kNN graph.

    Each cell is linked to its ``k`` nearest other cells; the adjacency is
    union-symmetrized and every edge has weight 1.

    Parameters
    ----------
    coords : np.ndarray
        Coordinates (n_cells, n_dims)
    k : int
        Neighbors per cell (capped at n_cells - 1)
    metric : str
        "euclidean" or "cosine"

    Returns
    -------
    sparse.csr_matrix
        Symmetric (n_cells, n_cells) adjacency without self-loops
    """
    from sklearn.neighbors import NearestNeighbors

    if metric not in METRICS:
        raise ValueError(f"Unknown metric '{metric}'. Use one of {METRICS}")

    coords = np.asarray(coords, dtype=float)
    n = coords.shape[0]
    if n < 2:
        return sparse.csr_matrix((n, n))

    n_neighbors = min(max(int(k), 1), n - 1)
    algorithm = "brute" if metric == "cosine" else "auto"
    nn = NearestNeighbors(n_neighbors=n_neighbors + 1, metric=metric, algorithm=algorithm)
    nn.fit(coords)
    _, indices = nn.kneighbors(coords)

    rows, cols = [], []
    for i in range(n):
        neighbors = [j for j in indices[i] if j != i][:n_neighbors]
        rows.extend([i] * len(neighbors))
        cols.extend(neighbors)

    adjacency = sparse.csr_matrix(
        (np.ones(len(rows)), (rows, cols)), shape=(n, n)
    )
    adjacency = adjacency.maximum(adjacency.T).tocsr()
    adjacency.data[:] = 1.0
    return adjacency


def relabel_first_occurrence(labels: Sequence[int]) -> np.ndarray:
    """Renumber labels 0..C-1 in order of first appearance."""
    mapping: Dict[int, int] = {}
    out = np.empty(len(labels), dtype=np.int64)
    for i, label in enumerate(labels):
        if label not in mapping:
            mapping[label] = len(mapping)
        out[i] = mapping[label]
    return out


def modularity(adjacency: sparse.csr_matrix, labels: np.ndarray, resolution: float = 1.0) -> float:
    """Newman modularity of a partition with resolution ``gamma``."""
    adjacency = sparse.csr_matrix(adjacency)
    m2 = float(adjacency.sum())
    if m2 == 0:
        return 0.0
    labels = np.asarray(labels)
    degree = np.asarray(adjacency.sum(axis=1)).ravel()
    n_comms = int(labels.max()) + 1
    membership = sparse.csr_matrix(
        (np.ones(len(labels)), (np.arange(len(labels)), labels)),
        shape=(len(labels), n_comms),
    )
    internal = np.asarray((membership.T @ adjacency @ membership).diagonal()).ravel()
    totals = np.bincount(labels, weights=degree, minlength=n_comms)
    return float(np.sum(internal / m2 - resolution * (totals / m2) ** 2))


class Louvain:
    """Deterministic Louvain modularity optimizer.

    Parameters
    ----------
    resolution : float
        Resolution gamma
    max_levels : int
        Maximum aggregation levels
    max_passes : int
        Maximum local-moving passes per level
    seed : int, optional
        When given, nodes are visited in a seed-derived permutation per
        level; otherwise in index order
    deadline_seconds : float, optional
        Wall-clock budget
    """

    def __init__(
        self,
        resolution: float = 1.0,
        max_levels: int = 10,
        max_passes: int = 100,
        seed: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
    ):
        self.resolution = float(resolution)
        self.max_levels = int(max_levels)
        self.max_passes = int(max_passes)
        self.seed = seed
        self.deadline_seconds = deadline_seconds
        self.levels = 0
        self.passes = 0
        self.exhausted = False
        self.cancelled = False
        # Fraction of nodes that changed community in the most recent pass
        self.last_moved_fraction = 0.0

    def _expired(self, start: float) -> bool:
        return self.deadline_seconds is not None and time.monotonic() - start >= self.deadline_seconds

    def _move_nodes(
        self, graph: sparse.csr_matrix, order: np.ndarray, start: float
    ) -> Tuple[np.ndarray, bool]:
        """Local moving phase; returns ``(communities, moved)``."""
        n = graph.shape[0]
        indptr, indices, weights = graph.indptr, graph.indices, graph.data
        degree = np.asarray(graph.sum(axis=1)).ravel()
        m2 = float(degree.sum())
        gamma = self.resolution

        community = np.arange(n)
        totals = degree.copy()
        moved_any = False

        for _ in range(self.max_passes):
            if self._expired(start):
                self.cancelled = True
                break
            self.passes += 1
            n_moved = 0
            for i in order:
                ci = community[i]
                k_i = degree[i]

                links: Dict[int, float] = {}
                for ptr in range(indptr[i], indptr[i + 1]):
                    j = indices[ptr]
                    if j == i:
                        continue
                    c = community[j]
                    links[c] = links.get(c, 0.0) + weights[ptr]

                totals[ci] -= k_i
                stay = links.get(ci, 0.0) - gamma * k_i * totals[ci] / m2
                best, best_gain = ci, 0.0
                for c in sorted(links):
                    if c == ci:
                        continue
                    gain = links[c] - gamma * k_i * totals[c] / m2 - stay
                    if gain > best_gain + GAIN_TOLERANCE:
                        best, best_gain = c, gain
                totals[best] += k_i

                if best != ci:
                    community[i] = best
                    n_moved += 1
            self.last_moved_fraction = n_moved / n
            moved_any = moved_any or n_moved > 0
            if n_moved == 0:
                break
        else:
            self.exhausted = True
        return community, moved_any

    def fit(self, adjacency: sparse.csr_matrix) -> np.ndarray:
        """Partition ``adjacency``; returns labels in first-occurrence order."""
        n = adjacency.shape[0]
        if n == 0:
            return np.zeros(0, dtype=np.int64)
        if adjacency.nnz == 0:
            return np.arange(n, dtype=np.int64)

        start = time.monotonic()
        labels = np.arange(n)
        graph = sparse.csr_matrix(adjacency, dtype=float)

        for level in range(self.max_levels):
            if self.seed is None:
                order = np.arange(graph.shape[0])
            else:
                rng = np.random.default_rng(derive_seed(self.seed, level))
                order = rng.permutation(graph.shape[0])

            community, moved = self._move_nodes(graph, order, start)
            self.levels += 1
            if not moved:
                break

            community = relabel_first_occurrence(community)
            labels = community[labels]
            n_comms = int(community.max()) + 1
            membership = sparse.csr_matrix(
                (np.ones(graph.shape[0]), (np.arange(graph.shape[0]), community)),
                shape=(graph.shape[0], n_comms),
            )
            graph = (membership.T @ graph @ membership).tocsr()
            if self.cancelled:
                break
        else:
            self.exhausted = True

        return relabel_first_occurrence(labels)


class ClusteringEngine:
    """Clustering engine with kNN graph construction and Louvain optimization.

    Parameters
    ----------
    config : ClusteringConfig, optional
        Clustering configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from sctrace.core.clustering import ClusteringEngine, ClusteringConfig
    >>> engine = ClusteringEngine(ClusteringConfig(resolution=0.8))
    >>> result = engine.run_clustering(integrated.embedding)
    >>> result.clusters.sizes()
    """

    def __init__(
        self,
        config: Optional[ClusteringConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringConfig()
        self.logger = logger or logging.getLogger(__name__)
        if self.config.metric not in METRICS:
            raise ValueError(f"Unknown metric '{self.config.metric}'. Use one of {METRICS}")
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import sklearn  # noqa: F401
        except ImportError:
            raise RuntimeError(
                "Clustering requires scikit-learn. Install with: pip install scikit-learn"
            )

    def build_knn_graph(self, embedding: Embedding) -> sparse.csr_matrix:
        """Symmetric kNN graph of an embedding."""
        return build_knn_graph(embedding.coords, self.config.k_neighbors, self.config.metric)

    @staticmethod
    def compute_centroids(coords: np.ndarray, labels: np.ndarray) -> np.ndarray:
        """Mean coordinates per cluster (n_clusters, n_dims)."""
        n_clusters = int(labels.max()) + 1 if labels.size else 0
        centroids = np.zeros((n_clusters, coords.shape[1]))
        for c in range(n_clusters):
            centroids[c] = coords[labels == c].mean(axis=0)
        return centroids

    def run_clustering(
        self,
        embedding: Embedding,
        resolution: Optional[float] = None,
        graph: Optional[sparse.csr_matrix] = None,
    ) -> ClusteringResult:
        """Partition the cells of an embedding.

        Parameters
        ----------
        embedding : Embedding
            Integrated (or PCA) embedding
        resolution : float, optional
            Overrides the configured resolution
        graph : sparse.csr_matrix, optional
            Precomputed kNN graph (reused across resolutions)

        Returns
        -------
        ClusteringResult
            Cluster set with centroids and modularity
        """
        cfg = self.config
        resolution = float(cfg.resolution if resolution is None else resolution)
        if graph is None:
            graph = self.build_knn_graph(embedding)

        optimizer = Louvain(
            resolution=resolution,
            max_levels=cfg.max_levels,
            max_passes=cfg.max_passes,
            seed=cfg.seed if cfg.shuffle else None,
            deadline_seconds=cfg.deadline_seconds,
        )
        labels = optimizer.fit(graph)
        converged = not (optimizer.exhausted or optimizer.cancelled)
        score = modularity(graph, labels, resolution) if labels.size else float("nan")

        clusters = ClusterSet(
            labels=labels,
            cell_ids=embedding.cell_ids,
            resolution=resolution,
            centroids=self.compute_centroids(embedding.coords, labels),
            modularity=score,
            converged=converged,
            version=chain_version(
                "clusters", embedding.version, stable_hash(cfg), str(resolution)
            ),
        )
        result = ClusteringResult(
            clusters=clusters,
            n_clusters=clusters.n_clusters,
            cluster_sizes=clusters.sizes(),
            levels=optimizer.levels,
            passes=optimizer.passes,
            converged=converged,
        )

        if not converged:
            warning = ConvergenceWarning(
                stage="cluster",
                iterations=optimizer.passes,
                displacement=optimizer.last_moved_fraction,
                cancelled=optimizer.cancelled,
                details={
                    "levels": optimizer.levels,
                    "resolution": resolution,
                    "modularity": score,
                },
            )
            warnings.warn(warning, stacklevel=2)
            self.logger.warning(str(warning))
            result.warnings.append(warning)

        self.logger.info(
            "Clustering at resolution %.2f: %d clusters, modularity %.4f (%d levels, %d passes)",
            resolution,
            result.n_clusters,
            score,
            optimizer.levels,
            optimizer.passes,
        )
        return result

    def sweep_resolutions(
        self,
        embedding: Embedding,
        resolutions: Sequence[float],
    ) -> List[ClusterSet]:
        """Cluster at several resolutions over one shared kNN graph."""
        graph = self.build_knn_graph(embedding)
        return [
            self.run_clustering(embedding, resolution=r, graph=graph).clusters
            for r in resolutions
        ]
