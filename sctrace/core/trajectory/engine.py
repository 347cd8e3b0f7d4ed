"""Trajectory inference over a cluster graph.

Clusters are connected when their cells share more kNN edges than expected
at random (observed / expected connectivity). Edges are weighted by the
Euclidean distance between cluster centroids, and a minimum spanning
forest orders the clusters. Pseudotime is the tree path distance from the
root cluster plus a per-cell offset along the incoming tree edge.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ...utils.hashing import chain_version, stable_hash
from ..artifacts import ClusterSet, Embedding, ExpressionMatrix, GeneScope, TrajectoryGraph
from ..clustering.config import METRICS
from ..clustering.engine import build_knn_graph
from ..errors import ConfigValidationError, DisconnectedTrajectoryError
from .config import RootStrategy, TrajectoryConfig

# Floor for centroid distances so coincident centroids keep their edge
MIN_EDGE_WEIGHT = 1e-12


@dataclass
class TrajectoryResult:
    """Result from trajectory inference.

    Attributes
    ----------
    graph : TrajectoryGraph
        Spanning forest with cluster and cell pseudotime
    connectivity : pd.DataFrame
        Candidate cluster pairs with observed edges, connectivity, weight,
        and whether they were kept and used by the tree
    root_reason : str
        How the root was chosen
    disconnected : List[DisconnectedTrajectoryError]
        One entry per cluster unreachable from the root
    """

    graph: TrajectoryGraph
    connectivity: pd.DataFrame = field(default_factory=pd.DataFrame)
    root_reason: str = ""
    disconnected: List[DisconnectedTrajectoryError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.graph.root,
            "root_reason": self.root_reason,
            "n_edges": len(self.graph.edges),
            "unreachable": list(self.graph.unreachable),
        }


def pseudotime_bins(trajectory: TrajectoryGraph, n_bins: int) -> pd.Series:
    """Equal-width pseudotime bins as group labels for DE.

    Cells with undefined pseudotime get a missing label.
    """
    if n_bins < 1:
        raise ValueError("n_bins must be >= 1")
    values = trajectory.cell_pseudotime
    width = len(str(n_bins))
    labels = [f"bin_{i + 1:0{width}d}" for i in range(n_bins)]
    defined = values.dropna()
    out = pd.Series(np.nan, index=values.index, dtype=object, name="group")
    if defined.empty:
        return out
    if n_bins == 1 or defined.min() == defined.max():
        out.loc[defined.index] = labels[0]
        return out
    binned = pd.cut(defined, bins=n_bins, labels=labels, include_lowest=True)
    out.loc[defined.index] = binned.astype(str).to_numpy()
    return out


class TrajectoryEngine:
    """Minimum-spanning-forest trajectory inference.

    Parameters
    ----------
    config : TrajectoryConfig
        Trajectory configuration (``root_strategy`` is required)
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from sctrace.core.trajectory import TrajectoryEngine, TrajectoryConfig, RootStrategy
    >>> config = TrajectoryConfig(root_strategy=RootStrategy(cluster=0))
    >>> result = TrajectoryEngine(config).infer(embedding, clusters)
    >>> result.graph.cluster_pseudotime
    """

    def __init__(
        self,
        config: Optional[TrajectoryConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or TrajectoryConfig()
        self.logger = logger or logging.getLogger(__name__)
        errors = []
        if self.config.root_strategy is None:
            errors.append("trajectory.root_strategy is required")
        else:
            errors.extend(self.config.root_strategy.validate())
        if self.config.metric not in METRICS:
            errors.append(f"trajectory.metric must be one of {METRICS}")
        if errors:
            raise ConfigValidationError(errors)

    def cluster_connectivity(
        self,
        embedding: Embedding,
        clusters: ClusterSet,
    ) -> pd.DataFrame:
        """Observed / expected kNN edges between every cluster pair.

        Returns
        -------
        pd.DataFrame
            Columns: source, target, n_edges, connectivity (source < target,
            only pairs sharing at least one edge)
        """
        adjacency = build_knn_graph(embedding.coords, self.config.k_neighbors, self.config.metric)
        labels = clusters.labels
        n_cells = len(labels)
        n_clusters = clusters.n_clusters
        membership = sparse.csr_matrix(
            (np.ones(n_cells), (np.arange(n_cells), labels)), shape=(n_cells, n_clusters)
        )
        between = (membership.T @ adjacency @ membership).toarray()
        sizes = np.bincount(labels, minlength=n_clusters).astype(float)
        degree = np.asarray(adjacency.sum(axis=1)).ravel()
        cluster_degree = np.bincount(labels, weights=degree, minlength=n_clusters)

        records = []
        for i in range(n_clusters):
            for j in range(i + 1, n_clusters):
                observed = between[i, j]
                if observed <= 0:
                    continue
                expected = (cluster_degree[i] * sizes[j] + cluster_degree[j] * sizes[i]) / max(n_cells - 1, 1)
                score = min(observed / expected, 1.0) if expected > 0 else 0.0
                records.append(
                    {"source": i, "target": j, "n_edges": int(observed), "connectivity": float(score)}
                )
        return pd.DataFrame(records, columns=["source", "target", "n_edges", "connectivity"])

    def select_root(
        self,
        clusters: ClusterSet,
        matrix: Optional[ExpressionMatrix] = None,
        gene_scope: Optional[GeneScope] = None,
    ) -> Tuple[int, str]:
        """Resolve the root cluster from the configured strategy.

        Raises
        ------
        ConfigValidationError
            If the explicit root is not a cluster, or no marker gene is
            available for the marker heuristic
        """
        strategy: RootStrategy = self.config.root_strategy
        if strategy.cluster is not None:
            if strategy.cluster not in clusters.cluster_ids:
                raise ConfigValidationError(
                    [f"Root cluster {strategy.cluster} not in clusters {clusters.cluster_ids}"]
                )
            return int(strategy.cluster), f"explicit cluster {strategy.cluster}"

        if matrix is None:
            raise ConfigValidationError(["Marker-based root selection requires the count matrix"])
        gene_scope = gene_scope or GeneScope.full()
        scoped = [g for g, keep in zip(strategy.markers, gene_scope.mask(strategy.markers)) if keep]
        positions = matrix.gene_positions(scoped)
        if not positions:
            raise ConfigValidationError(
                [f"None of the root markers {strategy.markers} are available in scope {gene_scope.label()}"]
            )

        rows = matrix.cell_ids.get_indexer(clusters.cell_ids)
        if (rows < 0).any():
            raise ConfigValidationError(["Cluster cells are missing from the count matrix"])
        depth = matrix.total_counts().astype(float)
        scale = np.divide(1e4, depth, out=np.zeros_like(depth), where=depth > 0)
        expr = np.log1p(matrix.counts[:, positions].toarray() * scale[:, None])[rows]
        score = np.array(
            [expr[clusters.labels == c].mean() for c in clusters.cluster_ids]
        )
        root = int(np.argmax(score) if strategy.direction == "high" else np.argmin(score))
        return root, f"{strategy.direction} expression of {len(positions)} markers"

    def _spanning_forest(
        self,
        centroids: np.ndarray,
        connectivity: pd.DataFrame,
        n_clusters: int,
    ) -> Tuple[sparse.csr_matrix, pd.DataFrame]:
        """Minimum spanning forest of the thresholded cluster graph."""
        from scipy.sparse.csgraph import minimum_spanning_tree

        table = connectivity.copy()
        if table.empty:
            table["weight"] = []
            table["kept"] = []
            table["in_tree"] = []
            return sparse.csr_matrix((n_clusters, n_clusters)), table

        table["weight"] = [
            max(float(np.linalg.norm(centroids[s] - centroids[t])), MIN_EDGE_WEIGHT)
            for s, t in zip(table["source"], table["target"])
        ]
        table["kept"] = table["connectivity"] >= self.config.connectivity_threshold
        kept = table[table["kept"]]
        graph = sparse.csr_matrix(
            (kept["weight"].to_numpy(), (kept["source"].to_numpy(), kept["target"].to_numpy())),
            shape=(n_clusters, n_clusters),
        )
        tree = minimum_spanning_tree(graph).tocsr()
        tree = tree.maximum(tree.T).tocsr()
        table["in_tree"] = [
            bool(tree[s, t] > 0) for s, t in zip(table["source"], table["target"])
        ]
        return tree, table

    @staticmethod
    def _orient(tree: sparse.csr_matrix, root: int) -> Tuple[np.ndarray, np.ndarray, List[Tuple[int, int, float]]]:
        """Distances from ``root`` and the tree edges it reaches, oriented away from it.

        Clusters in other components get an infinite distance, no parent
        and no edges.
        """
        from scipy.sparse.csgraph import dijkstra

        n = tree.shape[0]
        distances, predecessors = dijkstra(tree, directed=False, indices=root, return_predecessors=True)
        parents = predecessors.astype(np.int64)

        edges = []
        for node in range(n):
            parent = int(parents[node])
            if parent >= 0:
                edges.append((parent, node, float(tree[parent, node])))
        edges.sort()
        return distances, parents, edges

    def infer(
        self,
        embedding: Embedding,
        clusters: ClusterSet,
        matrix: Optional[ExpressionMatrix] = None,
        gene_scope: Optional[GeneScope] = None,
    ) -> TrajectoryResult:
        """Build the cluster trajectory and per-cell pseudotime.

        Parameters
        ----------
        embedding : Embedding
            Embedding the clusters were computed on
        clusters : ClusterSet
            Partition of the embedding cells
        matrix : ExpressionMatrix, optional
            Counts for marker-based root selection
        gene_scope : GeneScope, optional
            Scope for marker lookup

        Returns
        -------
        TrajectoryResult
            Trajectory graph plus connectivity table and disconnected clusters
        """
        gene_scope = gene_scope or GeneScope.full()
        if not embedding.cell_ids.equals(clusters.cell_ids):
            raise ConfigValidationError(["Clusters and embedding cover different cells"])

        root, reason = self.select_root(clusters, matrix, gene_scope)
        n_clusters = clusters.n_clusters
        coords = embedding.coords
        centroids = np.asarray(clusters.centroids, dtype=float)
        if centroids.shape != (n_clusters, embedding.n_dims):
            centroids = np.vstack([coords[clusters.labels == c].mean(axis=0) for c in clusters.cluster_ids])

        connectivity = self.cluster_connectivity(embedding, clusters)
        tree, table = self._spanning_forest(centroids, connectivity, n_clusters)
        distances, parents, edges = self._orient(tree, root)

        reachable = np.isfinite(distances)
        cluster_time = pd.Series(
            np.where(reachable, distances, np.nan),
            index=pd.Index(clusters.cluster_ids, name="cluster"),
            name="pseudotime",
        )

        children: Dict[int, List[Tuple[float, int]]] = {}
        for s, t, w in edges:
            children.setdefault(s, []).append((w, t))

        cell_time = np.full(len(clusters.labels), np.nan)
        for c in clusters.cluster_ids:
            if not reachable[c]:
                continue
            members = clusters.labels == c
            if c == root:
                if not children.get(c):
                    cell_time[members] = 0.0
                    continue
                _, toward = min(children[c])
                origin, direction = centroids[c], centroids[toward] - centroids[c]
            else:
                origin, direction = centroids[c], centroids[c] - centroids[parents[c]]
            length = float(np.linalg.norm(direction))
            if length <= 0:
                cell_time[members] = distances[c]
                continue
            projection = (coords[members] - origin) @ (direction / length)
            offset = np.clip(projection, -length / 2.0, length / 2.0)
            cell_time[members] = np.maximum(distances[c] + offset, 0.0)

        unreachable = [c for c in clusters.cluster_ids if not reachable[c]]
        sizes = clusters.sizes()
        disconnected = [DisconnectedTrajectoryError(c, root, sizes.get(c, 0)) for c in unreachable]
        for issue in disconnected:
            self.logger.warning(str(issue))

        graph = TrajectoryGraph(
            nodes=tuple(clusters.cluster_ids),
            edges=pd.DataFrame(edges, columns=["source", "target", "weight"]),
            root=root,
            cluster_pseudotime=cluster_time,
            cell_pseudotime=pd.Series(cell_time, index=clusters.cell_ids, name="pseudotime"),
            unreachable=tuple(unreachable),
            version=chain_version(
                "trajectory",
                clusters.version,
                embedding.version,
                stable_hash(self.config),
                gene_scope.label(),
            ),
        )
        self.logger.info(
            "Trajectory rooted at cluster %d (%s): %d tree edges, %d unreachable clusters",
            root, reason, len(edges), len(unreachable),
        )
        return TrajectoryResult(
            graph=graph, connectivity=table, root_reason=reason, disconnected=disconnected
        )
