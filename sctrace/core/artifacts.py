"""Immutable artifacts exchanged between pipeline stages.

Every stage consumes artifacts and produces new ones; no stage mutates its
inputs. Arrays are copied on construction and marked read-only, and each
artifact carries a ``version`` tag that chains the digests of the stage and
its upstream artifacts. Recomputing an upstream stage therefore changes the
versions of everything downstream.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from ..utils.hashing import chain_version, hash_arrays
from .errors import InputShapeError


def _frozen_array(values: Any, dtype: Any = None) -> np.ndarray:
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


def _frozen_csr(matrix: Any) -> sparse.csr_matrix:
    csr = sparse.csr_matrix(matrix, copy=True)
    csr.sum_duplicates()
    csr.sort_indices()
    for arr in (csr.data, csr.indices, csr.indptr):
        arr.setflags(write=False)
    return csr


def _as_index(values: Iterable[Any], name: str) -> pd.Index:
    return pd.Index([str(v) for v in values], name=name)


@dataclass(frozen=True)
class GeneScope:
    """Gene set used by scope-aware stages.

    ``GeneScope.full()`` keeps every gene; ``GeneScope.restricted(genes)``
    limits variable-feature candidates and marker lookups to ``genes``.
    """

    genes: Optional[Tuple[str, ...]] = None

    @classmethod
    def full(cls) -> "GeneScope":
        return cls(None)

    @classmethod
    def restricted(cls, genes: Iterable[str]) -> "GeneScope":
        return cls(tuple(dict.fromkeys(str(g) for g in genes)))

    @property
    def is_full(self) -> bool:
        return self.genes is None

    def mask(self, gene_ids: Sequence[str]) -> np.ndarray:
        """Boolean mask of ``gene_ids`` that fall inside the scope."""
        if self.genes is None:
            return np.ones(len(gene_ids), dtype=bool)
        allowed = set(self.genes)
        return np.array([g in allowed for g in gene_ids], dtype=bool)

    def label(self) -> str:
        """Short tag naming the scope; restricted scopes carry a digest of their genes."""
        if self.genes is None:
            return "full"
        return f"restricted[{len(self.genes)}:{hash_arrays(list(self.genes))[:8]}]"


@dataclass(frozen=True)
class ExpressionMatrix:
    """Sparse cells x genes count matrix with a per-cell metadata table.

    Attributes
    ----------
    counts : sparse.csr_matrix
        Non-negative integer counts (n_cells, n_genes)
    cell_ids : pd.Index
        Cell identifiers (row labels)
    gene_ids : pd.Index
        Gene identifiers (column labels)
    obs : pd.DataFrame
        Metadata indexed by cell id
    sample_id : str, optional
        Sample identifier for single-sample matrices
    stage : str
        Stage that produced this matrix ("raw", "qc", "merged")
    version : str
        Chained version tag
    """

    counts: sparse.csr_matrix
    cell_ids: pd.Index
    gene_ids: pd.Index
    obs: pd.DataFrame = field(default_factory=pd.DataFrame)
    sample_id: Optional[str] = None
    stage: str = "raw"
    version: str = ""

    def __post_init__(self) -> None:
        counts = _frozen_csr(self.counts)
        cell_ids = _as_index(self.cell_ids, "cell_id")
        gene_ids = _as_index(self.gene_ids, "gene_id")

        if counts.shape != (len(cell_ids), len(gene_ids)):
            raise InputShapeError(
                f"Matrix shape {counts.shape} does not match "
                f"{len(cell_ids)} cell ids x {len(gene_ids)} gene ids"
            )
        if cell_ids.has_duplicates:
            dup = cell_ids[cell_ids.duplicated()].unique()[:5].tolist()
            raise InputShapeError(f"Duplicate cell ids: {dup}")
        if gene_ids.has_duplicates:
            dup = gene_ids[gene_ids.duplicated()].unique()[:5].tolist()
            raise InputShapeError(f"Duplicate gene ids: {dup}")
        if counts.nnz and counts.data.min() < 0:
            raise InputShapeError("Count matrix contains negative values")

        obs = self.obs.copy() if self.obs is not None else pd.DataFrame()
        if obs.empty and len(obs.columns) == 0:
            obs = pd.DataFrame(index=cell_ids)
        else:
            obs.index = obs.index.astype(str)
            if len(obs) != len(cell_ids) or not obs.index.isin(cell_ids).all():
                raise InputShapeError(
                    f"Metadata table has {len(obs)} rows that do not match "
                    f"the {len(cell_ids)} matrix cells"
                )
            obs = obs.reindex(cell_ids)
        obs.index.name = "cell_id"

        object.__setattr__(self, "counts", counts)
        object.__setattr__(self, "cell_ids", cell_ids)
        object.__setattr__(self, "gene_ids", gene_ids)
        object.__setattr__(self, "obs", obs)
        if not self.version:
            object.__setattr__(self, "version", chain_version(self.stage, self.content_hash()))

    @property
    def n_cells(self) -> int:
        return self.counts.shape[0]

    @property
    def n_genes(self) -> int:
        return self.counts.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        return self.counts.shape

    @cached_property
    def _hash(self) -> str:
        return hash_arrays(self.counts, self.cell_ids, self.gene_ids, self.obs)

    def content_hash(self) -> str:
        """Digest of counts, identifiers and metadata."""
        return self._hash

    def total_counts(self) -> np.ndarray:
        return np.asarray(self.counts.sum(axis=1)).ravel()

    def genes_detected(self) -> np.ndarray:
        return np.diff(self.counts.indptr)

    def subset_cells(self, mask: Any, stage: Optional[str] = None) -> "ExpressionMatrix":
        """Return a new matrix with the selected rows."""
        mask = np.asarray(mask)
        stage = stage or self.stage
        return ExpressionMatrix(
            counts=self.counts[mask],
            cell_ids=self.cell_ids[mask],
            gene_ids=self.gene_ids,
            obs=self.obs.iloc[np.flatnonzero(mask) if mask.dtype == bool else mask],
            sample_id=self.sample_id,
            stage=stage,
            version=chain_version(stage, self.version, hash_arrays(mask)),
        )

    def subset_genes(self, mask: Any, stage: Optional[str] = None) -> "ExpressionMatrix":
        """Return a new matrix with the selected columns."""
        mask = np.asarray(mask)
        stage = stage or self.stage
        return ExpressionMatrix(
            counts=self.counts[:, mask],
            cell_ids=self.cell_ids,
            gene_ids=self.gene_ids[mask],
            obs=self.obs,
            sample_id=self.sample_id,
            stage=stage,
            version=chain_version(stage, self.version, hash_arrays(mask)),
        )

    def gene_positions(self, genes: Iterable[str]) -> List[int]:
        """Column positions of ``genes`` that exist in this matrix."""
        lookup = {g: i for i, g in enumerate(self.gene_ids)}
        return [lookup[g] for g in genes if g in lookup]

    def to_anndata(self) -> Any:
        """Export as an AnnData object (counts in ``X`` and ``layers['counts']``)."""
        import anndata as ad

        adata = ad.AnnData(
            X=self.counts.astype(np.float32),
            obs=self.obs.copy(),
            var=pd.DataFrame(index=self.gene_ids.copy()),
        )
        adata.layers["counts"] = self.counts.copy()
        adata.uns["sctrace_version"] = self.version
        return adata

    def to_triplets(self) -> pd.DataFrame:
        """Long-format ``(cell_id, gene_id, count)`` table of non-zero entries."""
        coo = self.counts.tocoo()
        return pd.DataFrame({
            "cell_id": self.cell_ids[coo.row],
            "gene_id": self.gene_ids[coo.col],
            "count": coo.data,
        })


@dataclass(frozen=True)
class NormalizedMatrix:
    """Variance-stabilized residuals of the selected variable features.

    Attributes
    ----------
    residuals : np.ndarray
        Pearson residuals (n_cells, n_variable_features)
    cell_ids : pd.Index
        Cell identifiers
    gene_ids : pd.Index
        Selected variable features, ranked by residual variance
    gene_stats : pd.DataFrame
        Per-gene model statistics for all tested genes
    gene_scope : GeneScope
        Scope used for feature selection
    seed : int
        Seed used downstream (PCA)
    version : str
        Chained version tag
    """

    residuals: np.ndarray
    cell_ids: pd.Index
    gene_ids: pd.Index
    gene_stats: pd.DataFrame
    gene_scope: GeneScope = field(default_factory=GeneScope.full)
    seed: int = 0
    version: str = ""

    def __post_init__(self) -> None:
        residuals = _frozen_array(self.residuals, dtype=float)
        cell_ids = _as_index(self.cell_ids, "cell_id")
        gene_ids = _as_index(self.gene_ids, "gene_id")
        if residuals.shape != (len(cell_ids), len(gene_ids)):
            raise InputShapeError(
                f"Residual shape {residuals.shape} does not match "
                f"{len(cell_ids)} cells x {len(gene_ids)} genes"
            )
        object.__setattr__(self, "residuals", residuals)
        object.__setattr__(self, "cell_ids", cell_ids)
        object.__setattr__(self, "gene_ids", gene_ids)
        object.__setattr__(self, "gene_stats", self.gene_stats.copy())
        if not self.version:
            object.__setattr__(
                self, "version", chain_version("normalized", self.content_hash())
            )

    @property
    def n_cells(self) -> int:
        return self.residuals.shape[0]

    @property
    def n_genes(self) -> int:
        return self.residuals.shape[1]

    @cached_property
    def _hash(self) -> str:
        return hash_arrays(self.residuals, self.cell_ids, self.gene_ids)

    def content_hash(self) -> str:
        return self._hash

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.residuals, index=self.cell_ids, columns=self.gene_ids)


@dataclass(frozen=True)
class Embedding:
    """Low-dimensional cell coordinates.

    Attributes
    ----------
    coords : np.ndarray
        Coordinates (n_cells, n_dims)
    cell_ids : pd.Index
        Cell identifiers
    obs : pd.DataFrame
        Per-cell metadata (sample_id, batch)
    stage : str
        Producing stage ("pca" or "integrated")
    version : str
        Chained version tag
    """

    coords: np.ndarray
    cell_ids: pd.Index
    obs: pd.DataFrame = field(default_factory=pd.DataFrame)
    stage: str = "pca"
    version: str = ""

    def __post_init__(self) -> None:
        coords = _frozen_array(self.coords, dtype=float)
        if coords.ndim != 2:
            raise InputShapeError(f"Embedding must be 2-D, got shape {coords.shape}")
        cell_ids = _as_index(self.cell_ids, "cell_id")
        if coords.shape[0] != len(cell_ids):
            raise InputShapeError(
                f"Embedding has {coords.shape[0]} rows for {len(cell_ids)} cell ids"
            )
        obs = self.obs.copy() if self.obs is not None else pd.DataFrame()
        if len(obs.columns) == 0 and len(obs) == 0:
            obs = pd.DataFrame(index=cell_ids)
        else:
            obs.index = obs.index.astype(str)
            if len(obs) != len(cell_ids) or not obs.index.isin(cell_ids).all():
                raise InputShapeError("Embedding metadata does not match its cell ids")
            obs = obs.reindex(cell_ids)
        object.__setattr__(self, "coords", coords)
        object.__setattr__(self, "cell_ids", cell_ids)
        object.__setattr__(self, "obs", obs)
        if not self.version:
            object.__setattr__(self, "version", chain_version(self.stage, self.content_hash()))

    @property
    def n_cells(self) -> int:
        return self.coords.shape[0]

    @property
    def n_dims(self) -> int:
        return self.coords.shape[1]

    @cached_property
    def _hash(self) -> str:
        return hash_arrays(self.coords, self.cell_ids)

    def content_hash(self) -> str:
        return self._hash

    def labels(self, key: str = "batch") -> np.ndarray:
        """Per-cell labels from ``obs[key]`` (single label if absent)."""
        if key not in self.obs.columns:
            return np.array(["batch_0"] * self.n_cells, dtype=object)
        return self.obs[key].astype(str).to_numpy()

    def to_frame(self, prefix: str = "dim") -> pd.DataFrame:
        columns = [f"{prefix}_{i + 1}" for i in range(self.n_dims)]
        return pd.DataFrame(self.coords, index=self.cell_ids, columns=columns)


@dataclass(frozen=True)
class ClusterSet:
    """Partition of an embedding's cells into integer-labelled clusters.

    Attributes
    ----------
    labels : np.ndarray
        Cluster label per cell (0..n_clusters-1, first-occurrence order)
    cell_ids : pd.Index
        Cell identifiers, in embedding order
    resolution : float
        Resolution used for community detection
    centroids : np.ndarray
        Cluster centroids in embedding space (n_clusters, n_dims)
    modularity : float
        Modularity of the final partition
    converged : bool
        Whether the optimization terminated before its budget
    version : str
        Chained version tag
    """

    labels: np.ndarray
    cell_ids: pd.Index
    resolution: float
    centroids: np.ndarray
    modularity: float = float("nan")
    converged: bool = True
    version: str = ""

    def __post_init__(self) -> None:
        labels = _frozen_array(self.labels, dtype=np.int64)
        cell_ids = _as_index(self.cell_ids, "cell_id")
        if labels.shape != (len(cell_ids),):
            raise InputShapeError(
                f"{labels.shape[0]} labels for {len(cell_ids)} cells"
            )
        object.__setattr__(self, "labels", labels)
        object.__setattr__(self, "cell_ids", cell_ids)
        object.__setattr__(self, "centroids", _frozen_array(self.centroids, dtype=float))
        if not self.version:
            object.__setattr__(
                self,
                "version",
                chain_version("clusters", hash_arrays(labels, cell_ids, self.resolution)),
            )

    @property
    def n_clusters(self) -> int:
        return int(self.labels.max()) + 1 if self.labels.size else 0

    @property
    def cluster_ids(self) -> List[int]:
        return list(range(self.n_clusters))

    def members(self, cluster_id: int) -> pd.Index:
        """Cell ids assigned to ``cluster_id``."""
        return self.cell_ids[self.labels == int(cluster_id)]

    def sizes(self) -> Dict[int, int]:
        counts = np.bincount(self.labels, minlength=self.n_clusters)
        return {int(c): int(n) for c, n in enumerate(counts)}

    def is_partition(self, cell_ids: Optional[Iterable[str]] = None) -> bool:
        """Check clusters are disjoint and cover ``cell_ids`` exactly."""
        members = [set(self.members(c)) for c in self.cluster_ids]
        union = set().union(*members) if members else set()
        disjoint = sum(len(m) for m in members) == len(union)
        expected = set(self.cell_ids if cell_ids is None else map(str, cell_ids))
        return disjoint and union == expected

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"cluster": self.labels}, index=self.cell_ids
        )


@dataclass(frozen=True)
class TrajectoryGraph:
    """Cluster-level spanning forest with per-cell pseudotime.

    Attributes
    ----------
    nodes : Tuple[int, ...]
        Cluster ids
    edges : pd.DataFrame
        Tree edges oriented away from the root (source, target, weight)
    root : int
        Root cluster id
    cluster_pseudotime : pd.Series
        Cumulative path distance per cluster (NaN if unreachable)
    cell_pseudotime : pd.Series
        Pseudotime per cell (NaN marks "undefined")
    unreachable : Tuple[int, ...]
        Clusters not connected to the root
    version : str
        Chained version tag
    """

    nodes: Tuple[int, ...]
    edges: pd.DataFrame
    root: int
    cluster_pseudotime: pd.Series
    cell_pseudotime: pd.Series
    unreachable: Tuple[int, ...] = ()
    version: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(int(n) for n in self.nodes))
        object.__setattr__(self, "unreachable", tuple(int(n) for n in self.unreachable))
        object.__setattr__(self, "edges", self.edges.copy().reset_index(drop=True))
        object.__setattr__(self, "cluster_pseudotime", self.cluster_pseudotime.copy())
        object.__setattr__(self, "cell_pseudotime", self.cell_pseudotime.copy())
        if not self.version:
            object.__setattr__(
                self,
                "version",
                chain_version(
                    "trajectory",
                    hash_arrays(self.edges, self.root, self.cell_pseudotime.to_numpy()),
                ),
            )

    @property
    def reachable(self) -> Tuple[int, ...]:
        blocked = set(self.unreachable)
        return tuple(n for n in self.nodes if n not in blocked)

    def parent_map(self) -> Dict[int, int]:
        return {int(t): int(s) for s, t in zip(self.edges["source"], self.edges["target"])}

    def children(self, node: int) -> List[int]:
        return sorted(int(t) for s, t in zip(self.edges["source"], self.edges["target"]) if s == node)

    def path_from_root(self, node: int) -> List[int]:
        """Cluster path from the root to ``node`` (empty if unreachable)."""
        if node in self.unreachable:
            return []
        parents = self.parent_map()
        path = [int(node)]
        while path[-1] != self.root:
            if path[-1] not in parents:
                return []
            path.append(parents[path[-1]])
        return path[::-1]

    def is_acyclic(self) -> bool:
        """True if the edge set forms a forest (no undirected cycles)."""
        parent = {n: n for n in self.nodes}

        def find(x: int) -> int:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        for s, t in zip(self.edges["source"], self.edges["target"]):
            rs, rt = find(int(s)), find(int(t))
            if rs == rt:
                return False
            parent[rs] = rt
        return True

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"pseudotime": self.cell_pseudotime})


@dataclass(frozen=True)
class DiffExpResult:
    """Ranked per-gene test results for one pairwise comparison.

    Attributes
    ----------
    group_a : str
        First group label
    group_b : str
        Second group label ("rest" for one-vs-rest)
    table : pd.DataFrame
        Columns: gene, group_a, group_b, log2_fold_change, statistic,
        p_value, p_adj, mean_a, mean_b, significant, status
    alpha : float
        Significance level applied to ``p_adj``
    """

    group_a: str
    group_b: str
    table: pd.DataFrame
    alpha: float = 0.05

    def __post_init__(self) -> None:
        object.__setattr__(self, "table", self.table.copy().reset_index(drop=True))

    @property
    def comparison(self) -> str:
        return f"{self.group_a}_vs_{self.group_b}"

    @property
    def n_tested(self) -> int:
        return int((self.table["status"] == "tested").sum())

    @property
    def n_not_applicable(self) -> int:
        return int((self.table["status"] == "not_applicable").sum())

    def significant(self) -> pd.DataFrame:
        return self.table[self.table["significant"]].copy()
