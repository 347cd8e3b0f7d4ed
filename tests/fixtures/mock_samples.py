"""Synthetic sample generators for testing.

Provides functions to create small count matrices, embeddings and cluster
partitions with known structure, without requiring real data.
"""

from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from sctrace.core.artifacts import ClusterSet, Embedding, ExpressionMatrix
from sctrace.core.preprocessing import DataLoader

GENE_PANEL = [f"GENE{i:02d}" for i in range(1, 41)]
MITO_GENES = ["MT-CO1", "MT-ND1"]
RIBO_GENES = ["RPS3", "RPL5"]


def create_mock_sample(
    sample_id: str,
    n_cells: int = 100,
    n_high_mito: int = 0,
    genes: Optional[Sequence[str]] = None,
    batch: Optional[str] = None,
    seed: int = 0,
) -> ExpressionMatrix:
    """Create one raw sample with controlled QC metrics.

    Every cell expresses every panel gene (1 + Poisson(5) counts) and one
    count per mitochondrial gene, which keeps the mitochondrial fraction
    near 1%. The first ``n_high_mito`` cells carry 40 counts per
    mitochondrial gene instead (about 25% mitochondrial).

    Parameters
    ----------
    sample_id : str
        Sample identifier
    n_cells : int
        Number of cells
    n_high_mito : int
        Number of cells with a high mitochondrial fraction
    genes : Sequence[str], optional
        Panel genes (default: GENE01..GENE40)
    batch : str, optional
        Batch label
    seed : int
        Random seed for reproducibility

    Returns
    -------
    ExpressionMatrix
        Raw counts with cell ids ``cell_000``, ``cell_001``, ...
    """
    rng = np.random.default_rng(seed)
    panel = list(genes) if genes is not None else list(GENE_PANEL)
    all_genes = panel + MITO_GENES + RIBO_GENES
    n_panel = len(panel)

    counts = np.zeros((n_cells, len(all_genes)), dtype=np.int64)
    counts[:, :n_panel] = rng.poisson(5, size=(n_cells, n_panel)) + 1
    counts[:, n_panel:n_panel + 2] = 1
    counts[:n_high_mito, n_panel:n_panel + 2] = 40
    counts[:, n_panel + 2:] = rng.poisson(2, size=(n_cells, 2))

    cell_ids = [f"cell_{i:03d}" for i in range(n_cells)]
    return DataLoader().from_dense(counts, cell_ids, all_genes, sample_id=sample_id, batch=batch)


def create_qc_samples(seed: int = 0) -> List[ExpressionMatrix]:
    """Two 100-cell samples; sample A has 5 cells above 15% mitochondrial.

    Sample B swaps GENE40 for GENE41 so the merged gene axis is a strict
    union of the two panels.
    """
    panel_b = GENE_PANEL[:-1] + ["GENE41"]
    return [
        create_mock_sample("A", n_cells=100, n_high_mito=5, seed=seed),
        create_mock_sample("B", n_cells=100, n_high_mito=0, genes=panel_b, seed=seed + 1),
    ]


def create_celltype_samples(
    n_samples: int = 2,
    n_types: int = 3,
    cells_per_type: int = 30,
    genes_per_type: int = 8,
    n_background: int = 10,
    n_high_mito: int = 0,
    seed: int = 42,
) -> List[ExpressionMatrix]:
    """Samples with distinct cell types marked by type-specific genes.

    Marker genes of a type have mean 20 in cells of that type and 1
    elsewhere; background genes have mean 3 everywhere. Each later sample
    scales all counts by 1.3 to mimic a technical batch effect.

    Returns
    -------
    List[ExpressionMatrix]
        One matrix per sample (ids ``S1``, ``S2``, ...), each with a
        ``cell_type`` column in ``obs``
    """
    rng = np.random.default_rng(seed)
    markers = [f"T{t}_M{j:02d}" for t in range(n_types) for j in range(genes_per_type)]
    background = [f"BG{j:02d}" for j in range(n_background)]
    genes = markers + background + MITO_GENES

    samples = []
    for s in range(n_samples):
        n_cells = n_types * cells_per_type
        cell_type = np.repeat(np.arange(n_types), cells_per_type)
        means = np.full((n_cells, len(genes)), 1.0)
        for t in range(n_types):
            cols = slice(t * genes_per_type, (t + 1) * genes_per_type)
            means[cell_type == t, cols] = 20.0
        means[:, len(markers):len(markers) + n_background] = 3.0
        means *= 1.3 ** s
        counts = rng.poisson(means)
        counts[:, -2:] = 1
        if s == 0 and n_high_mito:
            counts[:n_high_mito, -2:] = 200

        sample_id = f"S{s + 1}"
        cell_ids = [f"{sample_id}_c{i:03d}" for i in range(n_cells)]
        metadata = pd.DataFrame(
            {"cell_type": [f"type_{t}" for t in cell_type]}, index=cell_ids
        )
        samples.append(
            DataLoader().from_dense(
                counts, cell_ids, genes, sample_id=sample_id, metadata=metadata
            )
        )
    return samples


def create_batch_embedding(
    n_per_group: int = 50,
    n_dims: int = 5,
    offset: float = 3.0,
    seed: int = 7,
) -> Embedding:
    """Two cell types observed in two batches, batch B shifted by ``offset``.

    Cells are ordered type 0 batch A, type 1 batch A, type 0 batch B,
    type 1 batch B.
    """
    rng = np.random.default_rng(seed)
    centers = np.zeros((2, n_dims))
    centers[0, 0] = 4.0
    centers[1, 1] = 4.0
    shift = np.zeros(n_dims)
    shift[2] = offset

    blocks, batches, types = [], [], []
    for batch, delta in (("A", 0.0), ("B", 1.0)):
        for t in range(2):
            blocks.append(centers[t] + delta * shift + rng.normal(0, 0.5, size=(n_per_group, n_dims)))
            batches.extend([batch] * n_per_group)
            types.extend([f"type_{t}"] * n_per_group)

    coords = np.vstack(blocks)
    cell_ids = [f"cell_{i:03d}" for i in range(coords.shape[0])]
    obs = pd.DataFrame({"batch": batches, "cell_type": types}, index=cell_ids)
    return Embedding(coords=coords, cell_ids=cell_ids, obs=obs, stage="pca")


def create_blob_embedding(
    n_blobs: int = 3,
    cells_per_blob: int = 40,
    n_dims: int = 4,
    spacing: float = 20.0,
    seed: int = 3,
) -> Embedding:
    """Well-separated Gaussian blobs, cells ordered blob by blob."""
    rng = np.random.default_rng(seed)
    blocks = []
    for b in range(n_blobs):
        center = np.zeros(n_dims)
        center[b % n_dims] = spacing * (1 + b // n_dims)
        blocks.append(center + rng.normal(0, 0.5, size=(cells_per_blob, n_dims)))
    coords = np.vstack(blocks)
    cell_ids = [f"cell_{i:03d}" for i in range(coords.shape[0])]
    return Embedding(coords=coords, cell_ids=cell_ids, stage="integrated")


def create_branching_embedding(
    cells_per_cluster: int = 60,
    noise: float = 0.05,
    include_isolated: bool = False,
    seed: int = 11,
):
    """Y-shaped embedding with a known cluster partition.

    Cells lie densely along a stem from (0, 0) to (10, 0) that splits into
    two branches ending at (20, 15) and (20, -15). Clusters: 0 = first stem
    half, 1 = second stem half, 2 = upper branch, 3 = lower branch. With
    ``include_isolated`` a fifth cluster (4) sits far away at (100, 100)
    and shares no neighbors with the rest.

    Returns
    -------
    Tuple[Embedding, ClusterSet]
        Embedding and the matching partition
    """
    rng = np.random.default_rng(seed)
    segments = [
        ((0.0, 0.0), (5.0, 0.0)),
        ((5.0, 0.0), (10.0, 0.0)),
        ((10.0, 0.0), (20.0, 15.0)),
        ((10.0, 0.0), (20.0, -15.0)),
    ]
    blocks, labels = [], []
    for cluster, (start, end) in enumerate(segments):
        t = np.sort(rng.uniform(0.0, 1.0, cells_per_cluster))
        start, end = np.asarray(start), np.asarray(end)
        points = start + t[:, None] * (end - start)
        blocks.append(points + rng.normal(0, noise, size=points.shape))
        labels.extend([cluster] * cells_per_cluster)

    if include_isolated:
        n_isolated = 30
        blocks.append(np.array([100.0, 100.0]) + rng.normal(0, 0.5, size=(n_isolated, 2)))
        labels.extend([len(segments)] * n_isolated)

    coords = np.vstack(blocks)
    labels = np.asarray(labels, dtype=np.int64)
    cell_ids = [f"cell_{i:03d}" for i in range(coords.shape[0])]
    n_clusters = int(labels.max()) + 1
    centroids = np.vstack([coords[labels == c].mean(axis=0) for c in range(n_clusters)])

    embedding = Embedding(coords=coords, cell_ids=cell_ids, stage="integrated")
    clusters = ClusterSet(labels=labels, cell_ids=cell_ids, resolution=1.0, centroids=centroids)
    return embedding, clusters


def create_de_matrix(n_per_group: int = 20, seed: int = 5) -> ExpressionMatrix:
    """Two groups of cells with one up-regulated gene and two flat genes.

    Genes: ``UP`` (mean 30 in group A, 2 in group B), ``NOISE1..NOISE5``
    (mean 5 in both groups), ``ZERO`` (never detected) and ``FLAT`` (3
    counts in every cell). Cells ``a_00..`` belong to group A, ``b_00..``
    to group B.
    """
    rng = np.random.default_rng(seed)
    n_cells = 2 * n_per_group
    noise = rng.poisson(5, size=(n_cells, 5))
    up = np.concatenate([rng.poisson(30, n_per_group), rng.poisson(2, n_per_group)])
    counts = np.column_stack([up, noise, np.zeros(n_cells), np.full(n_cells, 3)])
    genes = ["UP"] + [f"NOISE{i}" for i in range(1, 6)] + ["ZERO", "FLAT"]
    cell_ids = [f"a_{i:02d}" for i in range(n_per_group)] + [f"b_{i:02d}" for i in range(n_per_group)]
    return DataLoader().from_dense(counts, cell_ids, genes, sample_id="de")


def de_groups(matrix: ExpressionMatrix, n_per_group: int = 20) -> pd.Series:
    """Group labels ``A`` / ``B`` for :func:`create_de_matrix` cells."""
    return pd.Series(
        ["A"] * n_per_group + ["B"] * n_per_group, index=matrix.cell_ids, name="group"
    )
