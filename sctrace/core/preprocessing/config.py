"""Configuration classes for preprocessing stages.

All preprocessing parameters are configurable via YAML through the master
:class:`~sctrace.pipeline.config.AnalysisConfig`.
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class LoaderConfig:
    """Configuration for triplet loading (boundary).

    Attributes
    ----------
    cell_id_col : str
        Column name for cell identifiers in triplet tables
    gene_id_col : str
        Column name for gene identifiers in triplet tables
    count_col : str
        Column name for counts in triplet tables
    sample_id_col : str
        Manifest column for sample identifiers
    path_col : str
        Manifest column for triplet file paths
    batch_col : str
        Optional manifest column for batch labels
    """

    cell_id_col: str = "cell_id"
    gene_id_col: str = "gene_id"
    count_col: str = "count"
    sample_id_col: str = "sample_id"
    path_col: str = "path"
    batch_col: str = "batch"


@dataclass
class QCConfig:
    """Configuration for cell QC.

    Attributes
    ----------
    excluded_genes : List[str]
        Genes removed before any metric is computed (e.g. ambient
        contamination genes)
    min_genes_per_cell : int
        Minimum number of detected genes
    max_genes_per_cell : int, optional
        Maximum number of detected genes (doublet guard)
    max_percent_mito : float
        Maximum percentage of mitochondrial counts
    max_percent_rps : float
        Maximum percentage of small ribosomal subunit counts
    max_percent_rpl : float
        Maximum percentage of large ribosomal subunit counts
    drop_unexpressed_genes : bool
        Drop genes with fewer than ``min_cells_per_gene`` expressing cells
        among surviving cells
    min_cells_per_gene : int
        Minimum expressing cells to keep a gene
    mito_prefix : str
        Gene symbol prefix of mitochondrial genes
    rps_prefix : str
        Gene symbol prefix of small ribosomal subunit genes
    rpl_prefix : str
        Gene symbol prefix of large ribosomal subunit genes
    """

    excluded_genes: List[str] = field(default_factory=list)
    min_genes_per_cell: int = 200
    max_genes_per_cell: Optional[int] = 6000
    max_percent_mito: float = 10.0
    max_percent_rps: float = 100.0
    max_percent_rpl: float = 100.0
    drop_unexpressed_genes: bool = True
    min_cells_per_gene: int = 1
    mito_prefix: str = "MT-"
    rps_prefix: str = "RPS"
    rpl_prefix: str = "RPL"


@dataclass
class MergeConfig:
    """Configuration for sample merging.

    Attributes
    ----------
    gene_join : str
        Gene reconciliation policy: "union" (zero fill) or "intersection"
    batch_key : str
        obs column holding the batch covariate
    sample_key : str
        obs column holding the sample id
    """

    gene_join: str = "union"
    batch_key: str = "batch"
    sample_key: str = "sample_id"


@dataclass
class NormalizationConfig:
    """Configuration for variance-stabilizing normalization.

    Attributes
    ----------
    variable_feature_count : int
        Number of genes retained by residual variance
    n_components : int
        Number of principal components in the embedding
    method : str
        "glm" (per-gene negative binomial regression) or "analytic"
        (closed-form offset model)
    theta : float
        Fixed over-dispersion for the analytic method
    min_cells_per_gene : int
        Genes detected in fewer cells are not modelled
    clip_residuals : bool
        Clip residuals to +/- sqrt(n_cells)
    scale_clip : float
        Value clipping during scaling before PCA
    chunk_size : int
        Genes per parallel work item
    n_jobs : int
        joblib workers for per-gene regression
    seed : int
        Random seed for PCA
    """

    variable_feature_count: int = 2000
    n_components: int = 30
    method: str = "glm"
    theta: float = 100.0
    min_cells_per_gene: int = 3
    clip_residuals: bool = True
    scale_clip: float = 10.0
    chunk_size: int = 200
    n_jobs: int = 1
    seed: int = 42


@dataclass
class IntegrationConfig:
    """Configuration for iterative batch-effect correction.

    Attributes
    ----------
    max_iterations : int
        Maximum correction rounds
    epsilon : float
        Convergence threshold on the maximum centroid displacement
    resolution : float
        Soft-cluster granularity; the number of clusters is
        ``round(resolution * n_cells / 30)`` bounded to [2, n_cells]
    n_clusters : int, optional
        Explicit number of soft clusters (overrides resolution)
    sigma : float
        Soft-assignment bandwidth
    theta : float
        Diversity penalty strength
    ridge_lambda : float
        Ridge shrinkage of per-batch centroid offsets
    max_kmeans_iterations : int
        Soft-assignment refinement steps per round
    deadline_seconds : float, optional
        Wall-clock budget for the loop
    batch_key : str
        obs column with batch labels
    seed : int
        Seed for centroid initialization
    """

    max_iterations: int = 50
    epsilon: float = 1e-4
    resolution: float = 1.0
    n_clusters: Optional[int] = None
    sigma: float = 0.1
    theta: float = 2.0
    ridge_lambda: float = 1.0
    max_kmeans_iterations: int = 10
    deadline_seconds: Optional[float] = None
    batch_key: str = "batch"
    seed: int = 2026
