"""Configuration classes for clustering and differential expression.

All parameters are configurable via YAML through the master
:class:`~sctrace.pipeline.config.AnalysisConfig`.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

METRICS = ("euclidean", "cosine")
COMPARISON_MODES = ("all_pairs", "one_vs_rest")
DE_VALUES = ("lognorm", "counts", "residuals")


@dataclass
class ClusteringConfig:
    """Configuration for graph-based community detection.

    Attributes
    ----------
    k_neighbors : int
        k for the neighborhood graph
    resolution : float
        Modularity resolution (gamma); higher values give more clusters
    metric : str
        Distance metric for the neighborhood graph ("euclidean" or "cosine")
    seed : int
        Random seed for the optional node-order permutation
    shuffle : bool
        Visit nodes in a seed-derived random order instead of index order
    max_levels : int
        Maximum aggregation levels
    max_passes : int
        Maximum local-moving passes per level
    deadline_seconds : float, optional
        Wall-clock budget for the optimization
    """

    k_neighbors: int = 15
    resolution: float = 1.0
    metric: str = "euclidean"
    seed: int = 1337
    shuffle: bool = False
    max_levels: int = 10
    max_passes: int = 100
    deadline_seconds: Optional[float] = None


@dataclass
class DEConfig:
    """Configuration for differential expression analysis.

    Attributes
    ----------
    comparisons : str or List[Tuple[str, str]]
        Explicit ``(group_a, group_b)`` pairs, "all_pairs" or
        "one_vs_rest"
    group_by : str
        Grouping for comparisons: "cluster" or "pseudotime"
    n_pseudotime_bins : int
        Number of equal-width bins when grouping by pseudotime
    alpha : float
        Significance level on adjusted p-values
    method : str
        Test method (only "wilcoxon", the Mann-Whitney U test)
    correction : str
        statsmodels ``multipletests`` method
    use : str
        Values tested: "lognorm" (log1p of counts per ``target_sum``),
        "counts" or "residuals" (variable features only)
    pseudocount : float
        Pseudocount for log2 fold changes
    target_sum : float
        Library size for depth normalization
    tie_correct : bool
        Apply tie correction for the rank test
    min_cells_per_group : int
        Comparisons with a smaller group are skipped
    chunk_size : int
        Genes per parallel work item
    n_jobs : int
        joblib workers for per-gene testing
    """

    comparisons: Union[str, List[Tuple[str, str]]] = "one_vs_rest"
    group_by: str = "cluster"
    n_pseudotime_bins: int = 4
    alpha: float = 0.05
    method: str = "wilcoxon"
    correction: str = "fdr_bh"
    use: str = "lognorm"
    pseudocount: float = 1.0
    target_sum: float = 1e4
    tie_correct: bool = True
    min_cells_per_group: int = 3
    chunk_size: int = 500
    n_jobs: int = 1
