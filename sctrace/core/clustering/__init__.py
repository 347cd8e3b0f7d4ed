"""Clustering module for cell population identification.

Provides kNN graph construction, Louvain modularity clustering and
differential expression testing between cell groups.

Example Usage
-------------
>>> from sctrace.core.clustering import (
...     ClusteringEngine, ClusteringConfig,
...     DERunner, DEConfig,
... )
>>> engine = ClusteringEngine(ClusteringConfig(resolution=1.0))
>>> result = engine.run_clustering(embedding)
>>> runner = DERunner(DEConfig(comparisons="one_vs_rest"))
>>> de = runner.run_de_tests(matrix, runner.groups_from_clusters(result.clusters))
"""

__version__ = "1.0.0"

# Configuration classes
from .config import (
    ClusteringConfig,
    DEConfig,
)

# Clustering engine
from .engine import (
    ClusteringEngine,
    ClusteringResult,
    Louvain,
    build_knn_graph,
    modularity,
    relabel_first_occurrence,
)

# Differential expression
from .de import (
    DERunner,
    DEResult,
    rank_test,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "ClusteringConfig",
    "DEConfig",
    # Engine
    "ClusteringEngine",
    "ClusteringResult",
    "Louvain",
    "build_knn_graph",
    "modularity",
    "relabel_first_occurrence",
    # DE
    "DERunner",
    "DEResult",
    "rank_test",
]
