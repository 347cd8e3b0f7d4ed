"""Trajectory module for pseudotime ordering of clusters.

Example Usage
-------------
>>> from sctrace.core.trajectory import (
...     TrajectoryEngine, TrajectoryConfig, RootStrategy, pseudotime_bins,
... )
>>> config = TrajectoryConfig(root_strategy=RootStrategy(markers=["SOX2"], direction="high"))
>>> result = TrajectoryEngine(config).infer(embedding, clusters, matrix=merged)
>>> groups = pseudotime_bins(result.graph, n_bins=4)
"""

__version__ = "1.0.0"

from .config import (
    RootStrategy,
    TrajectoryConfig,
)

from .engine import (
    TrajectoryEngine,
    TrajectoryResult,
    pseudotime_bins,
)

__all__ = [
    "__version__",
    "RootStrategy",
    "TrajectoryConfig",
    "TrajectoryEngine",
    "TrajectoryResult",
    "pseudotime_bins",
]
