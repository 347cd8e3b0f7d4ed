"""sctrace: single-cell trajectory analysis pipeline.

This package provides tools for:
- Cell quality control and sample merging from count triplets
- Variance-stabilizing normalization and PCA
- Batch integration of embeddings
- Graph-based clustering and cluster-level trajectories with pseudotime
- Differential expression between clusters or pseudotime bins

All parameters are loaded from one YAML configuration, and every stage
produces immutable, versioned artifacts.

Example usage:
    >>> from sctrace.pipeline import AnalysisConfig, PipelineRunner
    >>>
    >>> config = AnalysisConfig.from_yaml("analysis.yaml")
    >>> runner = PipelineRunner(config)
    >>> result = runner.run(samples)
    >>> result.clusters.sizes()
"""

__version__ = "0.1.0"
