"""Core computational modules for sctrace.

This package contains the main analysis engines:
- artifacts: Immutable data passed between stages
- errors: Fatal errors and recoverable diagnostics
- preprocessing: Loading, QC, merging, normalization, batch integration
- clustering: kNN graph, Louvain clustering, differential expression
- trajectory: Cluster-graph trajectory and pseudotime
"""
