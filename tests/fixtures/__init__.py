"""Test fixtures for sctrace.

Provides synthetic data generators and test utilities.
"""

from .mock_samples import (
    GENE_PANEL,
    MITO_GENES,
    RIBO_GENES,
    create_batch_embedding,
    create_blob_embedding,
    create_branching_embedding,
    create_celltype_samples,
    create_de_matrix,
    create_mock_sample,
    create_qc_samples,
    de_groups,
)

__all__ = [
    "GENE_PANEL",
    "MITO_GENES",
    "RIBO_GENES",
    "create_batch_embedding",
    "create_blob_embedding",
    "create_branching_embedding",
    "create_celltype_samples",
    "create_de_matrix",
    "create_mock_sample",
    "create_qc_samples",
    "de_groups",
]
