"""Pytest configuration and shared fixtures for sctrace tests."""

import sys
from pathlib import Path

import pytest
import numpy as np
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import synthetic data generators
from tests.fixtures import (
    create_batch_embedding,
    create_blob_embedding,
    create_branching_embedding,
    create_celltype_samples,
    create_de_matrix,
    create_qc_samples,
)


# ============================================================================
# Synthetic Data Fixtures
# ============================================================================


@pytest.fixture
def qc_samples():
    """Two raw 100-cell samples; sample A has 5 high-mitochondrial cells."""
    return create_qc_samples()


@pytest.fixture
def qc_config():
    """QC thresholds suited to the 44-gene synthetic panel."""
    from sctrace.core.preprocessing import QCConfig

    return QCConfig(min_genes_per_cell=10, max_genes_per_cell=None, max_percent_mito=10.0)


@pytest.fixture
def celltype_samples():
    """Two samples of three marker-defined cell types (90 cells each)."""
    return create_celltype_samples()


@pytest.fixture
def merged_celltypes(celltype_samples):
    """Merged counts of :func:`celltype_samples`."""
    from sctrace.core.preprocessing import DataMerger

    return DataMerger().merge_samples(celltype_samples).matrix


@pytest.fixture
def batch_embedding():
    """Two cell types in two batches, batch B offset along one axis."""
    return create_batch_embedding()


@pytest.fixture
def blob_embedding():
    """Three well-separated blobs of 40 cells."""
    return create_blob_embedding()


@pytest.fixture
def branching():
    """Y-shaped embedding and its four-cluster partition."""
    return create_branching_embedding()


@pytest.fixture
def branching_with_isolated():
    """Y-shaped embedding plus an isolated fifth cluster."""
    return create_branching_embedding(include_isolated=True)


@pytest.fixture
def de_matrix():
    """Two 20-cell groups with one up-regulated and two flat genes."""
    return create_de_matrix()


@pytest.fixture
def analysis_dict() -> dict:
    """Small-data analysis configuration as plain YAML data."""
    return {
        "seed": 7,
        "qc": {"min_genes_per_cell": 5, "max_genes_per_cell": None, "max_percent_mito": 10.0},
        "normalization": {"variable_feature_count": 30, "n_components": 10},
        "integration": {"max_iterations": 30},
        "clustering": {"k_neighbors": 10, "resolution": 0.5},
        "trajectory": {"root_strategy": {"cluster": 0}, "connectivity_threshold": 0.0},
        "de": {"comparisons": "one_vs_rest", "min_cells_per_group": 3},
    }


@pytest.fixture
def analysis_config(analysis_dict):
    """:class:`AnalysisConfig` built from :func:`analysis_dict`."""
    from sctrace.pipeline import AnalysisConfig

    return AnalysisConfig.from_dict(analysis_dict)


@pytest.fixture
def triplet_manifest(tmp_path, celltype_samples) -> Path:
    """Write the cell type samples as triplet CSVs plus a manifest."""
    rows = []
    for sample in celltype_samples:
        path = tmp_path / f"{sample.sample_id}.csv"
        sample.to_triplets().to_csv(path, index=False)
        rows.append({"sample_id": sample.sample_id, "path": path.name})
    manifest = tmp_path / "manifest.csv"
    pd.DataFrame(rows).to_csv(manifest, index=False)
    return manifest


# ============================================================================
# Temporary Directory Fixtures
# ============================================================================


@pytest.fixture
def tmp_output_dir(tmp_path) -> Path:
    """Create temporary output directory."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir
