"""Preprocessing module for count loading, quality control and integration.

Provides loading of per-sample count triplets, cell QC filtering, sample
merging, variance-stabilizing normalization with PCA, and batch
integration of the resulting embedding.

Pipeline Stages
---------------
- Loader: Triplet loading and shape validation
- QC: Cell-level quality control
- Merge: Sample concatenation over a reconciled gene axis
- Normalization: Pearson residuals, variable features and PCA
- Batch: Iterative soft-clustering batch correction

Example Usage
-------------
>>> from sctrace.core.preprocessing import (
...     DataLoader, CellQC, QCConfig, DataMerger,
...     Normalizer, BatchIntegrator,
... )
>>> samples = DataLoader().load_samples("manifest.csv")
>>> qc = CellQC(QCConfig()).filter_samples(samples)
>>> merged = DataMerger().merge_samples(qc.matrices)
>>> norm = Normalizer().normalize(merged.matrix)
>>> integrated = BatchIntegrator().integrate(norm.embedding)
"""

__version__ = "1.0.0"

# Configuration classes
from .config import (
    LoaderConfig,
    QCConfig,
    MergeConfig,
    NormalizationConfig,
    IntegrationConfig,
)

# Loading
from .loader import DataLoader

# Cell QC
from .qc import (
    CellQC,
    QCBatchResult,
    QCResult,
    REASON_COLUMNS,
    RECORD_COLUMNS,
)

# Merging
from .merge import (
    DataMerger,
    MergeResult,
)

# Normalization
from .normalization import (
    Normalizer,
    NormalizationResult,
)

# Batch integration
from .batch import (
    BatchIntegrator,
    IntegrationResult,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "LoaderConfig",
    "QCConfig",
    "MergeConfig",
    "NormalizationConfig",
    "IntegrationConfig",
    # Loader
    "DataLoader",
    # QC
    "CellQC",
    "QCBatchResult",
    "QCResult",
    "REASON_COLUMNS",
    "RECORD_COLUMNS",
    # Merge
    "DataMerger",
    "MergeResult",
    # Normalization
    "Normalizer",
    "NormalizationResult",
    # Batch
    "BatchIntegrator",
    "IntegrationResult",
]
