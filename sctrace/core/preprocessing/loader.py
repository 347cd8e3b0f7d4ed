"""Sample loading at the pipeline boundary.

Builds :class:`ExpressionMatrix` artifacts from sparse
``(cell_id, gene_id, count)`` triplet tables and validates them against
declared metadata.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse

from ..artifacts import ExpressionMatrix
from ..errors import InputShapeError
from .config import LoaderConfig

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _first_seen(values: pd.Series) -> List[str]:
    return list(dict.fromkeys(values.astype(str)))


class DataLoader:
    """Triplet loader with shape validation.

    Parameters
    ----------
    config : LoaderConfig
        Loader configuration

    Example
    -------
    >>> from sctrace.core.preprocessing import DataLoader
    >>> loader = DataLoader()
    >>> matrix = loader.from_triplets(triplets, sample_id="S1", batch="run1")
    """

    def __init__(self, config: Optional[LoaderConfig] = None):
        self.config = config or LoaderConfig()

    def from_triplets(
        self,
        triplets: pd.DataFrame,
        sample_id: str,
        cell_ids: Optional[Sequence[str]] = None,
        gene_ids: Optional[Sequence[str]] = None,
        metadata: Optional[pd.DataFrame] = None,
        batch: Optional[str] = None,
    ) -> ExpressionMatrix:
        """Build a count matrix from long-format triplets.

        Parameters
        ----------
        triplets : pd.DataFrame
            Table with cell id, gene id and count columns
        sample_id : str
            Sample identifier stored in ``obs['sample_id']``
        cell_ids : Sequence[str], optional
            Declared cell order (cells without any counts are kept).
            Defaults to first-seen order in ``triplets``.
        gene_ids : Sequence[str], optional
            Declared gene order. Defaults to first-seen order.
        metadata : pd.DataFrame, optional
            Per-cell metadata, indexed by cell id or with a cell id column
        batch : str, optional
            Batch covariate for every cell of the sample

        Returns
        -------
        ExpressionMatrix
            Raw counts for the sample

        Raises
        ------
        InputShapeError
            If triplets reference undeclared cells/genes, counts are
            negative or non-integer, or metadata does not match the cells
        """
        cfg = self.config
        missing = [
            c for c in (cfg.cell_id_col, cfg.gene_id_col, cfg.count_col)
            if c not in triplets.columns
        ]
        if missing:
            raise InputShapeError(f"Triplet table missing columns: {missing}")

        cells = triplets[cfg.cell_id_col].astype(str)
        genes = triplets[cfg.gene_id_col].astype(str)
        counts = pd.to_numeric(triplets[cfg.count_col], errors="coerce")

        if counts.isna().any():
            raise InputShapeError(f"Sample '{sample_id}': non-numeric counts")
        if (counts < 0).any():
            raise InputShapeError(f"Sample '{sample_id}': negative counts")
        if not np.allclose(counts, np.round(counts)):
            raise InputShapeError(f"Sample '{sample_id}': counts must be integers")

        cell_order = [str(c) for c in cell_ids] if cell_ids is not None else _first_seen(cells)
        gene_order = [str(g) for g in gene_ids] if gene_ids is not None else _first_seen(genes)

        cell_pos = pd.Index(cell_order).get_indexer(cells)
        gene_pos = pd.Index(gene_order).get_indexer(genes)
        if (cell_pos < 0).any():
            unknown = cells[cell_pos < 0].unique()[:5].tolist()
            raise InputShapeError(
                f"Sample '{sample_id}': triplets reference undeclared cells {unknown}"
            )
        if (gene_pos < 0).any():
            unknown = genes[gene_pos < 0].unique()[:5].tolist()
            raise InputShapeError(
                f"Sample '{sample_id}': triplets reference undeclared genes {unknown}"
            )

        # Duplicate (cell, gene) pairs are summed by the COO -> CSR conversion
        matrix = sparse.coo_matrix(
            (np.round(counts.to_numpy()).astype(np.int64), (cell_pos, gene_pos)),
            shape=(len(cell_order), len(gene_order)),
        ).tocsr()

        obs = self._build_obs(cell_order, sample_id, metadata, batch)
        logger.debug(
            "Loaded sample %s: %d cells x %d genes (%d non-zero)",
            sample_id, matrix.shape[0], matrix.shape[1], matrix.nnz,
        )
        return ExpressionMatrix(
            counts=matrix,
            cell_ids=cell_order,
            gene_ids=gene_order,
            obs=obs,
            sample_id=str(sample_id),
            stage="raw",
        )

    def from_dense(
        self,
        matrix: Any,
        cell_ids: Sequence[str],
        gene_ids: Sequence[str],
        sample_id: str,
        metadata: Optional[pd.DataFrame] = None,
        batch: Optional[str] = None,
    ) -> ExpressionMatrix:
        """Build a count matrix from a dense cells x genes array."""
        try:
            values = np.asarray(matrix, dtype=float)
        except (TypeError, ValueError):
            raise InputShapeError(f"Sample '{sample_id}': non-numeric counts")
        if values.shape != (len(cell_ids), len(gene_ids)):
            raise InputShapeError(
                f"Sample '{sample_id}': matrix shape {values.shape} does not match "
                f"{len(cell_ids)} cells x {len(gene_ids)} genes"
            )
        if not np.isfinite(values).all():
            raise InputShapeError(f"Sample '{sample_id}': non-numeric counts")
        if (values < 0).any():
            raise InputShapeError(f"Sample '{sample_id}': negative counts")
        if not np.allclose(values, np.round(values)):
            raise InputShapeError(f"Sample '{sample_id}': counts must be integers")
        obs = self._build_obs([str(c) for c in cell_ids], sample_id, metadata, batch)
        return ExpressionMatrix(
            counts=sparse.csr_matrix(np.round(values).astype(np.int64)),
            cell_ids=cell_ids,
            gene_ids=gene_ids,
            obs=obs,
            sample_id=str(sample_id),
            stage="raw",
        )

    def _build_obs(
        self,
        cell_order: List[str],
        sample_id: str,
        metadata: Optional[pd.DataFrame],
        batch: Optional[str],
    ) -> pd.DataFrame:
        """Assemble per-cell metadata and validate it against the matrix."""
        obs = pd.DataFrame(index=pd.Index(cell_order, name="cell_id"))

        if metadata is not None:
            meta = metadata.copy()
            if self.config.cell_id_col in meta.columns:
                meta = meta.set_index(self.config.cell_id_col)
            meta.index = meta.index.astype(str)

            declared = set(meta.index)
            present = set(cell_order)
            if declared != present or len(meta) != len(cell_order):
                extra = sorted(declared - present)[:5]
                absent = sorted(present - declared)[:5]
                raise InputShapeError(
                    f"Sample '{sample_id}': metadata declares {len(meta)} cells, "
                    f"matrix has {len(cell_order)} (extra={extra}, missing={absent})"
                )
            obs = meta.reindex(cell_order)
            obs.index.name = "cell_id"

        obs["sample_id"] = str(sample_id)
        if batch is not None:
            obs["batch"] = str(batch)
        return obs

    def load_triplet_csv(
        self,
        path: PathLike,
        sample_id: str,
        batch: Optional[str] = None,
    ) -> ExpressionMatrix:
        """Load one sample from a triplet CSV file."""
        df = pd.read_csv(path)
        return self.from_triplets(df, sample_id=sample_id, batch=batch)

    def load_manifest(self, path: PathLike) -> pd.DataFrame:
        """Load the sample manifest.

        Parameters
        ----------
        path : PathLike
            CSV with sample id and triplet path columns (optional batch)

        Returns
        -------
        pd.DataFrame
            Manifest with paths resolved relative to the manifest file
        """
        path = Path(path)
        df = pd.read_csv(path)
        for col in (self.config.sample_id_col, self.config.path_col):
            if col not in df.columns:
                raise ValueError(f"Manifest column '{col}' not found in {path}")

        df[self.config.sample_id_col] = df[self.config.sample_id_col].astype(str)
        df[self.config.path_col] = [
            str(p if Path(p).is_absolute() else (path.parent / p))
            for p in df[self.config.path_col].astype(str)
        ]
        return df

    def load_samples(self, manifest_path: PathLike) -> List[ExpressionMatrix]:
        """Load every sample listed in a manifest, in manifest order."""
        manifest = self.load_manifest(manifest_path)
        samples: List[ExpressionMatrix] = []
        for _, row in manifest.iterrows():
            batch = row.get(self.config.batch_col)
            batch = None if batch is None or pd.isna(batch) else str(batch)
            samples.append(
                self.load_triplet_csv(
                    row[self.config.path_col],
                    sample_id=row[self.config.sample_id_col],
                    batch=batch,
                )
            )
            logger.info(
                "Loaded sample %s (%d cells)",
                row[self.config.sample_id_col],
                samples[-1].n_cells,
            )
        return samples

    def summarize(self, samples: List[ExpressionMatrix]) -> Dict[str, Dict[str, int]]:
        """Per-sample cell/gene counts for reporting."""
        summary = {}
        for sample in samples:
            summary[str(sample.sample_id)] = {"n_cells": sample.n_cells, "n_genes": sample.n_genes}
        return summary
