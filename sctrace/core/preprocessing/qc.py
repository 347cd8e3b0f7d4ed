"""Cell-level quality control.

Provides threshold-based cell filtering on detected-gene counts and
mitochondrial / ribosomal count fractions. Failed cells are flagged in a
per-cell audit record and excluded from the working matrix.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ...utils.hashing import chain_version
from ...utils.stats import percent_of_total
from ..artifacts import ExpressionMatrix
from ..errors import EmptySampleError
from .config import QCConfig


# Reason columns for tracking removal causes
REASON_COLUMNS = [
    "low_genes",
    "high_genes",
    "high_mito",
    "high_rps",
    "high_rpl",
]

RECORD_COLUMNS = [
    "sample_id",
    "total_counts",
    "n_genes_detected",
    "pct_mito",
    "pct_rps",
    "pct_rpl",
    "passed",
    "reasons",
]


@dataclass
class QCResult:
    """Result from QC filtering a single sample.

    Attributes
    ----------
    sample_id : str
        Sample identifier
    cells_total : int
        Total cells before filtering
    cells_removed : int
        Number of cells removed
    removal_fraction : float
        Fraction of cells removed
    genes_excluded : List[str]
        Configured excluded genes that were present and removed
    genes_dropped : int
        Genes dropped for lack of expressing surviving cells
    reason_counts : Dict[str, int]
        Counts per removal reason
    matrix : ExpressionMatrix, optional
        Filtered matrix (surviving cells only)
    records : pd.DataFrame
        Audit record for every input cell, indexed by cell id
    """

    sample_id: str
    cells_total: int = 0
    cells_removed: int = 0
    removal_fraction: float = 0.0
    genes_excluded: List[str] = field(default_factory=list)
    genes_dropped: int = 0
    reason_counts: Dict[str, int] = field(default_factory=dict)
    matrix: Optional[ExpressionMatrix] = None
    records: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=RECORD_COLUMNS))

    @property
    def cells_kept(self) -> int:
        return self.cells_total - self.cells_removed

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "sample_id": self.sample_id,
            "cells_total": self.cells_total,
            "cells_removed": self.cells_removed,
            "removal_fraction": round(self.removal_fraction, 4),
            "genes_excluded": len(self.genes_excluded),
            "genes_dropped": self.genes_dropped,
        }
        for reason in REASON_COLUMNS:
            result[f"removed_{reason}"] = self.reason_counts.get(reason, 0)
        return result


@dataclass
class QCBatchResult:
    """Result from QC filtering several samples.

    Attributes
    ----------
    results : List[QCResult]
        Per-sample results for samples that kept at least one cell
    skipped : List[EmptySampleError]
        One error per sample whose cells all failed
    """

    results: List[QCResult] = field(default_factory=list)
    skipped: List[EmptySampleError] = field(default_factory=list)

    @property
    def matrices(self) -> List[ExpressionMatrix]:
        return [r.matrix for r in self.results if r.matrix is not None]

    @property
    def version(self) -> str:
        return chain_version(
            "qc",
            [m.version for m in self.matrices],
            [str(e.sample_id) for e in self.skipped],
        )

    @property
    def audit(self) -> pd.DataFrame:
        return CellQC.audit_table(self.results, self.skipped)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "samples_kept": len(self.results),
            "samples_skipped": [str(e.sample_id) for e in self.skipped],
            "cells_total": sum(r.cells_total for r in self.results)
            + sum(e.n_cells for e in self.skipped),
            "cells_kept": sum(r.cells_kept for r in self.results),
            "per_sample": [r.to_dict() for r in self.results],
        }


def _prefix_mask(gene_ids: Sequence[str], prefix: str) -> np.ndarray:
    prefix = prefix.upper()
    return np.array([str(g).upper().startswith(prefix) for g in gene_ids], dtype=bool)


class CellQC:
    """Cell-level quality control filter.

    Parameters
    ----------
    config : QCConfig
        QC configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from sctrace.core.preprocessing import CellQC, QCConfig
    >>> qc = CellQC(QCConfig(max_percent_mito=10.0))
    >>> result = qc.filter_sample(matrix)
    >>> result.records["passed"].sum()
    """

    def __init__(
        self,
        config: Optional[QCConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QCConfig()
        self.logger = logger or logging.getLogger(__name__)

    def remove_excluded_genes(self, matrix: ExpressionMatrix) -> Tuple[ExpressionMatrix, List[str]]:
        """Drop configured excluded genes before any metric is computed.

        Returns
        -------
        Tuple[ExpressionMatrix, List[str]]
            Matrix without excluded genes, and the excluded genes found
        """
        excluded = set(self.config.excluded_genes)
        if not excluded:
            return matrix, []
        keep = ~matrix.gene_ids.isin(excluded)
        found = [g for g in matrix.gene_ids[~keep]]
        if not found:
            return matrix, []
        return matrix.subset_genes(keep, stage="qc"), found

    def compute_metrics(self, matrix: ExpressionMatrix) -> pd.DataFrame:
        """Compute per-cell QC metrics.

        Parameters
        ----------
        matrix : ExpressionMatrix
            Raw counts (excluded genes already removed)

        Returns
        -------
        pd.DataFrame
            Columns ``total_counts``, ``n_genes_detected``, ``pct_mito``,
            ``pct_rps``, ``pct_rpl`` indexed by cell id
        """
        cfg = self.config
        total = matrix.total_counts()
        metrics = pd.DataFrame(
            {
                "total_counts": total.astype(np.int64),
                "n_genes_detected": matrix.genes_detected().astype(np.int64),
            },
            index=matrix.cell_ids,
        )
        for column, prefix in (
            ("pct_mito", cfg.mito_prefix),
            ("pct_rps", cfg.rps_prefix),
            ("pct_rpl", cfg.rpl_prefix),
        ):
            mask = _prefix_mask(matrix.gene_ids, prefix)
            if mask.any():
                part = np.asarray(matrix.counts[:, mask].sum(axis=1)).ravel()
            else:
                part = np.zeros(matrix.n_cells)
            metrics[column] = percent_of_total(part, total)
        return metrics

    def _flag_cells(self, metrics: pd.DataFrame) -> pd.DataFrame:
        """Build boolean reason flags per cell."""
        cfg = self.config
        reasons = pd.DataFrame(index=metrics.index)
        reasons["low_genes"] = metrics["n_genes_detected"] < cfg.min_genes_per_cell
        if cfg.max_genes_per_cell is not None:
            reasons["high_genes"] = metrics["n_genes_detected"] > cfg.max_genes_per_cell
        else:
            reasons["high_genes"] = False
        reasons["high_mito"] = metrics["pct_mito"] > cfg.max_percent_mito
        reasons["high_rps"] = metrics["pct_rps"] > cfg.max_percent_rps
        reasons["high_rpl"] = metrics["pct_rpl"] > cfg.max_percent_rpl
        return reasons.astype(bool)

    def filter_sample(self, matrix: ExpressionMatrix) -> QCResult:
        """Filter cells based on QC criteria.

        Parameters
        ----------
        matrix : ExpressionMatrix
            Raw counts for one sample

        Returns
        -------
        QCResult
            Filtering result with the surviving matrix and audit record

        Raises
        ------
        EmptySampleError
            If no cell passes QC
        """
        sample_id = str(matrix.sample_id) if matrix.sample_id is not None else matrix.version
        result = QCResult(sample_id=sample_id, cells_total=matrix.n_cells)

        working, result.genes_excluded = self.remove_excluded_genes(matrix)
        metrics = self.compute_metrics(working)
        reasons = self._flag_cells(metrics)
        failed = reasons.any(axis=1).to_numpy()

        records = metrics.copy()
        records.insert(0, "sample_id", sample_id)
        records["passed"] = ~failed
        records["reasons"] = [
            ";".join(name for name in REASON_COLUMNS if row[name])
            for _, row in reasons.iterrows()
        ]
        result.records = records[RECORD_COLUMNS]
        result.reason_counts = {
            name: int(reasons[name].sum()) for name in REASON_COLUMNS if reasons[name].any()
        }
        result.cells_removed = int(failed.sum())
        result.removal_fraction = (
            result.cells_removed / result.cells_total if result.cells_total > 0 else 0.0
        )

        if result.cells_removed == result.cells_total:
            raise EmptySampleError(sample_id, n_cells=result.cells_total, records=result.records)

        filtered = working.subset_cells(~failed, stage="qc")

        if self.config.drop_unexpressed_genes:
            expressing = np.diff(filtered.counts.tocsc().indptr)
            keep_genes = expressing >= max(self.config.min_cells_per_gene, 1)
            result.genes_dropped = int((~keep_genes).sum())
            if result.genes_dropped:
                filtered = filtered.subset_genes(keep_genes, stage="qc")

        result.matrix = filtered
        self.logger.info(
            "QC %s: kept %d/%d cells (%.1f%% removed), %d genes",
            sample_id,
            result.cells_kept,
            result.cells_total,
            100.0 * result.removal_fraction,
            filtered.n_genes,
        )
        return result

    def filter_samples(
        self, samples: Sequence[ExpressionMatrix]
    ) -> QCBatchResult:
        """Filter several samples, skipping samples with no surviving cells.

        Parameters
        ----------
        samples : Sequence[ExpressionMatrix]
            Raw per-sample matrices

        Returns
        -------
        QCBatchResult
            Results for the samples that kept at least one cell (input
            order), and one error per skipped sample
        """
        batch = QCBatchResult()
        for sample in samples:
            try:
                batch.results.append(self.filter_sample(sample))
            except EmptySampleError as exc:
                self.logger.warning("Skipping sample: %s", exc)
                batch.skipped.append(exc)
        return batch

    @staticmethod
    def audit_table(
        results: Sequence[QCResult],
        skipped: Sequence[EmptySampleError] = (),
    ) -> pd.DataFrame:
        """Concatenate per-cell audit records of kept and skipped samples.

        Returns one row per input cell with a ``cell_id`` column, in
        sample order (kept samples first, then skipped ones).
        """
        frames = [r.records for r in results]
        frames += [e.records for e in skipped if e.records is not None]
        frames = [f for f in frames if len(f)]
        if not frames:
            return pd.DataFrame(columns=["cell_id"] + RECORD_COLUMNS)
        return pd.concat(frames, axis=0).reset_index()
