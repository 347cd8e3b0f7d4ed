"""Differential expression testing between cell groups.

Runs a two-sided Mann-Whitney U test per gene for each comparison,
corrects p-values across the tested genes with Benjamini-Hochberg and
ranks genes by adjusted p-value. Genes that are constant across both
groups cannot be tested; they are reported with status
``not_applicable`` and never abort a comparison.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import time

import numpy as np
import pandas as pd
from scipy import sparse

from ...utils.stats import is_constant, log2_fold_change
from ..artifacts import ClusterSet, DiffExpResult, ExpressionMatrix, NormalizedMatrix
from ..errors import ConfigValidationError, InputShapeError, StatisticalTestError
from .config import COMPARISON_MODES, DE_VALUES, DEConfig

REST = "rest"

TABLE_COLUMNS = [
    "gene",
    "group_a",
    "group_b",
    "log2_fold_change",
    "statistic",
    "p_value",
    "p_adj",
    "mean_a",
    "mean_b",
    "significant",
    "status",
]


@dataclass
class DEResult:
    """Result from differential expression testing.

    Attributes
    ----------
    comparisons : Dict[str, DiffExpResult]
        Results keyed by ``"<a>_vs_<b>"``, in comparison order
    not_applicable : List[Tuple[str, StatisticalTestError]]
        (comparison, error) for every gene that could not be tested
    skipped : Dict[str, str]
        Comparisons that were not run, with the reason
    elapsed_seconds : float
        Time taken for DE computation
    """

    comparisons: Dict[str, DiffExpResult] = field(default_factory=dict)
    not_applicable: List[Tuple[str, StatisticalTestError]] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    def combined_table(self) -> pd.DataFrame:
        """All comparison tables stacked in comparison order."""
        frames = [r.table for r in self.comparisons.values()]
        if not frames:
            return pd.DataFrame(columns=TABLE_COLUMNS)
        return pd.concat(frames, axis=0, ignore_index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "comparisons": {
                name: {
                    "n_tested": r.n_tested,
                    "n_not_applicable": r.n_not_applicable,
                    "n_significant": int(r.table["significant"].sum()),
                }
                for name, r in self.comparisons.items()
            },
            "skipped": dict(self.skipped),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


def rank_test(a: np.ndarray, b: np.ndarray, gene: str) -> Tuple[float, float]:
    """Two-sided Mann-Whitney U test with tie correction.

    Raises
    ------
    StatisticalTestError
        If every value across both groups is identical
    """
    from scipy.stats import mannwhitneyu

    if is_constant(np.concatenate([a, b])):
        raise StatisticalTestError(gene, "zero variance across both groups")
    result = mannwhitneyu(a, b, alternative="two-sided", use_continuity=True, method="asymptotic")
    return float(result.statistic), float(result.pvalue)


def _test_chunk(
    values_a: np.ndarray,
    values_b: np.ndarray,
    genes: Sequence[str],
) -> Tuple[np.ndarray, np.ndarray, List[Tuple[str, str]]]:
    """Test a chunk of genes; returns statistics, p-values and failures."""
    n_genes = len(genes)
    statistic = np.full(n_genes, np.nan)
    p_value = np.full(n_genes, np.nan)
    failures: List[Tuple[str, str]] = []
    for j, gene in enumerate(genes):
        try:
            statistic[j], p_value[j] = rank_test(values_a[:, j], values_b[:, j], gene)
        except StatisticalTestError as exc:
            failures.append((exc.gene, exc.reason))
    return statistic, p_value, failures


def _ordered_levels(labels: pd.Series) -> List[str]:
    levels = pd.unique(labels.dropna().astype(str))
    try:
        return sorted(levels, key=lambda v: (float(v), v))
    except ValueError:
        return sorted(levels)


class DERunner:
    """Differential expression test runner.

    Parameters
    ----------
    config : DEConfig, optional
        DE configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from sctrace.core.clustering import DERunner, DEConfig
    >>> runner = DERunner(DEConfig(comparisons="one_vs_rest"))
    >>> groups = runner.groups_from_clusters(clusters)
    >>> result = runner.run_de_tests(merged.matrix, groups)
    >>> result.comparisons["0_vs_rest"].significant()
    """

    def __init__(
        self,
        config: Optional[DEConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or DEConfig()
        self.logger = logger or logging.getLogger(__name__)
        if self.config.use not in DE_VALUES:
            raise ValueError(f"Unknown DE values '{self.config.use}'. Use one of {DE_VALUES}")
        if self.config.method != "wilcoxon":
            raise ValueError(f"Unsupported DE method '{self.config.method}'")
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import scipy.stats  # noqa: F401
            import statsmodels.stats.multitest  # noqa: F401
        except ImportError:
            raise RuntimeError(
                "Differential expression requires scipy and statsmodels. "
                "Install with: pip install scipy statsmodels"
            )

    @staticmethod
    def groups_from_clusters(clusters: ClusterSet) -> pd.Series:
        """Group label per cell from cluster ids."""
        return pd.Series(clusters.labels.astype(str), index=clusters.cell_ids, name="group")

    def resolve_comparisons(self, levels: Sequence[str]) -> List[Tuple[str, str]]:
        """Expand the configured comparisons into ``(group_a, group_b)`` pairs.

        Raises
        ------
        ConfigValidationError
            If an explicit pair references an unknown group
        """
        requested = self.config.comparisons
        if isinstance(requested, str):
            if requested not in COMPARISON_MODES:
                raise ConfigValidationError([f"Unknown comparisons mode '{requested}'"])
            if requested == "all_pairs":
                return [
                    (levels[i], levels[j])
                    for i in range(len(levels))
                    for j in range(i + 1, len(levels))
                ]
            return [(level, REST) for level in levels]

        pairs = [(str(a), str(b)) for a, b in requested]
        known = set(levels) | {REST}
        unknown = sorted({g for pair in pairs for g in pair if g not in known})
        if unknown:
            raise ConfigValidationError(
                [f"DE comparison references unknown groups: {unknown}"]
            )
        return pairs

    def _values(
        self,
        matrix: ExpressionMatrix,
        normalized: Optional[NormalizedMatrix],
    ) -> Tuple[Any, List[str], np.ndarray]:
        """Tested values, their genes, and depth-normalized counts for fold changes."""
        cfg = self.config
        depth = matrix.total_counts().astype(float)
        scale = np.divide(
            cfg.target_sum, depth, out=np.zeros_like(depth), where=depth > 0
        )
        cp10k = sparse.csr_matrix(sparse.diags(scale) @ matrix.counts.astype(float))

        if cfg.use == "residuals":
            if normalized is None:
                raise ConfigValidationError(["DE with use='residuals' requires a NormalizedMatrix"])
            genes = list(normalized.gene_ids)
            rows = normalized.cell_ids.get_indexer(matrix.cell_ids)
            if (rows < 0).any():
                raise InputShapeError("NormalizedMatrix does not cover the DE cells")
            values = np.asarray(normalized.residuals)[rows]
            cols = matrix.gene_ids.get_indexer(genes)
            return values, genes, cp10k[:, cols]

        genes = list(matrix.gene_ids)
        if cfg.use == "counts":
            return sparse.csr_matrix(matrix.counts.astype(float)), genes, cp10k
        return cp10k.log1p(), genes, cp10k

    def compare(
        self,
        values: Any,
        cp10k: Any,
        genes: Sequence[str],
        mask_a: np.ndarray,
        mask_b: np.ndarray,
        group_a: str,
        group_b: str,
    ) -> Tuple[DiffExpResult, List[Tuple[str, str]]]:
        """Run one comparison over all genes."""
        from joblib import Parallel, delayed
        from statsmodels.stats.multitest import multipletests

        cfg = self.config

        def block(data: Any, mask: np.ndarray, lo: int, hi: int) -> np.ndarray:
            sub = data[mask][:, lo:hi]
            return sub.toarray() if hasattr(sub, "toarray") else np.asarray(sub)

        size = max(int(cfg.chunk_size), 1)
        chunks = [(lo, min(lo + size, len(genes))) for lo in range(0, len(genes), size)]
        jobs = [
            (block(values, mask_a, lo, hi), block(values, mask_b, lo, hi), list(genes[lo:hi]))
            for lo, hi in chunks
        ]
        if cfg.n_jobs == 1 or len(jobs) <= 1:
            outputs = [_test_chunk(*job) for job in jobs]
        else:
            outputs = Parallel(n_jobs=cfg.n_jobs)(delayed(_test_chunk)(*job) for job in jobs)

        statistic = np.concatenate([o[0] for o in outputs]) if outputs else np.zeros(0)
        p_value = np.concatenate([o[1] for o in outputs]) if outputs else np.zeros(0)
        failures = [f for o in outputs for f in o[2]]

        mean_a = np.asarray(cp10k[mask_a].mean(axis=0)).ravel()
        mean_b = np.asarray(cp10k[mask_b].mean(axis=0)).ravel()
        lfc = log2_fold_change(mean_a, mean_b, cfg.pseudocount)

        tested = np.isfinite(p_value)
        p_adj = np.full(len(genes), np.nan)
        if tested.any():
            _, corrected, _, _ = multipletests(p_value[tested], alpha=cfg.alpha, method=cfg.correction)
            p_adj[tested] = corrected

        table = pd.DataFrame(
            {
                "gene": list(genes),
                "group_a": group_a,
                "group_b": group_b,
                "log2_fold_change": lfc,
                "statistic": statistic,
                "p_value": p_value,
                "p_adj": p_adj,
                "mean_a": mean_a,
                "mean_b": mean_b,
                "significant": np.where(tested, p_adj < cfg.alpha, False).astype(bool),
                "status": np.where(tested, "tested", "not_applicable"),
            }
        )
        table = table.sort_values(
            ["p_adj", "p_value", "gene"], na_position="last", kind="mergesort"
        ).reset_index(drop=True)
        return DiffExpResult(group_a=group_a, group_b=group_b, table=table, alpha=cfg.alpha), failures

    def run_de_tests(
        self,
        matrix: ExpressionMatrix,
        groups: pd.Series,
        normalized: Optional[NormalizedMatrix] = None,
    ) -> DEResult:
        """Run differential expression tests between groups.

        Parameters
        ----------
        matrix : ExpressionMatrix
            Merged counts covering the grouped cells
        groups : pd.Series
            Group label per cell id; cells with a missing label are ignored
        normalized : NormalizedMatrix, optional
            Required when ``use="residuals"``

        Returns
        -------
        DEResult
            Ranked tables per comparison plus untestable genes
        """
        cfg = self.config
        start = time.time()
        labels = groups.reindex(matrix.cell_ids)
        text = pd.Series(
            [None if pd.isna(v) else str(v) for v in labels], index=matrix.cell_ids, dtype=object
        )
        levels = _ordered_levels(text)
        pairs = self.resolve_comparisons(levels)

        values, genes, cp10k = self._values(matrix, normalized)
        self.logger.info(
            "Computing differential expression (%s on %s, %d genes, %d comparisons)",
            cfg.method,
            cfg.use,
            len(genes),
            len(pairs),
        )

        result = DEResult()
        labelled = text.notna().to_numpy()
        for group_a, group_b in pairs:
            name = f"{group_a}_vs_{group_b}"
            mask_a = (text == group_a).to_numpy()
            if group_b == REST:
                mask_b = labelled & ~mask_a
            else:
                mask_b = (text == group_b).to_numpy()

            n_a, n_b = int(mask_a.sum()), int(mask_b.sum())
            if min(n_a, n_b) < max(cfg.min_cells_per_group, 1):
                reason = f"groups too small ({n_a} vs {n_b} cells)"
                self.logger.warning("Skipping comparison %s: %s", name, reason)
                result.skipped[name] = reason
                continue

            de, failures = self.compare(values, cp10k, genes, mask_a, mask_b, group_a, group_b)
            result.comparisons[name] = de
            for gene, reason in failures:
                result.not_applicable.append((name, StatisticalTestError(gene, reason)))
            self.logger.info(
                "DE %s: %d tested, %d not applicable, %d significant",
                name,
                de.n_tested,
                de.n_not_applicable,
                int(de.table["significant"].sum()),
            )

        result.elapsed_seconds = time.time() - start
        return result
