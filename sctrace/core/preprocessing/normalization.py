"""Variance-stabilizing normalization.

Fits a per-gene negative binomial model of counts against sequencing depth,
converts counts to Pearson residuals, selects variable features by residual
variance and reduces them to a PCA embedding.

Methods
-------
- ``glm``: per-gene regression ``log mu = b0 + b1 * log10(depth)`` with
  statsmodels; over-dispersion estimated by method of moments and smoothed
  against the gene mean with lowess.
- ``analytic``: closed-form ``mu = depth * gene_sum / total`` with a fixed
  over-dispersion ``theta``.
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from ...utils.hashing import chain_version, stable_hash
from ..artifacts import Embedding, ExpressionMatrix, GeneScope, NormalizedMatrix
from ..errors import ConfigValidationError, InputShapeError
from .config import NormalizationConfig

METHODS = ("glm", "analytic")

# Bounds for per-gene over-dispersion estimates
THETA_MIN = 1e-2
THETA_MAX = 1e6


@dataclass
class NormalizationResult:
    """Result from normalization.

    Attributes
    ----------
    normalized : NormalizedMatrix
        Residuals of the selected variable features
    embedding : Embedding
        PCA embedding (stage "pca")
    explained_variance_ratio : np.ndarray
        Variance ratio per principal component
    n_genes_modelled : int
        Genes passing the detection floor
    method : str
        Model used ("glm" or "analytic")
    """

    normalized: NormalizedMatrix
    embedding: Embedding
    explained_variance_ratio: np.ndarray = field(default_factory=lambda: np.zeros(0))
    n_genes_modelled: int = 0
    method: str = "glm"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "n_genes_modelled": self.n_genes_modelled,
            "n_variable_features": self.normalized.n_genes,
            "n_components": self.embedding.n_dims,
            "explained_variance": [round(float(v), 6) for v in self.explained_variance_ratio],
        }


def _moment_theta(y: np.ndarray, mu: np.ndarray) -> float:
    """Method-of-moments over-dispersion from ``Var = mu + mu^2 / theta``."""
    excess = float(np.sum((y - mu) ** 2 - mu))
    if excess <= 0:
        return THETA_MAX
    return float(np.clip(np.sum(mu ** 2) / excess, THETA_MIN, THETA_MAX))


def _fit_gene_glm(y: np.ndarray, design: np.ndarray, offset_mu: np.ndarray) -> Tuple[float, float, float]:
    """Fit one gene; returns ``(b0, b1, theta_raw)``.

    A Poisson fit provides starting coefficients and the moment estimate of
    theta; the negative binomial fit with that theta gives the final
    coefficients. Genes whose fit fails fall back to the depth-offset mean.
    """
    import statsmodels.api as sm
    from statsmodels.tools.sm_exceptions import PerfectSeparationError

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            poisson = sm.GLM(y, design, family=sm.families.Poisson()).fit()
            theta = _moment_theta(y, poisson.fittedvalues)
            nb = sm.GLM(
                y,
                design,
                family=sm.families.NegativeBinomial(alpha=1.0 / theta),
            ).fit(start_params=poisson.params)
        b0, b1 = (float(v) for v in nb.params)
        if not (np.isfinite(b0) and np.isfinite(b1)):
            raise ValueError("non-finite coefficients")
        return b0, b1, theta
    except (np.linalg.LinAlgError, ValueError, PerfectSeparationError):
        return float("nan"), float("nan"), _moment_theta(y, offset_mu)


def _fit_chunk(
    block: np.ndarray,
    depth: np.ndarray,
    method: str,
    theta: float,
    total: float,
) -> Dict[str, np.ndarray]:
    """Fit the count model for a chunk of genes (cells x genes block)."""
    n_genes = block.shape[1]
    gene_sum = block.sum(axis=0)
    b0 = np.full(n_genes, np.nan)
    b1 = np.full(n_genes, np.nan)
    theta_raw = np.full(n_genes, float(theta))

    if method == "glm":
        log_depth = np.log10(np.maximum(depth, 1.0))
        design = np.column_stack([np.ones_like(log_depth), log_depth])
        for j in range(n_genes):
            offset_mu = depth * gene_sum[j] / total
            b0[j], b1[j], theta_raw[j] = _fit_gene_glm(block[:, j], design, offset_mu)

    return {"gene_sum": gene_sum, "b0": b0, "b1": b1, "theta_raw": theta_raw}


def _chunk_residuals(
    block: np.ndarray,
    depth: np.ndarray,
    b0: np.ndarray,
    b1: np.ndarray,
    theta: np.ndarray,
    total: float,
    clip: Optional[float],
) -> np.ndarray:
    """Pearson residuals for a chunk of genes."""
    analytic_mu = np.outer(depth, block.sum(axis=0) / total)
    log_depth = np.log10(np.maximum(depth, 1.0))
    fitted = np.exp(b0[None, :] + b1[None, :] * log_depth[:, None])
    mu = np.where(np.isfinite(fitted), fitted, analytic_mu)
    mu = np.maximum(mu, 1e-12)
    residuals = (block - mu) / np.sqrt(mu + mu ** 2 / theta[None, :])
    if clip is not None:
        residuals = np.clip(residuals, -clip, clip)
    return residuals


def _chunk_variance(*args: Any) -> np.ndarray:
    return _chunk_residuals(*args).var(axis=0)


class Normalizer:
    """Pearson-residual normalizer with variable feature selection and PCA.

    Parameters
    ----------
    config : NormalizationConfig
        Normalization configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from sctrace.core.preprocessing import Normalizer, NormalizationConfig
    >>> normalizer = Normalizer(NormalizationConfig(variable_feature_count=500))
    >>> result = normalizer.normalize(merged.matrix)
    >>> result.embedding.coords.shape
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NormalizationConfig()
        self.logger = logger or logging.getLogger(__name__)
        if self.config.method not in METHODS:
            raise ValueError(f"Unknown normalization method '{self.config.method}'. Use one of {METHODS}")
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import scanpy  # noqa: F401
            import statsmodels  # noqa: F401
            import joblib  # noqa: F401
        except ImportError:
            raise RuntimeError(
                "Normalization requires scanpy, statsmodels and joblib. "
                "Install with: pip install scanpy statsmodels joblib"
            )

    def _chunks(self, n_genes: int) -> List[Tuple[int, int]]:
        size = max(int(self.config.chunk_size), 1)
        return [(start, min(start + size, n_genes)) for start in range(0, n_genes, size)]

    def _parallel(self, func: Any, jobs: List[Tuple[Any, ...]]) -> List[Any]:
        from joblib import Parallel, delayed

        if self.config.n_jobs == 1 or len(jobs) <= 1:
            return [func(*args) for args in jobs]
        return Parallel(n_jobs=self.config.n_jobs)(delayed(func)(*args) for args in jobs)

    def smooth_theta(self, gene_mean: np.ndarray, theta_raw: np.ndarray) -> np.ndarray:
        """Regularize per-gene theta by a lowess fit against log10 mean.

        Parameters
        ----------
        gene_mean : np.ndarray
            Mean count per gene
        theta_raw : np.ndarray
            Moment estimates of theta per gene

        Returns
        -------
        np.ndarray
            Smoothed theta (raw values when fewer than 10 genes)
        """
        if self.config.method != "glm" or len(theta_raw) < 10:
            return theta_raw.copy()

        from statsmodels.nonparametric.smoothers_lowess import lowess

        x = np.log10(np.maximum(gene_mean, 1e-12))
        y = np.log10(np.clip(theta_raw, THETA_MIN, THETA_MAX))
        fitted = lowess(y, x, frac=0.3, it=1, return_sorted=False)
        fitted = np.where(np.isfinite(fitted), fitted, y)
        return np.clip(10 ** fitted, THETA_MIN, THETA_MAX)

    def compute_residuals(
        self,
        matrix: ExpressionMatrix,
    ) -> Tuple[pd.DataFrame, Dict[str, np.ndarray]]:
        """Fit the count model and compute residual variance per gene.

        Parameters
        ----------
        matrix : ExpressionMatrix
            Merged counts

        Returns
        -------
        Tuple[pd.DataFrame, Dict[str, np.ndarray]]
            Per-gene statistics for modelled genes, and the model arrays
            needed to recompute residuals (``positions``, ``b0``, ``b1``,
            ``theta``, ``depth``)
        """
        cfg = self.config
        counts = matrix.counts.tocsc().astype(np.float64)
        depth = matrix.total_counts().astype(np.float64)
        total = float(depth.sum())
        if total <= 0:
            raise InputShapeError("Count matrix has no counts to normalize")

        detected = np.diff(counts.indptr)
        positions = np.flatnonzero(detected >= max(cfg.min_cells_per_gene, 1))
        if positions.size < 2:
            raise InputShapeError(
                f"Only {positions.size} genes detected in >= {cfg.min_cells_per_gene} cells"
            )
        self.logger.info(
            "Modelling %d/%d genes (%s, %d chunks, n_jobs=%d)",
            positions.size,
            matrix.n_genes,
            cfg.method,
            len(self._chunks(positions.size)),
            cfg.n_jobs,
        )

        chunks = self._chunks(positions.size)
        fits = self._parallel(
            _fit_chunk,
            [
                (counts[:, positions[a:b]].toarray(), depth, cfg.method, cfg.theta, total)
                for a, b in chunks
            ],
        )
        gene_sum = np.concatenate([f["gene_sum"] for f in fits])
        b0 = np.concatenate([f["b0"] for f in fits])
        b1 = np.concatenate([f["b1"] for f in fits])
        theta_raw = np.concatenate([f["theta_raw"] for f in fits])

        gene_mean = gene_sum / matrix.n_cells
        theta = self.smooth_theta(gene_mean, theta_raw)
        clip = float(np.sqrt(matrix.n_cells)) if cfg.clip_residuals else None

        variances = self._parallel(
            _chunk_variance,
            [
                (
                    counts[:, positions[a:b]].toarray(),
                    depth, b0[a:b], b1[a:b], theta[a:b], total, clip,
                )
                for a, b in chunks
            ],
        )
        residual_variance = np.concatenate(variances)

        stats = pd.DataFrame(
            {
                "mean": gene_mean,
                "detected_cells": detected[positions],
                "b0": b0,
                "b1": b1,
                "theta_raw": theta_raw,
                "theta": theta,
                "residual_variance": residual_variance,
            },
            index=pd.Index(matrix.gene_ids[positions], name="gene_id"),
        )
        model = {
            "positions": positions,
            "b0": b0,
            "b1": b1,
            "theta": theta,
            "depth": depth,
            "total": np.array([total]),
        }
        return stats, model

    def select_features(self, stats: pd.DataFrame, gene_scope: GeneScope) -> pd.DataFrame:
        """Rank genes by residual variance within ``gene_scope``.

        Ties are broken by gene order. Adds ``selected`` and ``rank``
        columns (rank is 1-based, missing for unselected genes).
        """
        stats = stats.copy()
        candidates = gene_scope.mask(list(stats.index))
        if not candidates.any():
            raise ConfigValidationError(
                [f"gene_scope {gene_scope.label()} contains none of the modelled genes"]
            )

        order = np.arange(len(stats))
        variance = stats["residual_variance"].to_numpy()
        ranked = [i for i in np.lexsort((order, -variance)) if candidates[i]]
        chosen = ranked[: max(int(self.config.variable_feature_count), 1)]

        rank = pd.Series(pd.NA, index=stats.index, dtype="Int64")
        rank.iloc[chosen] = np.arange(1, len(chosen) + 1)
        stats["in_scope"] = candidates
        stats["selected"] = rank.notna().to_numpy()
        stats["rank"] = rank
        return stats

    def run_pca(self, residuals: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Scale residuals and reduce with PCA.

        Component signs are fixed so the largest-magnitude loading of each
        component is positive.

        Returns
        -------
        Tuple[np.ndarray, np.ndarray]
            Coordinates (n_cells, n_comps) and explained variance ratios
        """
        import anndata as ad
        import scanpy as sc

        n_obs, n_vars = residuals.shape
        n_comps = min(int(self.config.n_components), n_vars - 1, n_obs - 1)
        if n_comps < 1:
            raise InputShapeError(
                f"Cannot compute PCA on {n_obs} cells x {n_vars} genes"
            )

        adata = ad.AnnData(X=np.array(residuals, dtype=np.float64))
        sc.pp.scale(adata, zero_center=True, max_value=self.config.scale_clip)
        sc.tl.pca(
            adata,
            n_comps=n_comps,
            svd_solver="arpack",
            random_state=self.config.seed,
        )

        coords = np.array(adata.obsm["X_pca"], dtype=float)
        loadings = np.array(adata.varm["PCs"], dtype=float)
        for k in range(n_comps):
            if loadings[np.argmax(np.abs(loadings[:, k])), k] < 0:
                coords[:, k] *= -1
        ratio = np.asarray(adata.uns["pca"]["variance_ratio"], dtype=float)
        return coords, ratio

    def normalize(
        self,
        matrix: ExpressionMatrix,
        gene_scope: Optional[GeneScope] = None,
    ) -> NormalizationResult:
        """Normalize merged counts and build the PCA embedding.

        Parameters
        ----------
        matrix : ExpressionMatrix
            Merged counts
        gene_scope : GeneScope, optional
            Variable feature candidates (default: all genes)

        Returns
        -------
        NormalizationResult
            Residuals of the selected genes and the PCA embedding
        """
        cfg = self.config
        gene_scope = gene_scope or GeneScope.full()

        stats, model = self.compute_residuals(matrix)
        stats = self.select_features(stats, gene_scope)

        selected = stats.index[stats["selected"].to_numpy()]
        order = np.argsort(stats.loc[selected, "rank"].to_numpy(dtype=np.int64), kind="stable")
        selected = selected[order]
        local = stats.index.get_indexer(selected)
        positions = model["positions"][local]

        clip = float(np.sqrt(matrix.n_cells)) if cfg.clip_residuals else None
        block = matrix.counts.tocsc()[:, positions].toarray().astype(np.float64)
        residuals = _chunk_residuals(
            block,
            model["depth"],
            model["b0"][local],
            model["b1"][local],
            model["theta"][local],
            float(model["total"][0]),
            clip,
        )

        config_hash = stable_hash(cfg)
        normalized = NormalizedMatrix(
            residuals=residuals,
            cell_ids=matrix.cell_ids,
            gene_ids=selected,
            gene_stats=stats,
            gene_scope=gene_scope,
            seed=cfg.seed,
            version=chain_version("normalized", matrix.version, config_hash, gene_scope.label()),
        )

        coords, ratio = self.run_pca(residuals)
        embedding = Embedding(
            coords=coords,
            cell_ids=matrix.cell_ids,
            obs=matrix.obs,
            stage="pca",
            version=chain_version("pca", normalized.version, config_hash),
        )

        self.logger.info(
            "Selected %d variable features (%s scope); PCA with %d components",
            normalized.n_genes,
            gene_scope.label(),
            embedding.n_dims,
        )
        return NormalizationResult(
            normalized=normalized,
            embedding=embedding,
            explained_variance_ratio=ratio,
            n_genes_modelled=len(stats),
            method=cfg.method,
        )
