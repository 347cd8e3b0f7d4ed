"""Batch effect correction.

Iterative soft-clustering correction of a PCA embedding: cells are softly
assigned to clusters with a diversity penalty that discourages clusters
dominated by one batch; per-cluster batch centroids then give a correction
vector per cell that is subtracted from the original coordinates.

The loop always returns a result. It stops when the maximum cluster
centroid displacement falls below ``epsilon`` (converged), when
``max_iterations`` is reached, or when the wall-clock deadline expires;
the latter two emit a :class:`~sctrace.core.errors.ConvergenceWarning`.
"""

import logging
import time
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from ...utils.hashing import chain_version, stable_hash
from ...utils.stats import cross_batch_neighbor_rate
from ..artifacts import Embedding, GeneScope
from ..errors import ConvergenceWarning
from .config import IntegrationConfig


@dataclass
class IntegrationResult:
    """Result from batch integration.

    Attributes
    ----------
    embedding : Embedding
        Corrected embedding (stage "integrated"), same cells and order
    converged : bool
        Whether the displacement fell below epsilon
    iterations : int
        Completed correction rounds
    displacement : float
        Last achieved maximum centroid displacement
    cancelled : bool
        Whether the deadline stopped the loop
    n_clusters : int
        Number of soft clusters
    n_batches : int
        Number of batches
    history : List[Dict[str, float]]
        Displacement per completed iteration
    warnings : List[ConvergenceWarning]
        Warnings emitted by the loop
    """

    embedding: Embedding
    converged: bool = True
    iterations: int = 0
    displacement: float = 0.0
    cancelled: bool = False
    n_clusters: int = 0
    n_batches: int = 1
    history: List[Dict[str, float]] = field(default_factory=list)
    warnings: List[ConvergenceWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "converged": self.converged,
            "iterations": self.iterations,
            "displacement": float(self.displacement),
            "cancelled": self.cancelled,
            "n_clusters": self.n_clusters,
            "n_batches": self.n_batches,
        }


def _cosine_normalize(x: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(x, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return x / norms


class BatchIntegrator:
    """Soft-clustering batch corrector for embeddings.

    Parameters
    ----------
    config : IntegrationConfig
        Integration configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from sctrace.core.preprocessing import BatchIntegrator, IntegrationConfig
    >>> integrator = BatchIntegrator(IntegrationConfig(epsilon=1e-4))
    >>> result = integrator.integrate(norm_result.embedding)
    >>> result.converged, result.iterations
    """

    def __init__(
        self,
        config: Optional[IntegrationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or IntegrationConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import sklearn  # noqa: F401
            import statsmodels.api  # noqa: F401
            import statsmodels.formula.api  # noqa: F401
        except ImportError:
            raise RuntimeError(
                "Batch integration requires scikit-learn and statsmodels. "
                "Install with: pip install scikit-learn statsmodels"
            )

    def n_soft_clusters(self, n_cells: int) -> int:
        """Number of soft clusters, bounded to [2, n_cells]."""
        cfg = self.config
        if cfg.n_clusters is not None:
            k = int(cfg.n_clusters)
        else:
            k = int(round(cfg.resolution * n_cells / 30.0))
        return int(min(max(k, 2), max(n_cells, 1)))

    def _init_centroids(self, z_cos: np.ndarray, k: int) -> np.ndarray:
        from sklearn.cluster import KMeans

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            km = KMeans(n_clusters=k, n_init=1, random_state=self.config.seed)
            km.fit(z_cos)
        return _cosine_normalize(km.cluster_centers_)

    def _soft_assign(
        self,
        z_cos: np.ndarray,
        centroids: np.ndarray,
        phi: np.ndarray,
        batch_prior: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Refine soft assignments and centroids; returns ``(R, centroids)``.

        ``R`` is (n_cells, k), rows summing to one.
        """
        cfg = self.config
        batch_index = phi.argmax(axis=1)
        for _ in range(max(int(cfg.max_kmeans_iterations), 1)):
            dist = 2.0 * (1.0 - z_cos @ centroids.T)
            logits = -dist / cfg.sigma
            logits -= logits.max(axis=1, keepdims=True)
            r = np.exp(logits)
            r /= r.sum(axis=1, keepdims=True)

            # Diversity penalty: shrink clusters over-represented by a cell's batch
            expected = r.sum(axis=0)[:, None] * batch_prior[None, :]
            observed = r.T @ phi
            penalty = ((expected + 1.0) / (observed + 1.0)) ** cfg.theta
            r = r * penalty.T[batch_index]
            r /= r.sum(axis=1, keepdims=True)

            centroids = _cosine_normalize(r.T @ z_cos)
        return r, centroids

    def _correct(self, z: np.ndarray, r: np.ndarray, phi: np.ndarray) -> np.ndarray:
        """Subtract ridge-shrunk per-cluster batch offsets from ``z``."""
        lam = float(self.config.ridge_lambda)
        weight = r.sum(axis=0)  # (k,)
        totals = r.T @ z  # (k, d)
        with np.errstate(invalid="ignore", divide="ignore"):
            reference = np.where(weight[:, None] > 0, totals / weight[:, None], 0.0)

        correction = np.zeros_like(z)
        for b in range(phi.shape[1]):
            members = phi[:, b] > 0
            if not members.any():
                continue
            r_b = r[members]  # (n_b, k)
            weight_b = r_b.sum(axis=0)
            centroid_b = (r_b.T @ z[members] + lam * reference) / (weight_b[:, None] + lam)
            offset = centroid_b - reference  # (k, d)
            correction[members] = r_b @ offset
        return z - correction

    def integrate(
        self,
        embedding: Embedding,
        gene_scope: Optional[GeneScope] = None,
    ) -> IntegrationResult:
        """Correct batch effects in an embedding.

        Parameters
        ----------
        embedding : Embedding
            PCA embedding with a batch column in ``obs``
        gene_scope : GeneScope, optional
            Scope of the upstream features (recorded in the version tag)

        Returns
        -------
        IntegrationResult
            Corrected embedding and convergence bookkeeping
        """
        cfg = self.config
        gene_scope = gene_scope or GeneScope.full()
        version = chain_version(
            "integrated", embedding.version, stable_hash(cfg), gene_scope.label()
        )

        batches = embedding.labels(cfg.batch_key)
        levels = list(dict.fromkeys(batches))
        if len(levels) < 2 or embedding.n_cells < 2:
            self.logger.info("Single batch: integration skipped")
            return IntegrationResult(
                embedding=Embedding(
                    coords=embedding.coords,
                    cell_ids=embedding.cell_ids,
                    obs=embedding.obs,
                    stage="integrated",
                    version=version,
                ),
                converged=True,
                iterations=0,
                displacement=0.0,
                n_batches=len(levels),
            )

        z = np.array(embedding.coords, dtype=float)
        phi = np.zeros((z.shape[0], len(levels)))
        phi[np.arange(z.shape[0]), [levels.index(b) for b in batches]] = 1.0
        batch_prior = phi.mean(axis=0)

        k = self.n_soft_clusters(z.shape[0])
        centroids = self._init_centroids(_cosine_normalize(z), k)
        corrected = z.copy()

        self.logger.info(
            "Integrating %d cells across %d batches (%d soft clusters)",
            z.shape[0], len(levels), k,
        )

        start = time.monotonic()
        history: List[Dict[str, float]] = []
        converged = False
        cancelled = False
        displacement = float("inf")
        iterations = 0

        while iterations < cfg.max_iterations:
            r, new_centroids = self._soft_assign(
                _cosine_normalize(corrected), centroids, phi, batch_prior
            )
            candidate = self._correct(z, r, phi)
            step = float(np.max(np.linalg.norm(new_centroids - centroids, axis=1)))

            if cfg.deadline_seconds is not None and time.monotonic() - start >= cfg.deadline_seconds:
                cancelled = True
                break

            corrected, centroids, displacement = candidate, new_centroids, step
            iterations += 1
            history.append({"iteration": iterations, "displacement": step})
            self.logger.debug("Integration iteration %d: displacement=%.3g", iterations, step)
            if step < cfg.epsilon:
                converged = True
                break

        result = IntegrationResult(
            embedding=Embedding(
                coords=corrected,
                cell_ids=embedding.cell_ids,
                obs=embedding.obs,
                stage="integrated",
                version=version,
            ),
            converged=converged,
            iterations=iterations,
            displacement=displacement if iterations else float("nan"),
            cancelled=cancelled,
            n_clusters=k,
            n_batches=len(levels),
            history=history,
        )

        if not converged:
            warning = ConvergenceWarning(
                stage="integrate",
                iterations=iterations,
                displacement=result.displacement,
                cancelled=cancelled,
                details={"epsilon": cfg.epsilon, "max_iterations": cfg.max_iterations},
            )
            warnings.warn(warning, stacklevel=2)
            self.logger.warning(str(warning))
            result.warnings.append(warning)
        else:
            self.logger.info(
                "Integration converged after %d iterations (displacement=%.3g)",
                iterations, displacement,
            )
        return result

    def mixing_rate(self, embedding: Embedding, k: int = 15) -> float:
        """Cross-batch nearest-neighbor rate of an embedding."""
        return cross_batch_neighbor_rate(embedding.coords, embedding.labels(self.config.batch_key), k=k)

    def compute_batch_statistics(self, embedding: Embedding) -> pd.DataFrame:
        """Per-dimension batch effect statistics.

        Fits ``value ~ C(batch)`` per embedding dimension and reports the
        fraction of variance explained by batch.

        Parameters
        ----------
        embedding : Embedding
            Embedding with a batch column in ``obs``

        Returns
        -------
        pd.DataFrame
            Columns: dimension, eta2_batch, p_batch, stability
        """
        import statsmodels.api as sm
        import statsmodels.formula.api as smf

        batches = embedding.labels(self.config.batch_key)
        records = []
        for d in range(embedding.n_dims):
            record = {
                "dimension": d + 1,
                "eta2_batch": float("nan"),
                "p_batch": float("nan"),
                "stability": "stable",
            }
            frame = pd.DataFrame({"value": embedding.coords[:, d], "batch": batches})
            if frame["batch"].nunique() >= 2 and frame["value"].var() > 0:
                model = smf.ols("value ~ C(batch)", data=frame).fit()
                table = sm.stats.anova_lm(model, typ=2)
                total_ss = float(table["sum_sq"].sum())
                if total_ss > 0:
                    record["eta2_batch"] = float(table.loc["C(batch)", "sum_sq"]) / total_ss
                    record["p_batch"] = float(table.loc["C(batch)", "PR(>F)"])

            p, eta = record["p_batch"], record["eta2_batch"]
            if pd.notna(p) and pd.notna(eta):
                if p < 0.01 and eta >= 0.5:
                    record["stability"] = "drifted"
                elif (0.01 <= p < 0.05) or (0.3 <= eta < 0.5):
                    record["stability"] = "observe"
            records.append(record)

        return pd.DataFrame(records)
