"""Exception and warning types raised by pipeline stages.

Fatal errors (``InputShapeError``, ``ConfigValidationError``) abort a run
before any stage executes. The remaining types describe recoverable
conditions: stages raise or emit them, the runner catches them and records
them in the :class:`~sctrace.pipeline.diagnostics.DiagnosticReport`.
"""

from typing import Any, Dict, List, Optional


class SctraceError(Exception):
    """Base class for all pipeline errors."""


class InputShapeError(SctraceError, ValueError):
    """Declared metadata and matrix dimensions disagree."""


class ConfigValidationError(SctraceError, ValueError):
    """Configuration failed validation.

    Parameters
    ----------
    errors : List[str]
        Individual validation messages
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        message = "Invalid configuration:\n" + "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(message)

    def __reduce__(self):
        return (self.__class__, (self.errors,))


class EmptySampleError(SctraceError):
    """Every cell of a sample failed quality control."""

    def __init__(self, sample_id: str, n_cells: int = 0, records: Any = None):
        self.sample_id = sample_id
        self.n_cells = n_cells
        self.records = records
        super().__init__(
            f"All {n_cells} cells of sample '{sample_id}' failed QC"
        )

    def __reduce__(self):
        return (self.__class__, (self.sample_id, self.n_cells, self.records))


class DisconnectedTrajectoryError(SctraceError):
    """A cluster cannot be reached from the trajectory root."""

    def __init__(self, cluster_id: int, root: int, n_cells: int = 0):
        self.cluster_id = cluster_id
        self.root = root
        self.n_cells = n_cells
        super().__init__(
            f"Cluster {cluster_id} ({n_cells} cells) is unreachable from root "
            f"cluster {root}; pseudotime undefined"
        )

    def __reduce__(self):
        return (self.__class__, (self.cluster_id, self.root, self.n_cells))


class StatisticalTestError(SctraceError):
    """A per-gene test could not be computed (e.g. zero variance)."""

    def __init__(self, gene: str, reason: str):
        self.gene = gene
        self.reason = reason
        super().__init__(f"Test not applicable for gene '{gene}': {reason}")

    def __reduce__(self):
        return (self.__class__, (self.gene, self.reason))


class ConvergenceWarning(UserWarning):
    """An iterative procedure stopped before reaching its tolerance.

    Parameters
    ----------
    stage : str
        Stage that produced the warning
    iterations : int
        Completed iterations
    displacement : float
        Change in the last completed iteration: centroid displacement for
        integration, fraction of nodes moved for clustering
    cancelled : bool
        Whether the loop was stopped by its wall-clock deadline
    """

    def __init__(
        self,
        stage: str,
        iterations: int,
        displacement: float,
        cancelled: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.stage = stage
        self.iterations = iterations
        self.displacement = displacement
        self.cancelled = cancelled
        self.details = details or {}
        reason = "deadline reached" if cancelled else "iteration budget exhausted"
        super().__init__(
            f"{stage}: {reason} after {iterations} iterations "
            f"(displacement={displacement:.3g})"
        )

    def __reduce__(self):
        return (
            self.__class__,
            (self.stage, self.iterations, self.displacement, self.cancelled, self.details),
        )
