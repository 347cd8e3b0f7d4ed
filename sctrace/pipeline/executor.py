"""Pipeline execution: typed stage DAG with caching, timing and diagnostics."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from ..core.artifacts import (
    ClusterSet,
    DiffExpResult,
    Embedding,
    ExpressionMatrix,
    NormalizedMatrix,
    TrajectoryGraph,
)
from ..core.clustering import ClusteringEngine, ClusteringResult, DEResult, DERunner
from ..core.errors import ConfigValidationError, InputShapeError
from ..core.preprocessing import (
    BatchIntegrator,
    CellQC,
    DataMerger,
    IntegrationResult,
    MergeResult,
    NormalizationResult,
    Normalizer,
)
from ..core.preprocessing.qc import QCBatchResult
from ..core.trajectory import TrajectoryEngine, TrajectoryResult, pseudotime_bins
from .cache import ArtifactCache, artifact_version
from .config import AnalysisConfig, topological_order
from .diagnostics import DiagnosticReport
from .logger import PipelineLogger
from .stage import Stage

StageCallback = Callable[[Stage, Any, bool], None]


class InMemoryExecutor:
    """Runs registered stages in dependency order within one process.

    Each stage receives the outputs named in its ``inputs`` as keyword
    arguments. External inputs are passed to :meth:`run`; stage outputs are
    published under their ``stage_id``.

    Parameters
    ----------
    logger : PipelineLogger, optional
        Logger for stage events
    cache : ArtifactCache, optional
        When given, stage outputs are reused across runs with identical
        upstream versions and configuration

    Example
    -------
    >>> executor = InMemoryExecutor()
    >>> executor.register_stage("double", lambda x: 2 * x, inputs={"x": int}, output=int)
    >>> executor.register_stage("inc", lambda double: double + 1, depends_on=["double"])
    >>> executor.run({"x": 4})["inc"]
    9
    """

    def __init__(
        self,
        logger: Optional[PipelineLogger] = None,
        cache: Optional[ArtifactCache] = None,
    ):
        self.logger = logger
        self.cache = cache
        self.stages: Dict[str, Stage] = {}
        self.completed_stages: List[str] = []
        self.cached_stages: List[str] = []
        self.timings: Dict[str, float] = {}

    def register(self, stage: Stage) -> Stage:
        if stage.stage_id in self.stages:
            raise ValueError(f"Stage '{stage.stage_id}' is already registered")
        self.stages[stage.stage_id] = stage
        return stage

    def register_stage(
        self,
        stage_id: str,
        func: Callable,
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
        inputs: Optional[Dict[str, type]] = None,
        output: type = object,
        config: Any = None,
    ) -> Stage:
        """Register a stage function.

        Parameters
        ----------
        stage_id : str
            Stage identifier
        func : Callable
            Stage function to execute
        depends_on : List[str], optional
            Stage IDs this stage depends on
        name : str, optional
            Human-readable stage name
        inputs : Dict[str, type], optional
            Declared inputs; defaults to the outputs of ``depends_on``
        output : type
            Declared output type
        config : Any
            Stage configuration, part of the cache key
        """
        depends_on = list(depends_on or [])
        if inputs is None:
            inputs = {dep: object for dep in depends_on}
        return self.register(
            Stage(
                name=name or stage_id,
                stage_id=stage_id,
                func=func,
                inputs=dict(inputs),
                output=output,
                depends_on=depends_on,
                config=config,
            )
        )

    def get_execution_order(self) -> List[str]:
        return topological_order({sid: s.depends_on for sid, s in self.stages.items()})

    def validate(self, external: Mapping[str, type]) -> Tuple[bool, List[str]]:
        """Check dependencies and input/output contracts before running.

        Parameters
        ----------
        external : Mapping[str, type]
            Names and types of the inputs passed to :meth:`run`

        Returns
        -------
        Tuple[bool, List[str]]
            (valid, errors)
        """
        errors = []
        try:
            self.get_execution_order()
        except ValueError as exc:
            errors.append(str(exc))

        available: Dict[str, type] = dict(external)
        for sid, stage in self.stages.items():
            if sid in available:
                errors.append(f"Stage id '{sid}' shadows an external input")
            available[sid] = stage.output

        for sid, stage in self.stages.items():
            _, contract_errors = stage.validate_contract(available)
            errors.extend(contract_errors)
            for name in stage.inputs:
                if name in self.stages and name not in stage.depends_on:
                    errors.append(
                        f"Stage '{sid}' reads '{name}' without depending on it"
                    )

        return (len(errors) == 0, errors)

    def _execute(self, stage: Stage, values: Dict[str, Any]) -> Tuple[Any, bool]:
        """Run one stage, or fetch its output from the cache."""
        kwargs = {name: values[name] for name in stage.inputs}
        ok, errors = stage.validate_inputs(kwargs)
        if not ok:
            raise TypeError("; ".join(errors))

        key = None
        if self.cache is not None:
            upstream = [artifact_version(kwargs[name]) for name in stage.inputs]
            key = self.cache.key(stage.stage_id, upstream, stage.config)
            if key in self.cache:
                if self.logger:
                    self.logger.log_stage_cached(stage.stage_id, key)
                return self.cache.get(key), True

        result = stage.func(**kwargs)
        ok, errors = stage.validate_output(result)
        if not ok:
            raise TypeError("; ".join(errors))
        if key is not None:
            self.cache.put(key, result)
        return result, False

    def run(
        self,
        inputs: Optional[Dict[str, Any]] = None,
        on_complete: Optional[StageCallback] = None,
    ) -> Dict[str, Any]:
        """Execute all registered stages in order.

        Parameters
        ----------
        inputs : Dict[str, Any], optional
            External inputs by name
        on_complete : Callable, optional
            Called as ``on_complete(stage, result, cached)`` after each stage

        Returns
        -------
        Dict[str, Any]
            Map of stage_id to stage result
        """
        order = self.get_execution_order()
        values: Dict[str, Any] = dict(inputs or {})
        results: Dict[str, Any] = {}
        self.completed_stages = []
        self.cached_stages = []
        self.timings = {}

        for stage_id in order:
            stage = self.stages[stage_id]
            if self.logger:
                self.logger.log_stage_start(stage_id, stage.name)

            start_time = time.time()
            try:
                result, cached = self._execute(stage, values)
            except Exception as e:
                if self.logger:
                    self.logger.log_stage_error(stage_id, e)
                raise

            duration = time.time() - start_time
            values[stage_id] = result
            results[stage_id] = result
            self.completed_stages.append(stage_id)
            self.timings[stage_id] = duration
            if cached:
                self.cached_stages.append(stage_id)

            if on_complete is not None:
                on_complete(stage, result, cached)
            if self.logger:
                summary = result.to_dict() if hasattr(result, "to_dict") else None
                self.logger.log_stage_complete(stage_id, duration, summary)

        return results


@dataclass
class PipelineResult:
    """Artifacts of one complete pipeline run.

    Attributes
    ----------
    matrix : ExpressionMatrix
        Merged counts of the cells that passed QC
    qc_audit : pd.DataFrame
        Per-cell QC record for every input cell
    normalized : NormalizedMatrix
        Residuals of the variable features
    pca : Embedding
        Embedding before batch integration
    integrated : Embedding
        Embedding after batch integration
    clusters : ClusterSet
        Cluster partition of the integrated embedding
    trajectory : TrajectoryGraph
        Cluster trajectory with pseudotime
    de : Dict[str, DiffExpResult]
        Differential expression tables by comparison name
    diagnostics : DiagnosticReport
        Non-fatal conditions recorded during the run
    stage_results : Dict[str, Any]
        Raw stage results by stage id
    timings : Dict[str, float]
        Wall-clock seconds per stage
    cached_stages : List[str]
        Stages whose output came from the cache
    """

    matrix: ExpressionMatrix
    qc_audit: pd.DataFrame
    normalized: NormalizedMatrix
    pca: Embedding
    integrated: Embedding
    clusters: ClusterSet
    trajectory: TrajectoryGraph
    de: Dict[str, DiffExpResult]
    diagnostics: DiagnosticReport = field(default_factory=DiagnosticReport)
    stage_results: Dict[str, Any] = field(default_factory=dict)
    timings: Dict[str, float] = field(default_factory=dict)
    cached_stages: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Run summary for reporting."""
        return {
            "n_cells": self.matrix.n_cells,
            "n_genes": self.matrix.n_genes,
            "n_variable_features": len(self.normalized.gene_ids),
            "n_clusters": self.clusters.n_clusters,
            "root": self.trajectory.root,
            "unreachable": [int(c) for c in self.trajectory.unreachable],
            "comparisons": list(self.de),
            "timings": {k: round(v, 3) for k, v in self.timings.items()},
            "cached_stages": list(self.cached_stages),
            "diagnostics": self.diagnostics.counts(),
            "versions": {
                "matrix": self.matrix.version,
                "normalized": self.normalized.version,
                "integrated": self.integrated.version,
                "clusters": self.clusters.version,
                "trajectory": self.trajectory.version,
            },
        }


class PipelineRunner:
    """Runs the full analysis from raw samples to ranked DE tables.

    Stages: qc -> merge -> normalize -> integrate -> cluster -> trajectory,
    with de reading the merged counts, clusters and (for pseudotime
    grouping) the trajectory.

    Parameters
    ----------
    config : AnalysisConfig
        Validated analysis configuration
    logger : PipelineLogger, optional
        Logger for stage events; engines log to its underlying logger
    cache : ArtifactCache, optional
        Artifact cache; defaults to one rooted at ``config.cache_dir``

    Example
    -------
    >>> config = AnalysisConfig.from_yaml("analysis.yaml")
    >>> samples = DataLoader(config.loader).load_samples("manifest.csv")
    >>> result = PipelineRunner(config).run(samples)
    >>> result.clusters.n_clusters
    """

    def __init__(
        self,
        config: AnalysisConfig,
        logger: Optional[PipelineLogger] = None,
        cache: Optional[ArtifactCache] = None,
    ):
        self.config = config
        self.plog = logger or PipelineLogger()
        self.logger: logging.Logger = self.plog.logger
        self.cache = cache if cache is not None else ArtifactCache(config.cache_dir)
        self.diagnostics = DiagnosticReport()

    def build_stages(self) -> List[Stage]:
        """Create the stage contracts bound to engines built from the config."""
        cfg = self.config
        scope = cfg.scope
        log = self.logger

        qc = CellQC(cfg.stage_config("qc"), logger=log)
        merger = DataMerger(cfg.stage_config("merge"), logger=log)
        normalizer = Normalizer(cfg.stage_config("normalization"), logger=log)
        integrator = BatchIntegrator(cfg.stage_config("integration"), logger=log)
        clustering = ClusteringEngine(cfg.stage_config("clustering"), logger=log)
        trajectory = TrajectoryEngine(cfg.stage_config("trajectory"), logger=log)
        de_runner = DERunner(cfg.stage_config("de"), logger=log)
        by_pseudotime = cfg.de.group_by == "pseudotime"

        def run_de(merge, cluster, normalize, trajectory=None):
            if trajectory is not None:
                groups = pseudotime_bins(trajectory.graph, cfg.de.n_pseudotime_bins)
            else:
                groups = de_runner.groups_from_clusters(cluster.clusters)
            return de_runner.run_de_tests(merge.matrix, groups, normalized=normalize.normalized)

        de_inputs: Dict[str, type] = {
            "merge": MergeResult,
            "cluster": ClusteringResult,
            "normalize": NormalizationResult,
        }
        if by_pseudotime:
            de_inputs["trajectory"] = TrajectoryResult
        scope_tag = scope.label()

        return [
            Stage(
                name="Cell Quality Control",
                stage_id="qc",
                func=lambda samples: qc.filter_samples(samples),
                inputs={"samples": list},
                output=QCBatchResult,
                config=qc.config,
            ),
            Stage(
                name="Sample Merge",
                stage_id="merge",
                func=lambda qc: merger.merge_samples(qc.matrices),
                inputs={"qc": QCBatchResult},
                output=MergeResult,
                depends_on=["qc"],
                config=merger.config,
            ),
            Stage(
                name="Normalization and PCA",
                stage_id="normalize",
                func=lambda merge: normalizer.normalize(merge.matrix, gene_scope=scope),
                inputs={"merge": MergeResult},
                output=NormalizationResult,
                depends_on=["merge"],
                config=(normalizer.config, scope_tag, cfg.gene_scope),
            ),
            Stage(
                name="Batch Integration",
                stage_id="integrate",
                func=lambda normalize: integrator.integrate(normalize.embedding, gene_scope=scope),
                inputs={"normalize": NormalizationResult},
                output=IntegrationResult,
                depends_on=["normalize"],
                config=(integrator.config, scope_tag),
            ),
            Stage(
                name="Clustering",
                stage_id="cluster",
                func=lambda integrate: clustering.run_clustering(integrate.embedding),
                inputs={"integrate": IntegrationResult},
                output=ClusteringResult,
                depends_on=["integrate"],
                config=clustering.config,
            ),
            Stage(
                name="Trajectory Inference",
                stage_id="trajectory",
                func=lambda integrate, cluster, merge: trajectory.infer(
                    integrate.embedding, cluster.clusters, matrix=merge.matrix, gene_scope=scope
                ),
                inputs={
                    "integrate": IntegrationResult,
                    "cluster": ClusteringResult,
                    "merge": MergeResult,
                },
                output=TrajectoryResult,
                depends_on=["integrate", "cluster", "merge"],
                config=(trajectory.config, cfg.gene_scope),
            ),
            Stage(
                name="Differential Expression",
                stage_id="de",
                func=run_de,
                inputs=de_inputs,
                output=DEResult,
                depends_on=list(de_inputs),
                config=de_runner.config,
            ),
        ]

    def build_executor(self) -> InMemoryExecutor:
        executor = InMemoryExecutor(logger=self.plog, cache=self.cache)
        for stage in self.build_stages():
            executor.register(stage)
        return executor

    def validate(self, samples: Sequence[ExpressionMatrix]) -> InMemoryExecutor:
        """Validate inputs, configuration and stage contracts.

        Raises
        ------
        InputShapeError
            If an input is not an ExpressionMatrix or no samples are given
        ConfigValidationError
            If the configuration or a stage contract is invalid
        """
        if not samples:
            raise InputShapeError("No samples to analyse")
        for sample in samples:
            if not isinstance(sample, ExpressionMatrix):
                raise InputShapeError(
                    f"Expected ExpressionMatrix samples, got {type(sample).__name__}"
                )
        self.config.validate(samples)
        executor = self.build_executor()
        ok, errors = executor.validate({"samples": list})
        if not ok:
            raise ConfigValidationError(errors)
        return executor

    def _collect(self, stage: Stage, result: Any, cached: bool) -> None:
        """Record the non-fatal conditions carried by a stage result."""
        report = self.diagnostics
        sid = stage.stage_id
        if isinstance(result, QCBatchResult):
            for error in result.skipped:
                report.add_error(sid, error)
        elif isinstance(result, (IntegrationResult, ClusteringResult)):
            for warning in result.warnings:
                report.add_warning(warning)
        elif isinstance(result, TrajectoryResult):
            for error in result.disconnected:
                report.add_error(sid, error)
        elif isinstance(result, DEResult):
            for comparison, error in result.not_applicable:
                entry = report.add_error(sid, error)
                entry.details["comparison"] = comparison
            for comparison, reason in result.skipped.items():
                report.add(sid, "SkippedComparison", comparison, reason)

    def run(self, samples: Sequence[ExpressionMatrix]) -> PipelineResult:
        """Run every stage on the given raw samples.

        Parameters
        ----------
        samples : Sequence[ExpressionMatrix]
            Raw per-sample matrices

        Returns
        -------
        PipelineResult
            All artifacts plus the diagnostic report
        """
        samples = list(samples)
        executor = self.validate(samples)
        self.diagnostics = DiagnosticReport()

        self.logger.info(
            "Running analysis on %d samples (%d cells)",
            len(samples),
            sum(s.n_cells for s in samples),
        )
        results = executor.run({"samples": samples}, on_complete=self._collect)
        self.plog.log_diagnostics(self.diagnostics)

        qc: QCBatchResult = results["qc"]
        normalize: NormalizationResult = results["normalize"]
        return PipelineResult(
            matrix=results["merge"].matrix,
            qc_audit=qc.audit,
            normalized=normalize.normalized,
            pca=normalize.embedding,
            integrated=results["integrate"].embedding,
            clusters=results["cluster"].clusters,
            trajectory=results["trajectory"].graph,
            de=dict(results["de"].comparisons),
            diagnostics=self.diagnostics,
            stage_results=results,
            timings=dict(executor.timings),
            cached_stages=list(executor.cached_stages),
        )
