"""Master analysis configuration: loading, serialization and validation."""

import copy
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import yaml

from ..core.artifacts import ExpressionMatrix, GeneScope
from ..core.clustering.config import (
    COMPARISON_MODES,
    DE_VALUES,
    METRICS,
    ClusteringConfig,
    DEConfig,
)
from ..core.errors import ConfigValidationError
from ..core.preprocessing.config import (
    IntegrationConfig,
    LoaderConfig,
    MergeConfig,
    NormalizationConfig,
    QCConfig,
)
from ..core.preprocessing.merge import GENE_JOINS
from ..core.preprocessing.normalization import METHODS as NORMALIZATION_METHODS
from ..core.trajectory.config import RootStrategy, TrajectoryConfig
from ..utils.hashing import derive_seed, stable_hash

# Sub-seed index per stage when a global seed is set
STAGE_SEED_INDEX = {
    "normalization": 0,
    "integration": 1,
    "clustering": 2,
}

DE_METHODS = ("wilcoxon",)
DE_GROUPINGS = ("cluster", "pseudotime")

_SECTIONS = {
    "loader": LoaderConfig,
    "qc": QCConfig,
    "merge": MergeConfig,
    "normalization": NormalizationConfig,
    "integration": IntegrationConfig,
    "clustering": ClusteringConfig,
    "de": DEConfig,
}


def _build_section(name: str, cls: type, data: Optional[Dict[str, Any]], errors: List[str]) -> Any:
    """Instantiate one section dataclass, collecting unknown keys as errors."""
    data = dict(data or {})
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        errors.append(f"Unknown keys in '{name}': {unknown}")
        for key in unknown:
            data.pop(key)
    return cls(**data)


@dataclass
class AnalysisConfig:
    """Complete configuration of one pipeline run.

    Attributes
    ----------
    excluded_genes : List[str]
        Genes removed from every sample before QC metrics are computed
    gene_scope : List[str], optional
        Restrict variable feature candidates and marker lookup to these
        genes; all genes when None
    seed : int, optional
        Global seed; when set, stage seeds are derived from it and the
        per-section seeds are ignored
    loader, qc, merge, normalization, integration, clustering, trajectory, de
        Per-stage configuration sections
    cache_dir : str, optional
        Directory for persisted stage artifacts; in-memory cache only when None

    Example
    -------
    >>> config = AnalysisConfig.from_yaml("analysis.yaml")
    >>> config.validate(samples)
    >>> config.to_yaml("out/analysis_config.yaml")
    """

    excluded_genes: List[str] = field(default_factory=list)
    gene_scope: Optional[List[str]] = None
    seed: Optional[int] = None
    loader: LoaderConfig = field(default_factory=LoaderConfig)
    qc: QCConfig = field(default_factory=QCConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    trajectory: TrajectoryConfig = field(default_factory=TrajectoryConfig)
    de: DEConfig = field(default_factory=DEConfig)
    cache_dir: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AnalysisConfig":
        """Build a configuration from plain data.

        Raises
        ------
        ConfigValidationError
            If a section holds unknown keys or has the wrong shape
        """
        data = copy.deepcopy(data or {})
        if "sctrace" in data:
            data = data["sctrace"] or {}
        errors: List[str] = []

        sections: Dict[str, Any] = {}
        for name, section_cls in _SECTIONS.items():
            raw = data.pop(name, None)
            if raw is not None and not isinstance(raw, dict):
                errors.append(f"Section '{name}' must be a mapping")
                raw = None
            sections[name] = _build_section(name, section_cls, raw, errors)

        raw_traj = data.pop("trajectory", None) or {}
        if not isinstance(raw_traj, dict):
            errors.append("Section 'trajectory' must be a mapping")
            raw_traj = {}
        raw_traj = dict(raw_traj)
        root = raw_traj.pop("root_strategy", None)
        if root is not None and not isinstance(root, dict):
            errors.append("trajectory.root_strategy must be a mapping")
            root = None
        trajectory = _build_section("trajectory", TrajectoryConfig, raw_traj, errors)
        trajectory.root_strategy = RootStrategy.from_dict(root)

        if isinstance(sections["de"].comparisons, list):
            sections["de"].comparisons = [tuple(pair) for pair in sections["de"].comparisons]

        excluded = data.pop("excluded_genes", None) or []
        gene_scope = data.pop("gene_scope", None)
        seed = data.pop("seed", None)
        cache_dir = data.pop("cache_dir", None)
        if data:
            errors.append(f"Unknown top-level keys: {sorted(data)}")
        if errors:
            raise ConfigValidationError(errors)

        return cls(
            excluded_genes=[str(g) for g in excluded],
            gene_scope=None if gene_scope is None else [str(g) for g in gene_scope],
            seed=None if seed is None else int(seed),
            trajectory=trajectory,
            cache_dir=None if cache_dir is None else str(cache_dir),
            **sections,
        )

    @classmethod
    def from_yaml(cls, path: Any) -> "AnalysisConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "AnalysisConfig":
        """Create default configuration (no root strategy; set one before running)."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to plain data accepted by :meth:`from_dict`."""
        result: Dict[str, Any] = {
            "excluded_genes": list(self.excluded_genes),
            "gene_scope": None if self.gene_scope is None else list(self.gene_scope),
            "seed": self.seed,
            "cache_dir": self.cache_dir,
        }
        for name in _SECTIONS:
            result[name] = asdict(getattr(self, name))
        if isinstance(self.de.comparisons, list):
            result["de"]["comparisons"] = [list(p) for p in self.de.comparisons]
        trajectory = asdict(self.trajectory)
        root = self.trajectory.root_strategy
        trajectory["root_strategy"] = root.to_dict() if root is not None else None
        result["trajectory"] = trajectory
        return result

    def to_yaml(self, path: Optional[Any] = None) -> str:
        text = yaml.safe_dump(self.to_dict(), sort_keys=False)
        if path is not None:
            Path(path).write_text(text, encoding="utf-8")
        return text

    @property
    def scope(self) -> GeneScope:
        if self.gene_scope is None:
            return GeneScope.full()
        return GeneScope.restricted(self.gene_scope)

    def section_hash(self, name: str) -> str:
        return stable_hash(self.stage_config(name))

    def stage_config(self, name: str) -> Any:
        """Return the effective configuration of one stage section.

        QC receives the top-level excluded genes; seeded sections receive
        a sub-seed derived from the global seed when one is set.
        """
        section = getattr(self, name)
        if name == "qc":
            merged = list(dict.fromkeys(list(section.excluded_genes) + self.excluded_genes))
            section = replace(section, excluded_genes=merged)
        if self.seed is not None and name in STAGE_SEED_INDEX:
            section = replace(section, seed=derive_seed(self.seed, STAGE_SEED_INDEX[name]))
        return section

    def validate(self, samples: Optional[Sequence[ExpressionMatrix]] = None) -> None:
        """Validate the configuration, optionally against the input samples.

        Parameters
        ----------
        samples : Sequence[ExpressionMatrix], optional
            Raw samples; enables checks that depend on the data, such as
            excluded genes that are absent from every sample

        Raises
        ------
        ConfigValidationError
            Listing every problem found
        """
        errors = self.check()
        if samples is not None:
            errors.extend(self.check_against(samples))
        if errors:
            raise ConfigValidationError(errors)

    def check(self) -> List[str]:
        """Return data-independent validation messages (empty when valid)."""
        errors: List[str] = []
        qc, norm, integ = self.qc, self.normalization, self.integration
        clus, traj, de = self.clustering, self.trajectory, self.de

        _non_negative(
            errors,
            {
                "qc.min_genes_per_cell": qc.min_genes_per_cell,
                "qc.max_genes_per_cell": qc.max_genes_per_cell,
                "qc.max_percent_mito": qc.max_percent_mito,
                "qc.max_percent_rps": qc.max_percent_rps,
                "qc.max_percent_rpl": qc.max_percent_rpl,
                "qc.min_cells_per_gene": qc.min_cells_per_gene,
                "normalization.min_cells_per_gene": norm.min_cells_per_gene,
                "integration.epsilon": integ.epsilon,
                "integration.ridge_lambda": integ.ridge_lambda,
                "integration.theta": integ.theta,
                "integration.deadline_seconds": integ.deadline_seconds,
                "clustering.deadline_seconds": clus.deadline_seconds,
                "trajectory.connectivity_threshold": traj.connectivity_threshold,
                "de.pseudocount": de.pseudocount,
                "de.min_cells_per_group": de.min_cells_per_group,
            },
        )
        _positive(
            errors,
            {
                "normalization.variable_feature_count": norm.variable_feature_count,
                "normalization.n_components": norm.n_components,
                "normalization.theta": norm.theta,
                "normalization.chunk_size": norm.chunk_size,
                "integration.max_iterations": integ.max_iterations,
                "integration.sigma": integ.sigma,
                "integration.resolution": integ.resolution,
                "clustering.k_neighbors": clus.k_neighbors,
                "clustering.resolution": clus.resolution,
                "clustering.max_levels": clus.max_levels,
                "clustering.max_passes": clus.max_passes,
                "trajectory.k_neighbors": traj.k_neighbors,
                "de.target_sum": de.target_sum,
                "de.chunk_size": de.chunk_size,
                "de.n_pseudotime_bins": de.n_pseudotime_bins,
            },
        )

        if qc.max_genes_per_cell is not None and qc.max_genes_per_cell < qc.min_genes_per_cell:
            errors.append(
                f"qc.max_genes_per_cell ({qc.max_genes_per_cell}) < "
                f"qc.min_genes_per_cell ({qc.min_genes_per_cell})"
            )
        for key in ("max_percent_mito", "max_percent_rps", "max_percent_rpl"):
            if getattr(qc, key) > 100:
                errors.append(f"qc.{key} must be <= 100, got {getattr(qc, key)}")
        if integ.n_clusters is not None and integ.n_clusters < 1:
            errors.append(f"integration.n_clusters must be >= 1, got {integ.n_clusters}")

        if not 0 < de.alpha < 1:
            errors.append(f"de.alpha must be in (0, 1), got {de.alpha}")

        if self.merge.gene_join not in GENE_JOINS:
            errors.append(f"merge.gene_join must be one of {GENE_JOINS}")
        if norm.method not in NORMALIZATION_METHODS:
            errors.append(f"Unknown normalization.method '{norm.method}'")
        if clus.metric not in METRICS:
            errors.append(f"Unknown clustering.metric '{clus.metric}'")
        if traj.metric not in METRICS:
            errors.append(f"Unknown trajectory.metric '{traj.metric}'")
        if de.method not in DE_METHODS:
            errors.append(f"Unknown de.method '{de.method}'")
        if de.use not in DE_VALUES:
            errors.append(f"Unknown de.use '{de.use}'")
        if de.group_by not in DE_GROUPINGS:
            errors.append(f"Unknown de.group_by '{de.group_by}'")
        if isinstance(de.comparisons, str) and de.comparisons not in COMPARISON_MODES:
            errors.append(f"Unknown de.comparisons mode '{de.comparisons}'")
        elif not isinstance(de.comparisons, str):
            for pair in de.comparisons:
                if len(pair) != 2:
                    errors.append(f"de.comparisons entry {list(pair)} must be a pair")

        if traj.root_strategy is None:
            errors.append("trajectory.root_strategy is required")
        else:
            errors.extend(f"trajectory.{e}" for e in traj.root_strategy.validate())

        if self.gene_scope is not None and not self.gene_scope:
            errors.append("gene_scope must list at least one gene when set")
        return errors

    def check_against(self, samples: Sequence[ExpressionMatrix]) -> List[str]:
        """Return validation messages that depend on the input samples."""
        errors: List[str] = []
        present = set()
        for sample in samples:
            present.update(map(str, sample.gene_ids))

        excluded = self.stage_config("qc").excluded_genes
        missing = [g for g in excluded if g not in present]
        if missing:
            errors.append(f"Excluded genes not present in any sample: {missing}")

        ids = [s.sample_id for s in samples if s.sample_id is not None]
        duplicated = sorted({str(i) for i in ids if ids.count(i) > 1})
        if duplicated:
            errors.append(f"Duplicate sample ids: {duplicated}")
        return errors


def _non_negative(errors: List[str], values: Dict[str, Any]) -> None:
    for name, value in values.items():
        if value is not None and value < 0:
            errors.append(f"{name} must be >= 0, got {value}")


def _positive(errors: List[str], values: Dict[str, Any]) -> None:
    for name, value in values.items():
        if value is not None and value <= 0:
            errors.append(f"{name} must be > 0, got {value}")


def topological_order(dependencies: Dict[str, Iterable[str]]) -> List[str]:
    """Order stage ids so every stage follows its dependencies.

    Uses Kahn's algorithm; ties keep registration order.

    Parameters
    ----------
    dependencies : Dict[str, Iterable[str]]
        Stage id to the stage ids it depends on

    Returns
    -------
    List[str]
        Stage ids in execution order

    Raises
    ------
    ValueError
        If a dependency is unknown or the graph has a cycle
    """
    deps = {sid: list(d) for sid, d in dependencies.items()}
    for sid, upstream in deps.items():
        for dep in upstream:
            if dep not in deps:
                raise ValueError(f"Stage '{sid}' depends on unknown stage '{dep}'")

    in_degree = {sid: len(set(upstream)) for sid, upstream in deps.items()}
    ready = [sid for sid, degree in in_degree.items() if degree == 0]
    order: List[str] = []
    while ready:
        sid = ready.pop(0)
        order.append(sid)
        for other, upstream in deps.items():
            if sid in upstream:
                in_degree[other] -= 1
                if in_degree[other] == 0:
                    ready.append(other)

    if len(order) != len(deps):
        raise ValueError("Circular dependency detected - cannot compute execution order")
    return order
