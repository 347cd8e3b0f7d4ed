"""Pipeline orchestration for sctrace.

Provides the typed stage DAG runner, the master analysis configuration,
the artifact cache and the diagnostic report.

Example Usage
-------------
>>> from sctrace.pipeline import AnalysisConfig, PipelineLogger, PipelineRunner
>>> config = AnalysisConfig.from_yaml("analysis.yaml")
>>> plog = PipelineLogger("logs/").setup()
>>> result = PipelineRunner(config, logger=plog).run(samples)
>>> result.diagnostics.to_yaml("out/diagnostics.yaml")
"""

__version__ = "1.0.0"

from .cache import ArtifactCache, artifact_version
from .config import AnalysisConfig, topological_order
from .diagnostics import DiagnosticEntry, DiagnosticReport
from .executor import InMemoryExecutor, PipelineResult, PipelineRunner
from .logger import ColoredFormatter, PipelineLogger
from .stage import Stage

__all__ = [
    "__version__",
    # Configuration
    "AnalysisConfig",
    "topological_order",
    # Stages and execution
    "Stage",
    "InMemoryExecutor",
    "PipelineRunner",
    "PipelineResult",
    # Caching
    "ArtifactCache",
    "artifact_version",
    # Diagnostics and logging
    "DiagnosticEntry",
    "DiagnosticReport",
    "PipelineLogger",
    "ColoredFormatter",
]
