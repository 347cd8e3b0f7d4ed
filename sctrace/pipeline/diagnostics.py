"""Collection of non-fatal conditions raised during a pipeline run.

Skipped samples, unconverged loops, unreachable clusters and untestable
genes do not abort a run. Each becomes one :class:`DiagnosticEntry` in the
run's :class:`DiagnosticReport`, which is logged and exported next to the
result tables.
"""

from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import numpy as np
import pandas as pd
import yaml

from ..core.errors import (
    ConvergenceWarning,
    DisconnectedTrajectoryError,
    EmptySampleError,
    StatisticalTestError,
)

ENTRY_COLUMNS = ["stage", "kind", "subject", "message", "details"]


def _plain(value: Any) -> Any:
    """Convert numpy scalars and containers into YAML-safe builtins."""
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, float) and np.isnan(value):
        return None
    return value


@dataclass
class DiagnosticEntry:
    """One recorded condition.

    Attributes
    ----------
    stage : str
        Stage id that produced the condition
    kind : str
        Condition type (the exception / warning class name)
    subject : str
        What the condition is about: a sample, cluster, gene or stage
    message : str
        Human-readable description
    details : Dict[str, Any]
        Structured fields of the condition
    """

    stage: str
    kind: str
    subject: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))


class DiagnosticReport:
    """Ordered collection of diagnostic entries for one run.

    Example
    -------
    >>> report = DiagnosticReport()
    >>> report.add_error("qc", EmptySampleError("S3", n_cells=40))
    >>> report.counts()
    {'EmptySampleError': 1}
    >>> report.to_yaml("out/diagnostics.yaml")
    """

    def __init__(self, entries: Optional[Iterable[DiagnosticEntry]] = None):
        self.entries: List[DiagnosticEntry] = list(entries or [])

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def add(
        self,
        stage: str,
        kind: str,
        subject: Any,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> DiagnosticEntry:
        entry = DiagnosticEntry(
            stage=stage,
            kind=kind,
            subject=str(subject),
            message=message,
            details=details or {},
        )
        self.entries.append(entry)
        return entry

    def add_error(self, stage: str, error: Exception) -> DiagnosticEntry:
        """Record a recoverable error raised by a stage.

        Parameters
        ----------
        stage : str
            Stage id
        error : Exception
            One of the non-fatal pipeline errors; other exceptions are
            recorded with the stage as subject

        Returns
        -------
        DiagnosticEntry
            The new entry
        """
        kind = type(error).__name__
        if isinstance(error, EmptySampleError):
            return self.add(
                stage, kind, error.sample_id, str(error), {"n_cells": error.n_cells}
            )
        if isinstance(error, DisconnectedTrajectoryError):
            return self.add(
                stage,
                kind,
                error.cluster_id,
                str(error),
                {"root": error.root, "n_cells": error.n_cells},
            )
        if isinstance(error, StatisticalTestError):
            return self.add(stage, kind, error.gene, str(error), {"reason": error.reason})
        return self.add(stage, kind, stage, str(error))

    def add_warning(self, warning: ConvergenceWarning) -> DiagnosticEntry:
        """Record a convergence warning under the stage that emitted it."""
        details = {
            "iterations": warning.iterations,
            "displacement": warning.displacement,
            "cancelled": warning.cancelled,
        }
        details.update(warning.details)
        return self.add(
            warning.stage, type(warning).__name__, warning.stage, str(warning), details
        )

    def extend(self, other: "DiagnosticReport") -> None:
        self.entries.extend(other.entries)

    def by_kind(self, kind: str) -> List[DiagnosticEntry]:
        return [e for e in self.entries if e.kind == kind]

    def by_stage(self, stage: str) -> List[DiagnosticEntry]:
        return [e for e in self.entries if e.stage == stage]

    def counts(self) -> Dict[str, int]:
        return dict(Counter(e.kind for e in self.entries))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_entries": len(self.entries),
            "counts": self.counts(),
            "entries": [e.to_dict() for e in self.entries],
        }

    def to_frame(self) -> pd.DataFrame:
        if not self.entries:
            return pd.DataFrame(columns=ENTRY_COLUMNS)
        return pd.DataFrame([e.to_dict() for e in self.entries], columns=ENTRY_COLUMNS)

    def to_yaml(self, path: Optional[Union[str, Path]] = None) -> str:
        """Serialize the report as YAML, optionally writing it to ``path``."""
        text = yaml.safe_dump(self.to_dict(), sort_keys=False)
        if path is not None:
            path = Path(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        return text
