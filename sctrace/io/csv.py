"""CSV export of pipeline results.

Every artifact of a :class:`~sctrace.pipeline.PipelineResult` is written as
a flat table, with the diagnostic report and run summary as YAML next to
them.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd
import yaml

from .logging import to_builtin

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write a DataFrame to ``path``, creating the parent directory.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to write
    path : PathLike
        Output path
    index : bool
        Whether to write the row index (default: False)

    Returns
    -------
    Path
        The output path
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path


def _with_cell_id(frame: pd.DataFrame) -> pd.DataFrame:
    frame = frame.copy()
    frame.index.name = "cell_id"
    return frame.reset_index()


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", name)


def export_results(
    result: Any,
    out_dir: PathLike,
    config: Optional[Any] = None,
    include_counts: bool = True,
) -> Dict[str, Path]:
    """Write all artifacts of a pipeline run.

    Parameters
    ----------
    result : PipelineResult
        Completed run
    out_dir : PathLike
        Output directory (created if missing)
    config : AnalysisConfig, optional
        Written as ``analysis_config.yaml`` when given
    include_counts : bool
        Also write the filtered counts as a long-format triplet table

    Returns
    -------
    Dict[str, Path]
        Output name to written path
    """
    out = ensure_output_dir(out_dir)
    written: Dict[str, Path] = {}

    def save(name: str, df: pd.DataFrame, filename: str) -> None:
        written[name] = write_dataframe(df, out / filename)
        logger.debug("Wrote %s (%d rows)", written[name], len(df))

    save("qc_audit", result.qc_audit, "qc_audit.csv")
    save("cells", _with_cell_id(result.matrix.obs), "cells.csv")
    if include_counts:
        save("counts", result.matrix.to_triplets(), "counts_triplets.csv")

    gene_stats = result.normalized.gene_stats.copy()
    gene_stats.index.name = "gene_id"
    save("gene_stats", gene_stats.reset_index(), "gene_stats.csv")
    save("residuals", _with_cell_id(result.normalized.to_frame()), "normalized_residuals.csv")

    save("embedding_pca", _with_cell_id(result.pca.to_frame("PC")), "embedding_pca.csv")
    save(
        "embedding_integrated",
        _with_cell_id(result.integrated.to_frame("dim")),
        "embedding_integrated.csv",
    )

    save("clusters", _with_cell_id(result.clusters.to_frame()), "clusters.csv")
    centroids = pd.DataFrame(
        result.clusters.centroids,
        columns=[f"dim_{i + 1}" for i in range(result.clusters.centroids.shape[1])],
    )
    centroids.insert(0, "cluster", result.clusters.cluster_ids)
    save("centroids", centroids, "cluster_centroids.csv")

    trajectory = result.trajectory
    save("trajectory_edges", trajectory.edges, "trajectory_edges.csv")
    cluster_time = pd.DataFrame(
        {
            "cluster": list(trajectory.cluster_pseudotime.index),
            "pseudotime": trajectory.cluster_pseudotime.to_numpy(),
            "is_root": [c == trajectory.root for c in trajectory.cluster_pseudotime.index],
            "reachable": [c not in set(trajectory.unreachable) for c in trajectory.cluster_pseudotime.index],
        }
    )
    save("cluster_pseudotime", cluster_time, "cluster_pseudotime.csv")
    save("cell_pseudotime", _with_cell_id(trajectory.to_frame()), "cell_pseudotime.csv")

    de_frames = []
    for name, de in result.de.items():
        save(f"de_{name}", de.table, f"de_{_safe_name(name)}.csv")
        de_frames.append(de.table.assign(comparison=name))
    if de_frames:
        save("de_all", pd.concat(de_frames, ignore_index=True), "de_all.csv")

    written["diagnostics"] = out / "diagnostics.yaml"
    result.diagnostics.to_yaml(written["diagnostics"])

    written["summary"] = out / "run_summary.yaml"
    written["summary"].write_text(
        yaml.safe_dump(to_builtin(result.to_dict()), sort_keys=False), encoding="utf-8"
    )
    if config is not None:
        written["config"] = out / "analysis_config.yaml"
        config.to_yaml(written["config"])

    logger.info("Exported %d files to %s", len(written), out)
    return written
