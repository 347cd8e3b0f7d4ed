"""Configuration classes for trajectory inference."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

DIRECTIONS = ("high", "low")


@dataclass
class RootStrategy:
    """How the trajectory root cluster is chosen.

    Exactly one of ``cluster`` or ``markers`` is set.

    Attributes
    ----------
    cluster : int, optional
        Explicit root cluster id
    markers : List[str]
        Marker genes; the root is the cluster with the highest (or lowest)
        mean normalized expression of these genes
    direction : str
        "high" or "low"
    """

    cluster: Optional[int] = None
    markers: List[str] = field(default_factory=list)
    direction: str = "high"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["RootStrategy"]:
        """Build from ``{"cluster": id}`` or ``{"markers": [...], "direction": ...}``."""
        if data is None:
            return None
        if isinstance(data, RootStrategy):
            return data
        cluster = data.get("cluster")
        return cls(
            cluster=None if cluster is None else int(cluster),
            markers=[str(m) for m in data.get("markers", []) or []],
            direction=str(data.get("direction", "high")),
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.cluster is not None:
            return {"cluster": self.cluster}
        return {"markers": list(self.markers), "direction": self.direction}

    def validate(self) -> List[str]:
        """Return validation messages (empty when valid)."""
        errors = []
        if self.cluster is None and not self.markers:
            errors.append("root_strategy needs either 'cluster' or 'markers'")
        if self.cluster is not None and self.markers:
            errors.append("root_strategy must not set both 'cluster' and 'markers'")
        if self.cluster is not None and self.cluster < 0:
            errors.append(f"root_strategy cluster must be >= 0, got {self.cluster}")
        if self.direction not in DIRECTIONS:
            errors.append(f"root_strategy direction must be one of {DIRECTIONS}")
        return errors


@dataclass
class TrajectoryConfig:
    """Configuration for cluster-graph trajectory inference.

    Attributes
    ----------
    root_strategy : RootStrategy, optional
        Root selection (required before running)
    connectivity_threshold : float
        Minimum inter-cluster connectivity (observed / expected kNN edges)
        for an edge in the cluster graph
    k_neighbors : int
        k for the cell kNN graph
    metric : str
        Distance metric for the cell kNN graph
    """

    root_strategy: Optional[RootStrategy] = None
    connectivity_threshold: float = 0.1
    k_neighbors: int = 15
    metric: str = "euclidean"
