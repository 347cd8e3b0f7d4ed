"""Content-addressed cache for stage artifacts.

A stage output is stored under a key derived from the stage id, the
versions of its upstream artifacts and the hash of its configuration.
Recomputing an upstream stage changes its version, so every downstream
key changes with it and stale entries are never returned.
"""

import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

import joblib

from ..utils.hashing import hash_arrays, stable_hash

logger = logging.getLogger(__name__)

# Attributes probed, in order, to find the version of a stage output
_VERSION_ATTRS = ("matrix", "normalized", "embedding", "clusters", "graph")


def artifact_version(value: Any) -> str:
    """Return the chained version tag of an artifact or stage result.

    Artifacts expose ``version`` directly; stage results wrap an artifact.
    Sequences hash the versions of their items, anything else falls back
    to a digest of its value.
    """
    version = getattr(value, "version", None)
    if isinstance(version, str) and version:
        return version
    for attr in _VERSION_ATTRS:
        inner = getattr(value, attr, None)
        if inner is not None and isinstance(getattr(inner, "version", None), str):
            return inner.version
    if isinstance(value, (list, tuple)):
        return hash_arrays([artifact_version(v) for v in value])
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return stable_hash(to_dict())
    return hash_arrays(value)


class ArtifactCache:
    """Stage artifact cache held in memory, optionally mirrored to disk.

    Parameters
    ----------
    cache_dir : str or Path, optional
        Directory for joblib-persisted entries; memory only when None
    compress : int
        joblib compression level for on-disk entries

    Example
    -------
    >>> cache = ArtifactCache("cache/")
    >>> key = cache.key("merge", [qc.version], merge_config)
    >>> if key not in cache:
    ...     cache.put(key, merger.merge_samples(qc.matrices))
    >>> merged = cache.get(key)
    """

    def __init__(self, cache_dir: Optional[Union[str, Path]] = None, compress: int = 3):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.compress = compress
        self._memory: Dict[str, Any] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(stage_id: str, upstream: Sequence[str], config: Any = None) -> str:
        """Build the cache key for one stage execution.

        Parameters
        ----------
        stage_id : str
            Stage identifier
        upstream : Sequence[str]
            Versions of the stage inputs, in input order
        config : Any
            Stage configuration (dataclass or plain data)

        Returns
        -------
        str
            Hex digest
        """
        text = "|".join([stage_id, ",".join(upstream), stable_hash(config)])
        return hashlib.md5(text.encode()).hexdigest()

    def _path(self, key: str) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        return self.cache_dir / f"{key}.joblib"

    def __contains__(self, key: str) -> bool:
        if key in self._memory:
            return True
        path = self._path(key)
        return path is not None and path.exists()

    def __len__(self) -> int:
        return len(self._memory)

    def get(self, key: str, default: Any = None) -> Any:
        """Return a cached value, loading it from disk when needed."""
        if key in self._memory:
            self.hits += 1
            return self._memory[key]
        path = self._path(key)
        if path is not None and path.exists():
            value = joblib.load(path)
            self._memory[key] = value
            self.hits += 1
            logger.debug("Loaded cached artifact %s", path)
            return value
        self.misses += 1
        return default

    def put(self, key: str, value: Any) -> None:
        self._memory[key] = value
        path = self._path(key)
        if path is not None:
            joblib.dump(value, path, compress=self.compress)
            logger.debug("Persisted artifact %s", path)

    def clear(self, disk: bool = False) -> None:
        """Drop in-memory entries, and on-disk ones when ``disk`` is set."""
        self._memory.clear()
        if disk and self.cache_dir is not None:
            for path in self.cache_dir.glob("*.joblib"):
                path.unlink()

    def stats(self) -> Dict[str, Any]:
        return {
            "entries": len(self._memory),
            "hits": self.hits,
            "misses": self.misses,
            "cache_dir": str(self.cache_dir) if self.cache_dir else None,
        }
